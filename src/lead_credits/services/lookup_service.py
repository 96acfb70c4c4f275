from __future__ import annotations

import logging
import re
from datetime import datetime
from typing import Callable, Protocol

from ..models.base import utcnow
from ..models.lookup import LookupOutcome, LookupReceipt
from ..models.results import DEFAULT_MESSAGES, ErrorKind
from ..session import AccountSession
from .credit_service import CreditService

logger = logging.getLogger(__name__)

_QUERY_NOISE = re.compile(r"[\s\-]+")


class LookupClientError(Exception):
    """Raised by a lookup client that could not reach any upstream."""


class LookupClient(Protocol):
    async def search(self, query: str) -> LookupOutcome: ...


def normalize_query(query: str) -> str:
    return _QUERY_NOISE.sub("", query or "")


class LookupService:
    """
    Runs a lookup and charges for it.

    A credit is charged only after the lookup returned at least one record
    without an error; failed or empty lookups never reach the ledger.
    """

    def __init__(
        self,
        client: LookupClient,
        credit_service: CreditService,
        requires_login: bool = True,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._client = client
        self._credit_service = credit_service
        self._requires_login = requires_login
        self._clock = clock

    async def search(
        self, session: AccountSession, query: str, correlation_id: str | None = None
    ) -> LookupReceipt:
        if self._requires_login and not session.is_authenticated:
            return self._fail(ErrorKind.NOT_AUTHENTICATED, "Please login or sign up first")
        if session.account is None:
            return self._fail(ErrorKind.ACCOUNT_NOT_LOADED)

        normalized = normalize_query(query)
        if not normalized:
            return self._fail(ErrorKind.INVALID_QUERY)

        entitled = session.has_active_entitlement(self._clock())
        if not entitled and session.credits <= 0:
            return self._fail(ErrorKind.INSUFFICIENT_CREDITS)

        try:
            outcome = await self._client.search(normalized)
        except LookupClientError as exc:
            logger.warning("Lookup failed for query: %s", exc)
            outcome = LookupOutcome(error="Unable to connect to database. Please try again.")

        if not outcome.chargeable:
            return LookupReceipt(
                success=False,
                message=outcome.error or "No records found for this number",
            )

        charge = await self._credit_service.deduct(
            session, description="lookup", correlation_id=correlation_id
        )
        if not charge:
            # The records were already delivered; report them without a charge
            logger.warning(
                "Lookup succeeded but credit was not deducted: %s",
                charge.error_kind,
                extra={"device_id": session.device_id},
            )
        return LookupReceipt(
            success=True,
            message=f"{outcome.count} record(s) found",
            records=outcome.records,
            records_count=outcome.count,
            charged=bool(charge) and bool(charge.data.get("charged")),
        )

    @staticmethod
    def _fail(kind: ErrorKind, message: str | None = None) -> LookupReceipt:
        return LookupReceipt(
            success=False, error_kind=kind, message=message or DEFAULT_MESSAGES[kind]
        )
