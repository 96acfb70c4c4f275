from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Callable, Mapping, Optional

from ..db.base import BaseStoreAdapter, StoreError
from ..logging.ledger_logger import LedgerLogger
from ..models.base import utcnow
from ..models.results import ErrorKind, OperationResult
from ..session import AccountSession

logger = logging.getLogger(__name__)

# Returns a final result to stop before writing, or None to proceed
Guard = Callable[[AccountSession], Optional[OperationResult]]


class CreditService:
    """
    Ledger engine: the only component that writes `Account.credits`.

    Every balance write is a compare-and-swap on the balance the engine
    read. On conflict the row is re-read, the rule re-applied and the write
    retried, so concurrent spends on one account are never lost; once the
    retries run out the operation fails with `write_conflict`.
    """

    def __init__(
        self,
        store: BaseStoreAdapter,
        ledger: LedgerLogger,
        max_conflict_retries: int = 3,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._store = store
        self._ledger = ledger
        self._max_conflict_retries = max_conflict_retries
        self._clock = clock

    async def deduct(
        self,
        session: AccountSession,
        description: str | None = None,
        correlation_id: str | None = None,
    ) -> OperationResult:
        """
        Charge one credit, unless an active super key covers the account.

        Only call this after the operation being paid for has succeeded.
        """
        return await self._write_delta(
            session,
            -1,
            message="Credit deducted",
            description=description,
            correlation_id=correlation_id,
            guard=self._deduct_guard,
        )

    async def credit(
        self,
        session: AccountSession,
        amount: int,
        description: str | None = None,
        correlation_id: str | None = None,
        extra_fields: Optional[Mapping[str, Any]] = None,
    ) -> OperationResult:
        """
        Add `amount` credits to the session's account.

        `extra_fields` are written in the same row update as the balance.
        """
        if amount <= 0:
            raise ValueError("amount must be positive")
        return await self._write_delta(
            session,
            amount,
            message="Credits added",
            description=description,
            correlation_id=correlation_id,
            extra_fields=extra_fields,
        )

    async def credit_account(
        self,
        account_id: str,
        amount: int,
        description: str | None = None,
        correlation_id: str | None = None,
    ) -> OperationResult:
        """Credit an account that is not the caller's own (e.g. a referrer)."""
        if amount <= 0:
            raise ValueError("amount must be positive")
        try:
            account = await self._store.get_account(account_id)
        except StoreError as exc:
            logger.error("Could not load account %s for credit: %s", account_id, exc)
            return OperationResult.fail(ErrorKind.STORE_WRITE_FAILED)
        if account is None:
            return OperationResult.fail(ErrorKind.ACCOUNT_NOT_LOADED)

        target = AccountSession(
            device_id=account.device_id,
            identity_id=account.external_identity_id,
            account=account,
        )
        return await self.credit(
            target, amount, description=description, correlation_id=correlation_id
        )

    def _deduct_guard(self, session: AccountSession) -> Optional[OperationResult]:
        account = session.account
        if account is None:
            return OperationResult.fail(ErrorKind.ACCOUNT_NOT_LOADED)
        if account.has_active_entitlement(self._clock()):
            logger.debug("Super key active on account %s; skipping deduction", account.id)
            return OperationResult.ok(
                "Super Key active", credits=account.credits, charged=False
            )
        if account.credits <= 0:
            return OperationResult.fail(ErrorKind.INSUFFICIENT_CREDITS)
        return None

    async def _write_delta(
        self,
        session: AccountSession,
        delta: int,
        message: str,
        description: str | None,
        correlation_id: str | None,
        guard: Optional[Guard] = None,
        extra_fields: Optional[Mapping[str, Any]] = None,
    ) -> OperationResult:
        if session.account is None or session.account.id is None:
            return OperationResult.fail(ErrorKind.ACCOUNT_NOT_LOADED)
        account_id = session.account.id

        for attempt in range(self._max_conflict_retries + 1):
            if guard is not None:
                verdict = guard(session)
                if verdict is not None:
                    if verdict.error_kind is ErrorKind.INSUFFICIENT_CREDITS:
                        await self._ledger.log_error(
                            message="Insufficient credits for deduction",
                            details={"current": session.credits},
                            account_id=account_id,
                            correlation_id=correlation_id,
                        )
                    return verdict

            expected_prior = session.credits
            new_balance = expected_prior + delta
            fields = {"credits": new_balance, **(extra_fields or {})}

            with session.optimistic(**fields) as prior:
                try:
                    updated = await self._store.update_account(
                        account_id, fields, expected={"credits": expected_prior}
                    )
                except StoreError as exc:
                    session.restore(prior)
                    logger.error(
                        "Balance write failed for account %s: %s",
                        account_id,
                        exc,
                        extra={"delta": delta, "correlation_id": correlation_id},
                    )
                    await self._ledger.log_error(
                        message="Balance write failed",
                        details={"delta": delta, "error": str(exc)},
                        account_id=account_id,
                        correlation_id=correlation_id,
                    )
                    return OperationResult.fail(ErrorKind.STORE_WRITE_FAILED)

            if updated is not None:
                session.account = updated
                await self._ledger.log_transaction(
                    account_id=account_id,
                    message=message,
                    details={
                        "amount": abs(delta),
                        "new_balance": updated.credits,
                        "description": description or "",
                    },
                    correlation_id=correlation_id,
                )
                return OperationResult.ok(
                    message, credits=updated.credits, charged=delta < 0
                )

            # Another writer changed the balance since we read it
            logger.info(
                "Balance conflict on account %s (attempt %d)", account_id, attempt + 1
            )
            session.restore(prior)
            try:
                fresh = await self._store.get_account(account_id)
            except StoreError as exc:
                logger.error("Re-read after conflict failed for %s: %s", account_id, exc)
                return OperationResult.fail(ErrorKind.STORE_WRITE_FAILED)
            if fresh is None:
                return OperationResult.fail(ErrorKind.ACCOUNT_NOT_LOADED)
            session.account = fresh

        await self._ledger.log_error(
            message="Balance write gave up after repeated conflicts",
            details={"delta": delta, "retries": self._max_conflict_retries},
            account_id=account_id,
            correlation_id=correlation_id,
        )
        return OperationResult.fail(ErrorKind.WRITE_CONFLICT)
