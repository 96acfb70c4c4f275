from __future__ import annotations

import logging
from collections import Counter
from typing import List, Optional

from pydantic import BaseModel

from ..cache.base import AsyncCacheBackend
from ..cache.memory import InMemoryAsyncCache
from ..db.base import BaseStoreAdapter, StoreError
from ..logging.ledger_logger import LedgerLogger
from ..models.account import Account
from ..models.audit import ReferralLog
from ..models.results import ErrorKind, OperationResult
from ..session import AccountSession
from .credit_service import CreditService

logger = logging.getLogger(__name__)


class ReferralInvitation(BaseModel):
    code: str
    inviter_account_id: str
    inviter_identity_id: Optional[str] = None


class LeaderboardEntry(BaseModel):
    identity_id: str
    referral_count: int
    rank: int


class ReferralService:
    """
    One-time referral codes and the invitation flow around them.

    A code arriving before sign-in is parked per device in the cache and
    evaluated again once the session is authenticated.
    """

    def __init__(
        self,
        store: BaseStoreAdapter,
        ledger: LedgerLogger,
        credit_service: CreditService,
        cache: Optional[AsyncCacheBackend] = None,
        award: int = 5,
        base_url: str = "",
        leaderboard_size: int = 10,
        leaderboard_ttl_seconds: int = 300,
    ) -> None:
        self._store = store
        self._ledger = ledger
        self._credit_service = credit_service
        self._cache = cache or InMemoryAsyncCache()
        self._award = award
        self._base_url = base_url.rstrip("/")
        self._leaderboard_size = leaderboard_size
        self._leaderboard_ttl_seconds = leaderboard_ttl_seconds

    @property
    def award(self) -> int:
        return self._award

    async def apply(
        self, session: AccountSession, code: str, correlation_id: str | None = None
    ) -> OperationResult:
        code = code.strip()
        if not session.is_authenticated:
            return OperationResult.fail(
                ErrorKind.NOT_AUTHENTICATED, "Please login to use referral codes"
            )
        verdict = await self._check(session, code)
        if isinstance(verdict, OperationResult):
            return verdict
        referrer = verdict
        account: Account = session.account  # type: ignore[assignment]

        # referred_by is write-once; the condition makes a concurrent second apply lose
        with session.optimistic(referred_by=code) as prior:
            try:
                updated = await self._store.update_account(
                    account.id, {"referred_by": code}, expected={"referred_by": None}
                )
            except StoreError as exc:
                session.restore(prior)
                logger.error("Could not record referral for %s: %s", account.id, exc)
                return OperationResult.fail(ErrorKind.STORE_WRITE_FAILED, "Failed to apply code")
            if updated is None:
                session.restore(prior)
                return OperationResult.fail(ErrorKind.ALREADY_USED, "Referral code already used")
        session.account = updated

        try:
            await self._store.add_referral_log(
                ReferralLog(
                    referrer_account_id=referrer.id or "",
                    referred_account_id=account.id,
                    referrer_device_id=referrer.device_id,
                    referred_device_id=session.device_id,
                    referrer_identity_id=referrer.external_identity_id,
                    referred_identity_id=session.identity_id,
                    credits_awarded=self._award,
                )
            )
        except StoreError as exc:
            logger.error("Referral log insert failed: %s", exc, extra={"code": code})
            await self._ledger.log_error(
                message="Referral log insert failed",
                details={"code": code, "error": str(exc)},
                account_id=account.id,
                correlation_id=correlation_id,
            )
        await self._cache.delete(self._leaderboard_cache_key())

        referrer_result = await self._credit_service.credit_account(
            referrer.id or "",
            self._award,
            description=f"Referral reward from {account.id}",
            correlation_id=correlation_id,
        )
        if not referrer_result:
            logger.error(
                "Referrer %s was not credited: %s", referrer.id, referrer_result.error_kind
            )
            await self._ledger.log_error(
                message="Referrer credit failed",
                details={"referrer_account_id": referrer.id,
                         "error_kind": str(referrer_result.error_kind)},
                account_id=account.id,
                correlation_id=correlation_id,
            )

        own_result = await self._credit_service.credit(
            session,
            self._award,
            description=f"Referral bonus for code {code}",
            correlation_id=correlation_id,
        )
        if not own_result:
            return OperationResult.fail(
                own_result.error_kind or ErrorKind.STORE_WRITE_FAILED,
                "Referral recorded but your bonus could not be added",
            )

        return OperationResult.ok(
            f"Referral applied! You both got {self._award} credits!",
            credits_awarded=self._award,
            credits=session.credits,
        )

    async def _check(self, session: AccountSession, code: str):
        """
        Re-read the account and run the eligibility rules in order.

        Returns the referrer account when eligible, otherwise the failure.
        """
        if session.account is None or session.account.id is None:
            return OperationResult.fail(ErrorKind.ACCOUNT_NOT_LOADED)
        try:
            fresh = await self._store.get_account(session.account.id)
        except StoreError as exc:
            logger.error("Account re-read failed: %s", exc)
            return OperationResult.fail(ErrorKind.STORE_WRITE_FAILED)
        if fresh is None:
            return OperationResult.fail(ErrorKind.ACCOUNT_NOT_LOADED)
        session.account = fresh

        if fresh.referred_by:
            return OperationResult.fail(ErrorKind.ALREADY_USED, "Referral code already used")
        if code == fresh.referral_code:
            return OperationResult.fail(ErrorKind.SELF_REFERRAL)

        try:
            referrer: Optional[Account] = await self._store.find_account_by_referral_code(code)
        except StoreError as exc:
            logger.error("Referrer lookup failed: %s", exc)
            return OperationResult.fail(ErrorKind.STORE_WRITE_FAILED)
        if referrer is None:
            return OperationResult.fail(ErrorKind.INVALID_CODE, "Invalid referral code")
        if referrer.id == fresh.id:
            return OperationResult.fail(ErrorKind.SELF_REFERRAL)
        return referrer

    # Invitation provenance
    async def remember_invitation(self, device_id: str, code: str) -> None:
        code = code.strip()
        if code:
            await self._cache.set(self._pending_cache_key(device_id), code)

    async def pending_invitation(self, session: AccountSession) -> OperationResult:
        """
        Evaluate the parked invitation for this device.

        Unusable codes (own code, already referred, unknown) are discarded;
        for guests the code is kept until they sign in.
        """
        key = self._pending_cache_key(session.device_id)
        code = await self._cache.get(key)
        if code is None:
            return OperationResult.ok("No pending invitation", invitation=None)
        if not session.is_authenticated:
            return OperationResult.fail(
                ErrorKind.NOT_AUTHENTICATED, "Please login to accept the invitation"
            )

        verdict = await self._check(session, code)
        if isinstance(verdict, OperationResult):
            if verdict.error_kind is not ErrorKind.STORE_WRITE_FAILED:
                await self._cache.delete(key)
            return verdict

        invitation = ReferralInvitation(
            code=code,
            inviter_account_id=verdict.id or "",
            inviter_identity_id=verdict.external_identity_id,
        )
        return OperationResult.ok(
            f"You've been invited! Accept to receive {self._award} bonus credits",
            invitation=invitation.model_dump(),
        )

    async def accept_invitation(
        self, session: AccountSession, correlation_id: str | None = None
    ) -> OperationResult:
        key = self._pending_cache_key(session.device_id)
        code = await self._cache.get(key)
        if code is None:
            return OperationResult.fail(ErrorKind.INVALID_CODE, "No pending invitation")
        result = await self.apply(session, code, correlation_id=correlation_id)
        if result or result.error_kind not in (
            ErrorKind.NOT_AUTHENTICATED,
            ErrorKind.STORE_WRITE_FAILED,
        ):
            await self._cache.delete(key)
        return result

    async def decline_invitation(self, device_id: str) -> None:
        await self._cache.delete(self._pending_cache_key(device_id))

    # Statistics
    def referral_link(self, code: str) -> str:
        return f"{self._base_url}/?ref={code}"

    async def referrals_made(self, identity_id: str) -> List[ReferralLog]:
        return list(await self._store.get_referral_logs({"referrer_identity_id": identity_id}))

    async def referral_count(self, identity_id: str) -> int:
        return len(await self.referrals_made(identity_id))

    async def leaderboard(self, limit: Optional[int] = None) -> List[LeaderboardEntry]:
        limit = limit or self._leaderboard_size
        cached = await self._cache.get(self._leaderboard_cache_key())
        if isinstance(cached, list):
            return [LeaderboardEntry.model_validate(e) for e in cached][:limit]

        logs = await self._store.get_referral_logs()
        counts = Counter(
            log.referrer_identity_id for log in logs if log.referrer_identity_id is not None
        )
        ranked = sorted(counts.items(), key=lambda item: (-item[1], item[0]))
        entries = [
            LeaderboardEntry(identity_id=identity_id, referral_count=count, rank=idx + 1)
            for idx, (identity_id, count) in enumerate(ranked[: self._leaderboard_size])
        ]
        await self._cache.set(
            self._leaderboard_cache_key(),
            [e.model_dump() for e in entries],
            ttl_seconds=self._leaderboard_ttl_seconds,
        )
        return entries[:limit]

    @staticmethod
    def _pending_cache_key(device_id: str) -> str:
        return f"referral:pending:{device_id}"

    @staticmethod
    def _leaderboard_cache_key() -> str:
        return "referral:leaderboard"
