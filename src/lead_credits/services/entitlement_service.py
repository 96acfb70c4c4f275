from __future__ import annotations

import logging
import secrets
import string
from datetime import datetime, timedelta
from typing import Callable, List, Optional

from ..db.base import BaseStoreAdapter, RecordNotFoundError, StoreError
from ..logging.ledger_logger import LedgerLogger
from ..models.base import utcnow
from ..models.entitlement import Entitlement
from ..models.results import ErrorKind, OperationResult
from ..session import AccountSession
from .credit_service import CreditService

logger = logging.getLogger(__name__)

_KEY_ALPHABET = string.ascii_uppercase + string.digits

_RELEASED_KEY_FIELDS = {
    "is_used": False,
    "bound_device_id": None,
    "granted_account_id": None,
    "used_at": None,
    "expires_at": None,
}


class EntitlementService:
    """
    Super key management: redemption, logout and the admin CRUD around it.

    Activation touches two rows without a transaction. The key is claimed
    first, recording the account it is claimed for, so if the account write
    fails the key stays bound to the same device and a retry by that account
    completes the activation. An account holds at most one running key.
    """

    def __init__(
        self,
        store: BaseStoreAdapter,
        ledger: LedgerLogger,
        credit_service: CreditService,
        default_credits: int = 10,
        requires_login: bool = True,
        default_key_credits: int = 1000,
        default_key_validity_days: int = 30,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._store = store
        self._ledger = ledger
        self._credit_service = credit_service
        self._default_credits = default_credits
        self._requires_login = requires_login
        self._default_key_credits = default_key_credits
        self._default_key_validity_days = default_key_validity_days
        self._clock = clock

    def is_entitled(self, session: AccountSession) -> bool:
        return session.has_active_entitlement(self._clock())

    async def activate(
        self, session: AccountSession, code: str, correlation_id: str | None = None
    ) -> OperationResult:
        if self._requires_login and not session.is_authenticated:
            return OperationResult.fail(
                ErrorKind.NOT_AUTHENTICATED, "Please login to activate keys"
            )
        if session.account is None or session.account.id is None:
            return OperationResult.fail(ErrorKind.ACCOUNT_NOT_LOADED)

        code = code.strip()
        if not code:
            return OperationResult.fail(ErrorKind.INVALID_CODE, "Invalid Key")

        try:
            key = await self._store.find_entitlement_by_code(code)
        except StoreError as exc:
            logger.error("Super key lookup failed: %s", exc)
            return OperationResult.fail(ErrorKind.STORE_WRITE_FAILED)

        if key is None or key.id is None:
            return OperationResult.fail(ErrorKind.INVALID_CODE, "Invalid Key")
        if not key.is_active:
            return OperationResult.fail(ErrorKind.BLOCKED)

        now = self._clock()
        if key.is_used:
            if key.bound_device_id != session.device_id:
                return OperationResult.fail(ErrorKind.ALREADY_USED_ELSEWHERE)
            return await self._resume(session, key, now, correlation_id)

        refusal = await self._release_previous(session, key, now, correlation_id)
        if refusal is not None:
            return refusal

        expires_at = now + timedelta(days=key.validity_days)
        try:
            claimed = await self._store.update_entitlement(
                key.id,
                {
                    "is_used": True,
                    "bound_device_id": session.device_id,
                    "granted_account_id": session.account.id,
                    "used_at": now,
                    "expires_at": expires_at,
                },
                expected={"is_used": False},
            )
            if claimed is None:
                # Lost a race for the key; see who holds it now
                current = await self._store.get_entitlement(key.id)
                if current is not None and current.is_bound_to(session.device_id):
                    return await self._resume(session, current, now, correlation_id)
                return OperationResult.fail(ErrorKind.ALREADY_USED_ELSEWHERE)
        except RecordNotFoundError:
            return OperationResult.fail(ErrorKind.INVALID_CODE, "Invalid Key")
        except StoreError as exc:
            logger.error("Failed to claim super key %s: %s", key.id, exc)
            return OperationResult.fail(ErrorKind.STORE_WRITE_FAILED, "Failed to activate key")

        return await self._grant(session, claimed, correlation_id)

    async def deactivate(
        self, session: AccountSession, correlation_id: str | None = None
    ) -> OperationResult:
        """
        Log the key out of this account.

        The balance is reset to the default starting grant rather than to
        the pre-activation balance, and the key becomes redeemable again.
        """
        account = session.account
        if account is None or account.id is None:
            return OperationResult.fail(ErrorKind.ACCOUNT_NOT_LOADED)
        if account.active_entitlement_id is None:
            return OperationResult.ok("No active key", credits=account.credits)

        key_id = account.active_entitlement_id
        fields = {
            "active_entitlement_id": None,
            "entitlement_expires_at": None,
            "credits": self._default_credits,
        }
        with session.optimistic(**fields) as prior:
            try:
                updated = await self._store.update_account(account.id, fields)
            except StoreError as exc:
                session.restore(prior)
                logger.error("Key logout failed for account %s: %s", account.id, exc)
                await self._ledger.log_error(
                    message="Super key logout failed",
                    details={"entitlement_id": key_id, "error": str(exc)},
                    account_id=account.id,
                    correlation_id=correlation_id,
                )
                return OperationResult.fail(ErrorKind.STORE_WRITE_FAILED)
        session.account = updated

        try:
            await self._release(key_id, session.device_id)
        except StoreError as exc:
            # Key stays bound to this device; re-activating here and logging out again releases it
            logger.error("Super key %s could not be released: %s", key_id, exc)
            await self._ledger.log_error(
                message="Super key release failed",
                details={"entitlement_id": key_id, "error": str(exc)},
                account_id=account.id,
                correlation_id=correlation_id,
            )
            return OperationResult.fail(ErrorKind.STORE_WRITE_FAILED)

        await self._ledger.log_transaction(
            account_id=account.id,
            message="Super key logged out",
            details={"entitlement_id": key_id, "reset_credits": self._default_credits},
            correlation_id=correlation_id,
        )
        return OperationResult.ok("Key logged out", credits=self._default_credits)

    async def _resume(
        self,
        session: AccountSession,
        key: Entitlement,
        now: datetime,
        correlation_id: str | None,
    ) -> OperationResult:
        """Re-entry of a key already bound to this device."""
        if key.expires_at is None or key.expires_at <= now:
            return OperationResult.fail(ErrorKind.EXPIRED)
        account = session.account
        if account is None or account.id is None:
            return OperationResult.fail(ErrorKind.ACCOUNT_NOT_LOADED)
        if account.active_entitlement_id == key.id:
            return OperationResult.ok(
                f"Super Key already active until {key.expires_at:%Y-%m-%d}.",
                expires_at=key.expires_at,
                validity_days=key.validity_days,
                credits=account.credits,
            )
        if key.granted_account_id != account.id:
            return OperationResult.fail(
                ErrorKind.ALREADY_USED, "Super Key already activated on another account"
            )

        # Claimed for this account but the account write never landed
        refusal = await self._release_previous(session, key, now, correlation_id)
        if refusal is not None:
            return refusal
        return await self._grant(session, key, correlation_id)

    async def _release_previous(
        self,
        session: AccountSession,
        key: Entitlement,
        now: datetime,
        correlation_id: str | None,
    ) -> Optional[OperationResult]:
        """
        Make room for `key` on the session's account.

        A different key that is still running blocks the activation; a
        lapsed one is released so it does not stay bound to this device.
        """
        account = session.account
        previous_id = account.active_entitlement_id if account else None
        if account is None or previous_id is None or previous_id == key.id:
            return None
        if account.has_active_entitlement(now):
            return OperationResult.fail(ErrorKind.ENTITLEMENT_ACTIVE)

        try:
            await self._release(previous_id, session.device_id)
        except StoreError as exc:
            logger.error("Lapsed super key %s could not be released: %s", previous_id, exc)
            return OperationResult.fail(ErrorKind.STORE_WRITE_FAILED, "Failed to activate key")
        await self._ledger.log_system(
            message="Lapsed super key released",
            details={"entitlement_id": previous_id, "replaced_by": key.id},
            account_id=account.id,
        )
        return None

    async def _release(self, entitlement_id: str, device_id: str) -> Optional[Entitlement]:
        """Unbind a key from `device_id`; a key now held elsewhere is left alone."""
        try:
            released = await self._store.update_entitlement(
                entitlement_id, _RELEASED_KEY_FIELDS, expected={"bound_device_id": device_id}
            )
        except RecordNotFoundError:
            logger.warning("Super key %s was deleted before release", entitlement_id)
            return None
        if released is None:
            logger.info("Super key %s is no longer bound to %s", entitlement_id, device_id)
        return released

    async def _grant(
        self, session: AccountSession, key: Entitlement, correlation_id: str | None
    ) -> OperationResult:
        extra = {"active_entitlement_id": key.id, "entitlement_expires_at": key.expires_at}
        if key.credits_granted > 0:
            result = await self._credit_service.credit(
                session,
                key.credits_granted,
                description=f"Super key {key.code}",
                correlation_id=correlation_id,
                extra_fields=extra,
            )
        else:
            result = await self._set_fields(session, extra)

        if not result:
            logger.error(
                "Super key %s claimed but account update failed: %s",
                key.id,
                result.error_kind,
            )
            return OperationResult.fail(
                result.error_kind or ErrorKind.STORE_WRITE_FAILED, "Error updating user profile"
            )

        await self._ledger.log_transaction(
            account_id=session.account.id if session.account else None,
            message="Super key activated",
            details={
                "entitlement_id": key.id,
                "credits_granted": key.credits_granted,
                "expires_at": key.expires_at.isoformat() if key.expires_at else None,
            },
            correlation_id=correlation_id,
        )
        return OperationResult.ok(
            f"Super Key Activated! Valid for {key.validity_days} days.",
            expires_at=key.expires_at,
            validity_days=key.validity_days,
            credits=session.credits,
        )

    async def _set_fields(self, session: AccountSession, fields: dict) -> OperationResult:
        account_id = session.account.id if session.account else None
        if account_id is None:
            return OperationResult.fail(ErrorKind.ACCOUNT_NOT_LOADED)
        with session.optimistic(**fields) as prior:
            try:
                updated = await self._store.update_account(account_id, fields)
            except StoreError as exc:
                session.restore(prior)
                logger.error("Account update failed for %s: %s", account_id, exc)
                return OperationResult.fail(ErrorKind.STORE_WRITE_FAILED)
        session.account = updated
        return OperationResult.ok(credits=session.credits)

    # Admin operations
    async def generate(
        self, credits_granted: Optional[int] = None, validity_days: Optional[int] = None
    ) -> Entitlement:
        """Create a fresh key; omitted values fall back to the configured defaults."""
        if credits_granted is None:
            credits_granted = self._default_key_credits
        if validity_days is None:
            validity_days = self._default_key_validity_days
        if credits_granted < 0:
            raise ValueError("credits_granted must not be negative")
        if validity_days <= 0:
            raise ValueError("validity_days must be positive")

        code = await self._unique_key_code()
        key = await self._store.add_entitlement(
            Entitlement(code=code, credits_granted=credits_granted, validity_days=validity_days)
        )
        await self._ledger.log_system(
            message="Super key generated",
            details={"entitlement_id": key.id, "credits_granted": credits_granted,
                     "validity_days": validity_days},
        )
        return key

    async def block(self, entitlement_id: str) -> Optional[Entitlement]:
        return await self._set_active(entitlement_id, False)

    async def unblock(self, entitlement_id: str) -> Optional[Entitlement]:
        return await self._set_active(entitlement_id, True)

    async def delete(self, entitlement_id: str) -> bool:
        deleted = await self._store.delete_entitlement(entitlement_id)
        if deleted:
            await self._ledger.log_system(
                message="Super key deleted", details={"entitlement_id": entitlement_id}
            )
        return deleted

    async def list_keys(self) -> List[Entitlement]:
        return await self._store.get_all_entitlements()

    async def _set_active(self, entitlement_id: str, active: bool) -> Optional[Entitlement]:
        try:
            key = await self._store.update_entitlement(entitlement_id, {"is_active": active})
        except RecordNotFoundError:
            return None
        await self._ledger.log_system(
            message="Super key unblocked" if active else "Super key blocked",
            details={"entitlement_id": entitlement_id},
        )
        return key

    async def _unique_key_code(self) -> str:
        while True:
            code = "SK-{}-{}".format(
                "".join(secrets.choice(_KEY_ALPHABET) for _ in range(8)),
                "".join(secrets.choice(_KEY_ALPHABET) for _ in range(4)),
            )
            if await self._store.find_entitlement_by_code(code) is None:
                return code
