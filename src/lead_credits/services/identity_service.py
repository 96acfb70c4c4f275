from __future__ import annotations

import logging
import secrets
import string
import time
from typing import List, Optional

from pydantic import BaseModel

from ..db.base import BaseStoreAdapter
from ..logging.ledger_logger import LedgerLogger
from ..models.account import Account
from ..session import AccountSession

logger = logging.getLogger(__name__)

_BASE36 = string.digits + string.ascii_lowercase
_CODE_ALPHABET = string.ascii_uppercase + string.digits


def _to_base36(value: int) -> str:
    if value == 0:
        return "0"
    digits = []
    while value:
        value, rem = divmod(value, 36)
        digits.append(_BASE36[rem])
    return "".join(reversed(digits))


def generate_device_id() -> str:
    """Pseudo-random installation id, persisted by the client on first run."""
    random_part = "".join(secrets.choice(_BASE36) for _ in range(11))
    return f"device_{random_part}{_to_base36(int(time.time() * 1000))}"


class Identity(BaseModel):
    """What the identity provider reports about the signed-in user."""

    id: str
    loaded: bool = True


class IdentityResolver:
    """
    Establishes which account row belongs to a device / identity pair.

    Resolution runs on session start and on every sign-in / sign-out. A
    guest row found for the device is claimed by the first identity that
    signs in on it; the link is never undone.
    """

    def __init__(
        self,
        store: BaseStoreAdapter,
        ledger: LedgerLogger,
        default_credits: int = 10,
        referral_code_length: int = 8,
        max_code_attempts: int = 10,
    ) -> None:
        self._store = store
        self._ledger = ledger
        self._default_credits = default_credits
        self._referral_code_length = referral_code_length
        self._max_code_attempts = max_code_attempts

    async def resolve(self, device_id: str, identity_id: Optional[str] = None) -> Account:
        if identity_id is not None:
            existing = await self._store.find_account_by_identity(identity_id)
            if existing is not None:
                return existing

            guest = await self._store.find_guest_account(device_id)
            if guest is not None and guest.id is not None:
                linked = await self._store.update_account(
                    guest.id,
                    {"external_identity_id": identity_id},
                    expected={"external_identity_id": None},
                )
                if linked is not None:
                    await self._ledger.log_system(
                        message="Guest account linked to identity",
                        details={"device_id": device_id, "identity_id": identity_id},
                        account_id=linked.id,
                    )
                    return linked
                # Someone else claimed the guest row first; fall through
                claimed = await self._store.find_account_by_identity(identity_id)
                if claimed is not None:
                    return claimed

            created = await self._create(device_id, identity_id)
            return self._pick_oldest(
                await self._store.find_accounts_by_identity(identity_id), created
            )

        guest = await self._store.find_guest_account(device_id)
        if guest is not None:
            return guest
        created = await self._create(device_id, None)
        return self._pick_oldest(await self._store.find_guest_accounts(device_id), created)

    async def start_session(
        self, device_id: str, identity: Optional[Identity] = None
    ) -> AccountSession:
        session = AccountSession(device_id=device_id)
        return await self.sync(session, identity)

    async def sync(
        self, session: AccountSession, identity: Optional[Identity]
    ) -> AccountSession:
        """
        Re-run resolution after a sign-in or sign-out.

        While the identity provider is still loading, the session is left
        untouched.
        """
        if identity is not None and not identity.loaded:
            return session
        session.identity_id = identity.id if identity is not None else None
        session.account = await self.resolve(session.device_id, session.identity_id)
        return session

    async def refresh(self, session: AccountSession) -> Optional[Account]:
        """Replace the session's account with the stored row."""
        if session.account is None or session.account.id is None:
            return None
        fresh = await self._store.get_account(session.account.id)
        if fresh is not None:
            session.account = fresh
        return fresh

    async def _create(self, device_id: str, identity_id: Optional[str]) -> Account:
        account = Account(
            device_id=device_id,
            external_identity_id=identity_id,
            credits=self._default_credits,
            referral_code=await self._unique_referral_code(),
        )
        account = await self._store.add_account(account)
        logger.info(
            "Created %s account %s",
            "guest" if account.is_guest else "authenticated",
            account.id,
            extra={"device_id": device_id},
        )
        await self._ledger.log_transaction(
            account_id=account.id,
            message="Account created",
            details={"starting_credits": account.credits, "guest": account.is_guest},
        )
        return account

    async def _unique_referral_code(self) -> str:
        for _ in range(self._max_code_attempts):
            code = "".join(
                secrets.choice(_CODE_ALPHABET) for _ in range(self._referral_code_length)
            )
            if await self._store.find_account_by_referral_code(code) is None:
                return code
        raise RuntimeError("could not generate a unique referral code")

    @staticmethod
    def _pick_oldest(candidates: List[Account], created: Account) -> Account:
        # Concurrent first resolutions may both insert; the oldest row wins
        if len(candidates) > 1:
            logger.warning(
                "Duplicate accounts detected: %s",
                [c.id for c in candidates],
                extra={"kept": candidates[0].id},
            )
            return candidates[0]
        return candidates[0] if candidates else created
