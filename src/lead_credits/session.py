from __future__ import annotations

from contextlib import contextmanager
from datetime import datetime
from typing import Any, Iterator, Optional

from .models.account import Account


class AccountSession:
    """
    Client-side view of the current account for one device.

    Engines receive the session explicitly, mutate `account` optimistically
    before a store write and restore the snapshot when the write fails, so
    callers always see either the best-known stored state or the narrow
    in-flight optimistic value.
    """

    def __init__(
        self,
        device_id: str,
        identity_id: Optional[str] = None,
        account: Optional[Account] = None,
    ) -> None:
        self.device_id = device_id
        self.identity_id = identity_id
        self.account = account

    def __repr__(self) -> str:
        account_id = self.account.id if self.account else None
        return (
            f"AccountSession(device_id={self.device_id!r}, "
            f"identity_id={self.identity_id!r}, account_id={account_id!r})"
        )

    @property
    def is_authenticated(self) -> bool:
        return self.identity_id is not None

    @property
    def credits(self) -> int:
        return self.account.credits if self.account else 0

    def has_active_entitlement(self, now: datetime) -> bool:
        return self.account is not None and self.account.has_active_entitlement(now)

    def snapshot(self) -> Optional[Account]:
        return self.account.model_copy() if self.account else None

    def restore(self, snapshot: Optional[Account]) -> None:
        self.account = snapshot

    def apply(self, **changes: Any) -> None:
        if self.account is None:
            raise RuntimeError("no account loaded for this session")
        self.account = self.account.model_copy(update=changes)

    @contextmanager
    def optimistic(self, **changes: Any) -> Iterator[Optional[Account]]:
        """
        Apply `changes` locally for the duration of a store write.

        The pre-change snapshot is restored if the block raises; the block
        may also call `restore` itself for failures it reports without
        raising.
        """
        prior = self.snapshot()
        self.apply(**changes)
        try:
            yield prior
        except BaseException:
            self.restore(prior)
            raise
