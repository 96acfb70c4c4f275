from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Optional, Set, Tuple

import pytest

from lead_credits.cache.memory import InMemoryAsyncCache
from lead_credits.db.base import StoreError
from lead_credits.db.memory import InMemoryStoreAdapter
from lead_credits.logging.ledger_logger import LedgerLogger
from lead_credits.services.credit_service import CreditService
from lead_credits.services.entitlement_service import EntitlementService
from lead_credits.services.identity_service import IdentityResolver
from lead_credits.services.referral_service import ReferralService
from lead_credits.services.reward_service import RewardService


class FrozenClock:
    def __init__(self, now: Optional[datetime] = None) -> None:
        self.now = now or datetime(2026, 1, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


class FlakyStore(InMemoryStoreAdapter):
    """In-memory store that can fail selected writes or lose a race on purpose."""

    def __init__(self) -> None:
        super().__init__()
        self.failing: Set[Tuple[str, str]] = set()
        self.concurrent_credit_changes: list[int] = []

    async def insert(self, table, fields):
        if ("insert", table) in self.failing:
            raise StoreError(f"insert into {table} unavailable")
        return await super().insert(table, fields)

    async def update(self, table, row_id, fields, expected=None):
        if ("update", table) in self.failing:
            raise StoreError(f"update on {table} unavailable")
        if table == "accounts" and self.concurrent_credit_changes:
            # Another device spends/earns between our read and our write
            delta = self.concurrent_credit_changes.pop(0)
            row = self._table(table)[row_id]
            row["credits"] += delta
        return await super().update(table, row_id, fields, expected)


@pytest.fixture
def clock():
    return FrozenClock()


@pytest.fixture
def store():
    return FlakyStore()


@pytest.fixture
def ledger(store, tmp_path):
    return LedgerLogger(store=store, file_path=tmp_path / "ledger.log")


@pytest.fixture
def cache():
    return InMemoryAsyncCache()


@pytest.fixture
def identity(store, ledger):
    return IdentityResolver(store=store, ledger=ledger)


@pytest.fixture
def credit_service(store, ledger, clock):
    return CreditService(store=store, ledger=ledger, clock=clock)


@pytest.fixture
def entitlements(store, ledger, credit_service, clock):
    return EntitlementService(
        store=store, ledger=ledger, credit_service=credit_service, clock=clock
    )


@pytest.fixture
def referrals(store, ledger, credit_service, cache):
    return ReferralService(
        store=store,
        ledger=ledger,
        credit_service=credit_service,
        cache=cache,
        base_url="https://leads.example/",
    )


@pytest.fixture
def rewards(store, credit_service):
    return RewardService(store=store, credit_service=credit_service)
