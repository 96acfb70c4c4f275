from __future__ import annotations

import pytest

from lead_credits.models.results import ErrorKind
from lead_credits.services.identity_service import Identity


@pytest.mark.asyncio
async def test_watching_an_ad_earns_one_credit(identity, rewards, store):
    session = await identity.start_session("device-a", Identity(id="user-1"))

    result = await rewards.watch_ad(session)

    assert result
    assert result.message == "+1 credit earned!"
    assert result.data["credits"] == 11
    assert session.credits == 11
    logs = list(await store.get_ad_watch_logs(session.account.id))
    assert len(logs) == 1
    assert logs[0].device_id == "device-a"
    assert logs[0].identity_id == "user-1"
    assert logs[0].credits_earned == 1


@pytest.mark.asyncio
async def test_guest_cannot_earn(identity, rewards, store):
    guest = await identity.start_session("device-a")

    result = await rewards.watch_ad(guest)

    assert result.error_kind is ErrorKind.NOT_AUTHENTICATED
    assert result.message == "Please login to earn credits"
    assert guest.credits == 10
    assert list(await store.get_ad_watch_logs(guest.account.id)) == []


@pytest.mark.asyncio
async def test_no_credit_without_audit_row(identity, rewards, store):
    session = await identity.start_session("device-a", Identity(id="user-1"))
    store.failing.add(("insert", "ad_watch_logs"))

    result = await rewards.watch_ad(session)

    assert result.error_kind is ErrorKind.STORE_WRITE_FAILED
    assert session.credits == 10
    assert (await store.get_account(session.account.id)).credits == 10


@pytest.mark.asyncio
async def test_failed_balance_write_reports_failure(identity, rewards, store):
    session = await identity.start_session("device-a", Identity(id="user-1"))
    store.failing.add(("update", "accounts"))

    result = await rewards.watch_ad(session)

    assert result.error_kind is ErrorKind.STORE_WRITE_FAILED
    assert session.credits == 10
