from __future__ import annotations

from datetime import timedelta

import pytest

from lead_credits.models.results import ErrorKind
from lead_credits.services.entitlement_service import EntitlementService
from lead_credits.services.identity_service import Identity


async def _signed_in(identity, device: str, user: str):
    return await identity.start_session(device, Identity(id=user))


@pytest.mark.asyncio
async def test_activation_grants_credits_and_binds_device(identity, entitlements, store, clock):
    session = await _signed_in(identity, "device-a", "user-1")
    key = await entitlements.generate()

    result = await entitlements.activate(session, f"  {key.code} ")

    assert result
    assert result.message == "Super Key Activated! Valid for 30 days."
    assert session.credits == 1010
    assert session.account.active_entitlement_id == key.id
    assert session.account.entitlement_expires_at == clock() + timedelta(days=30)
    assert entitlements.is_entitled(session)

    stored = await store.get_entitlement(key.id)
    assert stored.is_used
    assert stored.bound_device_id == "device-a"
    assert stored.used_at == clock()


@pytest.mark.asyncio
async def test_key_cannot_be_used_on_second_device(identity, entitlements):
    first = await _signed_in(identity, "device-a", "user-1")
    second = await _signed_in(identity, "device-b", "user-2")
    key = await entitlements.generate()
    assert await entitlements.activate(first, key.code)

    result = await entitlements.activate(second, key.code)

    assert result.error_kind is ErrorKind.ALREADY_USED_ELSEWHERE
    assert second.credits == 10
    assert second.account.active_entitlement_id is None


@pytest.mark.asyncio
async def test_reactivation_on_same_device_does_not_grant_twice(identity, entitlements):
    session = await _signed_in(identity, "device-a", "user-1")
    key = await entitlements.generate()
    await entitlements.activate(session, key.code)

    again = await entitlements.activate(session, key.code)

    assert again
    assert again.message.startswith("Super Key already active until")
    assert session.credits == 1010


@pytest.mark.asyncio
async def test_active_key_skips_deduction(identity, entitlements, credit_service):
    session = await _signed_in(identity, "device-a", "user-1")
    key = await entitlements.generate()
    await entitlements.activate(session, key.code)

    charge = await credit_service.deduct(session)

    assert charge
    assert charge.data["charged"] is False
    assert session.credits == 1010


@pytest.mark.asyncio
async def test_logout_resets_balance_and_frees_key(identity, entitlements, store):
    first = await _signed_in(identity, "device-a", "user-1")
    second = await _signed_in(identity, "device-b", "user-2")
    key = await entitlements.generate()
    await entitlements.activate(first, key.code)

    result = await entitlements.deactivate(first)

    assert result
    assert result.message == "Key logged out"
    assert first.credits == 10
    assert first.account.active_entitlement_id is None
    assert first.account.entitlement_expires_at is None
    released = await store.get_entitlement(key.id)
    assert not released.is_used
    assert released.bound_device_id is None

    assert await entitlements.activate(second, key.code)
    assert second.credits == 1010


@pytest.mark.asyncio
async def test_logout_without_key_is_noop(identity, entitlements):
    session = await _signed_in(identity, "device-a", "user-1")

    result = await entitlements.deactivate(session)

    assert result
    assert result.message == "No active key"
    assert session.credits == 10


@pytest.mark.asyncio
async def test_blocked_key_is_refused_until_unblocked(identity, entitlements):
    session = await _signed_in(identity, "device-a", "user-1")
    key = await entitlements.generate()
    await entitlements.block(key.id)

    blocked = await entitlements.activate(session, key.code)
    assert blocked.error_kind is ErrorKind.BLOCKED

    await entitlements.unblock(key.id)
    assert await entitlements.activate(session, key.code)


@pytest.mark.asyncio
async def test_unknown_or_empty_code_is_invalid(identity, entitlements):
    session = await _signed_in(identity, "device-a", "user-1")

    unknown = await entitlements.activate(session, "SK-NOPE")
    empty = await entitlements.activate(session, "   ")

    assert unknown.error_kind is ErrorKind.INVALID_CODE
    assert unknown.message == "Invalid Key"
    assert empty.error_kind is ErrorKind.INVALID_CODE


@pytest.mark.asyncio
async def test_guest_must_sign_in(identity, entitlements, store):
    guest = await identity.start_session("device-a")
    key = await entitlements.generate()

    result = await entitlements.activate(guest, key.code)

    assert result.error_kind is ErrorKind.NOT_AUTHENTICATED
    assert not (await store.get_entitlement(key.id)).is_used


@pytest.mark.asyncio
async def test_bound_key_reports_expiry(identity, entitlements, clock):
    session = await _signed_in(identity, "device-a", "user-1")
    key = await entitlements.generate(validity_days=1)
    await entitlements.activate(session, key.code)

    clock.advance(days=2)
    result = await entitlements.activate(session, key.code)

    assert result.error_kind is ErrorKind.EXPIRED
    assert not entitlements.is_entitled(session)


@pytest.mark.asyncio
async def test_retry_completes_activation_after_account_write_failure(
    identity, entitlements, store
):
    session = await _signed_in(identity, "device-a", "user-1")
    key = await entitlements.generate()
    store.failing.add(("update", "accounts"))

    failed = await entitlements.activate(session, key.code)

    assert failed.error_kind is ErrorKind.STORE_WRITE_FAILED
    assert session.credits == 10
    assert session.account.active_entitlement_id is None
    assert (await store.get_entitlement(key.id)).bound_device_id == "device-a"

    store.failing.clear()
    retried = await entitlements.activate(session, key.code)

    assert retried
    assert session.credits == 1010
    assert session.account.active_entitlement_id == key.id


@pytest.mark.asyncio
async def test_admin_key_lifecycle(entitlements, store):
    first = await entitlements.generate(credits_granted=50, validity_days=7)
    second = await entitlements.generate()

    assert first.code.startswith("SK-")
    assert len(first.code) == len("SK-XXXXXXXX-XXXX")
    assert first.code != second.code
    assert {k.id for k in await entitlements.list_keys()} == {first.id, second.id}

    blocked = await entitlements.block(first.id)
    assert blocked is not None and not blocked.is_active
    assert await entitlements.block("missing") is None

    assert await entitlements.delete(first.id) is True
    assert await entitlements.delete(first.id) is False
    assert await store.get_entitlement(first.id) is None


@pytest.mark.asyncio
async def test_generate_rejects_bad_parameters(entitlements):
    with pytest.raises(ValueError):
        await entitlements.generate(validity_days=0)
    with pytest.raises(ValueError):
        await entitlements.generate(credits_granted=-1)


@pytest.mark.asyncio
async def test_second_key_is_refused_while_first_is_running(identity, entitlements, store):
    session = await _signed_in(identity, "device-a", "user-1")
    first = await entitlements.generate()
    second = await entitlements.generate()
    await entitlements.activate(session, first.code)

    results = [
        await entitlements.activate(session, code)
        for code in (second.code, first.code, second.code)
    ]

    assert results[0].error_kind is ErrorKind.ENTITLEMENT_ACTIVE
    assert results[1].message.startswith("Super Key already active until")
    assert results[2].error_kind is ErrorKind.ENTITLEMENT_ACTIVE
    assert session.credits == 1010
    assert (await store.get_account(session.account.id)).credits == 1010
    assert not (await store.get_entitlement(second.id)).is_used


@pytest.mark.asyncio
async def test_logout_after_refused_switch_frees_the_only_bound_key(
    identity, entitlements, store
):
    session = await _signed_in(identity, "device-a", "user-1")
    first = await entitlements.generate()
    second = await entitlements.generate()
    await entitlements.activate(session, first.code)
    await entitlements.activate(session, second.code)

    assert await entitlements.deactivate(session)

    for key in (first, second):
        stored = await store.get_entitlement(key.id)
        assert not stored.is_used
        assert stored.bound_device_id is None
        assert stored.granted_account_id is None


@pytest.mark.asyncio
async def test_lapsed_key_is_released_when_a_new_one_is_activated(
    identity, entitlements, store, clock
):
    session = await _signed_in(identity, "device-a", "user-1")
    lapsed = await entitlements.generate(credits_granted=0, validity_days=1)
    fresh = await entitlements.generate(credits_granted=100, validity_days=7)
    await entitlements.activate(session, lapsed.code)
    clock.advance(days=2)

    result = await entitlements.activate(session, fresh.code)

    assert result
    assert session.account.active_entitlement_id == fresh.id
    assert session.credits == 110
    released = await store.get_entitlement(lapsed.id)
    assert not released.is_used
    assert released.bound_device_id is None


@pytest.mark.asyncio
async def test_other_account_on_same_device_gets_no_grant(identity, entitlements, store):
    owner = await _signed_in(identity, "device-a", "user-x")
    key = await entitlements.generate()
    await entitlements.activate(owner, key.code)

    other = await _signed_in(identity, "device-a", "user-y")
    result = await entitlements.activate(other, key.code)

    assert other.account.id != owner.account.id
    assert result.error_kind is ErrorKind.ALREADY_USED
    assert other.credits == 10
    assert other.account.active_entitlement_id is None
    assert (await store.get_entitlement(key.id)).granted_account_id == owner.account.id


@pytest.mark.asyncio
async def test_claim_records_the_account(identity, entitlements, store):
    session = await _signed_in(identity, "device-a", "user-1")
    key = await entitlements.generate()

    await entitlements.activate(session, key.code)

    assert (await store.get_entitlement(key.id)).granted_account_id == session.account.id


@pytest.mark.asyncio
async def test_generate_uses_configured_defaults(store, ledger, credit_service):
    service = EntitlementService(
        store=store,
        ledger=ledger,
        credit_service=credit_service,
        default_key_credits=250,
        default_key_validity_days=3,
    )

    key = await service.generate()

    assert key.credits_granted == 250
    assert key.validity_days == 3
