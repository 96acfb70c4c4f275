from __future__ import annotations

from datetime import timedelta
from typing import List

import pytest
import pytest_asyncio

from lead_credits.models.lookup import LookupOutcome, parse_lookup_payload
from lead_credits.models.results import ErrorKind
from lead_credits.services.identity_service import Identity
from lead_credits.services.lookup_service import (
    LookupClientError,
    LookupService,
    normalize_query,
)

RECORD = {"full_name": "Ayesha Khan", "phone": "03001234567", "cnic": None, "address": "Lahore"}


class FakeLookupClient:
    def __init__(self, outcome: LookupOutcome | None = None, error: Exception | None = None):
        self.outcome = outcome or LookupOutcome(records=[RECORD], count=1)
        self.error = error
        self.queries: List[str] = []

    async def search(self, query: str) -> LookupOutcome:
        self.queries.append(query)
        if self.error is not None:
            raise self.error
        return self.outcome


@pytest.fixture
def client():
    return FakeLookupClient()


@pytest.fixture
def lookups(client, credit_service, clock):
    return LookupService(client=client, credit_service=credit_service, clock=clock)


@pytest_asyncio.fixture
async def session(identity):
    return await identity.start_session("device-a", Identity(id="user-1"))


def test_parse_envelope_payload():
    outcome = parse_lookup_payload(
        {"success": True, "data": {"records": [RECORD, "junk"], "records_count": 1}}
    )

    assert outcome.chargeable
    assert outcome.count == 1
    assert outcome.records[0]["full_name"] == "Ayesha Khan"
    assert outcome.records[0]["cnic"] is None


def test_parse_envelope_with_unusable_count_falls_back_to_records():
    outcome = parse_lookup_payload(
        {"success": True, "data": {"records": [RECORD, RECORD], "records_count": "n/a"}}
    )

    assert outcome.chargeable
    assert outcome.count == 2


def test_parse_bare_list_stringifies_values():
    outcome = parse_lookup_payload([{"phone": 3001234567, "extra": "x"}])

    assert outcome.records == [{"phone": "3001234567", "extra": "x"}]
    assert outcome.count == 1


@pytest.mark.parametrize(
    "payload, error",
    [
        ([], "No records found for this number"),
        ({"success": True, "data": {"records": []}}, "No records found for this number"),
        ({"error": "Upstream timeout"}, "Upstream timeout"),
        ("<html>", "Unexpected response from lookup service"),
        ({"success": False}, "Unexpected response from lookup service"),
    ],
)
def test_parse_unchargeable_payloads(payload, error):
    outcome = parse_lookup_payload(payload)

    assert not outcome.chargeable
    assert outcome.error == error


def test_normalize_query_strips_separators():
    assert normalize_query(" 0300-123 4567 ") == "03001234567"
    assert normalize_query("") == ""


@pytest.mark.asyncio
async def test_successful_lookup_charges_one_credit(lookups, client, session):
    receipt = await lookups.search(session, "0300-1234567", correlation_id="req-9")

    assert receipt
    assert receipt.charged
    assert receipt.records == [RECORD]
    assert receipt.records_count == 1
    assert session.credits == 9
    assert client.queries == ["03001234567"]


@pytest.mark.asyncio
async def test_empty_or_failed_lookup_is_free(lookups, client, session):
    client.outcome = LookupOutcome(error="No records found for this number")
    empty = await lookups.search(session, "03001234567")

    client.error = LookupClientError("all upstreams down")
    failed = await lookups.search(session, "03001234567")

    assert not empty and not failed
    assert empty.message == "No records found for this number"
    assert failed.message == "Unable to connect to database. Please try again."
    assert session.credits == 10


@pytest.mark.asyncio
async def test_eleventh_lookup_is_refused_before_searching(lookups, client, session):
    for _ in range(10):
        assert (await lookups.search(session, "03001234567")).charged

    refused = await lookups.search(session, "03001234567")

    assert refused.error_kind is ErrorKind.INSUFFICIENT_CREDITS
    assert len(client.queries) == 10
    assert session.credits == 0


@pytest.mark.asyncio
async def test_entitled_account_searches_for_free(lookups, session, store, clock):
    session.account = await store.update_account(
        session.account.id,
        {
            "credits": 0,
            "active_entitlement_id": "key-1",
            "entitlement_expires_at": clock() + timedelta(days=3),
        },
    )

    receipt = await lookups.search(session, "03001234567")

    assert receipt
    assert not receipt.charged
    assert session.credits == 0


@pytest.mark.asyncio
async def test_guests_and_blank_queries_are_rejected(lookups, client, identity, session):
    guest = await identity.start_session("device-b")

    unauthenticated = await lookups.search(guest, "03001234567")
    blank = await lookups.search(session, " - ")

    assert unauthenticated.error_kind is ErrorKind.NOT_AUTHENTICATED
    assert blank.error_kind is ErrorKind.INVALID_QUERY
    assert client.queries == []


@pytest.mark.asyncio
async def test_guest_lookup_allowed_when_login_optional(client, credit_service, identity, clock):
    lookups = LookupService(
        client=client, credit_service=credit_service, requires_login=False, clock=clock
    )
    guest = await identity.start_session("device-b")

    receipt = await lookups.search(guest, "03001234567")

    assert receipt.charged
    assert guest.credits == 9
