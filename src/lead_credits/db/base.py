from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence, Tuple

from ..models.account import Account
from ..models.audit import AdWatchLog, ReferralLog
from ..models.base import utcnow
from ..models.entitlement import Entitlement
from ..models.ledger import LedgerEntry

Row = Dict[str, Any]
Filter = Mapping[str, Any]
# (field, direction) pairs; direction is 1 for ascending, -1 for descending
Sort = Sequence[Tuple[str, int]]


class StoreError(Exception):
    """Raised when the underlying datastore cannot complete an operation."""


class RecordNotFoundError(StoreError):
    pass


class BaseStoreAdapter(ABC):
    """
    Store-agnostic async row interface.

    Concrete implementations (in-memory, MongoDB, ...) only provide the five
    row primitives below. No multi-statement transactions are assumed: the
    only atomic unit is a single-row `update`, which can be made conditional
    through `expected` (compare-and-swap on the listed fields).

    Filter semantics: every key must equal its value; a `None` value means
    the field IS NULL.
    """

    @abstractmethod
    async def find_one(self, table: str, filter: Filter) -> Optional[Row]: ...

    @abstractmethod
    async def find_many(
        self,
        table: str,
        filter: Filter,
        sort: Optional[Sort] = None,
        limit: Optional[int] = None,
    ) -> List[Row]: ...

    @abstractmethod
    async def insert(self, table: str, fields: Mapping[str, Any]) -> Row:
        """Insert a row, assigning an `id` when absent. Returns the stored row."""
        ...

    @abstractmethod
    async def update(
        self,
        table: str,
        row_id: str,
        fields: Mapping[str, Any],
        expected: Optional[Filter] = None,
    ) -> Optional[Row]:
        """
        Update one row by id and return it.

        Returns None when the row exists but does not match `expected`.
        Raises RecordNotFoundError when no row has that id.
        """
        ...

    @abstractmethod
    async def delete(self, table: str, row_id: str) -> bool: ...

    # Accounts
    async def get_account(self, account_id: str) -> Optional[Account]:
        return Account.from_row(await self.find_one(Account.collection_name, {"id": account_id}))

    async def find_account_by_identity(self, identity_id: str) -> Optional[Account]:
        row = await self.find_one(
            Account.collection_name, {"external_identity_id": identity_id}
        )
        return Account.from_row(row)

    async def find_accounts_by_identity(self, identity_id: str) -> List[Account]:
        rows = await self.find_many(
            Account.collection_name,
            {"external_identity_id": identity_id},
            sort=[("created_at", 1)],
        )
        return [Account.from_row(r) for r in rows]

    async def find_guest_account(self, device_id: str) -> Optional[Account]:
        row = await self.find_one(
            Account.collection_name,
            {"device_id": device_id, "external_identity_id": None},
        )
        return Account.from_row(row)

    async def find_guest_accounts(self, device_id: str) -> List[Account]:
        rows = await self.find_many(
            Account.collection_name,
            {"device_id": device_id, "external_identity_id": None},
            sort=[("created_at", 1)],
        )
        return [Account.from_row(r) for r in rows]

    async def find_account_by_referral_code(self, code: str) -> Optional[Account]:
        row = await self.find_one(Account.collection_name, {"referral_code": code})
        return Account.from_row(row)

    async def add_account(self, account: Account) -> Account:
        row = await self.insert(Account.collection_name, account.serialize_for_db())
        return Account.from_row(row)

    async def update_account(
        self,
        account_id: str,
        fields: Mapping[str, Any],
        expected: Optional[Filter] = None,
    ) -> Optional[Account]:
        values = dict(fields)
        values["updated_at"] = utcnow()
        row = await self.update(Account.collection_name, account_id, values, expected)
        return Account.from_row(row)

    # Entitlements
    async def get_entitlement(self, entitlement_id: str) -> Optional[Entitlement]:
        row = await self.find_one(Entitlement.collection_name, {"id": entitlement_id})
        return Entitlement.from_row(row)

    async def find_entitlement_by_code(self, code: str) -> Optional[Entitlement]:
        row = await self.find_one(Entitlement.collection_name, {"code": code})
        return Entitlement.from_row(row)

    async def add_entitlement(self, entitlement: Entitlement) -> Entitlement:
        row = await self.insert(Entitlement.collection_name, entitlement.serialize_for_db())
        return Entitlement.from_row(row)

    async def update_entitlement(
        self,
        entitlement_id: str,
        fields: Mapping[str, Any],
        expected: Optional[Filter] = None,
    ) -> Optional[Entitlement]:
        row = await self.update(Entitlement.collection_name, entitlement_id, fields, expected)
        return Entitlement.from_row(row)

    async def delete_entitlement(self, entitlement_id: str) -> bool:
        return await self.delete(Entitlement.collection_name, entitlement_id)

    async def get_all_entitlements(self) -> List[Entitlement]:
        rows = await self.find_many(
            Entitlement.collection_name, {}, sort=[("created_at", -1)]
        )
        return [Entitlement.from_row(r) for r in rows]

    # Audit logs
    async def add_referral_log(self, log: ReferralLog) -> ReferralLog:
        row = await self.insert(ReferralLog.collection_name, log.serialize_for_db())
        return ReferralLog.from_row(row)

    async def get_referral_logs(self, filter: Optional[Filter] = None) -> Iterable[ReferralLog]:
        rows = await self.find_many(
            ReferralLog.collection_name, filter or {}, sort=[("created_at", -1)]
        )
        return [ReferralLog.from_row(r) for r in rows]

    async def add_ad_watch_log(self, log: AdWatchLog) -> AdWatchLog:
        row = await self.insert(AdWatchLog.collection_name, log.serialize_for_db())
        return AdWatchLog.from_row(row)

    async def get_ad_watch_logs(self, account_id: str) -> Iterable[AdWatchLog]:
        rows = await self.find_many(
            AdWatchLog.collection_name, {"account_id": account_id}, sort=[("created_at", 1)]
        )
        return [AdWatchLog.from_row(r) for r in rows]

    # Ledger
    async def add_ledger_entry(self, entry: LedgerEntry) -> LedgerEntry:
        row = await self.insert(LedgerEntry.collection_name, entry.serialize_for_db())
        return LedgerEntry.from_row(row)

    async def get_ledger_entries(self, account_id: str) -> Iterable[LedgerEntry]:
        rows = await self.find_many(
            LedgerEntry.collection_name, {"account_id": account_id}, sort=[("created_at", 1)]
        )
        return [LedgerEntry.from_row(r) for r in rows]
