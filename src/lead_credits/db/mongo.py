from __future__ import annotations

from typing import Any, Dict, List, Mapping, Optional
from uuid import uuid4

from motor.motor_asyncio import AsyncIOMotorClient, AsyncIOMotorDatabase
from pymongo import ReturnDocument
from pymongo.errors import PyMongoError

from .base import BaseStoreAdapter, Filter, RecordNotFoundError, Row, Sort, StoreError


class MongoStoreAdapter(BaseStoreAdapter):
    """
    MongoDB implementation of BaseStoreAdapter using motor (async driver).

    IDs are stored as string-based `_id` fields and mirrored in the `id`
    key of each row, which keeps the rest of the system agnostic of MongoDB
    specifics.

    Conditional updates map onto `find_one_and_update` with the expected
    values folded into the filter; single-document writes are atomic in
    MongoDB, which is all the engines rely on.
    """

    def __init__(self, database: AsyncIOMotorDatabase) -> None:
        self._db = database

    @classmethod
    def from_client_uri(cls, uri: str, db_name: str) -> "MongoStoreAdapter":
        client = AsyncIOMotorClient(uri, tz_aware=True)
        return cls(client[db_name])

    @staticmethod
    def _query(filter: Filter) -> Dict[str, Any]:
        # {"field": None} matches both null and missing fields, i.e. IS NULL
        query = dict(filter)
        if "id" in query:
            query["_id"] = query.pop("id")
        return query

    @staticmethod
    def _decode(doc: Optional[Mapping[str, Any]]) -> Optional[Row]:
        if doc is None:
            return None
        data = dict(doc)
        data["id"] = str(data.pop("_id"))
        return data

    async def find_one(self, table: str, filter: Filter) -> Optional[Row]:
        try:
            doc = await self._db[table].find_one(self._query(filter))
        except PyMongoError as exc:
            raise StoreError(f"find_one on {table} failed: {exc}") from exc
        return self._decode(doc)

    async def find_many(
        self,
        table: str,
        filter: Filter,
        sort: Optional[Sort] = None,
        limit: Optional[int] = None,
    ) -> List[Row]:
        try:
            cursor = self._db[table].find(self._query(filter))
            if sort:
                cursor = cursor.sort(list(sort))
            if limit is not None:
                cursor = cursor.limit(limit)
            docs = await cursor.to_list(length=None)
        except PyMongoError as exc:
            raise StoreError(f"find_many on {table} failed: {exc}") from exc
        return [self._decode(d) for d in docs]  # type: ignore[misc]

    async def insert(self, table: str, fields: Mapping[str, Any]) -> Row:
        data = dict(fields)
        row_id = data.pop("id", None) or uuid4().hex
        data["_id"] = row_id
        try:
            await self._db[table].insert_one(data)
        except PyMongoError as exc:
            raise StoreError(f"insert into {table} failed: {exc}") from exc
        return self._decode(data)  # type: ignore[return-value]

    async def update(
        self,
        table: str,
        row_id: str,
        fields: Mapping[str, Any],
        expected: Optional[Filter] = None,
    ) -> Optional[Row]:
        query: Dict[str, Any] = {"_id": row_id}
        if expected:
            query.update(self._query(expected))
        values = {k: v for k, v in fields.items() if k != "id"}
        col = self._db[table]
        try:
            doc = await col.find_one_and_update(
                query, {"$set": values}, return_document=ReturnDocument.AFTER
            )
            if doc is None and await col.count_documents({"_id": row_id}, limit=1) == 0:
                raise RecordNotFoundError(f"{table} row {row_id} not found")
        except PyMongoError as exc:
            raise StoreError(f"update on {table} failed: {exc}") from exc
        return self._decode(doc)

    async def delete(self, table: str, row_id: str) -> bool:
        try:
            result = await self._db[table].delete_one({"_id": row_id})
        except PyMongoError as exc:
            raise StoreError(f"delete from {table} failed: {exc}") from exc
        return result.deleted_count > 0
