"""
Document store adapters

`DocumentStore` is the contract the marketplace services use: keyed records
grouped in collections, field-level updates, atomic set add/remove on list
fields, simple filtered queries and multi-record transactions with
optimistic-concurrency retry.

Two adapters implement it:
    - MongoDocumentStore: MongoDB through PyMongo's asyncio client
    - InMemoryDocumentStore: process-local store used for tests and for
      running the API without a database
"""
import asyncio
import copy
import logging
import threading
import uuid
from abc import ABC, abstractmethod
from collections import defaultdict
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, Iterable, List, NamedTuple, Optional, Tuple, TypeVar, Union

from pydantic import BaseModel
from pymongo import ASCENDING, DESCENDING, AsyncMongoClient
from pymongo.errors import PyMongoError

logger = logging.getLogger(__name__)

T = TypeVar("T")


class StoreError(Exception):
    """Raised by adapters when the underlying store call fails."""


class TransactionConflict(StoreError):
    """Raised when a transaction keeps losing write conflicts."""


class Filter(NamedTuple):
    field: str
    op: str
    value: Any


EQ = "=="
IN = "in"
ARRAY_CONTAINS = "array_contains"
NOT_ARRAY_CONTAINS = "not_array_contains"


def new_id() -> str:
    return uuid.uuid4().hex


def to_document(data: Union[BaseModel, dict]) -> dict:
    if isinstance(data, BaseModel):
        return data.model_dump(mode="python")
    return copy.deepcopy(data)


class Transaction(ABC):
    """Read-then-write unit of work handed to `DocumentStore.run_transaction`.

    All reads must happen before the first write.
    """

    @abstractmethod
    async def get(self, collection: str, doc_id: str) -> Optional[dict]:
        pass

    @abstractmethod
    async def set(self, collection: str, doc_id: str, data: Union[BaseModel, dict]) -> None:
        pass

    @abstractmethod
    async def update(self, collection: str, doc_id: str, fields: Dict[str, Any]) -> None:
        pass

    @abstractmethod
    async def array_union(self, collection: str, doc_id: str, field: str, value: Any) -> None:
        """Add `value` to a list field, creating the record if it does not exist."""


TransactionFn = Callable[[Transaction], Awaitable[T]]


class DocumentStore(ABC):

    @abstractmethod
    async def get(self, collection: str, doc_id: str) -> Optional[dict]:
        pass

    @abstractmethod
    async def insert(self, collection: str, data: Union[BaseModel, dict]) -> str:
        """Insert a record and return its id (generated when `data` has none)."""

    @abstractmethod
    async def update(self, collection: str, doc_id: str, fields: Dict[str, Any]) -> bool:
        """Set the given fields; returns False when the record does not exist."""

    @abstractmethod
    async def delete(self, collection: str, doc_id: str) -> bool:
        """Remove a record; returns False when it does not exist."""

    @abstractmethod
    async def modify_sets(
        self,
        collection: str,
        doc_id: str,
        add: Optional[Dict[str, Any]] = None,
        remove: Optional[Dict[str, Any]] = None,
        upsert: bool = False,
    ) -> bool:
        """Atomically add values to and remove values from list fields.

        `add` and `remove` map field names to a single value. The whole
        change is applied as one update, so concurrent callers never lose
        each other's additions. Returns False when the record does not exist
        and `upsert` is off.
        """

    async def array_union(self, collection: str, doc_id: str, field: str, value: Any, upsert: bool = False) -> bool:
        return await self.modify_sets(collection, doc_id, add={field: value}, upsert=upsert)

    @abstractmethod
    async def query(
        self,
        collection: str,
        filters: Iterable[Filter] = (),
        order_by: Optional[str] = None,
        descending: bool = False,
        limit: Optional[int] = None,
    ) -> List[dict]:
        pass

    @abstractmethod
    async def run_transaction(self, fn: TransactionFn) -> T:
        """Run `fn` in a transaction, retrying it on write conflicts.

        Exceptions raised by `fn` abort the transaction and propagate.
        """

    @abstractmethod
    async def ping(self) -> Dict[str, Any]:
        pass

    async def close(self) -> None:
        pass


# ----- MongoDB -----
def _mongo_filter(filters: Iterable[Filter]) -> dict:
    filt: Dict[str, Any] = {}
    for f in filters:
        field = "_id" if f.field == "id" else f.field
        if f.op == EQ:
            filt[field] = f.value
        elif f.op == IN:
            filt[field] = {"$in": list(f.value)}
        elif f.op == ARRAY_CONTAINS:
            filt.setdefault("$and", []).append({field: f.value})
        elif f.op == NOT_ARRAY_CONTAINS:
            filt.setdefault("$and", []).append({field: {"$ne": f.value}})
        else:
            raise ValueError(f"Unsupported filter operator: {f.op}")
    return filt


def _from_mongo(doc: Optional[dict]) -> Optional[dict]:
    if doc is None:
        return None
    doc = dict(doc)
    doc["id"] = str(doc.pop("_id"))
    return doc


def _to_mongo(doc_id: str, data: Union[BaseModel, dict]) -> dict:
    doc = to_document(data)
    doc.pop("id", None)
    doc["_id"] = doc_id
    return doc


def _set_update(add: Optional[Dict[str, Any]], remove: Optional[Dict[str, Any]]) -> dict:
    update: Dict[str, Any] = {"$set": {"updated_at": datetime.now(timezone.utc)}}
    if add:
        update["$addToSet"] = dict(add)
    if remove:
        update["$pull"] = dict(remove)
    return update


class MongoTransaction(Transaction):
    def __init__(self, db, session):
        self._db = db
        self._session = session

    async def get(self, collection, doc_id):
        return _from_mongo(await self._db[collection].find_one({"_id": doc_id}, session=self._session))

    async def set(self, collection, doc_id, data):
        await self._db[collection].replace_one(
            {"_id": doc_id}, _to_mongo(doc_id, data), upsert=True, session=self._session
        )

    async def update(self, collection, doc_id, fields):
        await self._db[collection].update_one({"_id": doc_id}, {"$set": dict(fields)}, session=self._session)

    async def array_union(self, collection, doc_id, field, value):
        await self._db[collection].update_one(
            {"_id": doc_id}, {"$addToSet": {field: value}}, upsert=True, session=self._session
        )


class MongoDocumentStore(DocumentStore):
    def __init__(self, client: AsyncMongoClient, database_name: str):
        self._client = client
        self.db = client[database_name]

    @classmethod
    def from_url(cls, database_url: str, database_name: str) -> "MongoDocumentStore":
        return cls(AsyncMongoClient(database_url, tz_aware=True), database_name)

    async def get(self, collection, doc_id):
        try:
            return _from_mongo(await self.db[collection].find_one({"_id": doc_id}))
        except PyMongoError as e:
            raise StoreError(str(e)) from e

    async def insert(self, collection, data):
        doc = to_document(data)
        doc_id = doc.get("id") or new_id()
        try:
            await self.db[collection].insert_one(_to_mongo(doc_id, doc))
        except PyMongoError as e:
            raise StoreError(str(e)) from e
        return doc_id

    async def update(self, collection, doc_id, fields):
        try:
            result = await self.db[collection].update_one({"_id": doc_id}, {"$set": dict(fields)})
        except PyMongoError as e:
            raise StoreError(str(e)) from e
        return result.matched_count > 0

    async def delete(self, collection, doc_id):
        try:
            result = await self.db[collection].delete_one({"_id": doc_id})
        except PyMongoError as e:
            raise StoreError(str(e)) from e
        return result.deleted_count > 0

    async def modify_sets(self, collection, doc_id, add=None, remove=None, upsert=False):
        try:
            result = await self.db[collection].update_one(
                {"_id": doc_id}, _set_update(add, remove), upsert=upsert
            )
        except PyMongoError as e:
            raise StoreError(str(e)) from e
        return result.matched_count > 0 or result.upserted_id is not None

    async def query(self, collection, filters=(), order_by=None, descending=False, limit=None):
        cursor = self.db[collection].find(_mongo_filter(filters))
        if order_by:
            cursor = cursor.sort(order_by, DESCENDING if descending else ASCENDING)
        if limit:
            cursor = cursor.limit(limit)
        try:
            return [_from_mongo(doc) async for doc in cursor]
        except PyMongoError as e:
            raise StoreError(str(e)) from e

    async def run_transaction(self, fn):
        # with_transaction retries TransientTransactionError and
        # UnknownTransactionCommitResult until its internal deadline
        try:
            async with self._client.start_session() as session:
                return await session.with_transaction(
                    lambda s: fn(MongoTransaction(self.db, s))
                )
        except PyMongoError as e:
            raise StoreError(str(e)) from e

    async def ping(self):
        try:
            await self.db.command("ping")
            collections = await self.db.list_collection_names()
        except PyMongoError as e:
            raise StoreError(str(e)) from e
        return {"backend": "mongodb", "database_name": self.db.name, "collections": collections[:10]}

    async def close(self):
        await self._client.close()


# ----- In-memory -----
def _matches(doc: dict, f: Filter) -> bool:
    value = doc.get(f.field)
    if f.op == EQ:
        return value == f.value
    if f.op == IN:
        return value in f.value
    if f.op == ARRAY_CONTAINS:
        return f.value in (value or [])
    if f.op == NOT_ARRAY_CONTAINS:
        return f.value not in (value or [])
    raise ValueError(f"Unsupported filter operator: {f.op}")


def _sort_key(field: str):
    def key(doc: dict):
        value = doc.get(field)
        return (value is None, value)
    return key


class InMemoryTransaction(Transaction):
    def __init__(self, store: "InMemoryDocumentStore"):
        self._store = store
        self._reads: Dict[Tuple[str, str], int] = {}
        self._writes: List[Tuple[str, str, str, Any]] = []

    async def get(self, collection, doc_id):
        if self._writes:
            raise StoreError("Transactions must perform all reads before any writes")
        # Suspension point, as a network read would be
        await asyncio.sleep(0)
        doc, version = self._store._snapshot(collection, doc_id)
        self._reads[(collection, doc_id)] = version
        return doc

    async def set(self, collection, doc_id, data):
        doc = to_document(data)
        doc["id"] = doc_id
        self._writes.append(("set", collection, doc_id, doc))

    async def update(self, collection, doc_id, fields):
        self._writes.append(("update", collection, doc_id, copy.deepcopy(dict(fields))))

    async def array_union(self, collection, doc_id, field, value):
        self._writes.append(("array_union", collection, doc_id, (field, value)))


class InMemoryDocumentStore(DocumentStore):
    """Dict-backed store with per-record versions.

    Transactions buffer their writes and commit only if none of the records
    they read changed in the meantime; otherwise the transaction function is
    run again, up to `max_retries` attempts.
    """

    def __init__(self, max_retries: int = 20):
        self.max_retries = max_retries
        self._collections: Dict[str, Dict[str, dict]] = defaultdict(dict)
        self._versions: Dict[Tuple[str, str], int] = defaultdict(int)
        self._lock = threading.RLock()

    def _snapshot(self, collection: str, doc_id: str) -> Tuple[Optional[dict], int]:
        with self._lock:
            doc = self._collections[collection].get(doc_id)
            return copy.deepcopy(doc), self._versions[(collection, doc_id)]

    def _bump(self, collection: str, doc_id: str) -> None:
        self._versions[(collection, doc_id)] += 1

    def _apply_sets(self, collection, doc_id, add, remove, upsert) -> bool:
        records = self._collections[collection]
        doc = records.get(doc_id)
        if doc is None:
            if not upsert:
                return False
            doc = records[doc_id] = {"id": doc_id}
        for field, value in (add or {}).items():
            items = doc.setdefault(field, [])
            if value not in items:
                items.append(value)
        for field, value in (remove or {}).items():
            doc[field] = [item for item in doc.get(field, []) if item != value]
        doc["updated_at"] = datetime.now(timezone.utc)
        self._bump(collection, doc_id)
        return True

    async def get(self, collection, doc_id):
        await asyncio.sleep(0)
        doc, _ = self._snapshot(collection, doc_id)
        return doc

    async def insert(self, collection, data):
        doc = to_document(data)
        doc_id = doc.get("id") or new_id()
        doc["id"] = doc_id
        await asyncio.sleep(0)
        with self._lock:
            if doc_id in self._collections[collection]:
                raise StoreError(f"Duplicate id {doc_id} in {collection}")
            self._collections[collection][doc_id] = doc
            self._bump(collection, doc_id)
        return doc_id

    async def update(self, collection, doc_id, fields):
        await asyncio.sleep(0)
        with self._lock:
            doc = self._collections[collection].get(doc_id)
            if doc is None:
                return False
            doc.update(copy.deepcopy(dict(fields)))
            self._bump(collection, doc_id)
            return True

    async def delete(self, collection, doc_id):
        await asyncio.sleep(0)
        with self._lock:
            if self._collections[collection].pop(doc_id, None) is None:
                return False
            self._bump(collection, doc_id)
            return True

    async def modify_sets(self, collection, doc_id, add=None, remove=None, upsert=False):
        await asyncio.sleep(0)
        with self._lock:
            return self._apply_sets(collection, doc_id, add, remove, upsert)

    async def query(self, collection, filters=(), order_by=None, descending=False, limit=None):
        await asyncio.sleep(0)
        filters = list(filters)
        with self._lock:
            docs = [
                copy.deepcopy(doc)
                for doc in self._collections[collection].values()
                if all(_matches(doc, f) for f in filters)
            ]
        if order_by:
            docs.sort(key=_sort_key(order_by), reverse=descending)
        if limit:
            docs = docs[:limit]
        return docs

    async def run_transaction(self, fn):
        for attempt in range(1, self.max_retries + 1):
            txn = InMemoryTransaction(self)
            result = await fn(txn)
            if self._commit(txn):
                return result
            logger.debug("Transaction conflict, retrying (attempt %d/%d)", attempt, self.max_retries)
        raise TransactionConflict(f"Transaction aborted after {self.max_retries} conflicting attempts")

    def _commit(self, txn: InMemoryTransaction) -> bool:
        with self._lock:
            for (collection, doc_id), version in txn._reads.items():
                if self._versions[(collection, doc_id)] != version:
                    return False
            for op, collection, doc_id, payload in txn._writes:
                records = self._collections[collection]
                if op == "set":
                    records[doc_id] = payload
                    self._bump(collection, doc_id)
                elif op == "update":
                    if doc_id in records:
                        records[doc_id].update(payload)
                        self._bump(collection, doc_id)
                elif op == "array_union":
                    field, value = payload
                    self._apply_sets(collection, doc_id, {field: value}, None, True)
            return True

    async def ping(self):
        with self._lock:
            collections = sorted(name for name, records in self._collections.items() if records)
        return {"backend": "memory", "database_name": None, "collections": collections[:10]}


def create_store(database_url: Optional[str], database_name: Optional[str], max_retries: int = 20) -> DocumentStore:
    if database_url and database_name:
        logger.info("Using MongoDB database %s", database_name)
        return MongoDocumentStore.from_url(database_url, database_name)
    logger.warning("DATABASE_URL/DATABASE_NAME not set, using the in-memory document store")
    return InMemoryDocumentStore(max_retries=max_retries)
