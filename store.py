"""
INFOLOOP v1.0: Bounded Store Module
Ordered id -> record buffers between stages, a hub of named collections
exposing the async Store API, and a fault-injecting wrapper.
Insertion-ordered. Failure-injectable.
"""

from __future__ import annotations

import asyncio
import random
from collections import Counter, OrderedDict
from typing import Callable

from core import StoreFailure, validate_probability
from symbols import record_type

# Collection names, in flow order
ENVIRONMENT = "environment"
UPTAKE = "uptake"
POOL = "pool"
PENDING = "pending"
CONVERTED = "converted"
FILTERED = "filtered"
INTAKE = {"NC1": "intake_nc1", "NC2": "intake_nc2", "NC3": "intake_nc3"}
UPDATE = {"NC1": "update_nc1", "NC2": "update_nc2", "NC3": "update_nc3"}

COLLECTIONS = (
    [ENVIRONMENT, UPTAKE, POOL, PENDING, CONVERTED, FILTERED]
    + list(INTAKE.values())
    + list(UPDATE.values())
)

# Fault injection
FAILURE_TYPES = ["timeout", "disconnect", "corrupt", "slow"]
DEFAULT_FAILURE_RATE = 0.1
SLEEP_TIMES = {"timeout": 0.001, "slow": 0.0005, "disconnect": 0, "corrupt": 0}
STORE_OPERATIONS = ["append", "list", "remove", "remove_where", "clear", "count"]


class BoundedStore:
    """
    Ordered mapping id -> record. Every call is a suspension point.
    Optional max_records bound; appends past it fail.
    """

    def __init__(self, name: str, max_records: int | None = None):
        self.name = name
        self.max_records = max_records
        self._records: OrderedDict[str, dict] = OrderedDict()

    def __len__(self) -> int:
        return len(self._records)

    async def append(self, record: dict) -> str:
        await asyncio.sleep(0)
        record_id = record.get("id")
        if not record_id:
            raise StoreFailure(
                f"{self.name}: record without id", {"collection": self.name}
            )
        if record_id in self._records:
            raise StoreFailure(
                f"{self.name}: duplicate id {record_id}",
                {"collection": self.name, "id": record_id},
            )
        if self.max_records is not None and len(self._records) >= self.max_records:
            raise StoreFailure(
                f"{self.name}: full at {self.max_records} records",
                {"collection": self.name, "max_records": self.max_records},
            )
        self._records[record_id] = record
        return record_id

    async def list(
        self, predicate: Callable[[dict], bool] | None = None, limit: int | None = None
    ) -> list[dict]:
        await asyncio.sleep(0)
        records = []
        for record in self._records.values():
            if limit is not None and len(records) >= limit:
                break
            if predicate is None or predicate(record):
                records.append(record)
        return records

    async def get(self, record_id: str) -> dict | None:
        await asyncio.sleep(0)
        return self._records.get(record_id)

    async def remove(self, record_id: str) -> dict:
        await asyncio.sleep(0)
        try:
            return self._records.pop(record_id)
        except KeyError:
            raise StoreFailure(
                f"{self.name}: no record {record_id}",
                {"collection": self.name, "id": record_id},
            )

    async def remove_where(
        self, predicate: Callable[[dict], bool], limit: int | None = None
    ) -> list[dict]:
        """Remove matching records in store order, at most `limit` of them."""
        await asyncio.sleep(0)
        doomed = []
        for record_id, record in self._records.items():
            if limit is not None and len(doomed) >= limit:
                break
            if predicate(record):
                doomed.append(record_id)
        return [self._records.pop(record_id) for record_id in doomed]

    async def clear(self) -> int:
        await asyncio.sleep(0)
        cleared = len(self._records)
        self._records.clear()
        return cleared

    async def count(self, predicate: Callable[[dict], bool] | None = None) -> int:
        await asyncio.sleep(0)
        if predicate is None:
            return len(self._records)
        return sum(1 for record in self._records.values() if predicate(record))

    def values(self) -> list[dict]:
        """Current records without a suspension point (for snapshots)."""
        return list(self._records.values())

    def stats(self) -> dict:
        by_type = Counter(record_type(r) for r in self._records.values())
        return {
            "collection": self.name,
            "count": len(self._records),
            "max_records": self.max_records,
            "by_type": dict(by_type),
        }


class StoreHub:
    """Named collections behind the Store API used by every stage."""

    def __init__(
        self,
        collections: list[str] | None = None,
        max_records: int | dict | None = None,
    ):
        names = collections if collections is not None else COLLECTIONS
        self._stores = {}
        for name in names:
            bound = max_records.get(name) if isinstance(max_records, dict) else max_records
            self._stores[name] = BoundedStore(name, bound)

    @property
    def names(self) -> list[str]:
        return list(self._stores)

    def collection(self, name: str) -> BoundedStore:
        try:
            return self._stores[name]
        except KeyError:
            raise StoreFailure(f"Unknown collection: {name}", {"collection": name})

    async def append(self, collection: str, record: dict) -> str:
        return await self.collection(collection).append(record)

    async def list(
        self,
        collection: str,
        predicate: Callable[[dict], bool] | None = None,
        limit: int | None = None,
    ) -> list[dict]:
        return await self.collection(collection).list(predicate, limit)

    async def remove(self, collection: str, record_id: str) -> dict:
        return await self.collection(collection).remove(record_id)

    async def remove_where(
        self,
        collection: str,
        predicate: Callable[[dict], bool],
        limit: int | None = None,
    ) -> list[dict]:
        return await self.collection(collection).remove_where(predicate, limit)

    async def clear(self, collection: str) -> int:
        return await self.collection(collection).clear()

    async def count(
        self, collection: str, predicate: Callable[[dict], bool] | None = None
    ) -> int:
        return await self.collection(collection).count(predicate)

    async def clear_all(self) -> dict:
        return {name: await store.clear() for name, store in self._stores.items()}

    def stats(self) -> dict:
        collections = {name: store.stats() for name, store in self._stores.items()}
        return {
            "collections": collections,
            "total_records": sum(c["count"] for c in collections.values()),
        }


class FaultInjectingStore:
    """
    Wraps a StoreHub and fails a fraction of calls.
    timeout/disconnect/corrupt raise StoreFailure after their delay;
    slow only delays the call.
    """

    def __init__(
        self,
        hub: StoreHub,
        failure_type: str = "timeout",
        rate: float = DEFAULT_FAILURE_RATE,
        operations: list[str] | None = None,
        rng: random.Random | None = None,
    ):
        if failure_type not in FAILURE_TYPES:
            raise ValueError(f"failure_type must be one of: {FAILURE_TYPES}")
        self.hub = hub
        self.failure_type = failure_type
        self.rate = validate_probability("failure_rate", rate)
        self.operations = set(operations) if operations else set(STORE_OPERATIONS)
        self.rng = rng or random.Random()
        self.enabled = True
        self.calls = 0
        self.failures_injected = Counter()

    async def _maybe_fail(self, operation: str, collection: str) -> None:
        self.calls += 1
        if not self.enabled or operation not in self.operations:
            return
        if self.rng.random() >= self.rate:
            return

        sleep_time = SLEEP_TIMES.get(self.failure_type, 0)
        if sleep_time > 0:
            await asyncio.sleep(sleep_time)
        if self.failure_type == "slow":
            return

        self.failures_injected[operation] += 1
        raise StoreFailure(
            f"Injected {self.failure_type} on {operation}({collection})",
            {
                "failure_type": self.failure_type,
                "operation": operation,
                "collection": collection,
            },
        )

    @property
    def names(self) -> list[str]:
        return self.hub.names

    def collection(self, name: str) -> BoundedStore:
        return self.hub.collection(name)

    async def append(self, collection: str, record: dict) -> str:
        await self._maybe_fail("append", collection)
        return await self.hub.append(collection, record)

    async def list(self, collection, predicate=None, limit=None) -> list[dict]:
        await self._maybe_fail("list", collection)
        return await self.hub.list(collection, predicate, limit)

    async def remove(self, collection: str, record_id: str) -> dict:
        await self._maybe_fail("remove", collection)
        return await self.hub.remove(collection, record_id)

    async def remove_where(self, collection, predicate, limit=None) -> list[dict]:
        await self._maybe_fail("remove_where", collection)
        return await self.hub.remove_where(collection, predicate, limit)

    async def clear(self, collection: str) -> int:
        await self._maybe_fail("clear", collection)
        return await self.hub.clear(collection)

    async def count(self, collection, predicate=None) -> int:
        await self._maybe_fail("count", collection)
        return await self.hub.count(collection, predicate)

    async def clear_all(self) -> dict:
        return await self.hub.clear_all()

    def stats(self) -> dict:
        return {
            **self.hub.stats(),
            "fault_injection": {
                "failure_type": self.failure_type,
                "rate": self.rate,
                "calls": self.calls,
                "failures_injected": dict(self.failures_injected),
            },
        }
