"""
Distribution Hub - Distribution Store

Persistence for the Distribution aggregate with optimistic concurrency.

Every aggregate carries an integer `version`. A write commits only when the
stored version still equals the version the caller read; otherwise nothing is
written and the caller re-reads. History entries are appended in the same
single-document write and are never rewritten.

Implementations:
- InMemoryDistributionStore: asyncio-locked dict store for tests and demos
- MongoDistributionStore: motor collection, compare-and-swap via a
  version-filtered update
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional, Sequence, Tuple

from services.distribution.models import Distribution, HistoryEntry

logger = logging.getLogger(__name__)


def _record(distribution: Distribution) -> Dict[str, Any]:
    return distribution.model_dump(mode="json", exclude={"history"})


def _history_records(entries: Sequence[HistoryEntry]) -> List[Dict[str, Any]]:
    return [entry.model_dump(mode="json") for entry in entries]


class DistributionStore(ABC):
    """Abstract aggregate store."""

    @abstractmethod
    async def get(self, distribution_id: str) -> Optional[Distribution]:
        pass

    @abstractmethod
    async def insert(self, distribution: Distribution) -> None:
        pass

    @abstractmethod
    async def commit(
        self,
        distribution: Distribution,
        expected_version: int,
        new_history: Sequence[HistoryEntry]
    ) -> bool:
        """
        Write the aggregate's fields and append `new_history`, only if the
        stored version equals `expected_version`.

        Returns:
            True when the write happened, False on a version conflict or
            when the distribution no longer exists.
        """
        pass

    @abstractmethod
    async def delete_draft(self, distribution_id: str, expected_version: int) -> bool:
        pass

    @abstractmethod
    async def next_sequence(self, key: str) -> int:
        """Issue the next number of a monotonically increasing sequence."""
        pass

    async def get_history(self, distribution_id: str) -> Optional[Tuple[HistoryEntry, ...]]:
        distribution = await self.get(distribution_id)
        return distribution.history if distribution else None


# =============================================================================
# IN-MEMORY STORE
# =============================================================================

class InMemoryDistributionStore(DistributionStore):
    """
    In-memory store for testing.

    Records are kept as serialized dicts so callers never share state with the
    store; every `get` returns a fresh aggregate.
    """

    def __init__(self):
        self._records: Dict[str, Dict[str, Any]] = {}
        self._history: Dict[str, List[Dict[str, Any]]] = {}
        self._sequences: Dict[str, int] = {}
        self._lock = asyncio.Lock()

    async def get(self, distribution_id):
        record = self._records.get(distribution_id)
        if record is None:
            return None
        return Distribution.model_validate({**record, "history": list(self._history[distribution_id])})

    async def insert(self, distribution):
        async with self._lock:
            if distribution.id in self._records:
                raise ValueError(f"Distribution {distribution.id} already exists")
            self._records[distribution.id] = _record(distribution)
            self._history[distribution.id] = _history_records(distribution.history)

    async def commit(self, distribution, expected_version, new_history):
        async with self._lock:
            current = self._records.get(distribution.id)
            if current is None or current["version"] != expected_version:
                return False
            self._records[distribution.id] = _record(distribution)
            self._history[distribution.id].extend(_history_records(new_history))
            return True

    async def delete_draft(self, distribution_id, expected_version):
        async with self._lock:
            current = self._records.get(distribution_id)
            if current is None or current["version"] != expected_version or current["status"] != "draft":
                return False
            del self._records[distribution_id]
            del self._history[distribution_id]
            return True

    async def next_sequence(self, key):
        async with self._lock:
            self._sequences[key] = self._sequences.get(key, 0) + 1
            return self._sequences[key]

    def count(self) -> int:
        return len(self._records)


# =============================================================================
# MONGO STORE
# =============================================================================

class MongoDistributionStore(DistributionStore):
    """
    motor-backed store.

    Collections: distributions (aggregate + embedded history), counters.
    """

    def __init__(self, db):
        self.db = db
        self.collection = db.distributions

    async def create_indexes(self) -> None:
        await self.collection.create_index("id", unique=True)
        await self.collection.create_index("distribution_number", unique=True)
        await self.collection.create_index("status")
        await self.collection.create_index("origin_department_id")
        await self.collection.create_index("destination_department_id")
        await self.collection.create_index("created_at")
        logger.info("Distribution indexes created")

    async def get(self, distribution_id):
        record = await self.collection.find_one({"id": distribution_id}, {"_id": 0})
        if record is None:
            return None
        return Distribution.model_validate(record)

    async def insert(self, distribution):
        record = _record(distribution)
        record["history"] = _history_records(distribution.history)
        await self.collection.insert_one(record)

    async def commit(self, distribution, expected_version, new_history):
        update: Dict[str, Any] = {"$set": _record(distribution)}
        if new_history:
            update["$push"] = {"history": {"$each": _history_records(new_history)}}
        result = await self.collection.update_one(
            {"id": distribution.id, "version": expected_version},
            update
        )
        if result.modified_count != 1:
            logger.warning(
                "Distribution commit conflict: id=%s, expected_version=%s",
                distribution.id, expected_version
            )
            return False
        return True

    async def delete_draft(self, distribution_id, expected_version):
        result = await self.collection.delete_one(
            {"id": distribution_id, "version": expected_version, "status": "draft"}
        )
        return result.deleted_count == 1

    async def next_sequence(self, key):
        counter = await self.db.counters.find_one_and_update(
            {"_id": key},
            {"$inc": {"seq": 1}},
            upsert=True,
            return_document=True,
        )
        return counter["seq"]
