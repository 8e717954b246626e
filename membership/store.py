"""
SubscriptionRecord persistence
In-memory and Supabase stores, per-user locks, optimistic version checks and
the processed webhook event ledger.

Every write replaces the whole record and is guarded by the version that was
read, so a webhook handler and a reconciliation read-repair can never
interleave their field updates.
"""
import asyncio
import logging
from abc import ABC, abstractmethod
from contextlib import asynccontextmanager
from typing import AsyncIterator, Callable, Dict, Iterable, Optional, Set

from postgrest.exceptions import APIError
from supabase import Client

from membership.errors import VersionConflict
from membership.models import SubscriptionRecord
from membership.utils.time import utcnow

logger = logging.getLogger(__name__)

RECORDS_TABLE = "subscription_records"
PROCESSED_EVENTS_TABLE = "processed_webhook_events"

# Postgres unique_violation
_UNIQUE_VIOLATION = "23505"

Compute = Callable[[Optional[SubscriptionRecord]], Optional[SubscriptionRecord]]


class SubscriptionStore(ABC):
    """Durable store holding exactly one SubscriptionRecord per user"""

    @abstractmethod
    async def get(self, user_id: str) -> Optional[SubscriptionRecord]:
        ...

    @abstractmethod
    async def find_by_customer(self, customer_id: str) -> Optional[SubscriptionRecord]:
        ...

    @abstractmethod
    async def find_by_subscription(self, subscription_id: str) -> Optional[SubscriptionRecord]:
        ...

    @abstractmethod
    async def insert(self, record: SubscriptionRecord) -> SubscriptionRecord:
        """Store a new record at version 1. Raises VersionConflict if the user already has one."""

    @abstractmethod
    async def replace(self, record: SubscriptionRecord, expected_version: int) -> SubscriptionRecord:
        """Overwrite the stored record if its version is still expected_version.

        Returns the stored copy (version incremented). Raises VersionConflict otherwise.
        """


class InMemorySubscriptionStore(SubscriptionStore):
    """Process-local store for tests and local development"""

    def __init__(self, records: Optional[Iterable[SubscriptionRecord]] = None):
        self._records: Dict[str, SubscriptionRecord] = {}
        for record in records or []:
            self._records[record.user_id] = record

    async def get(self, user_id):
        return self._records.get(user_id)

    async def find_by_customer(self, customer_id):
        if not customer_id:
            return None
        for record in self._records.values():
            if record.external_customer_id == customer_id:
                return record
        return None

    async def find_by_subscription(self, subscription_id):
        if not subscription_id:
            return None
        for record in self._records.values():
            if record.external_subscription_id == subscription_id:
                return record
        return None

    async def insert(self, record):
        if record.user_id in self._records:
            raise VersionConflict(f"Record for user {record.user_id} already exists")
        now = utcnow()
        stored = record.evolve(version=1, created_at=now, updated_at=now)
        self._records[record.user_id] = stored
        return stored

    async def replace(self, record, expected_version):
        current = self._records.get(record.user_id)
        if current is None or current.version != expected_version:
            raise VersionConflict(
                f"Record for user {record.user_id} changed (expected version {expected_version})"
            )
        stored = record.evolve(version=expected_version + 1, created_at=current.created_at, updated_at=utcnow())
        self._records[record.user_id] = stored
        return stored


class SupabaseSubscriptionStore(SubscriptionStore):
    """Store backed by the `subscription_records` table.

    Backend uses the SERVICE_ROLE_KEY so writes are not blocked by RLS policies.
    The version column is the compare-and-set guard for replace().
    """

    def __init__(self, client: Client):
        self._client = client

    def _table(self):
        return self._client.table(RECORDS_TABLE)

    def _one(self, column: str, value: str) -> Optional[SubscriptionRecord]:
        # Plain select instead of maybe_single() to avoid 406 responses on zero rows
        response = self._table().select("*").eq(column, value).limit(1).execute()
        if not response.data:
            return None
        return SubscriptionRecord.model_validate(response.data[0])

    async def get(self, user_id):
        return self._one("user_id", user_id)

    async def find_by_customer(self, customer_id):
        if not customer_id:
            return None
        return self._one("external_customer_id", customer_id)

    async def find_by_subscription(self, subscription_id):
        if not subscription_id:
            return None
        return self._one("external_subscription_id", subscription_id)

    async def insert(self, record):
        now = utcnow()
        stored = record.evolve(version=1, created_at=now, updated_at=now)
        try:
            self._table().insert(stored.model_dump(mode="json")).execute()
        except APIError as e:
            if getattr(e, "code", None) == _UNIQUE_VIOLATION:
                raise VersionConflict(f"Record for user {record.user_id} already exists") from e
            raise
        return stored

    async def replace(self, record, expected_version):
        stored = record.evolve(version=expected_version + 1, updated_at=utcnow())
        row = stored.model_dump(mode="json", exclude={"created_at"})
        response = (
            self._table()
            .update(row)
            .eq("user_id", record.user_id)
            .eq("version", expected_version)
            .execute()
        )
        if not response.data:
            raise VersionConflict(
                f"Record for user {record.user_id} changed (expected version {expected_version})"
            )
        return SubscriptionRecord.model_validate(response.data[0])


class UserLocks:
    """Registry of per-user asyncio locks serializing mutations within this process.

    A user's lock is dropped once nobody holds or waits for it.
    """

    def __init__(self):
        self._locks: Dict[str, asyncio.Lock] = {}
        self._users: Dict[str, int] = {}

    def __contains__(self, user_id: str) -> bool:
        return user_id in self._locks

    @asynccontextmanager
    async def lock(self, user_id: str) -> AsyncIterator[None]:
        lock = self._locks.setdefault(user_id, asyncio.Lock())
        self._users[user_id] = self._users.get(user_id, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._users[user_id] -= 1
            if not self._users[user_id]:
                del self._users[user_id]
                del self._locks[user_id]


async def mutate(
    store: SubscriptionStore,
    locks: UserLocks,
    user_id: str,
    compute: Compute,
    attempts: int = 5,
) -> Optional[SubscriptionRecord]:
    """Read-compute-write one user's record.

    `compute` receives the current record (or None) and returns the complete
    new record, or None when nothing should change. On a version conflict the
    record is re-read and `compute` runs again against the fresh state.
    Returns the stored record (the current one when nothing changed).
    """
    async with locks.lock(user_id):
        for attempt in range(1, attempts + 1):
            current = await store.get(user_id)
            proposed = compute(current)
            if proposed is None:
                return current
            try:
                if current is None:
                    return await store.insert(proposed)
                return await store.replace(proposed, expected_version=current.version)
            except VersionConflict as e:
                logger.info("Version conflict for user %s (attempt %d/%d): %s", user_id, attempt, attempts, e)
        raise VersionConflict(f"Record for user {user_id} kept changing after {attempts} attempts")


# ========== Webhook event ledger ==========

class ProcessedEventLedger(ABC):
    """Remembers webhook event ids that were fully processed"""

    @abstractmethod
    async def seen(self, event_id: str) -> bool:
        ...

    @abstractmethod
    async def mark_processed(self, event_id: str, event_type: str) -> None:
        ...


class InMemoryEventLedger(ProcessedEventLedger):
    def __init__(self):
        self._ids: Set[str] = set()

    async def seen(self, event_id):
        return event_id in self._ids

    async def mark_processed(self, event_id, event_type):
        self._ids.add(event_id)


class SupabaseEventLedger(ProcessedEventLedger):
    """Ledger stored in the `processed_webhook_events` table (event_id primary key)"""

    def __init__(self, client: Client):
        self._client = client

    async def seen(self, event_id):
        response = (
            self._client.table(PROCESSED_EVENTS_TABLE)
            .select("event_id")
            .eq("event_id", event_id)
            .limit(1)
            .execute()
        )
        return bool(response.data)

    async def mark_processed(self, event_id, event_type):
        self._client.table(PROCESSED_EVENTS_TABLE).upsert({
            "event_id": event_id,
            "event_type": event_type,
            "processed_at": utcnow().isoformat(),
        }).execute()
