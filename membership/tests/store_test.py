"""
Unit tests for record persistence, optimistic version checks and per-user locking
"""
import asyncio
from unittest.mock import MagicMock

import pytest
from postgrest.exceptions import APIError

from membership.errors import VersionConflict
from membership.models import SubscriptionRecord, Tier
from membership.store import (
    InMemoryEventLedger,
    InMemorySubscriptionStore,
    SupabaseSubscriptionStore,
    UserLocks,
    mutate,
)
from membership.tests.conftest import paid_record


@pytest.mark.asyncio
async def test_insert_then_replace_bumps_version(store):
    inserted = await store.insert(SubscriptionRecord.basic("user_1"))
    assert inserted.version == 1

    replaced = await store.replace(inserted.evolve(external_customer_id="cus_1"), expected_version=1)
    assert replaced.version == 2
    assert (await store.get("user_1")).external_customer_id == "cus_1"
    assert (await store.find_by_customer("cus_1")).user_id == "user_1"


@pytest.mark.asyncio
async def test_insert_duplicate_conflicts(store):
    await store.insert(SubscriptionRecord.basic("user_1"))
    with pytest.raises(VersionConflict):
        await store.insert(SubscriptionRecord.basic("user_1"))


@pytest.mark.asyncio
async def test_replace_with_stale_version_conflicts(store):
    record = await store.insert(SubscriptionRecord.basic("user_1"))
    await store.replace(record, expected_version=1)
    with pytest.raises(VersionConflict):
        await store.replace(record.evolve(external_customer_id="cus_stale"), expected_version=1)
    assert (await store.get("user_1")).external_customer_id is None


@pytest.mark.asyncio
async def test_find_by_subscription():
    store = InMemorySubscriptionStore([paid_record()])
    assert (await store.find_by_subscription("sub_elite")).user_id == "user_1"
    assert await store.find_by_subscription("sub_other") is None
    assert await store.find_by_subscription(None) is None


@pytest.mark.asyncio
async def test_mutate_recomputes_after_conflict(locks):
    """A write that loses the version race is recomputed against the fresh record"""

    class RacingStore(InMemorySubscriptionStore):
        raced = False

        async def replace(self, record, expected_version):
            if not self.raced:
                self.raced = True
                current = self._records[record.user_id]
                # Another process writes between our read and our write
                self._records[record.user_id] = current.evolve(
                    version=current.version + 1, external_customer_id="cus_other_writer"
                )
            return await super().replace(record, expected_version)

    store = RacingStore([SubscriptionRecord.basic("user_1", version=1)])
    seen = []

    def compute(current):
        seen.append(current.external_customer_id)
        return current.evolve(provider_event_ts=(current.provider_event_ts or 0) + 1)

    result = await mutate(store, locks, "user_1", compute)
    assert seen == [None, "cus_other_writer"]
    assert result.external_customer_id == "cus_other_writer"
    assert result.provider_event_ts == 1
    assert result.version == 3


@pytest.mark.asyncio
async def test_mutate_gives_up_after_attempts(locks):
    class AlwaysConflicting(InMemorySubscriptionStore):
        async def replace(self, record, expected_version):
            raise VersionConflict("always")

    store = AlwaysConflicting([SubscriptionRecord.basic("user_1", version=1)])
    with pytest.raises(VersionConflict):
        await mutate(store, locks, "user_1", lambda current: current.evolve(provider_event_ts=1), attempts=3)


@pytest.mark.asyncio
async def test_mutate_none_means_no_write(store, locks):
    await store.insert(SubscriptionRecord.basic("user_1"))
    result = await mutate(store, locks, "user_1", lambda current: None)
    assert result.version == 1


@pytest.mark.asyncio
async def test_concurrent_mutations_do_not_lose_updates(store, locks):
    """Many concurrent read-compute-write cycles on one user all land"""
    await store.insert(SubscriptionRecord.basic("user_1"))

    def increment(current):
        return current.evolve(provider_event_ts=(current.provider_event_ts or 0) + 1)

    async def slow_increment():
        await asyncio.sleep(0)
        return await mutate(store, locks, "user_1", increment)

    await asyncio.gather(*(slow_increment() for _ in range(25)))
    record = await store.get("user_1")
    assert record.provider_event_ts == 25
    assert record.version == 26


@pytest.mark.asyncio
async def test_user_lock_serializes_one_user():
    locks = UserLocks()
    order = []

    async def worker(name):
        async with locks.lock("a"):
            order.append(f"{name}-in")
            await asyncio.sleep(0)
            order.append(f"{name}-out")

    await asyncio.gather(worker(1), worker(2))
    assert order == ["1-in", "1-out", "2-in", "2-out"]


@pytest.mark.asyncio
async def test_user_locks_are_dropped_when_idle():
    """Registry only holds users with a holder or a waiter"""
    locks = UserLocks()
    async with locks.lock("a"):
        async with locks.lock("b"):
            assert "a" in locks and "b" in locks
        assert "b" not in locks
    assert "a" not in locks


@pytest.mark.asyncio
async def test_mutate_leaves_no_locks_behind(store, locks):
    for user_id in ("user_1", "user_2", "user_3"):
        await mutate(store, locks, user_id, lambda current, uid=user_id: SubscriptionRecord.basic(uid))
    assert not any(user_id in locks for user_id in ("user_1", "user_2", "user_3"))


@pytest.mark.asyncio
async def test_event_ledger():
    ledger = InMemoryEventLedger()
    assert not await ledger.seen("evt_1")
    await ledger.mark_processed("evt_1", "customer.subscription.updated")
    assert await ledger.seen("evt_1")


class TestSupabaseSubscriptionStore:
    """Supabase store against a mocked client; the query chain is what matters"""

    @staticmethod
    def row(**overrides):
        row = paid_record().model_dump(mode="json")
        row.update(overrides)
        return row

    @pytest.mark.asyncio
    async def test_get_returns_none_on_zero_rows(self):
        client = MagicMock()
        client.table.return_value.select.return_value.eq.return_value.limit.return_value.execute.return_value.data = []

        assert await SupabaseSubscriptionStore(client).get("user_1") is None
        client.table.assert_called_with("subscription_records")

    @pytest.mark.asyncio
    async def test_find_by_subscription_parses_row(self):
        client = MagicMock()
        query = client.table.return_value.select.return_value
        query.eq.return_value.limit.return_value.execute.return_value.data = [self.row()]

        record = await SupabaseSubscriptionStore(client).find_by_subscription("sub_elite")

        query.eq.assert_called_with("external_subscription_id", "sub_elite")
        assert record.tier == Tier.ELITE
        assert record.external_customer_id == "cus_1"

    @pytest.mark.asyncio
    async def test_replace_is_guarded_by_version(self):
        client = MagicMock()
        update = client.table.return_value.update
        update.return_value.eq.return_value.eq.return_value.execute.return_value.data = [self.row(version=4)]

        stored = await SupabaseSubscriptionStore(client).replace(paid_record(version=3), expected_version=3)

        assert stored.version == 4
        row = update.call_args.args[0]
        assert row["version"] == 4
        assert "created_at" not in row
        update.return_value.eq.assert_called_with("user_id", "user_1")
        update.return_value.eq.return_value.eq.assert_called_with("version", 3)

    @pytest.mark.asyncio
    async def test_replace_with_no_matching_row_conflicts(self):
        client = MagicMock()
        client.table.return_value.update.return_value.eq.return_value.eq.return_value.execute.return_value.data = []

        with pytest.raises(VersionConflict):
            await SupabaseSubscriptionStore(client).replace(paid_record(), expected_version=1)

    @pytest.mark.asyncio
    async def test_insert_duplicate_conflicts(self):
        client = MagicMock()
        client.table.return_value.insert.return_value.execute.side_effect = APIError(
            {"code": "23505", "message": "duplicate key value violates unique constraint"}
        )

        with pytest.raises(VersionConflict):
            await SupabaseSubscriptionStore(client).insert(SubscriptionRecord.basic("user_1"))
