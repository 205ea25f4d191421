"""Contract tests run against every OTP store backend."""

from datetime import datetime, timedelta, timezone

import anyio
import fakeredis
import pytest

from app.db.session import create_engine
from app.services.stores import UNCHANGED, DatabaseOTPStore, KeyedLocks, OTPRecord, RedisOTPStore

pytestmark = pytest.mark.anyio

NOW = datetime(2024, 1, 1, 12, 0, tzinfo=timezone.utc)


def make_record(identity="a@x.com", created_at=NOW, **fields) -> OTPRecord:
    return OTPRecord(identity=identity, code_hash="digest", created_at=created_at, **fields)


async def test_get_missing_returns_none(store):
    assert await store.get("nobody@x.com", NOW) is None


async def test_upsert_then_get(store):
    await store.upsert(make_record(), NOW)

    record = await store.get("a@x.com", NOW + timedelta(seconds=1))

    assert record is not None
    assert record.code_hash == "digest"
    assert record.attempts == 0
    assert record.lock_until is None
    assert record.created_at == NOW


async def test_upsert_replaces_existing_record(store):
    await store.upsert(make_record(attempts=4, lock_until=NOW + timedelta(minutes=5)), NOW)
    later = NOW + timedelta(seconds=90)
    await store.upsert(make_record(created_at=later).model_copy(update={"code_hash": "fresh"}), later)

    record = await store.get("a@x.com", later)

    assert record.code_hash == "fresh"
    assert record.attempts == 0
    assert record.lock_until is None


async def test_delete(store):
    await store.upsert(make_record(), NOW)
    await store.delete("a@x.com")
    await store.delete("a@x.com")

    assert await store.get("a@x.com", NOW) is None


async def test_expired_record_is_invisible(store):
    await store.upsert(make_record(), NOW)

    assert await store.get("a@x.com", NOW + timedelta(seconds=599)) is not None
    assert await store.get("a@x.com", NOW + timedelta(seconds=600)) is None


async def test_modify_sees_live_record_and_writes_result(store):
    await store.upsert(make_record(), NOW)

    async def bump(record):
        return record.model_copy(update={"attempts": record.attempts + 1}), record.attempts

    assert await store.modify("a@x.com", NOW, bump) == 0
    assert (await store.get("a@x.com", NOW)).attempts == 1


async def test_modify_none_deletes_and_unchanged_keeps(store):
    await store.upsert(make_record(), NOW)

    async def keep(record):
        return UNCHANGED, "kept"

    async def drop(record):
        return None, "dropped"

    assert await store.modify("a@x.com", NOW, keep) == "kept"
    assert await store.get("a@x.com", NOW) is not None
    assert await store.modify("a@x.com", NOW, drop) == "dropped"
    assert await store.get("a@x.com", NOW) is None


async def test_modify_inserts_when_absent(store):
    async def create(record):
        assert record is None
        return make_record(identity="new@x.com"), None

    await store.modify("new@x.com", NOW, create)

    assert (await store.get("new@x.com", NOW)).identity == "new@x.com"


async def test_modify_passes_none_for_expired_record(store):
    await store.upsert(make_record(), NOW)
    seen = []

    async def observe(record):
        seen.append(record)
        return UNCHANGED, None

    await store.modify("a@x.com", NOW + timedelta(minutes=11), observe)

    assert seen == [None]


async def test_modify_failure_leaves_record_untouched(store):
    await store.upsert(make_record(attempts=2), NOW)

    async def explode(record):
        raise RuntimeError("boom")

    with pytest.raises(RuntimeError):
        await store.modify("a@x.com", NOW, explode)

    assert (await store.get("a@x.com", NOW)).attempts == 2


async def test_concurrent_modifies_do_not_lose_updates(store):
    await store.upsert(make_record(), NOW)

    async def bump(record):
        await anyio.sleep(0)
        return record.model_copy(update={"attempts": record.attempts + 1}), None

    async with anyio.create_task_group() as tg:
        for _ in range(4):
            tg.start_soon(store.modify, "a@x.com", NOW, bump)

    assert (await store.get("a@x.com", NOW)).attempts == 4


async def test_purge_expired_removes_only_old_records(store):
    await store.upsert(make_record(identity="old@x.com", created_at=NOW - timedelta(minutes=15)), NOW)
    await store.upsert(make_record(identity="new@x.com"), NOW)

    purged = await store.purge_expired(NOW)

    assert await store.get("new@x.com", NOW) is not None
    assert await store.get("old@x.com", NOW) is None
    # Redis evicts keys itself, so its sweep has nothing to do.
    assert purged in (0, 1)


async def test_keyed_locks_are_released():
    locks = KeyedLocks()
    async with locks.hold("a"):
        assert len(locks) == 1
    assert len(locks) == 0


async def test_redis_key_expiry_tracks_remaining_ttl():
    client = fakeredis.FakeAsyncRedis(server=fakeredis.FakeServer(), decode_responses=True)
    store = RedisOTPStore(client, 600)
    await store.upsert(make_record(), NOW)

    async def bump(record):
        return record.model_copy(update={"attempts": 1}), None

    await store.modify("a@x.com", NOW + timedelta(seconds=200), bump)

    assert 395 <= await client.ttl("otp:a@x.com") <= 400
    await store.close()


async def test_redis_upsert_expiry_counts_from_now():
    client = fakeredis.FakeAsyncRedis(server=fakeredis.FakeServer(), decode_responses=True)
    store = RedisOTPStore(client, 600)

    await store.upsert(make_record(), NOW + timedelta(seconds=500))

    assert 95 <= await client.ttl("otp:a@x.com") <= 100
    await store.close()


async def test_first_insert_race_between_database_stores(tmp_path):
    url = f"sqlite+aiosqlite:///{tmp_path / 'shared.db'}"
    first = DatabaseOTPStore(create_engine(url), 600)
    second = DatabaseOTPStore(create_engine(url), 600)
    await first.create_schema()

    both_read = anyio.Event()
    readers = []
    results = []

    def issue_once(name):
        calls = 0

        async def mutator(current):
            nonlocal calls
            calls += 1
            if calls == 1:
                # Hold both workers until each has seen the identity as absent.
                readers.append(name)
                if len(readers) == 2:
                    both_read.set()
                await both_read.wait()
            if current is None:
                return make_record(created_at=NOW).model_copy(update={"code_hash": name}), "issued"
            return UNCHANGED, "refused"

        return mutator

    async def run(store, name):
        results.append(await store.modify("a@x.com", NOW, issue_once(name)))

    async with anyio.create_task_group() as tg:
        tg.start_soon(run, first, "first")
        tg.start_soon(run, second, "second")

    assert sorted(results) == ["issued", "refused"]
    assert (await first.get("a@x.com", NOW)).code_hash in ("first", "second")
    await first.close()
    await second.close()
