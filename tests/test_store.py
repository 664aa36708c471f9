import asyncio

import pytest
from langgraph.store.memory import InMemoryStore

from trip_assistant.core.locks import KeyedLock
from trip_assistant.core.store import PROFILES, SESSIONS, RecordStore, SessionStore
from trip_assistant.errors import PersistenceError
from trip_assistant.models import ConversationSession, ConversationState


class OfflineStore(InMemoryStore):
    def batch(self, ops):
        raise RuntimeError("connection lost")

    async def abatch(self, ops):
        raise RuntimeError("connection lost")


@pytest.mark.asyncio
async def test_record_roundtrip_and_delete(records):
    await records.save(PROFILES, "u1", {"user_id": "u1", "budget_range": "low"})

    assert await records.load(PROFILES, "u1") == {"user_id": "u1", "budget_range": "low"}
    await records.delete(PROFILES, "u1")
    assert await records.load(PROFILES, "u1") is None


@pytest.mark.asyncio
async def test_query_filters_on_fields(records):
    await records.save(PROFILES, "u1", {"user_id": "u1", "group_size": "family"})
    await records.save(PROFILES, "u2", {"user_id": "u2", "group_size": "solo"})

    rows = await records.query(PROFILES, filter={"group_size": "family"})

    assert [r["user_id"] for r in rows] == ["u1"]


@pytest.mark.asyncio
async def test_store_failures_become_persistence_errors():
    records = RecordStore(OfflineStore())

    with pytest.raises(PersistenceError):
        await records.load(PROFILES, "u1")
    with pytest.raises(PersistenceError):
        await records.save(PROFILES, "u1", {})
    with pytest.raises(PersistenceError):
        await records.query(PROFILES)


@pytest.mark.asyncio
async def test_session_archive_moves_the_record(records):
    sessions = SessionStore(records)
    session = ConversationSession(participant_id="p1", state=ConversationState.ENDED, ended_reason="user")
    await sessions.save(session)

    assert (await sessions.get_active("p1")).id == session.id

    await sessions.archive(session)

    assert await sessions.get_active("p1") is None
    assert await records.load(SESSIONS, "p1") is None
    archived = await sessions.get_archived(session.id)
    assert archived.archived is True
    assert archived.ended_reason == "user"


@pytest.mark.asyncio
async def test_keyed_lock_serializes_one_key():
    lock = KeyedLock()
    order = []

    async def worker(key, label):
        async with lock.hold(key):
            order.append(f"{label}-in")
            await asyncio.sleep(0.01)
            order.append(f"{label}-out")

    await asyncio.gather(worker("a", "first"), worker("a", "second"))

    assert order == ["first-in", "first-out", "second-in", "second-out"]
    assert len(lock) == 0


@pytest.mark.asyncio
async def test_keyed_lock_keys_are_independent():
    lock = KeyedLock()
    order = []

    async def worker(key):
        async with lock.hold(key):
            order.append(f"{key}-in")
            await asyncio.sleep(0.01)
            order.append(f"{key}-out")

    await asyncio.gather(worker("a"), worker("b"))

    assert order[:2] == ["a-in", "b-in"]
