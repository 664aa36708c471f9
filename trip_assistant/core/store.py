"""Persistence adapter over a LangGraph ``BaseStore``.

The default ``InMemoryStore`` keeps records for the life of the process;
passing a durable ``BaseStore`` (Postgres, SQLite) lets sessions and profiles
survive restarts without touching the components that use them.
"""

import logging
from typing import Any, Dict, List, Optional, Tuple

from langgraph.store.base import BaseStore
from langgraph.store.memory import InMemoryStore

from trip_assistant.errors import PersistenceError
from trip_assistant.models import ConversationSession

logger = logging.getLogger(__name__)

Namespace = Tuple[str, ...]

PROFILES: Namespace = ("profiles",)
SESSIONS: Namespace = ("sessions", "active")
ARCHIVED_SESSIONS: Namespace = ("sessions", "archived")
BEHAVIOR: Namespace = ("behavior",)
TRACES: Namespace = ("reasoning_traces",)
CONVERSATIONS: Namespace = ("conversations",)
SNAPSHOTS: Namespace = ("context_snapshots",)
TRIP_PLANS: Namespace = ("trip_plans",)


class RecordStore:
    """Whole-record CRUD. Every failure surfaces as ``PersistenceError``."""

    def __init__(self, store: Optional[BaseStore] = None):
        self._store = store if store is not None else InMemoryStore()

    async def load(self, namespace: Namespace, key: str) -> Optional[Dict[str, Any]]:
        try:
            item = await self._store.aget(namespace, key)
        except Exception as exc:
            raise PersistenceError(f"read {'/'.join(namespace)}/{key} failed: {exc}") from exc
        return None if item is None else dict(item.value)

    async def save(self, namespace: Namespace, key: str, value: Dict[str, Any]) -> None:
        try:
            await self._store.aput(namespace, key, value)
        except Exception as exc:
            raise PersistenceError(f"write {'/'.join(namespace)}/{key} failed: {exc}") from exc

    async def delete(self, namespace: Namespace, key: str) -> None:
        try:
            await self._store.adelete(namespace, key)
        except Exception as exc:
            raise PersistenceError(f"delete {'/'.join(namespace)}/{key} failed: {exc}") from exc

    async def query(
        self,
        namespace: Namespace,
        *,
        filter: Optional[Dict[str, Any]] = None,
        limit: int = 100,
    ) -> List[Dict[str, Any]]:
        try:
            items = await self._store.asearch(namespace, filter=filter, limit=limit)
        except Exception as exc:
            raise PersistenceError(f"search {'/'.join(namespace)} failed: {exc}") from exc
        return [dict(item.value) for item in items]


class SessionStore:
    """Active session per participant, plus an archive of ended sessions."""

    def __init__(self, records: RecordStore):
        self._records = records

    async def get_active(self, participant_id: str) -> Optional[ConversationSession]:
        data = await self._records.load(SESSIONS, participant_id)
        if data is None:
            return None
        return ConversationSession.model_validate(data)

    async def save(self, session: ConversationSession) -> None:
        await self._records.save(SESSIONS, session.participant_id, session.model_dump(mode="json"))

    async def archive(self, session: ConversationSession) -> None:
        archived = session.model_copy(update={"archived": True})
        await self._records.save(ARCHIVED_SESSIONS, archived.id, archived.model_dump(mode="json"))
        await self._records.delete(SESSIONS, session.participant_id)
        logger.info("Archived session %s for participant %s (%s)", session.id, session.participant_id, session.ended_reason)

    async def get_archived(self, session_id: str) -> Optional[ConversationSession]:
        data = await self._records.load(ARCHIVED_SESSIONS, session_id)
        return None if data is None else ConversationSession.model_validate(data)
