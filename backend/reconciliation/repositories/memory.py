"""
In-memory session repository for development and tests.
"""

import copy
import uuid
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Tuple

from reconciliation.errors import PersistenceError
from reconciliation.flow_registry import MovementType, SessionStatus
from reconciliation.models import ReconciliationSession, TenantContext
from reconciliation.repositories.base import MOVEMENT_COLLECTIONS, SessionRepository


class InMemorySessionRepository(SessionRepository):
    """Stores deep copies so callers never share state with the store."""

    def __init__(self):
        self._sessions: Dict[str, ReconciliationSession] = {}
        self._movements: Dict[Tuple[str, str], List[Dict[str, Any]]] = {}

    def _matches(self, session: ReconciliationSession, context: TenantContext, movement_type: MovementType) -> bool:
        return (
            session.client_id == context.client_id
            and session.condominium_id == context.condominium_id
            and session.movement_type == MovementType(movement_type)
        )

    async def create_session(self, session: ReconciliationSession) -> ReconciliationSession:
        stored = copy.deepcopy(session)
        stored.id = stored.id or uuid.uuid4().hex
        now = datetime.now(timezone.utc)
        stored.created_at = stored.created_at or now
        stored.updated_at = now
        self._sessions[stored.id] = stored
        return copy.deepcopy(stored)

    async def update_session(self, session: ReconciliationSession) -> ReconciliationSession:
        if session.id not in self._sessions:
            raise PersistenceError(f"Session {session.id} does not exist")
        stored = copy.deepcopy(session)
        stored.updated_at = datetime.now(timezone.utc)
        self._sessions[stored.id] = stored
        return copy.deepcopy(stored)

    async def get_session(
        self,
        context: TenantContext,
        movement_type: MovementType,
        session_id: str,
    ) -> Optional[ReconciliationSession]:
        session = self._sessions.get(session_id)
        if session is None or not self._matches(session, context, movement_type):
            return None
        return copy.deepcopy(session)

    async def find_latest_draft(
        self,
        context: TenantContext,
        movement_type: MovementType,
    ) -> Optional[ReconciliationSession]:
        drafts = [
            s for s in self._sessions.values()
            if self._matches(s, context, movement_type) and s.status == SessionStatus.DRAFT
        ]
        if not drafts:
            return None
        latest = max(drafts, key=lambda s: s.updated_at or s.created_at)
        return copy.deepcopy(latest)

    async def list_sessions(
        self,
        context: TenantContext,
        movement_type: MovementType,
    ) -> List[ReconciliationSession]:
        return [
            copy.deepcopy(s) for s in self._sessions.values()
            if self._matches(s, context, movement_type)
        ]

    async def replace_movements(
        self,
        session_id: str,
        collection_name: str,
        items: List[Dict[str, Any]],
    ) -> None:
        if collection_name not in MOVEMENT_COLLECTIONS:
            raise PersistenceError(f"Unknown movement collection: {collection_name}")
        if session_id not in self._sessions:
            raise PersistenceError(f"Session {session_id} does not exist")
        self._movements[(session_id, collection_name)] = copy.deepcopy(list(items))

    async def load_movements(
        self,
        session_id: str,
        collection_name: str,
    ) -> List[Dict[str, Any]]:
        return copy.deepcopy(self._movements.get((session_id, collection_name), []))
