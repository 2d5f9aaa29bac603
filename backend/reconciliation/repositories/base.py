"""
Session Repository Contract

Storage-agnostic persistence for reconciliation sessions and their
movement collections. Implementations raise PersistenceError on any
backing-store failure.
"""

from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional

from reconciliation.flow_registry import MovementType
from reconciliation.models import ReconciliationSession, TenantContext

BANK_MOVEMENTS = "bankMovements"
INTERNAL_MOVEMENTS = "internalMovements"
MOVEMENT_COLLECTIONS = (BANK_MOVEMENTS, INTERNAL_MOVEMENTS)


class SessionRepository(ABC):

    @abstractmethod
    async def create_session(self, session: ReconciliationSession) -> ReconciliationSession:
        """Insert a new session document and return it with its assigned id."""

    @abstractmethod
    async def update_session(self, session: ReconciliationSession) -> ReconciliationSession:
        """Overwrite the document with session.id (movement collections untouched)."""

    @abstractmethod
    async def get_session(
        self,
        context: TenantContext,
        movement_type: MovementType,
        session_id: str,
    ) -> Optional[ReconciliationSession]:
        ...

    @abstractmethod
    async def find_latest_draft(
        self,
        context: TenantContext,
        movement_type: MovementType,
    ) -> Optional[ReconciliationSession]:
        """Most recently updated draft for the tenant and flow."""

    @abstractmethod
    async def list_sessions(
        self,
        context: TenantContext,
        movement_type: MovementType,
    ) -> List[ReconciliationSession]:
        """All session documents for the tenant and flow, without child collections."""

    @abstractmethod
    async def replace_movements(
        self,
        session_id: str,
        collection_name: str,
        items: List[Dict[str, Any]],
    ) -> None:
        """Delete every document in the collection, then insert items in order."""

    @abstractmethod
    async def load_movements(
        self,
        session_id: str,
        collection_name: str,
    ) -> List[Dict[str, Any]]:
        ...
