"""
Workspace Registry

Process-local holder of reconciliation workspaces and history indexes,
one per (client, condominium, flow). Each workspace carries its own
asyncio.Lock so API calls against the same working set run one at a time.
"""

import asyncio
from dataclasses import dataclass, field
from typing import Dict, Optional, Tuple

from reconciliation.flow_registry import MovementType
from reconciliation.loaders import InternalMovementLoader
from reconciliation.models import TenantContext, UploadedCsv
from reconciliation.repositories import SessionRepository
from reconciliation.services.history_service import HistoryService
from reconciliation.services.workspace import ReconciliationWorkspace

WorkspaceKey = Tuple[str, str, MovementType]


@dataclass
class WorkspaceEntry:
    workspace: ReconciliationWorkspace
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    # Last imported statement, kept for optional retention on save_progress
    last_upload: Optional[UploadedCsv] = None


class WorkspaceRegistry:
    def __init__(self):
        self._workspaces: Dict[WorkspaceKey, WorkspaceEntry] = {}
        self._histories: Dict[Tuple[str, str], HistoryService] = {}

    def get(
        self,
        context: TenantContext,
        movement_type: MovementType,
        loader: Optional[InternalMovementLoader] = None,
    ) -> WorkspaceEntry:
        key = (context.client_id, context.condominium_id, MovementType(movement_type))
        entry = self._workspaces.get(key)
        if entry is None:
            entry = WorkspaceEntry(workspace=ReconciliationWorkspace(key[2], loader=loader))
            self._workspaces[key] = entry
        elif loader is not None:
            entry.workspace.loader = loader
        return entry

    def history(self, context: TenantContext, repository: SessionRepository) -> HistoryService:
        key = (context.client_id, context.condominium_id)
        service = self._histories.get(key)
        if service is None:
            service = HistoryService(repository)
            self._histories[key] = service
        else:
            service.repository = repository
        return service

    def mark_history_stale(self, context: TenantContext) -> None:
        """Force the tenant's next history read to re-fetch from the store."""
        service = self._histories.get((context.client_id, context.condominium_id))
        if service is not None:
            service.stale = True

    def clear(self) -> None:
        self._workspaces.clear()
        self._histories.clear()


# Global registry instance
workspace_registry = WorkspaceRegistry()
