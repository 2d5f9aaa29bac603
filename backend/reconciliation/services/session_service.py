"""
Reconciliation Session Service

Persists a workspace as a resumable draft or a completed session:
- save_progress: create or update a draft, optionally retaining the CSV
- resume_latest_draft / resume_draft_by_id: rehydrate a workspace
- save_session: stamp a traceability hash, complete, notify on net difference

Every write is followed by an audit entry. Identity is validated
before any write; store failures surface as PersistenceError and leave
the working set untouched.
"""

import json
import logging
import time
import zlib
from dataclasses import replace
from datetime import date, datetime, timezone
from decimal import Decimal
from typing import Dict, Any, List, Optional

from config import get_settings
from reconciliation.errors import (
    ReconciliationError,
    ValidationError,
    NotFoundError,
    PersistenceError,
)
from reconciliation.flow_registry import (
    FlowConfig,
    SessionStatus,
    SessionAction,
    flow_registry,
)
from reconciliation.models import (
    BankMovement,
    CsvSource,
    DateRange,
    InternalMovement,
    ReconciliationSession,
    ReconciliationSummary,
    RecentSession,
    ResumedDraft,
    TenantContext,
    UploadedCsv,
)
from reconciliation.repositories import (
    SessionRepository,
    BANK_MOVEMENTS,
    INTERNAL_MOVEMENTS,
)
from reconciliation.services.workspace import ReconciliationWorkspace
from reconciliation.summary import build_summary, matched_count
from services.audit import AuditAction, AuditLogger
from services.file_storage import FileStore, FileStoreError
from services.notifications import (
    NotificationEmitter,
    NotificationEvent,
    NotificationEventType,
    NotificationPriority,
)

logger = logging.getLogger(__name__)

SESSION_SCHEMA_VERSION = 1
TRACE_SOURCE = "manual_csv_reconciliation"


class ReconciliationAuditEvent:
    """Log event names for session lifecycle operations."""
    DRAFT_SAVED = "reconciliation.draft_saved"
    DRAFT_RESUMED = "reconciliation.draft_resumed"
    SESSION_COMPLETED = "reconciliation.session_completed"
    NET_DIFFERENCE_NOTIFIED = "reconciliation.net_difference_notified"


def log_reconciliation_event(
    event_type: str,
    context: TenantContext,
    details: Dict[str, Any],
    session_id: Optional[str] = None,
):
    """Log session lifecycle event for the application log."""
    log_entry = {
        "event": event_type,
        "client_id": context.client_id,
        "condominium_id": context.condominium_id,
        "session_id": session_id,
        "details": details,
        "actor": context.user_id or "system",
        "timestamp": datetime.now(timezone.utc).isoformat()
    }
    logger.info(f"Reconciliation event: {event_type}", extra=log_entry)


def compute_snapshot_hash(
    summary: ReconciliationSummary,
    bank_count: int,
    internal_count: int,
    matched: int,
) -> str:
    """
    Non-cryptographic checksum (CRC-32) over a canonical JSON rendering
    of the summary and movement counts. An integrity signal only.
    """
    payload = json.dumps(
        {
            "summary": summary.to_dict(),
            "bank_count": bank_count,
            "internal_count": internal_count,
            "matched_count": matched,
        },
        sort_keys=True,
        separators=(",", ":"),
    )
    return f"h{zlib.crc32(payload.encode('utf-8')):08x}"


def format_amount(value: Decimal) -> str:
    return f"{value:,.2f}"


class SessionService:
    """
    Session lifecycle manager for reconciliation workspaces.
    """

    def __init__(
        self,
        repository: SessionRepository,
        audit_logger: AuditLogger,
        notifier: NotificationEmitter,
        file_store: Optional[FileStore] = None,
    ):
        self.repository = repository
        self.audit_logger = audit_logger
        self.notifier = notifier
        self.file_store = file_store

    # ==================== HELPERS ====================

    def _flow(self, workspace: ReconciliationWorkspace) -> FlowConfig:
        return flow_registry.get_config(workspace.movement_type)

    def _traceability(
        self,
        bank: List[BankMovement],
        internal: List[InternalMovement],
        action: SessionAction,
        snapshot_hash: Optional[str] = None,
    ) -> Dict[str, Any]:
        trace = {
            "bank_movements_count": len(bank),
            "internal_movements_count": len(internal),
            "matched_movements_count": matched_count(bank),
            "source": TRACE_SOURCE,
            "last_action": action.value,
        }
        if snapshot_hash is not None:
            trace["snapshot_hash"] = snapshot_hash
        return trace

    async def _replace_snapshot(
        self,
        session_id: str,
        bank: List[BankMovement],
        internal: List[InternalMovement],
    ) -> None:
        await self.repository.replace_movements(session_id, BANK_MOVEMENTS, [m.to_dict() for m in bank])
        await self.repository.replace_movements(session_id, INTERNAL_MOVEMENTS, [m.to_dict() for m in internal])

    async def _load_active(
        self,
        workspace: ReconciliationWorkspace,
        context: TenantContext,
    ) -> Optional[ReconciliationSession]:
        if not workspace.active_session_id:
            return None
        existing = await self.repository.get_session(
            context, workspace.movement_type, workspace.active_session_id
        )
        if existing is None:
            raise NotFoundError(
                "The active reconciliation session no longer exists",
                details={"session_id": workspace.active_session_id},
            )
        if existing.status == SessionStatus.COMPLETED:
            raise ValidationError(
                "Completed reconciliation sessions cannot be modified",
                details={"session_id": existing.id},
            )
        return existing

    async def _retain_csv(
        self,
        workspace: ReconciliationWorkspace,
        context: TenantContext,
        csv_file: UploadedCsv,
    ) -> CsvSource:
        if self.file_store is None:
            raise PersistenceError("No file store configured for CSV retention")
        folder = workspace.active_session_id or str(time.time_ns() // 1_000_000)
        path = (
            f"{context.scope_path}/reconciliations/"
            f"{workspace.movement_type.value}/{folder}/source.csv"
        )
        try:
            stored = await self.file_store.save(
                path,
                csv_file.content,
                csv_file.file_name or "source.csv",
                csv_file.content_type or "text/csv",
            )
        except FileStoreError as e:
            raise PersistenceError("Failed to retain the CSV file", details={"path": path}) from e
        return CsvSource(file_ref=stored.file_ref, file_name=stored.file_name, size=stored.size)

    async def _run(self, workspace: ReconciliationWorkspace, coro):
        """Await a lifecycle step, recording any failure on the workspace."""
        workspace.error = None
        try:
            return await coro
        except ReconciliationError as e:
            logger.error(f"Reconciliation session operation failed: {e.message}", extra={"details": e.details})
            workspace.record_error(e)
            raise

    # ==================== SAVE PROGRESS ====================

    async def save_progress(
        self,
        workspace: ReconciliationWorkspace,
        context: TenantContext,
        name: str = "",
        date_from: Optional[date] = None,
        date_to: Optional[date] = None,
        csv_file: Optional[UploadedCsv] = None,
    ) -> ReconciliationSession:
        """
        Persist the working set as a draft.

        Creates a draft when the workspace has no active session,
        otherwise updates that draft in place.

        Raises:
            ContextError: tenant or user identity missing
            ValidationError: the active session is already completed
            NotFoundError: the active session was deleted
            PersistenceError: the store or file store failed
        """
        return await self._run(
            workspace,
            self._save_progress(workspace, context, name, date_from, date_to, csv_file),
        )

    async def _save_progress(
        self,
        workspace: ReconciliationWorkspace,
        context: TenantContext,
        name: str,
        date_from: Optional[date],
        date_to: Optional[date],
        csv_file: Optional[UploadedCsv],
    ) -> ReconciliationSession:
        context.require(need_user=True)
        flow = self._flow(workspace)

        bank = list(workspace.bank_movements)
        internal = list(workspace.internal_movements)
        summary = workspace.summary

        existing = await self._load_active(workspace, context)
        csv_source = await self._retain_csv(workspace, context, csv_file) if csv_file else None

        session = ReconciliationSession(
            id=existing.id if existing else "",
            name=(name or "").strip() or flow.default_draft_name,
            movement_type=workspace.movement_type,
            status=SessionStatus.DRAFT,
            client_id=context.client_id,
            condominium_id=context.condominium_id,
            version=SESSION_SCHEMA_VERSION,
            date_range=DateRange(date_from, date_to),
            summary=summary,
            traceability=self._traceability(bank, internal, SessionAction.SAVE_DRAFT),
            created_by=(
                existing.created_by if existing
                else {"id": context.user_id, "role": context.user_role}
            ),
            created_at=existing.created_at if existing else None,
            csv_source=csv_source or (existing.csv_source if existing else None),
        )

        if existing:
            saved = await self.repository.update_session(session)
            audit_summary = f"Se actualizó borrador de conciliación de {flow.label}"
        else:
            saved = await self.repository.create_session(session)
            # Bind right away so a retry after a partial failure updates this draft
            workspace.active_session_id = saved.id
            audit_summary = f"Se creó borrador de conciliación de {flow.label}"

        await self._replace_snapshot(saved.id, bank, internal)

        self.audit_logger.log(
            module=flow.audit_module,
            entity_type=flow.entity_type,
            entity_id=saved.id,
            action=AuditAction.SAVE_DRAFT,
            summary=audit_summary,
            metadata={
                "bank_movements_count": len(bank),
                "internal_movements_count": len(internal),
                "date_from": date_from.isoformat() if date_from else "",
                "date_to": date_to.isoformat() if date_to else "",
            },
            performed_by={"id": context.user_id, "role": context.user_role},
            client_id=context.client_id,
            condominium_id=context.condominium_id,
        )
        log_reconciliation_event(
            ReconciliationAuditEvent.DRAFT_SAVED,
            context,
            {"created": existing is None, "bank_movements_count": len(bank)},
            session_id=saved.id,
        )
        return saved

    # ==================== RESUME ====================

    async def resume_latest_draft(
        self,
        workspace: ReconciliationWorkspace,
        context: TenantContext,
    ) -> Optional[ResumedDraft]:
        """Rehydrate the most recently updated draft; None when there is none."""
        async def _resume():
            context.require()
            draft = await self.repository.find_latest_draft(context, workspace.movement_type)
            if draft is None:
                return None
            return await self._hydrate_workspace(workspace, context, draft)

        return await self._run(workspace, _resume())

    async def resume_draft_by_id(
        self,
        workspace: ReconciliationWorkspace,
        context: TenantContext,
        session_id: str,
    ) -> Optional[ResumedDraft]:
        """Rehydrate a specific draft; None when it is missing or not a draft."""
        async def _resume():
            context.require()
            draft = await self.repository.get_session(context, workspace.movement_type, session_id)
            if draft is None or draft.status != SessionStatus.DRAFT:
                logger.info(
                    f"Draft {session_id} not available for resume",
                    extra={"found": draft is not None},
                )
                return None
            return await self._hydrate_workspace(workspace, context, draft)

        return await self._run(workspace, _resume())

    async def load_snapshot(self, session: ReconciliationSession):
        """Movement snapshot of a session: inline arrays when present, else child collections."""
        if session.has_inline_movements:
            return list(session.bank_movements), list(session.internal_movements)
        bank_raw = await self.repository.load_movements(session.id, BANK_MOVEMENTS)
        internal_raw = await self.repository.load_movements(session.id, INTERNAL_MOVEMENTS)
        return (
            [BankMovement.from_dict(item) for item in bank_raw],
            [InternalMovement.from_dict(item) for item in internal_raw],
        )

    async def _hydrate_workspace(
        self,
        workspace: ReconciliationWorkspace,
        context: TenantContext,
        draft: ReconciliationSession,
    ) -> ResumedDraft:
        bank, internal = await self.load_snapshot(draft)
        workspace.restore(bank, internal, draft.id)

        if workspace.summary != draft.summary:
            logger.warning(
                f"Stored summary of draft {draft.id} differs from its movement snapshot",
                extra={"stored": draft.summary.to_dict(), "computed": workspace.summary.to_dict()},
            )

        log_reconciliation_event(
            ReconciliationAuditEvent.DRAFT_RESUMED,
            context,
            {"bank_movements_count": len(bank), "internal_movements_count": len(internal)},
            session_id=draft.id,
        )
        return ResumedDraft(
            id=draft.id,
            name=draft.name,
            date_from=draft.date_range.date_from,
            date_to=draft.date_range.date_to,
        )

    # ==================== SAVE SESSION ====================

    async def save_session(
        self,
        workspace: ReconciliationWorkspace,
        context: TenantContext,
        name: str = "",
    ) -> ReconciliationSession:
        """
        Complete the reconciliation.

        The session becomes immutable, the workspace's active session is
        cleared, and a net-difference notification is emitted when the
        unmatched difference is not zero.

        Raises:
            ContextError: tenant or user identity missing
            ValidationError: the active session is already completed
            NotFoundError: the active session was deleted
            PersistenceError: the store failed
        """
        return await self._run(workspace, self._save_session(workspace, context, name))

    async def _save_session(
        self,
        workspace: ReconciliationWorkspace,
        context: TenantContext,
        name: str,
    ) -> ReconciliationSession:
        context.require(need_user=True)
        flow = self._flow(workspace)

        bank = list(workspace.bank_movements)
        internal = list(workspace.internal_movements)
        summary = build_summary(bank, internal)
        session_name = (name or "").strip() or (
            f"{flow.default_session_prefix} {datetime.now(timezone.utc).isoformat()}"
        )
        snapshot_hash = compute_snapshot_hash(summary, len(bank), len(internal), matched_count(bank))

        existing = await self._load_active(workspace, context)

        session = ReconciliationSession(
            id=existing.id if existing else "",
            name=session_name,
            movement_type=workspace.movement_type,
            status=SessionStatus.COMPLETED,
            client_id=context.client_id,
            condominium_id=context.condominium_id,
            version=SESSION_SCHEMA_VERSION,
            date_range=existing.date_range if existing else DateRange(),
            summary=summary,
            traceability=self._traceability(bank, internal, SessionAction.SAVE_SESSION, snapshot_hash),
            created_by=(
                existing.created_by if existing
                else {"id": context.user_id, "role": context.user_role}
            ),
            created_at=existing.created_at if existing else None,
            csv_source=existing.csv_source if existing else None,
        )

        if existing:
            audit_summary = f"Se completó una conciliación de {flow.label}"
        else:
            reserved = await self.repository.create_session(replace(
                session,
                status=SessionStatus.DRAFT,
                traceability=self._traceability(bank, internal, SessionAction.SAVE_DRAFT),
            ))
            # Bound as a draft so a failed snapshot write is retried on the same id
            workspace.active_session_id = reserved.id
            session.id = reserved.id
            session.created_at = reserved.created_at
            audit_summary = f"Se guardó conciliación final de {flow.label}"

        # The status flips to completed only once the snapshot is stored
        await self._replace_snapshot(session.id, bank, internal)
        saved = await self.repository.update_session(session)

        self.audit_logger.log(
            module=flow.audit_module,
            entity_type=flow.entity_type,
            entity_id=saved.id,
            action=AuditAction.COMPLETE,
            summary=audit_summary,
            metadata={
                "bank_movements_count": len(bank),
                "internal_movements_count": len(internal),
                "matched_movements_count": matched_count(bank),
                "snapshot_hash": snapshot_hash,
            },
            performed_by={"id": context.user_id, "role": context.user_role},
            client_id=context.client_id,
            condominium_id=context.condominium_id,
        )

        workspace.active_session_id = None
        workspace.recent_sessions.insert(0, RecentSession(
            id=saved.id,
            name=session_name,
            created_at=saved.created_at or datetime.now(timezone.utc),
            summary=summary,
        ))

        log_reconciliation_event(
            ReconciliationAuditEvent.SESSION_COMPLETED,
            context,
            {"snapshot_hash": snapshot_hash, "unmatched_difference": str(summary.unmatched_difference)},
            session_id=saved.id,
        )

        await self._notify_net_difference(flow, context, saved.id, session_name, summary)
        return saved

    async def _notify_net_difference(
        self,
        flow: FlowConfig,
        context: TenantContext,
        session_id: str,
        session_name: str,
        summary: ReconciliationSummary,
    ) -> None:
        settings = get_settings()
        difference = summary.unmatched_difference
        if abs(difference) < Decimal(str(settings.RECON_NOTIFY_MIN_DIFFERENCE)):
            return

        high = abs(difference) >= Decimal(str(settings.RECON_NOTIFY_HIGH_PRIORITY_DIFFERENCE))
        movement_type = flow.movement_type.value
        event = NotificationEvent(
            event_type=NotificationEventType.RECONCILIATION_NET_DIFFERENCE.value,
            module="finance",
            priority=(NotificationPriority.HIGH if high else NotificationPriority.MEDIUM).value,
            dedupe_key=f"finance:reconciliation:{movement_type}:{session_id}:net_difference",
            entity_id=session_id,
            entity_type=flow.entity_type,
            title=flow.notification_title,
            body=(
                f"La conciliación {session_name} cerró con diferencia neta de "
                f"${format_amount(difference)}."
            ),
            metadata={
                "reconciliation_type": movement_type,
                "session_id": session_id,
                "session_name": session_name,
                "unmatched_difference": str(difference),
                "bank_total": str(summary.bank_total),
                "internal_matched": str(summary.internal_matched),
            },
            client_id=context.client_id,
            condominium_id=context.condominium_id,
        )

        result = await self.notifier.emit(event)
        log_reconciliation_event(
            ReconciliationAuditEvent.NET_DIFFERENCE_NOTIFIED,
            context,
            {"priority": event.priority, "delivered": result.success, "deduplicated": result.deduplicated},
            session_id=session_id,
        )
