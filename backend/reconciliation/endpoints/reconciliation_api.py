"""
Reconciliation API Endpoints

REST API for the bank reconciliation engine. Every flow route takes the
movement type (income | expense) as its first path segment.

Workspace:
- GET    /api/reconciliation/{movement_type}/state - Current working set
- POST   /api/reconciliation/{movement_type}/internal-movements - Load platform movements
- POST   /api/reconciliation/{movement_type}/bank-csv - Import a bank statement CSV
- POST   /api/reconciliation/{movement_type}/auto-match - Run the matching engine
- POST   /api/reconciliation/{movement_type}/movements/{bank_id}/match - Manual match
- DELETE /api/reconciliation/{movement_type}/movements/{bank_id}/match - Clear match
- POST   /api/reconciliation/{movement_type}/movements/{bank_id}/ignore - Ignore movement
- POST   /api/reconciliation/{movement_type}/reset - Clear the working set

Sessions:
- POST /api/reconciliation/{movement_type}/drafts - Save progress as a draft
- POST /api/reconciliation/{movement_type}/drafts/resume-latest - Resume latest draft
- POST /api/reconciliation/{movement_type}/drafts/{session_id}/resume - Resume a draft
- POST /api/reconciliation/{movement_type}/sessions - Complete the reconciliation

History:
- GET /api/reconciliation/history - Filtered, paginated session index
- GET /api/reconciliation/history/{movement_type}/{session_id} - Session detail
- GET /api/reconciliation/history/{movement_type}/{session_id}/export - CSV export

Misc:
- GET /api/reconciliation/status - Module status
- GET /api/reconciliation/flows - Flow configuration
- GET /api/reconciliation/audit-logs - Audit trail for the tenant
"""

import io
import logging
from datetime import date, datetime, timezone
from decimal import Decimal
from functools import lru_cache
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Header, Query, UploadFile, File
from fastapi.responses import StreamingResponse
from pydantic import BaseModel, Field

from config import get_settings
from database.connection import get_session_factory
from reconciliation.errors import ReconciliationError
from reconciliation.flow_registry import MovementType, SessionStatus, flow_registry
from reconciliation.loaders import (
    InternalMovementLoader,
    SqlInternalMovementLoader,
    StaticInternalMovementLoader,
)
from reconciliation.models import TenantContext, UploadedCsv
from reconciliation.repositories import (
    SessionRepository,
    InMemorySessionRepository,
    SqlSessionRepository,
)
from reconciliation.services.export import export_session_csv
from reconciliation.services.registry import WorkspaceRegistry, workspace_registry
from reconciliation.services.session_service import SessionService
from services.audit import AuditLogFilter, AuditLogger, get_audit_logger
from services.file_storage import FileStore, get_file_store
from services.notifications import NotificationEmitter, get_notification_emitter
from utils.validation_errors import (
    raise_domain_error,
    raise_missing_parameter,
    raise_invalid_parameter,
    parse_optional_date,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/reconciliation", tags=["Reconciliation"])


# ==================== Request/Response Models ====================

class LoadInternalRequest(BaseModel):
    """Request to load internal movements."""
    date_from: Optional[date] = Field(default=None, description="Inclusive lower bound (YYYY-MM-DD)")
    date_to: Optional[date] = Field(default=None, description="Inclusive upper bound (YYYY-MM-DD)")


class AutoMatchRequest(BaseModel):
    """Request to run the matching engine. Omitted tolerances use configured defaults."""
    date_tolerance_days: Optional[int] = Field(default=None, ge=0)
    amount_tolerance: Optional[Decimal] = Field(default=None, ge=0)
    date_from: Optional[date] = Field(default=None, description="Scope lower bound")
    date_to: Optional[date] = Field(default=None, description="Scope upper bound")


class ManualMatchRequest(BaseModel):
    """Request to pair a bank movement with an internal movement."""
    internal_movement_id: str = Field(..., min_length=1)


class SaveProgressRequest(BaseModel):
    """Request to save the working set as a draft."""
    name: str = Field(default="", description="Draft name (defaults per flow)")
    date_from: Optional[date] = None
    date_to: Optional[date] = None
    retain_csv: bool = Field(default=False, description="Store the last imported CSV with the draft")


class SaveSessionRequest(BaseModel):
    """Request to complete the reconciliation."""
    name: str = Field(default="", description="Session name (defaults to prefix + timestamp)")


class ResumeResponse(BaseModel):
    """Response for a resume request."""
    resumed: bool
    draft: Optional[dict] = None
    state: dict


class SessionSavedResponse(BaseModel):
    """Response for a persisted session."""
    session: dict
    state: dict


# ==================== Authentication ====================

def verify_internal_auth(x_internal_api_key: Optional[str] = Header(None, alias="X-Internal-Api-Key")):
    """Verify internal API key authentication."""
    settings = get_settings()
    valid_keys = settings.internal_api_keys

    if not valid_keys:
        if settings.is_development:
            return True
        logger.warning("No internal API keys configured")
        raise HTTPException(status_code=503, detail="Internal authentication not configured")

    if not x_internal_api_key:
        raise HTTPException(status_code=401, detail="Missing X-Internal-Api-Key header")

    if x_internal_api_key not in valid_keys:
        raise HTTPException(status_code=403, detail="Invalid API key")

    return True


def get_tenant_context(
    x_client_id: str = Header("", alias="X-Client-Id"),
    x_condominium_id: str = Header("", alias="X-Condominium-Id"),
    x_user_id: str = Header("", alias="X-User-Id"),
    x_user_role: str = Header("", alias="X-User-Role"),
) -> TenantContext:
    """Tenant scope and acting user from the request headers."""
    context = TenantContext(
        client_id=x_client_id.strip(),
        condominium_id=x_condominium_id.strip(),
        user_id=x_user_id.strip(),
        user_role=x_user_role.strip(),
    )
    if not context.client_id:
        raise_missing_parameter("X-Client-Id", "X-Client-Id header is required")
    if not context.condominium_id:
        raise_missing_parameter("X-Condominium-Id", "X-Condominium-Id header is required")
    return context


# ==================== Dependencies ====================

@lru_cache()
def _memory_repository() -> InMemorySessionRepository:
    return InMemorySessionRepository()


@lru_cache()
def _static_loader() -> StaticInternalMovementLoader:
    return StaticInternalMovementLoader()


def get_repository() -> SessionRepository:
    """Session repository selected by SESSION_STORE."""
    if get_settings().SESSION_STORE == "memory":
        return _memory_repository()
    return SqlSessionRepository(get_session_factory())


def get_loader() -> InternalMovementLoader:
    if get_settings().SESSION_STORE == "memory":
        return _static_loader()
    return SqlInternalMovementLoader(get_session_factory())


def get_registry() -> WorkspaceRegistry:
    return workspace_registry


def get_session_service(
    repository: SessionRepository = Depends(get_repository),
    audit_logger: AuditLogger = Depends(get_audit_logger),
    notifier: NotificationEmitter = Depends(get_notification_emitter),
    file_store: FileStore = Depends(get_file_store),
) -> SessionService:
    return SessionService(
        repository=repository,
        audit_logger=audit_logger,
        notifier=notifier,
        file_store=file_store,
    )


# ==================== Module ====================

@router.get("/status", summary="Module status")
async def get_module_status():
    """
    Get reconciliation module status.

    Returns configuration and availability information.
    """
    settings = get_settings()
    return {
        "module": "reconciliation",
        "status": "operational",
        "version": settings.API_VERSION,
        "features": {
            "csv_import": True,
            "auto_matching": True,
            "manual_matching": True,
            "drafts": True,
            "history": True,
            "csv_export": True,
            "net_difference_notifications": bool(settings.NOTIFICATION_WEBHOOK_URL),
        },
        "session_store": settings.SESSION_STORE,
        "flows": [cfg.movement_type.value for cfg in flow_registry.get_all_configs()],
        "timestamp": datetime.now(timezone.utc).isoformat()
    }


@router.get("/flows", summary="List reconciliation flows")
async def list_flows():
    """List the income and expense flows with their CSV header candidates."""
    return {"flows": [cfg.to_dict() for cfg in flow_registry.get_all_configs()]}


# ==================== Workspace ====================

@router.get("/{movement_type}/state", summary="Workspace state")
async def get_state(
    movement_type: MovementType,
    context: TenantContext = Depends(get_tenant_context),
    registry: WorkspaceRegistry = Depends(get_registry),
    _auth: bool = Depends(verify_internal_auth)
):
    entry = registry.get(context, movement_type)
    return entry.workspace.state.to_dict()


@router.post("/{movement_type}/internal-movements", summary="Load internal movements")
async def load_internal_movements(
    movement_type: MovementType,
    request: LoadInternalRequest,
    context: TenantContext = Depends(get_tenant_context),
    registry: WorkspaceRegistry = Depends(get_registry),
    loader: InternalMovementLoader = Depends(get_loader),
    _auth: bool = Depends(verify_internal_auth)
):
    """
    Replace the internal movement set with resident payments (income)
    or expenses (expense) for the tenant and optional period.
    """
    entry = registry.get(context, movement_type, loader=loader)
    async with entry.lock:
        try:
            state = await entry.workspace.load_internal_movements(
                context, request.date_from, request.date_to
            )
        except ReconciliationError as e:
            raise_domain_error(e)
    return state.to_dict()


@router.post("/{movement_type}/bank-csv", summary="Import bank statement CSV")
async def import_bank_csv(
    movement_type: MovementType,
    file: UploadFile = File(..., description="Bank statement CSV"),
    context: TenantContext = Depends(get_tenant_context),
    registry: WorkspaceRegistry = Depends(get_registry),
    _auth: bool = Depends(verify_internal_auth)
):
    """
    Replace the bank movement set with the rows of a statement CSV.

    The file is kept with the workspace so a later draft save can retain it.
    """
    content = await file.read()
    max_bytes = get_settings().UPLOAD_MAX_SIZE_MB * 1024 * 1024
    if len(content) > max_bytes:
        raise_invalid_parameter("file", f"File exceeds {get_settings().UPLOAD_MAX_SIZE_MB} MB limit")
    try:
        csv_text = content.decode("utf-8-sig")
    except UnicodeDecodeError:
        raise_invalid_parameter("file", "File must be UTF-8 encoded CSV", file.filename)

    entry = registry.get(context, movement_type)
    async with entry.lock:
        try:
            state = entry.workspace.import_bank_csv(csv_text)
        except ReconciliationError as e:
            raise_domain_error(e)
        entry.last_upload = UploadedCsv(
            file_name=file.filename or "source.csv",
            content=content,
            content_type=file.content_type or "text/csv",
        )

    logger.info(
        "Bank CSV imported",
        extra={"client_id": context.client_id, "movement_type": movement_type.value,
               "rows": len(state.bank_movements)}
    )
    return state.to_dict()


@router.post("/{movement_type}/auto-match", summary="Run auto-match")
async def run_auto_match(
    movement_type: MovementType,
    request: AutoMatchRequest,
    context: TenantContext = Depends(get_tenant_context),
    registry: WorkspaceRegistry = Depends(get_registry),
    _auth: bool = Depends(verify_internal_auth)
):
    """
    Pair pending bank movements with internal movements.

    Manual matches are preserved; ignored movements are left alone.
    """
    entry = registry.get(context, movement_type)
    async with entry.lock:
        state = entry.workspace.run_auto_match(
            date_tolerance_days=request.date_tolerance_days,
            amount_tolerance=request.amount_tolerance,
            date_from=request.date_from,
            date_to=request.date_to,
        )
    return state.to_dict()


@router.post("/{movement_type}/movements/{bank_id}/match", summary="Set manual match")
async def set_manual_match(
    movement_type: MovementType,
    bank_id: str,
    request: ManualMatchRequest,
    context: TenantContext = Depends(get_tenant_context),
    registry: WorkspaceRegistry = Depends(get_registry),
    _auth: bool = Depends(verify_internal_auth)
):
    entry = registry.get(context, movement_type)
    async with entry.lock:
        state = entry.workspace.set_manual_match(bank_id, request.internal_movement_id)
    return state.to_dict()


@router.delete("/{movement_type}/movements/{bank_id}/match", summary="Clear match")
async def clear_match(
    movement_type: MovementType,
    bank_id: str,
    context: TenantContext = Depends(get_tenant_context),
    registry: WorkspaceRegistry = Depends(get_registry),
    _auth: bool = Depends(verify_internal_auth)
):
    entry = registry.get(context, movement_type)
    async with entry.lock:
        state = entry.workspace.clear_match(bank_id)
    return state.to_dict()


@router.post("/{movement_type}/movements/{bank_id}/ignore", summary="Ignore movement")
async def ignore_movement(
    movement_type: MovementType,
    bank_id: str,
    context: TenantContext = Depends(get_tenant_context),
    registry: WorkspaceRegistry = Depends(get_registry),
    _auth: bool = Depends(verify_internal_auth)
):
    entry = registry.get(context, movement_type)
    async with entry.lock:
        state = entry.workspace.ignore_movement(bank_id)
    return state.to_dict()


@router.post("/{movement_type}/reset", summary="Reset workspace")
async def reset_workspace(
    movement_type: MovementType,
    context: TenantContext = Depends(get_tenant_context),
    registry: WorkspaceRegistry = Depends(get_registry),
    _auth: bool = Depends(verify_internal_auth)
):
    entry = registry.get(context, movement_type)
    async with entry.lock:
        state = entry.workspace.reset()
        entry.last_upload = None
    return state.to_dict()


# ==================== Sessions ====================

@router.post("/{movement_type}/drafts", response_model=SessionSavedResponse, summary="Save progress")
async def save_progress(
    movement_type: MovementType,
    request: SaveProgressRequest,
    context: TenantContext = Depends(get_tenant_context),
    registry: WorkspaceRegistry = Depends(get_registry),
    service: SessionService = Depends(get_session_service),
    _auth: bool = Depends(verify_internal_auth)
):
    """
    Persist the working set as a draft.

    Creates a draft on first save, then updates it in place.
    Requires the X-User-Id header.
    """
    entry = registry.get(context, movement_type)
    async with entry.lock:
        if request.retain_csv and entry.last_upload is None:
            raise_invalid_parameter("retain_csv", "No CSV has been imported in this workspace")
        try:
            session = await service.save_progress(
                entry.workspace,
                context,
                name=request.name,
                date_from=request.date_from,
                date_to=request.date_to,
                csv_file=entry.last_upload if request.retain_csv else None,
            )
        except ReconciliationError as e:
            raise_domain_error(e)
        finally:
            registry.mark_history_stale(context)
        state = entry.workspace.state

    return SessionSavedResponse(session=session.to_dict(), state=state.to_dict())


@router.post("/{movement_type}/drafts/resume-latest", response_model=ResumeResponse, summary="Resume latest draft")
async def resume_latest_draft(
    movement_type: MovementType,
    context: TenantContext = Depends(get_tenant_context),
    registry: WorkspaceRegistry = Depends(get_registry),
    service: SessionService = Depends(get_session_service),
    _auth: bool = Depends(verify_internal_auth)
):
    entry = registry.get(context, movement_type)
    async with entry.lock:
        try:
            draft = await service.resume_latest_draft(entry.workspace, context)
        except ReconciliationError as e:
            raise_domain_error(e)
        state = entry.workspace.state

    return ResumeResponse(
        resumed=draft is not None,
        draft=draft.to_dict() if draft else None,
        state=state.to_dict(),
    )


@router.post(
    "/{movement_type}/drafts/{session_id}/resume",
    response_model=ResumeResponse,
    summary="Resume draft by id"
)
async def resume_draft_by_id(
    movement_type: MovementType,
    session_id: str,
    context: TenantContext = Depends(get_tenant_context),
    registry: WorkspaceRegistry = Depends(get_registry),
    service: SessionService = Depends(get_session_service),
    _auth: bool = Depends(verify_internal_auth)
):
    """
    Rehydrate a specific draft.

    Returns resumed=false when the session does not exist or is completed.
    """
    entry = registry.get(context, movement_type)
    async with entry.lock:
        try:
            draft = await service.resume_draft_by_id(entry.workspace, context, session_id)
        except ReconciliationError as e:
            raise_domain_error(e)
        state = entry.workspace.state

    return ResumeResponse(
        resumed=draft is not None,
        draft=draft.to_dict() if draft else None,
        state=state.to_dict(),
    )


@router.post("/{movement_type}/sessions", response_model=SessionSavedResponse, summary="Save session")
async def save_session(
    movement_type: MovementType,
    request: SaveSessionRequest,
    context: TenantContext = Depends(get_tenant_context),
    registry: WorkspaceRegistry = Depends(get_registry),
    service: SessionService = Depends(get_session_service),
    _auth: bool = Depends(verify_internal_auth)
):
    """
    Complete the reconciliation.

    Stamps the snapshot hash, marks the session completed and emits a
    net-difference notification when the books do not balance.
    Requires the X-User-Id header.
    """
    entry = registry.get(context, movement_type)
    async with entry.lock:
        try:
            session = await service.save_session(entry.workspace, context, name=request.name)
        except ReconciliationError as e:
            raise_domain_error(e)
        finally:
            registry.mark_history_stale(context)
        entry.last_upload = None
        state = entry.workspace.state

    return SessionSavedResponse(session=session.to_dict(), state=state.to_dict())


# ==================== History ====================

@router.get("/history", summary="Reconciliation history")
async def get_history(
    movement_type: str = Query("all", pattern="^(all|income|expense)$"),
    status: str = Query("all", pattern="^(all|draft|completed)$"),
    search: str = Query(""),
    date_from: Optional[str] = Query(None, description="Created on or after (YYYY-MM-DD)"),
    date_to: Optional[str] = Query(None, description="Created on or before (YYYY-MM-DD)"),
    updated_order: str = Query("desc", pattern="^(asc|desc)$"),
    page: int = Query(1, ge=1),
    refresh: bool = Query(False, description="Re-read sessions from the store"),
    context: TenantContext = Depends(get_tenant_context),
    registry: WorkspaceRegistry = Depends(get_registry),
    repository: SessionRepository = Depends(get_repository),
    _auth: bool = Depends(verify_internal_auth)
):
    """
    Filtered, paginated index of income and expense sessions.

    Movements are not included; open a session to hydrate them.
    """
    history = registry.history(context, repository)
    if refresh or history.stale:
        try:
            await history.fetch_sessions(context)
        except ReconciliationError as e:
            raise_domain_error(e)

    history.set_filters(
        movement_type=movement_type,
        status=status,
        search=search,
        date_from=parse_optional_date(date_from, "date_from"),
        date_to=parse_optional_date(date_to, "date_to"),
        updated_order=updated_order,
    )
    result = history.set_page(page)

    response = result.to_dict()
    response["filters"] = history.filters.to_dict()
    return response


@router.get("/history/{movement_type}/{session_id}", summary="Session detail")
async def get_session_detail(
    movement_type: MovementType,
    session_id: str,
    hydrate: bool = Query(True, description="Load the movement snapshot"),
    context: TenantContext = Depends(get_tenant_context),
    registry: WorkspaceRegistry = Depends(get_registry),
    repository: SessionRepository = Depends(get_repository),
    _auth: bool = Depends(verify_internal_auth)
):
    history = registry.history(context, repository)
    if history.stale or history.find(session_id, movement_type) is None:
        try:
            await history.fetch_sessions(context)
        except ReconciliationError as e:
            raise_domain_error(e)

    item = history.open_session_detail(session_id, movement_type)
    if item is None:
        raise HTTPException(status_code=404, detail="Reconciliation session not found")

    if hydrate:
        history.error = None
        item = await history.hydrate_session_movements(session_id, movement_type)

    response = item.to_dict(include_movements=True)
    response["error"] = history.error
    return response


@router.get("/history/{movement_type}/{session_id}/export", summary="Export session CSV")
async def export_session(
    movement_type: MovementType,
    session_id: str,
    context: TenantContext = Depends(get_tenant_context),
    registry: WorkspaceRegistry = Depends(get_registry),
    repository: SessionRepository = Depends(get_repository),
    _auth: bool = Depends(verify_internal_auth)
):
    """Download a session (summary, bank and internal movements) as CSV."""
    history = registry.history(context, repository)
    if history.stale or history.find(session_id, movement_type) is None:
        try:
            await history.fetch_sessions(context)
        except ReconciliationError as e:
            raise_domain_error(e)

    history.error = None
    item = await history.hydrate_session_movements(session_id, movement_type)
    if item is None:
        raise HTTPException(status_code=404, detail="Reconciliation session not found")
    if not item.is_hydrated:
        raise HTTPException(status_code=503, detail=history.error or "Failed to load session movements")

    content = export_session_csv(item)
    status_label = "completada" if item.session.status == SessionStatus.COMPLETED else "borrador"
    filename = f"conciliacion_{movement_type.value}_{status_label}_{session_id}.csv"
    return StreamingResponse(
        io.StringIO(content),
        media_type="text/csv",
        headers={"Content-Disposition": f"attachment; filename={filename}"}
    )


# ==================== Audit ====================

@router.get("/audit-logs", summary="Reconciliation audit trail")
async def get_audit_logs(
    movement_type: Optional[MovementType] = Query(None),
    entity_id: Optional[str] = Query(None),
    action: Optional[str] = Query(None),
    limit: int = Query(100, ge=1, le=1000),
    offset: int = Query(0, ge=0),
    context: TenantContext = Depends(get_tenant_context),
    audit_logger: AuditLogger = Depends(get_audit_logger),
    _auth: bool = Depends(verify_internal_auth)
):
    filter_params = AuditLogFilter(
        module=flow_registry.get_config(movement_type).audit_module if movement_type else None,
        entity_id=entity_id,
        action=action,
        client_id=context.client_id,
        condominium_id=context.condominium_id,
        limit=limit,
        offset=offset,
    )
    logs = audit_logger.get_logs(filter_params)
    return {"logs": [entry.model_dump() for entry in logs], "count": len(logs)}
