"""
Audit Logging for Estate Recon

Tracks reconciliation lifecycle actions for compliance and traceability:
- Draft saves (create and update)
- Session completion

Storage: JSON Lines file (can be migrated to database)
"""

import json
import uuid
from datetime import datetime, timezone
from functools import lru_cache
from typing import List, Optional, Dict, Any, Union
from pathlib import Path
import logging
from enum import Enum
from pydantic import BaseModel, ConfigDict, Field
import threading

from config import get_settings

logger = logging.getLogger(__name__)

# Thread lock for file writes
_write_lock = threading.Lock()

MAX_METADATA_STRING = 500


# ==================== ENUMS ====================

class AuditAction(str, Enum):
    """Auditable reconciliation actions"""
    SAVE_DRAFT = "save_draft"
    COMPLETE = "complete"


# ==================== MODELS ====================

def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


class PerformedBy(BaseModel):
    id: str = ""
    role: str = ""


class AuditLogEntry(BaseModel):
    """Audit log entry model"""
    model_config = ConfigDict(extra="allow")

    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    module: str
    entity_type: str
    entity_id: str
    action: str
    summary: str
    metadata: Dict[str, Any] = Field(default_factory=dict)
    before: Optional[Dict[str, Any]] = None
    after: Optional[Dict[str, Any]] = None
    performed_by: PerformedBy = Field(default_factory=PerformedBy)
    client_id: Optional[str] = None
    condominium_id: Optional[str] = None
    source: str = "web"
    created_at: str = Field(default_factory=_now_iso)
    updated_at: str = Field(default_factory=_now_iso)


class AuditLogFilter(BaseModel):
    """Filter for querying audit logs"""
    module: Optional[str] = None
    entity_id: Optional[str] = None
    action: Optional[str] = None
    client_id: Optional[str] = None
    condominium_id: Optional[str] = None
    limit: int = 100
    offset: int = 0


def sanitize_metadata(value: Any) -> Any:
    """Truncate long strings and stringify values JSON cannot hold."""
    if isinstance(value, str):
        return value[:MAX_METADATA_STRING]
    if isinstance(value, dict):
        return {str(k): sanitize_metadata(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [sanitize_metadata(v) for v in value]
    if value is None or isinstance(value, (bool, int, float)):
        return value
    return str(value)[:MAX_METADATA_STRING]


# ==================== AUDIT LOGGER ====================

class AuditLogger:
    """
    JSONL audit writer for reconciliation sessions.

    Usage:
        audit = get_audit_logger()
        audit.log(
            module="ConciliacionIngresos",
            entity_type="payment_reconciliation",
            entity_id=session_id,
            action=AuditAction.SAVE_DRAFT,
            summary="Se creó borrador de conciliación de ingresos",
            metadata={"bank_movements_count": 12},
        )
    """

    def __init__(self, log_file: Union[str, Path]):
        self.log_file = Path(log_file)
        self._ensure_file_exists()

    def _ensure_file_exists(self):
        """Ensure the log directory and file exist"""
        self.log_file.parent.mkdir(parents=True, exist_ok=True)
        if not self.log_file.exists():
            self.log_file.touch()

    def log(
        self,
        module: str,
        entity_type: str,
        entity_id: str,
        action: Union[AuditAction, str],
        summary: str,
        metadata: Optional[Dict[str, Any]] = None,
        before: Optional[Dict[str, Any]] = None,
        after: Optional[Dict[str, Any]] = None,
        performed_by: Optional[Dict[str, str]] = None,
        client_id: Optional[str] = None,
        condominium_id: Optional[str] = None,
    ) -> AuditLogEntry:
        """
        Log an audit entry.

        Returns:
            The created audit log entry
        """
        action_str = action.value if isinstance(action, AuditAction) else action

        entry = AuditLogEntry(
            module=module,
            entity_type=entity_type,
            entity_id=str(entity_id),
            action=action_str,
            summary=summary[:MAX_METADATA_STRING],
            metadata=sanitize_metadata(metadata or {}),
            before=sanitize_metadata(before) if before else None,
            after=sanitize_metadata(after) if after else None,
            performed_by=PerformedBy(**(performed_by or {})),
            client_id=client_id,
            condominium_id=condominium_id,
        )

        self._write_entry(entry)

        logger.info(
            f"AUDIT: {action_str} on {entity_type}/{entity_id}"
            f" by {entry.performed_by.id or 'anonymous'}"
        )
        return entry

    def _write_entry(self, entry: AuditLogEntry):
        """Write an entry to the log file (thread-safe)"""
        with _write_lock:
            try:
                with open(self.log_file, 'a', encoding='utf-8') as f:
                    f.write(json.dumps(entry.model_dump(), ensure_ascii=False) + "\n")
            except OSError as e:
                logger.error(f"Failed to write audit log: {e}")

    def get_logs(
        self,
        filter_params: Optional[AuditLogFilter] = None
    ) -> List[AuditLogEntry]:
        """
        Retrieve audit logs with optional filtering, most recent first.
        """
        if filter_params is None:
            filter_params = AuditLogFilter()

        logs = []

        try:
            with open(self.log_file, 'r', encoding='utf-8') as f:
                for line in f:
                    if not line.strip():
                        continue
                    try:
                        entry = AuditLogEntry(**json.loads(line))
                    except (json.JSONDecodeError, ValueError) as e:
                        logger.warning(f"Failed to parse audit log entry: {e}")
                        continue
                    if self._matches_filter(entry, filter_params):
                        logs.append(entry)
        except FileNotFoundError:
            return []

        logs.sort(key=lambda x: x.created_at, reverse=True)

        start = filter_params.offset
        end = start + filter_params.limit
        return logs[start:end]

    def _matches_filter(self, entry: AuditLogEntry, filter_params: AuditLogFilter) -> bool:
        """Check if an entry matches the filter criteria"""
        for field_name in ("module", "entity_id", "action", "client_id", "condominium_id"):
            expected = getattr(filter_params, field_name)
            if expected and getattr(entry, field_name) != expected:
                return False
        return True


@lru_cache()
def get_audit_logger() -> AuditLogger:
    """Process-wide audit logger writing to AUDIT_LOG_PATH."""
    return AuditLogger(get_settings().AUDIT_LOG_PATH)
