"""
Reconciliation Workspace

In-memory working set for one reconciliation flow (income or expense):
- Internal movements loaded from the platform ledger
- Bank movements imported from a statement CSV
- Auto-match and manual overrides (set, clear, ignore)
- Summary recomputed after every mutation

Operations that fail record the message in `error` and raise; the
working set itself is left untouched.
"""

import logging
from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from decimal import Decimal
from typing import Dict, Any, List, Optional, Tuple

from config import get_settings
from reconciliation.csv_normalizer import BankCsvNormalizer
from reconciliation.errors import ReconciliationError
from reconciliation.flow_registry import MovementType, MovementStatus
from reconciliation.loaders import InternalMovementLoader
from reconciliation.matching_rules import MatchWindow, AutoMatchResult, get_rules
from reconciliation.models import (
    BankMovement,
    InternalMovement,
    ReconciliationSummary,
    RecentSession,
    TenantContext,
    EMPTY_SUMMARY,
)
from reconciliation.summary import build_summary

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class WorkspaceState:
    """Read-only snapshot of a workspace."""
    movement_type: MovementType
    bank_movements: Tuple[BankMovement, ...]
    internal_movements: Tuple[InternalMovement, ...]
    summary: ReconciliationSummary
    error: Optional[str]
    active_session_id: Optional[str]
    last_loaded_at: Optional[datetime]
    recent_sessions: Tuple[RecentSession, ...] = field(default_factory=tuple)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "movement_type": self.movement_type.value,
            "bank_movements": [m.to_dict() for m in self.bank_movements],
            "internal_movements": [m.to_dict() for m in self.internal_movements],
            "summary": self.summary.to_dict(),
            "error": self.error,
            "active_session_id": self.active_session_id,
            "last_loaded_at": self.last_loaded_at.isoformat() if self.last_loaded_at else None,
            "recent_sessions": [
                {
                    "id": s.id,
                    "name": s.name,
                    "created_at": s.created_at.isoformat(),
                    "summary": s.summary.to_dict(),
                }
                for s in self.recent_sessions
            ],
        }


class ReconciliationWorkspace:
    """
    Working set for one reconciliation flow.

    Not safe for concurrent writers; callers serialize access
    (the HTTP layer holds a lock per workspace).
    """

    def __init__(
        self,
        movement_type: MovementType,
        loader: Optional[InternalMovementLoader] = None,
    ):
        self.movement_type = MovementType(movement_type)
        self.loader = loader
        self.normalizer = BankCsvNormalizer(self.movement_type)
        self.rules = get_rules(self.movement_type)

        self.bank_movements: List[BankMovement] = []
        self.internal_movements: List[InternalMovement] = []
        self.summary: ReconciliationSummary = EMPTY_SUMMARY
        self.error: Optional[str] = None
        self.active_session_id: Optional[str] = None
        self.last_loaded_at: Optional[datetime] = None
        self.recent_sessions: List[RecentSession] = []

    # ==================== STATE ====================

    @property
    def state(self) -> WorkspaceState:
        return WorkspaceState(
            movement_type=self.movement_type,
            bank_movements=tuple(self.bank_movements),
            internal_movements=tuple(self.internal_movements),
            summary=self.summary,
            error=self.error,
            active_session_id=self.active_session_id,
            last_loaded_at=self.last_loaded_at,
            recent_sessions=tuple(self.recent_sessions),
        )

    def _commit(
        self,
        bank_movements: Optional[List[BankMovement]] = None,
        internal_movements: Optional[List[InternalMovement]] = None,
    ) -> WorkspaceState:
        if bank_movements is not None:
            self.bank_movements = bank_movements
        if internal_movements is not None:
            self.internal_movements = internal_movements
        self.summary = build_summary(self.bank_movements, self.internal_movements)
        return self.state

    def record_error(self, error: Exception) -> None:
        self.error = error.message if isinstance(error, ReconciliationError) else str(error)

    def restore(
        self,
        bank_movements: List[BankMovement],
        internal_movements: List[InternalMovement],
        session_id: Optional[str],
    ) -> WorkspaceState:
        """Replace the whole working set (used when resuming a draft)."""
        self.active_session_id = session_id
        self.error = None
        return self._commit(list(bank_movements), list(internal_movements))

    def reset(self) -> WorkspaceState:
        """Clear the working set. Recent sessions are kept."""
        self.bank_movements = []
        self.internal_movements = []
        self.summary = EMPTY_SUMMARY
        self.error = None
        self.active_session_id = None
        self.last_loaded_at = None
        return self.state

    # ==================== LOADING ====================

    async def load_internal_movements(
        self,
        context: TenantContext,
        date_from: Optional[date] = None,
        date_to: Optional[date] = None,
    ) -> WorkspaceState:
        """
        Replace the internal movement set from the platform ledger.

        Raises:
            ContextError: tenant identity missing
            PersistenceError: the loader failed
        """
        self.error = None
        try:
            context.require()
            if self.loader is None:
                raise ReconciliationError("No internal movement loader configured")
            movements = await self.loader.load(context, self.movement_type, date_from, date_to)
        except ReconciliationError as e:
            logger.error(f"Failed to load internal movements: {e.message}")
            self.record_error(e)
            raise

        self.last_loaded_at = datetime.now(timezone.utc)
        return self._commit(internal_movements=list(movements))

    def import_bank_csv(self, csv_text: str) -> WorkspaceState:
        """
        Replace the bank movement set with the rows of a statement CSV.

        Raises:
            ValidationError: the CSV has no data rows
        """
        try:
            movements = self.normalizer.normalize(csv_text)
        except ReconciliationError as e:
            logger.warning(f"Bank CSV rejected: {e.message}", extra={"details": e.details})
            self.record_error(e)
            raise

        self.error = None
        return self._commit(bank_movements=movements)

    # ==================== MATCHING ====================

    def run_auto_match(
        self,
        date_tolerance_days: Optional[int] = None,
        amount_tolerance: Optional[Decimal] = None,
        date_from: Optional[date] = None,
        date_to: Optional[date] = None,
    ) -> WorkspaceState:
        settings = get_settings()
        window = MatchWindow(
            date_tolerance_days=(
                settings.RECON_DATE_TOLERANCE_DAYS if date_tolerance_days is None else date_tolerance_days
            ),
            amount_tolerance=Decimal(str(
                settings.RECON_AMOUNT_TOLERANCE if amount_tolerance is None else amount_tolerance
            )),
            date_from=date_from,
            date_to=date_to,
        )
        result: AutoMatchResult = self.rules.auto_match(
            self.bank_movements, self.internal_movements, window
        )
        return self._commit(bank_movements=result.movements)

    def _update_one(self, bank_movement_id: str, operation: str, update) -> WorkspaceState:
        updated = []
        found = False
        for movement in self.bank_movements:
            if movement.id == bank_movement_id:
                found = True
                updated.append(update(movement))
            else:
                updated.append(movement)

        if not found:
            logger.warning(
                f"{operation}: unknown bank movement {bank_movement_id}",
                extra={"movement_type": self.movement_type.value},
            )
            return self.state
        return self._commit(bank_movements=updated)

    def set_manual_match(self, bank_movement_id: str, internal_movement_id: str) -> WorkspaceState:
        if not any(m.id == internal_movement_id for m in self.internal_movements):
            logger.warning(
                f"set_manual_match: unknown internal movement {internal_movement_id}",
                extra={"movement_type": self.movement_type.value},
            )
            return self.state
        return self._update_one(
            bank_movement_id,
            "set_manual_match",
            lambda m: m.assign(internal_movement_id, MovementStatus.MANUAL_MATCH, 1.0),
        )

    def clear_match(self, bank_movement_id: str) -> WorkspaceState:
        return self._update_one(bank_movement_id, "clear_match", lambda m: m.unassign())

    def ignore_movement(self, bank_movement_id: str) -> WorkspaceState:
        return self._update_one(
            bank_movement_id,
            "ignore_movement",
            lambda m: m.unassign(MovementStatus.IGNORED),
        )

    def find_bank_movement(self, bank_movement_id: str) -> Optional[BankMovement]:
        for movement in self.bank_movements:
            if movement.id == bank_movement_id:
                return movement
        return None
