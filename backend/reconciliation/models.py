"""
Reconciliation Models

Working-set and persistence models for the bank reconciliation engine:
- BankMovement: a line imported from a bank statement CSV
- InternalMovement: a resident payment or vendor expense recorded by the platform
- ReconciliationSummary: totals derived from the two movement sets
- ReconciliationSession: persisted draft or completed reconciliation
- TenantContext: caller identity required before any write
"""

from dataclasses import dataclass, field, replace
from datetime import date, datetime
from decimal import Decimal, InvalidOperation
from typing import Dict, Any, List, Optional

from dateutil import parser as date_parser

from reconciliation.errors import ContextError
from reconciliation.flow_registry import (
    MovementType,
    MovementStatus,
    SessionStatus,
    MATCHED_STATUSES,
)


ZERO = Decimal("0")


# ==================== SERIALIZATION HELPERS ====================

def to_decimal(value: Any) -> Decimal:
    """Coerce stored amounts (str, int, float, Decimal) to Decimal; junk becomes 0."""
    if isinstance(value, Decimal):
        return value
    if value is None or value == "":
        return ZERO
    try:
        return Decimal(str(value))
    except InvalidOperation:
        return ZERO


def to_date(value: Any) -> Optional[date]:
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    try:
        return date_parser.isoparse(str(value)).date()
    except (ValueError, OverflowError):
        return None


def to_datetime(value: Any) -> Optional[datetime]:
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value
    if isinstance(value, date):
        return datetime(value.year, value.month, value.day)
    try:
        return date_parser.isoparse(str(value))
    except (ValueError, OverflowError):
        return None


def date_to_str(value: Optional[date]) -> Optional[str]:
    return value.isoformat() if value else None


def _str(value: Any) -> str:
    return "" if value is None else str(value)


# ==================== MOVEMENTS ====================

@dataclass
class BankMovement:
    """
    A single transaction line imported from a bank statement.

    matched_internal_id is set iff status is matched or manual_match.
    """
    id: str
    amount: Decimal
    date: Optional[date] = None
    description: str = ""
    reference: str = ""
    status: MovementStatus = MovementStatus.PENDING
    matched_internal_id: Optional[str] = None
    confidence: Optional[float] = None
    source: str = "csv"

    @property
    def is_matched(self) -> bool:
        return self.status in MATCHED_STATUSES

    def assign(self, internal_id: str, status: MovementStatus, confidence: float) -> "BankMovement":
        return replace(
            self,
            status=status,
            matched_internal_id=internal_id,
            confidence=confidence,
        )

    def unassign(self, status: MovementStatus = MovementStatus.PENDING) -> "BankMovement":
        return replace(self, status=status, matched_internal_id=None, confidence=None)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "date": date_to_str(self.date),
            "amount": str(self.amount),
            "description": self.description,
            "reference": self.reference,
            "source": self.source,
            "status": self.status.value,
            "matched_internal_id": self.matched_internal_id,
            "confidence": self.confidence,
        }

    @classmethod
    def from_dict(cls, raw: Dict[str, Any]) -> "BankMovement":
        """
        Rebuild a bank movement from a stored document.

        Accepts the legacy camelCase keys (matchedPaymentId, matchedExpenseId)
        written by older sessions.
        """
        try:
            status = MovementStatus(raw.get("status") or MovementStatus.PENDING.value)
        except ValueError:
            status = MovementStatus.PENDING

        matched_id = (
            raw.get("matched_internal_id")
            or raw.get("matchedInternalId")
            or raw.get("matchedPaymentId")
            or raw.get("matchedExpenseId")
        )
        confidence = raw.get("confidence")
        movement = cls(
            id=_str(raw.get("id")),
            date=to_date(raw.get("date")),
            amount=to_decimal(raw.get("amount")),
            description=_str(raw.get("description")),
            reference=_str(raw.get("reference")),
            source=_str(raw.get("source")) or "csv",
            status=status,
            matched_internal_id=str(matched_id) if matched_id else None,
            confidence=float(confidence) if isinstance(confidence, (int, float)) else None,
        )
        if movement.is_matched and movement.matched_internal_id is None:
            return movement.unassign()
        if not movement.is_matched and movement.matched_internal_id is not None:
            return movement.unassign(status)
        return movement


@dataclass
class InternalMovement:
    """
    A payment or expense recorded by the platform's own ledger.

    Payment fields are populated for the income flow, expense fields for
    the expense flow. reference_text is the free text used by the
    expense-side reference bonus.
    """
    id: str
    amount: Decimal
    movement_date: Optional[date] = None
    reference_text: str = ""
    # Payment variant
    user_id: str = ""
    user_number: str = ""
    charge_id: str = ""
    payment_id: str = ""
    payment_reference: str = ""
    # Expense variant
    expense_id: str = ""
    folio: str = ""
    concept: str = ""
    # Shared
    payment_type: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "amount": str(self.amount),
            "movement_date": date_to_str(self.movement_date),
            "reference_text": self.reference_text,
            "user_id": self.user_id,
            "user_number": self.user_number,
            "charge_id": self.charge_id,
            "payment_id": self.payment_id,
            "payment_reference": self.payment_reference,
            "expense_id": self.expense_id,
            "folio": self.folio,
            "concept": self.concept,
            "payment_type": self.payment_type,
        }

    @classmethod
    def from_dict(cls, raw: Dict[str, Any]) -> "InternalMovement":
        movement_date = (
            raw.get("movement_date")
            or raw.get("paymentDate")
            or raw.get("expenseDate")
        )
        return cls(
            id=_str(raw.get("id")),
            amount=to_decimal(raw.get("amount")),
            movement_date=to_date(movement_date),
            reference_text=_str(raw.get("reference_text") or raw.get("referenceText")),
            user_id=_str(raw.get("user_id") or raw.get("userId")),
            user_number=_str(raw.get("user_number") or raw.get("userNumber")),
            charge_id=_str(raw.get("charge_id") or raw.get("chargeId")),
            payment_id=_str(raw.get("payment_id") or raw.get("paymentId")),
            payment_reference=_str(raw.get("payment_reference") or raw.get("paymentReference")),
            expense_id=_str(raw.get("expense_id") or raw.get("expenseId")),
            folio=_str(raw.get("folio")),
            concept=_str(raw.get("concept")),
            payment_type=_str(raw.get("payment_type") or raw.get("paymentType")),
        )


# ==================== SUMMARY ====================

@dataclass(frozen=True)
class ReconciliationSummary:
    """
    Totals derived from the bank and internal movement sets.

    unmatched_difference = bank_total - internal_matched
    """
    bank_total: Decimal = ZERO
    bank_matched: Decimal = ZERO
    bank_pending: Decimal = ZERO
    bank_ignored: Decimal = ZERO
    internal_total: Decimal = ZERO
    internal_matched: Decimal = ZERO
    unmatched_difference: Decimal = ZERO

    def to_dict(self) -> Dict[str, str]:
        return {
            "bank_total": str(self.bank_total),
            "bank_matched": str(self.bank_matched),
            "bank_pending": str(self.bank_pending),
            "bank_ignored": str(self.bank_ignored),
            "internal_total": str(self.internal_total),
            "internal_matched": str(self.internal_matched),
            "unmatched_difference": str(self.unmatched_difference),
        }

    @classmethod
    def from_dict(cls, raw: Optional[Dict[str, Any]]) -> "ReconciliationSummary":
        raw = raw or {}
        return cls(
            bank_total=to_decimal(raw.get("bank_total")),
            bank_matched=to_decimal(raw.get("bank_matched")),
            bank_pending=to_decimal(raw.get("bank_pending")),
            bank_ignored=to_decimal(raw.get("bank_ignored")),
            internal_total=to_decimal(raw.get("internal_total")),
            internal_matched=to_decimal(raw.get("internal_matched")),
            unmatched_difference=to_decimal(raw.get("unmatched_difference")),
        )


EMPTY_SUMMARY = ReconciliationSummary()


# ==================== CONTEXT ====================

@dataclass(frozen=True)
class TenantContext:
    """Identity of the caller: tenant scope plus acting user."""
    client_id: str
    condominium_id: str
    user_id: str = ""
    user_role: str = ""

    def require(self, need_user: bool = False) -> "TenantContext":
        """Raise ContextError unless the tenant (and optionally the user) is known."""
        missing = [
            name for name, value in (
                ("client_id", self.client_id),
                ("condominium_id", self.condominium_id),
            )
            if not value
        ]
        if need_user and not self.user_id:
            missing.append("user_id")
        if missing:
            raise ContextError(
                "Client/condominium context is not available",
                details={"missing": missing},
            )
        return self

    @property
    def scope_path(self) -> str:
        return f"clients/{self.client_id}/condominiums/{self.condominium_id}"


# ==================== SESSIONS ====================

@dataclass
class DateRange:
    date_from: Optional[date] = None
    date_to: Optional[date] = None

    def to_dict(self) -> Dict[str, str]:
        return {
            "from": date_to_str(self.date_from) or "",
            "to": date_to_str(self.date_to) or "",
        }

    @classmethod
    def from_dict(cls, raw: Optional[Dict[str, Any]]) -> "DateRange":
        raw = raw or {}
        return cls(date_from=to_date(raw.get("from")), date_to=to_date(raw.get("to")))


@dataclass
class CsvSource:
    """Reference to a retained original CSV file."""
    file_ref: str
    file_name: str
    size: int

    def to_dict(self) -> Dict[str, Any]:
        return {"file_ref": self.file_ref, "file_name": self.file_name, "size": self.size}

    @classmethod
    def from_dict(cls, raw: Optional[Dict[str, Any]]) -> Optional["CsvSource"]:
        if not raw:
            return None
        return cls(
            file_ref=_str(raw.get("file_ref") or raw.get("path")),
            file_name=_str(raw.get("file_name") or raw.get("fileName")) or "source.csv",
            size=int(raw.get("size") or 0),
        )


@dataclass
class ReconciliationSession:
    """
    A persisted reconciliation: a resumable draft or a completed record.

    bank_movements / internal_movements are only populated for legacy
    documents that stored the snapshot inline, or after hydration.
    """
    id: str
    name: str
    movement_type: MovementType
    status: SessionStatus
    client_id: str
    condominium_id: str
    version: int = 1
    date_range: DateRange = field(default_factory=DateRange)
    summary: ReconciliationSummary = EMPTY_SUMMARY
    traceability: Dict[str, Any] = field(default_factory=dict)
    created_by: Dict[str, str] = field(default_factory=dict)
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    csv_source: Optional[CsvSource] = None
    bank_movements: Optional[List[BankMovement]] = None
    internal_movements: Optional[List[InternalMovement]] = None

    @property
    def has_inline_movements(self) -> bool:
        return self.bank_movements is not None and self.internal_movements is not None

    def to_dict(self, include_movements: bool = False) -> Dict[str, Any]:
        data = {
            "id": self.id,
            "name": self.name,
            "type": self.movement_type.value,
            "status": self.status.value,
            "version": self.version,
            "client_id": self.client_id,
            "condominium_id": self.condominium_id,
            "date_range": self.date_range.to_dict(),
            "summary": self.summary.to_dict(),
            "traceability": dict(self.traceability),
            "created_by": dict(self.created_by),
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
            "csv_source": self.csv_source.to_dict() if self.csv_source else None,
        }
        if include_movements:
            data["bank_movements"] = [m.to_dict() for m in self.bank_movements or []]
            data["internal_movements"] = [m.to_dict() for m in self.internal_movements or []]
        return data

    @classmethod
    def from_dict(cls, raw: Dict[str, Any]) -> "ReconciliationSession":
        bank_raw = raw.get("bank_movements", raw.get("bankMovements"))
        internal_raw = raw.get(
            "internal_movements",
            raw.get("internalPayments", raw.get("internalExpenses")),
        )
        return cls(
            id=_str(raw.get("id")),
            name=_str(raw.get("name")),
            movement_type=MovementType(raw.get("type") or raw.get("movement_type")),
            status=SessionStatus(raw.get("status") or SessionStatus.DRAFT.value),
            client_id=_str(raw.get("client_id")),
            condominium_id=_str(raw.get("condominium_id")),
            version=int(raw.get("version") or 1),
            date_range=DateRange.from_dict(raw.get("date_range") or raw.get("dateRange")),
            summary=ReconciliationSummary.from_dict(raw.get("summary")),
            traceability=dict(raw.get("traceability") or {}),
            created_by=dict(raw.get("created_by") or raw.get("createdBy") or {}),
            created_at=to_datetime(raw.get("created_at") or raw.get("createdAt")),
            updated_at=to_datetime(raw.get("updated_at") or raw.get("updatedAt")),
            csv_source=CsvSource.from_dict(raw.get("csv_source") or raw.get("csvSource")),
            bank_movements=(
                [BankMovement.from_dict(item) for item in bank_raw]
                if isinstance(bank_raw, list) else None
            ),
            internal_movements=(
                [InternalMovement.from_dict(item) for item in internal_raw]
                if isinstance(internal_raw, list) else None
            ),
        )


@dataclass
class ResumedDraft:
    """What a caller needs to restore its filters after resuming a draft."""
    id: str
    name: str
    date_from: Optional[date]
    date_to: Optional[date]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "date_from": date_to_str(self.date_from) or "",
            "date_to": date_to_str(self.date_to) or "",
        }


@dataclass
class RecentSession:
    """Entry in the workspace's list of sessions completed this run."""
    id: str
    name: str
    created_at: datetime
    summary: ReconciliationSummary


@dataclass
class UploadedCsv:
    """Original bank statement file to retain alongside a draft."""
    file_name: str
    content: bytes
    content_type: str = "text/csv"

    @property
    def size(self) -> int:
        return len(self.content)
