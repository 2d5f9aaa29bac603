"""
Summary Aggregator

Pure function from (bank movements, internal movements) to
ReconciliationSummary. Every mutation of the working set recomputes it.
"""

from typing import Iterable, List

from reconciliation.flow_registry import MovementStatus
from reconciliation.models import (
    BankMovement,
    InternalMovement,
    ReconciliationSummary,
    ZERO,
)


def build_summary(
    bank_movements: Iterable[BankMovement],
    internal_movements: Iterable[InternalMovement],
) -> ReconciliationSummary:
    bank: List[BankMovement] = list(bank_movements)
    internal: List[InternalMovement] = list(internal_movements)

    bank_total = sum((m.amount for m in bank), ZERO)
    bank_matched = sum((m.amount for m in bank if m.is_matched), ZERO)
    bank_pending = sum((m.amount for m in bank if m.status == MovementStatus.PENDING), ZERO)
    bank_ignored = sum((m.amount for m in bank if m.status == MovementStatus.IGNORED), ZERO)

    matched_ids = {m.matched_internal_id for m in bank if m.matched_internal_id is not None}
    internal_matched = sum((m.amount for m in internal if m.id in matched_ids), ZERO)

    return ReconciliationSummary(
        bank_total=bank_total,
        bank_matched=bank_matched,
        bank_pending=bank_pending,
        bank_ignored=bank_ignored,
        internal_total=sum((m.amount for m in internal), ZERO),
        internal_matched=internal_matched,
        unmatched_difference=bank_total - internal_matched,
    )


def matched_count(bank_movements: Iterable[BankMovement]) -> int:
    return sum(1 for m in bank_movements if m.is_matched)
