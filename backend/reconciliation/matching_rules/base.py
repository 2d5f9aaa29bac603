"""
Matching Rules Base

Greedy, one-to-one auto-matching shared by the income and expense flows.

Algorithm:
- Bank movements are visited in their original order
- ignored rows and rows outside the date window pass through unchanged
- manual_match rows are kept, and their internal ids leave the pool
- Each remaining row takes the eligible internal movement with the
  strictly greatest score (first candidate wins ties)
- No eligible candidate resets the row to pending

Flow-specific eligibility and scoring live in the subclasses.
"""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import date
from decimal import Decimal
from typing import Dict, Any, List, Optional, Set, Tuple

from reconciliation.flow_registry import MovementType, MovementStatus
from reconciliation.models import BankMovement, InternalMovement

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class MatchWindow:
    """
    Tolerances and optional date scope for one auto-match run.

    Bounds are inclusive whole days. With any bound set, a movement
    without a date is out of scope.
    """
    date_tolerance_days: int = 3
    amount_tolerance: Decimal = Decimal("0.01")
    date_from: Optional[date] = None
    date_to: Optional[date] = None

    @property
    def is_bounded(self) -> bool:
        return self.date_from is not None or self.date_to is not None

    def contains(self, value: Optional[date]) -> bool:
        if not self.is_bounded:
            return True
        if value is None:
            return False
        if self.date_from is not None and value < self.date_from:
            return False
        if self.date_to is not None and value > self.date_to:
            return False
        return True

    def date_score(self, gap_days: Optional[float]) -> float:
        """1 at the same day, falling linearly to 0 at the tolerance."""
        if gap_days is None:
            return 0.0
        return max(0.0, 1 - gap_days / max(self.date_tolerance_days, 1))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "date_tolerance_days": self.date_tolerance_days,
            "amount_tolerance": str(self.amount_tolerance),
            "date_from": self.date_from.isoformat() if self.date_from else None,
            "date_to": self.date_to.isoformat() if self.date_to else None,
        }


def days_between(a: Optional[date], b: Optional[date]) -> Optional[float]:
    if a is None or b is None:
        return None
    return float(abs((a - b).days))


@dataclass
class MatchCandidate:
    """
    An eligible internal movement for one bank movement.
    """
    internal_id: str
    score: float
    scoring_breakdown: Dict[str, float]


@dataclass
class AutoMatchResult:
    """
    Result of an auto-match pass over the whole working set.
    """
    movements: List[BankMovement]
    matched: int = 0
    pending: int = 0
    skipped: int = 0
    preserved: int = 0
    assignments: Dict[str, str] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "matched": self.matched,
            "pending": self.pending,
            "skipped": self.skipped,
            "preserved": self.preserved,
            "assignments": dict(self.assignments),
        }


class BaseMatchingRules(ABC):
    """
    Deterministic rule-based matcher for one reconciliation flow.
    """

    movement_type: MovementType

    def match_key(self, bank: BankMovement) -> Optional[str]:
        """
        Per-row key computed once before scanning candidates.

        Returning None means the row cannot be matched at all.
        """
        return ""

    @abstractmethod
    def score_candidate(
        self,
        bank: BankMovement,
        key: str,
        internal: InternalMovement,
        window: MatchWindow,
    ) -> Optional[Tuple[float, Dict[str, float]]]:
        """
        Score an internal movement against a bank movement.

        Returns None when the candidate is not eligible.
        """

    def amount_within(self, bank: BankMovement, internal: InternalMovement, window: MatchWindow) -> bool:
        return abs(internal.amount - bank.amount) <= window.amount_tolerance

    def find_best(
        self,
        bank: BankMovement,
        pool: List[InternalMovement],
        used: Set[str],
        window: MatchWindow,
    ) -> Optional[MatchCandidate]:
        key = self.match_key(bank)
        if key is None:
            return None

        best: Optional[MatchCandidate] = None
        for internal in pool:
            if internal.id in used:
                continue
            scored = self.score_candidate(bank, key, internal, window)
            if scored is None:
                continue
            score, breakdown = scored
            if best is None or score > best.score:
                best = MatchCandidate(internal.id, score, breakdown)
        return best

    def auto_match(
        self,
        bank_movements: List[BankMovement],
        internal_movements: List[InternalMovement],
        window: MatchWindow,
    ) -> AutoMatchResult:
        """
        Run one greedy auto-match pass.

        Returns new BankMovement objects; the inputs are not mutated.
        """
        pool = [m for m in internal_movements if window.contains(m.movement_date)]

        # Assignments that survive this pass keep their internal ids out of the pool
        used: Set[str] = set()
        for bank in bank_movements:
            keeps_assignment = bank.status == MovementStatus.MANUAL_MATCH or (
                bank.status == MovementStatus.MATCHED and not window.contains(bank.date)
            )
            if keeps_assignment and bank.matched_internal_id is not None:
                used.add(bank.matched_internal_id)

        result = AutoMatchResult(movements=[])
        for bank in bank_movements:
            if bank.status == MovementStatus.IGNORED or not window.contains(bank.date):
                result.movements.append(bank)
                result.skipped += 1
                continue
            if bank.status == MovementStatus.MANUAL_MATCH:
                result.movements.append(bank)
                result.preserved += 1
                continue

            best = self.find_best(bank, pool, used, window)
            if best is None:
                result.movements.append(bank.unassign())
                result.pending += 1
                continue

            used.add(best.internal_id)
            result.movements.append(
                bank.assign(best.internal_id, MovementStatus.MATCHED, round(best.score, 2))
            )
            result.assignments[bank.id] = best.internal_id
            result.matched += 1

        logger.info(
            "Auto-match pass completed",
            extra={
                "movement_type": self.movement_type.value,
                "window": window.to_dict(),
                "matched": result.matched,
                "pending": result.pending,
                "skipped": result.skipped,
                "preserved": result.preserved,
            },
        )
        return result
