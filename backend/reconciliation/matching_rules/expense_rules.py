"""
Expense Matching Rules

Looser rules for bank debits against vendor expenses.

Primary Match Keys:
- amount within tolerance
- date gap within tolerance (a missing date is never eligible)

Secondary Heuristics:
- +0.15 when the expense reference text appears in the bank
  description/reference
"""

from typing import Dict, Optional, Tuple

from reconciliation.flow_registry import MovementType
from reconciliation.matching_rules.base import BaseMatchingRules, MatchWindow, days_between
from reconciliation.models import BankMovement, InternalMovement
from reconciliation.text_utils import normalize_text


class ExpenseMatchingRules(BaseMatchingRules):
    """
    Matching rules for the expense flow.
    """

    movement_type = MovementType.EXPENSE
    REFERENCE_BONUS = 0.15

    def match_key(self, bank: BankMovement) -> Optional[str]:
        return normalize_text(f"{bank.description} {bank.reference}")

    def score_candidate(
        self,
        bank: BankMovement,
        key: str,
        internal: InternalMovement,
        window: MatchWindow,
    ) -> Optional[Tuple[float, Dict[str, float]]]:
        if not self.amount_within(bank, internal, window):
            return None
        gap = days_between(internal.movement_date, bank.date)
        if gap is None or gap > window.date_tolerance_days:
            return None

        date_score = window.date_score(gap)
        ref_text = normalize_text(internal.reference_text)
        bonus = self.REFERENCE_BONUS if ref_text and ref_text in key else 0.0

        breakdown = {
            "date": round(date_score, 4),
            "reference_bonus": bonus,
        }
        return date_score + bonus, breakdown


# Instantiate rules engine
expense_rules = ExpenseMatchingRules()
