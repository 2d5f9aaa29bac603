"""
Income Matching Rules

Strict rules for bank credits against resident payments.

Primary Match Keys:
- normalized bank reference (description when the reference is blank)
  must equal the normalized payment reference
- amount within tolerance

Date proximity only adds confidence, it never blocks a match:
score = 1 + max(0, 1 - gap / max(tolerance, 1)), with a missing date
contributing 0.
"""

from typing import Dict, Optional, Tuple

from reconciliation.flow_registry import MovementType
from reconciliation.matching_rules.base import BaseMatchingRules, MatchWindow, days_between
from reconciliation.models import BankMovement, InternalMovement
from reconciliation.text_utils import normalize_reference


class IncomeMatchingRules(BaseMatchingRules):
    """
    Matching rules for the income flow.
    """

    movement_type = MovementType.INCOME
    REFERENCE_SCORE = 1.0

    def match_key(self, bank: BankMovement) -> Optional[str]:
        key = normalize_reference(bank.reference or bank.description or "")
        return key or None

    def score_candidate(
        self,
        bank: BankMovement,
        key: str,
        internal: InternalMovement,
        window: MatchWindow,
    ) -> Optional[Tuple[float, Dict[str, float]]]:
        if not self.amount_within(bank, internal, window):
            return None
        payment_ref = normalize_reference(internal.payment_reference)
        if not payment_ref or payment_ref != key:
            return None

        date_score = window.date_score(days_between(internal.movement_date, bank.date))
        breakdown = {
            "reference": self.REFERENCE_SCORE,
            "date": round(date_score, 4),
        }
        return self.REFERENCE_SCORE + date_score, breakdown


# Instantiate rules engine
income_rules = IncomeMatchingRules()
