"""
Matching Rules Module
"""

from reconciliation.flow_registry import MovementType

from .base import BaseMatchingRules, MatchWindow, MatchCandidate, AutoMatchResult
from .income_rules import IncomeMatchingRules, income_rules
from .expense_rules import ExpenseMatchingRules, expense_rules


def get_rules(movement_type: MovementType) -> BaseMatchingRules:
    """Rules engine for a flow."""
    if MovementType(movement_type) == MovementType.INCOME:
        return income_rules
    return expense_rules


__all__ = [
    "BaseMatchingRules", "MatchWindow", "MatchCandidate", "AutoMatchResult",
    "IncomeMatchingRules", "income_rules",
    "ExpenseMatchingRules", "expense_rules",
    "get_rules",
]
