"""
Bank Reconciliation Engine Module

Reconciles bank statement movements against the platform's own records:
- Income flow: bank deposits vs resident payments
- Expense flow: bank withdrawals vs registered expenses
- CSV normalization, auto-matching with date/amount tolerances
- Manual overrides, resumable drafts, completed sessions
- History index with lazy hydration and CSV export
"""

from reconciliation.flow_registry import (
    MovementType,
    MovementStatus,
    SessionStatus,
    SessionAction,
    FlowConfig,
    FlowRegistry,
    flow_registry
)
from reconciliation.errors import (
    ReconciliationError,
    ValidationError,
    ContextError,
    PersistenceError,
    NotFoundError
)
from reconciliation.matching_rules import (
    MatchWindow,
    AutoMatchResult,
    IncomeMatchingRules,
    ExpenseMatchingRules,
    get_rules
)
from reconciliation.services.workspace import ReconciliationWorkspace
from reconciliation.services.session_service import SessionService
from reconciliation.services.history_service import HistoryService
from reconciliation.endpoints.reconciliation_api import router as reconciliation_router

__all__ = [
    # Flow Registry
    'MovementType',
    'MovementStatus',
    'SessionStatus',
    'SessionAction',
    'FlowConfig',
    'FlowRegistry',
    'flow_registry',
    # Errors
    'ReconciliationError',
    'ValidationError',
    'ContextError',
    'PersistenceError',
    'NotFoundError',
    # Matching Rules
    'MatchWindow',
    'AutoMatchResult',
    'IncomeMatchingRules',
    'ExpenseMatchingRules',
    'get_rules',
    # Services
    'ReconciliationWorkspace',
    'SessionService',
    'HistoryService',
    # Router
    'reconciliation_router'
]
