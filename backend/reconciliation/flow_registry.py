"""
Reconciliation Flow Registry

Central registry of the supported reconciliation flows.
Each flow has:
- Movement type (income or expense)
- Display name and default draft name
- CSV header keyword sets used to resolve column roles
- Persistence naming (collection, audit module, entity type)

Supported Flows:
- INCOME: bank credits reconciled against resident payments
- EXPENSE: bank debits reconciled against vendor expenses
"""

from enum import Enum
from typing import Dict, Any, List, Optional
from dataclasses import dataclass, field


class MovementType(str, Enum):
    """
    Reconciliation flow, which also implies the direction of bank amounts.
    """
    INCOME = "income"
    EXPENSE = "expense"


class MovementStatus(str, Enum):
    """
    Status of a bank movement within a reconciliation.
    """
    PENDING = "pending"             # Not assigned to any internal movement
    MATCHED = "matched"             # Assigned by auto-match
    MANUAL_MATCH = "manual_match"   # Assigned by a user
    IGNORED = "ignored"             # Excluded by a user


MATCHED_STATUSES = (MovementStatus.MATCHED, MovementStatus.MANUAL_MATCH)


class SessionStatus(str, Enum):
    """
    Lifecycle status of a persisted reconciliation session.
    """
    DRAFT = "draft"
    COMPLETED = "completed"


class SessionAction(str, Enum):
    """Last action recorded in a session's traceability block."""
    SAVE_DRAFT = "save_draft"
    SAVE_SESSION = "save_session"


@dataclass
class FlowConfig:
    """
    Configuration for a reconciliation flow.
    """
    movement_type: MovementType
    display_name: str
    label: str
    notification_title: str
    default_draft_name: str
    default_session_prefix: str
    bank_id_prefix: str
    collection: str
    audit_module: str
    entity_type: str
    date_headers: List[str]
    description_headers: List[str]
    reference_headers: List[str]
    amount_headers: List[str]
    debit_headers: List[str]
    credit_headers: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "movement_type": self.movement_type.value,
            "display_name": self.display_name,
            "collection": self.collection,
            "audit_module": self.audit_module,
            "entity_type": self.entity_type,
            "headers": {
                "date": self.date_headers,
                "description": self.description_headers,
                "reference": self.reference_headers,
                "amount": self.amount_headers,
                "debit": self.debit_headers,
                "credit": self.credit_headers,
            },
        }


_COMMON_DATE_HEADERS = ["fecha", "date"]
_COMMON_DESCRIPTION_HEADERS = ["descripcion", "concepto", "detalle", "movimiento", "description"]
_COMMON_REFERENCE_HEADERS = ["referencia", "folio", "ref"]


class FlowRegistry:
    """
    Central registry for reconciliation flows.

    Provides lookup methods for the normalizer, the matching
    engine and the session lifecycle manager.
    """

    _default_configs: Dict[MovementType, FlowConfig] = {
        MovementType.INCOME: FlowConfig(
            movement_type=MovementType.INCOME,
            display_name="Conciliación de ingresos",
            label="ingresos",
            notification_title="Conciliación de ingresos con diferencia neta",
            default_draft_name="Conciliación ingresos (borrador)",
            default_session_prefix="Conciliacion ingresos",
            bank_id_prefix="bank",
            collection="paymentReconciliations",
            audit_module="ConciliacionIngresos",
            entity_type="payment_reconciliation",
            date_headers=_COMMON_DATE_HEADERS,
            description_headers=_COMMON_DESCRIPTION_HEADERS,
            reference_headers=_COMMON_REFERENCE_HEADERS,
            amount_headers=["monto", "importe", "abono", "deposito", "credito", "amount"],
            debit_headers=["cargo", "debito", "debit"],
            credit_headers=["abono", "credito", "deposito", "credit"],
        ),
        MovementType.EXPENSE: FlowConfig(
            movement_type=MovementType.EXPENSE,
            display_name="Conciliación de egresos",
            label="egresos",
            notification_title="Conciliación de egresos con diferencia neta",
            default_draft_name="Conciliación egresos (borrador)",
            default_session_prefix="Conciliacion egresos",
            bank_id_prefix="bank_exp",
            collection="expenseReconciliations",
            audit_module="ConciliacionEgresos",
            entity_type="expense_reconciliation",
            date_headers=_COMMON_DATE_HEADERS,
            description_headers=_COMMON_DESCRIPTION_HEADERS,
            reference_headers=_COMMON_REFERENCE_HEADERS,
            amount_headers=["monto", "importe", "amount"],
            debit_headers=["cargo", "debito", "retiro", "debit"],
        ),
    }

    def __init__(self):
        self._configs = dict(self._default_configs)

    def get_config(self, movement_type: MovementType) -> FlowConfig:
        """Get configuration for a flow."""
        return self._configs[MovementType(movement_type)]

    def get_all_configs(self) -> List[FlowConfig]:
        """Get all flow configurations."""
        return list(self._configs.values())

    def find_by_collection(self, collection: str) -> Optional[FlowConfig]:
        for cfg in self._configs.values():
            if cfg.collection == collection:
                return cfg
        return None

    def to_dict(self) -> Dict[str, Any]:
        """Export registry as dictionary."""
        return {
            movement_type.value: cfg.to_dict()
            for movement_type, cfg in self._configs.items()
        }


# Global registry instance
flow_registry = FlowRegistry()
