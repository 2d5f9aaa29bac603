"""
Internal Movement Loaders

Load the platform's own records for a tenant and period:
- INCOME: resident payments (staff roles excluded)
- EXPENSE: vendor expenses

Amounts are stored in cents and converted to currency units.
"""

import logging
from abc import ABC, abstractmethod
from datetime import date
from decimal import Decimal
from typing import Dict, List, Optional, Tuple

from sqlalchemy import bindparam, text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import async_sessionmaker

from reconciliation.errors import PersistenceError
from reconciliation.flow_registry import MovementType
from reconciliation.models import InternalMovement, TenantContext, to_date, to_decimal

logger = logging.getLogger(__name__)

# Users with these roles do not pay condominium charges
STAFF_ROLES = ("admin", "super-admin", "admin-assistant", "security")

CENTS = Decimal("100")


def cents_to_amount(value) -> Decimal:
    return to_decimal(value) / CENTS


class InternalMovementLoader(ABC):

    @abstractmethod
    async def load(
        self,
        context: TenantContext,
        movement_type: MovementType,
        date_from: Optional[date] = None,
        date_to: Optional[date] = None,
    ) -> List[InternalMovement]:
        ...


class StaticInternalMovementLoader(InternalMovementLoader):
    """Serves pre-registered movements per tenant and flow."""

    def __init__(self):
        self._movements: Dict[Tuple[str, str, MovementType], List[InternalMovement]] = {}

    def register(self, context: TenantContext, movement_type: MovementType, movements: List[InternalMovement]):
        self._movements[(context.client_id, context.condominium_id, MovementType(movement_type))] = list(movements)

    async def load(
        self,
        context: TenantContext,
        movement_type: MovementType,
        date_from: Optional[date] = None,
        date_to: Optional[date] = None,
    ) -> List[InternalMovement]:
        movements = self._movements.get(
            (context.client_id, context.condominium_id, MovementType(movement_type)), []
        )
        return [
            m for m in movements
            if (date_from is None or (m.movement_date is not None and m.movement_date >= date_from))
            and (date_to is None or (m.movement_date is not None and m.movement_date <= date_to))
        ]


class SqlInternalMovementLoader(InternalMovementLoader):
    """
    Reads resident_payments and expenses from PostgreSQL.
    """

    PAYMENTS_QUERY = """
        SELECT user_id, user_number, charge_id, payment_id, amount_paid_cents,
               payment_date, payment_type, payment_reference, reference, comments, folio
        FROM public.resident_payments
        WHERE client_id = :client_id
          AND condominium_id = :condominium_id
          AND COALESCE(user_role, '') NOT IN :staff_roles
          {period}
        ORDER BY payment_date NULLS LAST, user_id, charge_id, payment_id
    """

    EXPENSES_QUERY = """
        SELECT id, folio, amount_cents, expense_date, register_date,
               concept, description, payment_type
        FROM public.expenses
        WHERE client_id = :client_id
          AND condominium_id = :condominium_id
          {period}
        ORDER BY COALESCE(expense_date, register_date) NULLS LAST, id
    """

    def __init__(self, session_factory: async_sessionmaker):
        self.session_factory = session_factory

    def _period_clause(self, column: str, date_from: Optional[date], date_to: Optional[date]) -> str:
        clauses = []
        if date_from is not None:
            clauses.append(f"AND {column} >= :date_from")
        if date_to is not None:
            clauses.append(f"AND {column} <= :date_to")
        return "\n          ".join(clauses)

    async def load(
        self,
        context: TenantContext,
        movement_type: MovementType,
        date_from: Optional[date] = None,
        date_to: Optional[date] = None,
    ) -> List[InternalMovement]:
        context.require()
        params = {
            "client_id": context.client_id,
            "condominium_id": context.condominium_id,
        }
        if date_from is not None:
            params["date_from"] = date_from
        if date_to is not None:
            params["date_to"] = date_to

        if MovementType(movement_type) == MovementType.INCOME:
            sql = self.PAYMENTS_QUERY.format(
                period=self._period_clause("payment_date", date_from, date_to)
            )
            params["staff_roles"] = STAFF_ROLES
            query = text(sql).bindparams(bindparam("staff_roles", expanding=True))
            mapper = self._payment_from_row
        else:
            sql = self.EXPENSES_QUERY.format(
                period=self._period_clause("COALESCE(expense_date, register_date)", date_from, date_to)
            )
            query = text(sql)
            mapper = self._expense_from_row

        async with self.session_factory() as db:
            try:
                result = await db.execute(query, params)
                rows = result.fetchall()
            except SQLAlchemyError as e:
                logger.error(f"Failed to load internal movements: {e}")
                raise PersistenceError(
                    "Failed to load internal movements",
                    details={"movement_type": MovementType(movement_type).value},
                ) from e

        movements = [mapper(row._mapping) for row in rows]
        logger.info(
            "Internal movements loaded",
            extra={
                "client_id": context.client_id,
                "condominium_id": context.condominium_id,
                "movement_type": MovementType(movement_type).value,
                "count": len(movements),
            },
        )
        return movements

    def _payment_from_row(self, row) -> InternalMovement:
        user_id = str(row["user_id"] or "")
        charge_id = str(row["charge_id"] or "")
        payment_id = str(row["payment_id"] or "")
        return InternalMovement(
            id=f"{user_id}_{charge_id}_{payment_id}",
            amount=cents_to_amount(row["amount_paid_cents"]),
            movement_date=to_date(row["payment_date"]),
            reference_text=str(row["reference"] or row["comments"] or row["folio"] or ""),
            user_id=user_id,
            user_number=str(row["user_number"] or ""),
            charge_id=charge_id,
            payment_id=payment_id,
            payment_type=str(row["payment_type"] or ""),
            payment_reference=str(row["payment_reference"] or row["reference"] or ""),
        )

    def _expense_from_row(self, row) -> InternalMovement:
        expense_id = str(row["id"])
        return InternalMovement(
            id=expense_id,
            amount=cents_to_amount(row["amount_cents"]),
            movement_date=to_date(row["expense_date"] or row["register_date"]),
            reference_text=str(row["folio"] or row["description"] or row["concept"] or ""),
            expense_id=expense_id,
            folio=str(row["folio"] or ""),
            concept=str(row["concept"] or ""),
            payment_type=str(row["payment_type"] or ""),
        )
