"""
Unit Tests for the Reconciliation Workspace and Summary Aggregator

Tests:
- Summary totals and the bank_total partition
- CSV import, including rejected files
- Manual match, clear and ignore (with unknown ids as no-ops)
- Internal movement loading through a loader
- Reset

Run with: pytest tests/test_workspace.py -v
"""

from datetime import date
from decimal import Decimal
from unittest.mock import AsyncMock

import pytest

from factories import bank, payment
from reconciliation.errors import ContextError, PersistenceError, ValidationError
from reconciliation.flow_registry import MovementType, MovementStatus
from reconciliation.loaders import StaticInternalMovementLoader
from reconciliation.models import EMPTY_SUMMARY, TenantContext
from reconciliation.services.workspace import ReconciliationWorkspace
from reconciliation.summary import build_summary, matched_count


def _partition_holds(summary):
    return summary.bank_total == summary.bank_pending + summary.bank_matched + summary.bank_ignored


class TestSummary:
    """Test summary aggregation."""

    def test_empty(self):
        assert build_summary([], []) == EMPTY_SUMMARY

    def test_totals(self):
        bank_movements = [
            bank("b1", "1000", status=MovementStatus.MATCHED, matched="p1"),
            bank("b2", "500", status=MovementStatus.MANUAL_MATCH, matched="p2"),
            bank("b3", "200"),
            bank("b4", "50", status=MovementStatus.IGNORED),
        ]
        internal = [payment("p1", "1000"), payment("p2", "490"), payment("p3", "75")]

        summary = build_summary(bank_movements, internal)

        assert summary.bank_total == Decimal("1750")
        assert summary.bank_matched == Decimal("1500")
        assert summary.bank_pending == Decimal("200")
        assert summary.bank_ignored == Decimal("50")
        assert summary.internal_total == Decimal("1565")
        assert summary.internal_matched == Decimal("1490")
        assert summary.unmatched_difference == Decimal("260")
        assert _partition_holds(summary)
        assert matched_count(bank_movements) == 2

    def test_to_dict_uses_strings(self):
        summary = build_summary([bank("b1", "10.50")], [])
        assert summary.to_dict()["bank_total"] == "10.50"


class TestCsvImport:
    """Test bank CSV import into the workspace."""

    def test_import_replaces_bank_set(self, income_workspace):
        state = income_workspace.import_bank_csv("Fecha,Referencia,Monto\n2024-03-01,X1,99\n")

        assert [m.amount for m in state.bank_movements] == [Decimal("99")]
        assert state.summary.bank_total == Decimal("99")
        assert state.error is None

    def test_single_line_csv_sets_error(self):
        workspace = ReconciliationWorkspace(MovementType.INCOME)

        with pytest.raises(ValidationError):
            workspace.import_bank_csv("Fecha,Referencia,Monto")

        assert workspace.error == "CSV without data"
        assert workspace.bank_movements == []

    def test_rejected_csv_keeps_previous_movements(self, income_workspace):
        before = list(income_workspace.bank_movements)
        with pytest.raises(ValidationError):
            income_workspace.import_bank_csv("")
        assert income_workspace.bank_movements == before


class TestManualOverrides:
    """Test set_manual_match, clear_match and ignore_movement."""

    def test_set_manual_match(self, income_workspace):
        state = income_workspace.set_manual_match("b2", "p2")

        movement = income_workspace.find_bank_movement("b2")
        assert movement.status == MovementStatus.MANUAL_MATCH
        assert movement.matched_internal_id == "p2"
        assert movement.confidence == 1.0
        assert state.summary.internal_matched == Decimal("75.00")

    def test_clear_then_set_equals_set(self, income_workspace):
        income_workspace.run_auto_match()
        direct = ReconciliationWorkspace(MovementType.INCOME)
        direct.restore(income_workspace.bank_movements, income_workspace.internal_movements, None)

        income_workspace.clear_match("b1")
        income_workspace.set_manual_match("b1", "p1")
        direct.set_manual_match("b1", "p1")

        assert income_workspace.bank_movements == direct.bank_movements
        assert income_workspace.summary == direct.summary

    def test_clear_match(self, income_workspace):
        income_workspace.run_auto_match()
        state = income_workspace.clear_match("b1")

        movement = state.bank_movements[0]
        assert movement.status == MovementStatus.PENDING
        assert movement.matched_internal_id is None
        assert movement.confidence is None
        assert state.summary.bank_matched == Decimal("0")

    def test_ignore_movement(self, income_workspace):
        income_workspace.set_manual_match("b1", "p1")
        state = income_workspace.ignore_movement("b1")

        movement = state.bank_movements[0]
        assert movement.status == MovementStatus.IGNORED
        assert movement.matched_internal_id is None
        assert state.summary.bank_ignored == Decimal("1500.00")
        assert _partition_holds(state.summary)

    def test_unknown_ids_are_noops(self, income_workspace):
        before = income_workspace.state

        assert income_workspace.set_manual_match("missing", "p1") == before
        assert income_workspace.set_manual_match("b1", "missing") == before
        assert income_workspace.clear_match("missing") == before
        assert income_workspace.ignore_movement("missing") == before

    def test_auto_match_keeps_manual_override(self, income_workspace):
        income_workspace.set_manual_match("b2", "p1")
        state = income_workspace.run_auto_match()

        assert state.bank_movements[1].status == MovementStatus.MANUAL_MATCH
        # p1 is reserved by the manual match, so b1 finds nothing
        assert state.bank_movements[0].status == MovementStatus.PENDING

    def test_partition_after_every_operation(self, income_workspace):
        states = [
            income_workspace.run_auto_match(),
            income_workspace.set_manual_match("b2", "p2"),
            income_workspace.ignore_movement("b1"),
            income_workspace.clear_match("b2"),
        ]
        assert all(_partition_holds(s.summary) for s in states)


class TestInternalLoading:
    """Test loading internal movements."""

    @pytest.fixture
    def loader(self, context):
        loader = StaticInternalMovementLoader()
        loader.register(context, MovementType.INCOME, [
            payment("p1", "100", date(2024, 3, 1), reference="A"),
            payment("p2", "200", date(2024, 4, 1), reference="B"),
        ])
        return loader

    @pytest.mark.asyncio
    async def test_load_with_period(self, context, loader):
        workspace = ReconciliationWorkspace(MovementType.INCOME, loader=loader)
        state = await workspace.load_internal_movements(context, date(2024, 3, 1), date(2024, 3, 31))

        assert [m.id for m in state.internal_movements] == ["p1"]
        assert state.summary.internal_total == Decimal("100")
        assert state.last_loaded_at is not None

    @pytest.mark.asyncio
    async def test_missing_context(self, loader):
        workspace = ReconciliationWorkspace(MovementType.INCOME, loader=loader)

        with pytest.raises(ContextError):
            await workspace.load_internal_movements(TenantContext(client_id="", condominium_id=""))

        assert workspace.error == "Client/condominium context is not available"
        assert workspace.internal_movements == []

    @pytest.mark.asyncio
    async def test_loader_failure_leaves_state(self, context, income_workspace):
        failing = AsyncMock()
        failing.load.side_effect = PersistenceError("database unavailable")
        income_workspace.loader = failing
        before = list(income_workspace.internal_movements)

        with pytest.raises(PersistenceError):
            await income_workspace.load_internal_movements(context)

        assert income_workspace.internal_movements == before
        assert income_workspace.error == "database unavailable"


class TestReset:
    """Test workspace reset."""

    def test_reset(self, income_workspace):
        income_workspace.active_session_id = "s1"
        state = income_workspace.reset()

        assert state.bank_movements == ()
        assert state.internal_movements == ()
        assert state.summary == EMPTY_SUMMARY
        assert state.active_session_id is None
