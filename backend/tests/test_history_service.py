"""
Unit Tests for the Reconciliation History Index and Export

Tests:
- Fetch across both flows with movement counts
- Filters, search, created-at window, sort order
- Pagination clamping and page reset on filter change
- Lazy hydration and its failure path
- CSV export

Run with: pytest tests/test_history_service.py -v
"""

import csv
import io
from datetime import date, datetime, timezone
from unittest.mock import AsyncMock

import pytest

from factories import bank, payment, expense
from reconciliation.errors import ContextError, PersistenceError
from reconciliation.flow_registry import MovementType, MovementStatus, SessionStatus
from reconciliation.models import ReconciliationSession, TenantContext
from reconciliation.services.export import build_session_export, export_session_csv
from reconciliation.services.history_service import (
    HistoryFilters,
    HistoryItem,
    HistoryService,
    apply_filters,
    paginate,
)
from reconciliation.services.workspace import ReconciliationWorkspace


def _session(id, movement_type="income", status="draft", name=None, created=None, updated=None, creator="u1"):
    return ReconciliationSession(
        id=id,
        name=name or f"Sesion {id}",
        movement_type=MovementType(movement_type),
        status=SessionStatus(status),
        client_id="client-1",
        condominium_id="condo-1",
        created_by={"id": creator, "role": "admin"},
        created_at=created,
        updated_at=updated,
    )


def _items(*sessions):
    return [HistoryItem.from_session(s) for s in sessions]


def _at(day, hour=12):
    return datetime(2024, 3, day, hour, tzinfo=timezone.utc)


class TestHistoryItem:
    """Test history item construction."""

    def test_counts_from_traceability(self):
        session = _session("s1")
        session.traceability = {"bank_movements_count": 4, "internal_movements_count": 3}
        item = HistoryItem.from_session(session)
        assert item.bank_movements_count == 4
        assert item.internal_movements_count == 3
        assert not item.is_hydrated

    def test_counts_fall_back_to_inline_arrays(self):
        session = _session("s1")
        session.bank_movements = [bank("b1", "1"), bank("b2", "2")]
        session.internal_movements = [payment("p1", "1")]
        item = HistoryItem.from_session(session)
        assert item.bank_movements_count == 2
        assert item.internal_movements_count == 1
        assert item.is_hydrated


class TestFilters:
    """Test filtering and sorting."""

    @pytest.fixture
    def items(self):
        return _items(
            _session("inc-1", "income", "draft", name="Marzo ingresos", created=_at(1), updated=_at(20)),
            _session("inc-2", "income", "completed", name="Febrero", created=_at(10), updated=_at(11)),
            _session("exp-1", "expense", "completed", name="Egresos marzo", created=_at(15), creator="ana"),
            _session("exp-2", "expense", "draft", name="Sin fecha"),
        )

    def test_default_sorted_by_update_desc(self, items):
        result = apply_filters(items, HistoryFilters())
        assert [i.id for i in result] == ["inc-1", "exp-1", "inc-2", "exp-2"]

    def test_ascending(self, items):
        result = apply_filters(items, HistoryFilters(updated_order="asc"))
        assert [i.id for i in result] == ["exp-2", "inc-2", "exp-1", "inc-1"]

    def test_by_type_and_status(self, items):
        result = apply_filters(items, HistoryFilters(movement_type="expense", status="completed"))
        assert [i.id for i in result] == ["exp-1"]

    def test_search_name_id_and_creator(self, items):
        assert [i.id for i in apply_filters(items, HistoryFilters(search="MARZO"))] == ["inc-1", "exp-1"]
        assert [i.id for i in apply_filters(items, HistoryFilters(search="inc-2"))] == ["inc-2"]
        assert [i.id for i in apply_filters(items, HistoryFilters(search="ana"))] == ["exp-1"]

    def test_created_window_keeps_undated(self, items):
        result = apply_filters(items, HistoryFilters(date_from=date(2024, 3, 10), date_to=date(2024, 3, 14)))
        assert sorted(i.id for i in result) == ["exp-2", "inc-2"]

    def test_window_end_is_inclusive(self, items):
        result = apply_filters(items, HistoryFilters(date_from=date(2024, 3, 15), date_to=date(2024, 3, 15)))
        assert "exp-1" in [i.id for i in result]


class TestPagination:
    """Test fixed-size pages."""

    def test_pages(self):
        items = _items(*[_session(f"s{i}") for i in range(23)])
        page = paginate(items, 3, 10)
        assert page.total_pages == 3
        assert page.total_items == 23
        assert len(page.items) == 3

    def test_page_clamped(self):
        items = _items(*[_session(f"s{i}") for i in range(5)])
        assert paginate(items, 9, 10).page == 1
        assert paginate(items, 0, 10).page == 1

    def test_empty_has_one_page(self):
        page = paginate([], 1, 10)
        assert page.total_pages == 1
        assert page.items == []


class TestHistoryService:
    """Test the stateful history service."""

    @pytest.fixture
    async def populated(self, session_service, repository, context):
        for index in range(12):
            workspace = ReconciliationWorkspace(MovementType.INCOME if index % 2 else MovementType.EXPENSE)
            workspace.restore([bank(f"b{index}", "10")], [], None)
            await session_service.save_progress(workspace, context, name=f"Borrador {index}")
        return HistoryService(repository, page_size=5)

    @pytest.mark.asyncio
    async def test_fetch_both_flows(self, populated, context):
        page = await populated.fetch_sessions(context)

        assert page.total_items == 12
        assert page.total_pages == 3
        assert len(page.items) == 5
        assert {item.movement_type for item in populated.sessions} == {MovementType.INCOME, MovementType.EXPENSE}
        assert all(item.bank_movements_count == 1 for item in populated.sessions)

    @pytest.mark.asyncio
    async def test_filter_change_resets_page(self, populated, context):
        await populated.fetch_sessions(context)
        assert populated.set_page(3).page == 3

        page = populated.set_filters(movement_type="income")

        assert page.page == 1
        assert page.total_items == 6

    @pytest.mark.asyncio
    async def test_fetch_requires_context(self, repository):
        service = HistoryService(repository)
        with pytest.raises(ContextError):
            await service.fetch_sessions(TenantContext(client_id="", condominium_id="condo-1"))
        assert service.error

    @pytest.mark.asyncio
    async def test_open_and_hydrate(self, populated, context):
        await populated.fetch_sessions(context)
        target = populated.sessions[0]

        item = populated.open_session_detail(target.id, target.movement_type)
        assert populated.selected is item
        assert not item.is_hydrated

        hydrated = await populated.hydrate_session_movements(target.id, target.movement_type)
        assert hydrated.is_hydrated
        assert len(hydrated.bank_movements) == 1
        assert hydrated.internal_movements == []

        populated.close_session_detail()
        assert populated.selected is None

    @pytest.mark.asyncio
    async def test_hydration_failure_returns_unhydrated(self, populated, context):
        await populated.fetch_sessions(context)
        target = populated.sessions[0]
        populated.repository.load_movements = AsyncMock(side_effect=PersistenceError("read failed"))

        item = await populated.hydrate_session_movements(target.id, target.movement_type)

        assert item is target
        assert not item.is_hydrated
        assert populated.error == "read failed"

    @pytest.mark.asyncio
    async def test_unknown_session(self, populated, context):
        await populated.fetch_sessions(context)
        assert populated.open_session_detail("nope", MovementType.INCOME) is None
        assert await populated.hydrate_session_movements("nope", MovementType.INCOME) is None


class TestExport:
    """Test session export."""

    @pytest.fixture
    def income_item(self):
        session = _session("s1", "income", "completed", name="Marzo")
        session.traceability = {"snapshot_hash": "h0000abcd"}
        item = HistoryItem.from_session(session)
        item.bank_movements = [
            bank("b1", "1500.00", date(2024, 3, 1), reference="PAGO-778",
                 status=MovementStatus.MATCHED, matched="p1"),
            bank("b2", "20.00", status=MovementStatus.IGNORED),
        ]
        item.internal_movements = [payment("p1", "1500.00", date(2024, 3, 1), reference="pago-778")]
        return item

    def test_build_export(self, income_item):
        export = build_session_export(income_item)

        assert export.title == "Conciliación de ingresos - Marzo"
        assert ["Hash", "h0000abcd"] in export.summary_rows
        assert ["Estatus", "Completada"] in export.summary_rows
        assert export.bank_rows[0][5] == "Conciliado automático"
        assert export.bank_rows[1][5] == "Ignorado"
        assert export.internal_headers[2] == "Número"
        assert export.internal_rows[0][6] == "pago-778"

    def test_expense_export_columns(self):
        item = HistoryItem.from_session(_session("e1", "expense"))
        item.bank_movements = []
        item.internal_movements = [expense("x1", "800", date(2024, 3, 12), folio="F-10")]

        export = build_session_export(item)

        assert export.internal_headers == ["ID", "Fecha", "Folio", "Concepto", "Tipo de pago", "Monto"]
        assert export.internal_rows == [["x1", "2024-03-12", "F-10", "Mantenimiento", "", "800"]]

    def test_csv_rendering(self, income_item):
        content = export_session_csv(income_item)
        rows = list(csv.reader(io.StringIO(content)))

        assert rows[0] == ["Conciliación de ingresos - Marzo"]
        assert ["Movimientos bancarios"] in rows
        assert ["Movimientos internos"] in rows
        assert ["b1", "2024-03-01", "", "PAGO-778", "1500.00", "Conciliado automático", "p1", "1.0"] in rows
