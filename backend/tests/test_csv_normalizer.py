"""
Unit Tests for the Bank Statement CSV Normalizer

Tests:
- Amount and date parsing primitives
- Header resolution per flow
- Income credit/debit rules and expense absolute-value rules
- Rejection of CSVs without data rows

Run with: pytest tests/test_csv_normalizer.py -v
"""

from datetime import date
from decimal import Decimal

import pytest

from reconciliation.csv_normalizer import (
    BankCsvNormalizer,
    ColumnMap,
    parse_amount,
    parse_csv_rows,
    parse_date,
)
from reconciliation.errors import ValidationError
from reconciliation.flow_registry import MovementType, MovementStatus, flow_registry


class TestParseAmount:
    """Test amount parsing."""

    def test_currency_symbol_and_thousands(self):
        assert parse_amount("$1,500.00") == Decimal("1500.00")

    def test_negative(self):
        assert parse_amount("-800.50") == Decimal("-800.50")

    def test_blank_and_garbage_are_zero(self):
        assert parse_amount("") == Decimal("0")
        assert parse_amount(None) == Decimal("0")
        assert parse_amount("N/A") == Decimal("0")
        assert parse_amount("1.2.3") == Decimal("0")


class TestParseDate:
    """Test date parsing."""

    def test_iso(self):
        assert parse_date("2024-03-15") == date(2024, 3, 15)

    def test_iso_with_time(self):
        assert parse_date("2024-03-15T10:30:00") == date(2024, 3, 15)

    def test_day_month_year(self):
        assert parse_date("15/03/2024") == date(2024, 3, 15)

    def test_two_digit_year(self):
        assert parse_date("5/1/24") == date(2024, 1, 5)

    def test_invalid(self):
        assert parse_date("31/02/2024") is None
        assert parse_date("ayer") is None
        assert parse_date("") is None


class TestParseRows:
    """Test CSV row splitting."""

    def test_quoted_cells_and_blank_lines(self):
        rows = parse_csv_rows('Fecha,Monto\n\n"2024-03-01"," 1,200.00 "\n , \n')
        assert rows == [["Fecha", "Monto"], ["2024-03-01", "1,200.00"]]

    def test_escaped_quote(self):
        rows = parse_csv_rows('Descripcion\n"Pago ""especial"""\n')
        assert rows[1] == ['Pago "especial"']


class TestColumnMap:
    """Test header resolution."""

    def test_accented_headers(self):
        config = flow_registry.get_config(MovementType.INCOME)
        columns = ColumnMap.resolve(["Fecha", "Descripción", "Referencia", "Cargo", "Abono"], config)
        assert columns.date == 0
        assert columns.description == 1
        assert columns.reference == 2
        assert columns.debit == 3
        assert columns.credit == 4

    def test_missing_columns(self):
        config = flow_registry.get_config(MovementType.EXPENSE)
        columns = ColumnMap.resolve(["Importe"], config)
        assert columns.amount == 0
        assert columns.date == -1
        assert columns.credit == -1


class TestIncomeNormalization:
    """Test income flow normalization."""

    CSV = (
        "Fecha,Descripción,Referencia,Cargo,Abono\n"
        "15/03/2024,Pago depto 101,PAGO-778,,\"$1,500.00\"\n"
        "16/03/2024,Comisión bancaria,,200.00,\n"
        "17/03/2024,Depósito,PAGO-779,,0\n"
        "18/03/2024,Transferencia,PAGO-780,,250.50\n"
    )

    def test_credit_rows_kept_debits_dropped(self):
        movements = BankCsvNormalizer(MovementType.INCOME).normalize(self.CSV, batch_id="t1")

        assert [m.id for m in movements] == ["bank_t1_0", "bank_t1_3"]
        assert movements[0].amount == Decimal("1500.00")
        assert movements[0].date == date(2024, 3, 15)
        assert movements[0].reference == "PAGO-778"
        assert movements[0].description == "Pago depto 101"
        assert all(m.status == MovementStatus.PENDING for m in movements)
        assert all(m.matched_internal_id is None for m in movements)

    def test_single_amount_column(self):
        csv_text = "Fecha,Concepto,Monto\n2024-03-01,Pago,300\n2024-03-02,Reverso,-300\n"
        movements = BankCsvNormalizer(MovementType.INCOME).normalize(csv_text, batch_id="t2")
        assert len(movements) == 1
        assert movements[0].amount == Decimal("300")
        assert movements[0].reference == ""

    def test_generated_batch_id(self):
        movements = BankCsvNormalizer(MovementType.INCOME).normalize("Monto\n10\n")
        assert movements[0].id.startswith("bank_")
        assert movements[0].id.endswith("_0")


class TestExpenseNormalization:
    """Test expense flow normalization."""

    def test_debit_absolute_value_then_amount_fallback(self):
        csv_text = (
            "Fecha,Concepto,Referencia,Retiro,Monto\n"
            "2024-03-10,Pago proveedor,F-10,-800.00,\n"
            "2024-03-11,Jardinería,,,\"-1,250.50\"\n"
            "2024-03-12,Nada,,,0\n"
        )
        movements = BankCsvNormalizer(MovementType.EXPENSE).normalize(csv_text, batch_id="t3")

        assert [m.id for m in movements] == ["bank_exp_t3_0", "bank_exp_t3_1"]
        assert movements[0].amount == Decimal("800.00")
        assert movements[1].amount == Decimal("1250.50")
        assert movements[0].reference == "F-10"


class TestRejectedCsv:
    """Test CSVs without data rows."""

    @pytest.mark.parametrize("csv_text", ["", "Fecha,Monto", "Fecha,Monto\n\n  \n"])
    def test_header_only(self, csv_text):
        with pytest.raises(ValidationError) as exc_info:
            BankCsvNormalizer(MovementType.INCOME).normalize(csv_text)
        assert "CSV without data" in exc_info.value.message
