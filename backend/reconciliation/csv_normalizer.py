"""
Bank Statement CSV Normalizer

Turns raw bank statement CSV text into BankMovement records:
- Comma-delimited, double-quote escaping, blank lines skipped
- Column roles resolved by fuzzy header matching (per flow keyword sets)
- Separate debit/credit columns supported
- Non-positive rows dropped silently
"""

import csv
import io
import logging
import re
import time
from dataclasses import dataclass
from datetime import date
from decimal import Decimal, InvalidOperation
from typing import List, Optional

from dateutil import parser as date_parser

from reconciliation.errors import ValidationError
from reconciliation.flow_registry import FlowConfig, MovementType, flow_registry
from reconciliation.models import BankMovement, ZERO
from reconciliation.text_utils import normalize_text

logger = logging.getLogger(__name__)


# ==================== PARSING PRIMITIVES ====================

_AMOUNT_JUNK = re.compile(r"[^\d,.\-]")
_SLASH_DATE = re.compile(r"^(\d{1,2})/(\d{1,2})/(\d{2,4})$")


def parse_amount(raw: Optional[str]) -> Decimal:
    """
    Parse a statement amount.

    Everything except digits, ',', '.' and '-' is removed, then ','
    thousands separators are dropped. Unparseable input yields 0.
    """
    if not raw:
        return ZERO
    cleaned = _AMOUNT_JUNK.sub("", raw).replace(",", "")
    if not cleaned:
        return ZERO
    try:
        value = Decimal(cleaned)
    except InvalidOperation:
        return ZERO
    return value if value.is_finite() else ZERO


def parse_date(raw: Optional[str]) -> Optional[date]:
    """ISO-8601 first, then D/M/Y with two-digit years read as 20YY."""
    if not raw:
        return None
    value = raw.strip()
    if not value:
        return None

    try:
        return date_parser.isoparse(value).date()
    except (ValueError, OverflowError):
        pass

    match = _SLASH_DATE.match(value)
    if match:
        day, month, year = (int(part) for part in match.groups())
        if year < 100:
            year += 2000
        try:
            return date(year, month, day)
        except ValueError:
            return None

    return None


def parse_csv_rows(csv_text: str) -> List[List[str]]:
    """Split CSV text into trimmed rows, skipping blank lines."""
    reader = csv.reader(io.StringIO(csv_text or ""), skipinitialspace=True)
    rows = []
    for row in reader:
        cells = [cell.strip() for cell in row]
        if any(cells):
            rows.append(cells)
    return rows


def find_column(headers: List[str], candidates: List[str]) -> int:
    """Index of the first header containing any candidate keyword, or -1."""
    for index, header in enumerate(headers):
        if any(candidate in header for candidate in candidates):
            return index
    return -1


def _cell(row: List[str], index: int) -> str:
    if index < 0 or index >= len(row):
        return ""
    return row[index]


# ==================== NORMALIZER ====================

@dataclass
class ColumnMap:
    """Resolved column indexes for one CSV header row (-1 when absent)."""
    date: int
    description: int
    reference: int
    amount: int
    debit: int
    credit: int

    @classmethod
    def resolve(cls, header_row: List[str], config: FlowConfig) -> "ColumnMap":
        headers = [normalize_text(h) for h in header_row]
        return cls(
            date=find_column(headers, config.date_headers),
            description=find_column(headers, config.description_headers),
            reference=find_column(headers, config.reference_headers),
            amount=find_column(headers, config.amount_headers),
            debit=find_column(headers, config.debit_headers),
            credit=find_column(headers, config.credit_headers) if config.credit_headers else -1,
        )


class BankCsvNormalizer:
    """
    Normalizes bank statement CSV text for one reconciliation flow.

    Income rows take the credit column when positive, otherwise
    amount minus debit. Expense rows take |debit| when non-zero,
    otherwise |amount|.
    """

    def __init__(self, movement_type: MovementType):
        self.movement_type = MovementType(movement_type)
        self.config = flow_registry.get_config(self.movement_type)

    def _new_batch_id(self) -> str:
        return str(time.time_ns() // 1_000_000)

    def _row_amount(self, row: List[str], columns: ColumnMap) -> Decimal:
        amount = parse_amount(_cell(row, columns.amount))
        debit = parse_amount(_cell(row, columns.debit))

        if self.movement_type == MovementType.INCOME:
            credit = parse_amount(_cell(row, columns.credit))
            return credit if credit > 0 else amount - debit

        return abs(debit) if debit != 0 else abs(amount)

    def normalize(self, csv_text: str, batch_id: Optional[str] = None) -> List[BankMovement]:
        """
        Parse CSV text into pending bank movements.

        Raises:
            ValidationError: fewer than two non-blank lines
        """
        rows = parse_csv_rows(csv_text)
        if len(rows) < 2:
            raise ValidationError(
                "CSV without data",
                details={"rows": len(rows), "movement_type": self.movement_type.value},
            )

        columns = ColumnMap.resolve(rows[0], self.config)
        batch = batch_id or self._new_batch_id()
        prefix = self.config.bank_id_prefix

        movements = []
        dropped = 0
        for index, row in enumerate(rows[1:]):
            amount = self._row_amount(row, columns)
            if amount <= 0:
                dropped += 1
                continue
            movements.append(BankMovement(
                id=f"{prefix}_{batch}_{index}",
                date=parse_date(_cell(row, columns.date)),
                amount=amount,
                description=_cell(row, columns.description),
                reference=_cell(row, columns.reference),
            ))

        logger.info(
            "Bank CSV normalized",
            extra={
                "movement_type": self.movement_type.value,
                "batch_id": batch,
                "rows": len(rows) - 1,
                "movements": len(movements),
                "dropped": dropped,
                "columns": columns.__dict__,
            },
        )
        return movements
