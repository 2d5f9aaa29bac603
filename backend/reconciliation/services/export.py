"""
Session Export

Tabular export of a (hydrated) history item: a summary block, bank
movements and internal movements with human-readable labels, rendered
as CSV text.
"""

import csv
import io
from dataclasses import dataclass
from typing import Dict, List, Optional

from reconciliation.flow_registry import MovementStatus, MovementType, flow_registry
from reconciliation.services.history_service import HistoryItem

STATUS_LABELS: Dict[MovementStatus, str] = {
    MovementStatus.MATCHED: "Conciliado automático",
    MovementStatus.MANUAL_MATCH: "Conciliado manual",
    MovementStatus.PENDING: "Pendiente",
    MovementStatus.IGNORED: "Ignorado",
}

SESSION_STATUS_LABELS = {
    "draft": "Borrador",
    "completed": "Completada",
}

BANK_HEADERS = ["ID", "Fecha", "Descripción", "Referencia", "Monto", "Estatus", "Movimiento interno", "Confianza"]
PAYMENT_HEADERS = ["ID", "Fecha", "Número", "Cargo", "Pago", "Tipo de pago", "Referencia de pago", "Monto"]
EXPENSE_HEADERS = ["ID", "Fecha", "Folio", "Concepto", "Tipo de pago", "Monto"]


@dataclass
class SessionExport:
    title: str
    summary_rows: List[List[str]]
    bank_headers: List[str]
    bank_rows: List[List[str]]
    internal_headers: List[str]
    internal_rows: List[List[str]]


def _fmt(value: Optional[object]) -> str:
    return "" if value is None else str(value)


def build_session_export(item: HistoryItem) -> SessionExport:
    session = item.session
    flow = flow_registry.get_config(session.movement_type)
    summary = session.summary

    summary_rows = [
        ["Sesión", session.name],
        ["ID", session.id],
        ["Tipo", flow.display_name],
        ["Estatus", SESSION_STATUS_LABELS.get(session.status.value, session.status.value)],
        ["Periodo", f"{_fmt(session.date_range.date_from)} - {_fmt(session.date_range.date_to)}"],
        ["Total banco", str(summary.bank_total)],
        ["Banco conciliado", str(summary.bank_matched)],
        ["Banco pendiente", str(summary.bank_pending)],
        ["Banco ignorado", str(summary.bank_ignored)],
        ["Total interno", str(summary.internal_total)],
        ["Interno conciliado", str(summary.internal_matched)],
        ["Diferencia neta", str(summary.unmatched_difference)],
        ["Hash", _fmt(session.traceability.get("snapshot_hash"))],
    ]

    bank_rows = [
        [
            m.id,
            _fmt(m.date),
            m.description,
            m.reference,
            str(m.amount),
            STATUS_LABELS[m.status],
            _fmt(m.matched_internal_id),
            _fmt(m.confidence),
        ]
        for m in item.bank_movements or []
    ]

    if session.movement_type == MovementType.INCOME:
        internal_headers = PAYMENT_HEADERS
        internal_rows = [
            [
                m.id,
                _fmt(m.movement_date),
                m.user_number,
                m.charge_id,
                m.payment_id,
                m.payment_type,
                m.payment_reference,
                str(m.amount),
            ]
            for m in item.internal_movements or []
        ]
    else:
        internal_headers = EXPENSE_HEADERS
        internal_rows = [
            [m.id, _fmt(m.movement_date), m.folio, m.concept, m.payment_type, str(m.amount)]
            for m in item.internal_movements or []
        ]

    return SessionExport(
        title=f"{flow.display_name} - {session.name}",
        summary_rows=summary_rows,
        bank_headers=BANK_HEADERS,
        bank_rows=bank_rows,
        internal_headers=internal_headers,
        internal_rows=internal_rows,
    )


def export_session_csv(item: HistoryItem) -> str:
    """Render the export as one CSV document with three blank-line separated blocks."""
    export = build_session_export(item)
    buffer = io.StringIO()
    writer = csv.writer(buffer, lineterminator="\n")

    writer.writerow([export.title])
    writer.writerows(export.summary_rows)
    writer.writerow([])
    writer.writerow(["Movimientos bancarios"])
    writer.writerow(export.bank_headers)
    writer.writerows(export.bank_rows)
    writer.writerow([])
    writer.writerow(["Movimientos internos"])
    writer.writerow(export.internal_headers)
    writer.writerows(export.internal_rows)

    return buffer.getvalue()
