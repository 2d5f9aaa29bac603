"""
SQL Session Repository

PostgreSQL persistence (SQLAlchemy async + asyncpg) for reconciliation
sessions. Tables are created by migrations/create_reconciliation_tables.py.
"""

import json
import logging
import uuid
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import async_sessionmaker

from reconciliation.errors import PersistenceError
from reconciliation.flow_registry import MovementType, SessionStatus
from reconciliation.models import ReconciliationSession, TenantContext
from reconciliation.repositories.base import MOVEMENT_COLLECTIONS, SessionRepository

logger = logging.getLogger(__name__)


_SESSION_COLUMNS = """
    id, client_id, condominium_id, movement_type, name, status, version,
    date_from, date_to, summary, traceability, created_by, csv_source,
    inline_bank_movements, inline_internal_movements, created_at, updated_at
"""


def _json(value: Any) -> Optional[str]:
    return None if value is None else json.dumps(value, default=str)


def _load_json(value: Any) -> Any:
    if isinstance(value, str):
        return json.loads(value)
    return value


def _row_to_session(row) -> ReconciliationSession:
    data = row._mapping
    raw = {
        "id": data["id"],
        "client_id": data["client_id"],
        "condominium_id": data["condominium_id"],
        "type": data["movement_type"],
        "name": data["name"],
        "status": data["status"],
        "version": data["version"],
        "date_range": {
            "from": data["date_from"].isoformat() if data["date_from"] else "",
            "to": data["date_to"].isoformat() if data["date_to"] else "",
        },
        "summary": _load_json(data["summary"]),
        "traceability": _load_json(data["traceability"]),
        "created_by": _load_json(data["created_by"]),
        "csv_source": _load_json(data["csv_source"]),
        "created_at": data["created_at"],
        "updated_at": data["updated_at"],
    }
    inline_bank = _load_json(data["inline_bank_movements"])
    inline_internal = _load_json(data["inline_internal_movements"])
    if inline_bank is not None:
        raw["bank_movements"] = inline_bank
    if inline_internal is not None:
        raw["internal_movements"] = inline_internal
    return ReconciliationSession.from_dict(raw)


def _session_params(session: ReconciliationSession) -> Dict[str, Any]:
    return {
        "id": session.id,
        "client_id": session.client_id,
        "condominium_id": session.condominium_id,
        "movement_type": session.movement_type.value,
        "name": session.name,
        "status": session.status.value,
        "version": session.version,
        "date_from": session.date_range.date_from,
        "date_to": session.date_range.date_to,
        "summary": _json(session.summary.to_dict()),
        "traceability": _json(session.traceability),
        "created_by": _json(session.created_by),
        "csv_source": _json(session.csv_source.to_dict()) if session.csv_source else None,
    }


class SqlSessionRepository(SessionRepository):
    """
    Session repository over reconciliation_sessions / reconciliation_movements.

    Each call runs in its own transaction; failures roll back and surface
    as PersistenceError.
    """

    def __init__(self, session_factory: async_sessionmaker):
        self.session_factory = session_factory

    async def create_session(self, session: ReconciliationSession) -> ReconciliationSession:
        params = _session_params(session)
        params["id"] = session.id or uuid.uuid4().hex
        params["now"] = datetime.now(timezone.utc)

        query = text(f"""
            INSERT INTO public.reconciliation_sessions (
                id, client_id, condominium_id, movement_type, name, status, version,
                date_from, date_to, summary, traceability, created_by, csv_source,
                created_at, updated_at
            ) VALUES (
                :id, :client_id, :condominium_id, :movement_type, :name, :status, :version,
                :date_from, :date_to, CAST(:summary AS JSONB), CAST(:traceability AS JSONB),
                CAST(:created_by AS JSONB), CAST(:csv_source AS JSONB), :now, :now
            )
            RETURNING {_SESSION_COLUMNS}
        """)
        return await self._write_returning(query, params, "create session")

    async def update_session(self, session: ReconciliationSession) -> ReconciliationSession:
        params = _session_params(session)
        params["now"] = datetime.now(timezone.utc)

        query = text(f"""
            UPDATE public.reconciliation_sessions
            SET
                name = :name,
                status = :status,
                version = :version,
                date_from = :date_from,
                date_to = :date_to,
                summary = CAST(:summary AS JSONB),
                traceability = CAST(:traceability AS JSONB),
                created_by = CAST(:created_by AS JSONB),
                csv_source = COALESCE(CAST(:csv_source AS JSONB), csv_source),
                updated_at = :now
            WHERE id = :id
              AND client_id = :client_id
              AND condominium_id = :condominium_id
              AND movement_type = :movement_type
            RETURNING {_SESSION_COLUMNS}
        """)
        return await self._write_returning(query, params, "update session")

    async def _write_returning(self, query, params: Dict[str, Any], action: str) -> ReconciliationSession:
        async with self.session_factory() as db:
            try:
                result = await db.execute(query, params)
                row = result.fetchone()
                await db.commit()
            except SQLAlchemyError as e:
                logger.error(f"Failed to {action}: {e}")
                await db.rollback()
                raise PersistenceError(f"Failed to {action}", details={"session_id": params["id"]}) from e

        if row is None:
            raise PersistenceError(f"Failed to {action}: session not found", details={"session_id": params["id"]})
        return _row_to_session(row)

    async def _read(self, query, params: Dict[str, Any]) -> List[Any]:
        async with self.session_factory() as db:
            try:
                result = await db.execute(query, params)
                return result.fetchall()
            except SQLAlchemyError as e:
                logger.error(f"Failed to read reconciliation data: {e}")
                raise PersistenceError("Failed to read reconciliation data") from e

    async def get_session(
        self,
        context: TenantContext,
        movement_type: MovementType,
        session_id: str,
    ) -> Optional[ReconciliationSession]:
        query = text(f"""
            SELECT {_SESSION_COLUMNS}
            FROM public.reconciliation_sessions
            WHERE id = :id
              AND client_id = :client_id
              AND condominium_id = :condominium_id
              AND movement_type = :movement_type
        """)
        rows = await self._read(query, {
            "id": session_id,
            "client_id": context.client_id,
            "condominium_id": context.condominium_id,
            "movement_type": MovementType(movement_type).value,
        })
        return _row_to_session(rows[0]) if rows else None

    async def find_latest_draft(
        self,
        context: TenantContext,
        movement_type: MovementType,
    ) -> Optional[ReconciliationSession]:
        query = text(f"""
            SELECT {_SESSION_COLUMNS}
            FROM public.reconciliation_sessions
            WHERE client_id = :client_id
              AND condominium_id = :condominium_id
              AND movement_type = :movement_type
              AND status = :status
            ORDER BY updated_at DESC
            LIMIT 1
        """)
        rows = await self._read(query, {
            "client_id": context.client_id,
            "condominium_id": context.condominium_id,
            "movement_type": MovementType(movement_type).value,
            "status": SessionStatus.DRAFT.value,
        })
        return _row_to_session(rows[0]) if rows else None

    async def list_sessions(
        self,
        context: TenantContext,
        movement_type: MovementType,
    ) -> List[ReconciliationSession]:
        query = text(f"""
            SELECT {_SESSION_COLUMNS}
            FROM public.reconciliation_sessions
            WHERE client_id = :client_id
              AND condominium_id = :condominium_id
              AND movement_type = :movement_type
            ORDER BY created_at DESC
        """)
        rows = await self._read(query, {
            "client_id": context.client_id,
            "condominium_id": context.condominium_id,
            "movement_type": MovementType(movement_type).value,
        })
        return [_row_to_session(row) for row in rows]

    async def replace_movements(
        self,
        session_id: str,
        collection_name: str,
        items: List[Dict[str, Any]],
    ) -> None:
        if collection_name not in MOVEMENT_COLLECTIONS:
            raise PersistenceError(f"Unknown movement collection: {collection_name}")

        delete_query = text("""
            DELETE FROM public.reconciliation_movements
            WHERE session_id = :session_id AND collection = :collection
        """)
        insert_query = text("""
            INSERT INTO public.reconciliation_movements (session_id, collection, position, payload)
            VALUES (:session_id, :collection, :position, CAST(:payload AS JSONB))
        """)

        async with self.session_factory() as db:
            try:
                await db.execute(delete_query, {"session_id": session_id, "collection": collection_name})
                if items:
                    await db.execute(insert_query, [
                        {
                            "session_id": session_id,
                            "collection": collection_name,
                            "position": position,
                            "payload": _json(item),
                        }
                        for position, item in enumerate(items)
                    ])
                await db.commit()
            except SQLAlchemyError as e:
                logger.error(f"Failed to replace {collection_name} for session {session_id}: {e}")
                await db.rollback()
                raise PersistenceError(
                    f"Failed to replace {collection_name}",
                    details={"session_id": session_id},
                ) from e

        logger.info(
            f"Replaced {collection_name}",
            extra={"session_id": session_id, "count": len(items)},
        )

    async def load_movements(
        self,
        session_id: str,
        collection_name: str,
    ) -> List[Dict[str, Any]]:
        query = text("""
            SELECT payload
            FROM public.reconciliation_movements
            WHERE session_id = :session_id AND collection = :collection
            ORDER BY position
        """)
        rows = await self._read(query, {"session_id": session_id, "collection": collection_name})
        return [_load_json(row[0]) for row in rows]
