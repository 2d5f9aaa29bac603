"""
Reconciliation History

Index of past sessions across both flows:
- Metadata-only listing (movement counts from traceability, or from
  inline arrays for legacy documents)
- Filters: flow, status, free-text search, created-at window
- Sort by last update, fixed-size pages
- Detail view with lazy hydration of the movement snapshot
"""

import logging
from dataclasses import dataclass, field, replace
from datetime import date, datetime, time, timezone
from typing import Dict, Any, List, Optional

from config import get_settings
from reconciliation.errors import ReconciliationError
from reconciliation.flow_registry import MovementType, SessionStatus
from reconciliation.models import (
    BankMovement,
    InternalMovement,
    ReconciliationSession,
    TenantContext,
    date_to_str,
)
from reconciliation.repositories import SessionRepository, BANK_MOVEMENTS, INTERNAL_MOVEMENTS

logger = logging.getLogger(__name__)

ALL = "all"


def _as_aware(value: datetime) -> datetime:
    return value if value.tzinfo else value.replace(tzinfo=timezone.utc)


@dataclass
class HistoryFilters:
    movement_type: str = ALL
    status: str = ALL
    search: str = ""
    date_from: Optional[date] = None
    date_to: Optional[date] = None
    updated_order: str = "desc"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "movement_type": self.movement_type,
            "status": self.status,
            "search": self.search,
            "date_from": date_to_str(self.date_from) or "",
            "date_to": date_to_str(self.date_to) or "",
            "updated_order": self.updated_order,
        }


@dataclass
class HistoryItem:
    """Session metadata as shown in the history list."""
    session: ReconciliationSession
    bank_movements_count: int
    internal_movements_count: int
    bank_movements: Optional[List[BankMovement]] = None
    internal_movements: Optional[List[InternalMovement]] = None

    @property
    def id(self) -> str:
        return self.session.id

    @property
    def movement_type(self) -> MovementType:
        return self.session.movement_type

    @property
    def is_hydrated(self) -> bool:
        return self.bank_movements is not None and self.internal_movements is not None

    @property
    def sort_time(self) -> datetime:
        value = self.session.updated_at or self.session.created_at
        return _as_aware(value) if value else datetime.min.replace(tzinfo=timezone.utc)

    @classmethod
    def from_session(cls, session: ReconciliationSession) -> "HistoryItem":
        trace = session.traceability or {}
        bank_count = int(trace.get("bank_movements_count") or trace.get("bankMovementsCount") or 0)
        internal_count = int(
            trace.get("internal_movements_count") or trace.get("internalMovementsCount") or 0
        )
        if not bank_count and session.bank_movements is not None:
            bank_count = len(session.bank_movements)
        if not internal_count and session.internal_movements is not None:
            internal_count = len(session.internal_movements)

        inline = session.has_inline_movements
        return cls(
            session=session,
            bank_movements_count=bank_count,
            internal_movements_count=internal_count,
            bank_movements=list(session.bank_movements) if inline else None,
            internal_movements=list(session.internal_movements) if inline else None,
        )

    def to_dict(self, include_movements: bool = False) -> Dict[str, Any]:
        data = self.session.to_dict()
        data["bank_movements_count"] = self.bank_movements_count
        data["internal_movements_count"] = self.internal_movements_count
        data["hydrated"] = self.is_hydrated
        if include_movements and self.is_hydrated:
            data["bank_movements"] = [m.to_dict() for m in self.bank_movements]
            data["internal_movements"] = [m.to_dict() for m in self.internal_movements]
        return data


@dataclass
class HistoryPage:
    items: List[HistoryItem]
    page: int
    page_size: int
    total_items: int
    total_pages: int

    def to_dict(self) -> Dict[str, Any]:
        return {
            "items": [item.to_dict() for item in self.items],
            "page": self.page,
            "page_size": self.page_size,
            "total_items": self.total_items,
            "total_pages": self.total_pages,
        }


def apply_filters(items: List[HistoryItem], filters: HistoryFilters) -> List[HistoryItem]:
    term = filters.search.strip().lower()
    start = datetime.combine(filters.date_from, time.min, tzinfo=timezone.utc) if filters.date_from else None
    end = datetime.combine(filters.date_to, time(23, 59, 59), tzinfo=timezone.utc) if filters.date_to else None

    def keep(item: HistoryItem) -> bool:
        session = item.session
        if filters.movement_type != ALL and session.movement_type.value != filters.movement_type:
            return False
        if filters.status != ALL and session.status.value != filters.status:
            return False
        if term:
            creator = str(session.created_by.get("id") or session.created_by.get("uid") or "")
            haystack = f"{session.name} {session.id} {creator}".lower()
            if term not in haystack:
                return False
        # Sessions without a creation timestamp are never excluded by the window
        if session.created_at is not None:
            created = _as_aware(session.created_at)
            if start is not None and created < start:
                return False
            if end is not None and created > end:
                return False
        return True

    return sorted(
        (item for item in items if keep(item)),
        key=lambda item: item.sort_time,
        reverse=filters.updated_order != "asc",
    )


def paginate(items: List[HistoryItem], page: int, page_size: int) -> HistoryPage:
    total_items = len(items)
    total_pages = max(1, -(-total_items // page_size))
    safe_page = min(max(page, 1), total_pages)
    start = (safe_page - 1) * page_size
    return HistoryPage(
        items=items[start:start + page_size],
        page=safe_page,
        page_size=page_size,
        total_items=total_items,
        total_pages=total_pages,
    )


class HistoryService:
    """
    History index and hydrator for one tenant.

    Holds the fetched index, current filters, page and selection.
    """

    def __init__(self, repository: SessionRepository, page_size: Optional[int] = None):
        self.repository = repository
        self.page_size = page_size or get_settings().RECON_HISTORY_PAGE_SIZE
        self.sessions: List[HistoryItem] = []
        self.filters = HistoryFilters()
        self.page = 1
        self.selected: Optional[HistoryItem] = None
        self.error: Optional[str] = None
        # True until fetched, and again after any session write for the tenant
        self.stale = True

    async def fetch_sessions(self, context: TenantContext) -> HistoryPage:
        """
        Load session metadata for both flows, newest first.

        Raises:
            ContextError: tenant identity missing
            PersistenceError: the store failed
        """
        self.error = None
        try:
            context.require()
            sessions: List[ReconciliationSession] = []
            for movement_type in MovementType:
                sessions.extend(await self.repository.list_sessions(context, movement_type))
        except ReconciliationError as e:
            logger.error(f"Failed to fetch reconciliation sessions: {e.message}")
            self.error = e.message
            raise

        items = [HistoryItem.from_session(s) for s in sessions]
        items.sort(
            key=lambda item: (
                _as_aware(item.session.created_at) if item.session.created_at
                else datetime.min.replace(tzinfo=timezone.utc)
            ),
            reverse=True,
        )
        self.sessions = items
        self.stale = False
        logger.info(
            "Reconciliation history fetched",
            extra={"client_id": context.client_id, "sessions": len(items)},
        )
        return self.current_page()

    def current_page(self) -> HistoryPage:
        result = paginate(apply_filters(self.sessions, self.filters), self.page, self.page_size)
        self.page = result.page
        return result

    def set_filters(self, **changes) -> HistoryPage:
        """Update one or more filters; the page resets to 1."""
        self.filters = replace(self.filters, **changes)
        self.page = 1
        return self.current_page()

    def set_page(self, page: int) -> HistoryPage:
        self.page = page
        return self.current_page()

    def find(self, session_id: str, movement_type: MovementType) -> Optional[HistoryItem]:
        movement_type = MovementType(movement_type)
        for item in self.sessions:
            if item.id == session_id and item.movement_type == movement_type:
                return item
        return None

    def open_session_detail(self, session_id: str, movement_type: MovementType) -> Optional[HistoryItem]:
        self.selected = self.find(session_id, movement_type)
        return self.selected

    def close_session_detail(self) -> None:
        self.selected = None

    async def hydrate_session_movements(
        self,
        session_id: str,
        movement_type: MovementType,
    ) -> Optional[HistoryItem]:
        """
        Load the movement snapshot of a listed session, caching it in the index.

        A failure is recorded in `error` and the un-hydrated item is returned.
        """
        item = self.find(session_id, movement_type)
        if item is None:
            return None
        if item.is_hydrated:
            return item

        try:
            bank_raw = await self.repository.load_movements(session_id, BANK_MOVEMENTS)
            internal_raw = await self.repository.load_movements(session_id, INTERNAL_MOVEMENTS)
        except ReconciliationError as e:
            logger.error(f"Failed to hydrate session {session_id}: {e.message}")
            self.error = e.message
            return item

        item.bank_movements = [BankMovement.from_dict(raw) for raw in bank_raw]
        item.internal_movements = [InternalMovement.from_dict(raw) for raw in internal_raw]
        return item
