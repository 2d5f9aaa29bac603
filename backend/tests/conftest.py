"""
Shared fixtures for the reconciliation test suite.

Environment is pinned before any application module reads settings.
"""

import os

os.environ["ENVIRONMENT"] = "development"
os.environ["SESSION_STORE"] = "memory"
os.environ["INTERNAL_API_KEY"] = "test-internal-key"
os.environ["NOTIFICATION_WEBHOOK_URL"] = ""
os.environ["LOG_JSON"] = "false"

from datetime import date

import pytest

from factories import bank, payment
from reconciliation.flow_registry import MovementType
from reconciliation.models import TenantContext
from reconciliation.repositories import InMemorySessionRepository
from reconciliation.services.session_service import SessionService
from reconciliation.services.workspace import ReconciliationWorkspace
from services.audit import AuditLogger
from services.file_storage import LocalFileStore
from services.notifications import InMemoryNotificationEmitter


@pytest.fixture
def context():
    return TenantContext(
        client_id="client-1",
        condominium_id="condo-1",
        user_id="admin-7",
        user_role="admin",
    )


@pytest.fixture
def repository():
    return InMemorySessionRepository()


@pytest.fixture
def notifier():
    return InMemoryNotificationEmitter()


@pytest.fixture
def audit_logger(tmp_path):
    return AuditLogger(tmp_path / "audit.jsonl")


@pytest.fixture
def file_store(tmp_path):
    return LocalFileStore(str(tmp_path / "uploads"))


@pytest.fixture
def session_service(repository, audit_logger, notifier, file_store):
    return SessionService(repository, audit_logger, notifier, file_store)


@pytest.fixture
def income_workspace():
    workspace = ReconciliationWorkspace(MovementType.INCOME)
    workspace.restore(
        [
            bank("b1", "1500.00", date(2024, 3, 1), reference="PAGO-778"),
            bank("b2", "250.00", date(2024, 3, 2), reference="PAGO-900"),
        ],
        [
            payment("p1", "1500.00", date(2024, 3, 1), reference="pago-778"),
            payment("p2", "75.00", date(2024, 3, 5), reference="otro"),
        ],
        None,
    )
    return workspace
