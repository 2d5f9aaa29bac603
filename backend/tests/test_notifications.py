"""
Unit Tests for Notifications and the Audit Log

Tests:
- Webhook delivery with HMAC-SHA256 signature
- Delivery failures do not consume the dedupe key
- JSONL audit logger write, filter and metadata sanitizing

Run with: pytest tests/test_notifications.py -v
"""

import hashlib
import hmac
import json
from unittest.mock import patch

import httpx
import pytest

from services.audit import AuditAction, AuditLogFilter, AuditLogger, sanitize_metadata
from services.notifications import (
    InMemoryNotificationEmitter,
    NotificationEvent,
    NotificationEventType,
    NotificationPriority,
    WebhookNotificationEmitter,
)

SECRET = "test-secret-key"
HUB_URL = "https://hub.example.com/events"


def _event(session_id="s1"):
    return NotificationEvent(
        event_type=NotificationEventType.RECONCILIATION_NET_DIFFERENCE.value,
        module="finance",
        priority=NotificationPriority.HIGH.value,
        dedupe_key=f"finance:reconciliation:income:{session_id}:net_difference",
        entity_id=session_id,
        entity_type="payment_reconciliation",
        title="Conciliación de ingresos con diferencia neta",
        body="La conciliación A cerró con diferencia neta de $1,250.00.",
        metadata={"session_id": session_id, "unmatched_difference": "1250.00"},
        client_id="client-1",
        condominium_id="condo-1",
    )


def _mock_client(handler):
    real_client = httpx.AsyncClient

    def factory(**kwargs):
        return real_client(transport=httpx.MockTransport(handler), **kwargs)

    return patch("services.notifications.httpx.AsyncClient", side_effect=factory)


class TestWebhookEmitter:
    """Test webhook delivery."""

    @pytest.mark.asyncio
    async def test_signed_delivery(self):
        captured = {}

        def handler(request):
            captured["request"] = request
            return httpx.Response(202)

        emitter = WebhookNotificationEmitter(HUB_URL, SECRET)
        with _mock_client(handler):
            result = await emitter.emit(_event())

        assert result.success
        assert result.status_code == 202
        request = captured["request"]
        body = request.content
        expected = hmac.new(SECRET.encode("utf-8"), body, hashlib.sha256).hexdigest()
        assert request.headers["X-Webhook-Signature"] == f"sha256={expected}"
        assert request.headers["X-Webhook-Event"] == "finance.reconciliation_net_difference"
        assert json.loads(body)["dedupe_key"] == "finance:reconciliation:income:s1:net_difference"

    @pytest.mark.asyncio
    async def test_duplicate_not_resent(self):
        calls = []

        def handler(request):
            calls.append(request)
            return httpx.Response(200)

        emitter = WebhookNotificationEmitter(HUB_URL, SECRET)
        with _mock_client(handler):
            await emitter.emit(_event())
            second = await emitter.emit(_event())

        assert second.deduplicated
        assert len(calls) == 1

    @pytest.mark.asyncio
    async def test_http_error_keeps_key_for_retry(self):
        responses = [httpx.Response(500, text="boom"), httpx.Response(200)]

        def handler(request):
            return responses.pop(0)

        emitter = WebhookNotificationEmitter(HUB_URL, SECRET)
        with _mock_client(handler):
            failed = await emitter.emit(_event())
            retried = await emitter.emit(_event())

        assert not failed.success
        assert failed.status_code == 500
        assert "HTTP 500" in failed.error
        assert retried.success
        assert not retried.deduplicated

    @pytest.mark.asyncio
    async def test_timeout(self):
        def handler(request):
            raise httpx.ConnectTimeout("timed out", request=request)

        emitter = WebhookNotificationEmitter(HUB_URL, SECRET)
        with _mock_client(handler):
            result = await emitter.emit(_event())

        assert not result.success
        assert result.error == "Connection timeout"

    def test_signature_is_hmac_sha256(self):
        emitter = WebhookNotificationEmitter(HUB_URL, SECRET)
        signature = emitter.sign(b'{"a":1}')
        assert len(signature) == 64
        assert hmac.compare_digest(
            signature, hmac.new(SECRET.encode("utf-8"), b'{"a":1}', hashlib.sha256).hexdigest()
        )


class TestInMemoryEmitter:
    """Test in-memory collection."""

    @pytest.mark.asyncio
    async def test_collects_distinct_keys(self):
        emitter = InMemoryNotificationEmitter()
        await emitter.emit(_event("s1"))
        await emitter.emit(_event("s1"))
        await emitter.emit(_event("s2"))
        assert [e.entity_id for e in emitter.events] == ["s1", "s2"]


class TestAuditLogger:
    """Test JSONL audit logging."""

    @pytest.fixture
    def audit(self, tmp_path):
        return AuditLogger(tmp_path / "nested" / "audit.jsonl")

    def _log(self, audit, entity_id, module="ConciliacionIngresos", client_id="client-1", metadata=None):
        audit.log(
            module=module,
            entity_type="payment_reconciliation",
            entity_id=entity_id,
            action=AuditAction.SAVE_DRAFT,
            summary="Se creó borrador de conciliación de ingresos",
            metadata=metadata or {},
            performed_by={"id": "admin-7", "role": "admin"},
            client_id=client_id,
            condominium_id="condo-1",
        )

    def test_write_and_read(self, audit):
        self._log(audit, "s1", metadata={"bank_movements_count": 3})

        logs = audit.get_logs()

        assert len(logs) == 1
        assert logs[0].entity_id == "s1"
        assert logs[0].action == "save_draft"
        assert logs[0].source == "web"
        assert logs[0].metadata == {"bank_movements_count": 3}

    def test_filters(self, audit):
        self._log(audit, "s1")
        self._log(audit, "s2", module="ConciliacionEgresos")
        self._log(audit, "s3", client_id="client-2")

        assert [e.entity_id for e in audit.get_logs(AuditLogFilter(module="ConciliacionEgresos"))] == ["s2"]
        assert len(audit.get_logs(AuditLogFilter(client_id="client-1"))) == 2
        assert len(audit.get_logs(AuditLogFilter(limit=1))) == 1

    def test_skips_corrupt_lines(self, audit):
        self._log(audit, "s1")
        with open(audit.log_file, "a", encoding="utf-8") as f:
            f.write("not json\n")
        assert len(audit.get_logs()) == 1

    def test_sanitize_metadata(self):
        cleaned = sanitize_metadata({"note": "x" * 800, "nested": [{"v": "y" * 600}], "n": 1})
        assert len(cleaned["note"]) == 500
        assert len(cleaned["nested"][0]["v"]) == 500
        assert cleaned["n"] == 1
