"""JSON log formatting, actor hashing and health endpoints."""

import json
import logging

import pytest
import sqlalchemy as sa
from fastapi.testclient import TestClient

from backend.app import create_app
from backend.core.observability import health, start_trace
from backend.core.observability.logging import JSONFormatter, hash_actor_token, set_run_id, set_trace_id


@pytest.fixture
def formatter():
    return JSONFormatter()


@pytest.fixture
def bound_context():
    yield
    set_trace_id(None)
    set_run_id(None)


def _record(msg, **extra):
    record = logging.LogRecord("agents.dunning.sender", logging.INFO, __file__, 1, msg, None, None)
    for key, value in extra.items():
        setattr(record, key, value)
    return record


class TestJsonFormatter:
    def test_mandatory_fields(self, formatter, bound_context):
        trace_id = start_trace("trace-1")
        set_run_id(42)

        entry = json.loads(formatter.format(_record("Email sent")))

        assert trace_id == "trace-1"
        assert entry["trace_id"] == "trace-1"
        assert entry["run_id"] == 42
        assert entry["level"] == "info"
        assert entry["logger"] == "agents.dunning.sender"
        assert entry["msg"] == "Email sent"
        assert entry["ts_utc"].endswith("Z")

    def test_trace_defaults_to_unknown(self, formatter):
        assert json.loads(formatter.format(_record("x")))["trace_id"] == "unknown"

    def test_message_and_extras_are_redacted(self, formatter):
        entry = json.loads(
            formatter.format(
                _record(
                    "Reminder for pat@example.com",
                    recipient="billing@acme.example.com",
                    phone="+49 170 1234567",
                    iban="DE89370400440532013000",
                    order_id=500,
                )
            )
        )

        assert entry["msg"] == "Reminder for p**@example.com"
        assert entry["recipient"] == "b******@acme.example.com"
        assert entry["phone"] == "+49" + "*" * 12
        assert entry["iban"] == "DE" + "*" * 20
        assert entry["order_id"] == 500

    def test_extras_cannot_override_mandatory_fields(self, formatter):
        entry = json.loads(formatter.format(_record("x", level="spoofed")))

        assert entry["level"] == "info"


class TestActorHash:
    def test_stable_and_opaque(self):
        digest = hash_actor_token("tok-admin")

        assert digest == hash_actor_token("tok-admin")
        assert digest != hash_actor_token("tok-ops")
        assert len(digest) == 64
        assert "tok-admin" not in digest


class TestHealth:
    def test_database_ok(self, engine):
        assert health.check_database(engine) == "OK"

    def test_database_failure(self, tmp_path):
        broken = sa.create_engine(f"sqlite:///{tmp_path}/missing/dir/cache.db")

        assert health.check_database(broken) == "FAIL"

    def test_endpoints(self, engine, monkeypatch):
        monkeypatch.setattr(health, "get_engine", lambda: engine)
        client = TestClient(create_app())

        assert client.get("/health/live").json() == {"status": "OK"}
        ready = client.get("/health/ready").json()
        assert ready["status"] == "OK"
        assert ready["db"] == "OK"
