"""Brevo client and transport over httpx.MockTransport."""

import base64
import json

import httpx
import pytest

from agents.dunning.sender import BrevoTransport, EmailAttachment, Sender
from backend.integrations.brevo_client import BrevoAttachment, BrevoClient


class Recorder:
    def __init__(self, status_code=201, body=None):
        self.status_code = status_code
        self.body = body if body is not None else {"messageId": "<201@brevo>"}
        self.requests = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        return httpx.Response(self.status_code, json=self.body)


@pytest.fixture
def recorder():
    return Recorder()


def _client(recorder, api_key="key-123"):
    return BrevoClient(api_key=api_key, base_url="https://api.brevo.test/v3", transport=httpx.MockTransport(recorder))


class TestSend:
    def test_payload_and_message_id(self, recorder):
        with _client(recorder) as client:
            response = client.send_transactional(
                sender_email="ar@sender.example.com",
                sender_name="Jordan AR",
                to="pat@example.com",
                subject="Payment Reminder",
                text="Body",
                attachments=[BrevoAttachment(name="invoice.pdf", content=b"%PDF")],
                reference="SO-500",
            )

        assert response.success is True
        assert response.message_id == "<201@brevo>"
        [request] = recorder.requests
        assert request.url.path == "/v3/smtp/email"
        assert request.headers["api-key"] == "key-123"
        payload = json.loads(request.content)
        assert payload["sender"] == {"name": "Jordan AR", "email": "ar@sender.example.com"}
        assert payload["to"] == [{"email": "pat@example.com"}]
        assert payload["textContent"] == "Body"
        assert payload["attachment"] == [{"name": "invoice.pdf", "content": base64.b64encode(b"%PDF").decode()}]
        assert payload["headers"] == {"X-Order-Reference": "SO-500"}

    def test_invalid_address_is_remembered_as_hard_bounce(self):
        recorder = Recorder(400, {"code": "invalid_parameter", "message": "email is invalid"})
        client = _client(recorder)

        first = client.send_transactional("ar@x.com", "AR", "Gone@Example.com", "s", "b")
        second = client.send_transactional("ar@x.com", "AR", "gone@example.com", "s", "b")

        assert first.success is False
        assert first.status_code == 400
        assert second.error == "Email address is on hard-bounce list"
        assert len(recorder.requests) == 1

        client.remove_hard_bounce("gone@example.com")
        assert not client.is_hard_bounced("gone@example.com")

    def test_server_error_is_not_a_hard_bounce(self):
        client = _client(Recorder(502, {"message": "bad gateway"}))

        response = client.send_transactional("ar@x.com", "AR", "pat@example.com", "s", "b")

        assert response.success is False
        assert "502" in response.error
        assert not client.is_hard_bounced("pat@example.com")

    def test_network_error(self):
        def boom(request):
            raise httpx.ConnectError("connection refused", request=request)

        client = BrevoClient(api_key="k", base_url="https://api.brevo.test/v3", transport=httpx.MockTransport(boom))

        response = client.send_transactional("ar@x.com", "AR", "pat@example.com", "s", "b")

        assert response.success is False
        assert response.error.startswith("Network error sending email")


class TestDryRun:
    def test_without_api_key_nothing_is_sent(self, recorder):
        client = _client(recorder, api_key="")

        response = client.send_transactional("ar@x.com", "AR", "pat@example.com", "s", "b", reference="SO-1")

        assert client.dry_run is True
        assert response.success is True
        assert response.dry_run is True
        assert response.message_id.startswith("<dryrun-")
        assert recorder.requests == []

    def test_explicit_dry_run(self, recorder):
        response = _client(recorder).send_transactional("ar@x.com", "AR", "pat@example.com", "s", "b", dry_run=True)

        assert response.dry_run is True
        assert recorder.requests == []


class TestTransport:
    def test_brevo_transport_maps_the_result(self, recorder):
        transport = BrevoTransport(_client(recorder))

        result = transport.send(
            Sender("ar@sender.example.com", "Jordan AR"),
            "pat@example.com",
            "Subject",
            "Body",
            [EmailAttachment(filename="invoice-INV-1.pdf", content=b"%PDF")],
        )

        assert result.success is True
        assert result.message_id == "<201@brevo>"
        payload = json.loads(recorder.requests[0].content)
        assert payload["attachment"][0]["name"] == "invoice-INV-1.pdf"
