import asyncio
import base64
import json

import httpx
import pytest
from fastapi.testclient import TestClient

from app.config import Settings
from services.compliance.escalation import HttpEmailClient
from services.email_gateway import main
from services.email_gateway.providers import (
    EmailProviderError,
    MailjetProvider,
    RecordingProvider,
    SendGridProvider,
    build_provider,
)
from shared.contracts.enums import DeliveryStatus


ALERT = {
    "to": "dr.house@clinic.example",
    "subject": "Missed Dosages Alert - Aspirin",
    "text": "Ada Lovelace missed 3 dosages for Aspirin",
}


class FailingProvider:
    name = "failing"

    def send(self, to, subject, text):
        raise EmailProviderError("https://api.sendgrid.com/v3/mail/send returned 401: unauthorized")


@pytest.fixture
def client():
    with TestClient(main.app) as test_client:
        yield test_client
    main.app.dependency_overrides.clear()
    main.DELIVERY_LOG.clear()


def test_send_endpoint_delivers_through_provider(client):
    provider = RecordingProvider()
    main.app.dependency_overrides[main.get_provider] = lambda: provider

    response = client.post("/send-missed-dosage-email", json=ALERT)

    assert response.status_code == 200
    assert response.json() == {"success": True}
    assert provider.sent == [ALERT]
    (entry,) = client.get("/logs").json()
    assert entry["success"] is True
    assert entry["provider"] == "recording"


def test_send_endpoint_reports_provider_failure(client):
    main.app.dependency_overrides[main.get_provider] = FailingProvider

    response = client.post("/send-missed-dosage-email", json=ALERT)

    assert response.status_code == 500
    body = response.json()
    assert body["success"] is False
    assert "401" in body["error"]


def test_send_endpoint_rejects_invalid_requests(client):
    main.app.dependency_overrides[main.get_provider] = lambda: RecordingProvider()

    assert client.post("/send-missed-dosage-email", json={**ALERT, "to": "nobody"}).status_code == 422
    assert client.post("/send-missed-dosage-email", json={**ALERT, "cc": "x@y.example"}).status_code == 422


def test_delivery_log_is_bounded():
    for i in range(main.MAX_LOG_ENTRIES + 25):
        main._append_log({"i": i})

    assert len(main.DELIVERY_LOG) == main.MAX_LOG_ENTRIES
    assert main.DELIVERY_LOG[0] == {"i": 25}
    main.DELIVERY_LOG.clear()


def test_sendgrid_provider_signs_plain_text_body():
    captured = {}

    def handler(request: httpx.Request) -> httpx.Response:
        captured["auth"] = request.headers["Authorization"]
        captured["payload"] = json.loads(request.content)
        return httpx.Response(202)

    provider = SendGridProvider("sg-key", "noreply@rx.example", transport=httpx.MockTransport(handler))
    provider.send(**ALERT)

    assert captured["auth"] == "Bearer sg-key"
    payload = captured["payload"]
    assert payload["personalizations"] == [{"to": [{"email": ALERT["to"]}]}]
    assert payload["content"][0]["value"] == f"Hello\n\n{ALERT['text']}\n\nBest,\nRxManagement"


def test_sendgrid_provider_requires_key_and_surfaces_http_errors():
    with pytest.raises(EmailProviderError):
        SendGridProvider(None, "noreply@rx.example").send(**ALERT)

    rejected = httpx.MockTransport(lambda request: httpx.Response(403, text="forbidden"))
    with pytest.raises(EmailProviderError, match="403"):
        SendGridProvider("sg-key", "noreply@rx.example", transport=rejected).send(**ALERT)


def test_mailjet_provider_uses_basic_auth_and_html_part():
    captured = {}

    def handler(request: httpx.Request) -> httpx.Response:
        captured["auth"] = request.headers["Authorization"]
        captured["payload"] = json.loads(request.content)
        return httpx.Response(200, json={"Messages": [{"Status": "success"}]})

    provider = MailjetProvider("pub", "priv", "noreply@rx.example", transport=httpx.MockTransport(handler))
    provider.send(ALERT["to"], ALERT["subject"], "line one\n<b>line two</b>")

    assert captured["auth"] == "Basic " + base64.b64encode(b"pub:priv").decode()
    message = captured["payload"]["Messages"][0]
    assert message["To"] == [{"Email": ALERT["to"]}]
    assert message["HTMLPart"] == "<p>line one<br>&lt;b&gt;line two&lt;/b&gt;</p>"


def test_build_provider_follows_settings():
    assert isinstance(build_provider(Settings(email_provider="mailjet")), MailjetProvider)
    assert isinstance(build_provider(Settings()), SendGridProvider)


def test_http_email_client_maps_gateway_responses():
    def handler(request: httpx.Request) -> httpx.Response:
        body = json.loads(request.content)
        if body["to"] == "down@clinic.example":
            return httpx.Response(500, json={"success": False, "error": "provider down"})
        if body["to"] == "quiet@clinic.example":
            return httpx.Response(200, json={"success": False, "error": "rejected"})
        assert request.url.path == "/send-missed-dosage-email"
        return httpx.Response(200, json={"success": True})

    email_client = HttpEmailClient("http://email.local/", transport=httpx.MockTransport(handler))

    async def scenario():
        return (
            await email_client.send_email(ALERT["to"], ALERT["subject"], ALERT["text"]),
            await email_client.send_email("down@clinic.example", ALERT["subject"], ALERT["text"]),
            await email_client.send_email("quiet@clinic.example", ALERT["subject"], ALERT["text"]),
        )

    ok, down, quiet = asyncio.run(scenario())

    assert ok.status == DeliveryStatus.DELIVERED
    assert down.status == DeliveryStatus.FAILED
    assert quiet.reason == "rejected"
