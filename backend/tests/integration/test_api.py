# backend/tests/integration/test_api.py
import hmac
import hashlib
import json
from unittest.mock import AsyncMock

import pytest

from app.config.settings import settings
from app.jobs.wait_resumer import WAIT_RESUME_JOB_ID
from app.routes.webhooks import flow_runtime, parse_whatsapp_payload

API_PREFIX = f"/api/{settings.api_version}"


def _signed(payload):
    payload_bytes = json.dumps(payload).encode('utf-8')
    signature = "sha256=" + hmac.new(settings.whatsapp_app_secret.encode('utf-8'), payload_bytes, hashlib.sha256).hexdigest()
    return payload_bytes, {"X-Hub-Signature-256": signature, "Content-Type": "application/json"}


def _message_payload(message, contacts=None):
    return {"entry": [{"changes": [{"field": "messages", "value": {
        "metadata": {"phone_number_id": "111111111111"},
        "contacts": contacts or [],
        "messages": [message],
    }}]}]}


def test_webhook_verification_success(test_client):
    params = {
        "hub.mode": "subscribe", "hub.challenge": "12345",
        "hub.verify_token": settings.whatsapp_verify_token
    }
    response = test_client.get(f"{API_PREFIX}/webhooks/whatsapp", params=params)
    assert response.status_code == 200
    assert response.text == "12345"

def test_webhook_verification_failure(test_client):
    params = {
        "hub.mode": "subscribe", "hub.challenge": "12345",
        "hub.verify_token": "wrong_token"
    }
    response = test_client.get(f"{API_PREFIX}/webhooks/whatsapp", params=params)
    assert response.status_code == 403

def test_handle_webhook_success(test_client):
    """A signed message is turned into an inbound event and handed to the runtime."""
    payload = _message_payload(
        {"from": "5215512345678", "id": "wamid.ID", "text": {"body": "Hi"}, "type": "text"},
        contacts=[{"wa_id": "5215512345678", "profile": {"name": "Ana"}}],
    )
    payload_bytes, headers = _signed(payload)

    response = test_client.post(f"{API_PREFIX}/webhooks/whatsapp", content=payload_bytes, headers=headers)

    assert response.status_code == 200
    assert response.json() == {"status": "success", "events": 1}
    flow_runtime.handle_inbound_event.assert_called_once()
    event = flow_runtime.handle_inbound_event.call_args.args[0]
    assert event.channel_address == "+5215512345678"
    assert event.text == "Hi"
    assert event.contact_name == "Ana"
    assert event.device_id == "111111111111"
    assert event.message_id == "wamid.ID"

def test_handle_webhook_invalid_signature(test_client):
    payload_bytes = json.dumps({"entry": []}).encode('utf-8')
    headers = {"X-Hub-Signature-256": "sha256=invalid", "Content-Type": "application/json"}

    response = test_client.post(f"{API_PREFIX}/webhooks/whatsapp", content=payload_bytes, headers=headers)
    assert response.status_code == 403
    flow_runtime.handle_inbound_event.assert_not_called()

def test_handle_webhook_drops_flooding_address(test_client, mocker):
    mocker.patch("app.routes.webhooks.security_service.rate_limiter.check_address_rate_limit", new_callable=AsyncMock, return_value=False)
    payload_bytes, headers = _signed(_message_payload(
        {"from": "5215512345678", "id": "wamid.F", "text": {"body": "Hi"}, "type": "text"}
    ))

    response = test_client.post(f"{API_PREFIX}/webhooks/whatsapp", content=payload_bytes, headers=headers)

    assert response.status_code == 200
    assert response.json()["events"] == 0
    flow_runtime.handle_inbound_event.assert_not_called()

def test_handle_webhook_status_only(test_client):
    payload = {"entry": [{"changes": [{"field": "messages", "value": {
        "statuses": [{"id": "wamid.X", "status": "delivered"}],
    }}]}]}
    payload_bytes, headers = _signed(payload)

    response = test_client.post(f"{API_PREFIX}/webhooks/whatsapp", content=payload_bytes, headers=headers)
    assert response.json()["events"] == 0
    flow_runtime.handle_inbound_event.assert_not_called()


def test_parse_button_reply():
    payload = _message_payload({
        "from": "5215512345678", "id": "wamid.B", "type": "interactive",
        "interactive": {"type": "button_reply", "button_reply": {"id": "opt-sales", "title": "Sales"}},
    })
    events = parse_whatsapp_payload(payload)
    assert len(events) == 1
    assert events[0].reply_id == "opt-sales"
    assert events[0].text == "Sales"
    assert events[0].reply == "opt-sales"

def test_parse_media_caption_and_unknown_field():
    payload = _message_payload({
        "from": "5215512345678", "id": "wamid.C", "type": "image",
        "image": {"id": "media-1", "caption": "mi comprobante"},
    })
    payload["entry"][0]["changes"].append({"field": "account_update", "value": {}})
    events = parse_whatsapp_payload(payload)
    assert [e.text for e in events] == ["mi comprobante"]


def test_integration_webhook_accepted(test_client):
    response = test_client.post(
        f"{API_PREFIX}/integrations/flow-lead/webhook",
        json={"phone": "52 1 55 1234 5678", "name": "Luis", "curso": "Python"},
    )
    assert response.status_code == 200
    assert response.json() == {"status": "accepted"}
    event = flow_runtime.handle_inbound_event.call_args.args[0]
    assert event.kind == "third_party"
    assert event.trigger_id == "flow-lead"
    assert event.channel_address == "+5215512345678"
    assert event.payload["curso"] == "Python"

def test_integration_webhook_without_phone(test_client):
    response = test_client.post(f"{API_PREFIX}/integrations/flow-lead/webhook", json={"name": "Luis"})
    assert response.status_code == 422
    flow_runtime.handle_inbound_event.assert_not_called()


def test_runtime_start_unknown_flow(test_client):
    response = test_client.post(f"{API_PREFIX}/runtime/start", json={"flow_id": "nope", "phone": "+5215512345678"})
    assert response.status_code == 404

def test_runtime_continue_without_session(test_client):
    response = test_client.post(
        f"{API_PREFIX}/runtime/continue",
        json={"flow_id": "nope", "channel_address": "+5215512345678", "text": "1"},
    )
    assert response.status_code == 404

def test_tag_added_fires_triggers(test_client):
    flow_runtime.handle_inbound_event.return_value = {"status": "started", "session_ids": ["s1"], "actions": []}

    response = test_client.post(
        f"{API_PREFIX}/triggers/tag-added",
        json={"channel_address": "+5215512345678", "tag_id": "vip"},
    )

    assert response.status_code == 200
    assert response.json()["session_ids"] == ["s1"]
    event = flow_runtime.handle_inbound_event.call_args.args[0]
    assert event.kind == "tag_added"
    assert event.tag_id == "vip"

@pytest.fixture
def hello_flow(flow_factory):
    return flow_factory(
        steps=[{"id": "hello", "type": "send_message", "config": {"text": "Hi"}}],
        edges=[("start", "hello")],
        flow_id="flow-hello",
        trigger={"type": "tag_added", "tagId": "vip"},
    )

def test_runtime_start_returns_dispatched_actions(test_client, monkeypatch, runtime, flow_repo, dispatcher, hello_flow):
    flow_repo.add_flow(hello_flow)
    monkeypatch.setattr("app.routes.runtime.flow_runtime", runtime)

    response = test_client.post(f"{API_PREFIX}/runtime/start", json={"flow_id": "flow-hello", "phone": "+5215512345678"})

    assert response.status_code == 200
    body = response.json()
    assert body["status"] == "started"
    assert body["actions"][0]["type"] == "send_message"
    assert body["actions"][0]["text"] == "Hi"
    dispatcher.dispatch_all.assert_awaited_once()

def test_tag_added_with_real_runtime(test_client, monkeypatch, runtime, flow_repo, hello_flow):
    flow_repo.add_flow(hello_flow)
    monkeypatch.setattr("app.routes.runtime.flow_runtime", runtime)

    response = test_client.post(
        f"{API_PREFIX}/triggers/tag-added",
        json={"channel_address": "+5215512345678", "tag_id": "vip"},
    )

    assert response.status_code == 200
    assert response.json()["actions"][0]["text"] == "Hi"

def test_runtime_requires_api_key_when_configured(test_client, monkeypatch):
    monkeypatch.setattr(settings, "api_key", "secret-key")
    response = test_client.post(f"{API_PREFIX}/runtime/resume", json={"session_id": "s1"})
    assert response.status_code == 403


def test_health(test_client):
    response = test_client.get("/health")
    assert response.status_code == 200
    assert response.json()["status"] == "healthy"

def test_memory_backend_runs_wait_job_in_process(test_client):
    scheduler = test_client.app.state.wait_scheduler
    assert scheduler is not None
    assert scheduler.running
    assert scheduler.get_job(WAIT_RESUME_JOB_ID) is not None
