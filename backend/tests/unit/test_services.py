# backend/tests/unit/test_services.py
import asyncio
from datetime import datetime, timedelta, timezone

import pytest
from unittest.mock import AsyncMock, MagicMock

from app.models.actions import (
    SendMessageAction,
    SendInteractiveAction,
    InteractiveButton,
    SendMediaAction,
    AssignConversationAction,
    SendEmailAction,
)
from app.models.session import SessionStatus, Assignee
from app.services.action_dispatcher import ActionDispatcher
from app.services.security_service import AdvancedRateLimiter
from app.services.whatsapp_service import WhatsAppService
from app.utils.circuit_breaker import CircuitBreaker, CircuitOpenError, CircuitState
from app.utils.phone import normalize_phone, whatsapp_recipient
from app.config import strings
from app.config.settings import settings

ADDRESS = "+5215512345678"


# --- WhatsAppService Tests ---

@pytest.mark.asyncio
async def test_whatsapp_send_message_success(mocker):
    """Test successful message sending."""
    mock_response = AsyncMock(return_value=MagicMock(status_code=200, json=lambda: {"messages": [{"id": "wamid_123"}]}))
    mocker.patch('app.services.whatsapp_service.WhatsAppService.resilient_api_call', mock_response)

    service = WhatsAppService(settings.whatsapp_access_token, settings.whatsapp_phone_id)
    wamid = await service.send_message(ADDRESS, "Hello World")

    assert wamid == "wamid_123"
    mock_response.assert_awaited_once()
    payload = mock_response.call_args.kwargs["json"]
    assert payload["to"] == ADDRESS
    assert payload["text"] == {"body": "Hello World"}

@pytest.mark.asyncio
async def test_whatsapp_uses_device_phone_id(mocker):
    mock_response = AsyncMock(return_value=MagicMock(status_code=200, json=lambda: {"messages": [{"id": "w"}]}))
    mocker.patch('app.services.whatsapp_service.WhatsAppService.resilient_api_call', mock_response)

    service = WhatsAppService("token", "111", base_url="https://graph.example.com/v18.0")
    await service.send_message(ADDRESS, "hola", phone_id="999")

    url = mock_response.call_args.args[1]
    assert url == "https://graph.example.com/v18.0/999/messages"

@pytest.mark.asyncio
async def test_whatsapp_interactive_buttons_payload(mocker):
    mock_response = AsyncMock(return_value=MagicMock(status_code=200, json=lambda: {"messages": [{"id": "w"}]}))
    mocker.patch('app.services.whatsapp_service.WhatsAppService.resilient_api_call', mock_response)

    service = WhatsAppService("token", "111")
    await service.send_interactive_buttons(ADDRESS, "Pick one", [("a", "Sales"), ("b", "Support")])

    payload = mock_response.call_args.kwargs["json"]
    buttons = payload["interactive"]["action"]["buttons"]
    assert [b["reply"]["id"] for b in buttons] == ["a", "b"]
    assert payload["interactive"]["body"]["text"] == "Pick one"

@pytest.mark.asyncio
async def test_whatsapp_send_failure_returns_none(mocker):
    mock_response = AsyncMock(return_value=MagicMock(status_code=400, json=lambda: {"error": {"message": "bad"}}))
    mocker.patch('app.services.whatsapp_service.WhatsAppService.resilient_api_call', mock_response)
    mock_alert = mocker.patch('app.services.whatsapp_service.alerting_service.send_critical_alert', new_callable=AsyncMock)

    service = WhatsAppService("token", "111")
    assert await service.send_message(ADDRESS, "hola") is None
    mock_alert.assert_not_awaited()

@pytest.mark.asyncio
async def test_whatsapp_auth_failure_alerts(mocker):
    mock_response = AsyncMock(return_value=MagicMock(status_code=401, json=lambda: {"error": {"message": "expired"}}))
    mocker.patch('app.services.whatsapp_service.WhatsAppService.resilient_api_call', mock_response)
    mock_alert = mocker.patch('app.services.whatsapp_service.alerting_service.send_critical_alert', new_callable=AsyncMock)

    service = WhatsAppService("token", "111")
    assert await service.send_message(ADDRESS, "hola") is None
    mock_alert.assert_awaited_once()


# --- ActionDispatcher Tests ---

@pytest.fixture
def fake_whatsapp():
    whatsapp = AsyncMock()
    whatsapp.send_message.return_value = "wamid.text"
    whatsapp.send_interactive_buttons.return_value = "wamid.buttons"
    whatsapp.send_media.return_value = "wamid.media"
    whatsapp.send_template_message.return_value = "wamid.template"
    return whatsapp


@pytest.fixture
def fake_notifications():
    notifications = AsyncMock()
    notifications.send_email.return_value = True
    return notifications


@pytest.mark.asyncio
async def test_dispatch_text_uses_device(fake_whatsapp, fake_notifications):
    dispatcher = ActionDispatcher(fake_whatsapp, fake_notifications, honor_delays=False)
    delivered = await dispatcher.dispatch(SendMessageAction(to=ADDRESS, device_id="dev-1", text="hola"))

    assert delivered is True
    fake_whatsapp.send_message.assert_awaited_once_with(ADDRESS, "hola", phone_id="dev-1")

@pytest.mark.asyncio
async def test_dispatch_interactive_falls_back_to_numbered_text(fake_whatsapp, fake_notifications):
    fake_whatsapp.send_interactive_buttons.return_value = None
    dispatcher = ActionDispatcher(fake_whatsapp, fake_notifications, honor_delays=False)
    action = SendInteractiveAction(
        to=ADDRESS, body="Pick one",
        buttons=[InteractiveButton(id="a", title="Sales")],
        fallback_text="Pick one\n\n1. Sales",
    )

    assert await dispatcher.dispatch(action) is True
    fake_whatsapp.send_message.assert_awaited_once_with(ADDRESS, "Pick one\n\n1. Sales", phone_id=None)

@pytest.mark.asyncio
async def test_dispatch_more_than_three_options_sends_text(fake_whatsapp, fake_notifications):
    dispatcher = ActionDispatcher(fake_whatsapp, fake_notifications, honor_delays=False)
    buttons = [InteractiveButton(id=str(i), title=f"Option {i}") for i in range(4)]
    action = SendInteractiveAction(to=ADDRESS, body="?", buttons=buttons, fallback_text="list")

    await dispatcher.dispatch(action)

    fake_whatsapp.send_interactive_buttons.assert_not_awaited()
    fake_whatsapp.send_message.assert_awaited_once()

@pytest.mark.asyncio
async def test_dispatch_media_failure_sends_fallback(fake_whatsapp, fake_notifications):
    fake_whatsapp.send_media.return_value = None
    dispatcher = ActionDispatcher(fake_whatsapp, fake_notifications, honor_delays=False)
    action = SendMediaAction(to=ADDRESS, media_type="image", media_url="https://cdn.example.com/x.png")

    assert await dispatcher.dispatch(action) is False
    fake_whatsapp.send_message.assert_awaited_once_with(ADDRESS, strings.MEDIA_FALLBACK, phone_id=None)

@pytest.mark.asyncio
async def test_dispatch_failure_does_not_stop_batch(fake_whatsapp, fake_notifications):
    fake_whatsapp.send_message.side_effect = [Exception("boom"), "wamid.2"]
    dispatcher = ActionDispatcher(fake_whatsapp, fake_notifications, honor_delays=False)
    actions = [
        SendMessageAction(to=ADDRESS, text="uno"),
        AssignConversationAction(to=ADDRESS, assignee_type="human", assignee_id="agent-1"),
        SendMessageAction(to=ADDRESS, text="dos"),
    ]

    assert await dispatcher.dispatch_all(actions) == [False, True, True]

@pytest.mark.asyncio
async def test_dispatch_email(fake_whatsapp, fake_notifications):
    dispatcher = ActionDispatcher(fake_whatsapp, fake_notifications, honor_delays=False)
    action = SendEmailAction(to=ADDRESS, email="ops@example.com", subject="s", body="b")

    assert await dispatcher.dispatch(action) is True
    fake_notifications.send_email.assert_awaited_once_with("ops@example.com", "s", "b")

@pytest.mark.asyncio
async def test_dispatch_honors_delay(mocker, fake_whatsapp, fake_notifications):
    mock_sleep = mocker.patch("app.services.action_dispatcher.asyncio.sleep", new_callable=AsyncMock)
    dispatcher = ActionDispatcher(fake_whatsapp, fake_notifications)

    await dispatcher.dispatch(SendMessageAction(to=ADDRESS, text="luego", delay_seconds=4))
    mock_sleep.assert_awaited_once_with(4)


# --- Session store Tests ---

@pytest.mark.asyncio
async def test_compare_and_swap_rejects_stale_step(session_store):
    session = await session_store.create("flow-1", ADDRESS, {"phone": ADDRESS})

    assert await session_store.compare_and_swap(session.session_id, None, "menu", {"a": 1}, SessionStatus.ACTIVE) is True
    # a second writer that still believes the session is at None loses
    assert await session_store.compare_and_swap(session.session_id, None, "other", {}, SessionStatus.ACTIVE) is False

    stored = await session_store.get(session.session_id)
    assert stored.current_step_id == "menu"
    assert stored.variables == {"a": 1}

@pytest.mark.asyncio
async def test_compare_and_swap_rejects_unknown_fields(session_store):
    session = await session_store.create("flow-1", ADDRESS, {})
    with pytest.raises(ValueError):
        await session_store.compare_and_swap(session.session_id, None, "x", {}, SessionStatus.ACTIVE, flow_id="hijack")

@pytest.mark.asyncio
async def test_create_replaces_session_for_same_flow(session_store):
    first = await session_store.create("flow-1", ADDRESS, {})
    second = await session_store.create("flow-1", ADDRESS, {})

    assert await session_store.get(first.session_id) is None
    assert (await session_store.find_for_flow(ADDRESS, "flow-1")).session_id == second.session_id

@pytest.mark.asyncio
async def test_find_returns_active_session_only(session_store):
    session = await session_store.create("flow-1", ADDRESS, {})
    assert await session_store.find(ADDRESS) is None  # not parked anywhere yet

    await session_store.compare_and_swap(session.session_id, None, "menu", {}, SessionStatus.ACTIVE)
    assert (await session_store.find(ADDRESS)).current_step_id == "menu"

    assert await session_store.complete_active(ADDRESS) == 1
    assert await session_store.find(ADDRESS) is None
    # completed records still count as a prior execution
    assert await session_store.has_session(ADDRESS, "flow-1") is True

@pytest.mark.asyncio
async def test_reset_forgets_everything(session_store):
    await session_store.create("flow-1", ADDRESS, {})
    await session_store.create("flow-2", ADDRESS, {})
    await session_store.create("flow-1", "+5215599999999", {})

    assert await session_store.reset(ADDRESS) == 2
    assert await session_store.has_session(ADDRESS, "flow-1") is False
    assert await session_store.has_session("+5215599999999", "flow-1") is True

@pytest.mark.asyncio
async def test_due_waits(session_store):
    now = datetime(2024, 5, 6, 12, 0, tzinfo=timezone.utc)
    due = await session_store.create("flow-1", ADDRESS, {})
    later = await session_store.create("flow-2", ADDRESS, {})
    await session_store.compare_and_swap(due.session_id, None, "w", {}, SessionStatus.ACTIVE, resume_at=now - timedelta(minutes=1), resume_step_id="next")
    await session_store.compare_and_swap(later.session_id, None, "w", {}, SessionStatus.ACTIVE, resume_at=now + timedelta(hours=1))

    sessions = await session_store.due_waits(now)
    assert [s.session_id for s in sessions] == [due.session_id]

@pytest.mark.asyncio
async def test_assignee_round_trip(session_store):
    session = await session_store.create("flow-1", ADDRESS, {})
    await session_store.compare_and_swap(
        session.session_id, None, "assign", {}, SessionStatus.ACTIVE, assignee=Assignee(type="ai", id="bot"), ai_turn_count=0
    )
    assert (await session_store.find(ADDRESS)).is_ai_assigned


# --- Cache / lock Tests ---

@pytest.mark.asyncio
async def test_address_lock_serializes_without_redis(local_cache):
    order = []

    async def worker(name):
        async with local_cache.address_lock(ADDRESS):
            order.append(f"{name}-in")
            await asyncio.sleep(0.01)
            order.append(f"{name}-out")

    await asyncio.gather(worker("a"), worker("b"))
    assert order in (["a-in", "a-out", "b-in", "b-out"], ["b-in", "b-out", "a-in", "a-out"])
    assert local_cache._local_locks == {}
    assert local_cache._local_lock_users == {}

@pytest.mark.asyncio
async def test_local_locks_are_evicted_after_use(local_cache):
    for i in range(5):
        async with local_cache.address_lock(f"+52155000000{i}"):
            assert len(local_cache._local_locks) == 1
    assert local_cache._local_locks == {}

@pytest.mark.asyncio
async def test_dedupe_disabled_without_redis(local_cache):
    assert await local_cache.is_duplicate("x") is False
    assert await local_cache.is_duplicate("x") is False


@pytest.mark.asyncio
async def test_rate_limiter_counts_per_key():
    redis_client = AsyncMock()
    redis_client.incr.side_effect = [1, 2, 3]
    limiter = AdvancedRateLimiter(redis_client)

    results = [await limiter.check_address_rate_limit(ADDRESS, limit=2) for _ in range(3)]

    assert results == [True, True, False]
    redis_client.expire.assert_awaited_once_with(f"rate_limit:address:{ADDRESS}", 60)

@pytest.mark.asyncio
async def test_rate_limiter_allows_when_redis_fails():
    redis_client = AsyncMock()
    redis_client.incr.side_effect = ConnectionError("redis down")
    limiter = AdvancedRateLimiter(redis_client)

    assert await limiter.check_ip_rate_limit("10.0.0.1") is True
    assert await limiter.check_address_rate_limit(ADDRESS) is True


# --- Circuit breaker Tests ---

@pytest.mark.asyncio
async def test_circuit_breaker_opens_after_failures():
    breaker = CircuitBreaker("test", failure_threshold=2, timeout=60)
    failing = AsyncMock(side_effect=RuntimeError("down"))

    for _ in range(2):
        with pytest.raises(RuntimeError):
            await breaker.call(failing)

    with pytest.raises(CircuitOpenError):
        await breaker.call(failing)
    assert failing.await_count == 2


@pytest.mark.asyncio
async def test_circuit_breaker_recovers_through_half_open():
    breaker = CircuitBreaker("test", failure_threshold=1, timeout=0, success_threshold=1)
    with pytest.raises(RuntimeError):
        await breaker.call(AsyncMock(side_effect=RuntimeError("down")))
    assert breaker.state == CircuitState.OPEN

    assert await breaker.call(AsyncMock(return_value="ok")) == "ok"
    assert breaker.state == CircuitState.CLOSED


# --- Scheduler ---

@pytest.mark.asyncio
async def test_standalone_scheduler_refuses_in_memory_store(monkeypatch, mocker):
    import scheduler
    monkeypatch.setattr(settings, "session_backend", "memory")
    scheduler_cls = mocker.patch("scheduler.AsyncIOScheduler")

    assert await scheduler.main() is False
    scheduler_cls.assert_not_called()


# --- Phone utils ---

@pytest.mark.parametrize("raw, expected", [
    ("52 1 55 1234-5678", "+5215512345678"),
    ("+5215512345678", "+5215512345678"),
    ("(555) 123-4567", "5551234567"),
    ("", ""),
])
def test_normalize_phone(raw, expected):
    assert normalize_phone(raw) == expected

def test_whatsapp_recipient():
    assert whatsapp_recipient("5215512345678") == "+5215512345678"
