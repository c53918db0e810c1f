from __future__ import annotations

import asyncio
import json
from decimal import Decimal
from types import SimpleNamespace
from uuid import uuid4

import httpx
import pytest

import app.core.cache as cache_module
import app.modules.payments.side_effects as side_effects_module
from app.core.cache import NoopCacheBackend, RedisCacheBackend, get_cache_backend
from app.core.config import Settings
from app.modules.notifications.mailer import EmailNotifier, render_purchase_confirmation
from app.modules.payments.side_effects import (
    PaymentSideEffectDispatcher,
    PurchaseConfirmation,
    learner_cache_keys,
)


class RecordingCache:
    def __init__(self, failing_keys: set[str] | None = None) -> None:
        self.deleted: list[str] = []
        self.failing_keys = failing_keys or set()

    async def get(self, key: str) -> str | None:
        return None

    async def set(self, key: str, value: str, ttl_seconds: int | None = None) -> None:
        return None

    async def delete(self, key: str) -> None:
        if key in self.failing_keys:
            raise ConnectionError("redis unavailable")
        self.deleted.append(key)


class RecordingNotifier:
    def __init__(self, *, fail: bool = False, delay: float = 0) -> None:
        self.sent: list[tuple] = []
        self.fail = fail
        self.delay = delay

    async def send_purchase_confirmation(self, learner_email, learner_name, program_name, amount, currency) -> None:
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.fail:
            raise RuntimeError("email provider rejected message")
        self.sent.append((learner_email, learner_name, program_name, amount, currency))


def _confirmation() -> PurchaseConfirmation:
    order = SimpleNamespace(
        id=uuid4(),
        learner_id=uuid4(),
        amount=Decimal("999.00"),
        currency="INR",
        learner=SimpleNamespace(email="asha@example.com", name="Asha"),
        program=SimpleNamespace(name="Data Science Bootcamp"),
    )
    return PurchaseConfirmation.from_order(order)


@pytest.mark.asyncio
async def test_dispatch_invalidates_learner_cache_and_sends_email() -> None:
    cache = RecordingCache()
    notifier = RecordingNotifier(delay=0.01)
    dispatcher = PaymentSideEffectDispatcher(cache=cache, notifier=notifier)
    confirmation = _confirmation()

    await dispatcher.dispatch_purchase_confirmed(confirmation)

    assert cache.deleted == list(learner_cache_keys(confirmation.learner_id))
    assert notifier.sent == []

    await dispatcher.drain()

    assert notifier.sent == [("asha@example.com", "Asha", "Data Science Bootcamp", Decimal("999.00"), "INR")]


@pytest.mark.asyncio
async def test_cache_failure_does_not_block_other_keys_or_email() -> None:
    confirmation = _confirmation()
    home_key, profile_key = learner_cache_keys(confirmation.learner_id)
    cache = RecordingCache(failing_keys={home_key})
    notifier = RecordingNotifier()
    dispatcher = PaymentSideEffectDispatcher(cache=cache, notifier=notifier)

    await dispatcher.dispatch_purchase_confirmed(confirmation)
    await dispatcher.drain()

    assert cache.deleted == [profile_key]
    assert len(notifier.sent) == 1


@pytest.mark.asyncio
async def test_email_failure_is_logged_and_swallowed(caplog: pytest.LogCaptureFixture) -> None:
    dispatcher = PaymentSideEffectDispatcher(cache=RecordingCache(), notifier=RecordingNotifier(fail=True))

    await dispatcher.dispatch_purchase_confirmed(_confirmation())
    await dispatcher.drain()

    assert "Failed to send purchase confirmation" in caplog.text


@pytest.mark.asyncio
async def test_drain_without_pending_tasks_returns_immediately() -> None:
    dispatcher = PaymentSideEffectDispatcher(cache=NoopCacheBackend(), notifier=RecordingNotifier())

    await dispatcher.drain()


def test_render_purchase_confirmation_escapes_user_content() -> None:
    subject, html = render_purchase_confirmation(
        "<Asha>",
        "Data & Science",
        Decimal("999"),
        "INR",
        programs_url="https://learn.example.com/programs",
    )

    assert subject == "Payment confirmed: Data & Science"
    assert "&lt;Asha&gt;" in html
    assert "Data &amp; Science" in html
    assert "INR 999.00" in html
    assert 'href="https://learn.example.com/programs"' in html


@pytest.mark.asyncio
async def test_email_notifier_posts_to_provider() -> None:
    captured: dict = {}

    def _handler(request: httpx.Request) -> httpx.Response:
        captured["url"] = str(request.url)
        captured["authorization"] = request.headers["authorization"]
        captured["body"] = json.loads(request.content)
        return httpx.Response(200, json={"id": "email_1"})

    settings = Settings(_env_file=None, email_api_key="re_test", frontend_url="https://learn.example.com")
    notifier = EmailNotifier(settings, transport=httpx.MockTransport(_handler))

    await notifier.send_purchase_confirmation("asha@example.com", "Asha", "Data Science", Decimal("999.00"), "INR")

    assert captured["url"] == "https://api.resend.com/emails"
    assert captured["authorization"] == "Bearer re_test"
    assert captured["body"]["to"] == ["asha@example.com"]
    assert captured["body"]["from"] == "noreply@coursepay.dev"
    assert captured["body"]["subject"] == "Payment confirmed: Data Science"


@pytest.mark.asyncio
async def test_email_notifier_raises_on_provider_error() -> None:
    def _handler(_: httpx.Request) -> httpx.Response:
        return httpx.Response(422, json={"message": "invalid from address"})

    settings = Settings(_env_file=None, email_api_key="re_test")
    notifier = EmailNotifier(settings, transport=httpx.MockTransport(_handler))

    with pytest.raises(httpx.HTTPStatusError):
        await notifier.send_purchase_confirmation("asha@example.com", "Asha", "Data Science", Decimal("1"), "INR")


@pytest.mark.asyncio
async def test_email_notifier_skips_without_api_key() -> None:
    def _handler(_: httpx.Request) -> httpx.Response:
        raise AssertionError("provider must not be called")

    notifier = EmailNotifier(Settings(_env_file=None, email_api_key=None), transport=httpx.MockTransport(_handler))

    await notifier.send_purchase_confirmation("asha@example.com", "Asha", "Data Science", Decimal("1"), "INR")


def test_cache_backend_follows_redis_configuration(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(cache_module, "_cache_backend", None)
    monkeypatch.setattr(cache_module, "_cache_backend_signature", None)

    monkeypatch.setattr(cache_module, "get_settings", lambda: Settings(_env_file=None, redis_url=None))
    assert isinstance(get_cache_backend(), NoopCacheBackend)

    monkeypatch.setattr(
        cache_module,
        "get_settings",
        lambda: Settings(_env_file=None, redis_url="redis://localhost:6379/0"),
    )
    backend = get_cache_backend()
    assert isinstance(backend, RedisCacheBackend)
    assert get_cache_backend() is backend


@pytest.mark.asyncio
async def test_redis_cache_backend_prefixes_keys_with_namespace() -> None:
    class FakeRedis:
        def __init__(self) -> None:
            self.deleted: list[str] = []

        async def delete(self, key: str) -> None:
            self.deleted.append(key)

    backend = RedisCacheBackend(redis_url="redis://localhost:6379/0", namespace="coursepay")
    fake = FakeRedis()
    backend._client = fake

    await backend.delete("learner:home:42")

    assert fake.deleted == ["coursepay:learner:home:42"]


@pytest.mark.asyncio
async def test_shared_dispatcher_follows_rebuilt_cache_backend(monkeypatch: pytest.MonkeyPatch) -> None:
    built: list[RecordingCache] = []

    def _build(_: Settings) -> RecordingCache:
        cache = RecordingCache()
        built.append(cache)
        return cache

    monkeypatch.setattr(cache_module, "_cache_backend", None)
    monkeypatch.setattr(cache_module, "_cache_backend_signature", None)
    monkeypatch.setattr(cache_module, "_build_cache_backend", _build)
    monkeypatch.setattr(side_effects_module, "_dispatcher", None)
    monkeypatch.setattr(side_effects_module, "get_purchase_notifier", lambda: RecordingNotifier())

    monkeypatch.setattr(cache_module, "get_settings", lambda: Settings(_env_file=None, redis_url=None))
    dispatcher = side_effects_module.get_side_effect_dispatcher()
    first = _confirmation()
    await dispatcher.dispatch_purchase_confirmed(first)

    monkeypatch.setattr(
        cache_module,
        "get_settings",
        lambda: Settings(_env_file=None, redis_url="redis://cache.internal:6379/0"),
    )
    assert side_effects_module.get_side_effect_dispatcher() is dispatcher
    second = _confirmation()
    await dispatcher.dispatch_purchase_confirmed(second)
    await dispatcher.drain()

    assert len(built) == 2
    assert built[0].deleted == list(learner_cache_keys(first.learner_id))
    assert built[1].deleted == list(learner_cache_keys(second.learner_id))
