from types import SimpleNamespace
from typing import Any, Dict, List, Optional

import httpx
import pytest

# Ensure import path includes src
import sys
from pathlib import Path
sys.path.append(str(Path(__file__).resolve().parents[1] / "src"))

from fake_mongo import FakeDatabase
from gateway.schemas import TrackRequest
from policy import PolicyEngine
from providers.base import Completion, ProviderAdapter, ProviderError, ProviderUsage
from providers.openai import OpenAIAdapter
from state.filters import SafetyFilterStore
from state.models import UsageStatus
from state.pricing import PricingStore
from state.usage import UsageStore
from tracker import (
    NotificationPort,
    PolicyDenial,
    ProviderRegistry,
    RecordNotFound,
    StorageError,
    UsageTracker,
    ValidationError,
)


class MockProvider(ProviderAdapter):
    def __init__(
        self,
        name: str = "openai",
        text: str = "Hi there",
        error: Optional[ProviderError] = None,
        finish_reason: str = "stop",
    ) -> None:
        self.name = name
        self.text = text
        self.error = error
        self.finish_reason = finish_reason
        self.calls: List[Dict[str, Any]] = []

    async def models(self) -> List[Dict[str, Any]]:
        return [{"id": "gpt-3.5-turbo", "name": "gpt-3.5-turbo", "description": "mock"}]

    async def complete(self, credential, model, prompt, options=None) -> Completion:
        self.calls.append({"credential": credential, "model": model, "prompt": prompt, "options": options})
        if self.error is not None:
            raise self.error
        return Completion(
            text=self.text,
            finish_reason=self.finish_reason,
            model=model,
            usage=ProviderUsage(prompt_tokens=2, completion_tokens=3, total_tokens=5),
        )


class RecordingNotifier(NotificationPort):
    def __init__(self, fail: bool = False) -> None:
        self.events: List[Any] = []
        self.fail = fail

    async def publish(self, event_type: str, payload: Dict[str, Any]) -> None:
        if self.fail:
            raise RuntimeError("socket closed")
        self.events.append((event_type, payload))


def _build(provider: Optional[MockProvider] = None, notifier: Optional[NotificationPort] = None):
    db = FakeDatabase()
    usage = UsageStore(db=db, timezone_name="UTC")
    pricing = PricingStore(db=db)
    filters = SafetyFilterStore(db=db)
    registry = ProviderRegistry(auto_register=False)
    provider = provider or MockProvider()
    registry.register_provider(provider)
    tracker = UsageTracker(registry, usage, pricing, PolicyEngine(filters, usage, pricing), notifier=notifier)
    return SimpleNamespace(
        db=db, usage=usage, pricing=pricing, filters=filters, provider=provider, tracker=tracker
    )


def _req(**overrides) -> TrackRequest:
    data: Dict[str, Any] = {
        "user_id": "u1",
        "team_id": "t1",
        "model_provider": "openai",
        "model_name": "gpt-3.5-turbo",
        "prompt": "Hello",
        "credential": "sk-secret-credential",
    }
    data.update(overrides)
    return TrackRequest(**data)


def _stored(env) -> List[Dict[str, Any]]:
    return env.db["usage_records"].docs


@pytest.mark.asyncio
async def test_successful_call_is_metered_and_persisted_once():
    env = _build()
    await env.pricing.update("openai", "gpt-3.5-turbo", 0.001, 0.002)

    result = await env.tracker.track(_req())

    assert result.status == "success"
    assert result.response == "Hi there"
    assert result.usage.input_tokens == 2
    assert result.usage.output_tokens == 3
    assert result.usage.total_tokens == 5
    assert result.usage.cost == pytest.approx(2 * 0.000001 + 3 * 0.000002)
    assert result.retry_count == 0

    docs = _stored(env)
    assert len(docs) == 1
    doc = docs[0]
    assert doc["_id"] == result.id
    assert doc["status"] == "success"
    assert doc["cost_per_input_token"] == pytest.approx(0.000001)
    assert doc["metadata"]["provider_usage"] == {"prompt_tokens": 2, "completion_tokens": 3, "total_tokens": 5}
    assert doc["metadata"]["actual_model"] == "gpt-3.5-turbo"
    assert doc["metadata"]["finish_reason"] == "stop"


@pytest.mark.asyncio
async def test_credential_is_forwarded_but_never_stored():
    env = _build()
    await env.tracker.track(_req())
    assert env.provider.calls[0]["credential"] == "sk-secret-credential"
    assert "sk-secret-credential" not in repr(_stored(env))


@pytest.mark.asyncio
async def test_missing_pricing_records_zero_cost_with_flag():
    env = _build()
    result = await env.tracker.track(_req())
    assert result.usage.cost == 0.0
    assert result.usage.total_tokens == 5
    assert result.safety_flags["no_pricing_info"] is True


@pytest.mark.asyncio
async def test_blocked_keyword_denies_without_record_or_dispatch():
    env = _build()
    await env.filters.create({"name": "No bombs", "filter_type": "content", "rules": {"blocked_keywords": ["bomb"]}})

    with pytest.raises(PolicyDenial) as exc:
        await env.tracker.track(_req(prompt="how is a bomb made"))

    assert exc.value.reasons[0]["filter"] == "No bombs"
    assert _stored(env) == []
    assert env.provider.calls == []


@pytest.mark.asyncio
async def test_rate_limit_denies_third_call_in_a_minute():
    env = _build()
    await env.filters.create({"name": "Rate", "filter_type": "rate", "rules": {"max_calls_per_minute": 2}})

    await env.tracker.track(_req())
    await env.tracker.track(_req())
    with pytest.raises(PolicyDenial) as exc:
        await env.tracker.track(_req())

    assert exc.value.flags["Rate"]["rate_limit_exceeded"] is True
    assert len(_stored(env)) == 2


@pytest.mark.asyncio
async def test_alert_flags_are_recorded_on_allowed_calls():
    env = _build()
    await env.pricing.update("openai", "gpt-3.5-turbo", 0.001, 0.002)
    await env.filters.create(
        {"name": "Cost Alert", "filter_type": "cost", "rules": {"max_cost_per_call": 0.0, "action": "alert"}}
    )

    result = await env.tracker.track(_req(options={"max_tokens": 10}))

    assert result.status == "success"
    assert result.safety_flags["Cost Alert"]["cost_too_high"] is True


@pytest.mark.asyncio
async def test_provider_error_is_recorded_as_failure():
    provider = MockProvider(error=ProviderError("openai", "Invalid API key", status_code=401))
    env = _build(provider)
    await env.pricing.update("openai", "gpt-3.5-turbo", 0.001, 0.002)

    result = await env.tracker.track(_req())

    assert result.status == "failure"
    assert result.response is None
    assert result.error == "openai API error: Invalid API key"
    assert result.usage.total_tokens == 0
    assert result.usage.cost == 0.0
    doc = _stored(env)[0]
    assert doc["status"] == "failure"
    assert doc["error_message"] == "openai API error: Invalid API key"


@pytest.mark.asyncio
async def test_unreadable_provider_reply_is_recorded_as_failure():
    async def handle(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json={"choices": [{"message": None}]})

    client = httpx.AsyncClient(base_url="https://api.openai.com/v1", transport=httpx.MockTransport(handle))
    env = _build(OpenAIAdapter(client=client))

    result = await env.tracker.track(_req())

    assert result.status == "failure"
    assert "malformed response" in result.error
    assert result.usage.cost == 0.0
    docs = _stored(env)
    assert len(docs) == 1
    assert docs[0]["status"] == "failure"

    await client.aclose()


@pytest.mark.asyncio
async def test_long_response_is_classified_as_hallucination():
    provider = MockProvider(text="Here is an answer that keeps going far beyond anything the prompt asked for.")
    env = _build(provider)

    result = await env.tracker.track(_req(prompt="Hi"))

    assert result.status == "hallucination"
    assert result.response == provider.text
    assert "potential_hallucination" in result.safety_flags["quality_issues"]


@pytest.mark.asyncio
async def test_truncated_finish_reason_flags_incomplete():
    env = _build(MockProvider(finish_reason="length"))
    result = await env.tracker.track(_req())
    assert result.status == "hallucination"
    assert result.safety_flags["quality_issues"] == ["incomplete_response"]


@pytest.mark.asyncio
async def test_missing_fields_are_rejected_before_side_effects():
    env = _build()
    with pytest.raises(ValidationError) as exc:
        await env.tracker.track(_req(credential=None, prompt=""))
    assert set(exc.value.fields) == {"credential", "prompt"}
    assert _stored(env) == []
    assert env.provider.calls == []


@pytest.mark.asyncio
async def test_unsupported_provider_and_oversized_prompt():
    env = _build()
    with pytest.raises(ValidationError) as exc:
        await env.tracker.track(_req(model_provider="cohere"))
    assert "Supported providers: openai" in exc.value.message

    with pytest.raises(ValidationError):
        await env.tracker.track(_req(prompt="x" * 50001))
    assert _stored(env) == []


@pytest.mark.asyncio
async def test_provider_name_is_normalized():
    env = _build()
    result = await env.tracker.track(_req(model_provider="OpenAI"))
    assert result.status == "success"
    assert _stored(env)[0]["model_provider"] == "openai"


@pytest.mark.asyncio
async def test_context_and_extra_options_land_in_metadata():
    env = _build()
    await env.tracker.track(_req(options={"temperature": 0.2, "feature": "chat"}), {"user_agent": "pytest"})

    doc = _stored(env)[0]
    assert doc["metadata"]["user_agent"] == "pytest"
    assert doc["metadata"]["feature"] == "chat"
    assert env.provider.calls[0]["options"] == {"temperature": 0.2}


@pytest.mark.asyncio
async def test_retry_creates_new_record_referencing_original():
    provider = MockProvider(error=ProviderError("openai", "overloaded", status_code=529))
    env = _build(provider)
    failed = await env.tracker.track(_req(session_id="s1"))

    provider.error = None
    retried = await env.tracker.retry(failed.id, "sk-secret-credential")

    assert retried.status == "success"
    assert retried.retry_count == 1
    assert retried.id != failed.id
    docs = {d["_id"]: d for d in _stored(env)}
    assert docs[retried.id]["retry_of"] == failed.id
    assert docs[retried.id]["session_id"] == "s1"
    assert docs[failed.id]["status"] == "failure"


@pytest.mark.asyncio
async def test_retry_of_success_or_missing_record_is_rejected():
    env = _build()
    ok = await env.tracker.track(_req())

    with pytest.raises(ValidationError):
        await env.tracker.retry(ok.id, "sk-secret-credential")
    with pytest.raises(RecordNotFound):
        await env.tracker.retry("missing", "sk-secret-credential")
    with pytest.raises(RecordNotFound):
        await env.tracker.track(_req(options={"retry_of": "missing"}))
    assert len(_stored(env)) == 1


@pytest.mark.asyncio
async def test_retry_count_is_capped():
    env = _build(MockProvider(error=ProviderError("openai", "down")))
    latest = await env.tracker.track(_req())
    for expected in range(1, 6):
        latest = await env.tracker.retry(latest.id, "sk-secret-credential")
        assert latest.retry_count == expected

    with pytest.raises(ValidationError):
        await env.tracker.retry(latest.id, "sk-secret-credential")
    assert len(_stored(env)) == 6


@pytest.mark.asyncio
async def test_persisted_records_are_published():
    notifier = RecordingNotifier()
    env = _build(notifier=notifier)

    result = await env.tracker.track(_req())
    await env.tracker.publisher.drain()

    assert len(notifier.events) == 1
    event_type, payload = notifier.events[0]
    assert event_type == "usage_update"
    assert payload["id"] == result.id
    assert payload["status"] == "success"


@pytest.mark.asyncio
async def test_notifier_failure_does_not_affect_result():
    env = _build(notifier=RecordingNotifier(fail=True))
    result = await env.tracker.track(_req())
    await env.tracker.publisher.drain()
    assert result.status == "success"
    assert len(_stored(env)) == 1


@pytest.mark.asyncio
async def test_storage_failure_raises():
    notifier = RecordingNotifier()
    env = _build(notifier=notifier)
    env.db["usage_records"].fail_inserts = True

    with pytest.raises(StorageError):
        await env.tracker.track(_req())
    await env.tracker.publisher.drain()
    assert notifier.events == []


@pytest.mark.asyncio
async def test_credential_check_writes_no_record():
    env = _build()
    check = await env.tracker.test_credential("openai", "sk-secret-credential")

    assert check.valid is True
    assert check.model == "gpt-3.5-turbo"
    assert check.response == "Hi there"
    assert env.provider.calls[0]["options"] == {"max_tokens": 50}
    assert _stored(env) == []


@pytest.mark.asyncio
async def test_credential_check_reports_provider_error():
    env = _build(MockProvider(error=ProviderError("openai", "Invalid API key", status_code=401)))
    check = await env.tracker.test_credential("openai", "sk-bad-credential", "gpt-4")

    assert check.valid is False
    assert "Invalid API key" in check.message
    assert _stored(env) == []

    unknown = await env.tracker.test_credential("cohere", "whatever-key")
    assert unknown.valid is False
