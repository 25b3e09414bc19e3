import logging
import time
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

from gateway.schemas import CredentialCheck, TrackOptions, TrackRequest, TrackResult, UsageTotals
from metering.tokens import count_request_tokens, estimate_accuracy
from policy import PolicyContext, PolicyEngine, QualityClassifier
from providers.base import ProviderError
from state.models import UsageRecord, UsageStatus, utcnow
from state.pricing import PricingStore
from state.usage import StorageError, UsageStore

from .errors import PolicyDenial, RecordNotFound, ValidationError
from .notify import BackgroundPublisher, NotificationPort, NullNotifier
from .registry import ProviderRegistry

logger = logging.getLogger(__name__)

MAX_PROMPT_LENGTH = 50000
MAX_RETRY_COUNT = 5
CREDENTIAL_TEST_PROMPT = 'Hello, this is a test message. Please respond with "Test successful".'


class UsageTracker:
    """Runs one tracked completion end to end.

    validate -> policy pre-check -> price snapshot -> dispatch -> measure ->
    classify -> persist once -> notify -> respond. Denied and invalid
    requests leave no record; provider failures are recorded as ``failure``.
    """

    def __init__(
        self,
        registry: ProviderRegistry,
        usage: UsageStore,
        pricing: PricingStore,
        policy: PolicyEngine,
        notifier: Optional[NotificationPort] = None,
        classifier: Optional[QualityClassifier] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self._registry = registry
        self._usage = usage
        self._pricing = pricing
        self._policy = policy
        self._publisher = BackgroundPublisher(notifier or NullNotifier())
        self._classifier = classifier or QualityClassifier()
        self._clock = clock or utcnow

    @property
    def publisher(self) -> BackgroundPublisher:
        return self._publisher

    async def track(self, request: TrackRequest, context: Optional[Dict[str, Any]] = None) -> TrackResult:
        record = await self._receive(request, context or {})

        decision = await self._policy.evaluate(
            PolicyContext(
                provider=record.model_provider,
                model=record.model_name,
                prompt=record.prompt,
                user_id=record.user_id,
                team_id=record.team_id,
                options=request.options.generation(),
            )
        )
        if not decision.allowed:
            raise PolicyDenial(decision.reasons, decision.flags)
        record.safety_flags.update(decision.flags)

        pricing = await self._pricing.lookup(record.model_provider, record.model_name)
        if pricing is None:
            record.safety_flags["no_pricing_info"] = True
        else:
            record.cost_per_input_token = pricing.cost_per_input_token
            record.cost_per_output_token = pricing.cost_per_output_token

        await self._dispatch(record, request.credential or "", request.options.generation())

        try:
            await self._usage.insert(record)
        except StorageError:
            logger.exception(
                "Usage record %s (%s, cost %.6f) was not persisted",
                record.id,
                record.status.value,
                record.total_cost,
            )
            raise
        logger.info(
            "Tracked %s %s/%s: %d tokens, cost %.6f, %d ms",
            record.status.value,
            record.model_provider,
            record.model_name,
            record.total_tokens,
            record.total_cost,
            record.response_time_ms,
        )

        self._publisher.fire("usage_update", _public_payload(record))
        return _result(record)

    async def retry(self, record_id: str, credential: Optional[str], context: Optional[Dict[str, Any]] = None) -> TrackResult:
        """Re-run a stored request as a new tracked request referencing the original."""
        original = await self._usage.get(record_id)
        if original is None:
            raise RecordNotFound(record_id)
        request = TrackRequest(
            user_id=original.user_id,
            team_id=original.team_id,
            session_id=original.session_id,
            model_provider=original.model_provider,
            model_name=original.model_name,
            prompt=original.prompt,
            credential=credential,
            options=TrackOptions(**{**original.options, "retry_of": record_id}),
        )
        return await self.track(request, context)

    async def test_credential(self, provider: str, credential: str, model: Optional[str] = None) -> CredentialCheck:
        """One minimal completion to check a credential. Never recorded as usage."""
        adapter = self._registry.get_provider(provider)
        if adapter is None:
            return CredentialCheck(valid=False, message="Unsupported provider", provider=provider, model=model)
        if not model:
            models = await adapter.models()
            model = models[0]["id"] if models else None
        if not model:
            return CredentialCheck(valid=False, message="No model available to test", provider=provider)
        try:
            completion = await adapter.complete(credential, model, CREDENTIAL_TEST_PROMPT, {"max_tokens": 50})
        except ProviderError as e:
            return CredentialCheck(
                valid=False,
                message=f"API key test failed: {e.message}",
                provider=provider,
                model=model,
            )
        return CredentialCheck(
            valid=True,
            message="API key is valid",
            provider=provider,
            model=completion.model or model,
            response=completion.text,
        )

    async def _receive(self, request: TrackRequest, context: Dict[str, Any]) -> UsageRecord:
        missing = [
            name
            for name, value in (
                ("model_provider", request.model_provider),
                ("model_name", request.model_name),
                ("prompt", request.prompt),
                ("credential", request.credential),
            )
            if not value
        ]
        if missing:
            raise ValidationError(f"Missing required fields: {', '.join(missing)}", missing)

        provider = request.model_provider.lower()
        if self._registry.get_provider(provider) is None:
            supported = ", ".join(self._registry.names())
            raise ValidationError(
                f"Unsupported provider '{request.model_provider}'. Supported providers: {supported}",
                ["model_provider"],
            )
        if len(request.prompt) > MAX_PROMPT_LENGTH:
            raise ValidationError(f"Prompt exceeds {MAX_PROMPT_LENGTH} characters", ["prompt"])

        retry_of = request.options.retry_of
        retry_count = 0
        if retry_of:
            original = await self._usage.get(retry_of)
            if original is None:
                raise RecordNotFound(retry_of)
            if original.status == UsageStatus.SUCCESS:
                raise ValidationError("Cannot retry successful request", ["options.retry_of"])
            retry_count = original.retry_count + 1
            if retry_count > MAX_RETRY_COUNT:
                raise ValidationError(f"Retry limit of {MAX_RETRY_COUNT} reached", ["options.retry_of"])

        options = request.options.model_dump(exclude_none=True)
        metadata = {**context, **request.options.extras()}
        return UsageRecord(
            user_id=request.user_id,
            team_id=request.team_id,
            session_id=request.session_id,
            model_provider=provider,
            model_name=request.model_name,
            prompt=request.prompt,
            options=options,
            retry_count=retry_count,
            retry_of=retry_of,
            created_at=self._clock(),
            metadata=metadata,
        )

    async def _dispatch(self, record: UsageRecord, credential: str, generation: Dict[str, Any]) -> None:
        adapter = self._registry.get_provider(record.model_provider)
        started = time.perf_counter()
        try:
            completion = await adapter.complete(credential, record.model_name, record.prompt, generation)
        except ProviderError as e:
            elapsed = _elapsed_ms(started)
            logger.warning("Provider call failed for record %s: %s", record.id, e)
            record.mark_failure(str(e), elapsed)
            return
        elapsed = _elapsed_ms(started)

        counts = count_request_tokens(record.prompt, completion.text, record.model_provider)
        record.set_usage(counts["input_tokens"], counts["output_tokens"])

        record.metadata["actual_model"] = completion.model or record.model_name
        record.metadata["finish_reason"] = completion.finish_reason
        if completion.usage is not None:
            record.metadata["provider_usage"] = completion.usage.model_dump()
            record.metadata["estimate_accuracy"] = estimate_accuracy(
                counts["total_tokens"], completion.usage.total_tokens
            )

        flags: List[str] = self._classifier.classify(record.prompt, completion.text, completion.finish_reason)
        record.mark_success(completion.text, elapsed, flags)


def _elapsed_ms(started: float) -> int:
    return int((time.perf_counter() - started) * 1000)


def _result(record: UsageRecord) -> TrackResult:
    return TrackResult(
        id=record.id,
        response=record.response,
        error=record.error_message,
        usage=UsageTotals(
            input_tokens=record.input_tokens,
            output_tokens=record.output_tokens,
            total_tokens=record.total_tokens,
            cost=record.total_cost,
        ),
        status=record.status.value,
        response_time_ms=record.response_time_ms,
        safety_flags=record.safety_flags,
        retry_count=record.retry_count,
    )


def _public_payload(record: UsageRecord) -> Dict[str, Any]:
    return record.model_dump(mode="json")
