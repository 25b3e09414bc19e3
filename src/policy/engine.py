import logging
import re
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional

from pydantic import ValidationError

from metering.tokens import estimate_tokens
from state.filters import SafetyFilterStore
from state.models import (
    ContentRules,
    CostRules,
    FilterType,
    ModelRules,
    RateRules,
    SafetyFilter,
    utcnow,
)
from state.pricing import PricingStore
from state.usage import UsageStore

logger = logging.getLogger(__name__)

_PII_PATTERNS = [
    re.compile(r"\b\d{3}-\d{2}-\d{4}\b"),  # SSN
    re.compile(r"\b\d{4}[\s-]?\d{4}[\s-]?\d{4}[\s-]?\d{4}\b"),  # credit card
    re.compile(r"\b[A-Za-z0-9._%+-]+@[A-Za-z0-9.-]+\.[A-Za-z]{2,}\b"),  # email
    re.compile(r"\b\d{3}-\d{3}-\d{4}\b"),  # phone
]


@dataclass
class PolicyContext:
    provider: str
    model: str
    prompt: str
    user_id: Optional[str] = None
    team_id: Optional[str] = None
    options: Dict[str, Any] = field(default_factory=dict)


@dataclass
class PolicyDecision:
    allowed: bool = True
    reasons: List[Dict[str, str]] = field(default_factory=list)
    flags: Dict[str, Any] = field(default_factory=dict)


@dataclass
class FilterOutcome:
    denials: List[str] = field(default_factory=list)
    flags: Dict[str, Any] = field(default_factory=dict)

    def deny(self, reason: str, flag: str, value: Any = True) -> None:
        self.denials.append(reason)
        self.flags[flag] = value


class PolicyEngine:
    """Evaluates every active safety filter against a request.

    Evaluation never stops at the first denial, so a blocked request still
    carries the flags of all filters. A filter that cannot be parsed or
    evaluated is skipped with an error flag rather than denying the request.
    """

    def __init__(
        self,
        filters: SafetyFilterStore,
        usage: UsageStore,
        pricing: PricingStore,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self._filters = filters
        self._usage = usage
        self._pricing = pricing
        self._clock = clock or utcnow
        self._handlers = {
            FilterType.CONTENT: self._apply_content,
            FilterType.COST: self._apply_cost,
            FilterType.RATE: self._apply_rate,
            FilterType.MODEL: self._apply_model,
        }

    async def evaluate(self, ctx: PolicyContext) -> PolicyDecision:
        decision = PolicyDecision()
        try:
            docs = await self._filters.active_documents()
        except Exception as e:
            logger.error("Error loading safety filters: %s", e)
            decision.flags["error"] = "Safety filter check failed"
            return decision

        for doc in docs:
            name = str(doc.get("name") or doc.get("_id"))
            try:
                sf = SafetyFilter.from_document(doc)
            except ValidationError as e:
                logger.warning("Skipping safety filter %s with invalid rules: %s", name, e)
                decision.flags[name] = {"filter_error": "invalid rules"}
                continue

            outcome = await self._handlers[sf.filter_type](sf.rules, ctx)
            if outcome.flags:
                decision.flags[sf.name] = outcome.flags
            if outcome.denials and sf.rules.action == "block":
                decision.allowed = False
                decision.reasons.extend({"filter": sf.name, "reason": r} for r in outcome.denials)

        if not decision.allowed:
            logger.info(
                "Request denied for user=%s team=%s: %s",
                ctx.user_id,
                ctx.team_id,
                "; ".join(r["reason"] for r in decision.reasons),
            )
        return decision

    async def _apply_content(self, rules: ContentRules, ctx: PolicyContext) -> FilterOutcome:
        outcome = FilterOutcome()
        prompt_lower = ctx.prompt.lower()

        for word in rules.blocked_keywords:
            if word and word.lower() in prompt_lower:
                outcome.deny(f"Contains blocked keyword: {word.lower()}", "blocked_keyword", word.lower())
                break

        if rules.max_prompt_length is not None and len(ctx.prompt) > rules.max_prompt_length:
            outcome.deny(f"Prompt too long: {len(ctx.prompt)} > {rules.max_prompt_length}", "prompt_too_long")

        if rules.check_pii and any(p.search(ctx.prompt) for p in _PII_PATTERNS):
            outcome.flags["potential_pii"] = True
            if rules.block_pii:
                outcome.denials.append("Contains potential PII")
        return outcome

    async def _apply_cost(self, rules: CostRules, ctx: PolicyContext) -> FilterOutcome:
        outcome = FilterOutcome()
        try:
            pricing = await self._pricing.lookup(ctx.provider, ctx.model)
            if pricing is None:
                outcome.flags["no_pricing_info"] = True
                return outcome

            estimated_input = estimate_tokens(ctx.prompt, ctx.provider)
            projected_output = int(ctx.options.get("max_tokens") or 0)
            estimated_cost = (
                estimated_input * pricing.cost_per_input_token
                + projected_output * pricing.cost_per_output_token
            )

            if rules.max_cost_per_call is not None and estimated_cost > rules.max_cost_per_call:
                outcome.deny(
                    f"Estimated cost too high: ${estimated_cost:.6f} > ${rules.max_cost_per_call}",
                    "cost_too_high",
                )

            if rules.daily_spending_limit is not None:
                since = self._usage.day_start(self._clock())
                spent = await self._usage.cost_since(ctx.user_id, ctx.team_id, since)
                if spent + estimated_cost > rules.daily_spending_limit:
                    outcome.deny(
                        f"Daily spending limit exceeded: ${spent:.6f} + ${estimated_cost:.6f} > ${rules.daily_spending_limit}",
                        "daily_limit_exceeded",
                    )

            outcome.flags["estimated_cost"] = estimated_cost
        except Exception as e:
            logger.error("Error applying cost filter: %s", e)
            outcome.denials.clear()
            outcome.flags["cost_filter_error"] = True
        return outcome

    async def _apply_rate(self, rules: RateRules, ctx: PolicyContext) -> FilterOutcome:
        outcome = FilterOutcome()
        now = self._clock()
        windows = [
            (rules.max_calls_per_minute, now - timedelta(minutes=1), "rate_limit_exceeded", "calls per minute"),
            (rules.max_calls_per_hour, now - timedelta(hours=1), "hourly_limit_exceeded", "calls per hour"),
            (rules.max_calls_per_day, None, "daily_limit_exceeded", "calls per day"),
        ]
        try:
            for limit, since, flag, label in windows:
                if limit is None:
                    continue
                if since is None:
                    since = self._usage.day_start(now)
                calls = await self._usage.count_since(ctx.user_id, ctx.team_id, since)
                if calls >= limit:
                    outcome.deny(f"Rate limit exceeded: {calls} {label} (limit {limit})", flag)
        except Exception as e:
            logger.error("Error applying rate filter: %s", e)
            outcome.denials.clear()
            outcome.flags["rate_filter_error"] = True
        return outcome

    async def _apply_model(self, rules: ModelRules, ctx: PolicyContext) -> FilterOutcome:
        outcome = FilterOutcome()
        key = f"{ctx.provider}/{ctx.model}"
        if rules.allowed_models and key not in rules.allowed_models:
            outcome.deny(f"Model not allowed: {key}", "model_not_allowed")
        if key in rules.blocked_models:
            outcome.deny(f"Model blocked: {key}", "model_blocked")
        return outcome
