import logging
from typing import Any, Dict, List, Optional

import httpx

from .base import Completion, ProviderUsage
from .base_http import HTTPProviderAdapter, generation_settings

logger = logging.getLogger(__name__)

ANTHROPIC_VERSION = "2023-06-01"


class AnthropicAdapter(HTTPProviderAdapter):
    """Anthropic messages API (``POST /messages``, ``x-api-key`` auth)."""

    name = "anthropic"
    display_name = "Anthropic"
    default_models = ["claude-3-opus-20240229", "claude-3-sonnet-20240229", "claude-3-haiku-20240307"]

    def __init__(
        self,
        base_url: str = "https://api.anthropic.com/v1",
        client: Optional[httpx.AsyncClient] = None,
        timeout: Optional[float] = None,
        models: Optional[List[str]] = None,
    ) -> None:
        super().__init__(base_url=base_url, client=client, timeout=timeout, models=models)

    def _request(self, credential: str, model: str, prompt: str, options: Dict[str, Any]) -> Dict[str, Any]:
        gen = generation_settings(options)
        payload: Dict[str, Any] = {
            "model": model,
            "max_tokens": gen["max_tokens"],
            "temperature": gen["temperature"],
            "messages": [{"role": "user", "content": prompt}],
        }
        if gen["top_p"] is not None:
            payload["top_p"] = gen["top_p"]
        if gen["stop"] is not None:
            payload["stop_sequences"] = gen["stop"] if isinstance(gen["stop"], list) else [gen["stop"]]
        return {
            "url": "/messages",
            "headers": {
                "x-api-key": credential,
                "anthropic-version": ANTHROPIC_VERSION,
                "Content-Type": "application/json",
                "Accept": "application/json",
            },
            "payload": payload,
        }

    def _parse(self, data: Dict[str, Any], model: str) -> Completion:
        blocks = data["content"]
        text = "".join(b.get("text", "") for b in blocks if b.get("type", "text") == "text")
        usage = data.get("usage") or {}
        prompt_tokens = int(usage.get("input_tokens", 0) or 0)
        completion_tokens = int(usage.get("output_tokens", 0) or 0)
        return Completion(
            text=text,
            finish_reason=data.get("stop_reason"),
            model=data.get("model", model),
            usage=ProviderUsage(
                prompt_tokens=prompt_tokens,
                completion_tokens=completion_tokens,
                total_tokens=prompt_tokens + completion_tokens,
            )
            if usage
            else None,
        )
