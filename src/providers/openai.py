import logging
from typing import Any, Dict, List, Optional

import httpx

from .base import Completion, ProviderUsage
from .base_http import HTTPProviderAdapter, generation_settings

logger = logging.getLogger(__name__)


class OpenAIAdapter(HTTPProviderAdapter):
    """OpenAI chat completions (``POST /chat/completions``, bearer auth)."""

    name = "openai"
    display_name = "OpenAI"
    default_models = ["gpt-4", "gpt-4-turbo", "gpt-3.5-turbo", "gpt-4-1106-preview"]

    def __init__(
        self,
        base_url: str = "https://api.openai.com/v1",
        client: Optional[httpx.AsyncClient] = None,
        timeout: Optional[float] = None,
        models: Optional[List[str]] = None,
    ) -> None:
        super().__init__(base_url=base_url, client=client, timeout=timeout, models=models)

    def _request(self, credential: str, model: str, prompt: str, options: Dict[str, Any]) -> Dict[str, Any]:
        gen = generation_settings(options)
        payload: Dict[str, Any] = {
            "model": model,
            "messages": [{"role": "user", "content": prompt}],
            "max_tokens": gen["max_tokens"],
            "temperature": gen["temperature"],
        }
        for key in ("top_p", "frequency_penalty", "presence_penalty", "stop"):
            if gen[key] is not None:
                payload[key] = gen[key]
        return {
            "url": "/chat/completions",
            "headers": {
                "Authorization": f"Bearer {credential}",
                "Content-Type": "application/json",
                "Accept": "application/json",
            },
            "payload": payload,
        }

    def _parse(self, data: Dict[str, Any], model: str) -> Completion:
        choice = data["choices"][0]
        usage = data.get("usage") or {}
        return Completion(
            text=choice["message"].get("content") or "",
            finish_reason=choice.get("finish_reason"),
            model=data.get("model", model),
            usage=ProviderUsage(
                prompt_tokens=int(usage.get("prompt_tokens", 0) or 0),
                completion_tokens=int(usage.get("completion_tokens", 0) or 0),
                total_tokens=int(usage.get("total_tokens", 0) or 0),
            )
            if usage
            else None,
        )
