import logging
from typing import Any, Dict, List, Optional

import httpx

from .base import Completion, ProviderUsage
from .base_http import HTTPProviderAdapter, generation_settings

logger = logging.getLogger(__name__)


class GoogleAdapter(HTTPProviderAdapter):
    """Google Generative Language API (``POST /models/{model}:generateContent``).

    The credential travels as the ``key`` query parameter.
    """

    name = "google"
    display_name = "Google"
    default_models = ["gemini-pro", "gemini-pro-vision"]

    def __init__(
        self,
        base_url: str = "https://generativelanguage.googleapis.com/v1beta",
        client: Optional[httpx.AsyncClient] = None,
        timeout: Optional[float] = None,
        models: Optional[List[str]] = None,
    ) -> None:
        super().__init__(base_url=base_url, client=client, timeout=timeout, models=models)

    def _request(self, credential: str, model: str, prompt: str, options: Dict[str, Any]) -> Dict[str, Any]:
        gen = generation_settings(options)
        config: Dict[str, Any] = {
            "maxOutputTokens": gen["max_tokens"],
            "temperature": gen["temperature"],
        }
        if gen["top_p"] is not None:
            config["topP"] = gen["top_p"]
        if gen["stop"] is not None:
            config["stopSequences"] = gen["stop"] if isinstance(gen["stop"], list) else [gen["stop"]]
        return {
            "url": f"/models/{model}:generateContent",
            "params": {"key": credential},
            "headers": {"Content-Type": "application/json", "Accept": "application/json"},
            "payload": {
                "contents": [{"parts": [{"text": prompt}]}],
                "generationConfig": config,
            },
        }

    def _parse(self, data: Dict[str, Any], model: str) -> Completion:
        candidate = data["candidates"][0]
        parts = (candidate.get("content") or {}).get("parts") or []
        usage = data.get("usageMetadata") or {}
        return Completion(
            text="".join(p.get("text", "") for p in parts),
            finish_reason=candidate.get("finishReason"),
            model=model,
            usage=ProviderUsage(
                prompt_tokens=int(usage.get("promptTokenCount", 0) or 0),
                completion_tokens=int(usage.get("candidatesTokenCount", 0) or 0),
                total_tokens=int(usage.get("totalTokenCount", 0) or 0),
            )
            if usage
            else None,
        )
