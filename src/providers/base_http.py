import json
import logging
import os
from abc import abstractmethod
from typing import Any, Dict, List, Optional

import httpx

from .base import Completion, ProviderAdapter, ProviderError

logger = logging.getLogger(__name__)

DEFAULT_MAX_TOKENS = 1000
DEFAULT_TEMPERATURE = 0.7


def default_timeout() -> float:
    try:
        return float(os.getenv("PROVIDER_TIMEOUT_SECONDS", "30"))
    except ValueError:
        return 30.0


class HTTPProviderAdapter(ProviderAdapter):
    """Base adapter for JSON-over-HTTP completion APIs.

    Subclasses provide the display name, base_url and default model list, and
    implement the request/response mapping for their API. Every failure
    (HTTP status, transport, malformed body) is re-raised as ProviderError.
    """

    display_name: str = "Provider"
    default_models: List[str] = []

    def __init__(
        self,
        base_url: str,
        client: Optional[httpx.AsyncClient] = None,
        timeout: Optional[float] = None,
        models: Optional[List[str]] = None,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._timeout = timeout if timeout is not None else default_timeout()
        self._client = client
        self._owns_client = client is None
        self._models = list(models) if models else list(self.default_models)

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(base_url=self._base_url, timeout=self._timeout)
        return self._client

    async def aclose(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None

    async def models(self) -> List[Dict[str, Any]]:
        return [
            {"id": m, "name": m, "description": f"{self.display_name} {m}"}
            for m in self._models
        ]

    @abstractmethod
    def _request(self, credential: str, model: str, prompt: str, options: Dict[str, Any]) -> Dict[str, Any]:
        """Return kwargs for ``client.post``: url, headers, optional params and the JSON payload."""

    @abstractmethod
    def _parse(self, data: Dict[str, Any], model: str) -> Completion:
        """Map a successful response body to a Completion."""

    async def complete(
        self,
        credential: str,
        model: str,
        prompt: str,
        options: Optional[Dict[str, Any]] = None,
    ) -> Completion:
        client = self._get_client()
        req = self._request(credential, model, prompt, dict(options or {}))
        payload = req.pop("payload")

        try:
            resp = await client.post(content=json.dumps(payload), **req)
        except httpx.TimeoutException as e:
            logger.error("%s request timed out after %ss", self.name, self._timeout)
            raise ProviderError(self.name, f"request timed out: {e}") from e
        except httpx.HTTPError as e:
            logger.error("%s transport error: %s", self.name, e)
            raise ProviderError(self.name, f"network error: {e}") from e

        if resp.status_code >= 400:
            message = _error_message(resp)
            logger.error("%s API error (%s): %s", self.name, resp.status_code, message)
            raise ProviderError(self.name, message, status_code=resp.status_code)

        try:
            return self._parse(resp.json(), model)
        except (ValueError, KeyError, IndexError, TypeError, AttributeError) as e:
            logger.error("%s returned an unexpected response body: %s", self.name, e)
            raise ProviderError(self.name, f"malformed response: {e}", status_code=resp.status_code) from e


def generation_settings(options: Dict[str, Any]) -> Dict[str, Any]:
    """Options with the service defaults applied."""
    max_tokens = options.get("max_tokens")
    temperature = options.get("temperature")
    return {
        "max_tokens": int(max_tokens) if max_tokens is not None else DEFAULT_MAX_TOKENS,
        "temperature": float(temperature) if temperature is not None else DEFAULT_TEMPERATURE,
        "top_p": options.get("top_p"),
        "frequency_penalty": options.get("frequency_penalty"),
        "presence_penalty": options.get("presence_penalty"),
        "stop": options.get("stop"),
    }


def _error_message(resp: httpx.Response) -> str:
    # openai, anthropic and google all nest the message under "error"
    try:
        body = resp.json()
    except ValueError:
        body = None
    if isinstance(body, dict):
        err = body.get("error")
        if isinstance(err, dict) and err.get("message"):
            return str(err["message"])
        if isinstance(err, str) and err:
            return err
        if body.get("message"):
            return str(body["message"])
    text = resp.text.strip()
    return text or f"HTTP {resp.status_code}"
