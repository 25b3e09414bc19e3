from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional

from pydantic import BaseModel


class ProviderError(Exception):
    """Any failed provider call: bad credential, unknown model, rate limit, network."""

    def __init__(self, provider: str, message: str, status_code: Optional[int] = None) -> None:
        super().__init__(message)
        self.provider = provider
        self.message = message
        self.status_code = status_code

    def __str__(self) -> str:
        return f"{self.provider} API error: {self.message}"


class ProviderUsage(BaseModel):
    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0


class Completion(BaseModel):
    text: str
    finish_reason: Optional[str] = None
    model: Optional[str] = None
    usage: Optional[ProviderUsage] = None


class ProviderAdapter(ABC):
    """Abstract base class for provider adapters.

    One subclass per provider API. Adapters receive the caller's credential
    on every call and keep no per-caller state.
    """

    name: str = "provider"

    @abstractmethod
    async def models(self) -> List[Dict[str, Any]]:
        """Return known models, e.g. ``[{"id": "gpt-4", "name": "gpt-4", "description": "OpenAI gpt-4"}]``."""

    @abstractmethod
    async def complete(
        self,
        credential: str,
        model: str,
        prompt: str,
        options: Optional[Dict[str, Any]] = None,
    ) -> Completion:
        """Run a single-prompt completion and return it in normalized form.

        Raises ProviderError for every failure.
        """

    async def aclose(self) -> None:
        return None
