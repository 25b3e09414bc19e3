import logging
import os
from typing import Any, Dict, List, Optional

import yaml

from providers.base import ProviderAdapter

logger = logging.getLogger(__name__)


class ProviderRegistry:
    """Registry for provider adapters.

    - Holds instantiated adapters keyed by provider.name
    - On init, registers the built-in adapters (openai, anthropic, google);
      credentials come with each request, so no API keys are required here
    """

    def __init__(
        self,
        auto_register: bool = True,
        timeout: Optional[float] = None,
    ) -> None:
        self._providers: Dict[str, ProviderAdapter] = {}
        if auto_register:
            self._auto_register(timeout=timeout)

    def register_provider(self, provider: ProviderAdapter) -> None:
        self._providers[provider.name] = provider
        logger.info("Registered provider: %s", provider.name)

    def get_providers(self) -> List[ProviderAdapter]:
        return list(self._providers.values())

    def get_provider(self, name: Optional[str]) -> Optional[ProviderAdapter]:
        if not name:
            return None
        return self._providers.get(name.lower())

    def names(self) -> List[str]:
        return list(self._providers)

    async def aclose(self) -> None:
        for provider in self._providers.values():
            try:
                await provider.aclose()
            except Exception as e:  # pragma: no cover
                logger.warning("Failed to close provider %s: %s", provider.name, e)

    def _auto_register(self, timeout: Optional[float]) -> None:
        from providers.anthropic import AnthropicAdapter
        from providers.google import GoogleAdapter
        from providers.openai import OpenAIAdapter

        models_cfg = self._load_provider_models()
        for adapter_cls in (OpenAIAdapter, AnthropicAdapter, GoogleAdapter):
            models = (models_cfg.get(adapter_cls.name) or {}).get("models")
            self.register_provider(adapter_cls(timeout=timeout, models=models))

    def _load_provider_models(self) -> Dict[str, Any]:
        path = os.getenv(
            "PROVIDER_MODELS_PATH",
            os.path.join(os.path.dirname(os.path.dirname(os.path.dirname(__file__))), "config", "provider_models.yaml"),
        )
        try:
            with open(path, "r", encoding="utf-8") as f:
                return yaml.safe_load(f) or {}
        except FileNotFoundError:
            logger.info("Provider models config not found at %s; using built-in model lists", path)
            return {}
        except Exception as e:
            logger.warning("Failed to load provider models config: %s", e)
            return {}
