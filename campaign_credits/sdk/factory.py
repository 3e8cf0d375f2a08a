"""
Provider registry.

Builds adapters from provider name and model, resolving API keys and
timeouts from configuration.
"""

import importlib
import logging
from typing import Dict, Mapping, Optional, Tuple

from campaign_credits.core.tasks import Capability

from .base import ProviderAdapter
from .errors import ProviderPermanentError, ProviderUnsupportedError

logger = logging.getLogger(__name__)

# Provider name -> adapter class path (imported on first use).
_PROVIDER_REGISTRY: Dict[str, str] = {
    "openai": "campaign_credits.sdk.openai_client.OpenAIAdapter",
    "gemini": "campaign_credits.sdk.gemini_client.GeminiAdapter",
}


def available_providers() -> Tuple[str, ...]:
    return tuple(sorted(_PROVIDER_REGISTRY))


def _import_class(class_path: str) -> type:
    module_path, class_name = class_path.rsplit(".", 1)
    module = importlib.import_module(module_path)
    return getattr(module, class_name)


def create_adapter(provider: str, model: str, settings=None) -> ProviderAdapter:
    """Instantiate the adapter for ``provider``.

    Args:
        provider: Provider identifier ("openai", "gemini")
        model: Model name
        settings: Optional ``ProviderConfig`` with key env var, timeout and image dir

    Returns:
        Configured adapter

    Raises:
        ProviderUnsupportedError: If the provider is not registered
        ProviderPermanentError: If the configured API key is not set
    """
    if provider not in _PROVIDER_REGISTRY:
        raise ProviderUnsupportedError(
            f"Unsupported provider: {provider!r}. "
            f"Available: {', '.join(available_providers())}",
            provider,
        )

    adapter_cls = _import_class(_PROVIDER_REGISTRY[provider])
    kwargs = {"model": model}

    if settings is not None:
        api_key = settings.api_key()
        if settings.api_key_env and not api_key:
            raise ProviderPermanentError(
                f"{adapter_cls.label or provider} API key is not configured. "
                f"Set the {settings.api_key_env} environment variable.",
                provider,
            )
        kwargs["api_key"] = api_key
        kwargs["timeout"] = settings.timeout_seconds
        if settings.image_dir and Capability.IMAGE in adapter_cls.capabilities:
            kwargs["image_dir"] = settings.image_dir

    logger.debug("Creating adapter: provider=%s, model=%s", provider, model)
    try:
        return adapter_cls(**kwargs)
    except ValueError as e:
        raise ProviderPermanentError(str(e), provider) from e


class ProviderRegistry:
    """Creates adapters on first use and reuses them per (provider, model)."""

    def __init__(self, settings: Optional[Mapping[str, object]] = None):
        self.settings = dict(settings or {})
        self._adapters: Dict[Tuple[str, str], ProviderAdapter] = {}

    def adapter_for(self, provider_id: str, model_id: str) -> ProviderAdapter:
        key = (provider_id, model_id)
        if key not in self._adapters:
            self._adapters[key] = create_adapter(
                provider_id, model_id, self.settings.get(provider_id)
            )
        return self._adapters[key]
