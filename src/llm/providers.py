"""Model provider resolution.

Agents store a (provider key, model identifier) pair. The identifier is
usually a logical name from MODEL_CONFIGS, which records the concrete
provider and vendor model string; operators can retarget a logical name
without touching agent configuration.
"""

import logging
import re
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional

import httpx

from core.config import Settings, get_settings
from .client import AnthropicClient, GoogleClient, OpenAIClient, ProviderClient
from .models import ModelProvider

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ModelConfig:
    provider: ModelProvider
    base_model: str
    options: Dict[str, Any] = field(default_factory=dict)


_GPT5_OPTIONS = {"reasoning_effort": "low"}
_O_SERIES_OPTIONS = {"reasoning_effort": "medium"}

MODEL_CONFIGS: Dict[str, ModelConfig] = {
    # OpenAI
    "gpt-5.2": ModelConfig(ModelProvider.OPENAI, "gpt-5.2", _GPT5_OPTIONS),
    "gpt-5.2-pro": ModelConfig(ModelProvider.OPENAI, "gpt-5.2-pro", _GPT5_OPTIONS),
    "gpt-5.1": ModelConfig(ModelProvider.OPENAI, "gpt-5.1", _GPT5_OPTIONS),
    "gpt-5": ModelConfig(ModelProvider.OPENAI, "gpt-5", _GPT5_OPTIONS),
    "gpt-5-mini": ModelConfig(ModelProvider.OPENAI, "gpt-5-mini", _GPT5_OPTIONS),
    "gpt-5-nano": ModelConfig(ModelProvider.OPENAI, "gpt-5-nano", _GPT5_OPTIONS),
    "o3": ModelConfig(ModelProvider.OPENAI, "o3", _O_SERIES_OPTIONS),
    "o3-pro": ModelConfig(ModelProvider.OPENAI, "o3-pro", _O_SERIES_OPTIONS),
    "o4-mini": ModelConfig(ModelProvider.OPENAI, "o4-mini", _O_SERIES_OPTIONS),
    "o3-mini": ModelConfig(ModelProvider.OPENAI, "o3-mini", _O_SERIES_OPTIONS),
    "gpt-4.1": ModelConfig(ModelProvider.OPENAI, "gpt-4.1"),
    "gpt-4.1-mini": ModelConfig(ModelProvider.OPENAI, "gpt-4.1-mini"),
    "gpt-4.1-nano": ModelConfig(ModelProvider.OPENAI, "gpt-4.1-nano"),
    "gpt-4o": ModelConfig(ModelProvider.OPENAI, "gpt-4o"),
    "gpt-4o-mini": ModelConfig(ModelProvider.OPENAI, "gpt-4o-mini"),
    # Google
    "gemini-3-pro-preview": ModelConfig(ModelProvider.GOOGLE, "gemini-3-pro-preview"),
    "gemini-3-flash-preview": ModelConfig(ModelProvider.GOOGLE, "gemini-3-flash-preview"),
    "gemini-2.5-pro": ModelConfig(ModelProvider.GOOGLE, "gemini-2.5-pro"),
    "gemini-2.5-flash": ModelConfig(ModelProvider.GOOGLE, "gemini-2.5-flash"),
    "gemini-2.5-flash-lite": ModelConfig(ModelProvider.GOOGLE, "gemini-2.5-flash-lite"),
    # Anthropic
    "claude-opus-4-5": ModelConfig(ModelProvider.ANTHROPIC, "claude-opus-4-5-20251101"),
    "claude-sonnet-4-5": ModelConfig(ModelProvider.ANTHROPIC, "claude-sonnet-4-5-20250929"),
    "claude-haiku-4-5": ModelConfig(ModelProvider.ANTHROPIC, "claude-haiku-4-5-20251001"),
    "claude-sonnet-4-0": ModelConfig(ModelProvider.ANTHROPIC, "claude-sonnet-4-20250514"),
}

# Unrecognized variants of a reasoning family collapse to the family name
REASONING_FAMILIES = ("o3-mini", "o4-mini", "o1-mini")

_PROVIDER_ALIASES = {
    "openai": ModelProvider.OPENAI,
    "anthropic": ModelProvider.ANTHROPIC,
    "google": ModelProvider.GOOGLE,
    "gemini": ModelProvider.GOOGLE,
}


def normalize_provider(provider_key: str) -> ModelProvider:
    """Map a stored provider key to a ModelProvider."""
    try:
        return _PROVIDER_ALIASES[(provider_key or "").lower()]
    except KeyError:
        raise ValueError(f"Unsupported model provider: {provider_key}")


def normalize_model_name(model: str) -> str:
    for family in REASONING_FAMILIES:
        if model.startswith(f"{family}-"):
            return family
    return model


def vendor_model_name(provider: ModelProvider, model: str) -> str:
    """Vendor-facing model string; Gemini addresses models as `models/<name>`."""
    if provider == ModelProvider.GOOGLE and not model.startswith("models/"):
        return f"models/{model}"
    return model


@dataclass
class ModelHandle:
    """A concrete, callable model binding."""
    provider: ModelProvider
    model: str
    options: Dict[str, Any]
    client: ProviderClient
    logical_name: Optional[str] = None


class ModelResolver:
    """Resolve (provider key, model identifier, credential) to a ModelHandle."""

    def __init__(
        self,
        settings: Optional[Settings] = None,
        transport_factory: Optional[Callable[[], httpx.AsyncBaseTransport]] = None,
    ):
        self.settings = settings or get_settings()
        self._transport_factory = transport_factory

    def lookup(self, provider_key: str, model_identifier: str) -> ModelConfig:
        config = MODEL_CONFIGS.get(model_identifier)
        if config:
            return config
        provider = normalize_provider(provider_key)
        return ModelConfig(provider, normalize_model_name(model_identifier))

    def resolve(self, provider_key: str, model_identifier: str, credential: str) -> ModelHandle:
        config = self.lookup(provider_key, model_identifier)
        model = vendor_model_name(config.provider, config.base_model)
        if model_identifier not in MODEL_CONFIGS:
            logger.debug(f"Model {model_identifier} not in config table, using {config.provider.value}/{model}")

        return ModelHandle(
            provider=config.provider,
            model=model,
            options=dict(config.options),
            client=self._build_client(config.provider, model, credential, config.options),
            logical_name=model_identifier,
        )

    def _build_client(
        self, provider: ModelProvider, model: str, credential: str, options: Dict[str, Any]
    ) -> ProviderClient:
        transport = self._transport_factory() if self._transport_factory else None
        timeout = self.settings.PROVIDER_HTTP_TIMEOUT_SECONDS

        if provider == ModelProvider.OPENAI:
            return OpenAIClient(credential, model, self.settings.OPENAI_BASE_URL, options, timeout, transport)
        if provider == ModelProvider.ANTHROPIC:
            return AnthropicClient(
                credential, model, self.settings.ANTHROPIC_BASE_URL, options, timeout, transport,
                api_version=self.settings.ANTHROPIC_VERSION,
            )
        return GoogleClient(credential, model, self.settings.GOOGLE_BASE_URL, options, timeout, transport)


def list_models(provider: Optional[str] = None) -> List[Dict[str, Any]]:
    """Describe the logical models available for agent configuration."""
    wanted = normalize_provider(provider) if provider else None
    models = []
    for name, config in MODEL_CONFIGS.items():
        if wanted and config.provider != wanted:
            continue
        models.append({
            "name": name,
            "provider": config.provider.value,
            "model": config.base_model,
            "options": dict(config.options),
        })
    return models


_DATE_SUFFIX = re.compile(r"-\d{8}$")


def base_model_name(model: str) -> str:
    """Strip vendor decorations (`models/` prefix, date suffix) from a model string."""
    if model.startswith("models/"):
        model = model[len("models/"):]
    return _DATE_SUFFIX.sub("", model)
