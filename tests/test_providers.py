"""Tests for model provider resolution."""

import pytest

from llm.client import AnthropicClient, GoogleClient, OpenAIClient
from llm.models import ModelProvider
from llm.providers import (
    ModelResolver,
    base_model_name,
    list_models,
    normalize_model_name,
    normalize_provider,
)


class TestModelResolver:

    def test_table_entry_overrides_provider_key(self, settings):
        handle = ModelResolver(settings).resolve("anthropic", "gpt-5-mini", "sk-test")

        assert handle.provider == ModelProvider.OPENAI
        assert handle.model == "gpt-5-mini"
        assert handle.options == {"reasoning_effort": "low"}
        assert isinstance(handle.client, OpenAIClient)
        assert handle.logical_name == "gpt-5-mini"

    def test_anthropic_alias(self, settings):
        handle = ModelResolver(settings).resolve("anthropic", "claude-sonnet-4-5", "sk-ant")

        assert handle.model == "claude-sonnet-4-5-20250929"
        assert isinstance(handle.client, AnthropicClient)
        assert handle.client.api_version == settings.ANTHROPIC_VERSION

    def test_google_models_are_prefixed(self, settings):
        handle = ModelResolver(settings).resolve("google", "gemini-2.5-flash", "g-key")

        assert handle.model == "models/gemini-2.5-flash"
        assert isinstance(handle.client, GoogleClient)

    def test_unknown_model_uses_provider_key(self, settings):
        handle = ModelResolver(settings).resolve("openai", "gpt-4-turbo", "sk-test")

        assert handle.provider == ModelProvider.OPENAI
        assert handle.model == "gpt-4-turbo"
        assert handle.options == {}

    def test_reasoning_variant_collapses_to_family(self, settings):
        handle = ModelResolver(settings).resolve("openai", "o3-mini-high", "sk-test")

        assert handle.model == "o3-mini"

    def test_unknown_provider(self, settings):
        with pytest.raises(ValueError):
            ModelResolver(settings).resolve("mistral", "mistral-large", "key")


class TestNormalization:

    def test_gemini_alias(self):
        assert normalize_provider("Gemini") == ModelProvider.GOOGLE

    @pytest.mark.parametrize("model,expected", [
        ("o4-mini-2025-04-16", "o4-mini"),
        ("o1-mini-preview", "o1-mini"),
        ("o3-mini", "o3-mini"),
        ("gpt-4o", "gpt-4o"),
    ])
    def test_reasoning_families(self, model, expected):
        assert normalize_model_name(model) == expected

    def test_base_model_name(self):
        assert base_model_name("models/gemini-2.5-pro") == "gemini-2.5-pro"
        assert base_model_name("claude-haiku-4-5-20251001") == "claude-haiku-4-5"


class TestListModels:

    def test_all_models(self):
        names = {model["name"] for model in list_models()}

        assert {"gpt-4o", "claude-opus-4-5", "gemini-2.5-pro"} <= names

    def test_filter_by_provider(self):
        models = list_models("anthropic")

        assert models
        assert all(model["provider"] == "anthropic" for model in models)
