"""
BrandForge Stage Engine
Tests: AI provider abstraction.

Real providers are exercised with their SDK clients patched; nothing
here touches the network.
"""

import json
from unittest.mock import MagicMock, patch

import pytest

from brandforge.ai.providers import (
    AnthropicProvider,
    MockProvider,
    OpenAIProvider,
    ProviderRegistry,
)
from brandforge.core.exceptions import ProviderNotConfiguredError


MESSAGES = [
    {"role": "system", "content": "You are a strategist."},
    {"role": "user", "content": "Stage: naming\nGive me names."},
]


# ═══════════════════════════════════════════════════════════════════════════
#  Mock provider
# ═══════════════════════════════════════════════════════════════════════════

class TestMockProvider:
    """Deterministic offline provider."""

    def test_always_ready(self):
        assert MockProvider().check_status() == {"provider": "MOCK", "ready": True, "error": None}

    def test_naming_payload(self):
        result = MockProvider().complete(MESSAGES, model="mock")
        data = json.loads(result["content"])
        assert len(data["items"]) == 5
        assert result["model"] == "mock-v1"
        assert result["finish_reason"] == "stop"

    def test_usage_estimate(self):
        result = MockProvider().complete(MESSAGES)
        usage = result["usage"]
        assert usage["prompt_tokens"] > 0
        assert usage["completion_tokens"] > 0
        assert usage["total_tokens"] == usage["prompt_tokens"] + usage["completion_tokens"]

    def test_estimate_tokens(self):
        assert MockProvider.estimate_tokens("abcd") == 1
        assert MockProvider.estimate_tokens("abcde") == 2
        assert MockProvider.estimate_tokens("") == 0

    def test_venture_keywords_win_over_brand(self):
        msgs = [{"role": "user", "content": "Stage: venture_business_plan\nWrite it."}]
        data = json.loads(MockProvider().complete(msgs)["content"])
        assert "executive_summary" in data

    def test_unknown_stage_generic_payload(self):
        msgs = [{"role": "user", "content": "Stage: briefing"}]
        data = json.loads(MockProvider().complete(msgs)["content"])
        assert data["generated"] is True
        assert len(data["content"]) >= 20


# ═══════════════════════════════════════════════════════════════════════════
#  OpenAI provider
# ═══════════════════════════════════════════════════════════════════════════

class TestOpenAIProvider:
    """OpenAI chat completions through a patched client."""

    def test_not_configured(self):
        provider = OpenAIProvider(api_key="")
        assert provider.check_status()["ready"] is False
        with pytest.raises(ProviderNotConfiguredError) as exc:
            provider.complete(MESSAGES, model="gpt-4o")
        assert exc.value.provider == "OPENAI"
        assert "mock" in exc.value.user_message

    @patch("openai.OpenAI")
    def test_complete(self, mock_cls):
        response = MagicMock()
        response.model = "gpt-4o-2024-08-06"
        response.choices = [MagicMock()]
        response.choices[0].message.content = '{"items": []}'
        response.choices[0].finish_reason = "stop"
        response.usage.prompt_tokens = 120
        response.usage.completion_tokens = 80
        mock_cls.return_value.chat.completions.create.return_value = response

        result = OpenAIProvider(api_key="sk-test").complete(
            MESSAGES, model="gpt-4o", temperature=0.3, max_tokens=900,
        )

        mock_cls.assert_called_once_with(api_key="sk-test")
        kwargs = mock_cls.return_value.chat.completions.create.call_args.kwargs
        assert kwargs["model"] == "gpt-4o"
        assert kwargs["max_tokens"] == 900
        assert kwargs["temperature"] == 0.3
        assert kwargs["messages"] == MESSAGES
        assert result["content"] == '{"items": []}'
        assert result["model"] == "gpt-4o-2024-08-06"
        assert result["usage"] == {"prompt_tokens": 120, "completion_tokens": 80, "total_tokens": 200}

    @patch("openai.OpenAI")
    def test_no_choices(self, mock_cls):
        response = MagicMock()
        response.choices = []
        mock_cls.return_value.chat.completions.create.return_value = response
        with pytest.raises(RuntimeError):
            OpenAIProvider(api_key="sk-test").complete(MESSAGES, model="gpt-4o")


# ═══════════════════════════════════════════════════════════════════════════
#  Anthropic provider
# ═══════════════════════════════════════════════════════════════════════════

class TestAnthropicProvider:
    """Anthropic messages API through a patched client."""

    def test_not_configured(self):
        provider = AnthropicProvider(api_key="")
        assert provider.check_status() == {
            "provider": "ANTHROPIC", "ready": False, "error": "ANTHROPIC_API_KEY not configured",
        }
        with pytest.raises(ProviderNotConfiguredError):
            provider.complete(MESSAGES)

    @patch("anthropic.Anthropic")
    def test_complete_splits_system_message(self, mock_cls):
        block = MagicMock()
        block.type = "text"
        block.text = '{"items": [{"name": "Lumora"}]}'
        response = MagicMock()
        response.content = [block]
        response.model = "claude-3-5-haiku-20241022"
        response.stop_reason = "end_turn"
        response.usage.input_tokens = 50
        response.usage.output_tokens = 25
        mock_cls.return_value.messages.create.return_value = response

        result = AnthropicProvider(api_key="sk-ant").complete(
            MESSAGES, model="claude-3-5-haiku-latest", max_tokens=700,
        )

        kwargs = mock_cls.return_value.messages.create.call_args.kwargs
        assert kwargs["system"] == "You are a strategist."
        assert kwargs["messages"] == [MESSAGES[1]]
        assert kwargs["max_tokens"] == 700
        assert result["content"] == '{"items": [{"name": "Lumora"}]}'
        assert result["finish_reason"] == "end_turn"
        assert result["usage"]["total_tokens"] == 75


# ═══════════════════════════════════════════════════════════════════════════
#  Registry
# ═══════════════════════════════════════════════════════════════════════════

class TestProviderRegistry:
    """Construct-once cache."""

    def test_caches_instances(self):
        registry = ProviderRegistry({"OPENAI_API_KEY": "sk-x"})
        assert registry.get("openai") is registry.get("OPENAI")
        assert registry.get("OPENAI").api_key == "sk-x"

    def test_unknown_type(self):
        with pytest.raises(ValueError):
            ProviderRegistry().get("gemini")

    def test_status_and_ready(self):
        registry = ProviderRegistry({"OPENAI_API_KEY": "", "ANTHROPIC_API_KEY": "sk-ant"})
        assert registry.ready_providers() == {"ANTHROPIC", "MOCK"}
        assert len(registry.status()) == 3

    def test_register_and_reset(self):
        registry = ProviderRegistry({})
        custom = MockProvider()
        registry.register(custom)
        assert registry.get("MOCK") is custom
        registry.reset()
        assert registry.get("MOCK") is not custom
