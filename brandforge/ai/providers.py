"""
BrandForge Stage Engine
AI Provider Abstraction.

Uniform completion interface over:
    - OpenAIProvider      (openai SDK)
    - AnthropicProvider   (anthropic SDK)
    - MockProvider        (deterministic, offline, no key required)

Providers check credential presence only (no network call) in
check_status(), and fail fast with ProviderNotConfiguredError from
complete() when the key is missing.

The ProviderRegistry is built once per application (see
brandforge.create_app) and caches one instance per provider type.

Usage:
    registry = ProviderRegistry(app.config)
    provider = registry.get("OPENAI")
    result = provider.complete(messages, model="gpt-4o", max_tokens=1500)
"""

import json
import logging
import math
import os
from abc import ABC, abstractmethod

from brandforge.core.exceptions import ProviderNotConfiguredError

logger = logging.getLogger(__name__)


def _usage(prompt_tokens: int, completion_tokens: int) -> dict:
    return {
        "prompt_tokens": prompt_tokens,
        "completion_tokens": completion_tokens,
        "total_tokens": prompt_tokens + completion_tokens,
    }


# ── Provider Abstract Base ────────────────────────────────────────────────────

class AIProvider(ABC):
    """Abstract interface for completion backends."""

    type: str = ""

    @abstractmethod
    def check_status(self) -> dict:
        """
        Report readiness without calling the network.

        Returns:
            {"provider": str, "ready": bool, "error": str|None}
        """
        ...

    @abstractmethod
    def complete(self, messages: list, model: str, **kwargs) -> dict:
        """
        Send a chat completion request.

        Args:
            messages: List of {"role": "...", "content": "..."} dicts.
            model: Model identifier string.
            **kwargs: temperature, max_tokens.

        Returns:
            dict with keys: content, model, usage{prompt_tokens,
            completion_tokens, total_tokens}, finish_reason
        """
        ...


# ── Anthropic Provider ────────────────────────────────────────────────────────

class AnthropicProvider(AIProvider):
    """Claude API (Anthropic) provider."""

    type = "ANTHROPIC"

    def __init__(self, api_key: str | None = None):
        self.api_key = api_key if api_key is not None else os.getenv("ANTHROPIC_API_KEY", "")
        self._client = None

    def _get_client(self):
        if self._client is None:
            import anthropic
            self._client = anthropic.Anthropic(api_key=self.api_key)
        return self._client

    def check_status(self) -> dict:
        if not self.api_key:
            return {"provider": self.type, "ready": False,
                    "error": "ANTHROPIC_API_KEY not configured"}
        return {"provider": self.type, "ready": True, "error": None}

    def complete(self, messages: list, model: str = "claude-3-5-haiku-latest", **kwargs) -> dict:
        if not self.api_key:
            raise ProviderNotConfiguredError(self.type, "ANTHROPIC_API_KEY not configured")
        client = self._get_client()

        # Separate system message
        system_msg = ""
        chat_messages = []
        for m in messages:
            if m["role"] == "system":
                system_msg = f"{system_msg}\n\n{m['content']}" if system_msg else m["content"]
            else:
                chat_messages.append({"role": m["role"], "content": m["content"]})

        params = {
            "model": model,
            "messages": chat_messages,
            "max_tokens": kwargs.get("max_tokens", 2048),
            "temperature": kwargs.get("temperature", 0.7),
        }
        if system_msg:
            params["system"] = system_msg

        response = client.messages.create(**params)

        text = "".join(
            block.text for block in response.content if getattr(block, "type", "text") == "text"
        )
        return {
            "content": text,
            "model": getattr(response, "model", None) or model,
            "usage": _usage(response.usage.input_tokens, response.usage.output_tokens),
            "finish_reason": response.stop_reason,
        }


# ── OpenAI Provider ───────────────────────────────────────────────────────────

class OpenAIProvider(AIProvider):
    """OpenAI chat completions provider."""

    type = "OPENAI"

    def __init__(self, api_key: str | None = None):
        self.api_key = api_key if api_key is not None else os.getenv("OPENAI_API_KEY", "")
        self._client = None

    def _get_client(self):
        if self._client is None:
            import openai
            self._client = openai.OpenAI(api_key=self.api_key)
        return self._client

    def check_status(self) -> dict:
        if not self.api_key:
            return {"provider": self.type, "ready": False,
                    "error": "OPENAI_API_KEY not configured"}
        return {"provider": self.type, "ready": True, "error": None}

    def complete(self, messages: list, model: str = "gpt-4o-mini", **kwargs) -> dict:
        if not self.api_key:
            raise ProviderNotConfiguredError(self.type, "OPENAI_API_KEY not configured")
        client = self._get_client()
        response = client.chat.completions.create(
            model=model,
            messages=messages,
            max_tokens=kwargs.get("max_tokens", 2048),
            temperature=kwargs.get("temperature", 0.7),
        )
        if not response.choices:
            raise RuntimeError("No completion returned from OpenAI")
        choice = response.choices[0]
        return {
            "content": choice.message.content or "",
            "model": getattr(response, "model", None) or model,
            "usage": _usage(response.usage.prompt_tokens, response.usage.completion_tokens),
            "finish_reason": choice.finish_reason,
        }


# ── Mock Provider (for dev/test without API keys) ─────────────────────────────

class MockProvider(AIProvider):
    """
    Deterministic offline provider.

    Keyword-matches the prompt to a canned JSON payload that satisfies the
    matching stage schema. No API key required.
    """

    type = "MOCK"
    MODEL = "mock-v1"

    def check_status(self) -> dict:
        return {"provider": self.type, "ready": True, "error": None}

    def complete(self, messages: list, model: str = "mock", **kwargs) -> dict:
        prompt = "\n".join(m["content"] for m in messages)
        content = self._generate_response(prompt)
        prompt_tokens = self.estimate_tokens(prompt)
        completion_tokens = self.estimate_tokens(content)
        return {
            "content": content,
            "model": self.MODEL,
            "usage": _usage(prompt_tokens, completion_tokens),
            "finish_reason": "stop",
        }

    @staticmethod
    def estimate_tokens(text: str) -> int:
        # ~4 chars per token
        return math.ceil(len(text) / 4)

    @staticmethod
    def _generate_response(prompt: str) -> str:
        lower = prompt.lower()

        for keyword, payload in _MOCK_RESPONSES:
            if keyword in lower:
                return json.dumps(payload, ensure_ascii=False)

        return json.dumps({
            "title": "Generated content",
            "content": "Offline mock response used while no AI provider is configured.",
            "generated": True,
        })


# Ordered: the first keyword found in the prompt wins
_MOCK_RESPONSES = [
    ("stage: venture_business_plan", {
        "executive_summary": "A subscription workspace that turns brand strategy into a guided workflow.",
        "problem": "Small teams cannot afford agencies and lose months on unstructured brand work.",
        "solution": "Stage-by-stage AI drafts with human approval and versioned history.",
        "market": "Early-stage founders and boutique studios in English-speaking markets.",
        "business_model": "Tiered monthly plans with purchasable token packs.",
        "go_to_market": "Founder communities, accelerator partnerships and content marketing.",
        "operations": "Lean team of four, cloud infrastructure, usage-based AI costs.",
        "financials": "Break-even at 900 paying workspaces on the mid plan.",
        "milestones": ["Private beta", "Public launch", "Agency tier"],
        "risks": ["AI cost volatility", "Low switching costs"],
    }),
    ("stage: venture_buyer_persona", {
        "personas": [
            {
                "name": "Founder Fiona",
                "role": "First-time founder",
                "goals": ["Launch with a credible brand"],
                "pains": ["No budget for an agency"],
                "behaviors": ["Researches tools on founder forums"],
                "motivations": ["Look established from day one"],
            },
        ],
        "notes": "Single primary persona for the first launch.",
    }),
    ("stage: venture_idea_validation", {
        "summary": "Clear pain point with paying demand among early-stage founders.",
        "market_size": {"tam": "$4B", "sam": "$600M", "som": "$12M"},
        "competition": ["Generic AI writers", "Freelance strategists"],
        "risks": ["Commoditised AI output"],
        "assumptions": ["Founders will pay monthly for guidance"],
        "recommendation": "Proceed with a focused beta.",
        "viability_score": 72,
    }),
    ("stage: venture_intake", {
        "business_idea": "Guided AI brand strategy workspace for early-stage founders.",
        "target_market": {
            "segment": "Early-stage founders",
            "geography": "North America and Europe",
            "demographics": "25-45, technical or product background",
            "psychographics": "Pragmatic, time-poor, quality-conscious",
            "pain_points": ["Agencies are expensive"],
            "needs": ["A credible brand quickly"],
        },
        "product_service": {
            "name": "BrandForge",
            "description": "Stage-based brand strategy with AI drafts and approvals.",
            "differentiation": "Versioned, approvable outputs instead of one-off chats.",
        },
        "pricing_model": {"type": "subscription", "price_range": "$29-$199 per month"},
        "competitive_advantage": "Structured pipeline with budget control.",
        "channels": ["Founder communities", "Accelerators"],
    }),
    ("stage: naming", {
        "items": [
            {"name": "Lumora", "rationale": "Evokes light and clarity.",
             "domainHints": ["lumora.com", "getlumora.io"]},
            {"name": "Brandwell", "rationale": "A source brands draw from.",
             "domainHints": ["brandwell.co"]},
            {"name": "Northmark", "rationale": "A fixed point for direction.",
             "domainHints": ["northmark.io"]},
            {"name": "Kindling", "rationale": "Small spark that starts a fire.",
             "domainHints": ["kindling.app"]},
            {"name": "Vantage", "rationale": "A clear view from a high position.",
             "domainHints": ["vantagebrand.com"]},
        ],
        "notes": "Five options balancing abstract and descriptive names.",
    }),
    ("stage: manifesto", {
        "manifesto": "We believe every idea deserves a voice that carries it further than "
                     "its founders could alone. We build with clarity, care and courage.",
        "principles": ["Clarity over cleverness", "Craft every detail", "Earn trust daily"],
        "values": ["Authenticity", "Innovation", "Connection"],
        "notes": "Tone: confident and warm.",
    }),
    ("stage: voice", {
        "tone": "Warm, direct and quietly confident.",
        "personality": ["Helpful", "Grounded", "Optimistic"],
        "dos": ["Use plain words", "Lead with the benefit", "Speak to one person"],
        "donts": ["Use jargon", "Overpromise", "Shout with exclamation marks"],
        "examples": [
            {"context": "Welcome email", "good": "Glad you're here. Let's build.",
             "bad": "WELCOME TO THE FUTURE OF BRANDING!!!"},
        ],
    }),
    ("stage: tagline", {
        "items": [
            {"tagline": "Brands, built with intent.", "rationale": "States the promise plainly.",
             "useCase": "Homepage hero"},
            {"tagline": "From spark to signature.", "rationale": "Shows the journey.",
             "useCase": "Launch campaign"},
        ],
    }),
    ("stage: context", {
        "marketSummary": "Crowded market of generic AI writing tools with little brand depth.",
        "targetAudience": {
            "demographics": "Founders aged 25-45",
            "psychographics": "Pragmatic builders",
            "painPoints": ["Agency cost", "Inconsistent messaging"],
            "needs": ["Speed", "Credibility"],
        },
        "competitorAnalysis": {
            "direct": ["Brand strategy templates"],
            "indirect": ["Freelancers", "General AI chat tools"],
            "differentiation": "Structured, approvable pipeline.",
        },
        "positioningStatement": "For founders who need a credible brand fast, BrandForge "
                                "turns strategy into a guided, versioned workflow.",
    }),
]


# ── Registry ──────────────────────────────────────────────────────────────────

class ProviderRegistry:
    """
    Construct-once cache of provider instances, keyed by provider type.

    Built at application start with the app config; credentials are read
    once when a provider is first constructed.
    """

    PROVIDER_CLASSES = {
        "OPENAI": OpenAIProvider,
        "ANTHROPIC": AnthropicProvider,
        "MOCK": MockProvider,
    }

    def __init__(self, config=None):
        self._config = config or {}
        self._providers: dict[str, AIProvider] = {}

    def _build(self, provider_type: str) -> AIProvider:
        if provider_type == "OPENAI":
            return OpenAIProvider(api_key=self._config.get("OPENAI_API_KEY"))
        if provider_type == "ANTHROPIC":
            return AnthropicProvider(api_key=self._config.get("ANTHROPIC_API_KEY"))
        return MockProvider()

    def get(self, provider_type: str) -> AIProvider:
        """Return the cached provider for a type, constructing it on first use."""
        key = (provider_type or "").upper()
        if key not in self.PROVIDER_CLASSES:
            raise ValueError(f"Unknown provider type: {provider_type}")
        if key not in self._providers:
            self._providers[key] = self._build(key)
            logger.debug("ProviderRegistry: constructed %s provider", key)
        return self._providers[key]

    def register(self, provider: AIProvider) -> None:
        """Install a provider instance explicitly (tests, custom backends)."""
        self._providers[provider.type] = provider

    def reset(self) -> None:
        """Drop all cached instances; the next get() rebuilds from config."""
        self._providers.clear()

    def status(self) -> list[dict]:
        return [self.get(t).check_status() for t in self.PROVIDER_CLASSES]

    def ready_providers(self) -> set[str]:
        return {s["provider"] for s in self.status() if s["ready"]}
