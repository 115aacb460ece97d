"""
BrandForge Stage Engine
Preset / Model Resolver.

Maps (stage, preset, requested provider/model) to the EffectiveConfig a
run executes with. Resolution never fails:
    1. preset     : fast | balanced | quality, anything else → balanced
    2. provider   : normalised to OPENAI | ANTHROPIC | MOCK,
                    unrecognised values → the primary real provider
    3. model      : must belong to the provider (prefix rule + allowlist);
                    otherwise the provider's default for the preset is
                    substituted and a fallback warning is recorded
    4. tokens     : max output tokens and the budget estimate come from
                    the stage's preset table

Everything here is pure: settings are passed in (see ResolverSettings),
nothing reads the environment or logs. Callers log the resolution.
"""

import json
from dataclasses import dataclass, field

from brandforge.ai.presets import (
    DEFAULT_PRESET,
    get_preset_config,
    is_valid_preset,
)

PROVIDERS = ("OPENAI", "ANTHROPIC", "MOCK")
PRIMARY_PROVIDER = "OPENAI"
DEFAULT_TEMPERATURE = 0.7

PROVIDER_DEFAULT_MODELS = {
    "OPENAI": "gpt-4o-mini",
    "ANTHROPIC": "claude-3-5-haiku-latest",
    "MOCK": "mock",
}

# Provider → preset → default model
PRESET_DEFAULT_MODELS = {
    "OPENAI": {"fast": "gpt-4o-mini", "balanced": "gpt-4o", "quality": "gpt-4o"},
    "ANTHROPIC": {
        "fast": "claude-3-5-haiku-latest",
        "balanced": "claude-3-5-sonnet-latest",
        "quality": "claude-3-5-sonnet-latest",
    },
    "MOCK": {"fast": "mock", "balanced": "mock", "quality": "mock"},
}

MODEL_CATALOG = [
    {"id": "gpt-4o-mini", "provider": "OPENAI", "label": "GPT-4o Mini",
     "tier": "fast", "recommendedForPreset": ["fast"]},
    {"id": "gpt-4o", "provider": "OPENAI", "label": "GPT-4o",
     "tier": "balanced", "recommendedForPreset": ["balanced", "quality"]},
    {"id": "gpt-4-turbo", "provider": "OPENAI", "label": "GPT-4 Turbo",
     "tier": "premium", "recommendedForPreset": []},
    {"id": "claude-3-5-haiku-latest", "provider": "ANTHROPIC", "label": "Claude 3.5 Haiku",
     "tier": "fast", "recommendedForPreset": ["fast"]},
    {"id": "claude-3-5-sonnet-latest", "provider": "ANTHROPIC", "label": "Claude 3.5 Sonnet",
     "tier": "balanced", "recommendedForPreset": ["balanced", "quality"]},
    {"id": "mock", "provider": "MOCK", "label": "Mock (offline)",
     "tier": "fast", "recommendedForPreset": []},
]


def normalize_provider(value, default: str = PRIMARY_PROVIDER) -> str:
    """Normalise a provider name; unrecognised values map to the primary provider."""
    if not value:
        value = default
    name = str(value).strip().upper()
    if name in ("MOCK", "ANTHROPIC"):
        return name
    return PRIMARY_PROVIDER


def _parse_allowlist(raw) -> tuple:
    if not raw:
        return ()
    if isinstance(raw, (list, tuple)):
        return tuple(m.strip() for m in raw if m and m.strip())
    return tuple(m.strip() for m in str(raw).split(",") if m.strip())


@dataclass(frozen=True)
class ResolverSettings:
    """Global inputs to resolution, built once from app config."""

    default_provider: str = PRIMARY_PROVIDER
    # preset → {"provider": ..., "model": ...}
    preset_defaults: dict = field(default_factory=dict)
    # provider → allowed model ids (empty = prefix rule only)
    allowlists: dict = field(default_factory=dict)

    @classmethod
    def from_config(cls, cfg) -> "ResolverSettings":
        """Build settings from a Flask config mapping.

        MODEL_DEFAULTS_JSON accepts {"fast": "gpt-4o-mini"} or
        {"fast": {"provider": "OPENAI", "model": "gpt-4o-mini"}}.
        Unparseable JSON is ignored.
        """
        preset_defaults = {}
        raw = cfg.get("MODEL_DEFAULTS_JSON") or ""
        if raw:
            try:
                parsed = json.loads(raw)
            except ValueError:
                parsed = {}
            if isinstance(parsed, dict):
                for key, value in parsed.items():
                    level = str(key).lower()
                    if level == "best":
                        level = "quality"
                    if not is_valid_preset(level):
                        continue
                    if isinstance(value, str):
                        preset_defaults[level] = {"provider": None, "model": value}
                    elif isinstance(value, dict) and value.get("model"):
                        preset_defaults[level] = {
                            "provider": normalize_provider(value["provider"])
                            if value.get("provider") else None,
                            "model": value["model"],
                        }
        return cls(
            default_provider=normalize_provider(cfg.get("AI_PROVIDER")),
            preset_defaults=preset_defaults,
            allowlists={
                "OPENAI": _parse_allowlist(cfg.get("OPENAI_MODEL_ALLOWLIST")),
                "ANTHROPIC": _parse_allowlist(cfg.get("ANTHROPIC_MODEL_ALLOWLIST")),
            },
        )

    def allowlist_for(self, provider: str) -> tuple:
        return tuple(self.allowlists.get(provider) or ())


def is_valid_model_for_provider(provider: str, model, allowlist: tuple = ()) -> bool:
    """Prefix rule per provider, then the optional allowlist."""
    if not model or not isinstance(model, str):
        return False
    if provider == "MOCK":
        return model == "mock"
    if provider == "ANTHROPIC":
        ok = model.startswith("claude-")
    else:
        ok = model.startswith("gpt-") or model.startswith("o1")
    if ok and allowlist:
        ok = model in allowlist
    return ok


def default_model_for(provider: str, preset: str, settings: ResolverSettings | None = None) -> str:
    """Default model of a provider for a preset, honouring overrides and allowlists."""
    settings = settings or ResolverSettings()
    allowlist = settings.allowlist_for(provider)

    override = settings.preset_defaults.get(preset)
    if override and (override.get("provider") in (None, provider)):
        if is_valid_model_for_provider(provider, override["model"], allowlist):
            return override["model"]

    candidate = PRESET_DEFAULT_MODELS.get(provider, {}).get(preset) or PROVIDER_DEFAULT_MODELS[provider]
    if is_valid_model_for_provider(provider, candidate, allowlist):
        return candidate
    fallback = PROVIDER_DEFAULT_MODELS[provider]
    if is_valid_model_for_provider(provider, fallback, allowlist):
        return fallback
    # Allowlist excludes both defaults: first allowed model wins
    return allowlist[0] if allowlist else fallback


@dataclass
class EffectiveConfig:
    """Fully resolved parameters of one stage run."""

    stage_key: str
    preset: str
    provider: str
    model: str
    temperature: float
    max_output_tokens: int
    estimated_tokens: int
    preset_config: dict = field(default_factory=dict)
    custom_instructions: str | None = None
    seed_text: str | None = None
    fallback_warning: str | None = None

    @property
    def resolved_max_tokens(self) -> int:
        return self.max_output_tokens

    def to_dict(self) -> dict:
        """Serialise for Job.run_config."""
        return {
            "stageKey": self.stage_key,
            "preset": self.preset,
            "provider": self.provider,
            "model": self.model,
            "temperature": self.temperature,
            "maxOutputTokens": self.max_output_tokens,
            "resolvedMaxTokens": self.max_output_tokens,
            "estimatedTokens": self.estimated_tokens,
            "presetConfig": dict(self.preset_config),
            "customInstructions": self.custom_instructions,
            "seedText": self.seed_text,
            "fallbackWarning": self.fallback_warning,
        }

    @classmethod
    def from_dict(cls, data) -> "EffectiveConfig | None":
        """Rebuild from a stored run_config; None when the snapshot is unusable."""
        if not data or not data.get("stageKey") or not data.get("preset"):
            return None
        return cls(
            stage_key=data["stageKey"],
            preset=data["preset"],
            provider=normalize_provider(data.get("provider")),
            model=data.get("model") or PROVIDER_DEFAULT_MODELS[normalize_provider(data.get("provider"))],
            temperature=data.get("temperature") if data.get("temperature") is not None else DEFAULT_TEMPERATURE,
            max_output_tokens=data.get("maxOutputTokens") or data.get("resolvedMaxTokens") or 1200,
            estimated_tokens=data.get("estimatedTokens") or 1500,
            preset_config=data.get("presetConfig") or {},
            custom_instructions=data.get("customInstructions"),
            seed_text=data.get("seedText"),
            fallback_warning=data.get("fallbackWarning"),
        )


def resolve_effective_config(
    stage_key: str,
    preset: str | None = None,
    provider: str | None = None,
    model: str | None = None,
    temperature: float | None = None,
    custom_instructions: str | None = None,
    seed_text: str | None = None,
    settings: ResolverSettings | None = None,
) -> EffectiveConfig:
    """
    Resolve the effective configuration for one stage run.

    Args:
        stage_key: Stage identity; selects the preset table.
        preset: Requested preset level (invalid/absent → balanced).
        provider: Requested provider (absent → settings.default_provider).
        model: Requested model (invalid for provider → preset default).
        temperature: Sampling temperature (absent → 0.7).
        custom_instructions: Free text appended to the prompt.
        seed_text: Text that biases the generation (e.g. a manual edit).
        settings: Global defaults; a bare ResolverSettings() when omitted.

    Returns:
        EffectiveConfig; never raises for bad inputs.
    """
    settings = settings or ResolverSettings()

    level = preset if is_valid_preset(preset) else DEFAULT_PRESET
    resolved_provider = normalize_provider(provider, default=settings.default_provider)
    allowlist = settings.allowlist_for(resolved_provider)

    fallback_warning = None
    if model and is_valid_model_for_provider(resolved_provider, model, allowlist):
        resolved_model = model
    else:
        resolved_model = default_model_for(resolved_provider, level, settings)
        if model:
            fallback_warning = (
                f"Model '{model}' is not available for {resolved_provider}; "
                f"using '{resolved_model}'"
            )

    preset_config = get_preset_config(stage_key, level)

    return EffectiveConfig(
        stage_key=stage_key,
        preset=level,
        provider=resolved_provider,
        model=resolved_model,
        temperature=float(temperature) if temperature is not None else DEFAULT_TEMPERATURE,
        max_output_tokens=preset_config["maxOutputTokens"],
        estimated_tokens=preset_config["estimatedTokens"],
        preset_config=preset_config,
        custom_instructions=custom_instructions,
        seed_text=seed_text,
        fallback_warning=fallback_warning,
    )


def list_models(settings: ResolverSettings | None = None, ready_providers=None) -> list[dict]:
    """Catalog entries visible under the allowlists, with provider readiness."""
    settings = settings or ResolverSettings()
    ready_providers = set(ready_providers or ())
    models = []
    for entry in MODEL_CATALOG:
        allowlist = settings.allowlist_for(entry["provider"])
        if allowlist and entry["id"] not in allowlist:
            continue
        models.append({**entry, "ready": entry["provider"] in ready_providers})
    return models
