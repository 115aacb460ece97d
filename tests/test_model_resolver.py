"""
BrandForge Stage Engine
Tests: preset & model resolution.

Covers:
    1. Preset tables (bespoke vs generic)
    2. Provider normalisation
    3. Model validation, fallback and fallback warnings
    4. MODEL_DEFAULTS_JSON overrides and allowlists
    5. EffectiveConfig snapshot serialisation
    6. Model catalog listing
"""

import pytest

from brandforge.ai.model_resolver import (
    PROVIDERS,
    EffectiveConfig,
    ResolverSettings,
    default_model_for,
    is_valid_model_for_provider,
    list_models,
    normalize_provider,
    resolve_effective_config,
)
from brandforge.ai.presets import (
    GENERIC_PRESETS,
    NAMING_PRESETS,
    PRESET_LEVELS,
    get_estimated_tokens,
    get_preset_config,
)


# ═══════════════════════════════════════════════════════════════════════════
#  Presets
# ═══════════════════════════════════════════════════════════════════════════

class TestPresets:
    """Preset tables per stage."""

    def test_naming_uses_bespoke_table(self):
        assert get_preset_config("naming", "fast")["numVariants"] == 3
        assert get_preset_config("naming", "balanced")["numVariants"] == 5
        assert get_preset_config("naming", "quality")["numVariants"] == 10

    def test_unknown_stage_uses_generic_table(self):
        cfg = get_preset_config("briefing", "quality")
        assert cfg == GENERIC_PRESETS["quality"]
        assert cfg["depth"] == "comprehensive"
        assert cfg["selfCheckRounds"] == 2

    def test_invalid_preset_maps_to_balanced(self):
        assert get_preset_config("naming", "ultra") == NAMING_PRESETS["balanced"]

    def test_preset_config_is_a_copy(self):
        cfg = get_preset_config("naming", "fast")
        cfg["numVariants"] = 99
        assert NAMING_PRESETS["fast"]["numVariants"] == 3

    def test_estimates_grow_with_preset(self):
        for stage in ("naming", "voice", "visual_identity", "context"):
            fast, balanced, quality = (get_estimated_tokens(stage, p) for p in PRESET_LEVELS)
            assert fast < balanced < quality


# ═══════════════════════════════════════════════════════════════════════════
#  Providers & models
# ═══════════════════════════════════════════════════════════════════════════

class TestProviderNormalisation:
    """Provider names are case-insensitive; unknown ones map to OPENAI."""

    @pytest.mark.parametrize("raw,expected", [
        ("openai", "OPENAI"),
        ("Anthropic", "ANTHROPIC"),
        (" mock ", "MOCK"),
        ("gemini", "OPENAI"),
        (None, "OPENAI"),
        ("", "OPENAI"),
    ])
    def test_normalize(self, raw, expected):
        assert normalize_provider(raw) == expected

    def test_default_applies_when_missing(self):
        assert normalize_provider(None, default="MOCK") == "MOCK"


class TestModelValidation:
    """Prefix rule and allowlist."""

    def test_prefix_rules(self):
        assert is_valid_model_for_provider("OPENAI", "gpt-4o")
        assert is_valid_model_for_provider("OPENAI", "o1-mini")
        assert not is_valid_model_for_provider("OPENAI", "claude-3-5-haiku-latest")
        assert is_valid_model_for_provider("ANTHROPIC", "claude-3-5-sonnet-latest")
        assert not is_valid_model_for_provider("ANTHROPIC", "gpt-4o")
        assert is_valid_model_for_provider("MOCK", "mock")
        assert not is_valid_model_for_provider("MOCK", "gpt-4o")

    def test_empty_model_invalid(self):
        assert not is_valid_model_for_provider("OPENAI", "")
        assert not is_valid_model_for_provider("OPENAI", None)

    def test_allowlist_restricts(self):
        assert is_valid_model_for_provider("OPENAI", "gpt-4o", ("gpt-4o",))
        assert not is_valid_model_for_provider("OPENAI", "gpt-4-turbo", ("gpt-4o",))


# ═══════════════════════════════════════════════════════════════════════════
#  Resolution
# ═══════════════════════════════════════════════════════════════════════════

class TestResolveEffectiveConfig:
    """resolve_effective_config never fails and always yields a valid pair."""

    def test_explicit_valid_request(self):
        eff = resolve_effective_config("naming", preset="fast", provider="openai", model="gpt-4o")
        assert eff.provider == "OPENAI"
        assert eff.model == "gpt-4o"
        assert eff.preset == "fast"
        assert eff.max_output_tokens == 800
        assert eff.estimated_tokens == 550
        assert eff.fallback_warning is None

    def test_defaults(self):
        eff = resolve_effective_config("context")
        assert eff.preset == "balanced"
        assert eff.provider == "OPENAI"
        assert eff.model == "gpt-4o"
        assert eff.temperature == 0.7

    def test_model_fallback_for_wrong_provider(self):
        eff = resolve_effective_config("naming", provider="ANTHROPIC", model="gpt-4o")
        assert eff.provider == "ANTHROPIC"
        assert eff.model == "claude-3-5-sonnet-latest"
        assert "gpt-4o" in eff.fallback_warning
        assert "claude-3-5-sonnet-latest" in eff.fallback_warning

    def test_fast_preset_fallback_model(self):
        eff = resolve_effective_config("naming", preset="fast", provider="anthropic", model="nope")
        assert eff.model == "claude-3-5-haiku-latest"
        assert eff.fallback_warning

    def test_unknown_provider_falls_back_to_primary(self):
        eff = resolve_effective_config("naming", provider="gemini", model="gemini-pro")
        assert eff.provider == "OPENAI"
        assert eff.model == "gpt-4o"
        assert eff.fallback_warning

    def test_settings_default_provider(self):
        eff = resolve_effective_config("naming", settings=ResolverSettings(default_provider="MOCK"))
        assert eff.provider == "MOCK"
        assert eff.model == "mock"

    def test_temperature_override(self):
        assert resolve_effective_config("naming", temperature=0.2).temperature == 0.2

    def test_carries_free_text(self):
        eff = resolve_effective_config("naming", seed_text="Lumora", custom_instructions="Short")
        assert eff.seed_text == "Lumora"
        assert eff.custom_instructions == "Short"

    @pytest.mark.parametrize("provider", PROVIDERS)
    @pytest.mark.parametrize("preset", PRESET_LEVELS + ("bogus", None))
    @pytest.mark.parametrize("stage_key", ["naming", "voice", "visual_identity", "context", "delivery"])
    def test_cross_product_always_valid(self, stage_key, preset, provider):
        eff = resolve_effective_config(stage_key, preset=preset, provider=provider, model="not-a-model")
        assert eff.provider == provider
        assert eff.preset in PRESET_LEVELS
        assert is_valid_model_for_provider(eff.provider, eff.model)
        assert eff.max_output_tokens > 0
        assert eff.estimated_tokens > 0


class TestResolverSettings:
    """Global overrides from app config."""

    def test_model_defaults_json_string_form(self):
        settings = ResolverSettings.from_config({"MODEL_DEFAULTS_JSON": '{"fast": "gpt-4-turbo"}'})
        eff = resolve_effective_config("naming", preset="fast", provider="openai", settings=settings)
        assert eff.model == "gpt-4-turbo"

    def test_model_defaults_json_best_alias(self):
        settings = ResolverSettings.from_config({
            "MODEL_DEFAULTS_JSON": '{"best": {"provider": "anthropic", "model": "claude-3-opus-latest"}}',
        })
        assert default_model_for("ANTHROPIC", "quality", settings) == "claude-3-opus-latest"
        # Override is bound to its provider
        assert default_model_for("OPENAI", "quality", settings) == "gpt-4o"

    def test_invalid_json_ignored(self):
        settings = ResolverSettings.from_config({"MODEL_DEFAULTS_JSON": "{not json"})
        assert settings.preset_defaults == {}

    def test_allowlist_forces_allowed_default(self):
        settings = ResolverSettings.from_config({"OPENAI_MODEL_ALLOWLIST": "gpt-4o-mini"})
        eff = resolve_effective_config("naming", provider="openai", model="gpt-4o", settings=settings)
        assert eff.model == "gpt-4o-mini"
        assert eff.fallback_warning

    def test_ai_provider_config(self):
        settings = ResolverSettings.from_config({"AI_PROVIDER": "mock"})
        assert settings.default_provider == "MOCK"


class TestEffectiveConfigSnapshot:
    """Job.run_config snapshot."""

    def test_to_dict_contains_resolution(self):
        eff = resolve_effective_config("naming", preset="quality", provider="mock")
        snap = eff.to_dict()
        assert snap["stageKey"] == "naming"
        assert snap["provider"] == "MOCK"
        assert snap["resolvedMaxTokens"] == 3000
        assert snap["presetConfig"]["numVariants"] == 10

    def test_from_dict_rebuilds(self):
        eff = resolve_effective_config("naming", preset="fast", provider="anthropic",
                                       custom_instructions="Be bold")
        rebuilt = EffectiveConfig.from_dict(eff.to_dict())
        assert rebuilt.model == eff.model
        assert rebuilt.max_output_tokens == eff.max_output_tokens
        assert rebuilt.custom_instructions == "Be bold"

    def test_from_dict_unusable(self):
        assert EffectiveConfig.from_dict(None) is None
        assert EffectiveConfig.from_dict({"provider": "MOCK"}) is None


class TestListModels:
    """Model catalog with readiness."""

    def test_ready_flags(self):
        models = list_models(ResolverSettings(), ready_providers={"MOCK"})
        by_id = {m["id"]: m for m in models}
        assert by_id["mock"]["ready"] is True
        assert by_id["gpt-4o"]["ready"] is False

    def test_allowlist_hides_models(self):
        settings = ResolverSettings.from_config({"OPENAI_MODEL_ALLOWLIST": "gpt-4o"})
        ids = {m["id"] for m in list_models(settings)}
        assert "gpt-4o" in ids
        assert "gpt-4o-mini" not in ids
        assert "claude-3-5-haiku-latest" in ids
