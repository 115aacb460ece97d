"""
BrandForge Stage Engine
Stage presets.

A preset is a scope/depth level (fast, balanced, quality) chosen per run,
independent of the model. Each level fixes how broad the prompt is, the
maximum output tokens the provider may return and the token estimate the
budget precheck uses.

naming, voice and visual_identity have bespoke tables; every other stage
uses the generic table.
"""

PRESET_LEVELS = ("fast", "balanced", "quality")
DEFAULT_PRESET = "balanced"


NAMING_PRESETS = {
    "fast": {
        "numVariants": 3,
        "includeTaglines": False,
        "includeRationale": False,
        "includeLinguisticCheck": False,
        "outputSections": ["names"],
        "maxOutputTokens": 800,
        "estimatedTokensMin": 400,
        "estimatedTokensMax": 700,
        "estimatedTokens": 550,
    },
    "balanced": {
        "numVariants": 5,
        "includeTaglines": True,
        "includeRationale": True,
        "includeLinguisticCheck": False,
        "outputSections": ["names", "rationale", "taglines"],
        "maxOutputTokens": 1500,
        "estimatedTokensMin": 900,
        "estimatedTokensMax": 1400,
        "estimatedTokens": 1150,
    },
    "quality": {
        "numVariants": 10,
        "includeTaglines": True,
        "includeRationale": True,
        "includeLinguisticCheck": True,
        "outputSections": ["names", "rationale", "taglines", "linguistics"],
        "maxOutputTokens": 3000,
        "estimatedTokensMin": 2000,
        "estimatedTokensMax": 2900,
        "estimatedTokens": 2450,
    },
}

VOICE_PRESETS = {
    "fast": {
        "depth": "basic",
        "channelExamples": 0,
        "includeToneGuidelines": False,
        "includeDosDonts": False,
        "channels": ["general"],
        "maxOutputTokens": 1500,
        "estimatedTokensMin": 800,
        "estimatedTokensMax": 1200,
        "estimatedTokens": 1000,
    },
    "balanced": {
        "depth": "standard",
        "channelExamples": 1,
        "includeToneGuidelines": True,
        "includeDosDonts": True,
        "channels": ["general", "social", "email"],
        "maxOutputTokens": 3000,
        "estimatedTokensMin": 2000,
        "estimatedTokensMax": 2800,
        "estimatedTokens": 2400,
    },
    "quality": {
        "depth": "comprehensive",
        "channelExamples": 2,
        "includeToneGuidelines": True,
        "includeDosDonts": True,
        "channels": ["general", "social", "email", "advertising", "customer_support", "internal"],
        "maxOutputTokens": 6000,
        "estimatedTokensMin": 4000,
        "estimatedTokensMax": 5500,
        "estimatedTokens": 4800,
    },
}

VISUAL_PRESETS = {
    "fast": {
        "colorVariants": 1,
        "typographyPairings": 1,
        "logoDirections": 2,
        "components": ["palette", "typography", "logo_concepts"],
        "maxOutputTokens": 2000,
        "estimatedTokensMin": 1000,
        "estimatedTokensMax": 1500,
        "estimatedTokens": 1200,
    },
    "balanced": {
        "colorVariants": 2,
        "typographyPairings": 2,
        "logoDirections": 3,
        "components": [
            "palette", "typography", "logo_concepts", "moodboard",
            "usage_guidelines", "applications",
        ],
        "maxOutputTokens": 4000,
        "estimatedTokensMin": 2500,
        "estimatedTokensMax": 3500,
        "estimatedTokens": 3000,
    },
    "quality": {
        "colorVariants": 3,
        "typographyPairings": 3,
        "logoDirections": 5,
        "components": [
            "palette", "typography", "logo_concepts", "moodboard",
            "usage_guidelines", "applications", "accessibility",
            "iconography", "photography_style",
        ],
        "maxOutputTokens": 8000,
        "estimatedTokensMin": 5000,
        "estimatedTokensMax": 7000,
        "estimatedTokens": 6000,
    },
}

GENERIC_PRESETS = {
    "fast": {
        "depth": "basic",
        "numVariants": 1,
        "includeExamples": False,
        "selfCheckRounds": 0,
        "maxOutputTokens": 1000,
        "estimatedTokensMin": 500,
        "estimatedTokensMax": 800,
        "estimatedTokens": 650,
    },
    "balanced": {
        "depth": "standard",
        "numVariants": 2,
        "includeExamples": True,
        "selfCheckRounds": 1,
        "maxOutputTokens": 2000,
        "estimatedTokensMin": 1200,
        "estimatedTokensMax": 1800,
        "estimatedTokens": 1500,
    },
    "quality": {
        "depth": "comprehensive",
        "numVariants": 3,
        "includeExamples": True,
        "selfCheckRounds": 2,
        "maxOutputTokens": 4000,
        "estimatedTokensMin": 2500,
        "estimatedTokensMax": 3500,
        "estimatedTokens": 3000,
    },
}

_STAGE_PRESET_TABLES = {
    "naming": NAMING_PRESETS,
    "voice": VOICE_PRESETS,
    "visual_identity": VISUAL_PRESETS,
}


def is_valid_preset(preset) -> bool:
    return preset in PRESET_LEVELS


def get_preset_config(stage_key: str, preset: str) -> dict:
    """Return a copy of the preset table entry for a stage."""
    table = _STAGE_PRESET_TABLES.get(stage_key, GENERIC_PRESETS)
    level = preset if is_valid_preset(preset) else DEFAULT_PRESET
    return dict(table[level])


def get_estimated_tokens(stage_key: str, preset: str) -> int:
    return get_preset_config(stage_key, preset)["estimatedTokens"]


def get_max_output_tokens(stage_key: str, preset: str) -> int:
    return get_preset_config(stage_key, preset)["maxOutputTokens"]
