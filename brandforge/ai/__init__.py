"""
BrandForge Stage Engine
AI module.

Submodules:
    - presets: preset levels and per-stage token tables
    - model_resolver: EffectiveConfig resolution with model fallback
    - providers: provider abstraction, mock/OpenAI/Anthropic, registry
    - prompt_registry: stage prompts and output parsing
    - schemas: pydantic schemas for stage outputs
"""
