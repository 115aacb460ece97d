"""
BrandForge Stage Engine
Stage output schemas.

Every stage's parsed AI output is validated against a pydantic model.
Unknown fields are kept (extra="allow") so richer model answers survive.
Visual stages (palette, typography, logo, visual_identity) are stored as
returned; any JSON object passes.

Usage:
    from brandforge.ai.schemas import validate_stage_output
    result = validate_stage_output("naming", {"items": [...]})
    if result["ok"]:
        data = result["data"]
"""

from __future__ import annotations

from pydantic import BaseModel, ConfigDict, Field
from pydantic import ValidationError as PydanticValidationError


class _StageSchema(BaseModel):
    model_config = ConfigDict(extra="allow")


# ═══════════════════════════════════════════════════════════════
# Brand module
# ═══════════════════════════════════════════════════════════════

class TargetAudience(_StageSchema):
    demographics: str = ""
    psychographics: str = ""
    painPoints: list[str] = Field(default_factory=list)
    needs: list[str] = Field(default_factory=list)


class CompetitorAnalysis(_StageSchema):
    direct: list[str] = Field(default_factory=list)
    indirect: list[str] = Field(default_factory=list)
    differentiation: str = ""


class ContextOutput(_StageSchema):
    marketSummary: str = Field(min_length=1)
    targetAudience: TargetAudience
    competitorAnalysis: CompetitorAnalysis
    positioningStatement: str = Field(min_length=1)


class NamingItem(_StageSchema):
    name: str = Field(min_length=1)
    rationale: str = ""
    domainHints: list[str] = Field(default_factory=list)


class NamingOutput(_StageSchema):
    items: list[NamingItem] = Field(min_length=1)
    notes: str | None = None


class ManifestoOutput(_StageSchema):
    manifesto: str = Field(min_length=50)
    principles: list[str] = Field(min_length=2)
    values: list[str] = Field(default_factory=list)
    notes: str | None = None


class VoiceExample(_StageSchema):
    context: str
    good: str
    bad: str = ""


class VoiceOutput(_StageSchema):
    tone: str = Field(min_length=1)
    personality: list[str] = Field(default_factory=list)
    dos: list[str] = Field(min_length=3)
    donts: list[str] = Field(min_length=3)
    examples: list[VoiceExample] = Field(default_factory=list)
    notes: str | None = None


class TaglineItem(_StageSchema):
    tagline: str = Field(min_length=1)
    rationale: str = ""
    useCase: str = ""


class TaglineOutput(_StageSchema):
    items: list[TaglineItem] = Field(min_length=1)
    notes: str | None = None


# ═══════════════════════════════════════════════════════════════
# Venture module
# ═══════════════════════════════════════════════════════════════

class VentureTargetMarket(_StageSchema):
    segment: str
    geography: str = ""
    demographics: str = ""
    psychographics: str = ""
    pain_points: list[str] = Field(default_factory=list)
    needs: list[str] = Field(default_factory=list)


class VentureProduct(_StageSchema):
    name: str
    description: str
    differentiation: str = ""


class VenturePricing(_StageSchema):
    type: str
    price_range: str = ""


class VentureIntakeOutput(_StageSchema):
    business_idea: str = Field(min_length=1)
    target_market: VentureTargetMarket
    product_service: VentureProduct
    pricing_model: VenturePricing | None = None
    competitive_advantage: str = ""
    channels: list[str] = Field(default_factory=list)


class MarketSize(_StageSchema):
    tam: str
    sam: str
    som: str


class VentureValidationOutput(_StageSchema):
    summary: str = Field(min_length=1)
    market_size: MarketSize
    competition: list[str] = Field(default_factory=list)
    risks: list[str] = Field(default_factory=list)
    assumptions: list[str] = Field(default_factory=list)
    recommendation: str = Field(min_length=1)
    viability_score: int = Field(ge=0, le=100)


class Persona(_StageSchema):
    name: str = Field(min_length=1)
    role: str = ""
    goals: list[str] = Field(default_factory=list)
    pains: list[str] = Field(default_factory=list)
    behaviors: list[str] = Field(default_factory=list)
    motivations: list[str] = Field(default_factory=list)


class VenturePersonaOutput(_StageSchema):
    personas: list[Persona] = Field(min_length=1)
    notes: str | None = None


class VenturePlanOutput(_StageSchema):
    executive_summary: str = Field(min_length=1)
    problem: str
    solution: str
    market: str
    business_model: str
    go_to_market: str
    operations: str = ""
    financials: str = ""
    milestones: list[str] = Field(default_factory=list)
    risks: list[str] = Field(default_factory=list)


# ═══════════════════════════════════════════════════════════════
# Fallback
# ═══════════════════════════════════════════════════════════════

class GenericOutput(_StageSchema):
    title: str | None = None
    content: str = Field(min_length=20)


STAGE_SCHEMAS: dict[str, type[BaseModel]] = {
    "context": ContextOutput,
    "naming": NamingOutput,
    "manifesto": ManifestoOutput,
    "voice": VoiceOutput,
    "tagline": TaglineOutput,
    "venture_intake": VentureIntakeOutput,
    "venture_idea_validation": VentureValidationOutput,
    "venture_buyer_persona": VenturePersonaOutput,
    "venture_business_plan": VenturePlanOutput,
}

PASSTHROUGH_STAGES = {"palette", "typography", "logo", "visual_identity"}


def format_validation_error(exc: PydanticValidationError) -> str:
    parts = []
    for err in exc.errors():
        loc = ".".join(str(p) for p in err.get("loc", ())) or "(root)"
        parts.append(f"{loc}: {err.get('msg')}")
    return "; ".join(parts)


def validate_stage_output(stage_key: str, data, schema: type[BaseModel] | None = None) -> dict:
    """
    Validate parsed output for a stage.

    Returns:
        {"ok": True, "data": dict} or {"ok": False, "error": str}
    """
    if not isinstance(data, dict):
        return {"ok": False, "error": "Output must be a JSON object"}
    if schema is None:
        if stage_key in PASSTHROUGH_STAGES:
            return {"ok": True, "data": data}
        schema = STAGE_SCHEMAS.get(stage_key, GenericOutput)
    try:
        model = schema.model_validate(data)
    except PydanticValidationError as exc:
        return {"ok": False, "error": format_validation_error(exc)}
    return {"ok": True, "data": model.model_dump(mode="json", exclude_none=True)}
