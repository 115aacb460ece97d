"""
BrandForge Stage Engine
Prompt Registry.

Static map from stage key to a StagePrompt, which knows how to:
    - build the ordered chat messages for a run (build_messages)
    - parse and schema-validate the raw completion (parse_output)

Unknown stage keys resolve to the generic prompt. Copy text of built-in
prompts may be overridden by YAML files in PROMPTS_DIR:

    # prompts/naming.yaml
    stage_key: naming
    version: v2
    system: "..."
    user: "..."

Usage:
    from brandforge.ai.prompt_registry import PromptRegistry
    registry = PromptRegistry()
    prompt = registry.get("naming")
    messages = prompt.build_messages({"project_name": "Acme", "preset_config": {...}})
    parsed = prompt.parse_output(raw_text)
"""

import json
import logging
import re
from pathlib import Path

import yaml

from brandforge.ai.schemas import validate_stage_output

logger = logging.getLogger(__name__)

_FENCE_OPEN = re.compile(r'^```\w*\s*\n?')
_FENCE_CLOSE = re.compile(r'\n?```\s*$')


def strip_code_fences(raw: str) -> str:
    """Remove an optional ```json ... ``` wrapper."""
    text = (raw or "").strip()
    text = _FENCE_OPEN.sub('', text)
    text = _FENCE_CLOSE.sub('', text)
    return text.strip()


def safe_parse_json(raw: str) -> dict:
    """
    Parse JSON that may be wrapped in markdown fences.

    Returns:
        {"ok": True, "data": ..., "raw": raw} or {"ok": False, "error": str, "raw": raw}
    """
    try:
        data = json.loads(strip_code_fences(raw))
    except (TypeError, ValueError) as e:
        return {"ok": False, "error": f"Invalid JSON: {e}", "raw": raw}
    return {"ok": True, "data": data, "raw": raw}


class StagePrompt:
    """A prompt builder plus output parser for one stage."""

    def __init__(self, id: str, version: str, title: str, stage_key: str,
                 system: str, user: str, output_hint: str = ""):
        self.id = id
        self.version = version
        self.title = title
        self.stage_key = stage_key
        self.system = system
        self.user = user
        self.output_hint = output_hint

    @property
    def prompt_set_version(self) -> str:
        return f"{self.id}@{self.version}"

    def build_messages(self, context: dict) -> list[dict]:
        """
        Render the prompt for a run.

        Context keys: stage_key, stage_name, project_name, is_regenerate,
        previous_content, preset_config, seed_text, custom_instructions.
        """
        preset = context.get("preset_config") or {}
        variables = {
            "stage_key": context.get("stage_key") or self.stage_key,
            "stage_name": context.get("stage_name") or self.title,
            "project_name": context.get("project_name") or "Untitled project",
            "num_variants": preset.get("numVariants", 1),
            "depth": preset.get("depth", "standard"),
        }

        sections = [
            f"Stage: {variables['stage_key']}",
            self._substitute(self.user, variables),
        ]
        if preset:
            sections.append(self._preset_block(preset))
        if context.get("is_regenerate") and context.get("previous_content") is not None:
            sections.append(
                "This is a regeneration. Improve on the previous version and avoid repeating it:\n"
                + json.dumps(context["previous_content"], ensure_ascii=False)
            )
        if context.get("seed_text"):
            sections.append(f"Use this text as the starting point:\n{context['seed_text']}")
        if context.get("custom_instructions"):
            sections.append(f"Additional instructions:\n{context['custom_instructions']}")
        if self.output_hint:
            sections.append(f"Expected JSON schema:\n{self.output_hint}")

        return [
            {"role": "system", "content": self._substitute(self.system, variables)},
            {"role": "user", "content": "\n\n".join(s for s in sections if s.strip())},
        ]

    def parse_output(self, raw: str) -> dict:
        """Strip fences, parse JSON, validate against the stage schema. Never raises."""
        parsed = safe_parse_json(raw)
        if not parsed["ok"]:
            return parsed
        result = validate_stage_output(self.stage_key, parsed["data"])
        if not result["ok"]:
            return {"ok": False, "error": result["error"], "raw": raw}
        return {"ok": True, "data": result["data"], "raw": raw}

    @staticmethod
    def _preset_block(preset: dict) -> str:
        lines = ["Scope for this run:"]
        if "numVariants" in preset:
            lines.append(f"- Produce exactly {preset['numVariants']} options.")
        if "depth" in preset:
            lines.append(f"- Depth: {preset['depth']}.")
        if preset.get("selfCheckRounds"):
            lines.append(f"- Review your answer {preset['selfCheckRounds']} time(s) before replying.")
        if preset.get("channels"):
            lines.append(f"- Channels: {', '.join(preset['channels'])}.")
        if preset.get("components"):
            lines.append(f"- Components: {', '.join(preset['components'])}.")
        return "\n".join(lines)

    @staticmethod
    def _substitute(template: str, variables: dict) -> str:
        """Replace {{var}} placeholders with values."""
        def replacer(match):
            key = match.group(1).strip()
            return str(variables.get(key, f"{{{{{key}}}}}"))
        return re.sub(r'\{\{(\s*\w+\s*)\}\}', replacer, template)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "version": self.version,
            "title": self.title,
            "stage_key": self.stage_key,
            "system_preview": self.system[:200],
            "user_preview": self.user[:200],
        }


_SYSTEM = (
    "You are a senior brand strategist. Answer ONLY with a single valid JSON "
    "object, no prose and no markdown."
)

_DEFAULT_PROMPTS = [
    StagePrompt(
        id="brand.context", version="v1", title="Context & Positioning", stage_key="context",
        system=_SYSTEM,
        user="Analyse the market context for the project \"{{project_name}}\" and write a "
             "positioning statement.",
        output_hint='{"marketSummary": "...", "targetAudience": {"demographics": "...", '
                    '"psychographics": "...", "painPoints": ["..."], "needs": ["..."]}, '
                    '"competitorAnalysis": {"direct": ["..."], "indirect": ["..."], '
                    '"differentiation": "..."}, "positioningStatement": "..."}',
    ),
    StagePrompt(
        id="brand.naming", version="v1", title="Strategic Naming", stage_key="naming",
        system=_SYSTEM,
        user="Propose {{num_variants}} brand name options for the project \"{{project_name}}\". "
             "Each option needs a short rationale and domain hints.",
        output_hint='{"items": [{"name": "...", "rationale": "...", "domainHints": ["..."]}], '
                    '"notes": "optional"}',
    ),
    StagePrompt(
        id="brand.manifesto", version="v1", title="Brand Manifesto", stage_key="manifesto",
        system=_SYSTEM,
        user="Write the brand manifesto for \"{{project_name}}\": a manifesto text of at least "
             "fifty characters, at least two principles and the core values.",
        output_hint='{"manifesto": "...", "principles": ["..."], "values": ["..."], '
                    '"notes": "optional"}',
    ),
    StagePrompt(
        id="brand.voice", version="v1", title="Brand Voice", stage_key="voice",
        system=_SYSTEM,
        user="Define the brand voice for \"{{project_name}}\" at {{depth}} depth: tone, "
             "personality, at least three dos and three don'ts, and channel examples.",
        output_hint='{"tone": "...", "personality": ["..."], "dos": ["..."], "donts": ["..."], '
                    '"examples": [{"context": "...", "good": "...", "bad": "..."}]}',
    ),
    StagePrompt(
        id="brand.tagline", version="v1", title="Tagline", stage_key="tagline",
        system=_SYSTEM,
        user="Write {{num_variants}} tagline options for \"{{project_name}}\" with rationale "
             "and the best use case for each.",
        output_hint='{"items": [{"tagline": "...", "rationale": "...", "useCase": "..."}]}',
    ),
    StagePrompt(
        id="venture.intake", version="v1", title="Idea Intake", stage_key="venture_intake",
        system=_SYSTEM,
        user="Structure the business idea behind \"{{project_name}}\": target market, product, "
             "pricing, competitive advantage and channels.",
        output_hint='{"business_idea": "...", "target_market": {"segment": "...", '
                    '"geography": "...", "pain_points": ["..."], "needs": ["..."]}, '
                    '"product_service": {"name": "...", "description": "...", '
                    '"differentiation": "..."}, "pricing_model": {"type": "...", '
                    '"price_range": "..."}, "competitive_advantage": "...", "channels": ["..."]}',
    ),
    StagePrompt(
        id="venture.validation", version="v1", title="Idea Validation",
        stage_key="venture_idea_validation",
        system=_SYSTEM,
        user="Validate the business idea of \"{{project_name}}\": market size, competition, "
             "risks, assumptions, a recommendation and a viability score from 0 to 100.",
        output_hint='{"summary": "...", "market_size": {"tam": "...", "sam": "...", '
                    '"som": "..."}, "competition": ["..."], "risks": ["..."], '
                    '"assumptions": ["..."], "recommendation": "...", "viability_score": 0}',
    ),
    StagePrompt(
        id="venture.persona", version="v1", title="Buyer Persona",
        stage_key="venture_buyer_persona",
        system=_SYSTEM,
        user="Describe the buyer personas for \"{{project_name}}\" with goals, pains, "
             "behaviors and motivations.",
        output_hint='{"personas": [{"name": "...", "role": "...", "goals": ["..."], '
                    '"pains": ["..."], "behaviors": ["..."], "motivations": ["..."]}], '
                    '"notes": "..."}',
    ),
    StagePrompt(
        id="venture.plan", version="v1", title="Business Plan",
        stage_key="venture_business_plan",
        system=_SYSTEM,
        user="Write the business plan for \"{{project_name}}\" building on the validated idea "
             "and buyer personas.",
        output_hint='{"executive_summary": "...", "problem": "...", "solution": "...", '
                    '"market": "...", "business_model": "...", "go_to_market": "...", '
                    '"operations": "...", "financials": "...", "milestones": ["..."], '
                    '"risks": ["..."]}',
    ),
]

GENERIC_PROMPT = StagePrompt(
    id="generic.stage", version="v1", title="Stage Content", stage_key="__generic__",
    system=_SYSTEM,
    user="Produce the \"{{stage_name}}\" deliverable for the project \"{{project_name}}\".",
    output_hint='{"title": "...", "content": "at least 20 characters"}',
)


class PromptRegistry:
    """
    Registry of stage prompts.

    Built-in prompts are always present; YAML files in ``prompts_dir``
    replace the copy text of a built-in prompt or add a new stage.
    """

    def __init__(self, prompts_dir: str | None = None):
        self._prompts_dir = prompts_dir
        self._prompts: dict[str, StagePrompt] = {}
        for prompt in _DEFAULT_PROMPTS:
            self.register(prompt)
        if prompts_dir:
            self._load_from_dir()

    def _load_from_dir(self):
        """Load prompt overrides from YAML files."""
        prompts_path = Path(self._prompts_dir)
        if not prompts_path.exists():
            logger.info("Prompts directory not found: %s. Using built-in prompts only.",
                        self._prompts_dir)
            return

        for yaml_file in sorted(prompts_path.glob("*.yaml")):
            try:
                with open(yaml_file, "r", encoding="utf-8") as f:
                    data = yaml.safe_load(f)
            except (OSError, yaml.YAMLError) as e:
                logger.error("Failed to load prompt %s: %s", yaml_file.name, e)
                continue
            if not data or not isinstance(data, dict):
                continue

            stage_key = data.get("stage_key", yaml_file.stem)
            base = self._prompts.get(stage_key, GENERIC_PROMPT)
            prompt = StagePrompt(
                id=data.get("id", base.id if base is not GENERIC_PROMPT else f"custom.{stage_key}"),
                version=str(data.get("version", base.version)),
                title=data.get("title", base.title),
                stage_key=stage_key,
                system=data.get("system", base.system),
                user=data.get("user", base.user),
                output_hint=data.get("output_hint", base.output_hint),
            )
            self.register(prompt)
            logger.info("Loaded prompt %s (%s) from %s",
                        prompt.stage_key, prompt.prompt_set_version, yaml_file.name)

    def register(self, prompt: StagePrompt):
        self._prompts[prompt.stage_key] = prompt

    def get(self, stage_key: str) -> StagePrompt:
        """Prompt for a stage; unknown keys get the generic prompt bound to that key."""
        prompt = self._prompts.get(stage_key)
        if prompt:
            return prompt
        return StagePrompt(
            id=GENERIC_PROMPT.id,
            version=GENERIC_PROMPT.version,
            title=GENERIC_PROMPT.title,
            stage_key=stage_key,
            system=GENERIC_PROMPT.system,
            user=GENERIC_PROMPT.user,
            output_hint=GENERIC_PROMPT.output_hint,
        )

    def has(self, stage_key: str) -> bool:
        return stage_key in self._prompts

    def list_prompts(self) -> list[dict]:
        return [p.to_dict() for p in self._prompts.values()]
