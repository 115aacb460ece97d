"""
Stage catalog and dependency graph.

Static configuration, not persisted state:
    - STAGE_CATALOG: ordered stage definitions per project module,
      used to bootstrap a project's stages
    - ADHOC_STAGES: stages that are created on first run instead of at
      bootstrap
    - STAGE_DEPENDENCIES: stage key → prerequisite stage keys

The dependency graph drives two different behaviours:
    - pre-run gating: missing_dependencies() is advisory only
    - post-approval invalidation: downstream_stages() lists every direct
      and transitive dependent, which the orchestrator resets
"""

from __future__ import annotations

from collections import defaultdict

# ── Catalog ──────────────────────────────────────────────────────────────────

STAGE_CATALOG: dict[str, list[dict]] = {
    "venture": [
        {"display_key": "V1", "stage_key": "venture_intake", "name": "Idea Intake"},
        {"display_key": "V2", "stage_key": "venture_idea_validation", "name": "Idea Validation"},
        {"display_key": "V3", "stage_key": "venture_buyer_persona", "name": "Buyer Persona"},
        {"display_key": "V4", "stage_key": "venture_business_plan", "name": "Business Plan"},
    ],
    "brand": [
        {"display_key": "A1", "stage_key": "context", "name": "Context & Positioning"},
        {"display_key": "A2", "stage_key": "naming", "name": "Strategic Naming"},
        {"display_key": "A3", "stage_key": "manifesto", "name": "Manifesto & Narrative"},
        {"display_key": "A4", "stage_key": "visual_identity", "name": "Visual Identity"},
        {"display_key": "A5", "stage_key": "applications", "name": "Brand Applications"},
        {"display_key": "A6", "stage_key": "closing", "name": "Closing & Delivery"},
    ],
    "strategy": [
        {"display_key": "B1", "stage_key": "briefing", "name": "Briefing"},
        {"display_key": "B2", "stage_key": "insights", "name": "Consumer Insights"},
        {"display_key": "B3", "stage_key": "strategy", "name": "Competitive Strategy"},
        {"display_key": "B4", "stage_key": "cso", "name": "Cascade of Choices"},
        {"display_key": "B5", "stage_key": "metrics", "name": "Brand Metrics"},
        {"display_key": "B6", "stage_key": "narrative", "name": "Brand Narrative"},
        {"display_key": "B7", "stage_key": "integration", "name": "Integration & Verification"},
        {"display_key": "B8", "stage_key": "delivery", "name": "Strategy Pack Delivery"},
    ],
}

# Module order when several modules are enabled on one project
MODULE_ORDER = ("venture", "brand", "strategy")

ADHOC_STAGES: dict[str, dict] = {
    "voice": {"name": "Brand Voice", "module": "brand"},
    "tagline": {"name": "Tagline", "module": "brand"},
    "palette": {"name": "Color Palette", "module": "brand"},
    "typography": {"name": "Typography", "module": "brand"},
    "logo": {"name": "Logo", "module": "brand"},
}

STAGE_DEPENDENCIES: dict[str, list[str]] = {
    "venture_idea_validation": ["venture_intake"],
    "venture_buyer_persona": ["venture_idea_validation"],
    "venture_business_plan": ["venture_buyer_persona"],
}


def build_dependents(dependencies: dict[str, list[str]]) -> dict[str, list[str]]:
    """Invert a dependency map: prerequisite → stages that depend on it."""
    dependents: dict[str, list[str]] = defaultdict(list)
    for stage_key, prereqs in dependencies.items():
        for prereq in prereqs:
            dependents[prereq].append(stage_key)
    return dict(dependents)


STAGE_DEPENDENTS = build_dependents(STAGE_DEPENDENCIES)


# ── Lookups ──────────────────────────────────────────────────────────────────

def catalog_for_modules(modules) -> list[dict]:
    """
    Ordered stage definitions for the enabled modules.

    Returns:
        [{"display_key", "stage_key", "name", "module", "order"}, ...]
    """
    enabled = set(modules or ())
    definitions = []
    order = 1
    for module in MODULE_ORDER:
        if module not in enabled:
            continue
        for entry in STAGE_CATALOG[module]:
            definitions.append({**entry, "module": module, "order": order})
            order += 1
    return definitions


def find_definition(stage_key: str) -> dict | None:
    """Catalog (or ad-hoc) definition for a stage key or display key."""
    for module in MODULE_ORDER:
        for entry in STAGE_CATALOG[module]:
            if stage_key in (entry["stage_key"], entry["display_key"]):
                return {**entry, "module": module}
    adhoc = ADHOC_STAGES.get(stage_key)
    if adhoc:
        return {"display_key": None, "stage_key": stage_key, **adhoc}
    return None


def missing_dependencies(stage_key: str, completed_stage_keys) -> list[str]:
    """Prerequisites of ``stage_key`` that are not in ``completed_stage_keys``."""
    completed = set(completed_stage_keys or ())
    return [dep for dep in STAGE_DEPENDENCIES.get(stage_key, []) if dep not in completed]


def downstream_stages(stage_key: str, dependents: dict[str, list[str]] | None = None) -> list[str]:
    """
    Direct and transitive dependents of a stage, depth-first.

    A visited set guards against cycles in the dependency table; the
    starting stage itself is never returned.
    """
    graph = STAGE_DEPENDENTS if dependents is None else dependents
    visited = {stage_key}
    ordered: list[str] = []
    stack = list(reversed(graph.get(stage_key, [])))
    while stack:
        current = stack.pop()
        if current in visited:
            continue
        visited.add(current)
        ordered.append(current)
        stack.extend(reversed(graph.get(current, [])))
    return ordered
