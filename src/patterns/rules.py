"""Workspace intelligence settings and the pattern rules they configure."""

from __future__ import annotations

from typing import Any, Literal, Mapping

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

PatternAction = Literal["notify", "flag", "surface", "create_task"]

_MODEL_CONFIG = ConfigDict(
    alias_generator=to_camel,
    populate_by_name=True,
    extra="ignore",
)


class PatternRule(BaseModel):
    """One evaluator to run and the action its detections trigger."""

    model_config = _MODEL_CONFIG

    type: str
    condition: str = ""
    params: dict[str, Any] = Field(default_factory=dict)
    action: str = "flag"


DEFAULT_PATTERN_RULES: tuple[dict[str, Any], ...] = (
    {
        "type": "convergence",
        "condition": "3+ experiments validate same hypothesis",
        "params": {"threshold": 3},
        "action": "notify",
    },
    {
        "type": "contradiction",
        "condition": "Experiments with CONTRADICTS edges exist",
        "params": {},
        "action": "flag",
    },
    {
        "type": "staleness",
        "condition": "Open question with no activity in 14 days",
        "params": {"maxAgeDays": 14},
        "action": "surface",
    },
    {
        "type": "cross_domain",
        "condition": "Linked pages across different domain tags",
        "params": {},
        "action": "surface",
    },
    {
        "type": "untested_implication",
        "condition": "Validated hypothesis extends to untested hypothesis",
        "params": {},
        "action": "create_task",
    },
)

DEFAULT_EDGE_TYPES = (
    "VALIDATES",
    "CONTRADICTS",
    "EXTENDS",
    "INSPIRED_BY",
    "USES_DATA_FROM",
    "FORMALIZES",
    "TESTS_HYPOTHESIS",
    "SPAWNED_FROM",
    "SUPERSEDES",
    "CITES",
    "REPLICATES",
    "FAILS_TO_REPRODUCE",
)


def _default_rules() -> list[PatternRule]:
    return [PatternRule.model_validate(rule) for rule in DEFAULT_PATTERN_RULES]


class IntelligenceSettings(BaseModel):
    """Resolved ``intelligence`` section of a workspace settings blob."""

    model_config = _MODEL_CONFIG

    enabled: bool = False
    profile_type: str = "research"
    pattern_rules: list[PatternRule] = Field(default_factory=_default_rules)
    edge_types: list[str] = Field(default_factory=lambda: list(DEFAULT_EDGE_TYPES))

    def rule_for(self, pattern_type: str) -> PatternRule | None:
        """Return the first configured rule of a type."""
        for rule in self.pattern_rules:
            if rule.type == pattern_type:
                return rule
        return None


def resolve_intelligence_settings(
    workspace_settings: Mapping[str, Any] | None,
) -> IntelligenceSettings:
    """Resolve the intelligence section over the research profile defaults.

    A stored ``patternRules`` list replaces the default rules wholesale.
    """
    section = (workspace_settings or {}).get("intelligence") or {}
    return IntelligenceSettings.model_validate(section)
