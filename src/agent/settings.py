"""Typed agent settings resolved from the workspace settings blob."""

from __future__ import annotations

from typing import Any, Mapping

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel, to_snake

_MODEL_CONFIG = ConfigDict(
    alias_generator=to_camel,
    populate_by_name=True,
    extra="ignore",
)


class AgentPolicyRules(BaseModel):
    """Per-workspace method lists consulted by the policy evaluator."""

    model_config = _MODEL_CONFIG

    allow_auto_apply: list[str] = Field(default_factory=list)
    require_approval: list[str] = Field(default_factory=list)
    deny: list[str] = Field(default_factory=list)


class AutonomySchedule(BaseModel):
    """Cadence configuration for autonomous loop runs."""

    model_config = _MODEL_CONFIG

    daily_enabled: bool = True
    daily_hour: int = Field(default=7, ge=0, le=23)
    weekly_enabled: bool = True
    weekly_day: int = Field(default=1, ge=0, le=6)
    monthly_enabled: bool = True
    monthly_day: int = Field(default=1, ge=1, le=31)
    timezone: str = "UTC"
    last_daily_run: str | None = None
    last_weekly_run: str | None = None
    last_weekly_review_run: str | None = None
    last_monthly_run: str | None = None

    @field_validator("timezone")
    @classmethod
    def default_timezone(cls, value: str | None) -> str:
        """Treat blank timezones as UTC."""
        return value or "UTC"


class SpaceOverride(BaseModel):
    """Partial schedule override for one space."""

    model_config = _MODEL_CONFIG

    autonomy_schedule: dict[str, Any] | None = None


class AgentSettings(BaseModel):
    """Agent feature toggles, write permissions, policy and schedule."""

    model_config = _MODEL_CONFIG

    policy: AgentPolicyRules = Field(default_factory=AgentPolicyRules)
    enabled: bool = True
    enable_daily_summary: bool = True
    enable_auto_triage: bool = True
    enable_memory_auto_ingest: bool = True
    enable_activity_tracking: bool = True
    enable_goal_auto_link: bool = True
    enable_planner_loop: bool = True
    enable_proactive_questions: bool = True
    enable_autonomous_loop: bool = False
    enable_memory_insights: bool = True
    allow_agent_chat: bool = True
    allow_task_writes: bool = False
    allow_page_writes: bool = False
    allow_project_writes: bool = False
    allow_goal_writes: bool = False
    allow_research_writes: bool = False
    chat_draft_limit: int = 300
    autonomy_schedule: AutonomySchedule = Field(default_factory=AutonomySchedule)
    space_overrides: dict[str, SpaceOverride] = Field(default_factory=dict)

    def schedule_for_space(self, space_id: str) -> AutonomySchedule:
        """Return the workspace schedule overlaid with the space override."""
        override = self.space_overrides.get(space_id)
        if override is None or not override.autonomy_schedule:
            return self.autonomy_schedule
        merged = self.autonomy_schedule.model_dump()
        merged.update(_snake_keys(override.autonomy_schedule))
        return AutonomySchedule.model_validate(merged)

    def has_schedule_override(self, space_id: str) -> bool:
        """Return True when the space carries its own schedule override."""
        override = self.space_overrides.get(space_id)
        return bool(override and override.autonomy_schedule)


def _snake_keys(values: Mapping[str, Any]) -> dict[str, Any]:
    return {to_snake(key): value for key, value in values.items()}


def resolve_agent_settings(workspace_settings: Mapping[str, Any] | None) -> AgentSettings:
    """Resolve the ``agent`` section of a workspace blob over the defaults.

    Unknown keys are ignored and missing keys fall back to defaults, so partial
    blobs written by older clients resolve cleanly.
    """
    section = (workspace_settings or {}).get("agent") or {}
    return AgentSettings.model_validate(section)


def dump_agent_settings(agent_settings: AgentSettings) -> dict[str, Any]:
    """Serialize settings back to the stored camelCase blob."""
    return agent_settings.model_dump(by_alias=True, exclude_none=True)


def merge_agent_settings(
    workspace_settings: Mapping[str, Any] | None,
    patch: Mapping[str, Any],
) -> dict[str, Any]:
    """Return a new workspace blob with ``patch`` applied to the agent section.

    Patch keys may be snake_case or camelCase; the stored blob is camelCase.
    Values for ``autonomySchedule`` and ``spaceOverrides`` replace the stored
    ones wholesale.
    """
    blob = dict(workspace_settings or {})
    agent = dict(blob.get("agent") or {})
    for key, value in patch.items():
        agent[to_camel(key)] = value
    # Validate before storing.
    resolved = AgentSettings.model_validate(agent)
    blob["agent"] = dump_agent_settings(resolved)
    return blob
