"""Policy evaluation for agent-proposed write actions."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Literal, Protocol

from agent.settings import AgentSettings

logger = logging.getLogger(__name__)

Decision = Literal["auto", "approval", "deny"]

METHOD_PERMISSIONS: dict[str, str] = {
    "task.create": "allow_task_writes",
    "task.update": "allow_task_writes",
    "page.create": "allow_page_writes",
    "project.create": "allow_project_writes",
    "research.create": "allow_research_writes",
}


class SensitivityClassifier(Protocol):
    """Protocol for static method sensitivity lookups."""

    def requires_approval(self, method: str) -> bool:
        """Return True when the method always needs an approval token."""
        ...


@dataclass(frozen=True)
class PolicyDecision:
    """Policy evaluation result for one method."""

    decision: Decision
    reason: str

    def log(self, method: str) -> None:
        """Emit a structured log entry for the policy decision."""
        logger.debug(
            "agent policy decision",
            extra={
                "method": method,
                "decision": self.decision,
                "reason": self.reason,
            },
        )


class AgentPolicyService:
    """Classify agent actions as auto-apply, approval-gated, or denied."""

    def __init__(self, classifier: SensitivityClassifier) -> None:
        """Initialize the evaluator with a sensitivity classifier."""
        self._classifier = classifier

    def evaluate(self, method: str, agent_settings: AgentSettings) -> PolicyDecision:
        """Return the first matching policy rule for the method."""
        decision = self._evaluate(method, agent_settings)
        decision.log(method)
        return decision

    def _evaluate(self, method: str, agent_settings: AgentSettings) -> PolicyDecision:
        permission = METHOD_PERMISSIONS.get(method)
        if permission is None:
            return PolicyDecision("deny", "unsupported-method")

        policy = agent_settings.policy
        deny = set(policy.deny)
        require_approval = set(policy.require_approval)
        allow_auto = set(policy.allow_auto_apply)

        if method in deny:
            return PolicyDecision("deny", "policy-deny")
        if not getattr(agent_settings, permission):
            return PolicyDecision("approval", "writes-disabled")
        if method in require_approval:
            return PolicyDecision("approval", "policy-approval")
        if self._classifier.requires_approval(method):
            return PolicyDecision("approval", "sensitive-method")
        if allow_auto and method not in allow_auto:
            return PolicyDecision("approval", "policy-approval")
        if method in allow_auto:
            return PolicyDecision("auto", "policy-auto")
        return PolicyDecision("auto", "writes-allowed")

    @staticmethod
    def is_supported_method(method: str) -> bool:
        """Return True when the method has a write permission mapping."""
        return method in METHOD_PERMISSIONS
