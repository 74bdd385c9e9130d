"""Error types raised across the agent pipeline."""

from __future__ import annotations

from typing import Any


class AgentError(Exception):
    """Base class for agent errors carrying a stable code."""

    code = "AGENT_ERROR"
    http_status = 500

    def __init__(self, message: str, *, data: dict[str, Any] | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.data = data or {}


class AgentValidationError(AgentError):
    """Raised when request parameters fail validation."""

    code = "INVALID_PARAMS"
    http_status = 400


class AgentAccessError(AgentError):
    """Raised when the agent is disabled or the caller lacks access."""

    code = "FORBIDDEN"
    http_status = 403


class AgentNotFoundError(AgentError):
    """Raised when a referenced record does not exist."""

    code = "NOT_FOUND"
    http_status = 404
