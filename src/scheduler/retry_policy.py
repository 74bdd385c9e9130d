"""Retry and backoff policy helpers for agent actions and scheduled jobs."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any

from config import settings

BACKOFF_STRATEGIES = frozenset({"fixed", "exponential", "none"})
TRANSIENT_MARKERS = (
    "timeout",
    "temporar",
    "rate limit",
    "rate-limit",
    "econn",
    "connection reset",
    "unavailable",
)


@dataclass(frozen=True)
class RetryPolicy:
    """Retry/backoff configuration for actions and scheduled jobs."""

    max_attempts: int
    backoff_strategy: str
    backoff_base_seconds: int

    @staticmethod
    def from_settings() -> "RetryPolicy":
        """Build a retry policy from scheduler settings."""
        scheduler_config = settings.scheduler
        return RetryPolicy(
            max_attempts=int(scheduler_config.default_max_attempts),
            backoff_strategy=str(scheduler_config.default_backoff_strategy),
            backoff_base_seconds=int(scheduler_config.backoff_base_seconds),
        )

    def delay_seconds(self, retry_count: int) -> int:
        """Return the backoff delay before the given retry."""
        return compute_backoff_delay_seconds(
            self.backoff_strategy,
            retry_count,
            self.backoff_base_seconds,
        )


def resolve_retry_policy(policy: RetryPolicy | None) -> RetryPolicy:
    """Return a validated retry policy, defaulting to settings when unset."""
    resolved = policy or RetryPolicy.from_settings()
    _validate_policy(resolved)
    return resolved


def should_retry(attempt_count: int, max_attempts: int) -> bool:
    """Return whether another retry attempt is permitted."""
    return int(attempt_count) < int(max_attempts)


def error_message(error: Any) -> str:
    """Extract a message from an exception, JSON-RPC error mapping, or string."""
    if error is None:
        return ""
    if isinstance(error, str):
        return error
    if isinstance(error, dict):
        message = error.get("message")
        if message:
            return str(message)
        nested = error.get("error")
        if isinstance(nested, dict):
            return str(nested.get("message") or "")
        return ""
    return str(getattr(error, "message", None) or error)


def is_transient_error(error: Any) -> bool:
    """Return True when the error message looks like a transient failure."""
    lowered = error_message(error).lower()
    return any(marker in lowered for marker in TRANSIENT_MARKERS)


def compute_retry_at(
    finished_at: datetime,
    retry_count: int,
    *,
    backoff_strategy: str,
    backoff_base_seconds: int,
) -> datetime:
    """Compute the next retry timestamp from policy inputs."""
    delay_seconds = compute_backoff_delay_seconds(
        backoff_strategy,
        retry_count,
        backoff_base_seconds,
    )
    return finished_at + timedelta(seconds=delay_seconds)


def compute_backoff_delay_seconds(
    backoff_strategy: str,
    retry_count: int,
    backoff_base_seconds: int,
) -> int:
    """Compute a retry delay in seconds for a given backoff strategy."""
    if retry_count <= 0:
        raise ValueError("retry_count must be >= 1.")
    if backoff_strategy not in BACKOFF_STRATEGIES:
        raise ValueError("backoff_strategy must be valid.")
    if backoff_base_seconds < 0:
        raise ValueError("backoff_base_seconds must be >= 0.")
    if backoff_strategy == "none":
        return 0
    if backoff_strategy == "fixed":
        return backoff_base_seconds
    return backoff_base_seconds * (2 ** (retry_count - 1))


def _validate_policy(policy: RetryPolicy) -> None:
    """Validate retry policy settings."""
    if policy.max_attempts < 1:
        raise ValueError("max_attempts must be >= 1.")
    if policy.backoff_strategy not in BACKOFF_STRATEGIES:
        raise ValueError("backoff_strategy must be valid.")
    if policy.backoff_base_seconds < 0:
        raise ValueError("backoff_base_seconds must be >= 0.")
