"""Celery entry point for the agent's scheduled jobs."""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any

from celery import Celery

from agent.container import AgentComponents, build_agent_components
from config import settings
from llm import LLMClient
from scheduler.recurrence import RecurringTask, build_beat_schedule
from scheduler.retry_policy import RetryPolicy
from services.database import get_sync_session

LOGGER = logging.getLogger(__name__)

celery_app = Celery("agent.scheduler")
celery_app.conf.broker_url = settings.celery.broker_url
celery_app.conf.result_backend = settings.celery.result_backend
celery_app.conf.task_default_queue = settings.celery.queue_name
celery_app.conf.task_serializer = "json"
celery_app.conf.result_serializer = "json"
celery_app.conf.accept_content = ["json"]
celery_app.conf.enable_utc = True
celery_app.conf.timezone = "UTC"

RECURRING_TASKS = [
    RecurringTask(
        name="agent.cadence_checks",
        task="agent.run_cadence_checks",
        cron="0 * * * *",
    ),
    RecurringTask(
        name="maintenance.trash_retention",
        task="maintenance.purge_trash",
        cron="0 3 * * *",
    ),
    RecurringTask(
        name="agent.planner_loop",
        task="agent.run_planner_loop",
        cron="0 8,14 * * *",
    ),
    RecurringTask(
        name="patterns.enqueue_detection",
        task="patterns.enqueue_detection",
        cron=settings.patterns.scan_cron,
    ),
    RecurringTask(
        name="agent.deliver_events",
        task="agent.deliver_events",
        cron="*/5 * * * *",
    ),
]

beat_schedule = celery_app.conf.get("beat_schedule")
if beat_schedule is None:
    beat_schedule = {}
beat_schedule.update(build_beat_schedule(RECURRING_TASKS))
celery_app.conf.beat_schedule = beat_schedule

PATTERN_RETRY_POLICY = RetryPolicy(
    max_attempts=settings.patterns.max_retries + 1,
    backoff_strategy="exponential",
    backoff_base_seconds=settings.patterns.backoff_base_seconds,
)

_COMPONENTS: AgentComponents | None = None


def _session_factory():
    """Return a new synchronous SQLAlchemy session for scheduled tasks."""
    return get_sync_session()


def get_components() -> AgentComponents:
    """Build the worker's components on first use."""
    global _COMPONENTS
    if _COMPONENTS is None:
        _COMPONENTS = build_agent_components(_session_factory, LLMClient())
    return _COMPONENTS


def _now() -> datetime:
    return datetime.now(timezone.utc)


@celery_app.task(name="agent.run_cadence_checks")
def run_cadence_checks() -> dict[str, int]:
    """Hourly beat job running due autonomy loops and weekly reviews."""
    acted = get_components().scheduler.run_cadence_checks(_now())
    LOGGER.info("Cadence checks completed: spaces=%s", acted)
    return {"spaces": acted}


@celery_app.task(name="agent.run_planner_loop")
def run_planner_loop() -> dict[str, int]:
    """Twice-daily beat job refreshing plans for every space."""
    processed = get_components().planner.run_planner_loop(now=_now())
    return {"spaces": processed}


@celery_app.task(name="maintenance.purge_trash")
def purge_trash() -> dict[str, int]:
    """Nightly beat job removing trashed rows past retention."""
    result = get_components().trash.purge(now=_now())
    return {
        "tasks": result.tasks,
        "pages": result.pages,
        "edges": result.edges,
        "patterns": result.patterns,
        "approvals": result.approvals,
    }


@celery_app.task(name="agent.deliver_events")
def deliver_events() -> dict[str, int]:
    """Redeliver outbox events whose retry time has passed."""
    report = get_components().events.deliver_pending(now=_now())
    return {"delivered": report.delivered, "failed": report.failed}


@celery_app.task(name="patterns.enqueue_detection")
def enqueue_pattern_detection() -> dict[str, int]:
    """Enqueue one detection job per intelligence-enabled workspace."""
    workspace_ids = get_components().pattern_job.enabled_workspace_ids()
    for workspace_id in workspace_ids:
        detect_patterns.apply_async(args=[workspace_id])
    LOGGER.info("Pattern detection enqueued: workspaces=%s", len(workspace_ids))
    return {"enqueued": len(workspace_ids)}


@celery_app.task(
    bind=True,
    name="patterns.detect",
    acks_late=True,
    max_retries=PATTERN_RETRY_POLICY.max_attempts - 1,
)
def detect_patterns(self, workspace_id: str) -> dict[str, Any]:
    """Run pattern detection for one workspace, retrying with exponential backoff."""
    try:
        detected = get_components().pattern_job.process(workspace_id, now=_now())
    except Exception as exc:
        countdown = PATTERN_RETRY_POLICY.delay_seconds(self.request.retries + 1)
        LOGGER.warning(
            "Pattern detection failed: workspace=%s retry_in=%ss error=%s",
            workspace_id,
            countdown,
            exc,
        )
        raise self.retry(exc=exc, countdown=countdown)
    return {"workspace_id": workspace_id, "detected": detected}
