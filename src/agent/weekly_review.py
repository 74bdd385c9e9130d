"""Weekly review page generation."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any

from agent.review_prompts import AgentReviewPromptsService
from agent.workspace import WorkspaceRepository
from models import Page
from time_utils import utc_now, week_key, week_label

logger = logging.getLogger(__name__)

CHECKLIST_ITEMS = (
    "Clear Inbox",
    "Update next actions for projects",
    "Review waiting items",
    "Review someday list",
    "Scan calendar and deadlines",
)
NO_QUESTIONS_TEXT = "No agent questions this week."


@dataclass(frozen=True)
class WeeklyReviewResult:
    """Outcome of ensuring a weekly review page."""

    status: str
    page: Page


def _text(value: str) -> dict[str, Any]:
    return {"type": "text", "text": value}


def _paragraph(value: str | None = None) -> dict[str, Any]:
    return {"type": "paragraph", "content": [_text(value)] if value else []}


def _heading(value: str) -> dict[str, Any]:
    return {"type": "heading", "attrs": {"level": 2}, "content": [_text(value)]}


def build_weekly_review_content(review_date: datetime, questions: list[str]) -> dict[str, Any]:
    """Build the weekly review document."""
    if questions:
        prompt_block: dict[str, Any] = {
            "type": "bulletList",
            "content": [
                {"type": "listItem", "content": [_paragraph(question)]}
                for question in questions
            ],
        }
    else:
        prompt_block = _paragraph(NO_QUESTIONS_TEXT)

    return {
        "type": "doc",
        "content": [
            _paragraph(f"Week of {week_label(review_date)}"),
            _heading("Weekly Review Checklist"),
            {
                "type": "taskList",
                "content": [
                    {
                        "type": "taskItem",
                        "attrs": {"checked": False},
                        "content": [_paragraph(item)],
                    }
                    for item in CHECKLIST_ITEMS
                ],
            },
            _heading("Weekly Summary"),
            _paragraph("Capture key wins, lessons, and what moved the needle."),
            _heading("Agent Questions"),
            prompt_block,
            _heading("Next Week Intentions"),
            _paragraph(),
            _heading("Notes"),
            _paragraph(),
        ],
    }


class WeeklyReviewService:
    """Create one weekly review page per user and week."""

    def __init__(
        self,
        workspace: WorkspaceRepository,
        review_prompts: AgentReviewPromptsService,
    ) -> None:
        self._workspace = workspace
        self._review_prompts = review_prompts

    def ensure_weekly_review_page(
        self,
        *,
        space_id: str,
        workspace_id: str,
        user_id: str,
        date: datetime | None = None,
    ) -> WeeklyReviewResult:
        """Return the existing page for the week or create it from pending prompts."""
        review_date = date or utc_now()
        key = week_key(review_date)
        title = f"Weekly Review {key}"

        existing = self._workspace.find_page_by_title(space_id, title, creator_id=user_id)
        if existing is not None:
            return WeeklyReviewResult(status="exists", page=existing)

        prompts = self._review_prompts.consume_pending(
            workspace_id=workspace_id,
            space_id=space_id,
            week_key=key,
            now=review_date,
        )
        page = self._workspace.create_page(
            workspace_id=workspace_id,
            space_id=space_id,
            title=title,
            creator_id=user_id,
            content=build_weekly_review_content(
                review_date,
                [prompt.question for prompt in prompts],
            ),
        )
        logger.info(
            "weekly review created: space_id=%s week_key=%s prompts=%s",
            space_id,
            key,
            len(prompts),
        )
        return WeeklyReviewResult(status="created", page=page)
