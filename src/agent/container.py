"""Wire agent and pattern components over one session factory."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Callable

from sqlalchemy.orm import Session

from agent.approvals import ApprovalLedger
from agent.dispatch import RequestProcessor
from agent.events import EventOutbox
from agent.executor import ActionExecutor
from agent.handoff import AgentHandoffService
from agent.loop import AgentLoopService
from agent.memory import AgentMemoryService, MemoryContextBuilder, MemoryProjection
from agent.planner import AgentPlannerService
from agent.policy import AgentPolicyService
from agent.review_prompts import AgentReviewPromptsService
from agent.scheduler import AgentLoopScheduler
from agent.service import AgentService
from agent.triage import TriageService
from agent.weekly_review import WeeklyReviewService
from agent.workspace import WorkspaceRepository
from config import AgentRuntimeConfig
from llm import TextGenerator
from maintenance.trash_retention import TrashRetentionService
from patterns.actions import PatternActionService
from patterns.detection import PatternDetectionService
from patterns.graph import RelationalResearchGraph
from patterns.jobs import PatternDetectionJob
from patterns.repository import PatternDetectionRepository


@dataclass
class AgentComponents:
    """Services shared by the HTTP surface and the background tasks."""

    runtime: AgentRuntimeConfig
    workspace: WorkspaceRepository
    events: EventOutbox
    memory: AgentMemoryService
    approvals: ApprovalLedger
    policy: AgentPolicyService
    processor: RequestProcessor
    executor: ActionExecutor
    review_prompts: AgentReviewPromptsService
    loop: AgentLoopService
    planner: AgentPlannerService
    weekly_review: WeeklyReviewService
    scheduler: AgentLoopScheduler
    agent: AgentService
    handoff: AgentHandoffService
    graph: RelationalResearchGraph
    patterns: PatternDetectionRepository
    pattern_detection: PatternDetectionService
    pattern_actions: PatternActionService
    pattern_job: PatternDetectionJob
    trash: TrashRetentionService


def build_agent_components(
    session_factory: Callable[[], Session],
    llm: TextGenerator,
    runtime: AgentRuntimeConfig | None = None,
) -> AgentComponents:
    """Build every component and register the memory projection on the outbox."""
    runtime = runtime or AgentRuntimeConfig.from_settings()
    workspace = WorkspaceRepository(session_factory)
    events = EventOutbox(session_factory)
    memory = AgentMemoryService(session_factory)
    MemoryProjection(memory).register(events)
    memory_context = MemoryContextBuilder(memory)
    triage = TriageService(workspace)
    approvals = ApprovalLedger(session_factory)
    policy = AgentPolicyService(approvals)
    processor = RequestProcessor(workspace, policy, approvals)
    executor = ActionExecutor(workspace, policy, approvals, processor, events)
    review_prompts = AgentReviewPromptsService(session_factory)
    loop = AgentLoopService(
        workspace,
        triage,
        memory_context,
        review_prompts,
        executor,
        events,
        llm,
        runtime,
    )
    planner = AgentPlannerService(
        workspace,
        memory,
        memory_context,
        triage,
        review_prompts,
        events,
        llm,
        runtime,
    )
    weekly_review = WeeklyReviewService(workspace, review_prompts)
    graph = RelationalResearchGraph(session_factory)
    patterns = PatternDetectionRepository(session_factory)
    pattern_detection = PatternDetectionService(workspace, graph, patterns)
    pattern_actions = PatternActionService(workspace, events)
    return AgentComponents(
        runtime=runtime,
        workspace=workspace,
        events=events,
        memory=memory,
        approvals=approvals,
        policy=policy,
        processor=processor,
        executor=executor,
        review_prompts=review_prompts,
        loop=loop,
        planner=planner,
        weekly_review=weekly_review,
        scheduler=AgentLoopScheduler(workspace, loop, weekly_review),
        agent=AgentService(workspace, memory, triage, llm),
        handoff=AgentHandoffService(session_factory),
        graph=graph,
        patterns=patterns,
        pattern_detection=pattern_detection,
        pattern_actions=pattern_actions,
        pattern_job=PatternDetectionJob(workspace, pattern_detection, pattern_actions),
        trash=TrashRetentionService(session_factory, runtime, approvals),
    )
