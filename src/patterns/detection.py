"""Pattern evaluators over research pages, graph edges and tasks.

Each evaluator checks for an existing live detection by a dedup key stored in
``details`` before creating a new one, so repeated runs only report new
conditions. Graph failures for a single page are skipped; a failing
evaluator is logged and the remaining rules still run.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Any, Callable

from agent.workspace import WorkspaceRepository
from models import Page
from patterns.graph import ResearchGraph
from patterns.repository import PatternDetectionRepository, PatternRecord
from patterns.rules import IntelligenceSettings, PatternRule
from time_utils import isoformat_utc, to_utc, utc_now

logger = logging.getLogger(__name__)

OPEN_QUESTION_LABELS = ("open-question", "open question")

Evaluator = Callable[[str, dict[str, Any], datetime], list[PatternRecord]]


def _page_metadata(page: Page) -> dict[str, Any]:
    metadata = page.page_metadata
    return metadata if isinstance(metadata, dict) else {}


class PatternDetectionService:
    """Run the configured pattern rules for a workspace."""

    def __init__(
        self,
        workspace: WorkspaceRepository,
        graph: ResearchGraph,
        patterns: PatternDetectionRepository,
    ) -> None:
        """Initialize the service with its collaborators."""
        self._workspace = workspace
        self._graph = graph
        self._patterns = patterns
        self._evaluators: dict[str, Evaluator] = {
            "convergence": self._detect_convergence,
            "contradiction": self._detect_contradictions,
            "staleness": self._detect_staleness,
            "cross_domain": self._detect_cross_domain,
            "untested_implication": self._detect_untested_implications,
            "intake_gate": self._detect_intake_gate_violations,
            "evidence_gap": self._detect_evidence_gaps,
            "reproduction_failure": self._detect_reproduction_failures,
        }

    def run_all_patterns(
        self,
        workspace_id: str,
        settings: IntelligenceSettings,
        *,
        now: datetime | None = None,
    ) -> int:
        """Run every configured rule and return the number of new detections."""
        return len(self.detect(workspace_id, settings, now=now))

    def detect(
        self,
        workspace_id: str,
        settings: IntelligenceSettings,
        *,
        now: datetime | None = None,
    ) -> list[PatternRecord]:
        """Run every configured rule and return the new detections in rule order."""
        current = to_utc(now or utc_now())
        created: list[PatternRecord] = []
        for rule in settings.pattern_rules:
            try:
                created.extend(self.run_rule(workspace_id, rule, now=current))
            except Exception as exc:
                logger.warning(
                    "pattern evaluator failed: rule=%s workspace_id=%s error=%s",
                    rule.type,
                    workspace_id,
                    exc,
                )
        return created

    def run_rule(
        self,
        workspace_id: str,
        rule: PatternRule,
        *,
        now: datetime | None = None,
    ) -> list[PatternRecord]:
        """Run one rule; unknown rule types log and detect nothing."""
        evaluator = self._evaluators.get(rule.type)
        if evaluator is None:
            logger.warning("Unknown pattern type: %s", rule.type)
            return []
        return evaluator(workspace_id, rule.params, to_utc(now or utc_now()))

    def _create_once(
        self,
        workspace_id: str,
        pattern_type: str,
        key: str,
        *,
        severity: str,
        title: str,
        details: dict[str, Any],
        now: datetime,
    ) -> PatternRecord | None:
        existing = self._patterns.find_existing_pattern(
            workspace_id, pattern_type, key, details[key]
        )
        if existing is not None:
            return None
        return self._patterns.create(
            workspace_id=workspace_id,
            pattern_type=pattern_type,
            severity=severity,
            title=title,
            details=details,
            now=now,
        )

    def _detect_convergence(
        self, workspace_id: str, params: dict[str, Any], now: datetime
    ) -> list[PatternRecord]:
        threshold = params.get("threshold") or 3
        created = []
        for hypothesis in self._workspace.list_pages_by_type(workspace_id, ["hypothesis"]):
            try:
                evidence = self._graph.get_evidence_chain(hypothesis.id)
            except Exception as exc:
                logger.debug("graph lookup failed: page_id=%s error=%s", hypothesis.id, exc)
                continue
            count = len(evidence.supporting)
            if count < threshold:
                continue
            record = self._create_once(
                workspace_id,
                "convergence",
                "hypothesisId",
                severity="medium",
                title=(
                    f'Convergence: "{hypothesis.title}" has {count} validating experiments'
                ),
                details={
                    "hypothesisId": hypothesis.id,
                    "hypothesisTitle": hypothesis.title,
                    "validatingCount": count,
                    "experimentIds": [edge.from_id for edge in evidence.supporting],
                },
                now=now,
            )
            if record:
                created.append(record)
        return created

    def _detect_contradictions(
        self, workspace_id: str, params: dict[str, Any], now: datetime
    ) -> list[PatternRecord]:
        try:
            edges = self._graph.find_contradictions(workspace_id)
        except Exception as exc:
            logger.debug("graph lookup failed: workspace_id=%s error=%s", workspace_id, exc)
            return []
        created = []
        for edge in edges:
            edge_key = f"{edge.from_id}-{edge.to_id}"
            if self._patterns.find_existing_pattern(
                workspace_id, "contradiction", "edgeKey", edge_key
            ):
                continue
            titles = self._workspace.page_titles([edge.from_id, edge.to_id])
            from_title = titles.get(edge.from_id, "Unknown")
            to_title = titles.get(edge.to_id, "Unknown")
            created.append(
                self._patterns.create(
                    workspace_id=workspace_id,
                    pattern_type="contradiction",
                    severity="high",
                    title=f'Contradiction: "{from_title}" contradicts "{to_title}"',
                    details={
                        "edgeKey": edge_key,
                        "fromPageId": edge.from_id,
                        "toPageId": edge.to_id,
                        "fromTitle": from_title,
                        "toTitle": to_title,
                    },
                    now=now,
                )
            )
        return created

    def _detect_staleness(
        self, workspace_id: str, params: dict[str, Any], now: datetime
    ) -> list[PatternRecord]:
        max_age_days = params.get("maxAgeDays") or 14
        cutoff = now - timedelta(days=max_age_days)
        tasks = self._workspace.list_labelled_tasks(
            workspace_id,
            OPEN_QUESTION_LABELS,
            exclude_done=True,
            updated_before=cutoff,
        )
        created = []
        for task in tasks:
            updated_at = to_utc(task.updated_at)
            days = int((now - updated_at).total_seconds() // 86400)
            record = self._create_once(
                workspace_id,
                "staleness",
                "taskId",
                severity="low",
                title=f'Stale question: "{task.title}" ({days} days inactive)',
                details={
                    "taskId": task.id,
                    "taskTitle": task.title,
                    "daysSinceUpdate": days,
                    "lastUpdated": isoformat_utc(updated_at),
                },
                now=now,
            )
            if record:
                created.append(record)
        return created

    def _detect_cross_domain(
        self, workspace_id: str, params: dict[str, Any], now: datetime
    ) -> list[PatternRecord]:
        groups: dict[str, list[Page]] = {}
        for page in self._workspace.list_pages_by_type(
            workspace_id, ["hypothesis", "experiment"]
        ):
            for tag in _page_metadata(page).get("domainTags") or []:
                groups.setdefault(str(tag), []).append(page)

        created = []
        domains = list(groups)
        for index, domain_a in enumerate(domains):
            for domain_b in domains[index + 1 :]:
                pair_key = "|".join(sorted((domain_a, domain_b)))
                b_ids = {page.id for page in groups[domain_b]}
                for page in groups[domain_a]:
                    if page.id in b_ids:
                        continue
                    try:
                        related = self._graph.get_related_pages(
                            page.id, max_depth=1, workspace_id=workspace_id
                        )
                    except Exception as exc:
                        logger.debug("graph lookup failed: page_id=%s error=%s", page.id, exc)
                        continue
                    links = [node for node in related if node.id in b_ids]
                    if not links:
                        continue
                    record = self._create_once(
                        workspace_id,
                        "cross_domain",
                        "domainPair",
                        severity="medium",
                        title=f'Cross-domain connection: "{domain_a}" <-> "{domain_b}"',
                        details={
                            "domainPair": pair_key,
                            "domainA": domain_a,
                            "domainB": domain_b,
                            "connections": [
                                {
                                    "fromId": page.id,
                                    "fromTitle": page.title,
                                    "toId": node.id,
                                    "toTitle": node.title,
                                }
                                for node in links
                            ],
                        },
                        now=now,
                    )
                    if record:
                        created.append(record)
                    # One detection per domain pair.
                    break
        return created

    def _detect_untested_implications(
        self, workspace_id: str, params: dict[str, Any], now: datetime
    ) -> list[PatternRecord]:
        validated = [
            page
            for page in self._workspace.list_pages_by_type(workspace_id, ["hypothesis"])
            if _page_metadata(page).get("status") == "validated"
        ]
        created = []
        for hypothesis in validated:
            try:
                outgoing = self._graph.get_relationships(
                    hypothesis.id, direction="outgoing", types=["EXTENDS"]
                )
                for edge in outgoing:
                    evidence = self._graph.get_evidence_chain(edge.to_id)
                    if evidence.supporting or evidence.testing:
                        continue
                    target_title = self._workspace.page_titles([edge.to_id]).get(
                        edge.to_id, "Unknown"
                    )
                    record = self._create_once(
                        workspace_id,
                        "untested_implication",
                        "targetHypothesisId",
                        severity="medium",
                        title=(
                            f'Untested implication: "{target_title}" extends from validated '
                            f'"{hypothesis.title}" but has no tests'
                        ),
                        details={
                            "targetHypothesisId": edge.to_id,
                            "targetTitle": target_title,
                            "sourceHypothesisId": hypothesis.id,
                            "sourceTitle": hypothesis.title,
                        },
                        now=now,
                    )
                    if record:
                        created.append(record)
            except Exception as exc:
                logger.debug("graph lookup failed: page_id=%s error=%s", hypothesis.id, exc)
        return created

    def _detect_intake_gate_violations(
        self, workspace_id: str, params: dict[str, Any], now: datetime
    ) -> list[PatternRecord]:
        created = []
        for hypothesis in self._workspace.list_pages_by_type(workspace_id, ["hypothesis"]):
            metadata = _page_metadata(hypothesis)
            if metadata.get("claimLabel") != "proved":
                continue
            if metadata.get("intakeGateCompleted") is True:
                continue
            record = self._create_once(
                workspace_id,
                "intake_gate",
                "hypothesisId",
                severity="high",
                title=(
                    f'Intake gate violation: "{hypothesis.title}" marked as PROVED '
                    "without completed checklist"
                ),
                details={
                    "hypothesisId": hypothesis.id,
                    "hypothesisTitle": hypothesis.title,
                    "claimLabel": "proved",
                    "intakeGateCompleted": False,
                },
                now=now,
            )
            if record:
                created.append(record)
        return created

    def _detect_evidence_gaps(
        self, workspace_id: str, params: dict[str, Any], now: datetime
    ) -> list[PatternRecord]:
        min_experiments = params.get("minExperiments") or 1
        created = []
        for paper in self._workspace.list_pages_by_type(workspace_id, ["paper"]):
            try:
                outgoing = self._graph.get_relationships(
                    paper.id, direction="outgoing", types=["CITES", "FORMALIZES"]
                )
                for edge in outgoing:
                    evidence = self._graph.get_evidence_chain(edge.to_id)
                    experiments = len(evidence.supporting) + len(evidence.testing)
                    if experiments >= min_experiments:
                        continue
                    target_title = self._workspace.page_titles([edge.to_id]).get(
                        edge.to_id, "Unknown"
                    )
                    record = self._create_once(
                        workspace_id,
                        "evidence_gap",
                        "edgeKey",
                        severity="medium",
                        title=(
                            f'Evidence gap: "{paper.title}" references "{target_title}" '
                            f"which has {experiments} experiments (needs {min_experiments})"
                        ),
                        details={
                            "edgeKey": f"{paper.id}-{edge.to_id}",
                            "paperPageId": paper.id,
                            "paperTitle": paper.title,
                            "targetPageId": edge.to_id,
                            "targetTitle": target_title,
                            "experimentCount": experiments,
                            "requiredExperiments": min_experiments,
                        },
                        now=now,
                    )
                    if record:
                        created.append(record)
            except Exception as exc:
                logger.debug("graph lookup failed: page_id=%s error=%s", paper.id, exc)
        return created

    def _detect_reproduction_failures(
        self, workspace_id: str, params: dict[str, Any], now: datetime
    ) -> list[PatternRecord]:
        created = []
        for experiment in self._workspace.list_pages_by_type(workspace_id, ["experiment"]):
            try:
                incoming = self._graph.get_relationships(
                    experiment.id, direction="incoming", types=["FAILS_TO_REPRODUCE"]
                )
            except Exception as exc:
                logger.debug("graph lookup failed: page_id=%s error=%s", experiment.id, exc)
                continue
            if not incoming:
                continue
            record = self._create_once(
                workspace_id,
                "reproduction_failure",
                "experimentId",
                severity="high",
                title=(
                    f'Reproduction failure: "{experiment.title}" has {len(incoming)} '
                    "failed reproduction attempt(s)"
                ),
                details={
                    "experimentId": experiment.id,
                    "experimentTitle": experiment.title,
                    "failedReproductionCount": len(incoming),
                    "failedByIds": [edge.from_id for edge in incoming],
                },
                now=now,
            )
            if record:
                created.append(record)
        return created
