"""Unit tests for research pattern evaluators."""

from __future__ import annotations

from datetime import timedelta

from agent.workspace import WorkspaceRepository
from patterns.detection import PatternDetectionService
from patterns.graph import RelationalResearchGraph
from patterns.repository import PatternDetectionRepository
from patterns.rules import PatternRule, resolve_intelligence_settings


def _service(factory) -> tuple[PatternDetectionService, PatternDetectionRepository]:
    patterns = PatternDetectionRepository(factory)
    service = PatternDetectionService(
        WorkspaceRepository(factory),
        RelationalResearchGraph(factory),
        patterns,
    )
    return service, patterns


def test_convergence_detects_validated_hypothesis_once(
    sqlite_session_factory, seed, fixed_now
) -> None:
    """Three validating experiments produce one convergence detection across runs."""
    workspace = seed.workspace()
    space = seed.space(workspace.id)
    hypothesis = seed.page(workspace.id, space.id, "Sleep helps recall", page_type="hypothesis")
    for index in range(3):
        experiment = seed.page(
            workspace.id, space.id, f"Experiment {index}", page_type="experiment"
        )
        seed.edge(workspace.id, experiment.id, hypothesis.id, "VALIDATES")
    service, _ = _service(sqlite_session_factory)
    rule = PatternRule(type="convergence", params={"threshold": 3})

    first = service.run_rule(workspace.id, rule, now=fixed_now)
    second = service.run_rule(workspace.id, rule, now=fixed_now)

    assert len(first) == 1
    assert first[0].severity == "medium"
    assert first[0].title == 'Convergence: "Sleep helps recall" has 3 validating experiments'
    assert first[0].details["validatingCount"] == 3
    assert second == []


def test_convergence_below_threshold_detects_nothing(
    sqlite_session_factory, seed, fixed_now
) -> None:
    """Fewer validating edges than the threshold are ignored."""
    workspace = seed.workspace()
    space = seed.space(workspace.id)
    hypothesis = seed.page(workspace.id, space.id, "H", page_type="hypothesis")
    experiment = seed.page(workspace.id, space.id, "E", page_type="experiment")
    seed.edge(workspace.id, experiment.id, hypothesis.id, "VALIDATES")
    service, _ = _service(sqlite_session_factory)

    created = service.run_rule(workspace.id, PatternRule(type="convergence"), now=fixed_now)

    assert created == []


def test_contradiction_uses_page_titles(sqlite_session_factory, seed, fixed_now) -> None:
    """Contradicting edges are reported as high severity with both titles."""
    workspace = seed.workspace()
    space = seed.space(workspace.id)
    left = seed.page(workspace.id, space.id, "Run A", page_type="experiment")
    right = seed.page(workspace.id, space.id, "Run B", page_type="experiment")
    seed.edge(workspace.id, left.id, right.id, "CONTRADICTS")
    service, _ = _service(sqlite_session_factory)

    created = service.run_rule(workspace.id, PatternRule(type="contradiction"), now=fixed_now)

    assert len(created) == 1
    assert created[0].severity == "high"
    assert created[0].title == 'Contradiction: "Run A" contradicts "Run B"'
    assert created[0].details["edgeKey"] == f"{left.id}-{right.id}"


def test_staleness_reports_inactive_open_questions(
    sqlite_session_factory, seed, fixed_now
) -> None:
    """Open-question tasks untouched past the window are surfaced with their age."""
    workspace = seed.workspace()
    space = seed.space(workspace.id)
    stale = seed.task(
        workspace.id,
        space.id,
        "Why does batch 3 drift?",
        labels=["Open-Question"],
        updated_at=fixed_now - timedelta(days=20),
    )
    seed.task(
        workspace.id,
        space.id,
        "Recent question",
        labels=["open question"],
        updated_at=fixed_now - timedelta(days=2),
    )
    seed.task(
        workspace.id,
        space.id,
        "Answered question",
        labels=["open-question"],
        status="done",
        updated_at=fixed_now - timedelta(days=40),
    )
    service, _ = _service(sqlite_session_factory)

    created = service.run_rule(
        workspace.id,
        PatternRule(type="staleness", params={"maxAgeDays": 14}),
        now=fixed_now,
    )

    assert [record.details["taskId"] for record in created] == [stale.id]
    assert created[0].severity == "low"
    assert created[0].title == 'Stale question: "Why does batch 3 drift?" (20 days inactive)'


def test_cross_domain_reports_one_detection_per_pair(
    sqlite_session_factory, seed, fixed_now
) -> None:
    """Linked pages in different domains are reported once per domain pair."""
    workspace = seed.workspace()
    space = seed.space(workspace.id)
    bio_one = seed.page(
        workspace.id,
        space.id,
        "Bio 1",
        page_type="hypothesis",
        page_metadata={"domainTags": ["bio"]},
        created_at=fixed_now - timedelta(days=3),
    )
    bio_two = seed.page(
        workspace.id,
        space.id,
        "Bio 2",
        page_type="hypothesis",
        page_metadata={"domainTags": ["bio"]},
        created_at=fixed_now - timedelta(days=2),
    )
    ml_page = seed.page(
        workspace.id,
        space.id,
        "ML 1",
        page_type="experiment",
        page_metadata={"domainTags": ["ml"]},
        created_at=fixed_now - timedelta(days=1),
    )
    seed.edge(workspace.id, bio_one.id, ml_page.id, "INSPIRED_BY")
    seed.edge(workspace.id, ml_page.id, bio_two.id, "USES_DATA_FROM")
    service, _ = _service(sqlite_session_factory)

    created = service.run_rule(workspace.id, PatternRule(type="cross_domain"), now=fixed_now)

    assert len(created) == 1
    assert created[0].title == 'Cross-domain connection: "bio" <-> "ml"'
    assert created[0].details["domainPair"] == "bio|ml"


def test_untested_implication_skips_tested_targets(
    sqlite_session_factory, seed, fixed_now
) -> None:
    """Only extended hypotheses without evidence are reported."""
    workspace = seed.workspace()
    space = seed.space(workspace.id)
    source = seed.page(
        workspace.id,
        space.id,
        "Base claim",
        page_type="hypothesis",
        page_metadata={"status": "validated"},
    )
    untested = seed.page(workspace.id, space.id, "Follow-up", page_type="hypothesis")
    tested = seed.page(workspace.id, space.id, "Covered", page_type="hypothesis")
    probe = seed.page(workspace.id, space.id, "Probe", page_type="experiment")
    seed.edge(workspace.id, source.id, untested.id, "EXTENDS")
    seed.edge(workspace.id, source.id, tested.id, "EXTENDS")
    seed.edge(workspace.id, probe.id, tested.id, "TESTS_HYPOTHESIS")
    service, _ = _service(sqlite_session_factory)

    created = service.run_rule(
        workspace.id, PatternRule(type="untested_implication"), now=fixed_now
    )

    assert [record.details["targetHypothesisId"] for record in created] == [untested.id]
    assert created[0].details["sourceTitle"] == "Base claim"


def test_intake_gate_flags_proved_without_checklist(
    sqlite_session_factory, seed, fixed_now
) -> None:
    """Proved hypotheses without a completed intake gate are high severity."""
    workspace = seed.workspace()
    space = seed.space(workspace.id)
    violating = seed.page(
        workspace.id,
        space.id,
        "Bold claim",
        page_type="hypothesis",
        page_metadata={"claimLabel": "proved"},
    )
    seed.page(
        workspace.id,
        space.id,
        "Careful claim",
        page_type="hypothesis",
        page_metadata={"claimLabel": "proved", "intakeGateCompleted": True},
    )
    service, _ = _service(sqlite_session_factory)

    created = service.run_rule(workspace.id, PatternRule(type="intake_gate"), now=fixed_now)

    assert [record.details["hypothesisId"] for record in created] == [violating.id]
    assert created[0].severity == "high"


def test_evidence_gap_counts_supporting_and_testing(
    sqlite_session_factory, seed, fixed_now
) -> None:
    """Papers citing pages with too few experiments raise an evidence gap."""
    workspace = seed.workspace()
    space = seed.space(workspace.id)
    paper = seed.page(workspace.id, space.id, "Survey", page_type="paper")
    thin = seed.page(workspace.id, space.id, "Thin", page_type="hypothesis")
    seed.edge(workspace.id, paper.id, thin.id, "CITES")
    service, _ = _service(sqlite_session_factory)

    created = service.run_rule(
        workspace.id,
        PatternRule(type="evidence_gap", params={"minExperiments": 1}),
        now=fixed_now,
    )

    assert len(created) == 1
    assert created[0].title == (
        'Evidence gap: "Survey" references "Thin" which has 0 experiments (needs 1)'
    )


def test_reproduction_failure_counts_incoming_edges(
    sqlite_session_factory, seed, fixed_now
) -> None:
    """Failed reproductions are reported against the original experiment."""
    workspace = seed.workspace()
    space = seed.space(workspace.id)
    original = seed.page(workspace.id, space.id, "Original", page_type="experiment")
    retry_one = seed.page(workspace.id, space.id, "Retry 1", page_type="experiment")
    retry_two = seed.page(workspace.id, space.id, "Retry 2", page_type="experiment")
    seed.edge(workspace.id, retry_one.id, original.id, "FAILS_TO_REPRODUCE")
    seed.edge(workspace.id, retry_two.id, original.id, "FAILS_TO_REPRODUCE")
    service, _ = _service(sqlite_session_factory)

    created = service.run_rule(
        workspace.id, PatternRule(type="reproduction_failure"), now=fixed_now
    )

    assert len(created) == 1
    assert created[0].details["failedReproductionCount"] == 2
    assert sorted(created[0].details["failedByIds"]) == sorted([retry_one.id, retry_two.id])


def test_unknown_rule_type_detects_nothing(sqlite_session_factory, seed, fixed_now) -> None:
    """Unknown rule types are skipped."""
    workspace = seed.workspace()
    service, _ = _service(sqlite_session_factory)

    assert service.run_rule(workspace.id, PatternRule(type="mystery"), now=fixed_now) == []


def test_dismissed_detection_can_be_reported_again(
    sqlite_session_factory, seed, fixed_now
) -> None:
    """Dismissed detections no longer block a new detection for the same key."""
    workspace = seed.workspace()
    space = seed.space(workspace.id)
    seed.page(
        workspace.id,
        space.id,
        "Claim",
        page_type="hypothesis",
        page_metadata={"claimLabel": "proved"},
    )
    service, patterns = _service(sqlite_session_factory)
    rule = PatternRule(type="intake_gate")

    first = service.run_rule(workspace.id, rule, now=fixed_now)
    patterns.update_status(first[0].id, "dismissed", now=fixed_now)
    second = service.run_rule(workspace.id, rule, now=fixed_now)

    assert len(second) == 1
    assert second[0].id != first[0].id


def test_failing_evaluator_does_not_stop_other_rules(
    sqlite_session_factory, seed, fixed_now
) -> None:
    """A raising evaluator is logged and the remaining rules still run."""
    workspace = seed.workspace()
    space = seed.space(workspace.id)
    seed.page(
        workspace.id,
        space.id,
        "Claim",
        page_type="hypothesis",
        page_metadata={"claimLabel": "proved"},
    )

    class BrokenWorkspace(WorkspaceRepository):
        def list_labelled_tasks(self, *args, **kwargs):
            raise RuntimeError("database offline")

    service = PatternDetectionService(
        BrokenWorkspace(sqlite_session_factory),
        RelationalResearchGraph(sqlite_session_factory),
        PatternDetectionRepository(sqlite_session_factory),
    )
    settings = resolve_intelligence_settings(
        {
            "intelligence": {
                "enabled": True,
                "patternRules": [
                    {"type": "staleness", "action": "surface"},
                    {"type": "intake_gate", "action": "flag"},
                ],
            }
        }
    )

    count = service.run_all_patterns(workspace.id, settings, now=fixed_now)

    assert count == 1
