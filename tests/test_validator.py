"""Tests for handoff contract validation."""

import pytest

from maestro.errors import ValidationError
from maestro.models import (
    HandoffReport,
    Recommendation,
    ReportKind,
    ReportStatus,
    StateFact,
    Task,
)
from maestro.parser import parse_report
from maestro.validator import check_report, validate_report, validate_report_for_task

from handoffs import auth_fix_report, build_report


def _report(kind=ReportKind.PROGRESS_UPDATE, status=ReportStatus.COMPLETED, **kw):
    return HandoffReport(task_id="t1", kind=kind, status=status, **kw)


def test_parsed_reports_are_valid():
    for text in (
        auth_fix_report(),
        build_report("design_handoff", recommend=("frontend-developer", "Build it")),
        build_report("implementation_handoff"),
        build_report("executive_summary"),
    ):
        assert check_report(parse_report(text, task_id="t1")) == []


# --- Status coupling ---

def test_blocked_requires_open_question():
    reasons = check_report(_report(status=ReportStatus.BLOCKED))
    assert reasons == ["a blocked report must list at least one open question"]


def test_blocked_with_question_ok():
    report = _report(status=ReportStatus.BLOCKED, open_questions=("Which IdP?",))
    assert check_report(report) == []


def test_partial_requires_recommendation():
    reasons = check_report(_report(status=ReportStatus.PARTIALLY_COMPLETED))
    assert reasons == ["a partially completed report must recommend who continues the work"]


# --- Recommendation ---

def test_recommendation_missing_mode_and_instruction():
    reasons = check_report(_report(recommendation=Recommendation("", "")))
    assert "recommendation is missing 'Next Mode'" in reasons
    assert "recommendation is missing 'Instruction'" in reasons


def test_recommendation_invalid_mode_name():
    reasons = check_report(_report(recommendation=Recommendation("<script>", "go")))
    assert reasons == ["recommendation names an invalid mode '<script>'"]


def test_recommendation_display_name_allowed():
    report = _report(recommendation=Recommendation("UI/UX Designer", "Sketch it"))
    assert check_report(report) == []


# --- Kind-specific rules ---

@pytest.mark.parametrize("kind,message", [
    (ReportKind.RESOLUTION_REPORT, "modified artifact"),
    (ReportKind.IMPLEMENTATION_HANDOFF, "changed file"),
    (ReportKind.DESIGN_HANDOFF, "design specification"),
])
def test_artifacts_required(kind, message):
    reasons = check_report(_report(kind=kind))
    assert len(reasons) == 1
    assert message in reasons[0]


def test_progress_update_needs_no_artifacts():
    assert check_report(_report()) == []


def test_executive_summary_severity():
    bad = _report(kind=ReportKind.EXECUTIVE_SUMMARY, fields={"severity": "Apocalyptic"})
    assert check_report(bad) == [
        "severity 'apocalyptic' is not one of critical, high, low, medium",
    ]
    good = _report(kind=ReportKind.EXECUTIVE_SUMMARY, fields={"severity": " High "})
    assert check_report(good) == []


def test_design_approval_values():
    base = {"kind": ReportKind.DESIGN_HANDOFF, "artifacts": ("docs/design.md",)}
    assert check_report(_report(approval="Pending review", **base)) == []
    assert check_report(_report(approval=None, **base)) == []
    assert check_report(_report(approval="Maybe", **base)) == [
        "unrecognised approval value 'Maybe'",
    ]


# --- State facts ---

def test_duplicate_state_fact_rejected():
    facts = (StateFact("bug_status", "Open"), StateFact("bug_status", "Fixed"))
    assert check_report(_report(state_facts=facts)) == [
        "state fact 'bug_status' is set more than once",
    ]


def test_resolved_facts_may_repeat_but_need_a_value():
    facts = (StateFact("resolved", "Which IdP?"), StateFact("resolved", "Which DB?"))
    assert check_report(_report(state_facts=facts)) == []
    empty = (StateFact("resolved", ""),)
    assert check_report(_report(state_facts=empty)) == [
        "a 'resolved' state fact must name the resolved issue",
    ]


# --- Raising wrappers ---

def test_validate_report_collects_all_reasons():
    report = _report(status=ReportStatus.BLOCKED, kind=ReportKind.RESOLUTION_REPORT)
    with pytest.raises(ValidationError) as exc:
        validate_report(report)
    assert len(exc.value.reasons) == 2
    assert exc.value.kind == "ValidationError"


def test_validate_report_passes_silently():
    validate_report(_report())


def test_validate_for_task_checks_back_reference():
    task = Task(id="t2", workflow_id="wf", target_mode="debugger", objective="x")
    with pytest.raises(ValidationError) as exc:
        validate_report_for_task(_report(), task)
    assert exc.value.reasons == ["report is for task 't1', expected 't2'"]


def test_validate_for_task_matching_id():
    task = Task(id="t1", workflow_id="wf", target_mode="debugger", objective="x")
    validate_report_for_task(_report(), task)
