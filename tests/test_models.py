"""Tests for data models."""

import pytest

from maestro.models import (
    HandoffReport,
    Mode,
    Recommendation,
    ReportKind,
    ReportStatus,
    RouterState,
    RoutingAction,
    RoutingDecision,
    StateFact,
    Task,
    TaskStatus,
    WorkflowOutcome,
    approval_word,
)


def _report(**kw):
    defaults = dict(task_id="wf-1-t001", kind=ReportKind.DESIGN_HANDOFF,
                    status=ReportStatus.COMPLETED)
    defaults.update(kw)
    return HandoffReport(**defaults)


def test_task_defaults():
    """New Task starts pending with no attempts."""
    t = Task(id="wf-1-t001", workflow_id="wf-1", target_mode="debugger", objective="fix")
    assert t.status == TaskStatus.PENDING
    assert t.attempt == 0
    assert t.context.corrective_notes == []
    assert t.created_at


def test_enum_values_are_strings():
    """str enums compare equal to their wire values."""
    assert ReportKind.RESOLUTION_REPORT == "resolution_report"
    assert ReportStatus("partially_completed") is ReportStatus.PARTIALLY_COMPLETED
    assert RouterState.BLOCKED.value == "blocked"


def test_approval_word():
    assert approval_word("Approved by J. Doe") == "approved"
    assert approval_word("  PENDING ") == "pending"
    assert approval_word(None) == ""


def test_report_approved_only_for_affirmative_values():
    assert _report(approval="Approved").approved
    assert _report(approval="yes").approved
    assert not _report(approval="Pending review").approved
    assert not _report(approval=None).approved


def test_resolved_facts_split_from_merge_facts():
    """'resolved' facts close issues and never become facts."""
    r = _report(state_facts=(
        StateFact("resolved", "Which IdP?"),
        StateFact("bug_status", "Fixed"),
    ))
    assert r.resolved_issues == ["Which IdP?"]
    assert [f.key for f in r.merge_facts] == ["bug_status"]


def test_report_dict_roundtrip():
    r = _report(
        artifacts=("docs/a.md",),
        recommendation=Recommendation("frontend-developer", "build it", "frontend"),
        state_facts=(StateFact("ui.theme", "dark"),),
        fields={"approval": "Approved"},
        approval="Approved",
        mode="ui-ux-designer",
    )
    assert HandoffReport.from_dict(r.to_dict()) == r


def test_report_is_read_only_and_hashable():
    fields = {"Bug Status": "Fixed"}
    r = _report(fields=fields, sections={"root cause": "Stale token cache."})
    fields["Bug Status"] = "Open"
    assert r.fields["Bug Status"] == "Fixed"
    with pytest.raises(TypeError):
        r.fields["Bug Status"] = "Open"
    with pytest.raises(TypeError):
        r.sections["root cause"] = "Unknown"
    assert hash(r) == hash(_report(fields={"Bug Status": "Fixed"}))
    assert r in {r}


def test_mode_capabilities():
    m = Mode(name="ui-ux-designer", capabilities=frozenset({"design", "ux"}),
             report_kinds=frozenset({ReportKind.DESIGN_HANDOFF}))
    assert m.produces_design
    assert m.accepts("ux")
    assert not m.accepts("debug")


def test_decision_terminal_and_outcome_flags():
    d = RoutingDecision(action=RoutingAction.TERMINATE, rationale="done")
    assert d.terminal
    assert d.to_dict()["action"] == "terminate"
    o = WorkflowOutcome(workflow_id="wf-1", state=RouterState.BLOCKED, error_kind="ParseError")
    assert o.blocked and not o.terminated
