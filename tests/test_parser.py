"""Tests for the handoff report parser."""

import pytest

from maestro.errors import ParseError
from maestro.models import ReportKind, ReportStatus, StateFact
from maestro.parser import SCHEMAS, parse_report

from handoffs import auth_fix_report, blocked_report, build_report


# --- Kinds ---

def test_resolution_report():
    r = parse_report(auth_fix_report(), task_id="wf-1-t001", mode="debugger")
    assert r.task_id == "wf-1-t001"
    assert r.kind == ReportKind.RESOLUTION_REPORT
    assert r.status == ReportStatus.COMPLETED
    assert r.mode == "debugger"
    assert r.artifacts == ("src/auth/session.py",)
    assert r.state_facts == (StateFact("bug_status", "Fixed"),)
    assert r.summary == "Token refresh no longer races with session expiry."
    assert r.recommendation is None
    assert r.fields["bug status"] == "Fixed"
    assert "root cause" in r.sections


def test_every_kind_parses():
    for kind in SCHEMAS:
        text = build_report(kind.value, recommend=("debugger", "continue"),
                            questions=["why?"])
        assert parse_report(text, task_id="t").kind == kind


def test_kind_from_heading_without_frontmatter():
    text = "## Progress Update\nProgress: 40%\n### Completed Work\nx\n### Remaining Work\ny\n"
    r = parse_report(text, task_id="t")
    assert r.kind == ReportKind.PROGRESS_UPDATE
    assert r.status == ReportStatus.PARTIALLY_COMPLETED
    assert r.summary == "x"


def test_kind_alias_heading():
    text = auth_fix_report().replace("kind: resolution_report\n", "task_id: t\n")
    text = text.replace("## Bug Resolution Report", "## Resolution Report")
    assert parse_report(text, task_id="t").kind == ReportKind.RESOLUTION_REPORT


def test_executive_summary_table_fields():
    text = build_report("executive_summary", fields={"Bug ID": None, "Severity": None, "Status": None})
    text = text.replace(
        "## Executive Summary\n",
        "## Executive Summary\n| Bug ID | Severity | Status |\n|---|---|---|\n| AUTH-42 | Critical | Resolved |\n",
    )
    r = parse_report(text, task_id="t")
    assert r.fields["severity"] == "Critical"
    assert r.status == ReportStatus.COMPLETED


def test_unresolved_issue_report_blocked():
    r = parse_report(blocked_report(), task_id="t")
    assert r.status == ReportStatus.BLOCKED
    assert r.open_questions == ("Which identity provider is authoritative?",)


# --- Errors ---

def test_unknown_kind_rejected():
    with pytest.raises(ParseError, match="unknown report kind 'poem'"):
        parse_report("---\nkind: poem\n---\n## Poem\n", task_id="t")


def test_undeclared_kind_rejected():
    with pytest.raises(ParseError, match="report kind not declared"):
        parse_report("## Summary\nAll good.\n", task_id="t")


def test_empty_report_rejected():
    with pytest.raises(ParseError):
        parse_report("   \n", task_id="t")


def test_missing_fields_and_sections_enumerated():
    text = build_report("executive_summary", fields={"Severity": None},
                        drop_sections=["Verification", "Implications"])
    with pytest.raises(ParseError) as exc:
        parse_report(text, task_id="t")
    assert exc.value.problems == [
        "Executive Summary missing Severity field",
        "Executive Summary missing Verification section",
        "Executive Summary missing Implications section",
    ]


def test_missing_task_id():
    with pytest.raises(ParseError, match="no task_id"):
        parse_report(auth_fix_report())


def test_frontmatter_task_id_wins():
    r = parse_report(auth_fix_report(task_id="wf-9-t004"), task_id="wf-1-t001")
    assert r.task_id == "wf-9-t004"


def test_status_aliases():
    partial = build_report("resolution_report", fields={"Bug Status": "Partially fixed"})
    assert parse_report(partial, task_id="t").status == ReportStatus.PARTIALLY_COMPLETED
    qualified = build_report("resolution_report", fields={"Bug Status": "Fixed - verified on staging"})
    assert parse_report(qualified, task_id="t").status == ReportStatus.COMPLETED


def test_frontmatter_status_overrides_field():
    text = build_report("resolution_report", status="blocked")
    assert parse_report(text, task_id="t").status == ReportStatus.BLOCKED


def test_unrecognised_status_rejected():
    text = build_report("resolution_report", fields={"Bug Status": "Vibing"})
    with pytest.raises(ParseError, match="unrecognised Bug Status 'Vibing'"):
        parse_report(text, task_id="t")


def test_design_handoff_without_status_rejected():
    text = build_report("design_handoff").replace("status: completed\n", "")
    with pytest.raises(ParseError, match="Design Handoff missing Status field"):
        parse_report(text, task_id="t")


def test_malformed_state_fact_rejected():
    text = auth_fix_report() + "\n- this line has no separator\n"
    with pytest.raises(ParseError, match="State Facts entry"):
        parse_report(text, task_id="t")


# --- Envelope sections ---

def test_artifacts_merged_and_deduplicated():
    text = auth_fix_report(artifacts=["src/auth/session.py — fix", "tests/test_session.py"])
    text += "\n## Artifacts\n- src/auth/session.py\n- docs/postmortem.md\n"
    r = parse_report(text, task_id="t")
    assert r.artifacts == ("src/auth/session.py", "docs/postmortem.md", "tests/test_session.py")


def test_recommendation_parsed():
    text = build_report("design_handoff",
                        recommend=("Frontend Developer", "Build the login page", "frontend"))
    rec = parse_report(text, task_id="t").recommendation
    assert rec.next_mode == "Frontend Developer"
    assert rec.instruction == "Build the login page"
    assert rec.category == "frontend"


@pytest.mark.parametrize("body", ["None", "N/A", "End of workflow", ""])
def test_recommendation_none_values(body):
    text = auth_fix_report() + f"\n## Recommendation\n{body}\n"
    assert parse_report(text, task_id="t").recommendation is None


@pytest.mark.parametrize("next_mode", ["None", "N/A", "End of workflow"])
def test_next_mode_none_ends_workflow_despite_instruction(next_mode):
    text = auth_fix_report() + (
        f"\n## Recommendation\nNext Mode: {next_mode}\nInstruction: Monitor the error rate\n"
    )
    assert parse_report(text, task_id="t").recommendation is None


def test_recommendation_without_next_mode_kept_for_validation():
    text = auth_fix_report() + "\n## Recommendation\nInstruction: keep going\n"
    rec = parse_report(text, task_id="t").recommendation
    assert rec is not None
    assert rec.next_mode == ""


def test_decisions_and_approval():
    text = build_report("design_handoff", fields={"Approval": "Approved by PM"})
    text += "\n## Decisions & Assumptions\n- Mobile first\n- Reuse brand palette\n"
    r = parse_report(text, task_id="t")
    assert r.decisions == ("Mobile first", "Reuse brand palette")
    assert r.approval == "Approved by PM"
    assert r.approved
