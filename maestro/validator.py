"""Handoff Validator: cross-field and kind-specific contract checks.

Validation is a pure function of the report and the static rules below;
it consults no workflow state.
"""

from __future__ import annotations

import re

from .errors import ValidationError
from .models import (
    AFFIRMATIVE_APPROVALS,
    NEGATIVE_APPROVALS,
    RESOLVED_FACT_KEY,
    HandoffReport,
    ReportKind,
    ReportStatus,
    Task,
    approval_word,
)

SEVERITIES = {"critical", "high", "medium", "low"}
_MODE_NAME_RE = re.compile(r"^[A-Za-z0-9][A-Za-z0-9 /_-]*$")

# Kinds that must name at least one produced artifact
_ARTIFACT_REQUIRED = {
    ReportKind.RESOLUTION_REPORT: "a resolution report must name at least one modified artifact",
    ReportKind.IMPLEMENTATION_HANDOFF: "an implementation handoff must name at least one changed file",
    ReportKind.DESIGN_HANDOFF: "a design handoff must name at least one design specification",
}


def check_report(report: HandoffReport) -> list[str]:
    """Return every contract violation; empty when the report is valid."""
    reasons: list[str] = []

    # Status coupling
    if report.status is ReportStatus.BLOCKED and not report.open_questions:
        reasons.append("a blocked report must list at least one open question")
    if report.status is ReportStatus.PARTIALLY_COMPLETED and report.recommendation is None:
        reasons.append("a partially completed report must recommend who continues the work")

    # Recommendation well-formedness
    rec = report.recommendation
    if rec is not None:
        if not rec.next_mode.strip():
            reasons.append("recommendation is missing 'Next Mode'")
        elif not _MODE_NAME_RE.match(rec.next_mode.strip()):
            reasons.append(f"recommendation names an invalid mode '{rec.next_mode}'")
        if not rec.instruction.strip():
            reasons.append("recommendation is missing 'Instruction'")

    # Kind-specific rules
    if report.kind in _ARTIFACT_REQUIRED and not report.artifacts:
        reasons.append(_ARTIFACT_REQUIRED[report.kind])

    if report.kind is ReportKind.EXECUTIVE_SUMMARY:
        severity = report.fields.get("severity", "").strip().lower()
        if severity not in SEVERITIES:
            reasons.append(
                f"severity '{severity}' is not one of {', '.join(sorted(SEVERITIES))}"
            )

    if report.kind is ReportKind.DESIGN_HANDOFF and report.approval is not None:
        word = approval_word(report.approval)
        if word not in AFFIRMATIVE_APPROVALS | NEGATIVE_APPROVALS:
            reasons.append(f"unrecognised approval value '{report.approval}'")

    # State facts
    seen: set[str] = set()
    for fact in report.state_facts:
        if fact.key == RESOLVED_FACT_KEY:
            if not fact.value:
                reasons.append("a 'resolved' state fact must name the resolved issue")
            continue
        if fact.key in seen:
            reasons.append(f"state fact '{fact.key}' is set more than once")
        seen.add(fact.key)

    return reasons


def validate_report(report: HandoffReport) -> None:
    """Raise ValidationError when the report breaks its contract."""
    reasons = check_report(report)
    if reasons:
        raise ValidationError(reasons)


def validate_report_for_task(report: HandoffReport, task: Task) -> None:
    """validate_report plus the back-reference to the dispatched task."""
    reasons = check_report(report)
    if report.task_id != task.id:
        reasons.insert(0, f"report is for task '{report.task_id}', expected '{task.id}'")
    if reasons:
        raise ValidationError(reasons)
