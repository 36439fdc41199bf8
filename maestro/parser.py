"""Handoff Report Parser: raw mode output → HandoffReport.

Pure structural decoding against the schema selected by the report's
declared kind. Cross-field rules live in :mod:`maestro.validator`.
"""

from __future__ import annotations

from dataclasses import dataclass

from .errors import ParseError
from .markdown import (
    normalize_title,
    parse_frontmatter,
    parse_header_fields,
    parse_key_value,
    parse_list_items,
    split_sections,
)
from .models import HandoffReport, Recommendation, ReportKind, ReportStatus, StateFact


@dataclass(frozen=True)
class KindSchema:
    kind: ReportKind
    heading: str
    fields: tuple[str, ...]
    sections: tuple[str, ...]
    summary_section: str
    status_field: str = ""
    artifact_sections: tuple[str, ...] = ()
    aliases: tuple[str, ...] = ()
    default_status: ReportStatus | None = None


SCHEMAS: dict[ReportKind, KindSchema] = {
    s.kind: s
    for s in (
        KindSchema(
            kind=ReportKind.EXECUTIVE_SUMMARY,
            heading="Executive Summary",
            fields=("Bug ID", "Severity", "Status"),
            sections=("Root Cause", "Solution", "Verification", "Next Steps", "Implications"),
            summary_section="Solution",
            status_field="Status",
        ),
        KindSchema(
            kind=ReportKind.RESOLUTION_REPORT,
            heading="Bug Resolution Report",
            fields=("Bug Status",),
            sections=("Root Cause", "Solution", "Code Changes", "Testing", "Prevention", "Follow-up"),
            summary_section="Solution",
            status_field="Bug Status",
            artifact_sections=("Code Changes",),
            aliases=("Resolution Report",),
        ),
        KindSchema(
            kind=ReportKind.UNRESOLVED_ISSUE_REPORT,
            heading="Unresolved Issue Report",
            fields=("Current Status",),
            sections=(
                "Current Understanding", "Attempted Approaches", "Partial Findings",
                "Recommended Next Steps", "Alternative Approaches",
            ),
            summary_section="Current Understanding",
            status_field="Current Status",
            default_status=ReportStatus.BLOCKED,
        ),
        KindSchema(
            kind=ReportKind.PROGRESS_UPDATE,
            heading="Progress Update",
            fields=("Progress",),
            sections=("Completed Work", "Remaining Work"),
            summary_section="Completed Work",
            default_status=ReportStatus.PARTIALLY_COMPLETED,
        ),
        KindSchema(
            kind=ReportKind.DESIGN_HANDOFF,
            heading="Design Handoff",
            fields=(),
            sections=("Design Overview", "Specifications"),
            summary_section="Design Overview",
            artifact_sections=("Specifications",),
        ),
        KindSchema(
            kind=ReportKind.IMPLEMENTATION_HANDOFF,
            heading="Implementation Handoff",
            fields=(),
            sections=("Implementation Summary", "Files Changed", "Testing"),
            summary_section="Implementation Summary",
            artifact_sections=("Files Changed",),
        ),
    )
}

_STATUS_ALIASES: dict[str, ReportStatus] = {
    "completed": ReportStatus.COMPLETED,
    "complete": ReportStatus.COMPLETED,
    "done": ReportStatus.COMPLETED,
    "fixed": ReportStatus.COMPLETED,
    "resolved": ReportStatus.COMPLETED,
    "partially completed": ReportStatus.PARTIALLY_COMPLETED,
    "partially fixed": ReportStatus.PARTIALLY_COMPLETED,
    "partially resolved": ReportStatus.PARTIALLY_COMPLETED,
    "partial": ReportStatus.PARTIALLY_COMPLETED,
    "in progress": ReportStatus.PARTIALLY_COMPLETED,
    "blocked": ReportStatus.BLOCKED,
    "unresolved": ReportStatus.BLOCKED,
    "open": ReportStatus.BLOCKED,
}

_NONE_VALUES = {"", "none", "n a", "na", "no recommendation", "end of workflow"}


def _schema_for_tag(tag: str) -> KindSchema | None:
    wanted = normalize_title(tag)
    for schema in SCHEMAS.values():
        names = (schema.kind.value, schema.heading, *schema.aliases)
        if wanted in {normalize_title(n) for n in names}:
            return schema
    return None


def _schema_from_headings(h2: dict[str, str]) -> KindSchema | None:
    for title in h2:
        schema = _schema_for_tag(title)
        if schema is not None:
            return schema
    return None


def _status_from_text(text: str) -> ReportStatus | None:
    norm = normalize_title(text)
    if norm in _STATUS_ALIASES:
        return _STATUS_ALIASES[norm]
    # "Fixed - verified on staging" → "fixed"
    for alias in sorted(_STATUS_ALIASES, key=len, reverse=True):
        if norm.startswith(alias + " "):
            return _STATUS_ALIASES[alias]
    return None


def _artifact_ref(item: str) -> str:
    ref = item.strip()
    for sep in (" — ", " – ", " - ", ": "):
        if sep in ref:
            ref = ref.split(sep, 1)[0]
    return ref.strip().strip("`").strip()


def _dedupe(items: list[str]) -> tuple[str, ...]:
    seen: dict[str, None] = {}
    for item in items:
        if item and item not in seen:
            seen[item] = None
    return tuple(seen)


def _parse_state_facts(text: str, problems: list[str]) -> tuple[StateFact, ...]:
    facts: list[StateFact] = []
    for line in text.splitlines():
        stripped = line.strip()
        if not stripped:
            continue
        entry = stripped.lstrip("-*+").strip()
        key, sep, value = entry.partition(":")
        key = key.strip().strip("*`").strip()
        if not sep or not key:
            problems.append(f"State Facts entry is not 'key: value': '{entry}'")
            continue
        facts.append(StateFact(key=key, value=value.strip().strip("`").strip()))
    return tuple(facts)


def _parse_recommendation(text: str) -> Recommendation | None:
    if normalize_title(text) in _NONE_VALUES:
        return None
    values: dict[str, str] = {}
    for line in text.splitlines():
        kv = parse_key_value(line)
        if kv:
            values[normalize_title(kv[0])] = kv[1]
    next_mode = values.get("next mode") or values.get("mode") or ""
    named = bool(next_mode)
    if named and normalize_title(next_mode) in _NONE_VALUES:
        return None
    if not named and "instruction" not in values:
        return None
    return Recommendation(
        next_mode=next_mode,
        instruction=values.get("instruction", ""),
        category=values.get("category", ""),
    )


def parse_report(raw: str, task_id: str | None = None, mode: str = "") -> HandoffReport:
    """Decode a raw report. Raises ParseError listing every structural problem."""
    if not raw or not raw.strip():
        raise ParseError(["report is empty"])

    meta, body = parse_frontmatter(raw)
    h2 = {}
    for title, text in split_sections(body, 2):
        h2.setdefault(normalize_title(title), text)

    # Kind
    tag = meta.get("kind")
    if tag:
        schema = _schema_for_tag(str(tag))
        if schema is None:
            raise ParseError([f"unknown report kind '{tag}'"])
    else:
        schema = _schema_from_headings(h2)
        if schema is None:
            raise ParseError(["report kind not declared: no 'kind' tag or recognised report heading"])

    problems: list[str] = []

    # Kind section: header fields + ### subsections
    kind_text = None
    for name in (schema.heading, *schema.aliases):
        kind_text = h2.get(normalize_title(name))
        if kind_text is not None:
            break
    subsections: dict[str, str] = {}
    preamble = h2.get("", "")
    if kind_text is not None:
        for title, text in split_sections(kind_text, 3):
            subsections.setdefault(normalize_title(title), text)
        preamble = subsections.pop("", "")

    def section(name: str) -> str | None:
        key = normalize_title(name)
        if key in subsections:
            return subsections[key]
        return h2.get(key)

    fields = parse_header_fields(preamble)
    for name in schema.fields:
        if not fields.get(normalize_title(name)):
            problems.append(f"{schema.heading} missing {name} field")

    sections: dict[str, str] = {}
    for name in schema.sections:
        text = section(name)
        if not text:
            problems.append(f"{schema.heading} missing {name} section")
        else:
            sections[normalize_title(name)] = text
    for key, text in subsections.items():
        sections.setdefault(key, text)

    # Envelope: task id + status
    resolved_task_id = str(meta.get("task_id") or task_id or "").strip()
    if not resolved_task_id:
        problems.append("report has no task_id")

    status: ReportStatus | None = None
    declared = meta.get("status")
    status_field = normalize_title(schema.status_field or "Status")
    if declared:
        status = _status_from_text(str(declared))
        if status is None:
            problems.append(f"invalid status '{declared}'")
    elif fields.get(status_field):
        raw_status = fields[status_field]
        status = _status_from_text(raw_status) or schema.default_status
        if status is None:
            problems.append(
                f"{schema.heading} has unrecognised {schema.status_field or 'Status'} '{raw_status}'"
            )
    elif schema.default_status is not None:
        status = schema.default_status
    elif not schema.status_field:
        # Kinds without a status field must declare one in frontmatter or a Status line
        problems.append(f"{schema.heading} missing Status field")

    state_facts = _parse_state_facts(h2.get("state facts", ""), problems)

    if problems:
        raise ParseError(problems)

    artifact_items = parse_list_items(h2.get("artifacts", ""))
    for name in schema.artifact_sections:
        artifact_items.extend(parse_list_items(section(name) or ""))

    decisions = parse_list_items(
        h2.get("decisions and assumptions")
        or h2.get("decisions")
        or h2.get("assumptions")
        or ""
    )

    summary = h2.get("summary") or section(schema.summary_section) or ""

    recommendation = None
    rec_text = h2.get("recommendation")
    if rec_text is None:
        rec_text = h2.get("recommended next mode")
    if rec_text is not None:
        recommendation = _parse_recommendation(rec_text)

    approval = fields.get("approval")
    if approval is None and "approval" in h2:
        approval = h2["approval"].strip() or None

    return HandoffReport(
        task_id=resolved_task_id,
        kind=schema.kind,
        status=status,
        summary=summary.strip(),
        artifacts=_dedupe([_artifact_ref(i) for i in artifact_items]),
        decisions=tuple(decisions),
        open_questions=_dedupe(parse_list_items(h2.get("open questions", ""))),
        recommendation=recommendation,
        state_facts=state_facts,
        fields=fields,
        sections=sections,
        approval=approval,
        mode=mode or str(meta.get("mode") or ""),
    )
