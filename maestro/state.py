"""Workflow State Store: the single owned record of a workflow's history.

All mutation funnels through :meth:`WorkflowStateStore.apply_report` (one
whole report at a time) and :meth:`WorkflowStateStore.record` (router notes).
Readers get immutable :class:`WorkflowState` snapshots.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field, replace
from pathlib import Path
from types import MappingProxyType
from typing import Any, Mapping

import anyio

from .db import Database
from .markdown import split_sections
from .models import (
    ArtifactEntry,
    Fact,
    HandoffReport,
    HistoryEntry,
    HistoryKind,
    Mode,
)

logger = logging.getLogger(__name__)


def _one_line(text: str, limit: int = 200) -> str:
    text = " ".join(text.split())
    return text if len(text) <= limit else text[: limit - 1] + "…"


def _issue_key(question: str) -> str:
    return " ".join(question.lower().split())


@dataclass(frozen=True)
class WorkflowState:
    """Immutable snapshot of a workflow's facts, artifacts, history and issues."""

    workflow_id: str
    version: int = 0
    facts: Mapping[str, Fact] = field(default_factory=lambda: MappingProxyType({}))
    artifact_log: tuple[ArtifactEntry, ...] = ()
    history: tuple[HistoryEntry, ...] = ()
    open_issues: tuple[str, ...] = ()

    @property
    def next_seq(self) -> int:
        return self.history[-1].seq + 1 if self.history else 1

    def fact_values(self) -> dict[str, str]:
        return {k: f.value for k, f in self.facts.items()}

    def accepted_task_ids(self) -> set[str]:
        return {h.task_id for h in self.history if h.kind is HistoryKind.REPORT}

    def reports(self) -> list[HandoffReport]:
        return [h.report for h in self.history if h.report is not None]

    def last_report(self) -> HandoffReport | None:
        reports = self.reports()
        return reports[-1] if reports else None

    def artifact_paths(self) -> list[str]:
        seen: dict[str, None] = {}
        for entry in self.artifact_log:
            seen.setdefault(entry.path, None)
        return list(seen)


class WorkflowStateStore:
    """Owns one workflow's state; persists every change through the database."""

    def __init__(
        self,
        db: Database,
        workflow_id: str,
        markdown_path: str | Path | None = None,
    ):
        self._db = db
        self._state = WorkflowState(workflow_id=workflow_id)
        self._lock = anyio.Lock()
        self.markdown_path = Path(markdown_path) if markdown_path else None

    @property
    def workflow_id(self) -> str:
        return self._state.workflow_id

    def snapshot(self) -> WorkflowState:
        return self._state

    async def load(self) -> WorkflowState:
        """Rebuild the in-memory snapshot from the database."""
        async with self._lock:
            rows = await self._db.load_state(self.workflow_id)
            self._state = WorkflowState(
                workflow_id=self.workflow_id,
                version=rows["version"],
                facts=MappingProxyType({f.key: f for f in rows["facts"]}),
                artifact_log=tuple(rows["artifacts"]),
                history=tuple(rows["history"]),
                open_issues=tuple(rows["open_issues"]),
            )
            return self._state

    async def apply_report(self, report: HandoffReport, mode: Mode | None = None) -> WorkflowState:
        """Merge one accepted report. Re-delivery of a known task id is a no-op."""
        async with self._lock:
            current = self._state
            if report.task_id in current.accepted_task_ids():
                logger.debug("Report for %s already applied, skipping", report.task_id)
                return current

            mode_name = mode.name if mode else report.mode
            categories = tuple(sorted(mode.capabilities)) if mode else ()

            new_facts = [
                Fact(key=f.key, value=f.value, task_id=report.task_id,
                     mode=mode_name, categories=categories)
                for f in report.merge_facts
            ]
            new_artifacts = [ArtifactEntry(path=p, task_id=report.task_id) for p in report.artifacts]
            entry = HistoryEntry(
                seq=current.next_seq,
                kind=HistoryKind.REPORT,
                task_id=report.task_id,
                mode=mode_name,
                summary=_one_line(report.summary or report.kind.value),
                detail={"kind": report.kind.value, "status": report.status.value},
                report=report,
            )

            # Raise first, then resolve: a report that both raises and resolves an issue closes it
            issues = list(current.open_issues)
            known = {_issue_key(q) for q in issues}
            raised: list[tuple[str, str]] = []
            for question in report.open_questions:
                if _issue_key(question) not in known:
                    issues.append(question)
                    known.add(_issue_key(question))
                    raised.append((question, report.task_id))
            resolving = {_issue_key(q) for q in report.resolved_issues}
            resolved = [q for q in issues if _issue_key(q) in resolving]
            issues = [q for q in issues if _issue_key(q) not in resolving]

            facts = dict(current.facts)
            for fact in new_facts:
                facts[fact.key] = fact

            new_state = replace(
                current,
                version=current.version + 1,
                facts=MappingProxyType(facts),
                artifact_log=current.artifact_log + tuple(new_artifacts),
                history=current.history + (entry,),
                open_issues=tuple(issues),
            )

            # Persist and swap together; a cancelled run must not leave half a merge
            with anyio.CancelScope(shield=True):
                await self._db.apply_state_delta(
                    self.workflow_id,
                    version=new_state.version,
                    facts=new_facts,
                    artifacts=new_artifacts,
                    history=[entry],
                    raised=raised,
                    resolved=resolved,
                )
                self._state = new_state
                self._write_markdown()
            logger.info(
                "Accepted %s from %s for %s (v%d)",
                report.kind.value, mode_name or "?", report.task_id, new_state.version,
            )
            return new_state

    async def record(
        self,
        kind: HistoryKind,
        summary: str,
        task_id: str = "",
        mode: str = "",
        error_kind: str = "",
        detail: dict[str, Any] | None = None,
    ) -> HistoryEntry:
        """Append a non-report history entry (decision, hold, blocked, ...)."""
        async with self._lock:
            current = self._state
            entry = HistoryEntry(
                seq=current.next_seq,
                kind=kind,
                task_id=task_id,
                mode=mode,
                summary=_one_line(summary),
                error_kind=error_kind,
                detail=dict(detail or {}),
            )
            new_state = replace(
                current,
                version=current.version + 1,
                history=current.history + (entry,),
            )
            with anyio.CancelScope(shield=True):
                await self._db.apply_state_delta(
                    self.workflow_id, version=new_state.version, history=[entry],
                )
                self._state = new_state
                self._write_markdown()
            return entry

    def _write_markdown(self) -> None:
        if self.markdown_path is None:
            return
        self.markdown_path.parent.mkdir(parents=True, exist_ok=True)
        self.markdown_path.write_text(render_state_markdown(self._state), encoding="utf-8")


# -------------------------------------------------------------------
# workflow_state.md
# -------------------------------------------------------------------

def render_state_markdown(state: WorkflowState) -> str:
    lines = [f"# Workflow State: {state.workflow_id}", "", f"Version: {state.version}", ""]

    lines.append("## Facts")
    for key, fact in state.facts.items():
        lines.append(f"{key}: {_one_line(fact.value, 500)}")
    lines.append("")

    lines.append("## Artifact Log")
    for entry in state.artifact_log:
        lines.append(f"- {entry.path} — {entry.task_id}")
    lines.append("")

    lines.append("## History")
    for h in state.history:
        error = f" [{h.error_kind}]" if h.error_kind else ""
        lines.append(
            f"- [{h.seq}] {h.task_id or '-'} ({h.mode or '-'}) {h.kind.value}{error}: {h.summary}"
        )
    lines.append("")

    lines.append("## Open Issues")
    for question in state.open_issues:
        lines.append(f"- {_one_line(question, 500)}")
    lines.append("")
    return "\n".join(lines)


_TITLE_RE = re.compile(r"^#\s+Workflow State:\s*(\S+)", re.MULTILINE)
_VERSION_RE = re.compile(r"^Version:\s*(\d+)", re.MULTILINE)
_HISTORY_RE = re.compile(
    r"^-\s+\[(\d+)\]\s+(\S+)\s+\((.*?)\)\s+(\w+)(?:\s+\[(\w+)\])?:\s?(.*)$"
)


def parse_state_markdown(text: str) -> WorkflowState:
    """Read a rendered workflow_state.md back.

    Facts are last-write-wins; the artifact log and history keep file order.
    History entries carry summaries only, not full reports.
    """
    title = _TITLE_RE.search(text)
    version = _VERSION_RE.search(text)
    sections = dict(split_sections(text, 2))

    facts: dict[str, Fact] = {}
    for line in sections.get("Facts", "").splitlines():
        key, sep, value = line.partition(":")
        if sep and key.strip():
            facts[key.strip()] = Fact(key=key.strip(), value=value.strip())

    artifacts: list[ArtifactEntry] = []
    for line in sections.get("Artifact Log", "").splitlines():
        line = line.strip()
        if not line.startswith("- "):
            continue
        path, sep, task_id = line[2:].rpartition(" — ")
        if sep:
            artifacts.append(ArtifactEntry(path=path.strip(), task_id=task_id.strip()))

    history: list[HistoryEntry] = []
    for line in sections.get("History", "").splitlines():
        m = _HISTORY_RE.match(line.strip())
        if not m:
            continue
        seq, task_id, mode, kind, error_kind, summary = m.groups()
        history.append(HistoryEntry(
            seq=int(seq),
            kind=HistoryKind(kind),
            task_id="" if task_id == "-" else task_id,
            mode="" if mode == "-" else mode,
            summary=summary,
            error_kind=error_kind or "",
        ))

    issues = [
        line.strip()[2:].strip()
        for line in sections.get("Open Issues", "").splitlines()
        if line.strip().startswith("- ")
    ]

    return WorkflowState(
        workflow_id=title.group(1) if title else "",
        version=int(version.group(1)) if version else 0,
        facts=MappingProxyType(facts),
        artifact_log=tuple(artifacts),
        history=tuple(history),
        open_issues=tuple(issues),
    )
