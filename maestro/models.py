"""Core data models for maestro."""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from collections.abc import Mapping
from types import MappingProxyType
from typing import Any


def now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


class TaskStatus(str, Enum):
    PENDING = "pending"
    DISPATCHED = "dispatched"
    COMPLETED = "completed"
    FAILED = "failed"


class ReportKind(str, Enum):
    EXECUTIVE_SUMMARY = "executive_summary"
    PROGRESS_UPDATE = "progress_update"
    RESOLUTION_REPORT = "resolution_report"
    UNRESOLVED_ISSUE_REPORT = "unresolved_issue_report"
    DESIGN_HANDOFF = "design_handoff"
    IMPLEMENTATION_HANDOFF = "implementation_handoff"


class ReportStatus(str, Enum):
    COMPLETED = "completed"
    PARTIALLY_COMPLETED = "partially_completed"
    BLOCKED = "blocked"


class RouterState(str, Enum):
    IDLE = "idle"
    DISPATCHING = "dispatching"
    AWAITING_REPORT = "awaiting_report"
    EVALUATING = "evaluating"
    BLOCKED = "blocked"
    TERMINATED = "terminated"


class RoutingAction(str, Enum):
    DISPATCH = "dispatch"
    HOLD = "hold"
    BLOCK = "block"
    TERMINATE = "terminate"


class HistoryKind(str, Enum):
    REPORT = "report"
    DECISION = "decision"
    HOLD = "hold"
    BLOCKED = "blocked"
    DIRECTIVE = "directive"
    CANCELLED = "cancelled"
    TERMINATED = "terminated"


AFFIRMATIVE_APPROVALS = frozenset({"approved", "yes", "true", "granted"})
NEGATIVE_APPROVALS = frozenset({"pending", "rejected", "no", "false", "denied"})

# State fact key that marks an open issue as resolved instead of setting a fact
RESOLVED_FACT_KEY = "resolved"


def approval_word(approval: str | None) -> str:
    """First word of an approval field: "Approved by J. Doe" → "approved"."""
    words = re.findall(r"[a-z]+", (approval or "").lower())
    return words[0] if words else ""


# ---------------------------------------------------------------------------
# Modes
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class Mode:
    """A registered worker role."""

    name: str
    title: str = ""
    capabilities: frozenset[str] = frozenset()
    report_kinds: frozenset[ReportKind] = frozenset()
    context_keys: tuple[str, ...] = ()
    role_definition: str = ""
    custom_instructions: str = ""
    backend: str = ""   # "" → use global dispatch config
    model: str = ""     # "" → use global dispatch config

    @property
    def produces_design(self) -> bool:
        return ReportKind.DESIGN_HANDOFF in self.report_kinds

    def accepts(self, category: str) -> bool:
        return category in self.capabilities


# ---------------------------------------------------------------------------
# Tasks
# ---------------------------------------------------------------------------

@dataclass
class TaskContext:
    """References into workflow state handed along with a task."""

    category: str = ""
    artifacts: list[str] = field(default_factory=list)
    open_questions: list[str] = field(default_factory=list)
    constraints: list[str] = field(default_factory=list)
    corrective_notes: list[str] = field(default_factory=list)


@dataclass
class Task:
    """A unit of work directed at one mode."""

    id: str
    workflow_id: str
    target_mode: str
    objective: str
    instruction: str = ""
    context: TaskContext = field(default_factory=TaskContext)
    status: TaskStatus = TaskStatus.PENDING
    attempt: int = 0
    failure_reason: str = ""
    created_at: str = field(default_factory=now_iso)
    updated_at: str = ""


# ---------------------------------------------------------------------------
# Handoff reports
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class Recommendation:
    next_mode: str
    instruction: str = ""
    category: str = ""  # category of the remaining work; "" → workflow category


@dataclass(frozen=True)
class StateFact:
    key: str
    value: str


@dataclass(frozen=True)
class HandoffReport:
    """Structured output of a mode for one task. Never mutated once parsed."""

    task_id: str
    kind: ReportKind
    status: ReportStatus
    summary: str = ""
    artifacts: tuple[str, ...] = ()
    decisions: tuple[str, ...] = ()
    open_questions: tuple[str, ...] = ()
    recommendation: Recommendation | None = None
    state_facts: tuple[StateFact, ...] = ()
    fields: Mapping[str, str] = field(default_factory=dict, hash=False)
    sections: Mapping[str, str] = field(default_factory=dict, hash=False)
    approval: str | None = None
    mode: str = ""

    def __post_init__(self):
        object.__setattr__(self, "fields", MappingProxyType(dict(self.fields)))
        object.__setattr__(self, "sections", MappingProxyType(dict(self.sections)))

    @property
    def approved(self) -> bool:
        return approval_word(self.approval) in AFFIRMATIVE_APPROVALS

    @property
    def resolved_issues(self) -> list[str]:
        return [f.value for f in self.state_facts if f.key == RESOLVED_FACT_KEY]

    @property
    def merge_facts(self) -> list[StateFact]:
        return [f for f in self.state_facts if f.key != RESOLVED_FACT_KEY]

    def to_dict(self) -> dict[str, Any]:
        rec = None
        if self.recommendation is not None:
            rec = {
                "next_mode": self.recommendation.next_mode,
                "instruction": self.recommendation.instruction,
                "category": self.recommendation.category,
            }
        return {
            "task_id": self.task_id,
            "kind": self.kind.value,
            "status": self.status.value,
            "summary": self.summary,
            "artifacts": list(self.artifacts),
            "decisions": list(self.decisions),
            "open_questions": list(self.open_questions),
            "recommendation": rec,
            "state_facts": [[f.key, f.value] for f in self.state_facts],
            "fields": dict(self.fields),
            "sections": dict(self.sections),
            "approval": self.approval,
            "mode": self.mode,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> HandoffReport:
        rec = data.get("recommendation")
        return cls(
            task_id=data["task_id"],
            kind=ReportKind(data["kind"]),
            status=ReportStatus(data["status"]),
            summary=data.get("summary", ""),
            artifacts=tuple(data.get("artifacts", [])),
            decisions=tuple(data.get("decisions", [])),
            open_questions=tuple(data.get("open_questions", [])),
            recommendation=Recommendation(**rec) if rec else None,
            state_facts=tuple(StateFact(k, v) for k, v in data.get("state_facts", [])),
            fields=dict(data.get("fields", {})),
            sections=dict(data.get("sections", {})),
            approval=data.get("approval"),
            mode=data.get("mode", ""),
        )


# ---------------------------------------------------------------------------
# Workflow state records
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class Fact:
    key: str
    value: str
    task_id: str = ""
    mode: str = ""
    categories: tuple[str, ...] = ()


@dataclass(frozen=True)
class ArtifactEntry:
    path: str
    task_id: str


@dataclass(frozen=True)
class HistoryEntry:
    seq: int
    kind: HistoryKind
    task_id: str = ""
    mode: str = ""
    summary: str = ""
    error_kind: str = ""
    detail: dict[str, Any] = field(default_factory=dict)
    report: HandoffReport | None = None


# ---------------------------------------------------------------------------
# Routing
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class RoutingDecision:
    """Next step computed from the latest accepted report. Logged, never stored."""

    action: RoutingAction
    rationale: str
    next_mode: str | None = None
    instruction: str = ""
    category: str = ""
    error_kind: str = ""

    @property
    def terminal(self) -> bool:
        return self.action is RoutingAction.TERMINATE

    def to_dict(self) -> dict[str, Any]:
        return {
            "action": self.action.value,
            "next_mode": self.next_mode,
            "rationale": self.rationale,
            "instruction": self.instruction,
            "category": self.category,
            "error_kind": self.error_kind,
        }


@dataclass(frozen=True)
class Objective:
    """Initial request that starts a workflow."""

    text: str
    category: str = ""
    mode: str = ""  # explicit directive; "" → select by capability
    constraints: tuple[str, ...] = ()


@dataclass(frozen=True)
class Directive:
    """External instruction that resumes a blocked workflow."""

    mode: str
    instruction: str = ""
    category: str = ""


@dataclass
class WorkflowOutcome:
    """User-visible end state of a router run."""

    workflow_id: str
    state: RouterState
    reason: str = ""
    error_kind: str = ""
    decision: RoutingDecision | None = None
    steps: int = 0

    @property
    def blocked(self) -> bool:
        return self.state is RouterState.BLOCKED

    @property
    def terminated(self) -> bool:
        return self.state is RouterState.TERMINATED
