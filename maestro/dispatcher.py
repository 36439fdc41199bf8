"""Task Dispatcher: package a task and hand it across the mode boundary.

The dispatcher is the single point where an external mode implementation
is invoked. It filters workflow facts down to what the target mode may
see, marks the task dispatched, and converts boundary failures into
:class:`DispatchTimeout` / :class:`ModeExecutionError`. It never retries.
"""

from __future__ import annotations

import fnmatch
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Protocol

import anyio

from .config import Config
from .errors import DispatchTimeout, ModeExecutionError
from .models import Mode, ReportKind, Task, TaskStatus
from .parser import SCHEMAS
from .providers import ClaudeCodeAgent, ClaudeCodeTextGen, HttpTextGen
from .registry import ModeRegistry
from .state import WorkflowState

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class DispatchRequest:
    """Everything a mode receives for one task."""

    task_id: str
    mode: str
    objective: str
    instruction: str = ""
    relevant_facts: dict[str, str] = field(default_factory=dict)
    prior_artifacts: tuple[str, ...] = ()
    open_questions: tuple[str, ...] = ()
    constraints: tuple[str, ...] = ()
    corrective_notes: tuple[str, ...] = ()
    report_kinds: tuple[ReportKind, ...] = ()

    def to_dict(self) -> dict[str, Any]:
        return {
            "taskId": self.task_id,
            "mode": self.mode,
            "objective": self.objective,
            "instruction": self.instruction,
            "relevantFacts": dict(self.relevant_facts),
            "priorArtifacts": list(self.prior_artifacts),
            "openQuestions": list(self.open_questions),
            "constraints": list(self.constraints),
            "correctiveNotes": list(self.corrective_notes),
            "reportKinds": [k.value for k in self.report_kinds],
        }

    def render_brief(self) -> str:
        """Format the request into a prompt for text backends."""
        parts = [f"## Task {self.task_id}\n", f"{self.objective}\n\n"]

        if self.instruction:
            parts.append(f"## Instruction\n{self.instruction}\n\n")

        if self.relevant_facts:
            parts.append("## Known Facts\n")
            for key, value in self.relevant_facts.items():
                parts.append(f"- {key}: {value}\n")
            parts.append("\n")

        if self.prior_artifacts:
            parts.append("## Prior Artifacts\n")
            for path in self.prior_artifacts:
                parts.append(f"- {path}\n")
            parts.append("\n")

        if self.open_questions:
            parts.append("## Open Questions\n")
            for q in self.open_questions:
                parts.append(f"- {q}\n")
            parts.append("\n")

        if self.constraints:
            parts.append("## Constraints\n")
            for c in self.constraints:
                parts.append(f"- {c}\n")
            parts.append("\n")

        if self.corrective_notes:
            parts.append("## ⚠️ Previous Report Rejected (must fix)\n")
            for note in self.corrective_notes:
                parts.append(f"- {note}\n")
            parts.append("\n")

        parts.append(render_report_contract(self.task_id, self.report_kinds))
        return "".join(parts)


def render_report_contract(task_id: str, kinds: tuple[ReportKind, ...] | list[ReportKind]) -> str:
    """Describe the handoff report format a mode must answer with."""
    parts = [
        "## Handoff Protocol\n",
        "Reply with exactly one handoff report in markdown. Start with frontmatter:\n\n",
        f"---\ntask_id: {task_id}\nkind: <report kind>\nstatus: completed | partially_completed | blocked\n---\n\n",
        "Allowed report kinds:\n",
    ]
    for kind in kinds or list(SCHEMAS):
        schema = SCHEMAS[kind]
        fields = ", ".join(schema.fields) or "none"
        sections = ", ".join(schema.sections)
        parts.append(
            f"- {kind.value}: heading `## {schema.heading}`; fields: {fields}; "
            f"### sections: {sections}\n"
        )
    parts.append(
        "\nThen, as needed: `## Summary`, `## Artifacts`, `## Decisions & Assumptions`, "
        "`## Open Questions` (required when blocked), `## State Facts` (`- key: value`; "
        "`- resolved: <question>` closes an open question), and `## Recommendation` "
        "(`Next Mode:`, `Instruction:`, optional `Category:`; write `None` when the "
        "workflow is finished).\n"
    )
    return "".join(parts)


def select_relevant_facts(state: WorkflowState, mode: Mode) -> dict[str, str]:
    """Facts produced by modes sharing a capability, or matching a context key."""
    relevant: dict[str, str] = {}
    for key, fact in state.facts.items():
        shared = bool(mode.capabilities.intersection(fact.categories))
        wanted = any(fnmatch.fnmatchcase(key, pattern) for pattern in mode.context_keys)
        if shared or wanted:
            relevant[key] = fact.value
    return relevant


def system_prompt_for(mode: Mode) -> str:
    parts = [mode.role_definition or f"You are the {mode.title or mode.name} mode."]
    if mode.custom_instructions:
        parts.append(mode.custom_instructions)
    return "\n\n".join(parts)


# -------------------------------------------------------------------
# Backends
# -------------------------------------------------------------------

class ModeBackend(Protocol):
    """Execution boundary for one mode: request in, raw report text out."""

    async def run(self, request: DispatchRequest) -> str: ...


class CallableBackend:
    """In-process backend wrapping ``async fn(request) -> str``."""

    def __init__(self, fn: Callable[[DispatchRequest], Awaitable[str]]):
        self.fn = fn

    async def run(self, request: DispatchRequest) -> str:
        return await self.fn(request)


class TextGenBackend:
    """Single-turn text generation backend (HTTP provider or Claude Code)."""

    def __init__(self, text_gen, mode: Mode):
        self.text_gen = text_gen
        self.system_prompt = system_prompt_for(mode)

    async def run(self, request: DispatchRequest) -> str:
        return await self.text_gen.chat(self.system_prompt, request.render_brief())


class AgentBackend:
    """Multi-turn coding agent backend working inside the project directory."""

    def __init__(self, agent: ClaudeCodeAgent, mode: Mode, cwd: Path):
        self.agent = agent
        self.system_prompt = system_prompt_for(mode)
        self.cwd = cwd

    async def run(self, request: DispatchRequest) -> str:
        result = await self.agent.run(request.render_brief(), self.cwd, self.system_prompt)
        logger.info(
            "%s: agent run %s in %d turn(s), %d tokens in / %d out, %.1fs",
            request.task_id, "succeeded" if result.success else "failed",
            result.turns, result.tokens_in, result.tokens_out, result.duration_sec,
        )
        if not result.success:
            raise ModeExecutionError(result.output)
        return result.output


def create_backend(mode: Mode, config: Config) -> ModeBackend:
    """Backend for a mode: per-mode override first, then global dispatch config."""
    backend = mode.backend or config.dispatch.backend
    model = mode.model or config.dispatch.model
    if backend == "claude_code":
        return TextGenBackend(ClaudeCodeTextGen(model=model), mode)
    if backend == "agent":
        agent = ClaudeCodeAgent(model=model, max_turns=config.dispatch.max_turns)
        return AgentBackend(agent, mode, Path(config.project_root or "."))
    if backend == "text_gen":
        provider = config.dispatch.provider
        text_gen = HttpTextGen(provider, model, config.api_key(provider))
        return TextGenBackend(text_gen, mode)
    raise ValueError(f"Unknown dispatch backend: {backend}")


# -------------------------------------------------------------------
# Dispatcher
# -------------------------------------------------------------------

class DispatchHandle:
    """An in-flight dispatch; awaiting :meth:`result` is the only suspension point."""

    def __init__(self, task: Task, request: DispatchRequest, backend: ModeBackend,
                 timeout_sec: float | None):
        self.task = task
        self.request = request
        self.backend = backend
        self.timeout_sec = timeout_sec

    async def result(self) -> str:
        try:
            with anyio.fail_after(self.timeout_sec):
                raw = await self.backend.run(self.request)
        except TimeoutError:
            raise DispatchTimeout(self.task.id, self.timeout_sec or 0) from None
        except ModeExecutionError:
            raise
        except Exception as exc:
            raise ModeExecutionError(f"{self.request.mode}: {exc}") from exc
        if not isinstance(raw, str):
            raise ModeExecutionError(
                f"{self.request.mode} returned {type(raw).__name__}, expected report text"
            )
        return raw


class Dispatcher:
    def __init__(
        self,
        registry: ModeRegistry,
        backend_factory: Callable[[Mode], ModeBackend],
        timeout_sec: float | None = 600.0,
        max_prior_artifacts: int = 50,
    ):
        self.registry = registry
        self.backend_factory = backend_factory
        self.timeout_sec = timeout_sec or None
        self.max_prior_artifacts = max_prior_artifacts
        self._backends: dict[str, ModeBackend] = {}

    @classmethod
    def from_config(cls, registry: ModeRegistry, config: Config) -> Dispatcher:
        return cls(
            registry,
            lambda mode: create_backend(mode, config),
            timeout_sec=config.dispatch.timeout_sec,
            max_prior_artifacts=config.dispatch.max_prior_artifacts,
        )

    def _backend(self, mode: Mode) -> ModeBackend:
        if mode.name not in self._backends:
            self._backends[mode.name] = self.backend_factory(mode)
        return self._backends[mode.name]

    def build_request(self, task: Task, snapshot: WorkflowState, mode: Mode) -> DispatchRequest:
        ctx = task.context
        artifacts = ctx.artifacts or snapshot.artifact_paths()
        if self.max_prior_artifacts >= 0:
            artifacts = artifacts[-self.max_prior_artifacts:] if self.max_prior_artifacts else []
        return DispatchRequest(
            task_id=task.id,
            mode=mode.name,
            objective=task.objective,
            instruction=task.instruction,
            relevant_facts=select_relevant_facts(snapshot, mode),
            prior_artifacts=tuple(artifacts),
            open_questions=tuple(ctx.open_questions or snapshot.open_issues),
            constraints=tuple(ctx.constraints),
            corrective_notes=tuple(ctx.corrective_notes),
            report_kinds=tuple(sorted(mode.report_kinds, key=lambda k: k.value)),
        )

    def dispatch(self, task: Task, snapshot: WorkflowState) -> DispatchHandle:
        """Package the task and mark it dispatched. Raises NotFoundError for unknown modes."""
        mode = self.registry.lookup(task.target_mode)
        request = self.build_request(task, snapshot, mode)
        task.status = TaskStatus.DISPATCHED
        task.attempt += 1
        task.failure_reason = ""
        logger.info("Dispatching %s to %s (attempt %d)", task.id, mode.name, task.attempt)
        return DispatchHandle(task, request, self._backend(mode), self.timeout_sec)
