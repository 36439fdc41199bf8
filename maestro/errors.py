"""Error kinds raised by the orchestration core."""

from __future__ import annotations


class MaestroError(Exception):
    """Base class for all maestro errors."""

    @property
    def kind(self) -> str:
        return type(self).__name__


class ConfigError(MaestroError):
    """Invalid configuration file."""


class NotFoundError(MaestroError):
    """Unknown mode. A configuration error, never retried."""

    def __init__(self, name: str, message: str | None = None):
        self.name = name
        super().__init__(message or f"Unknown mode: '{name}'")


class ModeDefinitionError(MaestroError):
    """A mode definition file or catalogue entry is malformed."""


class ParseError(MaestroError):
    """A raw mode output could not be decoded into a HandoffReport."""

    def __init__(self, problems: list[str]):
        self.problems = list(problems)
        super().__init__("; ".join(self.problems) or "unparseable report")


class ValidationError(MaestroError):
    """A parsed HandoffReport violates its contract."""

    def __init__(self, reasons: list[str]):
        self.reasons = list(reasons)
        super().__init__("; ".join(self.reasons))


class DispatchTimeout(MaestroError):
    """The mode execution boundary did not answer before the deadline."""

    def __init__(self, task_id: str, timeout_sec: float):
        self.task_id = task_id
        self.timeout_sec = timeout_sec
        super().__init__(f"Task {task_id} timed out after {timeout_sec:g}s")


class ModeExecutionError(MaestroError):
    """The mode execution boundary itself reported a failure."""


class RoutingMismatchError(MaestroError):
    """A recommended mode does not cover the category of the remaining work."""

    def __init__(self, mode: str, category: str, capabilities: frozenset[str] | set[str]):
        self.mode = mode
        self.category = category
        self.capabilities = frozenset(capabilities)
        caps = ", ".join(sorted(self.capabilities)) or "none"
        super().__init__(
            f"Recommended mode '{mode}' cannot take '{category}' work "
            f"(capabilities: {caps})"
        )


class StepBudgetExceeded(MaestroError):
    """A run dispatched more tasks than ``router.max_steps`` allows."""

    def __init__(self, max_steps: int):
        self.max_steps = max_steps
        super().__init__(f"Step budget of {max_steps} task(s) exhausted")


class WorkflowStateError(MaestroError):
    """The requested operation is not valid in the workflow's current state."""
