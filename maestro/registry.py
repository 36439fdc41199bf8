"""Mode Registry: static catalogue of worker roles.

Modes come from ``*-mode.md`` files (YAML frontmatter + a ``# <Name> Mode``
heading) or from the built-in catalogue. The registry is read-only once
built; the router queries it but never mutates it.
"""

from __future__ import annotations

import logging
import re
from collections.abc import Iterable, Iterator
from pathlib import Path
from typing import Any

from .config import Config
from .errors import ModeDefinitionError, NotFoundError
from .markdown import parse_frontmatter
from .models import Mode, ReportKind

logger = logging.getLogger(__name__)

ROOMODES_GROUPS = ["read", "edit", "browser", "command", "mcp"]


def normalize_slug(name: str) -> str:
    """Lowercase, collapse non-alphanumeric runs to '-', trim dashes."""
    return re.sub(r"[^a-z0-9]+", "-", name.lower()).strip("-")


def _report_kind(value: Any) -> ReportKind:
    text = str(value).strip()
    try:
        return ReportKind(normalize_slug(text).replace("-", "_"))
    except ValueError:
        raise ModeDefinitionError(f"Unknown report kind: '{text}'") from None


def _string_list(meta: dict, key: str) -> list[str]:
    value = meta.get(key) or []
    if isinstance(value, str):
        value = [value]
    if not isinstance(value, list):
        raise ModeDefinitionError(f"'{key}' must be a list")
    return [str(v).strip() for v in value if str(v).strip()]


def build_mode(name: str, **attrs: Any) -> Mode:
    """Build a Mode from loosely-typed attributes (frontmatter or config)."""
    slug = normalize_slug(name)
    if not slug:
        raise ModeDefinitionError(f"Invalid mode name: '{name}'")
    return Mode(
        name=slug,
        title=attrs.get("title") or name,
        capabilities=frozenset(_string_list(attrs, "capabilities")),
        report_kinds=frozenset(_report_kind(k) for k in _string_list(attrs, "report_kinds")),
        context_keys=tuple(_string_list(attrs, "context_keys")),
        role_definition=str(attrs.get("role_definition") or "").strip(),
        custom_instructions=str(attrs.get("custom_instructions") or "").strip(),
        backend=str(attrs.get("backend") or ""),
        model=str(attrs.get("model") or ""),
    )


# -------------------------------------------------------------------
# Mode files
# -------------------------------------------------------------------

_NAME_RE = re.compile(r"^# ([^\n]+) Mode", re.MULTILINE)
_NAME_HEADING_RE = re.compile(r"^# [^\n]+ Mode\s*", re.MULTILINE)
_ROLE_DEF_RE = re.compile(r"## Role Definition[\r\n]+([\s\S]*?)(?=\n## |$)")
_CUSTOM_MARKER = "## Custom Instructions"


def parse_mode_file(content: str, filename: str = "") -> Mode:
    """Parse one mode markdown file into a Mode."""
    meta, body = parse_frontmatter(content)

    name_match = _NAME_RE.search(body)
    if not name_match:
        raise ModeDefinitionError(
            f"Could not find mode name in {filename or 'mode file'}"
        )
    name = name_match.group(1).strip()
    body = _NAME_HEADING_RE.sub("", body, count=1).strip()

    custom = ""
    split_index = body.find(_CUSTOM_MARKER)
    if split_index != -1:
        custom = body[split_index + len(_CUSTOM_MARKER):].strip()
        before = body[:split_index].strip()
    else:
        before = body

    role_match = _ROLE_DEF_RE.search(before)
    role = role_match.group(1).strip() if role_match else before.strip()

    return build_mode(
        name,
        title=name,
        capabilities=meta.get("capabilities"),
        report_kinds=meta.get("report_kinds"),
        context_keys=meta.get("context_keys"),
        backend=meta.get("backend"),
        model=meta.get("model"),
        role_definition=role,
        custom_instructions=custom,
    )


# -------------------------------------------------------------------
# Registry
# -------------------------------------------------------------------

class ModeRegistry:
    """Immutable catalogue of modes keyed by slug."""

    def __init__(self, modes: Iterable[Mode]):
        by_name: dict[str, Mode] = {}
        for mode in modes:
            if mode.name in by_name:
                raise ModeDefinitionError(f"Duplicate mode: '{mode.name}'")
            by_name[mode.name] = mode
        self._modes = dict(sorted(by_name.items()))

    def lookup(self, name: str) -> Mode:
        mode = self._modes.get(normalize_slug(name or ""))
        if mode is None:
            raise NotFoundError(name)
        return mode

    def find_by_capability(self, capability: str) -> frozenset[Mode]:
        return frozenset(m for m in self._modes.values() if capability in m.capabilities)

    def names(self) -> list[str]:
        return list(self._modes)

    def __iter__(self) -> Iterator[Mode]:
        return iter(self._modes.values())

    def __len__(self) -> int:
        return len(self._modes)

    def __contains__(self, name: object) -> bool:
        return isinstance(name, str) and normalize_slug(name) in self._modes


def load_modes_dir(path: str | Path) -> ModeRegistry:
    """Load every ``*-mode.md`` in ``path``. Unparseable files are skipped."""
    modes: list[Mode] = []
    for file in sorted(Path(path).glob("*-mode.md")):
        try:
            modes.append(parse_mode_file(file.read_text(encoding="utf-8"), file.name))
        except ModeDefinitionError as exc:
            logger.error("Error parsing %s: %s", file.name, exc)
    logger.debug("Loaded %d mode(s) from %s", len(modes), path)
    return ModeRegistry(modes)


def to_roomodes(registry: ModeRegistry) -> dict:
    """Export the catalogue in the ``.roomodes`` layout, sorted by name."""
    entries = []
    for mode in sorted(registry, key=lambda m: m.title or m.name):
        entry: dict[str, Any] = {
            "slug": mode.name,
            "name": mode.title or mode.name,
            "roleDefinition": mode.role_definition or mode.name,
            "groups": list(ROOMODES_GROUPS),
            "source": "project",
        }
        if mode.custom_instructions:
            entry["customInstructions"] = mode.custom_instructions
        entries.append(entry)
    return {"customModes": entries}


# -------------------------------------------------------------------
# Built-in catalogue
# -------------------------------------------------------------------

DEFAULT_MODES: tuple[Mode, ...] = (
    build_mode(
        "Architect",
        capabilities=["design", "architecture"],
        report_kinds=["design_handoff", "progress_update"],
        context_keys=["architecture.*", "constraint.*"],
        role_definition="Designs system structure and records architectural decisions.",
    ),
    build_mode(
        "Debugger",
        capabilities=["debug", "fix"],
        report_kinds=["executive_summary", "resolution_report", "unresolved_issue_report"],
        context_keys=["bug_*", "error.*"],
        role_definition="Diagnoses defects, finds root causes and verifies fixes.",
    ),
    build_mode(
        "DevOps",
        title="DevOps Engineer",
        capabilities=["deploy", "infrastructure", "ci"],
        report_kinds=["implementation_handoff", "progress_update", "unresolved_issue_report"],
        context_keys=["deploy.*", "env.*"],
        role_definition="Owns build, deployment and infrastructure automation.",
    ),
    build_mode(
        "Frontend Developer",
        capabilities=["frontend", "implement"],
        report_kinds=["implementation_handoff", "progress_update"],
        context_keys=["design.*", "ui.*"],
        role_definition="Implements user interfaces from approved designs.",
    ),
    build_mode(
        "Planner",
        capabilities=["plan"],
        report_kinds=["progress_update", "design_handoff"],
        role_definition="Breaks objectives into ordered, delegable work.",
    ),
    build_mode(
        "Security Specialist",
        capabilities=["secure-review", "security"],
        report_kinds=["executive_summary", "progress_update", "unresolved_issue_report"],
        context_keys=["security.*", "auth.*"],
        role_definition="Reviews code and configuration for security weaknesses.",
    ),
    build_mode(
        "UI/UX Designer",
        capabilities=["design", "frontend", "ux"],
        report_kinds=["design_handoff", "progress_update"],
        context_keys=["ui.*", "brand.*"],
        role_definition="Produces interface designs and interaction specifications.",
    ),
)


def load_registry(config: Config) -> ModeRegistry:
    """Modes directory when present, otherwise the built-in catalogue."""
    modes_dir = config.resolve(config.modes_dir)
    if modes_dir.is_dir() and any(modes_dir.glob("*-mode.md")):
        return load_modes_dir(modes_dir)
    return ModeRegistry(DEFAULT_MODES)
