"""Markdown helpers: frontmatter, heading sections, lists and key/value lines."""

from __future__ import annotations

import re

import yaml

# -------------------------------------------------------------------
# Frontmatter parsing
# -------------------------------------------------------------------

_FM_RE = re.compile(r"^\s*---\s*\n(.*?)\n---\s*(?:\n|$)(.*)", re.DOTALL)


def parse_frontmatter(content: str) -> tuple[dict, str]:
    """Parse YAML frontmatter from markdown content.

    Returns (metadata_dict, body_text). Malformed or non-mapping
    frontmatter yields an empty dict.
    """
    match = _FM_RE.match(content)
    if match:
        raw_yaml = match.group(1)
        body = match.group(2)
        try:
            meta = yaml.safe_load(raw_yaml)
        except yaml.YAMLError:
            meta = None
        if not isinstance(meta, dict):
            meta = {}
        return meta, body
    return {}, content


# -------------------------------------------------------------------
# Sections
# -------------------------------------------------------------------

_HEADING_RE = re.compile(r"^(#{1,6})\s+(.+?)\s*#*\s*$")


def split_sections(body: str, level: int) -> list[tuple[str, str]]:
    """Split ``body`` on headings of exactly ``level``.

    Returns ordered (title, text) pairs. Text before the first heading is
    returned under the empty title. Deeper headings stay inside their
    parent section; fenced code blocks are not scanned for headings.
    """
    sections: list[tuple[str, str]] = []
    current_title = ""
    current_lines: list[str] = []
    in_fence = False

    for line in body.splitlines():
        if line.lstrip().startswith("```"):
            in_fence = not in_fence
        m = None if in_fence else _HEADING_RE.match(line)
        if m and len(m.group(1)) == level:
            if current_title or "\n".join(current_lines).strip():
                sections.append((current_title, "\n".join(current_lines).strip()))
            current_title = m.group(2).strip()
            current_lines = []
        else:
            current_lines.append(line)

    if current_title or "\n".join(current_lines).strip():
        sections.append((current_title, "\n".join(current_lines).strip()))
    return sections


def normalize_title(title: str) -> str:
    """Case/punctuation-insensitive key for heading comparison."""
    title = title.lower().replace("&", "and")
    return re.sub(r"[^a-z0-9]+", " ", title).strip()


# -------------------------------------------------------------------
# Lists and key/value lines
# -------------------------------------------------------------------

_ITEM_RE = re.compile(r"^\s*(?:[-*+]|\d+[.)])\s+(?:\[[ xX]\]\s+)?(.+?)\s*$")
_KV_RE = re.compile(r"^\s*(?:[-*+]\s+)?\**([A-Za-z][\w /()-]*?)\**\s*:\s*(.*?)\s*$")


def parse_list_items(text: str) -> list[str]:
    """Bulleted or numbered items; a plain paragraph yields no items."""
    items: list[str] = []
    for line in text.splitlines():
        m = _ITEM_RE.match(line)
        if m:
            items.append(_strip_code(m.group(1)))
    return items


def parse_key_value(line: str) -> tuple[str, str] | None:
    m = _KV_RE.match(line)
    if not m:
        return None
    return m.group(1).strip(), _strip_code(m.group(2))


def parse_header_fields(text: str) -> dict[str, str]:
    """``Key: value`` lines (optionally bold or bulleted), keyed by normalized title.

    ``Bug ID | Severity | Status`` tables are read too: a header row
    followed by a separator row and a value row.
    """
    fields: dict[str, str] = {}
    lines = [ln for ln in text.splitlines() if ln.strip()]

    table_rows = [ln for ln in lines if "|" in ln]
    if len(table_rows) >= 2:
        header = _table_cells(table_rows[0])
        rows = [r for r in table_rows[1:] if not re.fullmatch(r"[\s|:-]+", r)]
        if rows:
            for name, value in zip(header, _table_cells(rows[0])):
                if name:
                    fields[normalize_title(name)] = value

    for line in lines:
        if "|" in line:
            continue
        kv = parse_key_value(line)
        if kv:
            fields.setdefault(normalize_title(kv[0]), kv[1])
    return fields


def _table_cells(row: str) -> list[str]:
    return [c.strip().strip("*").strip() for c in row.strip().strip("|").split("|")]


def _strip_code(text: str) -> str:
    text = text.strip()
    if len(text) >= 2 and text[0] == "`" and text[-1] == "`":
        return text[1:-1].strip()
    return text
