"""Tests for markdown helpers."""

from maestro.markdown import (
    normalize_title,
    parse_frontmatter,
    parse_header_fields,
    parse_list_items,
    split_sections,
)


def test_frontmatter_parsed():
    meta, body = parse_frontmatter("---\nkind: design_handoff\n---\n## Design Handoff\n")
    assert meta == {"kind": "design_handoff"}
    assert body.startswith("## Design Handoff")


def test_malformed_frontmatter_yields_empty_meta():
    meta, body = parse_frontmatter("---\nkind: [unclosed\n---\nbody")
    assert meta == {}
    assert body == "body"


def test_no_frontmatter():
    meta, body = parse_frontmatter("## Summary\ntext")
    assert meta == {}
    assert body == "## Summary\ntext"


def test_split_sections_keeps_order_and_preamble():
    body = "intro\n## A\none\n### A.1\nnested\n## B\ntwo"
    assert split_sections(body, 2) == [
        ("", "intro"),
        ("A", "one\n### A.1\nnested"),
        ("B", "two"),
    ]


def test_split_sections_ignores_fenced_headings():
    body = "## Code Changes\n```\n## not a heading\n```\n## Testing\nok"
    titles = [t for t, _ in split_sections(body, 2)]
    assert titles == ["Code Changes", "Testing"]


def test_normalize_title():
    assert normalize_title("Decisions & Assumptions") == "decisions and assumptions"
    assert normalize_title("Follow-up") == "follow up"


def test_list_items():
    text = "- a\n* `b`\n1. c\n- [x] d\nplain line"
    assert parse_list_items(text) == ["a", "b", "c", "d"]


def test_header_fields_lines_and_bold():
    fields = parse_header_fields("**Bug Status**: Fixed\n- Severity: High")
    assert fields == {"bug status": "Fixed", "severity": "High"}


def test_header_fields_table():
    text = "| Bug ID | Severity | Status |\n|---|---|---|\n| AUTH-42 | High | Fixed |"
    assert parse_header_fields(text) == {
        "bug id": "AUTH-42", "severity": "High", "status": "Fixed",
    }
