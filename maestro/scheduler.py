"""Scheduler: pick the first mode for a new objective."""

from __future__ import annotations

from collections.abc import Iterable

from .models import Mode


def pick_first_mode(
    candidates: Iterable[Mode], design_first: bool = True
) -> Mode | None:
    """Select the mode that starts a workflow.

    Priority: design producers first (when ``design_first``) → name (asc).
    """
    ranked = sorted(
        candidates,
        key=lambda m: (
            0 if (design_first and m.produces_design) else 1,
            m.name,
        ),
    )
    return ranked[0] if ranked else None
