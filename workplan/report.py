"""Jinja2 rendering of the Markdown work-plan report."""

from __future__ import annotations

from collections import OrderedDict
from datetime import date
from pathlib import Path
from typing import Any

from jinja2 import Environment, FileSystemLoader

from workplan.completion import CompletionAggregator
from workplan.errors import NotFoundError
from workplan.models import WorkItem

_TEMPLATES_DIR = Path(__file__).resolve().parent / "templates"

UNASSIGNED_PACKAGE = "Unassigned"


def _format_date(value: date | None) -> str:
    """Jinja2 filter: ``12 Oct 2025`` or a dash for unset dates."""
    return value.strftime("%d %b %Y") if value else "-"


def _get_env() -> Environment:
    """Create a Jinja2 environment loading from workplan/templates/."""
    env = Environment(
        loader=FileSystemLoader(str(_TEMPLATES_DIR)),
        trim_blocks=True,
        lstrip_blocks=True,
        keep_trailing_newline=True,
    )
    env.filters["fmt_date"] = _format_date
    return env


def _tree_rows(store: Any, root: WorkItem, max_depth: int) -> list[dict[str, Any]]:
    """Depth-first rows under *root*, each tagged with its depth."""
    rows: list[dict[str, Any]] = []
    stack: list[tuple[WorkItem, int]] = [(root, 0)]
    seen: set[str] = set()
    while stack:
        item, depth = stack.pop()
        if item.id in seen or depth > max_depth:
            continue
        seen.add(item.id)
        rows.append({"item": item, "depth": depth})
        children = store.children(item.id)
        stack.extend((child, depth + 1) for child in reversed(children))
    return rows


def render_work_plan(store: Any, project_id: str, max_depth: int = 10) -> str:
    """Render the work plan of *project_id* as Markdown.

    Root items are grouped by ``package``; each group lists its roots with
    their subtrees indented beneath them.
    """
    project = store.get_project(project_id)
    if project is None:
        raise NotFoundError(f"Project not found: {project_id}")

    packages: OrderedDict[str, list[dict[str, Any]]] = OrderedDict()
    roots = store.list(project_id=project_id, roots_only=True)
    for root in sorted(roots, key=lambda r: (r.package or UNASSIGNED_PACKAGE, r.created_at)):
        key = root.package or UNASSIGNED_PACKAGE
        packages.setdefault(key, []).extend(_tree_rows(store, root, max_depth))

    stats = CompletionAggregator(store, max_depth=max_depth).project_stats(project_id)
    return _get_env().get_template("work_plan.md.j2").render(
        project=project,
        stats=stats,
        packages=packages,
    )
