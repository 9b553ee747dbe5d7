"""Completion aggregation over the work item tree.

A work item with children carries the rounded mean of its children's
resolved completion; leaves carry the value a user typed in. Rounding is
half-up on the exact mean, done in integer arithmetic.

Two entry points:

- :meth:`CompletionAggregator.update_ancestors` walks up from one edited
  node and stops at the first ancestor whose value does not change.
- :meth:`CompletionAggregator.recalculate_subtree` resolves a whole subtree
  bottom-up and writes only the values that differ.
"""

from __future__ import annotations

import logging
from dataclasses import asdict, dataclass
from typing import Any, Sequence

from workplan.errors import ConstraintViolation, NotFoundError
from workplan.models import WorkItem

log = logging.getLogger(__name__)

DEFAULT_MAX_DEPTH = 10


@dataclass
class CompletionChange:
    """One persisted completion write."""

    item_id: str
    old: int
    new: int

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


def calculate_parent_completion(values: Sequence[int]) -> int:
    """Return the mean of *values* rounded half up; 0 for no values."""
    if not values:
        return 0
    total = sum(values)
    n = len(values)
    return (2 * total + n) // (2 * n)


class CompletionAggregator:
    """Keeps parent completion consistent with the aggregation rule.

    Parameters
    ----------
    store:
        Record store (see :class:`workplan.store.WorkItemDB`).
    max_depth:
        Longest parent chain the walk will follow before reporting a cycle.
    """

    def __init__(self, store: Any, max_depth: int = DEFAULT_MAX_DEPTH) -> None:
        self._store = store
        self._max_depth = max_depth

    # ------------------------------------------------------------------
    # Resolution
    # ------------------------------------------------------------------

    def resolve_completion(self, item_id: str) -> int:
        """Return the completion *item_id* should hold, computed from leaves."""
        return self._resolve(self._store.require(item_id), 0, frozenset())

    def _resolve(self, item: WorkItem, depth: int, path: frozenset[str]) -> int:
        self._check_descent(item, depth, path)
        children = self._store.children(item.id)
        if not children:
            return item.completion
        inner = path | {item.id}
        return calculate_parent_completion(
            [self._resolve(child, depth + 1, inner) for child in children]
        )

    def _check_descent(self, item: WorkItem, depth: int, path: frozenset[str]) -> None:
        if item.id in path:
            raise ConstraintViolation(f"Cycle detected below work item '{item.id}'")
        if depth > self._max_depth:
            raise ConstraintViolation(
                f"Tree deeper than max_depth={self._max_depth} at '{item.id}'"
            )

    # ------------------------------------------------------------------
    # Incremental update
    # ------------------------------------------------------------------

    def update_ancestors(self, item_id: str) -> list[CompletionChange]:
        """Propagate a change at *item_id* to its ancestors.

        Returns the writes performed, nearest ancestor first.
        """
        item = self._store.require(item_id)
        if not item.parent_id:
            log.debug("No parent to update for %s", item_id)
            return []
        return self._propagate(item.parent_id, visited={item.id}, child_id=item.id)

    def recompute_from(self, item_id: str) -> list[CompletionChange]:
        """Recompute *item_id* itself from its children, then its ancestors.

        Used after the node's child set changed (a child was deleted or moved
        away). A node left with no children resolves to 0.
        """
        return self._propagate(item_id, visited=set())

    def _propagate(
        self, start_id: str, visited: set[str], child_id: str | None = None,
    ) -> list[CompletionChange]:
        changes: list[CompletionChange] = []
        current_id: str | None = start_id
        hops = 0

        while current_id:
            hops += 1
            if current_id in visited or hops > self._max_depth:
                raise ConstraintViolation(
                    f"Ancestor cycle or chain deeper than max_depth={self._max_depth} "
                    f"at work item '{current_id}'"
                )
            visited.add(current_id)

            node = self._store.get(current_id)
            if node is None:
                if child_id is None:
                    raise NotFoundError(f"Work item not found: {current_id}")
                raise NotFoundError(
                    f"Parent '{current_id}' of work item '{child_id}' not found"
                )

            children = self._store.children(node.id)
            inner = frozenset({node.id})
            new_value = calculate_parent_completion(
                [self._resolve(child, 1, inner) for child in children]
            )
            if new_value == node.completion:
                log.debug("Completion unchanged at %s (%d%%), stopping", node.id, new_value)
                break

            self._store.update(node.id, completion=new_value)
            changes.append(CompletionChange(node.id, node.completion, new_value))
            log.info(
                "Updated parent completion: %s from %d%% to %d%%",
                node.id, node.completion, new_value,
            )
            child_id = node.id
            current_id = node.parent_id

        return changes

    # ------------------------------------------------------------------
    # Full recompute
    # ------------------------------------------------------------------

    def recalculate_subtree(self, root_id: str) -> dict[str, int]:
        """Resolve every node under *root_id* bottom-up, writing differences."""
        root = self._store.require(root_id)
        _, writes = self._recalculate(root, 0, frozenset())
        log.info("Recalculated subtree %s: %d update(s)", root_id, writes)
        return {"updated_count": writes}

    def recalculate_project(self, project_id: str) -> dict[str, int]:
        """Recalculate every root item of a project."""
        writes = 0
        for root in self._store.list(project_id=project_id, roots_only=True):
            _, n = self._recalculate(root, 0, frozenset())
            writes += n
        log.info("Recalculated project %s: %d update(s)", project_id, writes)
        return {"updated_count": writes}

    def _recalculate(
        self, item: WorkItem, depth: int, path: frozenset[str],
    ) -> tuple[int, int]:
        """Return (resolved completion, writes performed) for *item*."""
        self._check_descent(item, depth, path)
        children = self._store.children(item.id)
        if not children:
            return item.completion, 0

        inner = path | {item.id}
        values: list[int] = []
        writes = 0
        for child in children:
            value, n = self._recalculate(child, depth + 1, inner)
            values.append(value)
            writes += n

        new_value = calculate_parent_completion(values)
        if new_value != item.completion:
            self._store.update(item.id, completion=new_value)
            log.info(
                "Updated completion: %s from %d%% to %d%%",
                item.id, item.completion, new_value,
            )
            writes += 1
        return new_value, writes

    # ------------------------------------------------------------------
    # Statistics
    # ------------------------------------------------------------------

    def project_stats(self, project_id: str) -> dict[str, int]:
        """Completion statistics over every item of a project."""
        items = self._store.list(project_id=project_id)
        total = len(items)
        values = [i.completion for i in items]
        return {
            "total_items": total,
            "average_completion": calculate_parent_completion(values),
            "completed_items": sum(1 for v in values if v == 100),
            "in_progress_items": sum(1 for v in values if 0 < v < 100),
            "not_started_items": sum(1 for v in values if v == 0),
        }
