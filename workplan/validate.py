"""Id integrity checks.

Ensures every work item id is structured, no id appears twice, and every
``parent_id`` resolves to an existing item. Run after a migration, or any
time from ``workplan validate-ids``.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Iterable

from workplan.ids import is_structured
from workplan.models import WorkItem


@dataclass
class IdValidation:
    """Result of validating work item ids."""

    total_items: int
    invalid_ids: list[str] = field(default_factory=list)
    duplicate_ids: list[str] = field(default_factory=list)
    orphaned_children: list[str] = field(default_factory=list)

    @property
    def passed(self) -> bool:
        return not (self.invalid_ids or self.duplicate_ids or self.orphaned_children)

    def to_dict(self) -> dict[str, Any]:
        return {
            "passed": self.passed,
            "total_items": self.total_items,
            "invalid_ids": list(self.invalid_ids),
            "duplicate_ids": list(self.duplicate_ids),
            "orphaned_children": list(self.orphaned_children),
        }

    def __repr__(self) -> str:
        status = "PASS" if self.passed else "FAIL"
        return (
            f"IdValidation({status}, {len(self.invalid_ids)} invalid, "
            f"{len(self.duplicate_ids)} duplicate, {len(self.orphaned_children)} orphaned)"
        )


def validate_ids(items: Iterable[WorkItem]) -> IdValidation:
    """Check ids of *items* for scheme, uniqueness and dangling parents.

    The whole id set is collected before orphans are checked, so the result
    does not depend on the order of *items*.
    """
    items = list(items)
    seen: set[str] = set()
    duplicates: list[str] = []
    invalid: list[str] = []

    for item in items:
        if item.id in seen:
            if item.id not in duplicates:
                duplicates.append(item.id)
        else:
            seen.add(item.id)
            if not is_structured(item.id):
                invalid.append(item.id)

    orphaned = [
        item.id for item in items
        if item.parent_id and item.parent_id not in seen
    ]

    return IdValidation(
        total_items=len(items),
        invalid_ids=invalid,
        duplicate_ids=duplicates,
        orphaned_children=orphaned,
    )
