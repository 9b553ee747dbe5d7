"""Coordinator invoked on every work item mutation.

Wires the store to the three derived-property engines:

- edit: field checks → date inference → persist → completion propagation
- create: id allocation → date inference → persist → ancestor recompute
- delete: cascade the subtree → recompute from the detached parent

Field-level problems come back in :attr:`UpdateResult.validation_errors`
and nothing is written. Structural problems (missing rows, cycles) raise.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import date
from pathlib import Path
from typing import Any, Callable

from workplan.completion import CompletionAggregator, CompletionChange
from workplan.config import DEFAULTS
from workplan.dates import DateCalculation, DateInferenceEngine
from workplan.errors import ConstraintViolation, NotFoundError, ValidationError, WorkplanError
from workplan.ids import IDAllocator, IdScope, validate_id_text
from workplan.migrate import MigrationResult, migrate
from workplan.models import DATE_FIELDS, EDITABLE_FIELDS, WorkItem
from workplan.validate import IdValidation, validate_ids

log = logging.getLogger(__name__)


@dataclass
class UpdateResult:
    """Outcome of :meth:`UpdateOrchestrator.on_field_changed`."""

    record: WorkItem
    date_calculation: DateCalculation | None = None
    validation_errors: dict[str, list[str]] = field(default_factory=dict)
    completion_changes: list[CompletionChange] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.validation_errors

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"record": self.record.to_dict()}
        if self.date_calculation is not None:
            data["date_calculation"] = self.date_calculation.to_dict()
        if self.validation_errors:
            data["validation_errors"] = {
                k: list(v) for k, v in self.validation_errors.items()
            }
        if self.completion_changes:
            data["completion_changes"] = [c.to_dict() for c in self.completion_changes]
        return data


def _completion_error(value: Any) -> str | None:
    if isinstance(value, bool) or not isinstance(value, int):
        return "Completion must be a whole number"
    if not 0 <= value <= 100:
        return "Completion must be between 0 and 100"
    return None


class UpdateOrchestrator:
    """Single entry point for mutating work items.

    Parameters
    ----------
    store:
        Record store (see :class:`workplan.store.WorkItemDB`).
    config:
        Workplan config dict; defaults to :data:`workplan.config.DEFAULTS`.
    backup_dir:
        Where committed migrations write their snapshot.
    today:
        Clock shared by date inference and date-scheme ids.
    """

    def __init__(
        self,
        store: Any,
        config: dict[str, Any] | None = None,
        backup_dir: Path | None = None,
        today: Callable[[], date] = date.today,
    ) -> None:
        self._store = store
        self._config = config or DEFAULTS
        self._backup_dir = backup_dir
        self.completion = CompletionAggregator(
            store, max_depth=self._config["tree"]["max_depth"],
        )
        self.dates = DateInferenceEngine.from_config(self._config, today=today)
        self.ids = IDAllocator.from_config(store, self._config, today=today)

    # ------------------------------------------------------------------
    # Edit
    # ------------------------------------------------------------------

    def on_field_changed(
        self,
        item_id: str,
        changes: dict[str, Any],
        changed_field: str | None = None,
    ) -> UpdateResult:
        """Apply *changes* to *item_id* and restore every derived property.

        Parameters
        ----------
        item_id:
            Item being edited.
        changes:
            Field name → new value.
        changed_field:
            Date field the user touched. Defaults to the single date field
            in *changes*; with several, both dates determine the duration.

        Raises
        ------
        NotFoundError
            If the item or a new parent does not exist.
        ConstraintViolation
            If the new parent is the item itself or one of its descendants.
            Also raised for a parent in another project and for a move that
            breaks ``tree.max_depth``.
        """
        item = self._store.require(item_id)
        errors = self._check_fields(item, changes)
        if errors:
            log.debug("Rejected edit of %s: %s", item_id, errors)
            return UpdateResult(record=item, validation_errors=errors)

        updates = {k: v for k, v in changes.items() if k not in DATE_FIELDS}
        if "parent_id" in updates:
            updates["parent_id"] = updates["parent_id"] or None
            self._check_reparent(item, updates["parent_id"])

        calculation = None
        touched = [f for f in DATE_FIELDS if f in changes]
        if touched:
            if changed_field is None and len(touched) == 1:
                changed_field = touched[0]
            merged = {f: changes.get(f, getattr(item, f)) for f in DATE_FIELDS}
            calculation = self.dates.infer(changed_field=changed_field, **merged)
            if not calculation.ok:
                log.debug("Rejected date edit of %s: %s", item_id, calculation.errors)
                return UpdateResult(
                    record=item,
                    date_calculation=calculation,
                    validation_errors=dict(calculation.errors),
                )
            updates.update(
                start_date=calculation.start_date,
                finish_date=calculation.finish_date,
                duration_days=calculation.duration_days,
            )

        record = self._store.update(item_id, **updates)
        result = UpdateResult(record=record, date_calculation=calculation)

        old_parent = item.parent_id
        if "parent_id" in updates and updates["parent_id"] != old_parent:
            if old_parent and self._store.get(old_parent) is not None:
                result.completion_changes.extend(self.completion.recompute_from(old_parent))
            result.completion_changes.extend(self.completion.update_ancestors(item_id))
            log.info("Moved %s from %s to %s", item_id, old_parent, updates["parent_id"])
        elif "completion" in updates and updates["completion"] != item.completion:
            result.completion_changes.extend(self.completion.update_ancestors(item_id))
        return result

    def _check_fields(self, item: WorkItem, changes: dict[str, Any]) -> dict[str, list[str]]:
        errors: dict[str, list[str]] = {}
        for name in changes:
            if name not in EDITABLE_FIELDS:
                errors.setdefault(name, []).append(f"Unknown or read-only field '{name}'")

        if "title" in changes:
            title = changes["title"]
            if not isinstance(title, str) or not title.strip():
                errors.setdefault("title", []).append("Title cannot be empty")

        if "completion" in changes:
            message = _completion_error(changes["completion"])
            if message:
                errors.setdefault("completion", []).append(message)
            elif self._store.children(item.id):
                errors.setdefault("completion", []).append(
                    "Completion of an item with children is derived from its children"
                )
        return errors

    def _check_reparent(self, item: WorkItem, new_parent_id: str | None) -> None:
        if new_parent_id is None or new_parent_id == item.parent_id:
            return
        if new_parent_id == item.id:
            raise ConstraintViolation(f"Work item '{item.id}' cannot be its own parent")
        new_parent = self._store.get(new_parent_id)
        if new_parent is None:
            raise NotFoundError(f"Parent work item not found: {new_parent_id}")
        if new_parent.project_id != item.project_id:
            raise ConstraintViolation(
                f"Parent '{new_parent_id}' belongs to project '{new_parent.project_id}'"
            )
        levels = self._levels(item.id)
        if any(new_parent_id in level for level in levels):
            raise ConstraintViolation(
                f"Cannot move '{item.id}' under its own descendant '{new_parent_id}'"
            )
        self._check_depth(new_parent_id, below=len(levels))

    def _check_depth(self, parent_id: str, below: int = 0) -> None:
        """Raise if an item placed under *parent_id* would break ``tree.max_depth``.

        *below* is the number of levels already hanging under that item.
        """
        max_depth = self._config["tree"]["max_depth"]
        seen: set[str] = set()
        current_id: str | None = parent_id
        while current_id:
            if current_id in seen:
                raise ConstraintViolation(f"Cycle detected at work item '{current_id}'")
            seen.add(current_id)
            if len(seen) + below > max_depth:
                raise ConstraintViolation(
                    f"Placing an item under '{parent_id}' exceeds max_depth={max_depth}"
                )
            node = self._store.get(current_id)
            if node is None:
                raise NotFoundError(f"Parent work item not found: {current_id}")
            current_id = node.parent_id

    def _levels(self, item_id: str) -> list[list[str]]:
        max_depth = self._config["tree"]["max_depth"]
        seen = {item_id}
        levels: list[list[str]] = []
        level = [item_id]
        while level:
            if len(levels) > max_depth:
                raise ConstraintViolation(
                    f"Tree below '{item_id}' deeper than max_depth={max_depth}"
                )
            next_level: list[str] = []
            for parent in level:
                for child in self._store.children(parent):
                    if child.id in seen:
                        raise ConstraintViolation(f"Cycle detected at work item '{child.id}'")
                    seen.add(child.id)
                    next_level.append(child.id)
            if next_level:
                levels.append(next_level)
            level = next_level
        return levels

    def descendant_ids(self, item_id: str) -> list[str]:
        """Ids below *item_id*, breadth first."""
        return [child for level in self._levels(item_id) for child in level]

    # ------------------------------------------------------------------
    # Create / delete
    # ------------------------------------------------------------------

    def add_item(
        self,
        project_id: str,
        title: str,
        parent_id: str | None = None,
        item_id: str | None = None,
        **fields: Any,
    ) -> WorkItem:
        """Create a work item and recompute its ancestors.

        The id is allocated under ``ids.scheme`` unless *item_id* is given
        (imports of legacy rows).

        Raises
        ------
        ValidationError
            On a bad title, completion, extra field or date triple.
        NotFoundError
            If the project or parent does not exist.
        ConstraintViolation
            If the parent is in another project or the new item would sit
            deeper than ``tree.max_depth``.
        """
        if self._store.get_project(project_id) is None:
            raise NotFoundError(f"Project not found: {project_id}")
        if not isinstance(title, str) or not title.strip():
            raise ValidationError("Title cannot be empty", {"title": ["Title cannot be empty"]})

        unknown = set(fields) - (set(EDITABLE_FIELDS) - {"title", "parent_id"})
        if unknown:
            raise ValidationError(f"Unknown work item fields: {sorted(unknown)}")
        completion = fields.pop("completion", 0)
        message = _completion_error(completion)
        if message:
            raise ValidationError(message, {"completion": [message]})

        if parent_id:
            parent = self._store.require(parent_id)
            if parent.project_id != project_id:
                raise ConstraintViolation(
                    f"Parent '{parent_id}' belongs to project '{parent.project_id}'"
                )
            self._check_depth(parent_id)

        dates = {f: fields.pop(f, None) for f in DATE_FIELDS}
        if any(not self.dates.is_unset(v) for v in dates.values()):
            calculation = self.dates.infer(**dates)
            if not calculation.ok:
                raise ValidationError("Invalid dates", calculation.errors)
            dates = {
                "start_date": calculation.start_date,
                "finish_date": calculation.finish_date,
                "duration_days": calculation.duration_days,
            }
        else:
            dates = {f: None for f in DATE_FIELDS}

        if item_id is not None:
            new_id = validate_id_text(item_id)
            reserved = False
        else:
            new_id = self._allocate_for(project_id, parent_id)
            reserved = True

        item = WorkItem(
            id=new_id,
            title=title.strip(),
            project_id=project_id,
            parent_id=parent_id or None,
            completion=completion,
            **dates,
            **fields,
        )
        try:
            self._store.create(item)
        except WorkplanError:
            if reserved:
                self.ids.release([new_id])
            raise
        log.info("Created work item %s in project %s", new_id, project_id)

        if item.parent_id:
            self.completion.update_ancestors(item.id)
        return item

    def _allocate_for(self, project_id: str, parent_id: str | None) -> str:
        if self._config["ids"]["scheme"] == "date":
            return self.ids.allocate_id(IdScope(project_id=project_id), "date")
        if parent_id:
            return self.ids.allocate_id(
                IdScope(project_id=project_id, parent_id=parent_id), "task",
            )
        return self.ids.allocate_id(IdScope(project_id=project_id), "work_package")

    def delete_item(self, item_id: str) -> list[str]:
        """Delete *item_id* and its subtree, deepest first.

        Returns the deleted ids. The former parent is recomputed from its
        remaining children.
        """
        item = self._store.require(item_id)
        ids = [item_id, *self.descendant_ids(item_id)]
        ids.reverse()
        self._store.delete_many(ids)
        log.info("Deleted %d work item(s) under %s", len(ids), item_id)

        if item.parent_id and self._store.get(item.parent_id) is not None:
            self.completion.recompute_from(item.parent_id)
        return ids

    # ------------------------------------------------------------------
    # Forwarders
    # ------------------------------------------------------------------

    def recalculate_ancestors(self, item_id: str) -> list[CompletionChange]:
        return self.completion.update_ancestors(item_id)

    def recalculate_subtree(self, root_id: str) -> dict[str, int]:
        return self.completion.recalculate_subtree(root_id)

    def recalculate_project(self, project_id: str) -> dict[str, int]:
        return self.completion.recalculate_project(project_id)

    def project_stats(self, project_id: str) -> dict[str, int]:
        return self.completion.project_stats(project_id)

    def allocate_id(self, scope: IdScope, kind: str) -> str:
        return self.ids.allocate_id(scope, kind)

    def allocate_ids(self, scope: IdScope, kind: str, count: int) -> list[str]:
        return self.ids.allocate_ids(scope, kind, count)

    def migrate(self, dry_run: bool = True, scheme: str | None = None) -> MigrationResult:
        return migrate(
            self._store,
            self._config,
            dry_run=dry_run,
            backup_dir=self._backup_dir,
            scheme=scheme,
        )

    def validate_ids(self) -> IdValidation:
        return validate_ids(self._store.list())
