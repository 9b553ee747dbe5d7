"""One-time migration of legacy work item ids to a structured scheme.

Runs in three explicit phases:

1. Plan: compute a candidate id for every legacy item. Date scheme groups
   items by project and creation day; work-package scheme gives top-level
   items ``WP-XXX-NNN`` and children ``{parent new id}-TNN``.
2. Validate: reject candidates that are not structured, that collide with
   an id already in the store (or reserved), or that repeat within the batch.
3. Commit: write a JSON snapshot of the pre-migration rows, then rename
   every id and relink every child to its parent's new id in one store
   transaction.

A dry run stops after phase 2 and writes nothing. Any collision aborts the
whole batch before phase 3.
"""

from __future__ import annotations

import json
import logging
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Iterable

from workplan.errors import ConstraintViolation, NotFoundError, ValidationError
from workplan.ids import (
    classify_id,
    date_prefix,
    derive_project_code,
    is_structured,
    plan_ids,
    task_prefix,
    work_package_prefix,
)
from workplan.models import Project, WorkItem

log = logging.getLogger(__name__)

SNAPSHOT_FIELDS = ("id", "parent_id", "project_id", "title", "created_at")


@dataclass
class MigrationPlan:
    """Output of the plan and validate phases."""

    scheme: str
    mapping: dict[str, str] = field(default_factory=dict)
    errors: list[str] = field(default_factory=list)
    collisions: list[str] = field(default_factory=list)
    snapshot: list[dict[str, Any]] = field(default_factory=list)

    @property
    def valid(self) -> bool:
        return not self.collisions


@dataclass
class MigrationResult:
    """Summary returned by :func:`migrate`."""

    migrated_count: int
    errors: list[str]
    mapping: list[dict[str, str]]
    snapshot: list[dict[str, Any]]
    dry_run: bool
    committed: bool
    backup_path: Path | None = None
    collisions: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "migrated_count": self.migrated_count,
            "errors": list(self.errors),
            "mapping": [dict(m) for m in self.mapping],
            "dry_run": self.dry_run,
            "committed": self.committed,
            "collisions": list(self.collisions),
            "backup_path": str(self.backup_path) if self.backup_path else None,
        }


# ------------------------------------------------------------------
# Phase 1: plan
# ------------------------------------------------------------------

def plan_migration(
    items: Iterable[WorkItem],
    projects: dict[str, Project],
    scheme: str = "date",
    reserved_ids: Iterable[str] = (),
    vessel_prefixes: Iterable[str] = ("MT", "KM", "MV", "MS"),
    fallback_code: str = "UNK",
) -> MigrationPlan:
    """Compute a new id for every legacy item.

    Gap filling sees every id already in the store, every reserved id and
    every candidate planned earlier in the same batch.
    """
    items = sorted(items, key=lambda i: (i.created_at, i.id))
    plan = MigrationPlan(scheme=scheme)
    plan.snapshot = [
        {k: getattr(item, k) for k in SNAPSHOT_FIELDS} for item in items
    ]

    taken: set[str] = {item.id for item in items}
    taken.update(reserved_ids)
    legacy = [item for item in items if not is_structured(item.id)]
    if not legacy:
        return plan

    if scheme == "date":
        _plan_date_scheme(plan, legacy, taken)
    elif scheme == "work_package":
        by_id = {item.id: item for item in items}
        _plan_work_package_scheme(
            plan, legacy, by_id, projects, taken, tuple(vessel_prefixes), fallback_code,
        )
    else:
        raise ValidationError(f"Unsupported migration scheme '{scheme}'")

    log.info(
        "Planned %d id(s) for %d legacy item(s) (%s scheme, %d error(s))",
        len(plan.mapping), len(legacy), scheme, len(plan.errors),
    )
    return plan


def _plan_date_scheme(
    plan: MigrationPlan, legacy: list[WorkItem], taken: set[str],
) -> None:
    groups: dict[tuple[str, Any], list[WorkItem]] = defaultdict(list)
    for item in legacy:
        try:
            day = item.created_day
        except ValueError:
            plan.errors.append(f"{item.id}: unreadable created_at '{item.created_at}'")
            continue
        groups[(item.project_id, day)].append(item)

    for (_, day), group in groups.items():
        prefix = date_prefix(day)
        new_ids = plan_ids(prefix, 3, taken, len(group))
        for item, new_id in zip(group, new_ids):
            plan.mapping[item.id] = new_id
            taken.add(new_id)


def _plan_work_package_scheme(
    plan: MigrationPlan,
    legacy: list[WorkItem],
    by_id: dict[str, WorkItem],
    projects: dict[str, Project],
    taken: set[str],
    vessel_prefixes: tuple[str, ...],
    fallback_code: str,
) -> None:
    skipped: set[str] = set()
    pending = list(legacy)

    # Parents must be planned before their children; each pass plans every
    # item whose parent id is now final.
    while pending:
        deferred: list[WorkItem] = []
        for item in pending:
            try:
                new_id = _plan_one_work_package(
                    item, by_id, projects, plan.mapping, skipped,
                    taken, vessel_prefixes, fallback_code,
                )
            except (NotFoundError, ValidationError) as exc:
                plan.errors.append(f"{item.id}: {exc}")
                log.warning("Skipping %s during migration planning: %s", item.id, exc)
                skipped.add(item.id)
                continue
            if new_id is None:
                deferred.append(item)
                continue
            plan.mapping[item.id] = new_id
            taken.add(new_id)

        if len(deferred) == len(pending):
            for item in deferred:
                plan.errors.append(f"{item.id}: parent chain forms a cycle")
                skipped.add(item.id)
            break
        pending = deferred


def _plan_one_work_package(
    item: WorkItem,
    by_id: dict[str, WorkItem],
    projects: dict[str, Project],
    mapping: dict[str, str],
    skipped: set[str],
    taken: set[str],
    vessel_prefixes: tuple[str, ...],
    fallback_code: str,
) -> str | None:
    """Return the planned id, or None if the parent is not planned yet."""
    if item.parent_id is None:
        project = projects.get(item.project_id)
        if project is None:
            raise NotFoundError(f"project '{item.project_id}' not found")
        code = derive_project_code(project.code_source, vessel_prefixes, fallback_code)
        return plan_ids(work_package_prefix(code), 3, taken, 1)[0]

    if item.parent_id in skipped:
        raise ValidationError(f"parent '{item.parent_id}' could not be migrated")
    if item.parent_id in mapping:
        parent_final = mapping[item.parent_id]
    elif item.parent_id not in by_id:
        raise NotFoundError(f"parent '{item.parent_id}' not found")
    elif is_structured(item.parent_id):
        parent_final = item.parent_id
    else:
        return None
    return plan_ids(task_prefix(parent_final), 2, taken, 1)[0]


# ------------------------------------------------------------------
# Phase 2: validate
# ------------------------------------------------------------------

def validate_plan(plan: MigrationPlan, existing_ids: Iterable[str]) -> list[str]:
    """Record and return every collision in *plan*."""
    existing = set(existing_ids)
    seen: dict[str, str] = {}
    collisions: list[str] = []

    for old_id, new_id in plan.mapping.items():
        if not is_structured(new_id):
            collisions.append(f"{old_id} -> {new_id}: candidate is not a structured id")
        if new_id in existing:
            collisions.append(f"{old_id} -> {new_id}: id already exists")
        if new_id in seen:
            collisions.append(
                f"{old_id} -> {new_id}: also planned for {seen[new_id]}"
            )
        else:
            seen[new_id] = old_id

    plan.collisions = collisions
    return collisions


# ------------------------------------------------------------------
# Phase 3: commit
# ------------------------------------------------------------------

def write_backup(plan: MigrationPlan, backup_dir: Path) -> Path:
    """Write the snapshot and mapping needed to undo *plan*."""
    timestamp = datetime.now(timezone.utc).strftime("%Y%m%dT%H%M%S%fZ")
    backup_dir.mkdir(parents=True, exist_ok=True)
    path = backup_dir / f"work_item_ids_backup_{timestamp}.json"
    payload = {
        "timestamp": timestamp,
        "scheme": plan.scheme,
        "total_items": len(plan.snapshot),
        "mapping": [{"old_id": o, "new_id": n} for o, n in plan.mapping.items()],
        "items": plan.snapshot,
    }
    path.write_text(json.dumps(payload, indent=2))
    return path


def commit_plan(store: Any, plan: MigrationPlan, backup_dir: Path) -> Path | None:
    """Write *plan* to the store after saving a backup.

    Raises
    ------
    ConstraintViolation
        If the plan has collisions. Nothing is written in that case.
    """
    if plan.collisions:
        raise ConstraintViolation(
            f"Refusing to commit migration with {len(plan.collisions)} collision(s)"
        )
    if not plan.mapping:
        return None

    backup_path = write_backup(plan, backup_dir)
    renamed = store.rename_ids(plan.mapping)
    log.info("Migrated %d id(s); backup at %s", renamed, backup_path)
    return backup_path


# ------------------------------------------------------------------
# Entry points
# ------------------------------------------------------------------

def migrate(
    store: Any,
    config: dict[str, Any],
    dry_run: bool = True,
    backup_dir: Path | None = None,
    scheme: str | None = None,
) -> MigrationResult:
    """Run the legacy → structured migration.

    Parameters
    ----------
    store:
        Record store.
    config:
        Workplan config dict.
    dry_run:
        Stop after validation; perform zero writes.
    backup_dir:
        Where the snapshot goes on commit. Required unless *dry_run*.
    scheme:
        ``"date"`` or ``"work_package"``; defaults to
        ``migration.target_scheme`` from config.
    """
    scheme = scheme or config["migration"]["target_scheme"]
    items = store.list()
    existing_ids = [item.id for item in items]
    reserved = store.reserved_ids()
    projects = {p.id: p for p in store.list_projects()}

    plan = plan_migration(
        items,
        projects,
        scheme=scheme,
        reserved_ids=reserved,
        vessel_prefixes=config["ids"]["vessel_prefixes"],
        fallback_code=config["ids"]["project_code_fallback"],
    )
    validate_plan(plan, [*existing_ids, *reserved])
    mapping = [{"old_id": o, "new_id": n} for o, n in plan.mapping.items()]

    if plan.collisions:
        for collision in plan.collisions:
            log.error("Migration collision: %s", collision)
        return MigrationResult(
            migrated_count=0,
            errors=plan.errors + plan.collisions,
            mapping=mapping,
            snapshot=plan.snapshot,
            dry_run=dry_run,
            committed=False,
            collisions=list(plan.collisions),
        )

    if dry_run:
        log.info("Dry run: %d id(s) would be migrated", len(plan.mapping))
        return MigrationResult(
            migrated_count=len(plan.mapping),
            errors=list(plan.errors),
            mapping=mapping,
            snapshot=plan.snapshot,
            dry_run=True,
            committed=False,
        )

    if backup_dir is None:
        raise ValueError("backup_dir is required to commit a migration")
    backup_path = commit_plan(store, plan, backup_dir)
    return MigrationResult(
        migrated_count=len(plan.mapping),
        errors=list(plan.errors),
        mapping=mapping,
        snapshot=plan.snapshot,
        dry_run=False,
        committed=True,
        backup_path=backup_path,
    )


def restore_snapshot(store: Any, backup_path: Path) -> int:
    """Undo a committed migration from its backup file.

    Renames every migrated id back and resets ``parent_id`` values to the
    snapshot. Returns the number of ids renamed.
    """
    data = json.loads(Path(backup_path).read_text())
    reverse = {m["new_id"]: m["old_id"] for m in data.get("mapping", [])}
    parent_links = {row["id"]: row.get("parent_id") for row in data.get("items", [])}
    renamed = store.restore_links(reverse, parent_links)
    log.info("Restored %d id(s) from %s", renamed, backup_path)
    return renamed


def analyze_ids(items: Iterable[WorkItem], sample_size: int = 5) -> dict[str, Any]:
    """Count ids per scheme and sample legacy/structured ids."""
    by_scheme: dict[str, int] = {"date": 0, "work_package": 0, "task": 0, "legacy": 0}
    legacy: list[str] = []
    structured: list[str] = []
    total = 0
    for item in items:
        total += 1
        kind = classify_id(item.id)
        by_scheme[kind] += 1
        (legacy if kind == "legacy" else structured).append(item.id)
    return {
        "total": total,
        "legacy_count": len(legacy),
        "structured_count": len(structured),
        "by_scheme": by_scheme,
        "sample_legacy": legacy[:sample_size],
        "sample_structured": structured[:sample_size],
    }
