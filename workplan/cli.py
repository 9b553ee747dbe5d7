"""CLI entry point for workplan."""

from __future__ import annotations

from contextlib import contextmanager
from pathlib import Path
from typing import Any, Iterator

import click


# Default config template
CONFIG_TEMPLATE = """\
store: .workplan/workplan.db

tree:
  max_depth: 10

ids:
  scheme: work_package  # work_package | date
  project_code_fallback: UNK
  vessel_prefixes: [MT, KM, MV, MS]
  reservation_ttl_seconds: 900

dates:
  unset_values: ["", "mm/dd/yyyy"]
  max_duration_days: 10000
  min_year: 1900
  max_years_ahead: 50

migration:
  target_scheme: date  # work_package | date
  backup_dir: .workplan/backups
"""

_TRUE_VALUES = ("1", "true", "yes", "y", "on")


@contextmanager
def _errors_as_click() -> Iterator[None]:
    """Report workplan and config errors as a clean CLI failure."""
    from workplan.config import ConfigError
    from workplan.errors import WorkplanError

    try:
        yield
    except (WorkplanError, ConfigError) as exc:
        raise click.ClickException(str(exc)) from exc


def _setup_logging() -> None:
    import logging

    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%H:%M:%S",
    )


def _open_store(root: Path) -> tuple[dict, Any]:
    from workplan.config import load_config, resolve_store_path
    from workplan.store import WorkItemDB

    config = load_config(root)
    return config, WorkItemDB(resolve_store_path(config, root))


def _orchestrator(root: Path) -> Any:
    from workplan.config import resolve_backup_dir
    from workplan.orchestrator import UpdateOrchestrator

    config, store = _open_store(root)
    return UpdateOrchestrator(store, config, backup_dir=resolve_backup_dir(config, root))


def _coerce_edit_value(name: str, raw: str) -> Any:
    """Turn a ``--set`` string into the type the field holds."""
    if name == "completion":
        try:
            return int(raw)
        except ValueError:
            return raw
    if name == "is_milestone":
        return raw.strip().lower() in _TRUE_VALUES
    if name == "parent_id":
        return raw or None
    return raw


def _echo_errors(errors: dict[str, list[str]]) -> None:
    for name, messages in errors.items():
        for message in messages:
            click.echo(f"  [{name}] {message}")


@click.group()
def cli() -> None:
    """Workplan: hierarchical work items with derived completion, dates and ids."""


@cli.command()
@click.option(
    "--project-root",
    type=click.Path(exists=True, file_okay=False, resolve_path=True),
    default=".",
    help="Project root directory (default: cwd).",
)
def init(project_root: str) -> None:
    """Initialize .workplan/ directory with config and an empty store."""
    root = Path(project_root)
    workplan_dir = root / ".workplan"

    if workplan_dir.exists():
        click.echo(f".workplan/ already exists at {workplan_dir}")
        raise SystemExit(1)

    workplan_dir.mkdir(parents=True)
    config_path = workplan_dir / "config.yaml"
    config_path.write_text(CONFIG_TEMPLATE)
    click.echo(f"Created {config_path}")

    # Load config through the standard path to validate it
    from workplan.config import resolve_store_path

    with _errors_as_click():
        config, _ = _open_store(root)
    click.echo(f"Created {resolve_store_path(config, root)}")

    click.echo("\nWorkplan initialized. Edit .workplan/config.yaml to customize settings.")


@cli.command("add-project")
@click.option(
    "--project-root",
    type=click.Path(exists=True, file_okay=False, resolve_path=True),
    default=".",
    help="Project root directory (default: cwd).",
)
@click.argument("project_id")
@click.argument("name")
@click.option("--vessel", default=None, help="Vessel name; source of the project code.")
def add_project_cmd(project_root: str, project_id: str, name: str, vessel: str | None) -> None:
    """Register a project."""
    from workplan.ids import derive_project_code
    from workplan.models import Project

    root = Path(project_root)
    with _errors_as_click():
        config, store = _open_store(root)
        project = store.add_project(Project(id=project_id, name=name, vessel_name=vessel))

    code = derive_project_code(
        project.code_source,
        config["ids"]["vessel_prefixes"],
        config["ids"]["project_code_fallback"],
    )
    click.echo(f"Added project {project.id} (code {code})")


@cli.command()
@click.option(
    "--project-root",
    type=click.Path(exists=True, file_okay=False, resolve_path=True),
    default=".",
    help="Project root directory (default: cwd).",
)
@click.argument("project_id")
@click.argument("title")
@click.option("--parent", "parent_id", default=None, help="Parent work item id.")
@click.option("--id", "item_id", default=None, help="Explicit id (skips allocation).")
@click.option("--start", "start_date", default=None, help="Start date (YYYY-MM-DD).")
@click.option("--finish", "finish_date", default=None, help="Finish date (YYYY-MM-DD).")
@click.option("--duration", "duration_days", type=int, default=None, help="Duration in days.")
@click.option("--completion", type=click.IntRange(0, 100), default=0, help="Completion %.")
@click.option("--package", default=None, help="Work package tag.")
@click.option("--category", default=None, help="Category tag.")
@click.option("--milestone", is_flag=True, default=False, help="Mark as milestone.")
def add(
    project_root: str,
    project_id: str,
    title: str,
    parent_id: str | None,
    item_id: str | None,
    start_date: str | None,
    finish_date: str | None,
    duration_days: int | None,
    completion: int,
    package: str | None,
    category: str | None,
    milestone: bool,
) -> None:
    """Create a work item; its id is allocated unless --id is given."""
    from workplan.errors import ValidationError

    _setup_logging()
    root = Path(project_root)
    with _errors_as_click():
        orch = _orchestrator(root)
        try:
            item = orch.add_item(
                project_id,
                title,
                parent_id=parent_id,
                item_id=item_id,
                start_date=start_date,
                finish_date=finish_date,
                duration_days=duration_days,
                completion=completion,
                package=package,
                category=category,
                is_milestone=milestone,
            )
        except ValidationError as exc:
            if not exc.errors:
                raise
            click.echo(f"Rejected: {exc}")
            _echo_errors(exc.errors)
            raise SystemExit(1)

    click.echo(f"Created {item.id}: {item.title}")
    if item.start_date or item.finish_date:
        click.echo(f"  Dates: {item.start_date} to {item.finish_date} ({item.duration_days} days)")


@cli.command()
@click.option(
    "--project-root",
    type=click.Path(exists=True, file_okay=False, resolve_path=True),
    default=".",
    help="Project root directory (default: cwd).",
)
@click.argument("item_id")
@click.option(
    "--set", "assignments", multiple=True, required=True,
    help="FIELD=VALUE; repeat for several fields.",
)
@click.option(
    "--changed",
    type=click.Choice(["start_date", "finish_date", "duration_days"]),
    default=None,
    help="Date field the user changed (drives which date is derived).",
)
def edit(project_root: str, item_id: str, assignments: tuple[str, ...], changed: str | None) -> None:
    """Edit fields of a work item and update derived values."""
    changes: dict[str, Any] = {}
    for assignment in assignments:
        name, sep, raw = assignment.partition("=")
        if not sep:
            raise click.BadParameter(f"expected FIELD=VALUE, got {assignment!r}", param_hint="--set")
        name = name.strip()
        changes[name] = _coerce_edit_value(name, raw)

    _setup_logging()
    root = Path(project_root)
    with _errors_as_click():
        result = _orchestrator(root).on_field_changed(item_id, changes, changed_field=changed)

    if not result.ok:
        click.echo(f"Edit rejected ({len(result.validation_errors)} field(s)):")
        _echo_errors(result.validation_errors)
        raise SystemExit(1)

    click.echo(f"Updated {result.record.id}")
    if result.date_calculation and result.date_calculation.calculated_field:
        click.echo(f"  {result.date_calculation.description}")
    for change in result.completion_changes:
        click.echo(f"  {change.item_id}: {change.old}% -> {change.new}%")


@cli.command()
@click.option(
    "--project-root",
    type=click.Path(exists=True, file_okay=False, resolve_path=True),
    default=".",
    help="Project root directory (default: cwd).",
)
@click.argument("item_id")
def delete(project_root: str, item_id: str) -> None:
    """Delete a work item and everything below it."""
    _setup_logging()
    root = Path(project_root)
    with _errors_as_click():
        deleted = _orchestrator(root).delete_item(item_id)
    click.echo(f"Deleted {len(deleted)} work item(s)")
    for deleted_id in deleted:
        click.echo(f"  {deleted_id}")


@cli.command()
@click.option(
    "--project-root",
    type=click.Path(exists=True, file_okay=False, resolve_path=True),
    default=".",
    help="Project root directory (default: cwd).",
)
@click.argument("item_id")
def show(project_root: str, item_id: str) -> None:
    """Show a work item, its derived values and its children."""
    from workplan.dates import business_days_between
    from workplan.ids import classify_id

    root = Path(project_root)
    with _errors_as_click():
        _, store = _open_store(root)
        item = store.require(item_id)
        children = store.children(item_id)

    click.echo(f"{item.id} ({classify_id(item.id)} id)")
    click.echo(f"  Title: {item.title}")
    click.echo(f"  Project: {item.project_id}")
    click.echo(f"  Parent: {item.parent_id or '-'}")
    click.echo(f"  Completion: {item.completion}%")
    click.echo(f"  Start: {item.start_date or '-'}")
    click.echo(f"  Finish: {item.finish_date or '-'}")
    if item.duration_days:
        click.echo(f"  Duration: {item.duration_days} days")
    if item.start_date and item.finish_date:
        click.echo(
            f"  Business days: {business_days_between(item.start_date, item.finish_date)}"
        )
    if item.package:
        click.echo(f"  Package: {item.package}")
    if item.is_milestone:
        click.echo("  Milestone: yes")

    click.echo(f"\nChildren: {len(children)}")
    for child in children:
        click.echo(f"  {child.id}  {child.completion:>3}%  {child.title}")


@cli.command()
@click.option(
    "--project-root",
    type=click.Path(exists=True, file_okay=False, resolve_path=True),
    default=".",
    help="Project root directory (default: cwd).",
)
@click.option("--item", "item_id", default=None, help="Recompute the ancestors of this item.")
@click.option("--subtree", "root_id", default=None, help="Recompute the subtree under this item.")
@click.option("--project", "project_id", default=None, help="Recompute every tree of a project.")
def recalc(
    project_root: str,
    item_id: str | None,
    root_id: str | None,
    project_id: str | None,
) -> None:
    """Recompute parent completion from leaf values."""
    given = [v for v in (item_id, root_id, project_id) if v]
    if len(given) != 1:
        raise click.UsageError("Pass exactly one of --item, --subtree, --project.")

    _setup_logging()
    root = Path(project_root)
    with _errors_as_click():
        orch = _orchestrator(root)
        if item_id:
            changes = orch.recalculate_ancestors(item_id)
            updated = len(changes)
        elif root_id:
            updated = orch.recalculate_subtree(root_id)["updated_count"]
        else:
            updated = orch.recalculate_project(project_id)["updated_count"]

    click.echo(f"Recalculated: {updated} update(s)")


@cli.command()
@click.option(
    "--project-root",
    type=click.Path(exists=True, file_okay=False, resolve_path=True),
    default=".",
    help="Project root directory (default: cwd).",
)
@click.argument("project_id")
def stats(project_root: str, project_id: str) -> None:
    """Show completion statistics for a project."""
    root = Path(project_root)
    with _errors_as_click():
        orch = _orchestrator(root)
        info = orch.project_stats(project_id)

    click.echo(f"Project {project_id}:")
    click.echo(f"  Items: {info['total_items']}")
    click.echo(f"  Average completion: {info['average_completion']}%")
    click.echo(f"  Completed: {info['completed_items']}")
    click.echo(f"  In progress: {info['in_progress_items']}")
    click.echo(f"  Not started: {info['not_started_items']}")


@cli.command("allocate-ids")
@click.option(
    "--project-root",
    type=click.Path(exists=True, file_okay=False, resolve_path=True),
    default=".",
    help="Project root directory (default: cwd).",
)
@click.option(
    "--kind",
    type=click.Choice(["date", "work_package", "task"]),
    required=True,
    help="Id scheme to allocate from.",
)
@click.option("--project", "project_id", default=None, help="Project (date, work_package).")
@click.option("--parent", "parent_id", default=None, help="Parent item (task).")
@click.option(
    "--day",
    type=click.DateTime(formats=["%Y-%m-%d"]),
    default=None,
    help="Creation day for date ids (YYYY-MM-DD, default today).",
)
@click.option("--count", type=click.IntRange(min=1), default=1, help="Number of ids.")
def allocate_ids_cmd(
    project_root: str,
    kind: str,
    project_id: str | None,
    parent_id: str | None,
    day: object,
    count: int,
) -> None:
    """Reserve new ids without creating items."""
    from workplan.ids import IdScope

    scope = IdScope(
        project_id=project_id,
        parent_id=parent_id,
        day=day.date() if day else None,  # type: ignore[union-attr]
    )
    root = Path(project_root)
    with _errors_as_click():
        ids = _orchestrator(root).allocate_ids(scope, kind, count)
    for new_id in ids:
        click.echo(new_id)


@cli.command()
@click.option(
    "--project-root",
    type=click.Path(exists=True, file_okay=False, resolve_path=True),
    default=".",
    help="Project root directory (default: cwd).",
)
@click.option(
    "--dry-run/--commit",
    default=True,
    help="Plan and validate only (default), or write the new ids.",
)
@click.option(
    "--scheme",
    type=click.Choice(["date", "work_package"]),
    default=None,
    help="Target scheme (default: migration.target_scheme).",
)
def migrate(project_root: str, dry_run: bool, scheme: str | None) -> None:
    """Migrate legacy work item ids to the structured scheme (one-time)."""
    _setup_logging()
    root = Path(project_root)

    click.echo("Starting legacy id migration" + (" (dry run)..." if dry_run else "..."))
    with _errors_as_click():
        orch = _orchestrator(root)
        result = orch.migrate(dry_run=dry_run, scheme=scheme)

    for entry in result.mapping:
        click.echo(f"  {entry['old_id']} -> {entry['new_id']}")
    for error in result.errors:
        click.echo(f"  ERROR: {error}")

    if result.collisions:
        click.echo(f"Migration aborted: {len(result.collisions)} collision(s), nothing was written.")
        raise SystemExit(1)

    if dry_run:
        click.echo(f"Dry run: {result.migrated_count} id(s) would be migrated.")
        return

    click.echo(f"Migrated {result.migrated_count} id(s).")
    if result.backup_path:
        click.echo(f"Backup: {result.backup_path}")

    with _errors_as_click():
        validation = orch.validate_ids()
    if validation.passed:
        click.echo("Validation: PASS")
    else:
        click.echo(f"Validation: FAIL {validation!r}")
        raise SystemExit(1)


@cli.command("restore-ids")
@click.option(
    "--project-root",
    type=click.Path(exists=True, file_okay=False, resolve_path=True),
    default=".",
    help="Project root directory (default: cwd).",
)
@click.argument("backup", type=click.Path(exists=True, dir_okay=False, resolve_path=True))
def restore_ids(project_root: str, backup: str) -> None:
    """Undo a committed migration from its backup file."""
    from workplan.migrate import restore_snapshot

    _setup_logging()
    root = Path(project_root)
    with _errors_as_click():
        _, store = _open_store(root)
        restored = restore_snapshot(store, Path(backup))
    click.echo(f"Restored {restored} id(s) from {backup}")


@cli.command("analyze-ids")
@click.option(
    "--project-root",
    type=click.Path(exists=True, file_okay=False, resolve_path=True),
    default=".",
    help="Project root directory (default: cwd).",
)
def analyze_ids_cmd(project_root: str) -> None:
    """Count work item ids per scheme."""
    from workplan.migrate import analyze_ids

    root = Path(project_root)
    with _errors_as_click():
        _, store = _open_store(root)
        info = analyze_ids(store.list())

    click.echo(f"Total items: {info['total']}")
    click.echo(f"  Legacy: {info['legacy_count']}")
    click.echo(f"  Structured: {info['structured_count']}")
    for scheme, count in info["by_scheme"].items():
        click.echo(f"    {scheme}: {count}")
    if info["sample_legacy"]:
        click.echo(f"  Sample legacy: {', '.join(info['sample_legacy'])}")


@cli.command("validate-ids")
@click.option(
    "--project-root",
    type=click.Path(exists=True, file_okay=False, resolve_path=True),
    default=".",
    help="Project root directory (default: cwd).",
)
def validate_ids_cmd(project_root: str) -> None:
    """Check every id is structured, unique and has an existing parent."""
    root = Path(project_root)
    with _errors_as_click():
        result = _orchestrator(root).validate_ids()

    if result.passed:
        click.echo(f"Validation: PASS ({result.total_items} items)")
        return

    click.echo(f"Validation: FAIL ({result.total_items} items)")
    for item_id in result.invalid_ids:
        click.echo(f"  [invalid] {item_id}")
    for item_id in result.duplicate_ids:
        click.echo(f"  [duplicate] {item_id}")
    for item_id in result.orphaned_children:
        click.echo(f"  [orphan] {item_id}")
    raise SystemExit(1)


@cli.command()
@click.option(
    "--project-root",
    type=click.Path(exists=True, file_okay=False, resolve_path=True),
    default=".",
    help="Project root directory (default: cwd).",
)
@click.argument("project_id")
@click.option(
    "--output", "-o",
    type=click.Path(dir_okay=False, writable=True),
    default=None,
    help="Write the report to a file instead of stdout.",
)
def report(project_root: str, project_id: str, output: str | None) -> None:
    """Render the project work plan as Markdown."""
    from workplan.report import render_work_plan

    root = Path(project_root)
    with _errors_as_click():
        config, store = _open_store(root)
        text = render_work_plan(store, project_id, max_depth=config["tree"]["max_depth"])

    if output:
        Path(output).write_text(text)
        click.echo(f"Wrote {output}")
    else:
        click.echo(text, nl=False)
