"""SQLite record store for work items.

Manages three tables in ``.workplan/workplan.db``:

- ``projects``: project name + vessel name (source of work-package codes)
- ``work_items``: the flat work item tree, linked by ``parent_id``
- ``id_reservations``: ids handed out by the allocator but not yet created

``parent_id`` is a plain column, not a foreign key: the tree is a weak
lookup structure and orphaned rows are reported by
:func:`workplan.validate.validate_ids` rather than prevented here.
"""

from __future__ import annotations

import sqlite3
import time
from pathlib import Path
from typing import Any, Callable, Iterable

from workplan.errors import ConcurrencyConflict, ConstraintViolation, NotFoundError
from workplan.models import EDITABLE_FIELDS, Project, WorkItem

_COLUMNS = (
    "id", "title", "project_id", "parent_id", "completion", "start_date",
    "finish_date", "duration_days", "is_milestone", "package", "category",
    "description", "created_at",
)

_UNSET = object()


class WorkItemDB:
    """SQLite-backed work item store.

    Every call opens its own connection and closes it on all exit paths.
    Multi-statement writes run inside ``BEGIN IMMEDIATE`` so they are
    all-or-nothing.

    Parameters
    ----------
    db_path:
        Path to the SQLite database file. Created if it does not exist.
    """

    def __init__(self, db_path: Path) -> None:
        self._db_path = Path(db_path)
        self._db_path.parent.mkdir(parents=True, exist_ok=True)
        self._init_tables()

    # ------------------------------------------------------------------
    # Connection helpers
    # ------------------------------------------------------------------

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(str(self._db_path))
        conn.execute("PRAGMA journal_mode=WAL")
        conn.row_factory = sqlite3.Row
        return conn

    def _init_tables(self) -> None:
        conn = self._connect()
        try:
            conn.executescript("""
                CREATE TABLE IF NOT EXISTS projects (
                    id          TEXT PRIMARY KEY,
                    name        TEXT NOT NULL,
                    vessel_name TEXT
                );

                CREATE TABLE IF NOT EXISTS work_items (
                    id            TEXT PRIMARY KEY,
                    title         TEXT NOT NULL,
                    project_id    TEXT NOT NULL,
                    parent_id     TEXT,
                    completion    INTEGER NOT NULL DEFAULT 0,
                    start_date    TEXT,
                    finish_date   TEXT,
                    duration_days INTEGER,
                    is_milestone  INTEGER NOT NULL DEFAULT 0,
                    package       TEXT,
                    category      TEXT,
                    description   TEXT,
                    created_at    TEXT NOT NULL
                );

                CREATE INDEX IF NOT EXISTS idx_work_items_parent
                    ON work_items (parent_id);
                CREATE INDEX IF NOT EXISTS idx_work_items_project
                    ON work_items (project_id);

                CREATE TABLE IF NOT EXISTS id_reservations (
                    id          TEXT PRIMARY KEY,
                    prefix      TEXT NOT NULL,
                    reserved_at REAL NOT NULL
                );
            """)
            conn.commit()
        finally:
            conn.close()

    # ------------------------------------------------------------------
    # Projects
    # ------------------------------------------------------------------

    def add_project(self, project: Project) -> Project:
        """Insert a project. Raises ConstraintViolation on a duplicate id."""
        conn = self._connect()
        try:
            conn.execute(
                "INSERT INTO projects (id, name, vessel_name) VALUES (?, ?, ?)",
                (project.id, project.name, project.vessel_name),
            )
            conn.commit()
        except sqlite3.IntegrityError as exc:
            raise ConstraintViolation(f"Project '{project.id}' already exists") from exc
        finally:
            conn.close()
        return project

    def get_project(self, project_id: str) -> Project | None:
        conn = self._connect()
        try:
            row = conn.execute(
                "SELECT * FROM projects WHERE id = ?", (project_id,)
            ).fetchone()
            return Project(**dict(row)) if row else None
        finally:
            conn.close()

    def list_projects(self) -> list[Project]:
        conn = self._connect()
        try:
            rows = conn.execute("SELECT * FROM projects ORDER BY id").fetchall()
            return [Project(**dict(r)) for r in rows]
        finally:
            conn.close()

    # ------------------------------------------------------------------
    # Work items: reads
    # ------------------------------------------------------------------

    def get(self, item_id: str) -> WorkItem | None:
        """Return a single work item, or None."""
        conn = self._connect()
        try:
            row = conn.execute(
                "SELECT * FROM work_items WHERE id = ?", (item_id,)
            ).fetchone()
            return _row_to_item(row) if row else None
        finally:
            conn.close()

    def require(self, item_id: str) -> WorkItem:
        """Return a single work item or raise NotFoundError."""
        item = self.get(item_id)
        if item is None:
            raise NotFoundError(f"Work item not found: {item_id}")
        return item

    def list(
        self,
        project_id: str | None = None,
        parent_id: Any = _UNSET,
        id_prefix: str | None = None,
        roots_only: bool = False,
    ) -> list[WorkItem]:
        """Return work items matching every given filter.

        ``parent_id=None`` selects root items, same as ``roots_only=True``.
        Results are ordered by creation time, then id.
        """
        clauses: list[str] = []
        params: list[Any] = []
        if project_id is not None:
            clauses.append("project_id = ?")
            params.append(project_id)
        if roots_only or (parent_id is None):
            clauses.append("parent_id IS NULL")
        elif parent_id is not _UNSET:
            clauses.append("parent_id = ?")
            params.append(parent_id)
        if id_prefix:
            clauses.append("substr(id, 1, ?) = ?")
            params.extend([len(id_prefix), id_prefix])

        where = f" WHERE {' AND '.join(clauses)}" if clauses else ""
        conn = self._connect()
        try:
            rows = conn.execute(
                f"SELECT * FROM work_items{where} ORDER BY created_at, id",
                params,
            ).fetchall()
            return [_row_to_item(r) for r in rows]
        finally:
            conn.close()

    def children(self, item_id: str) -> list[WorkItem]:
        """Return the direct children of *item_id*."""
        return self.list(parent_id=item_id)

    def all_ids(self) -> list[str]:
        conn = self._connect()
        try:
            rows = conn.execute("SELECT id FROM work_items ORDER BY id").fetchall()
            return [r["id"] for r in rows]
        finally:
            conn.close()

    # ------------------------------------------------------------------
    # Work items: writes
    # ------------------------------------------------------------------

    def create(self, item: WorkItem) -> WorkItem:
        """Insert a work item and release any reservation held for its id.

        Raises ConstraintViolation if the id is already taken.
        """
        values = _item_to_row(item)
        placeholders = ", ".join("?" for _ in _COLUMNS)
        conn = self._connect()
        try:
            conn.execute("BEGIN IMMEDIATE")
            conn.execute(
                f"INSERT INTO work_items ({', '.join(_COLUMNS)}) VALUES ({placeholders})",
                [values[c] for c in _COLUMNS],
            )
            conn.execute("DELETE FROM id_reservations WHERE id = ?", (item.id,))
            conn.commit()
        except sqlite3.IntegrityError as exc:
            conn.rollback()
            raise ConstraintViolation(f"Work item id '{item.id}' already exists") from exc
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()
        return item

    def update(self, item_id: str, **fields: Any) -> WorkItem:
        """Apply a partial update and return the post-update record."""
        invalid = set(fields) - set(EDITABLE_FIELDS)
        if invalid:
            raise ValueError(f"Invalid work item fields: {sorted(invalid)}")
        if not fields:
            return self.require(item_id)

        row = _item_to_row_fields(fields)
        set_clause = ", ".join(f"{k} = ?" for k in row)
        conn = self._connect()
        try:
            cur = conn.execute(
                f"UPDATE work_items SET {set_clause} WHERE id = ?",
                [*row.values(), item_id],
            )
            conn.commit()
            if cur.rowcount == 0:
                raise NotFoundError(f"Work item not found: {item_id}")
        finally:
            conn.close()
        return self.require(item_id)

    def delete(self, item_id: str) -> bool:
        """Delete a single row. Returns False if it did not exist."""
        return self.delete_many([item_id]) == 1

    def delete_many(self, item_ids: Iterable[str]) -> int:
        """Delete several rows in one transaction. Returns rows removed."""
        ids = list(item_ids)
        if not ids:
            return 0
        conn = self._connect()
        try:
            conn.execute("BEGIN IMMEDIATE")
            placeholders = ",".join("?" for _ in ids)
            cur = conn.execute(
                f"DELETE FROM work_items WHERE id IN ({placeholders})", ids,
            )
            conn.commit()
            return cur.rowcount
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    # ------------------------------------------------------------------
    # Id reservations
    # ------------------------------------------------------------------

    def reserve_ids(
        self,
        prefix: str,
        plan: Callable[[set[str]], list[str]],
        ttl_seconds: int,
    ) -> list[str]:
        """Atomically compute and reserve new ids in the *prefix* space.

        Reads every id starting with *prefix* (stored rows plus live
        reservations), hands the set to *plan*, and records the returned ids
        as reservations, all under one write lock.

        Raises
        ------
        ConcurrencyConflict
            If a planned id was reserved or created by another caller.
        """
        now = time.time()
        conn = self._connect()
        try:
            conn.execute("BEGIN IMMEDIATE")
            conn.execute(
                "DELETE FROM id_reservations WHERE reserved_at < ?",
                (now - ttl_seconds,),
            )
            existing: set[str] = set()
            for table in ("work_items", "id_reservations"):
                rows = conn.execute(
                    f"SELECT id FROM {table} WHERE substr(id, 1, ?) = ?",
                    (len(prefix), prefix),
                ).fetchall()
                existing.update(r["id"] for r in rows)

            new_ids = plan(existing)
            taken = set(new_ids) & existing
            if taken or len(set(new_ids)) != len(new_ids):
                raise ConcurrencyConflict(
                    f"Planned ids collide with existing ids: {sorted(taken) or new_ids}"
                )
            conn.executemany(
                "INSERT INTO id_reservations (id, prefix, reserved_at) VALUES (?, ?, ?)",
                [(i, prefix, now) for i in new_ids],
            )
            conn.commit()
            return new_ids
        except sqlite3.IntegrityError as exc:
            conn.rollback()
            raise ConcurrencyConflict(f"Id reservation raced another caller in '{prefix}'") from exc
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    def release_reservations(self, item_ids: Iterable[str]) -> int:
        """Drop reservations for ids that will not be created."""
        ids = list(item_ids)
        if not ids:
            return 0
        conn = self._connect()
        try:
            placeholders = ",".join("?" for _ in ids)
            cur = conn.execute(
                f"DELETE FROM id_reservations WHERE id IN ({placeholders})", ids,
            )
            conn.commit()
            return cur.rowcount
        finally:
            conn.close()

    def reserved_ids(self) -> list[str]:
        conn = self._connect()
        try:
            rows = conn.execute("SELECT id FROM id_reservations ORDER BY id").fetchall()
            return [r["id"] for r in rows]
        finally:
            conn.close()

    # ------------------------------------------------------------------
    # Bulk id rewrites (migration)
    # ------------------------------------------------------------------

    def rename_ids(self, mapping: dict[str, str]) -> int:
        """Rename ids and relink children to the new parent ids.

        Runs in one transaction: either every rename lands or none do.
        Returns the number of renamed rows.
        """
        if not mapping:
            return 0
        conn = self._connect()
        try:
            conn.execute("BEGIN IMMEDIATE")
            renamed = _apply_renames(conn, mapping)
            conn.commit()
            return renamed
        except sqlite3.IntegrityError as exc:
            conn.rollback()
            raise ConstraintViolation(f"Id rename collided with an existing id: {exc}") from exc
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    def restore_links(
        self,
        mapping: dict[str, str],
        parent_links: dict[str, str | None],
    ) -> int:
        """Rename ids back and reset ``parent_id`` values from a snapshot.

        *mapping* is current id → restored id. *parent_links* is restored id →
        restored parent id. Runs in one transaction.
        """
        conn = self._connect()
        try:
            conn.execute("BEGIN IMMEDIATE")
            renamed = _apply_renames(conn, mapping)
            for item_id, parent_id in parent_links.items():
                conn.execute(
                    "UPDATE work_items SET parent_id = ? WHERE id = ?",
                    (parent_id, item_id),
                )
            conn.commit()
            return renamed
        except sqlite3.IntegrityError as exc:
            conn.rollback()
            raise ConstraintViolation(f"Id restore collided with an existing id: {exc}") from exc
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()


# ------------------------------------------------------------------
# Row conversion helpers
# ------------------------------------------------------------------

def _apply_renames(conn: sqlite3.Connection, mapping: dict[str, str]) -> int:
    """Rename ids on an existing connection. Caller owns the transaction."""
    renamed = 0
    for old_id, new_id in mapping.items():
        cur = conn.execute(
            "UPDATE work_items SET id = ? WHERE id = ?", (new_id, old_id),
        )
        renamed += cur.rowcount
        conn.execute(
            "UPDATE work_items SET parent_id = ? WHERE parent_id = ?",
            (new_id, old_id),
        )
    return renamed


def _row_to_item(row: sqlite3.Row) -> WorkItem:
    return WorkItem.from_dict(dict(row))


def _item_to_row(item: WorkItem) -> dict[str, Any]:
    data = item.to_dict()
    data["is_milestone"] = int(bool(item.is_milestone))
    return data


def _item_to_row_fields(fields: dict[str, Any]) -> dict[str, Any]:
    row: dict[str, Any] = {}
    for key, val in fields.items():
        if key in ("start_date", "finish_date"):
            row[key] = val.isoformat() if val else None
        elif key == "is_milestone":
            row[key] = int(bool(val))
        else:
            row[key] = val
    return row
