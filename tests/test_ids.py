"""Tests for workplan.ids — structured id recognition and allocation."""

from __future__ import annotations

import threading
from datetime import date
from pathlib import Path

import pytest

from workplan.errors import NotFoundError, ValidationError
from workplan.ids import (
    IDAllocator,
    IdAllocatorError,
    IdScope,
    classify_id,
    derive_project_code,
    is_structured,
    next_sequence_numbers,
    parse_date_id,
    plan_ids,
    sequence_numbers,
    validate_id_text,
)
from workplan.models import Project, WorkItem
from workplan.store import WorkItemDB

TODAY = date(2025, 10, 12)


@pytest.fixture
def store(tmp_path: Path) -> WorkItemDB:
    db = WorkItemDB(tmp_path / ".workplan" / "workplan.db")
    db.add_project(Project(id="p1", name="Docking 2025", vessel_name="MT. Sinar Jaya"))
    db.add_project(Project(id="p2", name="Overhaul", vessel_name="KM Bo"))
    return db


@pytest.fixture
def allocator(store: WorkItemDB) -> IDAllocator:
    return IDAllocator(store, today=lambda: TODAY)


def _create(store: WorkItemDB, item_id: str, parent_id: str | None = None) -> None:
    store.create(WorkItem(id=item_id, title=item_id, project_id="p1", parent_id=parent_id))


# ------------------------------------------------------------------
# Recognition
# ------------------------------------------------------------------

class TestClassify:
    @pytest.mark.parametrize(
        "item_id, kind",
        [
            ("12/10/25/001", "date"),
            ("12/10/25/1234", "date"),
            ("WP-SIN-007", "work_package"),
            ("WP-SIN-007-T02", "task"),
            ("WP-SIN-007-T02-T01", "task"),
            ("12/10/25/003-T01", "task"),
            ("task-42", "legacy"),
            ("WP-SI-007", "legacy"),
            ("12/10/25/01", "legacy"),
            ("wp-sin-007", "legacy"),
        ],
    )
    def test_classify(self, item_id: str, kind: str) -> None:
        assert classify_id(item_id) == kind

    def test_is_structured(self) -> None:
        assert is_structured("WP-ABC-001")
        assert not is_structured("abc")

    def test_validate_id_text(self) -> None:
        assert validate_id_text("legacy_1") == "legacy_1"
        with pytest.raises(ValidationError, match="non-empty"):
            validate_id_text("")
        with pytest.raises(ValidationError, match="whitespace"):
            validate_id_text("has space")

    def test_parse_date_id_century(self) -> None:
        assert parse_date_id("12/10/25/003") == {
            "day": 12, "month": 10, "year": 25, "full_year": 2025, "sequence": 3,
        }
        assert parse_date_id("01/01/99/001")["full_year"] == 1999
        assert parse_date_id("WP-SIN-001") is None


class TestProjectCode:
    @pytest.mark.parametrize(
        "name, code",
        [
            ("MT. Sinar Jaya", "SIN"),
            ("MT.Sinar Jaya", "SIN"),
            ("KM Bo", "BOX"),
            ("mv. ocean star", "OCE"),
            ("Tanker", "TAN"),
            ("MS", "MSX"),
            ("", "UNK"),
            (None, "UNK"),
            ("MT. 123", "UNK"),
        ],
    )
    def test_derive(self, name: str | None, code: str) -> None:
        assert derive_project_code(name) == code

    def test_custom_fallback(self) -> None:
        assert derive_project_code("", fallback="ZZZ") == "ZZZ"


# ------------------------------------------------------------------
# Gap filling
# ------------------------------------------------------------------

class TestGapFilling:
    def test_fills_hole(self) -> None:
        assert next_sequence_numbers([1, 3, 4]) == [2]

    def test_extends_past_max(self) -> None:
        assert next_sequence_numbers([1, 2, 3, 4]) == [5]

    def test_batch_fills_then_extends(self) -> None:
        assert next_sequence_numbers([1, 3, 4], 3) == [2, 5, 6]

    def test_empty_starts_at_one(self) -> None:
        assert next_sequence_numbers([], 2) == [1, 2]

    def test_count_must_be_positive(self) -> None:
        with pytest.raises(IdAllocatorError, match="count must be >= 1"):
            next_sequence_numbers([], 0)

    def test_sequence_numbers_ignores_deeper_ids(self) -> None:
        ids = ["WP-SIN-001", "WP-SIN-001-T01", "WP-SIN-003", "WP-SIX-002"]
        assert sequence_numbers(ids, "WP-SIN-") == [1, 3]

    def test_plan_ids_pads(self) -> None:
        existing = ["12/10/25/001", "12/10/25/003", "12/10/25/004"]
        assert plan_ids("12/10/25/", 3, existing, 1) == ["12/10/25/002"]


# ------------------------------------------------------------------
# Allocator
# ------------------------------------------------------------------

class TestAllocator:
    def test_first_work_package_id(self, allocator: IDAllocator) -> None:
        assert allocator.allocate_id(IdScope(project_id="p1"), "work_package") == "WP-SIN-001"

    def test_work_package_gap_fill(self, allocator: IDAllocator, store: WorkItemDB) -> None:
        for item_id in ("WP-SIN-001", "WP-SIN-003", "WP-SIN-004"):
            _create(store, item_id)
        assert allocator.allocate_id(IdScope(project_id="p1"), "work_package") == "WP-SIN-002"

    def test_work_package_extends(self, allocator: IDAllocator, store: WorkItemDB) -> None:
        for n in range(1, 5):
            _create(store, f"WP-SIN-{n:03d}")
        assert allocator.allocate_id(IdScope(project_id="p1"), "work_package") == "WP-SIN-005"

    def test_date_ids_use_today(self, allocator: IDAllocator) -> None:
        ids = allocator.allocate_ids(IdScope(project_id="p1"), "date", 2)
        assert ids == ["12/10/25/001", "12/10/25/002"]

    def test_date_ids_honour_scope_day(self, allocator: IDAllocator) -> None:
        scope = IdScope(project_id="p1", day=date(2024, 3, 5))
        assert allocator.allocate_id(scope, "date") == "05/03/24/001"

    def test_task_ids(self, allocator: IDAllocator, store: WorkItemDB) -> None:
        _create(store, "WP-SIN-001")
        _create(store, "WP-SIN-001-T01", "WP-SIN-001")
        scope = IdScope(project_id="p1", parent_id="WP-SIN-001")
        assert allocator.allocate_id(scope, "task") == "WP-SIN-001-T02"

    def test_back_to_back_batches_do_not_collide(self, allocator: IDAllocator) -> None:
        scope = IdScope(project_id="p2")
        first = allocator.allocate_ids(scope, "work_package", 5)
        second = allocator.allocate_ids(scope, "work_package", 5)
        assert len(set(first) | set(second)) == 10
        assert second[0] == "WP-BOX-006"

    def test_released_ids_are_reused(self, allocator: IDAllocator) -> None:
        scope = IdScope(project_id="p1")
        ids = allocator.allocate_ids(scope, "work_package", 2)
        allocator.release(ids[:1])
        assert allocator.allocate_id(scope, "work_package") == ids[0]

    def test_concurrent_batches(self, store: WorkItemDB) -> None:
        results: list[list[str]] = []
        errors: list[Exception] = []

        def worker() -> None:
            try:
                alloc = IDAllocator(store, today=lambda: TODAY)
                results.append(alloc.allocate_ids(IdScope(project_id="p1"), "date", 5))
            except Exception as exc:
                errors.append(exc)

        threads = [threading.Thread(target=worker) for _ in range(4)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert not errors
        flat = [i for batch in results for i in batch]
        assert len(flat) == len(set(flat)) == 20

    def test_invalid_kind(self, allocator: IDAllocator) -> None:
        with pytest.raises(IdAllocatorError, match="Invalid kind"):
            allocator.allocate_id(IdScope(project_id="p1"), "uuid")

    def test_task_needs_parent(self, allocator: IDAllocator) -> None:
        with pytest.raises(IdAllocatorError, match="parent_id"):
            allocator.allocate_id(IdScope(project_id="p1"), "task")

    def test_missing_parent(self, allocator: IDAllocator) -> None:
        with pytest.raises(NotFoundError, match="Parent work item not found"):
            allocator.allocate_id(IdScope(parent_id="WP-SIN-009"), "task")

    def test_missing_project(self, allocator: IDAllocator) -> None:
        with pytest.raises(NotFoundError, match="Project not found"):
            allocator.allocate_id(IdScope(project_id="ghost"), "work_package")
        with pytest.raises(NotFoundError, match="Project not found"):
            allocator.allocate_id(IdScope(project_id="ghost"), "date")

    def test_zero_count(self, allocator: IDAllocator) -> None:
        with pytest.raises(IdAllocatorError, match="count must be >= 1"):
            allocator.allocate_ids(IdScope(project_id="p1"), "date", 0)
