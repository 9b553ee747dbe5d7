"""Tests for workplan.orchestrator — the mutation coordinator."""

from __future__ import annotations

from datetime import date
from pathlib import Path

import pytest

from workplan.config import DEFAULTS, _deep_merge
from workplan.errors import ConstraintViolation, NotFoundError, ValidationError
from workplan.ids import IdScope
from workplan.models import Project
from workplan.orchestrator import UpdateOrchestrator
from workplan.store import WorkItemDB

TODAY = date(2025, 10, 12)


@pytest.fixture
def store(tmp_path: Path) -> WorkItemDB:
    db = WorkItemDB(tmp_path / ".workplan" / "workplan.db")
    db.add_project(Project(id="p1", name="Docking", vessel_name="MT. Sinar Jaya"))
    return db


@pytest.fixture
def orch(store: WorkItemDB, tmp_path: Path) -> UpdateOrchestrator:
    return UpdateOrchestrator(
        store, DEFAULTS, backup_dir=tmp_path / "backups", today=lambda: TODAY,
    )


@pytest.fixture
def tree(orch: UpdateOrchestrator) -> dict[str, str]:
    """root -> (a -> a1, a2), b"""
    root = orch.add_item("p1", "Hull").id
    a = orch.add_item("p1", "Plates", parent_id=root).id
    a1 = orch.add_item("p1", "Cut", parent_id=a, completion=100).id
    a2 = orch.add_item("p1", "Weld", parent_id=a, completion=0).id
    b = orch.add_item("p1", "Paint", parent_id=root, completion=25).id
    return {"root": root, "a": a, "a1": a1, "a2": a2, "b": b}


# ------------------------------------------------------------------
# Creation
# ------------------------------------------------------------------

class TestAddItem:
    def test_work_package_ids(self, tree: dict[str, str]) -> None:
        assert tree["root"] == "WP-SIN-001"
        assert tree["a"] == "WP-SIN-001-T01"
        assert tree["a1"] == "WP-SIN-001-T01-T01"
        assert tree["b"] == "WP-SIN-001-T02"

    def test_creation_recomputes_ancestors(
        self, tree: dict[str, str], store: WorkItemDB,
    ) -> None:
        assert store.require(tree["a"]).completion == 50
        # (50 + 25) / 2 rounds half up
        assert store.require(tree["root"]).completion == 38

    def test_reservation_released_on_create(
        self, tree: dict[str, str], store: WorkItemDB,
    ) -> None:
        assert store.reserved_ids() == []

    def test_date_scheme(self, store: WorkItemDB) -> None:
        config = _deep_merge(DEFAULTS, {"ids": {"scheme": "date"}})
        orch = UpdateOrchestrator(store, config, today=lambda: TODAY)
        parent = orch.add_item("p1", "One")
        child = orch.add_item("p1", "Two", parent_id=parent.id)
        assert (parent.id, child.id) == ("12/10/25/001", "12/10/25/002")

    def test_dates_inferred(self, orch: UpdateOrchestrator) -> None:
        item = orch.add_item("p1", "Survey", start_date="2025-10-12", duration_days=5)
        assert item.finish_date == date(2025, 10, 16)

    def test_placeholder_dates_are_unset(self, orch: UpdateOrchestrator) -> None:
        item = orch.add_item("p1", "Survey", start_date="mm/dd/yyyy", finish_date="")
        assert item.start_date is None
        assert item.duration_days is None

    def test_bad_dates_raise_with_field_errors(self, orch: UpdateOrchestrator) -> None:
        with pytest.raises(ValidationError) as excinfo:
            orch.add_item("p1", "Survey", start_date="2025-10-16", finish_date="2025-10-12")
        assert "finish_date" in excinfo.value.errors

    def test_bad_completion(self, orch: UpdateOrchestrator) -> None:
        with pytest.raises(ValidationError, match="between 0 and 100"):
            orch.add_item("p1", "Survey", completion=101)

    def test_empty_title(self, orch: UpdateOrchestrator) -> None:
        with pytest.raises(ValidationError, match="Title"):
            orch.add_item("p1", "  ")

    def test_missing_project(self, orch: UpdateOrchestrator) -> None:
        with pytest.raises(NotFoundError, match="Project not found"):
            orch.add_item("ghost", "Survey")

    def test_missing_parent(self, orch: UpdateOrchestrator) -> None:
        with pytest.raises(NotFoundError):
            orch.add_item("p1", "Survey", parent_id="WP-SIN-404")

    def test_non_positive_duration_rejected(self, orch: UpdateOrchestrator) -> None:
        with pytest.raises(ValidationError) as excinfo:
            orch.add_item("p1", "Survey", duration_days=-5)
        assert excinfo.value.errors["duration_days"] == ["Duration must be at least 1 day"]

    def test_cross_project_parent(
        self, orch: UpdateOrchestrator, tree: dict[str, str], store: WorkItemDB,
    ) -> None:
        store.add_project(Project(id="p2", name="Overhaul", vessel_name="KM Bahari"))
        with pytest.raises(ConstraintViolation, match="belongs to project 'p1'"):
            orch.add_item("p2", "Survey", parent_id=tree["root"])

    def test_explicit_legacy_id(self, orch: UpdateOrchestrator) -> None:
        assert orch.add_item("p1", "Import", item_id="legacy_7").id == "legacy_7"

    def test_explicit_id_with_whitespace(self, orch: UpdateOrchestrator) -> None:
        with pytest.raises(ValidationError, match="whitespace"):
            orch.add_item("p1", "Import", item_id="legacy 7")

    def test_duplicate_explicit_id(self, orch: UpdateOrchestrator) -> None:
        orch.add_item("p1", "Import", item_id="legacy_7")
        with pytest.raises(ConstraintViolation):
            orch.add_item("p1", "Import again", item_id="legacy_7")


# ------------------------------------------------------------------
# Edits
# ------------------------------------------------------------------

class TestCompletionEdits:
    def test_leaf_edit_propagates(
        self, orch: UpdateOrchestrator, tree: dict[str, str], store: WorkItemDB,
    ) -> None:
        result = orch.on_field_changed(tree["a2"], {"completion": 100})

        assert result.ok
        assert result.record.completion == 100
        assert [c.item_id for c in result.completion_changes] == [tree["a"], tree["root"]]
        assert store.require(tree["a"]).completion == 100
        # (100 + 25) / 2 = 62.5 rounds up
        assert store.require(tree["root"]).completion == 63

    def test_parent_completion_is_read_only(
        self, orch: UpdateOrchestrator, tree: dict[str, str], store: WorkItemDB,
    ) -> None:
        result = orch.on_field_changed(tree["a"], {"completion": 90})
        assert "completion" in result.validation_errors
        assert store.require(tree["a"]).completion == 50

    @pytest.mark.parametrize("value", [-1, 101, "50", 12.5, True])
    def test_completion_out_of_range(
        self, orch: UpdateOrchestrator, tree: dict[str, str], value: object,
    ) -> None:
        result = orch.on_field_changed(tree["b"], {"completion": value})
        assert not result.ok
        assert "completion" in result.validation_errors

    def test_unknown_field(self, orch: UpdateOrchestrator, tree: dict[str, str]) -> None:
        result = orch.on_field_changed(tree["b"], {"created_at": "now"})
        assert "created_at" in result.validation_errors

    def test_missing_item(self, orch: UpdateOrchestrator) -> None:
        with pytest.raises(NotFoundError):
            orch.on_field_changed("ghost", {"title": "x"})


class TestDateEdits:
    def test_start_change_derives_finish(
        self, orch: UpdateOrchestrator, tree: dict[str, str],
    ) -> None:
        orch.on_field_changed(tree["b"], {"duration_days": 5})
        result = orch.on_field_changed(tree["b"], {"start_date": "2025-10-30"})

        assert result.ok
        assert result.date_calculation.calculated_field == "finish_date"
        assert result.record.finish_date == date(2025, 11, 3)

    def test_finish_change_derives_start(
        self, orch: UpdateOrchestrator, tree: dict[str, str],
    ) -> None:
        orch.on_field_changed(tree["b"], {"start_date": "2025-10-12", "duration_days": 5})
        result = orch.on_field_changed(tree["b"], {"finish_date": "2025-10-20"})
        assert result.record.start_date == date(2025, 10, 16)

    def test_duration_without_dates_starts_today(
        self, orch: UpdateOrchestrator, tree: dict[str, str],
    ) -> None:
        result = orch.on_field_changed(tree["b"], {"duration_days": "3"})
        assert result.record.start_date == TODAY
        assert result.record.finish_date == date(2025, 10, 14)

    def test_zero_duration_is_not_written(
        self, orch: UpdateOrchestrator, tree: dict[str, str], store: WorkItemDB,
    ) -> None:
        result = orch.on_field_changed(tree["b"], {"duration_days": 0})
        assert result.validation_errors == {
            "duration_days": ["Duration must be at least 1 day"],
        }
        assert store.require(tree["b"]).duration_days is None

    def test_invalid_dates_are_not_written(
        self, orch: UpdateOrchestrator, tree: dict[str, str], store: WorkItemDB,
    ) -> None:
        result = orch.on_field_changed(
            tree["b"], {"start_date": "2025-10-16", "finish_date": "2025-10-12"},
        )
        assert "finish_date" in result.validation_errors
        assert store.require(tree["b"]).start_date is None

    def test_non_date_edit_skips_inference(
        self, orch: UpdateOrchestrator, tree: dict[str, str],
    ) -> None:
        result = orch.on_field_changed(tree["b"], {"title": "Paint hull"})
        assert result.date_calculation is None
        assert result.record.title == "Paint hull"

    def test_to_dict(self, orch: UpdateOrchestrator, tree: dict[str, str]) -> None:
        data = orch.on_field_changed(tree["b"], {"start_date": "2025-10-12", "duration_days": 2}).to_dict()
        assert data["record"]["finish_date"] == "2025-10-13"
        assert data["date_calculation"]["calculated_field"] == "finish_date"
        assert "validation_errors" not in data


class TestReparent:
    def test_move_recomputes_both_chains(
        self, orch: UpdateOrchestrator, tree: dict[str, str], store: WorkItemDB,
    ) -> None:
        # Move Cut (100) from Plates to directly under Hull
        result = orch.on_field_changed(tree["a1"], {"parent_id": tree["root"]})

        assert result.ok
        assert store.require(tree["a"]).completion == 0
        # Hull children: Plates 0, Paint 25, Cut 100 -> 41.67 -> 42
        assert store.require(tree["root"]).completion == 42

    def test_move_under_descendant(
        self, orch: UpdateOrchestrator, tree: dict[str, str],
    ) -> None:
        with pytest.raises(ConstraintViolation, match="own descendant"):
            orch.on_field_changed(tree["root"], {"parent_id": tree["a1"]})

    def test_move_under_itself(self, orch: UpdateOrchestrator, tree: dict[str, str]) -> None:
        with pytest.raises(ConstraintViolation, match="own parent"):
            orch.on_field_changed(tree["a"], {"parent_id": tree["a"]})

    def test_move_under_missing_parent(
        self, orch: UpdateOrchestrator, tree: dict[str, str],
    ) -> None:
        with pytest.raises(NotFoundError):
            orch.on_field_changed(tree["a"], {"parent_id": "WP-SIN-404"})

    def test_detach_to_root(
        self, orch: UpdateOrchestrator, tree: dict[str, str], store: WorkItemDB,
    ) -> None:
        orch.on_field_changed(tree["b"], {"parent_id": ""})
        assert store.require(tree["b"]).parent_id is None
        assert store.require(tree["root"]).completion == 50

    def test_move_across_projects(
        self, orch: UpdateOrchestrator, tree: dict[str, str], store: WorkItemDB,
    ) -> None:
        store.add_project(Project(id="p2", name="Overhaul", vessel_name="KM Bahari"))
        other = orch.add_item("p2", "Survey", completion=80)

        with pytest.raises(ConstraintViolation, match="belongs to project 'p1'"):
            orch.on_field_changed(other.id, {"parent_id": tree["root"]})
        assert store.require(other.id).parent_id is None
        assert store.require(tree["root"]).completion == 38


class TestDepthLimit:
    @pytest.fixture
    def shallow(self, store: WorkItemDB, tree: dict[str, str]) -> UpdateOrchestrator:
        config = _deep_merge(DEFAULTS, {"tree": {"max_depth": 2}})
        return UpdateOrchestrator(store, config, today=lambda: TODAY)

    def test_add_too_deep_writes_nothing(
        self, shallow: UpdateOrchestrator, tree: dict[str, str], store: WorkItemDB,
    ) -> None:
        before = store.all_ids()
        with pytest.raises(ConstraintViolation, match="max_depth=2"):
            shallow.add_item("p1", "Grind", parent_id=tree["a1"])
        assert store.all_ids() == before
        assert store.reserved_ids() == []

    def test_add_at_limit(
        self, shallow: UpdateOrchestrator, tree: dict[str, str], store: WorkItemDB,
    ) -> None:
        item = shallow.add_item("p1", "Prime", parent_id=tree["b"], completion=75)
        assert store.require(item.id).parent_id == tree["b"]
        assert store.require(tree["b"]).completion == 75

    def test_move_subtree_too_deep(
        self, shallow: UpdateOrchestrator, tree: dict[str, str], store: WorkItemDB,
    ) -> None:
        # Plates has one level below it; under Paint it would reach depth 3
        with pytest.raises(ConstraintViolation, match="max_depth=2"):
            shallow.on_field_changed(tree["a"], {"parent_id": tree["b"]})
        assert store.require(tree["a"]).parent_id == tree["root"]
        assert store.require(tree["b"]).completion == 25


# ------------------------------------------------------------------
# Deletion and forwarders
# ------------------------------------------------------------------

class TestDelete:
    def test_cascade_deepest_first(
        self, orch: UpdateOrchestrator, tree: dict[str, str], store: WorkItemDB,
    ) -> None:
        deleted = orch.delete_item(tree["a"])

        assert deleted[-1] == tree["a"]
        assert set(deleted) == {tree["a"], tree["a1"], tree["a2"]}
        assert store.get(tree["a1"]) is None
        assert store.require(tree["root"]).completion == 25

    def test_delete_last_child_zeroes_parent(
        self, orch: UpdateOrchestrator, store: WorkItemDB,
    ) -> None:
        parent = orch.add_item("p1", "Parent")
        child = orch.add_item("p1", "Child", parent_id=parent.id, completion=80)
        orch.delete_item(child.id)
        assert store.require(parent.id).completion == 0

    def test_delete_missing(self, orch: UpdateOrchestrator) -> None:
        with pytest.raises(NotFoundError):
            orch.delete_item("ghost")


class TestForwarders:
    def test_recalculate_subtree_idempotent(
        self, orch: UpdateOrchestrator, tree: dict[str, str],
    ) -> None:
        assert orch.recalculate_subtree(tree["root"]) == {"updated_count": 0}

    def test_allocate_ids(self, orch: UpdateOrchestrator) -> None:
        ids = orch.allocate_ids(IdScope(project_id="p1"), "work_package", 3)
        assert ids == ["WP-SIN-001", "WP-SIN-002", "WP-SIN-003"]
        assert orch.allocate_id(IdScope(project_id="p1"), "work_package") == "WP-SIN-004"

    def test_validate_and_migrate(self, orch: UpdateOrchestrator) -> None:
        orch.add_item("p1", "Legacy", item_id="legacy-1")
        assert orch.validate_ids().invalid_ids == ["legacy-1"]

        result = orch.migrate(dry_run=False)

        assert result.committed
        assert result.mapping[0]["old_id"] == "legacy-1"
        assert orch.validate_ids().passed

    def test_project_stats(self, orch: UpdateOrchestrator, tree: dict[str, str]) -> None:
        stats = orch.project_stats("p1")
        assert stats["total_items"] == 5
        assert stats["completed_items"] == 1
