"""Work item and project records.

The tree is stored flat: each :class:`WorkItem` carries a ``parent_id``
back-reference and children are found by lookup, never embedded.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass, field, fields
from datetime import date, datetime, timezone
from typing import Any


# Fields a caller may change through an edit
EDITABLE_FIELDS = (
    "title",
    "description",
    "completion",
    "parent_id",
    "start_date",
    "finish_date",
    "duration_days",
    "is_milestone",
    "package",
    "category",
)

DATE_FIELDS = ("start_date", "finish_date", "duration_days")


def now_iso() -> str:
    """Current UTC time as ISO string."""
    return datetime.now(timezone.utc).isoformat()


def _date_to_str(value: date | None) -> str | None:
    return value.isoformat() if value else None


def _date_from_str(value: Any) -> date | None:
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    return date.fromisoformat(str(value))


@dataclass
class WorkItem:
    """A node in the work item tree."""

    id: str
    title: str
    project_id: str
    parent_id: str | None = None
    completion: int = 0
    start_date: date | None = None
    finish_date: date | None = None
    duration_days: int | None = None
    is_milestone: bool = False
    package: str | None = None
    category: str | None = None
    description: str | None = None
    created_at: str = field(default_factory=now_iso)

    @property
    def created_day(self) -> date:
        """Calendar day the item was created on."""
        return datetime.fromisoformat(self.created_at).date()

    def to_dict(self) -> dict[str, Any]:
        """JSON-serializable form (dates as ``YYYY-MM-DD``)."""
        data = asdict(self)
        data["start_date"] = _date_to_str(self.start_date)
        data["finish_date"] = _date_to_str(self.finish_date)
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> WorkItem:
        known = {f.name for f in fields(cls)}
        kwargs = {k: v for k, v in data.items() if k in known}
        kwargs["start_date"] = _date_from_str(kwargs.get("start_date"))
        kwargs["finish_date"] = _date_from_str(kwargs.get("finish_date"))
        if "is_milestone" in kwargs:
            kwargs["is_milestone"] = bool(kwargs["is_milestone"])
        if kwargs.get("created_at") is None:
            kwargs.pop("created_at", None)
        return cls(**kwargs)


@dataclass
class Project:
    """A project owning a tree of work items."""

    id: str
    name: str
    vessel_name: str | None = None

    @property
    def code_source(self) -> str:
        """Name the work-package project code is derived from."""
        return self.vessel_name or self.name

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)
