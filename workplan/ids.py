"""Structured work item ids with gap-filling allocation.

Two structured schemes are generated; a third, free-form legacy scheme is
only recognized:

- date: ``DD/MM/YY/NNN`` with a per-day sequence (``12/10/25/003``)
- work package: ``WP-XXX-NNN`` for top-level items, where ``XXX`` is a
  project code (``WP-SIN-007``)
- task: ``{parent id}-TNN`` for subordinate items (``WP-SIN-007-T02``)

Sequences are gap-filling: the smallest positive number not in use is
handed out first, so holes left by deletions are reused before the maximum
is extended.

Allocation records reservations in the ``id_reservations`` table of the
store under one write lock, so back-to-back callers see each other's ids
before the items are created.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from datetime import date
from typing import Any, Callable, Iterable

from workplan.errors import NotFoundError, ValidationError

log = logging.getLogger(__name__)

# Valid allocation kinds
KINDS = ("date", "work_package", "task")

_DATE_CORE = r"\d{2}/\d{2}/\d{2}/\d{3,}"
_WP_CORE = r"WP-[A-Z]{3}-\d{3,}"

DATE_ID_RE = re.compile(rf"^{_DATE_CORE}$")
WORK_PACKAGE_ID_RE = re.compile(rf"^{_WP_CORE}$")
TASK_ID_RE = re.compile(rf"^(?:{_WP_CORE}|{_DATE_CORE})(?:-T\d{{2,}})+$")

_DATE_SEQ_RE = re.compile(r"^\d{2}/\d{2}/\d{2}/(\d{3,})$")
_WP_SEQ_RE = re.compile(r"^WP-[A-Z]{3}-(\d{3,})$")

DEFAULT_VESSEL_PREFIXES = ("MT", "KM", "MV", "MS")
DEFAULT_FALLBACK_CODE = "UNK"


class IdAllocatorError(ValidationError):
    """Raised on invalid allocation requests."""


@dataclass(frozen=True)
class IdScope:
    """Where a new id will live.

    ``project_id`` is required for date and work-package ids; ``parent_id``
    for task ids. ``day`` overrides the creation day for date ids.
    """

    project_id: str | None = None
    parent_id: str | None = None
    package: str | None = None
    day: date | None = None


# ------------------------------------------------------------------
# Recognition
# ------------------------------------------------------------------

def classify_id(item_id: str) -> str:
    """Return ``"date"``, ``"work_package"``, ``"task"`` or ``"legacy"``."""
    if DATE_ID_RE.match(item_id):
        return "date"
    if WORK_PACKAGE_ID_RE.match(item_id):
        return "work_package"
    if TASK_ID_RE.match(item_id):
        return "task"
    return "legacy"


def is_structured(item_id: str) -> bool:
    return classify_id(item_id) != "legacy"


def validate_id_text(item_id: Any) -> str:
    """Reject ids no scheme can hold: empty, or containing whitespace."""
    if not isinstance(item_id, str) or not item_id:
        raise ValidationError("Work item id must be a non-empty string", {"id": ["required"]})
    if any(ch.isspace() for ch in item_id):
        raise ValidationError(
            f"Malformed work item id {item_id!r}: whitespace is not allowed",
            {"id": ["whitespace is not allowed"]},
        )
    return item_id


def parse_date_id(item_id: str) -> dict[str, int] | None:
    """Split a date-scheme id into its parts, or None if it is not one.

    Two-digit years 00-30 map to 2000-2030, 31-99 to 1931-1999.
    """
    if not DATE_ID_RE.match(item_id):
        return None
    day, month, year, seq = (int(p) for p in item_id.split("/"))
    full_year = 2000 + year if year <= 30 else 1900 + year
    return {
        "day": day,
        "month": month,
        "year": year,
        "full_year": full_year,
        "sequence": seq,
    }


# ------------------------------------------------------------------
# Formatting
# ------------------------------------------------------------------

def date_prefix(day: date) -> str:
    """``DD/MM/YY/`` prefix for ids created on *day*."""
    return f"{day:%d/%m/%y}/"


def work_package_prefix(project_code: str) -> str:
    return f"WP-{project_code}-"


def task_prefix(parent_id: str) -> str:
    return f"{parent_id}-T"


def derive_project_code(
    name: str | None,
    prefixes: Iterable[str] = DEFAULT_VESSEL_PREFIXES,
    fallback: str = DEFAULT_FALLBACK_CODE,
) -> str:
    """Three-letter project code from a vessel or project name.

    Strips one leading vessel-type token (``MT.``, ``KM`` ...), takes the
    first remaining word, keeps its letters and pads with ``X`` to three.

    >>> derive_project_code("MT. Sinar Jaya")
    'SIN'
    >>> derive_project_code("KM Bo")
    'BOX'
    """
    text = (name or "").strip()
    tokens = [re.escape(p.rstrip(".")) for p in prefixes if p.strip(". ")]
    if tokens:
        text = re.sub(
            rf"^(?:{'|'.join(tokens)})(?:\.\s*|\s+)", "", text, count=1, flags=re.IGNORECASE,
        ).strip()
    words = text.split()
    if not words:
        return fallback
    letters = "".join(ch for ch in words[0] if ch.isascii() and ch.isalpha()).upper()
    if not letters:
        return fallback
    return letters[:3].ljust(3, "X")


# ------------------------------------------------------------------
# Gap filling
# ------------------------------------------------------------------

def next_sequence_numbers(existing: Iterable[int], count: int = 1) -> list[int]:
    """Return the *count* smallest positive integers not in *existing*.

    Holes are filled first, then numbering continues past the maximum.

    >>> next_sequence_numbers([1, 3, 4])
    [2]
    >>> next_sequence_numbers([1, 3, 4], 3)
    [2, 5, 6]
    """
    if count < 1:
        raise IdAllocatorError(f"count must be >= 1, got {count}")
    used = {n for n in existing if n > 0}
    result: list[int] = []
    candidate = 1
    while len(result) < count:
        if candidate not in used:
            result.append(candidate)
        candidate += 1
    return result


def sequence_numbers(ids: Iterable[str], prefix: str) -> list[int]:
    """Parse the numeric suffix of every id directly under *prefix*.

    Deeper ids (``WP-SIN-001-T01`` under ``WP-SIN-``) and non-numeric
    suffixes are ignored.
    """
    numbers: list[int] = []
    for item_id in ids:
        if not item_id.startswith(prefix):
            continue
        suffix = item_id[len(prefix):]
        if suffix.isdigit():
            numbers.append(int(suffix))
    return sorted(numbers)


def plan_ids(prefix: str, width: int, existing: Iterable[str], count: int) -> list[str]:
    """Gap-fill *count* new ids under *prefix*, zero-padded to *width*."""
    numbers = next_sequence_numbers(sequence_numbers(existing, prefix), count)
    return [f"{prefix}{n:0{width}d}" for n in numbers]


# ------------------------------------------------------------------
# Allocator
# ------------------------------------------------------------------

class IDAllocator:
    """Gap-filling id allocator backed by the record store.

    Parameters
    ----------
    store:
        Record store providing ``get``, ``get_project`` and ``reserve_ids``.
    vessel_prefixes, fallback_code:
        Project code derivation settings.
    reservation_ttl_seconds:
        How long an id stays reserved without being created.
    today:
        Clock for date-scheme ids.
    """

    def __init__(
        self,
        store: Any,
        vessel_prefixes: Iterable[str] = DEFAULT_VESSEL_PREFIXES,
        fallback_code: str = DEFAULT_FALLBACK_CODE,
        reservation_ttl_seconds: int = 900,
        today: Callable[[], date] = date.today,
    ) -> None:
        self._store = store
        self._prefixes = tuple(vessel_prefixes)
        self._fallback = fallback_code
        self._ttl = reservation_ttl_seconds
        self._today = today

    @classmethod
    def from_config(
        cls, store: Any, config: dict[str, Any], today: Callable[[], date] = date.today,
    ) -> IDAllocator:
        ids = config["ids"]
        return cls(
            store,
            vessel_prefixes=ids["vessel_prefixes"],
            fallback_code=ids["project_code_fallback"],
            reservation_ttl_seconds=ids["reservation_ttl_seconds"],
            today=today,
        )

    # ------------------------------------------------------------------
    # Core allocation
    # ------------------------------------------------------------------

    def allocate_id(self, scope: IdScope, kind: str) -> str:
        """Allocate and return a single id."""
        return self.allocate_ids(scope, kind, 1)[0]

    def allocate_ids(self, scope: IdScope, kind: str, count: int) -> list[str]:
        """Allocate *count* ids from a single read of the scope.

        Raises
        ------
        IdAllocatorError
            If *kind* is invalid, *count* < 1, or the scope lacks the
            project/parent the kind needs.
        NotFoundError
            If the project or parent does not exist.
        ConcurrencyConflict
            If another caller reserved the same ids first.
        """
        if count < 1:
            raise IdAllocatorError(f"count must be >= 1, got {count}")
        prefix, width = self._sequence_space(scope, kind)
        ids = self._store.reserve_ids(
            prefix,
            lambda existing: plan_ids(prefix, width, existing, count),
            self._ttl,
        )
        log.info("Allocated %d %s id(s): %s", len(ids), kind, ", ".join(ids))
        return ids

    def release(self, ids: Iterable[str]) -> int:
        """Give back reserved ids that will not be created."""
        return self._store.release_reservations(ids)

    def project_code(self, project_id: str) -> str:
        project = self._store.get_project(project_id)
        if project is None:
            raise NotFoundError(f"Project not found: {project_id}")
        return derive_project_code(project.code_source, self._prefixes, self._fallback)

    def _sequence_space(self, scope: IdScope, kind: str) -> tuple[str, int]:
        """Return (prefix, sequence width) for *kind* in *scope*."""
        if kind not in KINDS:
            raise IdAllocatorError(f"Invalid kind '{kind}'. Must be one of: {list(KINDS)}")

        if kind == "task":
            if not scope.parent_id:
                raise IdAllocatorError("Task ids need a parent_id in scope")
            if self._store.get(scope.parent_id) is None:
                raise NotFoundError(f"Parent work item not found: {scope.parent_id}")
            return task_prefix(scope.parent_id), 2

        if not scope.project_id:
            raise IdAllocatorError(f"{kind} ids need a project_id in scope")

        if kind == "work_package":
            return work_package_prefix(self.project_code(scope.project_id)), 3

        if self._store.get_project(scope.project_id) is None:
            raise NotFoundError(f"Project not found: {scope.project_id}")
        return date_prefix(scope.day or self._today()), 3
