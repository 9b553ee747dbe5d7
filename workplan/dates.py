"""Start/finish/duration inference.

Any two of ``start_date``, ``finish_date`` and ``duration_days`` determine
the third. Day counting is inclusive: a task that starts and finishes on the
same day lasts one day, so ``finish = start + (duration - 1)``.

Which value gets derived depends on the field the caller just changed:

==============  ==============================================
changed          derived
==============  ==============================================
start_date       finish from start + duration
finish_date      start from finish - duration
duration_days    finish from start, else start from finish,
                 else start = today and finish from it
(none)           duration from start + finish
==============  ==============================================

When the changed field's rule lacks an input, the unspecified rules apply:
both dates give the duration, a date plus the duration gives the other date.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta
from typing import Any, Callable, Iterable

from workplan.errors import ValidationError
from workplan.models import DATE_FIELDS

log = logging.getLogger(__name__)


@dataclass
class DateCalculation:
    """Normalized date triple plus what was derived."""

    start_date: date | None = None
    finish_date: date | None = None
    duration_days: int | None = None
    calculated_field: str | None = None
    errors: dict[str, list[str]] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return not self.errors

    @property
    def description(self) -> str:
        return describe_calculation(self)

    def to_dict(self) -> dict[str, Any]:
        return {
            "start_date": self.start_date.isoformat() if self.start_date else None,
            "finish_date": self.finish_date.isoformat() if self.finish_date else None,
            "duration_days": self.duration_days,
            "calculated_field": self.calculated_field,
            "description": self.description,
            "errors": {k: list(v) for k, v in self.errors.items()},
        }


def describe_calculation(result: DateCalculation) -> str:
    """Human-readable account of a calculation, for audit logs."""
    if result.calculated_field == "start_date":
        return (
            f"Start date calculated: {result.finish_date} - "
            f"{result.duration_days} days = {result.start_date}"
        )
    if result.calculated_field == "finish_date":
        return (
            f"Finish date calculated: {result.start_date} + "
            f"{result.duration_days} days = {result.finish_date}"
        )
    if result.calculated_field == "duration_days":
        return (
            f"Duration calculated: {result.finish_date} - "
            f"{result.start_date} = {result.duration_days} days"
        )
    return "No calculation performed"


class DateInferenceEngine:
    """Resolves a consistent date triple from a partial edit.

    Parameters
    ----------
    unset_values:
        Strings treated as "no date" (compared case-insensitively after
        stripping). Empty string and ``None`` are always unset.
    max_duration_days:
        Longest accepted duration.
    min_year, max_years_ahead:
        Accepted year window: ``min_year`` to ``today.year + max_years_ahead``.
    today:
        Clock used when a duration is entered with no dates at all.
    """

    def __init__(
        self,
        unset_values: Iterable[str] = ("", "mm/dd/yyyy"),
        max_duration_days: int = 10000,
        min_year: int = 1900,
        max_years_ahead: int = 50,
        today: Callable[[], date] = date.today,
    ) -> None:
        self._unset = {v.strip().lower() for v in unset_values}
        self._unset.add("")
        self._max_duration = max_duration_days
        self._min_year = min_year
        self._max_years_ahead = max_years_ahead
        self._today = today

    @classmethod
    def from_config(
        cls, config: dict[str, Any], today: Callable[[], date] = date.today,
    ) -> DateInferenceEngine:
        dates = config["dates"]
        return cls(
            unset_values=dates["unset_values"],
            max_duration_days=dates["max_duration_days"],
            min_year=dates["min_year"],
            max_years_ahead=dates["max_years_ahead"],
            today=today,
        )

    # ------------------------------------------------------------------
    # Normalization
    # ------------------------------------------------------------------

    def is_unset(self, value: Any) -> bool:
        if value is None:
            return True
        return isinstance(value, str) and value.strip().lower() in self._unset

    def normalize_date(self, value: Any) -> date | None:
        """Return a ``date`` or None for unset values.

        Raises ValueError for strings that do not parse as ISO dates.
        """
        if self.is_unset(value):
            return None
        if isinstance(value, datetime):
            return value.date()
        if isinstance(value, date):
            return value
        text = str(value).strip()
        try:
            return date.fromisoformat(text)
        except ValueError:
            return datetime.fromisoformat(text).date()

    def normalize_duration(self, value: Any) -> int | None:
        """Return an int or None for unset values.

        Raises ValueError for anything that is not a whole number.
        """
        if self.is_unset(value):
            return None
        if isinstance(value, bool):
            raise ValueError(f"not a number: {value!r}")
        if isinstance(value, int):
            return value
        if isinstance(value, float):
            if not value.is_integer():
                raise ValueError(f"not a whole number: {value!r}")
            return int(value)
        return int(str(value).strip())

    # ------------------------------------------------------------------
    # Inference
    # ------------------------------------------------------------------

    def infer(
        self,
        start_date: Any = None,
        finish_date: Any = None,
        duration_days: Any = None,
        changed_field: str | None = None,
    ) -> DateCalculation:
        """Resolve the full triple. Errors are returned, never raised.

        Raises
        ------
        ValidationError
            Only if *changed_field* is not one of the three date fields.
        """
        if changed_field is not None and changed_field not in DATE_FIELDS:
            raise ValidationError(
                f"Unknown changed field '{changed_field}'. Must be one of {DATE_FIELDS}"
            )

        errors: dict[str, list[str]] = {}
        start = self._parse(start_date, "start_date", self.normalize_date,
                            "Start date is not valid", errors)
        finish = self._parse(finish_date, "finish_date", self.normalize_date,
                             "Finish date is not valid", errors)
        duration = self._parse(duration_days, "duration_days", self.normalize_duration,
                               "Duration must be a whole number of days", errors)
        if errors:
            return DateCalculation(errors=errors)

        result = DateCalculation(start, finish, duration)
        if duration is None or duration >= 1:
            try:
                self._derive(result, changed_field)
            except OverflowError:
                result.errors.setdefault("duration_days", []).append(
                    "Calculated date is out of range"
                )
                result.calculated_field = None
                return result

        result.errors.update(self._validate(result))
        if result.errors:
            result.calculated_field = None
            log.debug("Date validation failed: %s", result.errors)
        elif result.calculated_field:
            log.debug(describe_calculation(result))
        return result

    def _parse(
        self,
        value: Any,
        field_name: str,
        parser: Callable[[Any], Any],
        message: str,
        errors: dict[str, list[str]],
    ) -> Any:
        try:
            return parser(value)
        except (TypeError, ValueError):
            errors.setdefault(field_name, []).append(message)
            return None

    def _derive(self, result: DateCalculation, changed: str | None) -> None:
        start, finish, duration = result.start_date, result.finish_date, result.duration_days

        if changed == "start_date" and start and duration:
            result.finish_date = start + timedelta(days=duration - 1)
            result.calculated_field = "finish_date"
        elif changed == "finish_date" and finish and duration:
            result.start_date = finish - timedelta(days=duration - 1)
            result.calculated_field = "start_date"
        elif changed == "duration_days" and duration:
            if start:
                result.finish_date = start + timedelta(days=duration - 1)
                result.calculated_field = "finish_date"
            elif finish:
                result.start_date = finish - timedelta(days=duration - 1)
                result.calculated_field = "start_date"
            else:
                result.start_date = self._today()
                result.finish_date = result.start_date + timedelta(days=duration - 1)
                result.calculated_field = "finish_date"
                log.info("No existing dates, using today (%s) as start date", result.start_date)
        elif start and finish:
            result.duration_days = max(1, (finish - start).days + 1)
            result.calculated_field = "duration_days"
        elif start and duration:
            result.finish_date = start + timedelta(days=duration - 1)
            result.calculated_field = "finish_date"
        elif finish and duration:
            result.start_date = finish - timedelta(days=duration - 1)
            result.calculated_field = "start_date"

    def _validate(self, result: DateCalculation) -> dict[str, list[str]]:
        """Range checks.

        Duration bounds always apply. Date ranges and consistency are checked
        once two of the three values are known.
        """
        errors: dict[str, list[str]] = {}
        start, finish, duration = result.start_date, result.finish_date, result.duration_days
        if duration is not None:
            if duration <= 0:
                errors.setdefault("duration_days", []).append(
                    "Duration must be at least 1 day"
                )
            elif duration > self._max_duration:
                errors.setdefault("duration_days", []).append(
                    f"Duration cannot exceed {self._max_duration} days"
                )

        known = sum(v is not None for v in (start, finish, duration))
        if known < 2:
            return errors

        max_year = self._today().year + self._max_years_ahead
        for name, value, label in (("start_date", start, "Start"), ("finish_date", finish, "Finish")):
            if value and not (self._min_year <= value.year <= max_year):
                errors.setdefault(name, []).append(
                    f"{label} date year {value.year} outside {self._min_year}-{max_year}"
                )

        if start and finish and finish < start:
            errors.setdefault("finish_date", []).append(
                "Finish date cannot be before start date"
            )
        if start and finish and duration and finish >= start:
            span = (finish - start).days + 1
            if span != duration:
                errors.setdefault("duration_days", []).append(
                    f"Duration ({duration} days) doesn't match date range ({span} days)"
                )
        return errors


# ------------------------------------------------------------------
# Business-day helpers
# ------------------------------------------------------------------

def business_days_between(start: date, finish: date) -> int:
    """Count Monday-Friday days from *start* to *finish*, inclusive."""
    if finish < start:
        return 0
    count = 0
    current = start
    while current <= finish:
        if current.weekday() < 5:
            count += 1
        current += timedelta(days=1)
    return count


def add_business_days(start: date, business_days: int) -> date:
    """Return the date *business_days* working days after *start*."""
    added = 0
    current = start
    while added < business_days:
        current += timedelta(days=1)
        if current.weekday() < 5:
            added += 1
    return current
