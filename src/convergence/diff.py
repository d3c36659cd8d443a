"""Diff rules engine for drift detection.

Decides whether an observed resource matches its desired spec. Providers
omit optional attributes, fill in defaults and reorder collections, so a
plain equality check would report drift that is not there.

RULES OF THUMB:
- An absent observed attribute equals an empty desired value
- Resources in a transitional state are always up to date
- Unordered collections (allow-lists, bucket lists) compare as sets
- Times of day compare after parsing, so "10:00:00" equals "10:00:00Z"
"""

from __future__ import annotations

import logging
from collections.abc import Iterable, Mapping
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel

from .models import ProviderState

logger = logging.getLogger(__name__)

TIME_OF_DAY_LAYOUT = "%H:%M:%SZ"


class ComparisonType(str, Enum):
    """Ways a desired field can be compared with its observed value."""

    # Plain equality, absent observed value is a mismatch
    EXACT = "exact"

    # Absent observed value equals an empty desired value
    NIL_SAFE = "nil_safe"

    # Only compared when the observed value is present
    IF_OBSERVED = "if_observed"

    # Only compared when the desired value is set (e.g. k8s version)
    OPTIONAL = "optional"

    # HH:MM:SS with optional trailing Z, missing Z means UTC
    TIME_OF_DAY = "time_of_day"

    # Time of day plus nil-safe day of week
    MAINTENANCE_WINDOW = "maintenance_window"

    # Collection compared as a set
    UNORDERED = "unordered"

    # Enum-like strings
    CASE_INSENSITIVE = "case_insensitive"


@dataclass(frozen=True)
class FieldRule:
    """Comparison rule for one desired field.

    Attributes:
        name: Attribute name on the desired spec.
        observed_key: Dotted path of the value in the observed properties.
        comparison: How the two values are compared.
        reason: Human-readable explanation.
    """

    name: str
    observed_key: str
    comparison: ComparisonType = ComparisonType.NIL_SAFE
    reason: str = ""

    def equal(self, desired: Any, observed: Any) -> bool:
        """Compare a desired value with an observed one under this rule."""
        match self.comparison:
            case ComparisonType.EXACT:
                return _plain(desired) == observed
            case ComparisonType.NIL_SAFE:
                return equal_nil_safe(desired, observed)
            case ComparisonType.IF_OBSERVED:
                return observed is None or _plain(desired) == observed
            case ComparisonType.OPTIONAL:
                return is_empty(desired) or equal_nil_safe(desired, observed)
            case ComparisonType.TIME_OF_DAY:
                return equal_time_of_day(desired, observed)
            case ComparisonType.MAINTENANCE_WINDOW:
                return equal_maintenance_window(desired, observed)
            case ComparisonType.UNORDERED:
                return equal_unordered(desired, observed)
            case ComparisonType.CASE_INSENSITIVE:
                return equal_case_insensitive(desired, observed)
            case _:
                return False


@dataclass(frozen=True)
class DiffResult:
    up_to_date: bool
    diff: str = ""

    def __bool__(self) -> bool:
        return self.up_to_date


def is_empty(value: Any) -> bool:
    """True for None, empty strings, zero numbers, False and empty collections."""
    if value is None:
        return True
    if isinstance(value, BaseModel):
        return all(is_empty(v) for v in value.model_dump().values())
    if isinstance(value, str | list | tuple | dict | set | frozenset):
        return len(value) == 0
    if isinstance(value, bool | int | float):
        return not value
    return False


def equal_nil_safe(desired: Any, observed: Any) -> bool:
    if observed is None:
        return is_empty(desired)
    return _plain(desired) == observed


def equal_case_insensitive(desired: Any, observed: Any) -> bool:
    if observed is None:
        return is_empty(desired)
    return str(desired).lower() == str(observed).lower()


def parse_time_of_day(value: str) -> datetime | None:
    """Parse HH:MM:SS[Z]. Returns None for unparseable input."""
    if not value.endswith("Z"):
        value += "Z"
    try:
        return datetime.strptime(value, TIME_OF_DAY_LAYOUT)
    except ValueError:
        return None


def equal_time_of_day(desired: str | None, observed: str | None) -> bool:
    if not observed:
        return not desired
    if not desired:
        return False
    desired_time = parse_time_of_day(desired)
    observed_time = parse_time_of_day(observed)
    if desired_time is None or observed_time is None:
        return False
    return desired_time == observed_time


def equal_maintenance_window(desired: Any, observed: Mapping[str, Any] | None) -> bool:
    """Compare a maintenance window, treating an absent observed window as empty."""
    desired_window = _plain(desired) or {}
    desired_time = desired_window.get("time", "")
    desired_day = desired_window.get("dayOfTheWeek", desired_window.get("day_of_the_week", ""))
    if observed is None:
        return not desired_time and not desired_day
    return equal_time_of_day(desired_time, observed.get("time")) and equal_nil_safe(
        desired_day, observed.get("dayOfTheWeek")
    )


def equal_unordered(desired: Iterable[Any] | None, observed: Iterable[Any] | None) -> bool:
    if observed is None:
        return is_empty(desired)
    return {_hashable(v) for v in desired or ()} == {_hashable(v) for v in observed}


def compare(
    desired: BaseModel | None,
    observed: Mapping[str, Any] | None,
    state: ProviderState,
    rules: Iterable[FieldRule],
) -> DiffResult:
    """Decide whether observed properties match the desired spec.

    Args:
        desired: Desired spec, or None when nothing is declared.
        observed: Observed properties, or None when the provider returned none.
        state: Observed provider state.
        rules: Field rules applied in order; the first mismatch wins.

    Returns:
        DiffResult naming the first mismatching field.
    """
    if desired is None and observed is None:
        return DiffResult(True)
    if desired is None or observed is None:
        return DiffResult(False, "desired and observed representations differ in presence")

    if state.is_transitional:
        return DiffResult(True)

    for rule in rules:
        desired_value = getattr(desired, rule.name)
        observed_value = lookup_path(observed, rule.observed_key)
        if not rule.equal(desired_value, observed_value):
            diff = f"{rule.name}: desired {_plain(desired_value)!r}, observed {observed_value!r}"
            logger.debug("Field drift detected", extra={"field": rule.name, "diff": diff})
            return DiffResult(False, diff)

    return DiffResult(True)


def lookup_path(properties: Mapping[str, Any] | None, path: str) -> Any:
    """Look up a value by dotted path, None when any segment is absent."""
    value: Any = properties
    for segment in path.split("."):
        if not isinstance(value, Mapping):
            return None
        value = value.get(segment)
    return value


def _plain(value: Any) -> Any:
    """Dump pydantic models to their wire form so they compare with observed dicts."""
    if isinstance(value, BaseModel):
        return value.model_dump(by_alias=True)
    if isinstance(value, list):
        return [_plain(v) for v in value]
    return value


def _hashable(value: Any) -> Any:
    value = _plain(value)
    if isinstance(value, Mapping):
        return tuple(sorted((k, _hashable(v)) for k, v in value.items()))
    if isinstance(value, list | tuple):
        return tuple(_hashable(v) for v in value)
    return value
