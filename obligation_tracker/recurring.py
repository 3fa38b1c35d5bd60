# obligation_tracker/recurring.py
from __future__ import annotations

import logging
import warnings
from calendar import monthrange
from dataclasses import dataclass
from datetime import date, timedelta
from typing import Iterator, List, Optional, Tuple

from obligation_tracker.core.errors import RuleIntegrityError, TruncatedEnumerationWarning
from obligation_tracker.core.models import Frequency, Obligation, Occurrence, RecurrenceRule

logger = logging.getLogger(__name__)

DEFAULT_MAX_STEPS = 500


@dataclass(frozen=True)
class Enumeration:
    dates: Tuple[date, ...]
    truncated: bool = False


@dataclass(frozen=True)
class Expansion:
    occurrences: Tuple[Occurrence, ...]
    truncated: bool = False


def _add_months(original_date: date, months: int, day: Optional[int] = None) -> date:
    month_index = original_date.month - 1 + months
    year = original_date.year + month_index // 12
    month = month_index % 12 + 1
    target_day = day if day is not None else original_date.day
    day = min(target_day, monthrange(year, month)[1])
    return date(year, month, day)


def _step(current: date, rule: RecurrenceRule) -> Optional[date]:
    frequency = rule.frequency
    try:
        if frequency is Frequency.ONE_TIME:
            return None
        if frequency is Frequency.DAILY:
            return current + timedelta(days=1)
        if frequency is Frequency.WEEKLY:
            return current + timedelta(weeks=1)
        if frequency.months:
            return _add_months(current, frequency.months, rule.intended_day)
    except (OverflowError, ValueError):
        # stepped past date.max
        return None
    raise RuleIntegrityError(f"Unsupported frequency {frequency!r}")


def next_anchor(rule: RecurrenceRule) -> Optional[date]:
    """Return the date one step after the rule's anchor, or None if there is none."""
    if rule.anchor is None:
        return None
    return _step(rule.anchor, rule)


def _walk(rule: RecurrenceRule) -> Iterator[date]:
    """Yield occurrence dates from the anchor until the rule's logical end."""
    cursor = rule.anchor
    consumed = 0
    while cursor is not None:
        if rule.end_date is not None and cursor > rule.end_date:
            return
        if rule.remaining_repeats is not None and consumed >= rule.remaining_repeats:
            return
        consumed += 1
        yield cursor
        cursor = _step(cursor, rule)


def _warn_truncated(rule: RecurrenceRule, max_steps: int) -> None:
    logger.warning(
        "Enumeration of %s rule anchored %s stopped after %d steps",
        rule.frequency.value, rule.anchor, max_steps,
    )
    warnings.warn(
        TruncatedEnumerationWarning(
            f"{rule.frequency.value} rule anchored {rule.anchor} "
            f"truncated after {max_steps} steps"
        ),
        stacklevel=3,
    )


def enumerate_dates(
    rule: RecurrenceRule,
    window_start: date,
    window_end: date,
    max_steps: int = DEFAULT_MAX_STEPS,
) -> Enumeration:
    """Return the occurrence dates of *rule* inside ``[window_start, window_end]``.

    Stepping always begins at the anchor, even when it lies before the window,
    so past-due occurrences are never skipped. At most *max_steps* steps are
    taken; hitting the cap before the window end marks the result truncated.
    """
    if window_start > window_end:
        return Enumeration(())

    dates: List[date] = []
    truncated = False
    for steps, cursor in enumerate(_walk(rule)):
        if cursor > window_end:
            break
        if steps >= max_steps:
            truncated = True
            break
        if cursor >= window_start:
            dates.append(cursor)

    if truncated:
        _warn_truncated(rule, max_steps)
    return Enumeration(tuple(dates), truncated)


def expand_obligation(
    obligation: Obligation,
    window_start: date,
    window_end: date,
    max_steps: int = DEFAULT_MAX_STEPS,
) -> Expansion:
    result = enumerate_dates(obligation.rule, window_start, window_end, max_steps)
    occurrences = tuple(
        Occurrence(
            date=d,
            amount=obligation.amount,
            classification=obligation.classification,
            obligation_id=obligation.id,
            name=obligation.name,
        )
        for d in result.dates
    )
    return Expansion(occurrences, result.truncated)


def next_occurrences(
    rule: RecurrenceRule,
    count: int = 5,
    from_date: Optional[date] = None,
    max_steps: int = DEFAULT_MAX_STEPS,
) -> List[date]:
    """Preview the next *count* occurrence dates on or after *from_date*."""
    if count <= 0:
        return []
    found: List[date] = []
    for steps, cursor in enumerate(_walk(rule)):
        if len(found) >= count:
            break
        if steps >= max_steps:
            _warn_truncated(rule, max_steps)
            break
        if from_date is None or cursor >= from_date:
            found.append(cursor)
    return found
