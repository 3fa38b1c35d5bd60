# obligation_tracker/scheduler.py
from __future__ import annotations

import dataclasses
import logging
from datetime import date, timedelta
from typing import Dict, List, Optional

from obligation_tracker.core.errors import ConcurrentModificationError
from obligation_tracker.core.models import Obligation, Occurrence, RecurrenceRule
from obligation_tracker.engine import DEFAULT_MAX_CATCH_UP, MaterializationEngine, SweepReport
from obligation_tracker.forecast import Forecast, project
from obligation_tracker.recurring import DEFAULT_MAX_STEPS, expand_obligation, next_occurrences
from obligation_tracker.store import get_backend
from obligation_tracker.utils import as_day

logger = logging.getLogger(__name__)

_OBLIGATION_FIELDS = {
    "name", "amount", "classification", "confirmation_mode", "target_resource_ref",
}
_RULE_FIELDS = {"frequency", "start_date", "end_date", "repeat_count"}


def _remaining_after(rule: RecurrenceRule, repeat_count) -> Optional[int]:
    """Remaining repeats under a new *repeat_count*, keeping those already used."""
    if repeat_count is None:
        return None
    used = 0
    if rule.repeat_count is not None and rule.remaining_repeats is not None:
        used = rule.repeat_count - rule.remaining_repeats
    return max(int(repeat_count) - used, 0)


class ObligationScheduler:
    """Entry point for callers: CLI commands, MCP tools, batch jobs.

    Holds no state of its own beyond its collaborators, so any number of
    instances may run against the same store at once.
    """

    def __init__(
        self,
        store,
        sink=None,
        max_enumeration_steps: int = DEFAULT_MAX_STEPS,
        max_catch_up: int = DEFAULT_MAX_CATCH_UP,
    ):
        self.store = store
        self.sink = sink if sink is not None else store
        self.max_enumeration_steps = max_enumeration_steps
        self.engine = MaterializationEngine(self.store, self.sink, max_catch_up)

    @classmethod
    def from_config(cls, config) -> "ObligationScheduler":
        backend = get_backend(config)
        return cls(
            backend,
            max_enumeration_steps=int(config.get("max_enumeration_steps", DEFAULT_MAX_STEPS)),
            max_catch_up=int(config.get("max_catch_up", DEFAULT_MAX_CATCH_UP)),
        )

    # ------------------------------------------------------------------
    # lifecycle
    # ------------------------------------------------------------------

    def create(self, obligation: Obligation) -> Obligation:
        rule = obligation.rule
        if rule.anchor is None:
            rule = dataclasses.replace(rule, anchor=rule.start_date)
        if rule.remaining_repeats is None and rule.repeat_count is not None:
            rule = dataclasses.replace(rule, remaining_repeats=rule.repeat_count)
        created = self.store.add(dataclasses.replace(obligation, rule=rule))
        logger.info(
            "Created obligation %s (%s, %s) anchored %s",
            created.id, created.name, rule.frequency.value, rule.anchor,
        )
        return created

    def set_active(self, obligation_id: int, is_active: bool) -> Obligation:
        return self.store.set_active(obligation_id, is_active)

    def update(self, obligation_id: int, changes: Dict[str, object], now=None,
               expected_version: Optional[int] = None) -> Obligation:
        """Apply *changes* to a stored obligation.

        Changing ``frequency`` or ``start_date`` re-anchors the obligation on
        the first occurrence of the new cadence on or after its current anchor
        (or *now*, once the old rule had run out). Changing ``repeat_count``
        keeps the occurrences already consumed. The write bumps the version, so
        a transition still working from the old snapshot loses its
        compare-and-swap. An edit also clears a failure flag.
        """
        unknown = set(changes) - _OBLIGATION_FIELDS - _RULE_FIELDS
        if unknown:
            raise ValueError("Cannot update " + ", ".join(sorted(unknown)))

        current = self.store.get(obligation_id)
        if expected_version is not None and expected_version != current.version:
            raise ConcurrentModificationError(obligation_id, expected_version)

        rule = current.rule
        rule_changes = {k: v for k, v in changes.items() if k in _RULE_FIELDS}
        if "repeat_count" in rule_changes:
            rule_changes["remaining_repeats"] = _remaining_after(
                rule, rule_changes["repeat_count"]
            )
        if "frequency" in rule_changes or "start_date" in rule_changes:
            cadence = dataclasses.replace(rule, anchor=None, **rule_changes)
            cadence = dataclasses.replace(
                cadence, anchor=cadence.start_date, remaining_repeats=None
            )
            resume_from = rule.anchor or as_day(now)
            upcoming = next_occurrences(
                cadence, 1, resume_from, max_steps=self.max_enumeration_steps
            )
            rule_changes["anchor"] = upcoming[0] if upcoming else None

        updated = dataclasses.replace(
            current,
            rule=dataclasses.replace(rule, **rule_changes),
            last_failure=None,
            last_failure_on=None,
            **{k: v for k, v in changes.items() if k in _OBLIGATION_FIELDS},
        )
        updated = self.store.compare_and_swap(updated, current.version)
        logger.info(
            "Updated obligation %s (%s), anchor %s",
            obligation_id, ", ".join(sorted(changes)) or "no fields", updated.anchor,
        )
        return updated

    def delete(self, obligation_id: int) -> None:
        self.store.delete(obligation_id)
        logger.info("Deleted obligation %s", obligation_id)

    # ------------------------------------------------------------------
    # queries
    # ------------------------------------------------------------------

    def list_obligations(self):
        """Every stored obligation, inactive ones included, plus rejected rows."""
        return self.store.list_all()

    def list_due(self, now=None) -> List[Obligation]:
        return self.store.list_due(as_day(now)).obligations

    def upcoming(self, now=None, days_ahead: int = 7, limit: Optional[int] = None) -> List[Obligation]:
        """Obligations due on or before ``now + days_ahead``, overdue ones included."""
        horizon = as_day(now) + timedelta(days=days_ahead)
        upcoming = self.store.list_due(horizon).obligations
        return upcoming[:limit] if limit is not None else upcoming

    def forecast(self, period_start: date, period_end: date, now=None) -> Forecast:
        listing = self.store.list_active()
        forecast = project(
            listing.obligations, period_start, period_end, as_day(now),
            max_steps=self.max_enumeration_steps,
        )
        forecast.rejected.update({oid: str(exc) for oid, exc in listing.rejected})
        return forecast

    def schedule(self, period_start: date, period_end: date) -> List[Occurrence]:
        """Every occurrence of every active obligation inside the period."""
        occurrences: List[Occurrence] = []
        for obligation in self.store.list_active().obligations:
            expansion = expand_obligation(
                obligation, period_start, period_end, self.max_enumeration_steps
            )
            occurrences.extend(expansion.occurrences)
        occurrences.sort(key=lambda o: (o.date, o.obligation_id or 0))
        return occurrences

    def preview(self, obligation_id: int, count: int = 5, from_date=None) -> List[date]:
        obligation = self.store.get(obligation_id)
        return next_occurrences(
            obligation.rule,
            count,
            as_day(from_date) if from_date is not None else None,
            max_steps=self.max_enumeration_steps,
        )

    # ------------------------------------------------------------------
    # transitions
    # ------------------------------------------------------------------

    def materialize_due(self, obligation_id: int, now=None):
        return self.engine.materialize_due(obligation_id, as_day(now))

    def confirm(self, obligation_id: int, now=None):
        return self.engine.confirm(obligation_id, as_day(now))

    def skip(self, obligation_id: int, now=None):
        return self.engine.skip(obligation_id, as_day(now))

    def run_due(self, now=None) -> SweepReport:
        return self.engine.run_due(as_day(now))
