# obligation_tracker/engine.py
from __future__ import annotations

import dataclasses
import logging
from dataclasses import dataclass, field
from datetime import date
from typing import Dict, List

from obligation_tracker.core.errors import (
    ConcurrentModificationError,
    ResourceUnavailableError,
    RuleIntegrityError,
    StoreUnavailableError,
)
from obligation_tracker.core.models import (
    AwaitingConfirmation,
    ConfirmationMode,
    Failed,
    LedgerEntry,
    Materialized,
    MaterializationResult,
    NotDue,
    Obligation,
    ObligationState,
    Skipped,
)
from obligation_tracker.recurring import next_anchor

logger = logging.getLogger(__name__)

DEFAULT_MAX_CATCH_UP = 60

_ACTIONABLE = (ObligationState.DUE, ObligationState.SUSPENDED)


def evaluate(obligation: Obligation, now: date) -> ObligationState:
    """Classify *obligation* as of *now*.

    A flagged failure suspends the obligation once its next occurrence falls
    due; only an explicit confirm, skip, reactivation or edit resumes it.
    """
    if not obligation.is_active or obligation.rule.exhausted:
        return ObligationState.TERMINAL
    if obligation.anchor > now:
        return ObligationState.SCHEDULED
    if obligation.last_failure is not None:
        return ObligationState.SUSPENDED
    return ObligationState.DUE


def advance(obligation: Obligation) -> Obligation:
    """Return *obligation* with its current occurrence consumed."""
    rule = obligation.rule
    remaining = rule.remaining_repeats
    if remaining is not None:
        remaining = max(remaining - 1, 0)
    new_rule = dataclasses.replace(
        rule, anchor=next_anchor(rule), remaining_repeats=remaining
    )
    return dataclasses.replace(obligation, rule=new_rule)


@dataclass
class SweepReport:
    now: date
    results: List[MaterializationResult] = field(default_factory=list)
    conflicts: List[int] = field(default_factory=list)
    rejected: Dict[int, str] = field(default_factory=dict)

    def _count(self, kind) -> int:
        return sum(1 for r in self.results if isinstance(r, kind))

    @property
    def materialized(self) -> int:
        return self._count(Materialized)

    @property
    def awaiting(self) -> int:
        return self._count(AwaitingConfirmation)

    @property
    def failed(self) -> int:
        return self._count(Failed)

    def as_dict(self) -> Dict[str, object]:
        return {
            "now": self.now.isoformat(),
            "materialized": self.materialized,
            "awaiting_confirmation": self.awaiting,
            "failed": self.failed,
            "conflicts": list(self.conflicts),
            "rejected": {str(k): v for k, v in self.rejected.items()},
            "results": [
                {
                    key: (value.isoformat() if isinstance(value, date) else value)
                    for key, value in dataclasses.asdict(r).items()
                }
                for r in self.results
            ],
        }


class MaterializationEngine:
    """Drives due obligations into the ledger, one occurrence per transition.

    Every transition that consumes an occurrence (materialize, fail, skip)
    advances the anchor through a compare-and-swap on the obligation's
    version, inside the store's atomic unit. A lost race raises
    ConcurrentModificationError and leaves nothing written.
    """

    def __init__(self, store, sink, max_catch_up: int = DEFAULT_MAX_CATCH_UP):
        self.store = store
        self.sink = sink
        self.max_catch_up = max_catch_up

    # ------------------------------------------------------------------
    # single transitions
    # ------------------------------------------------------------------

    def materialize_due(self, obligation_id: int, now: date) -> MaterializationResult:
        return self.process(self.store.get(obligation_id), now)

    def confirm(self, obligation_id: int, now: date) -> MaterializationResult:
        return self.process(self.store.get(obligation_id), now, confirmed=True)

    def skip(self, obligation_id: int, now: date) -> MaterializationResult:
        obligation = self.store.get(obligation_id)
        if evaluate(obligation, now) not in _ACTIONABLE:
            return NotDue(obligation.id, obligation.anchor)
        occurrence_date = obligation.anchor
        advanced = dataclasses.replace(
            advance(obligation), last_failure=None, last_failure_on=None
        )
        with self.store.atomic():
            self.store.compare_and_swap(advanced, obligation.version)
        logger.info("Skipped obligation %s occurrence %s", obligation.id, occurrence_date)
        return Skipped(obligation.id, occurrence_date, advanced.anchor)

    def process(
        self, obligation: Obligation, now: date, confirmed: bool = False
    ) -> MaterializationResult:
        state = evaluate(obligation, now)
        if state not in _ACTIONABLE:
            return NotDue(obligation.id, obligation.anchor)

        occurrence_date = obligation.anchor
        needs_confirmation = (
            state is ObligationState.SUSPENDED
            or obligation.confirmation_mode is ConfirmationMode.MANUAL
        )
        if needs_confirmation and not confirmed:
            return AwaitingConfirmation(obligation.id, occurrence_date)

        ref = obligation.target_resource_ref
        try:
            if not self.sink.resolve_resource(ref):
                raise ResourceUnavailableError(ref)
        except StoreUnavailableError:
            raise
        except ResourceUnavailableError as exc:
            return self._fail(obligation, occurrence_date, str(exc))
        except Exception as exc:
            reason = f"lookup failed: {type(exc).__name__}: {exc}"
            return self._fail(
                obligation, occurrence_date, str(ResourceUnavailableError(ref, reason))
            )

        advanced = dataclasses.replace(
            advance(obligation), last_failure=None, last_failure_on=None
        )
        entry = LedgerEntry.for_occurrence(obligation, occurrence_date)
        with self.store.atomic():
            entry_id = self.sink.append(entry)
            self.store.compare_and_swap(advanced, obligation.version)

        logger.info(
            "Materialized obligation %s occurrence %s as ledger entry %s",
            obligation.id, occurrence_date, entry_id,
        )
        return Materialized(obligation.id, occurrence_date, entry_id, advanced.anchor)

    def _fail(self, obligation: Obligation, occurrence_date: date, reason: str) -> Failed:
        # The occurrence is consumed even though nothing is posted.
        advanced = dataclasses.replace(
            advance(obligation), last_failure=reason, last_failure_on=occurrence_date
        )
        with self.store.atomic():
            self.store.compare_and_swap(advanced, obligation.version)
        logger.warning(
            "Obligation %s occurrence %s failed: %s; next anchor %s",
            obligation.id, occurrence_date, reason, advanced.anchor,
        )
        return Failed(obligation.id, occurrence_date, reason, advanced.anchor)

    # ------------------------------------------------------------------
    # sweep
    # ------------------------------------------------------------------

    def run_due(self, now: date) -> SweepReport:
        """Process every due obligation independently.

        Past-due automatic obligations are caught up one occurrence at a time,
        at most ``max_catch_up`` transitions each. A failure ends that
        obligation's catch-up and leaves it suspended. Only store connectivity
        errors escape; everything else is recorded per obligation.
        """
        listing = self.store.list_due(now)
        report = SweepReport(now=now)
        for obligation_id, exc in listing.rejected:
            report.rejected[obligation_id] = str(exc)

        for obligation in listing.obligations:
            self._sweep_one(obligation, now, report)

        if report.results or report.conflicts or report.rejected:
            logger.info(
                "Sweep %s: %d materialized, %d awaiting confirmation, %d failed, "
                "%d conflicts, %d rejected",
                now, report.materialized, report.awaiting, report.failed,
                len(report.conflicts), len(report.rejected),
            )
        else:
            logger.info("Sweep %s: nothing due", now)
        return report

    def _sweep_one(self, obligation: Obligation, now: date, report: SweepReport) -> None:
        current = obligation
        for _ in range(self.max_catch_up):
            try:
                result = self.process(current, now)
            except ConcurrentModificationError as exc:
                logger.info("Sweep lost race on obligation %s: %s", obligation.id, exc)
                report.conflicts.append(obligation.id)
                return
            if isinstance(result, NotDue):
                return
            report.results.append(result)
            if isinstance(result, (AwaitingConfirmation, Failed)):
                return
            try:
                current = self.store.get(obligation.id)
            except RuleIntegrityError as exc:
                report.rejected[obligation.id] = str(exc)
                return
        if evaluate(current, now) is ObligationState.DUE:
            logger.info(
                "Obligation %s still due after %d catch-up steps",
                obligation.id, self.max_catch_up,
            )
