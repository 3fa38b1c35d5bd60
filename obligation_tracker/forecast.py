# obligation_tracker/forecast.py
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import date, datetime
from decimal import Decimal, InvalidOperation
from typing import Dict, Iterable, List, Optional

from obligation_tracker.core.models import Classification, Obligation, Occurrence
from obligation_tracker.recurring import DEFAULT_MAX_STEPS, expand_obligation

logger = logging.getLogger(__name__)


def _zero_totals() -> Dict[Classification, Decimal]:
    return {c: Decimal("0") for c in Classification}


@dataclass
class Forecast:
    """Unsigned totals per classification, split around *now*.

    ``past`` holds occurrences inside the period that fell before *now*; they
    should already exist as ledger entries and are reported for information
    only. ``pending`` holds the occurrences still ahead.
    """

    period_start: date
    period_end: date
    now: date
    past: Dict[Classification, Decimal] = field(default_factory=_zero_totals)
    pending: Dict[Classification, Decimal] = field(default_factory=_zero_totals)
    pending_occurrences: List[Occurrence] = field(default_factory=list)
    truncated_ids: List[Optional[int]] = field(default_factory=list)
    rejected: Dict[int, str] = field(default_factory=dict)

    @property
    def partial(self) -> bool:
        return bool(self.truncated_ids)

    def pending_net(self) -> Decimal:
        """Signed sum of pending totals (income positive)."""
        return sum(
            (total * c.sign for c, total in self.pending.items()), Decimal("0")
        )

    def projected_balance(self, current_balance) -> Decimal:
        """Current balance plus the signed pending total."""
        try:
            balance = Decimal(str(current_balance))
        except InvalidOperation:
            raise ValueError(f"Invalid balance {current_balance!r}") from None
        return balance + self.pending_net()

    def as_dict(self) -> Dict[str, object]:
        return {
            "period": {
                "start": self.period_start.isoformat(),
                "end": self.period_end.isoformat(),
            },
            "now": self.now.isoformat(),
            "past": {c.value.lower(): str(v) for c, v in self.past.items()},
            "pending": {c.value.lower(): str(v) for c, v in self.pending.items()},
            "pending_net": str(self.pending_net()),
            "partial": self.partial,
            "truncated_obligations": list(self.truncated_ids),
            "rejected": {str(k): v for k, v in self.rejected.items()},
        }


def project(
    obligations: Iterable[Obligation],
    period_start: date,
    period_end: date,
    now: date,
    max_steps: int = DEFAULT_MAX_STEPS,
) -> Forecast:
    """Project the obligations' occurrences over ``[period_start, period_end]``.

    Parameters
    ----------
    obligations:
        Candidate obligations; inactive ones are ignored.
    period_start, period_end:
        Inclusive bounds of the forecast period.
    now:
        Reference date separating past occurrences from pending ones.
    max_steps:
        Per-obligation enumeration cap.
    """
    if isinstance(now, datetime):
        now = now.date()
    forecast = Forecast(period_start, period_end, now)
    pending_from = max(period_start, now)

    for obligation in obligations:
        if not obligation.is_active:
            continue
        expansion = expand_obligation(obligation, period_start, period_end, max_steps)
        if expansion.truncated:
            forecast.truncated_ids.append(obligation.id)
        for occ in expansion.occurrences:
            if occ.date < now:
                forecast.past[occ.classification] += occ.amount
            elif occ.date >= pending_from:
                forecast.pending[occ.classification] += occ.amount
                forecast.pending_occurrences.append(occ)

    forecast.pending_occurrences.sort(key=lambda o: (o.date, o.obligation_id or 0))
    if forecast.partial:
        logger.warning(
            "Forecast %s..%s is partial: %d obligation(s) truncated",
            period_start, period_end, len(forecast.truncated_ids),
        )
    return forecast
