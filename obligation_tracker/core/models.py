# obligation_tracker/core/models.py
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime
from decimal import Decimal, InvalidOperation
from enum import Enum
from typing import Optional, Union

from obligation_tracker.core.errors import RuleIntegrityError


class Frequency(Enum):
    DAILY = "DAILY"
    WEEKLY = "WEEKLY"
    MONTHLY = "MONTHLY"
    QUARTERLY = "QUARTERLY"
    SEMIANNUAL = "SEMIANNUAL"
    YEARLY = "YEARLY"
    ONE_TIME = "ONE_TIME"

    @classmethod
    def parse(cls, value) -> "Frequency":
        """Return the member named by *value*; anything else is an integrity error."""
        if isinstance(value, cls):
            return value
        if isinstance(value, str):
            try:
                return cls[value.strip().upper()]
            except KeyError:
                pass
        raise RuleIntegrityError(f"Unknown frequency {value!r}")

    @property
    def months(self) -> int:
        return _MONTH_STEPS.get(self, 0)


_MONTH_STEPS = {
    Frequency.MONTHLY: 1,
    Frequency.QUARTERLY: 3,
    Frequency.SEMIANNUAL: 6,
    Frequency.YEARLY: 12,
}


class Classification(Enum):
    INCOME = "INCOME"
    EXPENSE = "EXPENSE"
    SAVING = "SAVING"
    DEBT = "DEBT"

    @classmethod
    def parse(cls, value) -> "Classification":
        if isinstance(value, cls):
            return value
        if isinstance(value, str):
            try:
                return cls[value.strip().upper()]
            except KeyError:
                pass
        raise RuleIntegrityError(f"Unknown classification {value!r}")

    @property
    def sign(self) -> int:
        return 1 if self is Classification.INCOME else -1


class ConfirmationMode(Enum):
    AUTOMATIC = "AUTOMATIC"
    MANUAL = "MANUAL"

    @classmethod
    def parse(cls, value) -> "ConfirmationMode":
        if isinstance(value, cls):
            return value
        if isinstance(value, str):
            try:
                return cls[value.strip().upper()]
            except KeyError:
                pass
        raise RuleIntegrityError(f"Unknown confirmation mode {value!r}")


class ObligationState(Enum):
    SCHEDULED = "SCHEDULED"
    DUE = "DUE"
    SUSPENDED = "SUSPENDED"
    TERMINAL = "TERMINAL"


def _as_date(value, field_name: str, required: bool = True) -> Optional[date]:
    if value is None:
        if required:
            raise RuleIntegrityError(f"Missing {field_name}")
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    if isinstance(value, str):
        try:
            return date.fromisoformat(value.strip())
        except ValueError:
            pass
    raise RuleIntegrityError(f"Malformed {field_name}: {value!r}")


def _as_count(value, field_name: str) -> Optional[int]:
    if value is None:
        return None
    try:
        count = int(value)
    except (TypeError, ValueError):
        raise RuleIntegrityError(f"Malformed {field_name}: {value!r}") from None
    if count < 0:
        raise RuleIntegrityError(f"{field_name} must not be negative, got {count}")
    return count


@dataclass(frozen=True)
class RecurrenceRule:
    frequency: Frequency
    anchor: Optional[date]
    start_date: date
    end_date: Optional[date] = None
    repeat_count: Optional[int] = None
    remaining_repeats: Optional[int] = None

    def __post_init__(self) -> None:
        # Normalise loosely typed input once, at the boundary.
        object.__setattr__(self, "frequency", Frequency.parse(self.frequency))
        object.__setattr__(self, "start_date", _as_date(self.start_date, "start_date"))
        object.__setattr__(self, "anchor", _as_date(self.anchor, "anchor", required=False))
        object.__setattr__(self, "end_date", _as_date(self.end_date, "end_date", required=False))
        object.__setattr__(self, "repeat_count", _as_count(self.repeat_count, "repeat_count"))
        object.__setattr__(
            self, "remaining_repeats", _as_count(self.remaining_repeats, "remaining_repeats")
        )

        if self.end_date is not None and self.start_date > self.end_date:
            raise RuleIntegrityError(
                f"start_date {self.start_date} is after end_date {self.end_date}"
            )
        if self.anchor is not None and self.anchor < self.start_date:
            raise RuleIntegrityError(
                f"anchor {self.anchor} is before start_date {self.start_date}"
            )
        if self.repeat_count is not None and self.repeat_count == 0:
            raise RuleIntegrityError("repeat_count must be at least 1")
        if (
            self.repeat_count is not None
            and self.remaining_repeats is not None
            and self.remaining_repeats > self.repeat_count
        ):
            raise RuleIntegrityError(
                f"remaining_repeats {self.remaining_repeats} exceeds "
                f"repeat_count {self.repeat_count}"
            )

    @property
    def intended_day(self) -> int:
        """Day of month that month-based steps aim for."""
        return self.start_date.day

    @property
    def exhausted(self) -> bool:
        if self.anchor is None:
            return True
        if self.remaining_repeats is not None and self.remaining_repeats <= 0:
            return True
        return self.end_date is not None and self.anchor > self.end_date


@dataclass(frozen=True)
class Obligation:
    name: str
    amount: Decimal
    classification: Classification
    rule: RecurrenceRule
    confirmation_mode: ConfirmationMode = ConfirmationMode.MANUAL
    is_active: bool = True
    target_resource_ref: Optional[str] = None
    id: Optional[int] = None
    version: int = 0
    last_failure: Optional[str] = None
    last_failure_on: Optional[date] = None

    def __post_init__(self) -> None:
        try:
            amount = Decimal(str(self.amount))
        except InvalidOperation:
            raise RuleIntegrityError(
                f"Malformed amount {self.amount!r}", self.id
            ) from None
        if not amount.is_finite() or amount < 0:
            raise RuleIntegrityError(
                f"Amount must be a non-negative number, got {self.amount!r}", self.id
            )
        object.__setattr__(self, "amount", amount)
        object.__setattr__(
            self, "classification", Classification.parse(self.classification)
        )
        object.__setattr__(
            self, "confirmation_mode", ConfirmationMode.parse(self.confirmation_mode)
        )

    @property
    def anchor(self) -> Optional[date]:
        return self.rule.anchor

    @property
    def signed_amount(self) -> Decimal:
        return self.amount * self.classification.sign


@dataclass(frozen=True)
class Occurrence:
    date: date
    amount: Decimal
    classification: Classification
    obligation_id: Optional[int] = None
    name: str = ""


@dataclass(frozen=True)
class LedgerEntry:
    obligation_id: int
    occurrence_date: date
    amount: Decimal
    classification: Classification
    target_resource_ref: Optional[str] = None
    description: str = ""

    @classmethod
    def for_occurrence(cls, obligation: Obligation, occurrence_date: date) -> "LedgerEntry":
        return cls(
            obligation_id=obligation.id,
            occurrence_date=occurrence_date,
            amount=obligation.signed_amount,
            classification=obligation.classification,
            target_resource_ref=obligation.target_resource_ref,
            description=obligation.name,
        )


# -----------------------------------------------------------------------------
# Materialization outcomes
# -----------------------------------------------------------------------------

@dataclass(frozen=True)
class Materialized:
    obligation_id: int
    occurrence_date: date
    ledger_entry_id: int
    new_anchor: Optional[date]
    status: str = field(default="materialized", init=False)


@dataclass(frozen=True)
class AwaitingConfirmation:
    obligation_id: int
    occurrence_date: date
    status: str = field(default="awaiting_confirmation", init=False)


@dataclass(frozen=True)
class Failed:
    obligation_id: int
    occurrence_date: date
    reason: str
    new_anchor: Optional[date]
    status: str = field(default="failed", init=False)


@dataclass(frozen=True)
class Skipped:
    obligation_id: int
    occurrence_date: date
    new_anchor: Optional[date]
    status: str = field(default="skipped", init=False)


@dataclass(frozen=True)
class NotDue:
    obligation_id: int
    anchor: Optional[date]
    status: str = field(default="not_due", init=False)


MaterializationResult = Union[Materialized, AwaitingConfirmation, Failed, Skipped, NotDue]
