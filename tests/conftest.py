from datetime import date

import pytest

from obligation_tracker.core.models import Obligation, RecurrenceRule
from obligation_tracker.database import SQLiteBackend
from obligation_tracker.scheduler import ObligationScheduler


@pytest.fixture
def backend(tmp_path):
    return SQLiteBackend(str(tmp_path / "obligations.db"))


@pytest.fixture
def scheduler(backend):
    return ObligationScheduler(backend)


@pytest.fixture
def make_obligation():
    def _make(
        frequency="MONTHLY",
        start=date(2025, 1, 31),
        amount="50",
        classification="EXPENSE",
        mode="AUTOMATIC",
        account=None,
        end=None,
        repeat_count=None,
        anchor=None,
        name="Rent",
        is_active=True,
    ):
        rule = RecurrenceRule(
            frequency=frequency,
            anchor=anchor or start,
            start_date=start,
            end_date=end,
            repeat_count=repeat_count,
            remaining_repeats=repeat_count,
        )
        return Obligation(
            name=name,
            amount=amount,
            classification=classification,
            rule=rule,
            confirmation_mode=mode,
            is_active=is_active,
            target_resource_ref=account,
        )

    return _make
