import sqlite3
import threading
from datetime import date
from decimal import Decimal

import pytest

from obligation_tracker.core.errors import ConcurrentModificationError, RuleIntegrityError
from obligation_tracker.core.models import (
    AwaitingConfirmation,
    Failed,
    Materialized,
    NotDue,
    ObligationState,
    Skipped,
)
from obligation_tracker.engine import MaterializationEngine, evaluate


def _seed(scheduler, backend, make_obligation, account_active=True, **kwargs):
    backend.add_account("acc", "Checking", is_active=account_active)
    kwargs.setdefault("account", "acc")
    return scheduler.create(make_obligation(**kwargs))


def test_evaluate_states(make_obligation):
    rent = make_obligation(start=date(2025, 1, 31))
    assert evaluate(rent, date(2025, 1, 30)) is ObligationState.SCHEDULED
    assert evaluate(rent, date(2025, 1, 31)) is ObligationState.DUE
    inactive = make_obligation(is_active=False)
    assert evaluate(inactive, date(2025, 2, 1)) is ObligationState.TERMINAL


def test_automatic_obligation_materializes_and_advances(scheduler, backend, make_obligation):
    rent = _seed(scheduler, backend, make_obligation)

    result = scheduler.materialize_due(rent.id, date(2025, 2, 1))

    assert isinstance(result, Materialized)
    assert result.occurrence_date == date(2025, 1, 31)
    assert result.new_anchor == date(2025, 2, 28)
    entries = backend.fetch_ledger_entries(obligation_id=rent.id)
    assert len(entries) == 1
    assert entries[0]["id"] == result.ledger_entry_id
    assert entries[0]["amount"] == Decimal("-50")
    assert entries[0]["account_id"] == "acc"
    stored = backend.get(rent.id)
    assert stored.anchor == date(2025, 2, 28)
    assert stored.version == 1


def test_retry_after_success_is_a_no_op(scheduler, backend, make_obligation):
    rent = _seed(scheduler, backend, make_obligation)
    scheduler.materialize_due(rent.id, date(2025, 2, 1))

    again = scheduler.materialize_due(rent.id, date(2025, 2, 1))

    assert isinstance(again, NotDue)
    assert len(backend.fetch_ledger_entries()) == 1
    assert backend.get(rent.id).version == 1


def test_manual_obligation_waits_for_confirmation(scheduler, backend, make_obligation):
    rent = _seed(scheduler, backend, make_obligation, mode="MANUAL")

    result = scheduler.materialize_due(rent.id, date(2025, 2, 1))

    assert result == AwaitingConfirmation(rent.id, date(2025, 1, 31))
    stored = backend.get(rent.id)
    assert stored.anchor == date(2025, 1, 31)
    assert stored.version == 0
    assert backend.fetch_ledger_entries() == []

    confirmed = scheduler.confirm(rent.id, date(2025, 2, 1))

    assert isinstance(confirmed, Materialized)
    assert backend.get(rent.id).anchor == date(2025, 2, 28)
    assert backend.get(rent.id).version == 1
    assert len(backend.fetch_ledger_entries()) == 1


def test_skip_advances_without_ledger_write(scheduler, backend, make_obligation):
    rent = _seed(scheduler, backend, make_obligation, mode="MANUAL")

    result = scheduler.skip(rent.id, date(2025, 2, 1))

    assert result == Skipped(rent.id, date(2025, 1, 31), date(2025, 2, 28))
    assert backend.fetch_ledger_entries() == []
    assert backend.get(rent.id).version == 1
    assert isinstance(scheduler.skip(rent.id, date(2025, 2, 1)), NotDue)


def test_failure_still_advances_the_anchor(scheduler, backend, make_obligation):
    rent = _seed(scheduler, backend, make_obligation, account_active=False)

    result = scheduler.materialize_due(rent.id, date(2025, 2, 1))

    assert isinstance(result, Failed)
    assert result.new_anchor == date(2025, 2, 28)
    stored = backend.get(rent.id)
    assert stored.anchor == date(2025, 2, 28)
    assert stored.last_failure_on == date(2025, 1, 31)
    assert "acc" in stored.last_failure
    assert backend.fetch_ledger_entries() == []

    # the same occurrence is never attempted again
    assert isinstance(scheduler.materialize_due(rent.id, date(2025, 2, 1)), NotDue)
    assert scheduler.run_due(date(2025, 2, 1)).results == []


def test_unknown_account_fails(scheduler, backend, make_obligation):
    rent = scheduler.create(make_obligation(account="nope"))
    result = scheduler.materialize_due(rent.id, date(2025, 2, 1))
    assert isinstance(result, Failed)


def test_missing_resource_reference_is_allowed(scheduler, backend, make_obligation):
    rent = scheduler.create(make_obligation(account=None))
    result = scheduler.materialize_due(rent.id, date(2025, 2, 1))
    assert isinstance(result, Materialized)


def test_confirm_resumes_a_suspended_obligation(scheduler, backend, make_obligation):
    rent = _seed(scheduler, backend, make_obligation, account_active=False)
    scheduler.materialize_due(rent.id, date(2025, 3, 1))
    backend.set_account_active("acc", True)

    # flagged: automatic processing waits for an explicit confirm
    assert scheduler.materialize_due(rent.id, date(2025, 3, 1)) == AwaitingConfirmation(
        rent.id, date(2025, 2, 28)
    )
    result = scheduler.confirm(rent.id, date(2025, 3, 1))

    assert isinstance(result, Materialized)
    assert result.occurrence_date == date(2025, 2, 28)
    assert backend.get(rent.id).last_failure is None


def test_one_time_obligation_becomes_terminal(scheduler, backend, make_obligation):
    fee = _seed(scheduler, backend, make_obligation, frequency="ONE_TIME", start=date(2025, 3, 3))

    result = scheduler.materialize_due(fee.id, date(2025, 3, 3))

    assert isinstance(result, Materialized)
    assert result.new_anchor is None
    stored = backend.get(fee.id)
    assert evaluate(stored, date(2030, 1, 1)) is ObligationState.TERMINAL
    assert scheduler.list_due(date(2030, 1, 1)) == []


def test_sweep_catches_up_until_repeats_run_out(scheduler, backend, make_obligation):
    lessons = _seed(
        scheduler, backend, make_obligation,
        frequency="WEEKLY", start=date(2025, 1, 6), repeat_count=2,
    )

    report = scheduler.run_due(date(2025, 6, 1))

    assert report.materialized == 2
    assert [r.occurrence_date for r in report.results] == [date(2025, 1, 6), date(2025, 1, 13)]
    stored = backend.get(lessons.id)
    assert stored.rule.remaining_repeats == 0
    assert stored.rule.exhausted
    assert scheduler.run_due(date(2025, 7, 1)).results == []


def test_sweep_respects_end_date(scheduler, backend, make_obligation):
    _seed(scheduler, backend, make_obligation, end=date(2025, 3, 31))

    report = scheduler.run_due(date(2025, 12, 31))

    assert [r.occurrence_date for r in report.results] == [
        date(2025, 1, 31), date(2025, 2, 28), date(2025, 3, 31),
    ]
    assert scheduler.list_due(date(2025, 12, 31)) == []


def test_sweep_catch_up_is_bounded(backend, make_obligation):
    backend.add_account("acc", "Checking")
    coffee = backend.add(make_obligation(frequency="DAILY", start=date(2025, 1, 1), account="acc"))
    engine = MaterializationEngine(backend, backend, max_catch_up=10)

    report = engine.run_due(date(2025, 3, 1))

    assert report.materialized == 10
    assert backend.get(coffee.id).anchor == date(2025, 1, 11)


def test_sweep_leaves_manual_obligations_untouched(scheduler, backend, make_obligation):
    rent = _seed(scheduler, backend, make_obligation, mode="MANUAL")

    report = scheduler.run_due(date(2025, 5, 1))

    assert report.awaiting == 1
    assert report.materialized == 0
    assert backend.get(rent.id).version == 0


def test_one_corrupt_rule_does_not_abort_the_sweep(scheduler, backend, make_obligation):
    broken = _seed(scheduler, backend, make_obligation, name="Broken")
    rent = _seed(scheduler, backend, make_obligation)
    conn = sqlite3.connect(backend.db_path)
    conn.execute("UPDATE obligations SET frequency = 'BIWEEKLY' WHERE id = ?", (broken.id,))
    conn.commit()
    conn.close()

    report = scheduler.run_due(date(2025, 2, 1))

    assert broken.id in report.rejected
    assert "BIWEEKLY" in report.rejected[broken.id]
    assert [r.obligation_id for r in report.results] == [rent.id]


def test_stale_snapshot_loses_compare_and_swap(backend, make_obligation):
    backend.add_account("acc", "Checking")
    rent = backend.add(make_obligation(account="acc"))
    engine = MaterializationEngine(backend, backend)
    snapshot = backend.get(rent.id)

    first = engine.process(snapshot, date(2025, 2, 1))
    with pytest.raises(ConcurrentModificationError):
        engine.process(snapshot, date(2025, 2, 1))

    assert isinstance(first, Materialized)
    assert len(backend.fetch_ledger_entries()) == 1
    assert backend.get(rent.id).version == 1


def test_lost_race_rolls_back_its_ledger_write(backend, make_obligation):
    backend.add_account("acc", "Checking")
    rent = backend.add(make_obligation(account="acc"))
    engine = MaterializationEngine(backend, backend)
    snapshot = backend.get(rent.id)
    backend.set_active(rent.id, True)  # bumps the version underneath the snapshot

    with pytest.raises(ConcurrentModificationError):
        engine.process(snapshot, date(2025, 2, 1))

    assert backend.fetch_ledger_entries() == []
    assert backend.get(rent.id).anchor == date(2025, 1, 31)


def test_concurrent_materialization_happens_once(scheduler, backend, make_obligation):
    rent = _seed(scheduler, backend, make_obligation)
    barrier = threading.Barrier(2)
    outcomes = []

    def worker():
        barrier.wait()
        try:
            outcomes.append(scheduler.materialize_due(rent.id, date(2025, 2, 1)))
        except ConcurrentModificationError as exc:
            outcomes.append(exc)

    threads = [threading.Thread(target=worker) for _ in range(2)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert sum(isinstance(o, Materialized) for o in outcomes) == 1
    assert all(isinstance(o, (Materialized, NotDue, ConcurrentModificationError)) for o in outcomes)
    assert len(backend.fetch_ledger_entries()) == 1
    stored = backend.get(rent.id)
    assert stored.version == 1
    assert stored.anchor == date(2025, 2, 28)


@pytest.mark.parametrize(
    "error", [LookupError("account service down"), TimeoutError("lookup timed out")]
)
def test_resource_lookup_errors_fail_the_occurrence(
    scheduler, backend, make_obligation, monkeypatch, error
):
    rent = _seed(scheduler, backend, make_obligation)

    def broken_lookup(ref):
        raise error

    monkeypatch.setattr(backend, "resolve_resource", broken_lookup)

    result = scheduler.materialize_due(rent.id, date(2025, 2, 1))

    assert isinstance(result, Failed)
    assert result.new_anchor == date(2025, 2, 28)
    assert str(error) in result.reason
    stored = backend.get(rent.id)
    assert stored.anchor == date(2025, 2, 28)
    assert stored.last_failure_on == date(2025, 1, 31)
    assert backend.fetch_ledger_entries() == []


def test_lookup_error_does_not_abort_the_sweep(scheduler, backend, make_obligation, monkeypatch):
    backend.add_account("acc", "Checking")
    flaky = scheduler.create(make_obligation(name="Flaky", account="flaky"))
    rent = scheduler.create(make_obligation(account="acc"))
    real_lookup = backend.resolve_resource

    def lookup(ref):
        if ref == "flaky":
            raise TimeoutError("lookup timed out")
        return real_lookup(ref)

    monkeypatch.setattr(backend, "resolve_resource", lookup)

    first = scheduler.run_due(date(2025, 2, 1))
    assert first.failed == 1
    assert first.materialized == 1

    second = scheduler.run_due(date(2025, 3, 1))
    assert second.results == [
        AwaitingConfirmation(flaky.id, date(2025, 2, 28)),
        Materialized(rent.id, date(2025, 2, 28), second.results[1].ledger_entry_id,
                     date(2025, 3, 31)),
    ]
    assert len(backend.fetch_ledger_entries(obligation_id=rent.id)) == 2
    assert backend.fetch_ledger_entries(obligation_id=flaky.id) == []


def test_failure_suspends_instead_of_draining_the_backlog(scheduler, backend, make_obligation):
    coffee = _seed(
        scheduler, backend, make_obligation,
        account_active=False, frequency="DAILY", start=date(2025, 1, 1),
    )

    report = scheduler.run_due(date(2025, 1, 31))

    assert report.failed == 1
    assert len(report.results) == 1
    stored = backend.get(coffee.id)
    assert stored.anchor == date(2025, 1, 2)
    assert evaluate(stored, date(2025, 1, 31)) is ObligationState.SUSPENDED

    again = scheduler.run_due(date(2025, 1, 31))
    assert again.failed == 0
    assert again.awaiting == 1
    assert backend.get(coffee.id).anchor == date(2025, 1, 2)

    backend.set_account_active("acc", True)
    assert isinstance(scheduler.confirm(coffee.id, date(2025, 1, 31)), Materialized)
    catch_up = scheduler.run_due(date(2025, 1, 31))
    assert catch_up.materialized == 29
    assert len(backend.fetch_ledger_entries()) == 30


def test_skip_and_reactivation_lift_the_suspension(scheduler, backend, make_obligation):
    rent = _seed(scheduler, backend, make_obligation, account_active=False)
    scheduler.materialize_due(rent.id, date(2025, 4, 1))
    assert evaluate(backend.get(rent.id), date(2025, 4, 1)) is ObligationState.SUSPENDED

    skipped = scheduler.skip(rent.id, date(2025, 4, 1))
    assert skipped == Skipped(rent.id, date(2025, 2, 28), date(2025, 3, 31))
    assert evaluate(backend.get(rent.id), date(2025, 4, 1)) is ObligationState.DUE

    scheduler.materialize_due(rent.id, date(2025, 4, 1))
    assert backend.get(rent.id).last_failure is not None
    scheduler.set_active(rent.id, False)
    scheduler.set_active(rent.id, True)
    stored = backend.get(rent.id)
    assert stored.last_failure is None
    assert evaluate(stored, date(2025, 5, 1)) is ObligationState.DUE


def test_occurrences_before_start_date_are_never_posted(scheduler, backend, make_obligation):
    rent = _seed(scheduler, backend, make_obligation, start=date(2025, 2, 15))
    conn = sqlite3.connect(backend.db_path)
    conn.execute("UPDATE obligations SET anchor = '2025-01-15' WHERE id = ?", (rent.id,))
    conn.commit()
    conn.close()

    with pytest.raises(RuleIntegrityError, match="before start_date"):
        scheduler.materialize_due(rent.id, date(2025, 1, 20))
    report = scheduler.run_due(date(2025, 1, 20))
    assert rent.id in report.rejected
    assert backend.fetch_ledger_entries() == []
