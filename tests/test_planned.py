from datetime import date
from decimal import Decimal

import pytest
import yaml

from obligation_tracker.core.errors import RuleIntegrityError
from obligation_tracker.core.models import Classification, ConfirmationMode, Frequency
from obligation_tracker.planned import load_planned_obligations


def _write(tmp_path, data):
    path = tmp_path / "planned.yaml"
    path.write_text(yaml.safe_dump(data))
    return path


def test_load_planned_obligations(tmp_path):
    path = tmp_path / "planned.yaml"
    path.write_text(
        "- name: Rent\n"
        "  amount: 1200.50\n"
        "  classification: expense\n"
        "  frequency: monthly\n"
        "  start_date: 2025-01-31\n"
        "  end_date: 2025-12-31\n"
        "  account: 42\n"
        "- name: Course\n"
        "  amount: 300\n"
        "  classification: debt\n"
        "  frequency: QUARTERLY\n"
        "  start_date: 2025-02-01\n"
        "  repeat_count: 4\n"
        "  confirmation_mode: automatic\n"
    )

    rent, course = load_planned_obligations(path)

    assert rent.name == "Rent"
    assert rent.amount == Decimal("1200.5")
    assert rent.classification is Classification.EXPENSE
    assert rent.confirmation_mode is ConfirmationMode.MANUAL
    assert rent.rule.frequency is Frequency.MONTHLY
    assert rent.anchor == date(2025, 1, 31)
    assert rent.rule.end_date == date(2025, 12, 31)
    assert rent.target_resource_ref == "42"

    assert course.confirmation_mode is ConfirmationMode.AUTOMATIC
    assert course.rule.repeat_count == 4
    assert course.rule.remaining_repeats == 4
    assert course.target_resource_ref is None


def test_empty_file_yields_nothing(tmp_path):
    path = tmp_path / "planned.yaml"
    path.write_text("")
    assert load_planned_obligations(path) == []


@pytest.mark.parametrize(
    "entry, message",
    [
        ({"name": "x", "amount": 1, "classification": "expense", "frequency": "monthly"},
         "start_date"),
        ({"name": "x", "amount": 1, "classification": "expense", "start_date": "2025-01-01"},
         "frequency"),
        ({"name": "x", "amount": 1, "frequency": "monthly", "start_date": "2025-01-01"},
         "classification"),
        ({"name": "x", "amount": -1, "classification": "expense", "frequency": "monthly",
          "start_date": "2025-01-01"}, "non-negative"),
        ({"name": "x", "amount": 1, "classification": "gift", "frequency": "monthly",
          "start_date": "2025-01-01"}, "Unknown classification"),
    ],
)
def test_invalid_entries_are_rejected(tmp_path, entry, message):
    path = _write(tmp_path, [entry])
    with pytest.raises(RuleIntegrityError, match=message):
        load_planned_obligations(path)


def test_top_level_must_be_a_list(tmp_path):
    path = _write(tmp_path, {"name": "Rent"})
    with pytest.raises(RuleIntegrityError, match="list"):
        load_planned_obligations(path)
