import yaml

from obligation_tracker.core.errors import RuleIntegrityError
from obligation_tracker.core.models import Obligation, RecurrenceRule


def _entry_to_obligation(entry):
    if not isinstance(entry, dict):
        raise RuleIntegrityError(f"Planned entry must be a mapping: {entry!r}")
    start_date = entry.get('start_date')
    if not start_date:
        raise RuleIntegrityError(f"Missing 'start_date' in planned entry: {entry}")
    if 'frequency' not in entry:
        raise RuleIntegrityError(f"Missing 'frequency' in planned entry: {entry}")
    if 'classification' not in entry:
        raise RuleIntegrityError(f"Missing 'classification' in planned entry: {entry}")

    repeat_count = entry.get('repeat_count')
    rule = RecurrenceRule(
        frequency=entry['frequency'],
        anchor=start_date,
        start_date=start_date,
        end_date=entry.get('end_date'),
        repeat_count=repeat_count,
        remaining_repeats=repeat_count,
    )
    account = entry.get('account')
    return Obligation(
        name=str(entry.get('name', '')),
        amount=entry.get('amount', 0),
        classification=entry['classification'],
        rule=rule,
        confirmation_mode=entry.get('confirmation_mode', 'MANUAL'),
        is_active=bool(entry.get('is_active', True)),
        target_resource_ref=str(account) if account is not None else None,
    )


def load_planned_obligations(path):
    """Load planned obligations from a YAML file.

    New obligations start with their anchor on ``start_date``. YAML dates may
    arrive as ``date`` objects or strings; both are accepted.
    """
    with open(path) as f:
        data = yaml.safe_load(f) or []
    if not isinstance(data, list):
        raise RuleIntegrityError(f"{path} must contain a list of planned entries")
    return [_entry_to_obligation(entry) for entry in data]
