from calendar import monthrange
from datetime import date, datetime
from importlib import import_module


def month_bounds(month_str):
    """
    Return the first and last day of the given YYYY-MM.
    """
    try:
        year, month = map(int, month_str.split('-'))
        return date(year, month, 1), date(year, month, monthrange(year, month)[1])
    except (ValueError, AttributeError):
        raise ValueError(f"Invalid month '{month_str}', expected YYYY-MM") from None


def as_day(value):
    """
    Normalise *value* (date, datetime, ISO string or None for today) to a date.
    """
    if value is None:
        return date.today()
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    return date.fromisoformat(value)


def load_class(dotted_path):
    module_name, cls_name = dotted_path.rsplit('.', 1)
    return getattr(import_module(module_name), cls_name)
