# obligation_tracker/outputs/__init__.py
from obligation_tracker.utils import load_class


def get_output(name, config):
    """Instantiate the output registered under *name* in ``output_modules``."""
    modules = config.get('output_modules') or {}
    if name not in modules:
        raise ValueError(f"Unknown output '{name}', expected one of {sorted(modules)}")
    return load_class(modules[name])(config)
