# obligation_tracker/store/__init__.py
from obligation_tracker.utils import load_class


def get_backend(config):
    return load_class(config['backend']).from_config(config)
