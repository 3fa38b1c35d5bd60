# obligation_tracker/core/errors.py


class ObligationError(Exception):
    """Base class for scheduler errors."""


class RuleIntegrityError(ObligationError, ValueError):
    """A stored or submitted recurrence rule cannot be interpreted."""

    def __init__(self, message, obligation_id=None):
        super().__init__(message)
        self.obligation_id = obligation_id


class ResourceUnavailableError(ObligationError):
    """The resource an obligation posts to is missing or inactive."""

    def __init__(self, ref, reason="inactive or unknown"):
        super().__init__(f"Resource {ref!r} unavailable: {reason}")
        self.ref = ref
        self.reason = reason


class ConcurrentModificationError(ObligationError):
    """Another writer advanced the obligation first."""

    def __init__(self, obligation_id, expected_version):
        super().__init__(
            f"Obligation {obligation_id} changed since version {expected_version}"
        )
        self.obligation_id = obligation_id
        self.expected_version = expected_version


class ObligationNotFoundError(ObligationError, LookupError):
    pass


class StoreUnavailableError(ObligationError):
    """The store or sink could not be reached at all."""


class TruncatedEnumerationWarning(UserWarning):
    """Enumeration stopped at the step cap before reaching its logical end."""
