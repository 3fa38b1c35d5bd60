# obligation_tracker/store/base.py
from abc import ABC, abstractmethod
from contextlib import contextmanager
from typing import List, NamedTuple, Tuple

from obligation_tracker.core.errors import RuleIntegrityError


class Listing(NamedTuple):
    """Obligations that loaded cleanly plus the rows that failed integrity checks."""
    obligations: list
    rejected: List[Tuple[int, RuleIntegrityError]]


class ObligationStore(ABC):
    @abstractmethod
    def add(self, obligation):
        """Persist a new obligation and return it with its id assigned."""

    @abstractmethod
    def get(self, obligation_id):
        """Return the obligation or raise ObligationNotFoundError.

        Raises RuleIntegrityError when the stored rule cannot be interpreted.
        """

    @abstractmethod
    def list_all(self) -> Listing:
        """Every stored obligation, active or not."""

    @abstractmethod
    def list_active(self) -> Listing:
        pass

    @abstractmethod
    def list_due(self, now) -> Listing:
        """Active, non-terminal obligations whose anchor is on or before *now*."""

    @abstractmethod
    def set_active(self, obligation_id, is_active):
        pass

    @abstractmethod
    def compare_and_swap(self, obligation, expected_version):
        """Write *obligation* only if the stored version equals *expected_version*.

        Every field except ``is_active`` is written. The stored version becomes
        ``expected_version + 1``. Raises ConcurrentModificationError when another
        writer got there first.
        """

    @abstractmethod
    def delete(self, obligation_id):
        """Remove the obligation or raise ObligationNotFoundError."""

    @contextmanager
    def atomic(self):
        """Group writes into one transaction. The default is no grouping."""
        yield self


class LedgerSink(ABC):
    @abstractmethod
    def resolve_resource(self, ref) -> bool:
        """Return whether *ref* names a resource that can receive entries.

        A ``None`` reference means no resource and is valid.
        """

    @abstractmethod
    def append(self, entry):
        """Record a ledger entry and return its id.

        Idempotent on ``(obligation_id, occurrence_date)``: appending the same
        occurrence twice returns the existing id.
        """
