# obligation_tracker/outputs/base.py
from abc import ABC, abstractmethod

class BaseOutput(ABC):
    @abstractmethod
    def write(self, occurrences, period_start, period_end):
        """Write a schedule of occurrences to the chosen target; return its location."""
        pass
