from __future__ import annotations

from abc import ABC, abstractmethod
from datetime import datetime


class ClockPort(ABC):
    """Port for wall-clock time.

    Relative date ranges ("last 3 months") resolve against it, so tests can pin "now".
    """

    @abstractmethod
    def now(self) -> datetime:
        """Return current UTC datetime."""
        ...
