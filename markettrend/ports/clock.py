"""Clock Port Interface.

Contract: Provides the current UTC timestamp used to stamp received batches.
"""

from __future__ import annotations

from datetime import datetime
from typing import Protocol


class Clock(Protocol):
    def now(self) -> datetime:
        """Return current UTC time (datetime, tz-aware)."""
        ...
