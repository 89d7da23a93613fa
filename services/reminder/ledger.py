"""
services/reminder/ledger.py
Remembers which (session or request, window) pairs were already notified.
"""

from datetime import datetime
from enum import Enum
from typing import Optional, Set, Tuple
from uuid import UUID


class WindowKind(str, Enum):
    H24 = "24H"
    H1 = "1H"
    PAYMENT_5M = "PAYMENT_5M"


class ReminderLedger:
    """
    Process-local set of notified keys, cleared wholesale on an interval.
    Safe without a TTL per key because no id re-enters the same window
    within a day.
    """

    def __init__(self):
        self._sent: Set[Tuple[str, WindowKind]] = set()
        self.cleared_at: Optional[datetime] = None

    def has(self, entity_id: UUID, kind: WindowKind) -> bool:
        return (str(entity_id), kind) in self._sent

    def claim(self, entity_id: UUID, kind: WindowKind) -> bool:
        """Take the key before sending. False when another scan already holds it."""
        key = (str(entity_id), kind)
        if key in self._sent:
            return False
        self._sent.add(key)
        return True

    def release(self, entity_id: UUID, kind: WindowKind) -> None:
        """Give a claimed key back so a later scan can retry the window."""
        self._sent.discard((str(entity_id), kind))

    def clear(self, at: Optional[datetime] = None) -> int:
        dropped = len(self._sent)
        self._sent.clear()
        self.cleared_at = at
        return dropped

    def __len__(self) -> int:
        return len(self._sent)

    def __contains__(self, key: Tuple[UUID, WindowKind]) -> bool:
        entity_id, kind = key
        return self.has(entity_id, kind)
