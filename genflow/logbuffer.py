from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional


def iso_now() -> str:
    """UTC timestamp in the `2024-01-01T12:00:00.000Z` form browsers emit."""
    return datetime.now(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


@dataclass(frozen=True)
class LogEntry:
    message: str
    timestamp: str
    category: str = "info"

    @classmethod
    def now(cls, message: str, category: str = "info") -> "LogEntry":
        return cls(message=message, timestamp=iso_now(), category=category)

    def to_dict(self) -> Dict[str, Any]:
        # the polling client reads the category as "type"
        return {"message": self.message, "timestamp": self.timestamp, "type": self.category}


class LogBuffer:
    """Append-only entry list with drop-oldest compaction.

    Once an append pushes the length past `high_water`, only the newest
    `low_water` entries are kept, so memory follows a sawtooth between the two
    marks rather than staying at a fixed size.
    """

    def __init__(self, high_water: int = 1000, low_water: int = 500):
        if low_water < 0 or low_water > high_water:
            raise ValueError("low_water must be between 0 and high_water")
        self.high_water = high_water
        self.low_water = low_water
        self._entries: List[LogEntry] = []

    def __len__(self) -> int:
        return len(self._entries)

    def append(self, entry: LogEntry) -> None:
        self._entries.append(entry)
        if len(self._entries) > self.high_water:
            self._entries = self._entries[len(self._entries) - self.low_water:]

    def snapshot(self, limit: Optional[int] = None) -> List[LogEntry]:
        if limit is None:
            return list(self._entries)
        if limit <= 0:
            return []
        return self._entries[-limit:]

    def to_dicts(self, limit: Optional[int] = None) -> List[Dict[str, Any]]:
        return [e.to_dict() for e in self.snapshot(limit)]

    def clear(self) -> None:
        self._entries = []
