"""Time helper utilities."""
from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone

DAY_MS = 86_400_000


def now_utc() -> datetime:
    return datetime.now(timezone.utc)


def now_ms() -> int:
    return int(now_utc().timestamp() * 1000)


def from_ms(ts_ms: int) -> datetime:
    return datetime.fromtimestamp(ts_ms / 1000.0, tz=timezone.utc)


def format_ms(ts_ms: int | None) -> str:
    if ts_ms is None:
        return "-"
    return from_ms(int(ts_ms)).isoformat()


@dataclass(frozen=True, slots=True)
class TimeRange:
    """Closed millisecond range ``[start, end]``."""

    start: int
    end: int

    def __post_init__(self) -> None:
        if self.end < self.start:
            raise ValueError(f"TimeRange end {self.end} precedes start {self.start}")

    @classmethod
    def from_seconds(cls, start_s: float, end_s: float) -> "TimeRange":
        start = int(min(start_s, end_s) * 1000)
        end = int(max(start_s, end_s) * 1000)
        return cls(start, end)

    @property
    def duration(self) -> int:
        return self.end - self.start

    def contains(self, other: "TimeRange") -> bool:
        return self.start <= other.start and other.end <= self.end

    def contains_point(self, ts_ms: int) -> bool:
        return self.start <= ts_ms <= self.end

    def overlap(self, other: "TimeRange") -> int:
        """Length of the intersection in milliseconds (0 when disjoint)."""

        return max(0, min(self.end, other.end) - max(self.start, other.start))

    def union(self, other: "TimeRange") -> "TimeRange":
        return TimeRange(min(self.start, other.start), max(self.end, other.end))

    def __str__(self) -> str:
        return f"[{format_ms(self.start)} .. {format_ms(self.end)}]"
