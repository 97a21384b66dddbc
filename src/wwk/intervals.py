"""Half-open time intervals in UTC microseconds."""

from __future__ import annotations

from pydantic import BaseModel, ConfigDict


class Interval(BaseModel):
    """Half-open interval ``[start_us, end_us)``.

    An interval is empty when ``end_us <= start_us``. Empty intervals are
    representable so callers can build them freely and filter with
    :attr:`is_empty`.
    """

    model_config = ConfigDict(frozen=True)

    start_us: int
    end_us: int

    @classmethod
    def of(cls, start_us: int, end_us: int) -> Interval:
        return cls(start_us=start_us, end_us=end_us)

    @property
    def is_empty(self) -> bool:
        return self.end_us <= self.start_us

    @property
    def duration_us(self) -> int:
        return max(0, self.end_us - self.start_us)

    def contains(self, ts_us: int) -> bool:
        return self.start_us <= ts_us < self.end_us

    def overlaps(self, other: Interval) -> bool:
        return self.start_us < other.end_us and other.start_us < self.end_us

    def intersect(self, other: Interval) -> Interval | None:
        """Return the common part, or None when it would be empty."""
        start = max(self.start_us, other.start_us)
        end = min(self.end_us, other.end_us)
        if start < end:
            return Interval(start_us=start, end_us=end)
        return None

    def subtract(self, other: Interval) -> list[Interval]:
        """Remove ``other`` from this interval.

        Returns 0, 1 or 2 pieces: the part left of ``other`` and the part
        right of it, in that order.
        """
        if not self.overlaps(other):
            return [self]

        pieces: list[Interval] = []
        if self.start_us < other.start_us:
            pieces.append(Interval(start_us=self.start_us, end_us=other.start_us))
        if self.end_us > other.end_us:
            pieces.append(Interval(start_us=other.end_us, end_us=self.end_us))
        return pieces

    def sort_key(self) -> tuple[int, int]:
        return (self.start_us, self.end_us)


def subtract_all(intervals: list[Interval], removed: Interval) -> list[Interval]:
    """Subtract ``removed`` from every interval, dropping empty results."""
    result: list[Interval] = []
    for interval in intervals:
        result.extend(piece for piece in interval.subtract(removed) if not piece.is_empty)
    return result
