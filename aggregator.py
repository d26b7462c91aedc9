"""
INFOLOOP v1.0: Aggregator
Counts retained symbols by value. Every `threshold` identical DataTokens
collapse into one aggregate unit.
"""

from collections import Counter

from core import validate_threshold
from symbols import channel_of

DEFAULT_AGGREGATION_THRESHOLD = 9


class Aggregator:
    """Per-value pending counts with threshold-driven emission.

    threshold == 0 disables aggregation: offers are ignored and nothing
    is ever emitted.
    """

    def __init__(self, threshold: int = DEFAULT_AGGREGATION_THRESHOLD):
        self.threshold = validate_threshold("aggregation_threshold", threshold)
        self._pending = Counter()
        self.emitted = Counter()

    @property
    def enabled(self) -> bool:
        return self.threshold > 0

    def _emission(self, value: str) -> dict:
        self._pending[value] -= self.threshold
        if self._pending[value] == 0:
            del self._pending[value]
        self.emitted[value] += 1
        return {
            "value": value,
            "channel": channel_of(value),
            "threshold": self.threshold,
            "pending_after": self._pending.get(value, 0),
            "delta": {"data": -self.threshold, "aggregate": 1},
        }

    def offer(self, value: str) -> dict | None:
        """Count one DataToken of `value`; return an emission when the group fills."""
        if not self.enabled:
            return None
        channel_of(value)  # UnknownSymbol for values outside the registry
        self._pending[value] += 1
        if self._pending[value] >= self.threshold:
            return self._emission(value)
        return None

    def drain(self) -> list[dict]:
        """Emit every group already at or above the threshold.

        Needed after the threshold is lowered at runtime.
        """
        if not self.enabled:
            return []
        events = []
        for value in sorted(self._pending):
            while self._pending.get(value, 0) >= self.threshold:
                events.append(self._emission(value))
        return events

    def refund(self, value: str, count: int) -> None:
        """Give back counts taken by an emission that could not be stored."""
        if count <= 0:
            return
        self._pending[value] += count
        if self.emitted[value] > 0:
            self.emitted[value] -= 1

    def resync(self, value: str, count: int) -> None:
        """Overwrite the pending count for `value` with what the buffer really holds."""
        if count > 0:
            self._pending[value] = count
        else:
            self._pending.pop(value, None)

    def discard(self, value: str, count: int = 1) -> None:
        """Drop pending counts for records that left the buffer without aggregating."""
        self.resync(value, self._pending.get(value, 0) - count)

    def pending(self, value: str | None = None):
        if value is None:
            return dict(self._pending)
        return self._pending.get(value, 0)

    def set_threshold(self, threshold: int) -> int:
        self.threshold = validate_threshold("aggregation_threshold", threshold)
        return self.threshold

    def reset(self) -> None:
        self._pending.clear()
        self.emitted.clear()

    def stats(self) -> dict:
        return {
            "threshold": self.threshold,
            "enabled": self.enabled,
            "pending": dict(self._pending),
            "emitted": dict(self.emitted),
            "total_emitted": sum(self.emitted.values()),
        }
