"""
INFOLOOP v1.0: Capacity Module
Capacity oracles, the channel-length mutator, and the Capacity Manager
that gates every admission against total and per-channel ceilings.
Read-fresh. Never truncates.
"""

from collections import Counter, deque

from core import CHANNELS, CapacityExceeded, StopRule, reject_parameter
from state import PipelineState
from symbols import RECORD_TYPES, record_type

# ============================================
# CAPACITY CONSTANTS
# ============================================
DEFAULT_UNITS_PER_LENGTH = 10.0
DEFAULT_CHANNEL_LENGTH = 10.0
MIN_CHANNEL_LENGTH = 1.0
CHANNEL_SHARE = 3  # per-channel capacity = total / 3

# Usage fractions that raise capacity_warning on entry
WARNING_LEVELS = [("high", 0.9), ("medium", 0.7), ("low", 0.5)]
LEVEL_NORMAL = "normal"

DEFAULT_EVENT_HISTORY = 100


def _require_channel(channel: str) -> str:
    if channel not in CHANNELS:
        raise StopRule(
            "unknown_channel", f"No channel {channel!r}", {"channel": channel}
        )
    return channel


class StaticCapacityOracle:
    """Fixed capacity numbers. Channel capacity defaults to total/3."""

    def __init__(self, total: float, channel: float | None = None):
        self.total = total
        self.channel = channel

    def get_total_capacity(self) -> float:
        return self.total

    def get_channel_capacity(self, channel: str) -> float:
        _require_channel(channel)
        if self.channel is not None:
            return self.channel
        return self.total / CHANNEL_SHARE


class ChannelGeometry:
    """Three channel lengths, clamped at MIN_CHANNEL_LENGTH.

    Receives the +/-1 deltas from channel updates; oracles built on it
    change their readings as the lengths move.
    """

    def __init__(self, lengths: dict | None = None):
        lengths = lengths or {}
        self.lengths = {
            channel: max(MIN_CHANNEL_LENGTH, float(lengths.get(channel, DEFAULT_CHANNEL_LENGTH)))
            for channel in CHANNELS
        }
        self.deltas = Counter()

    def apply_delta(self, channel: str, delta: float) -> float:
        _require_channel(channel)
        self.lengths[channel] = max(MIN_CHANNEL_LENGTH, self.lengths[channel] + delta)
        self.deltas[channel] += delta
        return self.lengths[channel]

    def length(self, channel: str) -> float:
        return self.lengths[_require_channel(channel)]

    def total_length(self) -> float:
        return sum(self.lengths.values())

    def set_lengths(self, lengths: dict) -> None:
        for channel, value in lengths.items():
            self.lengths[_require_channel(channel)] = max(MIN_CHANNEL_LENGTH, float(value))

    def stats(self) -> dict:
        return {
            "lengths": dict(self.lengths),
            "total_length": self.total_length(),
            "net_deltas": dict(self.deltas),
        }


class LengthScaledCapacityOracle:
    """Total = units_per_length * sum(lengths); channel = total / 3."""

    def __init__(
        self,
        geometry: ChannelGeometry,
        units_per_length: float = DEFAULT_UNITS_PER_LENGTH,
    ):
        self.geometry = geometry
        self.units_per_length = units_per_length

    def get_total_capacity(self) -> float:
        return self.units_per_length * self.geometry.total_length()

    def get_channel_capacity(self, channel: str) -> float:
        _require_channel(channel)
        return self.get_total_capacity() / CHANNEL_SHARE


class CapacityManager:
    """
    Usage ledger keyed by (type, channel). Capacity is read from the oracle
    at every decision, never cached. Admission past either ceiling is
    refused whole; usage is never partially applied.
    """

    def __init__(
        self,
        oracle,
        state: PipelineState | None = None,
        history: int = DEFAULT_EVENT_HISTORY,
    ):
        self.oracle = oracle
        self.state = state or PipelineState()
        self.usage = Counter()
        self.threshold = None
        self.level = LEVEL_NORMAL
        self.over_capacity = False
        self.rejections = 0
        self.events = deque(maxlen=history)

    # ============================================
    # READS
    # ============================================
    def total_capacity(self) -> float:
        """Custom threshold when set, else the oracle's fresh reading."""
        if self.threshold is not None:
            return self.threshold
        return self.oracle.get_total_capacity()

    def channel_capacity(self, channel: str) -> float:
        return self.oracle.get_channel_capacity(channel)

    def used(self) -> int:
        return sum(self.usage.values())

    def channel_used(self, channel: str) -> int:
        return sum(n for (_, ch), n in self.usage.items() if ch == channel)

    def type_used(self, rtype: str) -> int:
        return sum(n for (t, _), n in self.usage.items() if t == rtype)

    def percentage(self) -> float:
        total = self.total_capacity()
        if total <= 0:
            return 100.0 if self.used() > 0 else 0.0
        return self.used() / total * 100

    def can_admit(self, record: dict) -> bool:
        return self._refusal(record) is None

    def _refusal(self, record: dict) -> dict | None:
        used = self.used()
        total = self.total_capacity()
        if used + 1 > total:
            return {"scope": "total", "used": used, "capacity": total}
        channel = record.get("channel")
        if channel in CHANNELS:
            channel_used = self.channel_used(channel)
            channel_cap = self.channel_capacity(channel)
            if channel_used + 1 > channel_cap:
                return {
                    "scope": "channel",
                    "channel": channel,
                    "used": channel_used,
                    "capacity": channel_cap,
                }
        return None

    # ============================================
    # ADMISSION
    # ============================================
    def _log_event(self, event_type: str, details: dict, persist: bool = False) -> dict:
        event = {
            "capacity": self.used(),
            "max_capacity": self.total_capacity(),
            "percentage": round(self.percentage(), 4),
            **details,
        }
        published = self.state.publish(event_type, event, persist=persist)
        self.events.append(published)
        return published

    def admit(self, record: dict, force: bool = False) -> dict:
        """Charge one unit for the record.

        Args:
            record: Symbol record (type and channel are read)
            force: Skip the ceiling checks (release valve)

        Raises:
            CapacityExceeded: Admission would break the total or channel ceiling
        """
        rtype = record_type(record)
        channel = record.get("channel")

        if not force:
            refusal = self._refusal(record)
            if refusal is not None:
                self.rejections += 1
                self._log_event(
                    "capacity_full",
                    {"record_type": rtype, "channel": channel, **refusal},
                    persist=True,
                )
                raise CapacityExceeded(
                    f"{refusal['scope']} capacity full ({refusal['used']}/{refusal['capacity']})",
                    {"record_type": rtype, "channel": channel, **refusal},
                )

        self.usage[(rtype, channel)] += 1
        self._log_event(
            "data_added", {"record_type": rtype, "channel": channel, "forced": force}
        )
        self._check_level()
        return {"record_type": rtype, "channel": channel, "used": self.used()}

    def release(self, record: dict) -> bool:
        """Return one unit. False when the ledger holds none of that type/channel."""
        key = (record_type(record), record.get("channel"))
        if self.usage.get(key, 0) <= 0:
            return False
        self.usage[key] -= 1
        if self.usage[key] == 0:
            del self.usage[key]
        self._log_event("data_removed", {"record_type": key[0], "channel": key[1]})
        self._check_level()
        return True

    def checkpoint(self) -> Counter:
        """Copy of the per (type, channel) usage, for rolling back a move."""
        return Counter(self.usage)

    def rollback(self, checkpoint: Counter) -> None:
        """Put usage back to a checkpoint. No receipts are written."""
        self.usage = Counter(checkpoint)
        self.level = self._level_for(self.percentage() / 100)

    def _level_for(self, fraction: float) -> str:
        for name, bound in WARNING_LEVELS:
            if fraction >= bound:
                return name
        return LEVEL_NORMAL

    def _check_level(self) -> str:
        level = self._level_for(self.percentage() / 100)
        if level != self.level:
            previous = self.level
            self.level = level
            self._log_event(
                "capacity_warning",
                {"level": level, "previous_level": previous},
                persist=True,
            )
        return self.level

    def revalidate(self) -> dict:
        """Compare usage against fresh capacity readings. Nothing is evicted.

        A capacity_revalidated receipt is written when the over/under state flips.
        """
        total = self.total_capacity()
        used = self.used()
        over_channels = [
            channel
            for channel in CHANNELS
            if self.channel_used(channel) > self.channel_capacity(channel)
        ]
        over = used > total or bool(over_channels)
        result = {
            "used": used,
            "total_capacity": total,
            "over_total": used > total,
            "over_channels": over_channels,
        }
        if over != self.over_capacity:
            self.over_capacity = over
            self._log_event("capacity_revalidated", result, persist=True)
        self._check_level()
        return result

    # ============================================
    # THRESHOLD OVERRIDE
    # ============================================
    def set_threshold(self, value) -> float:
        if isinstance(value, bool) or not isinstance(value, (int, float)):
            raise reject_parameter("capacity_threshold", value, "not a number")
        if value < 0:
            raise reject_parameter("capacity_threshold", value, "cannot be negative")
        if value < self.used():
            raise reject_parameter(
                "capacity_threshold", value, f"below current usage {self.used()}"
            )
        self.threshold = float(value)
        self._log_event("threshold_set", {"value": self.threshold}, persist=True)
        self._check_level()
        return self.threshold

    def clear_threshold(self) -> None:
        self.threshold = None
        self._log_event("threshold_cleared", {}, persist=True)
        self._check_level()

    # ============================================
    # STATS
    # ============================================
    def channel_stats(self, channel: str) -> dict:
        by_type = {
            rtype: self.usage.get((rtype, channel), 0) for rtype in RECORD_TYPES
        }
        return {
            **by_type,
            "total": self.channel_used(channel),
            "capacity": self.channel_capacity(channel),
        }

    def stats(self) -> dict:
        total = self.total_capacity()
        used = self.used()
        return {
            "total_capacity": total,
            "used_capacity": used,
            "remaining_capacity": total - used,
            "percentage_used": round(self.percentage(), 4),
            "channels": {channel: self.channel_stats(channel) for channel in CHANNELS},
            "unrouted": sum(n for (_, ch), n in self.usage.items() if ch not in CHANNELS),
            "by_type": {rtype: self.type_used(rtype) for rtype in RECORD_TYPES},
            "has_custom_threshold": self.threshold is not None,
            "warning_level": self.level,
            "rejections": self.rejections,
            "last_event": self.events[-1] if self.events else None,
        }

    def reset(self) -> None:
        """Empty the ledger and drop any custom threshold."""
        self.usage.clear()
        self.events.clear()
        self.threshold = None
        self.level = LEVEL_NORMAL
        self.over_capacity = False
        self.rejections = 0
