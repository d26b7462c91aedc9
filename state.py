"""
INFOLOOP v1.0: Pipeline State Module
Injectable counters and observer subscriptions shared by every stage.
Persisted events go to the receipts ledger; every event goes to observers.
"""

from collections import Counter, deque
from typing import Callable

from core import emit_receipt, now_iso

DEFAULT_EVENT_HISTORY = 256
WILDCARD = "*"


class PipelineState:
    """Counters per stage plus a subscription registry.

    Observers are called as callback(event_type, event). An observer that
    raises is recorded as an observer_error receipt and the rest still run.
    """

    def __init__(self, history: int = DEFAULT_EVENT_HISTORY):
        self._observers: dict[str, list[Callable]] = {}
        self.counters: dict[str, Counter] = {}
        self.events = deque(maxlen=history)
        self.observer_errors = 0

    # ============================================
    # SUBSCRIPTIONS
    # ============================================
    def subscribe(self, callback: Callable, event_type: str = WILDCARD) -> Callable:
        """Register an observer. Returns a function that unsubscribes it."""
        self._observers.setdefault(event_type, []).append(callback)

        def unsubscribe() -> None:
            callbacks = self._observers.get(event_type, [])
            if callback in callbacks:
                callbacks.remove(callback)

        return unsubscribe

    def _fire(self, event_type: str, event: dict) -> None:
        callbacks = list(self._observers.get(event_type, []))
        callbacks += list(self._observers.get(WILDCARD, []))
        for callback in callbacks:
            try:
                callback(event_type, event)
            except Exception as e:
                self.observer_errors += 1
                emit_receipt(
                    "observer_error",
                    {
                        "event_type": event_type,
                        "observer": getattr(callback, "__name__", repr(callback)),
                        "error": str(e),
                    },
                )

    def publish(self, event_type: str, data: dict, persist: bool = False) -> dict:
        """Notify observers; with persist=True also write a receipt."""
        if persist:
            event = emit_receipt(event_type, data)
        else:
            event = {"type": event_type, "ts": now_iso(), **data}
        self.events.append(event)
        self._fire(event_type, event)
        return event

    # ============================================
    # COUNTERS
    # ============================================
    def increment(self, stage: str, key: str, n: int = 1) -> None:
        self.counters.setdefault(stage, Counter())[key] += n

    def record_tick(self, stage: str, counts: dict) -> dict:
        """Fold one tick's counts into the stage totals and publish stage_tick."""
        totals = self.counters.setdefault(stage, Counter())
        totals["ticks"] += 1
        for key, value in counts.items():
            if isinstance(value, bool):
                totals[key] += int(value)
            elif isinstance(value, (int, float)):
                totals[key] += value
        return self.publish("stage_tick", {"stage": stage, "counts": dict(counts)})

    def stage_counters(self, stage: str) -> dict:
        return dict(self.counters.get(stage, Counter()))

    def last_event(self, event_type: str | None = None) -> dict | None:
        for event in reversed(self.events):
            if event_type is None or event["type"] == event_type:
                return event
        return None

    def snapshot(self) -> dict:
        return {
            "counters": {stage: dict(c) for stage, c in self.counters.items()},
            "observer_errors": self.observer_errors,
            "recent_events": len(self.events),
        }

    def reset(self) -> None:
        """Drop counters and history. Subscriptions survive."""
        self.counters.clear()
        self.events.clear()
        self.observer_errors = 0
