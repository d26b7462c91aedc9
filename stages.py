"""
INFOLOOP v1.0: Pipeline Stages
Generic Stopped/Running stage machine and the Generator, Uptake, Pool and
Recycler stages. Each tick moves at most floor(rate * elapsed) records
from one store to the next.
Rate-bounded. Move-atomic.
"""

import math
import random
import time
from collections import Counter, deque

from core import (
    KIND_DATA,
    KIND_ENTROPY,
    CapacityExceeded,
    StoreFailure,
    UnknownSymbol,
    percent_to_probability,
    validate_percent,
    validate_percent_pair,
    validate_rate,
)
from loss import apply_outcome, classify
from store import ENVIRONMENT, FILTERED, POOL, UPTAKE
from symbols import ALPHABET, make_symbol, record_type, to_raw

STATUS_STOPPED = "stopped"
STATUS_RUNNING = "running"

DEFAULT_RATE = 10.0  # symbols/second
DEFAULT_LOSS_PERCENT = 0.0
DEFAULT_DATA_PERCENT = 50.0
DEFAULT_NOISE_PERCENT = 0.0

# Absorbs float error in rate * elapsed (e.g. 3 * (1/3))
QUOTA_EPSILON = 1e-9


def tick_quota(rate: float, elapsed: float) -> int:
    """floor(rate * elapsed), never negative."""
    if rate <= 0 or elapsed <= 0:
        return 0
    return math.floor(rate * elapsed + QUOTA_EPSILON)


def validate_distribution(
    name: str, data_percent, entropy_percent=None
) -> tuple[float, float]:
    """Data/entropy percentage pair summing to 100; entropy defaults to the rest."""
    if entropy_percent is None:
        data_percent = validate_percent(f"{name}.data_percent", data_percent)
        return data_percent, 100.0 - data_percent
    return validate_percent_pair(f"{name}.distribution", data_percent, entropy_percent)


def choose_by_preference(
    records: list[dict], quota: int, data_percent: float, rng: random.Random
) -> list[dict]:
    """Pick up to `quota` records, preferring DataTokens with data_percent odds.

    Each unit draws its preferred type; if that type is exhausted the other
    one is taken. Store order is kept within each type.
    """
    data = deque(r for r in records if r["kind"] == KIND_DATA)
    entropy = deque(r for r in records if r["kind"] == KIND_ENTROPY)
    probability = percent_to_probability(data_percent)

    chosen = []
    while len(chosen) < quota and (data or entropy):
        if rng.random() < probability:
            preferred, fallback = data, entropy
        else:
            preferred, fallback = entropy, data
        chosen.append((preferred or fallback).popleft())
    return chosen


class Stage:
    """
    Two-state machine (stopped -> running -> stopped) driven by the shared
    scheduler. Subclasses implement run(quota, counts).
    """

    name = "stage"
    source: str | None = None
    destination: str | None = None

    def __init__(
        self,
        hub,
        capacity,
        state,
        scheduler,
        rate: float = DEFAULT_RATE,
        rng: random.Random | None = None,
        clock=time.monotonic,
        name: str | None = None,
    ):
        if name is not None:
            self.name = name
        self.hub = hub
        self.capacity = capacity
        self.state = state
        self.scheduler = scheduler
        self.rng = rng or random.Random()
        self.clock = clock
        self.rate = validate_rate(f"{self.name}.rate", rate)
        self.status = STATUS_STOPPED
        self._last_tick = None
        self._reported = set()

    @property
    def running(self) -> bool:
        return self.status == STATUS_RUNNING

    @property
    def interval(self) -> float:
        return 1.0 / self.rate if self.rate > 0 else 0.0

    # ============================================
    # LIFECYCLE
    # ============================================
    def start(self) -> bool:
        """Begin ticking every 1/rate seconds. No-op when running or rate <= 0."""
        if self.running or self.rate <= 0:
            return False
        self.scheduler.schedule(self.name, self.interval, self.tick)
        self.status = STATUS_RUNNING
        self._last_tick = self.clock()
        self.state.publish(
            "stage_start", {"stage": self.name, "rate": self.rate}, persist=True
        )
        return True

    async def stop(self) -> bool:
        """Cancel future ticks, then wait for the in-flight one to finish."""
        if not self.running:
            return False
        self.scheduler.cancel(self.name)
        await self.scheduler.wait_idle(self.name)
        self.status = STATUS_STOPPED
        self.state.publish(
            "stage_stop",
            {"stage": self.name, "counters": self.state.stage_counters(self.name)},
            persist=True,
        )
        return True

    def set_rate(self, rate) -> float:
        """Validate and apply a new rate; a running stage is rescheduled."""
        rate = validate_rate(f"{self.name}.rate", rate)
        previous = self.rate
        self.rate = rate
        if self.running:
            if rate > 0:
                self.scheduler.schedule(self.name, self.interval, self.tick)
            else:
                self.scheduler.cancel(self.name)
                self.status = STATUS_STOPPED
        self.state.publish(
            "stage_rate_change",
            {"stage": self.name, "previous": previous, "rate": rate, "status": self.status},
            persist=True,
        )
        return rate

    # ============================================
    # TICK
    # ============================================
    async def tick(self, elapsed: float | None = None) -> dict:
        """Run one tick.

        Args:
            elapsed: Seconds to budget for; default is time since the last
                tick that did work

        Returns:
            Counts for this tick (quota, moved, rejected, by type ...)
        """
        now = self.clock()
        if elapsed is None:
            elapsed = now - self._last_tick if self._last_tick is not None else self.interval
        quota = tick_quota(self.rate, elapsed)

        counts = Counter(quota=quota)
        if quota < 1:
            # Not enough time has built up; keep the last tick time
            counts["idle"] += 1
            self.state.record_tick(self.name, counts)
            return dict(counts)

        self._last_tick = now
        self.capacity.revalidate()
        try:
            await self.run(quota, counts)
        except StoreFailure as e:
            counts["failures"] += 1
            self.state.publish(
                "store_failure",
                {"stage": self.name, "error": str(e), "context": e.context},
                persist=True,
            )
        self.state.record_tick(self.name, counts)
        return dict(counts)

    async def run(self, quota: int, counts: Counter) -> None:
        raise NotImplementedError

    # ============================================
    # MOVE
    # ============================================
    async def move(
        self,
        record: dict,
        outgoing: dict,
        source: str,
        destination: str,
        counts: Counter,
        force: bool = False,
    ) -> bool:
        """Move one record: remove from source, admit, insert into destination.

        Returns True when the record landed, False when capacity dropped it.
        A failed insert puts the record back in the source and the ledger,
        then re-raises so the tick is abandoned. Any other error while
        settling the ledger does the same.
        """
        await self.hub.remove(source, record["id"])
        checkpoint = self.capacity.checkpoint()

        try:
            self.capacity.release(record)
            self.capacity.admit(outgoing, force=force)
        except CapacityExceeded:
            counts["rejected"] += 1
            return False
        except Exception:
            self.capacity.rollback(checkpoint)
            try:
                await self.hub.append(source, record)
            except StoreFailure:
                self.capacity.release(record)
            raise

        try:
            await self.hub.append(destination, outgoing)
        except StoreFailure as e:
            self.capacity.release(outgoing)
            await self._restore(record, source, e)
            raise

        counts["moved"] += 1
        counts[record_type(outgoing)] += 1
        return True

    async def _restore(self, record: dict, source: str, cause: StoreFailure) -> bool:
        self.capacity.admit(record, force=True)
        try:
            await self.hub.append(source, record)
        except StoreFailure as e:
            self.capacity.release(record)
            self.state.publish(
                "rollback_failed",
                {
                    "stage": self.name,
                    "record_id": record["id"],
                    "value": record["value"],
                    "collection": source,
                    "cause": str(cause),
                    "error": str(e),
                },
                persist=True,
            )
            return False
        return True

    def _report_once(self, receipt_type: str, record: dict, **details) -> None:
        if record["id"] in self._reported:
            return
        self._reported.add(record["id"])
        self.state.publish(
            receipt_type,
            {"stage": self.name, "record_id": record["id"], "value": record.get("value"), **details},
            persist=True,
        )

    def _classify(self, record: dict, probability: float, counts: Counter) -> dict | None:
        """Classified copy of the record, or None for an unknown symbol."""
        try:
            outcome = classify(record, probability, self.rng)
        except UnknownSymbol:
            counts["skipped"] += 1
            self._report_once("unknown_symbol", record)
            return None
        if outcome["kind"] == KIND_ENTROPY:
            counts["lost"] += 1
        return apply_outcome(record, outcome)

    def reset(self) -> None:
        self._last_tick = None
        self._reported.clear()

    def stats(self) -> dict:
        return {
            "name": self.name,
            "status": self.status,
            "rate": self.rate,
            "source": self.source,
            "destination": self.destination,
            "counters": self.state.stage_counters(self.name),
            "dropped_ticks": self.scheduler.dropped.get(self.name, 0),
        }


class LossyStage(Stage):
    """Stage with a loss percentage applied to DataTokens."""

    def __init__(self, *args, loss_percent: float = DEFAULT_LOSS_PERCENT, **kwargs):
        super().__init__(*args, **kwargs)
        self.loss_percent = validate_percent(f"{self.name}.loss_percent", loss_percent)

    @property
    def loss_probability(self) -> float:
        return percent_to_probability(self.loss_percent)

    def set_loss(self, percent) -> float:
        self.loss_percent = validate_percent(f"{self.name}.loss_percent", percent)
        return self.loss_percent

    def stats(self) -> dict:
        return {**super().stats(), "loss_percent": self.loss_percent}


class Generator(LossyStage):
    """No source: manufactures fresh random symbols into the environment."""

    name = "generator"
    destination = ENVIRONMENT

    def __init__(self, *args, noise_percent: float = DEFAULT_NOISE_PERCENT, **kwargs):
        super().__init__(*args, **kwargs)
        self.noise_percent = validate_percent(f"{self.name}.noise_percent", noise_percent)

    def set_noise(self, percent) -> float:
        self.noise_percent = validate_percent(f"{self.name}.noise_percent", percent)
        return self.noise_percent

    def _manufacture(self, counts: Counter) -> dict:
        value = self.rng.choice(ALPHABET)
        if self.noise_percent > 0 and self.rng.random() < percent_to_probability(
            self.noise_percent
        ):
            return make_symbol(value, KIND_ENTROPY)
        return self._classify(make_symbol(value), self.loss_probability, counts)

    async def run(self, quota: int, counts: Counter) -> None:
        for _ in range(quota):
            record = self._manufacture(counts)
            if record is None:
                continue
            checkpoint = self.capacity.checkpoint()
            try:
                self.capacity.admit(record)
            except CapacityExceeded:
                # Full; nothing frees up within this tick
                counts["rejected"] += 1
                break
            except Exception:
                self.capacity.rollback(checkpoint)
                raise
            try:
                await self.hub.append(self.destination, record)
            except StoreFailure:
                self.capacity.release(record)
                raise
            counts["moved"] += 1
            counts[record_type(record)] += 1

    def stats(self) -> dict:
        return {**super().stats(), "noise_percent": self.noise_percent}


class PreferenceStage(LossyStage):
    """Lossy move with a preferred-type selection ratio (data% / entropy%)."""

    def __init__(
        self,
        *args,
        data_percent: float = DEFAULT_DATA_PERCENT,
        entropy_percent: float | None = None,
        **kwargs,
    ):
        super().__init__(*args, **kwargs)
        self.data_percent = validate_distribution(self.name, data_percent, entropy_percent)[0]

    def set_distribution(self, data_percent, entropy_percent=None) -> tuple[float, float]:
        pair = validate_distribution(self.name, data_percent, entropy_percent)
        self.data_percent = pair[0]
        return pair

    async def run(self, quota: int, counts: Counter) -> None:
        records = await self.hub.list(self.source)
        for record in choose_by_preference(records, quota, self.data_percent, self.rng):
            outgoing = record
            if record["kind"] == KIND_DATA:
                outgoing = self._classify(record, self.loss_probability, counts)
                if outgoing is None:
                    continue
            await self.move(record, outgoing, self.source, self.destination, counts)

    def stats(self) -> dict:
        return {**super().stats(), "data_percent": self.data_percent}


class Uptake(PreferenceStage):
    name = "uptake"
    source = ENVIRONMENT
    destination = UPTAKE


class Pool(PreferenceStage):
    name = "pool"
    source = UPTAKE
    destination = POOL


class Recycler(Stage):
    """Filtered EntropyTokens back to the environment in raw DataToken form.

    Force-admits: the record leaves the ledger and re-enters it in one step.
    """

    name = "recycler"
    source = FILTERED
    destination = ENVIRONMENT

    async def run(self, quota: int, counts: Counter) -> None:
        for record in await self.hub.list(self.source, limit=quota):
            await self.move(
                record, to_raw(record), self.source, self.destination, counts, force=True
            )
