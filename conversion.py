"""
INFOLOOP v1.0: Conversion Module
Converter stage: DataTokens wait in the pending buffer until `threshold`
identical values collapse into one aggregate; EntropyTokens are filtered
to the recycle store or passed straight through.
"""

from collections import Counter

from aggregator import Aggregator
from core import (
    KIND_ENTROPY,
    CapacityExceeded,
    StoreFailure,
    UnknownSymbol,
    percent_to_probability,
    validate_percent,
)
from loss import classify
from stages import LossyStage
from store import CONVERTED, FILTERED, PENDING, POOL
from symbols import UNIT_AGGREGATE, make_aggregate, require_known, to_entropy

DEFAULT_FILTER_PERCENT = 0.0


class Converter(LossyStage):
    """Pool -> Converted, aggregating DataTokens by value.

    Invariant: for every value, the number of DataTokens in the pending
    buffer equals the aggregator's pending count.
    """

    name = "converter"
    source = POOL
    destination = CONVERTED

    def __init__(
        self,
        *args,
        aggregator: Aggregator | None = None,
        filter_percent: float = DEFAULT_FILTER_PERCENT,
        **kwargs,
    ):
        super().__init__(*args, **kwargs)
        self.aggregator = aggregator if aggregator is not None else Aggregator()
        self.filter_percent = validate_percent(
            f"{self.name}.filter_percent", filter_percent
        )

    def set_filter(self, percent) -> float:
        self.filter_percent = validate_percent(f"{self.name}.filter_percent", percent)
        return self.filter_percent

    def set_threshold(self, threshold) -> int:
        """New aggregation threshold; ready groups are emitted on the next tick."""
        return self.aggregator.set_threshold(threshold)

    async def run(self, quota: int, counts: Counter) -> None:
        await self._settle(counts)

        for record in await self.hub.list(self.source, limit=quota):
            try:
                require_known(record["value"])
            except UnknownSymbol:
                counts["skipped"] += 1
                self._report_once("unknown_symbol", record)
                continue

            if record["kind"] == KIND_ENTROPY:
                await self._pass_entropy(record, counts)
            elif not self.aggregator.enabled or record.get("unit") == UNIT_AGGREGATE:
                await self.move(record, record, self.source, CONVERTED, counts)
            elif await self.move(record, record, self.source, PENDING, counts):
                event = self.aggregator.offer(record["value"])
                if event is not None:
                    await self._emit(event, counts)

    async def _pass_entropy(self, record: dict, counts: Counter) -> None:
        destination = CONVERTED
        if self.filter_percent > 0 and self.rng.random() < percent_to_probability(
            self.filter_percent
        ):
            destination = FILTERED
        if await self.move(record, record, self.source, destination, counts):
            if destination == FILTERED:
                counts["filtered"] += 1

    async def _settle(self, counts: Counter) -> None:
        """Bring the pending buffer in line with the current threshold.

        Disabled aggregation flushes waiting DataTokens through; a lowered
        threshold emits every group that is already full.
        """
        if not self.aggregator.enabled:
            waiting = await self.hub.list(PENDING)
            if not waiting:
                return
            flushed = Counter()
            for record in waiting:
                await self.move(record, record, PENDING, CONVERTED, flushed)
                self.aggregator.discard(record["value"])
            counts["flushed"] += flushed["moved"]
            return

        events = self.aggregator.drain()
        for i, event in enumerate(events):
            try:
                await self._emit(event, counts)
            except Exception:
                # Groups not yet emitted keep their counts for the next tick
                for skipped in events[i + 1 :]:
                    self.aggregator.refund(skipped["value"], skipped["threshold"])
                raise

    async def _emit(self, event: dict, counts: Counter) -> None:
        """Replace `threshold` pending records with one aggregate unit."""
        value = event["value"]
        threshold = event["threshold"]

        try:
            parts = await self.hub.remove_where(
                PENDING, lambda r: r["value"] == value, limit=threshold
            )
        except StoreFailure:
            self.aggregator.refund(value, threshold)
            raise

        if len(parts) < threshold:
            # Buffer holds fewer than counted: put them back and trust the buffer
            shortfall = StoreFailure(
                f"pending holds {len(parts)} of {value!r}, expected {threshold}",
                {"value": value, "threshold": threshold},
            )
            restored = 0
            for part in parts:
                self.capacity.release(part)
                if await self._restore(part, PENDING, shortfall):
                    restored += 1
            self.aggregator.resync(value, restored)
            counts["resynced"] += 1
            return

        checkpoint = self.capacity.checkpoint()
        try:
            for part in parts:
                self.capacity.release(part)

            aggregate = make_aggregate(value, parts)
            outcome = classify(aggregate, self.loss_probability, self.rng)
            lost = outcome["kind"] == KIND_ENTROPY
            outgoing = to_entropy(aggregate) if lost else aggregate
            destination = FILTERED if lost else CONVERTED

            self.capacity.admit(outgoing)
        except CapacityExceeded:
            counts["rejected_aggregates"] += 1
            return
        except Exception:
            self.capacity.rollback(checkpoint)
            restored = 0
            for part in parts:
                try:
                    await self.hub.append(PENDING, part)
                except StoreFailure:
                    self.capacity.release(part)
                    continue
                restored += 1
            self.aggregator.refund(value, restored)
            raise

        try:
            await self.hub.append(destination, outgoing)
        except StoreFailure as e:
            self.capacity.release(outgoing)
            restored = 0
            for part in parts:
                if await self._restore(part, PENDING, e):
                    restored += 1
            self.aggregator.refund(value, restored)
            raise

        counts["aggregated"] += 1
        if lost:
            counts["aggregates_lost"] += 1
        self.state.publish(
            "aggregate_emitted",
            {
                "stage": self.name,
                "value": value,
                "channel": event["channel"],
                "threshold": threshold,
                "record_id": outgoing["id"],
                "lost": lost,
                "destination": destination,
                "delta": event["delta"],
            },
            persist=True,
        )

    def reset(self) -> None:
        super().reset()
        self.aggregator.reset()

    def stats(self) -> dict:
        return {
            **super().stats(),
            "filter_percent": self.filter_percent,
            "aggregator": self.aggregator.stats(),
        }
