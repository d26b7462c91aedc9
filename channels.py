"""
INFOLOOP v1.0: Channel Stages
ChannelIntake routes converted records to NC1/NC2/NC3 intake stores;
one ChannelUpdate per channel moves intake to update and reports the
+/-1 length deltas that close the feedback loop.
"""

import math
import random
from collections import Counter
from typing import Callable

from core import (
    CHANNELS,
    KIND_DATA,
    KIND_ENTROPY,
    UnknownSymbol,
    percent_to_probability,
)
from stages import DEFAULT_DATA_PERCENT, LossyStage, Stage, validate_distribution
from store import CONVERTED, INTAKE, UPDATE
from symbols import require_known

DATA_DELTA = -1
ENTROPY_DELTA = 1


def split_quota(quota: int, data_percent: float, rng: random.Random) -> tuple[int, int]:
    """Split a tick quota into (data, entropy) shares.

    floor() of each share first; leftover units are drawn one at a time with
    data_percent odds. Unused share is not handed to the other type.
    """
    n_data = math.floor(quota * data_percent / 100)
    n_entropy = math.floor(quota * (100 - data_percent) / 100)
    probability = percent_to_probability(data_percent)
    for _ in range(quota - n_data - n_entropy):
        if rng.random() < probability:
            n_data += 1
        else:
            n_entropy += 1
    return n_data, n_entropy


class ChannelIntake(Stage):
    """Converted -> intake_<channel>. Operator symbols are never routed."""

    name = "channel_intake"
    source = CONVERTED

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

    def _routable(self, records: list[dict], counts: Counter) -> list[dict]:
        routable = []
        for record in records:
            try:
                require_known(record["value"])
            except UnknownSymbol:
                counts["skipped"] += 1
                self._report_once("unknown_symbol", record)
                continue
            if record.get("channel") not in CHANNELS:
                if record["id"] not in self._reported:
                    counts["unroutable"] += 1
                self._report_once("unroutable_symbol", record, channel=record.get("channel"))
                continue
            routable.append(record)
        return routable

    async def run(self, quota: int, counts: Counter) -> None:
        routable = self._routable(await self.hub.list(self.source), counts)
        n_data, n_entropy = split_quota(quota, self.data_percent, self.rng)

        data = [r for r in routable if r["kind"] == KIND_DATA][:n_data]
        entropy = [r for r in routable if r["kind"] == KIND_ENTROPY][:n_entropy]
        chosen = {r["id"] for r in data + entropy}

        for record in routable:
            if record["id"] not in chosen:
                continue
            channel = record["channel"]
            if await self.move(record, record, self.source, INTAKE[channel], counts):
                counts[f"routed_{channel.lower()}"] += 1

    def stats(self) -> dict:
        return {**super().stats(), "data_percent": self.data_percent}


class ChannelUpdate(LossyStage):
    """intake_<channel> -> update_<channel> with its own rate and loss.

    Every admitted DataToken reports -1 and every EntropyToken +1 to the
    channel-length mutator.
    """

    def __init__(
        self,
        *args,
        channel: str,
        on_delta: Callable[[str, float], float] | None = None,
        **kwargs,
    ):
        if channel not in CHANNELS:
            raise ValueError(f"channel must be one of: {CHANNELS}")
        kwargs.setdefault("name", f"update_{channel.lower()}")
        super().__init__(*args, **kwargs)
        self.channel = channel
        self.source = INTAKE[channel]
        self.destination = UPDATE[channel]
        self.on_delta = on_delta

    async def run(self, quota: int, counts: Counter) -> None:
        for record in await self.hub.list(self.source, limit=quota):
            outgoing = record
            if record["kind"] == KIND_DATA:
                outgoing = self._classify(record, self.loss_probability, counts)
                if outgoing is None:
                    continue
            if await self.move(record, outgoing, self.source, self.destination, counts):
                self._report_delta(outgoing, counts)

    def _report_delta(self, record: dict, counts: Counter) -> None:
        delta = DATA_DELTA if record["kind"] == KIND_DATA else ENTROPY_DELTA
        length = self.on_delta(self.channel, delta) if self.on_delta else None
        counts["delta"] += delta
        self.state.publish(
            "channel_delta",
            {
                "stage": self.name,
                "channel": self.channel,
                "delta": delta,
                "record_id": record["id"],
                "length": length,
            },
        )

    def stats(self) -> dict:
        return {**super().stats(), "channel": self.channel}
