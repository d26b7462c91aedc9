"""
INFOLOOP v1.0: The Information Loop
Wires the stages into one cyclic flow:
Generator -> Uptake -> Pool -> Converter -> ChannelIntake -> ChannelUpdate,
with the Recycler feeding filtered EntropyTokens back to the environment.
The loop starts in flow order and stops in reverse.
"""

import asyncio
import json
import random
import time
from collections import Counter

from aggregator import Aggregator
from capacity import CapacityManager, ChannelGeometry, LengthScaledCapacityOracle
from channels import ChannelIntake, ChannelUpdate
from config import DEFAULTS, merge_config, validate_config
from conversion import Converter
from core import CHANNELS, StopRule, dual_hash
from scheduler import CooperativeScheduler
from stages import Generator, Pool, Recycler, Uptake
from state import PipelineState
from store import (
    CONVERTED,
    ENVIRONMENT,
    FILTERED,
    INTAKE,
    PENDING,
    POOL,
    UPDATE,
    UPTAKE,
    StoreHub,
)
from symbols import RECORD_TYPES, record_type

# ============================================
# FLOW GRAPH
# ============================================
STAGE_ORDER = [
    "generator",
    "uptake",
    "pool",
    "converter",
    "channel_intake",
    "update_nc1",
    "update_nc2",
    "update_nc3",
    "recycler",
]

# stage -> (source, destinations)
FLOW_GRAPH = {
    "generator": (None, [ENVIRONMENT]),
    "uptake": (ENVIRONMENT, [UPTAKE]),
    "pool": (UPTAKE, [POOL]),
    "converter": (POOL, [PENDING, CONVERTED, FILTERED]),
    "channel_intake": (CONVERTED, list(INTAKE.values())),
    "update_nc1": (INTAKE["NC1"], [UPDATE["NC1"]]),
    "update_nc2": (INTAKE["NC2"], [UPDATE["NC2"]]),
    "update_nc3": (INTAKE["NC3"], [UPDATE["NC3"]]),
    "recycler": (FILTERED, [ENVIRONMENT]),
}

# The one edge that makes the graph cyclic
FEEDBACK_EDGE = ("recycler", FILTERED, ENVIRONMENT)


def flow_edges() -> list[tuple[str, str | None, str]]:
    """Every (stage, source, destination) edge, in flow order."""
    return [
        (stage, FLOW_GRAPH[stage][0], destination)
        for stage in STAGE_ORDER
        for destination in FLOW_GRAPH[stage][1]
    ]


class Pipeline:
    """
    One closed information loop. Collaborators (oracle, store hub, state,
    scheduler, random source, clock) can be injected; anything missing is
    built from the config.
    """

    def __init__(
        self,
        config: dict | None = None,
        oracle=None,
        hub=None,
        state: PipelineState | None = None,
        scheduler: CooperativeScheduler | None = None,
        rng: random.Random | None = None,
        clock=time.monotonic,
    ):
        self.config = validate_config(merge_config(DEFAULTS, config or {}))
        self.rng = rng or random.Random(self.config["seed"])
        self.state = state or PipelineState()
        self.scheduler = scheduler or CooperativeScheduler()

        capacity = self.config["capacity"]
        self.geometry = ChannelGeometry(capacity["channel_lengths"])
        self.oracle = oracle or LengthScaledCapacityOracle(
            self.geometry, capacity["units_per_length"]
        )
        self.hub = hub or StoreHub(max_records=self.config["store"]["max_records"])
        self.capacity = CapacityManager(self.oracle, self.state)
        if capacity["threshold"] is not None:
            self.capacity.set_threshold(capacity["threshold"])
        self.aggregator = Aggregator(self.config["aggregation_threshold"])

        self.stages = {stage.name: stage for stage in self._build_stages(clock)}

    def _build_stages(self, clock) -> list:
        common = {
            "hub": self.hub,
            "capacity": self.capacity,
            "state": self.state,
            "scheduler": self.scheduler,
            "rng": self.rng,
            "clock": clock,
        }
        cfg = self.config
        stages = [
            Generator(**common, **cfg["generator"]),
            Uptake(**common, **cfg["uptake"]),
            Pool(**common, **cfg["pool"]),
            Converter(**common, aggregator=self.aggregator, **cfg["converter"]),
            ChannelIntake(**common, **cfg["channel_intake"]),
        ]
        for channel in CHANNELS:
            stages.append(
                ChannelUpdate(
                    **common,
                    channel=channel,
                    on_delta=self.geometry.apply_delta,
                    **cfg["channel_update"][channel],
                )
            )
        stages.append(Recycler(**common, **cfg["recycler"]))
        return stages

    def stage(self, name: str):
        try:
            return self.stages[name]
        except KeyError:
            raise StopRule(
                "unknown_stage", f"No stage {name!r}, expected one of {STAGE_ORDER}",
                {"stage": name},
            )

    def _ordered(self, names: list[str] | None) -> list:
        wanted = STAGE_ORDER if names is None else names
        for name in wanted:
            self.stage(name)
        return [self.stages[name] for name in STAGE_ORDER if name in wanted]

    # ============================================
    # SYSTEM CONTROL
    # ============================================
    def start(self, names: list[str] | None = None) -> list[str]:
        """Start stages in flow order. Needs a running event loop."""
        return [stage.name for stage in self._ordered(names) if stage.start()]

    async def stop(self, names: list[str] | None = None) -> list[str]:
        """Stop stages in reverse flow order, each after its in-flight tick."""
        stopped = []
        for stage in reversed(self._ordered(names)):
            if await stage.stop():
                stopped.append(stage.name)
        return stopped

    async def run_for(self, seconds: float) -> dict:
        """Run every stage for `seconds` of wall time, then stop and snapshot."""
        self.start()
        try:
            await asyncio.sleep(seconds)
        finally:
            await self.stop()
        return self.snapshot()

    async def step(self, elapsed: float) -> dict:
        """One manual tick of every stage in flow order, without the scheduler."""
        return {stage.name: await stage.tick(elapsed) for stage in self._ordered(None)}

    async def reset(self) -> dict:
        """Stop everything and return to the configured initial state."""
        await self.stop()
        await self.scheduler.shutdown()
        cleared = await self.hub.clear_all()

        self.aggregator.reset()
        self.capacity.reset()
        self.state.reset()
        for stage in self.stages.values():
            stage.reset()
        capacity = self.config["capacity"]
        self.geometry.set_lengths(capacity["channel_lengths"])
        self.geometry.deltas.clear()
        if capacity["threshold"] is not None:
            self.capacity.set_threshold(capacity["threshold"])

        return self.state.publish(
            "pipeline_reset",
            {"cleared": cleared, "total_cleared": sum(cleared.values())},
            persist=True,
        )

    # ============================================
    # OBSERVABILITY
    # ============================================
    def store_counts(self) -> dict:
        counts = {}
        for name in self.hub.names:
            stats = self.hub.collection(name).stats()
            by_type = stats["by_type"]
            counts[name] = {
                "total": stats["count"],
                **{rtype: by_type.get(rtype, 0) for rtype in RECORD_TYPES},
            }
        return counts

    def snapshot(self) -> dict:
        """Per-store counts, capacity, stage counters and channel lengths."""
        snapshot = {
            "stores": self.store_counts(),
            "capacity": self.capacity.stats(),
            "stages": {name: self.stages[name].stats() for name in STAGE_ORDER},
            "channels": self.geometry.stats(),
            "aggregator": self.aggregator.stats(),
            "scheduler": self.scheduler.stats(),
            "observer_errors": self.state.observer_errors,
        }
        total = sum(c["total"] for c in snapshot["stores"].values())
        receipt = self.state.publish(
            "pipeline_snapshot",
            {
                "snapshot_hash": dual_hash(json.dumps(snapshot, sort_keys=True, default=str)),
                "total_records": total,
                "used_capacity": snapshot["capacity"]["used_capacity"],
                "total_capacity": snapshot["capacity"]["total_capacity"],
            },
            persist=True,
        )
        snapshot["total_records"] = total
        snapshot["receipt_hash"] = receipt["hash"]
        return snapshot

    def ledger_consistent(self) -> bool:
        """Capacity usage matches what the stores actually hold."""
        held = Counter()
        for name in self.hub.names:
            for record in self.hub.collection(name).values():
                held[(record_type(record), record.get("channel"))] += 1
        return +held == +self.capacity.usage
