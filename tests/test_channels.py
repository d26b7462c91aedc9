"""
INFOLOOP Channel Stage Tests
Routing by ChannelAssignmentTable, quota split, length deltas.
"""

import asyncio
import random

import pytest

from capacity import ChannelGeometry
from channels import ChannelIntake, ChannelUpdate, split_quota
from conftest import seed_store, stage_kwargs
from core import InvalidParameter, load_receipts
from store import CONVERTED, INTAKE, UPDATE
from symbols import CHANNEL_TABLE


class TestSplitQuota:
    def test_exact_split(self):
        assert split_quota(10, 70, random.Random(0)) == (7, 3)

    def test_leftover_drawn(self):
        n_data, n_entropy = split_quota(3, 50, random.Random(0))
        assert n_data + n_entropy == 3
        assert n_data >= 1
        assert n_entropy >= 1

    def test_all_data(self):
        assert split_quota(5, 100, random.Random(0)) == (5, 0)


class TestChannelIntake:
    def test_routes_by_table(self, env):
        asyncio.run(seed_store(env, CONVERTED, "ABCDE"))
        asyncio.run(seed_store(env, CONVERTED, "FGHIJ", kind="entropy"))
        intake = ChannelIntake(**stage_kwargs(env), rate=10)
        counts = asyncio.run(intake.tick(elapsed=1.0))

        assert counts["moved"] == 10
        for channel, collection in INTAKE.items():
            for record in env.hub.collection(collection).values():
                assert record["value"] in CHANNEL_TABLE[channel]
        assert counts["routed_nc1"] + counts["routed_nc2"] + counts["routed_nc3"] == 10

    def test_no_transfer_of_unused_share(self, env):
        """Half the quota is reserved for EntropyTokens even when none exist."""
        asyncio.run(seed_store(env, CONVERTED, "ABCDEFGH"))
        intake = ChannelIntake(**stage_kwargs(env), rate=10, data_percent=50)
        counts = asyncio.run(intake.tick(elapsed=1.0))
        assert counts["moved"] == 5
        assert len(env.hub.collection(CONVERTED)) == 3

    def test_store_order_kept(self, env):
        asyncio.run(seed_store(env, CONVERTED, "ADG"))
        intake = ChannelIntake(**stage_kwargs(env), rate=10, data_percent=100)
        asyncio.run(intake.tick(elapsed=1.0))
        assert [r["value"] for r in env.hub.collection(INTAKE["NC1"]).values()] == list("ADG")

    def test_operators_unroutable(self, env):
        asyncio.run(seed_store(env, CONVERTED, "/+A"))
        intake = ChannelIntake(**stage_kwargs(env), rate=10, data_percent=100)
        first = asyncio.run(intake.tick(elapsed=1.0))
        second = asyncio.run(intake.tick(elapsed=1.0))

        assert first["unroutable"] == 2
        assert "unroutable" not in second
        assert first["moved"] == 1
        assert [r["value"] for r in env.hub.collection(CONVERTED).values()] == ["/", "+"]
        assert len(load_receipts("unroutable_symbol")) == 2
        assert env.state.stage_counters("channel_intake")["unroutable"] == 2

    def test_invalid_distribution(self, env):
        with pytest.raises(InvalidParameter):
            ChannelIntake(**stage_kwargs(env), data_percent=60, entropy_percent=60)


class TestChannelUpdate:
    def test_invalid_channel(self, env):
        with pytest.raises(ValueError):
            ChannelUpdate(**stage_kwargs(env), channel="NC4")

    def test_names_and_stores(self, env):
        update = ChannelUpdate(**stage_kwargs(env), channel="NC2")
        assert update.name == "update_nc2"
        assert update.source == INTAKE["NC2"]
        assert update.destination == UPDATE["NC2"]

    def test_data_shortens_channel(self, env):
        geometry = ChannelGeometry()
        asyncio.run(seed_store(env, INTAKE["NC1"], "ADG"))
        update = ChannelUpdate(
            **stage_kwargs(env), channel="NC1", rate=10, on_delta=geometry.apply_delta
        )
        counts = asyncio.run(update.tick(elapsed=1.0))
        assert counts["delta"] == -3
        assert geometry.length("NC1") == 7
        assert len(env.hub.collection(UPDATE["NC1"])) == 3

    def test_loss_lengthens_channel(self, env):
        """Every lost DataToken arrives as an EntropyToken: +1 each."""
        geometry = ChannelGeometry()
        asyncio.run(seed_store(env, INTAKE["NC3"], "CFI"))
        update = ChannelUpdate(
            **stage_kwargs(env),
            channel="NC3",
            rate=10,
            loss_percent=100,
            on_delta=geometry.apply_delta,
        )
        asyncio.run(update.tick(elapsed=1.0))
        assert geometry.length("NC3") == 13
        kinds = {r["kind"] for r in env.hub.collection(UPDATE["NC3"]).values()}
        assert kinds == {"entropy"}

    def test_observers_see_deltas(self, env):
        seen = []
        env.state.subscribe(lambda t, e: seen.append(e["delta"]), "channel_delta")
        asyncio.run(seed_store(env, INTAKE["NC2"], "B"))
        asyncio.run(seed_store(env, INTAKE["NC2"], "E", kind="entropy"))
        update = ChannelUpdate(**stage_kwargs(env), channel="NC2", rate=10)
        asyncio.run(update.tick(elapsed=1.0))
        assert seen == [-1, 1]
        assert load_receipts("channel_delta") == []

    def test_rate_bounds_moves(self, env):
        asyncio.run(seed_store(env, INTAKE["NC1"], "ADGJ"))
        update = ChannelUpdate(**stage_kwargs(env), channel="NC1", rate=2)
        counts = asyncio.run(update.tick(elapsed=1.0))
        assert counts["moved"] == 2
        assert len(env.hub.collection(INTAKE["NC1"])) == 2
