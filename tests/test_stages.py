"""
INFOLOOP Stage Tests
Stage state machine, tick quota, move semantics, Generator/Uptake/Pool/Recycler.
"""

import asyncio
import random

import pytest

from conftest import build_env, seed_store, stage_kwargs
from core import InvalidParameter, StopRule, StoreFailure, load_receipts
from stages import (
    STATUS_RUNNING,
    STATUS_STOPPED,
    Generator,
    Pool,
    Recycler,
    Uptake,
    choose_by_preference,
    tick_quota,
)
from store import ENVIRONMENT, FILTERED, POOL, UPTAKE, StoreHub
from symbols import make_symbol


class FailingAppendHub(StoreHub):
    """Hub whose appends into one collection always fail."""

    def __init__(self, failing: str):
        super().__init__()
        self.failing = failing

    async def append(self, collection, record):
        if collection == self.failing:
            raise StoreFailure(f"{collection} unavailable", {"collection": collection})
        return await super().append(collection, record)


class FailingRemoveHub(StoreHub):
    async def remove(self, collection, record_id):
        raise StoreFailure("remove unavailable", {"collection": collection})


def values_in(env, collection):
    return [r["value"] for r in env.hub.collection(collection).values()]


class TestTickQuota:
    @pytest.mark.parametrize(
        "rate,elapsed,expected",
        [(10, 1.0, 10), (10, 0.05, 0), (3, 1 / 3, 1), (0, 5.0, 0), (10, -1, 0), (7.5, 2, 15)],
    )
    def test_floor(self, rate, elapsed, expected):
        assert tick_quota(rate, elapsed) == expected


class TestChooseByPreference:
    def test_full_preference(self):
        records = [make_symbol("A", k) for k in ("entropy", "data", "entropy", "data")]
        chosen = choose_by_preference(records, 2, 100, random.Random(0))
        assert [r["kind"] for r in chosen] == ["data", "data"]

    def test_fallback_to_other_type(self):
        records = [make_symbol("A", "entropy") for _ in range(3)]
        chosen = choose_by_preference(records, 2, 100, random.Random(0))
        assert len(chosen) == 2

    def test_store_order_within_type(self):
        records = [make_symbol(v) for v in "QRST"]
        chosen = choose_by_preference(records, 4, 50, random.Random(0))
        assert [r["value"] for r in chosen] == list("QRST")

    def test_quota_bounds_choice(self):
        records = [make_symbol("A") for _ in range(3)]
        assert len(choose_by_preference(records, 10, 50, random.Random(0))) == 3


class TestGenerator:
    def test_loss_zero_all_data(self, env):
        generator = Generator(**stage_kwargs(env), rate=10, loss_percent=0)
        counts = asyncio.run(generator.tick(elapsed=1.0))
        assert counts["moved"] == 10
        assert counts["data"] == 10
        assert env.capacity.used() == 10

    def test_loss_hundred_all_entropy(self, env):
        generator = Generator(**stage_kwargs(env), rate=10, loss_percent=100)
        counts = asyncio.run(generator.tick(elapsed=1.0))
        assert counts["entropy"] == 10
        assert counts["lost"] == 10
        assert all(r["kind"] == "entropy" for r in env.hub.collection(ENVIRONMENT).values())

    def test_noise_share(self, env):
        generator = Generator(**stage_kwargs(env), rate=10, noise_percent=100)
        counts = asyncio.run(generator.tick(elapsed=1.0))
        assert counts["entropy"] == 10
        assert counts.get("lost", 0) == 0

    def test_capacity_stops_generation(self):
        """Total 5: five land, the sixth is rejected and the tick ends."""
        env = build_env(total=5, channel=5)
        generator = Generator(**stage_kwargs(env), rate=10)
        counts = asyncio.run(generator.tick(elapsed=1.0))
        assert counts["moved"] == 5
        assert counts["rejected"] == 1
        assert env.capacity.used() == 5
        assert len(env.hub.collection(ENVIRONMENT)) == 5

    def test_append_failure_releases(self):
        env = build_env(hub=FailingAppendHub(ENVIRONMENT))
        generator = Generator(**stage_kwargs(env), rate=10)
        counts = asyncio.run(generator.tick(elapsed=1.0))
        assert counts["failures"] == 1
        assert env.capacity.used() == 0
        assert len(load_receipts("store_failure")) == 1

    def test_ledger_write_failure_uncharges(self, monkeypatch, tmp_path):
        env = build_env(total=4, channel=4)
        asyncio.run(seed_store(env, ENVIRONMENT, "A"))
        monkeypatch.setenv("INFOLOOP_RECEIPTS", str(tmp_path))  # a directory
        generator = Generator(**stage_kwargs(env), rate=1)
        with pytest.raises(StopRule):
            asyncio.run(generator.tick(elapsed=1.0))
        assert env.capacity.used() == 1
        assert env.capacity.level == "normal"
        assert len(env.hub.collection(ENVIRONMENT)) == 1


class TestUptakeAndPool:
    def test_conservation(self, env):
        """source before = source after + moved + rejected."""
        asyncio.run(seed_store(env, ENVIRONMENT, "ABCDEFG"))
        uptake = Uptake(**stage_kwargs(env), rate=5)
        counts = asyncio.run(uptake.tick(elapsed=1.0))
        remaining = len(env.hub.collection(ENVIRONMENT))
        assert 7 == remaining + counts["moved"] + counts.get("rejected", 0)
        assert counts["moved"] == 5
        assert len(env.hub.collection(UPTAKE)) == 5
        assert env.capacity.used() == 7

    def test_moved_bounded_by_source(self, env):
        asyncio.run(seed_store(env, ENVIRONMENT, "AB"))
        counts = asyncio.run(Uptake(**stage_kwargs(env), rate=100).tick(elapsed=1.0))
        assert counts["quota"] == 100
        assert counts["moved"] == 2

    def test_loss_applies_to_data_only(self, env):
        asyncio.run(seed_store(env, ENVIRONMENT, "AB"))
        asyncio.run(seed_store(env, ENVIRONMENT, "C", kind="entropy"))
        uptake = Uptake(**stage_kwargs(env), rate=10, loss_percent=100)
        counts = asyncio.run(uptake.tick(elapsed=1.0))
        assert counts["lost"] == 2
        kinds = [r["kind"] for r in env.hub.collection(UPTAKE).values()]
        assert kinds == ["entropy"] * 3
        assert env.capacity.type_used("entropy") == 3
        assert env.capacity.type_used("data") == 0

    def test_pool_prefers_data(self, env):
        asyncio.run(seed_store(env, UPTAKE, "ABC", kind="entropy"))
        asyncio.run(seed_store(env, UPTAKE, "DEF"))
        pool = Pool(**stage_kwargs(env), rate=3, data_percent=100)
        asyncio.run(pool.tick(elapsed=1.0))
        assert values_in(env, POOL) == ["D", "E", "F"]

    def test_pool_falls_back(self, env):
        asyncio.run(seed_store(env, UPTAKE, "AB", kind="entropy"))
        pool = Pool(**stage_kwargs(env), rate=2, data_percent=100)
        counts = asyncio.run(pool.tick(elapsed=1.0))
        assert counts["moved"] == 2

    def test_channel_fixed_across_moves(self, env):
        records = asyncio.run(seed_store(env, ENVIRONMENT, "Z"))
        asyncio.run(Uptake(**stage_kwargs(env), rate=1, loss_percent=100).tick(elapsed=1.0))
        moved = env.hub.collection(UPTAKE).values()[0]
        assert moved["id"] == records[0]["id"]
        assert moved["channel"] == "NC2"

    def test_idle_tick(self, env):
        asyncio.run(seed_store(env, ENVIRONMENT, "A"))
        uptake = Uptake(**stage_kwargs(env), rate=1)
        counts = asyncio.run(uptake.tick(elapsed=0.5))
        assert counts["idle"] == 1
        assert len(env.hub.collection(ENVIRONMENT)) == 1

    def test_idle_keeps_budget(self, env):
        """Idle ticks keep accumulating elapsed time from the last working tick."""
        now = [0.0]
        asyncio.run(seed_store(env, ENVIRONMENT, "AB"))
        uptake = Uptake(**stage_kwargs(env), rate=1, clock=lambda: now[0])
        uptake._last_tick = 0.0
        now[0] = 0.6
        assert asyncio.run(uptake.tick())["quota"] == 0
        now[0] = 1.2
        assert asyncio.run(uptake.tick())["moved"] == 1

    def test_capacity_rejection_drops_record(self):
        env = build_env(total=10, channel=10)
        asyncio.run(seed_store(env, ENVIRONMENT, "A"))
        env.oracle.total = 0
        counts = asyncio.run(Uptake(**stage_kwargs(env), rate=1).tick(elapsed=1.0))
        assert counts["rejected"] == 1
        assert len(env.hub.collection(ENVIRONMENT)) == 0
        assert env.capacity.used() == 0


class TestMoveFailures:
    def test_insert_failure_restores_record(self):
        env = build_env(hub=FailingAppendHub(UPTAKE))
        records = asyncio.run(seed_store(env, ENVIRONMENT, "AB"))
        uptake = Uptake(**stage_kwargs(env), rate=2)
        counts = asyncio.run(uptake.tick(elapsed=1.0))

        assert counts["failures"] == 1
        assert counts.get("moved", 0) == 0
        ids = {r["id"] for r in env.hub.collection(ENVIRONMENT).values()}
        assert ids == {r["id"] for r in records}
        assert env.capacity.used() == 2

    def test_remove_failure_leaves_record(self):
        env = build_env(hub=FailingRemoveHub())
        asyncio.run(seed_store(env, ENVIRONMENT, "A"))
        counts = asyncio.run(Uptake(**stage_kwargs(env), rate=1).tick(elapsed=1.0))
        assert counts["failures"] == 1
        assert len(env.hub.collection(ENVIRONMENT)) == 1
        assert env.capacity.used() == 1

    def test_rollback_failure_receipted(self):
        class BrokenHub(StoreHub):
            async def append(self, collection, record):
                raise StoreFailure("down", {"collection": collection})

        env = build_env(hub=BrokenHub())
        record = make_symbol("A")
        env.capacity.admit(record, force=True)
        env.hub.collection(ENVIRONMENT)._records[record["id"]] = record
        counts = asyncio.run(Uptake(**stage_kwargs(env), rate=1).tick(elapsed=1.0))
        assert counts["failures"] == 1
        assert len(load_receipts("rollback_failed")) == 1
        assert env.capacity.used() == 0

    def test_ledger_write_failure_keeps_record(self, monkeypatch, tmp_path):
        """A warning receipt that cannot be written leaves the record where it was."""
        env = build_env(total=4, channel=4)
        records = asyncio.run(seed_store(env, ENVIRONMENT, "ABC"))
        assert env.capacity.level == "medium"

        monkeypatch.setenv("INFOLOOP_RECEIPTS", str(tmp_path))  # a directory
        uptake = Uptake(**stage_kwargs(env), rate=1)
        with pytest.raises(StopRule) as exc:
            asyncio.run(uptake.tick(elapsed=1.0))

        assert exc.value.rule_name == "receipt_emission"
        ids = {r["id"] for r in env.hub.collection(ENVIRONMENT).values()}
        assert ids == {r["id"] for r in records}
        assert len(env.hub.collection(UPTAKE)) == 0
        assert env.capacity.used() == 3
        assert env.capacity.level == "medium"


class TestRecycler:
    def test_force_admit_and_raw_form(self):
        env = build_env(total=3, channel=3)
        asyncio.run(seed_store(env, FILTERED, "ABC", kind="entropy"))
        recycler = Recycler(**stage_kwargs(env), rate=10)
        counts = asyncio.run(recycler.tick(elapsed=1.0))
        assert counts["moved"] == 3
        recycled = env.hub.collection(ENVIRONMENT).values()
        assert [r["kind"] for r in recycled] == ["data"] * 3
        assert [r["glyph"] for r in recycled] == ["A", "B", "C"]
        assert env.capacity.used() == 3


class TestLifecycle:
    def test_start_stop(self, env):
        uptake = Uptake(**stage_kwargs(env), rate=50)

        async def run():
            assert uptake.start() is True
            assert uptake.start() is False
            assert uptake.status == STATUS_RUNNING
            await asyncio.sleep(0.05)
            assert await uptake.stop() is True
            assert await uptake.stop() is False

        asyncio.run(run())
        assert uptake.status == STATUS_STOPPED
        assert len(load_receipts("stage_start")) == 1
        assert len(load_receipts("stage_stop")) == 1

    def test_zero_rate_never_starts(self, env):
        uptake = Uptake(**stage_kwargs(env), rate=0)
        assert uptake.start() is False
        assert uptake.status == STATUS_STOPPED

    def test_scheduled_ticks_move_records(self, env):
        asyncio.run(seed_store(env, ENVIRONMENT, "ABCDEFGHIJ"))
        uptake = Uptake(**stage_kwargs(env), rate=100)

        async def run():
            uptake.start()
            await asyncio.sleep(0.2)
            await uptake.stop()

        asyncio.run(run())
        assert len(env.hub.collection(UPTAKE)) > 0
        assert env.state.stage_counters("uptake")["ticks"] >= 1

    def test_rate_zero_while_running_stops(self, env):
        uptake = Uptake(**stage_kwargs(env), rate=10)

        async def run():
            uptake.start()
            uptake.set_rate(0)
            return env.scheduler.is_scheduled("uptake")

        assert asyncio.run(run()) is False
        assert uptake.status == STATUS_STOPPED
        assert load_receipts("stage_rate_change")[0]["rate"] == 0

    def test_rate_change_while_running_reschedules(self, env):
        records = asyncio.run(seed_store(env, ENVIRONMENT, "ABCDEFGHIJ"))
        uptake = Uptake(**stage_kwargs(env), rate=10)

        async def run():
            uptake.start()
            await asyncio.sleep(0.05)
            uptake.set_rate(200)
            status = uptake.status
            scheduled = env.scheduler.is_scheduled("uptake")
            await asyncio.sleep(0.05)
            await uptake.stop()
            return status, scheduled

        status, scheduled = asyncio.run(run())
        assert status == STATUS_RUNNING
        assert scheduled is True
        assert uptake.interval == pytest.approx(1 / 200)

        held = list(env.hub.collection(ENVIRONMENT).values())
        held += list(env.hub.collection(UPTAKE).values())
        assert {r["id"] for r in held} == {r["id"] for r in records}
        assert env.capacity.used() == 10
        change = load_receipts("stage_rate_change")[0]
        assert change["rate"] == 200
        assert change["status"] == STATUS_RUNNING


class TestSetters:
    def test_invalid_rate_keeps_prior(self, env):
        uptake = Uptake(**stage_kwargs(env), rate=10)
        with pytest.raises(InvalidParameter):
            uptake.set_rate(-1)
        assert uptake.rate == 10

    def test_invalid_loss_keeps_prior(self, env):
        pool = Pool(**stage_kwargs(env), loss_percent=5)
        with pytest.raises(InvalidParameter):
            pool.set_loss(150)
        assert pool.loss_percent == 5

    def test_distribution_pair(self, env):
        pool = Pool(**stage_kwargs(env))
        assert pool.set_distribution(70, 30) == (70.0, 30.0)
        with pytest.raises(InvalidParameter):
            pool.set_distribution(70, 40)
        assert pool.data_percent == 70

    def test_constructor_validates(self, env):
        with pytest.raises(InvalidParameter):
            Generator(**stage_kwargs(env), noise_percent=-1)

    def test_stats(self, env):
        stats = Pool(**stage_kwargs(env), rate=4).stats()
        assert stats["name"] == "pool"
        assert stats["source"] == UPTAKE
        assert stats["destination"] == POOL
        assert stats["rate"] == 4
        assert stats["data_percent"] == 50
        assert isinstance(stats["counters"], dict)


def test_reset_clears_reports(env):
    uptake = Uptake(**stage_kwargs(env))
    uptake._reported.add("x")
    uptake._last_tick = 3.0
    uptake.reset()
    assert uptake._reported == set()
    assert uptake._last_tick is None
