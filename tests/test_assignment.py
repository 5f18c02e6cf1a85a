import asyncio

import pytest
from sqlalchemy.exc import IntegrityError

from courier_service.assignment import Accepted, RejectReason, Rejected
from courier_service.models import deliveries
from courier_service.schemas import MissionStatus
from courier_service.stats import get_balance, get_daily_stats, get_transactions, week_id


async def test_concurrent_accepts_have_exactly_one_winner(acceptance, new_mission, store):
    mission = await new_mission()
    drivers = [f"driver-{i}" for i in range(5)]

    results = await asyncio.gather(*(acceptance.accept(mission.id, d) for d in drivers))

    winners = [r for r in results if isinstance(r, Accepted)]
    losers = [r for r in results if isinstance(r, Rejected)]
    assert len(winners) == 1
    assert len(losers) == 4
    assert all(r.reason == RejectReason.ALREADY_TAKEN for r in losers)

    row = await store.select_one(deliveries, deliveries.c.id == mission.id)
    assert row["status"] == MissionStatus.accepted.value
    assert row["driver_id"] == winners[0].mission.driver_id


async def test_accept_after_someone_else_won(acceptance, new_mission):
    mission = await new_mission()
    first = await acceptance.accept(mission.id, "alice")
    second = await acceptance.accept(mission.id, "bob")

    assert first.ok
    assert first.mission.status == MissionStatus.accepted
    assert first.mission.accepted_at is not None
    assert not second.ok
    assert second.reason == RejectReason.ALREADY_TAKEN
    assert second.mission_id == mission.id


async def test_accept_unknown_mission(acceptance):
    result = await acceptance.accept("missing", "alice")
    assert result == Rejected(reason=RejectReason.NOT_FOUND, mission_id="missing")


async def test_driver_with_active_mission_cannot_claim_another(acceptance, new_mission, store):
    first = await new_mission()
    second = await new_mission()
    assert (await acceptance.accept(first.id, "alice")).ok

    result = await acceptance.accept(second.id, "alice")

    assert result.reason == RejectReason.DRIVER_BUSY
    row = await store.select_one(deliveries, deliveries.c.id == second.id)
    assert row["status"] == MissionStatus.pending.value
    assert row["driver_id"] is None


async def test_complete_only_by_assigned_driver(acceptance, new_mission):
    mission = await new_mission(earnings=20.0)
    await acceptance.accept(mission.id, "alice")

    stolen = await acceptance.complete(mission.id, "bob")
    assert stolen.reason == RejectReason.NOT_ASSIGNED

    done = await acceptance.complete(mission.id, "alice")
    assert done.ok
    assert done.mission.status == MissionStatus.completed
    assert done.mission.completed_at is not None

    again = await acceptance.complete(mission.id, "alice")
    assert again.reason == RejectReason.NOT_ASSIGNED


async def test_driver_is_free_again_after_completing(acceptance, new_mission):
    first = await new_mission()
    second = await new_mission()
    await acceptance.accept(first.id, "alice")
    await acceptance.complete(first.id, "alice")

    assert (await acceptance.accept(second.id, "alice")).ok
    active = await acceptance.active_mission("alice")
    assert active.id == second.id


async def test_reject_leaves_mission_in_pool(acceptance, new_mission, store):
    mission = await new_mission()
    await acceptance.reject(mission.id, "alice")

    row = await store.select_one(deliveries, deliveries.c.id == mission.id)
    assert row["status"] == MissionStatus.pending.value
    assert row["driver_id"] is None
    assert (await acceptance.accept(mission.id, "bob")).ok


async def test_daily_stats_follow_the_lifecycle(acceptance, new_mission, store):
    mission = await new_mission(earnings=15.0)
    other = await new_mission()

    await acceptance.reject(other.id, "alice")
    await acceptance.accept(mission.id, "alice")
    await acceptance.complete(mission.id, "alice")

    stats = await get_daily_stats(store, "alice")
    assert stats.accepted == 1
    assert stats.finished == 1
    assert stats.rejected == 1
    assert stats.earnings == 15.0


async def test_deliveries_for_driver(acceptance, new_mission):
    a = await new_mission()
    b = await new_mission()
    await new_mission()
    await acceptance.accept(a.id, "alice")
    await acceptance.complete(a.id, "alice")
    await acceptance.accept(b.id, "alice")

    missions = await acceptance.deliveries_for("alice")
    assert {m.id for m in missions} == {a.id, b.id}


async def test_database_refuses_a_second_accepted_mission_per_driver(acceptance, new_mission, store):
    first = await new_mission()
    second = await new_mission()
    await acceptance.accept(first.id, "alice")

    with pytest.raises(IntegrityError):
        await store.update(
            deliveries, {"status": "accepted", "driver_id": "alice"}, deliveries.c.id == second.id,
        )


async def test_claim_losing_on_the_unique_index_is_driver_busy(acceptance, new_mission, store, monkeypatch):
    held = await new_mission()
    wanted = await new_mission()
    await acceptance.accept(held.id, "alice")

    real_update = store.update

    async def update_without_busy_guard(table, values, *where):
        # the other claim commits after our guard was evaluated
        return await real_update(table, values, table.c.id == wanted.id, table.c.status == "pending")

    monkeypatch.setattr(store, "update", update_without_busy_guard)
    result = await acceptance.accept(wanted.id, "alice")
    monkeypatch.undo()

    assert result == Rejected(reason=RejectReason.DRIVER_BUSY, mission_id=wanted.id)
    row = await store.select_one(deliveries, deliveries.c.id == wanted.id)
    assert row["status"] == MissionStatus.pending.value
    assert row["driver_id"] is None


async def test_completion_credits_the_earnings_ledger(acceptance, new_mission, store):
    first = await new_mission(earnings=12.5)
    second = await new_mission(earnings=7.5)
    for mission in (first, second):
        await acceptance.accept(mission.id, "alice")
        await acceptance.complete(mission.id, "alice")
    await acceptance.complete(first.id, "alice")

    ledger = await get_transactions(store, "alice")
    assert {t.delivery_id for t in ledger} == {first.id, second.id}
    assert all(t.week_id == week_id() for t in ledger)
    assert await get_balance(store, "alice") == 20.0
    assert await get_transactions(store, "alice", "1999-W01") == []
    assert await get_balance(store, "bob") == 0.0
