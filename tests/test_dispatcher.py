from courier_service.schemas import MissionStatus
from courier_service.stats import bump_daily_stats, get_daily_stats


async def test_create_fills_derived_fields(new_mission):
    mission = await new_mission(distance_to_store=1.5, delivery_distance=2.5)

    assert mission.status == MissionStatus.pending
    assert mission.driver_id is None
    assert mission.total_distance == 4.0
    assert len(mission.collection_code) == 4
    assert mission.collection_code.isdigit()
    assert mission.items == ["2x pão", "1x café"]
    assert mission.store_location == (-23.5505, -46.6333)


async def test_create_keeps_explicit_id_and_code(new_mission):
    mission = await new_mission(mission_id="m-1", collection_code="0420")
    assert mission.id == "m-1"
    assert mission.collection_code == "0420"


async def test_cancel_clears_driver(dispatcher, acceptance, new_mission):
    mission = await new_mission()
    await acceptance.accept(mission.id, "alice")

    cancelled = await dispatcher.cancel(mission.id)

    assert cancelled.status == MissionStatus.cancelled
    assert cancelled.driver_id is None
    assert await dispatcher.cancel(mission.id) is None
    assert await acceptance.active_mission("alice") is None


async def test_completed_mission_is_not_cancellable(dispatcher, acceptance, new_mission):
    mission = await new_mission()
    await acceptance.accept(mission.id, "alice")
    await acceptance.complete(mission.id, "alice")

    assert await dispatcher.cancel(mission.id) is None
    assert (await dispatcher.get(mission.id)).status == MissionStatus.completed


async def test_stats_default_to_zero(store):
    stats = await get_daily_stats(store, "nobody", "2024-01-01")
    assert (stats.accepted, stats.finished, stats.rejected, stats.earnings) == (0, 0, 0, 0.0)


async def test_stats_accumulate(store):
    await bump_daily_stats(store, "alice", "2024-01-01", accepted=1)
    await bump_daily_stats(store, "alice", "2024-01-01", accepted=1, earnings=7.5)
    await bump_daily_stats(store, "alice", "2024-01-02", rejected=1)

    day_one = await get_daily_stats(store, "alice", "2024-01-01")
    assert day_one.accepted == 2
    assert day_one.earnings == 7.5
    assert (await get_daily_stats(store, "alice", "2024-01-02")).rejected == 1
