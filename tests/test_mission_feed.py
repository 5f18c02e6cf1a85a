import asyncio

import pytest

from courier_service.changefeed import ChangeType
from courier_service.mission_feed import MissionFeed
from courier_service.models import deliveries


class Recorder:
    def __init__(self):
        self.offers = []
        self.withdrawn = []

    def on_offer(self, mission):
        self.offers.append(mission.id)

    def on_withdrawn(self, mission_id):
        self.withdrawn.append(mission_id)


@pytest.fixture
def open_feed(store):
    opened = []

    def _open(driver_id="alice", **kwargs):
        feed = MissionFeed(store, driver_id=driver_id, **kwargs)
        rec = Recorder()
        feed.subscribe(rec.on_offer, rec.on_withdrawn)
        opened.append(feed)
        return feed, rec

    yield _open
    for feed in opened:
        feed.close()


async def test_backlog_is_offered_on_subscribe(open_feed, new_mission, wait_until):
    first = await new_mission()
    second = await new_mission()

    feed, rec = open_feed()

    await wait_until(lambda: len(rec.offers) == 2)
    assert set(rec.offers) == {first.id, second.id}


async def test_new_mission_is_offered_live(open_feed, new_mission, wait_until):
    feed, rec = open_feed(backlog=False)
    await asyncio.sleep(0.05)

    mission = await new_mission()

    await wait_until(lambda: rec.offers == [mission.id])


async def test_duplicate_insert_is_offered_once(open_feed, new_mission, store, wait_until):
    feed, rec = open_feed()
    mission = await new_mission()
    await wait_until(lambda: rec.offers == [mission.id])

    row = await store.select_one(deliveries, deliveries.c.id == mission.id)
    store.feed.publish("deliveries", ChangeType.INSERT, row)
    store.feed.publish("deliveries", ChangeType.INSERT, row)
    await asyncio.sleep(0.05)

    assert rec.offers == [mission.id]


async def test_every_feed_sees_the_withdrawal_once(open_feed, new_mission, acceptance, dispatcher, wait_until):
    mission = await new_mission()
    feeds = [open_feed(driver) for driver in ("alice", "bob", "carol")]
    await wait_until(lambda: all(rec.offers == [mission.id] for _, rec in feeds))

    assert (await acceptance.accept(mission.id, "alice")).ok
    await wait_until(lambda: all(rec.withdrawn == [mission.id] for _, rec in feeds))

    # later transitions of the same row do not withdraw again
    await dispatcher.cancel(mission.id)
    await asyncio.sleep(0.05)
    assert all(rec.withdrawn == [mission.id] for _, rec in feeds)


async def test_insert_after_withdrawal_is_ignored(open_feed, store, wait_until):
    feed, rec = open_feed(backlog=False)
    await asyncio.sleep(0.05)

    store.feed.publish("deliveries", ChangeType.UPDATE, {"id": "ghost", "status": "cancelled"})
    store.feed.publish("deliveries", ChangeType.INSERT, {"id": "ghost", "status": "pending"})
    await wait_until(lambda: "ghost" in feed.withdrawn)
    await asyncio.sleep(0.05)

    assert rec.offers == []
    assert rec.withdrawn == []


async def test_no_callbacks_after_close_even_with_buffered_events(store, new_mission):
    await new_mission()
    baseline = store.feed.subscriber_count
    rec = Recorder()
    feed = MissionFeed(store, driver_id="alice")
    feed.subscribe(rec.on_offer, rec.on_withdrawn)
    assert store.feed.subscriber_count == baseline + 1

    store.feed.publish("deliveries", ChangeType.INSERT, {"id": "buffered", "status": "pending"})
    feed.close()
    feed.close()
    await asyncio.sleep(0.05)

    assert rec.offers == []
    assert not feed.subscribed
    assert store.feed.subscriber_count == baseline


async def test_subscribe_twice_is_an_error(open_feed):
    feed, _ = open_feed()
    with pytest.raises(RuntimeError):
        feed.subscribe(lambda m: None, lambda mid: None)


async def test_offers_pause_while_holding_a_mission(open_feed, new_mission, acceptance, wait_until):
    feed, rec = open_feed("alice")
    current = await new_mission()
    await wait_until(lambda: rec.offers == [current.id])

    await acceptance.accept(current.id, "alice")
    await wait_until(lambda: feed.held == current.id)

    waiting = await new_mission()
    await asyncio.sleep(0.05)
    assert waiting.id not in rec.offers

    await acceptance.complete(current.id, "alice")
    await wait_until(lambda: waiting.id in rec.offers)
    assert feed.held is None


async def test_feed_starts_held_when_driver_already_has_a_mission(open_feed, new_mission, acceptance, wait_until):
    current = await new_mission()
    other = await new_mission()
    await acceptance.accept(current.id, "alice")

    feed, rec = open_feed("alice")

    await wait_until(lambda: feed.held == current.id)
    await asyncio.sleep(0.05)
    assert other.id not in rec.offers


async def test_locally_rejected_mission_is_not_offered(open_feed, new_mission, wait_until):
    feed, rec = open_feed(backlog=False)
    feed.reject("m-rejected")
    await asyncio.sleep(0.05)

    await new_mission(mission_id="m-rejected")
    kept = await new_mission()

    await wait_until(lambda: rec.offers == [kept.id])


async def test_reconnect_resyncs_the_backlog(open_feed, new_mission, dispatcher, store, wait_until):
    before = await new_mission()
    feed, rec = open_feed(reconnect_delay=0.2)
    await wait_until(lambda: rec.offers == [before.id])

    store.feed.fail_all(ConnectionError("socket dropped"))
    await dispatcher.cancel(before.id)
    during = await new_mission()

    await wait_until(lambda: during.id in rec.offers)
    await wait_until(lambda: rec.withdrawn == [before.id])
    assert rec.offers.count(before.id) == 1
    assert feed.subscribed


async def test_reconnect_releases_a_hold_that_ended_while_disconnected(
    open_feed, new_mission, acceptance, store, wait_until,
):
    feed, rec = open_feed("alice", reconnect_delay=0.3)
    current = await new_mission()
    await wait_until(lambda: rec.offers == [current.id])
    await acceptance.accept(current.id, "alice")
    await wait_until(lambda: feed.held == current.id)

    store.feed.fail_all(ConnectionError("socket dropped"))
    await acceptance.complete(current.id, "alice")
    waiting = await new_mission()

    await wait_until(lambda: waiting.id in rec.offers)
    assert feed.held is None
