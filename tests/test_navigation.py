import httpx
import pytest

from courier_service.navigation import NavigationSession
from courier_service.presence import LocationReporter, QueuePositionSource
from courier_service.routing import FailureReason, FitBounds, OsrmClient, RouteEngine
from courier_service.schemas import LatLng, PositionSample
from courier_service.tracker import ActiveMissionTracker, DriverStatus, TrackerState

STORE = LatLng(-23.561, -46.655)
CUSTOMER = LatLng(-23.57, -46.64)
DRIVER = LatLng(-23.55, -46.63)


class Osrm:
    def __init__(self, status=200):
        self.status = status
        self.calls = 0

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.calls += 1
        coords = request.url.path.rsplit("/", 1)[-1].split(";")
        legs = [{"distance": 1000.0, "duration": 120.0, "steps": []} for _ in coords[1:]]
        return httpx.Response(self.status, json={"code": "Ok", "routes": [{"legs": legs}], "waypoints": []})


def engine_for(osrm: Osrm) -> RouteEngine:
    client = httpx.AsyncClient(transport=httpx.MockTransport(osrm))
    return RouteEngine(OsrmClient("http://osrm.test", client=client))


@pytest.fixture
async def tracker(acceptance, new_mission):
    mission = await new_mission(
        store_lat=STORE.lat, store_lng=STORE.lng, customer_lat=CUSTOMER.lat, customer_lng=CUSTOMER.lng,
    )
    accepted = (await acceptance.accept(mission.id, "alice")).mission
    t = ActiveMissionTracker(acceptance, accepted, "alice")
    t.start()
    yield t
    t.close()


async def test_route_follows_the_current_leg(tracker, wait_until):
    updates = []
    nav = NavigationSession(tracker, engine_for(Osrm()), on_update=updates.append)
    nav.update_position(DRIVER)
    nav.start()

    await wait_until(lambda: updates and updates[-1].route is not None)
    first = updates[-1]
    assert first.route.destinations == (STORE, CUSTOMER)
    assert first.route.total_distance == 2000.0
    assert isinstance(first.viewport, FitBounds)

    while tracker.phase != DriverStatus.GOING_TO_CUSTOMER:
        await tracker.advance()

    await wait_until(lambda: updates[-1].phase == DriverStatus.GOING_TO_CUSTOMER and updates[-1].route is not None)
    assert updates[-1].route.destinations == (CUSTOMER,)
    nav.close()


async def test_cancellation_clears_the_route(tracker, dispatcher, wait_until):
    updates = []
    nav = NavigationSession(tracker, engine_for(Osrm()), on_update=updates.append)
    nav.update_position(DRIVER)
    handle = nav.start()
    await wait_until(lambda: updates and updates[-1].route is not None)

    await dispatcher.cancel(tracker.mission.id)

    await wait_until(lambda: handle.closed)
    assert updates[-1].state == TrackerState.CANCELLED
    assert updates[-1].route is None
    assert nav.route is None


async def test_provider_failure_is_reported_and_retried(tracker, wait_until):
    osrm = Osrm(status=502)
    updates = []
    nav = NavigationSession(tracker, engine_for(osrm), on_update=updates.append)
    nav.update_position(DRIVER)
    nav.start()

    await wait_until(lambda: updates and updates[-1].failure is not None)
    assert updates[-1].failure.reason == FailureReason.PROVIDER_ERROR
    assert updates[-1].route is None

    osrm.status = 200
    nav.update_position(DRIVER)
    await wait_until(lambda: updates[-1].route is not None)
    assert osrm.calls == 2
    nav.close()


async def test_no_position_means_no_route(tracker, wait_until):
    updates = []
    nav = NavigationSession(tracker, engine_for(Osrm()), on_update=updates.append)
    nav.start()

    await wait_until(lambda: bool(updates))
    assert updates[-1].failure.reason == FailureReason.NO_LOCATION
    nav.close()


async def test_positions_come_from_the_reporter(tracker, store, make_driver, wait_until):
    await make_driver("alice")
    source = QueuePositionSource()
    reporter = LocationReporter(store, "alice", source)
    await reporter.go_online()

    updates = []
    nav = NavigationSession(tracker, engine_for(Osrm()), on_update=updates.append, reporter=reporter)
    nav.start()
    source.push(PositionSample(lat=DRIVER.lat, lng=DRIVER.lng))

    await wait_until(lambda: updates and updates[-1].route is not None)
    assert updates[-1].route.origin == DRIVER

    nav.close()
    await reporter.go_offline()


async def test_manual_pan_suppresses_auto_fit(tracker, wait_until):
    updates = []
    nav = NavigationSession(tracker, engine_for(Osrm()), on_update=updates.append)
    nav.update_position(DRIVER)
    nav.start()
    await wait_until(lambda: updates and updates[-1].route is not None)

    await nav.mark_interaction()
    await tracker.advance()
    await wait_until(lambda: updates[-1].phase == DriverStatus.ARRIVED_AT_STORE and updates[-1].route is not None)
    assert updates[-1].viewport is None

    await nav.recenter()
    assert updates[-1].viewport is not None
    nav.close()
