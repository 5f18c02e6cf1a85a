# tracker.py
"""
Supervises one accepted mission.

Phases move forward only on explicit driver actions. In parallel the
tracker watches the mission row; an external cancellation ends the
tracker immediately. If the watch itself breaks the tracker goes to
ERROR (retryable) instead of silently showing a mission that may no
longer exist.
"""
import asyncio
import logging
from enum import Enum
from typing import Awaitable, Callable, Optional, Set, Union

from courier_service.assignment import Accepted, ClaimResult, MissionAcceptance
from courier_service.changefeed import ChangeFilter, ChangeType, FeedSubscription, Subscription, invoke
from courier_service.errors import InvalidTransition, SubscriptionError
from courier_service.metrics import ACTIVE_SUBSCRIPTIONS
from courier_service.models import deliveries
from courier_service.schemas import Mission, MissionStatus

logger = logging.getLogger("courier-service.tracker")


class DriverStatus(str, Enum):
    OFFLINE = "OFFLINE"
    ONLINE = "ONLINE"
    ALERTING = "ALERTING"
    GOING_TO_STORE = "GOING_TO_STORE"
    ARRIVED_AT_STORE = "ARRIVED_AT_STORE"
    PICKING_UP = "PICKING_UP"
    GOING_TO_CUSTOMER = "GOING_TO_CUSTOMER"
    ARRIVED_AT_CUSTOMER = "ARRIVED_AT_CUSTOMER"


MISSION_PHASES = (
    DriverStatus.GOING_TO_STORE,
    DriverStatus.ARRIVED_AT_STORE,
    DriverStatus.PICKING_UP,
    DriverStatus.GOING_TO_CUSTOMER,
    DriverStatus.ARRIVED_AT_CUSTOMER,
)

BEFORE_PICKUP = (DriverStatus.GOING_TO_STORE, DriverStatus.ARRIVED_AT_STORE, DriverStatus.PICKING_UP)


class TrackerState(str, Enum):
    ACTIVE = "active"
    ERROR = "error"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    CLOSED = "closed"


Listener = Callable[["ActiveMissionTracker"], Union[None, Awaitable[None]]]


class ActiveMissionTracker:
    def __init__(self, acceptance: MissionAcceptance, mission: Mission, driver_id: str):
        self.acceptance = acceptance
        self.store = acceptance.store
        self.mission = mission
        self.driver_id = driver_id

        self.phase = DriverStatus.GOING_TO_STORE
        self.state = TrackerState.ACTIVE
        self.error: Optional[str] = None

        self._listeners: Set[Listener] = set()
        self._handle: Optional[Subscription] = None
        self._source: Optional[FeedSubscription] = None
        self._task: Optional[asyncio.Task] = None

    # -------------------------
    # Lifecycle
    # -------------------------
    def start(self) -> Subscription:
        if self._handle is not None:
            return self._handle
        self._handle = Subscription(name=f"tracker:{self.mission.id}", on_close=self._teardown)
        self._watch()
        ACTIVE_SUBSCRIPTIONS.labels(kind="tracker").inc()
        logger.info(f"[Tracker] Tracking mission {self.mission.id} for driver {self.driver_id}")
        return self._handle

    def close(self) -> None:
        if self._handle:
            self._handle.close()

    @property
    def terminated(self) -> bool:
        return self.state in (TrackerState.COMPLETED, TrackerState.CANCELLED, TrackerState.CLOSED)

    def add_listener(self, listener: Listener) -> Subscription:
        self._listeners.add(listener)
        return Subscription(name="tracker-listener", on_close=lambda: self._listeners.discard(listener))

    # -------------------------
    # Driver actions
    # -------------------------
    async def advance(self) -> DriverStatus:
        if self.state != TrackerState.ACTIVE:
            raise InvalidTransition(self.phase, "advance")
        index = MISSION_PHASES.index(self.phase)
        if index == len(MISSION_PHASES) - 1:
            raise InvalidTransition(self.phase, "advance")
        self.phase = MISSION_PHASES[index + 1]
        logger.info(f"[Tracker] Mission {self.mission.id} → {self.phase.value}")
        await self._notify()
        return self.phase

    async def finish(self) -> ClaimResult:
        if self.state != TrackerState.ACTIVE or self.phase != DriverStatus.ARRIVED_AT_CUSTOMER:
            raise InvalidTransition(self.phase, "finish")
        result = await self.acceptance.complete(self.mission.id, self.driver_id)
        if isinstance(result, Accepted):
            self.mission = result.mission
            await self._terminate(TrackerState.COMPLETED)
        return result

    async def retry(self) -> bool:
        """Re-open the mission watch after an ERROR and re-check the row."""
        if self.state != TrackerState.ERROR or self._handle is None or self._handle.closed:
            return False
        self._watch()
        row = await self.store.select_one(deliveries, deliveries.c.id == self.mission.id)
        self.state = TrackerState.ACTIVE
        self.error = None
        if row is None:
            await self._terminate(TrackerState.CANCELLED)
        else:
            await self._apply(row)
            if not self.terminated:
                await self._notify()
        return True

    # -------------------------
    # Internals
    # -------------------------
    def _watch(self) -> None:
        self._source = self.store.feed.subscribe(
            ChangeFilter.on(deliveries.name, ChangeType.UPDATE, id=self.mission.id)
        )
        self._task = asyncio.get_running_loop().create_task(self._supervise(self._handle, self._source))

    def _teardown(self) -> None:
        if self._source:
            self._source.close()
        if self._task and not self._task.done() and self._task is not asyncio.current_task():
            self._task.cancel()
        if not self.terminated:
            self.state = TrackerState.CLOSED
        ACTIVE_SUBSCRIPTIONS.labels(kind="tracker").dec()
        logger.info(f"[Tracker] Stopped tracking mission {self.mission.id}")

    async def _supervise(self, handle: Subscription, source: FeedSubscription) -> None:
        try:
            async for event in source:
                if handle.closed:
                    return
                await self._apply(event.new)
                if self.terminated:
                    return
        except asyncio.CancelledError:
            raise
        except SubscriptionError as e:
            if handle.closed:
                return
            logger.warning(f"[Tracker] Lost mission watch for {self.mission.id}: {e}")
            self.state = TrackerState.ERROR
            self.error = str(e)
            await self._notify()

    async def _apply(self, row) -> None:
        status = row.get("status")
        mine = row.get("driver_id") == self.driver_id
        if mine and status == MissionStatus.accepted.value:
            return
        self.mission = Mission.from_row(row)
        if mine and status == MissionStatus.completed.value:
            await self._terminate(TrackerState.COMPLETED)
        else:
            # cancelled, handed back to the pool or given to someone else
            logger.warning(f"[Tracker] Mission {self.mission.id} was taken away ({status})")
            await self._terminate(TrackerState.CANCELLED)

    async def _terminate(self, state: TrackerState) -> None:
        if self.terminated:
            return
        self.state = state
        self.phase = DriverStatus.ONLINE
        if self._source:
            self._source.close()
        logger.info(f"[Tracker] Mission {self.mission.id} ended: {state.value}")
        await self._notify()
        if self._handle:
            self._handle.close()

    async def _notify(self) -> None:
        if self._handle is None or self._handle.closed:
            return
        for listener in list(self._listeners):
            try:
                await invoke(listener, self)
            except Exception:
                logger.exception("[Tracker] Listener failed")
