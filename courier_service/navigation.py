# navigation.py
import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, Optional, Union

from courier_service.changefeed import Subscription, invoke
from courier_service.presence import LocationReporter
from courier_service.routing import (
    RouteEngine, RouteFailed, RouteKey, RouteLeg, RouteResult, Viewport, ViewportCommand, waypoints_for_phase,
)
from courier_service.schemas import LatLng
from courier_service.tracker import ActiveMissionTracker, DriverStatus, TrackerState

logger = logging.getLogger("courier-service.navigation")


@dataclass(frozen=True)
class NavigationUpdate:
    mission_id: str
    phase: DriverStatus
    state: TrackerState
    route: Optional[RouteLeg] = None
    failure: Optional[RouteFailed] = None
    viewport: Optional[ViewportCommand] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "mission_id": self.mission_id,
            "phase": self.phase.value,
            "state": self.state.value,
            "route": self.route.to_dict() if self.route else None,
            "failure": self.failure.to_dict() if self.failure else None,
            "viewport": self.viewport.to_dict() if self.viewport else None,
        }


OnUpdate = Callable[[NavigationUpdate], Union[None, Awaitable[None]]]


class NavigationSession:
    """
    Keeps the route for the tracker's current leg up to date.

    Recomputes on a phase change or when the driver's position moves to
    another grid cell; stops and clears itself when the tracker ends.
    """

    def __init__(
        self,
        tracker: ActiveMissionTracker,
        engine: RouteEngine,
        on_update: OnUpdate,
        reporter: Optional[LocationReporter] = None,
    ):
        self.tracker = tracker
        self.engine = engine
        self.reporter = reporter
        self.on_update = on_update
        self.viewport = Viewport()

        self.position: Optional[LatLng] = reporter.position if reporter else None
        self.route: Optional[RouteLeg] = None
        self._last_key: Optional[RouteKey] = None
        self._last_phase: Optional[DriverStatus] = None
        self._dirty = False
        self._task: Optional[asyncio.Task] = None
        self._handle: Optional[Subscription] = None
        self._subs = []

    def start(self) -> Subscription:
        if self._handle is not None:
            return self._handle
        self._handle = Subscription(name=f"navigation:{self.tracker.mission.id}", on_close=self._teardown)
        self._subs.append(self.tracker.add_listener(self._on_tracker))
        if self.reporter:
            self._subs.append(self.reporter.watch(self._on_position))
        self._schedule()
        return self._handle

    def close(self) -> None:
        if self._handle:
            self._handle.close()

    def update_position(self, position: Optional[LatLng]) -> None:
        self._on_position(position)

    async def mark_interaction(self) -> None:
        self.viewport.mark_interaction()

    async def recenter(self) -> None:
        command = self.viewport.recenter(self._points())
        await self._emit(viewport=command)

    # -------------------------
    # Triggers
    # -------------------------
    def _on_position(self, position: Optional[LatLng]) -> None:
        self.position = position
        self._schedule()

    async def _on_tracker(self, tracker: ActiveMissionTracker) -> None:
        if tracker.terminated:
            self.route = None
            self._last_key = None
            await self._emit()
            self.close()
            return
        self._schedule()

    def _schedule(self) -> None:
        if self._handle is None or self._handle.closed:
            return
        if self._task and not self._task.done():
            self._dirty = True
            return
        self._task = asyncio.get_running_loop().create_task(self._refresh())

    async def _refresh(self) -> None:
        while True:
            self._dirty = False
            try:
                await self._refresh_once()
            except Exception:
                logger.exception(f"[Navigation] Refresh failed for mission {self.tracker.mission.id}")
            if not self._dirty or self._handle.closed:
                return

    async def _refresh_once(self) -> None:
        if self.tracker.state != TrackerState.ACTIVE:
            return
        phase = self.tracker.phase
        waypoints = waypoints_for_phase(phase, self.tracker.mission)
        if not waypoints:
            return

        key = self.engine.key_for(self.position, waypoints) if self.position else None
        if key is not None and key == self._last_key and phase == self._last_phase:
            return

        result: RouteResult = await self.engine.compute_route(self.position, waypoints)
        if self._handle.closed or self.tracker.phase != phase:
            # stale leg; the phase change already marked us dirty
            return
        self._last_key = key
        self._last_phase = phase

        if isinstance(result, RouteLeg):
            self.route = result
            await self._emit(viewport=self.viewport.fit(self._points()))
        else:
            self.route = None
            self._last_key = None
            await self._emit(failure=result)

    # -------------------------
    # Output
    # -------------------------
    def _points(self):
        points = [self.position] if self.position else []
        points.extend(waypoints_for_phase(self.tracker.phase, self.tracker.mission))
        return points

    async def _emit(self, failure: Optional[RouteFailed] = None, viewport: Optional[ViewportCommand] = None) -> None:
        if self._handle is None or self._handle.closed:
            return
        update = NavigationUpdate(
            mission_id=self.tracker.mission.id,
            phase=self.tracker.phase,
            state=self.tracker.state,
            route=self.route,
            failure=failure,
            viewport=viewport,
        )
        try:
            await invoke(self.on_update, update)
        except Exception:
            logger.exception("[Navigation] on_update failed")

    def _teardown(self) -> None:
        for sub in self._subs:
            sub.close()
        self._subs.clear()
        if self._task and not self._task.done() and self._task is not asyncio.current_task():
            self._task.cancel()
        self.route = None
        logger.info(f"[Navigation] Session closed for mission {self.tracker.mission.id}")
