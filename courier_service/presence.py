# presence.py
"""
Driver presence: the online flag and last known position on the driver's
profile row, written by the driver's own client only.
"""
import asyncio
import itertools
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from enum import Enum, IntEnum
from typing import Callable, Dict, List, Optional, Protocol, Set, Tuple

from courier_service.changefeed import Subscription
from courier_service.metrics import LOCATION_WRITES, ONLINE_DRIVERS
from courier_service.models import profiles
from courier_service.schemas import DriverPresence, LatLng, PositionSample
from courier_service.store import RelationalStore

logger = logging.getLogger("courier-service.presence")

STALE_AFTER = timedelta(minutes=5)


# ------------------------- GEOLOCATION SOURCE -------------------------
class PositionErrorCode(IntEnum):
    PERMISSION_DENIED = 1
    POSITION_UNAVAILABLE = 2
    TIMEOUT = 3


@dataclass(frozen=True)
class PositionError:
    code: PositionErrorCode
    message: str = ""


@dataclass(frozen=True)
class WatchOptions:
    enable_high_accuracy: bool = True
    maximum_age_ms: int = 0
    timeout_ms: Optional[int] = None


class PositionSource(Protocol):
    def watch_position(
        self,
        on_update: Callable[[PositionSample], None],
        on_error: Callable[[PositionError], None],
        options: Optional[WatchOptions] = None,
    ) -> int: ...

    def clear_watch(self, watch_id: int) -> None: ...


class QueuePositionSource:
    """Position source fed from the outside (the device's location socket)."""

    def __init__(self):
        self._ids = itertools.count(1)
        self._watches: Dict[int, Tuple[Callable, Callable]] = {}

    @property
    def active_watches(self) -> int:
        return len(self._watches)

    def watch_position(self, on_update, on_error, options: Optional[WatchOptions] = None) -> int:
        watch_id = next(self._ids)
        self._watches[watch_id] = (on_update, on_error)
        return watch_id

    def clear_watch(self, watch_id: int) -> None:
        self._watches.pop(watch_id, None)

    def push(self, sample: PositionSample) -> None:
        for on_update, _ in list(self._watches.values()):
            on_update(sample)

    def push_error(self, error: PositionError) -> None:
        for _, on_error in list(self._watches.values()):
            on_error(error)


# ------------------------- REPORTER -------------------------
class LocationState(str, Enum):
    IDLE = "idle"
    WATCHING = "watching"
    DENIED = "denied"
    UNAVAILABLE = "unavailable"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class LocationReporter:
    """
    Pushes every position sample to the driver's presence record.

    Writes are fire-and-forget: a failed write is logged and the next
    sample overwrites it anyway. After go_offline() returns nothing else
    is written for this driver.
    """

    def __init__(
        self,
        store: RelationalStore,
        driver_id: str,
        source: PositionSource,
        options: Optional[WatchOptions] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.store = store
        self.driver_id = driver_id
        self.source = source
        self.options = options or WatchOptions()
        self.clock = clock

        self.online = False
        self.state = LocationState.IDLE
        self.position: Optional[LatLng] = None
        self.last_error: Optional[PositionError] = None

        self._watch_id: Optional[int] = None
        self._writes: Set[asyncio.Task] = set()
        self._listeners: Set[Callable[[Optional[LatLng]], None]] = set()

    # -------------------------
    # Online toggle
    # -------------------------
    async def go_online(self) -> None:
        if self.online:
            return
        # claim the flag before awaiting so overlapping calls start one watch
        self.online = True
        ONLINE_DRIVERS.inc()
        try:
            await self.store.update(
                profiles,
                {"is_online": True, "updated_at": self.clock()},
                profiles.c.id == self.driver_id,
            )
        except Exception:
            if self.online:
                self.online = False
                ONLINE_DRIVERS.dec()
            raise
        if not self.online:
            # go_offline() ran while the flag was being written
            return
        self._start_watch()
        logger.info(f"[Presence] Driver {self.driver_id} is online")

    async def go_offline(self) -> None:
        if not self.online:
            return
        self.online = False
        ONLINE_DRIVERS.dec()
        self._stop_watch()

        pending = list(self._writes)
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)

        self.state = LocationState.IDLE
        try:
            await self.store.update(
                profiles,
                {"is_online": False, "updated_at": self.clock()},
                profiles.c.id == self.driver_id,
            )
        finally:
            logger.info(f"[Presence] Driver {self.driver_id} is offline")

    def retry(self) -> bool:
        """Re-request the position watch after a permission denial."""
        if not self.online or self._watch_id is not None:
            return False
        self.last_error = None
        self._start_watch()
        return True

    # -------------------------
    # Listeners
    # -------------------------
    def watch(self, listener: Callable[[Optional[LatLng]], None]) -> Subscription:
        self._listeners.add(listener)
        return Subscription(
            name=f"presence:{self.driver_id}",
            on_close=lambda: self._listeners.discard(listener),
        )

    def _notify(self) -> None:
        for listener in list(self._listeners):
            try:
                listener(self.position)
            except Exception:
                logger.exception("[Presence] Position listener failed")

    # -------------------------
    # Source callbacks
    # -------------------------
    def _start_watch(self) -> None:
        self.state = LocationState.WATCHING
        if self._watch_id is None:
            self._watch_id = self.source.watch_position(self._on_update, self._on_error, self.options)

    def _stop_watch(self) -> None:
        if self._watch_id is not None:
            self.source.clear_watch(self._watch_id)
            self._watch_id = None

    def _on_update(self, sample: PositionSample) -> None:
        if not self.online:
            return
        self.state = LocationState.WATCHING
        self.position = LatLng(sample.lat, sample.lng)
        self._notify()

        task = asyncio.get_running_loop().create_task(self._write(sample))
        self._writes.add(task)
        task.add_done_callback(self._writes.discard)

    def _on_error(self, error: PositionError) -> None:
        self.last_error = error
        if error.code == PositionErrorCode.PERMISSION_DENIED:
            logger.warning(f"[Presence] Location permission denied for {self.driver_id}")
            self.state = LocationState.DENIED
            self.position = None
            self._stop_watch()
            self._notify()
        else:
            logger.warning(f"[Presence] Position unavailable for {self.driver_id}: {error.message}")
            self.state = LocationState.UNAVAILABLE

    async def _write(self, sample: PositionSample) -> None:
        try:
            await self.store.update(
                profiles,
                {
                    "current_lat": sample.lat,
                    "current_lng": sample.lng,
                    "last_location_update": self.clock(),
                },
                profiles.c.id == self.driver_id,
            )
            LOCATION_WRITES.labels(result="ok").inc()
        except asyncio.CancelledError:
            raise
        except Exception as e:
            LOCATION_WRITES.labels(result="failed").inc()
            logger.warning(f"[Presence] Location write failed for {self.driver_id}: {e}")


# ------------------------- FRESHNESS -------------------------
def is_stale(presence: DriverPresence, now: Optional[datetime] = None, threshold: timedelta = STALE_AFTER) -> bool:
    return presence.is_stale(now=now, threshold=threshold)


async def get_presence(store: RelationalStore, driver_id: str) -> Optional[DriverPresence]:
    row = await store.select_one(profiles, profiles.c.id == driver_id)
    return DriverPresence.from_profile(row) if row else None


async def list_online_drivers(
    store: RelationalStore,
    fresh_only: bool = True,
    now: Optional[datetime] = None,
    threshold: timedelta = STALE_AFTER,
) -> List[DriverPresence]:
    rows = await store.select(profiles, profiles.c.is_online.is_(True))
    drivers = [DriverPresence.from_profile(row) for row in rows]
    if fresh_only:
        drivers = [d for d in drivers if not d.is_stale(now=now, threshold=threshold)]
    return drivers
