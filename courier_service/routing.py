# routing.py
"""
Route / ETA for the current leg of a mission.

    RouteEngine.compute_route(origin, [pickup, dropoff])
        → snap every coordinate to a stable grid
        → cache hit?            return the memoized RouteLeg
        → same request running? wait for it
        → OSRM /route/v1/{profile}/lng,lat;lng,lat;...
        → sum the legs into one RouteLeg

GPS jitter inside one grid cell never reaches the provider. Provider
failures come back as RouteFailed and are not cached, so the next
trigger retries.

Note: OSRM uses lng,lat order (GeoJSON convention).
"""
import asyncio
import hashlib
import logging
import random
from collections import OrderedDict
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Dict, List, Optional, Sequence, Tuple, Union

import httpx

from courier_service.metrics import ROUTE_REQUESTS
from courier_service.schemas import LatLng, Mission
from courier_service.tracker import BEFORE_PICKUP, DriverStatus

logger = logging.getLogger("courier-service.routing")

# ============================================
# CONSTANTS
# ============================================

OSRM_BASE_URL = "https://router.project-osrm.org"
GRID_PRECISION = 4          # ~11 m cells
FLY_TO_ZOOM = 16
FIT_PADDING = 50
HEAT_COLORS = ("#FF6B00", "#FFD700")


class RoutingError(Exception):
    """Provider answered with something other than a usable route."""


# ============================================
# DATA
# ============================================

@dataclass(frozen=True)
class ProviderLeg:
    distance: float            # meters
    duration: float            # seconds
    polyline: Tuple[LatLng, ...]
    end_location: LatLng


@dataclass(frozen=True)
class RouteLeg:
    origin: LatLng
    destinations: Tuple[LatLng, ...]
    polyline: Tuple[LatLng, ...]
    total_distance: float
    total_duration: float
    legs: Tuple[ProviderLeg, ...] = field(default_factory=tuple)

    def eta(self, now: Optional[datetime] = None) -> datetime:
        now = now or datetime.now(timezone.utc)
        return now + timedelta(seconds=self.total_duration)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "origin": list(self.origin),
            "destinations": [list(d) for d in self.destinations],
            "polyline": [list(p) for p in self.polyline],
            "distance_m": round(self.total_distance, 1),
            "duration_s": round(self.total_duration, 1),
            "distance_km": round(self.total_distance / 1000, 2),
            "duration_min": round(self.total_duration / 60, 1),
            "eta": self.eta().isoformat(),
        }


class FailureReason(str, Enum):
    NO_LOCATION = "no_location"
    PROVIDER_ERROR = "provider_error"
    NO_ROUTE = "no_route"


@dataclass(frozen=True)
class RouteFailed:
    reason: FailureReason
    detail: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {"failed": True, "reason": self.reason.value, "detail": self.detail}


RouteResult = Union[RouteLeg, RouteFailed]
RouteKey = Tuple[LatLng, Tuple[LatLng, ...]]


# ============================================
# GRID
# ============================================

def snap(point: Sequence[float], precision: int = GRID_PRECISION) -> LatLng:
    lat, lng = point
    return LatLng(round(float(lat), precision) + 0.0, round(float(lng), precision) + 0.0)


def route_key(origin: Sequence[float], waypoints: Sequence[Sequence[float]], precision: int = GRID_PRECISION) -> RouteKey:
    return snap(origin, precision), tuple(snap(w, precision) for w in waypoints)


# ============================================
# OSRM CLIENT
# ============================================

class OsrmClient:
    def __init__(
        self,
        base_url: str = OSRM_BASE_URL,
        profile: str = "driving",
        timeout: float = 10.0,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.profile = profile
        self.timeout = timeout
        self._client = client
        self._owns_client = client is None

    @property
    def client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self.timeout)
        return self._client

    async def aclose(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None

    async def route(self, origin: LatLng, destination: LatLng, waypoints: Sequence[LatLng] = ()) -> Dict[str, List[ProviderLeg]]:
        points = [origin, *waypoints, destination]
        coords = ";".join(f"{p.lng},{p.lat}" for p in points)
        url = f"{self.base_url}/route/v1/{self.profile}/{coords}"
        params = {"overview": "false", "geometries": "geojson", "steps": "true"}

        resp = await self.client.get(url, params=params)
        resp.raise_for_status()
        data = resp.json()

        if data.get("code") != "Ok" or not data.get("routes"):
            raise RoutingError(data.get("message") or data.get("code") or "no routes")

        route = data["routes"][0]
        snapped = data.get("waypoints") or []
        legs = []
        for i, leg in enumerate(route.get("legs", [])):
            polyline: List[LatLng] = []
            for step in leg.get("steps", []):
                for lng, lat in step.get("geometry", {}).get("coordinates", []):
                    point = LatLng(lat, lng)
                    if not polyline or polyline[-1] != point:
                        polyline.append(point)
            if i + 1 < len(snapped):
                end_lng, end_lat = snapped[i + 1]["location"]
                end = LatLng(end_lat, end_lng)
            else:
                end = points[i + 1]
            legs.append(ProviderLeg(
                distance=float(leg.get("distance", 0.0)),
                duration=float(leg.get("duration", 0.0)),
                polyline=tuple(polyline) or (points[i], points[i + 1]),
                end_location=end,
            ))

        if not legs:
            raise RoutingError("route without legs")
        return {"legs": legs}


# ============================================
# ENGINE
# ============================================

class RouteEngine:
    def __init__(self, provider: OsrmClient, precision: int = GRID_PRECISION, cache_size: int = 128):
        self.provider = provider
        self.precision = precision
        self.cache_size = cache_size
        self._cache: "OrderedDict[RouteKey, RouteLeg]" = OrderedDict()
        self._inflight: Dict[RouteKey, asyncio.Task] = {}

    def key_for(self, origin: Sequence[float], waypoints: Sequence[Sequence[float]]) -> RouteKey:
        return route_key(origin, waypoints, self.precision)

    def clear(self) -> None:
        self._cache.clear()

    async def compute_route(self, origin: Optional[Sequence[float]], waypoints: Sequence[Sequence[float]]) -> RouteResult:
        if not 1 <= len(waypoints) <= 2:
            raise ValueError("compute_route takes one or two waypoints (pickup, dropoff)")
        if origin is None:
            ROUTE_REQUESTS.labels(result="no_location").inc()
            return RouteFailed(FailureReason.NO_LOCATION, "driver position unknown")

        key = self.key_for(origin, waypoints)
        cached = self._cache.get(key)
        if cached is not None:
            self._cache.move_to_end(key)
            ROUTE_REQUESTS.labels(result="cached").inc()
            return cached

        task = self._inflight.get(key)
        if task is None:
            task = asyncio.get_running_loop().create_task(self._fetch(key))
            self._inflight[key] = task
            task.add_done_callback(lambda _t, k=key: self._inflight.pop(k, None))
        return await asyncio.shield(task)

    async def _fetch(self, key: RouteKey) -> RouteResult:
        origin, destinations = key
        try:
            result = await self.provider.route(origin, destinations[-1], destinations[:-1])
        except httpx.HTTPError as e:
            ROUTE_REQUESTS.labels(result="failed").inc()
            logger.warning(f"[Routing] Request failed: {e}")
            return RouteFailed(FailureReason.PROVIDER_ERROR, str(e))
        except (RoutingError, KeyError, ValueError, TypeError) as e:
            ROUTE_REQUESTS.labels(result="failed").inc()
            logger.warning(f"[Routing] No usable route: {e}")
            return RouteFailed(FailureReason.NO_ROUTE, str(e))

        legs = tuple(result["legs"])
        polyline: List[LatLng] = []
        for leg in legs:
            for point in leg.polyline:
                if not polyline or polyline[-1] != point:
                    polyline.append(point)

        route = RouteLeg(
            origin=origin,
            destinations=destinations,
            polyline=tuple(polyline),
            total_distance=sum(leg.distance for leg in legs),
            total_duration=sum(leg.duration for leg in legs),
            legs=legs,
        )
        self._cache[key] = route
        while len(self._cache) > self.cache_size:
            self._cache.popitem(last=False)
        ROUTE_REQUESTS.labels(result="ok").inc()
        logger.info(
            f"[Routing] {len(legs)} leg(s), {route.total_distance / 1000:.2f} km, "
            f"{route.total_duration / 60:.1f} min"
        )
        return route


def waypoints_for_phase(phase: DriverStatus, mission: Mission) -> List[LatLng]:
    """Pickup + dropoff until the order is in hand, dropoff only afterwards."""
    store, customer = mission.store_location, mission.customer_location
    if phase in BEFORE_PICKUP:
        points = [store, customer]
    else:
        points = [customer]
    return [p for p in points if p is not None]


# ============================================
# VIEWPORT
# ============================================

@dataclass(frozen=True)
class FlyTo:
    center: LatLng
    zoom: int = FLY_TO_ZOOM

    def to_dict(self) -> Dict[str, Any]:
        return {"type": "fly_to", "center": list(self.center), "zoom": self.zoom}


@dataclass(frozen=True)
class FitBounds:
    south_west: LatLng
    north_east: LatLng
    padding: int = FIT_PADDING

    def to_dict(self) -> Dict[str, Any]:
        return {
            "type": "fit_bounds",
            "bounds": [list(self.south_west), list(self.north_east)],
            "padding": self.padding,
        }


ViewportCommand = Union[FlyTo, FitBounds]


class Viewport:
    """
    Decides when the map should move. Once the user pans or zooms by hand
    the viewport stays put until recenter() is called.
    """

    def __init__(self):
        self.user_interacted = False
        self.last_command: Optional[ViewportCommand] = None

    def mark_interaction(self) -> None:
        self.user_interacted = True

    def fit(self, points: Sequence[LatLng]) -> Optional[ViewportCommand]:
        if self.user_interacted or not points:
            return None
        command = self._command_for(points)
        if command == self.last_command:
            return None
        self.last_command = command
        return command

    def recenter(self, points: Sequence[LatLng]) -> Optional[ViewportCommand]:
        self.user_interacted = False
        self.last_command = None
        return self.fit(points)

    @staticmethod
    def _command_for(points: Sequence[LatLng]) -> ViewportCommand:
        if len(points) == 1:
            return FlyTo(center=LatLng(*points[0]))
        lats = [p[0] for p in points]
        lngs = [p[1] for p in points]
        return FitBounds(south_west=LatLng(min(lats), min(lngs)), north_east=LatLng(max(lats), max(lngs)))


# ============================================
# OVERLAYS
# ============================================

@dataclass(frozen=True)
class HeatSpot:
    center: LatLng
    radius: float
    color: str

    def to_dict(self) -> Dict[str, Any]:
        return {"center": list(self.center), "radius": round(self.radius, 1), "color": self.color}


def cell_seed(point: Sequence[float], precision: int) -> int:
    cell = snap(point, precision)
    digest = hashlib.sha1(f"{cell.lat:.{precision}f},{cell.lng:.{precision}f}".encode()).hexdigest()
    return int(digest[:12], 16)


def heat_overlay(center: Sequence[float], count: int = 5, precision: int = 3) -> List[HeatSpot]:
    """
    Demand hot spots around the driver. Seeded from the grid cell, so the
    same cell always draws the same circles.
    """
    rng = random.Random(cell_seed(center, precision))
    base = snap(center, precision)
    spots = []
    for i in range(count):
        spots.append(HeatSpot(
            center=LatLng(base.lat + (rng.random() - 0.5) * 0.02, base.lng + (rng.random() - 0.5) * 0.02),
            radius=300 + rng.random() * 200,
            color=HEAT_COLORS[i % 2],
        ))
    return spots
