# metrics.py
from prometheus_client import Counter, Gauge

MISSION_OFFERS = Counter(
    "courier_mission_offers_total",
    "Mission offers surfaced to drivers"
)

MISSION_WITHDRAWALS = Counter(
    "courier_mission_withdrawals_total",
    "Offers withdrawn because the mission left pending"
)

MISSION_CLAIMS = Counter(
    "courier_mission_claims_total",
    "Mission claim / complete / reject outcomes",
    ["operation", "outcome"]
)

LOCATION_WRITES = Counter(
    "courier_location_writes_total",
    "Presence writes by result",
    ["result"]
)

ROUTE_REQUESTS = Counter(
    "courier_route_requests_total",
    "Route computations by result",
    ["result"]
)

ACTIVE_SUBSCRIPTIONS = Gauge(
    "courier_active_subscriptions",
    "Live mission feed / tracker subscriptions",
    ["kind"]
)

ONLINE_DRIVERS = Gauge(
    "courier_online_drivers",
    "Drivers currently reporting location from this instance"
)
