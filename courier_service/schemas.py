# schemas.py
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, List, Mapping, NamedTuple, Optional

from pydantic import BaseModel, ConfigDict, EmailStr, Field, field_validator


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """SQLite hands back naive datetimes; everything in here is UTC."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class LatLng(NamedTuple):
    lat: float
    lng: float


# ------------------------
# Missions
# ------------------------
class MissionStatus(str, Enum):
    pending = "pending"
    accepted = "accepted"
    completed = "completed"
    cancelled = "cancelled"


class MissionCreate(BaseModel):
    store_name: Optional[str] = None
    store_address: str
    store_lat: Optional[float] = None
    store_lng: Optional[float] = None
    store_phone: Optional[str] = None
    customer_name: Optional[str] = None
    customer_address: str
    customer_lat: Optional[float] = None
    customer_lng: Optional[float] = None
    customer_phone: Optional[str] = None
    earnings: float = 0.0
    distance_to_store: Optional[float] = None
    delivery_distance: Optional[float] = None
    total_distance: Optional[float] = None
    time_limit: Optional[int] = None
    collection_code: Optional[str] = None
    items: List[str] = Field(default_factory=list)


class Mission(MissionCreate):
    model_config = ConfigDict(from_attributes=True)

    id: str
    status: MissionStatus
    driver_id: Optional[str] = None
    accepted_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    created_at: Optional[datetime] = None

    @field_validator("items", mode="before")
    @classmethod
    def _items_default(cls, v):
        return v or []

    @field_validator("accepted_at", "completed_at", "created_at")
    @classmethod
    def _utc(cls, v):
        return as_utc(v)

    @property
    def store_location(self) -> Optional[LatLng]:
        if self.store_lat is None or self.store_lng is None:
            return None
        return LatLng(self.store_lat, self.store_lng)

    @property
    def customer_location(self) -> Optional[LatLng]:
        if self.customer_lat is None or self.customer_lng is None:
            return None
        return LatLng(self.customer_lat, self.customer_lng)

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> "Mission":
        return cls.model_validate(dict(row))


# ------------------------
# Presence
# ------------------------
class DriverPresence(BaseModel):
    driver_id: str
    is_online: bool = False
    lat: Optional[float] = None
    lng: Optional[float] = None
    last_update: Optional[datetime] = None

    @field_validator("last_update")
    @classmethod
    def _utc(cls, v):
        return as_utc(v)

    @classmethod
    def from_profile(cls, row: Mapping[str, Any]) -> "DriverPresence":
        return cls(
            driver_id=row["id"],
            is_online=bool(row.get("is_online")),
            lat=row.get("current_lat"),
            lng=row.get("current_lng"),
            last_update=row.get("last_location_update"),
        )

    def is_stale(self, now: Optional[datetime] = None, threshold: timedelta = timedelta(minutes=5)) -> bool:
        """Stale means older than threshold. is_online does not matter."""
        if self.last_update is None:
            return True
        now = as_utc(now) if now else datetime.now(timezone.utc)
        return now - self.last_update > threshold


class PositionSample(BaseModel):
    lat: float = Field(ge=-90, le=90)
    lng: float = Field(ge=-180, le=180)
    accuracy: Optional[float] = None


# ------------------------
# Auth
# ------------------------
class SignupRequest(BaseModel):
    email: EmailStr
    password: str
    name: Optional[str] = None
    phone: Optional[str] = None
    cpf: Optional[str] = None


class LoginRequest(BaseModel):
    email: EmailStr
    password: str


class Session(BaseModel):
    user_id: str
    role: str
    access_token: str
    expires_at: datetime


# ------------------------
# Routes
# ------------------------
class RouteRequest(BaseModel):
    origin: Optional[PositionSample] = None
    waypoints: List[PositionSample] = Field(min_length=1, max_length=2)


class DailyStats(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    user_id: str
    date: str
    accepted: int = 0
    finished: int = 0
    rejected: int = 0
    earnings: float = 0.0


class Transaction(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    user_id: str
    delivery_id: Optional[str] = None
    type: str
    amount: float
    status: str
    week_id: str
    created_at: Optional[datetime] = None

    @field_validator("created_at")
    @classmethod
    def _utc(cls, v):
        return as_utc(v)
