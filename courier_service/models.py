# models.py
from datetime import datetime, timezone
from sqlalchemy import (
    Table, Column, String, Float, Integer, Boolean, DateTime, JSON, MetaData, UniqueConstraint, Index,
)

metadata = MetaData()


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ------------------------
# Auth users
# ------------------------
auth_users = Table(
    "auth_users",
    metadata,
    Column("id", String, primary_key=True),
    Column("email", String, unique=True, index=True, nullable=False),
    Column("password_hash", String, nullable=False),
    Column("role", String, nullable=False, default="driver"),
    Column("created_at", DateTime(timezone=True), default=utcnow),
)

# ------------------------
# Driver profiles (presence lives here)
# ------------------------
profiles = Table(
    "profiles",
    metadata,
    Column("id", String, primary_key=True),
    Column("name", String, nullable=True),
    Column("phone", String, nullable=True),
    Column("cpf", String, nullable=True),
    Column("avatar_url", String, nullable=True),
    Column("work_city", String, nullable=True),
    Column("status", String, default="pending"),
    Column("is_online", Boolean, nullable=False, default=False),
    Column("current_lat", Float, nullable=True),
    Column("current_lng", Float, nullable=True),
    Column("last_location_update", DateTime(timezone=True), nullable=True),
    Column("updated_at", DateTime(timezone=True), default=utcnow),
)

# ------------------------
# Deliveries (missions)
# ------------------------
deliveries = Table(
    "deliveries",
    metadata,
    Column("id", String, primary_key=True),
    Column("status", String, nullable=False, default="pending", index=True),
    Column("store_name", String, nullable=True),
    Column("store_address", String, nullable=False),
    Column("store_lat", Float, nullable=True),
    Column("store_lng", Float, nullable=True),
    Column("store_phone", String, nullable=True),
    Column("customer_name", String, nullable=True),
    Column("customer_address", String, nullable=False),
    Column("customer_lat", Float, nullable=True),
    Column("customer_lng", Float, nullable=True),
    Column("customer_phone", String, nullable=True),
    Column("driver_id", String, nullable=True, index=True),
    Column("earnings", Float, nullable=False, default=0.0),
    Column("distance_to_store", Float, nullable=True),
    Column("delivery_distance", Float, nullable=True),
    Column("total_distance", Float, nullable=True),
    Column("time_limit", Integer, nullable=True),
    Column("collection_code", String, nullable=True),
    Column("items", JSON, nullable=True),
    Column("accepted_at", DateTime(timezone=True), nullable=True),
    Column("completed_at", DateTime(timezone=True), nullable=True),
    Column("created_at", DateTime(timezone=True), default=utcnow),
)

# at most one accepted mission per driver, even for concurrent claims
Index(
    "uq_deliveries_one_accepted_per_driver",
    deliveries.c.driver_id,
    unique=True,
    postgresql_where=deliveries.c.status == "accepted",
    sqlite_where=deliveries.c.status == "accepted",
)

# ------------------------
# Per-driver daily counters
# ------------------------
daily_stats = Table(
    "daily_stats",
    metadata,
    Column("id", String, primary_key=True),
    Column("user_id", String, nullable=False, index=True),
    Column("date", String, nullable=False),
    Column("accepted", Integer, nullable=False, default=0),
    Column("finished", Integer, nullable=False, default=0),
    Column("rejected", Integer, nullable=False, default=0),
    Column("earnings", Float, nullable=False, default=0.0),
    UniqueConstraint("user_id", "date", name="uq_daily_stats_user_date"),
)

# ------------------------
# Earnings ledger
# ------------------------
transactions = Table(
    "transactions",
    metadata,
    Column("id", String, primary_key=True),
    Column("user_id", String, nullable=False, index=True),
    Column("delivery_id", String, nullable=True, unique=True),
    Column("type", String, nullable=False, default="delivery"),
    Column("amount", Float, nullable=False),
    Column("status", String, nullable=False, default="COMPLETED"),
    Column("week_id", String, nullable=False, index=True),
    Column("created_at", DateTime(timezone=True), default=utcnow),
)
