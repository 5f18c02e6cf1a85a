# config.py
import os
from dataclasses import dataclass
from typing import Mapping, Optional
from urllib.parse import urlparse

from dotenv import load_dotenv

from courier_service.errors import ConfigurationError

load_dotenv()

# ------------------------- DEFAULTS -------------------------
DEFAULT_ROUTING_URL = "https://router.project-osrm.org"
DEFAULT_STALE_AFTER_SECONDS = 300
DEFAULT_GRID_PRECISION = 4
DEFAULT_LOCAL_STORAGE = "./local_storage/courier-documents"


def _as_bool(value: Optional[str], default: bool = False) -> bool:
    if value is None:
        return default
    return value.strip().lower() in ("true", "1", "yes")


@dataclass(frozen=True)
class Settings:
    database_url: str
    jwt_secret: str
    jwt_algorithm: str = "HS256"
    jwt_exp_minutes: int = 60 * 24
    routing_base_url: str = DEFAULT_ROUTING_URL
    routing_profile: str = "driving"
    routing_timeout: float = 10.0
    route_grid_precision: int = DEFAULT_GRID_PRECISION
    route_cache_size: int = 128
    presence_stale_after: int = DEFAULT_STALE_AFTER_SECONDS
    feed_backlog: bool = True
    use_aws: bool = False
    aws_region: str = "us-east-1"
    storage_bucket: Optional[str] = None
    local_storage_dir: str = DEFAULT_LOCAL_STORAGE
    public_storage_url: Optional[str] = None
    allowed_origins: tuple = ("*",)


def load_settings(env: Optional[Mapping[str, str]] = None) -> Settings:
    """
    Build Settings from the environment (or an explicit mapping).
    Raises ConfigurationError on anything that would only blow up later
    in the hot path: missing database URL, empty JWT secret, S3 storage
    without a bucket, unusable routing URL.
    """
    env = os.environ if env is None else env

    database_url = env.get("DATABASE_URL")
    if not database_url:
        raise ConfigurationError("❌ DATABASE_URL is missing in environment variables!")

    jwt_secret = env.get("JWT_SECRET", "demo_secret")
    if not jwt_secret.strip():
        raise ConfigurationError("❌ JWT_SECRET must not be empty")

    routing_base_url = env.get("ROUTING_BASE_URL", DEFAULT_ROUTING_URL).rstrip("/")
    parsed = urlparse(routing_base_url)
    if parsed.scheme not in ("http", "https") or not parsed.netloc:
        raise ConfigurationError(f"❌ ROUTING_BASE_URL is not a valid http(s) URL: {routing_base_url!r}")

    use_aws = _as_bool(env.get("USE_AWS"))
    storage_bucket = env.get("COURIER_DOCUMENTS_BUCKET")
    if use_aws and not storage_bucket:
        raise ConfigurationError("❌ COURIER_DOCUMENTS_BUCKET is required when USE_AWS is enabled")

    try:
        precision = int(env.get("ROUTE_GRID_PRECISION", DEFAULT_GRID_PRECISION))
        stale_after = int(env.get("PRESENCE_STALE_AFTER_SECONDS", DEFAULT_STALE_AFTER_SECONDS))
        routing_timeout = float(env.get("ROUTING_TIMEOUT", "10"))
        exp_minutes = int(env.get("JWT_EXP_MINUTES", 60 * 24))
        cache_size = int(env.get("ROUTE_CACHE_SIZE", 128))
    except ValueError as e:
        raise ConfigurationError(f"❌ Invalid numeric setting: {e}") from e

    origins = tuple(
        o.strip() for o in env.get("ALLOWED_ORIGINS", "*").split(",") if o.strip()
    )

    return Settings(
        database_url=database_url,
        jwt_secret=jwt_secret,
        jwt_algorithm=env.get("JWT_ALGORITHM", "HS256"),
        jwt_exp_minutes=exp_minutes,
        routing_base_url=routing_base_url,
        routing_profile=env.get("ROUTING_PROFILE", "driving"),
        routing_timeout=routing_timeout,
        route_grid_precision=precision,
        route_cache_size=cache_size,
        presence_stale_after=stale_after,
        feed_backlog=_as_bool(env.get("FEED_BACKLOG"), default=True),
        use_aws=use_aws,
        aws_region=env.get("AWS_REGION", "us-east-1"),
        storage_bucket=storage_bucket,
        local_storage_dir=env.get("LOCAL_STORAGE_DIR", DEFAULT_LOCAL_STORAGE),
        public_storage_url=env.get("PUBLIC_STORAGE_URL"),
        allowed_origins=origins or ("*",),
    )
