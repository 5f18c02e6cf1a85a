import pytest

from courier_service.config import load_settings
from courier_service.errors import ConfigurationError

BASE = {"DATABASE_URL": "sqlite+aiosqlite:///./courier.db", "JWT_SECRET": "s3cret"}


def test_defaults():
    settings = load_settings(BASE)
    assert settings.routing_base_url == "https://router.project-osrm.org"
    assert settings.route_grid_precision == 4
    assert settings.presence_stale_after == 300
    assert settings.feed_backlog is True
    assert settings.use_aws is False


def test_missing_database_url_fails_fast():
    with pytest.raises(ConfigurationError, match="DATABASE_URL"):
        load_settings({"JWT_SECRET": "x"})


def test_empty_jwt_secret_fails_fast():
    with pytest.raises(ConfigurationError, match="JWT_SECRET"):
        load_settings({**BASE, "JWT_SECRET": "  "})


def test_aws_storage_needs_a_bucket():
    with pytest.raises(ConfigurationError, match="COURIER_DOCUMENTS_BUCKET"):
        load_settings({**BASE, "USE_AWS": "true"})
    settings = load_settings({**BASE, "USE_AWS": "true", "COURIER_DOCUMENTS_BUCKET": "docs"})
    assert settings.storage_bucket == "docs"


def test_routing_url_must_be_http():
    with pytest.raises(ConfigurationError, match="ROUTING_BASE_URL"):
        load_settings({**BASE, "ROUTING_BASE_URL": "osrm.local"})
    settings = load_settings({**BASE, "ROUTING_BASE_URL": "http://osrm.local:5000/"})
    assert settings.routing_base_url == "http://osrm.local:5000"


def test_bad_numbers_are_configuration_errors():
    with pytest.raises(ConfigurationError):
        load_settings({**BASE, "ROUTE_GRID_PRECISION": "four"})


def test_configuration_error_is_a_runtime_error():
    assert issubclass(ConfigurationError, RuntimeError)


def test_allowed_origins_are_split():
    settings = load_settings({**BASE, "ALLOWED_ORIGINS": "http://a.test, http://b.test"})
    assert settings.allowed_origins == ("http://a.test", "http://b.test")
