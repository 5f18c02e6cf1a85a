import asyncio

import pytest

from courier_service.assignment import MissionAcceptance
from courier_service.backend import create_backend
from courier_service.config import load_settings
from courier_service.dispatcher import MissionDispatcher
from courier_service.models import profiles
from courier_service.schemas import MissionCreate


@pytest.fixture
def settings(tmp_path):
    return load_settings({
        "DATABASE_URL": f"sqlite+aiosqlite:///{tmp_path / 'courier.db'}",
        "JWT_SECRET": "test-secret",
        "LOCAL_STORAGE_DIR": str(tmp_path / "documents"),
    })


@pytest.fixture
async def backend(settings):
    client = create_backend(settings)
    await client.connect()
    yield client
    await client.close()


@pytest.fixture
def store(backend):
    return backend.store


@pytest.fixture
def dispatcher(store):
    return MissionDispatcher(store)


@pytest.fixture
def acceptance(store):
    return MissionAcceptance(store)


@pytest.fixture
def make_driver(store):
    async def _make(driver_id: str, **values):
        return await store.insert(profiles, {"id": driver_id, "name": driver_id, "is_online": False, **values})
    return _make


def mission_payload(**overrides) -> MissionCreate:
    data = {
        "store_name": "Padaria Central",
        "store_address": "Rua A, 100",
        "store_lat": -23.5505,
        "store_lng": -46.6333,
        "customer_name": "Ana",
        "customer_address": "Rua B, 200",
        "customer_lat": -23.5610,
        "customer_lng": -46.6550,
        "earnings": 12.5,
        "distance_to_store": 1.2,
        "delivery_distance": 3.4,
        "items": ["2x pão", "1x café"],
    }
    data.update(overrides)
    return MissionCreate(**data)


@pytest.fixture
def new_mission(dispatcher):
    async def _create(mission_id=None, **overrides):
        return await dispatcher.create(mission_payload(**overrides), mission_id=mission_id)
    return _create


@pytest.fixture
def wait_until():
    async def _wait(predicate, timeout: float = 2.0, interval: float = 0.01):
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        while not predicate():
            if loop.time() > deadline:
                raise AssertionError("condition not met in time")
            await asyncio.sleep(interval)
    return _wait
