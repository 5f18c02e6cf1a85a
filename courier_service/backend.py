# backend.py
import logging
from dataclasses import dataclass

from sqlalchemy.ext.asyncio import AsyncEngine

from courier_service.auth import AuthProvider
from courier_service.changefeed import ChangeFeed
from courier_service.config import Settings
from courier_service.database import create_engine, create_tables
from courier_service.storage import ObjectStorage
from courier_service.store import RelationalStore

logger = logging.getLogger("courier-service.backend")


@dataclass
class BackendClient:
    """
    Everything the core talks to, built once and passed in explicitly.
    Components never reach for a module-level client.
    """
    engine: AsyncEngine
    feed: ChangeFeed
    store: RelationalStore
    auth: AuthProvider
    storage: ObjectStorage

    async def connect(self) -> None:
        await create_tables(self.engine)
        logger.info("[Backend] Database ready.")

    async def close(self) -> None:
        self.feed.fail_all(ConnectionError("backend closed"))
        await self.engine.dispose()
        logger.info("[Backend] Disconnected.")


def create_backend(settings: Settings) -> BackendClient:
    engine = create_engine(settings.database_url)
    feed = ChangeFeed()
    store = RelationalStore(engine, feed)
    auth = AuthProvider(
        store,
        secret=settings.jwt_secret,
        algorithm=settings.jwt_algorithm,
        exp_minutes=settings.jwt_exp_minutes,
    )
    storage = ObjectStorage(
        use_aws=settings.use_aws,
        bucket=settings.storage_bucket,
        local_dir=settings.local_storage_dir,
        public_base_url=settings.public_storage_url,
        region=settings.aws_region,
    )
    return BackendClient(engine=engine, feed=feed, store=store, auth=auth, storage=storage)
