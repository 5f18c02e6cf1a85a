# store.py
import logging
from typing import Any, Dict, List, Optional

from sqlalchemy import Table, insert, select, update
from sqlalchemy.ext.asyncio import AsyncEngine

from courier_service.changefeed import ChangeFeed, ChangeType

logger = logging.getLogger("courier-service.store")


class RelationalStore:
    """
    Row-level select / insert / update over SQLAlchemy Core.

    update() is the conditional-write primitive: it runs a single
    UPDATE ... WHERE ... RETURNING and hands back the rows it actually
    changed, so callers can tell a lost race (no rows) from a win.
    Every committed write is published to the change feed.
    """

    def __init__(self, engine: AsyncEngine, feed: ChangeFeed):
        self.engine = engine
        self.feed = feed

    async def select(self, table: Table, *where, order_by=None, limit: Optional[int] = None) -> List[Dict[str, Any]]:
        query = select(table)
        if where:
            query = query.where(*where)
        if order_by is not None:
            query = query.order_by(order_by)
        if limit is not None:
            query = query.limit(limit)
        async with self.engine.connect() as conn:
            result = await conn.execute(query)
            return [dict(row) for row in result.mappings().all()]

    async def select_one(self, table: Table, *where) -> Optional[Dict[str, Any]]:
        rows = await self.select(table, *where, limit=1)
        return rows[0] if rows else None

    async def insert(self, table: Table, values: Dict[str, Any]) -> Dict[str, Any]:
        async with self.engine.begin() as conn:
            result = await conn.execute(insert(table).values(**values).returning(*table.c))
            row = dict(result.mappings().one())
        self.feed.publish(table.name, ChangeType.INSERT, row)
        return row

    async def update(self, table: Table, values: Dict[str, Any], *where) -> List[Dict[str, Any]]:
        if not where:
            raise ValueError("Refusing unconditional update")
        query = update(table).where(*where).values(**values).returning(*table.c)
        async with self.engine.begin() as conn:
            result = await conn.execute(query)
            rows = [dict(row) for row in result.mappings().all()]
        for row in rows:
            self.feed.publish(table.name, ChangeType.UPDATE, row)
        return rows
