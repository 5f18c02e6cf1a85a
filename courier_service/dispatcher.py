# dispatcher.py
"""
Order-management side of the mission lifecycle: creating pending missions
and cancelling them. Used by the admin endpoints and the simulator; the
courier side only ever claims and completes.
"""
import logging
import random
import uuid
from typing import Optional

from courier_service.models import deliveries
from courier_service.schemas import Mission, MissionCreate, MissionStatus
from courier_service.store import RelationalStore

logger = logging.getLogger("courier-service.dispatcher")

CANCELLABLE = (MissionStatus.pending.value, MissionStatus.accepted.value)


def collection_code() -> str:
    return f"{random.randint(0, 9999):04d}"


class MissionDispatcher:
    def __init__(self, store: RelationalStore):
        self.store = store

    async def create(self, data: MissionCreate, mission_id: Optional[str] = None) -> Mission:
        values = data.model_dump()
        if values.get("total_distance") is None and None not in (
            values.get("distance_to_store"), values.get("delivery_distance")
        ):
            values["total_distance"] = values["distance_to_store"] + values["delivery_distance"]
        values["collection_code"] = values.get("collection_code") or collection_code()

        row = await self.store.insert(deliveries, {
            **values,
            "id": mission_id or str(uuid.uuid4()),
            "status": MissionStatus.pending.value,
            "driver_id": None,
        })
        mission = Mission.from_row(row)
        logger.info(f"[Dispatcher] 📦 Mission {mission.id} created ({mission.store_address} → {mission.customer_address})")
        return mission

    async def cancel(self, mission_id: str) -> Optional[Mission]:
        rows = await self.store.update(
            deliveries,
            {"status": MissionStatus.cancelled.value, "driver_id": None},
            deliveries.c.id == mission_id,
            deliveries.c.status.in_(CANCELLABLE),
        )
        if not rows:
            logger.info(f"[Dispatcher] Mission {mission_id} not cancellable")
            return None
        logger.info(f"[Dispatcher] 🚫 Mission {mission_id} cancelled")
        return Mission.from_row(rows[0])

    async def get(self, mission_id: str) -> Optional[Mission]:
        row = await self.store.select_one(deliveries, deliveries.c.id == mission_id)
        return Mission.from_row(row) if row else None
