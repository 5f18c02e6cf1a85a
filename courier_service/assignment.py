# assignment.py
"""
Mission claim protocol.

A claim is one conditional UPDATE: the row flips from pending to accepted
only if it is still pending (and the driver holds no other accepted
mission). Whoever's UPDATE matches wins; everyone else gets zero rows and
a Rejected result. Losing the race is the normal case, not an error.
"""
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Callable, List, Optional, Union

from sqlalchemy import and_, select
from sqlalchemy.exc import IntegrityError

from courier_service.metrics import MISSION_CLAIMS
from courier_service.models import deliveries
from courier_service.schemas import Mission, MissionStatus
from courier_service.stats import bump_daily_stats, record_earning
from courier_service.store import RelationalStore

logger = logging.getLogger("courier-service.assignment")


class RejectReason(str, Enum):
    ALREADY_TAKEN = "already_taken"
    DRIVER_BUSY = "driver_busy"
    NOT_FOUND = "not_found"
    NOT_ASSIGNED = "not_assigned"


@dataclass(frozen=True)
class Accepted:
    mission: Mission
    ok = True


@dataclass(frozen=True)
class Rejected:
    reason: RejectReason
    mission_id: str
    ok = False


ClaimResult = Union[Accepted, Rejected]


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class MissionAcceptance:
    def __init__(self, store: RelationalStore, clock: Callable[[], datetime] = utcnow):
        self.store = store
        self.clock = clock

    async def accept(self, mission_id: str, driver_id: str) -> ClaimResult:
        busy = deliveries.alias("busy")
        driver_is_busy = (
            select(busy.c.id)
            .where(busy.c.driver_id == driver_id, busy.c.status == MissionStatus.accepted.value)
            .exists()
        )

        try:
            rows = await self.store.update(
                deliveries,
                {
                    "status": MissionStatus.accepted.value,
                    "driver_id": driver_id,
                    "accepted_at": self.clock(),
                },
                and_(
                    deliveries.c.id == mission_id,
                    deliveries.c.status == MissionStatus.pending.value,
                    ~driver_is_busy,
                ),
            )
        except IntegrityError:
            # a concurrent claim by the same driver committed first (one-accepted-per-driver index)
            MISSION_CLAIMS.labels(operation="accept", outcome=RejectReason.DRIVER_BUSY.value).inc()
            logger.info(f"[Assignment] Driver {driver_id} lost mission {mission_id}: already holds another")
            return Rejected(reason=RejectReason.DRIVER_BUSY, mission_id=mission_id)

        if not rows:
            reason = await self._why_not_claimed(mission_id, driver_id)
            MISSION_CLAIMS.labels(operation="accept", outcome=reason.value).inc()
            logger.info(f"[Assignment] Driver {driver_id} lost mission {mission_id}: {reason.value}")
            return Rejected(reason=reason, mission_id=mission_id)

        mission = Mission.from_row(rows[0])
        MISSION_CLAIMS.labels(operation="accept", outcome="accepted").inc()
        logger.info(f"[Assignment] ✅ Mission {mission_id} accepted by driver {driver_id}")
        await self._bump(driver_id, accepted=1)
        return Accepted(mission=mission)

    async def complete(self, mission_id: str, driver_id: str) -> ClaimResult:
        rows = await self.store.update(
            deliveries,
            {"status": MissionStatus.completed.value, "completed_at": self.clock()},
            deliveries.c.id == mission_id,
            deliveries.c.driver_id == driver_id,
            deliveries.c.status == MissionStatus.accepted.value,
        )
        if not rows:
            MISSION_CLAIMS.labels(operation="complete", outcome="not_assigned").inc()
            logger.warning(f"[Assignment] Driver {driver_id} cannot complete mission {mission_id}")
            return Rejected(reason=RejectReason.NOT_ASSIGNED, mission_id=mission_id)

        mission = Mission.from_row(rows[0])
        MISSION_CLAIMS.labels(operation="complete", outcome="completed").inc()
        logger.info(f"[Assignment] 🏁 Mission {mission_id} completed by driver {driver_id}")
        await self._bump(driver_id, finished=1, earnings=mission.earnings)
        await self._credit(driver_id, mission)
        return Accepted(mission=mission)

    async def reject(self, mission_id: str, driver_id: str) -> None:
        """Logged and counted only. The mission stays in the pool for everyone else."""
        MISSION_CLAIMS.labels(operation="reject", outcome="rejected").inc()
        logger.info(f"[Assignment] Driver {driver_id} rejected mission {mission_id}")
        await self._bump(driver_id, rejected=1)

    async def active_mission(self, driver_id: str) -> Optional[Mission]:
        row = await self.store.select_one(
            deliveries,
            deliveries.c.driver_id == driver_id,
            deliveries.c.status == MissionStatus.accepted.value,
        )
        return Mission.from_row(row) if row else None

    async def deliveries_for(self, driver_id: str) -> List[Mission]:
        rows = await self.store.select(
            deliveries,
            deliveries.c.driver_id == driver_id,
            order_by=deliveries.c.created_at.desc(),
        )
        return [Mission.from_row(row) for row in rows]

    async def _why_not_claimed(self, mission_id: str, driver_id: str) -> RejectReason:
        row = await self.store.select_one(deliveries, deliveries.c.id == mission_id)
        if not row:
            return RejectReason.NOT_FOUND
        if row["status"] == MissionStatus.pending.value:
            # still pending, so the busy guard is what stopped us
            return RejectReason.DRIVER_BUSY
        return RejectReason.ALREADY_TAKEN

    async def _bump(self, driver_id: str, **deltas) -> None:
        try:
            await bump_daily_stats(self.store, driver_id, **deltas)
        except Exception:
            logger.exception(f"[Assignment] Failed to update daily stats for {driver_id}")

    async def _credit(self, driver_id: str, mission: Mission) -> None:
        try:
            await record_earning(self.store, driver_id, mission.id, mission.earnings)
        except Exception:
            logger.exception(f"[Assignment] Failed to record earnings for mission {mission.id}")
