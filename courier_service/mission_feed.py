# mission_feed.py
"""
Streams pending missions to one driver as offers and withdraws offers
for missions that left pending.

The transport is at-least-once, so everything is deduped by mission id:
an id is offered at most once and withdrawn at most once, and an insert
that shows up after its withdrawal is ignored.
"""
import asyncio
import logging
from typing import Awaitable, Callable, Optional, Set, Union

from courier_service.changefeed import (
    ChangeEvent, ChangeFilter, ChangeType, FeedSubscription, Subscription, invoke,
)
from courier_service.errors import SubscriptionError
from courier_service.metrics import ACTIVE_SUBSCRIPTIONS, MISSION_OFFERS, MISSION_WITHDRAWALS
from courier_service.models import deliveries
from courier_service.schemas import Mission, MissionStatus
from courier_service.store import RelationalStore

logger = logging.getLogger("courier-service.mission_feed")

OnOffer = Callable[[Mission], Union[None, Awaitable[None]]]
OnWithdrawn = Callable[[str], Union[None, Awaitable[None]]]

PENDING = MissionStatus.pending.value
ACCEPTED = MissionStatus.accepted.value


class MissionFeed:
    def __init__(
        self,
        store: RelationalStore,
        driver_id: Optional[str] = None,
        backlog: bool = True,
        reconnect_delay: float = 1.0,
        max_reconnect_delay: float = 30.0,
    ):
        self.store = store
        self.driver_id = driver_id
        self.backlog = backlog
        self.reconnect_delay = reconnect_delay
        self.max_reconnect_delay = max_reconnect_delay

        self.held: Optional[str] = None
        self.offered: Set[str] = set()
        self.withdrawn: Set[str] = set()
        self.rejected: Set[str] = set()

        self._handle: Optional[Subscription] = None
        self._source: Optional[FeedSubscription] = None
        self._task: Optional[asyncio.Task] = None
        self._on_offer: Optional[OnOffer] = None
        self._on_withdrawn: Optional[OnWithdrawn] = None

    # -------------------------
    # Public API
    # -------------------------
    def subscribe(self, on_offer: OnOffer, on_withdrawn: OnWithdrawn) -> Subscription:
        if self._handle and not self._handle.closed:
            raise RuntimeError("MissionFeed is already subscribed")

        self._on_offer = on_offer
        self._on_withdrawn = on_withdrawn
        # open the stream before returning so nothing committed from now on is missed
        self._source = self._open()
        self._handle = Subscription(name=f"mission-feed:{self.driver_id}", on_close=self._teardown)
        self._task = asyncio.get_running_loop().create_task(self._run(self._handle))
        ACTIVE_SUBSCRIPTIONS.labels(kind="mission_feed").inc()
        logger.info(f"[MissionFeed] Driver {self.driver_id} subscribed")
        return self._handle

    def close(self) -> None:
        if self._handle:
            self._handle.close()

    def hold(self, mission_id: str) -> None:
        """Driver holds an accepted mission: stop surfacing offers."""
        self.held = mission_id
        logger.info(f"[MissionFeed] Offers paused for {self.driver_id} (active mission {mission_id})")

    async def release(self) -> None:
        """Active mission is over: resume and re-offer what is still pending."""
        self.held = None
        logger.info(f"[MissionFeed] Offers resumed for {self.driver_id}")
        if self._handle and not self._handle.closed and self.backlog:
            await self._load_backlog(self._handle)

    def reject(self, mission_id: str) -> None:
        """Local exclusion: this feed won't offer the mission again."""
        self.rejected.add(mission_id)

    @property
    def subscribed(self) -> bool:
        return self._handle is not None and not self._handle.closed

    # -------------------------
    # Internals
    # -------------------------
    def _open(self) -> FeedSubscription:
        return self.store.feed.subscribe(
            ChangeFilter.on(deliveries.name, ChangeType.INSERT, ChangeType.UPDATE)
        )

    def _teardown(self) -> None:
        if self._source:
            self._source.close()
        if self._task and not self._task.done():
            self._task.cancel()
        ACTIVE_SUBSCRIPTIONS.labels(kind="mission_feed").dec()
        logger.info(f"[MissionFeed] Driver {self.driver_id} unsubscribed")

    async def _run(self, handle: Subscription) -> None:
        delay = self.reconnect_delay
        while not handle.closed:
            try:
                await self._sync_active_mission()
                if self.backlog:
                    await self._load_backlog(handle)
                async for event in self._source:
                    if handle.closed:
                        return
                    await self._handle_event(handle, event)
                    delay = self.reconnect_delay
                return
            except asyncio.CancelledError:
                raise
            except SubscriptionError as e:
                logger.warning(f"[MissionFeed] Stream dropped for {self.driver_id}: {e}. Reconnecting in {delay:.1f}s")
            except Exception:
                logger.exception(f"[MissionFeed] Feed error for {self.driver_id}. Reconnecting in {delay:.1f}s")

            if self._source:
                self._source.close()
            await asyncio.sleep(delay)
            delay = min(delay * 2, self.max_reconnect_delay)
            if not handle.closed:
                self._source = self._open()

    async def _sync_active_mission(self) -> None:
        if not self.driver_id:
            return
        row = await self.store.select_one(
            deliveries,
            deliveries.c.driver_id == self.driver_id,
            deliveries.c.status == ACCEPTED,
        )
        if row:
            self.hold(row["id"])
        elif self.held:
            # held mission ended while the stream was down; the backlog load follows
            logger.info(f"[MissionFeed] Held mission {self.held} is over, offers resumed for {self.driver_id}")
            self.held = None

    async def _load_backlog(self, handle: Subscription) -> None:
        rows = await self.store.select(
            deliveries, deliveries.c.status == PENDING, order_by=deliveries.c.created_at.asc()
        )
        pending_ids = {row["id"] for row in rows}

        # offers whose withdrawal we missed while disconnected
        for mission_id in sorted(self.offered - self.withdrawn - pending_ids):
            await self._withdraw(handle, mission_id)

        for row in rows:
            await self._offer(handle, row)

    async def _handle_event(self, handle: Subscription, event: ChangeEvent) -> None:
        row = event.new
        mission_id = row.get("id")
        status = row.get("status")
        if not mission_id:
            return

        if event.type == ChangeType.INSERT and status == PENDING:
            await self._offer(handle, row)
        elif event.type == ChangeType.UPDATE and status != PENDING:
            await self._track_own(row)
            await self._withdraw(handle, mission_id)

    async def _track_own(self, row) -> None:
        if not self.driver_id:
            return
        if row.get("status") == ACCEPTED and row.get("driver_id") == self.driver_id:
            self.hold(row["id"])
        elif self.held == row["id"] and row.get("status") != ACCEPTED:
            await self.release()

    async def _offer(self, handle: Subscription, row) -> None:
        mission_id = row["id"]
        if handle.closed or self.held:
            return
        if mission_id in self.offered or mission_id in self.withdrawn or mission_id in self.rejected:
            return
        self.offered.add(mission_id)
        MISSION_OFFERS.inc()
        try:
            await invoke(self._on_offer, Mission.from_row(row))
        except Exception:
            logger.exception(f"[MissionFeed] on_offer failed for mission {mission_id}")

    async def _withdraw(self, handle: Subscription, mission_id: str) -> None:
        if handle.closed or mission_id in self.withdrawn:
            return
        self.withdrawn.add(mission_id)
        if mission_id not in self.offered:
            return
        MISSION_WITHDRAWALS.inc()
        try:
            await invoke(self._on_withdrawn, mission_id)
        except Exception:
            logger.exception(f"[MissionFeed] on_withdrawn failed for mission {mission_id}")
