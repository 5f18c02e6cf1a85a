# stats.py
import logging
import uuid
from datetime import date
from typing import List, Optional

from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError

from courier_service.models import daily_stats, transactions
from courier_service.schemas import DailyStats, Transaction
from courier_service.store import RelationalStore

logger = logging.getLogger("courier-service.stats")

COUNTERS = ("accepted", "finished", "rejected", "earnings")


def today() -> str:
    return date.today().isoformat()


async def get_daily_stats(store: RelationalStore, user_id: str, day: Optional[str] = None) -> DailyStats:
    day = day or today()
    row = await store.select_one(
        daily_stats,
        daily_stats.c.user_id == user_id,
        daily_stats.c.date == day,
    )
    if not row:
        return DailyStats(user_id=user_id, date=day)
    return DailyStats.model_validate(row)


async def bump_daily_stats(store: RelationalStore, user_id: str, day: Optional[str] = None, **deltas) -> DailyStats:
    """
    Add deltas to the driver's counters for the day, e.g.
    bump_daily_stats(store, uid, accepted=1).
    Counters are incremented in SQL so concurrent bumps don't lose updates.
    """
    unknown = set(deltas) - set(COUNTERS)
    if unknown:
        raise ValueError(f"Unknown counters: {sorted(unknown)}")
    day = day or today()
    where = (daily_stats.c.user_id == user_id, daily_stats.c.date == day)
    values = {name: daily_stats.c[name] + amount for name, amount in deltas.items()}

    for _ in range(2):
        rows = await store.update(daily_stats, values, *where) if values else []
        if rows:
            return DailyStats.model_validate(rows[0])
        try:
            row = await store.insert(daily_stats, {
                "id": str(uuid.uuid4()),
                "user_id": user_id,
                "date": day,
                **{name: deltas.get(name, 0) for name in COUNTERS},
            })
            return DailyStats.model_validate(row)
        except IntegrityError:
            # someone created today's row first, add to it instead
            continue
    return await get_daily_stats(store, user_id, day)


# ------------------------- EARNINGS LEDGER -------------------------
def week_id(day: Optional[date] = None) -> str:
    """ISO week the transaction belongs to, e.g. '2024-W18'."""
    year, week, _ = (day or date.today()).isocalendar()
    return f"{year}-W{week:02d}"


async def record_earning(store: RelationalStore, user_id: str, delivery_id: str, amount: float) -> Transaction:
    row = await store.insert(transactions, {
        "id": str(uuid.uuid4()),
        "user_id": user_id,
        "delivery_id": delivery_id,
        "type": "delivery",
        "amount": amount,
        "status": "COMPLETED",
        "week_id": week_id(),
    })
    logger.info(f"[Stats] Credited {amount:.2f} to {user_id} for delivery {delivery_id}")
    return Transaction.model_validate(row)


async def get_transactions(store: RelationalStore, user_id: str, week: Optional[str] = None) -> List[Transaction]:
    where = [transactions.c.user_id == user_id]
    if week:
        where.append(transactions.c.week_id == week)
    rows = await store.select(transactions, *where, order_by=transactions.c.created_at.desc())
    return [Transaction.model_validate(row) for row in rows]


async def get_balance(store: RelationalStore, user_id: str) -> float:
    async with store.engine.connect() as conn:
        result = await conn.execute(
            select(func.coalesce(func.sum(transactions.c.amount), 0.0)).where(transactions.c.user_id == user_id)
        )
        return float(result.scalar_one())
