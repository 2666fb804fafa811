"""Execution usage metering per organization and billing period."""

from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, Optional, Protocol, TYPE_CHECKING

from sqlalchemy import update
from sqlalchemy.exc import IntegrityError
from sqlmodel import select

from core.logging import get_logger
from models.database import UsageCounter, utc_now

if TYPE_CHECKING:
    from core.database import Database

logger = get_logger(__name__)


@dataclass
class UsageCheck:
    allowed: bool
    current: int
    limit: int
    remaining: int

    def to_dict(self) -> Dict[str, Any]:
        return {"allowed": self.allowed, "current": self.current, "limit": self.limit,
                "remaining": self.remaining}


class UsageMeter(Protocol):
    """Capability consulted by the dispatcher before admitting a public run."""

    async def check_and_increment(self, org_id: str, workflow_id: str) -> UsageCheck:
        ...

    async def release(self, org_id: str) -> None:
        ...


def billing_period(now: Optional[datetime] = None) -> str:
    return (now or utc_now()).strftime("%Y-%m")


class DatabaseUsageMeter:
    """Monthly execution counters in the ``usage_counters`` table.

    The increment is a conditional UPDATE guarded on the limit, so two
    concurrent callers cannot both take the last unit of allowance.
    """

    def __init__(self, database: "Database", default_limit: int = 1000):
        self.database = database
        self.default_limit = default_limit

    async def _get_or_create(self, org_id: str, period: str) -> UsageCounter:
        async with self.database.get_session() as session:
            stmt = select(UsageCounter).where(UsageCounter.org_id == org_id, UsageCounter.period == period)
            counter = (await session.execute(stmt)).scalar_one_or_none()
            if counter is not None:
                return counter
            counter = UsageCounter(org_id=org_id, period=period, executions=0)
            session.add(counter)
            try:
                await session.commit()
            except IntegrityError:
                # Created concurrently by another caller
                await session.rollback()
                return (await session.execute(stmt)).scalar_one()
            await session.refresh(counter)
            return counter

    def _limit(self, counter: UsageCounter) -> int:
        return counter.execution_limit if counter.execution_limit is not None else self.default_limit

    async def get_usage(self, org_id: str) -> UsageCheck:
        counter = await self._get_or_create(org_id, billing_period())
        limit = self._limit(counter)
        return UsageCheck(
            allowed=counter.executions < limit,
            current=counter.executions,
            limit=limit,
            remaining=max(0, limit - counter.executions),
        )

    async def set_limit(self, org_id: str, limit: Optional[int]) -> None:
        counter = await self._get_or_create(org_id, billing_period())
        async with self.database.get_session() as session:
            await session.execute(
                update(UsageCounter).where(UsageCounter.id == counter.id)
                .values(execution_limit=limit, updated_at=utc_now())
            )
            await session.commit()

    async def check_and_increment(self, org_id: str, workflow_id: str) -> UsageCheck:
        counter = await self._get_or_create(org_id, billing_period())
        limit = self._limit(counter)

        async with self.database.get_session() as session:
            result = await session.execute(
                update(UsageCounter)
                .where(UsageCounter.id == counter.id, UsageCounter.executions < limit)
                .values(executions=UsageCounter.executions + 1, updated_at=utc_now())
            )
            await session.commit()
            current = (await session.execute(
                select(UsageCounter.executions).where(UsageCounter.id == counter.id)
            )).scalar_one()

        allowed = result.rowcount == 1
        if not allowed:
            logger.warning("Execution limit reached", org_id=org_id, workflow_id=workflow_id,
                           current=current, limit=limit)
        return UsageCheck(allowed=allowed, current=current, limit=limit, remaining=max(0, limit - current))

    async def release(self, org_id: str) -> None:
        """Give back one unit taken by a run that was never enqueued."""
        async with self.database.get_session() as session:
            await session.execute(
                update(UsageCounter)
                .where(UsageCounter.org_id == org_id, UsageCounter.period == billing_period(),
                       UsageCounter.executions > 0)
                .values(executions=UsageCounter.executions - 1, updated_at=utc_now())
            )
            await session.commit()
