"""
Daily response budget.

Two independent caps: a hard count of responses sent today (UTC) and an
estimated spend (count x fixed per-response cost). The snapshot is a
process-scoped cache; the database is the source of truth. It is rebuilt
from today's outbound messages when the UTC date changes and whenever a new
run begins, so nothing is trusted across runs.
"""

import logging
from dataclasses import dataclass
from datetime import date, datetime, time, timedelta, timezone
from typing import Awaitable, Callable, Optional

from tools import storage
from tools.common import utc_now

log = logging.getLogger(__name__)


@dataclass
class DailyUsage:
    date: date
    responses_generated: int
    responses_sent: int
    estimated_cost: float


@dataclass
class BudgetCheck:
    allowed: bool
    reason: Optional[str] = None


async def _count_sent_on(day: date) -> int:
    start = datetime.combine(day, time.min, tzinfo=timezone.utc)
    return await storage.count_messages_from_us(start, start + timedelta(days=1))


class BudgetGovernor:
    """Refuses further sends once today's count or cost cap is met."""

    def __init__(
        self,
        max_responses_per_day: int = 50,
        cost_budget_per_day: float = 5.0,
        cost_per_response: float = 0.02,
        count_sent: Callable[[date], Awaitable[int]] = _count_sent_on,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.max_responses_per_day = max_responses_per_day
        self.cost_budget_per_day = cost_budget_per_day
        self.cost_per_response = cost_per_response
        self._count_sent = count_sent
        self._clock = clock
        self._usage: Optional[DailyUsage] = None

    @classmethod
    def from_limits(cls, limits: dict, **kwargs) -> "BudgetGovernor":
        return cls(
            max_responses_per_day=limits["max_responses_per_day"],
            cost_budget_per_day=limits["cost_budget_per_day"],
            cost_per_response=limits["cost_per_response"],
            **kwargs,
        )

    @property
    def usage(self) -> Optional[DailyUsage]:
        return self._usage

    def begin_run(self) -> None:
        """Drop the snapshot so this run recomputes it from storage."""
        self._usage = None

    async def _snapshot(self) -> DailyUsage:
        today = self._clock().date()
        if self._usage is None or self._usage.date != today:
            sent = await self._count_sent(today)
            self._usage = DailyUsage(
                date=today,
                responses_generated=sent,
                responses_sent=sent,
                estimated_cost=sent * self.cost_per_response,
            )
            log.info(f"Daily usage for {today}: {sent} sent, ${self._usage.estimated_cost:.2f}")
        return self._usage

    async def check_daily_limits(self) -> BudgetCheck:
        usage = await self._snapshot()
        if usage.responses_sent >= self.max_responses_per_day:
            return BudgetCheck(
                allowed=False,
                reason=f"Daily limit reached: {usage.responses_sent}/{self.max_responses_per_day}",
            )
        # Compare in cents so 0.02 * 250 lands exactly on a 5.00 budget
        if round(usage.estimated_cost * 100) >= round(self.cost_budget_per_day * 100):
            return BudgetCheck(
                allowed=False,
                reason=f"Daily budget exceeded: ${usage.estimated_cost:.2f}",
            )
        return BudgetCheck(allowed=True)

    def record_generated(self) -> None:
        if self._usage is not None:
            self._usage.responses_generated += 1

    def record_sent(self) -> None:
        if self._usage is not None:
            self._usage.responses_sent += 1
            self._usage.estimated_cost += self.cost_per_response
