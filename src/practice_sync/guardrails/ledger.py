"""Credit, rate and cost ledger backing the AI guardrails."""

from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import datetime, timedelta

from sqlalchemy import func
from sqlalchemy import update as sa_update
from sqlalchemy.exc import IntegrityError
from sqlmodel import col, select

from practice_sync.config import GuardrailSettings
from practice_sync.guardrails.models import QuotaView, UsageSummary
from practice_sync.storage.common import day_start, month_start, to_db_datetime, utc_now
from practice_sync.storage.database import Database
from practice_sync.storage.sqlmodel_models import AiQuota, AiUsage

logger = logging.getLogger(__name__)

RATE_WINDOW = timedelta(seconds=60)


class GuardrailLedger:
    """Per-user quota rows plus the append-only usage ledger.

    The individual checks are public for inspection and tests; production
    code goes through :func:`practice_sync.guardrails.with_guardrails`,
    which runs them in the one correct order.
    """

    def __init__(
        self,
        database: Database,
        *,
        credits_monthly: int = 200,
        requests_per_minute: int = 8,
        daily_cost_cap_usd: float = 0.0,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.database = database
        self.credits_monthly = credits_monthly
        self.requests_per_minute = requests_per_minute
        self.daily_cost_cap_usd = daily_cost_cap_usd
        self._clock = clock

    @classmethod
    def from_settings(
        cls,
        database: Database,
        settings: GuardrailSettings,
        *,
        clock: Callable[[], datetime] = utc_now,
    ) -> GuardrailLedger:
        return cls(
            database,
            credits_monthly=settings.credits_monthly,
            requests_per_minute=settings.requests_per_minute,
            daily_cost_cap_usd=settings.daily_cost_cap_usd,
            clock=clock,
        )

    def ensure_monthly_quota(self, user_id: str) -> QuotaView:
        """Create the quota row or roll it into the current month.

        The reset is lazy: a row whose ``period_start`` predates the current
        month gets the full allotment back the first time it is read.
        """

        now = self._clock()
        period = month_start(now)
        with self.database.session() as session:
            if session.get(AiQuota, user_id) is None:
                session.add(
                    AiQuota(
                        user_id=user_id,
                        period_start=period,
                        credits_left=self.credits_monthly,
                        updated_at=to_db_datetime(now),
                    ),
                )
                try:
                    session.commit()
                except IntegrityError:
                    # another caller created the row first
                    session.rollback()

        with self.database.session() as session:
            result = session.exec(
                sa_update(AiQuota)
                .where(
                    col(AiQuota.user_id) == user_id,
                    col(AiQuota.period_start) < period,
                )
                .values(
                    period_start=period,
                    credits_left=self.credits_monthly,
                    updated_at=to_db_datetime(now),
                ),
            )
            session.commit()
            if result.rowcount:
                logger.info(
                    "AI quota rolled over for user=%s: period=%s credits=%d",
                    user_id,
                    period.isoformat(),
                    self.credits_monthly,
                )
        quota = self.get_quota(user_id)
        if quota is None:
            raise RuntimeError(f"AI quota row missing after ensure: {user_id}")
        return quota

    def get_quota(self, user_id: str) -> QuotaView | None:
        with self.database.session() as session:
            row = session.get(AiQuota, user_id)
            if row is None:
                return None
            return QuotaView(
                user_id=row.user_id,
                period_start=row.period_start,
                credits_left=row.credits_left,
            )

    def try_spend_credit(self, user_id: str) -> int | None:
        """Atomically spend one credit; return the remaining balance or None when empty."""

        now = to_db_datetime(self._clock())
        with self.database.session() as session:
            result = session.exec(
                sa_update(AiQuota)
                .where(
                    col(AiQuota.user_id) == user_id,
                    col(AiQuota.credits_left) > 0,
                )
                .values(
                    credits_left=col(AiQuota.credits_left) - 1,
                    updated_at=now,
                ),
            )
            if result.rowcount != 1:
                session.rollback()
                return None
            credits_left = session.exec(
                select(AiQuota.credits_left).where(AiQuota.user_id == user_id),
            ).one()
            session.commit()
            return int(credits_left)

    def check_rate_limit(self, user_id: str) -> bool:
        """True while the trailing-minute request count is below the ceiling."""

        since = to_db_datetime(self._clock() - RATE_WINDOW)
        with self.database.session() as session:
            count = session.exec(
                select(func.count())
                .select_from(AiUsage)
                .where(
                    AiUsage.user_id == user_id,
                    col(AiUsage.created_at) > since,
                ),
            ).one()
        return int(count) < self.requests_per_minute

    def under_daily_cost_cap(self, user_id: str) -> bool:
        """True while today's spend is below the cap; a cap of 0 disables the check."""

        if self.daily_cost_cap_usd <= 0:
            return True
        return self.usage_summary(user_id, since=day_start(self._clock())).cost_usd < (
            self.daily_cost_cap_usd
        )

    def log_usage(  # noqa: PLR0913
        self,
        user_id: str,
        model: str,
        input_tokens: int,
        output_tokens: int,
        cost_usd: float,
    ) -> None:
        """Append one row to the usage ledger."""

        with self.database.session() as session:
            session.add(
                AiUsage(
                    user_id=user_id,
                    model=model,
                    input_tokens=max(0, input_tokens),
                    output_tokens=max(0, output_tokens),
                    cost_usd=max(0.0, cost_usd),
                    created_at=to_db_datetime(self._clock()),
                ),
            )
            session.commit()

    def usage_summary(self, user_id: str, *, since: datetime) -> UsageSummary:
        with self.database.session() as session:
            requests, input_tokens, output_tokens, cost_usd = session.exec(
                select(
                    func.count(),
                    func.coalesce(func.sum(AiUsage.input_tokens), 0),
                    func.coalesce(func.sum(AiUsage.output_tokens), 0),
                    func.coalesce(func.sum(AiUsage.cost_usd), 0.0),
                ).where(
                    AiUsage.user_id == user_id,
                    col(AiUsage.created_at) >= to_db_datetime(since),
                ),
            ).one()
        return UsageSummary(
            requests=int(requests),
            input_tokens=int(input_tokens),
            output_tokens=int(output_tokens),
            cost_usd=float(cost_usd),
        )
