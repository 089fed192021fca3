from __future__ import annotations

from datetime import UTC, date, datetime

import allure
import pytest

from practice_sync.guardrails import (
    Blocked,
    BlockedReason,
    GuardedResult,
    GuardrailLedger,
    MeteredCall,
    with_guardrails,
)
from practice_sync.guardrails.pricing import PricingTable
from practice_sync.storage.database import Database

pytestmark = [
    allure.epic("AI Guardrails"),
    allure.feature("Quota, Rate and Cost Limits"),
]


def _ledger(database: Database, clock, **overrides) -> GuardrailLedger:
    return GuardrailLedger(database, clock=clock, **overrides)


def _call(calls: list[str], *, cost_usd: float | None = 0.01):
    def _run() -> MeteredCall[str]:
        calls.append("called")
        return MeteredCall(value="ok", model="embed-small", input_tokens=120, cost_usd=cost_usd)

    return _run


def test_new_user_starts_with_full_monthly_allotment(database: Database, clock) -> None:
    ledger = _ledger(database, clock)

    quota = ledger.ensure_monthly_quota("user-1")

    assert quota.credits_left == 200
    assert quota.period_start == date(2026, 3, 1)
    assert ledger.ensure_monthly_quota("user-1").credits_left == 200


def test_credits_roll_over_lazily_at_month_boundary(database: Database, clock) -> None:
    ledger = _ledger(database, clock, credits_monthly=5)
    ledger.ensure_monthly_quota("user-1")
    for _ in range(5):
        assert ledger.try_spend_credit("user-1") is not None
    assert ledger.try_spend_credit("user-1") is None

    clock.now = datetime(2026, 3, 31, 23, 59, 59, tzinfo=UTC)
    assert ledger.ensure_monthly_quota("user-1").credits_left == 0

    clock.now = datetime(2026, 4, 1, 0, 0, 1, tzinfo=UTC)
    rolled = ledger.ensure_monthly_quota("user-1")

    assert rolled.period_start == date(2026, 4, 1)
    assert rolled.credits_left == 5


def test_try_spend_credit_counts_down_to_none(database: Database, clock) -> None:
    ledger = _ledger(database, clock, credits_monthly=200)
    ledger.ensure_monthly_quota("user-1")

    balances = [ledger.try_spend_credit("user-1") for _ in range(200)]

    assert balances[0] == 199
    assert balances[-1] == 0
    assert ledger.try_spend_credit("user-1") is None
    quota = ledger.get_quota("user-1")
    assert quota is not None
    assert quota.credits_left == 0


def test_rate_limit_counts_requests_in_trailing_minute(database: Database, clock) -> None:
    ledger = _ledger(database, clock, requests_per_minute=8)
    for _ in range(7):
        ledger.log_usage("user-1", "embed-small", 10, 0, 0.0)
        clock.advance(seconds=1)
    assert ledger.check_rate_limit("user-1") is True

    ledger.log_usage("user-1", "embed-small", 10, 0, 0.0)
    assert ledger.check_rate_limit("user-1") is False
    assert ledger.check_rate_limit("user-2") is True

    clock.advance(seconds=61)
    assert ledger.check_rate_limit("user-1") is True


def test_daily_cost_cap_resets_at_utc_midnight(database: Database, clock) -> None:
    ledger = _ledger(database, clock, daily_cost_cap_usd=0.05)
    ledger.log_usage("user-1", "embed-small", 1000, 0, 0.04)
    assert ledger.under_daily_cost_cap("user-1") is True

    ledger.log_usage("user-1", "embed-small", 1000, 0, 0.02)
    assert ledger.under_daily_cost_cap("user-1") is False

    clock.now = datetime(2026, 3, 15, 0, 0, 1, tzinfo=UTC)
    assert ledger.under_daily_cost_cap("user-1") is True


def test_zero_cost_cap_disables_the_check(database: Database, clock) -> None:
    ledger = _ledger(database, clock, daily_cost_cap_usd=0.0)
    ledger.log_usage("user-1", "embed-small", 1000, 0, 500.0)

    assert ledger.under_daily_cost_cap("user-1") is True


def test_with_guardrails_runs_call_spends_credit_and_logs_usage(
    database: Database,
    clock,
) -> None:
    ledger = _ledger(database, clock)
    calls: list[str] = []

    result = with_guardrails(ledger, "user-1", _call(calls))

    assert isinstance(result, GuardedResult)
    assert result.value == "ok"
    assert result.credits_left == 199
    assert result.cost_usd == pytest.approx(0.01)
    usage = ledger.usage_summary("user-1", since=datetime(2026, 3, 1, tzinfo=UTC))
    assert (usage.requests, usage.input_tokens) == (1, 120)
    assert calls == ["called"]


def test_with_guardrails_estimates_cost_from_pricing_when_call_reports_none(
    database: Database,
    clock,
) -> None:
    ledger = _ledger(database, clock)
    pricing = PricingTable.parse("embed-small:0.5:0")

    result = with_guardrails(ledger, "user-1", _call([], cost_usd=None), pricing=pricing)

    assert isinstance(result, GuardedResult)
    assert result.cost_usd == pytest.approx(120 / 1_000_000 * 0.5)


def test_blocked_call_is_never_invoked_and_costs_no_credit(database: Database, clock) -> None:
    ledger = _ledger(database, clock, requests_per_minute=1)
    calls: list[str] = []
    with_guardrails(ledger, "user-1", _call(calls))

    blocked = with_guardrails(ledger, "user-1", _call(calls))

    assert blocked == Blocked(BlockedReason.RATE_LIMITED, credits_left=199)
    assert blocked.message == "Too many AI requests in the last minute"
    assert calls == ["called"]
    quota = ledger.get_quota("user-1")
    assert quota is not None
    assert quota.credits_left == 199


def test_quota_is_reported_before_rate_and_cost(database: Database, clock) -> None:
    ledger = _ledger(
        database,
        clock,
        credits_monthly=1,
        requests_per_minute=1,
        daily_cost_cap_usd=0.001,
    )
    calls: list[str] = []
    with_guardrails(ledger, "user-1", _call(calls))

    blocked = with_guardrails(ledger, "user-1", _call(calls))

    assert isinstance(blocked, Blocked)
    assert blocked.reason == BlockedReason.QUOTA_EXCEEDED
    assert blocked.credits_left == 0


def test_rate_is_reported_before_cost(database: Database, clock) -> None:
    ledger = _ledger(database, clock, requests_per_minute=1, daily_cost_cap_usd=0.001)
    with_guardrails(ledger, "user-1", _call([]))

    blocked = with_guardrails(ledger, "user-1", _call([]))

    assert isinstance(blocked, Blocked)
    assert blocked.reason == BlockedReason.RATE_LIMITED

    clock.advance(seconds=61)
    capped = with_guardrails(ledger, "user-1", _call([]))

    assert isinstance(capped, Blocked)
    assert capped.reason == BlockedReason.COST_CAPPED


def test_failed_call_counts_towards_rate_and_propagates(database: Database, clock) -> None:
    ledger = _ledger(database, clock, requests_per_minute=1)

    def _explode() -> MeteredCall[str]:
        raise TimeoutError("upstream timed out")

    with pytest.raises(TimeoutError):
        with_guardrails(ledger, "user-1", _explode, default_model="embed-small")

    usage = ledger.usage_summary("user-1", since=datetime(2026, 3, 1, tzinfo=UTC))
    assert (usage.requests, usage.input_tokens, usage.cost_usd) == (1, 0, 0.0)
    assert ledger.check_rate_limit("user-1") is False
