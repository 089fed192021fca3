"""Composite guardrail entry point for metered AI calls."""

from __future__ import annotations

import logging
from collections.abc import Callable
from typing import TypeVar

from practice_sync.guardrails.ledger import GuardrailLedger
from practice_sync.guardrails.models import Blocked, BlockedReason, GuardedResult, MeteredCall
from practice_sync.guardrails.pricing import PricingTable

logger = logging.getLogger(__name__)

T = TypeVar("T")


def with_guardrails(  # noqa: PLR0913
    ledger: GuardrailLedger,
    user_id: str,
    call: Callable[[], MeteredCall[T]],
    *,
    pricing: PricingTable | None = None,
    default_model: str = "unknown",
) -> GuardedResult[T] | Blocked:
    """Run ``call`` only if the user passes every guardrail.

    Checks run quota -> rate -> cost -> spend. Quota comes first because it
    is the coarsest signal: an exhausted user is told so even when they are
    also rate limited or over today's cost cap. The credit spend is the last
    step and the only one that mutates the balance, so a blocked call never
    costs a credit.

    Usage is logged after every call that was allowed to start. A call that
    raises is logged as a zero-token request against ``default_model`` (it
    still counts towards the per-minute rate) and the exception propagates.
    """

    quota = ledger.ensure_monthly_quota(user_id)
    if quota.credits_left <= 0:
        return _blocked(user_id, Blocked(BlockedReason.QUOTA_EXCEEDED, credits_left=0))
    if not ledger.check_rate_limit(user_id):
        return _blocked(
            user_id,
            Blocked(BlockedReason.RATE_LIMITED, credits_left=quota.credits_left),
        )
    if not ledger.under_daily_cost_cap(user_id):
        return _blocked(
            user_id,
            Blocked(BlockedReason.COST_CAPPED, credits_left=quota.credits_left),
        )
    credits_left = ledger.try_spend_credit(user_id)
    if credits_left is None:
        return _blocked(user_id, Blocked(BlockedReason.QUOTA_EXCEEDED, credits_left=0))

    try:
        metered = call()
    except Exception:
        ledger.log_usage(user_id, default_model, 0, 0, 0.0)
        raise

    cost_usd = metered.cost_usd
    if cost_usd is None:
        cost_usd = (pricing or PricingTable()).estimate_cost_usd(
            model=metered.model,
            input_tokens=metered.input_tokens,
            output_tokens=metered.output_tokens,
        )
    ledger.log_usage(
        user_id,
        metered.model,
        metered.input_tokens,
        metered.output_tokens,
        cost_usd,
    )
    return GuardedResult(value=metered.value, credits_left=credits_left, cost_usd=cost_usd)


def _blocked(user_id: str, blocked: Blocked) -> Blocked:
    logger.info("AI call blocked for user=%s: %s", user_id, blocked.reason.value)
    return blocked
