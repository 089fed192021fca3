"""Per-user AI quota, request-rate and daily cost guardrails."""

from practice_sync.guardrails.ledger import GuardrailLedger
from practice_sync.guardrails.models import (
    Blocked,
    BlockedReason,
    GuardedResult,
    GuardrailBlockedError,
    MeteredCall,
    QuotaView,
)
from practice_sync.guardrails.wrapper import with_guardrails

__all__ = [
    "Blocked",
    "BlockedReason",
    "GuardedResult",
    "GuardrailBlockedError",
    "GuardrailLedger",
    "MeteredCall",
    "QuotaView",
    "with_guardrails",
]
