"""Common provider source contracts."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Protocol

from practice_sync.ingestion.models import ProviderPage


@dataclass(slots=True)
class ProviderError(Exception):
    """Base provider fetch error."""

    message: str
    code: str = "provider_error"

    def __str__(self) -> str:
        return self.message


@dataclass(slots=True)
class TemporaryProviderError(ProviderError):
    """Retryable provider error (timeouts, 429, 5xx)."""

    cursor: str | None = None
    retry_after: int | None = None


@dataclass(slots=True)
class NonRetryableProviderError(ProviderError):
    """Provider error that retrying cannot fix (revoked credentials, missing scope)."""

    cursor: str | None = None


class ProviderSource(Protocol):
    """Already-authenticated access to one provider's records for one user."""

    name: str

    def fetch_page(self, cursor: str | None, limit: int) -> ProviderPage:
        """Fetch one page of provider events by cursor."""
        raise NotImplementedError
