"""Typed failures raised by ingestion stages."""

from __future__ import annotations


class InvalidEventError(ValueError):
    """Provider event is missing the fields needed to capture it."""


class NormalizationError(ValueError):
    """Raw payload does not carry enough structure to build an interaction."""


class RecordNotFoundError(LookupError):
    """A stage input (raw event, embeddable owner) does not exist for this user."""
