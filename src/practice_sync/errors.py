"""Errors shared across the job runner and ingestion stages."""

from __future__ import annotations


class ConfigurationError(RuntimeError):
    """Missing handler, provider source or credential; retrying cannot help."""
