"""Typed errors surfaced by the ingestion and reconciliation engine.

Engine-level errors (provider not configured, authentication revoked) abort a
whole scan or sync and reach the caller. Per-message problems are handled at
the worker boundary and never use these types.
"""

from __future__ import annotations


class SubtrackError(Exception):
    """Base class for engine errors."""


class ProviderNotConfiguredError(SubtrackError):
    """A provider (mail, extraction, card) is not linked or lacks client config."""

    def __init__(self, provider: str, detail: str = ""):
        message = f"{provider} provider is not configured"
        if detail:
            message = f"{message}: {detail}"
        super().__init__(message)
        self.provider = provider


class MailProviderAuthError(SubtrackError):
    """Stored mail credentials were rejected (revoked or expired grant)."""


class MailProviderPermissionError(MailProviderAuthError):
    """Credentials are valid but lack the read scope needed to scan."""


class ReviewItemNotFoundError(SubtrackError):
    """No pending review item with that id exists for the user."""


class ReviewValidationError(SubtrackError):
    """Verified review item is missing a required field."""


class SubscriptionNotFoundError(SubtrackError):
    """No subscription with that id exists for the user."""
