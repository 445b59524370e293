"""Summary: Error taxonomy for InboxSync.

Importance: Lets callers tell actionable failures (reconnect, bad input) from transient ones.
Alternatives: Raise ValueError/RuntimeError and inspect messages.
"""

from __future__ import annotations


class InboxSyncError(Exception):
    """Base class for all InboxSync errors."""


class NeedsReconnect(InboxSyncError):
    """Summary: The stored credential can no longer be used or refreshed.

    Importance: Signals the user must re-run the OAuth flow; never retried automatically.
    Alternatives: Flip a persisted status flag and poll it from the UI.
    """

    def __init__(self, provider: str, reason: str) -> None:
        super().__init__(f"{provider} credential needs reconnect: {reason}")
        self.provider = provider
        self.reason = reason


class TransientProviderError(InboxSyncError):
    """Summary: Network failure, timeout, or 5xx/429 from a provider.

    Importance: Safe to retry on the next pass; never corrupts stored state.
    Alternatives: Retry inline with backoff.
    """


class ProviderRequestError(InboxSyncError):
    """Summary: Non-retryable 4xx response from a provider.

    Importance: Surfaces the provider message without treating it as a reconnect.
    Alternatives: Fold into TransientProviderError.
    """

    def __init__(self, status: int, message: str) -> None:
        super().__init__(f"Provider request failed ({status}): {message}")
        self.status = status
        self.message = message


class StaleCursorError(InboxSyncError):
    """Summary: The provider no longer recognizes the stored history cursor.

    Importance: Triggers the bounded fallback resync instead of failing the pass.
    Alternatives: Drop the cursor and run a full mailbox sync.
    """


class ValidationError(InboxSyncError):
    """Summary: Malformed caller input.

    Importance: Names the offending field so clients can correct the request.
    Alternatives: Rely on pydantic validation alone.
    """

    def __init__(self, field: str, message: str) -> None:
        super().__init__(message)
        self.field = field
        self.message = message
