"""
Error taxonomy for rate acquisition.

Provider clients raise these instead of generic exceptions so that the
batch processor and orchestrator can decide whether a failure is fatal for
one item, fatal for the whole run, or worth retrying.
"""

from typing import Optional


class RatefeedError(Exception):
    """Base class for all acquisition errors."""

    def __init__(self, message: str, provider: Optional[str] = None):
        self.message = message
        self.provider = provider
        super().__init__(message)

    def __str__(self) -> str:
        if self.provider:
            return f"[{self.provider}] {self.message}"
        return self.message


class AuthenticationFailed(RatefeedError):
    """Credentials were rejected by the provider. Not retried."""


class SessionExpired(RatefeedError):
    """
    A previously valid session is no longer accepted.

    Aborts the remaining work of a run; the caller has to re-authenticate
    before resuming.
    """


class ProtocolStructureError(RatefeedError):
    """
    An expected token or field was missing from a provider response.

    Usually means the provider changed its page or API structure. Carries a
    truncated excerpt of the raw response for diagnosis.
    """

    CONTEXT_LIMIT = 500

    def __init__(
        self,
        message: str,
        provider: Optional[str] = None,
        context: Optional[str] = None,
    ):
        super().__init__(message, provider)
        self.context = context[:self.CONTEXT_LIMIT] if context else None


class TransientNetworkError(RatefeedError):
    """Timeout or connection failure, retried by the batch processor."""

    def __init__(
        self,
        message: str,
        provider: Optional[str] = None,
        attempts: int = 1,
    ):
        super().__init__(message, provider)
        self.attempts = attempts


class ValidationError(RatefeedError):
    """Malformed or missing required input data. The item is skipped."""


class MatchNotFound(RatefeedError):
    """
    A vehicle could not be resolved above the confidence threshold.

    The rate is still recorded, flagged as unmatched.
    """

    def __init__(
        self,
        message: str,
        provider: Optional[str] = None,
        source_key: Optional[str] = None,
        confidence: float = 0,
    ):
        super().__init__(message, provider)
        self.source_key = source_key
        self.confidence = confidence
