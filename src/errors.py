"""Exception hierarchy shared by the dispatch and sync layers.

Guard skips (open breaker, invalid token, not due) are *results*, never
exceptions.  Everything raised here falls into one of two buckets:

    ConfigurationError — permanent; the job fails immediately, never retried
    TransientJobError  — retried by the dispatch backend's backoff policy

Any other exception escaping a job handler is treated as transient.
"""

from __future__ import annotations


class SyncGuardError(Exception):
    """Base class for all SyncGuard errors."""


class ConfigurationError(SyncGuardError):
    """A permanent configuration or validation problem."""


class UnknownQueue(ConfigurationError):
    """Raised when a queue or job name is not in the QueueName enumeration."""

    def __init__(self, name: str) -> None:
        super().__init__(f"Unknown queue: {name!r}")
        self.name = name


class InvalidSchedule(ConfigurationError):
    """Raised when a requested schedule time is outside [now, now + 30 days]."""


class ConfigValidationError(ConfigurationError, ValueError):
    """Raised when a configuration file fails validation."""


class CollaboratorNotConfigured(ConfigurationError):
    """Raised when a job needs an external collaborator that was not wired in."""


class TransientJobError(SyncGuardError):
    """A failure worth retrying (network, provider 5xx, rate limit)."""


class TokenInvalidError(SyncGuardError):
    """Raised when no usable access token can be produced for a user."""

    def __init__(self, user_id: str, integration: str, status: str) -> None:
        super().__init__(f"Token for {user_id}/{integration} is {status}")
        self.user_id = user_id
        self.integration = integration
        self.status = status


class OAuthRefreshError(SyncGuardError):
    """Raised by OAuth collaborators when a refresh fails.

    ``revoked`` distinguishes a dead grant (user must re-authenticate) from a
    refresh that failed for any other reason.
    """

    def __init__(self, message: str, revoked: bool = False) -> None:
        super().__init__(message)
        self.revoked = revoked


class WebhookRegistrationError(SyncGuardError):
    """Raised when a push channel cannot be registered with the provider."""


class WebhookValidationError(SyncGuardError):
    """Raised when an incoming push notification does not match a subscription."""
