"""
Exception taxonomy for the publisher provisioner.

Connectors translate provider exceptions (botocore, requests) into these
types at their boundary so the orchestration core never has to inspect
raw HTTP status codes or AWS error codes.
"""

from __future__ import annotations


class ProvisionerError(Exception):
    """Base class for every error raised by the provisioner."""


class ConfigError(ProvisionerError):
    """Raised when the desired-state document is invalid."""


# ---------------------------------------------------------------------------
# Tenant API
# ---------------------------------------------------------------------------

class TenantError(ProvisionerError):
    """Generic tenant API failure.  ``body`` carries the raw response text."""

    def __init__(self, message: str, status_code: int | None = None, body: str = "") -> None:
        super().__init__(message)
        self.status_code = status_code
        self.body = body


class DuplicateName(TenantError):
    """A publisher with the requested name already exists."""


class AuthError(TenantError):
    """The API token is missing, invalid or expired."""


class RateLimited(TenantError):
    """The tenant kept throttling after the client exhausted its retries."""


class PublisherNotFound(TenantError):
    """The publisher id is unknown to the tenant."""


class PublisherConflict(TenantError):
    """The publisher still has a live connection and cannot be deleted."""


# ---------------------------------------------------------------------------
# Secret store
# ---------------------------------------------------------------------------

class SecretNotFound(ProvisionerError):
    pass


class SecretAccessDenied(ProvisionerError):
    pass


# ---------------------------------------------------------------------------
# Compute
# ---------------------------------------------------------------------------

class ComputeError(ProvisionerError):
    pass


class TerminationError(ComputeError):
    """The instance could not be confirmed terminated."""


# ---------------------------------------------------------------------------
# Polling / registration
# ---------------------------------------------------------------------------

class PollTimeout(ProvisionerError):
    """A poll hit its attempt ceiling without reaching a terminal observation."""

    def __init__(self, message: str, attempts: int, last_observed: str | None = None) -> None:
        super().__init__(message)
        self.attempts = attempts
        self.last_observed = last_observed


class OperationCancelled(ProvisionerError):
    """The cancel event fired while an operation was waiting."""


class TokenConsumedError(ProvisionerError):
    """A registration token was presented after it had already been used.

    Remediation is a fresh publisher identity and token (``replace``), not a
    plain retry.
    """


class RegistrationFailed(ProvisionerError):
    """The remote registration command finished in a non-success state."""

    def __init__(self, message: str, status: str, stdout: str = "", stderr: str = "") -> None:
        super().__init__(message)
        self.status = status
        self.stdout = stdout
        self.stderr = stderr


# ---------------------------------------------------------------------------
# State
# ---------------------------------------------------------------------------

class StateLockError(ProvisionerError):
    pass
