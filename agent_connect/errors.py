"""Failure taxonomy for connection and credential operations.

Every expected failure is a subclass of :class:`OAuthError` carrying an
``outcome`` code.  Callers only ever need to distinguish four user-facing
outcomes:

- ``needs_permission`` -- the action requires scopes that were not granted
- ``reconnect``        -- the connection is gone or unusable
- ``cancelled``        -- the user declined on the consent screen
- ``retry_later``      -- the provider is temporarily unreachable

Anything else (``invalid_request``) is a caller mistake such as a forged
state or an unknown service.  :class:`CredentialKeyError` is
*not* an ``OAuthError``: a broken encryption key is a deployment fault.
"""

from __future__ import annotations

from collections.abc import Iterable


class OAuthError(Exception):
    """Base class for expected OAuth failures."""

    outcome = "invalid_request"

    def __init__(self, message: str, service: str = "") -> None:
        self.message = message
        self.service = service
        super().__init__(message)


class UnknownService(OAuthError):
    """The service has no OAuth client registration."""


class UnknownAction(OAuthError):
    """The service has no capability registered under that action name."""


class InvalidActionParams(OAuthError):
    """Parameters for a capability are incomplete (e.g. a missing path parameter)."""


class StateMismatch(OAuthError):
    """Callback state is absent, unknown, expired or already consumed."""


class UserDeniedAuthorization(OAuthError):
    """The user declined on the provider's consent screen."""

    outcome = "cancelled"

    def __init__(self, service: str, error: str = "access_denied") -> None:
        self.error = error
        super().__init__(f"Authorization was declined ({error})", service)


class CodeExchangeFailure(OAuthError):
    """The token endpoint rejected the authorization code."""

    outcome = "reconnect"

    def __init__(self, message: str, service: str = "", status_code: int | None = None) -> None:
        self.status_code = status_code
        super().__init__(message, service)


class TransientRefreshFailure(OAuthError):
    """Network error, timeout or 5xx from the token endpoint."""

    outcome = "retry_later"

    def __init__(
        self,
        message: str,
        service: str = "",
        retry_after: float | None = None,
    ) -> None:
        self.retry_after = retry_after
        super().__init__(message, service)


class ProviderUnavailable(TransientRefreshFailure):
    """The provider API could not be reached while running an action."""


class ReconnectRequired(OAuthError):
    """The user has to run the connect flow again."""

    outcome = "reconnect"


class ReauthorizationRequired(ReconnectRequired):
    """The refresh token was rejected, or the provider keeps rejecting the access token."""


class ConnectionUnavailable(ReconnectRequired):
    """No connection exists, or it is REVOKED / INVALID."""


class InsufficientScopes(OAuthError):
    """The action needs scopes the connection was not granted."""

    outcome = "needs_permission"

    def __init__(self, missing: Iterable[str], service: str = "") -> None:
        self.missing = frozenset(missing)
        super().__init__(
            f"Missing scopes: {', '.join(sorted(self.missing))}",
            service,
        )


class CredentialKeyError(RuntimeError):
    """The token encryption key is missing, malformed or does not match stored data."""
