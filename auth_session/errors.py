"""
Typed failures surfaced by the session layer.
Messages carry provider error codes/descriptions only; never token values.
"""


class AuthSessionError(Exception):
    """Base class for every failure the session layer reports."""

    transient = False


class UserCancelled(AuthSessionError):
    """The user closed or backed out of the browser flow."""


class NetworkError(AuthSessionError):
    """Transport failure, timeout or provider 5xx. Session and stored credentials are kept."""

    transient = True


class InvalidCredentials(AuthSessionError):
    """The access token was rejected (401/403)."""


class InvalidGrant(AuthSessionError):
    """The refresh token was revoked or expired; the local session must be torn down."""


class ProviderError(AuthSessionError):
    """The provider rejected the request (e.g. invalid client configuration)."""

    def __init__(self, code: str, description: str | None = None):
        self.code = code
        self.description = description
        super().__init__(f"{code}: {description}" if description else code)


class ValidationError(AuthSessionError):
    """The provider rejected malformed metadata values."""


class MissingSession(AuthSessionError):
    """No session (or persisted credentials) exists for the requested action."""


class SessionBusy(AuthSessionError):
    """Another login/renew is in flight; the action is rejected rather than queued."""
