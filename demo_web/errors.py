"""
Error taxonomy for the sign-in subsystem.
Detail stays in logs; users only ever see a generic "please sign in again" outcome.
"""


class AuthError(Exception):
    """Base class for sign-in failures."""


class ConfigurationError(AuthError):
    """Process-level misconfiguration. Raised at startup, or when the provider rejects our client."""


class StateMismatch(AuthError):
    """Callback state does not match the session's expected value (possible CSRF)."""


class InvalidGrant(AuthError):
    """Code already used, expired, verifier mismatch, or no pending login. User must restart login."""


class NetworkError(AuthError):
    """Transient failure talking to the identity provider (timeout, transport error, 5xx)."""


class SessionStoreUnavailable(AuthError):
    """Session backend unreachable after bounded retries."""


class PKCEError(AuthError):
    """Unsupported PKCE parameters (only S256 is accepted)."""
