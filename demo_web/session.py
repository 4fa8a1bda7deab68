"""
Session record: the unit of sign-in state, keyed by an opaque session id carried in a cookie.
Anonymous -> PendingAuthorization -> Authenticated | Anonymous. Tokens never appear in repr.
"""
import secrets
import time
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any


class SessionState(str, Enum):
    ANONYMOUS = "anonymous"
    PENDING = "pending_authorization"
    AUTHENTICATED = "authenticated"


def new_session_id() -> str:
    """High-entropy id; never derived from anything the client sends."""
    return secrets.token_urlsafe(32)


@dataclass(frozen=True)
class PkceCodes:
    verifier: str = field(repr=False)
    challenge: str
    # Correlation value sent as `state` and expected back on the callback
    state: str
    nonce: str | None = None
    return_to: str = "/"
    created_at: float = field(default_factory=time.time)
    challenge_method: str = "S256"

    def too_old(self, max_age_seconds: int, now: float | None = None) -> bool:
        now = time.time() if now is None else now
        return (now - self.created_at) > max_age_seconds


@dataclass(frozen=True)
class Identity:
    display_name: str | None
    username: str | None
    tenant_id: str | None
    home_account_id: str | None


@dataclass(frozen=True)
class SessionRecord:
    session_id: str
    state: SessionState
    created_at: float
    expires_at: float
    pkce: PkceCodes | None = None
    identity: Identity | None = None
    access_token: str | None = field(default=None, repr=False)

    def __post_init__(self):
        pending = self.pkce is not None
        signed_in = self.identity is not None and bool(self.access_token)
        if pending and (self.identity is not None or self.access_token):
            raise ValueError("session cannot hold both a pending login and an identity")
        expected = {
            SessionState.ANONYMOUS: not pending and not signed_in,
            SessionState.PENDING: pending,
            SessionState.AUTHENTICATED: signed_in,
        }[self.state]
        if not expected:
            raise ValueError(f"fields do not match session state {self.state.value}")

    @classmethod
    def new(cls, ttl_seconds: int, now: float | None = None) -> "SessionRecord":
        now = time.time() if now is None else now
        return cls(
            session_id=new_session_id(),
            state=SessionState.ANONYMOUS,
            created_at=now,
            expires_at=now + ttl_seconds,
        )

    def expired(self, now: float | None = None) -> bool:
        now = time.time() if now is None else now
        return now > self.expires_at

    @property
    def is_authenticated(self) -> bool:
        return self.state is SessionState.AUTHENTICATED

    def awaiting(self, state: str | None) -> bool:
        """True while a login is pending for exactly this correlation value."""
        return (
            self.state is SessionState.PENDING
            and self.pkce is not None
            and state is not None
            and secrets.compare_digest(self.pkce.state, state)
        )

    def with_pending(self, pkce: PkceCodes) -> "SessionRecord":
        return replace(self, state=SessionState.PENDING, pkce=pkce, identity=None, access_token=None)

    def to_anonymous(self) -> "SessionRecord":
        """Drop every credential-bearing field; the verifier is gone after this."""
        return replace(self, state=SessionState.ANONYMOUS, pkce=None, identity=None, access_token=None)

    def to_dict(self) -> dict[str, Any]:
        return {
            "session_id": self.session_id,
            "state": self.state.value,
            "created_at": self.created_at,
            "expires_at": self.expires_at,
            "pkce": None
            if self.pkce is None
            else {
                "verifier": self.pkce.verifier,
                "challenge": self.pkce.challenge,
                "state": self.pkce.state,
                "nonce": self.pkce.nonce,
                "return_to": self.pkce.return_to,
                "created_at": self.pkce.created_at,
                "challenge_method": self.pkce.challenge_method,
            },
            "identity": None
            if self.identity is None
            else {
                "display_name": self.identity.display_name,
                "username": self.identity.username,
                "tenant_id": self.identity.tenant_id,
                "home_account_id": self.identity.home_account_id,
            },
            "access_token": self.access_token,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "SessionRecord":
        pkce = data.get("pkce")
        identity = data.get("identity")
        return cls(
            session_id=data["session_id"],
            state=SessionState(data["state"]),
            created_at=float(data["created_at"]),
            expires_at=float(data["expires_at"]),
            pkce=PkceCodes(**pkce) if pkce else None,
            identity=Identity(**identity) if identity else None,
            access_token=data.get("access_token"),
        )
