"""
Session cookie handling and access control for protected routes.
The cookie carries `<session_id>.<hmac>`; a bad signature, an unknown id, an expired record or an
unreachable store all read as anonymous. Nothing here mutates session state.
"""
import hashlib
import hmac
import logging
from dataclasses import dataclass, field
from urllib.parse import urlencode

from fastapi import Request, Response
from fastapi.responses import RedirectResponse

from demo_web.config import Settings
from demo_web.errors import SessionStoreUnavailable
from demo_web.session import Identity, SessionRecord

logger = logging.getLogger(__name__)

LOGIN_PATH = "/login"


def _signature(secret: str, session_id: str) -> str:
    return hmac.new(secret.encode("utf-8"), session_id.encode("ascii"), hashlib.sha256).hexdigest()


def sign_session_id(secret: str, session_id: str) -> str:
    return f"{session_id}.{_signature(secret, session_id)}"


def unsign_session_id(secret: str, value: str | None) -> str | None:
    """Session id from a signed cookie value, or None if missing or tampered."""
    if not value or "." not in value:
        return None
    session_id, _, sig = value.rpartition(".")
    try:
        expected = _signature(secret, session_id)
    except UnicodeEncodeError:
        return None
    # Cookies arrive latin-1 decoded; compare bytes so non-ASCII signatures just fail
    if not session_id or not hmac.compare_digest(sig.encode("utf-8"), expected.encode("ascii")):
        return None
    return session_id


def session_id_from_request(request: Request, settings: Settings) -> str | None:
    return unsign_session_id(settings.session_secret, request.cookies.get(settings.cookie_name))


def set_session_cookie(response: Response, settings: Settings, record: SessionRecord) -> None:
    response.set_cookie(
        key=settings.cookie_name,
        value=sign_session_id(settings.session_secret, record.session_id),
        max_age=settings.session_ttl_seconds,
        secure=settings.cookie_secure,
        httponly=True,
        # Lax: the provider's callback is a top-level cross-site GET and must carry the cookie
        samesite="lax",
        path="/",
    )


def clear_session_cookie(response: Response, settings: Settings) -> None:
    response.delete_cookie(
        key=settings.cookie_name,
        path="/",
        secure=settings.cookie_secure,
        httponly=True,
        samesite="lax",
    )


def safe_return_path(path: str | None, default: str) -> str:
    """Only same-site absolute paths; anything else (//host, scheme://, backslashes) -> default."""
    if not path or not path.startswith("/") or path.startswith("//") or "\\" in path:
        return default
    return path


def load_session(request: Request) -> SessionRecord | None:
    """Live session for this request, or None (anonymous). Fails closed when the store is down."""
    settings: Settings = request.app.state.settings
    session_id = session_id_from_request(request, settings)
    if session_id is None:
        return None
    try:
        return request.app.state.session_store.get(session_id)
    except SessionStoreUnavailable as e:
        logger.warning("Session store unavailable on read; treating request as anonymous: %s", e)
        return None


@dataclass(frozen=True)
class AuthContext:
    session_id: str
    identity: Identity
    access_token: str = field(repr=False)


class LoginRequired(Exception):
    """Raised by require_login; turned into a redirect to the login endpoint."""

    def __init__(self, next_path: str):
        super().__init__(next_path)
        self.next_path = next_path


def require_login(request: Request) -> AuthContext:
    """Dependency: authenticated session -> AuthContext (also on request.state.identity)."""
    record = load_session(request)
    if record is None or not record.is_authenticated:
        next_path = request.url.path
        if request.url.query:
            next_path = f"{next_path}?{request.url.query}"
        raise LoginRequired(next_path)
    request.state.identity = record.identity
    return AuthContext(session_id=record.session_id, identity=record.identity, access_token=record.access_token)


async def login_required_handler(request: Request, exc: LoginRequired) -> RedirectResponse:
    """Browser flow: unauthenticated access is a 302 to login, never a bare 401."""
    return RedirectResponse(url=f"{LOGIN_PATH}?{urlencode({'next': exc.next_path})}", status_code=302)
