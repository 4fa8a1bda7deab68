"""
Demo web app configuration, read once from the environment at startup.
The resulting Settings object is passed to every component; nothing reads os.environ afterwards.
"""
import logging
import os
import secrets
from dataclasses import dataclass, field
from typing import Mapping

from demo_web.errors import ConfigurationError

logger = logging.getLogger(__name__)

STORE_MEMORY = "memory"
STORE_REDIS = "redis"
STORE_DATABASE = "database"
STORE_BACKENDS = (STORE_MEMORY, STORE_REDIS, STORE_DATABASE)

# Tenants where the issuer depends on the signed-in user's tenant (tid claim)
MULTI_TENANT_AUTHORITIES = {"common", "organizations", "consumers"}

# Always requested so the ID token carries name / preferred_username
BASE_SCOPES = ("openid", "profile")


def _truthy(value: str | None) -> bool:
    return (value or "").strip().lower() in {"1", "true", "yes", "on"}


def ordered_scopes(*groups) -> tuple[str, ...]:
    """Flatten scope groups into an ordered set (first occurrence wins)."""
    seen: list[str] = []
    for group in groups:
        for scope in group:
            if scope and scope not in seen:
                seen.append(scope)
    return tuple(seen)


@dataclass(frozen=True)
class Settings:
    # Application (client) ID registered with the identity provider; None disables sign-in
    client_id: str | None = None
    tenant_id: str = "common"
    authority_host: str = "https://login.microsoftonline.com"
    # Callback URL; must match the registration byte-for-byte
    redirect_uri: str | None = None
    # Optional: only confidential clients send a secret
    client_secret: str | None = field(default=None, repr=False)
    scopes: tuple[str, ...] = ("user.read",)
    post_logout_redirect_uri: str | None = None

    session_secret: str = field(default_factory=lambda: secrets.token_urlsafe(32), repr=False)
    session_ttl_seconds: int = 86400
    # Pending logins older than this are refused at callback time
    login_timeout_seconds: int = 600
    session_store: str = STORE_MEMORY
    redis_url: str | None = None
    session_database_url: str = "sqlite:///./sessions.db"
    cookie_name: str = "demo_web_session"
    cookie_secure: bool = True

    token_timeout_seconds: float = 10.0
    token_max_attempts: int = 3
    retry_backoff_seconds: float = 0.5

    # Where a signed-in user lands by default
    landing_path: str = "/account"

    @property
    def auth_enabled(self) -> bool:
        return bool(self.client_id)

    @property
    def authority(self) -> str:
        return f"{self.authority_host.rstrip('/')}/{self.tenant_id}"

    @property
    def authorize_endpoint(self) -> str:
        return f"{self.authority}/oauth2/v2.0/authorize"

    @property
    def token_endpoint(self) -> str:
        return f"{self.authority}/oauth2/v2.0/token"

    @property
    def end_session_endpoint(self) -> str:
        return f"{self.authority}/oauth2/v2.0/logout"

    @property
    def jwks_uri(self) -> str:
        return f"{self.authority}/discovery/v2.0/keys"

    @property
    def request_scopes(self) -> tuple[str, ...]:
        return ordered_scopes(BASE_SCOPES, self.scopes)

    def expected_issuer(self, tid: str | None) -> str:
        """Issuer an ID token must carry; multi-tenant authorities use the token's own tenant."""
        tenant = tid if self.tenant_id in MULTI_TENANT_AUTHORITIES else self.tenant_id
        return f"{self.authority_host.rstrip('/')}/{tenant}/v2.0"

    def validate(self) -> None:
        """Startup check. Raises ConfigurationError so a broken sign-in never reaches request time."""
        if self.session_store not in STORE_BACKENDS:
            raise ConfigurationError(f"Unknown session store {self.session_store!r}; expected one of {STORE_BACKENDS}")
        if self.session_store == STORE_REDIS and not self.redis_url:
            raise ConfigurationError("Redis session store selected but no Redis target configured")
        if self.session_ttl_seconds <= 0 or self.login_timeout_seconds <= 0:
            raise ConfigurationError("Session TTL and login timeout must be positive")
        if self.token_timeout_seconds <= 0:
            raise ConfigurationError("AUTH_TOKEN_TIMEOUT_SECONDS must be positive")
        if self.token_max_attempts < 1:
            raise ConfigurationError("AUTH_TOKEN_MAX_ATTEMPTS must be at least 1")
        if not self.auth_enabled:
            return
        if not self.redirect_uri:
            raise ConfigurationError("AUTH_REDIRECT_URI is required when ENTRA_APP_ID is set")
        if not self.tenant_id or not self.authority_host.startswith(("https://", "http://")):
            raise ConfigurationError(f"Invalid authority: {self.authority}")


def load_settings(environ: Mapping[str, str] | None = None) -> Settings:
    """Build Settings from environment variables; unset values fall back to the defaults above."""
    env = os.environ if environ is None else environ

    def get(name: str) -> str | None:
        value = env.get(name, "").strip()
        return value or None

    # Redis target: full URL wins, else the REDIS_SESSION_HOST form (host[:port])
    redis_url = get("SESSION_REDIS_URL")
    if not redis_url and get("REDIS_SESSION_HOST"):
        redis_url = f"redis://{get('REDIS_SESSION_HOST')}"

    # Store selector: explicit, else Redis when a Redis target exists, else in-process memory
    store = (get("SESSION_STORE") or (STORE_REDIS if redis_url else STORE_MEMORY)).lower()

    post_logout = get("AUTH_POST_LOGOUT_REDIRECT_URI")
    if not post_logout and get("WEBSITE_HOSTNAME"):
        post_logout = f"https://{get('WEBSITE_HOSTNAME')}"

    secret = get("SESSION_SECRET")
    if secret is None:
        # No hard-coded fallback: sessions will not survive restarts or span instances
        secret = secrets.token_urlsafe(32)
        logger.warning("SESSION_SECRET not set; using a random per-process secret")

    cookie_secure = not _truthy(get("SESSION_COOKIE_INSECURE"))
    if not cookie_secure:
        logger.warning("SESSION_COOKIE_INSECURE enabled; session cookie sent without Secure (local development only)")

    try:
        return Settings(
            client_id=get("ENTRA_APP_ID"),
            tenant_id=get("ENTRA_TENANT_ID") or "common",
            authority_host=(get("ENTRA_AUTHORITY_HOST") or "https://login.microsoftonline.com").rstrip("/"),
            redirect_uri=get("AUTH_REDIRECT_URI"),
            client_secret=get("ENTRA_CLIENT_SECRET"),
            scopes=ordered_scopes((get("AUTH_SCOPES") or "user.read").split()),
            post_logout_redirect_uri=post_logout,
            session_secret=secret,
            session_ttl_seconds=int(get("SESSION_TTL_SECONDS") or 86400),
            login_timeout_seconds=int(get("AUTH_LOGIN_TIMEOUT_SECONDS") or 600),
            session_store=store,
            redis_url=redis_url,
            session_database_url=get("SESSION_DATABASE_URL") or "sqlite:///./sessions.db",
            cookie_name=get("SESSION_COOKIE_NAME") or "demo_web_session",
            cookie_secure=cookie_secure,
            token_timeout_seconds=float(get("AUTH_TOKEN_TIMEOUT_SECONDS") or 10.0),
            token_max_attempts=int(get("AUTH_TOKEN_MAX_ATTEMPTS") or 3),
        )
    except ValueError as e:
        raise ConfigurationError(f"Invalid numeric setting: {e}") from e
