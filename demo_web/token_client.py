"""
Authorization code exchange at the identity provider's token endpoint, and ID token verification.
One POST per attempt; transient failures are retried with backoff up to a fixed bound.
Codes, verifiers and tokens are never logged.
"""
import base64
import json
import logging
import time
from dataclasses import dataclass, field

import httpx
import jwt
from jwt import PyJWKClient
from jwt.exceptions import InvalidTokenError, PyJWKClientConnectionError, PyJWKClientError

from demo_web.config import Settings
from demo_web.errors import ConfigurationError, InvalidGrant, NetworkError
from demo_web.session import Identity

logger = logging.getLogger(__name__)

# Provider error codes that mean our registration/config is wrong, not the user's login
CONFIGURATION_ERRORS = {"invalid_client", "unauthorized_client", "unsupported_grant_type"}


@dataclass(frozen=True)
class TokenResult:
    identity: Identity
    access_token: str = field(repr=False)
    scope: str = ""
    expires_in: int = 0


def _decode_client_info(value: str | None) -> dict:
    """client_info is base64url JSON {"uid": ..., "utid": ...}; missing or malformed -> {}."""
    if not value:
        return {}
    try:
        padded = value + "=" * (-len(value) % 4)
        data = json.loads(base64.urlsafe_b64decode(padded.encode("ascii")))
    except (ValueError, TypeError):
        return {}
    return data if isinstance(data, dict) else {}


def identity_from_claims(claims: dict, client_info: str | None = None) -> Identity:
    """Map ID token claims (+ client_info) to the session identity."""
    info = _decode_client_info(client_info)
    uid = info.get("uid") or claims.get("oid") or claims.get("sub")
    utid = info.get("utid") or claims.get("tid")
    return Identity(
        display_name=claims.get("name"),
        username=claims.get("preferred_username") or claims.get("email") or claims.get("upn"),
        tenant_id=claims.get("tid"),
        home_account_id=f"{uid}.{utid}" if uid and utid else None,
    )


class IdTokenVerifier:
    """Verify ID tokens via the provider JWKS: RS256 signature, aud, iss, exp, nonce."""

    def __init__(self, settings: Settings, jwks_client: PyJWKClient | None = None):
        self.settings = settings
        # PyJWKClient caches the JWK set and keys
        self._jwks_client = jwks_client or PyJWKClient(
            uri=settings.jwks_uri,
            cache_jwk_set=True,
            lifespan=300,
            timeout=settings.token_timeout_seconds,
        )

    def verify(self, id_token: str, nonce: str | None = None) -> dict:
        try:
            signing_key = self._jwks_client.get_signing_key_from_jwt(id_token)
            claims = jwt.decode(
                id_token,
                signing_key.key,
                algorithms=["RS256"],
                audience=self.settings.client_id,
                options={"require": ["exp", "iat", "aud", "iss"], "verify_iss": False},
            )
        except PyJWKClientConnectionError as e:
            raise NetworkError(f"JWKS fetch failed: {e}") from e
        except (PyJWKClientError, InvalidTokenError) as e:
            raise InvalidGrant(f"ID token rejected: {e}") from e

        expected_issuer = self.settings.expected_issuer(claims.get("tid"))
        if claims.get("iss") != expected_issuer:
            raise InvalidGrant(f"ID token issuer {claims.get('iss')!r} != {expected_issuer!r}")
        if nonce is not None and claims.get("nonce") != nonce:
            raise InvalidGrant("ID token nonce mismatch")
        return claims


class CodeExchangeClient:
    """Exchange an authorization code + PKCE verifier for identity and access token."""

    def __init__(
        self,
        settings: Settings,
        *,
        http_client: httpx.Client | None = None,
        id_token_verifier: IdTokenVerifier | None = None,
    ):
        self.settings = settings
        self._http = http_client or httpx.Client(timeout=settings.token_timeout_seconds)
        self._verifier = id_token_verifier or IdTokenVerifier(settings)

    def exchange(self, code: str, verifier: str, redirect_uri: str, nonce: str | None = None) -> TokenResult:
        """
        POST the authorization_code grant. Returns TokenResult or raises
        InvalidGrant / NetworkError / ConfigurationError.
        """
        if not code or not verifier:
            raise InvalidGrant("code and code_verifier are required")
        form = {
            "grant_type": "authorization_code",
            "client_id": self.settings.client_id,
            "code": code,
            "code_verifier": verifier,
            "redirect_uri": redirect_uri,
            "scope": " ".join(self.settings.request_scopes),
            "client_info": "1",
        }
        if self.settings.client_secret:
            form["client_secret"] = self.settings.client_secret

        data = self._post_with_retries(form)

        access_token = data.get("access_token")
        id_token = data.get("id_token")
        if not access_token or not id_token:
            raise InvalidGrant("Token response missing access_token or id_token")
        claims = self._verifier.verify(id_token, nonce=nonce)
        identity = identity_from_claims(claims, data.get("client_info"))
        logger.info("Code exchange succeeded for tenant=%s", identity.tenant_id)
        return TokenResult(
            identity=identity,
            access_token=access_token,
            scope=data.get("scope", ""),
            expires_in=int(data.get("expires_in") or 0),
        )

    def _post_with_retries(self, form: dict) -> dict:
        attempts = self.settings.token_max_attempts
        for attempt in range(1, attempts + 1):
            try:
                return self._post_once(form)
            except NetworkError as e:
                if attempt == attempts:
                    raise
                delay = self.settings.retry_backoff_seconds * (2 ** (attempt - 1))
                logger.warning("Token endpoint attempt %d/%d failed: %s; retrying in %.2fs", attempt, attempts, e, delay)
                time.sleep(delay)
        raise NetworkError("token endpoint unreachable")

    def _post_once(self, form: dict) -> dict:
        try:
            r = self._http.post(
                self.settings.token_endpoint,
                data=form,
                headers={"Accept": "application/json"},
                timeout=self.settings.token_timeout_seconds,
            )
        except httpx.TimeoutException as e:
            raise NetworkError(f"Token endpoint timed out: {e.__class__.__name__}") from e
        except httpx.TransportError as e:
            raise NetworkError(f"Token endpoint transport error: {e.__class__.__name__}") from e

        if r.status_code == 429 or r.status_code >= 500:
            raise NetworkError(f"Token endpoint returned {r.status_code}")

        try:
            data = r.json()
        except ValueError:
            data = {}
        if not isinstance(data, dict):
            data = {}

        if r.status_code != 200:
            error = data.get("error", "unknown_error")
            description = data.get("error_description", "")
            if error in CONFIGURATION_ERRORS:
                logger.error("Token endpoint rejected client configuration: %s %s", error, description)
                raise ConfigurationError(f"{error}: {description}")
            logger.warning("Token endpoint returned %s: %s", r.status_code, error)
            raise InvalidGrant(f"{error}: {description}")
        return data

    def close(self) -> None:
        self._http.close()
