"""
PKCE (RFC 7636) and authorization request helpers for login initiation.
S256 only; state and nonce generation.
"""
import hashlib
import secrets
from base64 import urlsafe_b64encode
from urllib.parse import urlencode

from demo_web.errors import PKCEError

CHALLENGE_METHOD = "S256"


def generate_state() -> str:
    """Opaque value for CSRF protection; returned in callback."""
    return secrets.token_urlsafe(32)


def generate_nonce() -> str:
    """Random value for ID token binding; checked against the nonce claim."""
    return secrets.token_urlsafe(32)


def generate_verifier() -> str:
    """43-char base64url code_verifier (32 random bytes, 256 bits of entropy)."""
    return secrets.token_urlsafe(32)


def derive_challenge(verifier: str, method: str = CHALLENGE_METHOD) -> str:
    """base64url(SHA256(verifier)) without padding. Plain challenges are refused."""
    if method != CHALLENGE_METHOD:
        raise PKCEError(f"Unsupported code_challenge_method: {method}")
    digest = hashlib.sha256(verifier.encode("ascii")).digest()
    return urlsafe_b64encode(digest).rstrip(b"=").decode("ascii")


def generate_pkce() -> tuple[str, str]:
    """
    Generate code_verifier and code_challenge (S256).
    Returns (code_verifier, code_challenge).
    """
    verifier = generate_verifier()
    return verifier, derive_challenge(verifier)


def build_authorize_url(
    *,
    authorize_endpoint: str,
    client_id: str,
    redirect_uri: str,
    scopes: tuple[str, ...] | list[str],
    state: str,
    code_challenge: str,
    nonce: str | None = None,
) -> str:
    """Build the provider /authorize URL with required and optional params."""
    params = {
        "client_id": client_id,
        "response_type": "code",
        "redirect_uri": redirect_uri,
        "response_mode": "query",
        "scope": " ".join(scopes),
        "state": state,
        "code_challenge": code_challenge,
        "code_challenge_method": CHALLENGE_METHOD,
        # Ask Entra for client_info so the home account id can be built (uid.utid)
        "client_info": "1",
    }
    if nonce:
        params["nonce"] = nonce
    return f"{authorize_endpoint}?{urlencode(params)}"


def build_logout_url(end_session_endpoint: str, post_logout_redirect_uri: str | None) -> str | None:
    """Federated sign-out URL, or None when there is nowhere configured to come back to."""
    if not end_session_endpoint or not post_logout_redirect_uri:
        return None
    return f"{end_session_endpoint}?{urlencode({'post_logout_redirect_uri': post_logout_redirect_uri})}"
