"""
Shared fixtures: test settings, a fake identity provider (httpx MockTransport) that signs ID
tokens with a throwaway RSA key, and a TestClient wired to an in-memory session store.
"""
import base64
import json
import time
from types import SimpleNamespace
from urllib.parse import parse_qs, parse_qsl, urlparse

import httpx
import jwt
import pytest
from cryptography.hazmat.backends import default_backend
from cryptography.hazmat.primitives.asymmetric.rsa import generate_private_key
from fastapi.testclient import TestClient

from demo_web.config import Settings
from demo_web.login_flow import LoginFlow
from demo_web.main import create_app
from demo_web.session_store import MemorySessionStore
from demo_web.token_client import CodeExchangeClient, IdTokenVerifier

CLIENT_ID = "test-client"
TENANT_ID = "test-tenant"
AUTHORITY_HOST = "https://login.example.com"
REDIRECT_URI = "https://app.example/signin"


@pytest.fixture(scope="session")
def rsa_key():
    return generate_private_key(65537, 2048, default_backend())


@pytest.fixture
def settings():
    return Settings(
        client_id=CLIENT_ID,
        tenant_id=TENANT_ID,
        authority_host=AUTHORITY_HOST,
        redirect_uri=REDIRECT_URI,
        post_logout_redirect_uri="https://app.example/",
        session_secret="test-session-secret",
        retry_backoff_seconds=0,
    )


class FakeJwks:
    """Stands in for PyJWKClient: always resolves to the test public key."""

    def __init__(self, key):
        self.key = key
        self.error = None

    def get_signing_key_from_jwt(self, token):
        if self.error is not None:
            raise self.error
        return SimpleNamespace(key=self.key.public_key())


class FakeProvider:
    """Token endpoint double. Queue `responses` (httpx.Response or exception) to override success."""

    def __init__(self, key):
        self.key = key
        self.calls: list[dict] = []
        self.responses: list = []
        self.nonce: str | None = None
        self.claims: dict = {}
        self.delay = 0.0

    def authorize(self, location: str) -> dict:
        """Play the provider's login UI: read the authorize URL and remember its nonce."""
        params = {k: v[0] for k, v in parse_qs(urlparse(location).query).items()}
        self.nonce = params.get("nonce")
        return params

    def id_token(self, **overrides) -> str:
        now = int(time.time())
        claims = {
            "iss": f"{AUTHORITY_HOST}/{TENANT_ID}/v2.0",
            "aud": CLIENT_ID,
            "iat": now,
            "exp": now + 3600,
            "sub": "subject-1",
            "oid": "user-oid",
            "tid": TENANT_ID,
            "name": "Ada Lovelace",
            "preferred_username": "ada@example.com",
            "nonce": self.nonce,
        }
        claims.update(self.claims)
        claims.update(overrides)
        return jwt.encode(claims, self.key, algorithm="RS256", headers={"kid": "test-key"})

    def token_response(self) -> dict:
        client_info = base64.urlsafe_b64encode(json.dumps({"uid": "user-oid", "utid": TENANT_ID}).encode()).decode()
        return {
            "token_type": "Bearer",
            "scope": "openid profile user.read",
            "expires_in": 3599,
            "access_token": "graph-access-token",
            "id_token": self.id_token(),
            "client_info": client_info.rstrip("="),
        }

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.calls.append(dict(parse_qsl(request.content.decode())))
        if self.delay:
            time.sleep(self.delay)
        if self.responses:
            response = self.responses.pop(0)
            if isinstance(response, Exception):
                raise response
            return response
        return httpx.Response(200, json=self.token_response())


@pytest.fixture
def provider(rsa_key):
    return FakeProvider(rsa_key)


@pytest.fixture
def jwks(rsa_key):
    return FakeJwks(rsa_key)


@pytest.fixture
def exchange_client(settings, provider, jwks):
    return CodeExchangeClient(
        settings,
        http_client=httpx.Client(transport=httpx.MockTransport(provider)),
        id_token_verifier=IdTokenVerifier(settings, jwks_client=jwks),
    )


@pytest.fixture
def store():
    return MemorySessionStore()


@pytest.fixture
def flow(settings, store, exchange_client):
    return LoginFlow(settings, store, exchange_client)


@pytest.fixture
def app(settings, store, exchange_client):
    return create_app(settings, session_store=store, exchange_client=exchange_client)


@pytest.fixture
def client(app):
    # https so the Secure session cookie is sent back
    return TestClient(app, base_url="https://testserver")
