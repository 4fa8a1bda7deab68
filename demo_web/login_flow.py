"""
Session identity state machine for the browser sign-in flow.

    Anonymous --begin_login--> PendingAuthorization --complete_login--> Authenticated
                                        |                                     |
                                        +-- any error --> Anonymous <-- end_session

The PKCE verifier is claimed atomically from the store before the code exchange, so a
duplicate callback can never reach the provider twice. Successful sign-in always moves the
identity to a freshly issued session id.
"""
import logging
import time

from demo_web.config import Settings
from demo_web.errors import InvalidGrant, StateMismatch
from demo_web.pkce import build_authorize_url, generate_nonce, generate_pkce, generate_state
from demo_web.session import PkceCodes, SessionRecord, SessionState, new_session_id
from demo_web.session_store import SessionStore
from demo_web.token_client import CodeExchangeClient

logger = logging.getLogger(__name__)


class LoginFlow:
    def __init__(self, settings: Settings, store: SessionStore, exchange_client: CodeExchangeClient):
        self.settings = settings
        self.store = store
        self.exchange_client = exchange_client

    def begin_login(self, record: SessionRecord | None, return_to: str | None = None) -> tuple[SessionRecord, str]:
        """
        Start (or restart) a login. Returns (session record, redirect URL).
        An already authenticated session is left alone and sent to the landing page.
        """
        if record is not None and not record.expired() and record.is_authenticated:
            return record, self.settings.landing_path
        if record is None or record.expired():
            record = SessionRecord.new(self.settings.session_ttl_seconds)

        verifier, challenge = generate_pkce()
        pkce = PkceCodes(
            verifier=verifier,
            challenge=challenge,
            state=generate_state(),
            nonce=generate_nonce(),
            return_to=return_to or self.settings.landing_path,
        )
        # Any earlier pending verifier on this session is overwritten here
        pending = record.with_pending(pkce)
        self.store.set(pending)

        url = build_authorize_url(
            authorize_endpoint=self.settings.authorize_endpoint,
            client_id=self.settings.client_id,
            redirect_uri=self.settings.redirect_uri,
            scopes=self.settings.request_scopes,
            state=pkce.state,
            code_challenge=challenge,
            nonce=pkce.nonce,
        )
        logger.info("Login started; redirecting to provider")
        return pending, url

    def complete_login(
        self, session_id: str | None, code: str | None, returned_state: str | None
    ) -> tuple[SessionRecord, str]:
        """
        Resolve the provider callback. Returns (new Authenticated record, path to return to).
        The record carries a new session id.
        Raises StateMismatch, InvalidGrant, NetworkError or ConfigurationError; on every error
        the pending verifier has been erased.
        """
        record = self.store.get(session_id) if session_id else None
        if record is None:
            raise InvalidGrant("No live session for callback")
        if record.state is SessionState.AUTHENTICATED:
            # Duplicate or replayed callback; keep the valid session as it is
            raise InvalidGrant("Session already authenticated")
        if record.state is SessionState.ANONYMOUS:
            raise InvalidGrant("No pending login (verifier already consumed)")
        if not record.awaiting(returned_state):
            logger.warning("Callback state mismatch; resetting session to anonymous")
            self.store.set(record.to_anonymous())
            raise StateMismatch("Callback state does not match pending login")

        pkce = self.store.take_pkce(record.session_id, returned_state)
        if pkce is None:
            raise InvalidGrant("Pending login already claimed by another request")
        if pkce.too_old(self.settings.login_timeout_seconds):
            raise InvalidGrant("Pending login timed out")
        if not code:
            raise InvalidGrant("Callback missing code")

        # No lock is held here; the store already shows the session as anonymous
        result = self.exchange_client.exchange(
            code=code,
            verifier=pkce.verifier,
            redirect_uri=self.settings.redirect_uri,
            nonce=pkce.nonce,
        )

        now = time.time()
        authenticated = SessionRecord(
            session_id=new_session_id(),
            state=SessionState.AUTHENTICATED,
            created_at=now,
            expires_at=now + self.settings.session_ttl_seconds,
            identity=result.identity,
            access_token=result.access_token,
        )
        self.store.set(authenticated)
        self.store.destroy(record.session_id)
        logger.info("Login completed; session rotated")
        return authenticated, pkce.return_to

    def cancel_login(self, session_id: str | None, returned_state: str | None) -> None:
        """Provider returned an error: erase the pending verifier if it belongs to this callback."""
        if session_id and returned_state:
            self.store.take_pkce(session_id, returned_state)

    def end_session(self, session_id: str | None) -> None:
        """Destroy the record outright so nothing is retrievable under the old id."""
        if session_id:
            self.store.destroy(session_id)
            logger.info("Session ended")
