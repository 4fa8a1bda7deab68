"""
Sign-in routes: GET /login, /signin (provider callback), /logout, /account, /auth-status.
Registered only when a client id is configured. Failures render a generic message; detail goes
to the log only.
"""
import html
import logging

from fastapi import APIRouter, Depends, Request
from fastapi.responses import HTMLResponse, JSONResponse, RedirectResponse

from demo_web.access import (
    LOGIN_PATH,
    AuthContext,
    clear_session_cookie,
    load_session,
    require_login,
    safe_return_path,
    session_id_from_request,
    set_session_cookie,
)
from demo_web.config import Settings
from demo_web.errors import ConfigurationError, InvalidGrant, NetworkError, SessionStoreUnavailable, StateMismatch
from demo_web.login_flow import LoginFlow
from demo_web.pkce import build_logout_url

logger = logging.getLogger(__name__)
router = APIRouter()

CALLBACK_PATH = "/signin"


def get_settings(request: Request) -> Settings:
    return request.app.state.settings


def get_login_flow(request: Request) -> LoginFlow:
    return request.app.state.login_flow


def _page(title: str, message: str, status_code: int = 200) -> HTMLResponse:
    return HTMLResponse(
        f"""<!DOCTYPE html>
<html>
<head><meta charset="utf-8"><title>{html.escape(title)}</title></head>
<body>
  <h1>{html.escape(title)}</h1>
  <p>{html.escape(message)}</p>
  <p><a href="{LOGIN_PATH}">Sign in again</a> | <a href="/">Home</a></p>
</body>
</html>""",
        status_code=status_code,
    )


@router.get(LOGIN_PATH)
def login(
    request: Request,
    next: str | None = None,
    settings: Settings = Depends(get_settings),
    flow: LoginFlow = Depends(get_login_flow),
):
    """Start the PKCE flow: persist a pending login and redirect to the provider's /authorize."""
    record = load_session(request)
    try:
        record, url = flow.begin_login(record, return_to=safe_return_path(next, settings.landing_path))
    except SessionStoreUnavailable as e:
        logger.error("Cannot start login, session store unavailable: %s", e)
        return _page("Sign-in unavailable", "Sign-in is temporarily unavailable. Please try again shortly.", 503)
    response = RedirectResponse(url=url, status_code=302)
    if not record.is_authenticated:
        set_session_cookie(response, settings, record)
    return response


@router.get(CALLBACK_PATH)
def signin(
    request: Request,
    code: str | None = None,
    state: str | None = None,
    error: str | None = None,
    error_description: str | None = None,
    settings: Settings = Depends(get_settings),
    flow: LoginFlow = Depends(get_login_flow),
):
    """
    Provider callback. Exchanges the code exactly once, rotates the session id and redirects to
    the page the user originally asked for.
    """
    session_id = session_id_from_request(request, settings)

    if error:
        logger.warning("Provider returned error on callback: %s (%s)", error, error_description or "")
        try:
            flow.cancel_login(session_id, state)
        except SessionStoreUnavailable as e:
            logger.error("Could not erase pending login after provider error: %s", e)
        return _page("Sign-in failed", "Sign-in was not completed. Please sign in again.", 400)

    try:
        record, return_to = flow.complete_login(session_id, code, state)
    except (StateMismatch, InvalidGrant) as e:
        logger.warning("Sign-in callback rejected (%s): %s", e.__class__.__name__, e)
        return RedirectResponse(url=LOGIN_PATH, status_code=302)
    except NetworkError as e:
        # Retries already exhausted; the verifier is gone, so the user starts a fresh login
        logger.warning("Sign-in callback failed talking to the identity provider: %s", e)
        return RedirectResponse(url=LOGIN_PATH, status_code=302)
    except ConfigurationError as e:
        logger.error("Sign-in misconfigured: %s", e)
        return _page("Sign-in unavailable", "Sign-in is not available right now.", 500)
    except SessionStoreUnavailable as e:
        logger.error("Session store unavailable during callback: %s", e)
        return _page("Sign-in unavailable", "Sign-in is temporarily unavailable. Please try again shortly.", 503)

    response = RedirectResponse(url=safe_return_path(return_to, settings.landing_path), status_code=302)
    set_session_cookie(response, settings, record)
    return response


@router.get("/logout")
def logout(
    request: Request,
    settings: Settings = Depends(get_settings),
    flow: LoginFlow = Depends(get_login_flow),
):
    """Destroy the local session first, then hand over to the provider's end-session endpoint."""
    session_id = session_id_from_request(request, settings)
    try:
        flow.end_session(session_id)
    except SessionStoreUnavailable as e:
        logger.error("Session store unavailable during logout: %s", e)
        response = _page("Sign-out failed", "Sign-out could not be completed. Please try again.", 503)
        clear_session_cookie(response, settings)
        return response

    # Local logout never depends on the federated URL being buildable
    url = build_logout_url(settings.end_session_endpoint, settings.post_logout_redirect_uri)
    if url is None:
        logger.info("No post-logout redirect URI configured; local sign-out only")
        url = "/"
    response = RedirectResponse(url=url, status_code=302)
    clear_session_cookie(response, settings)
    return response


@router.get("/account", response_class=HTMLResponse)
def account(auth: AuthContext = Depends(require_login)):
    """Protected page: signed-in user's name and username (never the token)."""
    identity = auth.identity
    return HTMLResponse(
        f"""<!DOCTYPE html>
<html>
<head><meta charset="utf-8"><title>Account</title></head>
<body>
  <h1>Account</h1>
  <p>Name: {html.escape(identity.display_name or "")}</p>
  <p>Username: {html.escape(identity.username or "")}</p>
  <p>Tenant: {html.escape(identity.tenant_id or "")}</p>
  <p><a href="/logout">Sign out</a> | <a href="/">Home</a></p>
</body>
</html>"""
    )


@router.get("/auth-status")
def auth_status(request: Request):
    """JSON sign-in status for client-side checks."""
    record = load_session(request)
    if record is None or not record.is_authenticated:
        return JSONResponse({"isAuthenticated": False, "user": None})
    return JSONResponse(
        {
            "isAuthenticated": True,
            "user": {"name": record.identity.display_name, "username": record.identity.username},
        }
    )
