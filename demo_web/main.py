"""
Demo web app entry point.
create_app() reads configuration once, builds the session store, code exchange client and login
flow, and wires them onto app.state. Sign-in routes exist only when ENTRA_APP_ID is set.
"""
import logging
import os
import time
from contextlib import asynccontextmanager

import uvicorn
from fastapi import FastAPI, Request
from fastapi.responses import HTMLResponse

from demo_web.access import LoginRequired, load_session, login_required_handler
from demo_web.auth_routes import CALLBACK_PATH
from demo_web.auth_routes import router as auth_router
from demo_web.config import Settings, load_settings
from demo_web.login_flow import LoginFlow
from demo_web.session_store import SessionStore, build_session_store
from demo_web.token_client import CodeExchangeClient

logger = logging.getLogger(__name__)
access_logger = logging.getLogger("demo_web.access_log")

# Never log the callback: its query string carries the authorization code
UNLOGGED_PATH_PREFIXES = (CALLBACK_PATH,)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Refuse to start if a shared session store is unreachable; release connections on shutdown."""
    app.state.session_store.verify_connection()
    yield
    if app.state.exchange_client is not None:
        app.state.exchange_client.close()
    app.state.session_store.close()


def create_app(
    settings: Settings | None = None,
    *,
    session_store: SessionStore | None = None,
    exchange_client: CodeExchangeClient | None = None,
) -> FastAPI:
    settings = settings or load_settings()
    settings.validate()

    app = FastAPI(title="Demo Web App", version="1.0.0", lifespan=lifespan)
    app.state.settings = settings
    app.state.session_store = session_store or build_session_store(settings)
    app.state.exchange_client = None
    app.state.login_flow = None

    if settings.auth_enabled:
        exchange_client = exchange_client or CodeExchangeClient(settings)
        app.state.exchange_client = exchange_client
        app.state.login_flow = LoginFlow(settings, app.state.session_store, exchange_client)
        app.include_router(auth_router, tags=["auth"])
        app.add_exception_handler(LoginRequired, login_required_handler)
        logger.info("Sign-in configured for client id %s", settings.client_id)
    else:
        logger.info("ENTRA_APP_ID not set; sign-in routes disabled")

    @app.middleware("http")
    async def log_requests(request: Request, call_next):
        start = time.monotonic()
        response = await call_next(request)
        if not request.url.path.startswith(UNLOGGED_PATH_PREFIXES):
            access_logger.info(
                "%s %s %s %.1fms",
                request.method,
                request.url.path,
                response.status_code,
                (time.monotonic() - start) * 1000,
            )
        return response

    @app.get("/health")
    def health():
        """Health check endpoint."""
        return {"status": "ok", "service": "demo_web", "auth": settings.auth_enabled}

    @app.get("/", response_class=HTMLResponse)
    def home(request: Request):
        """Home page with sign-in / account links when sign-in is configured."""
        if not settings.auth_enabled:
            links = "<p>Sign-in is not configured.</p>"
        else:
            record = load_session(request)
            if record is not None and record.is_authenticated:
                links = '<p><a href="/account">Account</a> | <a href="/logout">Sign out</a></p>'
            else:
                links = '<p><a href="/login">Sign in</a></p>'
        return HTMLResponse(
            f"""<!DOCTYPE html>
<html>
<head><meta charset="utf-8"><title>Demo Web App</title></head>
<body>
  <h1>Demo Web App</h1>
  {links}
</body>
</html>"""
        )

    return app


def main() -> None:
    """Run under uvicorn; LOG_LEVEL and PORT come from the environment."""
    logging.basicConfig(
        level=os.environ.get("LOG_LEVEL", "INFO").upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    uvicorn.run(
        "demo_web.main:create_app",
        factory=True,
        host="0.0.0.0",
        port=int(os.environ.get("PORT", "3000")),
        # log_requests covers access logging; uvicorn's would record /signin query strings
        access_log=False,
    )


if __name__ == "__main__":
    main()
