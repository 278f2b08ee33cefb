from __future__ import annotations

import asyncio
import contextlib
import html
import logging
from pathlib import Path
from typing import Any, Dict, Optional

from fastapi import FastAPI, HTTPException, Request
from fastapi.responses import FileResponse, HTMLResponse, PlainTextResponse

from credential_manager import CredentialManager
from errors import ExchangeError, RefreshError
from google_oauth import GoogleOAuthClient
from logging_utils import LogBuffer
from mail_poller import MailPoller
from settings import Settings, load_settings
from token_store import get_token_store

logger = logging.getLogger(__name__)

static_dir = Path(__file__).parent / "static"


def build_credential_manager(settings: Settings) -> CredentialManager:
    oauth_client = GoogleOAuthClient(settings.client_id, settings.client_secret, settings.redirect_uri)
    return CredentialManager(store=get_token_store(settings), oauth_client=oauth_client)


def _authorize_page(title: str, auth_url: str) -> str:
    return (
        f"<h1>{html.escape(title)}</h1>"
        f'<p><a href="{html.escape(auth_url, quote=True)}">Click here to authorize Gmail Access</a></p>'
    )


async def _poll_forever(poller: MailPoller, interval_seconds: float) -> None:
    # Ticks run in a worker thread one after another; a slow tick delays the next.
    while True:
        try:
            await asyncio.to_thread(poller.poll_once)
        except Exception:  # noqa: BLE001 - a failed tick must not stop the loop
            logger.exception("Polling tick failed")
        await asyncio.sleep(interval_seconds)


def create_app(
    settings: Optional[Settings] = None,
    *,
    credentials: Optional[CredentialManager] = None,
    poller: Optional[MailPoller] = None,
    log_buffer: Optional[LogBuffer] = None,
    start_polling: bool = True,
) -> FastAPI:
    """
    Application factory; run with ``uvicorn app:create_app --factory``.
    """
    settings = settings or load_settings()
    log_buffer = (log_buffer or LogBuffer(settings.log_buffer_size)).attach()
    credentials = credentials or build_credential_manager(settings)
    poller = poller or MailPoller.from_settings(settings, credentials)

    @contextlib.asynccontextmanager
    async def lifespan(app: FastAPI):
        await asyncio.to_thread(credentials.load)
        task: Optional[asyncio.Task] = None
        if start_polling:
            logger.info("Polling Gmail every %s seconds", settings.poll_interval_seconds)
            task = asyncio.create_task(_poll_forever(poller, settings.poll_interval_seconds))
        try:
            yield
        finally:
            if task is not None:
                task.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await task
            log_buffer.detach()

    app = FastAPI(lifespan=lifespan)
    app.state.settings = settings
    app.state.credentials = credentials
    app.state.poller = poller
    app.state.log_buffer = log_buffer

    @app.get("/", response_class=HTMLResponse)
    async def root(request: Request):
        manager: CredentialManager = request.app.state.credentials
        if manager.is_authorized:
            return (
                "<h1>Welcome to the Email Fetcher Service</h1>"
                "<p>Authorization successful. Gmail API ready to use.</p>"
                '<p><a href="/logview">View logs</a></p>'
            )
        return _authorize_page("Authorization Required", manager.authorize_url())

    @app.get("/authorize", response_class=HTMLResponse)
    async def authorize(request: Request):
        manager: CredentialManager = request.app.state.credentials
        return _authorize_page("Authorize Gmail Access", manager.authorize_url())

    @app.get("/oauth2callback")
    async def oauth2callback(request: Request, code: Optional[str] = None):
        if not code:
            logger.error("Authorization code not provided.")
            return PlainTextResponse("Authorization code not provided.", status_code=400)
        manager: CredentialManager = request.app.state.credentials
        try:
            await asyncio.to_thread(manager.exchange, code)
        except ExchangeError as exc:
            logger.error("Error during OAuth callback: %s", exc)
            return HTMLResponse(_authorize_page("Failed to authorize.", manager.authorize_url()), status_code=500)
        return PlainTextResponse("Authorization successful. You can close this window.")

    @app.get("/logs")
    async def logs(request: Request):
        return request.app.state.log_buffer.entries()

    @app.get("/logview")
    async def logview():
        page = static_dir / "logview.html"
        if not page.exists():
            raise HTTPException(status_code=404, detail="Log viewer not available.")
        return FileResponse(page)

    @app.get("/healthz")
    @app.get("/health")
    async def healthz(request: Request) -> Dict[str, Any]:
        manager: CredentialManager = request.app.state.credentials
        last = request.app.state.poller.last_result
        return {
            "auth_state": manager.state.value,
            "token_store": getattr(manager.store, "backend", manager.store.__class__.__name__),
            "token_expiry_date": manager.expiry_date,
            "last_poll": last.to_dict() if last else None,
        }

    @app.post("/token/refresh")
    async def token_refresh(request: Request):
        manager: CredentialManager = request.app.state.credentials
        if not manager.is_authorized:
            raise HTTPException(status_code=409, detail="Gmail is not authorized yet. Visit / first.")
        try:
            credential = await asyncio.to_thread(manager.refresh)
        except RefreshError as exc:
            raise HTTPException(status_code=502, detail=f"Failed to refresh token: {exc}") from exc
        return {"message": "Token refreshed successfully!", "expiry_date": credential.expiry_date}

    @app.post("/poll")
    async def poll_now(request: Request):
        result = await asyncio.to_thread(request.app.state.poller.poll_once)
        return result.to_dict()

    return app
