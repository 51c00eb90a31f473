"""
gitopsish-server HTTP surface.
GET / starts GitHub login, GET /callback reports whether the user follows the target account,
GET /are-you-ok is the liveness check. Port 9999 by default.
"""
import asyncio
import logging
from contextlib import asynccontextmanager

import httpx
from fastapi import Depends, FastAPI, Request
from fastapi.responses import PlainTextResponse, RedirectResponse, Response
from starlette.exceptions import HTTPException as StarletteHTTPException

from gitopsish_server.config import Settings, load_settings
from gitopsish_server.flow import FlowCoordinator, FlowResponse
from gitopsish_server.github_client import GitHubClient
from gitopsish_server.state_store import StateLedger

logger = logging.getLogger(__name__)


async def sweep_periodically(ledger: StateLedger, interval: float) -> None:
    """Reap expired sessions every interval seconds until cancelled."""
    while True:
        await asyncio.sleep(interval)
        removed = ledger.sweep()
        if removed:
            logger.debug("Swept %d expired session(s)", removed)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Run the session sweeper; close the shared GitHub client on shutdown."""
    settings: Settings = app.state.settings
    sweeper = asyncio.create_task(sweep_periodically(app.state.ledger, settings.sweep_interval))
    logger.info("Starting webserver on %s", settings.listen_address)
    try:
        yield
    finally:
        sweeper.cancel()
        try:
            await sweeper
        except asyncio.CancelledError:
            pass
        await app.state.github.aclose()
        logger.info("Shutting down")


def get_coordinator(request: Request) -> FlowCoordinator:
    return request.app.state.coordinator


def to_response(result: FlowResponse) -> Response:
    if result.location is not None:
        return RedirectResponse(url=result.location, status_code=result.status_code)
    return PlainTextResponse(result.body, status_code=result.status_code)


def create_app(settings: Settings | None = None, transport: httpx.AsyncBaseTransport | None = None) -> FastAPI:
    """
    Build the app with its own ledger and GitHub client.
    transport replaces the network (tests pass httpx.MockTransport).
    """
    if settings is None:
        settings = load_settings()

    ledger = StateLedger(ttl_seconds=settings.session_ttl, max_entries=settings.max_sessions)
    github = GitHubClient(
        settings.credentials,
        github_url=settings.github_url,
        api_url=settings.api_url,
        timeout=settings.provider_timeout,
        transport=transport,
    )

    app = FastAPI(title="gitopsish-server", version="0.2.0", lifespan=lifespan, docs_url=None, redoc_url=None, openapi_url=None)
    app.state.settings = settings
    app.state.ledger = ledger
    app.state.github = github
    app.state.coordinator = FlowCoordinator(ledger, github, settings.credentials)

    @app.exception_handler(StarletteHTTPException)
    async def plain_text_http_error(request: Request, exc: StarletteHTTPException):
        """404/405 and friends as plain text, like every other response here."""
        return PlainTextResponse(str(exc.detail).lower(), status_code=exc.status_code, headers=exc.headers)

    @app.get("/")
    def initiate(coordinator: FlowCoordinator = Depends(get_coordinator)):
        """Issue a state and 303 to GitHub's authorize page."""
        return to_response(coordinator.initiate())

    @app.get("/callback")
    async def callback(request: Request, coordinator: FlowCoordinator = Depends(get_coordinator)):
        """
        GitHub redirects here with ?code=...&state=... or ?error=...&state=...
        Validates state, exchanges the code, checks the follow relationship.
        """
        result = await coordinator.callback(request.query_params, is_disconnected=request.is_disconnected)
        return to_response(result)

    @app.get("/are-you-ok")
    def are_you_ok(really: str | None = None, coordinator: FlowCoordinator = Depends(get_coordinator)):
        """Liveness; ?really=true deliberately answers 401."""
        return to_response(coordinator.liveness(really))

    return app
