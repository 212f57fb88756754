"""OAuth callback server for Fitbit authentication.

A temporary FastAPI app is served on a local port until the user has
approved access in their browser and Fitbit has redirected back with an
authorization code. The listener then shuts itself down.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import socket
import webbrowser
from collections.abc import Awaitable, Callable, Iterator
from enum import Enum
from pathlib import Path
from typing import Any

import uvicorn
from fastapi import FastAPI, Request
from fastapi.responses import HTMLResponse, RedirectResponse
from fastapi.templating import Jinja2Templates

from .config import Settings
from .errors import CallbackError, ConfigError, ExchangeError, InvalidTransitionError
from .oauth_client import OAuthClient
from .tokens import Credential

logger = logging.getLogger(__name__)

# Get the directory where this file is located (for absolute paths)
PACKAGE_DIR = Path(__file__).parent

templates = Jinja2Templates(directory=PACKAGE_DIR / "templates")


class FlowState(str, Enum):
    IDLE = "idle"
    LISTENING = "listening"
    AWAITING_CALLBACK = "awaiting_callback"
    EXCHANGING = "exchanging"
    COMPLETED = "completed"
    FAILED = "failed"


_TRANSITIONS: dict[FlowState, frozenset[FlowState]] = {
    FlowState.IDLE: frozenset({FlowState.LISTENING}),
    FlowState.LISTENING: frozenset({FlowState.AWAITING_CALLBACK, FlowState.FAILED}),
    FlowState.AWAITING_CALLBACK: frozenset({FlowState.EXCHANGING, FlowState.FAILED}),
    FlowState.EXCHANGING: frozenset({FlowState.COMPLETED, FlowState.FAILED}),
    FlowState.COMPLETED: frozenset({FlowState.IDLE}),
    FlowState.FAILED: frozenset({FlowState.IDLE}),
}


class AuthorizationSession:
    """State of the interactive authorization flow.

    Only one session may be active at a time. Any state other than IDLE
    counts as active, including the short teardown window after COMPLETED or
    FAILED while the listener still holds the port.
    """

    def __init__(self) -> None:
        self.state = FlowState.IDLE

    @property
    def active(self) -> bool:
        return self.state is not FlowState.IDLE

    def can_transition(self, target: FlowState) -> bool:
        return target in _TRANSITIONS[self.state]

    def transition(self, target: FlowState) -> None:
        """Move to target state.

        Raises:
            InvalidTransitionError: If target is not reachable from the current state.
        """
        if not self.can_transition(target):
            raise InvalidTransitionError(
                f"Cannot move authorization session from {self.state.value} to {target.value}"
            )
        logger.debug("Authorization session %s -> %s", self.state.value, target.value)
        self.state = target

    def reset(self) -> None:
        """Return to IDLE unconditionally. Used by listener teardown."""
        self.state = FlowState.IDLE


class _CallbackServer(uvicorn.Server):
    """uvicorn server that reports startup and leaves signals to the host."""

    def __init__(self, config: uvicorn.Config, on_started: Callable[[], None]) -> None:
        super().__init__(config)
        self._on_started = on_started

    @contextlib.contextmanager
    def capture_signals(self) -> Iterator[None]:
        # SIGINT/SIGTERM belong to the MCP host process.
        yield

    def install_signal_handlers(self) -> None:
        pass

    async def startup(self, sockets: list[socket.socket] | None = None) -> None:
        await super().startup(sockets=sockets)
        if not self.should_exit:
            self._on_started()


class AuthorizationFlow:
    """Drive the human-in-the-loop leg of the authorization-code grant.

    Args:
        oauth_client: Adapter used to build the authorization URL and exchange the code.
        on_credential: Coroutine called with the new credential after a successful
            exchange. It is expected to cache and persist it.
        settings: Listener host/port, redirect URI, scopes, timeout and browser options.
    """

    def __init__(
        self,
        oauth_client: OAuthClient,
        on_credential: Callable[[Credential], Awaitable[None]],
        settings: Settings,
    ) -> None:
        self._oauth_client = oauth_client
        self._on_credential = on_credential
        self.host = settings.oauth_callback_host
        self._port = settings.oauth_callback_port
        self.redirect_uri = settings.fitbit_redirect_uri
        self.scopes = settings.scopes
        self.timeout = settings.oauth_flow_timeout
        self.open_browser = settings.oauth_open_browser

        self.session = AuthorizationSession()
        self.app = create_callback_app(self)

        self._server: _CallbackServer | None = None
        self._socket: socket.socket | None = None
        self._task: asyncio.Task[None] | None = None
        self._timer: asyncio.TimerHandle | None = None
        self._browser_task: asyncio.Task[None] | None = None

    @property
    def state(self) -> FlowState:
        return self.session.state

    @property
    def port(self) -> int:
        """Port the listener is bound to (the configured one while idle)."""
        if self._socket is not None:
            return self._socket.getsockname()[1]
        return self._port

    @property
    def local_auth_url(self) -> str:
        return f"http://{self._display_host()}:{self.port}/auth"

    def authorization_url(self) -> str:
        """Fitbit authorization page URL.

        Raises:
            ConfigError: If client credentials are missing.
        """
        return self._oauth_client.build_authorization_url(self.redirect_uri, self.scopes)

    def _display_host(self) -> str:
        return "localhost" if self.host in ("127.0.0.1", "0.0.0.0", "") else self.host

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    def start(self) -> bool:
        """Start the callback listener in the background.

        Must be called from a running event loop. Does nothing if a session is
        already active.

        Returns:
            True if a new listener was started, False otherwise.
        """
        if self.session.active:
            logger.info("OAuth server is already running (state=%s)", self.state.value)
            return False

        try:
            self._oauth_client.ensure_configured()
        except ConfigError as exc:
            logger.error("Cannot start authorization flow: %s", exc)
            return False

        loop = asyncio.get_running_loop()
        try:
            sock = self._bind()
        except OSError as exc:
            logger.error(
                "Error starting temporary OAuth server on %s:%s: %s", self.host, self._port, exc
            )
            return False

        self.session.transition(FlowState.LISTENING)
        config = uvicorn.Config(
            self.app,
            log_config=None,
            log_level="warning",
            lifespan="off",
            timeout_graceful_shutdown=5,
        )
        self._socket = sock
        self._server = _CallbackServer(config, on_started=self._on_listening)
        self._task = loop.create_task(self._serve(self._server, sock))
        return True

    def _bind(self) -> socket.socket:
        sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        try:
            sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
            sock.bind((self.host, self._port))
        except OSError:
            sock.close()
            raise
        return sock

    async def _serve(self, server: _CallbackServer, sock: socket.socket) -> None:
        if self.timeout and self.timeout > 0:
            self._timer = asyncio.get_running_loop().call_later(self.timeout, self._expire)
        try:
            await server.serve(sockets=[sock])
        except Exception:
            logger.exception("Temporary OAuth server stopped unexpectedly")
        finally:
            if self._timer is not None:
                self._timer.cancel()
                self._timer = None
            # uvicorn skips its own shutdown when asked to exit during startup.
            for listener in getattr(server, "servers", ()):
                listener.close()
            sock.close()
            self._socket = None
            self._server = None
            await self._close_browser_task()
            self.session.reset()
            logger.info("OAuth server closed")

    def _on_listening(self) -> None:
        if self.state is not FlowState.LISTENING:
            return
        self.session.transition(FlowState.AWAITING_CALLBACK)
        auth_url = self.local_auth_url
        logger.warning("-" * 68)
        logger.warning("ACTION REQUIRED: Fitbit Authorization Needed")
        logger.warning("Open this page in your browser: %s", auth_url)
        logger.warning("Waiting for authorization callback...")
        logger.warning("-" * 68)
        if self.open_browser:
            self._browser_task = asyncio.get_running_loop().create_task(
                self._launch_browser(auth_url)
            )

    async def _launch_browser(self, url: str) -> None:
        try:
            opened = await asyncio.to_thread(webbrowser.open, url)
        except webbrowser.Error as exc:
            logger.warning("Failed to open browser automatically: %s", exc)
            return
        if not opened:
            logger.warning("No browser available; navigate to %s manually", url)

    async def _close_browser_task(self) -> None:
        task, self._browser_task = self._browser_task, None
        if task is None:
            return
        if not task.done():
            task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
        except Exception:
            logger.exception("Browser launch failed")

    def _expire(self) -> None:
        self._timer = None
        if self.state in (FlowState.LISTENING, FlowState.AWAITING_CALLBACK):
            logger.warning("Authorization flow timed out after %s seconds", self.timeout)
            self.session.transition(FlowState.FAILED)
            self._request_shutdown()

    def _request_shutdown(self) -> None:
        if self._server is not None:
            self._server.should_exit = True

    async def stop(self) -> None:
        """Force-close the listener and wait until the session is back to IDLE."""
        if self.state in (FlowState.LISTENING, FlowState.AWAITING_CALLBACK):
            self.session.transition(FlowState.FAILED)
        self._request_shutdown()
        await self.wait_closed()

    async def wait_closed(self) -> None:
        """Wait for the current listener, if any, to finish tearing down."""
        if self._task is not None:
            await asyncio.shield(self._task)

    # -------------------------------------------------------------------------
    # Callback handling
    # -------------------------------------------------------------------------

    async def handle_callback(
        self, code: str | None, error: str | None = None
    ) -> tuple[int, str, dict[str, Any]]:
        """Complete the flow from the provider's redirect.

        Args:
            code: Authorization code from Fitbit.
            error: Error reported by Fitbit if the user denied access.

        Returns:
            HTTP status code, template name and template context for the browser.
        """
        if self.state is not FlowState.AWAITING_CALLBACK:
            return 409, "auth_error.html", {
                "error": "No authorization is waiting for a callback. Start a new one."
            }

        try:
            _require_code(code, error)
        except CallbackError as exc:
            logger.error("Authorization callback rejected: %s", exc)
            self.session.transition(FlowState.FAILED)
            self._request_shutdown()
            return 400, "auth_error.html", {"error": str(exc)}

        logger.info("Received authorization code. Exchanging for token...")
        self.session.transition(FlowState.EXCHANGING)
        try:
            credential = await self._oauth_client.exchange_code(code, self.redirect_uri)
            await self._on_credential(credential)
        except (ConfigError, ExchangeError) as exc:
            logger.error("Error obtaining access token: %s", exc)
            if getattr(exc, "detail", None):
                logger.error("Error details: %s", exc.detail)
            self.session.transition(FlowState.FAILED)
            return 500, "auth_error.html", {
                "error": "Error obtaining access token. Check MCP server logs."
            }
        finally:
            self._request_shutdown()

        logger.info("Access token received successfully")
        self.session.transition(FlowState.COMPLETED)
        return 200, "auth_success.html", {"user_id": credential.user_id}


def _require_code(code: str | None, error: str | None) -> None:
    if error:
        raise CallbackError(f"Fitbit returned an error: {error}")
    if not code:
        raise CallbackError("Authorization code missing.")


def create_callback_app(flow: AuthorizationFlow) -> FastAPI:
    """Build the FastAPI app serving the redirect and callback routes for a flow."""
    app = FastAPI(docs_url=None, redoc_url=None, openapi_url=None)

    @app.get("/auth", response_model=None)
    def authorize(request: Request) -> RedirectResponse | HTMLResponse:
        """Redirect the browser to the Fitbit authorization page."""
        try:
            url = flow.authorization_url()
        except ConfigError as exc:
            return templates.TemplateResponse(
                request=request,
                name="auth_error.html",
                context={"error": str(exc)},
                status_code=500,
            )
        logger.info("Redirecting to Fitbit for authorization...")
        return RedirectResponse(url, status_code=302)

    @app.get("/callback", response_class=HTMLResponse)
    async def callback(
        request: Request,
        code: str | None = None,
        error: str | None = None,
        state: str | None = None,  # noqa: ARG001 - OAuth parameter echoed by Fitbit
    ) -> HTMLResponse:
        """Handle the OAuth redirect from Fitbit.

        Args:
            request: FastAPI request object.
            code: Authorization code from Fitbit.
            error: Error code from Fitbit if authorization failed.
            state: OAuth state parameter (unused).

        Returns:
            HTML response showing success or error.
        """
        status_code, name, context = await flow.handle_callback(code, error)
        return templates.TemplateResponse(
            request=request, name=name, context=context, status_code=status_code
        )

    return app
