"""Fitbit MCP Server - Main server implementation."""

import logging
import sys
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from typing import Any

from dotenv import load_dotenv
from mcp.server.fastmcp import Context, FastMCP
from pydantic import ValidationError

from .config import get_settings
from .manager import TokenManager
from .oauth import FlowState
from .tokens import is_token_expired

load_dotenv(override=True)

logger = logging.getLogger(__name__)


def configure_logging(level: str = "INFO") -> None:
    """Send all log output to stderr; stdout carries the MCP stdio transport."""
    logging.basicConfig(
        level=level.upper(),
        stream=sys.stderr,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


@asynccontextmanager
async def token_lifespan(server: FastMCP) -> AsyncIterator[TokenManager]:
    """Own the token manager for the lifetime of the MCP server.

    Loads the persisted credential and starts the authorization flow when no
    usable token is available. The manager is closed on shutdown.
    """
    manager = TokenManager.from_settings(get_settings())
    try:
        await manager.initialize()
        if await manager.get_access_token() is None:
            logger.warning("No access token found. Starting Fitbit authorization flow...")
            manager.start_authorization_flow()
        else:
            logger.info("Using existing access token")
        yield manager
    finally:
        await manager.close()


mcp = FastMCP("fitbit-mcp", lifespan=token_lifespan)


def get_token_manager(ctx: Context) -> TokenManager:
    """Return the token manager created by the server lifespan."""
    return ctx.request_context.lifespan_context


# =============================================================================
# Authentication Tools
# =============================================================================


@mcp.tool()
async def get_auth_status(ctx: Context) -> dict[str, Any]:
    """Check current Fitbit authentication status.

    Returns:
        Whether a usable token is available, its expiry, and the state of the
        local authorization listener.
    """
    manager = get_token_manager(ctx)
    access_token = await manager.get_access_token()
    credential = manager.credential
    flow = manager.flow

    status: dict[str, Any] = {
        "authenticated": access_token is not None,
        "authorization_flow": flow.state.value,
    }
    if credential is not None:
        status["token_expires_at"] = (
            credential.expires_at.isoformat() if credential.expires_at else None
        )
        status["is_expired"] = is_token_expired(credential)
        status["user_id"] = credential.user_id

    if access_token is not None:
        status["message"] = "Authenticated and ready."
    elif flow.state is FlowState.IDLE:
        status["message"] = "Not authenticated. Use start_authorization() to connect Fitbit."
    else:
        status["message"] = f"Waiting for authorization at {flow.local_auth_url}"
    return status


@mcp.tool()
async def start_authorization(ctx: Context) -> dict[str, Any]:
    """Start the Fitbit authorization flow.

    A temporary local server is started that redirects to Fitbit and receives
    the callback. Tokens are saved automatically once the user approves access.

    Returns:
        The local authorization URL and instructions.
    """
    manager = get_token_manager(ctx)
    flow = manager.flow
    started = manager.start_authorization_flow()

    if not started and not flow.session.active:
        return {
            "success": False,
            "message": "Could not start the authorization server. Check MCP server logs.",
        }

    return {
        "success": True,
        "auth_url": flow.local_auth_url,
        "already_running": not started,
        "instructions": (
            "1. Open the auth_url in your browser\n"
            "2. Authorize the application on Fitbit\n"
            "3. Tokens will be saved automatically - no code copying needed!\n"
            "4. Return here and use the Fitbit tools"
        ),
    }


# =============================================================================
# Entry point
# =============================================================================


def main() -> None:
    """Main entry point for the MCP server."""
    configure_logging()
    try:
        settings = get_settings()
    except ValidationError as exc:
        logger.error("Invalid configuration, check your environment or .env file:\n%s", exc)
        raise SystemExit(1) from exc

    logging.getLogger().setLevel(settings.log_level.upper())
    mcp.run(transport="stdio")


if __name__ == "__main__":
    main()
