"""Token lifecycle management for the Fitbit MCP server.

The manager owns the in-memory credential. Every change (code exchange or
refresh) is written through to the token store, and expired tokens are
refreshed lazily the next time a caller asks for one.
"""

from __future__ import annotations

import asyncio
import logging

from .config import Settings
from .errors import ConfigError, CorruptCredentialError, PersistenceError, RefreshError
from .oauth import AuthorizationFlow
from .oauth_client import OAuthClient
from .store import TokenStore
from .tokens import Credential, is_token_expired

logger = logging.getLogger(__name__)


class TokenManager:
    """Cache, refresh and persist the single Fitbit credential.

    Lifecycle: :meth:`initialize` once at startup, then any number of
    :meth:`get_access_token` calls, then :meth:`close` at shutdown.
    """

    def __init__(self, store: TokenStore, oauth_client: OAuthClient, settings: Settings) -> None:
        self._store = store
        self._oauth_client = oauth_client
        self._credential: Credential | None = None
        # Serialises refreshes and exchange write-through.
        self._lock = asyncio.Lock()
        self.flow = AuthorizationFlow(oauth_client, self.accept_credential, settings)

    @classmethod
    def from_settings(cls, settings: Settings) -> TokenManager:
        store = TokenStore.from_url(settings.database_url, ssl=settings.database_ssl)
        return cls(store, OAuthClient.from_settings(settings), settings)

    @property
    def credential(self) -> Credential | None:
        """The cached credential, if any."""
        return self._credential

    async def initialize(self) -> None:
        """Load the persisted credential and refresh it if it has expired."""
        logger.info("Checking for persisted token...")
        try:
            credential = await self._store.load()
        except CorruptCredentialError as exc:
            logger.error("Persisted token is unreadable, re-authorization required: %s", exc)
            return
        except PersistenceError as exc:
            logger.error("Token storage unavailable, continuing without a token: %s", exc)
            return

        if credential is None:
            logger.info("No persisted token found")
            return

        self._credential = credential
        logger.info("Persisted access token loaded")
        if is_token_expired(credential):
            logger.info("Token is expired. Attempting to refresh...")
            async with self._lock:
                await self._refresh(credential)

    async def get_access_token(self) -> str | None:
        """Return a valid access token, refreshing it first if it has expired.

        Never raises. None means the user has to authorize again.
        """
        credential = self._credential
        if credential is None:
            logger.info("No valid access token found")
            return None
        if not is_token_expired(credential):
            return credential.access_token

        async with self._lock:
            current = self._credential
            if current is None:
                # A refresh that ran while we waited failed.
                return None
            if current is not credential and not is_token_expired(current):
                return current.access_token
            logger.info("Token is expired. Attempting to refresh...")
            return await self._refresh(current)

    async def _refresh(self, credential: Credential) -> str | None:
        try:
            refreshed = await self._oauth_client.refresh(credential)
        except (ConfigError, RefreshError) as exc:
            logger.error("Failed to refresh token: %s", exc)
            if getattr(exc, "detail", None):
                logger.error("Error details: %s", exc.detail)
            self._credential = None
            return None

        self._credential = refreshed
        await self._persist(refreshed)
        logger.info("Token refreshed")
        return refreshed.access_token

    async def _persist(self, credential: Credential) -> None:
        try:
            await self._store.save(credential)
        except PersistenceError as exc:
            # The in-memory token stays usable until it expires.
            logger.error("Token could not be persisted: %s", exc)

    async def accept_credential(self, credential: Credential) -> None:
        """Cache and persist a credential obtained from a code exchange."""
        async with self._lock:
            self._credential = credential
            await self._persist(credential)
        logger.info("New token cached")

    def start_authorization_flow(self) -> bool:
        """Start the interactive authorization flow in the background.

        Returns:
            True if a new callback listener was started.
        """
        return self.flow.start()

    async def close(self) -> None:
        """Stop any running authorization flow and release connections."""
        await self.flow.stop()
        await self._oauth_client.aclose()
        await self._store.dispose()
