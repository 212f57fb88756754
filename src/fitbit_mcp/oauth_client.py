"""Fitbit OAuth2 authorization-code grant protocol adapter."""

from __future__ import annotations

import logging
from collections.abc import Sequence
from typing import Any
from urllib.parse import urlencode

import httpx

from .config import Settings
from .errors import ConfigError, ExchangeError, RefreshError, TokenRequestError
from .tokens import Credential

logger = logging.getLogger(__name__)

FITBIT_AUTHORIZE_URL = "https://www.fitbit.com/oauth2/authorize"
FITBIT_TOKEN_URL = "https://api.fitbit.com/oauth2/token"


class OAuthClient:
    """Build authorization URLs and call the Fitbit token endpoint.

    Client credentials are sent with HTTP Basic auth, which is the method
    Fitbit requires for server-side applications.
    """

    def __init__(
        self,
        client_id: str,
        client_secret: str,
        *,
        authorize_url: str = FITBIT_AUTHORIZE_URL,
        token_url: str = FITBIT_TOKEN_URL,
        http_client: httpx.AsyncClient | None = None,
        timeout: float = 30.0,
    ) -> None:
        self.client_id = client_id
        self.client_secret = client_secret
        self.authorize_url = authorize_url
        self.token_url = token_url
        self._owns_http_client = http_client is None
        self._http = http_client or httpx.AsyncClient(timeout=timeout)

    @classmethod
    def from_settings(cls, settings: Settings) -> OAuthClient:
        return cls(settings.fitbit_client_id, settings.fitbit_client_secret)

    def ensure_configured(self) -> None:
        """Raise ConfigError unless both client id and secret are set."""
        if not self.client_id or not self.client_secret:
            raise ConfigError(
                "Fitbit client ID or secret not found. "
                "Set FITBIT_CLIENT_ID and FITBIT_CLIENT_SECRET."
            )

    def build_authorization_url(self, redirect_uri: str, scopes: Sequence[str]) -> str:
        """Return the Fitbit authorization page URL for the given redirect and scopes."""
        self.ensure_configured()
        params = {
            "client_id": self.client_id,
            "response_type": "code",
            "scope": " ".join(scopes),
            "redirect_uri": redirect_uri,
        }
        return f"{self.authorize_url}?{urlencode(params)}"

    async def exchange_code(self, code: str, redirect_uri: str) -> Credential:
        """Exchange an authorization code for a credential.

        Raises:
            ExchangeError: On transport failure, a non-2xx response, or a malformed body.
        """
        payload = await self._request_token(
            {
                "grant_type": "authorization_code",
                "code": code,
                "redirect_uri": redirect_uri,
            },
            ExchangeError,
        )
        try:
            return Credential.from_token_response(payload)
        except (KeyError, TypeError, ValueError) as exc:
            raise ExchangeError(f"Malformed token response: {exc}") from exc

    async def refresh(self, credential: Credential) -> Credential:
        """Use the refresh token to obtain a new credential.

        Raises:
            RefreshError: If Fitbit rejects the refresh token or the request fails.
                The caller must fall back to interactive authorization.
        """
        if not credential.refresh_token:
            raise RefreshError("No refresh token available")
        payload = await self._request_token(
            {"grant_type": "refresh_token", "refresh_token": credential.refresh_token},
            RefreshError,
        )
        try:
            return Credential.from_token_response(payload, previous=credential)
        except (KeyError, TypeError, ValueError) as exc:
            raise RefreshError(f"Malformed token response: {exc}") from exc

    async def _request_token(
        self, data: dict[str, str], error_cls: type[TokenRequestError]
    ) -> dict[str, Any]:
        self.ensure_configured()
        try:
            response = await self._http.post(
                self.token_url,
                data=data,
                auth=httpx.BasicAuth(self.client_id, self.client_secret),
                headers={"Accept": "application/json"},
            )
        except httpx.HTTPError as exc:
            raise error_cls(f"Token request failed: {exc}") from exc

        if not response.is_success:
            raise error_cls(
                f"Token endpoint returned HTTP {response.status_code}",
                status_code=response.status_code,
                detail=response.text,
            )

        try:
            payload = response.json()
        except ValueError as exc:
            raise error_cls(
                "Token endpoint returned a non-JSON body",
                status_code=response.status_code,
                detail=response.text,
            ) from exc
        if not isinstance(payload, dict):
            raise error_cls(
                "Token endpoint returned an unexpected body",
                status_code=response.status_code,
                detail=response.text,
            )

        logger.debug("Token endpoint answered %s for %s", response.status_code, data["grant_type"])
        return payload

    async def aclose(self) -> None:
        """Close the HTTP client if this adapter created it."""
        if self._owns_http_client:
            await self._http.aclose()
