"""Tests for the Fitbit OAuth protocol adapter."""

import base64
from urllib.parse import parse_qs, urlparse

import httpx
import pytest

from fitbit_mcp.errors import ConfigError, ExchangeError, RefreshError
from fitbit_mcp.oauth_client import FITBIT_AUTHORIZE_URL, OAuthClient

REDIRECT_URI = "http://localhost:3000/callback"


class TestBuildAuthorizationUrl:
    """Tests for the authorization URL."""

    def test_embeds_grant_parameters(self):
        """Should include client id, redirect URI, scopes and response type."""
        client = OAuthClient("test_client_id", "test_client_secret")
        url = client.build_authorization_url(REDIRECT_URI, ["activity", "sleep"])

        parsed = urlparse(url)
        params = parse_qs(parsed.query)
        assert url.startswith(FITBIT_AUTHORIZE_URL)
        assert params["client_id"] == ["test_client_id"]
        assert params["redirect_uri"] == [REDIRECT_URI]
        assert params["scope"] == ["activity sleep"]
        assert params["response_type"] == ["code"]

    def test_is_deterministic(self):
        """Should build the same URL for the same inputs."""
        client = OAuthClient("test_client_id", "test_client_secret")
        assert client.build_authorization_url(
            REDIRECT_URI, ["weight"]
        ) == client.build_authorization_url(REDIRECT_URI, ["weight"])

    def test_requires_credentials(self):
        """Should raise ConfigError when the client id is missing."""
        client = OAuthClient("", "test_client_secret")
        with pytest.raises(ConfigError):
            client.build_authorization_url(REDIRECT_URI, ["weight"])


class TestExchangeCode:
    """Tests for the authorization code exchange."""

    @pytest.mark.asyncio
    async def test_returns_credential(self, oauth_client, token_endpoint):
        """Should build a credential from the token response."""
        credential = await oauth_client.exchange_code("abc123", REDIRECT_URI)

        assert credential.access_token == "AT1"
        assert credential.refresh_token == "RT1"
        assert credential.user_id == "ABC123"
        assert credential.expires_at is not None

    @pytest.mark.asyncio
    async def test_sends_authorization_code_grant(self, oauth_client, token_endpoint):
        """Should post the code and redirect URI to the token endpoint."""
        await oauth_client.exchange_code("abc123", REDIRECT_URI)

        request = token_endpoint.requests[0]
        assert request.method == "POST"
        assert str(request.url) == "https://api.fitbit.com/oauth2/token"
        assert token_endpoint.form() == {
            "grant_type": "authorization_code",
            "code": "abc123",
            "redirect_uri": REDIRECT_URI,
        }

    @pytest.mark.asyncio
    async def test_client_credentials_sent_in_header_only(self, oauth_client, token_endpoint):
        """Should use HTTP Basic auth and keep the secret out of the body."""
        await oauth_client.exchange_code("abc123", REDIRECT_URI)

        request = token_endpoint.requests[0]
        expected = base64.b64encode(b"test_client_id:test_client_secret").decode()
        assert request.headers["Authorization"] == f"Basic {expected}"
        assert "client_secret" not in token_endpoint.form()
        assert "client_id" not in token_endpoint.form()

    @pytest.mark.asyncio
    async def test_rejected_code_raises_with_detail(self, oauth_client, token_endpoint):
        """Should raise ExchangeError carrying the upstream error body."""
        token_endpoint.reject(400, "invalid_grant")

        with pytest.raises(ExchangeError) as exc_info:
            await oauth_client.exchange_code("abc123", REDIRECT_URI)

        assert exc_info.value.status_code == 400
        assert "invalid_grant" in exc_info.value.detail

    @pytest.mark.asyncio
    async def test_non_json_body_raises(self, oauth_client, token_endpoint):
        """Should raise ExchangeError for a body that is not JSON."""
        token_endpoint.text = "<html>gateway</html>"

        with pytest.raises(ExchangeError):
            await oauth_client.exchange_code("abc123", REDIRECT_URI)

    @pytest.mark.asyncio
    async def test_missing_access_token_raises(self, oauth_client, token_endpoint):
        """Should raise ExchangeError when the body lacks an access token."""
        token_endpoint.payload = {"refresh_token": "RT1", "expires_in": 3600}

        with pytest.raises(ExchangeError):
            await oauth_client.exchange_code("abc123", REDIRECT_URI)

    @pytest.mark.asyncio
    async def test_network_failure_raises(self, oauth_client, token_endpoint):
        """Should raise ExchangeError when Fitbit cannot be reached."""
        token_endpoint.error = httpx.ConnectError("connection refused")

        with pytest.raises(ExchangeError) as exc_info:
            await oauth_client.exchange_code("abc123", REDIRECT_URI)

        assert exc_info.value.status_code is None

    @pytest.mark.asyncio
    @pytest.mark.parametrize("access_token", [None, 12345, ""])
    async def test_non_string_access_token_raises(
        self, oauth_client, token_endpoint, access_token
    ):
        """Should raise ExchangeError instead of storing a bogus token."""
        token_endpoint.payload = {
            "access_token": access_token,
            "refresh_token": "RT1",
            "expires_in": 3600,
        }

        with pytest.raises(ExchangeError):
            await oauth_client.exchange_code("abc123", REDIRECT_URI)

    @pytest.mark.asyncio
    async def test_redirect_response_raises(self, oauth_client, token_endpoint):
        """Should treat any non-2xx answer as an error, even with a JSON body."""
        token_endpoint.status_code = 302

        with pytest.raises(ExchangeError) as exc_info:
            await oauth_client.exchange_code("abc123", REDIRECT_URI)

        assert exc_info.value.status_code == 302


class TestRefresh:
    """Tests for the refresh-token grant."""

    @pytest.mark.asyncio
    async def test_sends_refresh_token_grant(
        self, oauth_client, token_endpoint, expired_credential
    ):
        """Should post the stored refresh token."""
        await oauth_client.refresh(expired_credential)

        assert token_endpoint.form() == {
            "grant_type": "refresh_token",
            "refresh_token": expired_credential.refresh_token,
        }

    @pytest.mark.asyncio
    async def test_returns_new_credential(self, oauth_client, token_endpoint, expired_credential):
        """Should return a credential with the new tokens."""
        credential = await oauth_client.refresh(expired_credential)

        assert credential.access_token == "AT1"
        assert credential.refresh_token == "RT1"

    @pytest.mark.asyncio
    async def test_keeps_refresh_token_when_not_rotated(
        self, oauth_client, token_endpoint, expired_credential
    ):
        """Should keep the old refresh token if Fitbit does not return one."""
        token_endpoint.payload = {"access_token": "AT2", "expires_in": 3600}

        credential = await oauth_client.refresh(expired_credential)

        assert credential.access_token == "AT2"
        assert credential.refresh_token == expired_credential.refresh_token

    @pytest.mark.asyncio
    async def test_rejected_refresh_token_raises(
        self, oauth_client, token_endpoint, expired_credential
    ):
        """Should raise RefreshError when the refresh token is revoked."""
        token_endpoint.reject(401, "invalid_token")

        with pytest.raises(RefreshError) as exc_info:
            await oauth_client.refresh(expired_credential)

        assert exc_info.value.status_code == 401
        assert len(token_endpoint.requests) == 1

    @pytest.mark.asyncio
    @pytest.mark.parametrize("expires_in", ["1e20", "1e400"])
    async def test_out_of_range_expiry_raises(
        self, oauth_client, token_endpoint, expired_credential, expires_in
    ):
        """Should raise RefreshError for an expires_in no datetime can hold."""
        token_endpoint.text = (
            f'{{"access_token": "AT2", "refresh_token": "RT2", "expires_in": {expires_in}}}'
        )

        with pytest.raises(RefreshError):
            await oauth_client.refresh(expired_credential)

    @pytest.mark.asyncio
    async def test_missing_credentials_raise_config_error(self, expired_credential):
        """Should refuse to call Fitbit without client credentials."""
        client = OAuthClient("", "")
        try:
            with pytest.raises(ConfigError):
                await client.refresh(expired_credential)
        finally:
            await client.aclose()
