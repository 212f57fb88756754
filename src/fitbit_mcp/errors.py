"""Exceptions raised by the Fitbit authorization subsystem."""

from __future__ import annotations


class FitbitAuthError(Exception):
    """Base class for authorization and token lifecycle errors."""


class ConfigError(FitbitAuthError):
    """Fitbit client id or secret is missing."""


class CallbackError(FitbitAuthError):
    """The OAuth callback did not carry a usable authorization code."""


class TokenRequestError(FitbitAuthError):
    """A request to the Fitbit token endpoint failed.

    Attributes:
        status_code: HTTP status returned by Fitbit, or None for transport failures.
        detail: Raw response body from Fitbit, when one was received.
    """

    def __init__(
        self,
        message: str,
        *,
        status_code: int | None = None,
        detail: str | None = None,
    ) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.detail = detail


class ExchangeError(TokenRequestError):
    """Exchanging an authorization code for a token failed."""


class RefreshError(TokenRequestError):
    """Refreshing an access token failed; re-authorization is required."""


class PersistenceError(FitbitAuthError):
    """The token store could not be read or written."""


class CorruptCredentialError(PersistenceError):
    """A stored credential exists but could not be decoded."""


class InvalidTransitionError(FitbitAuthError):
    """An authorization session was moved to a state it cannot reach."""
