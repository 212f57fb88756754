"""Fitbit OAuth credential model.

A single credential is managed per process. It is created by exchanging an
authorization code, replaced on every refresh, and persisted as JSON by
:mod:`fitbit_mcp.store`.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass
from datetime import datetime, timedelta, timezone
from typing import Any


def utcnow() -> datetime:
    """Return the current time as an aware UTC datetime."""
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class Credential:
    """Access and refresh token pair issued by Fitbit."""

    access_token: str
    refresh_token: str
    expires_at: datetime | None = None
    scope: str | None = None
    token_type: str | None = None
    user_id: str | None = None

    @classmethod
    def from_token_response(
        cls,
        payload: dict[str, Any],
        now: datetime | None = None,
        previous: Credential | None = None,
    ) -> Credential:
        """Build a credential from a Fitbit token endpoint response.

        Args:
            payload: Decoded JSON body with access_token, refresh_token, expires_in.
            now: Issue time used to turn expires_in into an absolute instant.
            previous: Credential being refreshed; its refresh token is kept when
                the response does not rotate it.

        Returns:
            The new credential.

        Raises:
            KeyError: If access_token is missing.
            ValueError: If access_token is not a non-empty string, no refresh token is
                available, or expires_in is not a usable number of seconds.
        """
        issued_at = now or utcnow()
        access_token = payload["access_token"]
        if not isinstance(access_token, str) or not access_token:
            raise ValueError("token response access_token must be a non-empty string")
        refresh_token = payload.get("refresh_token") or (
            previous.refresh_token if previous else None
        )
        if not refresh_token:
            raise ValueError("token response did not include a refresh_token")

        expires_in = payload.get("expires_in")
        expires_at = None
        if expires_in is not None:
            try:
                expires_at = issued_at + timedelta(seconds=float(expires_in))
            except OverflowError as exc:
                raise ValueError(f"expires_in out of range: {expires_in!r}") from exc
        user_id = payload.get("user_id")
        return cls(
            access_token=access_token,
            refresh_token=str(refresh_token),
            expires_at=expires_at,
            scope=payload.get("scope"),
            token_type=payload.get("token_type"),
            user_id=str(user_id) if user_id is not None else None,
        )

    def to_dict(self) -> dict[str, Any]:
        """Convert the credential to a JSON-serialisable dictionary for storage."""
        data = asdict(self)
        data["expires_at"] = self.expires_at.isoformat() if self.expires_at else None
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Credential:
        """Rebuild a credential from :meth:`to_dict` output.

        Raises:
            KeyError: If a token field is missing.
            TypeError: If data is not a mapping.
            ValueError: If a field has the wrong type or expires_at is not ISO-8601.
        """
        access_token = data["access_token"]
        refresh_token = data["refresh_token"]
        if not isinstance(access_token, str) or not isinstance(refresh_token, str):
            raise ValueError("stored tokens must be strings")

        raw_expiry = data.get("expires_at")
        expires_at = None
        if raw_expiry is not None:
            expires_at = datetime.fromisoformat(raw_expiry)
            if expires_at.tzinfo is None:
                expires_at = expires_at.replace(tzinfo=timezone.utc)

        return cls(
            access_token=access_token,
            refresh_token=refresh_token,
            expires_at=expires_at,
            scope=data.get("scope"),
            token_type=data.get("token_type"),
            user_id=data.get("user_id"),
        )


def is_token_expired(credential: Credential, now: datetime | None = None) -> bool:
    """Check if the access token is expired.

    A credential is valid while ``now < expires_at``. No clock-skew margin is
    applied. A credential without an expiry is treated as valid and left for
    the Fitbit API to reject.

    Args:
        credential: Credential to check.
        now: Reference time, defaults to the current UTC time.

    Returns:
        True if token is expired, False otherwise.
    """
    if credential.expires_at is None:
        return False
    return not (now or utcnow()) < credential.expires_at
