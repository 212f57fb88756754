"""Durable single-row storage for the Fitbit credential."""

from __future__ import annotations

import asyncio
import json
import logging
from datetime import datetime
from typing import Any

from sqlalchemy import JSON, CheckConstraint, DateTime, Integer, func, select
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncEngine, create_async_engine
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

from .errors import CorruptCredentialError, PersistenceError
from .tokens import Credential

logger = logging.getLogger(__name__)

# The store only ever holds this row.
SINGLETON_ID = 1

# asyncpg lets socket errors through unwrapped when it cannot connect.
_DATABASE_ERRORS = (SQLAlchemyError, OSError, asyncio.TimeoutError)


class Base(DeclarativeBase):
    """Base class for token storage models."""

    pass


class FitbitToken(Base):
    """Single-row table for persisting the Fitbit credential across restarts."""

    __tablename__ = "fitbit_token"
    __table_args__ = (CheckConstraint("id = 1", name="single_token_row"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True, default=SINGLETON_ID)
    token_data: Mapped[dict[str, Any]] = mapped_column(
        JSON().with_variant(postgresql.JSONB(), "postgresql"), nullable=False
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False
    )

    def __repr__(self) -> str:
        return f"<FitbitToken(id={self.id})>"


def normalize_database_url(url: str) -> str:
    """Point plain PostgreSQL and SQLite URLs at their asyncio drivers.

    Hosting providers hand out ``postgres://`` URLs, SQLAlchemy needs
    ``postgresql+asyncpg://``.
    """
    if url.startswith("postgres://"):
        return url.replace("postgres://", "postgresql+asyncpg://", 1)
    if url.startswith("postgresql://"):
        return url.replace("postgresql://", "postgresql+asyncpg://", 1)
    if url.startswith("sqlite://"):
        return url.replace("sqlite://", "sqlite+aiosqlite://", 1)
    return url


def create_store_engine(database_url: str, ssl: bool = False) -> AsyncEngine:
    """Create the async SQLAlchemy engine backing the token store."""
    url = normalize_database_url(database_url)
    connect_args: dict[str, Any] = {}
    if ssl and url.startswith("postgresql+asyncpg"):
        connect_args["ssl"] = "require"
    return create_async_engine(url, pool_pre_ping=True, connect_args=connect_args)


class TokenStore:
    """Persist the credential as a single upserted row."""

    def __init__(self, engine: AsyncEngine) -> None:
        self.engine = engine
        self._schema_ready = False
        self._schema_lock = asyncio.Lock()

    @classmethod
    def from_url(cls, database_url: str, ssl: bool = False) -> TokenStore:
        return cls(create_store_engine(database_url, ssl=ssl))

    async def ensure_schema(self) -> None:
        """Create the token table if it does not exist yet."""
        if self._schema_ready:
            return
        async with self._schema_lock:
            if self._schema_ready:
                return
            try:
                async with self.engine.begin() as conn:
                    await conn.run_sync(Base.metadata.create_all)
            except _DATABASE_ERRORS as exc:
                raise PersistenceError(f"Could not initialize token table: {exc}") from exc
            self._schema_ready = True
            logger.info("Token table initialized")

    def _upsert(self, token_data: dict[str, Any]):
        dialect = self.engine.dialect.name
        if dialect == "postgresql":
            insert = postgresql.insert
        elif dialect == "sqlite":
            insert = sqlite.insert
        else:
            raise PersistenceError(f"Unsupported database dialect: {dialect}")

        stmt = insert(FitbitToken).values(id=SINGLETON_ID, token_data=token_data)
        return stmt.on_conflict_do_update(
            index_elements=[FitbitToken.id],
            set_={"token_data": stmt.excluded.token_data, "updated_at": func.now()},
        )

    async def save(self, credential: Credential) -> None:
        """Insert or overwrite the stored credential.

        Raises:
            PersistenceError: If the database cannot be written.
        """
        await self.ensure_schema()
        stmt = self._upsert(credential.to_dict())
        try:
            async with self.engine.begin() as conn:
                await conn.execute(stmt)
        except _DATABASE_ERRORS as exc:
            raise PersistenceError(f"Error saving token to database: {exc}") from exc
        logger.info("Token saved to database")

    async def load(self) -> Credential | None:
        """Load the stored credential.

        Returns:
            The credential, or None if nothing has been stored yet.

        Raises:
            CorruptCredentialError: If the stored row cannot be decoded.
            PersistenceError: If the database cannot be read.
        """
        await self.ensure_schema()
        try:
            async with self.engine.connect() as conn:
                result = await conn.execute(
                    select(FitbitToken.token_data).where(FitbitToken.id == SINGLETON_ID)
                )
                raw = result.scalar_one_or_none()
        except _DATABASE_ERRORS as exc:
            raise PersistenceError(f"Error loading token from database: {exc}") from exc

        if raw is None:
            logger.info("No token found in database")
            return None

        try:
            # Drivers without native JSON support hand back the encoded string.
            data = json.loads(raw) if isinstance(raw, str) else raw
            credential = Credential.from_dict(data)
        except (KeyError, TypeError, ValueError) as exc:
            raise CorruptCredentialError(f"Stored token could not be decoded: {exc}") from exc

        logger.info("Token loaded from database")
        return credential

    async def dispose(self) -> None:
        """Close all pooled connections. Call this during shutdown."""
        await self.engine.dispose()
