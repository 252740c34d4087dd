import json
import logging
from functools import lru_cache

from fastapi import Header
from jose import JWTError, jwt
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncEngine, async_sessionmaker, create_async_engine
from sqlmodel import SQLModel
from sqlmodel.ext.asyncio.session import AsyncSession
from typing_extensions import Annotated

from tasklist.core.config import Settings, get_settings
from tasklist.core.errors import AuthError

logger = logging.getLogger(__name__)


@lru_cache
def get_engine() -> AsyncEngine:
    settings = get_settings()
    return create_async_engine(
        settings.database_url,
        echo=settings.database_echo,
        future=True,
        pool_pre_ping=True,
    )


@lru_cache
def get_session_factory() -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(
        get_engine(),
        class_=AsyncSession,
        expire_on_commit=False,
        autocommit=False,
        autoflush=False,
    )


AUTHENTICATED_ROLE = "authenticated"
ANON_ROLE = "anon"


def verify_token(authorization: str, settings: Settings | None = None) -> dict:
    """
    Verify a ``Bearer`` token against the project's JWT secret and return its claims.

    Raises AuthError for a malformed header, a bad signature or audience, an
    expired token, or a token without a subject.
    """
    settings = settings or get_settings()
    scheme, _, token = authorization.partition(" ")
    token = token.strip()
    if scheme.lower() != "bearer" or not token:
        raise AuthError("Authorization header must be 'Bearer <token>'")
    if not settings.jwt_secret:
        raise AuthError("Token verification is not configured")
    try:
        claims = jwt.decode(
            token,
            settings.jwt_secret,
            algorithms=[settings.jwt_algorithm],
            audience=settings.jwt_audience,
        )
    except JWTError as e:
        raise AuthError(f"Invalid token: {e}") from e
    if not claims.get("sub"):
        raise AuthError("Invalid token: no subject")
    return claims


async def scope_session(session: AsyncSession, claims: dict | None) -> None:
    """
    Run the session's transaction as the caller.

    Verified claims switch the transaction to the ``authenticated`` role and
    publish them as ``request.jwt.claims``; ``auth.uid()`` and the tasks
    table's row-level policies read them from there. Without claims the
    transaction runs as ``anon``. Both settings are transaction-local, so they
    never leak to the next user of the pooled connection.
    """
    if session.bind.dialect.name != "postgresql":
        return
    await session.exec(
        text(
            "select set_config('role', :role, true), "
            "set_config('request.jwt.claims', :claims, true)"
        ).bindparams(
            role=AUTHENTICATED_ROLE if claims else ANON_ROLE,
            claims=json.dumps(claims or {}),
        )
    )


# Dependency for getting a DB session scoped to the caller
async def get_db(authorization: Annotated[str | None, Header()] = None):
    claims = verify_token(authorization) if authorization else None
    async with get_session_factory()() as session:
        if claims is None:
            logger.debug("Request without Authorization header, using anon session")
        await scope_session(session, claims)
        yield session


async def create_db_and_tables():
    async with get_engine().begin() as conn:
        await conn.run_sync(SQLModel.metadata.create_all)
