"""FastAPI dependencies."""

import secrets
from typing import Optional

from fastapi import Header, HTTPException, status
from sqlalchemy.ext.asyncio import AsyncSession

from price_tracker.config import settings
from price_tracker.db.session import get_db
from price_tracker.worker.tasks import TaskRunner, task_runner


async def get_database() -> AsyncSession:
    """Dependency for database session."""
    async for session in get_db():
        yield session
        break  # Only yield once, as FastAPI handles the session lifecycle


def get_task_runner() -> TaskRunner:
    """Dependency for the shared task runner (overridden in tests)."""
    return task_runner


async def require_cron_secret(
    authorization: Optional[str] = Header(None),
) -> None:
    """
    Dependency to require the shared cron secret as a bearer token.

    Args:
        authorization: ``Authorization: Bearer <secret>`` header

    Raises:
        HTTPException: 503 if no secret is configured, 401 if the header is
            missing or malformed, 403 if the secret is wrong
    """
    if not settings.cron_secret:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Cron secret not configured",
        )

    scheme, _, token = (authorization or "").partition(" ")
    if scheme.lower() != "bearer" or not token:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Missing bearer token",
            headers={"WWW-Authenticate": "Bearer"},
        )

    if not secrets.compare_digest(token.strip().encode(), settings.cron_secret.encode()):
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Invalid cron secret",
        )
