"""
FastAPI dependencies. Injected into route handlers.
"""

from typing import AsyncIterator

from fastapi import Depends, HTTPException, Request, status
from sqlalchemy.ext.asyncio import AsyncSession

from ..services.context import ServiceContext


def get_services(request: Request) -> ServiceContext:
    """The ServiceContext built at startup."""
    services = getattr(request.app.state, "services", None)
    if services is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Service is starting up",
        )
    return services


async def get_db(services: ServiceContext = Depends(get_services)) -> AsyncIterator[AsyncSession]:
    """Yields an async DB session per request (commit on success)."""
    async with services.session() as session:
        yield session
