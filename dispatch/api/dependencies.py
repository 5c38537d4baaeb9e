"""FastAPI dependency injection helpers."""

from fastapi import Request
from sqlalchemy.ext.asyncio import AsyncSession

from dispatch.infrastructure.database import async_session_factory
from dispatch.infrastructure.stores import SqlDriverStore
from dispatch.services.coordinator import TripLifecycleCoordinator


async def get_db() -> AsyncSession:  # type: ignore[misc]
    """Yield an async DB session; commit on success, rollback on error."""
    async with async_session_factory() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise


def get_coordinator(request: Request) -> TripLifecycleCoordinator:
    """The coordinator built once in the application lifespan."""
    return request.app.state.coordinator


def get_driver_store(request: Request) -> SqlDriverStore:
    return request.app.state.driver_store


def get_session_factory(request: Request):
    return request.app.state.session_factory
