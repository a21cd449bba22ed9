"""FastAPI dependencies."""

from datetime import datetime
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncSession

from pricesync.db.models import Store
from pricesync.db.session import get_db
from pricesync.worker.tasks import TaskRunner, task_runner


async def get_database() -> AsyncSession:
    """Dependency for database session."""
    async for session in get_db():
        yield session
        break  # Only yield once, as FastAPI handles the session lifecycle


def get_task_runner() -> TaskRunner:
    """Dependency for the shared task runner (scrapers, tracking, matching)."""
    return task_runner


async def resolve_plan(db: AsyncSession, store_id: str, plan: Optional[str]) -> Optional[str]:
    """Use the explicit plan if given, else the store's effective plan."""
    if plan:
        return plan
    store = await db.get(Store, store_id)
    if store is None:
        return None
    return store.effective_plan(datetime.utcnow())
