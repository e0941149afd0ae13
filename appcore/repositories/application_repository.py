"""Repository encapsulating persistence of `Application` records.

The repository is the only place that talks to the session. It translates
optimistic-concurrency and unique-constraint violations into `ConflictError`
so services never see driver exceptions.
"""

from contextlib import asynccontextmanager
from typing import AsyncIterator, List, Optional
from uuid import UUID

import structlog
from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm.exc import StaleDataError

from appcore.core.exceptions import ConflictError
from appcore.models.application import Application

logger = structlog.get_logger()


def _without_transient(application: Optional[Application]) -> Optional[Application]:
    # Read-time fields belong to one enrichment, never to a later fetch
    if application is not None:
        application.transient = None
    return application


class ApplicationRepository:
    """Queries and writes for `Application` rows."""

    def __init__(self, session: AsyncSession):
        self.session = session

    @asynccontextmanager
    async def write_guard(self, operation: str, conflict_detail: Optional[str] = None):
        """Roll back and raise `ConflictError` on stale or duplicate writes."""
        try:
            yield
        except StaleDataError as exc:
            await self.session.rollback()
            logger.warning("Stale application write rejected", operation=operation)
            raise ConflictError(
                "Application was modified by another request, reload and retry"
            ) from exc
        except IntegrityError as exc:
            await self.session.rollback()
            logger.warning(
                "Application write violated a constraint",
                operation=operation,
                error=str(exc.orig),
            )
            raise ConflictError(
                conflict_detail
                or "An application with this name or branch already exists"
            ) from exc

    async def get(self, application_id: UUID) -> Optional[Application]:
        """Fetch by primary key, archived rows included."""
        result = await self.session.execute(
            select(Application).where(Application.id == application_id)
        )
        return _without_transient(result.scalars().first())

    async def first(self, *conditions, include_deleted: bool = False) -> Optional[Application]:
        """Return the oldest row matching `conditions`."""
        stmt = select(Application).where(*conditions)
        if not include_deleted:
            stmt = stmt.where(Application.deleted.is_(False))
        stmt = stmt.order_by(Application.created_at, Application.id).limit(1)
        result = await self.session.execute(stmt)
        return _without_transient(result.scalars().first())

    async def linkage(self, application_id: UUID):
        """Stored `(default_application_id, branch_name)` row, bypassing the identity map."""
        result = await self.session.execute(
            select(Application.default_application_id, Application.branch_name).where(
                Application.id == application_id
            )
        )
        return result.first()

    async def find_id(self, *conditions) -> Optional[UUID]:
        """Return only the identity of the first non-archived match."""
        stmt = (
            select(Application.id)
            .where(*conditions, Application.deleted.is_(False))
            .limit(1)
        )
        result = await self.session.execute(stmt)
        return result.scalars().first()

    async def stream(self, *conditions, include_deleted: bool = False) -> AsyncIterator[Application]:
        """Lazily yield matching rows. Closing the iterator closes the cursor."""
        stmt = select(Application).where(*conditions)
        if not include_deleted:
            stmt = stmt.where(Application.deleted.is_(False))
        stmt = stmt.order_by(Application.created_at, Application.id)

        result = await self.session.stream_scalars(stmt)
        try:
            async for application in result:
                yield _without_transient(application)
        finally:
            await result.close()

    async def count_branches(self, default_application_id: UUID) -> int:
        result = await self.session.execute(
            select(func.count(Application.id)).where(
                Application.default_application_id == default_application_id,
                Application.deleted.is_(False),
            )
        )
        return result.scalar_one()

    async def names_in_organization(self, organization_id: UUID, name: str) -> List[str]:
        """Names of live applications in the organization starting with `name`."""
        result = await self.session.execute(
            select(Application.name).where(
                Application.organization_id == organization_id,
                Application.name.startswith(name, autoescape=True),
                Application.deleted.is_(False),
            )
        )
        return list(result.scalars().all())

    async def insert(self, application: Application) -> Application:
        async with self.write_guard("insert"):
            self.session.add(application)
            await self.session.flush()
        return application

    async def update(self, application: Application) -> Application:
        """Flush changes to an existing row, checking its version token."""
        async with self.write_guard("update"):
            merged = await self.session.merge(application)
            await self.session.flush()
        return merged

    async def commit(self, *refresh: Application) -> None:
        async with self.write_guard("commit"):
            await self.session.commit()
        for application in refresh:
            await self.session.refresh(application)
