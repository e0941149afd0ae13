from typing import Awaitable, Callable
from uuid import UUID

import structlog
from sqlalchemy.ext.asyncio import AsyncSession

from appcore.core.config import get_settings
from appcore.models.page import Page

settings = get_settings()
logger = structlog.get_logger()

# Runs in its own session after a default application is committed
OnboardingHook = Callable[[AsyncSession, UUID], Awaitable[None]]


async def create_default_page(session: AsyncSession, application_id: UUID) -> None:
    session.add(
        Page(
            application_id=application_id,
            name=settings.DEFAULT_PAGE_NAME,
            is_default=True,
        )
    )
    logger.info("Default page staged", application_id=str(application_id))


DEFAULT_ONBOARDING_HOOKS: tuple[OnboardingHook, ...] = (create_default_page,)
