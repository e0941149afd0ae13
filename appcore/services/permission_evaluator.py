"""
Decides which applications a principal may see or mutate.

Checks come in two shapes that must agree with each other: `authorize` answers
for a single loaded entity, `clause` produces the equivalent SQL predicate so
listing queries can filter inside the database.
"""

from dataclasses import dataclass
from typing import FrozenSet, Iterable, Optional
from uuid import UUID

import structlog
from sqlalchemy import exists, false, or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from appcore.models.application import Application
from appcore.models.policy import AclPermission, ApplicationPolicy

logger = structlog.get_logger()

# Grants that satisfy a requested permission
IMPLIED_BY = {
    AclPermission.READ_APPLICATIONS: (
        AclPermission.READ_APPLICATIONS,
        AclPermission.MANAGE_APPLICATIONS,
    ),
    AclPermission.MANAGE_APPLICATIONS: (AclPermission.MANAGE_APPLICATIONS,),
    AclPermission.MAKE_PUBLIC_APPLICATIONS: (AclPermission.MAKE_PUBLIC_APPLICATIONS,),
}


@dataclass(frozen=True)
class Principal:
    """The caller on whose behalf a request runs. `user_id=None` is anonymous."""

    user_id: Optional[UUID] = None

    @property
    def is_anonymous(self) -> bool:
        return self.user_id is None


ANONYMOUS = Principal()


def _granting_values(permission: AclPermission) -> list[str]:
    return [p.value for p in IMPLIED_BY[permission]]


class PermissionEvaluator:
    def __init__(self, session: AsyncSession):
        self.session = session

    def clause(self, principal: Principal, permission: AclPermission):
        """SQL predicate over `Application` equivalent to `authorize`."""
        if principal.is_anonymous:
            granted = false()
        else:
            granted = exists().where(
                ApplicationPolicy.application_id == Application.id,
                ApplicationPolicy.principal_id == principal.user_id,
                ApplicationPolicy.permission.in_(_granting_values(permission)),
            )
        if permission == AclPermission.READ_APPLICATIONS:
            return or_(Application.is_public.is_(True), granted)
        return granted

    async def authorize(
        self, principal: Principal, application: Application, permission: AclPermission
    ) -> bool:
        if permission == AclPermission.READ_APPLICATIONS and application.is_public:
            return True
        if principal.is_anonymous:
            return False

        result = await self.session.execute(
            select(ApplicationPolicy.id)
            .where(
                ApplicationPolicy.application_id == application.id,
                ApplicationPolicy.principal_id == principal.user_id,
                ApplicationPolicy.permission.in_(_granting_values(permission)),
            )
            .limit(1)
        )
        allowed = result.scalars().first() is not None
        if not allowed:
            logger.info(
                "Permission denied",
                application_id=str(application.id),
                principal_id=str(principal.user_id),
                permission=permission.value,
            )
        return allowed

    async def permissions_for(
        self, principal: Principal, application: Application
    ) -> FrozenSet[str]:
        """Every permission the principal effectively holds on the application."""
        held = set()
        if not principal.is_anonymous:
            result = await self.session.execute(
                select(ApplicationPolicy.permission).where(
                    ApplicationPolicy.application_id == application.id,
                    ApplicationPolicy.principal_id == principal.user_id,
                )
            )
            granted = set(result.scalars().all())
            for permission, granting in IMPLIED_BY.items():
                if granted.intersection(p.value for p in granting):
                    held.add(permission.value)
        if application.is_public:
            held.add(AclPermission.READ_APPLICATIONS.value)
        return frozenset(held)

    async def grant(
        self,
        principal_id: UUID,
        application_id: UUID,
        permissions: Iterable[AclPermission],
    ) -> None:
        """Stage grants on the session; the caller commits."""
        for permission in permissions:
            self.session.add(
                ApplicationPolicy(
                    application_id=application_id,
                    principal_id=principal_id,
                    permission=permission.value,
                )
            )

    async def copy_policies(self, source_application_id: UUID, target_application_id: UUID) -> int:
        """Stage a copy of every grant on source onto target; the caller commits."""
        result = await self.session.execute(
            select(ApplicationPolicy).where(
                ApplicationPolicy.application_id == source_application_id
            )
        )
        copied = 0
        for policy in result.scalars().all():
            self.session.add(
                ApplicationPolicy(
                    application_id=target_application_id,
                    principal_id=policy.principal_id,
                    permission=policy.permission,
                )
            )
            copied += 1
        return copied
