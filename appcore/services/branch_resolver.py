from typing import AsyncIterator, Optional
from uuid import UUID

import structlog
from sqlalchemy import or_

from appcore.core.exceptions import ForbiddenError, NotFoundError
from appcore.models.application import Application
from appcore.models.policy import AclPermission
from appcore.repositories.application_repository import ApplicationRepository
from appcore.services.permission_evaluator import PermissionEvaluator, Principal

logger = structlog.get_logger()


def _branch_conditions(branch_name: Optional[str], default_application_id: UUID) -> tuple:
    if not branch_name:
        return (Application.id == default_application_id,)
    # Exact, case-sensitive match only
    return (
        Application.default_application_id == default_application_id,
        Application.branch_name == branch_name,
    )


class BranchResolver:
    """Maps `(branch_name, default_application_id)` to a concrete application.

    An empty or missing branch name resolves to the default application
    itself. Every branch-qualified lookup in the service goes through here.
    """

    def __init__(
        self,
        repository: ApplicationRepository,
        permission_evaluator: PermissionEvaluator,
        principal: Principal,
    ):
        self.repository = repository
        self.permission_evaluator = permission_evaluator
        self.principal = principal

    def _not_found(self, branch_name, default_application_id) -> NotFoundError:
        return NotFoundError.for_resource(
            "application", default_application_id, branch_name or ""
        )

    async def resolve(
        self,
        branch_name: Optional[str],
        default_application_id: UUID,
        permission: AclPermission,
    ) -> Application:
        application = await self.repository.first(
            *_branch_conditions(branch_name, default_application_id)
        )
        if application is None:
            raise self._not_found(branch_name, default_application_id)

        if not await self.permission_evaluator.authorize(
            self.principal, application, permission
        ):
            raise ForbiddenError()
        return application

    async def resolve_id(
        self,
        branch_name: Optional[str],
        default_application_id: UUID,
        permission: AclPermission,
    ) -> UUID:
        """Like `resolve` but never hydrates the entity."""
        conditions = _branch_conditions(branch_name, default_application_id)
        application_id = await self.repository.find_id(
            *conditions,
            self.permission_evaluator.clause(self.principal, permission),
        )
        if application_id is not None:
            return application_id

        if await self.repository.find_id(*conditions) is None:
            raise self._not_found(branch_name, default_application_id)
        raise ForbiddenError()

    async def iter_family(self, default_application_id: UUID) -> AsyncIterator[Application]:
        """Yield the default application and its live branches."""
        async for application in self.repository.stream(
            or_(
                Application.id == default_application_id,
                Application.default_application_id == default_application_id,
            )
        ):
            yield application
