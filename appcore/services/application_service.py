"""
Application reads and writes, split by capability.

`TrustedApplicationService` performs no access checks and is meant for code
that has already authorized the caller (aggregation jobs, post-edit
bookkeeping, cross-branch sync). `ApplicationService` is the public
capability: every operation taking a `permission` checks it against the
request principal before returning data.
"""

import asyncio
import re
from datetime import datetime, timezone
from typing import AsyncIterator, Iterable, Optional, Sequence
from urllib.parse import quote, urlencode
from uuid import UUID

import structlog
from sqlalchemy import inspect
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from appcore.core.config import get_settings
from appcore.core.exceptions import (
    ConflictError,
    ForbiddenError,
    InvalidStateError,
    NotFoundError,
)
from appcore.core.telemetry import telemetry
from appcore.models.application import Application, ApplicationTransientFields
from appcore.models.git_auth import GitAuth
from appcore.models.policy import AclPermission
from appcore.repositories.application_repository import ApplicationRepository
from appcore.schemas import ApplicationAccessDTO, ApplicationViewMode
from appcore.services.branch_resolver import BranchResolver
from appcore.services.keypair_manager import KeypairManager
from appcore.services.onboarding import DEFAULT_ONBOARDING_HOOKS, OnboardingHook
from appcore.services.permission_evaluator import (
    ANONYMOUS,
    PermissionEvaluator,
    Principal,
)

settings = get_settings()
logger = structlog.get_logger()

OWNER_PERMISSIONS = tuple(AclPermission)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _slugify(name: str) -> str:
    slug = re.sub(r"[^a-z0-9]+", "-", name.lower()).strip("-")
    return slug or "application"


def _application_url(application: Application, suffix: str = "") -> str:
    path = f"/app/{quote(_slugify(application.name))}/{application.id}{suffix}"
    url = settings.BASE_URL.rstrip("/") + path
    if application.branch_name:
        url += "?" + urlencode({"branch": application.branch_name})
    return url


def next_available_name(name: str, taken: Iterable[str]) -> str:
    """`name` if free, otherwise the first free `name (n)`."""
    taken = set(taken)
    if name not in taken:
        return name
    n = 1
    while f"{name} ({n})" in taken:
        n += 1
    return f"{name} ({n})"


class TrustedApplicationService:
    """Unguarded access. Callers must have authorized the principal already."""

    def __init__(self, session: AsyncSession, principal: Principal = ANONYMOUS):
        self.session = session
        self.principal = principal
        self.repository = ApplicationRepository(session)
        self.permission_evaluator = PermissionEvaluator(session)
        self.branch_resolver = BranchResolver(
            self.repository, self.permission_evaluator, principal
        )

    async def find_by_id(self, application_id: UUID) -> Application:
        application = await self.repository.get(application_id)
        if application is None:
            raise NotFoundError.for_resource("application", application_id)
        return application

    async def find_all_applications_by_organization_id(
        self, organization_id: UUID
    ) -> AsyncIterator[Application]:
        async for application in self.repository.stream(
            Application.organization_id == organization_id
        ):
            yield application

    async def find_all_applications_by_git_default_application_id(
        self, default_application_id: UUID
    ) -> AsyncIterator[Application]:
        async for application in self.branch_resolver.iter_family(default_application_id):
            yield application

    async def save_last_edit_information(self, application_id: UUID) -> Application:
        application = await self.find_by_id(application_id)
        application.last_edited_at = _utcnow()
        application.last_edited_by = self.principal.user_id
        await self.repository.commit(application)
        return application

    async def _validate_git_linkage(self, application: Application) -> Optional[Application]:
        """Return the default application a branch points at, None for a root."""
        if application.default_application_id is None:
            if application.branch_name:
                raise InvalidStateError("A branch name requires a default application")
            return None

        if not application.branch_name:
            raise InvalidStateError("A branch requires a branch name")
        if application.id is not None and application.default_application_id == application.id:
            raise InvalidStateError("An application cannot be its own default application")

        default = await self.repository.get(application.default_application_id)
        if default is None or default.deleted:
            raise InvalidStateError(
                f"Default application {application.default_application_id} does not exist or is archived"
            )
        if default.default_application_id is not None:
            raise InvalidStateError("Branches can only be created from a default application")
        if default.organization_id != application.organization_id:
            raise InvalidStateError("A branch must belong to its default application's organization")
        return default

    async def _check_stored_linkage(self, application: Application) -> None:
        """An update must target a stored row and keep its branch linkage."""
        stored = await self.repository.linkage(application.id)
        if stored is None:
            raise NotFoundError.for_resource("application", application.id)
        if (stored.default_application_id, stored.branch_name) != (
            application.default_application_id,
            application.branch_name,
        ):
            raise InvalidStateError(
                "The default application and branch name of an existing application cannot change"
            )

    async def persist(
        self, application: Application, owner_id: Optional[UUID] = None
    ) -> Application:
        """Insert or update, grant `owner_id` on new roots, commit."""
        is_new = application.id is None and inspect(application).transient
        if not is_new:
            await self._check_stored_linkage(application)
        default = await self._validate_git_linkage(application)

        if is_new:
            application = await self.repository.insert(application)
            if default is not None:
                await self.permission_evaluator.copy_policies(default.id, application.id)
            elif owner_id is not None:
                await self.permission_evaluator.grant(
                    owner_id, application.id, OWNER_PERMISSIONS
                )
        else:
            application = await self.repository.update(application)

        await self.repository.commit(application)
        logger.info(
            "Application saved",
            app_id=str(application.id),
            inserted=bool(is_new),
            branch_name=application.branch_name,
        )
        return application

    async def save(self, application: Application) -> Application:
        return await self.persist(application)


class ApplicationService:
    """Permission-gated application operations for one request principal."""

    def __init__(
        self,
        session: AsyncSession,
        principal: Principal,
        session_factory: Optional[async_sessionmaker] = None,
        onboarding_hooks: Sequence[OnboardingHook] = DEFAULT_ONBOARDING_HOOKS,
    ):
        self.session = session
        self.principal = principal
        self._trusted = TrustedApplicationService(session, principal)
        self.repository = self._trusted.repository
        self.permission_evaluator = self._trusted.permission_evaluator
        self.branch_resolver = self._trusted.branch_resolver
        self.keypair_manager = KeypairManager(session, self.repository)

        if session_factory is None:
            from appcore.core.db import async_session_factory

            session_factory = async_session_factory
        self.session_factory = session_factory
        self.onboarding_hooks = tuple(onboarding_hooks)
        self._background_tasks: set[asyncio.Task] = set()

    async def _require(self, application: Application, permission: AclPermission) -> Application:
        if not await self.permission_evaluator.authorize(
            self.principal, application, permission
        ):
            raise ForbiddenError()
        return application

    # --- Reads ---

    async def find_by_id(self, application_id: UUID, permission: AclPermission) -> Application:
        """Archived applications are returned too."""
        application = await self._trusted.find_by_id(application_id)
        return await self._require(application, permission)

    async def find_by_id_and_organization_id(
        self, application_id: UUID, organization_id: UUID, permission: AclPermission
    ) -> Application:
        # Absence, foreign organization and missing permission all look alike
        application = await self.repository.first(
            Application.id == application_id,
            Application.organization_id == organization_id,
            self.permission_evaluator.clause(self.principal, permission),
            include_deleted=True,
        )
        if application is None:
            raise NotFoundError.for_resource("application", application_id)
        return application

    async def find_by_organization_id(
        self, organization_id: UUID, permission: AclPermission
    ) -> AsyncIterator[Application]:
        async for application in self.repository.stream(
            Application.organization_id == organization_id,
            self.permission_evaluator.clause(self.principal, permission),
        ):
            yield application

    async def find_by_cloned_from_application_id(
        self, application_id: UUID, permission: AclPermission
    ) -> AsyncIterator[Application]:
        async for application in self.repository.stream(
            Application.cloned_from_application_id == application_id,
            self.permission_evaluator.clause(self.principal, permission),
        ):
            yield application

    async def find_by_name(
        self,
        name: str,
        permission: AclPermission,
        organization_id: Optional[UUID] = None,
    ) -> Application:
        """Names are unique per organization only; pass one to disambiguate."""
        conditions = [
            Application.name == name,
            self.permission_evaluator.clause(self.principal, permission),
        ]
        if organization_id is not None:
            conditions.append(Application.organization_id == organization_id)
        application = await self.repository.first(*conditions)
        if application is None:
            raise NotFoundError.for_resource("application", name)
        return application

    async def get_application_by_branch_name_and_default_application(
        self,
        branch_name: Optional[str],
        default_application_id: UUID,
        permission: AclPermission,
    ) -> Application:
        return await self.branch_resolver.resolve(
            branch_name, default_application_id, permission
        )

    async def get_child_application_id(
        self,
        branch_name: Optional[str],
        default_application_id: UUID,
        permission: AclPermission,
    ) -> UUID:
        return await self.branch_resolver.resolve_id(
            branch_name, default_application_id, permission
        )

    async def get_application_in_view_mode(
        self, application_id: UUID, branch_name: Optional[str] = None
    ) -> ApplicationViewMode:
        if branch_name:
            application = await self.branch_resolver.resolve(
                branch_name, application_id, AclPermission.READ_APPLICATIONS
            )
        else:
            application = await self._trusted.find_by_id(application_id)
            if application.deleted:
                raise NotFoundError.for_resource("application", application_id)
            await self._require(application, AclPermission.READ_APPLICATIONS)

        return ApplicationViewMode(
            id=application.id,
            name=application.name,
            organization_id=application.organization_id,
            branch_name=application.branch_name,
            is_public=application.is_public,
            view_url=_application_url(application),
            last_edited_at=application.last_edited_at,
        )

    async def set_transient_fields(self, application: Application) -> Application:
        """Recompute read-time fields in place. Nothing here is persisted."""
        user_permissions = await self.permission_evaluator.permissions_for(
            self.principal, application
        )
        branch_count = await self.repository.count_branches(application.root_id)
        application.transient = ApplicationTransientFields(
            user_permissions=user_permissions,
            view_url=_application_url(application),
            edit_url=_application_url(application, "/edit"),
            is_default=not application.is_branch,
            branch_count=branch_count,
        )
        return application

    # --- Writes ---

    async def save(self, application: Application) -> Application:
        """Upsert. Updates need manage access; new branches need it on the default."""
        if application.id is None and inspect(application).transient:
            if self.principal.is_anonymous:
                raise ForbiddenError("Anonymous users cannot create applications")
            if application.default_application_id is not None:
                default = await self._trusted.find_by_id(application.default_application_id)
                await self._require(default, AclPermission.MANAGE_APPLICATIONS)
            elif application.cloned_from_application_id is not None:
                source = await self._trusted.find_by_id(application.cloned_from_application_id)
                await self._require(source, AclPermission.READ_APPLICATIONS)
            return await self._trusted.persist(application, owner_id=self.principal.user_id)

        existing = await self.repository.get(application.id)
        if existing is None:
            raise NotFoundError.for_resource("application", application.id)
        await self._require(existing, AclPermission.MANAGE_APPLICATIONS)
        return await self._trusted.persist(application, owner_id=self.principal.user_id)

    async def create_default(self, application: Application) -> Application:
        """Create a root application owned by the principal.

        A taken name gets the first free " (n)" suffix. Onboarding runs in the
        background and never fails this call.
        """
        if self.principal.is_anonymous:
            raise ForbiddenError("Anonymous users cannot create applications")
        if not inspect(application).transient:
            raise InvalidStateError("create_default expects a new application")

        application.id = None
        application.default_application_id = None
        application.branch_name = None
        application.deleted = False
        application.deleted_at = None

        taken = await self.repository.names_in_organization(
            application.organization_id, application.name
        )
        application.name = next_available_name(application.name, taken)

        application = await self._trusted.persist(
            application, owner_id=self.principal.user_id
        )
        telemetry.increment("appcore.apps.created")
        self._schedule_onboarding(application.id)
        return application

    async def archive(self, application: Application) -> Application:
        """Soft delete. Archiving a default application archives its branches."""
        current = await self._trusted.find_by_id(application.id)
        await self._require(current, AclPermission.MANAGE_APPLICATIONS)
        if application.version is not None and application.version != current.version:
            raise ConflictError("Application was modified by another request, reload and retry")

        if current.deleted:
            logger.info("Application already archived", app_id=str(current.id))
            return current

        family = [current]
        if not current.is_branch:
            family.extend(
                [a async for a in self.branch_resolver.iter_family(current.id) if a.id != current.id]
            )

        archived_at = _utcnow()
        for member in family:
            member.deleted = True
            member.deleted_at = archived_at

        await self.repository.commit(*family)
        logger.info(
            "Application archived", app_id=str(current.id), branches=len(family) - 1
        )
        telemetry.increment("appcore.apps.archived")
        return current

    async def change_view_access(
        self, application_id: UUID, access: ApplicationAccessDTO
    ) -> Application:
        """Toggle public view access on the application and all its branches."""
        application = await self._trusted.find_by_id(application_id)
        if application.deleted:
            raise NotFoundError.for_resource("application", application_id)
        await self._require(application, AclPermission.MAKE_PUBLIC_APPLICATIONS)

        family = [a async for a in self.branch_resolver.iter_family(application.root_id)]
        for member in family:
            member.is_public = access.public_access

        await self.repository.commit(*family)
        logger.info(
            "Application view access changed",
            app_id=str(application.id),
            public_access=access.public_access,
            applications=len(family),
        )
        telemetry.increment(
            "appcore.apps.view_access_changed",
            tags=[f"public:{str(access.public_access).lower()}"],
        )
        return application

    # --- Git authentication ---

    async def create_or_update_ssh_key_pair(self, application_id: UUID) -> GitAuth:
        await self.find_by_id(application_id, AclPermission.MANAGE_APPLICATIONS)
        return await self.keypair_manager.create_or_update_ssh_key_pair(application_id)

    async def get_ssh_key(self, application_id: UUID) -> GitAuth:
        await self.find_by_id(application_id, AclPermission.MANAGE_APPLICATIONS)
        return await self.keypair_manager.get_ssh_key(application_id)

    # --- Onboarding ---

    def _schedule_onboarding(self, application_id: UUID) -> None:
        if not self.onboarding_hooks:
            return
        task = asyncio.create_task(self._run_onboarding(application_id))
        self._background_tasks.add(task)
        task.add_done_callback(self._background_tasks.discard)

    async def _run_onboarding(self, application_id: UUID) -> None:
        for hook in self.onboarding_hooks:
            try:
                async with self.session_factory() as session:
                    await hook(session, application_id)
                    await session.commit()
            except Exception as e:
                logger.error(
                    "Onboarding step failed",
                    app_id=str(application_id),
                    hook=getattr(hook, "__name__", repr(hook)),
                    error=str(e),
                )

    async def join_background_tasks(self) -> None:
        """Wait for pending onboarding work, e.g. before shutdown or in tests."""
        if self._background_tasks:
            await asyncio.gather(*list(self._background_tasks), return_exceptions=True)
