"""
Lifecycle of the SSH deploy keys used to authenticate git traffic.

A keypair belongs to the default (root) application. Every lookup made with a
branch id is redirected to the root, so all branches of one application push
and pull with the same key.
"""

import asyncio
from datetime import datetime, timezone
from typing import Optional
from uuid import UUID

import structlog
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from appcore.core.exceptions import InvalidStateError, NotFoundError
from appcore.core.keys import decrypt_private_key, encrypt_private_key, generate_ssh_keypair
from appcore.core.telemetry import telemetry
from appcore.models.application import Application
from appcore.models.git_auth import GitAuth
from appcore.repositories.application_repository import ApplicationRepository

logger = structlog.get_logger()


class KeypairManager:
    def __init__(self, session: AsyncSession, repository: ApplicationRepository):
        self.session = session
        self.repository = repository

    async def resolve_root(self, application_id: UUID) -> Application:
        """Return the default application owning the keypair of `application_id`."""
        application = await self.repository.get(application_id)
        if application is None:
            raise NotFoundError.for_resource("application", application_id)
        if application.default_application_id is None:
            return application

        root = await self.repository.get(application.default_application_id)
        if root is None or root.deleted:
            raise InvalidStateError(
                f"Application {application_id} has no resolvable default application"
            )
        return root

    async def _find(self, root_id: UUID) -> Optional[GitAuth]:
        result = await self.session.execute(
            select(GitAuth).where(GitAuth.application_id == root_id)
        )
        return result.scalars().first()

    async def create_or_update_ssh_key_pair(self, application_id: UUID) -> GitAuth:
        """Generate a keypair for the root, replacing any previous one.

        Replacing a key invalidates every git remote configured with the old
        public key.
        """
        root = await self.resolve_root(application_id)
        if root.deleted:
            raise NotFoundError.for_resource("application", application_id)

        generated = await asyncio.to_thread(generate_ssh_keypair)
        git_auth = await self._find(root.id)
        replaced = git_auth is not None

        if git_auth is None:
            git_auth = GitAuth(application_id=root.id)
            self.session.add(git_auth)

        git_auth.key_type = generated.key_type
        git_auth.public_key = generated.public_key
        git_auth.private_key = encrypt_private_key(generated.private_key)
        git_auth.generated_at = datetime.now(timezone.utc)

        async with self.repository.write_guard(
            "keypair", conflict_detail="A keypair was generated concurrently, retry"
        ):
            await self.session.commit()

        logger.info(
            "SSH keypair generated",
            application_id=str(root.id),
            requested_for=str(application_id),
            key_type=generated.key_type,
            replaced=replaced,
        )
        telemetry.increment(
            "appcore.keypair.generated", tags=[f"replaced:{str(replaced).lower()}"]
        )
        return git_auth

    async def get_ssh_key(self, application_id: UUID) -> GitAuth:
        root = await self.resolve_root(application_id)
        git_auth = await self._find(root.id)
        if git_auth is None:
            raise NotFoundError(f"No SSH keypair has been generated for application {root.id}")
        return git_auth

    @staticmethod
    def decrypt_private_key(git_auth: GitAuth) -> str:
        """Plain OpenSSH private key, for handing to the git transport client."""
        return decrypt_private_key(git_auth.private_key)
