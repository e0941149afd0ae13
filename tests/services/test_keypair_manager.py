import uuid
import pytest

from appcore.core.exceptions import (
    ConflictError,
    ForbiddenError,
    InvalidStateError,
    NotFoundError,
)
from appcore.models.application import Application
from appcore.repositories.application_repository import ApplicationRepository
from appcore.services.keypair_manager import KeypairManager


@pytest.fixture
async def root(service, org_id) -> Application:
    return await service.create_default(Application(name="Payments", organization_id=org_id))


@pytest.fixture
async def branch(service, root) -> Application:
    return await service.save(
        Application(
            name="Payments hotfix",
            organization_id=root.organization_id,
            default_application_id=root.id,
            branch_name="hotfix",
        )
    )


def _manager(session) -> KeypairManager:
    return KeypairManager(session, ApplicationRepository(session))


class TestCreateOrUpdate:
    async def test_generates_keypair_for_application(self, service, root):
        git_auth = await service.create_or_update_ssh_key_pair(root.id)

        assert git_auth.application_id == root.id
        assert git_auth.public_key.startswith("ecdsa-sha2-nistp256 ")
        assert git_auth.generated_at is not None
        assert "PRIVATE KEY" not in git_auth.private_key
        assert "BEGIN OPENSSH PRIVATE KEY" in service.keypair_manager.decrypt_private_key(git_auth)

    async def test_regeneration_replaces_public_key(self, service, root):
        first = await service.create_or_update_ssh_key_pair(root.id)
        first_public_key, first_row = first.public_key, first.id

        second = await service.create_or_update_ssh_key_pair(root.id)
        current = await service.get_ssh_key(root.id)

        assert second.id == first_row
        assert current.public_key != first_public_key
        assert current.public_key == second.public_key
        assert current.version == 2

    async def test_branch_request_is_anchored_to_default(self, service, root, branch):
        git_auth = await service.create_or_update_ssh_key_pair(branch.id)

        assert git_auth.application_id == root.id
        assert (await service.get_ssh_key(root.id)).public_key == git_auth.public_key
        assert (await service.get_ssh_key(branch.id)).public_key == git_auth.public_key

    async def test_unknown_application_not_found(self, db_session):
        with pytest.raises(NotFoundError):
            await _manager(db_session).create_or_update_ssh_key_pair(uuid.uuid4())

    async def test_requires_manage_permission(self, service_for, stranger, root):
        with pytest.raises(ForbiddenError):
            await service_for(stranger).create_or_update_ssh_key_pair(root.id)

    async def test_concurrent_replacement_conflicts(self, service, session_factory, root):
        await service.create_or_update_ssh_key_pair(root.id)

        async with session_factory() as first_session, session_factory() as second_session:
            first, second = _manager(first_session), _manager(second_session)
            await second.get_ssh_key(root.id)

            await first.create_or_update_ssh_key_pair(root.id)
            with pytest.raises(ConflictError):
                await second.create_or_update_ssh_key_pair(root.id)

    async def test_concurrent_first_generation_conflicts(self, session_factory, root, monkeypatch):
        root_id = root.id

        async with session_factory() as first_session, session_factory() as second_session:
            first, second = _manager(first_session), _manager(second_session)
            assert await second._find(root_id) is None

            # Second request looked for a key before the first one committed
            async def not_generated_yet(_root_id):
                return None

            monkeypatch.setattr(second, "_find", not_generated_yet)

            generated = await first.create_or_update_ssh_key_pair(root_id)
            with pytest.raises(ConflictError):
                await second.create_or_update_ssh_key_pair(root_id)

            assert (await first.get_ssh_key(root_id)).public_key == generated.public_key


class TestGetSshKey:
    async def test_not_generated_yet(self, service, root):
        with pytest.raises(NotFoundError):
            await service.get_ssh_key(root.id)

    async def test_unknown_application(self, db_session):
        with pytest.raises(NotFoundError):
            await _manager(db_session).get_ssh_key(uuid.uuid4())

    async def test_branch_without_resolvable_default(self, db_session, root, branch):
        branch_id = branch.id
        # Leave the branch live while its default disappears
        root.deleted = True
        await db_session.commit()

        with pytest.raises(InvalidStateError):
            await _manager(db_session).get_ssh_key(branch_id)
