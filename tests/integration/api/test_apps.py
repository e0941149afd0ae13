import uuid
import pytest
from httpx import AsyncClient

from appcore.models.policy import AclPermission

BASE = "/api/v1/apps"


async def _create_app(client: AsyncClient, headers: dict, org_id: uuid.UUID, name: str) -> dict:
    response = await client.post(
        f"{BASE}/", headers=headers, json={"name": name, "organization_id": str(org_id)}
    )
    assert response.status_code == 200, response.text
    return response.json()


@pytest.mark.asyncio
async def test_health(client: AsyncClient):
    response = await client.get("/health")
    assert response.status_code == 200
    assert response.json()["status"] == "ok"


@pytest.mark.asyncio
async def test_create_application(client: AsyncClient, auth_headers, owner, org_id):
    data = await _create_app(client, auth_headers(owner), org_id, "integration-test-app")

    assert data["name"] == "integration-test-app"
    assert data["organization_id"] == str(org_id)
    assert data["default_application_id"] is None
    assert data["branch_name"] is None
    assert AclPermission.MANAGE_APPLICATIONS.value in data["user_permissions"]
    assert data["view_url"].endswith(f"/app/integration-test-app/{data['id']}")


@pytest.mark.asyncio
async def test_create_duplicate_application_is_suffixed(client: AsyncClient, auth_headers, owner, org_id):
    await _create_app(client, auth_headers(owner), org_id, "duplicate-app")
    second = await _create_app(client, auth_headers(owner), org_id, "duplicate-app")

    assert second["name"] == "duplicate-app (1)"


@pytest.mark.asyncio
async def test_create_requires_authentication(client: AsyncClient, org_id):
    response = await client.post(
        f"{BASE}/", json={"name": "anon-app", "organization_id": str(org_id)}
    )
    assert response.status_code == 403


@pytest.mark.asyncio
async def test_invalid_token_rejected(client: AsyncClient):
    response = await client.get(
        f"{BASE}/{uuid.uuid4()}", headers={"Authorization": "Bearer not-a-token"}
    )
    assert response.status_code == 401


@pytest.mark.asyncio
async def test_get_application_permissions(client: AsyncClient, auth_headers, owner, stranger, org_id):
    created = await _create_app(client, auth_headers(owner), org_id, "private-app")

    assert (await client.get(f"{BASE}/{created['id']}", headers=auth_headers(owner))).status_code == 200
    assert (await client.get(f"{BASE}/{created['id']}", headers=auth_headers(stranger))).status_code == 403
    assert (await client.get(f"{BASE}/{uuid.uuid4()}", headers=auth_headers(owner))).status_code == 404


@pytest.mark.asyncio
async def test_list_and_archive(client: AsyncClient, auth_headers, owner, org_id):
    headers = auth_headers(owner)
    keep = await _create_app(client, headers, org_id, "keep")
    drop = await _create_app(client, headers, org_id, "drop")

    archived = await client.delete(f"{BASE}/{drop['id']}", headers=headers)
    assert archived.status_code == 200
    assert archived.json()["deleted"] is True

    listed = await client.get(f"{BASE}/organization/{org_id}", headers=headers)
    assert [a["id"] for a in listed.json()] == [keep["id"]]

    fetched = await client.get(f"{BASE}/{drop['id']}", headers=headers)
    assert fetched.status_code == 200
    assert fetched.json()["deleted"] is True


@pytest.mark.asyncio
async def test_rename_records_last_edit(client: AsyncClient, auth_headers, owner, org_id):
    headers = auth_headers(owner)
    created = await _create_app(client, headers, org_id, "draft")

    response = await client.patch(f"{BASE}/{created['id']}", headers=headers, json={"name": "final"})

    assert response.status_code == 200
    data = response.json()
    assert data["name"] == "final"
    assert data["last_edited_at"] is not None
    assert data["version"] > created["version"]


@pytest.mark.asyncio
async def test_rename_to_taken_name_conflicts(client: AsyncClient, auth_headers, owner, org_id):
    headers = auth_headers(owner)
    await _create_app(client, headers, org_id, "taken")
    other = await _create_app(client, headers, org_id, "other")

    response = await client.patch(f"{BASE}/{other['id']}", headers=headers, json={"name": "taken"})
    assert response.status_code == 409


@pytest.mark.asyncio
async def test_branches(client: AsyncClient, auth_headers, owner, org_id):
    headers = auth_headers(owner)
    root = await _create_app(client, headers, org_id, "shop")

    created = await client.post(
        f"{BASE}/{root['id']}/branches",
        headers=headers,
        json={"branch_name": "feature-1", "name": "shop feature-1"},
    )
    assert created.status_code == 200
    branch = created.json()
    assert branch["default_application_id"] == root["id"]

    resolved = await client.get(f"{BASE}/{root['id']}/branches/feature-1", headers=headers)
    assert resolved.json()["id"] == branch["id"]

    child = await client.get(f"{BASE}/{root['id']}/branches/feature-1/id", headers=headers)
    assert child.json() == {"id": branch["id"]}

    missing = await client.get(f"{BASE}/{root['id']}/branches/FEATURE-1", headers=headers)
    assert missing.status_code == 404


@pytest.mark.asyncio
async def test_view_mode_follows_public_access(client: AsyncClient, auth_headers, owner, org_id):
    headers = auth_headers(owner)
    created = await _create_app(client, headers, org_id, "published")

    assert (await client.get(f"{BASE}/{created['id']}/view")).status_code == 403

    access = await client.put(
        f"{BASE}/{created['id']}/access", headers=headers, json={"public_access": True}
    )
    assert access.status_code == 200
    assert access.json()["is_public"] is True

    view = await client.get(f"{BASE}/{created['id']}/view")
    assert view.status_code == 200
    assert view.json()["id"] == created["id"]
    assert "user_permissions" not in view.json()


@pytest.mark.asyncio
async def test_ssh_keypair(client: AsyncClient, auth_headers, owner, stranger, org_id):
    headers = auth_headers(owner)
    created = await _create_app(client, headers, org_id, "git-app")
    url = f"{BASE}/{created['id']}/ssh-keypair"

    assert (await client.get(url, headers=headers)).status_code == 404

    generated = await client.post(url, headers=headers)
    assert generated.status_code == 200
    body = generated.json()
    assert body["public_key"].startswith("ecdsa-sha2-nistp256 ")
    assert "private_key" not in body

    fetched = await client.get(url, headers=headers)
    assert fetched.json()["public_key"] == body["public_key"]

    assert (await client.get(url, headers=auth_headers(stranger))).status_code == 403
