import os
import uuid

# Settings are read at import time, configure them before touching appcore
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///./appcore-test.db")
os.environ["TELEMETRY_ENABLED"] = "false"
os.environ.setdefault("CREDENTIALS_ENCRYPTION_KEY", "test-credentials-encryption-key")
os.environ.setdefault("BASE_URL", "https://apps.example.com")

import pytest
from typing import AsyncGenerator, Callable, List
from fastapi import Depends
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import NullPool

from appcore.main import app
from appcore.api.deps import get_application_service, get_current_principal
from appcore.core.db import Base, get_db
from appcore.core.security import create_access_token
from appcore.models import application, git_auth, page, policy  # noqa: F401
from appcore.services.application_service import ApplicationService
from appcore.services.permission_evaluator import Principal


@pytest.fixture
async def engine(tmp_path):
    engine = create_async_engine(
        f"sqlite+aiosqlite:///{tmp_path / 'test.db'}", poolclass=NullPool
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine) -> async_sessionmaker:
    return async_sessionmaker(
        engine, class_=AsyncSession, expire_on_commit=False, autoflush=False
    )


@pytest.fixture
async def db_session(session_factory) -> AsyncGenerator[AsyncSession, None]:
    async with session_factory() as session:
        yield session


@pytest.fixture
def org_id() -> uuid.UUID:
    return uuid.uuid4()


@pytest.fixture
def owner() -> Principal:
    return Principal(user_id=uuid.uuid4())


@pytest.fixture
def stranger() -> Principal:
    return Principal(user_id=uuid.uuid4())


@pytest.fixture
async def service_for(db_session, session_factory):
    """Build request-scoped services sharing one session; drains onboarding on teardown."""
    created: List[ApplicationService] = []

    def _make(principal: Principal, **kwargs) -> ApplicationService:
        kwargs.setdefault("session_factory", session_factory)
        service = ApplicationService(db_session, principal, **kwargs)
        created.append(service)
        return service

    yield _make
    for service in created:
        await service.join_background_tasks()


@pytest.fixture
def service(service_for, owner) -> ApplicationService:
    return service_for(owner)


@pytest.fixture
def auth_headers() -> Callable[[Principal], dict]:
    def _headers(principal: Principal) -> dict:
        token = create_access_token({"sub": str(principal.user_id)})
        return {"Authorization": f"Bearer {token}"}

    return _headers


@pytest.fixture
async def client(db_session, session_factory) -> AsyncGenerator[AsyncClient, None]:
    services: List[ApplicationService] = []

    async def override_get_db():
        yield db_session

    async def override_get_application_service(
        principal: Principal = Depends(get_current_principal),
        db: AsyncSession = Depends(get_db),
    ) -> ApplicationService:
        service = ApplicationService(db, principal, session_factory=session_factory)
        services.append(service)
        return service

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_application_service] = override_get_application_service
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as c:
        yield c
    app.dependency_overrides.clear()
    for service in services:
        await service.join_background_tasks()
