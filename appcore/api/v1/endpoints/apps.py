from fastapi import APIRouter, Depends
from uuid import UUID
from typing import List, Optional
import structlog

from appcore.api.deps import (
    get_application_service,
    get_trusted_application_service,
)
from appcore.models.application import Application
from appcore.models.policy import AclPermission
from appcore.schemas import (
    ApplicationAccessDTO,
    ApplicationBase,
    ApplicationCreate,
    ApplicationResponse,
    ApplicationViewMode,
    BranchCreate,
    ChildApplicationIdResponse,
    GitAuthResponse,
)
from appcore.services.application_service import (
    ApplicationService,
    TrustedApplicationService,
)

router = APIRouter()
logger = structlog.get_logger()


async def _enriched(service: ApplicationService, application: Application) -> ApplicationResponse:
    application = await service.set_transient_fields(application)
    return ApplicationResponse.from_application(application)


@router.post("/", response_model=ApplicationResponse)
async def create_app(
    app_in: ApplicationCreate,
    service: ApplicationService = Depends(get_application_service),
):
    application = await service.create_default(
        Application(name=app_in.name, organization_id=app_in.organization_id)
    )
    logger.info("Application created", app_id=str(application.id))
    return await _enriched(service, application)


@router.get("/organization/{organization_id}", response_model=List[ApplicationResponse])
async def list_apps(
    organization_id: UUID,
    service: ApplicationService = Depends(get_application_service),
):
    applications = [
        a
        async for a in service.find_by_organization_id(
            organization_id, AclPermission.READ_APPLICATIONS
        )
    ]
    return [await _enriched(service, a) for a in applications]


@router.get("/{app_id}", response_model=ApplicationResponse)
async def get_app(
    app_id: UUID,
    service: ApplicationService = Depends(get_application_service),
):
    application = await service.find_by_id(app_id, AclPermission.READ_APPLICATIONS)
    return await _enriched(service, application)


@router.patch("/{app_id}", response_model=ApplicationResponse)
async def rename_app(
    app_id: UUID,
    app_in: ApplicationBase,
    service: ApplicationService = Depends(get_application_service),
    trusted: TrustedApplicationService = Depends(get_trusted_application_service),
):
    application = await service.find_by_id(app_id, AclPermission.MANAGE_APPLICATIONS)
    application.name = app_in.name
    application = await service.save(application)
    application = await trusted.save_last_edit_information(application.id)
    return await _enriched(service, application)


@router.delete("/{app_id}", response_model=ApplicationResponse)
async def archive_app(
    app_id: UUID,
    service: ApplicationService = Depends(get_application_service),
):
    application = await service.find_by_id(app_id, AclPermission.MANAGE_APPLICATIONS)
    application = await service.archive(application)
    return ApplicationResponse.from_application(application)


@router.put("/{app_id}/access", response_model=ApplicationResponse)
async def change_view_access(
    app_id: UUID,
    access: ApplicationAccessDTO,
    service: ApplicationService = Depends(get_application_service),
):
    application = await service.change_view_access(app_id, access)
    return await _enriched(service, application)


@router.get("/{app_id}/view", response_model=ApplicationViewMode)
async def get_app_in_view_mode(
    app_id: UUID,
    branch_name: Optional[str] = None,
    service: ApplicationService = Depends(get_application_service),
):
    return await service.get_application_in_view_mode(app_id, branch_name=branch_name)


@router.post("/{app_id}/branches", response_model=ApplicationResponse)
async def create_branch(
    app_id: UUID,
    branch_in: BranchCreate,
    service: ApplicationService = Depends(get_application_service),
):
    default = await service.find_by_id(app_id, AclPermission.MANAGE_APPLICATIONS)
    branch = await service.save(
        Application(
            name=branch_in.name,
            organization_id=default.organization_id,
            default_application_id=default.id,
            branch_name=branch_in.branch_name,
            is_public=default.is_public,
        )
    )
    logger.info(
        "Branch created", app_id=str(branch.id), default_app_id=str(default.id)
    )
    return await _enriched(service, branch)


@router.get("/{app_id}/branches/{branch_name}", response_model=ApplicationResponse)
async def get_branch(
    app_id: UUID,
    branch_name: str,
    service: ApplicationService = Depends(get_application_service),
):
    application = await service.get_application_by_branch_name_and_default_application(
        branch_name, app_id, AclPermission.READ_APPLICATIONS
    )
    return await _enriched(service, application)


@router.get("/{app_id}/branches/{branch_name}/id", response_model=ChildApplicationIdResponse)
async def get_branch_id(
    app_id: UUID,
    branch_name: str,
    service: ApplicationService = Depends(get_application_service),
):
    child_id = await service.get_child_application_id(
        branch_name, app_id, AclPermission.READ_APPLICATIONS
    )
    return ChildApplicationIdResponse(id=child_id)


@router.post("/{app_id}/ssh-keypair", response_model=GitAuthResponse)
async def generate_ssh_keypair(
    app_id: UUID,
    service: ApplicationService = Depends(get_application_service),
):
    # Replaces any existing key; only the public half leaves the service
    return await service.create_or_update_ssh_key_pair(app_id)


@router.get("/{app_id}/ssh-keypair", response_model=GitAuthResponse)
async def get_ssh_keypair(
    app_id: UUID,
    service: ApplicationService = Depends(get_application_service),
):
    return await service.get_ssh_key(app_id)
