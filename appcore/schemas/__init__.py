from pydantic import BaseModel, Field
from uuid import UUID
from datetime import datetime
from typing import List, Optional


# --- Application Schemas ---
class ApplicationBase(BaseModel):
    name: str = Field(min_length=1)


class ApplicationCreate(ApplicationBase):
    organization_id: UUID


class BranchCreate(BaseModel):
    branch_name: str = Field(min_length=1)
    name: str = Field(min_length=1)


class ApplicationAccessDTO(BaseModel):
    public_access: bool


class ApplicationResponse(ApplicationBase):
    id: UUID
    organization_id: UUID
    default_application_id: Optional[UUID] = None
    branch_name: Optional[str] = None
    cloned_from_application_id: Optional[UUID] = None
    is_public: bool
    deleted: bool
    last_edited_at: Optional[datetime] = None
    created_at: Optional[datetime] = None
    version: int

    # Read-time values
    user_permissions: List[str] = []
    view_url: Optional[str] = None
    edit_url: Optional[str] = None
    branch_count: int = 0

    class Config:
        from_attributes = True

    @classmethod
    def from_application(cls, application) -> "ApplicationResponse":
        response = cls.model_validate(application)
        transient = application.transient
        if transient is not None:
            response.user_permissions = sorted(transient.user_permissions)
            response.view_url = transient.view_url
            response.edit_url = transient.edit_url
            response.branch_count = transient.branch_count
        return response


class ApplicationViewMode(BaseModel):
    """What a viewer of a published application may see."""

    id: UUID
    name: str
    organization_id: UUID
    branch_name: Optional[str] = None
    is_public: bool
    view_url: str
    last_edited_at: Optional[datetime] = None


class ChildApplicationIdResponse(BaseModel):
    id: UUID


# --- Git Auth Schemas ---
class GitAuthResponse(BaseModel):
    key_type: str
    public_key: str
    generated_at: datetime

    class Config:
        from_attributes = True
