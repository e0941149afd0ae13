import uuid
from dataclasses import dataclass, field
from typing import FrozenSet, Optional

from sqlalchemy import Boolean, Column, DateTime, ForeignKey, Index, Integer, String, Uuid
from sqlalchemy.sql import func

from appcore.core.db import Base


@dataclass(frozen=True)
class ApplicationTransientFields:
    """Values computed on read. Never mapped, never persisted."""

    user_permissions: FrozenSet[str] = field(default_factory=frozenset)
    view_url: Optional[str] = None
    edit_url: Optional[str] = None
    is_default: bool = True
    branch_count: int = 0


class Application(Base):
    __tablename__ = "applications"

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    name = Column(String, index=True, nullable=False)
    organization_id = Column(Uuid(as_uuid=True), index=True, nullable=False)

    # Git linkage: a root has neither, a branch has both
    default_application_id = Column(
        Uuid(as_uuid=True), ForeignKey("applications.id"), index=True, nullable=True
    )
    branch_name = Column(String, nullable=True)

    # Provenance only, never cascades
    cloned_from_application_id = Column(Uuid(as_uuid=True), index=True, nullable=True)

    is_public = Column(Boolean, default=False, nullable=False)
    deleted = Column(Boolean, default=False, nullable=False)
    deleted_at = Column(DateTime(timezone=True), nullable=True)

    last_edited_at = Column(DateTime(timezone=True), nullable=True)
    last_edited_by = Column(Uuid(as_uuid=True), nullable=True)

    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), onupdate=func.now())

    version = Column(Integer, nullable=False)

    __mapper_args__ = {"version_id_col": version}

    # Read-time enrichment lives outside the mapped columns
    transient = None

    @property
    def is_branch(self) -> bool:
        return self.default_application_id is not None

    @property
    def root_id(self) -> uuid.UUID:
        return self.default_application_id or self.id

    def __repr__(self):
        return (
            f"<Application(id={self.id}, name='{self.name}', "
            f"branch_name={self.branch_name!r}, deleted={self.deleted})>"
        )


Index(
    "uq_applications_org_name_active",
    Application.organization_id,
    Application.name,
    unique=True,
    postgresql_where=Application.deleted.is_(False),
    sqlite_where=Application.deleted.is_(False),
)

Index(
    "uq_applications_branch_active",
    Application.default_application_id,
    Application.branch_name,
    unique=True,
    postgresql_where=Application.deleted.is_(False),
    sqlite_where=Application.deleted.is_(False),
)
