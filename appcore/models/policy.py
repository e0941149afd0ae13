import enum
import uuid
from sqlalchemy import Column, DateTime, ForeignKey, String, UniqueConstraint, Uuid
from sqlalchemy.sql import func
from appcore.core.db import Base


class AclPermission(str, enum.Enum):
    READ_APPLICATIONS = "read:applications"
    MANAGE_APPLICATIONS = "manage:applications"
    MAKE_PUBLIC_APPLICATIONS = "makePublic:applications"


class ApplicationPolicy(Base):
    """Grants one permission on one application to one principal."""

    __tablename__ = "application_policies"
    __table_args__ = (
        UniqueConstraint(
            "application_id",
            "principal_id",
            "permission",
            name="uq_application_policies_grant",
        ),
    )

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    application_id = Column(
        Uuid(as_uuid=True), ForeignKey("applications.id"), index=True, nullable=False
    )
    principal_id = Column(Uuid(as_uuid=True), index=True, nullable=False)
    permission = Column(String(64), nullable=False)

    created_at = Column(DateTime(timezone=True), server_default=func.now())
