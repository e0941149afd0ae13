import uuid
from sqlalchemy import Column, DateTime, ForeignKey, Integer, String, Text, Uuid
from sqlalchemy.sql import func
from appcore.core.db import Base


class GitAuth(Base):
    """SSH deploy key of a default application. Branches share their root's row."""

    __tablename__ = "git_auth"

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    application_id = Column(
        Uuid(as_uuid=True), ForeignKey("applications.id"), unique=True, nullable=False
    )

    key_type = Column(String, nullable=False)
    public_key = Column(Text, nullable=False)
    private_key = Column(Text, nullable=False)  # Fernet ciphertext

    generated_at = Column(DateTime(timezone=True), nullable=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now())

    version = Column(Integer, nullable=False)

    __mapper_args__ = {"version_id_col": version}
