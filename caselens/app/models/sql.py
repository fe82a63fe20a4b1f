import uuid

from sqlalchemy import JSON, BigInteger, Boolean, Column, DateTime, ForeignKey, String, UniqueConstraint
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from ..database import Base


def _uuid() -> str:
    return str(uuid.uuid4())


class ProjectRow(Base):
    __tablename__ = "projects"

    id = Column(String, primary_key=True, default=_uuid)
    name = Column(String, nullable=False)
    owner_id = Column(String, index=True, nullable=False)
    is_archived = Column(Boolean, default=False, nullable=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    files = relationship("FileRow", back_populates="project", cascade="all, delete-orphan")


class FileRow(Base):
    __tablename__ = "files"
    __table_args__ = (UniqueConstraint("project_id", "exhibit_id", name="uq_files_project_exhibit"),)

    id = Column(String, primary_key=True, default=_uuid)
    project_id = Column(String, ForeignKey("projects.id", ondelete="CASCADE"), index=True, nullable=False)
    name = Column(String, index=True, nullable=False)
    storage_path = Column(String, default="")
    content_type = Column(String, default="application/octet-stream")
    size = Column(BigInteger, default=0)
    exhibit_id = Column(String, nullable=True)
    file_metadata = Column("metadata", JSON, default=dict)
    added_at = Column(DateTime(timezone=True), server_default=func.now(), index=True)

    project = relationship("ProjectRow", back_populates="files")
    entities = relationship("EntityRow", back_populates="file", cascade="all, delete-orphan")


class EntityRow(Base):
    __tablename__ = "entities"

    id = Column(String, primary_key=True, default=_uuid)
    project_id = Column(String, ForeignKey("projects.id", ondelete="CASCADE"), index=True, nullable=False)
    source_file_id = Column(String, ForeignKey("files.id", ondelete="CASCADE"), index=True, nullable=False)
    entity_type = Column(String, index=True, nullable=False)
    entity_text = Column(String, nullable=False)
    normalised_text = Column(String, index=True, nullable=False)
    source_chunk_id = Column(String, nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())

    file = relationship("FileRow", back_populates="entities")
