"""Domain records shared by the catalog, chunk store, search and QA services."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional, Sequence

_DOCUMENT_CONTENT_TYPES = {
    "application/msword",
    "application/rtf",
    "application/vnd.oasis.opendocument.text",
    "application/vnd.openxmlformats-officedocument.wordprocessingml.document",
}


class FileCategory(str, Enum):
    """Closed set of file categories used by the file-type filter."""

    PDF = "pdf"
    IMAGE = "image"
    AUDIO = "audio"
    VIDEO = "video"
    DOCUMENT = "document"
    OTHER = "other"

    @classmethod
    def from_content_type(cls, content_type: str | None) -> "FileCategory":
        value = (content_type or "").split(";", 1)[0].strip().lower()
        if not value:
            return cls.OTHER
        if value == "application/pdf":
            return cls.PDF
        major = value.split("/", 1)[0]
        if major == "image":
            return cls.IMAGE
        if major == "audio":
            return cls.AUDIO
        if major == "video":
            return cls.VIDEO
        if major == "text" or value in _DOCUMENT_CONTENT_TYPES:
            return cls.DOCUMENT
        return cls.OTHER

    @classmethod
    def parse(cls, value: str) -> "FileCategory":
        try:
            return cls(value.strip().lower())
        except ValueError:
            return cls.OTHER


class EntityType(str, Enum):
    """Entity buckets; anything unrecognised lands in OTHER."""

    PERSON = "PERSON"
    ORG = "ORG"
    DATE = "DATE"
    LOCATION = "LOCATION"
    LEGAL_TERM = "LEGAL_TERM"
    OTHER = "OTHER"

    @classmethod
    def bucket(cls, raw: str | None) -> "EntityType":
        label = (raw or "").strip().upper().replace("-", "_").replace(" ", "_")
        try:
            return cls(label)
        except ValueError:
            return cls.OTHER


def normalise_entity_text(text: str) -> str:
    return " ".join(text.split()).casefold()


@dataclass
class Project:
    id: str
    name: str
    owner_id: str
    archived: bool = False
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


@dataclass
class CaseFile:
    id: str
    project_id: str
    name: str
    added_at: datetime
    storage_path: str = ""
    content_type: str = "application/octet-stream"
    size: int = 0
    exhibit_id: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)

    @property
    def category(self) -> FileCategory:
        return FileCategory.from_content_type(self.content_type)

    @property
    def tags(self) -> List[str]:
        raw = self.metadata.get("tags") or []
        if isinstance(raw, str):
            raw = [raw]
        return [str(tag) for tag in raw]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "project_id": self.project_id,
            "name": self.name,
            "storage_path": self.storage_path,
            "content_type": self.content_type,
            "file_type": self.category.value,
            "size": self.size,
            "exhibit_id": self.exhibit_id,
            "metadata": dict(self.metadata),
            "added_at": self.added_at.isoformat(),
        }


@dataclass
class Entity:
    id: str
    project_id: str
    file_id: str
    entity_type: str
    text: str
    chunk_id: Optional[str] = None

    @property
    def bucket(self) -> EntityType:
        return EntityType.bucket(self.entity_type)

    @property
    def normalised_text(self) -> str:
        return normalise_entity_text(self.text)


@dataclass
class DocumentChunk:
    id: str
    project_id: str
    file_id: str
    chunk_index: int
    text: str
    embedding: Sequence[float] = field(repr=False, default_factory=list)

    def to_payload(self) -> Dict[str, Any]:
        return {
            "project_id": self.project_id,
            "file_id": self.file_id,
            "chunk_id": self.id,
            "chunk_index": self.chunk_index,
            "text": self.text,
        }

    @classmethod
    def from_payload(
        cls, chunk_id: str, payload: Dict[str, Any], embedding: Sequence[float] | None = None
    ) -> "DocumentChunk":
        return cls(
            id=str(payload.get("chunk_id", chunk_id)),
            project_id=str(payload["project_id"]),
            file_id=str(payload["file_id"]),
            chunk_index=int(payload.get("chunk_index", 0)),
            text=str(payload.get("text", "")),
            embedding=list(embedding or []),
        )


@dataclass
class ScoredChunk:
    chunk: DocumentChunk
    similarity: float


__all__ = [
    "CaseFile",
    "DocumentChunk",
    "Entity",
    "EntityType",
    "FileCategory",
    "Project",
    "ScoredChunk",
    "normalise_entity_text",
]
