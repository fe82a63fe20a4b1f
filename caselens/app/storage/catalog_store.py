from __future__ import annotations

import logging
import re
import uuid
from datetime import datetime, timezone
from typing import Dict, Iterable, List, Optional, Sequence, Tuple

from sqlalchemy import select
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker

from ..database import Base, get_engine
from ..models.domain import CaseFile, Entity, Project, normalise_entity_text
from ..models.sql import EntityRow, FileRow, ProjectRow
from ..services.errors import InvalidRequestError, NotFoundError, ServiceComponent

_LOGGER = logging.getLogger(__name__)
_EXHIBIT_RE = re.compile(r"EXH-(\d+)")


def as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def next_exhibit_label(existing: Iterable[str | None]) -> str:
    highest = 0
    for label in existing:
        if not label:
            continue
        match = _EXHIBIT_RE.fullmatch(label.strip())
        if match:
            highest = max(highest, int(match.group(1)))
    return f"EXH-{highest + 1:03d}"


class CaseCatalogStore:
    """SQL-backed catalog of projects, evidence files and extracted entities."""

    def __init__(self, engine: Engine | None = None) -> None:
        self.engine = engine or get_engine()
        Base.metadata.create_all(bind=self.engine)
        self._sessions = sessionmaker(bind=self.engine, autoflush=False, expire_on_commit=False)

    def _session(self) -> Session:
        return self._sessions()

    # projects -----------------------------------------------------------

    def create_project(self, name: str, owner_id: str, *, project_id: str | None = None) -> Project:
        now = datetime.now(timezone.utc)
        row = ProjectRow(
            id=project_id or str(uuid.uuid4()),
            name=name,
            owner_id=owner_id,
            is_archived=False,
            created_at=now,
            updated_at=now,
        )
        with self._session() as session:
            session.add(row)
            session.commit()
            return self._project_from_row(row)

    def get_project(self, project_id: str) -> Optional[Project]:
        with self._session() as session:
            row = session.get(ProjectRow, project_id)
            return self._project_from_row(row) if row is not None else None

    def archive_project(self, project_id: str) -> Project:
        with self._session() as session:
            row = session.get(ProjectRow, project_id)
            if row is None:
                raise _project_missing(project_id)
            row.is_archived = True
            row.updated_at = datetime.now(timezone.utc)
            session.commit()
            return self._project_from_row(row)

    # files --------------------------------------------------------------

    def add_file(
        self,
        project_id: str,
        name: str,
        *,
        content_type: str = "application/octet-stream",
        size: int = 0,
        storage_path: str = "",
        metadata: Dict[str, object] | None = None,
        added_at: datetime | None = None,
        exhibit_id: str | None = None,
        assign_exhibit: bool = False,
        file_id: str | None = None,
    ) -> CaseFile:
        with self._session() as session:
            if session.get(ProjectRow, project_id) is None:
                raise _project_missing(project_id)
            existing = set(
                session.scalars(
                    select(FileRow.exhibit_id).where(
                        FileRow.project_id == project_id, FileRow.exhibit_id.is_not(None)
                    )
                )
            )
            if exhibit_id is None and assign_exhibit:
                exhibit_id = next_exhibit_label(existing)
            elif exhibit_id is not None and exhibit_id in existing:
                raise InvalidRequestError.build(
                    ServiceComponent.CATALOG,
                    "EXHIBIT_ID_TAKEN",
                    f"Exhibit identifier {exhibit_id} is already used in this project",
                    project_id=project_id,
                    exhibit_id=exhibit_id,
                )
            row = FileRow(
                id=file_id or str(uuid.uuid4()),
                project_id=project_id,
                name=name,
                storage_path=storage_path,
                content_type=content_type,
                size=size,
                exhibit_id=exhibit_id,
                file_metadata=dict(metadata or {}),
                added_at=as_utc(added_at or datetime.now(timezone.utc)),
            )
            session.add(row)
            session.commit()
            _LOGGER.info(
                "Registered case file",
                extra={"project_id": project_id, "file_id": row.id, "exhibit_id": exhibit_id},
            )
            return self._file_from_row(row)

    def get_file(self, file_id: str) -> Optional[CaseFile]:
        with self._session() as session:
            row = session.get(FileRow, file_id)
            return self._file_from_row(row) if row is not None else None

    def list_files(self, project_id: str) -> List[CaseFile]:
        """Files of a project, most recently added first."""

        with self._session() as session:
            rows = session.scalars(
                select(FileRow)
                .where(FileRow.project_id == project_id)
                .order_by(FileRow.added_at.desc(), FileRow.id.asc())
            )
            return [self._file_from_row(row) for row in rows]

    def delete_file(self, file_id: str) -> bool:
        with self._session() as session:
            row = session.get(FileRow, file_id)
            if row is None:
                return False
            session.delete(row)
            session.commit()
            return True

    def next_exhibit_id(self, project_id: str) -> str:
        with self._session() as session:
            if session.get(ProjectRow, project_id) is None:
                raise _project_missing(project_id)
            labels = session.scalars(
                select(FileRow.exhibit_id).where(
                    FileRow.project_id == project_id, FileRow.exhibit_id.is_not(None)
                )
            )
            return next_exhibit_label(labels)

    # entities -----------------------------------------------------------

    def add_entities(
        self,
        file_id: str,
        entities: Iterable[Tuple[str, str] | Tuple[str, str, str | None]],
    ) -> List[Entity]:
        """Store ``(entity_type, text[, chunk_id])`` tuples, skipping duplicates per file."""

        with self._session() as session:
            file_row = session.get(FileRow, file_id)
            if file_row is None:
                raise _file_missing(file_id)
            seen = {
                (row.entity_type, row.normalised_text)
                for row in session.scalars(select(EntityRow).where(EntityRow.source_file_id == file_id))
            }
            created: List[EntityRow] = []
            for item in entities:
                entity_type, text = item[0], item[1]
                chunk_id = item[2] if len(item) > 2 else None
                normalised = normalise_entity_text(text)
                if not normalised or (entity_type, normalised) in seen:
                    continue
                seen.add((entity_type, normalised))
                row = EntityRow(
                    id=str(uuid.uuid4()),
                    project_id=file_row.project_id,
                    source_file_id=file_id,
                    entity_type=entity_type,
                    entity_text=text.strip(),
                    normalised_text=normalised,
                    source_chunk_id=chunk_id,
                )
                session.add(row)
                created.append(row)
            session.commit()
            return [self._entity_from_row(row) for row in created]

    def list_file_entities(self, file_id: str) -> List[Entity]:
        with self._session() as session:
            rows = session.scalars(
                select(EntityRow)
                .where(EntityRow.source_file_id == file_id)
                .order_by(EntityRow.entity_type.asc(), EntityRow.normalised_text.asc())
            )
            return [self._entity_from_row(row) for row in rows]

    def entities_for_files(self, file_ids: Sequence[str]) -> Dict[str, List[Entity]]:
        grouped: Dict[str, List[Entity]] = {file_id: [] for file_id in file_ids}
        if not file_ids:
            return grouped
        with self._session() as session:
            rows = session.scalars(
                select(EntityRow)
                .where(EntityRow.source_file_id.in_(list(file_ids)))
                .order_by(EntityRow.entity_type.asc(), EntityRow.normalised_text.asc())
            )
            for row in rows:
                grouped.setdefault(row.source_file_id, []).append(self._entity_from_row(row))
        return grouped

    # row mapping --------------------------------------------------------

    @staticmethod
    def _project_from_row(row: ProjectRow) -> Project:
        return Project(
            id=row.id,
            name=row.name,
            owner_id=row.owner_id,
            archived=bool(row.is_archived),
            created_at=as_utc(row.created_at) if row.created_at else None,
            updated_at=as_utc(row.updated_at) if row.updated_at else None,
        )

    @staticmethod
    def _file_from_row(row: FileRow) -> CaseFile:
        return CaseFile(
            id=row.id,
            project_id=row.project_id,
            name=row.name,
            storage_path=row.storage_path or "",
            content_type=row.content_type or "application/octet-stream",
            size=int(row.size or 0),
            exhibit_id=row.exhibit_id,
            metadata=dict(row.file_metadata or {}),
            added_at=as_utc(row.added_at),
        )

    @staticmethod
    def _entity_from_row(row: EntityRow) -> Entity:
        return Entity(
            id=row.id,
            project_id=row.project_id,
            file_id=row.source_file_id,
            entity_type=row.entity_type,
            text=row.entity_text,
            chunk_id=row.source_chunk_id,
        )


def _project_missing(project_id: str) -> NotFoundError:
    return NotFoundError.build(
        ServiceComponent.CATALOG,
        "PROJECT_NOT_FOUND",
        f"Project {project_id} does not exist",
        project_id=project_id,
    )


def _file_missing(file_id: str) -> NotFoundError:
    return NotFoundError.build(
        ServiceComponent.CATALOG,
        "FILE_NOT_FOUND",
        f"File {file_id} does not exist",
        file_id=file_id,
    )


_catalog_store: CaseCatalogStore | None = None


def get_catalog_store() -> CaseCatalogStore:
    global _catalog_store
    if _catalog_store is None:
        _catalog_store = CaseCatalogStore()
    return _catalog_store


def reset_catalog_store() -> None:
    global _catalog_store
    _catalog_store = None
