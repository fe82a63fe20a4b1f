from __future__ import annotations

import logging
import uuid
from typing import Iterable, List, Sequence

from qdrant_client.http import models as qmodels

from ..models.domain import DocumentChunk, ScoredChunk
from ..services.errors import InvalidRequestError, NotFoundError, ServiceComponent
from ..services.timeouts import run_blocking
from ..services.vector import VectorService, get_vector_service
from .catalog_store import CaseCatalogStore, get_catalog_store

_LOGGER = logging.getLogger(__name__)


def point_id_for(chunk_id: str) -> str:
    """Qdrant point id for a chunk; Qdrant only accepts UUIDs and unsigned ints."""

    return str(uuid.uuid5(uuid.NAMESPACE_URL, f"caselens:chunk:{chunk_id}"))


class DocumentChunkStore:
    """Project-scoped access to embedded document chunks."""

    def __init__(
        self,
        vector_service: VectorService | None = None,
        catalog: CaseCatalogStore | None = None,
    ) -> None:
        self.vectors = vector_service or get_vector_service()
        self.catalog = catalog or get_catalog_store()

    @property
    def dimensions(self) -> int:
        return self.vectors.dimensions

    async def add_chunks(self, chunks: Iterable[DocumentChunk], *, timeout: float | None = None) -> int:
        chunks = list(chunks)
        if not chunks:
            return 0
        for project_id in sorted({chunk.project_id for chunk in chunks}):
            await self._require_project(project_id, timeout)
        points: List[qmodels.PointStruct] = []
        for chunk in chunks:
            self._check_dimensions(chunk.embedding, chunk_id=chunk.id)
            points.append(
                qmodels.PointStruct(id=point_id_for(chunk.id), vector=list(chunk.embedding), payload=chunk.to_payload())
            )
        await run_blocking(
            self.vectors.upsert,
            points,
            timeout=timeout,
            component=ServiceComponent.CHUNK_STORE,
            operation="upsert chunks",
        )
        _LOGGER.debug("Stored document chunks", extra={"count": len(points)})
        return len(points)

    async def find_similar_chunks(
        self,
        project_id: str,
        query_embedding: Sequence[float],
        limit: int = 5,
        *,
        timeout: float | None = None,
    ) -> List[ScoredChunk]:
        """Chunks of ``project_id`` most similar to ``query_embedding``, best first.

        Ties are ordered by file id and then chunk index so repeated calls over the
        same data return the same ranking.
        """

        if limit < 1:
            raise InvalidRequestError.build(
                ServiceComponent.CHUNK_STORE,
                "INVALID_LIMIT",
                "limit must be at least 1",
                limit=limit,
            )
        self._check_dimensions(query_embedding)
        await self._require_project(project_id, timeout)
        points = await run_blocking(
            self.vectors.search,
            list(query_embedding),
            limit,
            project_id=project_id,
            timeout=timeout,
            component=ServiceComponent.CHUNK_STORE,
            operation="similarity search",
        )
        return [
            ScoredChunk(
                chunk=DocumentChunk.from_payload(point.id, point.payload or {}, point.vector),
                similarity=float(point.score),
            )
            for point in points
        ]

    async def find_chunks_by_file(self, file_id: str, *, timeout: float | None = None) -> List[DocumentChunk]:
        records = await run_blocking(
            self.vectors.points_for_file,
            file_id,
            timeout=timeout,
            component=ServiceComponent.CHUNK_STORE,
            operation="list file chunks",
        )
        chunks = [DocumentChunk.from_payload(record.id, record.payload or {}, record.vector) for record in records]
        chunks.sort(key=lambda chunk: (chunk.chunk_index, chunk.id))
        return chunks

    async def delete_file_chunks(self, file_id: str, *, timeout: float | None = None) -> None:
        await run_blocking(
            self.vectors.delete_file,
            file_id,
            timeout=timeout,
            component=ServiceComponent.CHUNK_STORE,
            operation="delete file chunks",
        )

    async def _require_project(self, project_id: str, timeout: float | None) -> None:
        project = await run_blocking(
            self.catalog.get_project,
            project_id,
            timeout=timeout,
            component=ServiceComponent.CATALOG,
            operation="load project",
        )
        if project is None:
            raise NotFoundError.build(
                ServiceComponent.CHUNK_STORE,
                "PROJECT_NOT_FOUND",
                f"Project {project_id} does not exist",
                project_id=project_id,
            )

    def _check_dimensions(self, vector: Sequence[float], **context: str) -> None:
        if len(vector) != self.dimensions:
            raise InvalidRequestError.build(
                ServiceComponent.CHUNK_STORE,
                "DIMENSION_MISMATCH",
                f"Expected {self.dimensions}-dimensional embedding, got {len(vector)}",
                expected=self.dimensions,
                actual=len(vector),
                **context,
            )


_chunk_store: DocumentChunkStore | None = None


def get_chunk_store() -> DocumentChunkStore:
    global _chunk_store
    if _chunk_store is None:
        _chunk_store = DocumentChunkStore()
    return _chunk_store


def reset_chunk_store() -> None:
    global _chunk_store
    _chunk_store = None
