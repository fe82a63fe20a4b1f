from __future__ import annotations

import logging
import uuid
from typing import Iterable, List, Sequence, Tuple

from ..config import Settings, get_settings
from ..models.domain import CaseFile, DocumentChunk, Entity
from ..storage.catalog_store import CaseCatalogStore, get_catalog_store
from ..storage.chunk_store import DocumentChunkStore, get_chunk_store
from ..utils.text import chunk_text
from .embedding import EmbeddingClient, build_embedding_client
from .errors import NotFoundError, ServiceComponent
from .timeouts import run_blocking, with_timeout

_logger = logging.getLogger(__name__)


class TextIngestionService:
    """Chunks, embeds and stores the extracted text of a case file."""

    def __init__(
        self,
        settings: Settings | None = None,
        *,
        catalog: CaseCatalogStore | None = None,
        chunk_store: DocumentChunkStore | None = None,
        embedder: EmbeddingClient | None = None,
    ) -> None:
        self.settings = settings or get_settings()
        self.catalog = catalog or get_catalog_store()
        self.chunk_store = chunk_store or get_chunk_store()
        self.embedder = embedder or build_embedding_client(self.settings)

    async def ingest_text(
        self,
        project_id: str,
        file_id: str,
        text: str,
        *,
        timeout: float | None = None,
    ) -> List[DocumentChunk]:
        """Replace the chunks of ``file_id`` with freshly embedded windows of ``text``."""

        timeout = self.settings.request_timeout_seconds if timeout is None else timeout
        case_file = await self._require_file(project_id, file_id, timeout)
        await self.chunk_store.delete_file_chunks(case_file.id, timeout=timeout)

        windows = chunk_text(text, self.settings.ingestion_chunk_size, self.settings.ingestion_chunk_overlap)
        chunks: List[DocumentChunk] = []
        for index, window in enumerate(windows):
            embedding = await with_timeout(
                self.embedder.embed(window),
                timeout,
                component=ServiceComponent.EMBEDDING,
                operation="embed chunk",
            )
            chunks.append(
                DocumentChunk(
                    id=str(uuid.uuid4()),
                    project_id=project_id,
                    file_id=case_file.id,
                    chunk_index=index,
                    text=window,
                    embedding=embedding,
                )
            )
        await self.chunk_store.add_chunks(chunks, timeout=timeout)
        _logger.info(
            "Ingested file text",
            extra={"project_id": project_id, "file_id": file_id, "chunks": len(chunks), "chars": len(text)},
        )
        return chunks

    async def register_entities(
        self,
        project_id: str,
        file_id: str,
        entities: Iterable[Tuple[str, str] | Tuple[str, str, str | None]],
        *,
        timeout: float | None = None,
    ) -> List[Entity]:
        timeout = self.settings.request_timeout_seconds if timeout is None else timeout
        await self._require_file(project_id, file_id, timeout)
        items: Sequence = list(entities)
        return await run_blocking(
            self.catalog.add_entities,
            file_id,
            items,
            timeout=timeout,
            component=ServiceComponent.CATALOG,
            operation="store entities",
        )

    async def delete_file(self, project_id: str, file_id: str, *, timeout: float | None = None) -> None:
        """Remove a file together with its chunks and entities."""

        timeout = self.settings.request_timeout_seconds if timeout is None else timeout
        case_file = await self._require_file(project_id, file_id, timeout)
        # Chunks go first so a failure never leaves vectors without a catalog row.
        await self.chunk_store.delete_file_chunks(case_file.id, timeout=timeout)
        await run_blocking(
            self.catalog.delete_file,
            case_file.id,
            timeout=timeout,
            component=ServiceComponent.CATALOG,
            operation="delete file",
        )
        _logger.info("Deleted file", extra={"project_id": project_id, "file_id": file_id})

    async def _require_file(self, project_id: str, file_id: str, timeout: float | None) -> CaseFile:
        case_file = await run_blocking(
            self.catalog.get_file,
            file_id,
            timeout=timeout,
            component=ServiceComponent.CATALOG,
            operation="load file",
        )
        if case_file is None or case_file.project_id != project_id:
            raise NotFoundError.build(
                ServiceComponent.INGESTION,
                "FILE_NOT_FOUND",
                f"File {file_id} does not exist in project {project_id}",
                project_id=project_id,
                file_id=file_id,
            )
        return case_file


_ingestion_service: TextIngestionService | None = None


def get_ingestion_service() -> TextIngestionService:
    global _ingestion_service
    if _ingestion_service is None:
        _ingestion_service = TextIngestionService()
    return _ingestion_service


def reset_ingestion_service() -> None:
    global _ingestion_service
    _ingestion_service = None
