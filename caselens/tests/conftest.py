from __future__ import annotations

import sys
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Callable, List, Sequence

import pytest

ROOT = Path(__file__).resolve().parents[2]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from caselens.app import config  # noqa: E402
from caselens.app.database import build_engine, reset_engine  # noqa: E402
from caselens.app.models.domain import CaseFile, DocumentChunk, Project  # noqa: E402
from caselens.app.services import ingestion as ingestion_module  # noqa: E402
from caselens.app.services import qa as qa_module  # noqa: E402
from caselens.app.services import search as search_module  # noqa: E402
from caselens.app.services import vector as vector_module  # noqa: E402
from caselens.app.services.embedding import HashedEmbeddingClient  # noqa: E402
from caselens.app.services.vector import VectorService  # noqa: E402
from caselens.app.storage import catalog_store as catalog_module  # noqa: E402
from caselens.app.storage import chunk_store as chunk_module  # noqa: E402
from caselens.app.storage.catalog_store import CaseCatalogStore  # noqa: E402
from caselens.app.storage.chunk_store import DocumentChunkStore  # noqa: E402

DIMENSIONS = 32
BASE_TIME = datetime(2024, 3, 1, 9, 0, tzinfo=timezone.utc)


def _reset_singletons() -> None:
    config.reset_settings_cache()
    reset_engine()
    catalog_module.reset_catalog_store()
    chunk_module.reset_chunk_store()
    vector_module.reset_vector_service()
    search_module.reset_search_service()
    qa_module.reset_qa_service()
    ingestion_module.reset_ingestion_service()


@pytest.fixture()
def settings(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> config.Settings:
    monkeypatch.setenv("DATABASE_URL", f"sqlite:///{tmp_path / 'catalog.db'}")
    monkeypatch.setenv("VECTOR_BACKEND", "memory")
    monkeypatch.setenv("VECTOR_DIR", str(tmp_path / "vector"))
    monkeypatch.setenv("EMBEDDING_DIMENSIONS", str(DIMENSIONS))
    monkeypatch.setenv("EMBEDDING_PROVIDER", "hashed")
    monkeypatch.setenv("GENERATION_PROVIDER", "extractive")
    # Hashed test embeddings score low, so semantic matching uses no similarity floor.
    monkeypatch.setenv("SEARCH_MATCH_THRESHOLD", "0.0")
    monkeypatch.setenv("TELEMETRY_ENABLED", "false")
    _reset_singletons()
    yield config.get_settings()
    _reset_singletons()


@pytest.fixture()
def catalog(settings: config.Settings) -> CaseCatalogStore:
    return CaseCatalogStore(build_engine(settings.database_url))


@pytest.fixture()
def vector_service(settings: config.Settings) -> VectorService:
    return VectorService(settings)


@pytest.fixture()
def chunk_store(vector_service: VectorService, catalog: CaseCatalogStore) -> DocumentChunkStore:
    return DocumentChunkStore(vector_service, catalog)


@pytest.fixture()
def embedder() -> HashedEmbeddingClient:
    return HashedEmbeddingClient(DIMENSIONS)


@pytest.fixture()
def project(catalog: CaseCatalogStore) -> Project:
    return catalog.create_project("Smith v. Jones", "attorney-1")


@pytest.fixture()
def add_file(catalog: CaseCatalogStore, project: Project) -> Callable[..., CaseFile]:
    """Register files with strictly increasing ``added_at`` unless one is given."""

    counter = {"n": 0}

    def factory(name: str, *, project_id: str | None = None, minutes: int | None = None, **kwargs) -> CaseFile:
        counter["n"] += 1
        offset = counter["n"] if minutes is None else minutes
        kwargs.setdefault("added_at", BASE_TIME + timedelta(minutes=offset))
        return catalog.add_file(project_id or project.id, name, **kwargs)

    return factory


def unit_vector(*weights: float, dimensions: int = DIMENSIONS) -> List[float]:
    vector = list(weights) + [0.0] * (dimensions - len(weights))
    norm = sum(value * value for value in vector) ** 0.5
    return [value / norm for value in vector] if norm else vector


def make_chunk(
    chunk_id: str,
    case_file: CaseFile,
    index: int,
    embedding: Sequence[float],
    text: str | None = None,
) -> DocumentChunk:
    return DocumentChunk(
        id=chunk_id,
        project_id=case_file.project_id,
        file_id=case_file.id,
        chunk_index=index,
        text=text if text is not None else f"{case_file.name} chunk {index}",
        embedding=list(embedding),
    )
