from __future__ import annotations

import logging
from typing import Dict, Iterable, List, Sequence

from qdrant_client import QdrantClient
from qdrant_client.http import models as qmodels

from ..config import Settings, get_settings
from ..utils.text import cosine_similarity

_LOGGER = logging.getLogger(__name__)


def _point_sort_key(point: qmodels.ScoredPoint | qmodels.Record) -> tuple:
    payload = point.payload or {}
    return (
        -float(getattr(point, "score", 0.0) or 0.0),
        str(payload.get("file_id", "")),
        int(payload.get("chunk_index", 0)),
        str(payload.get("chunk_id", point.id)),
    )


def _matches(payload: Dict[str, object], conditions: Dict[str, str]) -> bool:
    return all(payload.get(key) == value for key, value in conditions.items())


class InMemoryVectorIndex:
    """Exact cosine-similarity index used for offline mode and tests."""

    def __init__(self, dimensions: int) -> None:
        self.dimensions = dimensions
        self._store: Dict[str, tuple[List[float], Dict[str, object]]] = {}

    def upsert(self, points: Iterable[qmodels.PointStruct]) -> None:
        for point in points:
            vector = list(point.vector)
            if len(vector) != self.dimensions:
                raise ValueError("Vector dimensionality mismatch for in-memory index")
            self._store[str(point.id)] = (vector, dict(point.payload or {}))

    def search(
        self, vector: Sequence[float], top_k: int, conditions: Dict[str, str] | None = None
    ) -> List[qmodels.ScoredPoint]:
        query = list(vector)
        if len(query) != self.dimensions:
            raise ValueError("Query dimensionality mismatch for in-memory index")
        results: List[qmodels.ScoredPoint] = []
        for point_id, (stored_vector, payload) in self._store.items():
            if conditions and not _matches(payload, conditions):
                continue
            results.append(
                qmodels.ScoredPoint(
                    id=point_id,
                    score=cosine_similarity(query, stored_vector),
                    payload=payload,
                    version=0,
                    vector=stored_vector,
                )
            )
        results.sort(key=_point_sort_key)
        return results[:top_k]

    def scroll(self, conditions: Dict[str, str]) -> List[qmodels.Record]:
        return [
            qmodels.Record(id=point_id, payload=payload, vector=vector)
            for point_id, (vector, payload) in self._store.items()
            if _matches(payload, conditions)
        ]

    def delete(self, conditions: Dict[str, str]) -> int:
        doomed = [point_id for point_id, (_, payload) in self._store.items() if _matches(payload, conditions)]
        for point_id in doomed:
            del self._store[point_id]
        return len(doomed)


class VectorService:
    """Chunk vectors with ``project_id`` / ``file_id`` payloads, in memory or in Qdrant."""

    def __init__(self, settings: Settings | None = None) -> None:
        self.settings = settings or get_settings()
        self.dimensions = self.settings.embedding_dimensions
        self._memory_index: InMemoryVectorIndex | None = None
        self.client: QdrantClient | None = None
        if self.settings.vector_backend == "memory":
            self.mode = "memory"
            self._memory_index = InMemoryVectorIndex(self.dimensions)
        else:
            self.mode = "qdrant"
            self.client = self._create_client()
            self.ensure_collection()

    def _create_client(self) -> QdrantClient:
        if self.settings.qdrant_url:
            _LOGGER.info("Connecting to Qdrant", extra={"url": self.settings.qdrant_url})
            return QdrantClient(url=self.settings.qdrant_url)
        if self.settings.qdrant_path == ":memory:":
            return QdrantClient(location=":memory:")
        path = self.settings.qdrant_path or str(self.settings.vector_dir)
        _LOGGER.info("Opening local Qdrant store", extra={"path": path})
        return QdrantClient(path=path)

    def ensure_collection(self) -> None:
        if self.client is None:
            return
        collection = self.settings.qdrant_collection
        if self.client.collection_exists(collection):
            info = self.client.get_collection(collection)
            if info.config.params.vectors.size == self.dimensions:
                return
            _LOGGER.warning(
                "Recreating collection with new dimensionality",
                extra={"collection": collection, "dimensions": self.dimensions},
            )
            self.client.delete_collection(collection_name=collection)
        self.client.create_collection(
            collection_name=collection,
            vectors_config=qmodels.VectorParams(size=self.dimensions, distance=qmodels.Distance.COSINE),
        )
        for field_name in ("project_id", "file_id"):
            self.client.create_payload_index(
                collection_name=collection,
                field_name=field_name,
                field_schema=qmodels.PayloadSchemaType.KEYWORD,
            )

    @staticmethod
    def _filter(conditions: Dict[str, str]) -> qmodels.Filter:
        return qmodels.Filter(
            must=[
                qmodels.FieldCondition(key=key, match=qmodels.MatchValue(value=value))
                for key, value in conditions.items()
            ]
        )

    def upsert(self, points: Iterable[qmodels.PointStruct]) -> None:
        points = list(points)
        if not points:
            return
        if self._memory_index is not None:
            self._memory_index.upsert(points)
            return
        assert self.client is not None
        self.client.upsert(collection_name=self.settings.qdrant_collection, points=points, wait=True)

    def search(
        self,
        vector: Sequence[float],
        top_k: int = 8,
        *,
        project_id: str | None = None,
    ) -> List[qmodels.ScoredPoint]:
        """Top ``top_k`` points by cosine similarity, optionally scoped to one project."""

        conditions = {"project_id": project_id} if project_id else {}
        if self._memory_index is not None:
            return self._memory_index.search(vector, top_k, conditions)
        assert self.client is not None
        response = self.client.query_points(
            collection_name=self.settings.qdrant_collection,
            query=list(vector),
            query_filter=self._filter(conditions) if conditions else None,
            limit=top_k,
            with_payload=True,
            with_vectors=True,
        )
        return sorted(response.points, key=_point_sort_key)

    def points_for_file(self, file_id: str) -> List[qmodels.Record]:
        conditions = {"file_id": file_id}
        if self._memory_index is not None:
            records = self._memory_index.scroll(conditions)
        else:
            assert self.client is not None
            records = []
            offset = None
            while True:
                batch, offset = self.client.scroll(
                    collection_name=self.settings.qdrant_collection,
                    scroll_filter=self._filter(conditions),
                    limit=256,
                    offset=offset,
                    with_payload=True,
                    with_vectors=True,
                )
                records.extend(batch)
                if offset is None:
                    break
        return sorted(records, key=_point_sort_key)

    def delete_file(self, file_id: str) -> None:
        conditions = {"file_id": file_id}
        if self._memory_index is not None:
            self._memory_index.delete(conditions)
            return
        assert self.client is not None
        self.client.delete(
            collection_name=self.settings.qdrant_collection,
            points_selector=qmodels.FilterSelector(filter=self._filter(conditions)),
            wait=True,
        )


_vector_service: VectorService | None = None


def get_vector_service() -> VectorService:
    global _vector_service
    if _vector_service is None:
        _vector_service = VectorService()
    return _vector_service


def reset_vector_service() -> None:
    global _vector_service
    _vector_service = None
