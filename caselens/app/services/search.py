from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from enum import Enum
from pathlib import PurePath
from time import perf_counter
from typing import Any, Dict, List, Optional, Sequence, Tuple

from opentelemetry import metrics, trace

from ..config import Settings, get_settings
from ..models.domain import CaseFile
from ..storage.catalog_store import CaseCatalogStore, get_catalog_store
from ..storage.chunk_store import DocumentChunkStore, get_chunk_store
from ..utils.text import clamp_unit
from .embedding import EmbeddingClient, build_embedding_client
from .errors import (
    DegradedResultWarning,
    InvalidRequestError,
    NotFoundError,
    RequestTimeoutError,
    ServiceComponent,
    UpstreamServiceError,
)
from .filters import FilterEngine, SearchFilters
from .timeouts import run_blocking, with_timeout

_tracer = trace.get_tracer(__name__)
_meter = metrics.get_meter(__name__)
_logger = logging.getLogger(__name__)
_search_queries_counter = _meter.create_counter(
    "search_queries_total",
    unit="1",
    description="Total file searches processed",
)
_search_degraded_counter = _meter.create_counter(
    "search_degraded_total",
    unit="1",
    description="Searches that fell back to keyword-only results",
)
_search_duration = _meter.create_histogram(
    "search_duration_ms",
    unit="ms",
    description="Latency of file searches",
)
_search_results_histogram = _meter.create_histogram(
    "search_results_returned",
    unit="1",
    description="Number of files matched per search before pagination",
)

EXACT_MATCH_SCORE = 1.0
PREFIX_MATCH_SCORE = 2.0 / 3.0
SUBSTRING_MATCH_SCORE = 1.0 / 3.0


class SearchMode(str, Enum):
    KEYWORD = "keyword"
    SEMANTIC = "semantic"
    COMBINED = "combined"


@dataclass
class SearchQuery:
    project_id: str
    text: str = ""
    filters: SearchFilters = field(default_factory=SearchFilters)
    mode: SearchMode = SearchMode.COMBINED
    limit: Optional[int] = None
    offset: int = 0
    keyword_weight: Optional[float] = None
    semantic_weight: Optional[float] = None


@dataclass
class SearchResult:
    file: CaseFile
    score: float
    keyword_score: Optional[float] = None
    similarity: Optional[float] = None
    chunk_id: Optional[str] = None
    strategies: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "file": self.file.to_dict(),
            "score": self.score,
            "keyword_score": self.keyword_score,
            "similarity": self.similarity,
            "chunk_id": self.chunk_id,
            "strategies": list(self.strategies),
        }


@dataclass
class SearchResponse:
    results: List[SearchResult]
    total_count: int
    mode: SearchMode
    requested_mode: SearchMode
    limit: int
    offset: int
    warnings: List[DegradedResultWarning] = field(default_factory=list)

    @property
    def degraded(self) -> bool:
        return bool(self.warnings)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "results": [result.to_dict() for result in self.results],
            "meta": {
                "total_count": self.total_count,
                "limit": self.limit,
                "offset": self.offset,
                "mode": self.mode.value,
                "requested_mode": self.requested_mode.value,
                "degraded": self.degraded,
            },
            "warnings": [warning.to_dict() for warning in self.warnings],
        }


def keyword_score(case_file: CaseFile, text: str) -> float:
    """Score a file name / exhibit id against ``text``: exact > prefix > substring > none."""

    needle = text.strip().casefold()
    if not needle:
        return 0.0
    name = case_file.name.casefold()
    targets = {name, PurePath(name).stem}
    if case_file.exhibit_id:
        targets.add(case_file.exhibit_id.casefold())
    if needle in targets:
        return EXACT_MATCH_SCORE
    if any(target.startswith(needle) for target in targets):
        return PREFIX_MATCH_SCORE
    if any(needle in target for target in targets):
        return SUBSTRING_MATCH_SCORE
    return 0.0


def _rank_key(result: SearchResult) -> Tuple[float, float, str]:
    return (-result.score, -result.file.added_at.timestamp(), result.file.id)


class HybridSearchService:
    """Keyword, semantic and combined file search over one project."""

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
        self.filter_engine = FilterEngine(self.catalog)

    async def search(self, query: SearchQuery, *, timeout: float | None = None) -> SearchResponse:
        timeout = self.settings.request_timeout_seconds if timeout is None else timeout
        limit, offset, weights = self._validate(query)
        start_time = perf_counter()
        text = query.text.strip()
        filters = query.filters or SearchFilters()

        with _tracer.start_as_current_span("search.query") as span:
            span.set_attribute("search.project_id", query.project_id)
            span.set_attribute("search.requested_mode", query.mode.value)
            span.set_attribute("search.has_text", bool(text))
            span.set_attribute("search.filters.applied", not filters.is_empty())

            project = await run_blocking(
                self.catalog.get_project,
                query.project_id,
                timeout=timeout,
                component=ServiceComponent.CATALOG,
                operation="load project",
            )
            if project is None:
                raise NotFoundError.build(
                    ServiceComponent.SEARCH,
                    "PROJECT_NOT_FOUND",
                    f"Project {query.project_id} does not exist",
                    project_id=query.project_id,
                )

            mode = query.mode if text else SearchMode.KEYWORD
            warnings: List[DegradedResultWarning] = []
            if not text and filters.is_empty():
                ranked: List[SearchResult] = []
            else:
                files = await run_blocking(
                    self.catalog.list_files,
                    query.project_id,
                    timeout=timeout,
                    component=ServiceComponent.CATALOG,
                    operation="list project files",
                )
                if not files:
                    ranked = []
                elif not text:
                    # Filters alone: every file is a candidate, newest first.
                    ranked = [SearchResult(file=case_file, score=0.0) for case_file in files]
                else:
                    ranked, mode, warnings = await self._dispatch(query, text, files, weights, timeout)
                if ranked:
                    ranked = await self._post_filter(ranked, filters, timeout)

            total_count = len(ranked)
            page = ranked[offset : offset + limit]
            duration_ms = (perf_counter() - start_time) * 1000.0
            metric_attrs: Dict[str, object] = {
                "mode": mode.value,
                "requested_mode": query.mode.value,
                "degraded": bool(warnings),
            }
            span.set_attribute("search.mode", mode.value)
            span.set_attribute("search.total_count", total_count)
            span.set_attribute("search.degraded", bool(warnings))
            span.set_attribute("search.duration_ms", duration_ms)
            _search_queries_counter.add(1, attributes=metric_attrs)
            _search_duration.record(duration_ms, attributes=metric_attrs)
            _search_results_histogram.record(total_count, attributes=metric_attrs)
            if warnings:
                _search_degraded_counter.add(1, attributes=metric_attrs)

        _logger.info(
            "Search completed",
            extra={
                "project_id": query.project_id,
                "mode": mode.value,
                "requested_mode": query.mode.value,
                "total_count": total_count,
                "degraded": bool(warnings),
            },
        )
        return SearchResponse(
            results=page,
            total_count=total_count,
            mode=mode,
            requested_mode=query.mode,
            limit=limit,
            offset=offset,
            warnings=warnings,
        )

    def _validate(self, query: SearchQuery) -> Tuple[int, int, Tuple[float, float]]:
        limit = self.settings.search_default_limit if query.limit is None else query.limit
        if limit < 1 or limit > self.settings.search_max_limit:
            raise InvalidRequestError.build(
                ServiceComponent.SEARCH,
                "INVALID_LIMIT",
                f"limit must be between 1 and {self.settings.search_max_limit}",
                limit=limit,
            )
        if query.offset < 0:
            raise InvalidRequestError.build(
                ServiceComponent.SEARCH,
                "INVALID_OFFSET",
                "offset must not be negative",
                offset=query.offset,
            )
        keyword_weight = (
            self.settings.search_keyword_weight if query.keyword_weight is None else query.keyword_weight
        )
        semantic_weight = (
            self.settings.search_semantic_weight if query.semantic_weight is None else query.semantic_weight
        )
        if keyword_weight < 0 or semantic_weight < 0 or keyword_weight + semantic_weight == 0:
            raise InvalidRequestError.build(
                ServiceComponent.SEARCH,
                "INVALID_WEIGHTS",
                "search weights must be non-negative and not both zero",
                keyword_weight=keyword_weight,
                semantic_weight=semantic_weight,
            )
        if query.filters is not None:
            query.filters.validate()
        return limit, query.offset, (keyword_weight, semantic_weight)

    async def _dispatch(
        self,
        query: SearchQuery,
        text: str,
        files: Sequence[CaseFile],
        weights: Tuple[float, float],
        timeout: float | None,
    ) -> Tuple[List[SearchResult], SearchMode, List[DegradedResultWarning]]:
        if query.mode is SearchMode.KEYWORD:
            return self._keyword_results(files, text), SearchMode.KEYWORD, []

        if query.mode is SearchMode.SEMANTIC:
            semantic, warning = await self._semantic_strategy(query.project_id, text, timeout)
            if warning is not None:
                return self._keyword_results(files, text), SearchMode.KEYWORD, [warning]
            return self._semantic_results(files, semantic), SearchMode.SEMANTIC, []

        with _tracer.start_as_current_span("search.combined") as span:
            keyword_scores, (semantic, warning) = await asyncio.gather(
                self._keyword_strategy(files, text),
                self._semantic_strategy(query.project_id, text, timeout),
            )
            span.set_attribute("search.keyword_candidates", len(keyword_scores))
            span.set_attribute("search.semantic_candidates", len(semantic))
        if warning is not None:
            return self._keyword_results(files, text), SearchMode.KEYWORD, [warning]
        return self._merge(files, keyword_scores, semantic, weights), SearchMode.COMBINED, []

    async def _keyword_strategy(self, files: Sequence[CaseFile], text: str) -> Dict[str, float]:
        scores: Dict[str, float] = {}
        for case_file in files:
            score = keyword_score(case_file, text)
            if score > 0:
                scores[case_file.id] = score
        return scores

    async def _semantic_strategy(
        self, project_id: str, text: str, timeout: float | None
    ) -> Tuple[Dict[str, Tuple[float, str]], Optional[DegradedResultWarning]]:
        """Best (similarity, chunk id) per file, or a warning when embeddings are unavailable."""

        with _tracer.start_as_current_span("search.semantic") as span:
            try:
                embedding = await with_timeout(
                    self.embedder.embed(text),
                    timeout,
                    component=ServiceComponent.EMBEDDING,
                    operation="embed search query",
                )
                scored = await self.chunk_store.find_similar_chunks(
                    project_id,
                    embedding,
                    self.settings.search_semantic_candidates,
                    timeout=timeout,
                )
            except (UpstreamServiceError, RequestTimeoutError) as exc:
                span.set_attribute("search.semantic.degraded", True)
                _logger.warning(
                    "Semantic search unavailable, falling back to keyword results",
                    extra={"project_id": project_id, "code": exc.error.code},
                )
                return {}, DegradedResultWarning.from_exception(
                    exc, "Semantic search was skipped; showing keyword matches only"
                )
            best: Dict[str, Tuple[float, str]] = {}
            threshold = self.settings.search_match_threshold
            for item in scored:
                if item.similarity <= threshold:
                    continue
                current = best.get(item.chunk.file_id)
                if current is None or item.similarity > current[0]:
                    best[item.chunk.file_id] = (clamp_unit(item.similarity), item.chunk.id)
            span.set_attribute("search.semantic.chunks", len(scored))
            span.set_attribute("search.semantic.files", len(best))
        return best, None

    def _keyword_results(self, files: Sequence[CaseFile], text: str) -> List[SearchResult]:
        results = []
        for case_file in files:
            score = keyword_score(case_file, text)
            if score > 0:
                results.append(
                    SearchResult(file=case_file, score=score, keyword_score=score, strategies=["keyword"])
                )
        results.sort(key=_rank_key)
        return results

    def _semantic_results(
        self, files: Sequence[CaseFile], semantic: Dict[str, Tuple[float, str]]
    ) -> List[SearchResult]:
        by_id = {case_file.id: case_file for case_file in files}
        results = [
            SearchResult(
                file=by_id[file_id],
                score=similarity,
                similarity=similarity,
                chunk_id=chunk_id,
                strategies=["semantic"],
            )
            for file_id, (similarity, chunk_id) in semantic.items()
            if file_id in by_id
        ]
        results.sort(key=_rank_key)
        return results

    def _merge(
        self,
        files: Sequence[CaseFile],
        keyword_scores: Dict[str, float],
        semantic: Dict[str, Tuple[float, str]],
        weights: Tuple[float, float],
    ) -> List[SearchResult]:
        keyword_weight, semantic_weight = weights
        results = []
        for case_file in files:
            k_score = keyword_scores.get(case_file.id)
            hit = semantic.get(case_file.id)
            if k_score is None and hit is None:
                continue
            strategies = []
            score = 0.0
            if k_score is not None:
                strategies.append("keyword")
                score += keyword_weight * k_score
            if hit is not None:
                strategies.append("semantic")
                score += semantic_weight * hit[0]
            results.append(
                SearchResult(
                    file=case_file,
                    score=score,
                    keyword_score=k_score,
                    similarity=hit[0] if hit else None,
                    chunk_id=hit[1] if hit else None,
                    strategies=strategies,
                )
            )
        results.sort(key=_rank_key)
        return results

    async def _post_filter(
        self, ranked: List[SearchResult], filters: SearchFilters, timeout: float | None
    ) -> List[SearchResult]:
        if filters.is_empty():
            return ranked
        kept = await self.filter_engine.filter_files([result.file for result in ranked], filters, timeout=timeout)
        kept_ids = {case_file.id for case_file in kept}
        return [result for result in ranked if result.file.id in kept_ids]


_search_service: HybridSearchService | None = None


def get_search_service() -> HybridSearchService:
    global _search_service
    if _search_service is None:
        _search_service = HybridSearchService()
    return _search_service


def reset_search_service() -> None:
    global _search_service
    _search_service = None


__all__ = [
    "SearchMode",
    "SearchQuery",
    "SearchResult",
    "SearchResponse",
    "HybridSearchService",
    "keyword_score",
    "get_search_service",
    "reset_search_service",
]
