from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from time import perf_counter
from typing import Any, Dict, List, Optional, Sequence, Tuple

from opentelemetry import metrics, trace
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from ..config import Settings, get_settings
from ..models.domain import CaseFile, DocumentChunk, ScoredChunk
from ..storage.catalog_store import CaseCatalogStore, get_catalog_store
from ..storage.chunk_store import DocumentChunkStore, get_chunk_store
from ..utils.text import clamp_unit, cosine_similarity, preview
from .embedding import EmbeddingClient, build_embedding_client
from .errors import (
    DegradedResultWarning,
    InvalidRequestError,
    NotFoundError,
    RequestTimeoutError,
    ServiceComponent,
)
from .generation import TextGenerationClient, build_generation_client
from .timeouts import run_blocking, with_timeout

_tracer = trace.get_tracer(__name__)
_meter = metrics.get_meter(__name__)
_logger = logging.getLogger(__name__)
_qa_questions_counter = _meter.create_counter(
    "qa_questions_total",
    unit="1",
    description="Total questions answered",
)
_qa_degraded_counter = _meter.create_counter(
    "qa_degraded_total",
    unit="1",
    description="Answers produced without a usable model response",
)
_qa_duration = _meter.create_histogram(
    "qa_duration_ms",
    unit="ms",
    description="Latency of question answering",
)
_qa_confidence = _meter.create_histogram(
    "qa_confidence",
    unit="1",
    description="Confidence reported for answers",
)

INSUFFICIENT_INFORMATION_ANSWER = (
    "There is not enough information in the case documents to answer this question."
)
GENERATION_TIMEOUT_ANSWER = (
    "The answer could not be generated in time. Review the listed source passages directly "
    "or try the question again."
)

SYSTEM_INSTRUCTION = (
    "You are a legal research assistant working on a case file. Answer the question using ONLY "
    "the numbered context sources provided. If the sources do not contain the answer, say that "
    "there is not enough information. Quote the supporting passages as citations and refer to "
    "them as \"Source n\". Flag the answer for attorney review whenever it involves legal advice "
    "or strategy, or when you are unsure. Respond with a single JSON object and nothing else."
)

RESPONSE_SHAPE = (
    '{"answer": "your answer", "confidence": 0.0, '
    '"citations": [{"text": "quoted passage", "source": "Source 1"}], '
    '"needsAttorneyReview": true}'
)

_FENCE_RE = re.compile(r"```(?:json)?\s*(.*?)```", re.DOTALL | re.IGNORECASE)
_SOURCE_REF_RE = re.compile(r"source\s*#?\s*(\d+)", re.IGNORECASE)


@dataclass
class QAScope:
    project_id: str
    file_id: Optional[str] = None

    @property
    def mode(self) -> str:
        return "document" if self.file_id else "project"


@dataclass
class Citation:
    text: str
    source: str
    chunk_id: Optional[str] = None
    file_id: Optional[str] = None
    file_name: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "text": self.text,
            "source": self.source,
            "chunk_id": self.chunk_id,
            "file_id": self.file_id,
            "file_name": self.file_name,
        }


@dataclass
class ChunkProvenance:
    chunk_id: str
    file_id: str
    file_name: str
    chunk_index: int
    similarity: float
    preview: str
    in_context: bool = True

    def to_dict(self) -> Dict[str, Any]:
        return {
            "chunk_id": self.chunk_id,
            "file_id": self.file_id,
            "file_name": self.file_name,
            "chunk_index": self.chunk_index,
            "similarity": self.similarity,
            "preview": self.preview,
            "in_context": self.in_context,
        }


@dataclass
class QAAnswer:
    answer: str
    confidence: float
    citations: List[Citation]
    needs_review: bool
    mode: str
    provenance: List[ChunkProvenance] = field(default_factory=list)
    parse_failed: bool = False
    warnings: List[DegradedResultWarning] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "answer": self.answer,
            "confidence": self.confidence,
            "citations": [citation.to_dict() for citation in self.citations],
            "needs_review": self.needs_review,
            "mode": self.mode,
            "provenance": [item.to_dict() for item in self.provenance],
            "parse_failed": self.parse_failed,
            "warnings": [warning.to_dict() for warning in self.warnings],
        }


class _ModelCitation(BaseModel):
    model_config = ConfigDict(extra="ignore")

    text: str
    source: str = ""

    @field_validator("source", mode="before")
    @classmethod
    def _coerce_source(cls, value: Any) -> str:
        return "" if value is None else str(value)


class ModelAnswer(BaseModel):
    """Structured answer the generator is asked to return."""

    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    answer: str
    confidence: float
    citations: List[_ModelCitation] = Field(default_factory=list)
    needs_review: bool = Field(default=True, alias="needsAttorneyReview")

    @field_validator("confidence")
    @classmethod
    def _clamp_confidence(cls, value: float) -> float:
        return max(0.0, min(1.0, value))

    @field_validator("answer")
    @classmethod
    def _require_answer(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("answer must not be empty")
        return value.strip()


def parse_model_answer(raw: str) -> Optional[ModelAnswer]:
    """Parse a generator response, tolerating code fences and surrounding prose."""

    candidates = []
    fenced = _FENCE_RE.search(raw)
    if fenced:
        candidates.append(fenced.group(1))
    candidates.append(raw)
    start, end = raw.find("{"), raw.rfind("}")
    if 0 <= start < end:
        candidates.append(raw[start : end + 1])
    for candidate in candidates:
        try:
            return ModelAnswer.model_validate_json(candidate.strip())
        except ValidationError:
            continue
    return None


def _similarity(query: Sequence[float], vector: Sequence[float]) -> float:
    if len(query) != len(vector):
        return 0.0
    return cosine_similarity(query, vector)


@dataclass
class _ContextBlock:
    number: int
    chunk: DocumentChunk
    file: CaseFile
    text: str


def build_context_blocks(
    chunks: Sequence[DocumentChunk], files: Dict[str, CaseFile], budget: int
) -> List[_ContextBlock]:
    """Number chunks as sources until the character budget is spent."""

    blocks: List[_ContextBlock] = []
    used = 0
    for chunk in chunks:
        case_file = files.get(chunk.file_id)
        if case_file is None:
            continue
        text = chunk.text.strip()
        if not text:
            continue
        remaining = budget - used
        if remaining <= 0:
            break
        if len(text) > remaining:
            if blocks:
                break
            text = text[:remaining]
        blocks.append(_ContextBlock(number=len(blocks) + 1, chunk=chunk, file=case_file, text=text))
        used += len(text)
    return blocks


def build_prompt(question: str, blocks: Sequence[_ContextBlock]) -> str:
    sections = ["Context sources:", ""]
    for block in blocks:
        sections.append(f"[Source {block.number}] {block.file.name} (chunk {block.chunk.chunk_index})")
        sections.append(block.text)
        sections.append("")
    sections.append(f"Question: {question}")
    sections.append("")
    sections.append("Respond with JSON in exactly this shape:")
    sections.append(RESPONSE_SHAPE)
    return "\n".join(sections)


class RetrievalQAService:
    """Answers questions about a project or a single document from retrieved chunks."""

    def __init__(
        self,
        settings: Settings | None = None,
        *,
        catalog: CaseCatalogStore | None = None,
        chunk_store: DocumentChunkStore | None = None,
        embedder: EmbeddingClient | None = None,
        generator: TextGenerationClient | None = None,
    ) -> None:
        self.settings = settings or get_settings()
        self.catalog = catalog or get_catalog_store()
        self.chunk_store = chunk_store or get_chunk_store()
        self.embedder = embedder or build_embedding_client(self.settings)
        self.generator = generator or build_generation_client(self.settings)

    async def answer_question(
        self,
        scope: QAScope,
        question: str,
        *,
        limit: int | None = None,
        timeout: float | None = None,
    ) -> QAAnswer:
        timeout = self.settings.request_timeout_seconds if timeout is None else timeout
        question = (question or "").strip()
        if not question:
            raise InvalidRequestError.build(
                ServiceComponent.QA,
                "EMPTY_QUESTION",
                "question must not be empty",
                project_id=scope.project_id,
            )
        limit = self.settings.qa_chunk_limit if limit is None else limit
        if limit < 1:
            raise InvalidRequestError.build(
                ServiceComponent.QA, "INVALID_LIMIT", "limit must be at least 1", limit=limit
            )
        start_time = perf_counter()

        with _tracer.start_as_current_span("qa.answer") as span:
            span.set_attribute("qa.project_id", scope.project_id)
            span.set_attribute("qa.mode", scope.mode)
            files = await self._load_scope(scope, timeout)

            with _tracer.start_as_current_span("qa.embed"):
                embedding = await with_timeout(
                    self.embedder.embed(question),
                    timeout,
                    component=ServiceComponent.EMBEDDING,
                    operation="embed question",
                )

            with _tracer.start_as_current_span("qa.retrieve") as retrieve_span:
                scored, files = await self._retrieve(scope, embedding, limit, files, timeout)
                retrieve_span.set_attribute("qa.chunks", len(scored))

            if not scored:
                answer = QAAnswer(
                    answer=INSUFFICIENT_INFORMATION_ANSWER,
                    confidence=0.0,
                    citations=[],
                    needs_review=True,
                    mode=scope.mode,
                )
                outcome = "no_context"
            else:
                blocks = build_context_blocks(
                    [item.chunk for item in scored], files, self.settings.qa_context_char_budget
                )
                provenance = self._provenance(scored, files, blocks)
                span.set_attribute("qa.context_blocks", len(blocks))
                if blocks:
                    answer, outcome = await self._generate(scope, question, blocks, provenance, timeout)
                else:
                    answer = QAAnswer(
                        answer=INSUFFICIENT_INFORMATION_ANSWER,
                        confidence=0.0,
                        citations=[],
                        needs_review=True,
                        mode=scope.mode,
                        provenance=provenance,
                    )
                    outcome = "no_context"

            duration_ms = (perf_counter() - start_time) * 1000.0
            metric_attrs: Dict[str, object] = {"mode": scope.mode, "outcome": outcome}
            span.set_attribute("qa.outcome", outcome)
            span.set_attribute("qa.confidence", answer.confidence)
            span.set_attribute("qa.needs_review", answer.needs_review)
            _qa_questions_counter.add(1, attributes=metric_attrs)
            _qa_duration.record(duration_ms, attributes=metric_attrs)
            _qa_confidence.record(answer.confidence, attributes=metric_attrs)
            if outcome != "answered":
                _qa_degraded_counter.add(1, attributes=metric_attrs)

        _logger.info(
            "Question answered",
            extra={
                "project_id": scope.project_id,
                "file_id": scope.file_id,
                "mode": scope.mode,
                "outcome": outcome,
                "confidence": answer.confidence,
                "needs_review": answer.needs_review,
            },
        )
        return answer

    async def _load_scope(self, scope: QAScope, timeout: float | None) -> Dict[str, CaseFile]:
        project = await run_blocking(
            self.catalog.get_project,
            scope.project_id,
            timeout=timeout,
            component=ServiceComponent.CATALOG,
            operation="load project",
        )
        if project is None or project.archived:
            raise NotFoundError.build(
                ServiceComponent.QA,
                "PROJECT_NOT_FOUND",
                f"Project {scope.project_id} does not exist or is archived",
                project_id=scope.project_id,
            )
        if scope.file_id is None:
            return {}
        case_file = await run_blocking(
            self.catalog.get_file,
            scope.file_id,
            timeout=timeout,
            component=ServiceComponent.CATALOG,
            operation="load file",
        )
        if case_file is None or case_file.project_id != scope.project_id:
            raise NotFoundError.build(
                ServiceComponent.QA,
                "FILE_NOT_FOUND",
                f"File {scope.file_id} does not exist in project {scope.project_id}",
                project_id=scope.project_id,
                file_id=scope.file_id,
            )
        return {case_file.id: case_file}

    async def _retrieve(
        self,
        scope: QAScope,
        embedding: Sequence[float],
        limit: int,
        files: Dict[str, CaseFile],
        timeout: float | None,
    ) -> Tuple[List[ScoredChunk], Dict[str, CaseFile]]:
        if scope.file_id is not None:
            chunks = await self.chunk_store.find_chunks_by_file(scope.file_id, timeout=timeout)
            # Document order is kept; similarity is only reported for provenance.
            scored = [
                ScoredChunk(chunk=chunk, similarity=clamp_unit(_similarity(embedding, chunk.embedding)))
                for chunk in chunks
                if chunk.project_id == scope.project_id
            ]
            return scored, files

        project_files = await run_blocking(
            self.catalog.list_files,
            scope.project_id,
            timeout=timeout,
            component=ServiceComponent.CATALOG,
            operation="list project files",
        )
        live = {case_file.id: case_file for case_file in project_files}
        # Chunks whose file is gone are skipped before the limit applies.
        candidates = limit
        while True:
            scored = await self.chunk_store.find_similar_chunks(
                scope.project_id, embedding, candidates, timeout=timeout
            )
            kept = [item for item in scored if item.chunk.file_id in live]
            if len(kept) >= limit or len(scored) < candidates:
                break
            candidates *= 2
        if len(kept) < len(scored):
            _logger.warning(
                "Skipped chunks of deleted files",
                extra={"project_id": scope.project_id, "skipped": len(scored) - len(kept)},
            )
        return kept[:limit], live

    @staticmethod
    def _provenance(
        scored: Sequence[ScoredChunk], files: Dict[str, CaseFile], blocks: Sequence[_ContextBlock]
    ) -> List[ChunkProvenance]:
        in_context = {block.chunk.id for block in blocks}
        provenance = []
        for item in scored:
            case_file = files.get(item.chunk.file_id)
            provenance.append(
                ChunkProvenance(
                    chunk_id=item.chunk.id,
                    file_id=item.chunk.file_id,
                    file_name=case_file.name if case_file else "",
                    chunk_index=item.chunk.chunk_index,
                    similarity=item.similarity,
                    preview=preview(item.chunk.text),
                    in_context=item.chunk.id in in_context,
                )
            )
        return provenance

    async def _generate(
        self,
        scope: QAScope,
        question: str,
        blocks: Sequence[_ContextBlock],
        provenance: List[ChunkProvenance],
        timeout: float | None,
    ) -> Tuple[QAAnswer, str]:
        prompt = build_prompt(question, blocks)
        with _tracer.start_as_current_span("qa.generate") as span:
            span.set_attribute("qa.prompt_chars", len(prompt))
            try:
                raw = await with_timeout(
                    self.generator.generate(prompt, system=SYSTEM_INSTRUCTION),
                    timeout,
                    component=ServiceComponent.GENERATION,
                    operation="generate answer",
                )
            except RequestTimeoutError as exc:
                _logger.warning(
                    "Answer generation timed out",
                    extra={"project_id": scope.project_id, "timeout": timeout},
                )
                warning = DegradedResultWarning.from_exception(
                    exc, "The language model did not answer in time"
                )
                return (
                    QAAnswer(
                        answer=GENERATION_TIMEOUT_ANSWER,
                        confidence=0.0,
                        citations=[],
                        needs_review=True,
                        mode=scope.mode,
                        provenance=provenance,
                        warnings=[warning],
                    ),
                    "timeout",
                )

        parsed = parse_model_answer(raw)
        if parsed is None:
            _logger.warning(
                "Model response was not valid JSON, returning raw text",
                extra={"project_id": scope.project_id, "response_chars": len(raw)},
            )
            answer_text = raw.strip() or INSUFFICIENT_INFORMATION_ANSWER
            return (
                QAAnswer(
                    answer=answer_text,
                    confidence=self.settings.qa_fallback_confidence,
                    citations=[],
                    needs_review=True,
                    mode=scope.mode,
                    provenance=provenance,
                    parse_failed=True,
                ),
                "parse_failed",
            )

        by_number = {block.number: block for block in blocks}
        citations = [self._resolve_citation(item, by_number) for item in parsed.citations]
        needs_review = parsed.needs_review or parsed.confidence < self.settings.qa_review_threshold
        return (
            QAAnswer(
                answer=parsed.answer,
                confidence=parsed.confidence,
                citations=citations,
                needs_review=needs_review,
                mode=scope.mode,
                provenance=provenance,
            ),
            "answered",
        )

    @staticmethod
    def _resolve_citation(item: _ModelCitation, by_number: Dict[int, _ContextBlock]) -> Citation:
        citation = Citation(text=item.text, source=item.source)
        match = _SOURCE_REF_RE.search(item.source)
        block = by_number.get(int(match.group(1))) if match else None
        if block is not None:
            citation.chunk_id = block.chunk.id
            citation.file_id = block.file.id
            citation.file_name = block.file.name
        return citation


_qa_service: RetrievalQAService | None = None


def get_qa_service() -> RetrievalQAService:
    global _qa_service
    if _qa_service is None:
        _qa_service = RetrievalQAService()
    return _qa_service


def reset_qa_service() -> None:
    global _qa_service
    _qa_service = None


__all__ = [
    "QAScope",
    "QAAnswer",
    "Citation",
    "ChunkProvenance",
    "ModelAnswer",
    "RetrievalQAService",
    "build_prompt",
    "parse_model_answer",
    "get_qa_service",
    "reset_qa_service",
]
