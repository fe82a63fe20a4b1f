from __future__ import annotations

import asyncio
import json
from typing import List

import pytest
import pytest_asyncio

from caselens.app.services.errors import (
    InvalidRequestError,
    NotFoundError,
    ServiceComponent,
    UpstreamServiceError,
)
from caselens.app.services.generation import ExtractiveTextGenerationClient
from caselens.app.services.qa import (
    INSUFFICIENT_INFORMATION_ANSWER,
    QAScope,
    RetrievalQAService,
    parse_model_answer,
)

from conftest import DIMENSIONS, make_chunk, unit_vector


class _FixedEmbedder:
    dimensions = DIMENSIONS

    async def embed(self, text: str) -> List[float]:
        return unit_vector(1.0)


class _FailingEmbedder:
    dimensions = DIMENSIONS

    async def embed(self, text: str) -> List[float]:
        raise UpstreamServiceError.build(ServiceComponent.EMBEDDING, "EMBEDDING_UNAVAILABLE", "offline")


class _StubGenerator:
    def __init__(self, response: str = "", delay: float = 0.0) -> None:
        self.response = response
        self.delay = delay
        self.calls = 0
        self.prompts: List[str] = []
        self.systems: List[str | None] = []

    async def generate(self, prompt: str, system: str | None = None) -> str:
        self.calls += 1
        self.prompts.append(prompt)
        self.systems.append(system)
        if self.delay:
            await asyncio.sleep(self.delay)
        return self.response


def _answer_json(confidence: float, review: bool, source: str = "Source 1") -> str:
    return json.dumps(
        {
            "answer": "The deposition took place on March 3.",
            "confidence": confidence,
            "citations": [{"text": "deposed on March 3", "source": source}],
            "needsAttorneyReview": review,
        }
    )


@pytest.fixture()
def build_service(settings, catalog, chunk_store):
    def factory(generator=None, *, embedder=None, config=None) -> RetrievalQAService:
        return RetrievalQAService(
            config or settings,
            catalog=catalog,
            chunk_store=chunk_store,
            embedder=embedder or _FixedEmbedder(),
            generator=generator or _StubGenerator(_answer_json(0.9, False)),
        )

    return factory


@pytest_asyncio.fixture()
async def seeded(chunk_store, add_file):
    deposition = add_file("Deposition_Smith.pdf")
    contract = add_file("Contract.pdf")
    await chunk_store.add_chunks(
        [
            make_chunk("d0", deposition, 0, unit_vector(1.0, 0.2), "Smith was deposed on March 3."),
            make_chunk("d1", deposition, 1, unit_vector(0.1, 1.0), "Counsel objected to the question."),
            make_chunk("k0", contract, 0, unit_vector(1.0, 0.5), "The contract was signed in May."),
        ]
    )
    return deposition, contract


@pytest.mark.asyncio
async def test_no_chunks_short_circuits_without_generation(build_service, project) -> None:
    generator = _StubGenerator(_answer_json(0.9, False))
    answer = await build_service(generator).answer_question(QAScope(project.id), "When was Smith deposed?")
    assert answer.answer == INSUFFICIENT_INFORMATION_ANSWER
    assert answer.confidence == 0.0
    assert answer.citations == []
    assert answer.needs_review is True
    assert generator.calls == 0


@pytest.mark.asyncio
async def test_project_answer_with_resolved_citations(build_service, project, seeded) -> None:
    deposition, _ = seeded
    generator = _StubGenerator(_answer_json(0.9, False))
    answer = await build_service(generator).answer_question(QAScope(project.id), "When was Smith deposed?")

    assert answer.answer == "The deposition took place on March 3."
    assert answer.confidence == pytest.approx(0.9)
    assert answer.needs_review is False
    assert answer.mode == "project"
    assert generator.calls == 1
    assert "[Source 1] Deposition_Smith.pdf (chunk 0)" in generator.prompts[0]
    assert "Question: When was Smith deposed?" in generator.prompts[0]
    assert "ONLY" in generator.systems[0]
    assert answer.citations[0].file_id == deposition.id
    assert answer.citations[0].chunk_id == "d0"
    assert [item.chunk_id for item in answer.provenance] == ["d0", "k0", "d1"]
    similarities = [item.similarity for item in answer.provenance]
    assert similarities == sorted(similarities, reverse=True)


@pytest.mark.asyncio
async def test_low_confidence_forces_review(build_service, project, seeded) -> None:
    generator = _StubGenerator(_answer_json(0.55, False))
    answer = await build_service(generator).answer_question(QAScope(project.id), "When?")
    assert answer.answer
    assert answer.confidence == pytest.approx(0.55)
    assert answer.needs_review is True


@pytest.mark.asyncio
async def test_unparseable_response_falls_back_to_raw_text(build_service, project, seeded) -> None:
    generator = _StubGenerator("Smith was deposed in March, I think.")
    answer = await build_service(generator).answer_question(QAScope(project.id), "When?")
    assert answer.answer == "Smith was deposed in March, I think."
    assert answer.confidence == pytest.approx(0.5)
    assert answer.citations == []
    assert answer.needs_review is True
    assert answer.parse_failed is True
    assert answer.provenance


@pytest.mark.asyncio
async def test_code_fenced_response_is_parsed(build_service, project, seeded) -> None:
    _, contract = seeded
    raw = "Here you go:\n```json\n" + _answer_json(0.8, False, source="Source 2") + "\n```"
    answer = await build_service(_StubGenerator(raw)).answer_question(QAScope(project.id), "When?")
    assert answer.parse_failed is False
    assert answer.citations[0].file_id == contract.id


@pytest.mark.asyncio
async def test_generation_timeout_returns_degraded_answer(build_service, project, seeded) -> None:
    generator = _StubGenerator(_answer_json(0.9, False), delay=1.0)
    answer = await build_service(generator).answer_question(QAScope(project.id), "When?", timeout=0.05)
    assert answer.confidence == 0.0
    assert answer.needs_review is True
    assert answer.citations == []
    assert answer.warnings[0].code == "GENERATION_TIMEOUT"
    assert len(answer.provenance) == 3


@pytest.mark.asyncio
async def test_document_mode_uses_file_chunks_in_order(build_service, project, seeded) -> None:
    deposition, _ = seeded
    generator = _StubGenerator(_answer_json(0.7, False))
    answer = await build_service(generator).answer_question(
        QAScope(project.id, deposition.id), "What happened?"
    )
    prompt = generator.prompts[0]
    assert prompt.index("(chunk 0)") < prompt.index("(chunk 1)")
    assert "Contract.pdf" not in prompt
    assert answer.mode == "document"
    assert [item.chunk_index for item in answer.provenance] == [0, 1]
    assert answer.provenance[0].similarity > answer.provenance[1].similarity


@pytest.mark.asyncio
async def test_context_budget_drops_trailing_chunks(build_service, settings, chunk_store, project, add_file) -> None:
    case_file = add_file("Long.pdf")
    await chunk_store.add_chunks(
        [make_chunk(f"l{idx}", case_file, idx, unit_vector(1.0, idx / 10), "x" * 400) for idx in range(3)]
    )
    config = settings.model_copy(update={"qa_context_char_budget": 900})
    generator = _StubGenerator(_answer_json(0.9, False))
    answer = await build_service(generator, config=config).answer_question(QAScope(project.id), "What?")
    assert "[Source 2]" in generator.prompts[0]
    assert "[Source 3]" not in generator.prompts[0]
    assert [item.in_context for item in answer.provenance] == [True, True, False]


@pytest.mark.asyncio
async def test_input_validation(build_service, catalog, project, add_file) -> None:
    service = build_service()
    with pytest.raises(InvalidRequestError):
        await service.answer_question(QAScope(project.id), "   ")
    with pytest.raises(NotFoundError):
        await service.answer_question(QAScope("missing"), "When?")
    other = catalog.create_project("Other", "attorney-2")
    foreign = add_file("Foreign.pdf", project_id=other.id)
    with pytest.raises(NotFoundError):
        await service.answer_question(QAScope(project.id, foreign.id), "When?")
    catalog.archive_project(project.id)
    with pytest.raises(NotFoundError):
        await service.answer_question(QAScope(project.id), "When?")


@pytest.mark.asyncio
async def test_embedding_failure_propagates(build_service, project, seeded) -> None:
    generator = _StubGenerator(_answer_json(0.9, False))
    with pytest.raises(UpstreamServiceError):
        await build_service(generator, embedder=_FailingEmbedder()).answer_question(QAScope(project.id), "When?")
    assert generator.calls == 0


@pytest.mark.asyncio
async def test_extractive_generator_round_trip(build_service, project, seeded) -> None:
    answer = await build_service(ExtractiveTextGenerationClient()).answer_question(QAScope(project.id), "When?")
    assert answer.answer == "Smith was deposed on March 3."
    assert answer.needs_review is True
    assert answer.citations[0].chunk_id == "d0"


def test_parse_model_answer_rejects_incomplete_payloads() -> None:
    assert parse_model_answer('{"answer": "yes"}') is None
    assert parse_model_answer('{"answer": "", "confidence": 0.9}') is None
    parsed = parse_model_answer('{"answer": "yes", "confidence": 1.7}')
    assert parsed is not None
    assert parsed.confidence == 1.0
    assert parsed.needs_review is True


@pytest.mark.asyncio
async def test_chunks_of_deleted_files_do_not_crowd_out_live_files(
    build_service, catalog, chunk_store, project, add_file
) -> None:
    gone = add_file("Deleted.pdf")
    kept = add_file("Kept.pdf")
    await chunk_store.add_chunks(
        [make_chunk(f"g{idx}", gone, idx, unit_vector(1.0, idx / 100)) for idx in range(5)]
        + [make_chunk("k0", kept, 0, unit_vector(1.0, 1.0), "Smith was deposed on March 3.")]
    )
    catalog.delete_file(gone.id)

    generator = _StubGenerator(_answer_json(0.9, False))
    answer = await build_service(generator).answer_question(QAScope(project.id), "When was Smith deposed?", limit=5)

    assert generator.calls == 1
    assert "[Source 1] Kept.pdf (chunk 0)" in generator.prompts[0]
    assert [(item.chunk_id, item.file_name) for item in answer.provenance] == [("k0", "Kept.pdf")]
    assert answer.citations[0].chunk_id == "k0"


@pytest.mark.asyncio
async def test_document_mode_similarity_is_clamped(build_service, chunk_store, project, add_file) -> None:
    case_file = add_file("Opposite.pdf")
    await chunk_store.add_chunks(
        [
            make_chunk("o0", case_file, 0, unit_vector(-1.0), "Unrelated text."),
            make_chunk("o1", case_file, 1, unit_vector(1.0), "Matching text."),
        ]
    )
    answer = await build_service().answer_question(QAScope(project.id, case_file.id), "What?")
    assert [item.similarity for item in answer.provenance] == [0.0, pytest.approx(1.0)]
