from __future__ import annotations

import pytest

from caselens.app.services.errors import NotFoundError
from caselens.app.services.ingestion import TextIngestionService


@pytest.fixture()
def service(settings, catalog, chunk_store, embedder) -> TextIngestionService:
    return TextIngestionService(settings, catalog=catalog, chunk_store=chunk_store, embedder=embedder)


@pytest.mark.asyncio
async def test_ingest_text_replaces_existing_chunks(service, chunk_store, project, add_file) -> None:
    case_file = add_file("Deposition_Smith.pdf")
    text = "The witness stated that the meeting happened in Boston. " * 40
    first = await service.ingest_text(project.id, case_file.id, text)
    assert len(first) == 3
    assert [chunk.chunk_index for chunk in first] == [0, 1, 2]

    second = await service.ingest_text(project.id, case_file.id, "Short replacement text.")
    stored = await chunk_store.find_chunks_by_file(case_file.id)
    assert len(second) == 1
    assert [chunk.id for chunk in stored] == [second[0].id]
    assert stored[0].text == "Short replacement text."


@pytest.mark.asyncio
async def test_ingested_chunks_are_searchable(service, chunk_store, embedder, project, add_file) -> None:
    case_file = add_file("Contract.pdf")
    await service.ingest_text(project.id, case_file.id, "Indemnification clause covers all losses.")
    query = await embedder.embed("indemnification clause")
    results = await chunk_store.find_similar_chunks(project.id, query, limit=1)
    assert results[0].chunk.file_id == case_file.id
    assert results[0].similarity > 0


@pytest.mark.asyncio
async def test_register_entities(service, catalog, project, add_file) -> None:
    case_file = add_file("Deposition_Smith.pdf")
    created = await service.register_entities(
        project.id, case_file.id, [("PERSON", "John Smith"), ("LOCATION", "Boston"), ("PERSON", "john smith")]
    )
    assert len(created) == 2
    assert {entity.text for entity in catalog.list_file_entities(case_file.id)} == {"John Smith", "Boston"}


@pytest.mark.asyncio
async def test_file_must_belong_to_project(service, catalog, add_file) -> None:
    other = catalog.create_project("Other", "attorney-2")
    foreign = add_file("Foreign.pdf", project_id=other.id)
    with pytest.raises(NotFoundError):
        await service.ingest_text("not-the-owner", foreign.id, "text")
    with pytest.raises(NotFoundError):
        await service.register_entities("not-the-owner", foreign.id, [("PERSON", "A")])


@pytest.mark.asyncio
async def test_delete_file_removes_chunks_and_catalog_row(service, catalog, chunk_store, project, add_file) -> None:
    gone = add_file("Deleted.pdf")
    kept = add_file("Kept.pdf")
    await service.ingest_text(project.id, gone.id, "Privileged memo about the settlement.")
    await service.ingest_text(project.id, kept.id, "Shipping manifest for March.")
    await service.register_entities(project.id, gone.id, [("PERSON", "Jane Doe")])

    await service.delete_file(project.id, gone.id)

    assert await chunk_store.find_chunks_by_file(gone.id) == []
    assert catalog.get_file(gone.id) is None
    assert catalog.list_file_entities(gone.id) == []
    assert len(await chunk_store.find_chunks_by_file(kept.id)) == 1
    with pytest.raises(NotFoundError):
        await service.delete_file(project.id, gone.id)
