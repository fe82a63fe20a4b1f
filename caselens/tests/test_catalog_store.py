from __future__ import annotations

from datetime import datetime, timezone

import pytest

from caselens.app.services.errors import InvalidRequestError, NotFoundError
from caselens.app.storage.catalog_store import next_exhibit_label


def test_next_exhibit_label_sequencing() -> None:
    assert next_exhibit_label([]) == "EXH-001"
    assert next_exhibit_label(["EXH-001", "EXH-002"]) == "EXH-003"
    assert next_exhibit_label(["EXH-009", None, "Plaintiff 4"]) == "EXH-010"
    assert next_exhibit_label(["EXH-1000"]) == "EXH-1001"


def test_exhibit_ids_assigned_per_project(catalog, project, add_file) -> None:
    other = catalog.create_project("Other matter", "attorney-2")
    assert catalog.next_exhibit_id(project.id) == "EXH-001"
    first = add_file("Deposition_Smith.pdf", assign_exhibit=True)
    second = add_file("Contract.pdf", assign_exhibit=True)
    add_file("Notes.txt")
    add_file("Elsewhere.pdf", project_id=other.id, assign_exhibit=True)

    assert first.exhibit_id == "EXH-001"
    assert second.exhibit_id == "EXH-002"
    assert catalog.next_exhibit_id(project.id) == "EXH-003"
    assert catalog.next_exhibit_id(other.id) == "EXH-002"


def test_duplicate_exhibit_id_rejected(project, add_file) -> None:
    add_file("One.pdf", exhibit_id="EXH-007")
    with pytest.raises(InvalidRequestError) as excinfo:
        add_file("Two.pdf", exhibit_id="EXH-007")
    assert excinfo.value.error.code == "EXHIBIT_ID_TAKEN"


def test_unknown_project_raises_not_found(catalog) -> None:
    with pytest.raises(NotFoundError):
        catalog.next_exhibit_id("missing")
    with pytest.raises(NotFoundError):
        catalog.add_file("missing", "file.pdf")
    assert catalog.get_project("missing") is None


def test_list_files_most_recent_first(catalog, project, add_file) -> None:
    older = add_file("older.pdf", minutes=1)
    newer = add_file("newer.pdf", minutes=5)
    files = catalog.list_files(project.id)
    assert [item.id for item in files] == [newer.id, older.id]
    assert files[0].added_at.tzinfo is not None
    assert files[0].added_at == datetime(2024, 3, 1, 9, 5, tzinfo=timezone.utc)


def test_file_metadata_and_category_round_trip(catalog, add_file) -> None:
    created = add_file(
        "photo.jpg",
        content_type="image/jpeg",
        size=2048,
        metadata={"tags": ["scene", "evidence"]},
    )
    loaded = catalog.get_file(created.id)
    assert loaded is not None
    assert loaded.category.value == "image"
    assert loaded.tags == ["scene", "evidence"]
    assert loaded.size == 2048


def test_archive_project(catalog, project) -> None:
    archived = catalog.archive_project(project.id)
    assert archived.archived is True
    assert catalog.get_project(project.id).archived is True


def test_entities_deduplicated_and_listed(catalog, add_file) -> None:
    case_file = add_file("Deposition_Smith.pdf")
    created = catalog.add_entities(
        case_file.id,
        [
            ("PERSON", "John Smith"),
            ("PERSON", "  john   SMITH "),
            ("ORG", "Acme Corp", "chunk-1"),
            ("judge", "Hon. Lee"),
        ],
    )
    assert len(created) == 3
    entities = catalog.list_file_entities(case_file.id)
    assert [(entity.entity_type, entity.text) for entity in entities] == [
        ("ORG", "Acme Corp"),
        ("PERSON", "John Smith"),
        ("judge", "Hon. Lee"),
    ]
    assert entities[0].chunk_id == "chunk-1"
    assert entities[2].bucket.value == "OTHER"


def test_entities_for_files_groups_by_file(catalog, add_file) -> None:
    first = add_file("a.pdf")
    second = add_file("b.pdf")
    catalog.add_entities(first.id, [("PERSON", "Jane Doe")])
    grouped = catalog.entities_for_files([first.id, second.id])
    assert [entity.text for entity in grouped[first.id]] == ["Jane Doe"]
    assert grouped[second.id] == []


def test_delete_file_removes_entities(catalog, add_file) -> None:
    case_file = add_file("a.pdf")
    catalog.add_entities(case_file.id, [("PERSON", "Jane Doe")])
    assert catalog.delete_file(case_file.id) is True
    assert catalog.get_file(case_file.id) is None
    assert catalog.list_file_entities(case_file.id) == []
    assert catalog.delete_file(case_file.id) is False
