from __future__ import annotations

import math

import pytest

from caselens.app.utils.text import chunk_text, clamp_unit, cosine_similarity, hashed_embedding, preview


def test_chunk_text_windows_overlap() -> None:
    text = "".join(chr(ord("a") + (idx % 26)) for idx in range(2500))
    chunks = chunk_text(text, 1000, 200)
    assert [len(chunk) for chunk in chunks] == [1000, 1000, 900]
    assert chunks[0][-200:] == chunks[1][:200]
    assert chunks[1][-200:] == chunks[2][:200]


def test_chunk_text_short_and_blank_inputs() -> None:
    assert chunk_text("short text", 1000, 200) == ["short text"]
    assert chunk_text("", 1000, 200) == []
    assert chunk_text("   \n  ", 1000, 200) == []


@pytest.mark.parametrize("size, overlap", [(0, 0), (100, 100), (100, -1)])
def test_chunk_text_rejects_invalid_window(size: int, overlap: int) -> None:
    with pytest.raises(ValueError):
        chunk_text("text", size, overlap)


def test_hashed_embedding_is_deterministic_and_normalised() -> None:
    first = hashed_embedding("Deposition of John Smith", 64)
    second = hashed_embedding("deposition of john smith", 64)
    assert first == second
    assert len(first) == 64
    assert math.isclose(math.sqrt(sum(value * value for value in first)), 1.0, rel_tol=1e-9)
    assert hashed_embedding("", 16) == [0.0] * 16


def test_cosine_similarity_edges() -> None:
    assert cosine_similarity([1.0, 0.0], [1.0, 0.0]) == pytest.approx(1.0)
    assert cosine_similarity([1.0, 0.0], [0.0, 1.0]) == pytest.approx(0.0)
    assert cosine_similarity([1.0, 0.0], [-1.0, 0.0]) == pytest.approx(-1.0)
    assert cosine_similarity([0.0, 0.0], [1.0, 0.0]) == 0.0
    with pytest.raises(ValueError):
        cosine_similarity([1.0], [1.0, 0.0])


def test_clamp_and_preview() -> None:
    assert clamp_unit(-0.2) == 0.0
    assert clamp_unit(1.4) == 1.0
    assert preview("a  b\nc") == "a b c"
    long_text = "word " * 100
    snippet = preview(long_text, 20)
    assert snippet.endswith("...")
    assert len(snippet) <= 23
