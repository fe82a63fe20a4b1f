from __future__ import annotations

import math
import re
from hashlib import sha256
from typing import List, Sequence

_WORD_RE = re.compile(r"[A-Za-z0-9']+")


def chunk_text(text: str, size: int, overlap: int) -> List[str]:
    """Split ``text`` into character windows of ``size`` that overlap by ``overlap``."""

    if size <= 0:
        raise ValueError("Chunk size must be positive")
    if overlap < 0 or overlap >= size:
        raise ValueError("Chunk overlap must be non-negative and smaller than chunk size")

    chunks: List[str] = []
    start = 0
    text_length = len(text)
    while start < text_length:
        end = min(start + size, text_length)
        window = text[start:end]
        if window.strip():
            chunks.append(window)
        if end == text_length:
            break
        start = end - overlap
    return chunks


def hashed_embedding(text: str, dimensions: int = 768) -> List[float]:
    if dimensions <= 0:
        raise ValueError("dimensions must be positive")
    vector = [0.0] * dimensions
    tokens = _WORD_RE.findall(text.lower())
    if not tokens:
        return vector
    for token in tokens:
        digest = sha256(token.encode("utf-8")).digest()
        bucket = int.from_bytes(digest[:4], "big") % dimensions
        vector[bucket] += 1.0
    norm = math.sqrt(sum(x * x for x in vector))
    if norm == 0:
        return vector
    return [x / norm for x in vector]


def cosine_similarity(left: Sequence[float], right: Sequence[float]) -> float:
    if len(left) != len(right):
        raise ValueError("Vectors must share dimensionality")
    dot = sum(a * b for a, b in zip(left, right))
    left_norm = math.sqrt(sum(a * a for a in left))
    right_norm = math.sqrt(sum(b * b for b in right))
    if left_norm == 0.0 or right_norm == 0.0:
        return 0.0
    return dot / (left_norm * right_norm)


def clamp_unit(value: float) -> float:
    return max(0.0, min(1.0, value))


def preview(text: str, limit: int = 200) -> str:
    compact = " ".join(text.split())
    if len(compact) <= limit:
        return compact
    return compact[:limit].rstrip() + "..."
