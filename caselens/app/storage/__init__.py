"""Persistent storage primitives for the case catalog and document chunks."""

from .catalog_store import CaseCatalogStore, get_catalog_store, reset_catalog_store
from .chunk_store import DocumentChunkStore, get_chunk_store, reset_chunk_store

__all__ = [
    "CaseCatalogStore",
    "DocumentChunkStore",
    "get_catalog_store",
    "get_chunk_store",
    "reset_catalog_store",
    "reset_chunk_store",
]
