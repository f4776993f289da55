"""codeindex on-disk store — meta records, HNSW vectors, manifest, analytics."""

from codeindex.store.analytics import AnalyticsCounters, AnalyticsStore
from codeindex.store.manifest import (
    ANALYTICS_NAME,
    LOCK_NAME,
    MANIFEST_NAME,
    META_NAME,
    VECTORS_NAME,
    Manifest,
)
from codeindex.store.meta import MetaStore
from codeindex.store.models import Hit, MetaRecord, chunk_id
from codeindex.store.vectors import VectorStore

__all__ = [
    "ANALYTICS_NAME",
    "AnalyticsCounters",
    "AnalyticsStore",
    "Hit",
    "LOCK_NAME",
    "MANIFEST_NAME",
    "META_NAME",
    "Manifest",
    "MetaRecord",
    "MetaStore",
    "VECTORS_NAME",
    "VectorStore",
    "chunk_id",
]
