"""codeindex query side — retrieval, confidence gating, rendering."""

from codeindex.rag.retriever import NO_MATCH_MESSAGE, QueryResult, Retriever

__all__ = ["NO_MATCH_MESSAGE", "QueryResult", "Retriever"]
