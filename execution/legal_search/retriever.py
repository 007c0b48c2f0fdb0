"""
Semantic Retriever for statutes and case law

Thin layer joining the embedding model and the two corpus indexes:
queries are lower-cased and embedded with the E5 ``query`` prefix, then
searched against the statute or case-law VectorIndex. Long case-law texts
are chunked and re-indexed per owner.
"""

import logging
from collections import OrderedDict
from typing import Optional

from .chunker import TextChunker
from .model_service import InferenceWorkerClient
from .preferences import CASE_LAW_SEMANTIC_ENABLED, STATUTE_SEMANTIC_ENABLED, PreferenceStore
from .vector_index import (
    EmbeddedChunk,
    SearchFilters,
    SearchHit,
    VectorIndex,
    case_law_index,
    statute_index,
)

logger = logging.getLogger(__name__)

SEARCH_LIMIT = 30


class SemanticRetriever:
    """
    Semantic search over the statute and case-law corpora.

    Query embeddings are kept in a small LRU cache, since users often repeat
    a search while toggling filters. When a PreferenceStore is given, a corpus
    whose semantic toggle is off returns no hits without touching the model.
    """

    def __init__(
        self,
        model_service: InferenceWorkerClient,
        statutes: VectorIndex,
        case_law: VectorIndex,
        chunker: Optional[TextChunker] = None,
        cache_size: int = 128,
        preferences: Optional[PreferenceStore] = None,
    ):
        self.model_service = model_service
        self.statutes = statutes
        self.case_law = case_law
        self.chunker = chunker or TextChunker()
        self.preferences = preferences
        self._cache_size = cache_size
        self._query_cache: OrderedDict[str, list[float]] = OrderedDict()

    def embed_query(self, query: str) -> list[float]:
        key = query.strip().lower()
        if key in self._query_cache:
            self._query_cache.move_to_end(key)
            return self._query_cache[key]

        embedding = self.model_service.get_embedding(key, kind="query")
        self._query_cache[key] = embedding
        if len(self._query_cache) > self._cache_size:
            self._query_cache.popitem(last=False)
        return embedding

    def _enabled(self, key: str) -> bool:
        return self.preferences is None or self.preferences.get_bool(key, default=True)

    def search_statutes(self, query: str, threshold: float = 0.5, limit: int = SEARCH_LIMIT) -> list[SearchHit]:
        if not self._enabled(STATUTE_SEMANTIC_ENABLED):
            logger.info("Statute semantic search disabled")
            return []
        hits = self.statutes.search_by_similarity(self.embed_query(query), threshold, limit)
        logger.info(f"Statute search '{query[:50]}': {len(hits)} hits")
        return hits

    def search_case_law(
        self,
        query: str,
        threshold: float = 0.5,
        limit: int = SEARCH_LIMIT,
        filters: Optional[SearchFilters] = None,
    ) -> list[SearchHit]:
        if not self._enabled(CASE_LAW_SEMANTIC_ENABLED):
            logger.info("Case-law semantic search disabled")
            return []
        hits = self.case_law.search_by_similarity(self.embed_query(query), threshold, limit, filters)
        logger.info(f"Case-law search '{query[:50]}': {len(hits)} hits")
        return hits

    def index_case_law_document(
        self,
        owner_id: str,
        text: str,
        corpus_tag: Optional[str] = None,
        chunk_kind: Optional[str] = None,
        metadata: Optional[dict] = None,
    ) -> int:
        """
        Chunk, embed and store one precedent, replacing its previous chunks.

        All embeddings are computed first and the old chunk set is swapped
        for the new one in a single transaction, so a model or database
        failure leaves the previous chunks in place.

        Returns:
            Number of chunks written
        """
        pieces = self.chunker.chunk(text)
        chunks = [
            EmbeddedChunk(
                id=f"{owner_id}-c{piece.chunk_index}",
                owner_id=owner_id,
                text=piece.text,
                embedding=self.model_service.get_embedding(piece.text, kind="passage"),
                corpus_tag=corpus_tag,
                chunk_kind=chunk_kind,
                chunk_index=piece.chunk_index,
                total_chunks=piece.total_chunks,
                metadata=dict(metadata or {}),
            )
            for piece in pieces
        ]

        self.case_law.replace_owner(owner_id, chunks)
        logger.info(f"Indexed {owner_id}: {len(chunks)} chunks")
        return len(chunks)


def get_retriever(
    model_service: Optional[InferenceWorkerClient] = None,
    preferences: Optional[PreferenceStore] = None,
) -> SemanticRetriever:
    """
    Get configured retriever instance.

    Args:
        model_service: Inference client; a new one is created if not provided
        preferences: Search toggles; the default preferences file if not provided

    Returns:
        SemanticRetriever over the default statute and case-law indexes
    """
    return SemanticRetriever(
        model_service or InferenceWorkerClient(),
        statute_index(),
        case_law_index(),
        preferences=preferences or PreferenceStore(),
    )


# CLI for testing
if __name__ == "__main__":
    import sys
    from dotenv import load_dotenv

    load_dotenv()
    logging.basicConfig(level=logging.INFO)

    retriever = get_retriever()
    corpus = sys.argv[1] if len(sys.argv) > 1 else "statutes"
    query = sys.argv[2] if len(sys.argv) > 2 else "rescisão indireta do contrato de trabalho"

    print(f"\nSearching {corpus} for: {query}")
    print("-" * 50)

    try:
        if corpus == "case_law":
            results = retriever.search_case_law(query)
        else:
            results = retriever.search_statutes(query)

        for i, hit in enumerate(results[:10], 1):
            print(f"\n{i}. [{hit.chunk.owner_id}] (similarity: {hit.similarity:.4f})")
            print(f"   Tag: {hit.chunk.corpus_tag}  Kind: {hit.chunk.chunk_kind}")
            print(f"   Preview: {hit.chunk.text[:200]}...")
    finally:
        retriever.model_service.cleanup()
