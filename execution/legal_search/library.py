"""
Content library of reusable drafting models.

Documents are immutable dataclasses; every change replaces the stored object.
The TF-IDF duplicate index is invalidated on every mutation so a duplicate
check always sees the current collection.
"""

import logging
from dataclasses import dataclass, replace
from typing import Callable, Optional

from bs4 import BeautifulSoup

from .preferences import LIBRARY_SEMANTIC_ENABLED, PreferenceStore
from .tfidf import SimilarityMatch, TFIDFSimilarity
from .vector_math import cosine_similarity, rank_and_dedupe

logger = logging.getLogger(__name__)

EMBED_CONTENT_CHARS = 2000


@dataclass(frozen=True)
class LibraryDocument:
    """A reusable text model (HTML content) with an optional embedding."""
    id: str
    title: str
    content: str
    keywords: str = ""
    category: str = ""
    embedding: Optional[tuple] = None


def strip_html(html: str) -> str:
    """Plain text of an HTML fragment."""
    return BeautifulSoup(html or "", "html.parser").get_text()


def embedding_text(document: LibraryDocument) -> str:
    """Text embedded for a document: title, keywords and the start of its content."""
    parts = [document.title, document.keywords, strip_html(document.content)[:EMBED_CONTENT_CHARS]]
    return " ".join(part for part in parts if part)


class ContentLibrary:
    """
    In-memory library with duplicate detection and semantic search.

    Args:
        embed_fn: Callable(text, kind) returning an embedding, usually
            ``InferenceWorkerClient.get_embedding``
        embedding_dimensions: Expected embedding length; documents with any
            other length are treated as missing an embedding
        preferences: Optional toggles; semantic search returns nothing while
            the library toggle is off
    """

    def __init__(
        self,
        documents: Optional[list[LibraryDocument]] = None,
        embed_fn: Optional[Callable[[str, str], list[float]]] = None,
        embedding_dimensions: int = 1024,
        preferences: Optional[PreferenceStore] = None,
    ):
        self._documents: dict[str, LibraryDocument] = {d.id: d for d in documents or []}
        self._embed_fn = embed_fn
        self.embedding_dimensions = embedding_dimensions
        self.preferences = preferences
        self.similarity_index = TFIDFSimilarity()

    @property
    def documents(self) -> list[LibraryDocument]:
        return list(self._documents.values())

    def get(self, document_id: str) -> Optional[LibraryDocument]:
        return self._documents.get(document_id)

    # =========================================================================
    # Mutations
    # =========================================================================

    def add(self, document: LibraryDocument) -> None:
        if document.id in self._documents:
            raise ValueError(f"Document already exists: {document.id}")
        self._documents[document.id] = document
        self.similarity_index.invalidate()

    def update(self, document: LibraryDocument) -> None:
        if document.id not in self._documents:
            raise KeyError(document.id)
        self._documents[document.id] = document
        self.similarity_index.invalidate()

    def remove(self, document_id: str) -> None:
        self._documents.pop(document_id, None)
        self.similarity_index.invalidate()

    def check_duplicate(self, candidate: LibraryDocument, threshold: float = 0.80) -> SimilarityMatch:
        """Find an existing document lexically close enough to count as a duplicate."""
        return self.similarity_index.find_similar(candidate, self.documents, threshold)

    # =========================================================================
    # Embeddings
    # =========================================================================

    def _require_embed_fn(self):
        if self._embed_fn is None:
            raise RuntimeError("ContentLibrary has no embedding function")
        return self._embed_fn

    def _has_embedding(self, document: LibraryDocument) -> bool:
        return bool(document.embedding) and len(document.embedding) == self.embedding_dimensions

    def missing_embeddings(self) -> list[LibraryDocument]:
        return [d for d in self._documents.values() if not self._has_embedding(d)]

    def generate_embeddings(self, on_progress: Optional[Callable[[int, int], None]] = None) -> int:
        """
        Embed every document lacking a valid embedding.

        Documents are replaced, never mutated. Nothing is stored until every
        embedding has been computed, so a failure leaves the library unchanged.

        Returns:
            Number of documents embedded
        """
        embed = self._require_embed_fn()
        pending = self.missing_embeddings()
        if not pending:
            logger.info("All library documents already have embeddings")
            return 0

        embeddings = {}
        for i, document in enumerate(pending, start=1):
            embeddings[document.id] = tuple(embed(embedding_text(document), "passage"))
            if on_progress:
                on_progress(i, len(pending))

        for document_id, embedding in embeddings.items():
            self._documents[document_id] = replace(self._documents[document_id], embedding=embedding)

        logger.info(f"Generated {len(embeddings)} library embeddings")
        return len(embeddings)

    def clear_embeddings(self) -> None:
        self._documents = {
            doc_id: replace(doc, embedding=None) for doc_id, doc in self._documents.items()
        }

    def search(self, query: str, threshold: float = 0.75, limit: int = 30) -> list[tuple[LibraryDocument, float]]:
        """Semantic search over document embeddings. Returns (document, similarity) pairs."""
        if self.preferences is not None and not self.preferences.get_bool(LIBRARY_SEMANTIC_ENABLED, default=True):
            logger.info("Library semantic search disabled")
            return []
        embed = self._require_embed_fn()
        query_embedding = embed(query.lower(), "query")

        ranked = rank_and_dedupe(
            [d for d in self._documents.values() if self._has_embedding(d)],
            score_fn=lambda d: cosine_similarity(query_embedding, d.embedding),
            group_key_fn=lambda d: d.id,
            threshold=threshold,
            limit=limit,
        )
        return [(s.item, s.score) for s in ranked]
