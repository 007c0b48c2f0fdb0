"""
Legal Search - Local Semantic Retrieval for Legal Drafting

This module provides:
- Worker-hosted local inference (NER + E5 embeddings) with request correlation and timeouts
- Cosine search over two independent corpora (statutes, case law) stored in pgvector
- Thesis-aware chunking of long judicial texts
- CDN bulk download of precomputed embeddings and source data, with progress and retry
- TF-IDF near-duplicate detection for the content library
"""

from .model_service import InferenceWorkerClient, WorkerConfig
from .chunker import TextChunker
from .vector_index import VectorIndex, EmbeddedChunk, SearchFilters
from .tfidf import TFIDFSimilarity
from .library import ContentLibrary
from .bulk_transfer import BulkTransferService, DownloadCoordinator
from .retriever import SemanticRetriever

__all__ = [
    "InferenceWorkerClient",
    "WorkerConfig",
    "TextChunker",
    "VectorIndex",
    "EmbeddedChunk",
    "SearchFilters",
    "TFIDFSimilarity",
    "ContentLibrary",
    "BulkTransferService",
    "DownloadCoordinator",
    "SemanticRetriever",
]

__version__ = "0.1.0"
