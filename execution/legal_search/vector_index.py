"""
Vector Index with PostgreSQL + pgvector

Durable store of embedded chunks for one corpus (statutes or case law) with
brute-force cosine search. The two corpora are independent instances of the
same class, each with its own table, categorical fields and filter aliases.

Records arrive from bulk JSON files whose field names depend on the corpus
(``artigoId``/``lei``/``type`` for statutes, ``precedenteId``/``tribunal``/
``tipoProcesso`` for case law); ``EmbeddedChunk.from_record`` maps them onto
the common owner / corpus tag / chunk kind fields.
"""

import json
import logging
from dataclasses import dataclass, field
from typing import Iterable, Optional

from psycopg2.extras import execute_values

from .db import PostgresConfig, PostgresStore
from .vector_math import cosine_similarity, rank_and_dedupe

logger = logging.getLogger(__name__)

OWNER_ALIASES = ("ownerId", "artigoId", "precedenteId")
CORPUS_TAG_ALIASES = ("corpusTag", "lei", "tribunal")
CHUNK_KIND_ALIASES = ("chunkKind", "type", "tipoProcesso")
_RESERVED = {"id", "text", "embedding", "chunkIndex", "totalChunks"}
_RESERVED.update(OWNER_ALIASES, CORPUS_TAG_ALIASES, CHUNK_KIND_ALIASES)

# Case-law filter alias: "IRR" selects every repetitive-appeal process type
REPETITIVE_APPEAL_KINDS = frozenset({"IRR", "RR", "RRAG", "INCJULGRREMBREP", "INCJULGRREPETITIVO"})


def _first(record: dict, keys: Iterable[str]):
    for key in keys:
        value = record.get(key)
        if value not in (None, ""):
            return value
    return None


def normalize_kind(kind: Optional[str]) -> str:
    """Upper-case a process type and drop hyphens ("RR-Ag" -> "RRAG")."""
    return (kind or "").upper().replace("-", "")


@dataclass
class EmbeddedChunk:
    """A text (or piece of one) with its embedding."""
    id: str
    owner_id: Optional[str]
    text: str
    embedding: list[float]
    corpus_tag: Optional[str] = None
    chunk_kind: Optional[str] = None
    chunk_index: int = 0
    total_chunks: int = 1
    metadata: dict = field(default_factory=dict)

    @property
    def group_key(self) -> str:
        """Search results keep one chunk per owner document."""
        return self.owner_id or self.id

    @classmethod
    def from_record(cls, record: dict) -> "EmbeddedChunk":
        """Build from a bulk-file JSON record, keeping unknown fields as metadata."""
        owner = _first(record, OWNER_ALIASES)
        return cls(
            id=str(record["id"]),
            owner_id=str(owner) if owner is not None else str(record["id"]),
            text=record.get("text") or "",
            embedding=[float(v) for v in record["embedding"]],
            corpus_tag=_first(record, CORPUS_TAG_ALIASES),
            chunk_kind=_first(record, CHUNK_KIND_ALIASES),
            chunk_index=int(record.get("chunkIndex") or 0),
            total_chunks=int(record.get("totalChunks") or 1),
            metadata={k: v for k, v in record.items() if k not in _RESERVED},
        )

    def to_record(self) -> dict:
        record = dict(self.metadata)
        record.update({
            "id": self.id,
            "ownerId": self.owner_id,
            "corpusTag": self.corpus_tag,
            "chunkKind": self.chunk_kind,
            "text": self.text,
            "embedding": self.embedding,
            "chunkIndex": self.chunk_index,
            "totalChunks": self.total_chunks,
        })
        return record


@dataclass
class SearchFilters:
    """Categorical filters applied before dedupe and limit. Empty means no filter."""
    kinds: list[str] = field(default_factory=list)
    sources: list[str] = field(default_factory=list)


@dataclass
class SearchHit:
    """A search result with score."""
    chunk: EmbeddedChunk
    similarity: float

    def to_dict(self) -> dict:
        record = self.chunk.to_record()
        record.pop("embedding", None)
        record["similarity"] = self.similarity
        return record


@dataclass
class VectorIndexConfig(PostgresConfig):
    """Configuration for a corpus index."""
    table_name: str = "statute_chunks"
    embedding_dimensions: int = 1024
    # Filter values that expand to a set of chunk kinds
    kind_groups: dict = field(default_factory=dict)


class VectorIndex(PostgresStore):
    """
    PostgreSQL store of embedded chunks for one corpus.

    Features:
    - Upsert by id, single or batched (one transaction per batch)
    - Delete by owner, served by the owner index
    - Brute-force cosine search with categorical filters and per-owner dedupe
    """

    def __init__(self, config: Optional[VectorIndexConfig] = None):
        super().__init__(config or VectorIndexConfig())

    @property
    def dimensions(self) -> int:
        return self.config.embedding_dimensions

    def initialize_schema(self) -> None:
        """Create the chunk table and its indexes if they don't exist."""
        table = self.table_name
        self._run_ddl(f"""
        CREATE TABLE IF NOT EXISTS {table} (
            id TEXT PRIMARY KEY,
            owner_id TEXT,
            corpus_tag TEXT,
            chunk_kind TEXT,
            text TEXT NOT NULL DEFAULT '',
            embedding VECTOR({self.dimensions}) NOT NULL,
            chunk_index INT DEFAULT 0,
            total_chunks INT DEFAULT 1,
            metadata JSONB DEFAULT '{{}}',
            created_at TIMESTAMPTZ DEFAULT NOW()
        );

        CREATE INDEX IF NOT EXISTS idx_{table}_owner ON {table}(owner_id);
        CREATE INDEX IF NOT EXISTS idx_{table}_corpus_tag ON {table}(corpus_tag);
        CREATE INDEX IF NOT EXISTS idx_{table}_chunk_kind ON {table}(chunk_kind);
        """, "initialize_schema")

    # =========================================================================
    # Writes
    # =========================================================================

    def validate_dimensions(self, chunks: list[EmbeddedChunk]) -> None:
        """Raise ValueError if any embedding is not of this index's dimension."""
        for chunk in chunks:
            if len(chunk.embedding) != self.dimensions:
                raise ValueError(
                    f"Embedding dimension mismatch for {chunk.id}: "
                    f"expected {self.dimensions}, got {len(chunk.embedding)}"
                )

    def _upsert_sql(self) -> str:
        return f"""
        INSERT INTO {self.table_name}
            (id, owner_id, corpus_tag, chunk_kind, text, embedding, chunk_index, total_chunks, metadata)
        VALUES %s
        ON CONFLICT (id) DO UPDATE SET
            owner_id = EXCLUDED.owner_id,
            corpus_tag = EXCLUDED.corpus_tag,
            chunk_kind = EXCLUDED.chunk_kind,
            text = EXCLUDED.text,
            embedding = EXCLUDED.embedding,
            chunk_index = EXCLUDED.chunk_index,
            total_chunks = EXCLUDED.total_chunks,
            metadata = EXCLUDED.metadata
        """

    @staticmethod
    def _upsert_values(chunks: list[EmbeddedChunk]) -> list[tuple]:
        # A batch may repeat an id; last one wins, as with sequential puts
        by_id = {chunk.id: chunk for chunk in chunks}
        return [
            (
                chunk.id,
                chunk.owner_id,
                chunk.corpus_tag,
                chunk.chunk_kind,
                chunk.text,
                chunk.embedding,
                chunk.chunk_index,
                chunk.total_chunks,
                json.dumps(chunk.metadata),
            )
            for chunk in by_id.values()
        ]

    def _upsert(self, cur, values: list[tuple]) -> None:
        execute_values(
            cur,
            self._upsert_sql(),
            values,
            template="(%s, %s, %s, %s, %s, %s::vector, %s, %s, %s::jsonb)",
            page_size=1000,
        )

    def put(self, chunk: EmbeddedChunk) -> None:
        """Insert or replace one chunk."""
        self.put_batch([chunk])

    def put_batch(self, chunks: list[EmbeddedChunk]) -> None:
        """
        Insert or replace a batch of chunks atomically.

        Raises:
            ValueError: An embedding has the wrong dimension (nothing is written)
        """
        if not chunks:
            return
        self.validate_dimensions(chunks)
        values = self._upsert_values(chunks)

        def _op(conn):
            with conn.cursor() as cur:
                self._upsert(cur, values)
            conn.commit()
            logger.debug(f"Upserted {len(values)} chunks into {self.table_name}")

        self._execute_with_retry(_op, "put_batch")

    def replace_owner(self, owner_id: str, chunks: list[EmbeddedChunk]) -> int:
        """
        Replace one owner's chunk set in a single transaction.

        The old chunks are deleted and the new ones written under one commit,
        so a failure at any point leaves the previous set in place.

        Raises:
            ValueError: An embedding has the wrong dimension, or a chunk
                belongs to another owner (nothing is written)

        Returns:
            Number of previous chunks removed
        """
        self.validate_dimensions(chunks)
        strangers = [c.id for c in chunks if c.owner_id != owner_id]
        if strangers:
            raise ValueError(f"Chunks {strangers} do not belong to {owner_id}")
        values = self._upsert_values(chunks)

        def _op(conn):
            with conn.cursor() as cur:
                cur.execute(f"DELETE FROM {self.table_name} WHERE owner_id = %s", (owner_id,))
                deleted = cur.rowcount
                if values:
                    self._upsert(cur, values)
            conn.commit()
            return deleted

        deleted = self._execute_with_retry(_op, "replace_owner")
        logger.debug(f"Replaced {owner_id} in {self.table_name}: {deleted} -> {len(values)} chunks")
        return deleted

    def clear_all(self) -> None:
        """Delete every chunk in this corpus."""
        def _op(conn):
            with conn.cursor() as cur:
                cur.execute(f"DELETE FROM {self.table_name}")
            conn.commit()

        self._execute_with_retry(_op, "clear_all")
        logger.info(f"Cleared {self.table_name}")

    def clear_by_owner(self, owner_id: str) -> int:
        """Delete every chunk belonging to one owner document. Returns rows deleted."""
        def _op(conn):
            with conn.cursor() as cur:
                cur.execute(f"DELETE FROM {self.table_name} WHERE owner_id = %s", (owner_id,))
                deleted = cur.rowcount
            conn.commit()
            return deleted

        return self._execute_with_retry(_op, "clear_by_owner")

    # =========================================================================
    # Reads
    # =========================================================================

    @staticmethod
    def _row_to_chunk(row) -> EmbeddedChunk:
        embedding = row["embedding"]
        # pgvector's text form is a JSON array
        if isinstance(embedding, str):
            embedding = json.loads(embedding)
        return EmbeddedChunk(
            id=row["id"],
            owner_id=row["owner_id"],
            corpus_tag=row["corpus_tag"],
            chunk_kind=row["chunk_kind"],
            text=row["text"],
            embedding=[float(v) for v in embedding],
            chunk_index=row["chunk_index"],
            total_chunks=row["total_chunks"],
            metadata=row["metadata"] or {},
        )

    def _select(self, where: str = "", params: tuple = ()) -> list[EmbeddedChunk]:
        sql = f"""
        SELECT id, owner_id, corpus_tag, chunk_kind, text, embedding::text AS embedding,
               chunk_index, total_chunks, metadata
        FROM {self.table_name}
        {where}
        ORDER BY owner_id, chunk_index
        """

        def _op(conn):
            with conn.cursor() as cur:
                cur.execute(sql, params)
                return [self._row_to_chunk(row) for row in cur.fetchall()]

        return self._execute_with_retry(_op, "select")

    def get_all(self) -> list[EmbeddedChunk]:
        return self._select()

    def get_by_owner(self, owner_id: str) -> list[EmbeddedChunk]:
        return self._select("WHERE owner_id = %s", (owner_id,))

    def get_all_ids(self) -> list[str]:
        def _op(conn):
            with conn.cursor() as cur:
                cur.execute(f"SELECT id FROM {self.table_name}")
                return [row["id"] for row in cur.fetchall()]

        return self._execute_with_retry(_op, "get_all_ids")

    def count(self) -> int:
        def _op(conn):
            with conn.cursor() as cur:
                cur.execute(f"SELECT COUNT(*) AS n FROM {self.table_name}")
                return cur.fetchone()["n"]

        return self._execute_with_retry(_op, "count")

    # =========================================================================
    # Search
    # =========================================================================

    def _matches(self, chunk: EmbeddedChunk, filters: SearchFilters) -> bool:
        if filters.kinds:
            in_group = any(
                normalize_kind(chunk.chunk_kind) in self.config.kind_groups[alias]
                for alias in filters.kinds
                if alias in self.config.kind_groups
            )
            if not in_group and (chunk.chunk_kind or "") not in filters.kinds:
                return False
        if filters.sources and (chunk.corpus_tag or "") not in filters.sources:
            return False
        return True

    def search_by_similarity(
        self,
        query_embedding: list[float],
        threshold: float = 0.5,
        limit: int = 20,
        filters: Optional[SearchFilters] = None,
    ) -> list[SearchHit]:
        """
        Brute-force cosine search over the whole corpus.

        Filters are applied before dedupe and limit, so a filtered search
        still returns up to ``limit`` matching owners.

        Args:
            query_embedding: Query vector
            threshold: Minimum similarity (inclusive)
            limit: Maximum number of results
            filters: Optional kind/source filters

        Returns:
            One SearchHit per owner, best chunk first
        """
        filters = filters or SearchFilters()
        candidates = [c for c in self.get_all() if self._matches(c, filters)]

        ranked = rank_and_dedupe(
            candidates,
            score_fn=lambda c: cosine_similarity(query_embedding, c.embedding),
            group_key_fn=lambda c: c.group_key,
            threshold=threshold,
            limit=limit,
        )
        logger.debug(f"{self.table_name}: {len(candidates)} candidates -> {len(ranked)} hits")
        return [SearchHit(chunk=s.item, similarity=s.score) for s in ranked]


def statute_index(config: Optional[VectorIndexConfig] = None) -> VectorIndex:
    """Index over statute article embeddings."""
    return VectorIndex(config or VectorIndexConfig(table_name="statute_chunks"))


def case_law_index(config: Optional[VectorIndexConfig] = None) -> VectorIndex:
    """Index over case-law (precedent) embeddings, with the repetitive-appeal kind alias."""
    return VectorIndex(config or VectorIndexConfig(
        table_name="case_law_chunks",
        kind_groups={"IRR": REPETITIVE_APPEAL_KINDS},
    ))
