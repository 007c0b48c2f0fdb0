"""
Source document store.

Keeps the raw statute articles and precedents downloaded from the CDN as
opaque JSONB payloads, one table per corpus. Items keep their own ``id``;
items without one get a content hash so re-importing the same file is
idempotent.
"""

import json
import hashlib
import logging
from dataclasses import dataclass
from typing import Optional

from psycopg2.extras import execute_values

from .db import PostgresConfig, PostgresStore

logger = logging.getLogger(__name__)


def document_id(item: dict) -> str:
    """Stable id for a source item: its own ``id`` or a hash of its content."""
    if item.get("id") not in (None, ""):
        return str(item["id"])
    payload = json.dumps(item, sort_keys=True, ensure_ascii=False)
    return hashlib.sha256(payload.encode("utf-8")).hexdigest()[:32]


@dataclass
class DocumentStoreConfig(PostgresConfig):
    table_name: str = "statute_documents"


class SourceDocumentStore(PostgresStore):
    """PostgreSQL store of opaque source documents for one corpus."""

    def __init__(self, config: Optional[DocumentStoreConfig] = None):
        super().__init__(config or DocumentStoreConfig())

    def initialize_schema(self) -> None:
        self._run_ddl(f"""
        CREATE TABLE IF NOT EXISTS {self.table_name} (
            id TEXT PRIMARY KEY,
            payload JSONB NOT NULL,
            updated_at TIMESTAMPTZ DEFAULT NOW()
        );
        """, "initialize_schema")

    def save_batch(self, items: list[dict]) -> None:
        """Insert or replace a batch of documents in one transaction."""
        if not items:
            return

        by_id = {document_id(item): item for item in items}
        values = [(doc_id, json.dumps(item)) for doc_id, item in by_id.items()]
        sql = f"""
        INSERT INTO {self.table_name} (id, payload)
        VALUES %s
        ON CONFLICT (id) DO UPDATE SET
            payload = EXCLUDED.payload,
            updated_at = NOW()
        """

        def _op(conn):
            with conn.cursor() as cur:
                execute_values(cur, sql, values, template="(%s, %s::jsonb)", page_size=1000)
            conn.commit()

        self._execute_with_retry(_op, "save_batch")
        logger.debug(f"Saved {len(values)} documents into {self.table_name}")

    def load_all(self) -> list[dict]:
        def _op(conn):
            with conn.cursor() as cur:
                cur.execute(f"SELECT payload FROM {self.table_name} ORDER BY id")
                return [row["payload"] for row in cur.fetchall()]

        return self._execute_with_retry(_op, "load_all")

    def count(self) -> int:
        def _op(conn):
            with conn.cursor() as cur:
                cur.execute(f"SELECT COUNT(*) AS n FROM {self.table_name}")
                return cur.fetchone()["n"]

        return self._execute_with_retry(_op, "count")

    def clear_all(self) -> None:
        def _op(conn):
            with conn.cursor() as cur:
                cur.execute(f"DELETE FROM {self.table_name}")
            conn.commit()

        self._execute_with_retry(_op, "clear_all")
        logger.info(f"Cleared {self.table_name}")


def statute_documents(config: Optional[DocumentStoreConfig] = None) -> SourceDocumentStore:
    return SourceDocumentStore(config or DocumentStoreConfig(table_name="statute_documents"))


def case_law_documents(config: Optional[DocumentStoreConfig] = None) -> SourceDocumentStore:
    return SourceDocumentStore(config or DocumentStoreConfig(table_name="case_law_documents"))
