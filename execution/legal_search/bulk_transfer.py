"""
Bulk Transfer from the CDN proxy

Populates the local corpus stores from precomputed snapshots instead of
generating embeddings locally:
- legis-embeddings.json / juris-embeddings.json -> VectorIndex
- legis-data.json / juris-data.json -> SourceDocumentStore

Downloads are streamed with progress reporting and exponential-backoff
retry, then persisted in batches with a cooperative yield between batches.
``DownloadCoordinator`` runs the per-corpus status machine and persists
prompt dismissals.

Usage:
    python -m execution.legal_search.bulk_transfer statutes
    python -m execution.legal_search.bulk_transfer case_law --data
    python -m execution.legal_search.bulk_transfer statutes --import legis-embeddings.json
"""

import os
import json
import time
import logging
import argparse
import threading
from dataclasses import dataclass, field, replace
from typing import Callable, Optional
from urllib.parse import parse_qs, urlencode, urlparse

import requests
from pydantic import BaseModel, ConfigDict, Field, ValidationError

from .document_store import SourceDocumentStore
from .preferences import DISMISSED_DATA_PROMPT, DISMISSED_EMBEDDINGS_PROMPT, PreferenceStore
from .vector_index import EmbeddedChunk, VectorIndex

logger = logging.getLogger(__name__)

CORPORA = ("statutes", "case_law")

EMBEDDING_FILES = {
    "statutes": "legis-embeddings.json",
    "case_law": "juris-embeddings.json",
}
DATA_FILES = {
    "statutes": "legis-data.json",
    "case_law": "juris-data.json",
}

# Fallback sizes (bytes) when the proxy omits Content-Length
ESTIMATED_SIZES = {
    "legis-embeddings.json": 272_000_000,
    "juris-embeddings.json": 27_000_000,
    "legis-data.json": 5_000_000,
    "juris-data.json": 2_000_000,
}

INVALID_ROOT_MESSAGE = "invalid file: must be an array of embeddings"
INVALID_ITEM_MESSAGE = "invalid format: each item must have id and embedding"
EMPTY_IMPORT_MESSAGE = "nothing to import"

ProgressCallback = Callable[[float], None]
BatchCallback = Callable[[int, int], None]


class ImportFormatError(ValueError):
    """A bulk payload is malformed; nothing from it was written."""


class EmbeddingRecord(BaseModel):
    """Minimum shape of an embeddings-file item. Domain fields pass through."""
    model_config = ConfigDict(extra="allow", coerce_numbers_to_str=True)

    id: str = Field(..., min_length=1)
    embedding: list[float]


@dataclass
class TransferConfig:
    """Configuration for CDN transfers."""
    proxy_url: Optional[str] = None
    max_retries: int = 3
    backoff_seconds: float = 1.0
    embeddings_batch_size: int = 100
    data_batch_sizes: dict = field(default_factory=lambda: {"statutes": 500, "case_law": 200})
    request_timeout: int = 60
    stream_chunk_bytes: int = 65536

    def __post_init__(self):
        self.proxy_url = self.proxy_url or os.getenv("CDN_PROXY_URL", "http://localhost:3000/api/embeddings")


def parse_embedding_items(text: str, allow_empty: bool = False) -> list[EmbeddedChunk]:
    """
    Parse and validate an embeddings payload.

    Every item is validated before anything is returned, so a single bad
    record rejects the whole payload.

    Raises:
        ImportFormatError: Root is not an array, the array is empty (unless
            ``allow_empty``), or an item lacks a non-empty ``id`` or an array
            ``embedding``
    """
    try:
        items = json.loads(text)
    except ValueError as e:
        raise ImportFormatError(f"{INVALID_ROOT_MESSAGE} ({e})") from e

    if not isinstance(items, list):
        raise ImportFormatError(INVALID_ROOT_MESSAGE)
    if not items and not allow_empty:
        raise ImportFormatError(EMPTY_IMPORT_MESSAGE)

    chunks = []
    for position, item in enumerate(items):
        try:
            record = EmbeddingRecord.model_validate(item)
        except ValidationError as e:
            raise ImportFormatError(f"{INVALID_ITEM_MESSAGE} (item {position}: {e.error_count()} errors)") from e
        chunks.append(EmbeddedChunk.from_record({**item, "id": record.id, "embedding": record.embedding}))
    return chunks


def parse_source_items(text: str) -> list[dict]:
    """Source data is a bare array or a ``{"data": [...]}`` envelope."""
    payload = json.loads(text)
    if isinstance(payload, dict) and "data" in payload:
        payload = payload["data"]
    if not isinstance(payload, list):
        raise ImportFormatError("invalid file: must be an array of documents")
    return payload


class BulkTransferService:
    """
    Downloads corpus snapshots and persists them in batches.

    Args:
        indexes: corpus name -> VectorIndex
        document_stores: corpus name -> SourceDocumentStore
        session: requests session (injectable for tests)
        sleep: sleep function used for backoff and the between-batch yield
    """

    def __init__(
        self,
        indexes: dict[str, VectorIndex],
        document_stores: Optional[dict[str, SourceDocumentStore]] = None,
        config: Optional[TransferConfig] = None,
        session: Optional[requests.Session] = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.indexes = indexes
        self.document_stores = document_stores or {}
        self.config = config or TransferConfig()
        self.session = session or requests.Session()
        self._sleep = sleep

    def get_proxy_url(self, filename: str) -> str:
        return f"{self.config.proxy_url}?{urlencode({'file': filename})}"

    # =========================================================================
    # Need checks
    # =========================================================================

    def needs_download(self, corpus: str) -> bool:
        """True when the corpus index is empty (or cannot be read)."""
        try:
            return self.indexes[corpus].count() == 0
        except Exception as e:
            logger.warning(f"Could not count {corpus} embeddings, assuming download needed: {e}")
            return True

    def needs_data_download(self, corpus: str) -> bool:
        """True when the corpus document store is empty (or cannot be read)."""
        try:
            return self.document_stores[corpus].count() == 0
        except Exception as e:
            logger.warning(f"Could not count {corpus} documents, assuming download needed: {e}")
            return True

    # =========================================================================
    # Download
    # =========================================================================

    def download_file(
        self,
        url: str,
        on_progress: Optional[ProgressCallback] = None,
        max_retries: Optional[int] = None,
    ) -> str:
        """
        Stream a file with progress and retry.

        Progress is ``received / total`` capped at 0.99 while streaming, then
        exactly 1.0 once the body is complete. ``total`` is Content-Length, or
        the estimated size for known filenames.

        Raises:
            requests.RequestException: The last attempt's error, after retries
        """
        if max_retries is None:
            max_retries = self.config.max_retries
        if max_retries < 1:
            raise ValueError(f"max_retries must be at least 1, got {max_retries}")
        filename = parse_qs(urlparse(url).query).get("file", [None])[0]

        for attempt in range(1, max_retries + 1):
            try:
                return self._download_once(url, filename, on_progress)
            except requests.RequestException as e:
                if attempt == max_retries:
                    logger.error(f"Download failed after {max_retries} attempts: {url}: {e}")
                    raise
                delay = self.config.backoff_seconds * 2 ** (attempt - 1)
                logger.warning(f"Attempt {attempt}/{max_retries} failed for {url}: {e} (retrying in {delay}s)")
                self._sleep(delay)

        raise RuntimeError("Download failed after max retries")

    def _download_once(self, url: str, filename: Optional[str], on_progress: Optional[ProgressCallback]) -> str:
        with self.session.get(url, stream=True, timeout=self.config.request_timeout) as resp:
            resp.raise_for_status()

            total = int(resp.headers.get("Content-Length") or 0)
            if not total and filename in ESTIMATED_SIZES:
                total = ESTIMATED_SIZES[filename]
                logger.info(f"Using estimated size for {filename}: {total / 1_000_000:.1f}MB")

            chunks = []
            received = 0
            for chunk in resp.iter_content(chunk_size=self.config.stream_chunk_bytes):
                if not chunk:
                    continue
                chunks.append(chunk)
                received += len(chunk)
                if on_progress and total:
                    on_progress(min(received / total, 0.99))

        if on_progress:
            on_progress(1.0)
        return b"".join(chunks).decode("utf-8")

    # =========================================================================
    # Persistence
    # =========================================================================

    def _check_dimensions(self, corpus: str, chunks: list[EmbeddedChunk]) -> None:
        """Reject the whole payload if any embedding does not fit the corpus index."""
        try:
            self.indexes[corpus].validate_dimensions(chunks)
        except ValueError as e:
            raise ImportFormatError(f"{INVALID_ITEM_MESSAGE} ({e})") from e

    def _save_in_batches(self, items: list, batch_size: int, save: Callable, on_batch_complete: Optional[BatchCallback]) -> int:
        total = len(items)
        for start in range(0, total, batch_size):
            save(items[start:start + batch_size])
            done = min(start + batch_size, total)
            if on_batch_complete:
                on_batch_complete(done, total)
            # Let other threads (status readers, UI) run between batches
            self._sleep(0)
        return total

    def import_embeddings(self, corpus: str, text: str, on_batch_complete: Optional[BatchCallback] = None) -> int:
        """
        Import an embeddings file from disk or any other local source.

        Raises:
            ImportFormatError: Payload rejected as a whole (nothing written)
        """
        chunks = parse_embedding_items(text)
        self._check_dimensions(corpus, chunks)
        count = self._save_in_batches(
            chunks, self.config.embeddings_batch_size, self.indexes[corpus].put_batch, on_batch_complete
        )
        logger.info(f"Imported {count} {corpus} embeddings")
        return count

    def download_embeddings(
        self,
        corpus: str,
        on_progress: Optional[ProgressCallback] = None,
        on_batch_complete: Optional[BatchCallback] = None,
    ) -> int:
        """Download the corpus embeddings snapshot into its VectorIndex. Returns item count."""
        text = self.download_file(self.get_proxy_url(EMBEDDING_FILES[corpus]), on_progress)
        chunks = parse_embedding_items(text, allow_empty=True)
        self._check_dimensions(corpus, chunks)
        count = self._save_in_batches(
            chunks, self.config.embeddings_batch_size, self.indexes[corpus].put_batch, on_batch_complete
        )
        logger.info(f"Downloaded {count} {corpus} embeddings")
        return count

    def download_source_data(
        self,
        corpus: str,
        on_progress: Optional[ProgressCallback] = None,
        on_batch_complete: Optional[BatchCallback] = None,
    ) -> int:
        """Download the corpus source documents into its SourceDocumentStore. Returns item count."""
        text = self.download_file(self.get_proxy_url(DATA_FILES[corpus]), on_progress)
        items = parse_source_items(text)
        count = self._save_in_batches(
            items, self.config.data_batch_sizes[corpus], self.document_stores[corpus].save_batch, on_batch_complete
        )
        logger.info(f"Downloaded {count} {corpus} documents")
        return count


# ============================================================================
# Download coordination
# ============================================================================

@dataclass
class DownloadStatus:
    """Per-corpus download state. ``needed`` is None until checked."""
    needed: Optional[bool] = None
    downloading: bool = False
    progress: float = 0.0
    error: Optional[str] = None
    completed: bool = False


class DownloadCoordinator:
    """
    Per-corpus download state machine for one download kind.

    needed=None -> check -> needed=True/False; start on a needed corpus sets
    downloading; success ends completed with needed=False, failure records
    the error and leaves needed=True for a retry. A start while downloading
    or after completion is a no-op.
    """

    KINDS = {
        "embeddings": DISMISSED_EMBEDDINGS_PROMPT,
        "data": DISMISSED_DATA_PROMPT,
    }

    def __init__(self, service: BulkTransferService, preferences: PreferenceStore, kind: str = "embeddings"):
        if kind not in self.KINDS:
            raise ValueError(f"Unknown download kind: {kind}")
        self.service = service
        self.preferences = preferences
        self.kind = kind
        self._lock = threading.Lock()
        self._status = {corpus: DownloadStatus() for corpus in CORPORA}

    def snapshot(self) -> dict[str, DownloadStatus]:
        with self._lock:
            return {corpus: replace(status) for corpus, status in self._status.items()}

    def _update(self, corpus: str, **changes) -> None:
        with self._lock:
            self._status[corpus] = replace(self._status[corpus], **changes)

    def check_needed(self) -> dict[str, bool]:
        """Resolve ``needed`` for every corpus from the store counts."""
        check = self.service.needs_download if self.kind == "embeddings" else self.service.needs_data_download
        result = {}
        for corpus in CORPORA:
            result[corpus] = check(corpus)
            self._update(corpus, needed=result[corpus])
        return result

    @property
    def dismissed(self) -> bool:
        return self.preferences.get_bool(self.KINDS[self.kind])

    def should_prompt(self) -> bool:
        """Prompt when any corpus needs a download and the user hasn't dismissed the prompt."""
        with self._lock:
            any_needed = any(s.needed for s in self._status.values())
        return any_needed and not self.dismissed

    def dismiss_prompt(self) -> None:
        self.preferences.set_bool(self.KINDS[self.kind], True)

    def start(self, corpora: Optional[list[str]] = None) -> dict[str, DownloadStatus]:
        """
        Download every needed corpus (sequentially).

        Failures are recorded in the corpus status, not raised.
        """
        for corpus in corpora or CORPORA:
            with self._lock:
                status = self._status[corpus]
                if not status.needed or status.downloading or status.completed:
                    continue
                self._status[corpus] = replace(status, downloading=True, error=None)

            self._run(corpus)

        return self.snapshot()

    def _run(self, corpus: str) -> None:
        download = (
            self.service.download_embeddings if self.kind == "embeddings" else self.service.download_source_data
        )
        try:
            count = download(corpus, on_progress=lambda p: self._update(corpus, progress=p))
        except Exception as e:
            logger.error(f"{self.kind} download failed for {corpus}: {e}")
            self._update(corpus, downloading=False, error=str(e))
            return

        self._update(corpus, needed=False, downloading=False, progress=1.0, error=None, completed=True)
        logger.info(f"{self.kind} download complete for {corpus}: {count} items")


# ============================================================================
# CLI
# ============================================================================

def main():
    from dotenv import load_dotenv

    from .document_store import case_law_documents, statute_documents
    from .vector_index import case_law_index, statute_index

    load_dotenv()
    logging.basicConfig(level=logging.INFO)

    parser = argparse.ArgumentParser(description="Populate a corpus from the CDN proxy or a local file")
    parser.add_argument("corpus", choices=CORPORA)
    parser.add_argument("--data", action="store_true", help="Download source documents instead of embeddings")
    parser.add_argument("--import", dest="import_file", help="Import embeddings from a local JSON file")
    args = parser.parse_args()

    indexes = {"statutes": statute_index(), "case_law": case_law_index()}
    stores = {"statutes": statute_documents(), "case_law": case_law_documents()}
    target = stores[args.corpus] if args.data else indexes[args.corpus]
    target.initialize_schema()

    service = BulkTransferService(indexes, stores)

    def report(done, total):
        logger.info(f"  Saved {done}/{total}")

    if args.import_file:
        with open(args.import_file, encoding="utf-8") as f:
            count = service.import_embeddings(args.corpus, f.read(), report)
    elif args.data:
        count = service.download_source_data(args.corpus, on_batch_complete=report)
    else:
        count = service.download_embeddings(args.corpus, on_batch_complete=report)

    logger.info(f"Done! {count} items in {target.table_name}")
    target.close()


if __name__ == "__main__":
    main()
