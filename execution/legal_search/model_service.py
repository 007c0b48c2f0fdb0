"""
Local AI Model Service (NER + Embeddings)

Client for the inference worker process. Owns the worker lifecycle, the
per-model status (idle/loading/ready/error) and the table of in-flight
requests, which are correlated with worker replies by uuid.

Models:
- NER: distilbert-base-multilingual-cased-ner-hrl
- Embeddings: multilingual-e5-large (1024 dimensions)

Usage:
    service = InferenceWorkerClient()
    service.init("search")
    vector = service.get_embedding("rescisão indireta", kind="query")
    entities = service.extract_entities(petition_text)
    service.cleanup()
"""

import os
import uuid
import logging
import threading
from concurrent.futures import Future
from dataclasses import dataclass, field
from typing import Any, Callable, Optional

from .entities import (
    Entity,
    RawToken,
    dedupe_tokens,
    iter_windows,
    merge_org_loc,
    merge_tokens,
    normalize_whitespace,
    realign_offsets,
    title_case_caps_runs,
)
from .inference_worker import WorkerProcess
from .worker_protocol import (
    MODEL_KINDS,
    ErrorReply,
    ProgressMessage,
    ReadyMessage,
    ResultReply,
    build_request,
)

logger = logging.getLogger(__name__)

IDLE = "idle"
LOADING = "loading"
READY = "ready"
ERROR = "error"

QUERY_PREFIX = "query: "
PASSAGE_PREFIX = "passage: "


class WorkerTimeoutError(TimeoutError):
    """A worker call did not get a reply within its timeout."""


class WorkerCrashedError(RuntimeError):
    """The worker process died; every pending call is rejected with this."""


class WorkerCallError(RuntimeError):
    """The worker reported an error for a single call."""


class WorkerClosedError(RuntimeError):
    """The client was cleaned up while the call was pending."""


@dataclass
class WorkerConfig:
    """Configuration for the inference worker and its models."""
    ner_model: str = "Davlan/distilbert-base-multilingual-cased-ner-hrl"
    embedding_model: str = "intfloat/multilingual-e5-large"
    embedding_dimensions: int = 1024
    default_timeout_ms: int = 60000
    # E5-Large is ~355MB, first download can take minutes
    init_timeouts_ms: dict = field(default_factory=lambda: {"ner": 60000, "search": 300000})
    ner_window_size: int = 1000
    ner_window_overlap: int = 200
    ner_options: dict = field(default_factory=lambda: {"truncation": True, "max_length": 512})
    # Free the NER model after every extraction (latency traded for memory)
    unload_ner_after_use: bool = True

    def __post_init__(self):
        self.ner_model = os.getenv("NER_MODEL", self.ner_model)
        self.embedding_model = os.getenv("EMBEDDING_MODEL", self.embedding_model)


@dataclass
class PendingRequest:
    """An in-flight worker call awaiting its reply."""
    id: str
    kind: str
    future: Future
    timer: threading.Timer


@dataclass
class ModelStatusSnapshot:
    """Full status/progress state delivered to listeners on every change."""
    status: dict
    progress: dict


class InferenceWorkerClient:
    """
    Manages a single background worker hosting the NER and embedding models.

    The worker is created lazily on first call. Calls are independent: each
    has its own timeout, replies may arrive in any order, and a timed-out
    call never affects the others. Only a fatal worker error (or cleanup)
    rejects everything in flight.
    """

    def __init__(
        self,
        config: Optional[WorkerConfig] = None,
        worker_factory: Optional[Callable] = None,
    ):
        self.config = config or WorkerConfig()
        self._worker_factory = worker_factory or WorkerProcess
        self._worker = None
        self._lock = threading.RLock()
        self._pending: dict[str, PendingRequest] = {}
        self._listeners: list[Callable[[ModelStatusSnapshot], None]] = []
        self.status = {kind: IDLE for kind in MODEL_KINDS}
        self.progress = {kind: 0 for kind in MODEL_KINDS}

    # =========================================================================
    # Worker plumbing
    # =========================================================================

    def _get_worker(self):
        """Get or create the worker."""
        with self._lock:
            if self._worker is None:
                self._worker = self._worker_factory(
                    self.config,
                    self._handle_message,
                    self._handle_worker_error,
                )
            return self._worker

    def submit(
        self,
        kind: str,
        text: Optional[str] = None,
        options: Optional[dict] = None,
        timeout_ms: Optional[int] = None,
    ) -> Future:
        """
        Send a request to the worker without waiting for the reply.

        Returns:
            Future resolved with the worker result, or failed with
            WorkerTimeoutError / WorkerCallError / WorkerCrashedError.
        """
        request_id = str(uuid.uuid4())
        message = build_request(request_id, kind, text, options)
        timeout_s = (timeout_ms if timeout_ms is not None else self.config.default_timeout_ms) / 1000

        future = Future()
        timer = threading.Timer(timeout_s, self._expire, args=(request_id,))
        timer.daemon = True

        with self._lock:
            self._pending[request_id] = PendingRequest(id=request_id, kind=kind, future=future, timer=timer)
        timer.start()

        try:
            self._get_worker().post_message(message)
        except Exception as e:
            logger.error(f"Failed to post {kind} to worker: {e}")
            self._settle(request_id, error=e)

        return future

    def call(
        self,
        kind: str,
        text: Optional[str] = None,
        options: Optional[dict] = None,
        timeout_ms: Optional[int] = None,
    ) -> Any:
        """Send a request and block until the worker replies or the call times out."""
        return self.submit(kind, text, options, timeout_ms).result()

    def _expire(self, request_id: str) -> None:
        with self._lock:
            pending = self._pending.pop(request_id, None)
        if pending is None:
            return
        logger.warning(f"Worker call {pending.kind} timed out ({request_id[:8]})")
        pending.future.set_exception(WorkerTimeoutError(f"Worker timeout: {pending.kind}"))

    def _settle(self, request_id: str, result: Any = None, error: Optional[BaseException] = None) -> None:
        with self._lock:
            pending = self._pending.pop(request_id, None)
        if pending is None:
            # Caller already gave up (timeout); late reply is dropped
            return
        pending.timer.cancel()
        if error is not None:
            pending.future.set_exception(error)
        else:
            pending.future.set_result(result)

    def _handle_message(self, message) -> None:
        """Dispatch one inbound worker message."""
        if isinstance(message, ProgressMessage):
            if message.model in self.progress:
                with self._lock:
                    self.progress[message.model] = round(message.progress or 0)
                self._notify()
            return

        if isinstance(message, ReadyMessage):
            return

        if isinstance(message, ErrorReply):
            self._settle(message.id, error=WorkerCallError(message.error or "Unknown error"))
        elif isinstance(message, ResultReply):
            self._settle(message.id, result=message.result)
        else:
            logger.warning(f"Ignoring unknown worker message: {message!r}")

    def _handle_worker_error(self, err: BaseException) -> None:
        """Fatal worker failure: reject everything in flight and mark all models as errored."""
        logger.error(f"Inference worker error: {err}")
        with self._lock:
            pending = list(self._pending.values())
            self._pending.clear()
            for kind in self.status:
                self.status[kind] = ERROR
            # The dead process cannot be reused; next init starts a new one
            self._worker = None

        for entry in pending:
            entry.timer.cancel()
            entry.future.set_exception(WorkerCrashedError(f"Worker error: {err or 'Unknown error'}"))
        self._notify()

    @property
    def pending_count(self) -> int:
        with self._lock:
            return len(self._pending)

    # =========================================================================
    # Status broadcast
    # =========================================================================

    def snapshot(self) -> ModelStatusSnapshot:
        with self._lock:
            return ModelStatusSnapshot(status=dict(self.status), progress=dict(self.progress))

    def _notify(self) -> None:
        snapshot = self.snapshot()
        for listener in list(self._listeners):
            listener(snapshot)

    def subscribe(self, listener: Callable[[ModelStatusSnapshot], None]) -> Callable[[], None]:
        """
        Register a status listener.

        Returns:
            A function that removes the listener.
        """
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    # =========================================================================
    # Model lifecycle
    # =========================================================================

    def init(self, kind: str = "ner") -> bool:
        """
        Load a model in the worker.

        Returns:
            True when the model is ready, False if a load is already in progress.

        Raises:
            Whatever the init call failed with (status is set to error first).
        """
        with self._lock:
            if self.status[kind] == READY:
                return True
            if self.status[kind] == LOADING:
                return False
            self.status[kind] = LOADING
            self.progress[kind] = 0
        self._notify()

        timeout_ms = self.config.init_timeouts_ms.get(kind, self.config.default_timeout_ms)
        try:
            self.call(f"init-{kind}", timeout_ms=timeout_ms)
        except Exception as e:
            with self._lock:
                self.status[kind] = ERROR
            self._notify()
            logger.error(f"Failed to initialize {kind} model: {e}")
            raise

        with self._lock:
            self.status[kind] = READY
            self.progress[kind] = 100
        self._notify()
        logger.info(f"{kind} model ready")
        return True

    def is_ready(self, kind: str = "ner") -> bool:
        return self.status.get(kind) == READY

    def unload(self, kind: str) -> None:
        """Free a model's memory in the worker and reset its status."""
        self.call("unload", options={"model": kind})
        with self._lock:
            self.status[kind] = IDLE
            self.progress[kind] = 0
        self._notify()
        logger.info(f"{kind} model unloaded")

    def cleanup(self) -> None:
        """Terminate the worker, reject pending calls and reset every model."""
        with self._lock:
            pending = list(self._pending.values())
            self._pending.clear()
            worker, self._worker = self._worker, None
            for kind in self.status:
                self.status[kind] = IDLE
                self.progress[kind] = 0

        for entry in pending:
            entry.timer.cancel()
            entry.future.set_exception(WorkerClosedError("InferenceWorkerClient cleanup"))

        if worker is not None:
            worker.terminate()

        self._notify()
        logger.info("Inference worker cleanup complete")

    # =========================================================================
    # NER
    # =========================================================================

    def extract_entities(self, text: str) -> list[Entity]:
        """
        Extract named entities from a long text.

        The text is normalized and scanned in overlapping windows; a window
        that fails is logged and skipped so the rest still yields results.
        """
        if not self.is_ready("ner"):
            self.init("ner")

        clean_text = normalize_whitespace(text)
        all_tokens: list[RawToken] = []

        for offset, window in iter_windows(
            clean_text, self.config.ner_window_size, self.config.ner_window_overlap
        ):
            window = title_case_caps_runs(window)
            try:
                raw = self.call("ner", window, dict(self.config.ner_options))
            except Exception as e:
                logger.warning(f"NER window at {offset} failed: {e}")
                continue
            tokens = [RawToken.from_dict(t) for t in raw or []]
            all_tokens.extend(realign_offsets(tokens, window, offset))

        unique = dedupe_tokens(all_tokens)
        entities = merge_org_loc(merge_tokens(unique), clean_text)
        logger.debug(f"NER: {len(all_tokens)} raw tokens -> {len(entities)} entities")

        if self.config.unload_ner_after_use:
            try:
                self.unload("ner")
            except Exception as e:
                logger.warning(f"Failed to unload ner model: {e}")

        return entities

    # =========================================================================
    # Embeddings
    # =========================================================================

    def get_embedding(self, text: str, kind: str = "passage") -> list[float]:
        """
        Embed a text with the E5 model.

        E5 is asymmetric: queries and passages take different prefixes.

        Args:
            text: Text to embed
            kind: "query" for search input, "passage" for indexed content
        """
        if not self.is_ready("search"):
            self.init("search")

        prefix = QUERY_PREFIX if kind == "query" else PASSAGE_PREFIX
        return self.call("embedding", f"{prefix}{text}")


def get_model_service(config: Optional[WorkerConfig] = None) -> InferenceWorkerClient:
    """Factory returning a client for the default worker process."""
    return InferenceWorkerClient(config or WorkerConfig())
