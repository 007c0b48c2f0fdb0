"""
Inference Worker Process

Hosts the two local models in a separate process so inference never blocks
the caller:
- NER: token-classification pipeline (transformers)
- Embeddings: multilingual E5 via sentence-transformers (1024 dimensions)

The parent talks to it only through ``worker_protocol`` messages over a
multiprocessing Pipe. ``WorkerProcess`` is the parent-side handle used by
``InferenceWorkerClient``.
"""

import gc
import os
import logging
import multiprocessing
import threading
from typing import Callable

from .worker_protocol import (
    EmbeddingRequest,
    ErrorReply,
    InitModelRequest,
    NerRequest,
    ProgressMessage,
    ReadyMessage,
    ResultReply,
    UnloadRequest,
)

logger = logging.getLogger(__name__)


# ============================================================================
# Worker side (runs in the child process)
# ============================================================================

def _load_ner(model_name: str):
    """Load the token-classification pipeline (raw sub-word tokens, no aggregation)."""
    from transformers import pipeline
    return pipeline("token-classification", model=model_name, aggregation_strategy="none")


def _load_embedder(model_name: str):
    """Load the sentence-transformers embedding model."""
    from sentence_transformers import SentenceTransformer
    return SentenceTransformer(model_name)


def fetch_snapshot(model_name: str, on_progress: Callable[[int], None]) -> None:
    """
    Download a model repo into the local Hugging Face cache, reporting 0-99
    as files complete. A local model directory is used as is.
    """
    if os.path.isdir(model_name):
        return
    from huggingface_hub import snapshot_download
    from huggingface_hub.utils import tqdm as hub_tqdm

    class _ProgressBar(hub_tqdm):
        def update(self, n=1):
            displayed = super().update(n)
            if self.total:
                on_progress(min(int(self.n * 100 / self.total), 99))
            return displayed

    snapshot_download(repo_id=model_name, tqdm_class=_ProgressBar)


def _raw_tokens(output) -> list[dict]:
    """Convert pipeline output to plain picklable dicts."""
    tokens = []
    for token in output:
        tokens.append({
            "word": str(token.get("word", "")),
            "entity": str(token.get("entity", "O")),
            "score": float(token.get("score", 1.0)),
            "start": int(token.get("start") or 0),
            "end": int(token.get("end") or 0),
        })
    return tokens


class ModelHost:
    """Holds loaded models and executes requests against them."""

    def __init__(
        self,
        ner_model: str,
        embedding_model: str,
        send: Callable,
        loaders: dict = None,
        fetch: Callable = None,
    ):
        self._model_names = {"ner": ner_model, "search": embedding_model}
        self._loaders = loaders or {"ner": _load_ner, "search": _load_embedder}
        self._fetch = fetch
        self._send = send
        self.models = {}

    def handle(self, request):
        """Execute one request and return its result. Raises on failure."""
        if isinstance(request, InitModelRequest):
            return self._init(request.model)

        if isinstance(request, NerRequest):
            ner = self._require("ner")
            return _raw_tokens(ner(request.text))

        if isinstance(request, EmbeddingRequest):
            embedder = self._require("search")
            vector = embedder.encode(request.text, normalize_embeddings=True)
            return [float(v) for v in vector]

        if isinstance(request, UnloadRequest):
            self.models.pop(request.model, None)
            gc.collect()
            return True

        raise ValueError(f"Unsupported request: {type(request).__name__}")

    def _init(self, kind: str) -> bool:
        if kind in self.models:
            return True
        name = self._model_names[kind]
        self._send(ProgressMessage(model=kind, progress=0))
        if self._fetch is not None:
            self._fetch(name, lambda pct: self._send(ProgressMessage(model=kind, progress=pct)))
        self.models[kind] = self._loaders[kind](name)
        self._send(ProgressMessage(model=kind, progress=100))
        logger.info(f"Worker loaded {kind} model {name}")
        return True

    def _require(self, kind: str):
        model = self.models.get(kind)
        if model is None:
            raise RuntimeError(f"Model not loaded: {kind}")
        return model


def run_worker(conn, ner_model: str, embedding_model: str) -> None:
    """Child-process main loop: receive requests until the pipe closes."""
    host = ModelHost(ner_model, embedding_model, send=conn.send, fetch=fetch_snapshot)
    conn.send(ReadyMessage())

    while True:
        try:
            request = conn.recv()
        except (EOFError, OSError):
            break

        try:
            result = host.handle(request)
        except Exception as e:
            logger.error(f"Worker request {getattr(request, 'type', '?')} failed: {e}")
            conn.send(ErrorReply(id=request.id, error=str(e)))
            continue

        conn.send(ResultReply(id=request.id, result=result))


# ============================================================================
# Parent side
# ============================================================================

class WorkerProcess:
    """
    Parent-side handle on the inference subprocess.

    A daemon reader thread forwards every inbound message to ``on_message``.
    When the pipe breaks while the handle is still open (the child crashed or
    was killed), ``on_error`` is called once with the failure.
    """

    def __init__(self, config, on_message: Callable, on_error: Callable):
        self._on_message = on_message
        self._on_error = on_error
        self._closed = False
        self._send_lock = threading.Lock()

        ctx = multiprocessing.get_context("spawn")
        self._conn, child_conn = ctx.Pipe()
        self._process = ctx.Process(
            target=run_worker,
            args=(child_conn, config.ner_model, config.embedding_model),
            daemon=True,
        )
        self._process.start()
        child_conn.close()

        self._reader = threading.Thread(target=self._read_loop, name="inference-worker-reader", daemon=True)
        self._reader.start()
        logger.info(f"Inference worker started (pid={self._process.pid})")

    def post_message(self, message) -> None:
        with self._send_lock:
            self._conn.send(message)

    def _read_loop(self) -> None:
        while True:
            try:
                message = self._conn.recv()
            except (EOFError, OSError) as e:
                if not self._closed:
                    exit_code = self._process.exitcode
                    self._on_error(RuntimeError(f"worker exited (exit code {exit_code}): {e or 'pipe closed'}"))
                return
            self._on_message(message)

    def terminate(self) -> None:
        """Stop the child process and close the pipe."""
        self._closed = True
        try:
            self._conn.close()
        except OSError:
            pass
        if self._process.is_alive():
            self._process.terminate()
        self._process.join(timeout=5)
        logger.info("Inference worker terminated")
