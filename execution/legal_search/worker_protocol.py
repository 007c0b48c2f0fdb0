"""
Message types exchanged with the inference worker process.

Outbound requests and inbound replies are tagged variants: each class fixes
its ``type`` discriminator so both sides know the payload shape. All types
are plain module-level dataclasses so they pickle across the process pipe.
"""

from dataclasses import dataclass, field
from typing import Any, ClassVar, Optional, Union

MODEL_KINDS = ("ner", "search")


# ---------------------------------------------------------------------------
# Outbound (client -> worker)
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class InitModelRequest:
    """Load a model into the worker (``init-ner`` / ``init-search``)."""
    id: str
    model: str

    @property
    def type(self) -> str:
        return f"init-{self.model}"


@dataclass(frozen=True)
class NerRequest:
    """Run the entity recognizer over one text window."""
    id: str
    text: str
    options: dict = field(default_factory=dict)
    type: ClassVar[str] = "ner"


@dataclass(frozen=True)
class EmbeddingRequest:
    """Embed an already-prefixed text."""
    id: str
    text: str
    type: ClassVar[str] = "embedding"


@dataclass(frozen=True)
class UnloadRequest:
    """Free a model's memory inside the worker."""
    id: str
    model: str
    type: ClassVar[str] = "unload"


WorkerRequest = Union[InitModelRequest, NerRequest, EmbeddingRequest, UnloadRequest]


def build_request(
    request_id: str,
    kind: str,
    text: Optional[str] = None,
    options: Optional[dict] = None,
) -> WorkerRequest:
    """
    Build the typed request for a ``type`` string.

    Raises:
        ValueError: Unknown kind, unknown model, or missing payload
    """
    options = options or {}

    if kind.startswith("init-"):
        model = kind[len("init-"):]
        if model not in MODEL_KINDS:
            raise ValueError(f"Unknown model kind: {model}")
        return InitModelRequest(id=request_id, model=model)

    if kind == "ner":
        if text is None:
            raise ValueError("ner request requires text")
        return NerRequest(id=request_id, text=text, options=dict(options))

    if kind == "embedding":
        if text is None:
            raise ValueError("embedding request requires text")
        return EmbeddingRequest(id=request_id, text=text)

    if kind == "unload":
        model = options.get("model")
        if model not in MODEL_KINDS:
            raise ValueError(f"Unknown model kind: {model}")
        return UnloadRequest(id=request_id, model=model)

    raise ValueError(f"Unknown worker request type: {kind}")


# ---------------------------------------------------------------------------
# Inbound (worker -> client)
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class ProgressMessage:
    """Model download/load progress, 0-100."""
    model: str
    progress: float
    type: ClassVar[str] = "progress"


@dataclass(frozen=True)
class ReadyMessage:
    """Worker process started and is accepting requests."""
    type: ClassVar[str] = "ready"


@dataclass(frozen=True)
class ErrorReply:
    """A request failed inside the worker."""
    id: str
    error: str
    type: ClassVar[str] = "error"


@dataclass(frozen=True)
class ResultReply:
    """A request completed successfully."""
    id: str
    result: Any = None
    type: ClassVar[str] = "result"


WorkerMessage = Union[ProgressMessage, ReadyMessage, ErrorReply, ResultReply]
