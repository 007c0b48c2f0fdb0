"""
Shared fixtures and test utilities for Legal Search tests.

Provides a synchronous fake worker transport, in-memory doubles of the
PostgreSQL stores, and sample legal texts so that all tests can run without
models, databases, or network access.
"""

import os
import sys
import uuid
import hashlib
from pathlib import Path

import pytest
from dotenv import load_dotenv

# ---------------------------------------------------------------------------
# Path setup - ensure the execution package is importable
# ---------------------------------------------------------------------------
PROJECT_ROOT = Path(__file__).resolve().parent.parent
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

load_dotenv(PROJECT_ROOT / ".env")

# ---------------------------------------------------------------------------
# Sample legal texts
# ---------------------------------------------------------------------------

SAMPLE_PETITION = (
    "O reclamante João Silva trabalhou na COMPANHIA DE TRANSITO DE MACAPA "
    "por dois anos, sem registro em carteira."
)

SAMPLE_THESES = "\n".join([
    "Tema 1 - Recurso de revista repetitivo. Teses firmadas pelo Tribunal Pleno:",
    "1) A despedida por justa causa exige prova robusta do ato faltoso, cabendo ao empregador o ônus "
    "de demonstrar a gravidade da conduta e a imediatidade da punição aplicada ao trabalhador.",
    "2) O reconhecimento da rescisão indireta não depende do afastamento prévio do empregado, "
    "podendo ele permanecer no serviço até a decisão final, nos termos do art. 483, § 3º, da CLT.",
    "3) A ausência de recolhimento do FGTS configura falta grave do empregador apta a ensejar "
    "a rescisão indireta do contrato de trabalho, independentemente do tempo de mora verificado.",
]) + "\n" + ("Fundamentação complementar do acórdão, com remissão a precedentes da SBDI-1. " * 12)


@pytest.fixture
def sample_petition():
    return SAMPLE_PETITION


@pytest.fixture
def sample_theses():
    return SAMPLE_THESES


# ---------------------------------------------------------------------------
# Deterministic embeddings
# ---------------------------------------------------------------------------

def fake_embedding(text, dimensions=8):
    """Deterministic non-zero embedding for a text."""
    h = hashlib.sha256(text.encode()).hexdigest()
    seed = int(h[:8], 16)
    return [(((seed + i * 7919) % 1000) + 1) / 1000.0 for i in range(dimensions)]


def unit_vector(index, dimensions=4):
    return [1.0 if i == index else 0.0 for i in range(dimensions)]


# ---------------------------------------------------------------------------
# Fake worker transport (no subprocess, no models)
# ---------------------------------------------------------------------------

NO_REPLY = object()


def default_responder(request):
    """Answer every request type the way a healthy worker would."""
    from execution.legal_search.worker_protocol import EmbeddingRequest, NerRequest

    if isinstance(request, EmbeddingRequest):
        return fake_embedding(request.text)
    if isinstance(request, NerRequest):
        return []
    return True


class FakeWorker:
    """
    Synchronous stand-in for WorkerProcess.

    Each posted request is handed to the factory's responder: its return
    value becomes a result reply, an exception becomes an error reply, and
    NO_REPLY leaves the request unanswered.
    """

    def __init__(self, factory, config, on_message, on_error):
        self.factory = factory
        self.config = config
        self.on_message = on_message
        self.on_error = on_error
        self.posted = []
        self.terminated = False

    def post_message(self, message):
        from execution.legal_search.worker_protocol import ErrorReply, ResultReply

        self.posted.append(message)
        responder = self.factory.responder
        if responder is None:
            return
        try:
            result = responder(message)
        except Exception as e:
            self.on_message(ErrorReply(id=message.id, error=str(e)))
            return
        if result is not NO_REPLY:
            self.on_message(ResultReply(id=message.id, result=result))

    def reply(self, request_id, result):
        from execution.legal_search.worker_protocol import ResultReply
        self.on_message(ResultReply(id=request_id, result=result))

    def emit(self, message):
        self.on_message(message)

    def crash(self, error):
        self.on_error(error)

    def terminate(self):
        self.terminated = True


class FakeWorkerFactory:
    """Worker factory recording every worker it creates."""

    NO_REPLY = NO_REPLY

    def __init__(self, responder=default_responder):
        self.responder = responder
        self.workers = []

    def __call__(self, config, on_message, on_error):
        worker = FakeWorker(self, config, on_message, on_error)
        self.workers.append(worker)
        return worker

    @property
    def last(self):
        return self.workers[-1]


@pytest.fixture
def worker_factory():
    return FakeWorkerFactory()


@pytest.fixture
def model_service(worker_factory):
    """InferenceWorkerClient wired to the fake worker."""
    from execution.legal_search.model_service import InferenceWorkerClient, WorkerConfig
    service = InferenceWorkerClient(WorkerConfig(), worker_factory=worker_factory)
    yield service
    service.cleanup()


# ---------------------------------------------------------------------------
# In-memory stores (no database needed)
# ---------------------------------------------------------------------------

def make_mock_index(dimensions=4, kind_groups=None, table_name="mock_chunks"):
    """
    In-memory VectorIndex: storage methods are replaced, while validation,
    filtering and ranking are the real implementation.
    """
    from execution.legal_search.vector_index import VectorIndex, VectorIndexConfig

    class MockVectorIndex(VectorIndex):
        def __init__(self, config):
            super().__init__(config)
            self._rows = {}
            self.batches = []

        def connect(self):
            pass

        def initialize_schema(self):
            pass

        def put_batch(self, chunks):
            if not chunks:
                return
            self.validate_dimensions(chunks)
            self.batches.append(len(chunks))
            for chunk in chunks:
                self._rows[chunk.id] = chunk

        def get_all(self):
            return list(self._rows.values())

        def get_by_owner(self, owner_id):
            return [c for c in self._rows.values() if c.owner_id == owner_id]

        def get_all_ids(self):
            return list(self._rows)

        def count(self):
            return len(self._rows)

        def clear_all(self):
            self._rows.clear()

        def clear_by_owner(self, owner_id):
            doomed = [cid for cid, c in self._rows.items() if c.owner_id == owner_id]
            for cid in doomed:
                del self._rows[cid]
            return len(doomed)

        def replace_owner(self, owner_id, chunks):
            self.validate_dimensions(chunks)
            deleted = self.clear_by_owner(owner_id)
            for chunk in chunks:
                self._rows[chunk.id] = chunk
            return deleted

        def close(self):
            pass

    return MockVectorIndex(VectorIndexConfig(
        table_name=table_name,
        embedding_dimensions=dimensions,
        kind_groups=kind_groups or {},
    ))


class MockDocumentStore:
    """In-memory mock of SourceDocumentStore."""

    def __init__(self):
        self._docs = {}
        self.batches = []
        self.table_name = "mock_documents"

    def initialize_schema(self):
        pass

    def save_batch(self, items):
        from execution.legal_search.document_store import document_id
        self.batches.append(len(items))
        for item in items:
            self._docs[document_id(item)] = item

    def load_all(self):
        return list(self._docs.values())

    def count(self):
        return len(self._docs)

    def clear_all(self):
        self._docs.clear()

    def close(self):
        pass


@pytest.fixture
def mock_index():
    return make_mock_index()


@pytest.fixture
def mock_case_law_index():
    from execution.legal_search.vector_index import REPETITIVE_APPEAL_KINDS
    return make_mock_index(kind_groups={"IRR": REPETITIVE_APPEAL_KINDS}, table_name="mock_case_law")


@pytest.fixture
def mock_document_store():
    return MockDocumentStore()


# ---------------------------------------------------------------------------
# Live PostgreSQL (integration tests)
# ---------------------------------------------------------------------------

skip_no_db = pytest.mark.skipif(
    not os.getenv("POSTGRES_URL"),
    reason="Missing POSTGRES_URL in .env",
)


@pytest.fixture
def live_index():
    """Real VectorIndex on a throwaway table (3-dim embeddings)."""
    from execution.legal_search.vector_index import VectorIndex, VectorIndexConfig
    index = VectorIndex(VectorIndexConfig(
        table_name=f"test_chunks_{uuid.uuid4().hex[:8]}",
        embedding_dimensions=3,
        use_pooling=False,
    ))
    index.initialize_schema()
    yield index
    with index.get_connection() as conn:
        with conn.cursor() as cur:
            cur.execute(f"DROP TABLE IF EXISTS {index.table_name}")
        conn.commit()
    index.close()


@pytest.fixture
def live_document_store():
    """Real SourceDocumentStore on a throwaway table."""
    from execution.legal_search.document_store import DocumentStoreConfig, SourceDocumentStore
    store = SourceDocumentStore(DocumentStoreConfig(
        table_name=f"test_documents_{uuid.uuid4().hex[:8]}",
        use_pooling=False,
    ))
    store.initialize_schema()
    yield store
    with store.get_connection() as conn:
        with conn.cursor() as cur:
            cur.execute(f"DROP TABLE IF EXISTS {store.table_name}")
        conn.commit()
    store.close()
