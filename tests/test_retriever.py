"""
Tests for execution/legal_search/retriever.py

Covers: query normalization and the E5 query prefix, the query-embedding
        cache, statute/case-law search, and per-owner re-indexing of
        chunked precedents.
"""

import pytest

from tests.conftest import fake_embedding, make_mock_index


DIMENSIONS = 8


@pytest.fixture
def retriever(model_service):
    from execution.legal_search.retriever import SemanticRetriever
    from execution.legal_search.vector_index import REPETITIVE_APPEAL_KINDS
    return SemanticRetriever(
        model_service,
        statutes=make_mock_index(dimensions=DIMENSIONS, table_name="statute_chunks"),
        case_law=make_mock_index(
            dimensions=DIMENSIONS,
            kind_groups={"IRR": REPETITIVE_APPEAL_KINDS},
            table_name="case_law_chunks",
        ),
    )


def _embedding_requests(worker_factory):
    return [m.text for m in worker_factory.last.posted if m.type == "embedding"]


def _chunk(chunk_id, owner_id, embedding, kind=None):
    from execution.legal_search.vector_index import EmbeddedChunk
    return EmbeddedChunk(id=chunk_id, owner_id=owner_id, text=chunk_id, embedding=embedding, chunk_kind=kind)


# ---------------------------------------------------------------------------
# Query embedding
# ---------------------------------------------------------------------------

class TestEmbedQuery:
    """Tests for embed_query."""

    def test_query_is_normalized_and_prefixed(self, retriever, worker_factory):
        vector = retriever.embed_query("  Rescisão INDIRETA ")
        assert _embedding_requests(worker_factory) == ["query: rescisão indireta"]
        assert vector == fake_embedding("query: rescisão indireta")

    def test_repeated_query_uses_cache(self, retriever, worker_factory):
        retriever.embed_query("férias")
        retriever.embed_query("FÉRIAS")
        assert len(_embedding_requests(worker_factory)) == 1

    def test_cache_evicts_oldest(self, model_service, worker_factory):
        from execution.legal_search.retriever import SemanticRetriever
        retriever = SemanticRetriever(
            model_service, make_mock_index(DIMENSIONS), make_mock_index(DIMENSIONS), cache_size=2,
        )
        for query in ("a", "b", "a", "c", "b"):
            retriever.embed_query(query)
        # "b" was evicted when "c" arrived, "a" was refreshed
        assert _embedding_requests(worker_factory) == ["query: a", "query: b", "query: c", "query: b"]


# ---------------------------------------------------------------------------
# Search
# ---------------------------------------------------------------------------

class TestSearch:
    """Tests for search_statutes / search_case_law."""

    def test_search_statutes(self, retriever):
        target = fake_embedding("query: rescisão indireta")
        retriever.statutes.put_batch([
            _chunk("CLT-483", "CLT-483", target),
            _chunk("CLT-482", "CLT-482", [-v for v in target]),
        ])
        hits = retriever.search_statutes("Rescisão indireta")
        assert [h.chunk.id for h in hits] == ["CLT-483"]
        assert hits[0].similarity == pytest.approx(1.0)

    def test_search_case_law_with_filters(self, retriever):
        from execution.legal_search.vector_index import SearchFilters
        target = fake_embedding("query: justa causa")
        retriever.case_law.put_batch([
            _chunk("t1-c0", "t1", target, kind="RR-Ag"),
            _chunk("s1-c0", "s1", target, kind="SUM"),
        ])
        hits = retriever.search_case_law("justa causa", filters=SearchFilters(kinds=["IRR"]))
        assert [h.chunk.owner_id for h in hits] == ["t1"]

    def test_corpora_are_independent(self, retriever):
        target = fake_embedding("query: fgts")
        retriever.case_law.put(_chunk("t1-c0", "t1", target))
        assert retriever.search_statutes("fgts") == []
        assert len(retriever.search_case_law("fgts")) == 1


# ---------------------------------------------------------------------------
# Indexing
# ---------------------------------------------------------------------------

class TestIndexCaseLawDocument:
    """Tests for index_case_law_document."""

    def test_chunks_are_embedded_as_passages(self, retriever, worker_factory, sample_theses):
        count = retriever.index_case_law_document("tema-1", sample_theses, corpus_tag="TST", chunk_kind="IRR")

        assert count == 4
        stored = sorted(retriever.case_law.get_by_owner("tema-1"), key=lambda c: c.chunk_index)
        assert [c.id for c in stored] == ["tema-1-c0", "tema-1-c1", "tema-1-c2", "tema-1-c3"]
        assert all(c.total_chunks == 4 and c.corpus_tag == "TST" for c in stored)
        assert all(text.startswith("passage: ") for text in _embedding_requests(worker_factory))
        assert stored[1].embedding == fake_embedding(f"passage: {stored[1].text}")

    def test_reindex_replaces_previous_chunks(self, retriever, sample_theses):
        retriever.index_case_law_document("tema-1", sample_theses)
        retriever.index_case_law_document("tema-2", "Tese única e curta.")

        assert retriever.index_case_law_document("tema-1", "Tese revisada.") == 1
        assert [c.id for c in retriever.case_law.get_by_owner("tema-1")] == ["tema-1-c0"]
        assert retriever.case_law.get_by_owner("tema-1")[0].text == "Tese revisada."
        assert len(retriever.case_law.get_by_owner("tema-2")) == 1

    def test_embedding_failure_leaves_index_untouched(self, retriever, worker_factory, sample_theses):
        from execution.legal_search.model_service import WorkerCallError
        from execution.legal_search.worker_protocol import EmbeddingRequest
        from tests.conftest import default_responder

        retriever.index_case_law_document("tema-1", sample_theses)

        def responder(request):
            if isinstance(request, EmbeddingRequest):
                raise RuntimeError("out of memory")
            return default_responder(request)

        worker_factory.responder = responder
        with pytest.raises(WorkerCallError):
            retriever.index_case_law_document("tema-1", "Tese revisada.")
        assert retriever.case_law.count() == 4

    def test_wrong_dimension_embedding_keeps_previous_chunks(self, retriever, worker_factory, sample_theses):
        from execution.legal_search.worker_protocol import EmbeddingRequest
        from tests.conftest import default_responder

        retriever.index_case_law_document("tema-1", sample_theses)
        before = sorted(c.id for c in retriever.case_law.get_by_owner("tema-1"))

        def responder(request):
            if isinstance(request, EmbeddingRequest):
                return [0.5, 0.5]
            return default_responder(request)

        worker_factory.responder = responder
        with pytest.raises(ValueError, match="dimension"):
            retriever.index_case_law_document("tema-1", "Tese revisada.")
        assert sorted(c.id for c in retriever.case_law.get_by_owner("tema-1")) == before


# ---------------------------------------------------------------------------
# Semantic search toggles
# ---------------------------------------------------------------------------

class TestSearchToggles:
    """Tests for preference-gated search."""

    def _retriever(self, model_service, preferences):
        from execution.legal_search.retriever import SemanticRetriever
        return SemanticRetriever(
            model_service,
            make_mock_index(DIMENSIONS, table_name="statute_chunks"),
            make_mock_index(DIMENSIONS, table_name="case_law_chunks"),
            preferences=preferences,
        )

    def test_enabled_by_default(self, model_service, tmp_path):
        from execution.legal_search.preferences import PreferenceStore
        retriever = self._retriever(model_service, PreferenceStore(str(tmp_path / "prefs.json")))
        retriever.statutes.put(_chunk("CLT-483", "CLT-483", fake_embedding("query: fgts")))
        assert len(retriever.search_statutes("fgts")) == 1

    def test_disabled_corpus_returns_nothing_without_embedding(self, model_service, worker_factory, tmp_path):
        from execution.legal_search.preferences import CASE_LAW_SEMANTIC_ENABLED, PreferenceStore
        preferences = PreferenceStore(str(tmp_path / "prefs.json"))
        preferences.set_bool(CASE_LAW_SEMANTIC_ENABLED, False)
        retriever = self._retriever(model_service, preferences)
        retriever.case_law.put(_chunk("t1-c0", "t1", fake_embedding("query: fgts")))
        retriever.statutes.put(_chunk("CLT-15", "CLT-15", fake_embedding("query: fgts")))

        assert retriever.search_case_law("fgts") == []
        assert worker_factory.workers == []
        assert len(retriever.search_statutes("fgts")) == 1


class TestGetRetriever:

    def test_uses_given_service(self, model_service, monkeypatch, tmp_path):
        from execution.legal_search.retriever import get_retriever
        monkeypatch.setenv("LEGAL_SEARCH_PREFS", str(tmp_path / "prefs.json"))
        retriever = get_retriever(model_service)
        assert retriever.model_service is model_service
        assert retriever.statutes.table_name == "statute_chunks"
        assert retriever.case_law.table_name == "case_law_chunks"
