"""
TF-IDF near-duplicate detection for the content library.

A lexical (not neural) similarity index: the library is small and changes
often, so the vocabulary and document vectors are cached and rebuilt lazily
whenever the library has changed since the last build.
"""

import re
import math
import logging
import unicodedata
from dataclasses import dataclass
from typing import Any, Optional

logger = logging.getLogger(__name__)

# Portuguese function words plus legal boilerplate that carries no topic signal
STOPWORDS = frozenset({
    "de", "da", "do", "das", "dos", "em", "na", "no", "nas", "nos", "para", "por",
    "com", "sem", "sob", "sobre", "entre", "ate", "o", "a", "os", "as", "um", "uma",
    "uns", "umas", "e", "ou", "mas", "porem", "contudo", "todavia", "que", "qual",
    "quais", "quando", "onde", "como", "porque", "ser", "estar", "ter", "haver",
    "fazer", "ir", "vir", "foi", "era", "sido", "sendo", "seja", "foram", "sao",
    "ao", "aos", "pela", "pelo", "pelas", "pelos", "este", "esta", "estes", "estas",
    "esse", "essa", "esses", "essas", "isso", "isto", "aquilo", "aquele", "aquela",
    "se", "nao", "sim", "mais", "menos", "muito", "pouco", "art", "artigo",
    "paragrafo", "inciso", "alinea", "fls", "folhas", "pag", "pagina", "id",
    "processo", "autos", "requerente", "requerido", "reclamante", "reclamada",
    "autor", "reu", "parte", "partes", "assim", "ainda", "ja", "tambem", "apenas",
    "mesmo", "so", "entao", "pois",
})

MIN_TOKEN_LENGTH = 3
MIN_DOCUMENT_FREQUENCY = 2
MAX_DOCUMENT_RATIO = 0.9

_HTML_TAG = re.compile(r"<[^>]+>")
_NON_WORD = re.compile(r"[^\w\s]", re.ASCII)
_DIGITS = re.compile(r"\d+")


@dataclass
class SimilarityMatch:
    """Result of a near-duplicate lookup."""
    has_similar: bool
    similar_document: Any = None
    similarity: Optional[float] = None


def _content(document) -> str:
    content = getattr(document, "content", None)
    return content if isinstance(content, str) else ""


class TFIDFSimilarity:
    """
    Sparse TF-IDF index over a document collection.

    Documents are any objects with ``id`` and ``content`` attributes.
    Call ``invalidate()`` whenever the collection changes; the next lookup
    rebuilds the index.
    """

    def __init__(self, stopwords: frozenset = STOPWORDS):
        self.stopwords = stopwords
        self.vocabulary: dict[str, int] = {}
        self.idf: dict[str, float] = {}
        self.vectors: dict[str, dict[int, float]] = {}
        self.valid = False

    def tokenize(self, text: str) -> list[str]:
        """Lowercase, strip accents, HTML tags, punctuation and digits; drop short words and stopwords."""
        text = unicodedata.normalize("NFD", (text or "").lower())
        text = "".join(ch for ch in text if not unicodedata.combining(ch))
        text = _HTML_TAG.sub(" ", text)
        text = _NON_WORD.sub(" ", text)
        text = _DIGITS.sub(" ", text)
        return [
            word for word in text.split()
            if len(word) >= MIN_TOKEN_LENGTH and word not in self.stopwords
        ]

    def build_index(self, documents: list) -> None:
        """Rebuild vocabulary, idf and every document vector."""
        n = len(documents)
        df: dict[str, int] = {}
        for doc in documents:
            for term in set(self.tokenize(_content(doc))):
                df[term] = df.get(term, 0) + 1

        self.vocabulary.clear()
        self.idf.clear()
        for term, freq in df.items():
            # Terms in a single document, or in nearly all of them, don't discriminate
            if freq >= MIN_DOCUMENT_FREQUENCY and freq < n * MAX_DOCUMENT_RATIO:
                self.vocabulary[term] = len(self.vocabulary)
                self.idf[term] = math.log(n / freq) + 1

        self.vectors = {doc.id: self.compute_vector(_content(doc)) for doc in documents}
        self.valid = True
        logger.debug(f"TF-IDF index built: {n} documents, {len(self.vocabulary)} terms")

    def compute_vector(self, text: str) -> dict[int, float]:
        """L2-normalized sparse vector of sublinear tf times idf."""
        tf: dict[str, int] = {}
        for token in self.tokenize(text):
            if token in self.vocabulary:
                tf[token] = tf.get(token, 0) + 1

        vector = {}
        for term, freq in tf.items():
            vector[self.vocabulary[term]] = (1 + math.log(freq)) * self.idf[term]

        norm = math.sqrt(sum(v * v for v in vector.values()))
        if norm > 0:
            vector = {k: v / norm for k, v in vector.items()}
        return vector

    @staticmethod
    def cosine(a: dict[int, float], b: dict[int, float]) -> float:
        """Dot product of two normalized sparse vectors."""
        if len(b) < len(a):
            a, b = b, a
        return sum(v * b[k] for k, v in a.items() if k in b)

    def find_similar(self, candidate, documents: list, threshold: float = 0.80) -> SimilarityMatch:
        """
        Find the most similar existing document to a candidate.

        The candidate itself (same id) is skipped, so editing a document does
        not flag it as a duplicate of its previous version.
        """
        if not self.valid or len(self.vectors) != len(documents):
            self.build_index(documents)

        vector = self.compute_vector(_content(candidate))
        best = None
        best_similarity = 0.0

        for doc in documents:
            if doc.id == candidate.id:
                continue
            existing = self.vectors.get(doc.id)
            if existing is None:
                continue
            similarity = self.cosine(vector, existing)
            if similarity >= threshold and similarity > best_similarity:
                best = doc
                best_similarity = similarity

        if best is None:
            return SimilarityMatch(has_similar=False)
        return SimilarityMatch(has_similar=True, similar_document=best, similarity=best_similarity)

    def invalidate(self) -> None:
        self.valid = False
        self.vectors.clear()
