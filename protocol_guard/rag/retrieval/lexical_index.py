"""
BM25 Lexical Index over Protocol Chunks

Inverted index scoring chunk text, title, keywords and the owning protocol
code. Used by every store tier, so the flat-file fallback ranks exactly
like the structured store.

BM25:
    score(D,Q) = Σ IDF(qi) × (f(qi,D) × (k1+1)) / (f(qi,D) + k1 × (1-b+b×|D|/avgdl))

Scores returned by search() are divided by the best score, so the top hit
is 1.0 and every score lies in [0, 1].
"""

import logging
import math
import re
from collections import Counter, defaultdict
from typing import Callable, Dict, Iterable, List, Optional, Tuple

from ..models import ProtocolChunk

logger = logging.getLogger(__name__)

TOKEN_PATTERN = re.compile(r"\d{4}-p\b|[a-z0-9]+")

STOP_WORDS = {
    'what', 'is', 'the', 'a', 'an', 'and', 'or', 'but', 'how', 'why',
    'can', 'will', 'should', 'may', 'has', 'have', 'been', 'being',
    'do', 'does', 'did', 'to', 'from', 'in', 'on', 'at', 'for', 'with',
    'of', 'by', 'if', 'as', 'be', 'are', 'was', 'were', 'it', 'this',
    'that', 'yo', 'male', 'female', 'pt', 'patient',
}


def tokenize(text: str) -> List[str]:
    """
    Lowercase, split to alphanumeric tokens, drop stop words and fold
    simple plurals ("seizures" -> "seizure").

    Pediatric protocol codes stay a single token ("1242-p") so they never
    match a query for the adult code.
    """
    if not text:
        return []
    tokens = []
    for token in TOKEN_PATTERN.findall(text.lower()):
        if token in STOP_WORDS:
            continue
        if len(token) > 4 and token.endswith("s") and not token.endswith(("ss", "us", "is")):
            token = token[:-1]
        tokens.append(token)
    return tokens


def chunk_document_text(chunk: ProtocolChunk) -> str:
    return " ".join([chunk.protocol_code, chunk.title, chunk.text, " ".join(chunk.keywords)])


class LexicalIndex:
    """
    BM25 keyword index.

    Parameters:
        k1: Term frequency saturation (1.2-2.0 typical range)
        b: Length normalization (0.75 is standard)
    """

    def __init__(self, k1: float = 1.5, b: float = 0.75):
        self.k1 = k1
        self.b = b
        self._chunks: List[ProtocolChunk] = []
        self._term_freqs: List[Counter] = []
        self._doc_lengths: List[int] = []
        self._postings: Dict[str, List[int]] = defaultdict(list)
        self._idf: Dict[str, float] = {}
        self._avg_doc_length = 0.0

    def __len__(self) -> int:
        return len(self._chunks)

    def build(self, chunks: Iterable[ProtocolChunk]) -> "LexicalIndex":
        self._chunks = sorted(chunks, key=lambda c: (c.protocol_code, c.sequence))
        self._term_freqs = []
        self._doc_lengths = []
        self._postings = defaultdict(list)

        for doc_id, chunk in enumerate(self._chunks):
            tokens = tokenize(chunk_document_text(chunk))
            term_freq = Counter(tokens)
            self._term_freqs.append(term_freq)
            self._doc_lengths.append(len(tokens))
            for term in term_freq:
                self._postings[term].append(doc_id)

        n = len(self._chunks)
        self._avg_doc_length = sum(self._doc_lengths) / n if n else 0.0
        self._idf = {
            term: math.log((n - len(docs) + 0.5) / (len(docs) + 0.5) + 1.0)
            for term, docs in self._postings.items()
        }
        logger.debug(f"Lexical index built: {n} chunks, {len(self._idf)} terms")
        return self

    def _score(self, doc_id: int, terms: Counter) -> float:
        term_freq = self._term_freqs[doc_id]
        length_norm = 1 - self.b + self.b * (
            self._doc_lengths[doc_id] / self._avg_doc_length if self._avg_doc_length else 0.0
        )
        score = 0.0
        for term, query_count in terms.items():
            freq = term_freq.get(term)
            if not freq:
                continue
            numerator = freq * (self.k1 + 1)
            denominator = freq + self.k1 * length_norm
            score += self._idf[term] * (numerator / denominator) * query_count
        return score

    def search(
        self,
        text: str,
        limit: int = 20,
        admit: Optional[Callable[[ProtocolChunk], bool]] = None,
    ) -> List[Tuple[ProtocolChunk, float]]:
        """
        Rank chunks for a query.

        Args:
            text: Query text
            limit: Maximum number of hits
            admit: Optional predicate; chunks it rejects are skipped

        Returns:
            (chunk, normalized_score) pairs, best first; ties in chunk order
        """
        terms = Counter(tokenize(text))
        if not terms or not self._chunks:
            return []

        candidates = set()
        for term in terms:
            candidates.update(self._postings.get(term, ()))

        scored = []
        for doc_id in candidates:
            chunk = self._chunks[doc_id]
            if admit is not None and not admit(chunk):
                continue
            score = self._score(doc_id, terms)
            if score > 0:
                scored.append((doc_id, score))

        if not scored:
            return []

        scored.sort(key=lambda item: (-item[1], item[0]))
        top = scored[0][1]
        return [(self._chunks[doc_id], score / top) for doc_id, score in scored[:limit]]
