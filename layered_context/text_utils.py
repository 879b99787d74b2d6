"""
Text utilities for layered retrieval.

Tokenization, keyword extraction, token-target trimming, a reusable BM25
model, dense/sparse score blending and a lightweight overlap similarity used
when BM25 has nothing to work with.
"""

import math
import re
from collections import Counter
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional, Sequence, Tuple

from .token_estimator import estimate_text_tokens

STOPWORDS = frozenset([
    "the", "a", "an", "and", "or", "to", "for", "of", "in", "on", "at", "is", "are",
    "was", "were", "be", "been", "this", "that", "it", "as", "with", "by", "from",
    "about", "into", "through", "can", "could", "should", "would", "you", "your",
    "we", "they", "their", "our", "i", "he", "she", "them", "his", "her",
])

MAX_KEYWORDS = 24
DEFAULT_DENSE_ALPHA = 0.35
BM25_K1 = 1.2
BM25_B = 0.75
_LOGIT_EPSILON = 1e-4

_SPLIT_PATTERN = re.compile(r"[^a-z0-9_/.\-]+")


def clamp01(value: float) -> float:
    """Clamp to [0, 1]; non-finite values become 0."""
    try:
        number = float(value)
    except (TypeError, ValueError):
        return 0.0
    if not math.isfinite(number):
        return 0.0
    return max(0.0, min(1.0, number))


def normalize_whitespace(text: str) -> str:
    if not text:
        return ""
    text = text.replace("\r\n", "\n")
    text = re.sub(r"\n{3,}", "\n\n", text)
    text = re.sub(r"[ \t]{2,}", " ", text)
    return text.strip()


def tokenize(text: str) -> List[str]:
    """Lowercase, split on non-word characters, drop short tokens and stopwords."""
    if not text:
        return []
    # sentence punctuation is not part of a token; inner dots and slashes are (paths, versions)
    parts = (part.strip("./-") for part in _SPLIT_PATTERN.split(text.lower()))
    return [part for part in parts if len(part) >= 2 and part not in STOPWORDS]


def extract_top_keywords(text: str, max_count: int = MAX_KEYWORDS) -> List[str]:
    """Most frequent tokens first; ties keep first-appearance order."""
    counts = Counter(tokenize(text))
    # Counter preserves insertion order and sorted() is stable
    ranked = sorted(counts.items(), key=lambda item: -item[1])
    return [token for token, _ in ranked[:max_count]]


def merge_keywords(*keyword_lists: Iterable[str], max_count: int = MAX_KEYWORDS) -> List[str]:
    """Concatenate keyword lists in order, dropping duplicates."""
    merged: List[str] = []
    seen = set()
    for keywords in keyword_lists:
        for keyword in keywords:
            normalized = keyword.strip().lower()
            if not normalized or normalized in seen:
                continue
            seen.add(normalized)
            merged.append(normalized)
            if len(merged) >= max_count:
                return merged
    return merged


def _hard_truncate(text: str, target_tokens: int) -> str:
    low, high, best = 0, len(text), ""
    while low <= high:
        mid = (low + high) // 2
        candidate = text[:mid]
        if estimate_text_tokens(candidate) <= target_tokens:
            best = candidate
            low = mid + 1
        else:
            high = mid - 1
    return best.strip()


def trim_to_token_target(text: str, target_tokens: int) -> str:
    """
    Trim ``text`` to the longest word prefix whose estimate fits ``target_tokens``.

    When even the first word does not fit, the text is cut by characters, so
    the result never exceeds the target.
    """
    normalized = normalize_whitespace(text)
    if not normalized:
        return ""
    if estimate_text_tokens(normalized) <= target_tokens:
        return normalized

    words = normalized.split()
    low, high, best = 1, len(words), ""
    while low <= high:
        mid = (low + high) // 2
        candidate = " ".join(words[:mid])
        if estimate_text_tokens(candidate) <= target_tokens:
            best = candidate
            low = mid + 1
        else:
            high = mid - 1

    if not best:
        return _hard_truncate(normalized, target_tokens)
    return best.strip()


# ===== BM25 =====

@dataclass
class Bm25Model:
    """Precomputed BM25 statistics for a batch of documents."""
    doc_ids: List[str]
    term_frequencies: Dict[str, Counter]
    doc_lengths: Dict[str, int]
    document_frequency: Counter
    avg_doc_length: float
    k1: float = BM25_K1
    b: float = BM25_B
    _idf_cache: Dict[str, float] = field(default_factory=dict, repr=False)

    @property
    def size(self) -> int:
        return len(self.doc_ids)

    def idf(self, term: str) -> float:
        cached = self._idf_cache.get(term)
        if cached is not None:
            return cached
        n = self.document_frequency.get(term, 0)
        value = math.log(1.0 + (self.size - n + 0.5) / (n + 0.5))
        self._idf_cache[term] = value
        return value


def build_bm25_model(docs: Sequence[Tuple[str, str]],
                     k1: float = BM25_K1,
                     b: float = BM25_B) -> Bm25Model:
    """
    Build a BM25 model from ``(doc_id, content)`` pairs.

    Args:
        docs: Documents to index; ids must be unique
        k1: Term-frequency saturation
        b: Length normalization strength

    Returns:
        A model that can score any number of queries
    """
    doc_ids: List[str] = []
    term_frequencies: Dict[str, Counter] = {}
    doc_lengths: Dict[str, int] = {}
    document_frequency: Counter = Counter()

    for doc_id, content in docs:
        tokens = tokenize(content)
        doc_ids.append(doc_id)
        frequencies = Counter(tokens)
        term_frequencies[doc_id] = frequencies
        doc_lengths[doc_id] = len(tokens)
        document_frequency.update(frequencies.keys())

    total_length = sum(doc_lengths.values())
    avg_doc_length = total_length / len(doc_ids) if doc_ids else 0.0
    return Bm25Model(
        doc_ids=doc_ids,
        term_frequencies=term_frequencies,
        doc_lengths=doc_lengths,
        document_frequency=document_frequency,
        avg_doc_length=avg_doc_length,
        k1=k1,
        b=b,
    )


def _unique_terms(query: str) -> List[str]:
    return list(dict.fromkeys(tokenize(query)))


def score_bm25_batch(model: Bm25Model, query: str) -> Dict[str, float]:
    """Raw BM25 score for every document in ``model``; comparable, not normalized."""
    terms = _unique_terms(query)
    scores: Dict[str, float] = {}
    avg_length = model.avg_doc_length or 1.0
    for doc_id in model.doc_ids:
        frequencies = model.term_frequencies[doc_id]
        length_ratio = model.doc_lengths[doc_id] / avg_length
        score = 0.0
        for term in terms:
            tf = frequencies.get(term, 0)
            if tf == 0:
                continue
            numerator = tf * (model.k1 + 1.0)
            denominator = tf + model.k1 * (1.0 - model.b + model.b * length_ratio)
            score += model.idf(term) * numerator / denominator
        scores[doc_id] = score
    return scores


def bm25_query_ceiling(model: Bm25Model, query: str) -> float:
    """
    Score of an average-length document holding once every query term that
    occurs somewhere in the corpus.

    Raw scores divided by this value land around [0, 1] and are clamped there.
    Terms absent from every document cannot be matched and are left out.
    """
    return sum(
        model.idf(term)
        for term in _unique_terms(query)
        if model.document_frequency.get(term, 0) > 0
    )


def normalize_bm25_scores(model: Bm25Model, raw_scores: Dict[str, float], query: str) -> Dict[str, float]:
    ceiling = bm25_query_ceiling(model, query)
    if ceiling <= 0:
        return {doc_id: 0.0 for doc_id in raw_scores}
    return {doc_id: clamp01(score / ceiling) for doc_id, score in raw_scores.items()}


# ===== Blending and fallbacks =====

def _logit(value: float) -> float:
    value = min(1.0 - _LOGIT_EPSILON, max(_LOGIT_EPSILON, value))
    return math.log(value / (1.0 - value))


def _sigmoid(value: float) -> float:
    if value >= 0:
        return 1.0 / (1.0 + math.exp(-value))
    exp_value = math.exp(value)
    return exp_value / (1.0 + exp_value)


def blend_dense_sparse_scores(dense: Optional[float], sparse: float,
                              alpha: float = DEFAULT_DENSE_ALPHA) -> float:
    """
    Blend a dense and a sparse score in logit space.

    Args:
        dense: Dense score in [0, 1], or None when no dense score exists
        sparse: Sparse (BM25) score in [0, 1]
        alpha: Weight given to the dense score

    Returns:
        Blended score in [0, 1]; the clamped sparse score when ``dense`` is None
    """
    sparse = clamp01(sparse)
    if dense is None:
        return sparse
    alpha = clamp01(alpha)
    combined = alpha * _logit(clamp01(dense)) + (1.0 - alpha) * _logit(sparse)
    return clamp01(_sigmoid(combined))


def estimate_similarity(query: str, content: str) -> float:
    """Share of query tokens present in ``content``, plus 0.15 for a phrase match."""
    query_tokens = tokenize(query)
    if not query_tokens:
        return 0.0
    content_tokens = set(tokenize(content))
    matched = sum(1 for token in query_tokens if token in content_tokens)
    overlap = matched / len(query_tokens)
    phrase = query.strip().lower()
    phrase_bonus = 0.15 if phrase and phrase in content.lower() else 0.0
    return min(1.0, overlap + phrase_bonus)
