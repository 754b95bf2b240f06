"""Lexical (BM25) ranking of a document's passages."""
import math
import re
from typing import Dict, List, Optional, Sequence, Tuple

import structlog
from rank_bm25 import BM25Okapi

from docqa import config
from docqa.rag.store_faiss import Passage

logger = structlog.get_logger()

STOPWORDS = frozenset(
    """
    the is at of on and a to in for that this with as an by be are or it from
    we can also not our have has which their these those into using used use
    such than other more most less least between over under above below
    however therefore thus while where when who whom whose what why how
    """.split()
)


def tokenize(text: str) -> List[str]:
    """Lower-case alphanumeric terms, without stopwords and one-letter tokens."""
    terms = re.sub(r"[^a-z0-9\s]", " ", text.lower()).split()
    return [t for t in terms if len(t) > 1 and t not in STOPWORDS]


class PassageBM25(BM25Okapi):
    """BM25Okapi with the non-negative IDF ``log(1 + (N - df + 0.5) / (df + 0.5))``.

    With the stock Okapi IDF a term present in most passages of a small
    document scores below zero; here any matching term adds a positive score.
    """

    def _calc_idf(self, nd):
        for word, freq in nd.items():
            self.idf[word] = math.log(1 + (self.corpus_size - freq + 0.5) / (freq + 0.5))


class KeywordRanker:
    """Scores passages against a query with BM25, one cached model per document."""

    def __init__(self, k1: float = None, b: float = None):
        self.k1 = config.BM25_K1 if k1 is None else k1
        self.b = config.BM25_B if b is None else b
        self._models: Dict[str, Tuple[tuple, Optional[PassageBM25]]] = {}

    def _model_for(self, document_id: str, passages: Sequence[Passage]) -> Optional[PassageBM25]:
        key = tuple((p.id, p.text) for p in passages)
        cached = self._models.get(document_id)
        if cached is not None and cached[0] == key:
            return cached[1]

        corpus = [tokenize(p.text) for p in passages]
        # rank_bm25 divides by the average passage length
        model = PassageBM25(corpus, k1=self.k1, b=self.b) if any(corpus) else None
        self._models[document_id] = (key, model)

        logger.debug(
            "bm25_model_built",
            document_id=document_id,
            passages=len(passages),
        )
        return model

    def score(
        self, document_id: str, query_text: str, passages: Sequence[Passage]
    ) -> List[Tuple[str, float]]:
        """Score passages against a query.

        Args:
            document_id: Document the passages belong to (cache key)
            query_text: Natural-language query
            passages: Candidate passages, typically the whole document

        Returns:
            (passage id, score) pairs by descending score; passages without
            any query term are left out. Ties keep ordinal order.
        """
        query_terms = tokenize(query_text or "")
        if not query_terms or not passages:
            return []

        model = self._model_for(document_id, passages)
        if model is None:
            return []

        scores = model.get_scores(query_terms)
        ranked = sorted(
            (
                (-float(s), p.ordinal_index, position, p.id)
                for position, (p, s) in enumerate(zip(passages, scores))
                if s > 0
            )
        )
        return [(pid, -neg) for neg, _, _, pid in ranked]

    def rank(self, document_id: str, query_text: str, passages: Sequence[Passage]) -> List[str]:
        """Passage ids ordered by descending BM25 score (zero scores excluded)."""
        ranking = [pid for pid, _ in self.score(document_id, query_text, passages)]

        logger.debug(
            "keyword_ranking_completed",
            document_id=document_id,
            candidates=len(passages),
            matched=len(ranking),
        )
        return ranking

    def invalidate(self, document_id: str = None) -> None:
        """Drop cached BM25 models for one document, or for all of them."""
        if document_id is None:
            self._models.clear()
        else:
            self._models.pop(document_id, None)
