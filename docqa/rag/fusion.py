"""Rank fusion of the semantic and lexical rankings.

Reciprocal Rank Fusion scores each passage id ``c`` as

    sum over rankings R containing c of 1 / (k + rank_R(c))

with 0-based ranks (the best passage of a ranking has rank 0). Ties are
broken by the best rank across both rankings, then by the semantic rank.
"""
import math
from dataclasses import dataclass
from typing import Dict, List, Optional, Sequence, Tuple

from docqa import config
from docqa.rag.errors import InvalidConfigError


@dataclass
class FusedItem:
    """A passage id with its fused score and per-ranking positions."""

    id: str
    score: float
    semantic_rank: Optional[int]
    lexical_rank: Optional[int]

    @property
    def best_rank(self) -> float:
        ranks = [r for r in (self.semantic_rank, self.lexical_rank) if r is not None]
        return min(ranks) if ranks else math.inf


def _positions(ranking: Sequence[str]) -> Dict[str, int]:
    # A repeated id counts at its first (best) position only
    positions: Dict[str, int] = {}
    for rank, pid in enumerate(ranking):
        positions.setdefault(pid, rank)
    return positions


def fuse_scores(
    semantic_ranking: Sequence[str],
    lexical_ranking: Sequence[str],
    top_n: int,
    k: float = None,
) -> List[FusedItem]:
    """Reciprocal Rank Fusion with scores and per-ranking positions.

    Args:
        semantic_ranking: Passage ids from vector search, best first
        lexical_ranking: Passage ids from keyword ranking, best first
        top_n: Maximum number of items to return
        k: RRF constant (default from config); must be positive

    Returns:
        At most ``top_n`` items by descending fused score

    Raises:
        InvalidConfigError: If k is not positive
    """
    k = config.RRF_K if k is None else k
    if k <= 0:
        raise InvalidConfigError(f"RRF constant k must be positive, got {k}")
    if top_n <= 0:
        return []

    semantic = _positions(semantic_ranking)
    lexical = _positions(lexical_ranking)

    items = []
    for pid in list(semantic) + [p for p in lexical if p not in semantic]:
        s_rank = semantic.get(pid)
        l_rank = lexical.get(pid)
        score = 0.0
        if s_rank is not None:
            score += 1.0 / (k + s_rank)
        if l_rank is not None:
            score += 1.0 / (k + l_rank)
        items.append(FusedItem(id=pid, score=score, semantic_rank=s_rank, lexical_rank=l_rank))

    def sort_key(item: FusedItem) -> Tuple[float, float, float, str]:
        semantic_rank = item.semantic_rank if item.semantic_rank is not None else math.inf
        return (-item.score, item.best_rank, semantic_rank, item.id)

    items.sort(key=sort_key)
    return items[:top_n]


def fuse(
    semantic_ranking: Sequence[str],
    lexical_ranking: Sequence[str],
    top_n: int,
    k: float = None,
) -> List[str]:
    """Reciprocal Rank Fusion of two rankings into one list of passage ids."""
    return [item.id for item in fuse_scores(semantic_ranking, lexical_ranking, top_n, k)]


def weighted_fuse(
    semantic_scores: Sequence[Tuple[str, float]],
    lexical_scores: Sequence[Tuple[str, float]],
    top_n: int,
    semantic_weight: float = 0.6,
    lexical_weight: float = 0.4,
) -> List[str]:
    """Score-based fusion: weighted sum of max-normalized scores.

    Each leg's scores are divided by that leg's best score so both lie in
    [0, 1] before weighting. Ties are broken as in ``fuse``.

    Args:
        semantic_scores: (id, score) pairs from vector search, higher is better
        lexical_scores: (id, score) pairs from keyword ranking, higher is better
        top_n: Maximum number of ids to return
        semantic_weight: Weight of the semantic leg
        lexical_weight: Weight of the lexical leg

    Returns:
        At most ``top_n`` ids by descending weighted score
    """
    if semantic_weight < 0 or lexical_weight < 0:
        raise InvalidConfigError("Fusion weights must not be negative")
    if top_n <= 0:
        return []

    def normalized(pairs: Sequence[Tuple[str, float]]) -> Dict[str, float]:
        best = max((s for _, s in pairs), default=0.0)
        out: Dict[str, float] = {}
        for pid, s in pairs:
            if pid not in out:
                out[pid] = s / best if best > 0 else 0.0
        return out

    semantic = normalized(semantic_scores)
    lexical = normalized(lexical_scores)
    semantic_pos = _positions([pid for pid, _ in semantic_scores])
    lexical_pos = _positions([pid for pid, _ in lexical_scores])

    ranked = []
    for pid in list(semantic) + [p for p in lexical if p not in semantic]:
        score = semantic_weight * semantic.get(pid, 0.0) + lexical_weight * lexical.get(pid, 0.0)
        s_rank = semantic_pos.get(pid, math.inf)
        best = min(s_rank, lexical_pos.get(pid, math.inf))
        ranked.append((-score, best, s_rank, pid))

    ranked.sort()
    return [pid for _, _, _, pid in ranked[:top_n]]
