"""
Similarity search over secret embeddings.

Tries the ANN mirror first; only when it reports itself unavailable does
the search fall back to brute-force cosine over the canonical SQLite
embeddings. An ANN answer of "no hits" is final.
"""

import logging
from typing import Any, Dict, List, Optional, Sequence

import numpy as np

from ..db.db_interface import EmbeddingRepository, SubjectStore
from .qdrant_index import SimilarHit, VectorIndex
from .text_embedding import EmbeddingClient

logger = logging.getLogger(__name__)

FACET_KEYS = frozenset({"topics", "feelings", "meanings", "vibe", "style", "locations"})


def cosine_similarity(a: Sequence[float], b: Sequence[float]) -> float:
    """Cosine of two vectors; 0.0 for mismatched lengths or a zero vector."""
    if len(a) != len(b) or len(a) == 0:
        return 0.0
    va = np.asarray(a, dtype=np.float64)
    vb = np.asarray(b, dtype=np.float64)
    na = np.linalg.norm(va)
    nb = np.linalg.norm(vb)
    if na == 0 or nb == 0:
        return 0.0
    return float(np.dot(va, vb) / (na * nb))


class SimilaritySearcher:
    def __init__(
        self,
        embeddings: EmbeddingRepository,
        index: Optional[VectorIndex] = None,
        subjects: Optional[SubjectStore] = None,
        embedder: Optional[EmbeddingClient] = None,
    ):
        self.embeddings = embeddings
        self.index = index
        self.subjects = subjects
        self.embedder = embedder

    def find_similar(
        self,
        subject_id: int,
        limit: int = 10,
        min_score: float = 0.5,
        filters: Optional[Dict[str, Any]] = None,
        model: Optional[str] = None,
    ) -> List[SimilarHit]:
        """
        Secrets most similar to subject_id.

        Returns [] when the subject has no embedding.
        """
        source = self.embeddings.get_embedding(subject_id, model)
        if source is None:
            return []
        return self._search(source.vector, source.model_version, limit, min_score,
                            filters, exclude_id=subject_id)

    def search_text(
        self,
        query: str,
        limit: int = 10,
        min_score: float = 0.3,
        filters: Optional[Dict[str, Any]] = None,
    ) -> List[SimilarHit]:
        """Free-text semantic search. Returns [] if the query cannot be embedded."""
        if self.embedder is None:
            raise RuntimeError("search_text requires an EmbeddingClient")
        result = self.embedder.embed_detailed(query)
        if result.vector is None:
            logger.warning(f"Query embedding failed: {result.error}")
            return []
        return self._search(result.vector, self.embedder.model, limit, min_score, filters)

    def brute_force(
        self,
        vector: Sequence[float],
        model: str,
        limit: int = 10,
        min_score: float = 0.5,
        filters: Optional[Dict[str, Any]] = None,
        exclude_id: Optional[int] = None,
    ) -> List[SimilarHit]:
        allowed = self._filter_ids(filters)
        hits = []
        for sid, vec in self.embeddings.all_embeddings(model, exclude_id=exclude_id):
            if allowed is not None and sid not in allowed:
                continue
            score = cosine_similarity(vector, vec)
            if score >= min_score:
                hits.append(SimilarHit(sid, round(score, 4)))
        hits.sort(key=lambda h: (-h.score, h.subject_id))
        return hits[:limit]

    # ── internals ───────────────────────────────────────

    def _search(self, vector, model, limit, min_score, filters, exclude_id=None) -> List[SimilarHit]:
        hits = None
        if self.index is not None and self.index.enabled:
            hits = self.index.search(vector, model, limit=limit, min_score=min_score,
                                     filters=filters, exclude_id=exclude_id)
            if hits is None:
                logger.info("ANN index unavailable, falling back to brute-force search")
        if hits is None:
            hits = self.brute_force(vector, model, limit, min_score, filters, exclude_id)
        return hits

    def _filter_ids(self, filters: Optional[Dict[str, Any]]) -> Optional[set]:
        """Subject ids matching every filter, or None when unfiltered."""
        if not filters:
            return None
        if self.subjects is None:
            logger.warning("Filters ignored in brute-force search: no subject store")
            return None

        allowed: Optional[set] = None
        for key, value in filters.items():
            values = [str(v) for v in value] if isinstance(value, (list, tuple, set)) else [str(value)]
            if key in FACET_KEYS:
                ids = self.subjects.subject_ids_with_facet(key, values)
            else:
                ids = self._ids_with_meta(key, values)
            allowed = ids if allowed is None else allowed & ids
        return allowed

    def _ids_with_meta(self, key: str, values: List[str]) -> set:
        ids = set()
        offset = 0
        while True:
            batch = self.subjects.list_subjects(limit=500, offset=offset)
            if not batch:
                break
            for s in batch:
                v = s.meta.get(key, getattr(s, key, None))
                if v is not None and str(v) in values:
                    ids.add(s.id)
            offset += len(batch)
        return ids
