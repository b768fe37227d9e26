"""
ANN mirror of the canonical embedding table, backed by Qdrant's REST API.

SQLite stays the source of truth; Qdrant is a best-effort accelerator.
search() therefore distinguishes "unavailable" (None) from "no hits" ([])
so the caller can fall back to brute force only when it has to.
"""

import logging
import re
import threading
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional

import requests

from ..utils.config import QdrantConfig

logger = logging.getLogger(__name__)

OVERFETCH = 3


@dataclass(frozen=True)
class SimilarHit:
    subject_id: int
    score: float


class VectorIndex(ABC):
    """Capability interface for an approximate-nearest-neighbor store."""

    @abstractmethod
    def upsert(self, subject_id: int, vector: List[float],
               payload: Optional[Dict[str, Any]], model: str) -> bool:
        """Store or replace one point. False when the mirror could not be updated."""
        ...

    @abstractmethod
    def search(self, vector: List[float], model: str, limit: int = 10,
               min_score: float = 0.5, filters: Optional[Dict[str, Any]] = None,
               exclude_id: Optional[int] = None) -> Optional[List[SimilarHit]]:
        """Nearest neighbors, or None when the index is unavailable."""
        ...

    @property
    def enabled(self) -> bool:
        return True


def collection_name(model: str, prefix: str = "secrets_") -> str:
    """One collection per embedding model so models can be swapped side by side."""
    return prefix + re.sub(r"[^a-z0-9]+", "_", model, flags=re.IGNORECASE)


class QdrantIndex(VectorIndex):
    """Qdrant REST implementation of VectorIndex. Never raises."""

    def __init__(
        self,
        config: QdrantConfig,
        session: Optional[requests.Session] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.config = config
        self.session = session or requests.Session()
        self._clock = clock
        self._collections: Dict[str, float] = {}  # name -> verified-at
        self._lock = threading.Lock()

        if config.enabled:
            logger.info(f"QdrantIndex ready at {config.url}")
        else:
            logger.info("QdrantIndex disabled (no qdrant.url configured)")

    @property
    def enabled(self) -> bool:
        return self.config.enabled

    # ── public API ──────────────────────────────────────

    def upsert(self, subject_id: int, vector: List[float],
               payload: Optional[Dict[str, Any]], model: str) -> bool:
        if not self.enabled:
            return False

        name = collection_name(model, self.config.collection_prefix)
        if not self.ensure_collection(name, len(vector)):
            return False

        body = {
            "points": [{
                "id": int(subject_id),
                "vector": [float(x) for x in vector],
                "payload": dict(payload or {}, secret_id=int(subject_id)),
            }]
        }
        res = self._request("PUT", f"/collections/{name}/points?wait=true", body)
        ok = res is not None and res.get("status") == "ok"
        if not ok:
            logger.warning(f"Qdrant upsert failed for subject {subject_id} in {name}")
        return ok

    def search(self, vector: List[float], model: str, limit: int = 10,
               min_score: float = 0.5, filters: Optional[Dict[str, Any]] = None,
               exclude_id: Optional[int] = None) -> Optional[List[SimilarHit]]:
        if not self.enabled:
            return None

        name = collection_name(model, self.config.collection_prefix)

        query_filter: Dict[str, Any] = {}
        must = []
        for key, value in (filters or {}).items():
            if isinstance(value, (list, tuple, set)):
                must.append({"key": key, "match": {"any": list(value)}})
            else:
                must.append({"key": key, "match": {"value": value}})
        if must:
            query_filter["must"] = must
        if exclude_id is not None:
            query_filter["must_not"] = [{"has_id": [int(exclude_id)]}]

        threshold = max(0.0, min(1.0, float(min_score)))
        body = {
            "vector": [float(x) for x in vector],
            "top": max(1, limit + OVERFETCH),
            "params": {"hnsw_ef": self.config.hnsw_ef},
            "score_threshold": threshold,
            "with_payload": False,
        }
        if query_filter:
            body["filter"] = query_filter

        res = self._request("POST", f"/collections/{name}/points/search", body)
        if res is None or res.get("status") != "ok":
            return None

        hits: List[SimilarHit] = []
        for h in res.get("result") or []:
            try:
                point_id = int(h.get("id", 0))
                score = float(h.get("score", 0.0))
            except (TypeError, ValueError, AttributeError):
                continue
            if not point_id or point_id == exclude_id:
                continue
            if score < threshold:
                continue
            hits.append(SimilarHit(point_id, round(score, 4)))
            if len(hits) >= limit:
                break
        return hits

    def ensure_collection(self, name: str, size: int) -> bool:
        """Create the collection if missing. Positive checks are cached for cache_ttl."""
        now = self._clock()
        with self._lock:
            verified_at = self._collections.get(name)
            if verified_at is not None and now - verified_at < self.config.cache_ttl:
                return True

        res = self._request("GET", f"/collections/{name}")
        if res is None or res.get("status") != "ok":
            body = {"vectors": {"size": int(size), "distance": self.config.distance}}
            res = self._request("PUT", f"/collections/{name}", body)
            if res is None or res.get("status") != "ok":
                logger.warning(f"Qdrant collection {name} could not be created")
                return False
            logger.info(f"✅ Created Qdrant collection {name} (size={size})")

        with self._lock:
            self._collections[name] = now
        return True

    # ── internals ───────────────────────────────────────

    def _headers(self) -> Dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self.config.api_key:
            headers["api-key"] = self.config.api_key
        return headers

    def _request(self, method: str, path: str, body: Optional[dict] = None) -> Optional[dict]:
        url = f"{self.config.url.rstrip('/')}{path}"
        try:
            resp = self.session.request(
                method, url, json=body, headers=self._headers(), timeout=self.config.timeout
            )
        except requests.RequestException as e:
            logger.warning(f"Qdrant http error: {e}")
            return None

        if not 200 <= resp.status_code < 300:
            logger.warning(f"Qdrant HTTP {resp.status_code}: {(resp.text or '')[:300]}")
            return None

        try:
            data = resp.json()
        except ValueError:
            logger.warning(f"Qdrant returned non-JSON body: {(resp.text or '')[:300]}")
            return None
        return data if isinstance(data, dict) else None
