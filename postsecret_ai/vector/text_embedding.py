"""
Text embeddings for semantic search over classified secrets.

The embedding input is a compact rendering of the payload's facets
("Topics: a, b. Feelings: c ..."), sent once to an OpenAI-compatible
/embeddings endpoint and L2-normalized with numpy.

Failures never raise: embed() returns None and embed_detailed() carries
the reason, so callers can treat the step as non-fatal.

Usage:
    client = EmbeddingClient(openai_cfg, embedding_cfg)
    vec = client.embed(build_embedding_input(payload))
"""

import logging
from dataclasses import dataclass
from typing import List, Optional

import numpy as np
import requests

from ..utils.config import EmbeddingConfig, OpenAIConfig
from ..vision.schemas import ClassificationPayload

logger = logging.getLogger(__name__)

# Known output sizes; a mismatch only warns since providers may truncate.
KNOWN_DIMENSIONS = {
    "text-embedding-3-small": 1536,
    "text-embedding-3-large": 3072,
    "text-embedding-ada-002": 1536,
}

EMPTY_INPUT_ERROR = "Empty embedding input."


@dataclass
class EmbeddingResult:
    vector: Optional[List[float]]
    error: Optional[str] = None
    dimension: int = 0

    @property
    def ok(self) -> bool:
        return self.vector is not None


def build_embedding_input(payload: ClassificationPayload) -> str:
    """
    Render the facets that describe a secret as one embedding input string.

    Format: "Secret: <desc>. Topics: a, b. Feelings: c. ... Wisdom: <line>"
    Empty fields are skipped; style is skipped when unknown.
    """
    parts = []
    if payload.secret_description:
        parts.append(f"Secret: {payload.secret_description}")
    for label, values in (
        ("Topics", payload.topics),
        ("Feelings", payload.feelings),
        ("Meanings", payload.meanings),
        ("Vibe", payload.vibe),
    ):
        if values:
            parts.append(f"{label}: {', '.join(values)}")
    if payload.style and payload.style != "unknown":
        parts.append(f"Style: {payload.style}")
    if payload.locations:
        parts.append(f"Locations: {', '.join(payload.locations)}")
    if payload.wisdom:
        parts.append(f"Wisdom: {payload.wisdom}")
    return ". ".join(parts)


def l2_normalize(vector) -> np.ndarray:
    """Unit-length copy of vector; a zero vector comes back unchanged."""
    vec = np.asarray(vector, dtype=np.float64)
    norm = np.linalg.norm(vec)
    if norm > 0:
        vec = vec / norm
    return vec


class EmbeddingClient:
    """Embedding generation via an OpenAI-compatible /embeddings endpoint."""

    def __init__(
        self,
        openai: OpenAIConfig,
        config: Optional[EmbeddingConfig] = None,
        session: Optional[requests.Session] = None,
    ):
        self.openai = openai
        self.config = config or EmbeddingConfig()
        self.session = session or requests.Session()
        self._embed_url = f"{openai.api_base.rstrip('/')}/embeddings"

        logger.info(f"EmbeddingClient initialized (model={self.config.model})")

    @property
    def model(self) -> str:
        return self.config.model

    def embed(self, text: str, model: Optional[str] = None) -> Optional[List[float]]:
        """Return an L2-normalized vector, or None on any failure."""
        return self.embed_detailed(text, model).vector

    def embed_detailed(self, text: str, model: Optional[str] = None) -> EmbeddingResult:
        model = model or self.config.model

        if not text or not text.strip():
            return EmbeddingResult(None, EMPTY_INPUT_ERROR)
        if not self.openai.api_key:
            return EmbeddingResult(None, "Missing OpenAI API key.")

        try:
            resp = self.session.post(
                self._embed_url,
                json={"model": model, "input": text},
                headers={
                    "Authorization": f"Bearer {self.openai.api_key}",
                    "Content-Type": "application/json",
                },
                timeout=self.config.timeout,
            )
        except requests.RequestException as e:
            logger.error(f"Embedding request failed: {e}")
            return EmbeddingResult(None, f"Transport error: {e}")

        if not 200 <= resp.status_code < 300:
            body = (resp.text or "")[:500]
            logger.error(f"Embedding API HTTP {resp.status_code}: {body}")
            return EmbeddingResult(None, f"HTTP {resp.status_code}: {body}")

        try:
            raw = resp.json()["data"][0]["embedding"]
        except (ValueError, KeyError, IndexError, TypeError) as e:
            logger.error(f"Invalid embedding response: {(resp.text or '')[:200]}")
            return EmbeddingResult(None, f"Malformed response: {e}")

        if not isinstance(raw, list) or not raw:
            logger.error("Empty embeddings response")
            return EmbeddingResult(None, "Empty embedding array.")

        try:
            vec = l2_normalize(raw)
        except (TypeError, ValueError) as e:
            return EmbeddingResult(None, f"Malformed response: {e}")

        dimension = int(vec.shape[0])
        expected = KNOWN_DIMENSIONS.get(model)
        if expected and expected != dimension:
            logger.warning(f"Embedding dimension {dimension} != expected {expected} for {model}")

        return EmbeddingResult(vec.tolist(), None, dimension)
