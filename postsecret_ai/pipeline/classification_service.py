"""
Classification orchestrator - the full per-secret workflow.

Handles:
1. Classify front (+ back) via the vision model, unless already classified
2. Store the normalized payload, facets and review flags
3. Fill empty alt/caption/description fields from the payload
4. Embed + mirror to the ANN index (non-fatal on failure)
5. Image metadata (orientation, palette) for both sides
6. Mirror the result onto the paired back

process() never raises: every failure becomes a ProcessResult and a
bounded last_error on the subjects involved.
"""

import logging
import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from PIL import Image

from ..db.db_interface import EmbeddingRepository, SubjectStore
from ..db.models import SIDE_BACK, SIDE_FRONT, Subject, truncate_error
from ..utils.content_hash import hash_text
from ..utils.image_meta import compute_image_meta
from ..vector.qdrant_index import VectorIndex
from ..vector.text_embedding import EMPTY_INPUT_ERROR, EmbeddingClient, build_embedding_input
from ..vision.classifier import VisionClassifier
from ..vision.schema_guard import normalize
from ..vision.schemas import ClassificationPayload

logger = logging.getLogger(__name__)

DUPLICATE_LAST_ERROR = "Skipped: duplicate image."
DUPLICATE_ERROR = "Duplicate image."
MISSING_KEY_ERROR = "Missing OpenAI API key."

ALT_MAX_CHARS = 120
CAPTION_MAX_CHARS = 140
CAPTION_MAX_FACETS = 6


@dataclass
class ProcessResult:
    success: bool
    payload: Optional[ClassificationPayload] = None
    error: Optional[str] = None
    embedding_error: Optional[str] = None
    warnings: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": self.success,
            "payload": self.payload.to_dict() if self.payload else None,
            "error": self.error,
            "embedding_error": self.embedding_error,
            "warnings": list(self.warnings),
        }


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


# ── derived media fields ────────────────────────────────────

def _clip(text: str, limit: int) -> str:
    if len(text) <= limit:
        return text
    return text[:limit - 1].rstrip() + "…"


def format_caption(payload: ClassificationPayload) -> str:
    """'#topic #feeling #meaning' from up to 6 facets, at most 140 chars."""
    facets = (list(payload.topics) + list(payload.feelings) + list(payload.meanings))[:CAPTION_MAX_FACETS]
    if not facets:
        return ""
    caption = " ".join("#" + re.sub(r"[^a-z0-9_]", "", f.lower()) for f in facets)
    if len(caption) > CAPTION_MAX_CHARS:
        caption = caption[:CAPTION_MAX_CHARS - 3] + "…"
    return caption


def derive_media_fields(payload: ClassificationPayload, side: str) -> Dict[str, str]:
    """
    Alt/caption/description for one side.

    Descriptions are never derived when the secret contains PII.
    """
    pii = payload.moderation.contains_pii
    caption = format_caption(payload)
    if side == SIDE_BACK:
        art = payload.back.art_description
        alt = art or "Back of postcard"
        description = "" if pii else art
    else:
        art = payload.front.art_description
        alt = art or payload.secret_description or "Postcard front"
        description = "" if pii else payload.secret_description
    return {
        "alt": _clip(alt, ALT_MAX_CHARS),
        "caption": caption,
        "description": description,
    }


class ClassificationOrchestrator:
    """Runs one front/back pair through classify → store → embed → index."""

    def __init__(
        self,
        subjects: SubjectStore,
        embeddings: EmbeddingRepository,
        classifier: VisionClassifier,
        embedder: Optional[EmbeddingClient] = None,
        index: Optional[VectorIndex] = None,
    ):
        self.subjects = subjects
        self.embeddings = embeddings
        self.classifier = classifier
        self.embedder = embedder
        self.index = index

    # ── public API ──────────────────────────────────────

    def process_subject(self, subject_id: int, force: bool = False) -> ProcessResult:
        """Process a subject given either side; the front is treated as canonical."""
        subject = self.subjects.get_subject(subject_id)
        if subject is None:
            return ProcessResult(False, error="Invalid subject ID.")

        if subject.side == SIDE_BACK and subject.pair_id:
            return self.process(subject.pair_id, subject.id, force)
        return self.process(subject.id, subject.pair_id, force)

    def process(self, front_id: int, back_id: Optional[int] = None, force: bool = False) -> ProcessResult:
        front = self.subjects.get_subject(front_id) if front_id else None
        if front is None:
            return ProcessResult(False, error="Invalid front subject ID.")

        if front.duplicate_of:
            self.subjects.update_subject(front.id, last_error=DUPLICATE_LAST_ERROR)
            return ProcessResult(False, error=DUPLICATE_ERROR)

        back: Optional[Subject] = None
        if back_id:
            back = self.subjects.get_subject(back_id)
            if back is None:
                return ProcessResult(False, error="Invalid back subject ID.")

        ids = [front.id] + ([back.id] if back else [])

        if not self.classifier.config.api_key:
            self._set_last_error(ids, MISSING_KEY_ERROR)
            return ProcessResult(False, error=MISSING_KEY_ERROR)

        warnings: List[str] = []
        try:
            if front.payload is None or force:
                payload = self.classifier.classify(front.file_path, back.file_path if back else None)
                self._store_result(front.id, payload)
                self._apply_media_fields(front.id, payload, SIDE_FRONT)
                if back:
                    self._apply_media_fields(back.id, payload, SIDE_BACK)
                logger.info(f"Classified subject {front.id} ({len(payload.topics)} topics)")
            else:
                payload = normalize(front.payload)
                logger.debug(f"Subject {front.id} already classified, skipping model call")

            embedding_error = self._embed(front.id, payload, force, warnings)

            self._normalize_flags(front.id, payload)
            self._store_image_meta(front)
            if back:
                self._store_image_meta(back)
                self._mirror_to_back(front.id, back.id, payload)

            self._set_last_error(ids, None)
            return ProcessResult(True, payload, embedding_error=embedding_error, warnings=warnings)

        except Exception as e:
            msg = truncate_error(str(e) or type(e).__name__)
            logger.error(f"Processing subject {front.id} failed: {msg}")
            self._set_last_error(ids, msg)
            return ProcessResult(False, error=msg, warnings=warnings)

    # ── steps ───────────────────────────────────────────

    def _store_result(self, subject_id: int, payload: ClassificationPayload):
        review = payload.moderation.review_status
        self.subjects.update_subject(subject_id, payload=payload.to_dict())
        self.subjects.update_meta(subject_id, {
            **payload.facets(),
            "model": self.classifier.config.model,
            "prompt_version": self.classifier.prompt_version,
            "review_status": review,
            "is_vetted": review == "auto_vetted",
            "classified_at": _now(),
            "moderation_check": payload.annotations.get("moderation"),
        })
        self.subjects.replace_facets(subject_id, payload.facets())

    def _apply_media_fields(self, subject_id: int, payload: ClassificationPayload, side: str):
        subject = self.subjects.get_subject(subject_id)
        if subject is None:
            return
        derived = derive_media_fields(payload, side)
        updates = {k: v for k, v in derived.items() if v and not subject.meta.get(k)}
        if updates:
            self.subjects.update_meta(subject_id, updates)

    def _embed(self, subject_id: int, payload: ClassificationPayload,
               force: bool, warnings: List[str]) -> Optional[str]:
        """Embed + mirror. Returns an error string on failure, None otherwise."""
        if self.embedder is None:
            return None

        text = build_embedding_input(payload)
        if not text:
            return self._embedding_failed(subject_id, EMPTY_INPUT_ERROR, warnings)

        model = self.embedder.model
        input_hash = hash_text(text)
        if not force and self.embeddings.get_input_hash(subject_id, model) == input_hash:
            logger.debug(f"Embedding input unchanged for subject {subject_id}, skipping")
            return None

        result = self.embedder.embed_detailed(text, model)
        if result.vector is None:
            return self._embedding_failed(subject_id, result.error or "Embedding generation failed.", warnings)

        self.embeddings.upsert_embedding(subject_id, model, result.vector, input_hash, force=True)
        self.subjects.update_meta(subject_id, {
            "embedding_status": "ok",
            "embedding_error": None,
            "embedding_model": model,
        })

        if self.index is not None and self.index.enabled:
            ok = self.index.upsert(subject_id, result.vector, self._index_payload(payload), model)
            if not ok:
                warnings.append("ANN index update failed.")
        return None

    def _embedding_failed(self, subject_id: int, error: str, warnings: List[str]) -> str:
        logger.warning(f"Embedding failed for subject {subject_id}: {error}")
        self.subjects.update_meta(subject_id, {
            "embedding_status": "failed",
            "embedding_error": truncate_error(error),
        })
        warnings.append(f"Embedding failed: {error}")
        return error

    @staticmethod
    def _index_payload(payload: ClassificationPayload) -> Dict[str, Any]:
        return {
            **payload.facets(),
            "review_status": payload.moderation.review_status,
        }

    def _normalize_flags(self, subject_id: int, payload: ClassificationPayload):
        subject = self.subjects.get_subject(subject_id)
        if subject is not None and subject.side not in (SIDE_FRONT, SIDE_BACK):
            self.subjects.update_subject(subject_id, side=SIDE_FRONT)
        review = payload.moderation.review_status
        self.subjects.update_meta(subject_id, {
            "review_status": review,
            "is_vetted": review == "auto_vetted",
        })

    def _store_image_meta(self, subject: Subject):
        try:
            meta = compute_image_meta(subject.file_path)
        except (OSError, ValueError, Image.DecompressionBombError) as e:
            logger.warning(f"Image metadata failed for subject {subject.id}: {e}")
            return
        self.subjects.update_meta(subject.id, meta)

    def _mirror_to_back(self, front_id: int, back_id: int, payload: ClassificationPayload):
        self.subjects.set_pair(front_id, back_id)
        front_meta = self.subjects.get_subject(front_id).meta
        review = front_meta.get("review_status", payload.moderation.review_status)

        self.subjects.update_subject(back_id, payload=payload.to_dict())
        self.subjects.replace_facets(back_id, payload.facets())
        self.subjects.update_meta(back_id, {
            **payload.facets(),
            "model": front_meta.get("model"),
            "prompt_version": front_meta.get("prompt_version"),
            "review_status": review,
            "is_vetted": review == "auto_vetted",
            "classified_at": front_meta.get("classified_at") or _now(),
        })

    def _set_last_error(self, ids: List[int], message: Optional[str]):
        for sid in ids:
            self.subjects.update_subject(sid, last_error=message)
