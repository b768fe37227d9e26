"""
Secrets router - single-secret import, classification and similarity search.
"""

import logging
import shutil
import tempfile
from pathlib import Path
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, File, Form, HTTPException, UploadFile
from pydantic import BaseModel, Field

from ...pipeline.ingest import IngestError
from ...pipeline.services import Services
from ...vector.qdrant_index import SimilarHit
from ..deps import get_services

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/secrets", tags=["secrets"])


# ── Request schemas ──────────────────────────────────────────

class ClassifyRequest(BaseModel):
    back_id: Optional[int] = None
    force: bool = False


class SearchRequest(BaseModel):
    query: str = Field(..., min_length=1)
    limit: int = Field(10, ge=1, le=200)
    min_score: float = Field(0.3, ge=0.0, le=1.0)
    filters: Optional[Dict[str, Any]] = None


def _hits(hits: List[SimilarHit]) -> List[Dict[str, Any]]:
    return [{"subject_id": h.subject_id, "score": h.score} for h in hits]


# ── Endpoints ────────────────────────────────────────────────

@router.post("")
def import_secret(
    front: UploadFile = File(...),
    back: Optional[UploadFile] = File(None),
    force: bool = Form(False),
    svc: Services = Depends(get_services),
):
    """Upload a front (and optional back) image, then classify them together."""
    with tempfile.TemporaryDirectory(prefix="psai-secret-") as tmp:
        paths = {}
        for side, upload in (("front", front), ("back", back)):
            if upload is None:
                continue
            dest = Path(tmp) / side
            with open(dest, "wb") as out:
                shutil.copyfileobj(upload.file, out)
            paths[side] = (dest, upload.filename or side)

        back_path, back_name = paths.get("back", (None, None))
        try:
            outcome = svc.ingest.import_secret(
                paths["front"][0], back_path, force=force,
                front_name=paths["front"][1], back_name=back_name,
            )
        except IngestError as e:
            raise HTTPException(status_code=400, detail=str(e))
    return outcome.to_dict()


@router.get("/{subject_id}")
def get_secret(subject_id: int, svc: Services = Depends(get_services)):
    subject = svc.store.get_subject(subject_id)
    if subject is None:
        raise HTTPException(status_code=404, detail=f"Secret {subject_id} not found.")
    data = subject.to_dict()
    data["facets"] = svc.store.get_facets(subject_id)
    return data


@router.post("/{subject_id}/classify")
def classify_secret(subject_id: int, req: Optional[ClassifyRequest] = None,
                    svc: Services = Depends(get_services)):
    """Classify (or re-classify with force) a secret, optionally with its back."""
    req = req or ClassifyRequest()
    if svc.store.get_subject(subject_id) is None:
        raise HTTPException(status_code=404, detail=f"Secret {subject_id} not found.")

    if req.back_id is not None:
        result = svc.orchestrator.process(subject_id, req.back_id, req.force)
    else:
        result = svc.orchestrator.process_subject(subject_id, force=req.force)
    return result.to_dict()


@router.get("/{subject_id}/similar")
def similar_secrets(
    subject_id: int,
    limit: int = 10,
    min_score: float = 0.5,
    svc: Services = Depends(get_services),
):
    hits = svc.searcher.find_similar(subject_id, limit=limit, min_score=min_score)
    return {"subject_id": subject_id, "results": _hits(hits)}


@router.post("/search")
def search_secrets(req: SearchRequest, svc: Services = Depends(get_services)):
    """Free-text semantic search over classified secrets."""
    hits = svc.searcher.search_text(req.query, limit=req.limit,
                                    min_score=req.min_score, filters=req.filters)
    return {"query": req.query, "results": _hits(hits)}
