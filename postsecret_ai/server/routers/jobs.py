"""
Jobs router - bulk job creation, control and inspection.

Processing is step-driven: callers (or `psai run`) POST /jobs/{id}/step
repeatedly while the job is running.
"""

import logging
import shutil
import tempfile
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

from fastapi import APIRouter, Depends, File, Form, HTTPException, UploadFile
from fastapi.responses import Response
from pydantic import BaseModel, Field

from ...pipeline.bulk_jobs import InvalidTransitionError, JobCreationError, JobNotFoundError
from ...pipeline.services import Services
from ..deps import get_services

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/jobs", tags=["jobs"])


# ── Request schemas ──────────────────────────────────────────

class ReclassifyRequest(BaseModel):
    subject_ids: List[int] = Field(..., min_length=1)


class StatusRequest(BaseModel):
    status: str


class StepRequest(BaseModel):
    batch_size: Optional[int] = Field(None, ge=1, le=1000)


class SettingsRequest(BaseModel):
    batch_size: Optional[int] = Field(None, ge=1, le=1000)
    max_step_time: Optional[float] = Field(None, gt=0, le=3600)


def _call(fn: Callable, *args, **kwargs) -> Any:
    """Run a service call, mapping pipeline errors to HTTP errors."""
    try:
        return fn(*args, **kwargs)
    except JobNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except InvalidTransitionError as e:
        raise HTTPException(status_code=409, detail=str(e))
    except (JobCreationError, ValueError) as e:
        raise HTTPException(status_code=400, detail=str(e))


def _job_view(svc: Services, job_id: int) -> Dict[str, Any]:
    job = _call(svc.bulk.get_job, job_id)
    data = job.to_dict()
    data["item_counts"] = svc.store.status_counts(job_id)
    return data


# ── Creation ─────────────────────────────────────────────────

@router.post("")
def create_job(
    files: List[UploadFile] = File(...),
    source: Optional[str] = Form(None),
    svc: Services = Depends(get_services),
):
    """Upload loose images and/or ZIP archives as a new job."""
    with tempfile.TemporaryDirectory(prefix="psai-upload-") as tmp:
        specs = []
        for i, upload in enumerate(files):
            name = upload.filename or f"upload-{i}"
            dest = Path(tmp) / f"{i:05d}"
            with open(dest, "wb") as out:
                shutil.copyfileobj(upload.file, out)
            specs.append((name, dest))

        job = _call(svc.bulk.create_job, specs, source)
    return _job_view(svc, job.id)


@router.post("/reclassify")
def create_reclassify_job(req: ReclassifyRequest, svc: Services = Depends(get_services)):
    job = _call(svc.bulk.create_reclassify_job, req.subject_ids)
    return _job_view(svc, job.id)


# ── Inspection ───────────────────────────────────────────────

@router.get("")
def list_jobs(limit: int = 50, svc: Services = Depends(get_services)):
    return {"jobs": [j.to_dict() for j in svc.bulk.list_jobs(limit)]}


@router.get("/{job_id}")
def get_job(job_id: int, svc: Services = Depends(get_services)):
    return _job_view(svc, job_id)


@router.get("/{job_id}/errors")
def get_errors(job_id: int, limit: int = 100, svc: Services = Depends(get_services)):
    items = _call(svc.bulk.get_errors, job_id, limit)
    return {"job_id": job_id, "errors": [i.to_dict() for i in items]}


@router.get("/{job_id}/errors.csv")
def export_errors(job_id: int, svc: Services = Depends(get_services)):
    body = _call(svc.bulk.export_errors_csv, job_id)
    return Response(
        content=body,
        media_type="text/csv",
        headers={"Content-Disposition": f'attachment; filename="job-{job_id}-errors.csv"'},
    )


# ── Control ──────────────────────────────────────────────────

@router.post("/{job_id}/start")
def start_job(job_id: int, svc: Services = Depends(get_services)):
    return _call(svc.bulk.start_job, job_id).to_dict()


@router.post("/{job_id}/pause")
def pause_job(job_id: int, svc: Services = Depends(get_services)):
    return _call(svc.bulk.pause_job, job_id).to_dict()


@router.post("/{job_id}/stop")
def stop_job(job_id: int, svc: Services = Depends(get_services)):
    return _call(svc.bulk.stop_job, job_id).to_dict()


@router.put("/{job_id}/status")
def update_status(job_id: int, req: StatusRequest, svc: Services = Depends(get_services)):
    return _call(svc.bulk.update_job_status, job_id, req.status).to_dict()


@router.post("/{job_id}/step")
def process_step(job_id: int, req: Optional[StepRequest] = None, svc: Services = Depends(get_services)):
    """Process one bounded batch of a running job."""
    batch_size = req.batch_size if req else None
    return _call(svc.bulk.process_batch, job_id, batch_size).to_dict()


@router.post("/{job_id}/retry")
def retry_failed(job_id: int, svc: Services = Depends(get_services)):
    return {"job_id": job_id, "reset": _call(svc.bulk.retry_failed, job_id)}


@router.put("/{job_id}/settings")
def save_settings(job_id: int, req: SettingsRequest, svc: Services = Depends(get_services)):
    return _call(svc.bulk.save_settings, job_id, req.model_dump(exclude_none=True)).to_dict()


@router.delete("/{job_id}")
def delete_job(job_id: int, svc: Services = Depends(get_services)):
    if not svc.bulk.delete_job(job_id):
        raise HTTPException(status_code=404, detail=f"Job {job_id} not found.")
    return {"job_id": job_id, "deleted": True}
