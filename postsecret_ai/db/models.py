"""
Row models for the pipeline's storage layer.

Plain dataclasses; the repositories build them from sqlite3.Row objects and
the API/CLI layers render them with to_dict().
"""

from dataclasses import asdict, dataclass, field
from typing import Any, Dict, List, Optional

# ── Job statuses ────────────────────────────────────────────
JOB_NEW = "new"
JOB_RUNNING = "running"
JOB_PAUSED = "paused"
JOB_COMPLETED = "completed"
JOB_FAILED = "failed"
JOB_STOPPED = "stopped"

JOB_STATUSES = (JOB_NEW, JOB_RUNNING, JOB_PAUSED, JOB_COMPLETED, JOB_FAILED, JOB_STOPPED)

# ── Item statuses ───────────────────────────────────────────
ITEM_PENDING = "pending"
ITEM_PROCESSING = "processing"
ITEM_SUCCESS = "success"
ITEM_ERROR = "error"
ITEM_QUARANTINED = "quarantined"
ITEM_SKIPPED = "skipped"

ITEM_STATUSES = (ITEM_PENDING, ITEM_PROCESSING, ITEM_SUCCESS, ITEM_ERROR, ITEM_QUARANTINED, ITEM_SKIPPED)
FAILED_ITEM_STATUSES = (ITEM_ERROR, ITEM_QUARANTINED)

SIDE_FRONT = "front"
SIDE_BACK = "back"

LAST_ERROR_LIMIT = 500

# Reclassify items reference an existing subject instead of a staged file
ATTACHMENT_REF_PREFIX = "attachment:"


def truncate_error(message: Optional[str]) -> Optional[str]:
    if message is None:
        return None
    return str(message)[:LAST_ERROR_LIMIT]


@dataclass
class Job:
    id: int
    uuid: str
    status: str
    source: str
    staging_path: str
    total_items: int = 0
    processed_items: int = 0
    success_count: int = 0
    fail_count: int = 0
    last_error: Optional[str] = None
    settings: Dict[str, Any] = field(default_factory=dict)
    created_at: Optional[str] = None
    started_at: Optional[str] = None
    updated_at: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class Item:
    id: int
    job_id: int
    file_path: str
    sha256: str
    status: str
    attempts: int = 0
    last_error: Optional[str] = None
    attachment_id: Optional[int] = None
    created_at: Optional[str] = None
    updated_at: Optional[str] = None

    @property
    def is_reference(self) -> bool:
        return self.file_path.startswith(ATTACHMENT_REF_PREFIX)

    @property
    def referenced_subject_id(self) -> Optional[int]:
        if not self.is_reference:
            return None
        try:
            return int(self.file_path[len(ATTACHMENT_REF_PREFIX):])
        except ValueError:
            return None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class Subject:
    """One stored image (a secret's front or back) plus its classification."""
    id: int
    file_path: str
    sha256: str = ""
    side: str = SIDE_FRONT
    pair_id: Optional[int] = None
    duplicate_of: Optional[int] = None
    bulk_job_id: Optional[int] = None
    payload: Optional[Dict[str, Any]] = None
    meta: Dict[str, Any] = field(default_factory=dict)
    last_error: Optional[str] = None
    created_at: Optional[str] = None
    updated_at: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class EmbeddingRecord:
    subject_id: int
    model_version: str
    vector: List[float]
    dimension: int
    input_hash: str = ""
    created_at: Optional[str] = None
    updated_at: Optional[str] = None
