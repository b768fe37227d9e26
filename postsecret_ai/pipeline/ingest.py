"""
Single-secret ingest - one front image plus an optional back.

Each side is copied into the permanent library, hashed, checked for an
exact duplicate, and registered as a subject with its side. The pair is
linked before classification so both sides go out in one vision request.
A duplicate front is registered and paired but not re-classified.
"""

import logging
import shutil
import uuid as uuid_lib
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

from ..db.db_interface import SubjectStore
from ..db.models import SIDE_BACK, SIDE_FRONT
from ..utils.config import BulkConfig
from ..utils.content_hash import compute_content_hash
from .classification_service import ClassificationOrchestrator, ProcessResult
from .staging import extension, sanitize_filename

logger = logging.getLogger(__name__)

SINGLE_UPLOAD_FOLDER = "single"


class IngestError(ValueError):
    """The source image is missing or not an allowed image type."""


@dataclass
class IngestResult:
    front_id: int
    back_id: Optional[int]
    duplicate_of: Optional[int]
    result: ProcessResult

    def to_dict(self) -> Dict[str, Any]:
        data = self.result.to_dict()
        data.update({
            "front_id": self.front_id,
            "back_id": self.back_id,
            "duplicate_of": self.duplicate_of,
        })
        return data


def import_into_library(
    subjects: SubjectStore,
    source: Union[str, Path],
    folder: Path,
    side: str = SIDE_FRONT,
    bulk_job_id: Optional[int] = None,
    sha256: Optional[str] = None,
    name: Optional[str] = None,
) -> int:
    """Copy a file into a library folder and register it as a subject.

    An exact hash match against an existing subject sets duplicate_of.
    Returns the new subject id.
    """
    source = Path(source)
    folder.mkdir(parents=True, exist_ok=True)
    dest = folder / f"{uuid_lib.uuid4().hex[:12]}-{sanitize_filename(name or source.name)}"
    shutil.copyfile(source, dest)

    sha = sha256 or compute_content_hash(dest)
    subject_id = subjects.create_subject(str(dest), sha, side, bulk_job_id)
    original = subjects.find_by_hash(sha, exclude_id=subject_id)
    if original is not None:
        subjects.update_subject(subject_id, duplicate_of=original.id)
        logger.info(f"Subject {subject_id} duplicates subject {original.id}")
    return subject_id


class SecretIngestService:
    def __init__(self, subjects: SubjectStore, orchestrator: ClassificationOrchestrator,
                 config: Optional[BulkConfig] = None):
        self.subjects = subjects
        self.orchestrator = orchestrator
        self.config = config or BulkConfig()

    def import_secret(self, front_path: Union[str, Path], back_path: Union[str, Path, None] = None,
                      force: bool = False, front_name: Optional[str] = None,
                      back_name: Optional[str] = None) -> IngestResult:
        """
        Import a front (and optional back) image and classify them together.

        Args:
            front_path: Front image file
            back_path: Back image file, if the postcard has one
            force: Passed through to the orchestrator
            front_name / back_name: Display names for uploads saved under temp names

        Raises:
            IngestError: A side is missing or has a disallowed extension
        """
        self._check(front_path, front_name)
        if back_path is not None:
            self._check(back_path, back_name)

        folder = Path(self.config.library_dir) / SINGLE_UPLOAD_FOLDER
        front_id = import_into_library(self.subjects, front_path, folder, SIDE_FRONT, name=front_name)
        back_id = None
        if back_path is not None:
            back_id = import_into_library(self.subjects, back_path, folder, SIDE_BACK, name=back_name)
            self.subjects.set_pair(front_id, back_id)

        duplicate_of = self.subjects.get_subject(front_id).duplicate_of
        result = self.orchestrator.process(front_id, back_id, force)
        if result.success:
            logger.info(f"✅ Imported secret {front_id}" + (f" with back {back_id}" if back_id else ""))
        else:
            logger.warning(f"Imported secret {front_id} not classified: {result.error}")
        return IngestResult(front_id, back_id, duplicate_of, result)

    def _check(self, path: Union[str, Path], name: Optional[str]):
        p = Path(path)
        if not p.is_file():
            raise IngestError(f"File not found: {p}")
        allowed: List[str] = self.config.allowed_extensions
        if extension(name or p.name) not in allowed:
            raise IngestError(f"Unsupported image type: {name or p.name}")
