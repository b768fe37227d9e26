"""
Bulk job service - job/item lifecycle and step-driven batch processing.

A job is created from an upload (loose images and/or ZIP archives) or from
a list of existing subjects to reclassify. Nothing runs in the background:
an external driver (the CLI `run` loop, an API caller, a scheduler) calls
process_batch() repeatedly while the job is running. Each call is bounded
by the batch size and max step time, and checks the job status between
items so pause/stop take effect at the next item boundary.
"""

import csv
import io
import logging
import shutil
import time
import uuid as uuid_lib
from dataclasses import asdict, dataclass
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

from ..db.db_interface import ItemRepository, JobRepository, SubjectStore
from ..db.models import (
    ATTACHMENT_REF_PREFIX,
    ITEM_ERROR,
    ITEM_PENDING,
    ITEM_QUARANTINED,
    ITEM_SKIPPED,
    ITEM_SUCCESS,
    JOB_COMPLETED,
    JOB_FAILED,
    JOB_NEW,
    JOB_PAUSED,
    JOB_RUNNING,
    JOB_STATUSES,
    JOB_STOPPED,
    SIDE_FRONT,
    Item,
    Job,
    truncate_error,
)
from ..utils.config import BulkConfig
from ..utils.content_hash import compute_content_hash
from .classification_service import ClassificationOrchestrator
from .ingest import import_into_library
from .staging import FileSpec, StagingError, relative_posix, stage_files

logger = logging.getLogger(__name__)

TRANSITIONS: Dict[str, Tuple[str, ...]] = {
    JOB_NEW: (JOB_RUNNING,),
    JOB_RUNNING: (JOB_PAUSED, JOB_STOPPED, JOB_COMPLETED, JOB_FAILED),
    JOB_PAUSED: (JOB_RUNNING, JOB_STOPPED),
    JOB_STOPPED: (JOB_RUNNING,),
    JOB_COMPLETED: (JOB_RUNNING,),
    JOB_FAILED: (),
}

ERROR_CSV_HEADER = ["Item ID", "File Path", "Status", "Attempts", "Last Error", "Last Updated"]


class JobCreationError(ValueError):
    """Upload rejected; no job row and no staging directory were kept."""


class InvalidTransitionError(ValueError):
    pass


class JobNotFoundError(LookupError):
    pass


@dataclass
class BatchResult:
    processed: int = 0
    succeeded: int = 0
    failed: int = 0
    status: str = JOB_RUNNING
    has_more: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


class BulkJobService:
    """Owns bulk jobs and their items; drives items through the orchestrator."""

    def __init__(
        self,
        jobs: JobRepository,
        items: ItemRepository,
        subjects: SubjectStore,
        orchestrator: ClassificationOrchestrator,
        config: Optional[BulkConfig] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.jobs = jobs
        self.items = items
        self.subjects = subjects
        self.orchestrator = orchestrator
        self.config = config or BulkConfig()
        self.clock = clock

    # ── creation ────────────────────────────────────────

    def create_job(self, files: Sequence[FileSpec], source: Optional[str] = None) -> Job:
        """
        Stage an upload and create a job with one item per kept image.

        Files whose content hash is already in the store, or was already
        seen earlier in this upload, become 'skipped' items.

        Raises:
            JobCreationError: Bad archive, no images, or a ZIP cap exceeded
        """
        job_uuid = str(uuid_lib.uuid4())
        staging = Path(self.config.staging_dir) / job_uuid
        job_id: Optional[int] = None

        try:
            staged = stage_files(
                files,
                staging,
                self.config.allowed_extensions,
                max_files=self.config.max_zip_files,
                max_bytes=self.config.max_zip_bytes,
            )
            if not staged.files:
                raise JobCreationError("No valid image files found in upload.")

            hashes = [compute_content_hash(p) for p in staged.files]
            existing = self.subjects.existing_hashes(hashes)
            seen = set()
            rows = []
            for path, sha in zip(staged.files, hashes):
                status = ITEM_SKIPPED if (sha in existing or sha in seen) else ITEM_PENDING
                seen.add(sha)
                rows.append((relative_posix(path, staging), sha, status))

            job_id = self.jobs.create_job(
                job_uuid,
                source or staged.source,
                str(staging),
                settings=self._default_settings(),
                total_items=len(rows),
            )
            self.items.add_items(job_id, rows)

        except StagingError as e:
            self._discard(staging, job_id)
            raise JobCreationError(str(e)) from e
        except JobCreationError:
            self._discard(staging, job_id)
            raise
        except Exception as e:
            self._discard(staging, job_id)
            logger.error(f"Job creation failed: {e}")
            raise JobCreationError(f"Job creation failed: {e}") from e

        skipped = sum(1 for r in rows if r[2] == ITEM_SKIPPED)
        if staged.rejected:
            logger.warning(f"Job {job_id}: {len(staged.rejected)} unsafe/unreadable entries rejected")
        logger.info(f"✅ Created job {job_id} ({staged.source}): {len(rows)} items, {skipped} skipped")
        return self.jobs.get_job(job_id)

    def create_reclassify_job(self, subject_ids: Sequence[int]) -> Job:
        """Job whose items re-run classification on existing subjects."""
        ids: List[int] = []
        for sid in subject_ids:
            try:
                sid = int(sid)
            except (TypeError, ValueError):
                continue
            if sid > 0 and sid not in ids:
                ids.append(sid)
        if not ids:
            raise JobCreationError("No subjects to reclassify.")

        rows = [(f"{ATTACHMENT_REF_PREFIX}{sid}", "", ITEM_PENDING) for sid in ids]
        job_id = self.jobs.create_job(
            str(uuid_lib.uuid4()),
            f"reclassify:{len(ids)}",
            "",
            settings=self._default_settings(),
            total_items=len(rows),
        )
        self.items.add_items(job_id, rows)
        logger.info(f"Created reclassify job {job_id}: {len(ids)} subjects")
        return self.jobs.get_job(job_id)

    def _default_settings(self) -> Dict[str, Any]:
        return {
            "batch_size": self.config.batch_size,
            "max_step_time": self.config.max_step_time,
        }

    def _discard(self, staging: Path, job_id: Optional[int]):
        if job_id is not None:
            try:
                self.jobs.delete_job(job_id)
            except Exception as e:
                logger.warning(f"Could not remove partial job {job_id}: {e}")
        if staging.exists():
            shutil.rmtree(staging, ignore_errors=True)

    # ── status ──────────────────────────────────────────

    def get_job(self, job_id: int) -> Job:
        job = self.jobs.get_job(job_id)
        if job is None:
            raise JobNotFoundError(f"Job {job_id} not found.")
        return job

    def list_jobs(self, limit: int = 50) -> List[Job]:
        return self.jobs.list_jobs(limit)

    def update_job_status(self, job_id: int, status: str) -> Job:
        """
        Move a job to a new status.

        Setting the current status again is a no-op. completed → running is
        only allowed while pending items exist (after retry_failed).

        Raises:
            JobNotFoundError: Unknown job id
            InvalidTransitionError: Unknown status or disallowed transition
        """
        if status not in JOB_STATUSES:
            raise InvalidTransitionError(f"Unknown job status: {status}")

        job = self.get_job(job_id)
        if job.status == status:
            return job

        if status not in TRANSITIONS.get(job.status, ()):
            raise InvalidTransitionError(f"Cannot move job {job_id} from {job.status} to {status}.")
        if job.status == JOB_COMPLETED and not self.items.count_items(job_id, ITEM_PENDING):
            raise InvalidTransitionError(f"Job {job_id} is completed and has no pending items.")

        if status == JOB_RUNNING:
            requeued = self.items.requeue_processing(job_id)
            if requeued:
                logger.warning(f"Job {job_id}: requeued {requeued} interrupted items")

        self.jobs.set_job_status(job_id, status)
        logger.info(f"Job {job_id}: {job.status} → {status}")
        return self.get_job(job_id)

    def start_job(self, job_id: int) -> Job:
        return self.update_job_status(job_id, JOB_RUNNING)

    def pause_job(self, job_id: int) -> Job:
        return self.update_job_status(job_id, JOB_PAUSED)

    def stop_job(self, job_id: int) -> Job:
        return self.update_job_status(job_id, JOB_STOPPED)

    def save_settings(self, job_id: int, settings: Dict[str, Any]) -> Job:
        """Merge batch_size / max_step_time into the job's settings."""
        job = self.get_job(job_id)
        merged = dict(job.settings)
        if settings.get("batch_size") is not None:
            batch_size = int(settings["batch_size"])
            if batch_size < 1:
                raise ValueError("batch_size must be >= 1")
            merged["batch_size"] = batch_size
        if settings.get("max_step_time") is not None:
            max_step_time = float(settings["max_step_time"])
            if max_step_time <= 0:
                raise ValueError("max_step_time must be > 0")
            merged["max_step_time"] = max_step_time
        self.jobs.save_job_settings(job_id, merged)
        return self.get_job(job_id)

    # ── processing ──────────────────────────────────────

    def process_batch(self, job_id: int, batch_size: Optional[int] = None) -> BatchResult:
        """
        Process up to batch_size pending items of a running job.

        Item failures are recorded on the item and never abort the batch.
        A storage failure marks the whole job failed.
        """
        job = self.get_job(job_id)
        if job.status != JOB_RUNNING:
            has_more = self.items.count_items(job_id, ITEM_PENDING) > 0
            return BatchResult(status=job.status, has_more=has_more)

        limit = batch_size or int(job.settings.get("batch_size") or self.config.batch_size)
        max_step_time = float(job.settings.get("max_step_time") or self.config.max_step_time)
        started = self.clock()
        result = BatchResult()

        try:
            pending = self.items.pending_items(job_id, limit)
            try:
                for item in pending:
                    attempts = self.items.mark_processing(item.id)
                    ok, subject_id, error = self._process_item(job, item)

                    if ok:
                        self.items.finish_item(item.id, ITEM_SUCCESS, None, subject_id)
                        result.succeeded += 1
                    else:
                        status = ITEM_QUARANTINED if attempts >= self.config.max_attempts else ITEM_ERROR
                        self.items.finish_item(item.id, status, truncate_error(error), subject_id)
                        result.failed += 1
                        logger.warning(f"Job {job_id} item {item.id} {status} (attempt {attempts}): {error}")
                    result.processed += 1

                    # Cooperative cancellation: pause/stop lands between items
                    current = self.jobs.get_job(job_id)
                    if current is None or current.status != JOB_RUNNING:
                        break
                    if self.clock() - started >= max_step_time:
                        logger.debug(f"Job {job_id}: step time budget reached")
                        break
            finally:
                if result.processed:
                    self.jobs.add_to_counters(job_id, result.processed, result.succeeded, result.failed)

            remaining = self.items.count_items(job_id, ITEM_PENDING)
            current = self.get_job(job_id)
            result.status = current.status
            if remaining == 0 and current.status == JOB_RUNNING:
                self.jobs.set_job_status(job_id, JOB_COMPLETED)
                result.status = JOB_COMPLETED
                logger.info(f"✅ Job {job_id} completed")
            result.has_more = remaining > 0

        except Exception as e:
            msg = truncate_error(str(e) or type(e).__name__)
            logger.error(f"Job {job_id} failed during batch: {msg}")
            self.jobs.set_job_status(job_id, JOB_FAILED, last_error=msg)
            result.status = JOB_FAILED
            result.has_more = False

        return result

    def _process_item(self, job: Job, item: Item) -> Tuple[bool, Optional[int], Optional[str]]:
        """Returns (success, subject id, error)."""
        try:
            if item.is_reference:
                subject_id = item.referenced_subject_id
                if subject_id is None:
                    return False, None, f"Invalid subject reference: {item.file_path}"
                outcome = self.orchestrator.process_subject(subject_id, force=True)
                return outcome.success, subject_id, outcome.error

            # A previous failed attempt already imported the file
            if item.attachment_id and self.subjects.get_subject(item.attachment_id):
                subject_id = item.attachment_id
            else:
                source = self._resolve_staged(job, item)
                if source is None:
                    return False, None, "Invalid file path (security check failed)."
                if not source.is_file():
                    return False, None, f"File not found: {item.file_path}"
                subject_id = self._import_file(job, item, source)

            outcome = self.orchestrator.process(subject_id, None, False)
            return outcome.success, subject_id, outcome.error

        except Exception as e:
            logger.error(f"Item {item.id} raised: {e}")
            return False, None, str(e) or type(e).__name__

    @staticmethod
    def _resolve_staged(job: Job, item: Item) -> Optional[Path]:
        if not job.staging_path:
            return None
        root = Path(job.staging_path).resolve()
        target = (root / item.file_path).resolve()
        try:
            target.relative_to(root)
        except ValueError:
            return None
        return target

    def _import_file(self, job: Job, item: Item, source: Path) -> int:
        """Copy a staged file into the library and register it as a front subject."""
        library = Path(self.config.library_dir) / job.uuid
        return import_into_library(self.subjects, source, library, SIDE_FRONT, job.id, item.sha256 or None)

    # ── errors / maintenance ────────────────────────────

    def get_errors(self, job_id: int, limit: int = 100) -> List[Item]:
        self.get_job(job_id)
        return self.items.failed_items(job_id, limit)

    def retry_failed(self, job_id: int) -> int:
        """error/quarantined → pending with attempts reset. Returns count."""
        self.get_job(job_id)
        count = self.items.reset_failed(job_id)
        if count:
            # Reset items leave the processed tally until they run again
            self.jobs.add_to_counters(job_id, processed=-count, failed=-count)
            logger.info(f"Job {job_id}: {count} failed items requeued")
        return count

    def delete_job(self, job_id: int) -> bool:
        """Delete the job, its items and its staging directory."""
        job = self.jobs.get_job(job_id)
        if job is None:
            return False
        deleted = self.jobs.delete_job(job_id)
        if job.staging_path:
            staging = Path(job.staging_path)
            root = Path(self.config.staging_dir).resolve()
            try:
                staging.resolve().relative_to(root)
            except ValueError:
                logger.warning(f"Job {job_id}: staging path outside staging root, not removed: {staging}")
                return deleted
            if staging.exists():
                shutil.rmtree(staging)
        logger.info(f"Deleted job {job_id}")
        return deleted

    def export_errors_csv(self, job_id: int, limit: int = 10000) -> str:
        buf = io.StringIO()
        writer = csv.writer(buf)
        writer.writerow(ERROR_CSV_HEADER)
        for item in self.get_errors(job_id, limit):
            writer.writerow([
                item.id,
                item.file_path,
                item.status,
                item.attempts,
                item.last_error or "",
                item.updated_at or "",
            ])
        return buf.getvalue()
