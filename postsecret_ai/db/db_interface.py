"""
Repository interfaces for the classification pipeline.

The pipeline depends only on these protocols; SQLiteStore implements all
of them on one connection, and tests may substitute their own.
"""

from abc import ABC, abstractmethod
from typing import Any, Dict, Iterable, List, Optional, Tuple

from .models import EmbeddingRecord, Item, Job, Subject


class JobRepository(ABC):
    """Bulk job records."""

    @abstractmethod
    def create_job(self, uuid: str, source: str, staging_path: str,
                   settings: Dict[str, Any], total_items: int = 0) -> int:
        """INSERT a job in status 'new'. Returns job id."""
        ...

    @abstractmethod
    def get_job(self, job_id: int) -> Optional[Job]:
        ...

    @abstractmethod
    def list_jobs(self, limit: int = 50) -> List[Job]:
        """Most recent first."""
        ...

    @abstractmethod
    def set_job_status(self, job_id: int, status: str, last_error: Optional[str] = None) -> bool:
        """UPDATE status; stamps started_at the first time a job runs."""
        ...

    @abstractmethod
    def add_to_counters(self, job_id: int, processed: int = 0,
                        succeeded: int = 0, failed: int = 0) -> None:
        """Apply counter deltas in a single statement (never below zero)."""
        ...

    @abstractmethod
    def save_job_settings(self, job_id: int, settings: Dict[str, Any]) -> bool:
        ...

    @abstractmethod
    def delete_job(self, job_id: int) -> bool:
        """Remove the job and, by cascade, its items."""
        ...


class ItemRepository(ABC):
    """Per-file items of a bulk job."""

    @abstractmethod
    def add_items(self, job_id: int, rows: Iterable[Tuple[str, str, str]]) -> int:
        """Bulk INSERT (file_path, sha256, status) rows. Returns count."""
        ...

    @abstractmethod
    def get_item(self, item_id: int) -> Optional[Item]:
        ...

    @abstractmethod
    def pending_items(self, job_id: int, limit: int) -> List[Item]:
        """Oldest pending items first (id ascending)."""
        ...

    @abstractmethod
    def mark_processing(self, item_id: int) -> int:
        """Set status 'processing' and bump attempts. Returns the new attempt count."""
        ...

    @abstractmethod
    def finish_item(self, item_id: int, status: str, last_error: Optional[str] = None,
                    attachment_id: Optional[int] = None) -> None:
        ...

    @abstractmethod
    def count_items(self, job_id: int, status: Optional[str] = None) -> int:
        ...

    @abstractmethod
    def status_counts(self, job_id: int) -> Dict[str, int]:
        ...

    @abstractmethod
    def failed_items(self, job_id: int, limit: int = 100) -> List[Item]:
        """error/quarantined items, most recently updated first."""
        ...

    @abstractmethod
    def requeue_processing(self, job_id: int) -> int:
        """Items left in 'processing' by an interrupted batch → pending. Returns count."""
        ...

    @abstractmethod
    def reset_failed(self, job_id: int) -> int:
        """error/quarantined → pending with attempts 0. Returns count affected."""
        ...


class EmbeddingRepository(ABC):
    """Canonical embedding vectors keyed by (subject_id, model_version)."""

    @abstractmethod
    def get_embedding(self, subject_id: int, model: Optional[str] = None) -> Optional[EmbeddingRecord]:
        """Embedding for a subject; the most recently updated one when model is None."""
        ...

    @abstractmethod
    def upsert_embedding(self, subject_id: int, model: str, vector: List[float],
                         input_hash: str, force: bool = False) -> bool:
        """
        INSERT/REPLACE an embedding.

        Returns False (and writes nothing) when the stored input_hash for
        the same model already matches and force is False.
        """
        ...

    @abstractmethod
    def get_input_hash(self, subject_id: int, model: str) -> Optional[str]:
        ...

    @abstractmethod
    def all_embeddings(self, model: str, exclude_id: Optional[int] = None) -> List[Tuple[int, List[float]]]:
        ...

    @abstractmethod
    def delete_embedding(self, subject_id: int) -> bool:
        ...


class SubjectStore(ABC):
    """The stored images (secrets) the pipeline classifies."""

    @abstractmethod
    def create_subject(self, file_path: str, sha256: str = "", side: str = "front",
                       bulk_job_id: Optional[int] = None) -> int:
        ...

    @abstractmethod
    def get_subject(self, subject_id: int) -> Optional[Subject]:
        ...

    @abstractmethod
    def list_subjects(self, limit: int = 100, offset: int = 0) -> List[Subject]:
        """Subjects in id order."""
        ...

    @abstractmethod
    def find_by_hash(self, sha256: str, exclude_id: Optional[int] = None) -> Optional[Subject]:
        """Oldest subject with this content hash."""
        ...

    @abstractmethod
    def existing_hashes(self, hashes: Iterable[str]) -> set:
        """Subset of hashes already present in the store."""
        ...

    @abstractmethod
    def update_subject(self, subject_id: int, **fields: Any) -> bool:
        """UPDATE columns (payload, side, pair_id, duplicate_of, last_error)."""
        ...

    @abstractmethod
    def update_meta(self, subject_id: int, values: Dict[str, Any]) -> None:
        """Shallow-merge values into the subject's meta; None deletes a key."""
        ...

    @abstractmethod
    def set_pair(self, front_id: int, back_id: int) -> None:
        """Link front and back symmetrically."""
        ...

    @abstractmethod
    def replace_facets(self, subject_id: int, facets: Dict[str, List[str]]) -> None:
        ...

    @abstractmethod
    def get_facets(self, subject_id: int) -> Dict[str, List[str]]:
        ...

    @abstractmethod
    def subject_ids_with_facet(self, facet_type: str, values: Iterable[str]) -> set:
        ...
