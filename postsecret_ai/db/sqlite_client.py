"""
SQLite implementation of every pipeline repository.

One connection, WAL journal, foreign keys on, sqlite3.Row rows. Vectors
and JSON documents are stored as JSON text.
"""

import json
import logging
import sqlite3
import threading
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Tuple

from .db_interface import EmbeddingRepository, ItemRepository, JobRepository, SubjectStore
from .models import (
    FAILED_ITEM_STATUSES,
    ITEM_PENDING,
    ITEM_PROCESSING,
    JOB_RUNNING,
    EmbeddingRecord,
    Item,
    Job,
    Subject,
    truncate_error,
)

logger = logging.getLogger(__name__)

_SCHEMA_PATH = Path(__file__).parent / "sqlite_schema.sql"

_SUBJECT_COLUMNS = {"file_path", "sha256", "side", "pair_id", "duplicate_of",
                    "bulk_job_id", "payload", "last_error"}


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


def _loads(raw: Optional[str], default):
    if not raw:
        return default
    try:
        return json.loads(raw)
    except (TypeError, ValueError):
        logger.warning(f"Corrupt JSON column ignored: {raw[:80]!r}")
        return default


class SQLiteStore(JobRepository, ItemRepository, EmbeddingRepository, SubjectStore):
    """SQLite-backed storage for jobs, items, subjects and embeddings."""

    def __init__(self, db_path: Optional[str] = None):
        """
        Open (and if needed create) the database.

        Args:
            db_path: Path to the SQLite file, or ":memory:".
                     Default: ./data/postsecret.db
        """
        if db_path is None:
            db_path = str(Path(__file__).parent.parent.parent / "data" / "postsecret.db")
        if db_path != ":memory:":
            Path(db_path).parent.mkdir(parents=True, exist_ok=True)

        self.db_path = db_path
        self._lock = threading.RLock()
        self.conn = sqlite3.connect(db_path, check_same_thread=False)
        self.conn.row_factory = sqlite3.Row
        self.conn.execute("PRAGMA foreign_keys = ON")
        if db_path != ":memory:":
            self.conn.execute("PRAGMA journal_mode = WAL")
            self.conn.execute("PRAGMA synchronous = NORMAL")
        self.init_schema()
        logger.info(f"✅ Connected to SQLite database: {db_path}")

    def init_schema(self):
        with open(_SCHEMA_PATH, encoding="utf-8") as f:
            schema_sql = f.read()
        with self._lock:
            self.conn.executescript(schema_sql)
            self.conn.commit()

    def close(self):
        self.conn.close()

    # ── helpers ─────────────────────────────────────────

    def _execute(self, sql: str, params: Iterable[Any] = ()) -> sqlite3.Cursor:
        with self._lock:
            try:
                cur = self.conn.execute(sql, tuple(params))
                self.conn.commit()
                return cur
            except sqlite3.Error:
                self.conn.rollback()
                raise

    def _query(self, sql: str, params: Iterable[Any] = ()) -> List[sqlite3.Row]:
        with self._lock:
            return self.conn.execute(sql, tuple(params)).fetchall()

    def _query_one(self, sql: str, params: Iterable[Any] = ()) -> Optional[sqlite3.Row]:
        with self._lock:
            return self.conn.execute(sql, tuple(params)).fetchone()

    @staticmethod
    def _job(row: sqlite3.Row) -> Job:
        return Job(
            id=row["id"], uuid=row["uuid"], status=row["status"], source=row["source"],
            staging_path=row["staging_path"], total_items=row["total_items"],
            processed_items=row["processed_items"], success_count=row["success_count"],
            fail_count=row["fail_count"], last_error=row["last_error"],
            settings=_loads(row["settings"], {}), created_at=row["created_at"],
            started_at=row["started_at"], updated_at=row["updated_at"],
        )

    @staticmethod
    def _item(row: sqlite3.Row) -> Item:
        return Item(
            id=row["id"], job_id=row["job_id"], file_path=row["file_path"],
            sha256=row["sha256"], status=row["status"], attempts=row["attempts"],
            last_error=row["last_error"], attachment_id=row["attachment_id"],
            created_at=row["created_at"], updated_at=row["updated_at"],
        )

    @staticmethod
    def _subject(row: sqlite3.Row) -> Subject:
        return Subject(
            id=row["id"], file_path=row["file_path"], sha256=row["sha256"],
            side=row["side"], pair_id=row["pair_id"], duplicate_of=row["duplicate_of"],
            bulk_job_id=row["bulk_job_id"], payload=_loads(row["payload"], None),
            meta=_loads(row["meta"], {}), last_error=row["last_error"],
            created_at=row["created_at"], updated_at=row["updated_at"],
        )

    # ── JobRepository ───────────────────────────────────

    def create_job(self, uuid: str, source: str, staging_path: str,
                   settings: Dict[str, Any], total_items: int = 0) -> int:
        now = _now()
        cur = self._execute(
            """INSERT INTO bulk_jobs (uuid, status, source, staging_path, total_items,
                                      settings, created_at, updated_at)
               VALUES (?, 'new', ?, ?, ?, ?, ?, ?)""",
            (uuid, source, staging_path, total_items, json.dumps(settings), now, now),
        )
        return int(cur.lastrowid)

    def get_job(self, job_id: int) -> Optional[Job]:
        row = self._query_one("SELECT * FROM bulk_jobs WHERE id = ?", (job_id,))
        return self._job(row) if row else None

    def list_jobs(self, limit: int = 50) -> List[Job]:
        rows = self._query("SELECT * FROM bulk_jobs ORDER BY created_at DESC, id DESC LIMIT ?", (limit,))
        return [self._job(r) for r in rows]

    def set_job_status(self, job_id: int, status: str, last_error: Optional[str] = None) -> bool:
        now = _now()
        if last_error is not None:
            cur = self._execute(
                "UPDATE bulk_jobs SET status = ?, last_error = ?, updated_at = ? WHERE id = ?",
                (status, truncate_error(last_error), now, job_id),
            )
        else:
            cur = self._execute(
                "UPDATE bulk_jobs SET status = ?, updated_at = ? WHERE id = ?",
                (status, now, job_id),
            )
        if status == JOB_RUNNING:
            self._execute(
                "UPDATE bulk_jobs SET started_at = ? WHERE id = ? AND started_at IS NULL",
                (now, job_id),
            )
        return cur.rowcount > 0

    def add_to_counters(self, job_id: int, processed: int = 0,
                        succeeded: int = 0, failed: int = 0) -> None:
        self._execute(
            """UPDATE bulk_jobs SET
                   processed_items = MAX(0, processed_items + ?),
                   success_count = MAX(0, success_count + ?),
                   fail_count = MAX(0, fail_count + ?),
                   updated_at = ?
               WHERE id = ?""",
            (processed, succeeded, failed, _now(), job_id),
        )

    def save_job_settings(self, job_id: int, settings: Dict[str, Any]) -> bool:
        cur = self._execute(
            "UPDATE bulk_jobs SET settings = ?, updated_at = ? WHERE id = ?",
            (json.dumps(settings), _now(), job_id),
        )
        return cur.rowcount > 0

    def delete_job(self, job_id: int) -> bool:
        with self._lock:
            try:
                self.conn.execute("DELETE FROM bulk_items WHERE job_id = ?", (job_id,))
                cur = self.conn.execute("DELETE FROM bulk_jobs WHERE id = ?", (job_id,))
                self.conn.commit()
            except sqlite3.Error:
                self.conn.rollback()
                raise
        return cur.rowcount > 0

    # ── ItemRepository ──────────────────────────────────

    def add_items(self, job_id: int, rows: Iterable[Tuple[str, str, str]]) -> int:
        now = _now()
        params = [(job_id, path, sha, status, now, now) for path, sha, status in rows]
        with self._lock:
            try:
                self.conn.executemany(
                    """INSERT INTO bulk_items (job_id, file_path, sha256, status, created_at, updated_at)
                       VALUES (?, ?, ?, ?, ?, ?)""",
                    params,
                )
                self.conn.commit()
            except sqlite3.Error:
                self.conn.rollback()
                raise
        return len(params)

    def get_item(self, item_id: int) -> Optional[Item]:
        row = self._query_one("SELECT * FROM bulk_items WHERE id = ?", (item_id,))
        return self._item(row) if row else None

    def pending_items(self, job_id: int, limit: int) -> List[Item]:
        rows = self._query(
            "SELECT * FROM bulk_items WHERE job_id = ? AND status = ? ORDER BY id ASC LIMIT ?",
            (job_id, ITEM_PENDING, limit),
        )
        return [self._item(r) for r in rows]

    def mark_processing(self, item_id: int) -> int:
        self._execute(
            "UPDATE bulk_items SET status = ?, attempts = attempts + 1, updated_at = ? WHERE id = ?",
            (ITEM_PROCESSING, _now(), item_id),
        )
        row = self._query_one("SELECT attempts FROM bulk_items WHERE id = ?", (item_id,))
        return int(row["attempts"]) if row else 0

    def finish_item(self, item_id: int, status: str, last_error: Optional[str] = None,
                    attachment_id: Optional[int] = None) -> None:
        self._execute(
            """UPDATE bulk_items SET status = ?, last_error = ?,
                   attachment_id = COALESCE(?, attachment_id), updated_at = ?
               WHERE id = ?""",
            (status, truncate_error(last_error), attachment_id, _now(), item_id),
        )

    def count_items(self, job_id: int, status: Optional[str] = None) -> int:
        if status is None:
            row = self._query_one("SELECT COUNT(*) AS n FROM bulk_items WHERE job_id = ?", (job_id,))
        else:
            row = self._query_one(
                "SELECT COUNT(*) AS n FROM bulk_items WHERE job_id = ? AND status = ?",
                (job_id, status),
            )
        return int(row["n"]) if row else 0

    def status_counts(self, job_id: int) -> Dict[str, int]:
        rows = self._query(
            "SELECT status, COUNT(*) AS n FROM bulk_items WHERE job_id = ? GROUP BY status",
            (job_id,),
        )
        return {r["status"]: int(r["n"]) for r in rows}

    def failed_items(self, job_id: int, limit: int = 100) -> List[Item]:
        rows = self._query(
            """SELECT * FROM bulk_items WHERE job_id = ? AND status IN (?, ?)
               ORDER BY updated_at DESC, id DESC LIMIT ?""",
            (job_id, *FAILED_ITEM_STATUSES, limit),
        )
        return [self._item(r) for r in rows]

    def requeue_processing(self, job_id: int) -> int:
        cur = self._execute(
            "UPDATE bulk_items SET status = ?, updated_at = ? WHERE job_id = ? AND status = ?",
            (ITEM_PENDING, _now(), job_id, ITEM_PROCESSING),
        )
        return cur.rowcount

    def reset_failed(self, job_id: int) -> int:
        cur = self._execute(
            """UPDATE bulk_items SET status = ?, attempts = 0, last_error = NULL, updated_at = ?
               WHERE job_id = ? AND status IN (?, ?)""",
            (ITEM_PENDING, _now(), job_id, *FAILED_ITEM_STATUSES),
        )
        return cur.rowcount

    # ── EmbeddingRepository ─────────────────────────────

    def get_embedding(self, subject_id: int, model: Optional[str] = None) -> Optional[EmbeddingRecord]:
        if model is None:
            row = self._query_one(
                "SELECT * FROM text_embeddings WHERE subject_id = ? ORDER BY updated_at DESC LIMIT 1",
                (subject_id,),
            )
        else:
            row = self._query_one(
                "SELECT * FROM text_embeddings WHERE subject_id = ? AND model_version = ?",
                (subject_id, model),
            )
        if not row:
            return None
        return EmbeddingRecord(
            subject_id=row["subject_id"], model_version=row["model_version"],
            vector=_loads(row["embedding"], []), dimension=row["dimension"],
            input_hash=row["input_hash"], created_at=row["created_at"],
            updated_at=row["updated_at"],
        )

    def get_input_hash(self, subject_id: int, model: str) -> Optional[str]:
        row = self._query_one(
            "SELECT input_hash FROM text_embeddings WHERE subject_id = ? AND model_version = ?",
            (subject_id, model),
        )
        return row["input_hash"] if row else None

    def upsert_embedding(self, subject_id: int, model: str, vector: List[float],
                         input_hash: str, force: bool = False) -> bool:
        if not force and input_hash and self.get_input_hash(subject_id, model) == input_hash:
            logger.debug(f"Embedding for subject {subject_id} unchanged, skipping write")
            return False
        now = _now()
        self._execute(
            """INSERT INTO text_embeddings (subject_id, model_version, embedding, dimension,
                                            input_hash, created_at, updated_at)
               VALUES (?, ?, ?, ?, ?, ?, ?)
               ON CONFLICT(subject_id, model_version) DO UPDATE SET
                   embedding = excluded.embedding,
                   dimension = excluded.dimension,
                   input_hash = excluded.input_hash,
                   updated_at = excluded.updated_at""",
            (subject_id, model, json.dumps([float(x) for x in vector]), len(vector),
             input_hash, now, now),
        )
        return True

    def all_embeddings(self, model: str, exclude_id: Optional[int] = None) -> List[Tuple[int, List[float]]]:
        rows = self._query(
            "SELECT subject_id, embedding FROM text_embeddings WHERE model_version = ? AND subject_id != ?",
            (model, exclude_id if exclude_id is not None else -1),
        )
        return [(int(r["subject_id"]), _loads(r["embedding"], [])) for r in rows]

    def delete_embedding(self, subject_id: int) -> bool:
        cur = self._execute("DELETE FROM text_embeddings WHERE subject_id = ?", (subject_id,))
        return cur.rowcount > 0

    # ── SubjectStore ────────────────────────────────────

    def create_subject(self, file_path: str, sha256: str = "", side: str = "front",
                       bulk_job_id: Optional[int] = None) -> int:
        now = _now()
        cur = self._execute(
            """INSERT INTO subjects (file_path, sha256, side, bulk_job_id, created_at, updated_at)
               VALUES (?, ?, ?, ?, ?, ?)""",
            (file_path, sha256, side, bulk_job_id, now, now),
        )
        return int(cur.lastrowid)

    def get_subject(self, subject_id: int) -> Optional[Subject]:
        row = self._query_one("SELECT * FROM subjects WHERE id = ?", (subject_id,))
        return self._subject(row) if row else None

    def list_subjects(self, limit: int = 100, offset: int = 0) -> List[Subject]:
        rows = self._query("SELECT * FROM subjects ORDER BY id ASC LIMIT ? OFFSET ?", (limit, offset))
        return [self._subject(r) for r in rows]

    def find_by_hash(self, sha256: str, exclude_id: Optional[int] = None) -> Optional[Subject]:
        if not sha256:
            return None
        row = self._query_one(
            "SELECT * FROM subjects WHERE sha256 = ? AND id != ? ORDER BY id ASC LIMIT 1",
            (sha256, exclude_id if exclude_id is not None else -1),
        )
        return self._subject(row) if row else None

    def existing_hashes(self, hashes: Iterable[str]) -> set:
        wanted = sorted({h for h in hashes if h})
        found = set()
        # SQLite caps bound parameters; query in chunks
        for i in range(0, len(wanted), 500):
            chunk = wanted[i:i + 500]
            placeholders = ",".join("?" for _ in chunk)
            rows = self._query(f"SELECT DISTINCT sha256 FROM subjects WHERE sha256 IN ({placeholders})", chunk)
            found.update(r["sha256"] for r in rows)
        return found

    def update_subject(self, subject_id: int, **fields: Any) -> bool:
        unknown = set(fields) - _SUBJECT_COLUMNS
        if unknown:
            raise ValueError(f"Unknown subject columns: {sorted(unknown)}")
        if not fields:
            return False
        values = dict(fields)
        if "payload" in values and values["payload"] is not None:
            values["payload"] = json.dumps(values["payload"])
        if "last_error" in values:
            values["last_error"] = truncate_error(values["last_error"])
        assignments = ", ".join(f"{k} = ?" for k in values)
        cur = self._execute(
            f"UPDATE subjects SET {assignments}, updated_at = ? WHERE id = ?",
            (*values.values(), _now(), subject_id),
        )
        return cur.rowcount > 0

    def update_meta(self, subject_id: int, values: Dict[str, Any]) -> None:
        with self._lock:
            row = self.conn.execute("SELECT meta FROM subjects WHERE id = ?", (subject_id,)).fetchone()
            if row is None:
                return
            meta = _loads(row["meta"], {})
            for key, value in values.items():
                if value is None:
                    meta.pop(key, None)
                else:
                    meta[key] = value
            try:
                self.conn.execute(
                    "UPDATE subjects SET meta = ?, updated_at = ? WHERE id = ?",
                    (json.dumps(meta), _now(), subject_id),
                )
                self.conn.commit()
            except sqlite3.Error:
                self.conn.rollback()
                raise

    def set_pair(self, front_id: int, back_id: int) -> None:
        now = _now()
        with self._lock:
            try:
                self.conn.execute(
                    "UPDATE subjects SET pair_id = ?, side = 'front', updated_at = ? WHERE id = ?",
                    (back_id, now, front_id),
                )
                self.conn.execute(
                    "UPDATE subjects SET pair_id = ?, side = 'back', updated_at = ? WHERE id = ?",
                    (front_id, now, back_id),
                )
                self.conn.commit()
            except sqlite3.Error:
                self.conn.rollback()
                raise

    def replace_facets(self, subject_id: int, facets: Dict[str, List[str]]) -> None:
        rows = [
            (subject_id, facet_type, value)
            for facet_type, values in facets.items()
            for value in dict.fromkeys(values)
            if value
        ]
        with self._lock:
            try:
                self.conn.execute("DELETE FROM subject_facets WHERE subject_id = ?", (subject_id,))
                self.conn.executemany(
                    "INSERT INTO subject_facets (subject_id, facet_type, facet_value) VALUES (?, ?, ?)",
                    rows,
                )
                self.conn.commit()
            except sqlite3.Error:
                self.conn.rollback()
                raise

    def get_facets(self, subject_id: int) -> Dict[str, List[str]]:
        rows = self._query(
            """SELECT facet_type, facet_value FROM subject_facets
               WHERE subject_id = ? ORDER BY facet_type, facet_value""",
            (subject_id,),
        )
        out: Dict[str, List[str]] = {}
        for r in rows:
            out.setdefault(r["facet_type"], []).append(r["facet_value"])
        return out

    def subject_ids_with_facet(self, facet_type: str, values: Iterable[str]) -> set:
        wanted = list(values)
        if not wanted:
            return set()
        placeholders = ",".join("?" for _ in wanted)
        rows = self._query(
            f"""SELECT DISTINCT subject_id FROM subject_facets
                WHERE facet_type = ? AND facet_value IN ({placeholders})""",
            (facet_type, *wanted),
        )
        return {int(r["subject_id"]) for r in rows}
