import csv
import io
import shutil
import sqlite3
from dataclasses import replace
from pathlib import Path

import pytest

from postsecret_ai.pipeline.bulk_jobs import (
    BulkJobService,
    InvalidTransitionError,
    JobCreationError,
    JobNotFoundError,
)
from postsecret_ai.pipeline.classification_service import ProcessResult

from conftest import make_zip, png_bytes


class StubOrchestrator:
    """Records calls; outcome and side effects are set per test."""

    def __init__(self, success=True, error=None):
        self.success = success
        self.error = error
        self.calls = []
        self.on_call = None

    def process(self, front_id, back_id=None, force=False):
        self.calls.append(("process", front_id, force))
        if self.on_call:
            self.on_call(front_id)
        return ProcessResult(self.success, error=self.error)

    def process_subject(self, subject_id, force=False):
        self.calls.append(("process_subject", subject_id, force))
        return ProcessResult(self.success, error=self.error)


def _bulk(store, config, orchestrator, **overrides):
    return BulkJobService(store, store, store, orchestrator, replace(config.bulk, **overrides))


def _three_images(image_factory):
    return [
        image_factory("red.png", (220, 20, 20)),
        image_factory("green.png", (20, 220, 20)),
        image_factory("blue.png", (20, 20, 220)),
    ]


# ── creation ─────────────────────────────────────────────────

def test_end_to_end_three_images(services, store, session, image_factory):
    job = services.bulk.create_job(_three_images(image_factory))
    assert job.status == "new"
    assert job.total_items == 3
    assert job.source == "files:3"
    assert job.settings == {"batch_size": 25, "max_step_time": 8.0}
    assert store.status_counts(job.id) == {"pending": 3}

    services.bulk.start_job(job.id)
    result = services.bulk.process_batch(job.id)

    assert (result.processed, result.succeeded, result.failed) == (3, 3, 0)
    assert result.status == "completed"
    assert result.has_more is False

    job = services.bulk.get_job(job.id)
    assert job.status == "completed"
    assert (job.processed_items, job.success_count, job.fail_count) == (3, 3, 0)
    assert job.started_at is not None

    subjects = store.list_subjects()
    assert len(subjects) == 3
    for s in subjects:
        assert s.bulk_job_id == job.id
        assert s.payload is not None
        assert Path(s.file_path).is_file()
        assert store.get_embedding(s.id) is not None
    assert len(session.urls("/chat/completions")) == 3

    # identical payloads embed identically, so every secret is its neighbour's best match
    hits = services.searcher.find_similar(subjects[0].id, min_score=0.5)
    assert {h.subject_id for h in hits} == {subjects[1].id, subjects[2].id}


def test_dedup_within_upload_and_against_store(services, store, image_factory, tmp_path):
    a = image_factory("a.png")
    copy = tmp_path / "copy-of-a.png"
    shutil.copyfile(a, copy)

    job = services.bulk.create_job([a, copy])
    assert store.status_counts(job.id) == {"pending": 1, "skipped": 1}
    services.bulk.start_job(job.id)
    services.bulk.process_batch(job.id)

    again = services.bulk.create_job([a])
    assert again.total_items == 1
    assert store.status_counts(again.id) == {"skipped": 1}
    services.bulk.start_job(again.id)
    result = services.bulk.process_batch(again.id)
    assert result.processed == 0
    assert result.status == "completed"
    assert len(store.list_subjects()) == 1


def test_zip_upload_drops_unsafe_entries(services, store, tmp_path):
    archive = make_zip(tmp_path / "upload.zip", {
        "ok/one.png": png_bytes((1, 2, 3)),
        "../../evil.png": png_bytes((4, 5, 6)),
        "C:/windows.png": png_bytes((7, 8, 9)),
    })
    job = services.bulk.create_job([archive])
    assert job.source == "zip:upload.zip"
    assert job.total_items == 1
    item = store.pending_items(job.id, 10)[0]
    assert item.file_path == "ok/one.png"
    assert not (tmp_path / "evil.png").exists()


def test_zip_bomb_leaves_nothing_behind(store, config, tmp_path):
    archive = make_zip(tmp_path / "bomb.zip", {"huge.png": b"\0" * 50_000})
    bulk = _bulk(store, config, StubOrchestrator(), max_zip_bytes=10_000)

    with pytest.raises(JobCreationError, match="decompressed size"):
        bulk.create_job([archive])

    assert bulk.list_jobs() == []
    staging_root = Path(config.bulk.staging_dir)
    assert not staging_root.exists() or list(staging_root.iterdir()) == []


def test_too_many_files_aborts_creation(store, config, tmp_path):
    archive = make_zip(tmp_path / "many.zip", {f"{i}.png": png_bytes((i, i, i)) for i in range(4)})
    bulk = _bulk(store, config, StubOrchestrator(), max_zip_files=3)
    with pytest.raises(JobCreationError, match="too many files"):
        bulk.create_job([archive])
    assert bulk.list_jobs() == []


def test_no_images_is_an_error(services, tmp_path):
    txt = tmp_path / "notes.txt"
    txt.write_text("not an image")
    with pytest.raises(JobCreationError, match="No valid image"):
        services.bulk.create_job([txt])
    assert services.bulk.list_jobs() == []


def test_reclassify_job(store, config):
    sid = store.create_subject("/lib/x.png")
    orch = StubOrchestrator()
    bulk = _bulk(store, config, orch)

    job = bulk.create_reclassify_job([sid, sid, "bogus"])
    assert job.source == "reclassify:1"
    assert store.pending_items(job.id, 10)[0].file_path == f"attachment:{sid}"

    bulk.start_job(job.id)
    result = bulk.process_batch(job.id)
    assert result.succeeded == 1
    assert orch.calls == [("process_subject", sid, True)]

    with pytest.raises(JobCreationError):
        bulk.create_reclassify_job([])


# ── state machine ────────────────────────────────────────────

def test_status_transitions(store, config, image_factory):
    bulk = _bulk(store, config, StubOrchestrator())
    job = bulk.create_job([image_factory("a.png")])

    with pytest.raises(InvalidTransitionError):
        bulk.pause_job(job.id)
    with pytest.raises(InvalidTransitionError):
        bulk.update_job_status(job.id, "exploded")

    assert bulk.start_job(job.id).status == "running"
    assert bulk.start_job(job.id).status == "running"
    assert bulk.pause_job(job.id).status == "paused"
    assert bulk.start_job(job.id).status == "running"
    assert bulk.stop_job(job.id).status == "stopped"
    with pytest.raises(InvalidTransitionError):
        bulk.pause_job(job.id)
    assert bulk.start_job(job.id).status == "running"

    bulk.process_batch(job.id)
    assert bulk.get_job(job.id).status == "completed"
    with pytest.raises(InvalidTransitionError):
        bulk.start_job(job.id)

    with pytest.raises(JobNotFoundError):
        bulk.start_job(424242)


def test_process_batch_is_noop_unless_running(store, config, image_factory):
    orch = StubOrchestrator()
    bulk = _bulk(store, config, orch)
    job = bulk.create_job([image_factory("a.png")])

    result = bulk.process_batch(job.id)
    assert result.processed == 0
    assert result.status == "new"
    assert result.has_more is True
    assert orch.calls == []


def test_cooperative_cancel_between_items(store, config, image_factory):
    orch = StubOrchestrator()
    bulk = _bulk(store, config, orch)
    job = bulk.create_job(_three_images(image_factory))
    bulk.start_job(job.id)
    orch.on_call = lambda _sid: bulk.pause_job(job.id) if len(orch.calls) == 1 else None

    result = bulk.process_batch(job.id)

    assert result.processed == 1
    assert result.status == "paused"
    assert result.has_more is True
    assert store.status_counts(job.id) == {"success": 1, "pending": 2}

    bulk.start_job(job.id)
    result = bulk.process_batch(job.id)
    assert result.processed == 2
    assert result.status == "completed"


def test_step_time_budget(store, config, image_factory):
    ticks = iter(range(0, 1000, 5))
    bulk = BulkJobService(store, store, store, StubOrchestrator(),
                          replace(config.bulk, max_step_time=8.0), clock=lambda: next(ticks))
    job = bulk.create_job(_three_images(image_factory))
    bulk.start_job(job.id)

    first = bulk.process_batch(job.id)
    assert first.processed == 2
    assert first.has_more is True
    assert bulk.process_batch(job.id).status == "completed"


def test_batch_size_override_and_settings(store, config, image_factory):
    bulk = _bulk(store, config, StubOrchestrator())
    job = bulk.create_job(_three_images(image_factory))

    updated = bulk.save_settings(job.id, {"batch_size": 2})
    assert updated.settings == {"batch_size": 2, "max_step_time": 8.0}
    with pytest.raises(ValueError):
        bulk.save_settings(job.id, {"max_step_time": 0})

    bulk.start_job(job.id)
    assert bulk.process_batch(job.id).processed == 2
    assert bulk.process_batch(job.id, batch_size=5).processed == 1


# ── failures ─────────────────────────────────────────────────

def test_failed_items_are_not_retried_automatically(store, config, image_factory):
    orch = StubOrchestrator(success=False, error="model exploded")
    bulk = _bulk(store, config, orch)
    job = bulk.create_job([image_factory("a.png")])
    bulk.start_job(job.id)

    result = bulk.process_batch(job.id)
    assert (result.processed, result.failed) == (1, 1)
    assert result.status == "completed"

    errors = bulk.get_errors(job.id)
    assert [(e.status, e.attempts, e.last_error) for e in errors] == [("error", 1, "model exploded")]
    subject_id = errors[0].attachment_id
    assert subject_id is not None

    # completed job with only error items stays put
    assert bulk.process_batch(job.id).processed == 0
    assert len(orch.calls) == 1

    assert bulk.retry_failed(job.id) == 1
    job = bulk.get_job(job.id)
    assert (job.processed_items, job.fail_count) == (0, 0)
    item = store.pending_items(job.id, 10)[0]
    assert item.attempts == 0

    orch.success = True
    bulk.start_job(job.id)
    assert bulk.process_batch(job.id).succeeded == 1
    # the retry reuses the subject imported on the first attempt
    assert orch.calls[-1] == ("process", subject_id, False)
    assert len(store.list_subjects()) == 1


def test_quarantine_after_three_attempts(store, config, image_factory):
    orch = StubOrchestrator(success=False, error="still broken")
    bulk = _bulk(store, config, orch)
    job = bulk.create_job([image_factory("a.png")])
    item = store.pending_items(job.id, 1)[0]

    # two interrupted attempts, then a restart requeues the item
    store.mark_processing(item.id)
    store.mark_processing(item.id)
    bulk.start_job(job.id)

    bulk.process_batch(job.id)
    item = store.get_item(item.id)
    assert item.status == "quarantined"
    assert item.attempts == 3


def test_export_errors_csv(store, config, image_factory):
    bulk = _bulk(store, config, StubOrchestrator(success=False, error='bad, "quoted" error'))
    job = bulk.create_job([image_factory("a.png")])
    bulk.start_job(job.id)
    bulk.process_batch(job.id)

    rows = list(csv.reader(io.StringIO(bulk.export_errors_csv(job.id))))
    assert rows[0] == ["Item ID", "File Path", "Status", "Attempts", "Last Error", "Last Updated"]
    assert rows[1][1:5] == ["a.png", "error", "1", 'bad, "quoted" error']


def test_storage_failure_marks_job_failed(store, config, image_factory, monkeypatch):
    bulk = _bulk(store, config, StubOrchestrator())
    job = bulk.create_job([image_factory("a.png")])
    bulk.start_job(job.id)

    def broken(*args, **kwargs):
        raise sqlite3.OperationalError("database is locked")

    monkeypatch.setattr(store, "finish_item", broken)
    result = bulk.process_batch(job.id)

    assert result.status == "failed"
    job = bulk.get_job(job.id)
    assert job.status == "failed"
    assert "database is locked" in job.last_error


def test_item_outside_staging_is_rejected(store, config, image_factory):
    orch = StubOrchestrator()
    bulk = _bulk(store, config, orch)
    job = bulk.create_job([image_factory("a.png")])
    store.add_items(job.id, [("../../../etc/passwd", "", "pending")])
    bulk.start_job(job.id)

    bulk.process_batch(job.id)
    errors = bulk.get_errors(job.id)
    assert [e.last_error for e in errors] == ["Invalid file path (security check failed)."]
    assert len(orch.calls) == 1


def test_delete_job_removes_staging(store, config, image_factory):
    bulk = _bulk(store, config, StubOrchestrator())
    job = bulk.create_job([image_factory("a.png")])
    assert Path(job.staging_path).is_dir()

    assert bulk.delete_job(job.id) is True
    assert not Path(job.staging_path).exists()
    assert store.count_items(job.id) == 0
    assert bulk.delete_job(job.id) is False
