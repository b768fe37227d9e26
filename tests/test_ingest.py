from pathlib import Path

import pytest

from postsecret_ai.pipeline.ingest import IngestError

from conftest import png_bytes


def _chat_parts(session):
    chat = [c for c in session.calls if c["url"].endswith("/chat/completions")]
    assert len(chat) == 1
    return chat[0]["json"]["messages"][1]["content"]


def test_front_and_back_classified_together(services, session, store, image_factory, config):
    front = image_factory("front.png", (200, 30, 30))
    back = image_factory("back.png", (20, 20, 20), (60, 80))

    outcome = services.ingest.import_secret(front, back)

    assert outcome.result.success
    assert outcome.duplicate_of is None
    f, b = store.get_subject(outcome.front_id), store.get_subject(outcome.back_id)
    assert (f.side, b.side) == ("front", "back")
    assert f.pair_id == b.id and b.pair_id == f.id
    assert f.payload is not None and b.payload == f.payload
    assert f.sha256 and b.sha256 and f.sha256 != b.sha256

    library = Path(config.bulk.library_dir) / "single"
    assert Path(f.file_path).parent == library
    assert Path(f.file_path).name.endswith("-front.png")
    assert front.exists()

    parts = _chat_parts(session)
    assert [p["text"] for p in parts if p["type"] == "text"] == ["SIDE: front", "SIDE: back"]


def test_front_only(services, store, image_factory):
    outcome = services.ingest.import_secret(image_factory("solo.png"))
    assert outcome.result.success
    assert outcome.back_id is None
    assert store.get_subject(outcome.front_id).pair_id is None


def test_exact_duplicate_front_is_not_reclassified(services, session, store, image_factory):
    path = image_factory("dupe.png", (1, 2, 3))
    first = services.ingest.import_secret(path)
    calls_before = len(session.calls)

    second = services.ingest.import_secret(path)

    assert second.duplicate_of == first.front_id
    assert not second.result.success
    assert second.result.error == "Duplicate image."
    assert store.get_subject(second.front_id).last_error == "Skipped: duplicate image."
    assert len(session.calls) == calls_before


def test_duplicate_back_is_still_paired(services, store, image_factory):
    back = image_factory("back.png", (9, 9, 9))
    services.ingest.import_secret(image_factory("one.png", (50, 0, 0)), back)

    outcome = services.ingest.import_secret(image_factory("two.png", (0, 50, 0)), back)

    assert outcome.result.success
    b = store.get_subject(outcome.back_id)
    assert b.duplicate_of is not None
    assert b.pair_id == outcome.front_id


@pytest.mark.parametrize("name", ["ghost.png", "notes.txt"])
def test_rejects_missing_or_non_image(services, store, tmp_path, name):
    path = tmp_path / name
    if name.endswith(".txt"):
        path.write_text("hello")
    with pytest.raises(IngestError):
        services.ingest.import_secret(path)
    assert store.list_subjects() == []


def test_bad_back_creates_nothing(services, store, image_factory, tmp_path):
    with pytest.raises(IngestError, match="File not found"):
        services.ingest.import_secret(image_factory("front.png"), tmp_path / "missing.png")
    assert store.list_subjects() == []


def test_upload_names_drive_extension_check(services, tmp_path):
    raw = tmp_path / "upload-0"
    raw.write_bytes(png_bytes())
    outcome = services.ingest.import_secret(raw, front_name="My Secret.png")
    assert outcome.result.success
    assert outcome.to_dict()["front_id"] == outcome.front_id
