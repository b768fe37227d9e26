import pytest
from fastapi.testclient import TestClient

from postsecret_ai.server import deps
from postsecret_ai.server.app import app

from conftest import png_bytes


@pytest.fixture
def client(services):
    deps.set_services(services)
    yield TestClient(app)
    deps.set_services(None)


def _upload(client, *names):
    files = [("files", (name, png_bytes((i * 40, 10, 10)), "image/png")) for i, name in enumerate(names)]
    return client.post("/jobs", files=files)


def test_health(client):
    assert client.get("/health").json()["status"] == "ok"


def test_job_lifecycle_over_http(client):
    resp = _upload(client, "one.png", "two.png")
    assert resp.status_code == 200
    job = resp.json()
    assert job["total_items"] == 2
    assert job["item_counts"] == {"pending": 2}

    assert client.post(f"/jobs/{job['id']}/start").json()["status"] == "running"
    step = client.post(f"/jobs/{job['id']}/step", json={"batch_size": 1}).json()
    assert step["processed"] == 1
    assert step["has_more"] is True

    step = client.post(f"/jobs/{job['id']}/step").json()
    assert step["status"] == "completed"

    listed = client.get("/jobs").json()["jobs"]
    assert [j["id"] for j in listed] == [job["id"]]
    assert client.get(f"/jobs/{job['id']}/errors").json()["errors"] == []

    csv_resp = client.get(f"/jobs/{job['id']}/errors.csv")
    assert csv_resp.headers["content-type"].startswith("text/csv")
    assert csv_resp.text.startswith("Item ID,File Path,Status")

    assert client.delete(f"/jobs/{job['id']}").json()["deleted"] is True
    assert client.get(f"/jobs/{job['id']}").status_code == 404


def test_error_mapping(client):
    assert client.get("/jobs/999").status_code == 404

    resp = client.post("/jobs", files=[("files", ("notes.txt", b"hello", "text/plain"))])
    assert resp.status_code == 400

    job = _upload(client, "a.png").json()
    assert client.post(f"/jobs/{job['id']}/pause").status_code == 409
    assert client.put(f"/jobs/{job['id']}/settings", json={"batch_size": 0}).status_code == 422
    assert client.put(f"/jobs/{job['id']}/settings", json={"batch_size": 5}).json()["settings"]["batch_size"] == 5


def test_classify_and_search_secrets(client, services, image_factory):
    sid = services.store.create_subject(str(image_factory("s.png")))

    result = client.post(f"/secrets/{sid}/classify").json()
    assert result["success"] is True
    assert result["payload"]["style"] == "collage"

    secret = client.get(f"/secrets/{sid}").json()
    assert secret["facets"]["topics"] == ["family", "love", "secrets"]

    found = client.post("/secrets/search", json={"query": "family secrets love", "min_score": 0.05}).json()
    assert [r["subject_id"] for r in found["results"]] == [sid]

    assert client.get(f"/secrets/{sid}/similar").json()["results"] == []
    assert client.get("/secrets/999").status_code == 404
    assert client.post("/secrets/999/classify").status_code == 404


def test_reclassify_endpoint(client, services):
    sid = services.store.create_subject("/lib/missing.png")
    job = client.post("/jobs/reclassify", json={"subject_ids": [sid]}).json()
    assert job["source"] == "reclassify:1"
    assert client.post("/jobs/reclassify", json={"subject_ids": []}).status_code == 422


def test_import_secret_upload(client, services):
    files = [
        ("front", ("front.png", png_bytes((200, 10, 10)), "image/png")),
        ("back", ("back.png", png_bytes((10, 10, 200)), "image/png")),
    ]
    resp = client.post("/secrets", files=files)
    assert resp.status_code == 200
    body = resp.json()
    assert body["success"] is True
    assert client.get(f"/secrets/{body['back_id']}").json()["pair_id"] == body["front_id"]

    front_only = client.post("/secrets", files=[("front", ("solo.png", png_bytes((1, 99, 1)), "image/png"))])
    assert front_only.json()["back_id"] is None

    bad = client.post("/secrets", files=[("front", ("notes.txt", b"hello", "text/plain"))])
    assert bad.status_code == 400
    assert client.post("/secrets").status_code == 422
