import requests

from postsecret_ai.utils.config import QdrantConfig
from postsecret_ai.vector.qdrant_index import QdrantIndex, SimilarHit, collection_name

from conftest import FakeResponse, FakeSession

OK = {"status": "ok", "result": True}


class Clock:
    def __init__(self):
        self.now = 1000.0

    def __call__(self):
        return self.now


def _index(handler, clock=None):
    session = FakeSession(handler)
    cfg = QdrantConfig(url="http://qdrant.test:6333", api_key="qk", cache_ttl=3600.0)
    return QdrantIndex(cfg, session, clock=clock or Clock()), session


def test_collection_name():
    assert collection_name("text-embedding-3-small") == "secrets_text_embedding_3_small"
    assert collection_name("Org/Model.v2", "ps_") == "ps_Org_Model_v2"


def test_disabled_index_is_inert():
    session = FakeSession(responses=[])
    index = QdrantIndex(QdrantConfig(url=None), session)
    assert not index.enabled
    assert index.search([0.1, 0.2], "m") is None
    assert index.upsert(1, [0.1, 0.2], {}, "m") is False
    assert session.calls == []


def test_upsert_creates_missing_collection_then_caches():
    def handler(method, url, body):
        if method == "GET":
            return FakeResponse(404, text="not found")
        return FakeResponse(200, OK)

    clock = Clock()
    index, session = _index(handler, clock)
    assert index.upsert(7, [1.0, 0.0], {"topics": ["love"]}, "text-embedding-3-small")
    assert index.upsert(8, [0.0, 1.0], {}, "text-embedding-3-small")

    methods = [(c["method"], c["url"].split("6333")[1]) for c in session.calls]
    assert methods == [
        ("GET", "/collections/secrets_text_embedding_3_small"),
        ("PUT", "/collections/secrets_text_embedding_3_small"),
        ("PUT", "/collections/secrets_text_embedding_3_small/points?wait=true"),
        ("PUT", "/collections/secrets_text_embedding_3_small/points?wait=true"),
    ]
    create = session.calls[1]["json"]
    assert create == {"vectors": {"size": 2, "distance": "Cosine"}}
    point = session.calls[2]["json"]["points"][0]
    assert point["id"] == 7
    assert point["payload"] == {"topics": ["love"], "secret_id": 7}
    assert session.calls[0]["headers"]["api-key"] == "qk"

    # cache expires after the TTL
    clock.now += 3601
    index.upsert(9, [1.0, 1.0], {}, "text-embedding-3-small")
    assert [c["method"] for c in session.calls[4:]] == ["GET", "PUT", "PUT"]


def test_upsert_failure_returns_false():
    def handler(method, url, body):
        if "/points" in url:
            return FakeResponse(500, text="disk full")
        return FakeResponse(200, OK)

    index, _ = _index(handler)
    assert index.upsert(1, [1.0], {}, "m") is False


def test_search_builds_filter_and_excludes_self():
    def handler(method, url, body):
        return FakeResponse(200, {"status": "ok", "result": [
            {"id": 5, "score": 0.91234},
            {"id": 3, "score": 0.99},    # the query subject itself
            {"id": 9, "score": 0.4},     # under threshold
            {"id": 2, "score": 0.8},
        ]})

    index, session = _index(handler)
    hits = index.search([0.1, 0.2], "m", limit=5, min_score=0.5,
                        filters={"topics": ["love", "loss"], "review_status": "auto_vetted"},
                        exclude_id=3)

    assert hits == [SimilarHit(5, 0.9123), SimilarHit(2, 0.8)]
    body = session.calls[0]["json"]
    assert body["filter"] == {
        "must": [
            {"key": "topics", "match": {"any": ["love", "loss"]}},
            {"key": "review_status", "match": {"value": "auto_vetted"}},
        ],
        "must_not": [{"has_id": [3]}],
    }
    assert body["score_threshold"] == 0.5
    assert body["with_payload"] is False


def test_search_distinguishes_unavailable_from_empty():
    index, _ = _index(lambda m, u, b: FakeResponse(200, {"status": "ok", "result": []}))
    assert index.search([0.1], "m") == []

    index, _ = _index(lambda m, u, b: FakeResponse(503, text="unavailable"))
    assert index.search([0.1], "m") is None

    index, _ = _index(lambda m, u, b: requests.ConnectionError("refused"))
    assert index.search([0.1], "m") is None


def test_search_respects_limit():
    result = [{"id": i, "score": 0.9} for i in range(1, 20)]
    index, _ = _index(lambda m, u, b: FakeResponse(200, {"status": "ok", "result": result}))
    assert len(index.search([0.1], "m", limit=3)) == 3
