import base64

import pytest
import requests
from PIL import Image

from postsecret_ai.utils.config import HttpConfig, ModerationConfig, OpenAIConfig
from postsecret_ai.utils.retry import RetryPolicy
from postsecret_ai.vision.classifier import ClassifierError, VisionClassifier
from postsecret_ai.vision.image_refs import to_image_url
from postsecret_ai.vision.prompts import PROMPT_VERSION

from conftest import SAMPLE_PAYLOAD, FakeResponse, FakeSession, chat_response

FRONT = "https://img.test/front.jpg"
BACK = "https://img.test/back.jpg"


def _classifier(responses, moderation=False, sleeps=None):
    session = FakeSession(responses=responses)
    retry = RetryPolicy(
        max_retries=3,
        backoff_factor=0.5,
        max_delay=8.0,
        sleep=(sleeps.append if sleeps is not None else (lambda s: None)),
        rand=lambda: 0.0,
    )
    clf = VisionClassifier(
        OpenAIConfig(api_key="sk-test", api_base="https://api.test/v1"),
        HttpConfig(),
        ModerationConfig(enabled=moderation),
        session=session,
        retry=retry,
    )
    return clf, session


def test_request_shape_front_only():
    clf, session = _classifier([chat_response(SAMPLE_PAYLOAD)])
    payload = clf.classify(FRONT)

    assert payload.style == "collage"
    call = session.calls[0]
    assert call["url"] == "https://api.test/v1/chat/completions"
    assert call["headers"]["Authorization"] == "Bearer sk-test"
    body = call["json"]
    assert body["response_format"] == {"type": "json_object"}
    assert body["messages"][0]["role"] == "system"
    parts = body["messages"][1]["content"]
    assert [p["type"] for p in parts] == ["text", "image_url"]
    assert parts[0]["text"] == "SIDE: front"
    assert parts[1]["image_url"] == {"url": FRONT, "detail": "high"}


def test_request_shape_with_back():
    clf, session = _classifier([chat_response(SAMPLE_PAYLOAD)])
    clf.classify(FRONT, BACK)
    parts = session.calls[0]["json"]["messages"][1]["content"]
    assert [p.get("text") for p in parts if p["type"] == "text"] == ["SIDE: front", "SIDE: back"]
    assert parts[3]["image_url"]["url"] == BACK


def test_retries_on_429_and_5xx_honoring_retry_after():
    sleeps = []
    clf, session = _classifier([
        FakeResponse(429, text="slow down", headers={"Retry-After": "3"}),
        FakeResponse(502, text="bad gateway"),
        chat_response(SAMPLE_PAYLOAD),
    ], sleeps=sleeps)

    payload = clf.classify(FRONT)
    assert payload.topics
    assert len(session.calls) == 3
    assert sleeps == [3.0, 1.0]


def test_retry_after_is_capped():
    sleeps = []
    clf, _ = _classifier([
        FakeResponse(503, headers={"Retry-After": "120"}),
        chat_response(SAMPLE_PAYLOAD),
    ], sleeps=sleeps)
    clf.classify(FRONT)
    assert sleeps == [8.0]


def test_non_retriable_status_raises_immediately():
    sleeps = []
    clf, session = _classifier([FakeResponse(400, text="bad request: image too large")], sleeps=sleeps)
    with pytest.raises(ClassifierError) as exc:
        clf.classify(FRONT)
    assert exc.value.status_code == 400
    assert "image too large" in exc.value.body
    assert len(session.calls) == 1
    assert sleeps == []


def test_gives_up_after_max_retries():
    clf, session = _classifier([FakeResponse(500, text="boom")] * 4)
    with pytest.raises(ClassifierError) as exc:
        clf.classify(FRONT)
    assert exc.value.status_code == 500
    assert len(session.calls) == 4


def test_transport_error_is_retried():
    clf, session = _classifier([requests.ConnectionError("reset"), chat_response(SAMPLE_PAYLOAD)])
    assert clf.classify(FRONT).style == "collage"
    assert len(session.calls) == 2


@pytest.mark.parametrize("response", [
    chat_response("not json at all"),
    chat_response("[1, 2, 3]"),
    chat_response(""),
    FakeResponse(200, {"choices": []}),
    FakeResponse(200, text="<html>"),
])
def test_malformed_model_output_raises(response):
    clf, _ = _classifier([response])
    with pytest.raises(ClassifierError):
        clf.classify(FRONT)


def test_missing_api_key_makes_no_call():
    session = FakeSession(responses=[])
    clf = VisionClassifier(OpenAIConfig(api_key=""), session=session)
    with pytest.raises(ClassifierError):
        clf.classify(FRONT)
    assert session.calls == []


def test_moderation_recorded_as_annotation():
    moderation = FakeResponse(200, {
        "model": "omni-moderation-2024",
        "results": [{"flagged": True, "categories": {"self-harm": True, "violence": False},
                     "category_scores": {"self-harm": 0.91}}],
    })
    clf, session = _classifier([chat_response(SAMPLE_PAYLOAD), moderation], moderation=True)
    payload = clf.classify(FRONT)

    assert session.calls[1]["url"].endswith("/moderations")
    assert "I never told my mother." in session.calls[1]["json"]["input"]
    assert payload.annotations["moderation"] == {
        "model": "omni-moderation-2024",
        "flagged": True,
        "categories": ["self-harm"],
        "scores": {"self-harm": 0.91},
    }
    assert "annotations" not in payload.to_dict()


def test_moderation_failure_does_not_fail_classification():
    clf, _ = _classifier([chat_response(SAMPLE_PAYLOAD), FakeResponse(500, text="down")], moderation=True)
    payload = clf.classify(FRONT)
    assert payload.style == "collage"
    assert "error" in payload.annotations["moderation"]


def test_moderation_skipped_without_text():
    clf, session = _classifier([chat_response({"topics": ["love"]})], moderation=True)
    payload = clf.classify(FRONT)
    assert payload.annotations["moderation"] == {"skipped": "no text"}
    assert len(session.calls) == 1


def test_prompt_version_tracks_prompt_text():
    clf, _ = _classifier([])
    assert clf.prompt_version.startswith(PROMPT_VERSION + "#sha256:")


def test_local_file_becomes_jpeg_data_url(image_factory):
    path = image_factory("big.png", size=(3000, 1000))
    url = to_image_url(path, max_side=500)
    assert url.startswith("data:image/jpeg;base64,")
    raw = base64.b64decode(url.split(",", 1)[1])
    assert raw[:2] == b"\xff\xd8"


def test_missing_local_file_raises():
    with pytest.raises(FileNotFoundError):
        to_image_url("/nonexistent/secret.png")


def test_decompression_bomb_becomes_classifier_error(image_factory, monkeypatch):
    path = image_factory("bomb.png", size=(200, 200))
    monkeypatch.setattr(Image, "MAX_IMAGE_PIXELS", 1000)
    clf, session = _classifier([])
    with pytest.raises(ClassifierError, match="Unreadable image"):
        clf.classify(str(path))
    assert session.calls == []
