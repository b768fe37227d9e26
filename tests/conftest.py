"""
Shared fixtures: temporary SQLite store, fake HTTP session, image/zip builders.

No test talks to a real network endpoint; the FakeSession stands in for
requests.Session and routes each call to a handler.
"""

import hashlib
import json
import zipfile
from dataclasses import replace
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

import pytest
from PIL import Image

from postsecret_ai.db.sqlite_client import SQLiteStore
from postsecret_ai.pipeline.services import build_services
from postsecret_ai.utils.config import (
    BulkConfig,
    OpenAIConfig,
    PipelineConfig,
    StorageConfig,
)

SAMPLE_PAYLOAD: Dict[str, Any] = {
    "topics": ["Family", "secrets", "family", "Love"],
    "feelings": ["Guilt", "relief"],
    "meanings": ["confession"],
    "vibe": ["confessional", "bittersweet", "loud"],
    "style": "Collage",
    "locations": ["Kitchen"],
    "wisdom": "Everyone carries something.",
    "secretDescription": "A   postcard about   keeping a family secret.",
    "media": {"type": "postcard"},
    "front": {
        "artDescription": "Cut-out photo of a kitchen table.",
        "fontDescription": {"style": "handwritten", "notes": "blue ink"},
        "text": {"fullText": "I never told my mother.", "language": "en"},
    },
    "back": None,
    "moderation": {"reviewStatus": "auto_vetted", "labels": [], "nsfwScore": 0.01,
                   "containsPII": False, "piiTypes": []},
    "confidence": {"overall": 0.9, "byField": {"facets": 0.8, "artDescription": 0.7,
                                               "fontDescription": 0.6, "moderation": 0.95}},
}


# ── Fake HTTP ────────────────────────────────────────────────

class FakeResponse:
    def __init__(self, status_code: int = 200, json_data: Any = None,
                 text: Optional[str] = None, headers: Optional[Dict[str, str]] = None):
        self.status_code = status_code
        self._json = json_data
        self.text = text if text is not None else (json.dumps(json_data) if json_data is not None else "")
        self.headers = headers or {}

    def json(self):
        if self._json is None:
            raise ValueError("No JSON body")
        return self._json


class FakeSession:
    """requests.Session stand-in. handler(method, url, body) → FakeResponse or Exception."""

    def __init__(self, handler: Optional[Callable] = None, responses: Optional[List[Any]] = None):
        self.handler = handler
        self.responses = list(responses or [])
        self.calls: List[Dict[str, Any]] = []

    def request(self, method, url, json=None, headers=None, timeout=None):
        self.calls.append({"method": method, "url": url, "json": json,
                           "headers": headers, "timeout": timeout})
        result = self.handler(method, url, json) if self.handler else self.responses.pop(0)
        if isinstance(result, Exception):
            raise result
        return result

    def post(self, url, json=None, headers=None, timeout=None):
        return self.request("POST", url, json=json, headers=headers, timeout=timeout)

    def urls(self, fragment: str) -> List[str]:
        return [c["url"] for c in self.calls if fragment in c["url"]]


def chat_response(content: Any) -> FakeResponse:
    text = content if isinstance(content, str) else json.dumps(content)
    return FakeResponse(200, {"choices": [{"message": {"content": text}}]})


def embedding_response(vector: List[float]) -> FakeResponse:
    return FakeResponse(200, {"data": [{"embedding": vector}]})


def fake_embedding(text: str, dims: int = 16) -> List[float]:
    """Deterministic bag-of-words vector: shared words → similar vectors."""
    vec = [0.0] * dims
    for word in text.lower().replace(",", " ").replace(".", " ").split():
        idx = int(hashlib.md5(word.encode("utf-8")).hexdigest(), 16) % dims
        vec[idx] += 1.0
    return vec


class OpenAIStub:
    """Routes chat/embedding/moderation calls; tweak attributes per test."""

    def __init__(self):
        self.payload: Any = SAMPLE_PAYLOAD
        self.chat_status = 200
        self.embedding_status = 200

    def __call__(self, method, url, body):
        if url.endswith("/chat/completions"):
            if self.chat_status != 200:
                return FakeResponse(self.chat_status, text="upstream error")
            payload = self.payload(body) if callable(self.payload) else self.payload
            return chat_response(payload)
        if url.endswith("/embeddings"):
            if self.embedding_status != 200:
                return FakeResponse(self.embedding_status, text="embedding error")
            return embedding_response(fake_embedding(body["input"]))
        if url.endswith("/moderations"):
            return FakeResponse(200, {"model": "omni-moderation-latest",
                                      "results": [{"flagged": False, "categories": {},
                                                   "category_scores": {}}]})
        return FakeResponse(404, text="not found")


# ── Files ────────────────────────────────────────────────────

def make_png(path: Path, color=(200, 30, 30), size=(64, 48)) -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    Image.new("RGB", size, color).save(path, format="PNG")
    return path


def png_bytes(color=(200, 30, 30), size=(32, 32)) -> bytes:
    from io import BytesIO
    buf = BytesIO()
    Image.new("RGB", size, color).save(buf, format="PNG")
    return buf.getvalue()


def make_zip(path: Path, entries: Dict[str, bytes]) -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    with zipfile.ZipFile(path, "w", compression=zipfile.ZIP_DEFLATED) as zf:
        for name, data in entries.items():
            zf.writestr(name, data)
    return path


# ── Fixtures ─────────────────────────────────────────────────

@pytest.fixture
def config(tmp_path) -> PipelineConfig:
    return PipelineConfig(
        openai=OpenAIConfig(api_key="sk-test", api_base="https://api.test/v1"),
        bulk=BulkConfig(
            staging_dir=str(tmp_path / "staging"),
            library_dir=str(tmp_path / "library"),
        ),
        storage=StorageConfig(db_path=str(tmp_path / "test.db")),
    )


@pytest.fixture
def store(config):
    s = SQLiteStore(config.storage.db_path)
    yield s
    s.close()


@pytest.fixture
def openai_stub():
    return OpenAIStub()


@pytest.fixture
def session(openai_stub):
    return FakeSession(openai_stub)


@pytest.fixture
def services(config, store, session):
    return build_services(replace(config), store=store, session=session)


@pytest.fixture
def image_factory(tmp_path):
    """make(name, color) → path of a fresh PNG under tmp_path/images."""
    def make(name: str, color=(200, 30, 30), size=(64, 48)) -> Path:
        return make_png(tmp_path / "images" / name, color, size)
    return make
