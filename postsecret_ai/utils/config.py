"""
Singleton configuration loader for the PostSecret AI pipeline.

Layered config: system config.yaml + per-user user-settings.yaml + env vars.
User settings take precedence over system defaults; environment variables
win over both.

Components never read this loader directly. Entry points (CLI, server)
build a PipelineConfig from it once and hand that to each constructor.
"""

import os
import logging
import platform
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, List, Optional

import yaml

logger = logging.getLogger(__name__)

_PROJECT_ROOT = Path(__file__).parent.parent.parent
_CONFIG_PATH = _PROJECT_ROOT / "config.yaml"

# env key → config.yaml dotted path
_ENV_OVERRIDES = {
    "OPENAI_API_KEY": "openai.api_key",
    "OPENAI_API_BASE": "openai.api_base",
    "PSAI_MODEL": "openai.model",
    "PS_QDRANT_URL": "qdrant.url",
    "PS_QDRANT_API_KEY": "qdrant.api_key",
    "PSAI_DB_PATH": "storage.db_path",
    "PSAI_LOG_LEVEL": "logging.level",
}

_instance: Optional["AppConfig"] = None


def _resolve_user_settings_path() -> Optional[Path]:
    """Resolve user-settings.yaml path from env var or platform default."""
    env_path = os.environ.get("PSAI_USER_SETTINGS_PATH")
    if env_path:
        return Path(env_path)

    system = platform.system()
    if system == "Darwin":
        base = Path.home() / "Library" / "Application Support" / "PostSecretAI"
    elif system == "Windows":
        base = Path(os.environ.get("APPDATA", str(Path.home()))) / "PostSecretAI"
    else:
        xdg = os.environ.get("XDG_CONFIG_HOME", str(Path.home() / ".config"))
        base = Path(xdg) / "postsecret-ai"

    return base / "user-settings.yaml"


class AppConfig:
    """Layered configuration: user-settings.yaml overrides config.yaml."""

    def __init__(self, path: Path = _CONFIG_PATH,
                 user_settings_path: Optional[Path] = None,
                 apply_env: bool = True):
        if path.exists():
            with open(path, "r", encoding="utf-8") as f:
                self._data: dict = yaml.safe_load(f) or {}
            logger.info(f"Loaded system config from {path}")
        else:
            self._data = {}
            logger.warning(f"config.yaml not found at {path}, using defaults")

        self._user_data: dict = {}
        self._env_data: dict = {}
        self._user_settings_path = user_settings_path or _resolve_user_settings_path()
        self._load_user_settings()

        if apply_env:
            self._apply_env_overrides()

    # ── public API ──────────────────────────────────────

    def get(self, dotted_key: str, default: Any = None) -> Any:
        """
        Retrieve a value by dotted path.
        Environment overrides win, then user settings, then system config.

        Example:
            cfg.get("openai.model")            -> "gpt-4o-mini"
            cfg.get("bulk.batch_size", 25)     -> 25
        """
        for layer in (self._env_data, self._user_data, self._data):
            val = self._get_from_dict(layer, dotted_key)
            if val is not None:
                return val
        return default

    def section(self, key: str) -> dict:
        """Return a top-level section as a dict: system, then user, then env overrides merged."""
        merged: dict = {}
        for layer in (self._data, self._user_data, self._env_data):
            val = layer.get(key)
            if isinstance(val, dict):
                merged.update(val)
        return merged

    @property
    def user_settings_path(self) -> Optional[Path]:
        return self._user_settings_path

    # ── internals ───────────────────────────────────────

    def _load_user_settings(self):
        """Load user-settings.yaml if it exists."""
        if self._user_settings_path and self._user_settings_path.exists():
            try:
                with open(self._user_settings_path, "r", encoding="utf-8") as f:
                    self._user_data = yaml.safe_load(f) or {}
                logger.info(f"Loaded user settings from {self._user_settings_path}")
            except (OSError, yaml.YAMLError) as e:
                logger.warning(f"Failed to load user settings: {e}")
                self._user_data = {}
        else:
            self._user_data = {}

    @staticmethod
    def _get_from_dict(data: dict, dotted_key: str) -> Any:
        """Traverse nested dict by dotted key. Returns None if not found."""
        node = data
        for p in dotted_key.split("."):
            if not isinstance(node, dict):
                return None
            node = node.get(p)
            if node is None:
                return None
        return node

    def _apply_env_overrides(self):
        for env_key, dotted_path in _ENV_OVERRIDES.items():
            val = os.environ.get(env_key)
            if val is not None:
                self._set_dotted(dotted_path, val)
                logger.debug(f"env override: {env_key} -> {dotted_path}")

    def _set_dotted(self, dotted_key: str, value: Any):
        parts = dotted_key.split(".")
        node = self._env_data
        for p in parts[:-1]:
            node = node.setdefault(p, {})
        node[parts[-1]] = value


def get_config() -> AppConfig:
    """Return the singleton AppConfig instance."""
    global _instance
    if _instance is None:
        _instance = AppConfig()
    return _instance


# ── Pipeline config objects ─────────────────────────────────

@dataclass
class HttpConfig:
    timeout: float = 60.0
    max_retries: int = 3
    backoff_factor: float = 0.5
    max_delay: float = 8.0


@dataclass
class OpenAIConfig:
    api_base: str = "https://api.openai.com/v1"
    api_key: str = ""
    model: str = "gpt-4o-mini"
    temperature: float = 0.2
    top_p: float = 1.0
    max_tokens: int = 1200
    image_detail: str = "high"
    prompt_path: Optional[str] = None


@dataclass
class ModerationConfig:
    enabled: bool = False
    model: str = "omni-moderation-latest"
    timeout: float = 15.0


@dataclass
class EmbeddingConfig:
    model: str = "text-embedding-3-small"
    timeout: float = 30.0


@dataclass
class QdrantConfig:
    url: Optional[str] = None
    api_key: Optional[str] = None
    timeout: float = 10.0
    collection_prefix: str = "secrets_"
    distance: str = "Cosine"
    cache_ttl: float = 3600.0
    hnsw_ef: int = 96

    @property
    def enabled(self) -> bool:
        return bool(self.url)


@dataclass
class BulkConfig:
    staging_dir: str = str(_PROJECT_ROOT / "data" / "bulk-staging")
    library_dir: str = str(_PROJECT_ROOT / "data" / "library")
    batch_size: int = 25
    max_step_time: float = 8.0
    max_zip_files: int = 5000
    max_zip_bytes: int = 2 * 1024 * 1024 * 1024
    max_attempts: int = 3
    allowed_extensions: List[str] = field(
        default_factory=lambda: ["jpg", "jpeg", "png", "gif", "webp"]
    )


@dataclass
class StorageConfig:
    db_path: str = str(_PROJECT_ROOT / "data" / "postsecret.db")


@dataclass
class PipelineConfig:
    """Explicit configuration tree passed into every pipeline component."""
    openai: OpenAIConfig = field(default_factory=OpenAIConfig)
    http: HttpConfig = field(default_factory=HttpConfig)
    moderation: ModerationConfig = field(default_factory=ModerationConfig)
    embedding: EmbeddingConfig = field(default_factory=EmbeddingConfig)
    qdrant: QdrantConfig = field(default_factory=QdrantConfig)
    bulk: BulkConfig = field(default_factory=BulkConfig)
    storage: StorageConfig = field(default_factory=StorageConfig)

    @classmethod
    def from_app_config(cls, cfg: AppConfig) -> "PipelineConfig":
        """Build the typed config tree from a loaded AppConfig."""
        return cls(
            openai=_build(OpenAIConfig, cfg.section("openai")),
            http=_build(HttpConfig, cfg.section("http")),
            moderation=_build(ModerationConfig, cfg.section("moderation")),
            embedding=_build(EmbeddingConfig, cfg.section("embedding")),
            qdrant=_build(QdrantConfig, cfg.section("qdrant")),
            bulk=_build(BulkConfig, cfg.section("bulk")),
            storage=_build(StorageConfig, cfg.section("storage")),
        )


def _build(klass, values: dict):
    """Instantiate a config dataclass, ignoring unknown keys and coercing scalars."""
    defaults = klass()
    kwargs = {}
    for name in klass.__dataclass_fields__:
        if name not in values or values[name] is None:
            continue
        raw = values[name]
        current = getattr(defaults, name)
        try:
            if isinstance(current, bool):
                kwargs[name] = raw if isinstance(raw, bool) else str(raw).lower() in ("1", "true", "yes", "on")
            elif isinstance(current, int):
                kwargs[name] = int(raw)
            elif isinstance(current, float):
                kwargs[name] = float(raw)
            elif isinstance(current, list):
                kwargs[name] = [s.strip().lower() for s in str(raw).split(",")] if isinstance(raw, str) else list(raw)
            else:
                kwargs[name] = raw
        except (TypeError, ValueError):
            logger.warning(f"Ignoring invalid config value {klass.__name__}.{name}={raw!r}")
    return klass(**kwargs)
