"""Configuration loader and typed settings for the face indexer."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml

from utils.logging import get_logger

LOGGER = get_logger(__name__)

INDEXING_MODES: frozenset[str] = frozenset({"bounded", "chunked"})


@dataclass
class StorageConfig:
    """S3-compatible photo store (MinIO in production)."""

    endpoint_url: str | None = None
    bucket: str = "photos"
    root_prefix: str = ""
    region: str = "us-east-1"
    access_key_id: str | None = None
    secret_access_key: str | None = None
    connect_timeout_seconds: float = 5.0
    read_timeout_seconds: float = 30.0
    max_pool_connections: int = 64

    def event_prefix(self, event_id: str) -> str:
        """Return the object key prefix under which an event's folders live."""

        root = self.root_prefix.strip("/")
        if root:
            return f"{root}/{event_id}/"
        return f"{event_id}/"


@dataclass
class RecognitionConfig:
    """AWS Rekognition client settings."""

    region: str = "us-east-1"
    access_key_id: str | None = None
    secret_access_key: str | None = None
    connect_timeout_seconds: float = 15.0
    read_timeout_seconds: float = 60.0
    max_pool_connections: int = 64
    list_page_size: int = 4096


@dataclass
class DatabaseConfig:
    """Metadata store connection target."""

    primary_url: str = "sqlite:///data/index.db"


@dataclass
class IndexingConfig:
    """Concurrency, batching and retry knobs for a bulk indexing run."""

    mode: str = "chunked"
    concurrency: int = 32
    chunk_size: int = 500
    chunk_pause_seconds: float = 0.1
    max_attempts: int = 3
    base_delay_seconds: float = 0.5
    max_delay_seconds: float = 30.0
    log_every: int = 50
    jpeg_quality: int = 85


@dataclass
class CacheConfig:
    """Downstream cache that must be invalidated after a run."""

    redis_url: str | None = None
    key_prefix: str = ""
    socket_timeout_seconds: float = 5.0
    connect_timeout_seconds: float = 2.0


@dataclass
class Settings:
    """Top-level application settings."""

    storage: StorageConfig = field(default_factory=StorageConfig)
    recognition: RecognitionConfig = field(default_factory=RecognitionConfig)
    databases: DatabaseConfig = field(default_factory=DatabaseConfig)
    indexing: IndexingConfig = field(default_factory=IndexingConfig)
    cache: CacheConfig = field(default_factory=CacheConfig)


def _project_root() -> Path:
    return Path(__file__).resolve().parents[2]


def _resolve_settings_path(settings_path: Path | str | None) -> Path:
    """Determine which settings file to load, honoring overrides."""

    if settings_path:
        return Path(settings_path).expanduser().resolve()

    env_override = os.getenv("FACE_INDEXER_SETTINGS")
    if env_override:
        return Path(env_override).expanduser().resolve()

    candidates = [
        (Path.cwd() / "config" / "settings.yaml").resolve(),
        (_project_root() / "config" / "settings.yaml").resolve(),
    ]
    for candidate in candidates:
        if candidate.exists():
            return candidate
    return candidates[0]


def _as_dict(value: Any) -> dict[str, Any]:
    if isinstance(value, dict):
        return value
    return {}


def _apply_section(target: Any, raw: dict[str, Any]) -> None:
    """Copy recognised keys from ``raw`` onto a config dataclass, checking types.

    Unknown keys and values whose type does not match the field default are
    ignored and logged rather than raised.
    """

    for key, value in raw.items():
        if not hasattr(target, key):
            LOGGER.warning("settings_unknown_key", extra={"section": type(target).__name__, "key": key})
            continue

        current = getattr(target, key)
        if isinstance(current, bool):
            ok = isinstance(value, bool)
        elif isinstance(current, float):
            ok = isinstance(value, (int, float)) and not isinstance(value, bool)
            if ok:
                value = float(value)
        elif isinstance(current, int):
            ok = isinstance(value, int) and not isinstance(value, bool)
        elif current is None or isinstance(current, str):
            ok = value is None or isinstance(value, str)
        else:
            ok = False

        if not ok:
            LOGGER.warning(
                "settings_invalid_value",
                extra={"section": type(target).__name__, "key": key, "value": repr(value)},
            )
            continue
        setattr(target, key, value)


def _apply_env_overrides(settings: Settings) -> None:
    """Pick up credentials, endpoints and bucket layout from the environment."""

    storage = settings.storage
    storage.endpoint_url = storage.endpoint_url or os.getenv("MINIO_ENDPOINT")
    storage.bucket = os.getenv("MINIO_BUCKET", storage.bucket)
    storage.root_prefix = os.getenv("S3_BUCKET_PREFIX", storage.root_prefix)
    storage.access_key_id = storage.access_key_id or os.getenv("MINIO_ACCESS_KEY")
    storage.secret_access_key = storage.secret_access_key or os.getenv("MINIO_SECRET_KEY")

    recognition = settings.recognition
    recognition.region = os.getenv("AWS_REGION", recognition.region)
    recognition.access_key_id = recognition.access_key_id or os.getenv("AWS_ACCESS_KEY_ID")
    recognition.secret_access_key = recognition.secret_access_key or os.getenv("AWS_SECRET_ACCESS_KEY")

    settings.databases.primary_url = os.getenv("FACE_INDEXER_DATABASE_URL", settings.databases.primary_url)
    settings.cache.redis_url = settings.cache.redis_url or os.getenv("REDIS_URL")


def _validate(settings: Settings) -> None:
    indexing = settings.indexing
    if indexing.mode not in INDEXING_MODES:
        LOGGER.warning("settings_invalid_mode", extra={"mode": indexing.mode})
        indexing.mode = "chunked"
    indexing.concurrency = max(1, indexing.concurrency)
    indexing.chunk_size = max(1, indexing.chunk_size)
    indexing.max_attempts = max(1, indexing.max_attempts)
    indexing.log_every = max(1, indexing.log_every)


def load_settings(settings_path: Path | str | None = None) -> Settings:
    """Load application settings from a YAML file, falling back to defaults.

    A missing or malformed file yields default settings; environment variables
    then fill in credentials and endpoints that the file leaves unset.
    """

    path = _resolve_settings_path(settings_path)
    settings = Settings()

    if path.exists() and path.is_file():
        try:
            with path.open("r", encoding="utf-8") as fp:
                raw = yaml.safe_load(fp) or {}
        except (OSError, yaml.YAMLError) as exc:
            LOGGER.error("settings_load_error", extra={"path": str(path), "error": str(exc)})
            raw = {}

        data = _as_dict(raw)
        _apply_section(settings.storage, _as_dict(data.get("storage")))
        _apply_section(settings.recognition, _as_dict(data.get("recognition")))
        _apply_section(settings.databases, _as_dict(data.get("databases")))
        _apply_section(settings.indexing, _as_dict(data.get("indexing")))
        _apply_section(settings.cache, _as_dict(data.get("cache")))

    _apply_env_overrides(settings)
    _validate(settings)
    return settings


__all__ = [
    "INDEXING_MODES",
    "CacheConfig",
    "DatabaseConfig",
    "IndexingConfig",
    "RecognitionConfig",
    "Settings",
    "StorageConfig",
    "load_settings",
]
