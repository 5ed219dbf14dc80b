from __future__ import annotations

import os
import re
from pathlib import Path
from typing import Optional, Union
from urllib.parse import urlparse

import yaml
from pydantic import BaseModel, Field, model_validator


_ENV_VAR_PATTERN = re.compile(r"\$\{([A-Z0-9_]+)\}")
# Colombian NIT: digits, optionally followed by "-<check digit>".
_NIT_RE = re.compile(r"^\d{5,15}(-\d)?$")

DEFAULT_BASE_URL = "https://clientes.flypass.com.co"


def _expand_env_vars(value: object) -> object:
    if isinstance(value, str):
        def repl(match: re.Match[str]) -> str:
            var = match.group(1)
            return os.getenv(var, "")

        return _ENV_VAR_PATTERN.sub(repl, value)
    if isinstance(value, list):
        return [_expand_env_vars(v) for v in value]
    if isinstance(value, dict):
        return {k: _expand_env_vars(v) for k, v in value.items()}
    return value


def _env_bool(name: str, default: bool = False) -> bool:
    raw = (os.getenv(name, "") or "").strip().lower()
    if not raw:
        return bool(default)
    return raw in {"1", "true", "t", "yes", "y", "on"}


def _deep_merge(base: object, override: object) -> object:
    if isinstance(base, dict) and isinstance(override, dict):
        out = dict(base)
        for k, v in override.items():
            if k in out:
                out[k] = _deep_merge(out[k], v)
            else:
                out[k] = v
        return out
    return override


def _default_config_from_env() -> dict:
    """
    Provide a sensible env-only config so most users only need `.env`.

    YAML remains an optional override on top of this.
    """
    return {
        "portal": {
            "base_url": os.getenv("FLYPASS_BASE_URL", DEFAULT_BASE_URL),
            "subject_identifier": os.getenv("FLYPASS_NIT", ""),
            "password": os.getenv("FLYPASS_PASSWORD", ""),
            "headless": _env_bool("FLYPASS_HEADLESS", default=True),
            "browser_channel": os.getenv("FLYPASS_BROWSER_CHANNEL", ""),
            "default_timeout_ms": os.getenv("FLYPASS_DEFAULT_TIMEOUT_MS", "30000"),
            "step_timeout_ms": os.getenv("FLYPASS_STEP_TIMEOUT_MS", "5000"),
            "download_timeout_ms": os.getenv("FLYPASS_DOWNLOAD_TIMEOUT_MS", "60000"),
            "popup_wait_ms": os.getenv("FLYPASS_POPUP_WAIT_MS", "2000"),
        },
        "downloads": {
            "dir": os.getenv("DOWNLOAD_DIR", "data/downloads"),
        },
        "ingest": {
            "auto_ingest": _env_bool("AUTO_INGEST", default=True),
            "lock_max_attempts": os.getenv("FILE_LOCK_MAX_ATTEMPTS", "5"),
            "lock_delay_seconds": os.getenv("FILE_LOCK_DELAY_SECONDS", "1.0"),
            "lock_backoff": os.getenv("FILE_LOCK_BACKOFF", "1.0"),
            "deletion_grace_seconds": os.getenv("DELETION_GRACE_SECONDS", "5.0"),
            "run_deadline_seconds": os.getenv("RUN_DEADLINE_SECONDS", "600"),
        },
        "store": {
            "db_path": os.getenv("STORE_DB_PATH", "data/flypass.db"),
        },
        "debug": {
            "dir": os.getenv("DEBUG_DIR", "data/debug"),
            "step_debug": _env_bool("STEP_DEBUG", default=False),
        },
        "logging": {
            "level": os.getenv("LOG_LEVEL", "INFO"),
            "file_path": os.getenv("LOG_FILE", "data/sync.log"),
        },
    }


class PortalConfig(BaseModel):
    """
    Flypass customer portal access. Enterprise accounts sign in with the company NIT.
    """

    base_url: str = DEFAULT_BASE_URL
    subject_identifier: str = ""
    password: str = Field(default="", repr=False)
    headless: bool = True
    browser_channel: str = ""
    default_timeout_ms: int = Field(default=30_000, gt=0)
    step_timeout_ms: int = Field(default=5_000, gt=0)
    download_timeout_ms: int = Field(default=60_000, gt=0)
    popup_wait_ms: int = Field(default=2_000, ge=0)

    @model_validator(mode="after")
    def _normalize(self) -> "PortalConfig":
        base_url = (self.base_url or "").strip().rstrip("/") or DEFAULT_BASE_URL
        parsed = urlparse(base_url)
        if not parsed.scheme or not parsed.netloc:
            raise ValueError(f"portal.base_url must be a full URL like '{DEFAULT_BASE_URL}'")
        self.base_url = base_url

        subject = (self.subject_identifier or "").strip()
        if subject and not _NIT_RE.match(subject):
            raise ValueError("portal.subject_identifier must be a NIT like '900123456' or '900123456-7'")
        self.subject_identifier = subject
        return self

    @property
    def has_credentials(self) -> bool:
        return bool(self.subject_identifier and self.password)


class DownloadsConfig(BaseModel):
    dir: str = "data/downloads"


class IngestConfig(BaseModel):
    auto_ingest: bool = True
    # The export is polled for exclusive access before reading; browsers may still hold it.
    lock_max_attempts: int = Field(default=5, ge=1)
    lock_delay_seconds: float = Field(default=1.0, ge=0)
    lock_backoff: float = Field(default=1.0, ge=1.0)
    deletion_grace_seconds: float = Field(default=5.0, ge=0)
    # 0 disables the overall run deadline.
    run_deadline_seconds: float = Field(default=600, ge=0)


class StoreConfig(BaseModel):
    db_path: str = "data/flypass.db"


class DebugConfig(BaseModel):
    dir: str = "data/debug"
    step_debug: bool = False


class LoggingConfig(BaseModel):
    level: str = "INFO"
    file_path: str = "data/sync.log"


class AppConfig(BaseModel):
    portal: PortalConfig = PortalConfig()
    downloads: DownloadsConfig = DownloadsConfig()
    ingest: IngestConfig = IngestConfig()
    store: StoreConfig = StoreConfig()
    debug: DebugConfig = DebugConfig()
    logging: LoggingConfig = LoggingConfig()

    @property
    def run_deadline_seconds(self) -> Optional[float]:
        return self.ingest.run_deadline_seconds or None


def load_config(path: Union[str, Path]) -> AppConfig:
    p = Path(path)
    raw: dict = {}
    if p.exists():
        raw = yaml.safe_load(p.read_text(encoding="utf-8")) or {}
        raw = _expand_env_vars(raw)  # supports ${ENV_VAR} in YAML

    merged = _deep_merge(_default_config_from_env(), raw)
    return AppConfig.model_validate(merged)
