from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path


def project_root() -> Path:
    # hativon/internal_core/config.py -> hativon -> repo root
    return Path(__file__).resolve().parents[2]


def _getenv_str(name: str, default: str) -> str:
    value = os.getenv(name)
    return default if value is None else value


def _getenv_int(name: str, default: int) -> int:
    value = os.getenv(name)
    if value is None or value == "":
        return default
    return int(value)


def _getenv_int_bounded(name: str, default: int, *, min_value: int, max_value: int) -> int:
    value = _getenv_int(name, default)
    return max(min_value, min(max_value, value))


@dataclass(frozen=True)
class AutosaveConfig:
    HATIVON_AUTOSAVE_DEBOUNCE_MS: int
    HATIVON_AUTOSAVE_REQUEST_TIMEOUT_MS: int
    HATIVON_AUTOSAVE_ENDPOINT: str
    HATIVON_API_BASE_URL: str
    HATIVON_BACKUP_DIR: str
    HATIVON_BACKUP_NAMESPACE: str
    HATIVON_DRAFT_STORE: str
    HATIVON_SQLITE_PATH: str
    HATIVON_MAX_TITLE_CHARS: int
    HATIVON_MAX_CONTENT_CHARS: int
    HATIVON_MAX_DESCRIPTION_CHARS: int
    HATIVON_MAX_AUTHOR_CHARS: int
    HATIVON_CAS_MAX_ATTEMPTS: int
    HATIVON_DEFAULT_DRAFT_TITLE: str
    HATIVON_LOG_LEVEL: str

    @property
    def debounce_seconds(self) -> float:
        return self.HATIVON_AUTOSAVE_DEBOUNCE_MS / 1000.0

    @property
    def request_timeout_seconds(self) -> float:
        return self.HATIVON_AUTOSAVE_REQUEST_TIMEOUT_MS / 1000.0

    @property
    def autosave_url(self) -> str:
        return self.HATIVON_API_BASE_URL.rstrip("/") + "/" + self.HATIVON_AUTOSAVE_ENDPOINT.lstrip("/")

    def backup_dir_path(self, repo_root: Path) -> Path:
        return (repo_root / self.HATIVON_BACKUP_DIR).resolve()

    def sqlite_path(self, repo_root: Path) -> Path:
        return (repo_root / self.HATIVON_SQLITE_PATH).resolve()


def load_config() -> AutosaveConfig:
    debounce_ms = _getenv_int_bounded(
        "HATIVON_AUTOSAVE_DEBOUNCE_MS", 2000, min_value=10, max_value=60_000
    )
    # A save must time out before the next debounced save can start.
    default_timeout_ms = max(1, debounce_ms - 200)
    timeout_ms = _getenv_int_bounded(
        "HATIVON_AUTOSAVE_REQUEST_TIMEOUT_MS",
        min(1800, default_timeout_ms),
        min_value=1,
        max_value=default_timeout_ms,
    )

    return AutosaveConfig(
        HATIVON_AUTOSAVE_DEBOUNCE_MS=debounce_ms,
        HATIVON_AUTOSAVE_REQUEST_TIMEOUT_MS=timeout_ms,
        HATIVON_AUTOSAVE_ENDPOINT=_getenv_str("HATIVON_AUTOSAVE_ENDPOINT", "/api/user/posts/autosave"),
        HATIVON_API_BASE_URL=_getenv_str("HATIVON_API_BASE_URL", "http://127.0.0.1:8000"),
        HATIVON_BACKUP_DIR=_getenv_str("HATIVON_BACKUP_DIR", "./tmp/autosave"),
        HATIVON_BACKUP_NAMESPACE=_getenv_str("HATIVON_BACKUP_NAMESPACE", "hativon_autosave"),
        HATIVON_DRAFT_STORE=_getenv_str("HATIVON_DRAFT_STORE", "memory").strip().lower(),
        HATIVON_SQLITE_PATH=_getenv_str("HATIVON_SQLITE_PATH", "./tmp/hativon.db"),
        HATIVON_MAX_TITLE_CHARS=_getenv_int("HATIVON_MAX_TITLE_CHARS", 200),
        HATIVON_MAX_CONTENT_CHARS=_getenv_int("HATIVON_MAX_CONTENT_CHARS", 50_000),
        HATIVON_MAX_DESCRIPTION_CHARS=_getenv_int("HATIVON_MAX_DESCRIPTION_CHARS", 300),
        HATIVON_MAX_AUTHOR_CHARS=_getenv_int("HATIVON_MAX_AUTHOR_CHARS", 100),
        HATIVON_CAS_MAX_ATTEMPTS=_getenv_int_bounded(
            "HATIVON_CAS_MAX_ATTEMPTS", 3, min_value=1, max_value=20
        ),
        HATIVON_DEFAULT_DRAFT_TITLE=_getenv_str("HATIVON_DEFAULT_DRAFT_TITLE", "Untitled draft"),
        HATIVON_LOG_LEVEL=_getenv_str("HATIVON_LOG_LEVEL", "INFO"),
    )
