"""Configuration management for chunk_uploader"""

import json
import os
import tomllib
from pathlib import Path
from typing import Any

from dotenv import load_dotenv

# Base directory for the project
BASE_DIR = Path(__file__).resolve().parent.parent

# Load environment variables from .env file
ENV_FILE = BASE_DIR / ".env"
load_dotenv(ENV_FILE)

# Settings file paths
SETTINGS_FILE = BASE_DIR / "settings.json"
SETTINGS_DEFAULT_FILE = BASE_DIR / "settings.default.json"
PYPROJECT_FILE = BASE_DIR / "pyproject.toml"

# Environment variable names for configuration
ENV_SERVER_URL = "CHUNK_UPLOADER_SERVER_URL"
ENV_AUTH_TOKEN = "CHUNK_UPLOADER_AUTH_TOKEN"
ENV_STORE_PATH = "CHUNK_UPLOADER_STORE_PATH"
ENV_LOG_DIRECTORY = "CHUNK_UPLOADER_LOG_DIRECTORY"
ENV_MAX_CONCURRENT = "CHUNK_UPLOADER_MAX_CONCURRENT"

DEFAULT_CHUNK_SIZE = 2 * 1024 * 1024  # 2 MB, matches the server default

DEFAULTS: dict[str, Any] = {
    "server_url": "http://127.0.0.1:3000/api",
    "auth_token": "",
    "chunk_size": DEFAULT_CHUNK_SIZE,
    "max_concurrent": 3,
    "checkpoint_interval": 20,
    "progress_interval": 0.1,
    "slot_poll_interval": 1.0,
    "watchdog_interval": 30.0,
    "watchdog_threshold": 30.0,
    "retention_days": 7,
    "request_timeout": 120.0,
    "store_path": "chunk_uploader_store.db",
    "log_directory": "logs",
    "display_name": "Chunk Uploader",
}


def get_package_version() -> str:
    """Get the package version from pyproject.toml."""
    try:
        with open(PYPROJECT_FILE, "rb") as f:
            pyproject = tomllib.load(f)
        return str(pyproject.get("project", {}).get("version", "0.0.0"))
    except Exception:
        return "0.0.0"


class Settings:
    """Manages application settings stored in JSON format."""

    _instance: "Settings | None" = None
    _settings: dict[str, Any]

    def __new__(cls) -> "Settings":
        """Singleton pattern to ensure only one settings instance exists."""
        if cls._instance is None:
            cls._instance = super().__new__(cls)
            cls._instance._load_settings()
        return cls._instance

    def _load_settings(self) -> None:
        """Load settings from file, with environment variables taking precedence.

        Priority order (highest to lowest):
        1. Environment variables (from .env file or system)
        2. settings.json (user-saved settings)
        3. settings.default.json (template defaults)
        4. Hardcoded defaults
        """
        defaults = dict(DEFAULTS)

        if SETTINGS_DEFAULT_FILE.exists():
            with open(SETTINGS_DEFAULT_FILE, encoding="utf-8") as f:
                defaults.update(json.load(f))

        if SETTINGS_FILE.exists():
            with open(SETTINGS_FILE, encoding="utf-8") as f:
                defaults.update(json.load(f))

        env_overrides: dict[str, Any] = {
            "server_url": os.environ.get(ENV_SERVER_URL),
            "auth_token": os.environ.get(ENV_AUTH_TOKEN),
            "store_path": os.environ.get(ENV_STORE_PATH),
            "log_directory": os.environ.get(ENV_LOG_DIRECTORY),
            "max_concurrent": os.environ.get(ENV_MAX_CONCURRENT),
        }

        # Only apply non-None environment values
        for key, value in env_overrides.items():
            if value is not None:
                defaults[key] = value

        self._settings = defaults

    def all(self) -> dict[str, Any]:
        """Get all settings as a dictionary."""
        return self._settings.copy()

    def reload(self) -> None:
        """Reload settings from file."""
        self._load_settings()

    @property
    def server_url(self) -> str:
        """Base URL of the upload service (the part before /upload/chunked)."""
        return str(self._settings.get("server_url", DEFAULTS["server_url"])).rstrip("/")

    @property
    def auth_token(self) -> str:
        """Bearer token sent with every request, empty for none."""
        return str(self._settings.get("auth_token") or "")

    @property
    def chunk_size(self) -> int:
        return int(self._settings.get("chunk_size", DEFAULT_CHUNK_SIZE))

    @property
    def max_concurrent(self) -> int:
        return max(1, int(self._settings.get("max_concurrent", 3)))

    @property
    def checkpoint_interval(self) -> int:
        return max(1, int(self._settings.get("checkpoint_interval", 20)))

    @property
    def progress_interval(self) -> float:
        return float(self._settings.get("progress_interval", 0.1))

    @property
    def slot_poll_interval(self) -> float:
        return float(self._settings.get("slot_poll_interval", 1.0))

    @property
    def watchdog_interval(self) -> float:
        return float(self._settings.get("watchdog_interval", 30.0))

    @property
    def watchdog_threshold(self) -> float:
        return float(self._settings.get("watchdog_threshold", 30.0))

    @property
    def retention_days(self) -> int:
        return int(self._settings.get("retention_days", 7))

    @property
    def request_timeout(self) -> float:
        return float(self._settings.get("request_timeout", 120.0))

    @property
    def store_path(self) -> Path:
        """Get the Durable Store database path, resolved against the project root."""
        path = Path(str(self._settings.get("store_path", DEFAULTS["store_path"])))
        return path if path.is_absolute() else BASE_DIR / path

    @property
    def log_directory(self) -> Path:
        """Get the JSONL log directory, resolved against the project root."""
        path = Path(str(self._settings.get("log_directory", DEFAULTS["log_directory"])))
        return path if path.is_absolute() else BASE_DIR / path

    @property
    def display_name(self) -> str:
        return str(self._settings.get("display_name", DEFAULTS["display_name"]))


def get_settings() -> Settings:
    """Get the singleton Settings instance."""
    return Settings()
