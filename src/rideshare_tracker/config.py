"""Application configuration: loads .env, then overrides from settings.json."""

import json
import os
from pathlib import Path

from dotenv import load_dotenv

# Find the project root (where .env lives)
_PROJECT_ROOT = Path(__file__).resolve().parent.parent.parent
load_dotenv(_PROJECT_ROOT / ".env")

# Runtime settings file (device token, server URL, tunables)
_SETTINGS_FILE = Path(
    os.getenv("SETTINGS_PATH", str(_PROJECT_ROOT / "data" / "settings.json"))
)


class ConfigurationError(Exception):
    """A required setting (server URL, device token) is missing."""


def _load_settings() -> dict:
    """Load saved runtime settings from JSON file."""
    if _SETTINGS_FILE.exists():
        try:
            return json.loads(_SETTINGS_FILE.read_text(encoding="utf-8"))
        except (json.JSONDecodeError, OSError):
            pass
    return {}


def _save_settings(settings: dict):
    """Persist runtime settings to JSON file."""
    _SETTINGS_FILE.parent.mkdir(parents=True, exist_ok=True)
    _SETTINGS_FILE.write_text(
        json.dumps(settings, indent=2), encoding="utf-8"
    )


# Load saved settings once at import time (tunables only; credentials
# are re-read on every request)
_runtime = _load_settings()


class Config:
    """Central configuration: .env defaults, settings.json overrides."""

    # Paths
    PROJECT_ROOT: Path = _PROJECT_ROOT
    DATABASE_PATH: Path = Path(
        os.getenv("DATABASE_PATH", str(_PROJECT_ROOT / "data" / "rideshare.db"))
    )
    EXPORT_PATH: Path = Path(
        os.getenv("EXPORT_PATH", str(_PROJECT_ROOT / "data" / "exports"))
    )

    # Sync engine
    SYNC_INTERVAL_SECONDS: int = int(_runtime.get(
        "sync_interval_seconds",
        os.getenv("SYNC_INTERVAL_SECONDS", "30"),
    ))
    SYNC_BATCH_SIZE: int = int(_runtime.get(
        "sync_batch_size",
        os.getenv("SYNC_BATCH_SIZE", "50"),
    ))
    PING_BATCH_SIZE: int = int(_runtime.get(
        "ping_batch_size",
        os.getenv("PING_BATCH_SIZE", "100"),
    ))
    MAX_RETRIES: int = int(_runtime.get(
        "max_retries",
        os.getenv("MAX_RETRIES", "10"),
    ))
    PING_RETENTION_DAYS: int = int(_runtime.get(
        "ping_retention_days",
        os.getenv("PING_RETENTION_DAYS", "30"),
    ))

    # Remote API
    API_MAX_ATTEMPTS: int = int(os.getenv("API_MAX_ATTEMPTS", "3"))
    API_BACKOFF_SECONDS: float = float(os.getenv("API_BACKOFF_SECONDS", "1.0"))
    API_TIMEOUT: float = float(_runtime.get(
        "api_timeout",
        os.getenv("API_TIMEOUT", "30"),
    ))

    # Shift summary screen is shown this long before returning to idle
    SHIFT_SUMMARY_DELAY_MS: int = int(os.getenv("SHIFT_SUMMARY_DELAY_MS", "5000"))

    LOG_LEVEL: str = os.getenv("LOG_LEVEL", "INFO")

    # ── Credentials (read fresh on every call) ──────────────────

    @classmethod
    def get_api_base_url(cls) -> str:
        """Return the server base URL without a trailing slash.

        Raises ConfigurationError when neither settings.json nor the
        environment provides one.
        """
        url = _load_settings().get("api_base_url") or os.getenv("API_BASE_URL", "")
        if not url:
            raise ConfigurationError(
                "API base URL not configured. Please set it in settings."
            )
        return url.rstrip("/")

    @classmethod
    def get_device_token(cls) -> str:
        """Return the device bearer token used for every request."""
        token = _load_settings().get("device_token") or os.getenv("DEVICE_TOKEN", "")
        if not token:
            raise ConfigurationError(
                "Device token not set. Please pair with server first."
            )
        return token

    @classmethod
    def update_api_base_url(cls, url: str):
        """Persist the server base URL."""
        settings = _load_settings()
        settings["api_base_url"] = url.strip()
        _save_settings(settings)

    @classmethod
    def update_device_token(cls, token: str):
        """Persist the device token (from QR pairing or manual entry)."""
        settings = _load_settings()
        settings["device_token"] = token.strip()
        _save_settings(settings)

    @classmethod
    def get_overlay_url(cls) -> str:
        """Public overlay URL for sharing with a streaming tool."""
        return f"{cls.get_api_base_url()}/overlay"

    @classmethod
    def update_sync_settings(cls, interval_seconds: int, batch_size: int,
                             max_retries: int):
        """Update sync engine tunables at runtime and persist."""
        cls.SYNC_INTERVAL_SECONDS = interval_seconds
        cls.SYNC_BATCH_SIZE = batch_size
        cls.MAX_RETRIES = max_retries

        settings = _load_settings()
        settings["sync_interval_seconds"] = interval_seconds
        settings["sync_batch_size"] = batch_size
        settings["max_retries"] = max_retries
        _save_settings(settings)
