"""
Runtime configuration loaded from environment variables.

Values are read once into a Settings object. Required values are validated
lazily (``require_llm`` / ``AdbDevice``) so that importing the API server never
fails on a half-configured machine.
"""
from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

from errors import ConfigurationError

BASE_DIR = Path(__file__).resolve().parent

LLM_PROVIDERS = ("openai", "bedrock")


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        return float(raw)
    except ValueError:
        raise ConfigurationError(f"{name} must be a number, got {raw!r}")


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        return int(raw)
    except ValueError:
        raise ConfigurationError(f"{name} must be an integer, got {raw!r}")


@dataclass
class Settings:
    llm_provider: str = "openai"
    llm_endpoint: Optional[str] = None
    llm_model: Optional[str] = None
    llm_api_key: Optional[str] = None
    llm_timeout: float = 60.0
    llm_temperature: float = 0.6
    llm_max_tokens: int = 4096
    aws_region: str = "us-east-1"
    aws_access_key_id: Optional[str] = None
    aws_secret_access_key: Optional[str] = None
    adb_path: str = "adb"
    adb_serial: Optional[str] = None
    adb_command_timeout: float = 20.0
    capture_dir: Path = field(default_factory=lambda: BASE_DIR / "screenshots")
    settle_delay: float = 1.0
    max_turns: int = 15
    log_dir: Path = field(default_factory=lambda: BASE_DIR / "logs")
    host: str = "0.0.0.0"
    port: int = 3000

    @classmethod
    def from_env(cls) -> "Settings":
        provider = (os.getenv("LLM_PROVIDER") or "openai").strip().lower()
        if provider not in LLM_PROVIDERS:
            raise ConfigurationError(
                f"LLM_PROVIDER must be one of {', '.join(LLM_PROVIDERS)}, got {provider!r}"
            )
        capture_dir = os.getenv("CAPTURE_DIR")
        log_dir = os.getenv("LOG_DIR")
        settings = cls(
            llm_provider=provider,
            llm_endpoint=os.getenv("LLM_ENDPOINT") or None,
            llm_model=os.getenv("LLM_MODEL") or None,
            llm_api_key=os.getenv("LLM_API_KEY") or None,
            llm_timeout=_env_float("LLM_TIMEOUT", 60.0),
            llm_temperature=_env_float("LLM_TEMPERATURE", 0.6),
            llm_max_tokens=_env_int("LLM_MAX_TOKENS", 4096),
            aws_region=os.getenv("AWS_REGION", "us-east-1"),
            aws_access_key_id=os.getenv("AWS_ACCESS_KEY_ID") or None,
            aws_secret_access_key=os.getenv("AWS_SECRET_ACCESS_KEY") or None,
            adb_path=os.getenv("ADB_PATH") or "adb",
            adb_serial=os.getenv("ADB_SERIAL") or None,
            adb_command_timeout=_env_float("ADB_COMMAND_TIMEOUT", 20.0),
            settle_delay=_env_float("SETTLE_DELAY", 1.0),
            max_turns=_env_int("MAX_TURNS", 15),
            host=os.getenv("HOST", "0.0.0.0"),
            port=_env_int("PORT", 3000),
        )
        if capture_dir:
            settings.capture_dir = Path(capture_dir)
        if log_dir:
            settings.log_dir = Path(log_dir)
        return settings

    def require_llm(self) -> None:
        """Raise ConfigurationError unless the selected provider is fully configured."""
        if self.llm_provider == "bedrock":
            missing = [
                name
                for name, value in (
                    ("LLM_MODEL", self.llm_model),
                    ("AWS_REGION", self.aws_region),
                )
                if not value
            ]
        else:
            missing = [
                name
                for name, value in (
                    ("LLM_ENDPOINT", self.llm_endpoint),
                    ("LLM_MODEL", self.llm_model),
                    ("LLM_API_KEY", self.llm_api_key),
                )
                if not value
            ]
        if missing:
            raise ConfigurationError(
                f"LLM configuration incomplete, missing: {', '.join(missing)}"
            )


_settings: Optional[Settings] = None


def get_settings() -> Settings:
    """Return the process-wide settings, reading the environment on first call."""
    global _settings
    if _settings is None:
        _settings = Settings.from_env()
    return _settings


def reset_settings() -> None:
    global _settings
    _settings = None
