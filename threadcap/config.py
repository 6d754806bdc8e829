"""Runtime configuration for threadcap crawls."""
from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional
from urllib.parse import urlparse

from .fetcher import compute_user_agent
from .models import ThreadcapError
from .signing import SigningMode


class ConfigError(ThreadcapError):
    """Raised when configuration values are invalid."""


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        return float(raw)
    except ValueError as exc:
        raise ConfigError(f"{name} must be a number, found {raw!r}") from exc


@dataclass(slots=True)
class ThreadcapConfig:
    """Configuration for building fetchers and running updates."""

    user_agent: str = field(default_factory=lambda: os.getenv("THREADCAP_USER_AGENT") or compute_user_agent())
    timeout_seconds: float = field(default_factory=lambda: _env_float("THREADCAP_TIMEOUT_SECONDS", 30.0))
    key_id: Optional[str] = field(default_factory=lambda: os.getenv("THREADCAP_KEY_ID") or None)
    private_key_pem_path: Optional[Path] = field(
        default_factory=lambda: Path(os.environ["THREADCAP_PRIVATE_KEY_PEM"])
        if os.getenv("THREADCAP_PRIVATE_KEY_PEM")
        else None
    )
    signing_mode: str = field(
        default_factory=lambda: os.getenv("THREADCAP_SIGNING_MODE", SigningMode.WHEN_NEEDED.value)
    )
    bearer_token: Optional[str] = field(default_factory=lambda: os.getenv("THREADCAP_BEARER_TOKEN") or None)
    max_levels: Optional[int] = None
    max_nodes: Optional[int] = None

    @classmethod
    def from_env(cls) -> "ThreadcapConfig":
        config = cls()
        config.validate()
        return config

    @property
    def signing_enabled(self) -> bool:
        return bool(self.key_id and self.private_key_pem_path)

    def validate(self) -> None:
        if not self.user_agent or not self.user_agent.strip():
            raise ConfigError("user_agent must not be blank")
        if self.timeout_seconds <= 0:
            raise ConfigError("timeout_seconds must be > 0")
        if bool(self.key_id) != bool(self.private_key_pem_path):
            raise ConfigError("Either specify both key_id and private_key_pem_path, or neither")
        if self.key_id:
            parsed = urlparse(self.key_id)
            if not (parsed.scheme and parsed.netloc):
                raise ConfigError(
                    "key_id should be a url with a hash fragment, e.g. https://social.example/actor#main-key"
                )
        try:
            SigningMode(self.signing_mode)
        except ValueError as exc:
            raise ConfigError("signing_mode should be one of: 'always' or 'when-needed'") from exc
        for name in ("max_levels", "max_nodes"):
            value = getattr(self, name)
            if value is not None and (isinstance(value, bool) or not isinstance(value, int) or value <= 0):
                raise ConfigError(f"{name} should be a positive integer, if provided")


__all__ = ["ConfigError", "ThreadcapConfig"]
