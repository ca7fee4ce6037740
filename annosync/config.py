"""Runtime configuration read from the environment and an optional ``.env``."""
from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, Mapping, Optional

from .client import DEFAULT_BASE, DEFAULT_FALLBACK_HEIGHT

log = logging.getLogger(__name__)

DEFAULT_STATE_PATH = Path(".annosync") / "state.json"


def read_dotenv(env_path: Path) -> Dict[str, str]:
    """Parse ``KEY=VALUE`` assignments from ``env_path``; quotes are stripped."""

    values: Dict[str, str] = {}
    try:
        text = env_path.read_text(encoding="utf-8")
    except FileNotFoundError:
        return values
    except OSError as exc:
        log.warning("Could not read %s: %s", env_path, exc)
        return values
    for number, raw in enumerate(text.splitlines(), start=1):
        line = raw.strip()
        if not line or line.startswith("#"):
            continue
        key, sep, value = line.partition("=")
        key = key.strip()
        if not sep or not key:
            log.debug("Skipping %s:%d, not an assignment", env_path, number)
            continue
        values[key] = value.strip().strip("\"'")
    return values


def load_dotenv(env_path: Path = Path(".env")) -> None:
    """Export ``env_path`` into :mod:`os.environ` without overriding set variables."""

    for key, value in read_dotenv(env_path).items():
        os.environ.setdefault(key, value)


def _int(env: Mapping[str, str], key: str, default: int) -> int:
    raw = env.get(key)
    if raw is None or raw == "":
        return default
    try:
        value = int(raw)
    except ValueError:
        log.warning("Ignoring non-integer %s=%r", key, raw)
        return default
    if value <= 0:
        log.warning("Ignoring non-positive %s=%r", key, raw)
        return default
    return value


def _float(env: Mapping[str, str], key: str, default: float) -> float:
    raw = env.get(key)
    if raw is None or raw == "":
        return default
    try:
        return float(raw)
    except ValueError:
        log.warning("Ignoring non-numeric %s=%r", key, raw)
        return default


@dataclass
class SyncConfig:
    api_url: str = DEFAULT_BASE
    fallback_image_height: int = DEFAULT_FALLBACK_HEIGHT
    request_timeout: float = 10.0
    max_workers: int = 8
    state_path: Path = DEFAULT_STATE_PATH

    @classmethod
    def from_env(cls, env: Optional[Mapping[str, str]] = None, *, dotenv: Optional[Path] = Path(".env")) -> "SyncConfig":
        if env is None:
            if dotenv is not None:
                load_dotenv(dotenv)
            env = os.environ
        return cls(
            api_url=env.get("ANNOSYNC_API_URL") or DEFAULT_BASE,
            fallback_image_height=_int(env, "ANNOSYNC_FALLBACK_HEIGHT", DEFAULT_FALLBACK_HEIGHT),
            request_timeout=_float(env, "ANNOSYNC_TIMEOUT", 10.0),
            max_workers=_int(env, "ANNOSYNC_MAX_WORKERS", 8),
            state_path=Path(env.get("ANNOSYNC_STATE") or DEFAULT_STATE_PATH),
        )


__all__ = ["DEFAULT_STATE_PATH", "SyncConfig", "load_dotenv", "read_dotenv"]
