# config.py - Runtime settings read from PRISM_* environment variables
import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Mapping, Optional

DEFAULT_STATE_DIR = Path("ratchet_states")
DEFAULT_KEY_DIR = Path("identity_keys")

# Upper bound on message keys derived ahead in a single skip, and on the
# number of cached skipped keys kept per session.
DEFAULT_MAX_SKIP = 1000

# Number of one-time prekeys generated per batch.
DEFAULT_PREKEY_BATCH_SIZE = 10

LOG_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'


def _int_from_env(env: Mapping[str, str], name: str, default: int) -> int:
    raw = env.get(name)
    if raw is None or raw == "":
        return default
    try:
        value = int(raw)
    except ValueError:
        raise ValueError(f"{name} must be an integer, got {raw!r}")
    if value <= 0:
        raise ValueError(f"{name} must be positive, got {value}")
    return value


@dataclass
class Settings:
    state_dir: Path = DEFAULT_STATE_DIR
    key_dir: Path = DEFAULT_KEY_DIR
    max_skip: int = DEFAULT_MAX_SKIP
    prekey_batch_size: int = DEFAULT_PREKEY_BATCH_SIZE
    log_level: str = "INFO"

    @classmethod
    def from_env(cls, env: Optional[Mapping[str, str]] = None) -> "Settings":
        env = os.environ if env is None else env
        return cls(
            state_dir=Path(env.get("PRISM_STATE_DIR") or DEFAULT_STATE_DIR),
            key_dir=Path(env.get("PRISM_KEY_DIR") or DEFAULT_KEY_DIR),
            max_skip=_int_from_env(env, "PRISM_MAX_SKIP", DEFAULT_MAX_SKIP),
            prekey_batch_size=_int_from_env(env, "PRISM_PREKEY_BATCH_SIZE", DEFAULT_PREKEY_BATCH_SIZE),
            log_level=(env.get("PRISM_LOG_LEVEL") or "INFO").upper(),
        )


def configure_logging(level: str = "INFO") -> None:
    """Install the package log format on the root logger."""
    logging.basicConfig(level=getattr(logging, level.upper(), logging.INFO), format=LOG_FORMAT)
