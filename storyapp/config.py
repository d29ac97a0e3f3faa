"""
storyapp/config.py -- Environment-driven settings.

All configuration comes from environment variables so the same build runs
under a dev shell, a container or the test suite.  The default database
lives in the platform user data directory (via platformdirs).

    ANTHROPIC_API_KEY                     provider credential (required to generate)
    STORYTHREAD_MODEL                     model id for every flow
    STORYTHREAD_DB_PATH                   SQLite file, or ":memory:"
    STORYTHREAD_LOG_LEVEL                 logging level name
    STORYTHREAD_TIMEOUT                   provider request timeout in seconds
    STORYTHREAD_REPAIR_INITIAL_EPISODE    run the repair loop on episode 1 too
"""

from __future__ import annotations

import os
from dataclasses import dataclass

from platformdirs import user_data_dir

_APP_NAME = "storythread"
_APP_AUTHOR = "storythread"

DEFAULT_MODEL = "claude-sonnet-4-20250514"
DEFAULT_TIMEOUT = 120

# (temperature, max_output_tokens) per flow.
CREATION_PARAMS = (0.7, 3000)
EPISODE_PARAMS = (0.2, 1800)
FINALIZE_PARAMS = (0.2, 1200)

_TRUTHY = {"1", "true", "yes", "on"}


def default_db_path() -> str:
    """Return ``storythread.db`` inside the platform user data directory."""
    return os.path.join(user_data_dir(_APP_NAME, _APP_AUTHOR), "storythread.db")


@dataclass
class Settings:
    api_key: str | None = None
    model: str = DEFAULT_MODEL
    db_path: str = ":memory:"
    log_level: str = "INFO"
    timeout: float = DEFAULT_TIMEOUT
    repair_initial_episode: bool = False

    @classmethod
    def from_env(cls, environ: dict | None = None) -> Settings:
        """Build settings from *environ* (defaults to ``os.environ``)."""
        env = os.environ if environ is None else environ
        timeout_raw = env.get("STORYTHREAD_TIMEOUT", "")
        try:
            timeout = float(timeout_raw) if timeout_raw else DEFAULT_TIMEOUT
        except ValueError:
            raise ValueError(f"STORYTHREAD_TIMEOUT must be a number, got {timeout_raw!r}") from None
        return cls(
            api_key=env.get("ANTHROPIC_API_KEY") or None,
            model=env.get("STORYTHREAD_MODEL") or DEFAULT_MODEL,
            db_path=env.get("STORYTHREAD_DB_PATH") or default_db_path(),
            log_level=(env.get("STORYTHREAD_LOG_LEVEL") or "INFO").upper(),
            timeout=timeout,
            repair_initial_episode=(
                env.get("STORYTHREAD_REPAIR_INITIAL_EPISODE", "").strip().lower() in _TRUTHY
            ),
        )
