"""Runtime settings read from the environment (and a local ``.env`` file)."""

from __future__ import annotations

import os
from dataclasses import dataclass

from dotenv import load_dotenv

load_dotenv()

DEFAULT_LATEST_YEAR = 2022


def _optional_float(raw: str | None) -> float | None:
    if raw is None or not raw.strip():
        return None
    return float(raw)


@dataclass(frozen=True)
class Settings:
    """Configuration consumed by the refresh orchestrator and job runner."""

    census_api_key: str | None = None
    latest_year: int = DEFAULT_LATEST_YEAR
    census_timeout_seconds: float | None = None
    census_max_attempts: int = 1

    @property
    def has_census_key(self) -> bool:
        return bool(self.census_api_key)

    @property
    def request_options(self) -> dict[str, float | int | None]:
        return {
            "timeout": self.census_timeout_seconds,
            "max_attempts": self.census_max_attempts,
        }


def load_settings() -> Settings:
    """Build ``Settings`` from the current environment.

    Read on every call so that tests and long-running processes pick up
    environment changes without a restart.
    """

    return Settings(
        census_api_key=os.getenv("CENSUS_API_KEY") or None,
        latest_year=int(os.getenv("CENSUS_ACS_LATEST_YEAR") or DEFAULT_LATEST_YEAR),
        census_timeout_seconds=_optional_float(os.getenv("CENSUS_TIMEOUT_SECONDS")),
        census_max_attempts=int(os.getenv("CENSUS_MAX_ATTEMPTS") or 1),
    )


__all__ = ["Settings", "load_settings", "DEFAULT_LATEST_YEAR"]
