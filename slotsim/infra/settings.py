from __future__ import annotations

"""Environment-driven settings for the simulation service."""

import logging
from functools import lru_cache
from typing import Literal

from pydantic import Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger(__name__)


class Settings(BaseSettings):
    """Service knobs, read from `SLOTSIM_*` variables or a local `.env`.

    Engine semantics (tier presets, loss thresholds) are fixed in code; these
    only tune how much work a run does and how the service reports it.
    """

    model_config = SettingsConfigDict(env_prefix="SLOTSIM_", env_file=".env", env_file_encoding="utf-8", extra="ignore")

    app_name: str = "slotsim"
    app_version: str = "0.1.0"
    log_level: str = "INFO"
    payout_model: Literal["bucketed", "mixture"] = "mixture"
    cap_samples: int = Field(default=2_000_000, ge=0)
    sample_step: int = Field(default=100, ge=1)
    max_jobs: int = Field(default=2, ge=1)
    max_events: int = Field(default=8_000, ge=1)
    max_finished_jobs: int = Field(default=50, ge=1)
    spins_warning: int = 50_000
    runs_warning: int = 20_000

    @model_validator(mode="after")
    def _warn_small_prepass(self) -> "Settings":
        if self.payout_model == "mixture" and 0 < self.cap_samples < 100_000:
            logger.warning(
                "cap_samples=%d is small; the mixture cap adjustment will be noisy",
                self.cap_samples,
            )
        return self


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings()
