"""Simulation configuration model."""

from __future__ import annotations

from typing import Any

from pydantic import BaseModel, ConfigDict, Field

DEFAULT_CACHE_VERSION = "v1"


class SimulationConfig(BaseModel):
    """How many simulation and bootstrap draws each design point receives.

    ``cache_version`` exists to invalidate every prior cache entry on purpose,
    e.g. after the result schema changes. The model is frozen: one config
    describes one run.
    """

    model_config = ConfigDict(extra="forbid", frozen=True)

    n_simulations: int = Field(..., ge=1, description="Simulation draws per design point")
    n_bootstrap_simulations: int = Field(0, ge=0, description="Bootstrap resamples for diagnosand uncertainty")
    cache_version: str = Field(DEFAULT_CACHE_VERSION, min_length=1)

    def to_canonical(self) -> dict[str, Any]:
        """Fields in the form that enters the cache key."""
        return {
            "cache_version": self.cache_version,
            "n_bootstrap_simulations": self.n_bootstrap_simulations,
            "n_simulations": self.n_simulations,
        }
