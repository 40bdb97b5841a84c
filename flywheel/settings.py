"""Loop configuration loader.

Reads flywheel/config/defaults.toml into a LoopConfig. The loaded
config is cached per path; call ``load_loop_config.cache_clear()`` after
changing the environment in tests.
"""

from __future__ import annotations

import os
import tomllib
from functools import lru_cache
from pathlib import Path

from pydantic import BaseModel, Field

from flywheel.schemas.upstream import SprintObjective

_CONFIG_DIR = Path(__file__).parent / "config"

DB_PATH_ENV = "FLYWHEEL_DB_PATH"


class FlowLimits(BaseModel):
    """Per-flow row counts."""

    autorun: int = Field(default=20, ge=1)
    strategy_loop: int = Field(default=30, ge=1)
    outcome_agent: int = Field(default=40, ge=1)
    learning: int = Field(default=30, ge=1)
    orchestrator: int = Field(default=8, ge=1)
    automation: int = Field(default=10, ge=1)
    optimizer: int = Field(default=30, ge=1)


class OutcomeAgentDefaults(BaseModel):
    stale_after_hours: float = Field(default=18, ge=6, le=240)
    max_runs: int = Field(default=3, ge=1, le=10)


class FeatureFlags(BaseModel):
    """Switches for the optional loop flows. A disabled flow answers 404."""

    autorun: bool = True
    strategy_loop: bool = True
    outcome_agent: bool = True
    self_healing: bool = True
    orchestrator: bool = True
    automation: bool = True
    optimizer: bool = True

    def enabled(self, feature: str) -> bool:
        return bool(getattr(self, feature, False))


class LoopConfig(BaseModel):
    """Runtime configuration for the decision loop service."""

    db_path: str = Field(default="~/.flywheel/flywheel.db")
    seed_sprint_objective: SprintObjective = SprintObjective.SHIP_NEXT_DROP
    seed_horizon_days: int = Field(default=7, ge=3, le=30)
    history_limits: FlowLimits = Field(
        default_factory=FlowLimits, description="Runs read from the store per flow",
    )
    response_history: FlowLimits = Field(
        default_factory=lambda: FlowLimits(
            autorun=10, strategy_loop=12, outcome_agent=12, learning=12,
            orchestrator=8, automation=8, optimizer=12,
        ),
        description="Run summaries echoed back per flow",
    )
    outcome_agent: OutcomeAgentDefaults = Field(default_factory=OutcomeAgentDefaults)
    features: FeatureFlags = Field(default_factory=FeatureFlags)


@lru_cache(maxsize=8)
def load_loop_config(config_path: Path | None = None) -> LoopConfig:
    """Load loop defaults from a TOML file.

    Args:
        config_path: Path to defaults.toml. Defaults to flywheel/config/defaults.toml.

    Returns:
        LoopConfig with values from the TOML file and the environment.

    Raises:
        FileNotFoundError: If the config file does not exist.
        ValueError: If the TOML has no [loop] section.
    """
    path = config_path or _CONFIG_DIR / "defaults.toml"
    if not path.exists():
        raise FileNotFoundError(f"Loop config not found: {path}")

    with open(path, "rb") as f:
        raw = tomllib.load(f)

    loop = raw.get("loop")
    if not loop or not isinstance(loop, dict):
        raise ValueError(f"No [loop] section found in {path}")

    data = dict(loop)
    features = raw.get("features")
    if isinstance(features, dict):
        data["features"] = features

    env_db_path = os.environ.get(DB_PATH_ENV, "").strip()
    if env_db_path:
        data["db_path"] = env_db_path

    return LoopConfig.model_validate(data)
