"""
Pipeline Configuration
======================

Settings for the crime / bus-stop spatial regression run.

Configuration Sources (in order of precedence):
    1. Environment variables (highest priority)
    2. YAML file passed to :func:`load_config`
    3. Default values (lowest priority)

Environment Variable Mapping:
    SPLAG_DATA_DIR    -> incidents.directory
    SPLAG_LOG_LEVEL   -> logging.level
    SPLAG_LAG_METHOD  -> lag.method

Boundary attribution, the zero policy for neighbourless cells and the null
of Moran's I are settings here, so a run records every policy it used.

Example:
    from config import load_config

    settings = load_config("config.yaml")
    print(settings.model.predictors)
"""

from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import List, Literal, Optional

import yaml
from pydantic import BaseModel, Field


logger = logging.getLogger(__name__)


# =============================================================================
# Configuration Models
# =============================================================================

class IncidentConfig(BaseModel):
    """Crime incident CSV discovery and columns."""

    directory: str = Field(default="data/crime", description="Folder holding incident files")
    suffix: str = Field(
        default="-street.csv",
        min_length=1,
        description="File-name suffix used to discover incident files",
    )
    category_column: str = Field(default="Crime type", description="Crime category column")
    longitude_column: str = Field(default="Longitude", description="Longitude column")
    latitude_column: str = Field(default="Latitude", description="Latitude column")
    categories: Optional[List[str]] = Field(
        default=None,
        description="Keep only these categories (None keeps every record)",
    )


class HexagonConfig(BaseModel):
    """Hexagon grid layer."""

    path: str = Field(default="data/hexagons/hexagons.shp", description="Hexagon layer path")
    trips_column: str = Field(default="trips", description="Pedestrian trip estimate column")
    id_column: Optional[str] = Field(
        default=None,
        description="Unique cell id column (None numbers cells by row)",
    )


class BusStopConfig(BaseModel):
    """Bus stop layer."""

    path: str = Field(default="data/bus_stops/bus_stops.shp", description="Bus stop layer path")
    withdrawn_column: str = Field(default="WITHDRAWN_", description="Withdrawal flag column")
    withdrawn_values: List[str] = Field(
        default_factory=lambda: ["Y", "YES", "TRUE", "1"],
        description="Flag values (case-insensitive) marking a stop as withdrawn",
    )


class AggregationConfig(BaseModel):
    """Point-in-polygon counting."""

    boundary: Literal["first", "exclude"] = Field(
        default="first",
        description="'first': boundary points go to the first cell in table order; "
                    "'exclude': boundary points go to no cell",
    )
    incident_column: str = Field(default="total", description="Output column for crime counts")
    stop_column: str = Field(default="bus_stops", description="Output column for stop counts")


class WeightsConfig(BaseModel):
    """Contiguity weights."""

    contiguity: Literal["queen", "rook"] = Field(default="queen", description="Contiguity rule")
    transform: str = Field(default="r", description="libpysal weight transform")
    zero_policy: bool = Field(
        default=True,
        description="Allow neighbourless cells (zero weight rows) instead of failing",
    )


class MoranConfig(BaseModel):
    """Global Moran's I."""

    assumption: Literal["randomization", "normality"] = Field(
        default="randomization",
        description="Null assumption used for Var[I]",
    )
    permutations: int = Field(default=999, ge=0, description="Permutations for pseudo p-value")
    two_tailed: bool = Field(default=True, description="Two-sided p-values")


class ModelConfig(BaseModel):
    """Regression design."""

    response: str = Field(default="total", description="Response column")
    predictors: List[str] = Field(
        default_factory=lambda: ["bus_stops", "trips"],
        min_length=1,
        description="Predictor columns",
    )
    alpha: float = Field(default=0.05, gt=0, lt=1, description="Significance level")


class LagConfig(BaseModel):
    """Spatial lag maximum likelihood."""

    method: Literal["full", "trace"] = Field(
        default="full",
        description="Log-Jacobian: 'full' eigenvalues or 'trace' power series",
    )
    max_iter: int = Field(default=500, ge=1, description="Iteration cap for the rho search")
    tolerance: float = Field(default=1e-7, gt=0, description="Absolute tolerance on rho")
    trace_order: int = Field(default=30, ge=2, description="Power-series terms for 'trace'")
    trace_samples: int = Field(default=50, ge=1, description="Probe vectors for 'trace'")
    seed: Optional[int] = Field(default=None, description="Seed for the probe vectors")


class ValidationConfig(BaseModel):
    """Out-of-sample comparison of OLS and lag fits."""

    enabled: bool = Field(default=False, description="Run k-fold cross-validation")
    n_splits: int = Field(default=5, ge=2, description="Number of folds")
    seed: int = Field(default=0, description="Fold shuffling seed")


class LoggingConfig(BaseModel):
    """Logging configuration."""

    level: str = Field(default="INFO", description="Log level")
    format: str = Field(
        default="%(asctime)s %(levelname)s %(name)s: %(message)s",
        description="logging format string",
    )


class Settings(BaseModel):
    """
    Main settings class for the pipeline.

    Loads configuration from a YAML file and environment variables.
    Environment variables take precedence over file values.
    """

    incidents: IncidentConfig = Field(default_factory=IncidentConfig)
    hexagons: HexagonConfig = Field(default_factory=HexagonConfig)
    bus_stops: BusStopConfig = Field(default_factory=BusStopConfig)
    crs: str = Field(default="EPSG:4326", description="Common CRS for every layer")
    aggregation: AggregationConfig = Field(default_factory=AggregationConfig)
    weights: WeightsConfig = Field(default_factory=WeightsConfig)
    moran: MoranConfig = Field(default_factory=MoranConfig)
    model: ModelConfig = Field(default_factory=ModelConfig)
    lag: LagConfig = Field(default_factory=LagConfig)
    validation: ValidationConfig = Field(default_factory=ValidationConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)


# =============================================================================
# Configuration Loading
# =============================================================================

def load_config(config_path: Optional[str] = None) -> Settings:
    """
    Load configuration from a YAML file and environment variables.

    Priority (highest to lowest):
        1. Environment variables
        2. YAML config file
        3. Default values

    Args:
        config_path: Path to a YAML file. If None, ``config.yaml`` in the
            working directory is used when present.

    Returns:
        Settings: Loaded configuration
    """
    if config_path is None and Path("config.yaml").exists():
        config_path = "config.yaml"

    config_data = {}
    if config_path and Path(config_path).exists():
        logger.info(f"Loading config from: {config_path}")
        with open(config_path, "r") as f:
            config_data = yaml.safe_load(f) or {}
    elif config_path:
        logger.warning(f"Config file {config_path} not found, using defaults")

    _apply_env_overrides(config_data)

    return Settings.model_validate(config_data)


def _apply_env_overrides(config_data: dict) -> None:
    """Apply environment variable overrides to config data (in place)."""
    env_mappings = {
        "SPLAG_DATA_DIR": ("incidents", "directory"),
        "SPLAG_LOG_LEVEL": ("logging", "level"),
        "SPLAG_LAG_METHOD": ("lag", "method"),
    }

    for env_var, (section, key) in env_mappings.items():
        value = os.environ.get(env_var)
        if value is not None:
            config_data.setdefault(section, {})[key] = value
            logger.debug(f"Override {section}.{key} from {env_var}")
