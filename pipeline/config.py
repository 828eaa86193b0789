"""
Pipeline configuration.

One ``PipelineConfig`` describes a complete multi-city run. It is loaded
from YAML (``configs/walk_accessibility.yaml``) and copied verbatim into the
``run_info.json`` of every city.
"""

import logging
from dataclasses import asdict, dataclass, field, fields
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

import yaml

from stage1_pois.chains import CHAIN_SCOPES

logger = logging.getLogger(__name__)

TRAVEL_TIME_SOURCES = ("r5", "parquet")


@dataclass
class PipelineConfig:
    """Configuration for a walking-accessibility run."""

    cities: List[str] = field(default_factory=list)
    scheme_path: str = "configs/classification_scheme.csv"
    data_root: Optional[str] = None  # default: <project>/data/cities

    # Grid and access points
    h3_resolution: int = 10
    large_area_threshold: float = 40_000.0  # m^2
    use_entrances: bool = True

    # Chain detection
    chain_target: str = "Supermarket"
    chain_fallback: str = "Food Store"
    chain_threshold: int = 5
    chain_exempt_attribute: Optional[str] = "origin"
    chain_scope: str = "global"

    # Travel times
    travel_time_source: str = "r5"
    osm_date: str = "latest"
    chunk_size: int = 5000
    max_walk_time: int = 30  # minutes
    walk_speed: float = 4.8  # km/h
    percentile: int = 50

    # Metrics
    time_budget: Optional[float] = None

    # Outputs
    save_pois: bool = True
    save_grid: bool = True
    save_access_points: bool = True
    run_descriptor: str = "walk"

    def __post_init__(self):
        if isinstance(self.cities, str):
            self.cities = [self.cities]
        if self.chain_scope not in CHAIN_SCOPES:
            raise ValueError(f"Unknown chain_scope {self.chain_scope!r}. Valid: {CHAIN_SCOPES}")
        if self.travel_time_source not in TRAVEL_TIME_SOURCES:
            raise ValueError(
                f"Unknown travel_time_source {self.travel_time_source!r}. Valid: {TRAVEL_TIME_SOURCES}"
            )
        if self.chunk_size < 1:
            raise ValueError(f"chunk_size must be >= 1, got {self.chunk_size}")
        if not 0 <= self.h3_resolution <= 15:
            raise ValueError(f"h3_resolution must be within 0..15, got {self.h3_resolution}")
        if self.chain_threshold < 1:
            raise ValueError(f"chain_threshold must be >= 1, got {self.chain_threshold}")
        if self.max_walk_time <= 0 or self.walk_speed <= 0:
            raise ValueError("max_walk_time and walk_speed must be positive")
        if not 1 <= self.percentile <= 99:
            raise ValueError(f"percentile must be within 1..99, got {self.percentile}")

    @property
    def time_column(self) -> str:
        return f"travel_time_p{self.percentile}"

    def chain_kwargs(self) -> Dict[str, Any]:
        """Keyword arguments for ``ChainDetector`` / ``detect_chains``."""
        return {
            "target_class_a": self.chain_target,
            "fallback_class_a": self.chain_fallback,
            "threshold": self.chain_threshold,
            "exempt_attribute": self.chain_exempt_attribute,
        }

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, values: Dict[str, Any]) -> "PipelineConfig":
        known = {f.name for f in fields(cls)}
        unknown = sorted(set(values) - known)
        if unknown:
            raise ValueError(f"Unknown configuration keys: {unknown}")
        return cls(**values)

    @classmethod
    def from_yaml(cls, path: Union[str, Path]) -> "PipelineConfig":
        """Load a config file.

        A relative ``scheme_path`` is resolved against the directory of the
        YAML file.
        """
        path = Path(path)
        if not path.exists():
            raise FileNotFoundError(f"Config file not found: {path}")
        with open(path, 'r') as f:
            values = yaml.safe_load(f) or {}
        if not isinstance(values, dict):
            raise ValueError(f"Config file {path} must contain a mapping")

        scheme_path = values.get("scheme_path")
        if scheme_path is not None and not Path(scheme_path).is_absolute():
            values["scheme_path"] = str(path.parent / scheme_path)

        config = cls.from_dict(values)
        logger.info(f"Loaded config from {path} ({len(config.cities)} cities)")
        return config

    def to_yaml(self, path: Union[str, Path]) -> Path:
        path = Path(path)
        path.parent.mkdir(parents=True, exist_ok=True)
        with open(path, 'w') as f:
            yaml.dump(self.to_dict(), f, default_flow_style=False, sort_keys=False)
        return path
