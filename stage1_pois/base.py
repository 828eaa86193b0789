"""
Base class for pipeline stage processors.

Every stage processor (POI classification, grid building, access-point
assignment, travel-time aggregation) takes a config dict at init, validates
it, and writes its tabular output as parquet. No abstract processing method
is enforced because the stages have different inputs:

- POIClassifier: load_features(area_gdf) + classify(features_gdf)
- GridBuilder: build(area_gdf)
- AccessPointAssigner: assign(features_gdf, grid_gdf, area_gdf)
- TravelTimeAggregator: run(source, output_path)
"""

from abc import ABC
from pathlib import Path
from typing import Dict, Any, Optional

import pandas as pd


class PipelineStage(ABC):
    """Base class for all stage processors.

    Provides shared infrastructure: config storage, stage name derivation,
    config validation hook and parquet output.
    """

    def __init__(self, config: Optional[Dict[str, Any]] = None):
        """Initialize processor with configuration.

        Args:
            config: Dictionary of processor-specific settings.
        """
        self.config = dict(config or {})
        self.name = self.__class__.__name__.lower()
        self.validate_config()

    def validate_config(self):
        """Validate configuration parameters. Subclasses raise ValueError."""

    def save(self, df: pd.DataFrame, path: "Path | str", index: bool = False) -> str:
        """Save a (Geo)DataFrame to parquet, creating parent directories.

        Args:
            df: Table to save. GeoDataFrames are written as GeoParquet.
            path: Target parquet file.
            index: Whether to keep the index in the file.

        Returns:
            Path to the written parquet file.
        """
        full_path = Path(path)
        full_path.parent.mkdir(parents=True, exist_ok=True)
        df.to_parquet(full_path, index=index)
        return str(full_path)
