"""
Walking Accessibility Metrics

Reduces the cumulative-opportunity table of a city to one row per grid cell:

    <Class_C>    minimum walking time (minutes) to the nearest POI of that
                 category; missing when none is reachable
    mean_min_tt  mean of the category minima that are present
    n            number of categories with a reachable POI

The output is anchored on the grid: every cell appears, cells without any
reachable POI have every metric missing (``n`` included).

The cumulative table can be far larger than memory, so the minima are built
incrementally over Parquet record batches.
"""

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Optional, Union

import geopandas as gpd
import pandas as pd
import pyarrow.parquet as pq

from utils import CityPaths

logger = logging.getLogger(__name__)


@dataclass
class AccessibilityConfig:
    """Configuration for the per-cell accessibility metrics."""

    city: Optional[str] = None
    h3_resolution: int = 10
    time_column: str = "travel_time_p50"
    # minima above the budget (minutes) count as unreachable
    time_budget: Optional[float] = None
    # Class_C labels that always get a column, reachable or not
    categories: List[str] = field(default_factory=list)
    batch_size: int = 1_000_000

    output_path: Optional[str] = None

    def __post_init__(self):
        if self.time_budget is not None and self.time_budget < 0:
            raise ValueError(f"time_budget must be >= 0, got {self.time_budget}")
        if self.city is not None and self.output_path is None:
            self.output_path = str(CityPaths(self.city).accessibility_file(self.h3_resolution))


class AccessibilityMetrics:
    """Compute per-cell minimum walking times by category."""

    def __init__(self, config: Optional[AccessibilityConfig] = None):
        self.config = config or AccessibilityConfig()

    def _minima(self, frame: pd.DataFrame) -> pd.DataFrame:
        return (
            frame.groupby(["from_id", "Class_C"], sort=False)[self.config.time_column]
            .min()
            .reset_index()
        )

    def min_travel_times(self, ttm_access: Union[pd.DataFrame, str, Path]) -> pd.DataFrame:
        """Minimum travel time per (origin, Class_C).

        Args:
            ttm_access: Cumulative table as DataFrame or Parquet path.

        Returns:
            Long DataFrame with ``from_id``, ``Class_C`` and the time column.
        """
        time_column = self.config.time_column
        if isinstance(ttm_access, pd.DataFrame):
            minima = self._minima(ttm_access[["from_id", "Class_C", time_column]])
        else:
            parquet_file = pq.ParquetFile(ttm_access)
            partials = []
            for batch in parquet_file.iter_batches(
                batch_size=self.config.batch_size,
                columns=["from_id", "Class_C", time_column],
            ):
                partials.append(self._minima(batch.to_pandas()))
            if partials:
                minima = self._minima(pd.concat(partials, ignore_index=True))
            else:
                minima = pd.DataFrame(columns=["from_id", "Class_C", time_column])

        if self.config.time_budget is not None:
            within = minima[time_column] <= self.config.time_budget
            logger.info(f"Dropped {int((~within).sum()):,} minima above the {self.config.time_budget} min budget")
            minima = minima[within]
        return minima

    def compute(
        self,
        ttm_access: Union[pd.DataFrame, str, Path],
        grid_gdf: gpd.GeoDataFrame,
    ) -> gpd.GeoDataFrame:
        """Build the grid-anchored accessibility table.

        Args:
            ttm_access: Cumulative table as DataFrame or Parquet path.
            grid_gdf: Study-area grid with ``grid_id`` and geometry.

        Returns:
            GeoDataFrame with one row per grid cell: ``grid_id``, one column
            per Class_C, ``mean_min_tt``, ``n`` and geometry.
        """
        time_column = self.config.time_column
        minima = self.min_travel_times(ttm_access)

        wide = minima.pivot(index="from_id", columns="Class_C", values=time_column)
        categories = list(self.config.categories) or sorted(wide.columns)
        extra = sorted(set(wide.columns) - set(categories))
        if extra:
            logger.warning(f"Categories not in the configured list: {extra}")
            categories = categories + extra
        wide = wide.reindex(columns=categories).astype("float64")
        wide.columns.name = None
        wide.index = wide.index.astype("int64")

        wide["mean_min_tt"] = wide[categories].mean(axis=1, skipna=True)
        wide["n"] = wide[categories].notna().sum(axis=1)

        result = grid_gdf[["grid_id", "geometry"]].merge(
            wide, left_on="grid_id", right_index=True, how="left"
        )
        result["n"] = result["n"].astype("Int64")
        result = result[["grid_id"] + categories + ["mean_min_tt", "n", "geometry"]]
        result = gpd.GeoDataFrame(result, geometry="geometry", crs=grid_gdf.crs)

        n_reached = int((result["n"] > 0).sum())
        logger.info(
            f"Accessibility for {len(result):,} cells: {n_reached:,} with at least one "
            f"reachable category, {len(categories)} categories"
        )
        return result

    def run(
        self,
        ttm_access: Union[pd.DataFrame, str, Path],
        grid_gdf: gpd.GeoDataFrame,
        output_path: Optional[Union[str, Path]] = None,
    ) -> gpd.GeoDataFrame:
        result = self.compute(ttm_access, grid_gdf)
        output_path = output_path or self.config.output_path
        if output_path is not None:
            output_path = Path(output_path)
            output_path.parent.mkdir(parents=True, exist_ok=True)
            result.to_parquet(output_path, index=False)
            logger.info(f"Saved accessibility metrics to {output_path}")
        return result
