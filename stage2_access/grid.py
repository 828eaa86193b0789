"""
Study-Area Grid

Tessellates the study-area boundary into H3 cells with SRAI's
``H3Regionalizer`` and numbers them with a stable integer ``grid_id``
(cells sorted by H3 index). The grid is immutable once generated for a city;
it is both the origin/destination set of the travel-time matrix and the
anchor of the final accessibility output.
"""

import logging
from pathlib import Path
from typing import Any, Dict, Optional, Union

import geopandas as gpd
import h3
import pandas as pd
from srai.regionalizers import H3Regionalizer

from stage1_pois.base import PipelineStage

logger = logging.getLogger(__name__)

GRID_COLUMNS = ["grid_id", "region_id", "geometry"]


def metric_crs(gdf: gpd.GeoDataFrame, override: Optional[str] = None):
    """Projected CRS for distances/areas: *override* or the estimated UTM zone."""
    if override is not None:
        return override
    return gdf.estimate_utm_crs()


class GridBuilder(PipelineStage):
    """Build the H3 grid of a study area.

    Config keys:
        - resolution: H3 resolution (default 10, ~65 m edge length)
    """

    def __init__(self, config: Optional[Dict[str, Any]] = None):
        super().__init__(config)
        self.resolution = self.config.get('resolution', 10)
        logger.info(f"Initialized GridBuilder at H3 resolution {self.resolution}")

    def validate_config(self):
        resolution = self.config.get('resolution', 10)
        if not 0 <= int(resolution) <= 15:
            raise ValueError(f"H3 resolution must be within 0..15, got {resolution}")

    def build(self, area_gdf: gpd.GeoDataFrame) -> gpd.GeoDataFrame:
        """Tessellate *area_gdf* into grid cells.

        Returns:
            GeoDataFrame (EPSG:4326) with ``grid_id`` (int), ``region_id``
            (H3 index) and polygon ``geometry``.
        """
        if area_gdf.crs != 'EPSG:4326':
            logger.info("Converting study area to WGS84...")
            area_gdf = area_gdf.to_crs('EPSG:4326')

        regionalizer = H3Regionalizer(resolution=self.resolution)
        regions_gdf = regionalizer.transform(area_gdf)
        regions_gdf = regions_gdf.sort_index()

        grid_gdf = gpd.GeoDataFrame(
            {
                "grid_id": pd.RangeIndex(len(regions_gdf)).astype("int64"),
                "region_id": regions_gdf.index.astype(str),
            },
            geometry=list(regions_gdf.geometry),
            crs='EPSG:4326',
        )
        logger.info(f"Created {len(grid_gdf):,} grid cells at resolution {self.resolution}")
        return grid_gdf

    def run(self, area_gdf: gpd.GeoDataFrame, output_path: Optional[Union[str, Path]] = None) -> gpd.GeoDataFrame:
        grid_gdf = self.build(area_gdf)
        if output_path is not None:
            saved = self.save(grid_gdf, output_path)
            logger.info(f"Saved grid to {saved}")
        return grid_gdf

    @staticmethod
    def load(path: Union[str, Path]) -> gpd.GeoDataFrame:
        """Read a grid written by ``run`` and check its columns."""
        path = Path(path)
        if not path.exists():
            raise FileNotFoundError(f"Grid file not found: {path}")
        grid_gdf = gpd.read_parquet(path)
        missing = [col for col in GRID_COLUMNS if col not in grid_gdf.columns]
        if missing:
            raise ValueError(f"Grid file {path} is missing columns: {missing}")
        return grid_gdf

    @staticmethod
    def infer_resolution(grid_gdf: gpd.GeoDataFrame) -> int:
        """Infer the H3 resolution from the first ``region_id``."""
        return h3.get_resolution(str(grid_gdf["region_id"].iloc[0]))


def grid_centroids(grid_gdf: gpd.GeoDataFrame, crs: Optional[str] = None) -> gpd.GeoDataFrame:
    """Cell centroids computed in a metric CRS.

    Args:
        grid_gdf: Grid with ``grid_id`` and polygon geometry.
        crs: CRS of the returned points; defaults to the grid's CRS.

    Returns:
        GeoDataFrame with ``grid_id`` and point geometry.
    """
    projected = grid_gdf.to_crs(metric_crs(grid_gdf))
    centroids = gpd.GeoDataFrame(
        {"grid_id": projected["grid_id"].to_numpy()},
        geometry=projected.geometry.centroid.to_numpy(),
        crs=projected.crs,
    )
    return centroids.to_crs(crs or grid_gdf.crs)


def routing_points(grid_gdf: gpd.GeoDataFrame) -> gpd.GeoDataFrame:
    """Grid centroids as routing origins/destinations (``id``, lon/lat geometry)."""
    centroids = grid_centroids(grid_gdf, crs='EPSG:4326')
    points = centroids.rename(columns={"grid_id": "id"})
    points["lon"] = points.geometry.x
    points["lat"] = points.geometry.y
    return points[["id", "lon", "lat", "geometry"]]
