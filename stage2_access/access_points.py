"""
Access Point Assignment

Represents every classified POI by one or more access points and snaps each
point to the grid cell with the nearest centroid:

- Point features: their own location
- Polygons: the centroid
- Large polygons (area >= ``large_area_threshold`` m^2) and MultiPolygons:
  the centroid plus the entrances found by an ``EntranceFinder``

Access points outside the study boundary are discarded. The result is a
deduplicated ``(feature_id, NearestGridCell)`` mapping, so several entrances
of one park that snap to the same cell count once.
"""

import logging
from pathlib import Path
from typing import Any, Dict, Optional, Union

import geopandas as gpd
import pandas as pd

from stage1_pois.base import PipelineStage
from stage2_access.entrances import EntranceFinder
from stage2_access.grid import grid_centroids, metric_crs

logger = logging.getLogger(__name__)

ACCESS_POINT_COLUMNS = ["feature_id", "NearestGridCell"]


class AccessPointAssigner(PipelineStage):
    """Map POIs to the grid cells they can be reached from."""

    def __init__(
        self,
        config: Optional[Dict[str, Any]] = None,
        entrance_finder: Optional[EntranceFinder] = None,
    ):
        """Initialize the assigner.

        Args:
            config: Optional settings. Keys:
                - large_area_threshold: polygon area (m^2) above which
                  entrances are added (default 40,000)
                - metric_crs: projected CRS for areas and distances
                  (default: UTM zone estimated from the grid)
            entrance_finder: Source of entrance points for large polygons.
                Without one, large polygons are represented by their
                centroid only.
        """
        super().__init__(config)
        self.large_area_threshold = float(self.config.get('large_area_threshold', 40_000))
        self.metric_crs = self.config.get('metric_crs')
        self.entrance_finder = entrance_finder

    def validate_config(self):
        if float(self.config.get('large_area_threshold', 40_000)) <= 0:
            raise ValueError("large_area_threshold must be positive")

    def access_points(self, features_gdf: gpd.GeoDataFrame, crs) -> gpd.GeoDataFrame:
        """Raw access points of every feature, in *crs*.

        Returns:
            GeoDataFrame with ``feature_id``, ``kind`` (point / centroid /
            entrance) and point geometry. One feature can have many rows.
        """
        features = features_gdf.to_crs(crs)
        feature_ids = features.index.to_numpy()
        geom_type = features.geom_type

        is_point = (geom_type == "Point").to_numpy()
        is_polygon = geom_type.isin(["Polygon", "MultiPolygon"]).to_numpy()

        frames = [
            gpd.GeoDataFrame(
                {"feature_id": feature_ids[is_point], "kind": "point"},
                geometry=features.geometry[is_point].to_numpy(),
                crs=crs,
            ),
            gpd.GeoDataFrame(
                {"feature_id": feature_ids[is_polygon], "kind": "centroid"},
                geometry=features.geometry[is_polygon].centroid.to_numpy(),
                crs=crs,
            ),
        ]

        polygons = features.geometry[is_polygon]
        large = (polygons.area >= self.large_area_threshold) | (polygons.geom_type == "MultiPolygon")
        if large.any():
            if self.entrance_finder is None:
                logger.warning(
                    f"{int(large.sum()):,} large polygons but no entrance finder configured; "
                    f"using centroids only"
                )
            else:
                entrances = self.entrance_finder.find(polygons[large])
                logger.info(
                    f"Added {len(entrances):,} entrances for {int(large.sum()):,} large polygons"
                )
                if not entrances.empty:
                    frames.append(
                        gpd.GeoDataFrame(
                            {"feature_id": entrances["feature_id"].to_numpy(), "kind": "entrance"},
                            geometry=entrances.geometry.to_crs(crs).to_numpy(),
                            crs=crs,
                        )
                    )

        points = pd.concat(frames, ignore_index=True)
        return gpd.GeoDataFrame(points, geometry="geometry", crs=crs)

    def nearest_cells(self, points_gdf: gpd.GeoDataFrame, grid_gdf: gpd.GeoDataFrame) -> pd.DataFrame:
        """Nearest grid centroid of every access point.

        Ties are resolved to the lowest ``grid_id``.

        Returns:
            DataFrame with one row per input point: ``feature_id``, ``kind``,
            ``NearestGridCell``.
        """
        centroids = grid_centroids(grid_gdf, crs=points_gdf.crs)
        joined = gpd.sjoin_nearest(
            points_gdf.reset_index(drop=True),
            centroids[["grid_id", "geometry"]],
            how="inner",
        )
        joined = joined.rename_axis("point").sort_values(["point", "grid_id"])
        joined = joined[~joined.index.duplicated(keep="first")]
        return pd.DataFrame(
            {
                "feature_id": joined["feature_id"].to_numpy(),
                "kind": joined["kind"].to_numpy(),
                "NearestGridCell": joined["grid_id"].astype("int64").to_numpy(),
            }
        )

    def assign(
        self,
        features_gdf: gpd.GeoDataFrame,
        grid_gdf: gpd.GeoDataFrame,
        area_gdf: Optional[gpd.GeoDataFrame] = None,
    ) -> pd.DataFrame:
        """Build the deduplicated feature -> grid cell mapping.

        Args:
            features_gdf: Classified POIs indexed by ``feature_id``.
            grid_gdf: Study-area grid.
            area_gdf: Study boundary. Defaults to the union of the grid cells.

        Returns:
            DataFrame with unique ``(feature_id, NearestGridCell)`` rows.
        """
        crs = metric_crs(grid_gdf, self.metric_crs)
        points = self.access_points(features_gdf, crs)
        n_raw = len(points)

        boundary_source = area_gdf if area_gdf is not None else grid_gdf
        boundary = boundary_source.to_crs(crs).geometry.union_all()
        points = points[points.intersects(boundary)]
        n_outside = n_raw - len(points)
        if n_outside:
            logger.info(f"Discarded {n_outside:,} access points outside the study boundary")

        if points.empty:
            logger.warning("No access points inside the study boundary")
            return pd.DataFrame({"feature_id": pd.Series(dtype=object), "NearestGridCell": pd.Series(dtype="int64")})

        assigned = self.nearest_cells(points, grid_gdf)
        mapping = (
            assigned[ACCESS_POINT_COLUMNS]
            .drop_duplicates()
            .sort_values(ACCESS_POINT_COLUMNS)
            .reset_index(drop=True)
        )
        logger.info(
            f"Assigned {mapping['feature_id'].nunique():,} POIs to "
            f"{mapping['NearestGridCell'].nunique():,} grid cells "
            f"({len(assigned):,} access points -> {len(mapping):,} unique pairs)"
        )
        return mapping

    def run(
        self,
        features_gdf: gpd.GeoDataFrame,
        grid_gdf: gpd.GeoDataFrame,
        area_gdf: Optional[gpd.GeoDataFrame] = None,
        output_path: Optional[Union[str, Path]] = None,
    ) -> pd.DataFrame:
        mapping = self.assign(features_gdf, grid_gdf, area_gdf)
        if output_path is not None:
            saved = self.save(mapping, output_path)
            logger.info(f"Saved access points to {saved}")
        return mapping
