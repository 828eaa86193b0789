"""
Entrance Detection for Large Polygons

Large parks, campuses and hospital grounds are entered from many sides; the
centroid alone misrepresents how far they are from a walker. Entrances are
approximated as the points where the pedestrian network crosses the polygon
boundary.
"""

import logging
from typing import Optional, Protocol

import geopandas as gpd
import numpy as np
import shapely

logger = logging.getLogger(__name__)


class EntranceFinder(Protocol):
    """Anything that can return entrance points for a set of polygons."""

    def find(self, polygons: gpd.GeoSeries) -> gpd.GeoDataFrame:
        """Return entrance points.

        Args:
            polygons: Polygon geometries indexed by ``feature_id``, in a
                metric CRS.

        Returns:
            GeoDataFrame with a ``feature_id`` column and point geometry in the
            CRS of *polygons*. Polygons without entrances contribute no rows.
        """
        ...


class NetworkEntranceFinder:
    """Entrances as intersections of polygon boundaries with walkable edges."""

    def __init__(self, edges_gdf: gpd.GeoDataFrame):
        if edges_gdf.crs is None:
            raise ValueError("Network edges need a CRS")
        self.edges_gdf = gpd.GeoDataFrame(geometry=edges_gdf.geometry.reset_index(drop=True), crs=edges_gdf.crs)
        self._projected: Optional[gpd.GeoDataFrame] = None
        logger.info(f"Entrance finder over {len(self.edges_gdf):,} network edges")

    @classmethod
    def from_osmnx(cls, area_gdf: gpd.GeoDataFrame, network_type: str = "walk") -> "NetworkEntranceFinder":
        """Download the walk network of the study area with osmnx."""
        import osmnx as ox

        polygon = area_gdf.to_crs('EPSG:4326').geometry.union_all()
        logger.info(f"Downloading OSM {network_type} network for entrance detection...")
        graph = ox.graph_from_polygon(polygon, network_type=network_type)
        edges = ox.graph_to_gdfs(graph, nodes=False)
        return cls(edges[["geometry"]])

    def _edges_in(self, crs) -> gpd.GeoDataFrame:
        if self._projected is None or self._projected.crs != crs:
            self._projected = self.edges_gdf.to_crs(crs)
        return self._projected

    def find(self, polygons: gpd.GeoSeries) -> gpd.GeoDataFrame:
        empty = gpd.GeoDataFrame({"feature_id": []}, geometry=[], crs=polygons.crs)
        if polygons.empty:
            return empty

        edges = self._edges_in(polygons.crs)
        boundaries = polygons.boundary
        poly_idx, edge_idx = edges.sindex.query(boundaries.to_numpy(), predicate="intersects")
        if len(poly_idx) == 0:
            return empty

        crossings = shapely.intersection(
            boundaries.to_numpy()[poly_idx],
            edges.geometry.to_numpy()[edge_idx],
        )
        pieces = gpd.GeoDataFrame(
            {"feature_id": polygons.index.to_numpy()[poly_idx]},
            geometry=crossings,
            crs=polygons.crs,
        )
        pieces = pieces[~pieces.is_empty].explode(ignore_index=True)
        # an edge running along the boundary overlaps it; use the ends of the overlap
        pieces["geometry"] = [g if g.geom_type == "Point" else g.boundary for g in pieces.geometry]
        pieces = pieces[~pieces.is_empty].explode(ignore_index=True)
        pieces = pieces[pieces.geom_type == "Point"]

        entrances = pieces.assign(x=np.round(pieces.geometry.x, 3), y=np.round(pieces.geometry.y, 3))
        entrances = entrances.drop_duplicates(["feature_id", "x", "y"])[["feature_id", "geometry"]]
        logger.debug(
            f"Found {len(entrances):,} entrances for "
            f"{entrances['feature_id'].nunique():,} of {len(polygons):,} polygons"
        )
        return entrances.reset_index(drop=True)
