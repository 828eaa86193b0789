"""
POI Classification Processor

Turns raw OpenStreetMap features into classified POIs:

1. Load features for the study area (osmnx, one request per scheme filter key)
2. Normalize attribute keys (``:`` -> ``_``) and keep only the keys of interest
3. Repair invalid geometries and keep Point / Polygon / MultiPolygon only
4. Assign ``Class_A`` by first-match over the ordered scheme, then
   ``Class_B`` / ``Class_C`` from the hierarchy lookup

Features matching no rule are excluded from the POI output; that is an
expected outcome, not an error.
"""

import logging
from typing import Any, Dict, Optional

import geopandas as gpd
import pandas as pd
from shapely.geometry import GeometryCollection, MultiPolygon, Polygon
from shapely.ops import unary_union
from shapely.validation import make_valid

from stage1_pois.base import PipelineStage
from stage1_pois.scheme import ClassificationScheme, normalize_key

logger = logging.getLogger(__name__)

KEPT_GEOMETRY_TYPES = ("Point", "Polygon", "MultiPolygon")

CLASS_COLUMNS = ["Class_A", "Class_B", "Class_C"]


def _polygonal_part(geometry):
    """Reduce a GeometryCollection to its polygonal members (or None)."""
    if not isinstance(geometry, GeometryCollection):
        return geometry
    polygons = [g for g in geometry.geoms if isinstance(g, (Polygon, MultiPolygon))]
    if not polygons:
        return None
    return unary_union(polygons)


def _feature_ids(index: pd.Index) -> pd.Index:
    """Build ``"<element>/<id>"`` identifiers from an osmnx (element, id) index."""
    if isinstance(index, pd.MultiIndex):
        ids = [f"{element}/{osm_id}" for element, osm_id in index]
    else:
        ids = [str(value) for value in index]
    return pd.Index(ids, name="feature_id")


class POIClassifier(PipelineStage):
    """Classify raw geographic features into the POI category hierarchy."""

    def __init__(self, scheme: ClassificationScheme, config: Optional[Dict[str, Any]] = None):
        """Initialize the classifier.

        Args:
            scheme: Compiled classification scheme.
            config: Optional settings. Keys:
                - keep_unclassified: keep features without a Class_A (default False)
                - crs: CRS of the output features (default ``EPSG:4326``)
        """
        self.scheme = scheme
        super().__init__(config)
        self.keep_unclassified = self.config.get('keep_unclassified', False)
        self.crs = self.config.get('crs', 'EPSG:4326')
        logger.info(
            f"Initialized POIClassifier with {len(scheme)} rules, "
            f"{len(scheme.attribute_keys)} attribute keys"
        )

    def load_features(self, area_gdf: gpd.GeoDataFrame) -> gpd.GeoDataFrame:
        """Download OSM features inside the study area and prepare them.

        Requests every key used by the scheme's filters so that each rule
        can see the features it needs. All returned tags are kept until
        ``prepare_features`` subsets them to the keys of interest.
        """
        import osmnx as ox

        if area_gdf.crs != 'EPSG:4326':
            logger.info("Converting study area to WGS84...")
            area_gdf = area_gdf.to_crs('EPSG:4326')

        polygon = area_gdf.geometry.union_all()
        tags = {key: True for key in self.scheme.osm_keys}
        logger.info(f"Downloading OSM features for {len(tags)} keys: {sorted(tags)[:10]}...")

        raw_gdf = ox.features_from_polygon(polygon, tags=tags)
        logger.info(f"Downloaded {len(raw_gdf):,} raw features")
        raw_gdf.index = _feature_ids(raw_gdf.index)
        return self.prepare_features(raw_gdf)

    def prepare_features(self, raw_gdf: gpd.GeoDataFrame) -> gpd.GeoDataFrame:
        """Normalize attribute keys and geometries of raw features.

        Args:
            raw_gdf: Raw features indexed by feature id, one column per tag.

        Returns:
            GeoDataFrame indexed by ``feature_id`` with ``geometry`` plus one
            string column per attribute key of interest (missing -> NA).
        """
        gdf = raw_gdf.copy()
        geometry_name = gdf.geometry.name
        gdf.columns = [col if col == geometry_name else normalize_key(str(col)) for col in gdf.columns]
        gdf = gdf.loc[:, ~gdf.columns.duplicated()]

        keys = self.scheme.attribute_keys
        for key in keys:
            if key not in gdf.columns:
                gdf[key] = pd.NA
        gdf = gpd.GeoDataFrame(gdf[keys + [geometry_name]], geometry=geometry_name, crs=raw_gdf.crs)
        if geometry_name != "geometry":
            gdf = gdf.rename_geometry("geometry")
        gdf[keys] = gdf[keys].astype("string")

        n_in = len(gdf)
        geometry = gdf.geometry.copy()
        invalid = geometry.notna() & ~geometry.is_valid
        if invalid.any():
            logger.info(f"Repairing {int(invalid.sum()):,} invalid geometries")
            geometry[invalid] = geometry[invalid].apply(make_valid)
        gdf["geometry"] = gpd.GeoSeries(
            [_polygonal_part(g) if g is not None else None for g in geometry],
            index=gdf.index,
            crs=gdf.crs,
        )

        keep = (
            gdf.geometry.notna()
            & ~gdf.geometry.is_empty
            & gdf.geometry.is_valid
            & gdf.geometry.geom_type.isin(KEPT_GEOMETRY_TYPES)
        )
        n_dropped = int((~keep).sum())
        if n_dropped:
            logger.warning(
                f"Dropped {n_dropped:,} of {n_in:,} features with invalid or "
                f"unsupported geometry (kept: {', '.join(KEPT_GEOMETRY_TYPES)})"
            )
        gdf = gdf[keep]

        if gdf.crs is not None and gdf.crs != self.crs:
            gdf = gdf.to_crs(self.crs)
        if gdf.index.name != "feature_id":
            gdf.index.name = "feature_id"
        return gdf

    def classify(self, features_gdf: gpd.GeoDataFrame) -> gpd.GeoDataFrame:
        """Attach ``Class_A``, ``Class_B``, ``Class_C`` to prepared features.

        Returns:
            Classified features; unclassified ones are dropped unless
            ``keep_unclassified`` is set.
        """
        gdf = features_gdf.copy()
        class_a = self.scheme.classify_frame(gdf)
        gdf["Class_A"] = class_a
        class_b = {label: b for label, (b, _) in self.scheme.hierarchy.items()}
        class_c = {label: c for label, (_, c) in self.scheme.hierarchy.items()}
        gdf["Class_B"] = class_a.map(class_b)
        gdf["Class_C"] = class_a.map(class_c)

        n_classified = int(class_a.notna().sum())
        logger.info(f"Classified {n_classified:,} of {len(gdf):,} features")
        if n_classified:
            counts = gdf["Class_C"].value_counts()
            logger.info(f"Class_C counts: {counts.to_dict()}")

        if not self.keep_unclassified:
            gdf = gdf[class_a.notna()]
        return gdf

    def run(self, area_gdf: gpd.GeoDataFrame, output_path: Optional[str] = None) -> gpd.GeoDataFrame:
        """Load, prepare and classify features; optionally persist them."""
        pois_gdf = self.classify(self.load_features(area_gdf))
        if output_path is not None:
            saved = self.save(pois_gdf, output_path, index=True)
            logger.info(f"Saved {len(pois_gdf):,} POIs to {saved}")
        return pois_gdf
