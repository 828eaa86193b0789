"""
Multi-City Accessibility Pipeline

Drives all stages for every configured city:

    1. Compile the classification scheme (malformed rules stop the run here)
    2. Per city: load boundary, load and classify OSM features
    3. Chain detection across cities (scope ``global`` or ``city``)
    4. Per city: grid -> access points -> travel-time aggregation -> metrics

Each city has its own ``CityContext``; the only state shared across cities
is the frozen set of major chain names. A city that fails (missing inputs,
routing failure, empty travel-time matrix) is marked failed and the run
continues with the next one. Every city gets a ``run_info.json``.
"""

import logging
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Any, Callable, ContextManager, Dict, Iterator, List, Optional

import geopandas as gpd
from tqdm.auto import tqdm

from pipeline.config import PipelineConfig
from stage1_pois import ClassificationScheme, POIClassifier, detect_chains
from stage2_access import (
    AccessPointAssigner,
    EntranceFinder,
    GridBuilder,
    NetworkEntranceFinder,
    ParquetTravelTimeSource,
    R5RoutingEngine,
    R5TravelTimeSource,
    RoutingError,
    TravelTimeAggregator,
    TravelTimeSource,
    routing_points,
)
from stage3_analysis import AccessibilityConfig, AccessibilityMetrics
from utils import CityPaths, write_run_info

logger = logging.getLogger(__name__)


@dataclass
class CityContext:
    """Everything the pipeline knows about one city during a run."""

    city: str
    paths: CityPaths
    status: str = "pending"
    error: Optional[str] = None
    boundary: Optional[gpd.GeoDataFrame] = None
    pois: Optional[gpd.GeoDataFrame] = None
    grid: Optional[gpd.GeoDataFrame] = None
    chain_names: frozenset = frozenset()
    summary: Dict[str, Any] = field(default_factory=dict)

    @property
    def failed(self) -> bool:
        return self.status == "failed"

    def fail(self, error: Exception):
        self.status = "failed"
        self.error = f"{type(error).__name__}: {error}"
        logger.error(f"[{self.city}] failed: {self.error}")


SourceFactory = Callable[[CityContext], ContextManager[TravelTimeSource]]
FeatureLoader = Callable[[CityContext], gpd.GeoDataFrame]
EntranceFinderFactory = Callable[[CityContext], Optional[EntranceFinder]]


class AccessibilityPipeline:
    """Run the full pipeline over the configured cities.

    The three external inputs (OSM features, the pedestrian network for
    entrances and travel times) are pluggable factories; by default they
    come from osmnx and r5py.
    """

    def __init__(
        self,
        config: PipelineConfig,
        feature_loader: Optional[FeatureLoader] = None,
        entrance_finder_factory: Optional[EntranceFinderFactory] = None,
        source_factory: Optional[SourceFactory] = None,
    ):
        self.config = config
        self.scheme: Optional[ClassificationScheme] = None
        self.feature_loader = feature_loader or self._load_osm_features
        self.entrance_finder_factory = entrance_finder_factory or self._network_entrances
        if source_factory is not None:
            self.source_factory = source_factory
        elif config.travel_time_source == "parquet":
            self.source_factory = self._parquet_source
        else:
            self.source_factory = self._r5_source
        self.run_id = CityPaths.create_run_id(config.run_descriptor)

    # -----------------------------------------------------------------
    # Default external inputs
    # -----------------------------------------------------------------

    def _classifier(self) -> POIClassifier:
        return POIClassifier(self.scheme)

    def _load_osm_features(self, ctx: CityContext) -> gpd.GeoDataFrame:
        return self._classifier().load_features(ctx.boundary)

    def _network_entrances(self, ctx: CityContext) -> Optional[EntranceFinder]:
        if not self.config.use_entrances:
            return None
        return NetworkEntranceFinder.from_osmnx(ctx.boundary)

    @contextmanager
    def _r5_source(self, ctx: CityContext) -> Iterator[TravelTimeSource]:
        pbf = ctx.paths.osm_snapshot_pbf(self.config.osm_date)
        with R5RoutingEngine(pbf) as engine:
            yield R5TravelTimeSource(
                engine,
                routing_points(ctx.grid),
                max_walk_time=self.config.max_walk_time,
                walk_speed=self.config.walk_speed,
                percentile=self.config.percentile,
            )

    @contextmanager
    def _parquet_source(self, ctx: CityContext) -> Iterator[TravelTimeSource]:
        yield ParquetTravelTimeSource(
            ctx.paths.ttm_file(self.config.h3_resolution),
            time_column=self.config.time_column,
        )

    # -----------------------------------------------------------------
    # Stages
    # -----------------------------------------------------------------

    def load_scheme(self) -> ClassificationScheme:
        self.scheme = ClassificationScheme.from_csv(self.config.scheme_path)
        for label in (self.config.chain_target, self.config.chain_fallback):
            if label not in self.scheme.hierarchy:
                raise ValueError(f"Chain category {label!r} is not part of the classification scheme")
        logger.info(f"Loaded classification scheme with {len(self.scheme)} rules")
        return self.scheme

    def load_boundary(self, ctx: CityContext) -> gpd.GeoDataFrame:
        boundary_file = ctx.paths.boundary_file()
        if not boundary_file.exists():
            raise FileNotFoundError(f"Study-area boundary not found: {boundary_file}")
        boundary = gpd.read_file(boundary_file)
        if boundary.crs is None:
            boundary = boundary.set_crs('EPSG:4326')
        return boundary

    def classify_city(self, ctx: CityContext):
        ctx.boundary = self.load_boundary(ctx)
        features = self.feature_loader(ctx)
        ctx.pois = self._classifier().classify(features)
        ctx.summary["n_pois_classified"] = len(ctx.pois)

    def apply_chains(self, contexts: List[CityContext]):
        """Reclassify independent stores; the name table is frozen before transform."""
        pois_by_city = {ctx.city: ctx.pois for ctx in contexts}
        if not pois_by_city:
            return
        results, names = detect_chains(
            pois_by_city,
            self.scheme,
            scope=self.config.chain_scope,
            **self.config.chain_kwargs(),
        )
        for ctx in contexts:
            ctx.pois = results[ctx.city]
            ctx.chain_names = names[ctx.city]
            ctx.summary["n_chain_names"] = len(ctx.chain_names)
            if self.config.save_pois:
                POIClassifier(self.scheme).save(ctx.pois, ctx.paths.pois_file(), index=True)

    def process_city(self, ctx: CityContext):
        """Grid, access points, travel-time aggregation and metrics for one city."""
        res = self.config.h3_resolution
        paths = ctx.paths

        ctx.grid = GridBuilder({'resolution': res}).run(
            ctx.boundary, paths.grid_file(res) if self.config.save_grid else None
        )
        ctx.summary["n_grid_cells"] = len(ctx.grid)

        assigner = AccessPointAssigner(
            {'large_area_threshold': self.config.large_area_threshold},
            entrance_finder=self.entrance_finder_factory(ctx),
        )
        access_points = assigner.run(
            ctx.pois,
            ctx.grid,
            ctx.boundary,
            paths.access_points_file(res) if self.config.save_access_points else None,
        )
        ctx.summary["n_access_pairs"] = len(access_points)

        aggregator = TravelTimeAggregator(
            access_points,
            ctx.pois,
            {'chunk_size': self.config.chunk_size, 'time_column': self.config.time_column},
        )
        with self.source_factory(ctx) as source:
            aggregation = aggregator.run(source, paths.ttm_access_file(res))
        ctx.summary["aggregation"] = aggregation.to_dict()
        if aggregation.n_records == 0:
            raise RoutingError("Travel-time matrix is empty")

        metrics = AccessibilityMetrics(
            AccessibilityConfig(
                h3_resolution=res,
                time_column=self.config.time_column,
                time_budget=self.config.time_budget,
                categories=self.scheme.class_c_labels,
                output_path=str(paths.accessibility_file(res)),
            )
        )
        accessibility = metrics.run(paths.ttm_access_file(res), ctx.grid)
        ctx.summary["n_cells_with_access"] = int((accessibility["n"] > 0).sum())

    def write_run_info(self, ctx: CityContext):
        summary = dict(ctx.summary)
        if ctx.error:
            summary["error"] = ctx.error
        write_run_info(
            ctx.paths.run_dir(self.run_id),
            city=ctx.city,
            config=self.config.to_dict(),
            status=ctx.status,
            summary=summary,
        )

    # -----------------------------------------------------------------
    # Driver
    # -----------------------------------------------------------------

    def run(self, cities: Optional[List[str]] = None) -> Dict[str, CityContext]:
        """Run all stages for *cities* (default: the configured cities).

        Returns:
            City contexts with ``status`` ``"completed"`` or ``"failed"``.
        """
        cities = list(cities or self.config.cities)
        if not cities:
            raise ValueError("No cities configured")
        self.load_scheme()

        contexts = {
            city: CityContext(city, CityPaths(city, self.config.data_root))
            for city in cities
        }

        for ctx in tqdm(contexts.values(), desc="Classifying POIs"):
            try:
                self.classify_city(ctx)
            except Exception as e:
                ctx.fail(e)

        self.apply_chains([ctx for ctx in contexts.values() if not ctx.failed])

        for ctx in tqdm(contexts.values(), desc="Cities"):
            if ctx.failed:
                continue
            logger.info(f"Processing {ctx.city}...")
            try:
                self.process_city(ctx)
                ctx.status = "completed"
            except Exception as e:
                ctx.fail(e)

        for ctx in contexts.values():
            self.write_run_info(ctx)

        n_failed = sum(ctx.failed for ctx in contexts.values())
        logger.info(f"Run {self.run_id}: {len(contexts) - n_failed} cities completed, {n_failed} failed")
        return contexts
