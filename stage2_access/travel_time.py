"""
Travel-Time Sources

A travel-time matrix between grid centroids is far too large to hold in
memory for a city, so it is consumed per chunk of origins. Every source
exposes the same two methods:

- ``origin_ids()``: all origin grid ids the matrix covers
- ``read(origin_ids)``: records ``(from_id, to_id, travel_time_p50)`` for
  those origins; unreachable pairs are simply absent

Sources:
    FrameTravelTimeSource: an in-memory DataFrame (tests, small areas)
    ParquetTravelTimeSource: a precomputed matrix on disk (pyarrow filters)
    R5TravelTimeSource: computes walking times with r5py per chunk
"""

import datetime
import gc
import logging
from pathlib import Path
from typing import Iterator, Optional, Protocol, Sequence, Union

import geopandas as gpd
import numpy as np
import pandas as pd
import pyarrow.parquet as pq

logger = logging.getLogger(__name__)

DEFAULT_CHUNK_SIZE = 5000


def time_column_name(percentile: int = 50) -> str:
    return f"travel_time_p{percentile}"


class RoutingError(RuntimeError):
    """Travel times for a city could not be produced."""


class TravelTimeSource(Protocol):
    time_column: str

    def origin_ids(self) -> np.ndarray:
        ...

    def read(self, origin_ids: Sequence[int]) -> pd.DataFrame:
        ...


class FrameTravelTimeSource:
    """Travel-time records already held in a DataFrame."""

    def __init__(self, records: pd.DataFrame, time_column: str = "travel_time_p50"):
        self.records = records
        self.time_column = time_column

    def origin_ids(self) -> np.ndarray:
        ids = pd.to_numeric(self.records["from_id"], errors="coerce").dropna()
        return np.unique(ids.to_numpy())

    def read(self, origin_ids: Sequence[int]) -> pd.DataFrame:
        from_ids = pd.to_numeric(self.records["from_id"], errors="coerce")
        return self.records[from_ids.isin(list(origin_ids))]


class ParquetTravelTimeSource:
    """Precomputed travel-time matrix stored as Parquet.

    Origin ids are collected batch by batch and each chunk is read with a
    row filter, so only one chunk of the matrix is in memory at a time.
    """

    def __init__(self, path: Union[str, Path], time_column: str = "travel_time_p50", batch_size: int = 1_000_000):
        self.path = Path(path)
        if not self.path.exists():
            raise FileNotFoundError(f"Travel-time matrix not found: {self.path}")
        self.time_column = time_column
        self.batch_size = batch_size

    def origin_ids(self) -> np.ndarray:
        parquet_file = pq.ParquetFile(self.path)
        seen = []
        for batch in parquet_file.iter_batches(batch_size=self.batch_size, columns=["from_id"]):
            values = batch.column(0).to_numpy(zero_copy_only=False)
            seen.append(np.unique(values[~pd.isna(values)]))
        if not seen:
            return np.array([], dtype="int64")
        return np.unique(np.concatenate(seen))

    def read(self, origin_ids: Sequence[int]) -> pd.DataFrame:
        ids = [int(value) for value in origin_ids]
        table = pq.read_table(
            self.path,
            columns=["from_id", "to_id", self.time_column],
            filters=[("from_id", "in", ids)],
        )
        return table.to_pandas()


class R5RoutingEngine:
    """Scoped r5py transport network for one city.

    The network holds the street graph of the whole city in the JVM; it is
    built on enter and released on exit, also when the city fails.

    Usage::

        with R5RoutingEngine(paths.osm_snapshot_pbf()) as engine:
            source = R5TravelTimeSource(engine, points)
            ...
    """

    def __init__(self, osm_pbf: Union[str, Path]):
        self.osm_pbf = Path(osm_pbf)
        self.network = None

    def __enter__(self) -> "R5RoutingEngine":
        if not self.osm_pbf.exists():
            raise RoutingError(f"OSM extract not found: {self.osm_pbf}")
        import r5py

        logger.info(f"Building transport network from {self.osm_pbf.name}...")
        self.network = r5py.TransportNetwork(str(self.osm_pbf))
        return self

    def __exit__(self, exc_type, exc, tb):
        self.close()
        return False

    def close(self):
        if self.network is not None:
            logger.info("Releasing transport network")
        self.network = None
        gc.collect()


class R5TravelTimeSource:
    """Walking travel times between grid centroids computed with r5py."""

    def __init__(
        self,
        engine: R5RoutingEngine,
        points: gpd.GeoDataFrame,
        max_walk_time: int = 30,
        walk_speed: float = 4.8,
        percentile: int = 50,
    ):
        """
        Args:
            engine: Entered routing engine.
            points: Routing points with ``id`` and point geometry (EPSG:4326);
                used both as origins and destinations.
            max_walk_time: Maximum walking time in minutes.
            walk_speed: Walking speed in km/h.
            percentile: Travel-time percentile to report.
        """
        self.engine = engine
        self.points = points[["id", "geometry"]].to_crs('EPSG:4326')
        self.max_walk_time = max_walk_time
        self.walk_speed = walk_speed
        self.percentile = percentile
        self.time_column = time_column_name(percentile)

    def origin_ids(self) -> np.ndarray:
        return np.sort(self.points["id"].to_numpy())

    def read(self, origin_ids: Sequence[int]) -> pd.DataFrame:
        import r5py

        if self.engine.network is None:
            raise RoutingError("Routing engine is not open")

        origins = self.points[self.points["id"].isin(list(origin_ids))]
        try:
            matrix = r5py.TravelTimeMatrix(
                self.engine.network,
                origins=origins,
                destinations=self.points,
                transport_modes=[r5py.TransportMode.WALK],
                max_time=datetime.timedelta(minutes=self.max_walk_time),
                speed_walking=self.walk_speed,
                percentiles=[self.percentile],
            )
        except Exception as e:
            raise RoutingError(f"Travel-time computation failed for {len(origins)} origins: {e}") from e

        records = pd.DataFrame(matrix)
        if "travel_time" in records.columns:
            records = records.rename(columns={"travel_time": self.time_column})
        return records.dropna(subset=[self.time_column])


def iter_origin_chunks(
    source: TravelTimeSource,
    chunk_size: int = DEFAULT_CHUNK_SIZE,
    origin_ids: Optional[np.ndarray] = None,
) -> Iterator[pd.DataFrame]:
    """Yield travel-time records of *source* in chunks of ``chunk_size`` origins.

    Origins are processed in ascending id order; every chunk holds all
    records of its origins.
    """
    if chunk_size < 1:
        raise ValueError(f"chunk_size must be >= 1, got {chunk_size}")
    if origin_ids is None:
        origin_ids = source.origin_ids()
    origin_ids = np.sort(np.asarray(origin_ids))
    for start in range(0, len(origin_ids), chunk_size):
        yield source.read(origin_ids[start:start + chunk_size])
