"""
Travel-Time Aggregation

Streams the grid-to-grid travel-time matrix chunk by chunk and reduces it to
cumulative opportunity counts per origin cell:

1. Drop malformed records (non-integer ids, missing or negative times)
2. Join destinations to the POIs mapped to that cell (access points)
3. Keep the minimum travel time per (origin, POI); ties -> lowest to_id
4. Attach Class_B / Class_C
5. Count distinct POIs ``n`` per (origin, Class_C, Class_B, time)
6. Running total ``cum_pois`` over ascending time per (origin, Class_C, Class_B)

Every origin lives in exactly one chunk, so per-chunk results concatenate to
the same output regardless of chunk size. Results are appended to a Parquet
file one row group per chunk.
"""

import logging
import math
from dataclasses import asdict, dataclass
from pathlib import Path
from typing import Any, Dict, Iterator, Optional, Tuple, Union

import pandas as pd
import pyarrow as pa
import pyarrow.parquet as pq
from tqdm.auto import tqdm

from stage1_pois.base import PipelineStage
from stage2_access.travel_time import DEFAULT_CHUNK_SIZE, TravelTimeSource, iter_origin_chunks

logger = logging.getLogger(__name__)

GROUP_COLUMNS = ["from_id", "Class_C", "Class_B"]


def output_schema(time_column: str) -> pa.Schema:
    return pa.schema(
        [
            ("from_id", pa.int64()),
            ("Class_C", pa.string()),
            ("Class_B", pa.string()),
            (time_column, pa.float64()),
            ("n", pa.int64()),
            ("cum_pois", pa.int64()),
        ]
    )


@dataclass
class AggregationSummary:
    """Counters of one aggregation run."""

    n_origins: int = 0
    n_chunks: int = 0
    n_records: int = 0
    n_malformed: int = 0
    n_failed_chunks: int = 0
    n_rows: int = 0
    output_path: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


class TravelTimeAggregator(PipelineStage):
    """Reduce travel-time records to cumulative POI counts per origin cell."""

    def __init__(
        self,
        access_points: pd.DataFrame,
        pois: pd.DataFrame,
        config: Optional[Dict[str, Any]] = None,
    ):
        """Initialize the aggregator.

        Args:
            access_points: ``(feature_id, NearestGridCell)`` mapping.
            pois: Classified POIs indexed by ``feature_id`` with ``Class_B``
                and ``Class_C``.
            config: Optional settings. Keys:
                - chunk_size: origins per chunk (default 5000)
                - time_column: travel-time column (default ``travel_time_p50``)
        """
        super().__init__(config)
        self.chunk_size = int(self.config.get('chunk_size', DEFAULT_CHUNK_SIZE))
        self.time_column = self.config.get('time_column', 'travel_time_p50')

        categories = pois[["Class_B", "Class_C"]].dropna()
        categories = categories[~categories.index.duplicated(keep="first")]
        categories.index.name = "feature_id"
        self.categories = categories.astype(str)

        mapping = access_points[["feature_id", "NearestGridCell"]].drop_duplicates()
        mapping = mapping[mapping["feature_id"].isin(self.categories.index)]
        self.access_points = mapping.astype({"NearestGridCell": "int64"})
        logger.info(
            f"Aggregator over {self.access_points['feature_id'].nunique():,} POIs in "
            f"{self.access_points['NearestGridCell'].nunique():,} destination cells"
        )

    def validate_config(self):
        if int(self.config.get('chunk_size', DEFAULT_CHUNK_SIZE)) < 1:
            raise ValueError("chunk_size must be >= 1")

    def empty_result(self) -> pd.DataFrame:
        return output_schema(self.time_column).empty_table().to_pandas()

    def clean_records(self, chunk: pd.DataFrame) -> Tuple[pd.DataFrame, int]:
        """Coerce record types and drop malformed records.

        Returns:
            Tuple of (clean records, number of dropped records).
        """
        columns = ["from_id", "to_id", self.time_column]
        missing = [col for col in columns if col not in chunk.columns]
        if missing:
            raise KeyError(f"Travel-time records are missing columns: {missing}")

        records = pd.DataFrame({col: pd.to_numeric(chunk[col], errors="coerce") for col in columns})
        bad = records.isna().any(axis=1) | (records[self.time_column] < 0)
        for col in ("from_id", "to_id"):
            bad |= (records[col] % 1 != 0)

        records = records[~bad].astype({"from_id": "int64", "to_id": "int64", self.time_column: "float64"})
        return records.reset_index(drop=True), int(bad.sum())

    def aggregate(self, records: pd.DataFrame) -> pd.DataFrame:
        """Cumulative POI counts for clean records of complete origins."""
        joined = records.merge(self.access_points, left_on="to_id", right_on="NearestGridCell", how="inner")
        if joined.empty:
            return self.empty_result()

        nearest = (
            joined.sort_values(["from_id", "feature_id", self.time_column, "to_id"], kind="mergesort")
            .drop_duplicates(["from_id", "feature_id"], keep="first")
        )
        nearest = nearest.merge(self.categories, left_on="feature_id", right_index=True, how="inner")

        counts = (
            nearest.groupby(GROUP_COLUMNS + [self.time_column], sort=True)["feature_id"]
            .nunique()
            .rename("n")
            .reset_index()
        )
        counts["cum_pois"] = counts.groupby(GROUP_COLUMNS, sort=False)["n"].cumsum()
        counts = counts.astype({"from_id": "int64", "n": "int64", "cum_pois": "int64"})
        return counts[list(output_schema(self.time_column).names)]

    def process_chunk(self, chunk: pd.DataFrame) -> pd.DataFrame:
        records, n_malformed = self.clean_records(chunk)
        if n_malformed:
            logger.warning(f"Skipped {n_malformed:,} malformed travel-time records")
        return self.aggregate(records)

    def iter_results(
        self,
        source: TravelTimeSource,
        summary: Optional[AggregationSummary] = None,
    ) -> Iterator[pd.DataFrame]:
        """Aggregate *source* chunk by chunk.

        A chunk whose records cannot be aggregated is logged and skipped;
        errors raised by the source itself propagate.
        """
        summary = summary if summary is not None else AggregationSummary()
        origin_ids = source.origin_ids()
        summary.n_origins = len(origin_ids)
        total = math.ceil(len(origin_ids) / self.chunk_size)

        chunks = iter_origin_chunks(source, self.chunk_size, origin_ids=origin_ids)
        for i, chunk in enumerate(tqdm(chunks, total=total, desc="Aggregating travel times")):
            summary.n_chunks += 1
            summary.n_records += len(chunk)
            try:
                records, n_malformed = self.clean_records(chunk)
                result = self.aggregate(records)
            except (KeyError, ValueError, TypeError) as e:
                summary.n_failed_chunks += 1
                logger.error(f"Chunk {i} failed and was skipped: {e}")
                continue
            summary.n_malformed += n_malformed
            summary.n_rows += len(result)
            yield result

        if summary.n_malformed:
            logger.warning(f"Skipped {summary.n_malformed:,} malformed travel-time records in total")

    def run(self, source: TravelTimeSource, output_path: Union[str, Path]) -> AggregationSummary:
        """Stream the aggregation of *source* into a Parquet file."""
        output_path = Path(output_path)
        output_path.parent.mkdir(parents=True, exist_ok=True)
        schema = output_schema(self.time_column)
        summary = AggregationSummary(output_path=str(output_path))

        with pq.ParquetWriter(output_path, schema) as writer:
            for result in self.iter_results(source, summary):
                if result.empty:
                    continue
                writer.write_table(pa.Table.from_pandas(result, schema=schema, preserve_index=False))

        logger.info(
            f"Aggregated {summary.n_records:,} records from {summary.n_origins:,} origins "
            f"in {summary.n_chunks} chunks -> {summary.n_rows:,} rows ({output_path.name})"
        )
        if summary.n_failed_chunks:
            logger.warning(f"{summary.n_failed_chunks} chunks failed")
        return summary


def read_aggregation(path: Union[str, Path]) -> pd.DataFrame:
    """Load an aggregation file sorted by origin, category and time."""
    frame = pd.read_parquet(path)
    time_column = [col for col in frame.columns if col.startswith("travel_time")][0]
    return frame.sort_values(GROUP_COLUMNS + [time_column]).reset_index(drop=True)
