"""
Tests for stage2_access.travel_time: sources, origin chunking and the
lifetime of the r5py routing engine (r5py itself is mocked).
"""

import sys
from unittest.mock import MagicMock, patch

import numpy as np
import pandas as pd
import pytest

from stage2_access.grid import routing_points
from stage2_access.travel_time import (
    FrameTravelTimeSource,
    ParquetTravelTimeSource,
    R5RoutingEngine,
    R5TravelTimeSource,
    RoutingError,
    iter_origin_chunks,
    time_column_name,
)


def _matrix(n_origins: int = 6) -> pd.DataFrame:
    rows = [
        {"from_id": origin, "to_id": dest, "travel_time_p50": float(abs(origin - dest) * 3)}
        for origin in range(n_origins)
        for dest in range(n_origins)
    ]
    return pd.DataFrame(rows)


def _fake_r5py(matrix=None, error=None):
    module = MagicMock()
    module.TransportNetwork.return_value = MagicMock(name="network")
    if error is not None:
        module.TravelTimeMatrix.side_effect = error
    else:
        module.TravelTimeMatrix.return_value = matrix
    return module


class TestFrameSource:
    def test_origin_ids(self):
        source = FrameTravelTimeSource(_matrix(4).sample(frac=1, random_state=0))
        assert source.origin_ids().tolist() == [0, 1, 2, 3]

    def test_read_selects_origins(self):
        source = FrameTravelTimeSource(_matrix(4))
        chunk = source.read([1, 3])
        assert set(chunk["from_id"]) == {1, 3}
        assert len(chunk) == 8


class TestParquetSource:
    def test_filtered_reads(self, tmp_path):
        path = tmp_path / "ttm.parquet"
        _matrix(5).to_parquet(path, index=False)
        source = ParquetTravelTimeSource(path, batch_size=7)
        assert source.origin_ids().tolist() == [0, 1, 2, 3, 4]

        chunk = source.read([2])
        assert chunk["from_id"].unique().tolist() == [2]
        assert list(chunk.columns) == ["from_id", "to_id", "travel_time_p50"]

    def test_missing_file(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            ParquetTravelTimeSource(tmp_path / "missing.parquet")


class TestOriginChunks:
    @pytest.mark.parametrize("chunk_size, n_chunks", [(1, 6), (4, 2), (5000, 1)])
    def test_every_origin_in_exactly_one_chunk(self, chunk_size, n_chunks):
        source = FrameTravelTimeSource(_matrix(6))
        chunks = list(iter_origin_chunks(source, chunk_size))
        assert len(chunks) == n_chunks
        seen = [set(chunk["from_id"]) for chunk in chunks]
        assert sum(len(origins) for origins in seen) == 6
        assert set().union(*seen) == set(range(6))
        assert sum(len(chunk) for chunk in chunks) == 36

    def test_invalid_chunk_size(self):
        with pytest.raises(ValueError):
            list(iter_origin_chunks(FrameTravelTimeSource(_matrix(2)), 0))

    def test_time_column_name(self):
        assert time_column_name() == "travel_time_p50"
        assert time_column_name(80) == "travel_time_p80"


class TestR5RoutingEngine:
    def test_missing_extract(self, tmp_path):
        with pytest.raises(RoutingError):
            with R5RoutingEngine(tmp_path / "missing.osm.pbf"):
                pass

    def test_network_released_on_error(self, tmp_path):
        pbf = tmp_path / "city-latest.osm.pbf"
        pbf.write_bytes(b"")
        engine = R5RoutingEngine(pbf)
        with patch.dict(sys.modules, {"r5py": _fake_r5py()}), \
                patch("stage2_access.travel_time.gc.collect") as collect:
            with pytest.raises(RuntimeError, match="boom"):
                with engine:
                    assert engine.network is not None
                    raise RuntimeError("boom")
        assert engine.network is None
        collect.assert_called()

    def test_source_renames_and_drops_unreachable(self, tmp_path, grid):
        pbf = tmp_path / "city-latest.osm.pbf"
        pbf.write_bytes(b"")
        matrix = pd.DataFrame({
            "from_id": [0, 0, 0],
            "to_id": [0, 1, 2],
            "travel_time": [0.0, 2.0, np.nan],
        })
        fake = _fake_r5py(matrix)
        with patch.dict(sys.modules, {"r5py": fake}):
            with R5RoutingEngine(pbf) as engine:
                source = R5TravelTimeSource(engine, routing_points(grid), max_walk_time=15)
                assert source.origin_ids().tolist() == list(range(25))
                records = source.read([0])

        assert list(records.columns) == ["from_id", "to_id", "travel_time_p50"]
        assert records["to_id"].tolist() == [0, 1]
        kwargs = fake.TravelTimeMatrix.call_args.kwargs
        assert len(kwargs["origins"]) == 1
        assert len(kwargs["destinations"]) == 25
        assert kwargs["speed_walking"] == 4.8
        assert kwargs["max_time"].total_seconds() == 15 * 60

    def test_routing_failure(self, tmp_path, grid):
        pbf = tmp_path / "city-latest.osm.pbf"
        pbf.write_bytes(b"")
        with patch.dict(sys.modules, {"r5py": _fake_r5py(error=RuntimeError("JVM crashed"))}):
            with R5RoutingEngine(pbf) as engine:
                source = R5TravelTimeSource(engine, routing_points(grid))
                with pytest.raises(RoutingError, match="JVM crashed"):
                    source.read([0, 1])

    def test_read_after_close(self, grid):
        engine = R5RoutingEngine("unused.osm.pbf")
        source = R5TravelTimeSource(engine, routing_points(grid))
        with patch.dict(sys.modules, {"r5py": _fake_r5py()}):
            with pytest.raises(RoutingError, match="not open"):
                source.read([0])
