"""
Shared fixtures: a toy classification scheme, synthetic features and a
5 x 5 grid of 100 m square cells in Amsterdam (UTM 31N), all built in memory.
"""

import sys
from pathlib import Path

import geopandas as gpd
import pandas as pd
import pytest
from shapely.geometry import Point, box

PROJECT_ROOT = Path(__file__).resolve().parent.parent
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from stage1_pois.scheme import ClassificationScheme  # noqa: E402

UTM_CRS = "EPSG:32631"
GRID_X0 = 630_000.0
GRID_Y0 = 5_800_000.0
CELL = 100.0
GRID_SIZE = 5


SCHEME_ROWS = [
    ("TRUE", "Supermarket", "Groceries", "Food", "shop == 'supermarket'"),
    ("TRUE", "Food Store", "Other Food Stores", "Food", "shop %in% c('convenience', 'greengrocer')"),
    ("TRUE", "Cafe", "Eating Out", "Food", "amenity == 'cafe'"),
    ("TRUE", "Bakery", "Other Food Stores", "Food", "shop == 'bakery'"),
    ("TRUE", "Pharmacy", "Pharmacy", "Health", "amenity == 'pharmacy' | healthcare == 'pharmacy'"),
    ("TRUE", "Park", "Green Space", "Recreation", "leisure == 'park' & access != 'private'"),
    ("FALSE", "Vending", "Other", "Other", "amenity == 'vending_machine'"),
]


def scheme_table(rows=None) -> pd.DataFrame:
    return pd.DataFrame(rows or SCHEME_ROWS, columns=["Active", "Class_A", "Class_B", "Class_C", "Filter"])


@pytest.fixture
def scheme() -> ClassificationScheme:
    return ClassificationScheme.from_frame(scheme_table())


def cell_center(grid_id: int):
    """UTM coordinates of the center of a grid cell (row-major ids)."""
    row, col = divmod(grid_id, GRID_SIZE)
    return GRID_X0 + (col + 0.5) * CELL, GRID_Y0 + (row + 0.5) * CELL


def make_grid(crs: str = "EPSG:4326") -> gpd.GeoDataFrame:
    cells = []
    for grid_id in range(GRID_SIZE * GRID_SIZE):
        row, col = divmod(grid_id, GRID_SIZE)
        x0, y0 = GRID_X0 + col * CELL, GRID_Y0 + row * CELL
        cells.append({"grid_id": grid_id, "region_id": f"cell{grid_id:02d}", "geometry": box(x0, y0, x0 + CELL, y0 + CELL)})
    grid = gpd.GeoDataFrame(cells, crs=UTM_CRS)
    return grid if crs == UTM_CRS else grid.to_crs(crs)


@pytest.fixture
def grid() -> gpd.GeoDataFrame:
    return make_grid()


@pytest.fixture
def boundary() -> gpd.GeoDataFrame:
    area = box(GRID_X0, GRID_Y0, GRID_X0 + GRID_SIZE * CELL, GRID_Y0 + GRID_SIZE * CELL)
    return gpd.GeoDataFrame(geometry=[area], crs=UTM_CRS).to_crs("EPSG:4326")


def make_features(records, crs: str = UTM_CRS) -> gpd.GeoDataFrame:
    """Features indexed by ``feature_id`` from dicts with a ``geometry`` key."""
    gdf = gpd.GeoDataFrame(records, geometry="geometry", crs=crs)
    return gdf.set_index("feature_id")


def point_at(grid_id: int, dx: float = 0.0, dy: float = 0.0) -> Point:
    x, y = cell_center(grid_id)
    return Point(x + dx, y + dy)
