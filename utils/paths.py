"""
Centralized path management for the per-city accessibility pipeline.

Every data path that stage1, stage2, or stage3 code needs should be constructed
through CityPaths, so the directory convention lives in one place.

Layout::

    data/cities/{city}/
    ├── boundary.geojson
    ├── osm/{city}-latest.osm.pbf
    ├── pois/{city}_pois.parquet
    ├── grid/{city}_res{r}_grid.parquet
    ├── access/{city}_res{r}_access_points.parquet
    ├── ttm/{city}_res{r}_ttm.parquet              (optional, precomputed)
    ├── ttm/{city}_res{r}_grid_ttm_access.parquet
    ├── accessibility/{city}_res{r}_accessibility.parquet
    └── runs/{YYYY-MM-DD_descriptor}/run_info.json
"""

import json
import re
import subprocess
from datetime import date, datetime
from pathlib import Path


class CityPaths:
    """Single source of truth for all data paths of one city.

    Usage::

        from utils import CityPaths

        paths = CityPaths("amsterdam")
        grid = gpd.read_parquet(paths.grid_file(10))
        ttm = pd.read_parquet(paths.ttm_access_file(10))

    The class does NOT create directories. Callers use
    ``path.mkdir(parents=True, exist_ok=True)`` as needed.
    """

    def __init__(self, city: str, data_root: "Path | str | None" = None):
        self.city = city
        if data_root is not None:
            self.data_root = Path(data_root)
        else:
            self.data_root = _find_project_root() / "data" / "cities"
        self.root = self.data_root / city

    # -----------------------------------------------------------------
    # Inputs
    # -----------------------------------------------------------------

    def boundary_file(self, fmt: str = "geojson") -> Path:
        """Study-area boundary for the city."""
        return self.root / f"boundary.{fmt}"

    def osm_dir(self) -> Path:
        """Directory holding OSM PBF extracts for the routing network."""
        return self.root / "osm"

    def osm_snapshot_pbf(self, date: str = "latest") -> Path:
        """OSM PBF snapshot for a specific date.

        Args:
            date: Date string (e.g. ``"2024-01-01"``) or ``"latest"``.

        Returns:
            Path to the PBF file.  The file may not exist on disk yet.
        """
        return self.osm_dir() / f"{self.city}-{date}.osm.pbf"

    # -----------------------------------------------------------------
    # Stage 1: classified features
    # -----------------------------------------------------------------

    def pois(self) -> Path:
        return self.root / "pois"

    def pois_file(self) -> Path:
        """GeoParquet of classified POI features."""
        return self.pois() / f"{self.city}_pois.parquet"

    # -----------------------------------------------------------------
    # Stage 2: grid, access points, travel-time aggregation
    # -----------------------------------------------------------------

    def grid_file(self, resolution: int) -> Path:
        """GeoParquet of grid cells (``grid_id``, ``region_id``, geometry)."""
        return self.root / "grid" / f"{self.city}_res{resolution}_grid.parquet"

    def access_points_file(self, resolution: int) -> Path:
        """Parquet of deduplicated ``(feature_id, NearestGridCell)`` pairs."""
        return self.root / "access" / f"{self.city}_res{resolution}_access_points.parquet"

    def ttm_file(self, resolution: int) -> Path:
        """Precomputed grid-to-grid travel-time matrix (``from_id``, ``to_id``, time)."""
        return self.root / "ttm" / f"{self.city}_res{resolution}_ttm.parquet"

    def ttm_access_file(self, resolution: int) -> Path:
        """Streamed ``grid_ttm_access`` parquet (one row group per origin chunk)."""
        return self.root / "ttm" / f"{self.city}_res{resolution}_grid_ttm_access.parquet"

    # -----------------------------------------------------------------
    # Stage 3: accessibility output
    # -----------------------------------------------------------------

    def accessibility_file(self, resolution: int) -> Path:
        """GeoParquet with one accessibility record per grid cell."""
        return (
            self.root / "accessibility"
            / f"{self.city}_res{resolution}_accessibility.parquet"
        )

    # -----------------------------------------------------------------
    # Run-level provenance
    # -----------------------------------------------------------------

    def runs(self) -> Path:
        return self.root / "runs"

    def run_dir(self, run_id: str) -> Path:
        return self.runs() / run_id

    def latest_run(self) -> "Path | None":
        """Find the most recent run directory by YYYY-MM-DD prefix sort."""
        if not self.runs().is_dir():
            return None
        pattern = re.compile(r"^\d{4}-\d{2}-\d{2}")
        run_dirs = sorted(
            d for d in self.runs().iterdir()
            if d.is_dir() and pattern.match(d.name)
        )
        return run_dirs[-1] if run_dirs else None

    @staticmethod
    def create_run_id(descriptor: str = "") -> str:
        """Generate a run ID string: ``YYYY-MM-DD_descriptor``.

        Does NOT create any directories.  Just returns the string.
        """
        today = date.today().isoformat()
        if descriptor:
            return f"{today}_{descriptor}"
        return today


def write_run_info(
    run_dir: Path,
    *,
    city: str,
    config: dict,
    status: str,
    summary: "dict | None" = None,
) -> Path:
    """Write ``run_info.json`` to a run directory.

    Captures the current git short hash automatically (``None`` if unavailable).
    Creates *run_dir* and any missing parents.

    Returns:
        Path to the written ``run_info.json``.
    """
    run_dir = Path(run_dir)
    run_dir.mkdir(parents=True, exist_ok=True)

    try:
        result = subprocess.run(
            ["git", "rev-parse", "--short", "HEAD"],
            capture_output=True,
            text=True,
            timeout=5,
        )
        git_hash = result.stdout.strip() if result.returncode == 0 else None
    except (subprocess.SubprocessError, FileNotFoundError):
        git_hash = None

    info = {
        "run_id": run_dir.name,
        "city": city,
        "status": status,
        "created_at": datetime.now().isoformat(timespec="seconds"),
        "git_hash": git_hash,
        "config": config,
        "summary": summary or {},
    }

    out_path = run_dir / "run_info.json"
    out_path.write_text(json.dumps(info, indent=2, default=str), encoding="utf-8")
    return out_path


def _find_project_root() -> Path:
    """Walk up from this file to find the project root (contains setup.py)."""
    current = Path(__file__).resolve().parent
    while current != current.parent:
        if (current / "setup.py").exists():
            return current
        current = current.parent
    raise RuntimeError("Could not find project root (no setup.py found)")
