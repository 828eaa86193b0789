"""
Import smoke tests for all three stages and the pipeline driver.

Verifies that every public module and class can be imported without error.
Each import is isolated in its own test function so failures are independent.

Also includes H3 compliance tests that verify no stage code uses banned
h3-py functions (tessellation/neighborhood) that should go through SRAI.
"""

from pathlib import Path

import pytest

# ---------------------------------------------------------------------------
# Stage 1: POI classification
# ---------------------------------------------------------------------------


class TestStage1Imports:
    """Import smoke tests for the stage1_pois package."""

    def test_import_base_module(self):
        from stage1_pois.base import PipelineStage
        assert PipelineStage is not None

    def test_import_package_init(self):
        import stage1_pois
        assert hasattr(stage1_pois, "ClassificationScheme")
        assert hasattr(stage1_pois, "POIClassifier")
        assert hasattr(stage1_pois, "ChainDetector")

    def test_import_scheme(self):
        from stage1_pois.scheme import ClassificationScheme, SchemeError, parse_filter
        assert callable(parse_filter)
        assert issubclass(SchemeError, Exception)
        assert ClassificationScheme is not None

    def test_import_chains(self):
        from stage1_pois.chains import CHAIN_SCOPES, detect_chains
        assert callable(detect_chains)
        assert CHAIN_SCOPES == ("global", "city")


# ---------------------------------------------------------------------------
# Stage 2: Grid, access points, travel times
# ---------------------------------------------------------------------------


class TestStage2Imports:
    """Import smoke tests for the stage2_access package."""

    def test_import_grid(self):
        from stage2_access.grid import GridBuilder, grid_centroids, routing_points
        assert GridBuilder is not None
        assert callable(grid_centroids)
        assert callable(routing_points)

    def test_import_access_points(self):
        from stage2_access.access_points import AccessPointAssigner
        from stage2_access.entrances import NetworkEntranceFinder
        assert AccessPointAssigner is not None
        assert NetworkEntranceFinder is not None

    def test_import_travel_time(self):
        from stage2_access.travel_time import R5RoutingEngine, RoutingError
        assert R5RoutingEngine is not None
        assert issubclass(RoutingError, RuntimeError)

    def test_import_aggregation(self):
        from stage2_access.aggregation import TravelTimeAggregator, output_schema
        assert TravelTimeAggregator is not None
        assert "cum_pois" in output_schema("travel_time_p50").names


# ---------------------------------------------------------------------------
# Stage 3: Accessibility metrics and the pipeline driver
# ---------------------------------------------------------------------------


class TestStage3Imports:
    """Import smoke tests for stage3_analysis and the pipeline package."""

    def test_import_package_init(self):
        import stage3_analysis
        assert hasattr(stage3_analysis, "AccessibilityMetrics")
        assert hasattr(stage3_analysis, "AccessibilityConfig")

    def test_import_pipeline(self):
        from pipeline import AccessibilityPipeline, PipelineConfig
        assert AccessibilityPipeline is not None
        assert PipelineConfig is not None

    def test_import_cli(self):
        from pipeline.__main__ import build_parser, main
        assert callable(main)
        assert build_parser().parse_args(["--config", "x.yaml"]).config == "x.yaml"


# ---------------------------------------------------------------------------
# H3 Compliance Tests
# ---------------------------------------------------------------------------

# Banned h3-py functions that MUST go through SRAI instead.
# h3 is acceptable for metadata lookups SRAI does not wrap
# (get_resolution); everything else is banned.
BANNED_H3_PATTERNS = [
    r"h3\.grid_disk",
    r"h3\.grid_ring",
    r"h3\.cell_to_boundary",
    r"h3\.latlng_to_cell",
]

# Aliases used in some modules (import h3 as _h3)
BANNED_H3_ALIAS_PATTERNS = [
    r"_h3\.grid_disk",
    r"_h3\.grid_ring",
    r"_h3\.cell_to_boundary",
    r"_h3\.latlng_to_cell",
]

# Directories to scan (stage code only, not tests)
STAGE_DIRS = [
    "stage1_pois",
    "stage2_access",
    "stage3_analysis",
    "pipeline",
]

PROJECT_ROOT = Path(__file__).resolve().parent.parent


def _code_lines():
    for stage_dir in STAGE_DIRS:
        search_path = PROJECT_ROOT / stage_dir
        if not search_path.exists():
            continue
        for py_file in search_path.rglob("*.py"):
            rel_path = py_file.relative_to(PROJECT_ROOT)
            with open(py_file, "r", encoding="utf-8") as f:
                for line_num, line in enumerate(f, start=1):
                    if line.lstrip().startswith("#"):
                        continue
                    yield rel_path, line_num, line


class TestH3Compliance:
    """Verify that stage code does not use banned h3-py functions.

    Tessellation and neighborhood queries must go through SRAI; h3-py is
    only used for cell metadata such as ``get_resolution``.
    """

    @pytest.mark.parametrize("pattern", BANNED_H3_PATTERNS + BANNED_H3_ALIAS_PATTERNS)
    def test_no_banned_h3_usage(self, pattern):
        """Grep stage directories for banned h3 function calls."""
        search_str = pattern.replace(r"\.", ".")
        violations = [
            f"{rel_path}:{line_num}: {line.rstrip()}"
            for rel_path, line_num, line in _code_lines()
            if search_str in line
        ]
        if violations:
            violation_report = "\n".join(violations)
            pytest.fail(
                f"Found banned h3 usage matching '{pattern}' in stage code "
                f"(should use SRAI instead):\n{violation_report}"
            )

    def test_no_h3_tessellation_import(self):
        """Ensure no stage code imports h3 tessellation functions directly."""
        banned_imports = [
            "from h3 import grid_disk",
            "from h3 import grid_ring",
            "from h3 import cell_to_boundary",
            "from h3 import latlng_to_cell",
        ]
        violations = [
            f"{rel_path}:{line_num}: {line.rstrip()}"
            for rel_path, line_num, line in _code_lines()
            for banned in banned_imports
            if banned in line
        ]
        if violations:
            violation_report = "\n".join(violations)
            pytest.fail(
                f"Found direct imports of banned h3 functions:\n{violation_report}"
            )
