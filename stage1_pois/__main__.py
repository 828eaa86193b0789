"""
CLI entry point for POI classification only.

Usage:
    # Classify the OSM features of one city, no chain detection
    python -m stage1_pois --scheme configs/classification_scheme.csv --city amsterdam

    # With chain detection (table over this city only)
    python -m stage1_pois --scheme configs/classification_scheme.csv --city amsterdam --chains
"""

import argparse
import logging
import sys

import geopandas as gpd

from stage1_pois.chains import detect_chains
from stage1_pois.classifier import POIClassifier
from stage1_pois.scheme import ClassificationScheme, SchemeError
from utils import CityPaths

logger = logging.getLogger(__name__)


def main(argv=None) -> int:
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s %(name)s %(levelname)s: %(message)s",
    )

    parser = argparse.ArgumentParser(
        description="Classify OSM features of a city into the POI hierarchy",
    )
    parser.add_argument("--scheme", required=True, help="Classification scheme CSV")
    parser.add_argument("--city", required=True, help="City name (directory under data/cities)")
    parser.add_argument("--data-root", default=None, help="Root directory holding data/cities/{city}")
    parser.add_argument(
        "--chains", action="store_true",
        help="Separate chain supermarkets from independents (threshold 5, this city only)",
    )
    parser.add_argument("--output", default=None, help="Output parquet (default: pois/{city}_pois.parquet)")
    args = parser.parse_args(argv)

    try:
        scheme = ClassificationScheme.from_csv(args.scheme)
    except (SchemeError, FileNotFoundError) as e:
        logger.error(f"Invalid classification scheme: {e}")
        return 2

    paths = CityPaths(args.city, args.data_root)
    boundary_path = paths.boundary_file()
    if not boundary_path.exists():
        logger.error(f"Study area boundary not found: {boundary_path}")
        return 1

    classifier = POIClassifier(scheme)
    pois_gdf = classifier.classify(classifier.load_features(gpd.read_file(boundary_path)))
    if args.chains:
        results, _ = detect_chains({args.city: pois_gdf}, scheme, scope="city")
        pois_gdf = results[args.city]

    output_path = args.output or paths.pois_file()
    saved = classifier.save(pois_gdf, output_path, index=True)
    logger.info(f"Saved {len(pois_gdf):,} POIs to {saved}")
    return 0


if __name__ == "__main__":
    sys.exit(main())
