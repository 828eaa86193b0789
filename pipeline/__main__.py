"""
CLI entry point for the walking-accessibility pipeline.

Usage:
    # All cities of the config
    python -m pipeline --config configs/walk_accessibility.yaml

    # One city, smaller chunks, per-city chain table
    python -m pipeline --config configs/walk_accessibility.yaml --city amsterdam \
        --chunk-size 1000 --chain-scope city

    # Use precomputed travel-time matrices instead of r5py
    python -m pipeline --config configs/walk_accessibility.yaml --travel-times parquet
"""

import argparse
import dataclasses
import logging
import sys

from pipeline.config import TRAVEL_TIME_SOURCES, PipelineConfig
from pipeline.runner import AccessibilityPipeline
from stage1_pois.chains import CHAIN_SCOPES
from stage1_pois.scheme import SchemeError

logger = logging.getLogger(__name__)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Walking accessibility surfaces from classified OSM POIs",
    )
    parser.add_argument(
        "--config", required=True,
        help="Pipeline config YAML (e.g. configs/walk_accessibility.yaml)",
    )
    parser.add_argument(
        "--city", action="append", default=None,
        help="City to process; repeat for several. Default: all cities in the config",
    )
    parser.add_argument(
        "--chunk-size", type=int, default=None,
        help="Origins per travel-time chunk (default from config: 5000)",
    )
    parser.add_argument(
        "--chain-scope", choices=CHAIN_SCOPES, default=None,
        help="Chain frequency table over all cities ('global') or per city ('city')",
    )
    parser.add_argument(
        "--travel-times", choices=TRAVEL_TIME_SOURCES, default=None,
        help="Compute travel times with r5py ('r5') or read precomputed matrices ('parquet')",
    )
    parser.add_argument(
        "--resolution", type=int, default=None,
        help="H3 resolution of the grid (default from config: 10)",
    )
    parser.add_argument(
        "--data-root", default=None,
        help="Root directory holding data/cities/{city} (default: project data dir)",
    )
    return parser


def main(argv=None) -> int:
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s %(name)s %(levelname)s: %(message)s",
    )
    args = build_parser().parse_args(argv)

    overrides = {
        "chunk_size": args.chunk_size,
        "chain_scope": args.chain_scope,
        "travel_time_source": args.travel_times,
        "h3_resolution": args.resolution,
        "data_root": args.data_root,
    }
    overrides = {key: value for key, value in overrides.items() if value is not None}

    try:
        config = PipelineConfig.from_yaml(args.config)
        if overrides:
            config = dataclasses.replace(config, **overrides)
        pipeline = AccessibilityPipeline(config)
        contexts = pipeline.run(args.city)
    except (SchemeError, ValueError, FileNotFoundError) as e:
        logger.error(f"Pipeline aborted: {e}")
        return 2

    failed = [ctx.city for ctx in contexts.values() if ctx.failed]
    for ctx in contexts.values():
        logger.info(f"  {ctx.city}: {ctx.status}" + (f" ({ctx.error})" if ctx.error else ""))
    if failed:
        logger.warning(f"{len(failed)} cities failed: {', '.join(failed)}")
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
