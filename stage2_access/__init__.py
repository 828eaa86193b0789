"""
Stage 2: Grid, access points and travel-time aggregation.

Builds the H3 grid of a study area, maps POIs to the grid cells they are
reached from and streams the walking travel-time matrix into cumulative
POI counts per origin cell.
"""

from .grid import GridBuilder, grid_centroids, routing_points
from .entrances import EntranceFinder, NetworkEntranceFinder
from .access_points import AccessPointAssigner
from .travel_time import (
    FrameTravelTimeSource,
    ParquetTravelTimeSource,
    R5RoutingEngine,
    R5TravelTimeSource,
    RoutingError,
    TravelTimeSource,
    iter_origin_chunks,
)
from .aggregation import AggregationSummary, TravelTimeAggregator

__all__ = [
    'GridBuilder',
    'grid_centroids',
    'routing_points',
    'EntranceFinder',
    'NetworkEntranceFinder',
    'AccessPointAssigner',
    'TravelTimeSource',
    'FrameTravelTimeSource',
    'ParquetTravelTimeSource',
    'R5RoutingEngine',
    'R5TravelTimeSource',
    'RoutingError',
    'iter_origin_chunks',
    'AggregationSummary',
    'TravelTimeAggregator',
]
