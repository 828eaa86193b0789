"""
Stage 1: POI classification for the walking-accessibility pipeline.

Compiles the ordered classification scheme, classifies OSM features into the
Class_A / Class_B / Class_C hierarchy and separates chain stores from
independents.
"""

from .base import PipelineStage
from .scheme import ClassificationScheme, ClassificationRule, SchemeError, parse_filter
from .classifier import POIClassifier
from .chains import ChainDetector, detect_chains

__all__ = [
    'PipelineStage',
    'ClassificationScheme',
    'ClassificationRule',
    'SchemeError',
    'parse_filter',
    'POIClassifier',
    'ChainDetector',
    'detect_chains',
]
