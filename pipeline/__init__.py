"""
Multi-city driver for the walking-accessibility pipeline.
"""

from .config import PipelineConfig
from .runner import AccessibilityPipeline, CityContext

__all__ = [
    'PipelineConfig',
    'AccessibilityPipeline',
    'CityContext',
]
