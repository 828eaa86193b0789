"""
Stage 3: Analysis Package
=========================

Per-cell walking accessibility metrics derived from the cumulative
opportunity tables of stage 2.
"""

from .accessibility import AccessibilityConfig, AccessibilityMetrics

__all__ = [
    'AccessibilityConfig',
    'AccessibilityMetrics',
]
