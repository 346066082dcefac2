"""
quakewatch_ai

USGS catalog → feature/label build → feed-forward risk classifier → synthetic candidate scoring → dashboard.

Regions live in configs/quakewatch.yaml; the core logic only ever sees a center point and a bounding box
or radius, never a hard-coded place.
"""

from __future__ import annotations

__all__ = [
    "__version__",
]

__version__ = "0.1.0"
