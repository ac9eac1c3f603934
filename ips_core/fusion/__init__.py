"""
Fusion Module: EKF fusion and the pipeline facade.

Key classes:
- FusionEngine: EKF over [x, y, theta] fusing motion with absolute fixes
- LatestValueSlot / BoundedFeed: Non-blocking producer feeds
- PositioningPipeline: Wires radio, PDR and fusion together
"""

from .fusion_engine import FusionEngine, FusionConfig
from .feeds import LatestValueSlot, BoundedFeed
from .positioning_pipeline import PositioningPipeline, PipelineConfig

__all__ = [
    'FusionEngine',
    'FusionConfig',
    'LatestValueSlot',
    'BoundedFeed',
    'PositioningPipeline',
    'PipelineConfig',
]
