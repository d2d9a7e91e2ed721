"""
Resource governor: memory sampling, threshold handling and advisory
admission control for concurrent jobs.
"""

from .resource_governor import (  # noqa: F401
    GovernorConfig,
    MemorySnapshot,
    ResourceGovernor,
    ThresholdEvent,
)
