"""Post-cycle cleanup: resource registry, phased release pipeline, process helpers."""

from cyclecore.cleanup.job import CleanupJob, CleanupMetrics, CleanupStep
from cyclecore.cleanup.pipeline import PHASES, CleanupPipeline
from cyclecore.cleanup.registry import Disposable, ResourceRegistry

__all__ = [
    "PHASES",
    "CleanupJob",
    "CleanupMetrics",
    "CleanupPipeline",
    "CleanupStep",
    "Disposable",
    "ResourceRegistry",
]
