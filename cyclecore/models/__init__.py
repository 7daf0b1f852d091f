"""Public API models for the cycle service."""

from cyclecore.models.responses import ApiResponse, CleanupRequest

__all__ = ["ApiResponse", "CleanupRequest"]
