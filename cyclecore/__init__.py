"""Cycle core: proxy rotation, search-space cycling, organic pacing and post-cycle cleanup."""

__version__ = "1.0.0"
