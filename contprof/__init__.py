"""Continuous profiling: configuration, scrape targets and loops, debug info storage and query validation."""

__version__ = "0.1.0"