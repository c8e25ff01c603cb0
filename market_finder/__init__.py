"""Nearby-market discovery: provider aggregation, caching and viewport debouncing."""

__version__ = "0.1.0"
