"""Persistent background job engine driven by periodic triggers."""

__version__ = "0.1.0"
