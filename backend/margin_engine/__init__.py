"""Leveraged-position risk monitor."""

__version__ = "1.0.0"
