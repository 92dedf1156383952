"""Mosaic event host: an in-process priority event system with a plugin host."""

__version__ = "1.0.0"
