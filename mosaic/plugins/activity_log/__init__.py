"""Activity log plugin."""

from .plugin import ActivityLogPlugin as Plugin

__all__ = ["Plugin"]
