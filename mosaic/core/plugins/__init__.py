"""Plugin host: plugin base class, manager and lifecycle hooks."""

from mosaic.core.plugins.base import PluginBase, PluginConfig
from mosaic.core.plugins.hookspec import MosaicSpecs, hookimpl
from mosaic.core.plugins.manager import PluginManager

__all__ = ["MosaicSpecs", "PluginBase", "PluginConfig", "PluginManager", "hookimpl"]
