import importlib
import importlib.util
import inspect
import sys
import traceback
from pathlib import Path
from types import ModuleType
from typing import Any

import pluggy
import yaml

from mosaic.core.events import EnhancedEventSystem
from mosaic.core.plugins.base import PluginBase, PluginConfig
from mosaic.core.plugins.hookspec import PROJECT_NAME, MosaicSpecs
from mosaic.utils.logging_config import get_logger

logger = get_logger(__name__)

BUNDLED_PLUGIN_PACKAGE = "mosaic.plugins"
BUNDLED_PLUGIN_DIR = Path(__file__).resolve().parent.parent.parent / "plugins"


class PluginManager:
    """Manages plugin lifecycle and lifecycle hooks"""

    def __init__(
        self, plugin_dir: str | Path, event_system: EnhancedEventSystem | None = None
    ) -> None:
        """Initialize the plugin manager with the plugin directory"""
        self.plugin_dir = Path(plugin_dir)
        self.plugins: dict[str, PluginBase] = {}
        self.configs: dict[str, PluginConfig] = {}
        self._init_order: list[str] = []
        if event_system is None:
            logger.warning("No event system provided to plugin manager")
        self.event_system = event_system

        self.hooks = pluggy.PluginManager(PROJECT_NAME)
        self.hooks.add_hookspecs(MosaicSpecs)
        logger.info("Plugin manager initialized", extra={"plugin_dir": str(plugin_dir)})

    async def discover_plugins(self) -> list[PluginConfig]:
        """Discover plugin configurations and instantiate enabled plugins"""
        if self.event_system is None:
            logger.error("Cannot discover plugins without event system")
            return []

        logger.info(
            "Starting plugin discovery", extra={"plugin_dir": str(self.plugin_dir)}
        )

        config_files = sorted(self.plugin_dir.glob("*/plugin.yaml"))
        logger.debug(
            "Found plugin config files",
            extra={
                "config_files": [str(f) for f in config_files],
                "search_pattern": "*/plugin.yaml",
            },
        )

        configs: list[PluginConfig] = []
        for config_file in config_files:
            try:
                config = self._load_config(config_file)
                if config is None:
                    continue

                self.configs[config.name] = config
                configs.append(config)

                if not config.enabled:
                    logger.info(
                        "Plugin is disabled, skipping",
                        extra={
                            "plugin_name": config.name,
                            "plugin_version": config.version,
                        },
                    )
                    continue

                if config.name in self.plugins:
                    logger.debug(
                        "Plugin already loaded", extra={"plugin_name": config.name}
                    )
                    continue

                plugin_class = self._load_plugin_class(config, config_file.parent)
                if plugin_class is None:
                    continue

                self.register(plugin_class(config, event_system=self.event_system))
                logger.info(
                    "Plugin loaded successfully",
                    extra={
                        "plugin_name": config.name,
                        "plugin_version": config.version,
                        "plugin_dependencies": config.dependencies,
                    },
                )

            except Exception as e:
                logger.error(
                    "Error loading plugin",
                    extra={"config_file": str(config_file), "error": str(e)},
                )

        return configs

    def register(self, plugin: PluginBase) -> None:
        """Register a plugin instance and its hook implementations"""
        if plugin.name in self.plugins:
            raise ValueError(f"Plugin {plugin.name} is already registered")
        self.plugins[plugin.name] = plugin
        self.configs.setdefault(plugin.name, plugin.config)
        self.hooks.register(plugin, name=plugin.name)
        logger.debug("Registered plugin", extra={"plugin_name": plugin.name})

    def unregister(self, name: str) -> PluginBase:
        """Remove a plugin. It is not shut down."""
        if name not in self.plugins:
            raise KeyError(f"Plugin {name} is not registered")
        plugin = self.plugins.pop(name)
        self.hooks.unregister(name=name)
        if name in self._init_order:
            self._init_order.remove(name)
        logger.debug("Unregistered plugin", extra={"plugin_name": name})
        return plugin

    async def initialize_plugins(self) -> None:
        """Initialize all plugins in dependency order"""
        logger.info("Initializing plugins", extra={"plugin_count": len(self.plugins)})

        # Build dependency graph of uninitialized plugins
        graph = {
            name: {dep for dep in plugin.config.dependencies if dep in self.plugins}
            for name, plugin in self.plugins.items()
            if not plugin.is_initialized
        }

        for name, plugin in self.plugins.items():
            if plugin.is_initialized:
                continue
            missing = set(plugin.config.dependencies) - set(self.plugins.keys())
            if missing:
                logger.warning(
                    "Plugin has missing dependencies",
                    extra={
                        "plugin_name": name,
                        "missing_dependencies": sorted(missing),
                    },
                )

        initialized: set[str] = {
            name for name, plugin in self.plugins.items() if plugin.is_initialized
        }
        while graph:
            ready = sorted(name for name, deps in graph.items() if not deps - initialized)
            if not ready:
                remaining = ", ".join(sorted(graph.keys()))
                logger.error(
                    "Circular plugin dependencies detected",
                    extra={
                        "remaining_plugins": remaining,
                        "dependency_info": {name: sorted(deps) for name, deps in graph.items()},
                    },
                )
                raise ValueError(f"Circular plugin dependencies detected: {remaining}")

            for name in ready:
                plugin = self.plugins[name]
                try:
                    await plugin.initialize()
                except Exception as e:
                    logger.error(
                        "Failed to initialize plugin",
                        extra={"plugin_name": name, "error": str(e)},
                    )
                    raise
                initialized.add(name)
                self._init_order.append(name)
                del graph[name]

        logger.info(
            "All plugins initialized successfully",
            extra={
                "initialized_plugins": list(self._init_order),
                "total_plugins": len(self.plugins),
            },
        )

    async def shutdown_plugins(self) -> None:
        """Shutdown all plugins in reverse initialization order"""
        logger.info("Shutting down plugins", extra={"plugin_count": len(self.plugins)})

        for name in reversed(self._init_order):
            plugin = self.plugins.get(name)
            if plugin is None:
                continue
            try:
                await plugin.shutdown()
            except Exception as e:
                logger.error(
                    "Error shutting down plugin",
                    extra={"plugin_name": name, "error": str(e)},
                )
        self._init_order.clear()

    def get_plugin(self, name: str) -> PluginBase | None:
        """Get a plugin by name"""
        plugin = self.plugins.get(name)
        if plugin is None:
            logger.debug("Plugin not found", extra={"plugin_name": name})
        return plugin

    async def call_hook(self, hook_name: str, **kwargs: Any) -> list[Any]:
        """Call a lifecycle hook on every registered plugin, awaiting async implementations"""
        hook = getattr(self.hooks.hook, hook_name, None)
        if hook is None:
            raise ValueError(f"Unknown hook: {hook_name}")

        results = []
        for outcome in hook(**kwargs):
            if inspect.isawaitable(outcome):
                try:
                    outcome = await outcome
                except Exception as e:
                    logger.error(
                        "Plugin hook failed",
                        extra={
                            "hook_name": hook_name,
                            "error": str(e),
                            "traceback": traceback.format_exc(),
                        },
                    )
                    continue
            results.append(outcome)
        return results

    def _load_config(self, config_file: Path) -> PluginConfig | None:
        with open(config_file) as f:
            try:
                config_data = yaml.safe_load(f)
            except yaml.YAMLError as e:
                logger.error(
                    "Failed to parse plugin config YAML",
                    extra={
                        "config_file": str(config_file),
                        "error": str(e),
                        "error_type": type(e).__name__,
                    },
                )
                return None

        try:
            return PluginConfig(**(config_data or {}))
        except Exception as e:
            logger.error(
                "Failed to validate plugin config",
                extra={
                    "config_file": str(config_file),
                    "config_data": config_data,
                    "error": str(e),
                    "error_type": type(e).__name__,
                },
            )
            return None

    def _load_plugin_class(
        self, config: PluginConfig, plugin_dir: Path
    ) -> type[PluginBase] | None:
        module_path = plugin_dir / "plugin.py"
        if not module_path.exists():
            logger.error(
                "Plugin module not found",
                extra={"plugin_name": config.name, "module_path": str(module_path)},
            )
            return None

        try:
            module = self._import_plugin_module(config.name, plugin_dir)
        except Exception as e:
            logger.error(
                f"Failed to import plugin module {config.name}",
                extra={
                    "plugin_name": config.name,
                    "module_path": str(module_path),
                    "error": str(e),
                    "error_type": type(e).__name__,
                    "traceback": traceback.format_exc(),
                },
            )
            return None

        candidates = [
            getattr(module, attr)
            for attr in dir(module)
            if attr.endswith("Plugin")
        ]
        for candidate in candidates:
            if (
                isinstance(candidate, type)
                and issubclass(candidate, PluginBase)
                and not inspect.isabstract(candidate)
            ):
                return candidate

        logger.error(
            "No plugin class found in module",
            extra={
                "plugin_name": config.name,
                "plugin_module": module.__name__,
                "available_classes": [attr for attr in dir(module) if not attr.startswith("_")],
                "error": "Plugin class must inherit from PluginBase",
            },
        )
        return None

    def _import_plugin_module(self, name: str, plugin_dir: Path) -> ModuleType:
        # Bundled plugins are regular subpackages
        if plugin_dir.resolve().parent == BUNDLED_PLUGIN_DIR:
            return importlib.import_module(f"{BUNDLED_PLUGIN_PACKAGE}.{name}")

        module_name = f"mosaic_plugin_{name}"
        init_file = plugin_dir / "__init__.py"
        if init_file.exists():
            spec = importlib.util.spec_from_file_location(
                module_name, init_file, submodule_search_locations=[str(plugin_dir)]
            )
        else:
            spec = importlib.util.spec_from_file_location(module_name, plugin_dir / "plugin.py")
        if spec is None or spec.loader is None:
            raise ImportError(f"Could not load plugin spec for {name}")

        module = importlib.util.module_from_spec(spec)
        sys.modules[module_name] = module
        try:
            spec.loader.exec_module(module)
        except Exception:
            sys.modules.pop(module_name, None)
            raise
        return module
