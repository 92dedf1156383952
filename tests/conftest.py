"""Common test fixtures and configuration."""

import os

import pytest

from mosaic.core.events import EnhancedEventSystem, EventSystemConfig, RetryPolicy
from mosaic.core.plugins import PluginBase, PluginConfig

# Set test environment
os.environ["API_KEY"] = "test_api_key"
os.environ["LOG_LEVEL"] = "DEBUG"


@pytest.fixture
def retry_policy():
    """Small, deterministic delays so retry tests stay fast."""
    return RetryPolicy(
        max_retries=2,
        initial_delay=0.01,
        backoff_multiplier=2.0,
        max_delay=0.05,
        jitter=False,
    )


@pytest.fixture
def event_config(retry_policy):
    return EventSystemConfig(
        default_timeout=1.0,
        default_retry_policy=retry_policy,
        enable_metrics=False,
        idle_poll_interval=0.001,
        error_cooldown=0.01,
    )


@pytest.fixture
async def event_system(event_config):
    """An event system that is not started; tests call ``start()`` when needed."""
    system = EnhancedEventSystem(event_config)
    yield system
    await system.shutdown(timeout=1.0)


@pytest.fixture
async def running_system(event_system):
    await event_system.start()
    return event_system


# Test implementation of PluginBase for testing
class _TestPluginImpl(PluginBase):
    async def _initialize(self) -> None:
        pass

    async def _shutdown(self) -> None:
        pass


@pytest.fixture
def plugin_config():
    return PluginConfig(
        name="test_plugin",
        version="1.0.0",
        enabled=True,
        config={"test_key": "test_value"},
    )


@pytest.fixture
def test_plugin_impl(plugin_config, event_system):
    return _TestPluginImpl(plugin_config, event_system)


@pytest.fixture
async def make_system(event_config):
    """Factory for event systems with config overrides; all are shut down afterwards."""
    systems = []

    def factory(**overrides):
        system = EnhancedEventSystem(event_config.model_copy(update=overrides))
        systems.append(system)
        return system

    yield factory

    for system in systems:
        await system.shutdown(timeout=1.0)
