import pytest
from fastapi import FastAPI

from mosaic.core.events import EventPriority
from mosaic.core.plugins import PluginConfig
from mosaic.plugins.activity_log.plugin import DEFAULT_MAX_ENTRIES, ActivityLogPlugin
from tests.plugins.test_plugin_interface import BasePluginTest
from tests.test_events_common import wait_until


class TestActivityLogPlugin(BasePluginTest):
    """Test suite for ActivityLogPlugin"""

    @pytest.fixture
    def plugin_config(self):
        return PluginConfig(
            name="activity_log",
            version="1.0.0",
            enabled=True,
            config={"max_entries": 3, "priority": "low"},
        )

    @pytest.fixture
    def plugin(self, plugin_config, event_system):
        return ActivityLogPlugin(plugin_config, event_system)

    async def test_subscribes_to_all_events(self, plugin, event_system):
        await plugin.initialize()

        [subscription] = event_system.get_subscriptions()
        assert subscription.event_type == "*"
        assert subscription.config.priority == EventPriority.LOW
        assert subscription.config.max_retries == 0

    async def test_records_published_events(self, plugin, event_system):
        await plugin.initialize()

        event_id = event_system.publish("user.created", {"id": 1}, source="tests")

        assert await wait_until(lambda: len(plugin.get_activity()) == 1)
        [entry] = plugin.get_activity()
        assert entry["event_id"] == event_id
        assert entry["event_type"] == "user.created"
        assert entry["source"] == "tests"
        assert entry["priority"] == "NORMAL"

    async def test_activity_is_bounded(self, plugin, event_system):
        await plugin.initialize()

        for n in range(5):
            await event_system.emit_async(f"tick.{n}")

        activity = plugin.get_activity()
        assert [entry["event_type"] for entry in activity] == ["tick.2", "tick.3", "tick.4"]
        assert [entry["event_type"] for entry in plugin.get_activity(limit=1)] == ["tick.4"]

    async def test_timing_middleware(self, plugin, event_system):
        await plugin.initialize()

        await event_system.emit_async("timed.event")

        [timing] = plugin.get_timings()
        assert timing["event_type"] == "timed.event"
        assert timing["duration"] >= 0

    async def test_shutdown_removes_middleware(self, plugin, event_system):
        await plugin.initialize()
        await plugin.shutdown()

        await event_system.emit_async("after.shutdown")

        assert plugin.get_timings() == []
        assert event_system.get_subscriptions() == []

    async def test_on_startup_publishes_started_event(self, plugin, event_system):
        await plugin.initialize()
        app = FastAPI(title="Mosaic", version="9.9.9")

        await plugin.on_startup(app)

        [event] = event_system.get_history("system.started")
        assert event.payload == {"app": "Mosaic", "version": "9.9.9"}
        assert event.priority == EventPriority.HIGH
        assert event.source == "activity_log"

    async def test_default_max_entries(self, event_system):
        plugin = ActivityLogPlugin(PluginConfig(name="activity_log", version="1.0.0"), event_system)
        assert plugin._activity.maxlen == DEFAULT_MAX_ENTRIES
