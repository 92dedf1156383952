"""Core components: event system, configuration, plugin host and broadcaster."""
