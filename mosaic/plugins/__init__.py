"""Bundled plugins. Each subpackage ships a ``plugin.yaml`` and a ``plugin.py``."""
