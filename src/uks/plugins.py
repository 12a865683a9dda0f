"""Ingest plugins: alternative file-to-graph-data transforms.

A plugin is any object with ``can_handle(path) -> bool`` and
``ingest(path, content) -> dict | None``. Plugins are registered explicitly and
consulted in registration order; the first one returning data wins.

    class YamlPlugin(IngestPlugin):
        def can_handle(self, path):
            return path.endswith(".yaml")

        def ingest(self, path, content):
            return yaml.safe_load(content)

    plugins = PluginManager()
    plugins.register(YamlPlugin())
"""

from __future__ import annotations

import logging
from typing import Any

from uks.errors import PluginError

logger = logging.getLogger("uks.plugins")


class Plugin:
    """Base class for plugins. Subclasses may override init()."""

    def __init__(self, config: dict[str, Any] | None = None) -> None:
        self.config: dict[str, Any] = config or {}

    @property
    def name(self) -> str:
        return type(self).__name__

    def init(self) -> None:
        """Called once on registration."""


class IngestPlugin(Plugin):
    def can_handle(self, path: str) -> bool:
        return False

    def ingest(self, path: str, content: str) -> dict[str, Any] | None:
        msg = f"{self.name} must implement ingest(path, content)"
        raise PluginError(msg, {"plugin": self.name})


def _is_ingest_plugin(obj: object) -> bool:
    return callable(getattr(obj, "can_handle", None)) and callable(getattr(obj, "ingest", None))


class PluginManager:
    """Plain ordered registry of plugin instances."""

    def __init__(self) -> None:
        self.plugins: list[Any] = []

    def register(self, plugin: Any) -> None:
        if plugin is None or isinstance(plugin, type):
            msg = "Invalid plugin: must be a plugin instance"
            raise PluginError(msg, {"received": repr(plugin)})
        self.plugins.append(plugin)
        init = getattr(plugin, "init", None)
        if callable(init):
            try:
                init()
            except Exception:
                name = getattr(plugin, "name", type(plugin).__name__)
                logger.warning("plugin %s init failed", name, exc_info=True)

    def ingest_plugins(self) -> list[Any]:
        """Registered plugins that can ingest files, in registration order."""
        return [p for p in self.plugins if _is_ingest_plugin(p)]
