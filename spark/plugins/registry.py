from __future__ import annotations

from dataclasses import dataclass

from spark.kernel.errors import NotFoundError
from spark.plugins.contracts import Capability, ProviderPlugin
from spark.plugins.providers.github import GitHubPlugin
from spark.plugins.providers.gocardless import GoCardlessPlugin
from spark.plugins.providers.hevy import HevyPlugin
from spark.plugins.providers.journal import JournalPlugin
from spark.plugins.providers.monzo import MonzoPlugin
from spark.plugins.providers.oura import OuraPlugin
from spark.plugins.providers.outline import OutlinePlugin
from spark.plugins.providers.spotify import SpotifyPlugin

# Adding a provider means adding an entry here.
_KNOWN_PLUGINS: dict[str, type[ProviderPlugin]] = {
    "github": GitHubPlugin,
    "gocardless": GoCardlessPlugin,
    "hevy": HevyPlugin,
    "journal": JournalPlugin,
    "monzo": MonzoPlugin,
    "oura": OuraPlugin,
    "outline": OutlinePlugin,
    "spotify": SpotifyPlugin,
}


@dataclass(frozen=True)
class PluginRegistry:
    _plugins: dict[str, ProviderPlugin]

    def identifiers(self) -> list[str]:
        return sorted(self._plugins)

    def all(self) -> list[ProviderPlugin]:
        return [self._plugins[name] for name in self.identifiers()]

    def has(self, identifier: str) -> bool:
        return identifier in self._plugins

    def get(self, identifier: str) -> ProviderPlugin:
        plugin = self._plugins.get((identifier or "").strip())
        if plugin is None:
            raise NotFoundError(
                message=f"Unknown service: {identifier}",
                code="plugin.not_found",
                meta={"known": self.identifiers()},
            )
        return plugin

    def with_capability(self, capability: Capability) -> list[ProviderPlugin]:
        return [plugin for plugin in self.all() if plugin.has(capability)]

    def schedulable(self) -> list[ProviderPlugin]:
        """Pull providers; webhook and manual providers are never scheduled."""
        return [plugin for plugin in self.all() if plugin.is_pull]


def build_registry(plugins: list[ProviderPlugin] | None = None) -> PluginRegistry:
    if plugins is None:
        plugins = [plugin_cls() for plugin_cls in _KNOWN_PLUGINS.values()]
    return PluginRegistry(_plugins={plugin.identifier: plugin for plugin in plugins})


_registry: PluginRegistry | None = None


def get_plugin_registry() -> PluginRegistry:
    global _registry
    if _registry is None:
        _registry = build_registry()
    return _registry
