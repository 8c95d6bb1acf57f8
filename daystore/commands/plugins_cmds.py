from __future__ import annotations

from rich import print

from ..plugins import PluginRegistry, plugin_access


def plugins_cmd(*, registry_factory) -> None:
    """List discovered plugins and their enabled sources."""

    registry: PluginRegistry = registry_factory()
    plugins = registry.discover_plugins()
    if not plugins:
        print(f"[yellow]No plugins found in {registry.plugins_dir}[/yellow]")
        return
    for name, plugin in plugins.items():
        sources = registry.get_plugin_sources(name)
        state = "[green]enabled[/green]" if sources else "[dim]not configured[/dim]"
        print(f"[bold]{plugin.label}[/bold] ({name}, {plugin.type}, {plugin_access(plugin)}) {state}")
        for source in sources:
            print(f"  - {source.source_id}")
