"""Provider plugin system (explicit registry).

Each plugin connects one external service to the canonical event log:
- capabilities (OAuth, webhook, API key, manual)
- fetch and conversion of provider records
- webhook verification and splitting
- backfill paging
"""

from .registry import get_plugin_registry

__all__ = ["get_plugin_registry"]
