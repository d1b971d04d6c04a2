"""Built-in integration bundles."""

from typing import List, Optional

import httpx

from services.action_registry import BundleRegistry, IntegrationBundle
from services.collaborators import WorkspaceStore
from .debug import debug_bundle_factory
from .http_request import http_bundle_factory
from .knowledge import knowledge_bundle_factory


def register_builtin_bundles(
    registry: BundleRegistry,
    workspace: WorkspaceStore,
    http_transport: Optional[httpx.AsyncBaseTransport] = None,
    network_allowlist: Optional[List[str]] = None,
) -> BundleRegistry:
    """Register the HTTP, Debug and Knowledge bundles."""
    registry.register(IntegrationBundle(
        key="http",
        display_name="HTTP",
        factory=http_bundle_factory(http_transport, network_allowlist),
        description="Generic outbound HTTP requests",
        icon="globe",
    ))
    registry.register(IntegrationBundle(
        key="debug",
        display_name="Debug",
        factory=debug_bundle_factory,
        description="Diagnostics for the tool-calling path",
        icon="bug",
    ))
    registry.register(IntegrationBundle(
        key="knowledge",
        display_name="Knowledge",
        factory=knowledge_bundle_factory(workspace),
        description="Workspace file search",
        icon="search",
    ))
    return registry


__all__ = ["register_builtin_bundles"]
