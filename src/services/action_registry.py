"""Action registry and tool-set loader.

Integration bundles register a factory that, given an execution context,
returns the bundle's actions. Building a tool set instantiates every
relevant bundle concurrently, namespaces each action with its bundle's
display name and keeps only the allow-listed ones. A bundle that fails to
initialize contributes nothing; it never takes the build down with it.
"""

import asyncio
import inspect
import logging
import re
from collections import OrderedDict
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Mapping, Optional, Tuple, Union

from core.context import ExecutionContext
from core.exceptions import IntegrationInitError
from llm.models import ActionHandler, ToolDefinition
from .collaborators import ActionMetadata, ActionMetadataLookup
from .schema_compiler import compile_schema

logger = logging.getLogger(__name__)

ToolSet = Mapping[str, ToolDefinition]

_INVALID_NAME_CHARS = re.compile(r"[^a-zA-Z0-9_-]")


def sanitize_function_name(name: str) -> str:
    """Model-facing form of an action id: dots become underscores, other symbols are dropped."""
    return _INVALID_NAME_CHARS.sub("", name.replace(".", "_"))


@dataclass
class ActionSpec:
    """One callable action as produced by a bundle factory."""
    handler: ActionHandler
    description: str
    parameters: Dict[str, Any] = field(default_factory=lambda: {"type": "object", "properties": {}})
    title: Optional[str] = None
    icon: Optional[str] = None


BundleFactory = Callable[
    [ExecutionContext],
    Union[Mapping[str, ActionSpec], Awaitable[Mapping[str, ActionSpec]]],
]


@dataclass
class IntegrationBundle:
    key: str
    display_name: str
    factory: BundleFactory
    description: str = ""
    icon: Optional[str] = None

    @property
    def prefix(self) -> str:
        return f"{sanitize_function_name(self.display_name)}_"


class BundleRegistry:
    """Startup-time registry of integration bundle factories."""

    def __init__(self):
        self._bundles: Dict[str, IntegrationBundle] = {}

    def register(self, bundle: IntegrationBundle) -> IntegrationBundle:
        if bundle.key in self._bundles:
            logger.warning(f"Replacing integration bundle {bundle.key}")
        self._bundles[bundle.key] = bundle
        return bundle

    def bundle(self, key: str, display_name: Optional[str] = None, description: str = "", icon: Optional[str] = None):
        """Decorator form of `register`."""
        def decorator(factory: BundleFactory) -> BundleFactory:
            self.register(IntegrationBundle(key, display_name or key, factory, description, icon))
            return factory
        return decorator

    def get(self, key: str) -> Optional[IntegrationBundle]:
        return self._bundles.get(key)

    def list_bundles(self) -> List[IntegrationBundle]:
        return list(self._bundles.values())

    def find_by_function_name(self, function_name: str) -> Optional[IntegrationBundle]:
        """Bundle whose namespace prefix the model-facing name carries (longest match)."""
        matches = [b for b in self._bundles.values() if function_name.startswith(b.prefix)]
        return max(matches, key=lambda b: len(b.prefix)) if matches else None


class RegistryActionMetadata(ActionMetadataLookup):
    """Action metadata remembered from tool-set builds."""

    def __init__(self):
        self._catalog: Dict[str, ActionMetadata] = {}

    def remember(self, qualified_id: str, metadata: ActionMetadata) -> None:
        self._catalog[qualified_id] = metadata

    async def describe_action(self, qualified_id: str, language: str = "en") -> Optional[ActionMetadata]:
        return self._catalog.get(qualified_id)


def _humanize(action_name: str) -> str:
    words = re.sub(r"([a-z0-9])([A-Z])", r"\1 \2", action_name).replace("_", " ")
    return words[:1].upper() + words[1:]


class ActionRegistry:
    """Builds tool sets from the registered bundles."""

    def __init__(self, bundles: BundleRegistry, catalog: Optional[RegistryActionMetadata] = None):
        self.bundles = bundles
        self.catalog = catalog or RegistryActionMetadata()

    async def _load_bundle(self, bundle: IntegrationBundle, context: ExecutionContext) -> Dict[str, ActionSpec]:
        try:
            actions = bundle.factory(context)
            if inspect.isawaitable(actions):
                actions = await actions
            return dict(actions or {})
        except Exception as e:
            error = IntegrationInitError(bundle.key, str(e))
            logger.warning(f"{error.message}; continuing without its actions (tenant {context.tenant_id})")
            return {}

    def _define(self, bundle: IntegrationBundle, action_name: str, spec: ActionSpec) -> ToolDefinition:
        qualified_id = f"{bundle.display_name}.{action_name}"
        name = sanitize_function_name(qualified_id)
        title = spec.title or _humanize(action_name)
        self.catalog.remember(
            qualified_id,
            ActionMetadata(
                service_name=bundle.display_name,
                title=title,
                description=spec.description,
                icon=spec.icon or bundle.icon,
            ),
        )
        return ToolDefinition(
            name=name,
            description=spec.description,
            parameters=spec.parameters,
            qualified_id=qualified_id,
            bundle=bundle.key,
            action_name=action_name,
            title=title,
            icon=spec.icon or bundle.icon,
            handler=spec.handler,
            validator=compile_schema(spec.parameters, name),
        )

    async def build_tool_set(self, context: ExecutionContext, allowed_action_ids: Iterable[str]) -> ToolSet:
        """Build the namespaced, allow-listed tool set for one agent.

        Never raises; a failed build yields an empty tool set.
        """
        try:
            allowed = {sanitize_function_name(action_id) for action_id in allowed_action_ids or []}
            if not allowed:
                return MappingProxyType({})

            bundles = [
                bundle for bundle in self.bundles.list_bundles()
                if any(name.startswith(bundle.prefix) for name in allowed)
            ]
            slices = await asyncio.gather(*(self._load_bundle(bundle, context) for bundle in bundles))

            tool_set: Dict[str, ToolDefinition] = {}
            for bundle, actions in zip(bundles, slices):
                for action_name, spec in actions.items():
                    name = sanitize_function_name(f"{bundle.display_name}.{action_name}")
                    if name not in allowed:
                        continue
                    if name in tool_set:
                        logger.warning(
                            f"Action name collision on {name}: keeping {tool_set[name].qualified_id}, "
                            f"dropping {bundle.key}.{action_name}"
                        )
                        continue
                    try:
                        tool_set[name] = self._define(bundle, action_name, spec)
                    except Exception as e:
                        logger.warning(f"Skipping action {name}: invalid definition ({e})")

            logger.debug(f"Built tool set for agent {context.agent_id}: {sorted(tool_set)}")
            return MappingProxyType(tool_set)
        except Exception as e:
            logger.error(f"Tool set build failed for agent {context.agent_id}: {e}")
            return MappingProxyType({})

    async def list_actions(self, context: ExecutionContext) -> Dict[str, List[str]]:
        """Model-facing action names of every registered bundle, keyed by bundle key."""
        bundles = self.bundles.list_bundles()
        slices = await asyncio.gather(*(self._load_bundle(bundle, context) for bundle in bundles))
        return {
            bundle.key: sorted(sanitize_function_name(f"{bundle.display_name}.{name}") for name in actions)
            for bundle, actions in zip(bundles, slices)
        }

    def to_qualified_id(self, function_name: str, tool_set: Optional[ToolSet] = None) -> str:
        """Inverse of the namespacing: `Jira_fetchTickets` -> `Jira.fetchTickets`."""
        if tool_set and function_name in tool_set:
            return tool_set[function_name].qualified_id
        bundle = self.bundles.find_by_function_name(function_name)
        if bundle:
            return f"{bundle.display_name}.{function_name[len(bundle.prefix):]}"
        return function_name.replace("_", ".", 1)


CacheKey = Tuple[Optional[str], Optional[str], Tuple[str, ...]]


class ToolSetCache:
    """Tool sets keyed by (agent id, user id, sorted allow-list).

    Values are read-only mappings replaced whole. Storing a tool set for an
    agent/user drops that pair's entries built under other allow-lists.
    """

    def __init__(self, max_entries: int = 256):
        self.max_entries = max_entries
        self._entries: "OrderedDict[CacheKey, ToolSet]" = OrderedDict()

    @staticmethod
    def key(agent_id: Optional[str], user_id: Optional[str], allowed_action_ids: Iterable[str]) -> CacheKey:
        return (agent_id, user_id, tuple(sorted(set(allowed_action_ids or []))))

    def get(self, key: CacheKey) -> Optional[ToolSet]:
        return self._entries.get(key)

    def put(self, key: CacheKey, tool_set: ToolSet) -> None:
        agent_id, user_id, _ = key
        stale = [k for k in self._entries if k[0] == agent_id and k[1] == user_id and k != key]
        for k in stale:
            self._entries.pop(k, None)
        self._entries[key] = tool_set
        while len(self._entries) > self.max_entries:
            self._entries.popitem(last=False)

    def invalidate(self, agent_id: str) -> int:
        """Drop every cached tool set of an agent; returns the number removed."""
        keys = [k for k in self._entries if k[0] == agent_id]
        for k in keys:
            self._entries.pop(k, None)
        return len(keys)

    def __len__(self) -> int:
        return len(self._entries)

    async def get_or_build(
        self,
        registry: ActionRegistry,
        context: ExecutionContext,
        allowed_action_ids: List[str],
    ) -> ToolSet:
        key = self.key(context.agent_id, context.user_id, allowed_action_ids)
        cached = self.get(key)
        if cached is not None:
            logger.debug(f"Tool set cache hit for agent {context.agent_id}")
            return cached

        logger.debug(f"Tool set cache miss for agent {context.agent_id}")
        tool_set = await registry.build_tool_set(context, allowed_action_ids)
        # Empty builds for a non-empty allow-list are not cached
        if tool_set or not allowed_action_ids:
            self.put(key, tool_set)
        return tool_set
