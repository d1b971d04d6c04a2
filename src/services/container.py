"""Wiring of the engine's services for one process."""

import logging
from dataclasses import dataclass
from typing import Callable, Optional

import httpx

from core.config import Settings, get_settings
from core.events import StatusChannel, StatusSink
from integrations import register_builtin_bundles
from llm.cost_tracking import CostAccountant, CostLedger, InMemoryCostLedger
from llm.providers import ModelResolver
from .action_executor import ActionExecutor
from .action_registry import ActionRegistry, BundleRegistry, RegistryActionMetadata, ToolSetCache
from .attachments import AttachmentIngestor
from .collaborators import (
    AgentDirectory, AttachmentFetcher, CredentialStore, HttpAttachmentFetcher, InMemoryAgentDirectory,
    InMemorySessionStore, InMemoryWorkspaceStore, JinjaTemplateRenderer, LoggingStatusSink,
    SessionStore, SettingsCredentialStore, TemplateRenderer, WorkspaceStore,
)
from .orchestrator import Orchestrator

logger = logging.getLogger(__name__)


@dataclass
class ServiceContainer:
    settings: Settings
    bundles: BundleRegistry
    registry: ActionRegistry
    status_channel: StatusChannel
    executor: ActionExecutor
    resolver: ModelResolver
    cost_ledger: CostLedger
    cost_accountant: CostAccountant
    session_store: SessionStore
    credentials: CredentialStore
    agents: AgentDirectory
    workspace: WorkspaceStore
    renderer: TemplateRenderer
    orchestrator: Orchestrator

    async def start(self) -> None:
        await self.status_channel.start()

    async def stop(self) -> None:
        await self.orchestrator.drain()
        await self.status_channel.stop()


def build_services(
    settings: Optional[Settings] = None,
    session_store: Optional[SessionStore] = None,
    credentials: Optional[CredentialStore] = None,
    agents: Optional[AgentDirectory] = None,
    workspace: Optional[WorkspaceStore] = None,
    cost_ledger: Optional[CostLedger] = None,
    status_sink: Optional[StatusSink] = None,
    fetcher: Optional[AttachmentFetcher] = None,
    transport_factory: Optional[Callable[[], httpx.AsyncBaseTransport]] = None,
    bundles: Optional[BundleRegistry] = None,
) -> ServiceContainer:
    """Build the service graph; any collaborator can be swapped in."""
    settings = settings or get_settings()
    session_store = session_store or InMemorySessionStore()
    workspace = workspace or InMemoryWorkspaceStore()
    cost_ledger = cost_ledger or InMemoryCostLedger()

    if bundles is None:
        bundles = register_builtin_bundles(BundleRegistry(), workspace)
    catalog = RegistryActionMetadata()
    registry = ActionRegistry(bundles, catalog)
    renderer = JinjaTemplateRenderer(session_store)
    status_channel = StatusChannel(
        status_sink or LoggingStatusSink(),
        maxsize=settings.STATUS_QUEUE_MAXSIZE,
        output_max_chars=settings.STATUS_OUTPUT_MAX_CHARS,
    )
    executor = ActionExecutor(registry, catalog, renderer, status_channel, session_store)
    resolver = ModelResolver(settings, transport_factory)
    cost_accountant = CostAccountant(cost_ledger)
    credentials = credentials or SettingsCredentialStore(settings)

    orchestrator = Orchestrator(
        registry=registry,
        executor=executor,
        resolver=resolver,
        cost_accountant=cost_accountant,
        session_store=session_store,
        credentials=credentials,
        ingestor=AttachmentIngestor(fetcher or HttpAttachmentFetcher(), settings.ATTACHMENT_MAX_CHARS),
        tool_set_cache=ToolSetCache(settings.TOOL_SET_CACHE_MAX_ENTRIES),
        settings=settings,
    )
    agents = agents or InMemoryAgentDirectory()
    agents.subscribe(orchestrator.tool_set_cache.invalidate)
    logger.debug(f"Built services with bundles: {[b.key for b in bundles.list_bundles()]}")

    return ServiceContainer(
        settings=settings,
        bundles=bundles,
        registry=registry,
        status_channel=status_channel,
        executor=executor,
        resolver=resolver,
        cost_ledger=cost_ledger,
        cost_accountant=cost_accountant,
        session_store=session_store,
        credentials=credentials,
        agents=agents,
        workspace=workspace,
        renderer=renderer,
        orchestrator=orchestrator,
    )
