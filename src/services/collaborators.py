"""Interfaces of the services the orchestration engine consumes.

Persistence, delivery and file retrieval live outside the engine; it only
talks to them through the narrow contracts below. The in-memory
implementations back single-process deployments and tests.
"""

import base64
import logging
import secrets
from abc import ABC, abstractmethod
from collections import defaultdict
from typing import Any, Callable, Dict, List, Optional

import httpx
from jinja2 import DebugUndefined
from jinja2.sandbox import SandboxedEnvironment
from pydantic import BaseModel, ConfigDict

from core.config import Settings, get_settings
from core.events import ExecutionStatus, StatusSink
from core.exceptions import NotFoundError
from llm.models import Message

logger = logging.getLogger(__name__)


# =============================================================================
# Domain records
# =============================================================================

class SessionContext(BaseModel):
    """Everything a turn needs to know about a persisted session."""
    model_config = ConfigDict(protected_namespaces=())

    tenant_id: str
    user_id: Optional[str] = None
    agent_id: str
    language: str = "en"
    allowed_action_ids: List[str] = []
    model_provider: Optional[str] = None
    model_id: Optional[str] = None
    prompt_text: str = ""
    max_tokens: Optional[int] = None


class AgentProfile(BaseModel):
    """Agent configuration as stored by the agent directory."""
    model_config = ConfigDict(protected_namespaces=())

    id: str
    name: str
    tenant_id: str
    team_id: Optional[str] = None
    description: str = ""
    model_provider: Optional[str] = None
    model_id: Optional[str] = None
    prompt_text: str = ""
    allowed_action_ids: List[str] = []
    max_tokens: Optional[int] = None
    language: str = "en"


class Team(BaseModel):
    id: str
    name: str
    tenant_id: str
    description: str = ""
    agent_ids: List[str] = []


class WorkspaceItem(BaseModel):
    id: str
    tenant_id: str
    name: str
    agent_id: Optional[str] = None
    content: str = ""
    mime_type: str = "text/plain"
    metadata: Dict[str, Any] = {}


class ActionMetadata(BaseModel):
    """Display metadata of an action, used in status records."""
    service_name: str
    title: str
    description: str = ""
    icon: Optional[str] = None


# =============================================================================
# Interfaces
# =============================================================================

class SessionStore(ABC):

    @abstractmethod
    async def get_context_for_session(self, session_id: str) -> SessionContext:
        """Raises NotFoundError for an unknown session."""

    @abstractmethod
    async def append_message(self, session_id: str, message: Message) -> None:
        ...

    @abstractmethod
    async def list_messages(self, session_id: str) -> List[Message]:
        """Messages in chronological order."""

    async def get_variables(self, session_id: str) -> Dict[str, Any]:
        return {}


class ActionMetadataLookup(ABC):

    @abstractmethod
    async def describe_action(self, qualified_id: str, language: str = "en") -> Optional[ActionMetadata]:
        ...


class TemplateRenderer(ABC):

    @abstractmethod
    async def render(self, text: str, session_id: str) -> str:
        """Best-effort: returns the input unchanged on internal error."""


class AttachmentFetcher(ABC):

    @abstractmethod
    async def fetch_bytes(self, ref: str) -> bytes:
        ...

    async def fetch_text(self, ref: str) -> str:
        return (await self.fetch_bytes(ref)).decode("utf-8", errors="replace")


class CredentialStore(ABC):

    @abstractmethod
    async def get_api_key(self, tenant_id: str, provider: str) -> Optional[str]:
        ...


class AgentDirectory(ABC):
    """Agents and teams; listeners hear about every changed agent id."""

    def subscribe(self, listener: Callable[[str], Any]) -> None:
        if not hasattr(self, "_listeners"):
            self._listeners: List[Callable[[str], Any]] = []
        self._listeners.append(listener)

    def notify_agent_changed(self, agent_id: str) -> None:
        for listener in getattr(self, "_listeners", []):
            try:
                listener(agent_id)
            except Exception as e:
                logger.error(f"Agent change listener failed for agent {agent_id}: {e}")

    @abstractmethod
    async def get_agent(self, tenant_id: str, agent_id: str) -> Optional[AgentProfile]:
        ...

    @abstractmethod
    async def list_agents(self, tenant_id: str, team_id: Optional[str] = None) -> List[AgentProfile]:
        ...

    @abstractmethod
    async def get_team(self, tenant_id: str, team_id: str) -> Optional[Team]:
        ...

    @abstractmethod
    async def list_teams(self, tenant_id: str) -> List[Team]:
        ...


class WorkspaceStore(ABC):

    @abstractmethod
    async def list_items(self, tenant_id: str, agent_id: Optional[str] = None) -> List[WorkspaceItem]:
        ...

    @abstractmethod
    async def get_item(self, tenant_id: str, item_id: str) -> Optional[WorkspaceItem]:
        ...

    @abstractmethod
    async def search(self, tenant_id: str, query: str, limit: int = 5) -> List[WorkspaceItem]:
        ...


# =============================================================================
# In-memory implementations
# =============================================================================

class InMemorySessionStore(SessionStore):

    def __init__(self):
        self._sessions: Dict[str, SessionContext] = {}
        self._messages: Dict[str, List[Message]] = defaultdict(list)
        self._variables: Dict[str, Dict[str, Any]] = {}

    def create_session(self, context: SessionContext, variables: Optional[Dict[str, Any]] = None) -> str:
        session_id = secrets.token_hex(12)
        self._sessions[session_id] = context
        self._variables[session_id] = dict(variables or {})
        return session_id

    async def get_context_for_session(self, session_id: str) -> SessionContext:
        context = self._sessions.get(session_id)
        if context is None:
            raise NotFoundError(f"Session {session_id} not found")
        return context

    async def append_message(self, session_id: str, message: Message) -> None:
        self._messages[session_id].append(message)

    async def list_messages(self, session_id: str) -> List[Message]:
        return list(self._messages.get(session_id, []))

    async def get_variables(self, session_id: str) -> Dict[str, Any]:
        return dict(self._variables.get(session_id, {}))


class JinjaTemplateRenderer(TemplateRenderer):
    """Substitute `{{ variable }}` placeholders with session variables.

    Unknown placeholders are left in place. Rendering runs in a Jinja2
    sandbox since argument strings come from model output.
    """

    def __init__(self, session_store: SessionStore):
        self.session_store = session_store
        self._env = SandboxedEnvironment(undefined=DebugUndefined, autoescape=False)

    async def render(self, text: str, session_id: str) -> str:
        if "{{" not in text and "{%" not in text:
            return text
        try:
            variables = await self.session_store.get_variables(session_id)
            return self._env.from_string(text).render(**variables)
        except Exception as e:
            logger.warning(f"Template rendering failed for session {session_id}: {e}")
            return text


class LoggingStatusSink(StatusSink):
    """Status sink that writes records to the log."""

    async def publish(self, session_id: str, status: ExecutionStatus, record: Dict[str, Any]) -> None:
        logger.info(
            f"Action {record.get('action_id')} {status.value} "
            f"(execution {record.get('id')}, session {session_id})"
        )


class HttpAttachmentFetcher(AttachmentFetcher):
    """Fetch attachments over HTTP; `data:` URLs are decoded in place."""

    def __init__(self, timeout: float = 30.0, transport: Optional[httpx.AsyncBaseTransport] = None):
        self.timeout = timeout
        self._transport = transport

    async def fetch_bytes(self, ref: str) -> bytes:
        if ref.startswith("data:"):
            header, _, payload = ref.partition(",")
            if header.endswith(";base64"):
                return base64.b64decode(payload)
            return payload.encode("utf-8")

        async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport, follow_redirects=True) as client:
            response = await client.get(ref)
            response.raise_for_status()
            return response.content


class SettingsCredentialStore(CredentialStore):
    """Per-tenant provider keys with the deployment's keys as fallback."""

    def __init__(self, settings: Optional[Settings] = None):
        self.settings = settings or get_settings()
        self._keys: Dict[tuple, str] = {}

    def set_api_key(self, tenant_id: str, provider: str, api_key: str) -> None:
        self._keys[(tenant_id, provider.lower())] = api_key

    async def get_api_key(self, tenant_id: str, provider: str) -> Optional[str]:
        key = self._keys.get((tenant_id, provider.lower()))
        if key:
            return key
        fallback = {
            "openai": self.settings.OPENAI_API_KEY,
            "anthropic": self.settings.ANTHROPIC_API_KEY,
            "google": self.settings.GOOGLE_API_KEY,
            "gemini": self.settings.GOOGLE_API_KEY,
        }
        return fallback.get(provider.lower())


class InMemoryAgentDirectory(AgentDirectory):

    def __init__(self):
        self._agents: Dict[str, AgentProfile] = {}
        self._teams: Dict[str, Team] = {}

    def add_agent(self, agent: AgentProfile) -> AgentProfile:
        """Create or replace an agent."""
        replaced = agent.id in self._agents
        self._agents[agent.id] = agent
        if replaced:
            self.notify_agent_changed(agent.id)
        return agent

    def add_team(self, team: Team) -> Team:
        self._teams[team.id] = team
        return team

    async def get_agent(self, tenant_id: str, agent_id: str) -> Optional[AgentProfile]:
        agent = self._agents.get(agent_id)
        return agent if agent and agent.tenant_id == tenant_id else None

    async def list_agents(self, tenant_id: str, team_id: Optional[str] = None) -> List[AgentProfile]:
        return [
            agent for agent in self._agents.values()
            if agent.tenant_id == tenant_id and (team_id is None or agent.team_id == team_id)
        ]

    async def get_team(self, tenant_id: str, team_id: str) -> Optional[Team]:
        team = self._teams.get(team_id)
        return team if team and team.tenant_id == tenant_id else None

    async def list_teams(self, tenant_id: str) -> List[Team]:
        return [team for team in self._teams.values() if team.tenant_id == tenant_id]


class InMemoryWorkspaceStore(WorkspaceStore):

    def __init__(self):
        self._items: Dict[str, WorkspaceItem] = {}

    def add_item(self, item: WorkspaceItem) -> WorkspaceItem:
        self._items[item.id] = item
        return item

    async def list_items(self, tenant_id: str, agent_id: Optional[str] = None) -> List[WorkspaceItem]:
        return [
            item for item in self._items.values()
            if item.tenant_id == tenant_id and (agent_id is None or item.agent_id == agent_id)
        ]

    async def get_item(self, tenant_id: str, item_id: str) -> Optional[WorkspaceItem]:
        item = self._items.get(item_id)
        return item if item and item.tenant_id == tenant_id else None

    async def search(self, tenant_id: str, query: str, limit: int = 5) -> List[WorkspaceItem]:
        """Rank items by how many query terms they contain."""
        terms = [term for term in query.lower().split() if term]
        scored = []
        for item in self._items.values():
            if item.tenant_id != tenant_id:
                continue
            haystack = f"{item.name} {item.content}".lower()
            score = sum(haystack.count(term) for term in terms)
            if score:
                scored.append((score, item))
        scored.sort(key=lambda pair: pair[0], reverse=True)
        return [item for _, item in scored[:limit]]
