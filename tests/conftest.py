"""Pytest configuration for tests."""

import os
import sys

import pytest

# Set test environment
os.environ["ENVIRONMENT"] = "test"
os.environ.setdefault("SECRET_KEY", "test-secret-key")

sys.path.insert(0, os.path.join(os.path.dirname(os.path.dirname(os.path.abspath(__file__))), "src"))

from core.config import Settings  # noqa: E402
from core.context import ExecutionContext  # noqa: E402
from core.events import StatusChannel, StatusSink  # noqa: E402
from llm.models import ActionResult  # noqa: E402
from services.action_registry import ActionRegistry, ActionSpec, BundleRegistry, IntegrationBundle  # noqa: E402


class RecordingSink(StatusSink):
    """Status sink that keeps every published record."""

    def __init__(self):
        self.events = []

    async def publish(self, session_id, status, record):
        self.events.append((session_id, status.value, record))

    def statuses(self, action_id=None):
        return [
            status for _, status, record in self.events
            if action_id is None or record["action_id"] == action_id
        ]


def make_jira_factory(tickets=None, calls=None):
    """Bundle factory exposing a `fetchTickets` action."""

    async def fetch_tickets(arguments, context):
        if calls is not None:
            calls.append(arguments)
        return ActionResult.ok(tickets if tickets is not None else [{"key": "OPS-1", "status": "open"}])

    def factory(context):
        return {
            "fetchTickets": ActionSpec(
                handler=fetch_tickets,
                description="Fetch tickets by status",
                parameters={
                    "type": "object",
                    "properties": {"status": {"type": "string"}},
                },
            ),
        }

    return factory


@pytest.fixture
def settings():
    return Settings(
        OPENAI_API_KEY=None,
        ANTHROPIC_API_KEY=None,
        GOOGLE_API_KEY=None,
        ORCHESTRATION_MAX_STEPS=3,
        _env_file=None,
    )


@pytest.fixture
def sink():
    return RecordingSink()


@pytest.fixture
def bundles():
    registry = BundleRegistry()
    registry.register(IntegrationBundle("jira", "jira", make_jira_factory()))
    return registry


@pytest.fixture
def registry(bundles):
    return ActionRegistry(bundles)


@pytest.fixture
def stateless_context():
    return ExecutionContext.stateless("tenant-1", "user-1", "agent-1")


@pytest.fixture
def session_context():
    return ExecutionContext(
        tenant_id="tenant-1",
        session_id="a" * 24,
        user_id="user-1",
        agent_id="agent-1",
    )


@pytest.fixture
def status_channel(sink):
    return StatusChannel(sink)
