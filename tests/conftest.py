"""
Pytest fixtures for kube-remediate-mcp tests.
"""
import pytest
import tempfile
import json
from pathlib import Path
import sys
import os

# Add parent directory to path for imports
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

# Keep the server's audit database out of the home directory
os.environ.setdefault(
    "REMEDIATE_DB_PATH",
    os.path.join(tempfile.gettempdir(), "kube-remediate-test", "runtime.db")
)


@pytest.fixture
def temp_db():
    """Create a temporary database for testing."""
    with tempfile.NamedTemporaryFile(suffix='.db', delete=False) as f:
        db_path = Path(f.name)
    yield db_path
    # Cleanup
    if db_path.exists():
        db_path.unlink()


@pytest.fixture
def session_dir():
    """Create a temporary session directory."""
    with tempfile.TemporaryDirectory() as d:
        yield Path(d)


@pytest.fixture
def runtime_config(session_dir):
    """RuntimeConfig pointing at the temp session directory."""
    from config import load_config
    return load_config({
        "REMEDIATE_SESSION_DIR": str(session_dir),
        "ANTHROPIC_API_KEY": "test-key",
    })


@pytest.fixture
def breaker_factory():
    """Factory with fast-failing defaults and no audit trail."""
    from circuit_breaker import CircuitBreakerFactory
    return CircuitBreakerFactory(default_config={
        "failure_threshold": 3,
        "cooldown_period_ms": 30000,
        "half_open_max_attempts": 1,
    })


class FakeAIProvider:
    """Replays scripted replies; the last one repeats. Exceptions are raised."""

    name = "fake"

    def __init__(self, replies):
        self.replies = list(replies)
        self.prompts = []

    async def send_message(self, prompt):
        from ai_provider import AIResponse
        self.prompts.append(prompt)
        index = min(len(self.prompts) - 1, len(self.replies) - 1)
        reply = self.replies[index]
        if isinstance(reply, BaseException):
            raise reply
        return AIResponse(content=reply)


class FakeQueryExecutor:
    """Records read-only queries instead of running kubectl."""

    def __init__(self, outputs=None, failures=None):
        self.outputs = outputs or {}
        self.failures = failures or {}
        self.calls = []

    async def execute_read_only_query(self, query_type, resource, namespace=None):
        self.calls.append((query_type, resource, namespace))
        key = f"{query_type}_{resource}"
        if key in self.failures:
            raise self.failures[key]
        return self.outputs.get(key, f"output of {query_type} {resource}")

    async def discover_api_resources(self):
        return "NAME  SHORTNAMES  APIVERSION  NAMESPACED  KIND\npods  po  v1  true  Pod"


def tool_block(tool, **arguments):
    """A ```json tool call block as a model would write it."""
    return "```json\n" + json.dumps({"tool": tool, "arguments": arguments}) + "\n```"


def completion_reply(confidence=0.9, risk="low", actions=None, prose="Root cause found."):
    """AI reply that completes the investigation."""
    if actions is None:
        actions = [{
            "description": "Increase memory limit",
            "command": "kubectl set resources deployment/api --limits=memory=512Mi -n prod",
            "risk": risk,
            "rationale": "Container is OOMKilled at 256Mi"
        }]
    return prose + "\n" + tool_block(
        "complete_investigation",
        rootCause="Memory limit too low",
        confidence=confidence,
        factors=["OOMKilled events", "memory usage at limit"],
        remediation={
            "summary": "Raise the memory limit",
            "actions": actions,
            "risk": risk
        }
    )


def query_reply(query_type="get", resource="pods", namespace="prod", prose="Checking pods."):
    """AI reply that asks for one kubectl query."""
    return prose + "\n" + tool_block(
        "kubectl_query",
        type=query_type,
        resource=resource,
        namespace=namespace,
        rationale="Need to see current state"
    )


@pytest.fixture
def query_executor():
    """Fake cluster query executor."""
    return FakeQueryExecutor()


@pytest.fixture
def make_ai():
    """Build a FakeAIProvider from scripted replies."""
    return FakeAIProvider
