"""
Shared fixtures for workflow engine unit tests.
"""
import pytest
from typing import Any, Dict, List, Optional, Tuple

from config import Config
from engine.approvals import ApprovalBroker
from engine.broadcaster import ProgressBroadcaster
from engine.orchestrator import ExecutionOrchestrator
from handlers.base import FunctionHandler
from handlers.builtin import build_default_registry
from models.execution import ExecutionEvent
from models.workflow import Workflow, Node, Edge, EdgeCondition, WorkflowSettings
from persistence.store import InMemoryExecutionStore


class RecordingBroadcaster(ProgressBroadcaster):
    """Broadcaster that keeps every published event."""

    def __init__(self):
        self.events: List[ExecutionEvent] = []

    async def publish(self, execution_id: str, event: ExecutionEvent) -> None:
        self.events.append(event)

    def of_type(self, event_type: str) -> List[ExecutionEvent]:
        return [e for e in self.events if e.type == event_type]


class FailingBroadcaster(ProgressBroadcaster):
    """Broadcaster whose every publish fails."""

    async def publish(self, execution_id: str, event: ExecutionEvent) -> None:
        raise ConnectionError("subscriber channel down")


def build_workflow(
    nodes: List[Tuple[str, str]],
    edges: List[Tuple[str, str, Optional[str]]],
    configs: Optional[Dict[str, Dict[str, Any]]] = None,
    **settings: Any,
) -> Workflow:
    """
    Build a workflow from compact node and edge lists.

    Nodes are (id, type); edges are (source, target, condition) where the
    condition is a type name, "custom:<expression>" or None.
    """
    configs = configs or {}
    edge_models = []
    for index, (source, target, condition) in enumerate(edges):
        edge_condition = None
        if condition and condition.startswith("custom:"):
            edge_condition = EdgeCondition(type="custom", expression=condition[len("custom:"):])
        elif condition:
            edge_condition = EdgeCondition(type=condition)
        edge_models.append(Edge(id=f"e{index}", source=source, target=target, condition=edge_condition))

    return Workflow(
        id="wf-test",
        organization_id="org-1",
        name="test workflow",
        nodes=[Node(id=node_id, type=node_type, config=configs.get(node_id, {})) for node_id, node_type in nodes],
        edges=edge_models,
        settings=WorkflowSettings(**settings),
    )


@pytest.fixture
def make_workflow():
    return build_workflow


@pytest.fixture
def settings() -> Config:
    return Config(smtp_host=None, max_delay_ms=1000, approval_timeout_seconds=5)


@pytest.fixture
def broadcaster() -> RecordingBroadcaster:
    return RecordingBroadcaster()


@pytest.fixture
def store() -> InMemoryExecutionStore:
    return InMemoryExecutionStore()


@pytest.fixture
def approvals() -> ApprovalBroker:
    return ApprovalBroker()


@pytest.fixture
def registry(settings, broadcaster, approvals):
    return build_default_registry(settings=settings, broadcaster=broadcaster, approvals=approvals)


@pytest.fixture
def orchestrator(registry, store, broadcaster, approvals) -> ExecutionOrchestrator:
    return ExecutionOrchestrator(registry, store, broadcaster=broadcaster, approvals=approvals)


@pytest.fixture
def failing_handler():
    """Handler registered as node type "explode" that always raises."""

    async def explode(node, context, execution_id):
        raise RuntimeError(f"boom in {node.id}")

    return FunctionHandler("explode", explode)
