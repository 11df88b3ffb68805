"""
Workflow definition models.
"""

from typing import Optional, List, Dict, Any
from enum import Enum
from datetime import datetime
from pydantic import BaseModel, Field


class NodeType(str, Enum):
    """Node types understood by the built-in handler set."""
    START = "start"
    END = "end"
    EMAIL = "email"
    APPROVAL = "approval"
    CONDITION = "condition"
    DELAY = "delay"
    WEBHOOK = "webhook"
    DATABASE = "database"
    AI = "ai"
    INTEGRATION = "integration"
    NOTIFICATION = "notification"
    REPORT = "report"
    TRANSFORM = "transform"


class ConditionType(str, Enum):
    """Edge condition types."""
    ALWAYS = "always"
    ON_SUCCESS = "onSuccess"
    ON_ERROR = "onError"
    CUSTOM = "custom"


class NodeData(BaseModel):
    """Display metadata for a node."""
    label: str = ""
    description: Optional[str] = None
    icon: Optional[str] = None


class Node(BaseModel):
    """A typed step in the workflow graph."""
    id: str = Field(..., description="Unique node identifier")
    # Kept as a plain string so graphs with unregistered types reach the registry
    type: str = Field(..., description="Node type, see NodeType")
    data: NodeData = Field(default_factory=NodeData)
    config: Dict[str, Any] = Field(default_factory=dict, description="Type-specific configuration")


class EdgeCondition(BaseModel):
    """Condition gating an edge."""
    type: str = Field(default=ConditionType.ALWAYS.value)
    expression: Optional[str] = Field(default=None, description="Expression for custom conditions")


class Edge(BaseModel):
    """A directed, optionally conditional link between two nodes."""
    id: str
    source: str = Field(..., description="Source node id")
    target: str = Field(..., description="Target node id")
    condition: Optional[EdgeCondition] = None


class NotificationSettings(BaseModel):
    """When to publish workflow-level notifications."""
    on_start: bool = Field(default=False, alias="onStart")
    on_success: bool = Field(default=False, alias="onSuccess")
    on_error: bool = Field(default=True, alias="onError")
    on_timeout: bool = Field(default=True, alias="onTimeout")

    class Config:
        populate_by_name = True


class WorkflowSettings(BaseModel):
    """Execution settings attached to a workflow."""
    timeout: int = Field(default=300000, ge=1, description="Overall run timeout in milliseconds")
    retry_attempts: int = Field(default=0, ge=0, le=10, alias="retryAttempts")
    retry_delay: int = Field(default=1000, ge=0, alias="retryDelay", description="Delay between node retries in milliseconds")
    parallel_execution: bool = Field(default=False, alias="parallelExecution")
    max_concurrent_executions: int = Field(default=10, ge=1, le=100, alias="maxConcurrentExecutions")
    notifications: NotificationSettings = Field(default_factory=NotificationSettings)

    class Config:
        populate_by_name = True


class Workflow(BaseModel):
    """Complete workflow graph submitted for execution."""
    id: Optional[str] = None
    organization_id: Optional[str] = None
    name: str = Field(default="untitled", description="Workflow name")
    description: Optional[str] = None
    nodes: List[Node] = Field(default_factory=list)
    edges: List[Edge] = Field(default_factory=list)
    settings: WorkflowSettings = Field(default_factory=WorkflowSettings)
    version: int = 1
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    def get_node(self, node_id: str) -> Optional[Node]:
        """Find a node by id."""
        for node in self.nodes:
            if node.id == node_id:
                return node
        return None

    def find_start_node(self) -> Optional[Node]:
        """Return the node with the start role, if any."""
        for node in self.nodes:
            if node.type == NodeType.START.value:
                return node
        return None

    def outgoing_edges(self, node_id: str) -> List[Edge]:
        """Edges leaving a node, in declaration order."""
        return [edge for edge in self.edges if edge.source == node_id]
