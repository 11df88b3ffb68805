"""
Workflow Engine data models.
"""

from .workflow import (
    Workflow,
    WorkflowSettings,
    NotificationSettings,
    Node,
    NodeData,
    NodeType,
    Edge,
    EdgeCondition,
    ConditionType,
)
from .execution import (
    WorkflowExecution,
    NodeExecution,
    ExecutionStatus,
    ExecutionError,
    ExecutionLog,
    ExecutionTrigger,
    ExecutionMetadata,
    ExecutionEvent,
    ExecutionSummary,
    ExecutionPage,
    ExecutionAnalytics,
    ExecutionRequest,
    ApprovalDecision,
    TriggerType,
)

__all__ = [
    "Workflow",
    "WorkflowSettings",
    "NotificationSettings",
    "Node",
    "NodeData",
    "NodeType",
    "Edge",
    "EdgeCondition",
    "ConditionType",
    "WorkflowExecution",
    "NodeExecution",
    "ExecutionStatus",
    "ExecutionError",
    "ExecutionLog",
    "ExecutionTrigger",
    "ExecutionMetadata",
    "ExecutionEvent",
    "ExecutionSummary",
    "ExecutionPage",
    "ExecutionAnalytics",
    "ExecutionRequest",
    "ApprovalDecision",
    "TriggerType",
]
