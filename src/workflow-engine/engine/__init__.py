"""
Workflow execution engine.
"""

from .orchestrator import ExecutionOrchestrator, calculate_progress
from .registry import NodeHandlerRegistry
from .conditions import ConditionEvaluator
from .broadcaster import ProgressBroadcaster, NullBroadcaster
from .approvals import ApprovalBroker
from .logs import collect_execution_logs

__all__ = [
    "ExecutionOrchestrator",
    "calculate_progress",
    "NodeHandlerRegistry",
    "ConditionEvaluator",
    "ProgressBroadcaster",
    "NullBroadcaster",
    "ApprovalBroker",
    "collect_execution_logs",
]
