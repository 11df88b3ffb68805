"""
Edge condition evaluation.
"""

import logging
from typing import Any, Dict

from models.workflow import Edge, ConditionType
from models.execution import NodeExecution, ExecutionStatus
from .errors import ExpressionError
from .expressions import evaluate_bool, build_namespace

logger = logging.getLogger(__name__)


def outcome_namespace(node_execution: NodeExecution) -> Dict[str, Any]:
    """
    Names visible to a custom edge expression.

    Output keys are exposed at top level for convenience; the fixed
    outcome fields take precedence over them.
    """
    return build_namespace(
        node_execution.output,
        status=node_execution.status,
        output=node_execution.output,
        error=node_execution.error.model_dump() if node_execution.error else None,
        duration=node_execution.duration,
        node_id=node_execution.node_id,
        node_type=node_execution.node_type,
    )


class ConditionEvaluator:
    """Decides whether an edge should be followed after its source node settles."""

    def should_follow(self, edge: Edge, node_execution: NodeExecution) -> bool:
        """
        Check an edge's condition against the source node's outcome.

        Branching is on the node execution's status, never on business
        output, unless the edge uses a custom expression.

        Args:
            edge: Outgoing edge of the settled node
            node_execution: The settled node execution

        Returns:
            True if the edge's target should be enqueued
        """
        condition = edge.condition
        if condition is None or condition.type == ConditionType.ALWAYS.value:
            return True
        if condition.type == ConditionType.ON_SUCCESS.value:
            return node_execution.status == ExecutionStatus.COMPLETED
        if condition.type == ConditionType.ON_ERROR.value:
            return node_execution.status == ExecutionStatus.FAILED
        if condition.type == ConditionType.CUSTOM.value:
            return self.evaluate_custom(edge, node_execution)

        logger.debug(f"Unknown condition type '{condition.type}' on edge {edge.id}, treating as always")
        return True

    def evaluate_custom(self, edge: Edge, node_execution: NodeExecution) -> bool:
        """Evaluate a custom expression; any failure counts as False."""
        expression = edge.condition.expression
        try:
            return evaluate_bool(expression, outcome_namespace(node_execution))
        except (ExpressionError, RecursionError) as e:
            logger.warning(f"Condition on edge {edge.id} failed to evaluate ({expression!r}): {e}")
            return False
