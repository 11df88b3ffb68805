"""
Control-flow and data-shaping node handlers.

These run entirely in-process: condition, delay, transform and report.
Start and end nodes use PassThroughHandler.
"""

import asyncio
import logging
from typing import Any, Dict, Mapping

from models.workflow import Node, NodeType
from models.execution import utcnow
from engine.errors import ExpressionError, HandlerError
from engine.expressions import evaluate, evaluate_bool, build_namespace
from .base import NodeHandler

logger = logging.getLogger(__name__)


class ConditionHandler(NodeHandler):
    """
    Evaluates config["condition"] against the context.

    The result is exposed as condition_result so downstream custom edges can
    branch on it. An expression that fails to evaluate yields False.
    """

    @property
    def node_type(self) -> str:
        return NodeType.CONDITION.value

    async def handle(self, node: Node, context: Mapping[str, Any], execution_id: str) -> Dict[str, Any]:
        condition = node.config.get("condition") or "true"
        try:
            result = evaluate_bool(condition, build_namespace(context, context=context))
        except (ExpressionError, RecursionError) as e:
            logger.warning(f"Condition on node {node.id} could not be evaluated: {e}")
            result = False
        return {"condition_result": result}


class DelayHandler(NodeHandler):
    """Sleeps for config["delay"] milliseconds."""

    def __init__(self, max_delay_ms: int = 3600000):
        self.max_delay_ms = max_delay_ms

    @property
    def node_type(self) -> str:
        return NodeType.DELAY.value

    async def handle(self, node: Node, context: Mapping[str, Any], execution_id: str) -> Dict[str, Any]:
        raw = node.config.get("delay", 1000)
        try:
            delay_ms = int(raw)
        except (TypeError, ValueError):
            raise HandlerError(f"Invalid delay: {raw!r}", details={"delay": raw})

        delay_ms = max(0, min(delay_ms, self.max_delay_ms))
        await asyncio.sleep(delay_ms / 1000)
        return {"delayed": True, "delay_ms": delay_ms}


class TransformHandler(NodeHandler):
    """
    Computes new context keys from expressions.

    config["assignments"] maps output key to expression. Expressions see the
    context as it was when the node started, not each other's results.
    """

    @property
    def node_type(self) -> str:
        return NodeType.TRANSFORM.value

    async def handle(self, node: Node, context: Mapping[str, Any], execution_id: str) -> Dict[str, Any]:
        assignments = node.config.get("assignments") or {}
        if not isinstance(assignments, Mapping):
            raise HandlerError("Transform assignments must be a mapping")

        namespace = build_namespace(context, context=context)
        output: Dict[str, Any] = {}
        for key, expression in assignments.items():
            try:
                output[key] = evaluate(str(expression), namespace)
            except ExpressionError as e:
                raise HandlerError(
                    f"Assignment '{key}' failed: {e.message}",
                    code=ExpressionError.code,
                    details={"key": key, "expression": expression},
                ) from e

        output["transformed"] = True
        output["transformation"] = node.config.get("transformation", "default")
        return output


class ReportHandler(NodeHandler):
    """Snapshots selected context fields into a report."""

    @property
    def node_type(self) -> str:
        return NodeType.REPORT.value

    async def handle(self, node: Node, context: Mapping[str, Any], execution_id: str) -> Dict[str, Any]:
        fields = node.config.get("fields")
        if fields is None:
            selected = dict(context)
        else:
            selected = {name: context.get(name) for name in fields}

        return {
            "report_generated": True,
            "report_type": node.config.get("type", "summary"),
            "report": {
                "execution_id": execution_id,
                "fields": selected,
                "generated_at": utcnow().isoformat(),
            },
        }
