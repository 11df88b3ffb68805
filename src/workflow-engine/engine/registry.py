"""
Node handler registry.

Maps a node's declared type to the handler that executes it and wraps each
call in a NodeExecution record.
"""

import asyncio
import copy
import logging
import uuid
from types import MappingProxyType
from typing import Any, Awaitable, Callable, Dict, List, Mapping, Optional

from opentelemetry import trace

from handlers.base import NodeHandler
from models.workflow import Node, WorkflowSettings
from models.execution import (
    NodeExecution,
    ExecutionStatus,
    ExecutionError,
    ExecutionLog,
    utcnow,
)
from .errors import EngineError, UnknownNodeTypeError, HandlerContractError, HandlerError

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)

StartCallback = Callable[[NodeExecution], Awaitable[None]]


def _duration_ms(node_execution: NodeExecution) -> int:
    delta = node_execution.completed_at - node_execution.started_at
    return int(delta.total_seconds() * 1000)


class NodeHandlerRegistry:
    """
    Registry of node handlers keyed by node type.

    New node types are added by registering a handler; the orchestrator
    never needs to change.
    """

    def __init__(self):
        """Initialize the registry."""
        self._handlers: Dict[str, NodeHandler] = {}

    def register(self, handler: NodeHandler, node_type: Optional[str] = None) -> None:
        """
        Register a handler.

        Args:
            handler: Handler instance
            node_type: Type to register under (defaults to handler.node_type)
        """
        key = node_type or handler.node_type
        if key in self._handlers:
            logger.info(f"Replacing handler for node type: {key}")
        self._handlers[key] = handler
        logger.debug(f"Registered handler for node type: {key}")

    def unregister(self, node_type: str) -> None:
        """Remove the handler for a node type, if any."""
        self._handlers.pop(node_type, None)

    def get(self, node_type: str) -> NodeHandler:
        """
        Get the handler for a node type.

        Raises:
            UnknownNodeTypeError: If no handler is registered
        """
        handler = self._handlers.get(node_type)
        if handler is None:
            raise UnknownNodeTypeError(f"Unknown node type: {node_type}", node_type=node_type)
        return handler

    def supports(self, node_type: str) -> bool:
        return node_type in self._handlers

    def list_types(self) -> List[str]:
        """List registered node types."""
        return sorted(self._handlers)

    async def dispatch(
        self,
        node: Node,
        context: Mapping[str, Any],
        execution_id: str,
        settings: Optional[WorkflowSettings] = None,
        on_start: Optional[StartCallback] = None,
    ) -> NodeExecution:
        """
        Execute a node through its handler.

        Handler failures are captured on the returned NodeExecution and never
        raised. Only an unknown node type or a handler contract violation
        escapes, as those indicate a malformed graph or handler.

        Args:
            node: Node to execute
            context: Current run context; handlers receive a frozen copy
            execution_id: Id of the owning run
            settings: Workflow settings (retry policy)
            on_start: Awaited with the running NodeExecution before the handler is called

        Returns:
            The settled NodeExecution (completed or failed)

        Raises:
            UnknownNodeTypeError: If the node type has no handler
            HandlerContractError: If the handler returns a non-mapping
        """
        handler = self.get(node.type)
        settings = settings or WorkflowSettings()

        snapshot = copy.deepcopy(dict(context))
        node_execution = NodeExecution(
            id=str(uuid.uuid4()),
            node_id=node.id,
            node_type=node.type,
            status=ExecutionStatus.RUNNING,
            started_at=utcnow(),
            input=snapshot,
        )

        if on_start is not None:
            await on_start(node_execution)

        max_attempts = settings.retry_attempts + 1

        with tracer.start_as_current_span("workflow.node") as span:
            span.set_attribute("workflow.execution_id", execution_id)
            span.set_attribute("workflow.node_id", node.id)
            span.set_attribute("workflow.node_type", node.type)

            for attempt in range(1, max_attempts + 1):
                node_execution.attempts = attempt
                frozen = MappingProxyType(copy.deepcopy(snapshot))
                try:
                    output = await handler.handle(node, frozen, execution_id)
                except asyncio.CancelledError:
                    raise
                except Exception as e:
                    if attempt < max_attempts:
                        node_execution.logs.append(ExecutionLog(
                            level="warn",
                            message=f"Attempt {attempt} failed, retrying: {e}",
                            data={"nodeType": node.type, "nodeId": node.id, "attempt": attempt},
                        ))
                        logger.warning(f"Node {node.id} attempt {attempt}/{max_attempts} failed: {e}")
                        await asyncio.sleep(settings.retry_delay / 1000)
                        continue
                    self._fail(node_execution, node, e)
                    span.set_attribute("workflow.node_status", "failed")
                    return node_execution

                if not isinstance(output, Mapping):
                    error = HandlerContractError(
                        f"Handler for '{node.type}' returned {type(output).__name__}, expected a mapping"
                    )
                    self._fail(node_execution, node, error)
                    raise error

                node_execution.status = ExecutionStatus.COMPLETED
                node_execution.output = dict(output)
                node_execution.completed_at = utcnow()
                node_execution.duration = _duration_ms(node_execution)
                node_execution.logs.append(ExecutionLog(
                    level="info",
                    message=f"Node execution completed: {node.id}",
                    data={"nodeType": node.type, "nodeId": node.id, "attempts": attempt},
                ))
                span.set_attribute("workflow.node_status", "completed")
                return node_execution

    def _fail(self, node_execution: NodeExecution, node: Node, error: Exception) -> None:
        """Mark a node execution failed and record the error."""
        details: Dict[str, Any] = {"nodeType": node.type, "nodeId": node.id}
        code = error.code if isinstance(error, (HandlerError, EngineError)) else HandlerError.code
        if isinstance(error, HandlerError):
            details.update(error.details)

        node_execution.status = ExecutionStatus.FAILED
        node_execution.completed_at = utcnow()
        node_execution.duration = _duration_ms(node_execution)
        node_execution.error = ExecutionError(
            code=code,
            message=str(error) or type(error).__name__,
            details=details,
        )
        node_execution.logs.append(ExecutionLog(
            level="error",
            message=f"Node execution failed: {error}",
            data={"nodeType": node.type, "nodeId": node.id},
        ))
        logger.warning(f"Node {node.id} ({node.type}) failed: {error}")
