"""
Node handler interface definition.

Defines the contract that every node type's handler must implement.
"""

from abc import ABC, abstractmethod
from typing import Any, Awaitable, Callable, Dict, Mapping

from models.workflow import Node


class NodeHandler(ABC):
    """
    Abstract base class for node handlers.

    A handler receives a read-only snapshot of the run context and returns
    an output mapping. It never mutates the context; the orchestrator merges
    the output. Raising any exception marks the node execution as failed.
    """

    @property
    @abstractmethod
    def node_type(self) -> str:
        """
        Node type this handler serves.

        Returns:
            Node type identifier (e.g., "email", "webhook")
        """
        pass

    @abstractmethod
    async def handle(
        self,
        node: Node,
        context: Mapping[str, Any],
        execution_id: str,
    ) -> Dict[str, Any]:
        """
        Perform the node's work.

        Args:
            node: Node being executed (config lives in node.config)
            context: Read-only snapshot of the run context
            execution_id: Id of the run the node belongs to

        Returns:
            Output to merge into the run context
        """
        pass


HandlerFunction = Callable[[Node, Mapping[str, Any], str], Awaitable[Dict[str, Any]]]


class FunctionHandler(NodeHandler):
    """Adapts a plain coroutine function to the handler interface."""

    def __init__(self, node_type: str, func: HandlerFunction):
        self._node_type = node_type
        self._func = func

    @property
    def node_type(self) -> str:
        return self._node_type

    async def handle(self, node: Node, context: Mapping[str, Any], execution_id: str) -> Dict[str, Any]:
        return await self._func(node, context, execution_id)


class PassThroughHandler(NodeHandler):
    """Identity handler: returns the context unchanged."""

    def __init__(self, node_type: str):
        self._node_type = node_type

    @property
    def node_type(self) -> str:
        return self._node_type

    async def handle(self, node: Node, context: Mapping[str, Any], execution_id: str) -> Dict[str, Any]:
        return dict(context)
