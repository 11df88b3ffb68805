"""
Workflow engine error types.
"""

from typing import Any, Dict, Optional


class EngineError(Exception):
    """Base exception for errors that end a run."""

    code = "EXECUTION_FAILED"

    def __init__(self, message: str, code: Optional[str] = None):
        self.message = message
        if code:
            self.code = code
        super().__init__(message)


class NoStartNodeError(EngineError):
    """Raised when a workflow has no start node."""
    code = "NO_START_NODE"


class UnknownNodeTypeError(EngineError):
    """Raised when traversal reaches a node with no registered handler."""

    code = "UNKNOWN_NODE_TYPE"

    def __init__(self, message: str, node_type: str = None, node_id: str = None):
        super().__init__(message)
        self.node_type = node_type
        self.node_id = node_id


class ExecutionTimeoutError(EngineError):
    """Raised when a run exceeds its configured timeout."""
    code = "EXECUTION_TIMEOUT"


class ExpressionError(EngineError):
    """Raised when an expression is malformed or uses a disallowed construct."""
    code = "INVALID_EXPRESSION"


class ExecutionNotFoundError(EngineError):
    """Raised when an execution id is unknown."""
    code = "EXECUTION_NOT_FOUND"


class ExecutionStateError(EngineError):
    """Raised when an operation is not valid for the execution's status."""
    code = "INVALID_EXECUTION_STATE"


class HandlerContractError(EngineError):
    """Raised when a handler returns something other than a mapping."""
    code = "HANDLER_CONTRACT_VIOLATION"


class HandlerError(Exception):
    """
    Node-level failure raised by a handler.

    Recorded on the node execution; never ends the run by itself.
    """

    code = "NODE_EXECUTION_FAILED"

    def __init__(
        self,
        message: str,
        code: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ):
        self.message = message
        if code:
            self.code = code
        self.details = details or {}
        super().__init__(message)


class ApprovalRejectedError(HandlerError):
    code = "APPROVAL_REJECTED"


class ApprovalTimeoutError(HandlerError):
    code = "APPROVAL_TIMEOUT"


class WebhookError(HandlerError):
    code = "WEBHOOK_FAILED"


class IntegrationError(HandlerError):
    code = "INTEGRATION_FAILED"


class AIError(HandlerError):
    code = "AI_FAILED"


class DatabaseNotConfiguredError(HandlerError):
    code = "DATABASE_NOT_CONFIGURED"


class DatabaseQueryError(HandlerError):
    code = "DATABASE_QUERY_FAILED"


class EmailError(HandlerError):
    code = "EMAIL_FAILED"
