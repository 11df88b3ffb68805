"""
Node handlers.

build_default_registry lives in handlers.builtin.
"""

from .base import NodeHandler, FunctionHandler, PassThroughHandler
from .flow import ConditionHandler, DelayHandler, TransformHandler, ReportHandler
from .messaging import EmailHandler, NotificationHandler, ApprovalHandler
from .external import WebhookHandler, IntegrationHandler, AIHandler, DatabaseHandler

__all__ = [
    "NodeHandler",
    "FunctionHandler",
    "PassThroughHandler",
    "ConditionHandler",
    "DelayHandler",
    "TransformHandler",
    "ReportHandler",
    "EmailHandler",
    "NotificationHandler",
    "ApprovalHandler",
    "WebhookHandler",
    "IntegrationHandler",
    "AIHandler",
    "DatabaseHandler",
]
