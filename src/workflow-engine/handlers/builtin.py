"""
Default handler set.
"""

import logging
from typing import Optional

import asyncpg
import httpx

from config import Config, config as default_config
from models.workflow import NodeType
from engine.approvals import ApprovalBroker
from engine.broadcaster import ProgressBroadcaster
from engine.registry import NodeHandlerRegistry
from tools.llm_client import LLMClient
from tools.mcp_binding import MCPClient
from .base import PassThroughHandler
from .flow import ConditionHandler, DelayHandler, TransformHandler, ReportHandler
from .messaging import EmailHandler, NotificationHandler, ApprovalHandler
from .external import WebhookHandler, IntegrationHandler, AIHandler, DatabaseHandler

logger = logging.getLogger(__name__)


def build_default_registry(
    settings: Optional[Config] = None,
    broadcaster: Optional[ProgressBroadcaster] = None,
    approvals: Optional[ApprovalBroker] = None,
    llm_client: Optional[LLMClient] = None,
    mcp_client: Optional[MCPClient] = None,
    pool: Optional[asyncpg.Pool] = None,
    http_client: Optional[httpx.AsyncClient] = None,
) -> NodeHandlerRegistry:
    """
    Create a registry with a handler for every built-in node type.

    Args:
        settings: Service configuration (module config if omitted)
        broadcaster: Broadcaster used by notification nodes
        approvals: Broker approval nodes wait on
        llm_client: LiteLLM client for ai nodes
        mcp_client: Agent Gateway client for integration nodes
        pool: Database pool for database nodes
        http_client: Shared client for webhook and notification nodes

    Returns:
        Populated registry
    """
    settings = settings or default_config
    registry = NodeHandlerRegistry()

    registry.register(PassThroughHandler(NodeType.START.value))
    registry.register(PassThroughHandler(NodeType.END.value))
    registry.register(ConditionHandler())
    registry.register(DelayHandler(max_delay_ms=settings.max_delay_ms))
    registry.register(TransformHandler())
    registry.register(ReportHandler())
    registry.register(EmailHandler(
        smtp_host=settings.smtp_host,
        smtp_port=settings.smtp_port,
        username=settings.smtp_username,
        password=settings.smtp_password,
        sender=settings.smtp_sender,
        start_tls=settings.smtp_start_tls,
    ))
    registry.register(NotificationHandler(
        broadcaster=broadcaster,
        http_client=http_client,
        timeout=settings.webhook_timeout_seconds,
    ))
    registry.register(ApprovalHandler(
        broker=approvals,
        timeout_seconds=settings.approval_timeout_seconds,
    ))
    registry.register(WebhookHandler(http_client=http_client, timeout=settings.webhook_timeout_seconds))
    registry.register(IntegrationHandler(
        mcp_client or MCPClient(base_url=settings.agent_gateway_url)
    ))
    registry.register(AIHandler(
        llm_client or LLMClient(
            base_url=settings.litellm_url,
            api_key=settings.litellm_api_key,
            default_model=settings.default_model,
        )
    ))
    registry.register(DatabaseHandler(pool))

    logger.info(f"Registered handlers for {len(registry.list_types())} node types")
    return registry
