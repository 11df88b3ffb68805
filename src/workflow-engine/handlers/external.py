"""
Node handlers that call out to external systems: webhook, integration,
ai and database.
"""

import json
import logging
from typing import Any, Dict, List, Mapping, Optional

import asyncpg
import httpx

from models.workflow import Node, NodeType
from engine.errors import (
    ExpressionError,
    HandlerError,
    WebhookError,
    IntegrationError,
    AIError,
    DatabaseNotConfiguredError,
    DatabaseQueryError,
)
from engine.expressions import evaluate, build_namespace
from tools.http import ToolError
from tools.llm_client import LLMClient, completion_text
from tools.mcp_binding import MCPClient
from .base import NodeHandler

logger = logging.getLogger(__name__)


class WebhookHandler(NodeHandler):
    """
    Calls an HTTP endpoint.

    Sends config["body"] if given, otherwise the context, as JSON. Any
    response status of 400 or above fails the node.
    """

    def __init__(self, http_client: Optional[httpx.AsyncClient] = None, timeout: float = 30.0):
        self.http_client = http_client
        self.timeout = timeout

    @property
    def node_type(self) -> str:
        return NodeType.WEBHOOK.value

    async def handle(self, node: Node, context: Mapping[str, Any], execution_id: str) -> Dict[str, Any]:
        url = node.config.get("url")
        if not url:
            raise WebhookError("Webhook node has no url", details={"nodeId": node.id})

        method = str(node.config.get("method", "POST")).upper()
        headers = {"X-Workflow-Execution-Id": execution_id, **node.config.get("headers", {})}
        body = node.config.get("body", dict(context))

        try:
            response = await self._request(method, url, headers, body)
        except httpx.HTTPError as e:
            raise WebhookError(f"Webhook request failed: {e}", details={"url": url}) from e

        if response.status_code >= 400:
            raise WebhookError(
                f"Webhook returned {response.status_code}",
                details={"url": url, "status": response.status_code, "body": response.text[:1000]},
            )

        try:
            payload: Any = response.json()
        except json.JSONDecodeError:
            payload = response.text

        return {"webhook_called": True, "url": url, "status_code": response.status_code, "response": payload}

    async def _request(self, method: str, url: str, headers: Dict[str, str], body: Any) -> httpx.Response:
        send_body = method not in ("GET", "DELETE", "HEAD")
        kwargs: Dict[str, Any] = {"headers": headers}
        if send_body:
            kwargs["json"] = body

        if self.http_client is not None:
            return await self.http_client.request(method, url, timeout=self.timeout, **kwargs)
        async with httpx.AsyncClient(timeout=self.timeout) as client:
            return await client.request(method, url, **kwargs)


class IntegrationHandler(NodeHandler):
    """Invokes an MCP tool through the Agent Gateway."""

    def __init__(self, client: MCPClient):
        self.client = client

    @property
    def node_type(self) -> str:
        return NodeType.INTEGRATION.value

    async def handle(self, node: Node, context: Mapping[str, Any], execution_id: str) -> Dict[str, Any]:
        tool = node.config.get("tool") or node.config.get("service")
        if not tool:
            raise IntegrationError("Integration node has no tool", details={"nodeId": node.id})

        arguments = dict(node.config.get("arguments", {}))
        try:
            result = await self.client.call_tool(tool, arguments)
        except ToolError as e:
            raise IntegrationError(
                f"Tool call {tool} failed: {e.message}",
                details={"tool": tool, "status": e.status_code},
            ) from e

        logger.info(f"Tool {tool} completed for execution {execution_id}")
        return {"integration_completed": True, "service": tool, "result": result}


class AIHandler(NodeHandler):
    """
    Runs a chat completion through LiteLLM.

    config["prompt"] is the user message; with config["include_context"]
    the context is appended to it as JSON.
    """

    def __init__(self, client: LLMClient):
        self.client = client

    @property
    def node_type(self) -> str:
        return NodeType.AI.value

    async def handle(self, node: Node, context: Mapping[str, Any], execution_id: str) -> Dict[str, Any]:
        prompt = node.config.get("prompt")
        if not prompt:
            raise AIError("AI node has no prompt", details={"nodeId": node.id})

        if node.config.get("include_context"):
            prompt = f"{prompt}\n\nContext:\n{json.dumps(dict(context), default=str)}"

        messages: List[Dict[str, str]] = []
        if node.config.get("system_prompt"):
            messages.append({"role": "system", "content": node.config["system_prompt"]})
        messages.append({"role": "user", "content": prompt})

        try:
            response = await self.client.chat_completion(
                messages,
                model=node.config.get("model"),
                temperature=node.config.get("temperature", 0.7),
                max_tokens=node.config.get("max_tokens", 2000),
            )
        except ToolError as e:
            raise AIError(f"LLM call failed: {e.message}", details={"status": e.status_code}) from e

        return {
            "ai_processed": True,
            "result": completion_text(response),
            "model": response.get("model"),
            "usage": response.get("usage", {}),
        }


class DatabaseHandler(NodeHandler):
    """
    Runs a parametrised SQL statement.

    config["params"] is a list of expressions evaluated against the context
    and bound as $1..$n. Statements starting with SELECT or WITH return rows.
    """

    def __init__(self, pool: Optional[asyncpg.Pool] = None):
        self.pool = pool

    @property
    def node_type(self) -> str:
        return NodeType.DATABASE.value

    async def handle(self, node: Node, context: Mapping[str, Any], execution_id: str) -> Dict[str, Any]:
        if self.pool is None:
            raise DatabaseNotConfiguredError("No database is configured for database nodes")

        query = node.config.get("query")
        if not query:
            raise HandlerError("Database node has no query", details={"nodeId": node.id})

        namespace = build_namespace(context, context=context)
        try:
            params = [evaluate(str(expr), namespace) for expr in node.config.get("params", [])]
        except ExpressionError as e:
            raise HandlerError(f"Invalid query parameter: {e.message}", code=ExpressionError.code) from e

        operation = node.config.get("operation")
        if operation is None:
            first = query.lstrip().split(None, 1)[0].lower() if query.strip() else ""
            operation = "select" if first in ("select", "with") else "execute"

        try:
            async with self.pool.acquire() as conn:
                if operation == "select":
                    rows = await conn.fetch(query, *params)
                    records = [dict(row) for row in rows]
                    return {
                        "database_operation": "completed",
                        "operation": operation,
                        "rows": records,
                        "row_count": len(records),
                    }
                status = await conn.execute(query, *params)
        except (asyncpg.PostgresError, asyncpg.InterfaceError) as e:
            raise DatabaseQueryError(f"Query failed: {e}", details={"operation": operation}) from e

        return {"database_operation": "completed", "operation": operation, "status": status}
