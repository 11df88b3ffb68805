"""
MCP tool calls through the Agent Gateway.
"""

from typing import Optional, Dict, Any
import httpx

from .http import ServiceClient


class MCPClient(ServiceClient):
    """
    Agent Gateway client for MCP tool calls.

    Backs the integration node type.
    """

    def __init__(
        self,
        base_url: str = "http://localhost:3000",
        timeout: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        super().__init__(base_url, timeout=timeout, transport=transport)

    async def call_tool(self, name: str, arguments: Dict[str, Any]) -> Dict[str, Any]:
        """
        Invoke a tool by name.

        Raises:
            ToolError: If the gateway call fails
        """
        return await self.post("/mcp/tools/call", json={"name": name, "arguments": arguments})
