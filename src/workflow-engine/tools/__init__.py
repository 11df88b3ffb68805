"""
Clients for the services behind the ai and integration node types.
"""

from .http import ServiceClient, ToolError
from .llm_client import LLMClient, completion_text
from .mcp_binding import MCPClient

__all__ = ["ServiceClient", "ToolError", "LLMClient", "completion_text", "MCPClient"]
