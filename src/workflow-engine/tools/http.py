"""
Shared async HTTP plumbing for service clients.
"""

import logging
from typing import Optional, Dict, Any
import httpx

logger = logging.getLogger(__name__)


class ToolError(Exception):
    """Raised when a downstream service call fails."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        self.message = message
        self.status_code = status_code
        super().__init__(message)


class ServiceClient:
    """
    Lazily-created httpx client bound to one base URL.

    Subclasses add the service's endpoints.
    """

    def __init__(
        self,
        base_url: str,
        timeout: float = 30.0,
        headers: Optional[Dict[str, str]] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        """
        Initialize client.

        Args:
            base_url: Service URL
            timeout: Request timeout in seconds
            headers: Extra headers sent with every request
            transport: Custom transport (used by tests)
        """
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.headers = {"Content-Type": "application/json", **(headers or {})}
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create HTTP client."""
        if self._client is None:
            self._client = httpx.AsyncClient(
                base_url=self.base_url,
                headers=self.headers,
                timeout=self.timeout,
                transport=self._transport,
            )
        return self._client

    async def close(self):
        """Close the HTTP client."""
        if self._client:
            await self._client.aclose()
            self._client = None

    async def post(self, path: str, json: Dict[str, Any]) -> Dict[str, Any]:
        """
        POST JSON and return the decoded body.

        Raises:
            ToolError: On transport errors or non-200 responses
        """
        client = await self._get_client()
        try:
            response = await client.post(path, json=json)
        except httpx.HTTPError as e:
            raise ToolError(f"Request to {self.base_url}{path} failed: {e}") from e

        if response.status_code != 200:
            raise ToolError(
                f"{path} returned {response.status_code} - {response.text}",
                status_code=response.status_code,
            )
        return response.json()
