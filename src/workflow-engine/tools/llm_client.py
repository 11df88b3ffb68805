"""
Chat completions through the LiteLLM proxy.
"""

from typing import Optional, Dict, Any, List
import httpx

from .http import ServiceClient


class LLMClient(ServiceClient):
    """
    LiteLLM proxy client.

    Backs the ai node type.
    """

    def __init__(
        self,
        base_url: str = "http://localhost:4000",
        api_key: str = "sk-litellm-master-key-dev",
        default_model: str = "gpt-4o-mini",
        timeout: float = 60.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        super().__init__(
            base_url,
            timeout=timeout,
            headers={"Authorization": f"Bearer {api_key}"},
            transport=transport,
        )
        self.default_model = default_model

    async def chat_completion(
        self,
        messages: List[Dict[str, str]],
        model: Optional[str] = None,
        temperature: float = 0.7,
        max_tokens: int = 2000,
        **kwargs,
    ) -> Dict[str, Any]:
        """
        Create a chat completion.

        Args:
            messages: List of message dicts
            model: Model to use (client default if omitted)
            temperature: Sampling temperature
            max_tokens: Maximum output tokens
            **kwargs: Additional parameters

        Returns:
            Completion response dict
        """
        return await self.post(
            "/v1/chat/completions",
            json={
                "model": model or self.default_model,
                "messages": messages,
                "temperature": temperature,
                "max_tokens": max_tokens,
                **kwargs,
            },
        )


def completion_text(response: Dict[str, Any]) -> str:
    """Text of the first choice in a chat completion response."""
    choices = response.get("choices") or []
    if not choices:
        return ""
    return (choices[0].get("message") or {}).get("content") or ""
