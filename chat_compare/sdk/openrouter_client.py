"""
OpenRouter completion client.

Sends ``{model, max_tokens, messages}`` to an OpenAI-compatible chat
completions endpoint and returns the first choice's text. Every upstream
failure surfaces as a single opaque TransportError.
"""

from typing import Dict, Iterable, List, Mapping, Optional

import structlog
from openai import AsyncOpenAI, OpenAIError

from ..config.settings import Settings
from ..core.catalog import Provider, ProviderCatalog

logger = structlog.get_logger(__name__)


class TransportError(Exception):
    """Raised when a completion request fails for any upstream reason."""

    def __init__(self, provider_id: str, message: str):
        super().__init__(f"API error from {provider_id}: {message}")
        self.provider_id = provider_id


class OpenRouterCompletion:
    """Completion capability for one provider.

    One attempt per call, no retries.
    """

    def __init__(
        self,
        provider: Provider,
        settings: Settings,
        client: Optional[AsyncOpenAI] = None,
    ):
        """Initialize the client.

        Args:
            provider: Provider whose model is requested
            settings: Runtime settings holding the API key and base URL
            client: Shared AsyncOpenAI client (one is created when omitted)
        """
        self.provider = provider
        self.client = client or _make_client(settings)

    async def complete(
        self,
        prompt: str,
        history: Iterable[Mapping[str, str]] = (),
    ) -> str:
        """Request a completion for prompt.

        Args:
            prompt: New user message
            history: Earlier ``{role, content}`` turns visible to this provider

        Returns:
            Text of the first choice

        Raises:
            TransportError: On any API, network, or response-shape failure
        """
        messages: List[Dict[str, str]] = [dict(turn) for turn in history]
        messages.append({"role": "user", "content": prompt})

        try:
            response = await self.client.chat.completions.create(
                model=self.provider.model,
                max_tokens=self.provider.max_tokens,
                messages=messages,
            )
        except OpenAIError as e:
            logger.warning("completion.request_failed", provider_id=self.provider.id, error=str(e))
            raise TransportError(self.provider.id, str(e)) from e

        choices = getattr(response, "choices", None)
        if not choices:
            raise TransportError(self.provider.id, "response has no choices")

        content = choices[0].message.content
        if content is None:
            raise TransportError(self.provider.id, "response choice has no content")

        return content


def build_completions(
    catalog: ProviderCatalog,
    settings: Settings,
) -> Dict[str, OpenRouterCompletion]:
    """Create one completion client per catalog provider.

    The providers share a single HTTP client.

    Raises:
        ValueError: If no API key is configured
    """
    client = _make_client(settings)
    return {
        provider.id: OpenRouterCompletion(provider, settings, client=client)
        for provider in catalog
    }


def _make_client(settings: Settings) -> AsyncOpenAI:
    if not settings.openrouter_api_key:
        raise ValueError("OPENROUTER_API_KEY is required and cannot be empty")
    return AsyncOpenAI(
        api_key=settings.openrouter_api_key,
        base_url=settings.openrouter_base_url,
        timeout=settings.request_timeout,
        max_retries=0,
    )
