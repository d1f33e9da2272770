import logging
from typing import Any, AsyncIterator, Dict, List, Protocol

from openai import AsyncOpenAI, OpenAIError

from ..errors import UpstreamError
from ..settings import Settings

logger = logging.getLogger(__name__)


class CompletionSource(Protocol):
    """A model invocation producing an ordered, finite stream of text fragments.

    Fragments may be empty and their granularity is up to the provider.
    Failures surface as UpstreamError from the iterator.
    """

    def stream(self, prompt: str) -> AsyncIterator[str]: ...


class OpenAICompletionSource:
    """Streams chat completion deltas from an OpenAI-compatible endpoint."""

    def __init__(self, settings: Settings, client: AsyncOpenAI | None = None) -> None:
        self._settings = settings
        self._client = client

    def _get_client(self) -> AsyncOpenAI:
        if self._client is None:
            if not self._settings.openai_api_key:
                raise UpstreamError(
                    "OPENAI_API_KEY environment variable is required for completions."
                )
            self._client = AsyncOpenAI(
                api_key=self._settings.openai_api_key,
                base_url=self._settings.openai_base_url,
                timeout=self._settings.request_timeout_seconds,
            )
        return self._client

    def _messages(self, prompt: str) -> List[Dict[str, Any]]:
        messages: List[Dict[str, Any]] = []
        if self._settings.system_prompt:
            messages.append({"role": "system", "content": self._settings.system_prompt})
        messages.append({"role": "user", "content": prompt})
        return messages

    async def stream(self, prompt: str) -> AsyncIterator[str]:
        """Yield the text content of each streamed chunk, in provider order.

        Args:
            prompt: Fully augmented prompt text.

        Yields:
            str: Content delta of the first choice ("" when a chunk carries none).
        """
        client = self._get_client()
        logger.debug("Opening completion stream model=%s prompt_len=%d", self._settings.model, len(prompt))
        try:
            response = await client.chat.completions.create(
                model=self._settings.model,
                messages=self._messages(prompt),
                stream=True,
                temperature=self._settings.temperature,
            )
            async for chunk in response:
                if chunk.choices and len(chunk.choices) > 0:
                    yield chunk.choices[0].delta.content or ""
        except (OpenAIError, TimeoutError, ConnectionError) as e:
            logger.warning("Completion stream failed: %s", e)
            raise UpstreamError(f"Completion stream failed: {e}") from e

    async def aclose(self) -> None:
        if self._client is not None:
            await self._client.close()
            self._client = None
