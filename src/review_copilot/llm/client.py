"""HTTP client for chat-completion and messages style model APIs."""

import asyncio
import logging
from collections.abc import Awaitable, Callable
from typing import Any

import httpx

from review_copilot.config import ModelConfig

logger = logging.getLogger(__name__)

OPENAI_API_BASE = "https://api.openai.com/v1"
ANTHROPIC_API_BASE = "https://api.anthropic.com"
ANTHROPIC_VERSION = "2023-06-01"

DEFAULT_MAX_TOKENS = 4096
DEFAULT_TEMPERATURE = 0.3
MAX_RETRIES = 3
RETRY_STATUSES = {408, 429}


class ModelInvocationError(Exception):
    """Raised when a model call fails for good."""

    pass


class TransientModelError(ModelInvocationError):
    """Raised for failures worth retrying (network errors, 408/429/5xx)."""

    pass


def uses_anthropic_dialect(model: ModelConfig) -> bool:
    """Pick the wire dialect for a model.

    ``custom`` endpoints speak the Anthropic dialect when their URL says so
    and the OpenAI dialect otherwise.
    """
    if model.provider == "anthropic":
        return True
    if model.provider == "custom":
        return "anthropic" in (model.api_endpoint or "")
    return False


def anthropic_url(endpoint: str | None) -> str:
    """Build the messages URL, appending ``/v1/messages`` when absent."""
    url = (endpoint or ANTHROPIC_API_BASE).rstrip("/")
    if url.endswith("/v1/messages"):
        return url
    return f"{url}/v1/messages"


def openai_url(endpoint: str | None) -> str:
    """Build the chat completions URL."""
    url = (endpoint or OPENAI_API_BASE).rstrip("/")
    if url.endswith("/chat/completions"):
        return url
    return f"{url}/chat/completions"


class ModelClient:
    """Send a system and user prompt to a model and return its text reply."""

    def __init__(
        self,
        timeout: float = 300,
        transport: httpx.AsyncBaseTransport | None = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        """Initialize the model client.

        Args:
            timeout: Per-request timeout in seconds
            transport: Optional httpx transport (used by tests)
            sleep: Coroutine used for retry backoff
        """
        self._client = httpx.AsyncClient(timeout=timeout, transport=transport)
        self._sleep = sleep

    async def close(self) -> None:
        """Close the HTTP client."""
        await self._client.aclose()

    async def __aenter__(self) -> "ModelClient":
        """Async context manager entry."""
        return self

    async def __aexit__(self, *args: Any) -> None:
        """Async context manager exit."""
        await self.close()

    async def invoke(self, system_prompt: str, user_prompt: str, model: ModelConfig) -> str:
        """Invoke a model, retrying transient failures.

        Transient failures are retried up to ``MAX_RETRIES`` times with a
        2s, 4s, 6s backoff. Other failures, including empty replies, are
        raised immediately.

        Args:
            system_prompt: System prompt
            user_prompt: User prompt
            model: Resolved model configuration

        Returns:
            Reply text

        Raises:
            ModelInvocationError: If the call fails or the reply is unusable
        """
        call = self._call_anthropic if uses_anthropic_dialect(model) else self._call_openai

        for attempt in range(MAX_RETRIES + 1):
            try:
                return await call(system_prompt, user_prompt, model)
            except TransientModelError as e:
                if attempt == MAX_RETRIES:
                    logger.error(f"{model.label} failed after {attempt + 1} attempts: {e}")
                    raise ModelInvocationError(
                        f"{model.label} failed after {attempt + 1} attempts: {e}"
                    ) from e
                delay = (attempt + 1) * 2
                logger.warning(
                    f"{model.label} attempt {attempt + 1}/{MAX_RETRIES + 1} failed: {e}. "
                    f"Retrying in {delay}s..."
                )
                await self._sleep(delay)

        raise ModelInvocationError(f"{model.label} failed")

    async def _post(self, url: str, headers: dict[str, str], body: dict[str, Any]) -> Any:
        """POST a JSON body and classify failures."""
        try:
            response = await self._client.post(url, headers=headers, json=body)
        except httpx.TransportError as e:
            raise TransientModelError(f"network error calling {url}: {e}") from e

        status = response.status_code
        if status in RETRY_STATUSES or status >= 500:
            raise TransientModelError(f"HTTP {status} from {url}: {response.text[:200]}")
        if status >= 400:
            raise ModelInvocationError(f"HTTP {status} from {url}: {response.text[:200]}")

        try:
            return response.json()
        except ValueError as e:
            raise ModelInvocationError(f"Malformed JSON reply from {url}") from e

    async def _call_openai(self, system_prompt: str, user_prompt: str, model: ModelConfig) -> str:
        """Make one chat-completions call."""
        url = openai_url(model.api_endpoint)
        body = {
            "model": model.model_id,
            "messages": [
                {"role": "system", "content": system_prompt},
                {"role": "user", "content": user_prompt},
            ],
            "max_tokens": model.max_tokens or DEFAULT_MAX_TOKENS,
            "temperature": (
                model.temperature if model.temperature is not None else DEFAULT_TEMPERATURE
            ),
        }
        headers = {
            "Authorization": f"Bearer {model.api_key}",
            "Content-Type": "application/json",
        }

        logger.debug(f"Calling {model.label} at {url}")
        data = await self._post(url, headers, body)

        try:
            content = data["choices"][0]["message"]["content"]
        except (KeyError, IndexError, TypeError) as e:
            raise ModelInvocationError(f"Unexpected reply format from {model.label}") from e
        if not content or not content.strip():
            raise ModelInvocationError(f"Empty reply from {model.label}")
        return content

    async def _call_anthropic(
        self, system_prompt: str, user_prompt: str, model: ModelConfig
    ) -> str:
        """Make one messages call."""
        url = anthropic_url(model.api_endpoint)
        body = {
            "model": model.model_id,
            "max_tokens": model.max_tokens or DEFAULT_MAX_TOKENS,
            "system": system_prompt,
            "messages": [{"role": "user", "content": user_prompt}],
        }
        if model.temperature is not None:
            body["temperature"] = model.temperature
        headers = {
            "x-api-key": model.api_key,
            "anthropic-version": ANTHROPIC_VERSION,
            "Content-Type": "application/json",
        }

        logger.debug(f"Calling {model.label} at {url}")
        data = await self._post(url, headers, body)

        blocks = data.get("content") if isinstance(data, dict) else None
        if isinstance(blocks, list):
            for block in blocks:
                if isinstance(block, dict) and block.get("type") == "text" and block.get("text"):
                    return block["text"]
        raise ModelInvocationError(f"Empty or unexpected reply from {model.label}")
