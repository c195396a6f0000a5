"""
Text-generation provider clients.

One client class per provider identity, all exposing the same two calls:
``generate_text`` for a complete response and ``stream_text`` for deltas.
Clients hold only configuration plus a lazily created HTTP client and may be
shared between runs. They never retry; retries belong to ``RetryExecutor``.

Providers:
    - CloudKeyedProvider: Anthropic Messages API via the ``anthropic`` SDK
    - OpenRouterProvider: OpenAI-compatible gateway (API key required)
    - LMStudioProvider: local OpenAI-compatible server (API key optional)
    - LocalServerProvider: Ollama ``/api/generate``

Example:
    >>> provider = create_provider(app_settings)
    >>> async with provider:
    ...     text = await provider.generate_text(prompt, 0.6, ModelTier.FAST)
"""

from __future__ import annotations

import contextlib
import json
import time
from abc import ABC, abstractmethod
from typing import TYPE_CHECKING, Any, AsyncIterator, Iterator, Optional

import anthropic
import httpx

from knowledge_architect.config.settings import Settings, get_settings
from knowledge_architect.models.schemas import (
    AppSettings,
    ModelTier,
    ProviderIdentity,
    ProviderRequest,
)
from knowledge_architect.utils.logger import get_logger

if TYPE_CHECKING:
    from knowledge_architect.utils.observability import ObservabilityContext

logger = get_logger(__name__)


# =============================================================================
# Constants
# =============================================================================

PROVIDER_DISPLAY_NAMES: dict[ProviderIdentity, str] = {
    ProviderIdentity.ANTHROPIC: "Anthropic",
    ProviderIdentity.OPENROUTER: "OpenRouter",
    ProviderIdentity.OLLAMA: "Ollama",
    ProviderIdentity.LMSTUDIO: "LM Studio",
}

# Temperature used by OpenRouter when reasoning mode is off.
OPENROUTER_NON_REASONING_TEMPERATURE = 0.1


# =============================================================================
# Custom Exceptions
# =============================================================================

class ProviderError(Exception):
    """Base exception for provider failures."""
    pass


class ProviderConfigurationError(ProviderError):
    """Provider is missing a key, URL or model. Raised before any I/O."""
    pass


class NetworkError(ProviderError):
    """Connection failure or timeout."""
    pass


class ProviderResponseError(ProviderError):
    """Non-2xx response from the provider."""

    def __init__(
        self,
        message: str,
        status_code: Optional[int] = None,
        body: Any = None,
    ):
        super().__init__(message)
        self.status_code = status_code
        self.body = body


class EmptyResponseError(ProviderError):
    """Response parsed but carried no text."""
    pass


# =============================================================================
# Helpers
# =============================================================================

def error_message_from_body(body: Any, status_code: int, reason: str = "") -> str:
    """
    Extract a readable message from an error response body.

    Prefers ``error.message``, then ``error`` when it is a string, then a
    generic status line.
    """
    if isinstance(body, dict):
        error = body.get("error")
        if isinstance(error, dict) and error.get("message"):
            return str(error["message"])
        if isinstance(error, str) and error:
            return error
    reason = reason or httpx.codes.get_reason_phrase(status_code)
    return f"Request failed with status {status_code}: {reason}"


def _parse_body(response: httpx.Response) -> Any:
    try:
        return response.json()
    except ValueError:
        return response.text or None


# =============================================================================
# Base Provider
# =============================================================================

class ProviderClient(ABC):
    """
    Abstract base class for text-generation providers.

    Subclasses implement ``generate_text`` and ``stream_text`` and report
    whether they are configured. Configuration errors are raised before any
    network I/O.
    """

    identity: ProviderIdentity

    def __init__(
        self,
        app_settings: AppSettings,
        settings: Optional[Settings] = None,
        observability: Optional["ObservabilityContext"] = None,
        http_client: Optional[httpx.AsyncClient] = None,
    ):
        self.app_settings = app_settings
        self.settings = settings or get_settings()
        self.observability = observability
        self._client = http_client
        self._owns_client = http_client is None

    @property
    def name(self) -> str:
        return self.identity.value

    @property
    def display_name(self) -> str:
        return PROVIDER_DISPLAY_NAMES[self.identity]

    @property
    @abstractmethod
    def is_configured(self) -> bool:
        """Check whether the provider has everything it needs to make a call."""
        pass

    @property
    def reasoning_enabled(self) -> bool:
        return self.app_settings.reasoning_mode_enabled

    @property
    def _logger(self):
        return self.observability.logger if self.observability else logger

    @property
    def request_timeout(self) -> float:
        return self.settings.request_timeout_seconds

    async def connect(self) -> None:
        """Create the HTTP client if one was not injected."""
        if self._client is None:
            self._client = httpx.AsyncClient(
                timeout=httpx.Timeout(self.request_timeout, connect=10.0),
            )
            self._owns_client = True

    async def disconnect(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None

    async def __aenter__(self) -> "ProviderClient":
        await self.connect()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.disconnect()

    async def _http(self) -> httpx.AsyncClient:
        if self._client is None:
            await self.connect()
        return self._client

    def build_request(
        self,
        prompt: str,
        temperature: float,
        model_selector: ModelTier | str,
    ) -> ProviderRequest:
        """
        Validate call arguments.

        Raises ``ValueError`` for an empty prompt and
        ``ProviderConfigurationError`` for an unknown model selector.
        """
        if not isinstance(prompt, str) or not prompt.strip():
            raise ValueError("Prompt must be a non-empty string")
        try:
            tier = ModelTier(model_selector)
        except ValueError as e:
            raise ProviderConfigurationError(
                f"Unknown model selector: {model_selector!r}. "
                f"Expected one of: {', '.join(t.value for t in ModelTier)}"
            ) from e
        return ProviderRequest(
            prompt=prompt,
            temperature=temperature,
            model_selector=tier,
            provider=self.identity,
            disable_reasoning=not self.reasoning_enabled,
        )

    @abstractmethod
    async def generate_text(
        self,
        prompt: str,
        temperature: float,
        model_selector: ModelTier | str = ModelTier.FAST,
    ) -> str:
        """Return the complete, non-empty response text."""
        pass

    @abstractmethod
    def stream_text(
        self,
        prompt: str,
        temperature: float,
        model_selector: ModelTier | str = ModelTier.FAST,
    ) -> AsyncIterator[str]:
        """Yield response text deltas as they arrive."""
        pass

    # =========================================================================
    # HTTP plumbing shared by the httpx-based providers
    # =========================================================================

    @contextlib.contextmanager
    def _translate_transport_errors(self, url: str, timeout: float) -> Iterator[None]:
        try:
            yield
        except httpx.TimeoutException as e:
            raise NetworkError(
                f"Request to {self.display_name} timed out after {timeout:g}s"
            ) from e
        except httpx.TransportError as e:
            raise NetworkError(
                f"Network error: could not connect to {self.display_name} at {url}"
            ) from e

    async def _post_json(
        self,
        url: str,
        payload: dict[str, Any],
        headers: Optional[dict[str, str]] = None,
    ) -> Any:
        client = await self._http()
        timeout = self.request_timeout
        started = time.monotonic()

        with self._translate_transport_errors(url, timeout):
            response = await client.post(url, json=payload, headers=headers, timeout=timeout)

        if not response.is_success:
            body = _parse_body(response)
            raise ProviderResponseError(
                error_message_from_body(body, response.status_code, response.reason_phrase),
                status_code=response.status_code,
                body=body,
            )

        self._logger.debug(
            "Provider response received",
            provider=self.name,
            status_code=response.status_code,
            elapsed_seconds=round(time.monotonic() - started, 3),
        )
        try:
            return response.json()
        except ValueError as e:
            raise EmptyResponseError(
                f"{self.display_name} returned a response that is not valid JSON"
            ) from e

    async def _stream_lines(
        self,
        url: str,
        payload: dict[str, Any],
        headers: Optional[dict[str, str]] = None,
    ) -> AsyncIterator[str]:
        client = await self._http()
        timeout = self.request_timeout

        with self._translate_transport_errors(url, timeout):
            async with client.stream(
                "POST", url, json=payload, headers=headers, timeout=timeout
            ) as response:
                if not response.is_success:
                    await response.aread()
                    body = _parse_body(response)
                    raise ProviderResponseError(
                        error_message_from_body(
                            body, response.status_code, response.reason_phrase
                        ),
                        status_code=response.status_code,
                        body=body,
                    )
                async for line in response.aiter_lines():
                    if line.strip():
                        yield line

    def _log_request(self, request: ProviderRequest, model: str, **extra: Any) -> None:
        self._logger.debug(
            "Provider request",
            provider=self.name,
            model=model,
            temperature=request.temperature,
            prompt_chars=len(request.prompt),
            **extra,
        )


# =============================================================================
# Anthropic (cloud, keyed)
# =============================================================================

class CloudKeyedProvider(ProviderClient):
    """
    Anthropic Messages API provider.

    The model tier maps to a model name from settings. With reasoning mode
    off, fast-tier requests explicitly disable extended thinking.
    """

    identity = ProviderIdentity.ANTHROPIC

    def __init__(
        self,
        app_settings: AppSettings,
        settings: Optional[Settings] = None,
        observability: Optional["ObservabilityContext"] = None,
        anthropic_client: Optional[anthropic.AsyncAnthropic] = None,
    ):
        super().__init__(app_settings, settings, observability)
        self._anthropic = anthropic_client
        self._owns_anthropic = anthropic_client is None

    @property
    def api_key(self) -> Optional[str]:
        return self.app_settings.config.anthropic.api_key or self.settings.get_api_key("anthropic")

    @property
    def is_configured(self) -> bool:
        return bool(self.api_key) or self._anthropic is not None

    def model_for(self, tier: ModelTier | str) -> str:
        if ModelTier(tier) == ModelTier.HIGH_QUALITY:
            return self.settings.claude_quality_model
        return self.settings.claude_fast_model

    def _get_client(self) -> anthropic.AsyncAnthropic:
        if self._anthropic is None:
            if not self.api_key:
                raise ProviderConfigurationError(
                    "Anthropic API key is not configured. "
                    "Please set it in the application settings or ANTHROPIC_API_KEY."
                )
            self._anthropic = anthropic.AsyncAnthropic(
                api_key=self.api_key,
                timeout=self.settings.request_timeout_seconds,
                max_retries=0,
            )
        return self._anthropic

    async def connect(self) -> None:
        """The SDK client is created on first use, once the key is known."""
        pass

    async def disconnect(self) -> None:
        if self._anthropic is not None and self._owns_anthropic:
            await self._anthropic.close()
            self._anthropic = None

    def _message_kwargs(self, request: ProviderRequest) -> dict[str, Any]:
        kwargs: dict[str, Any] = {
            "model": self.model_for(request.model_selector),
            "max_tokens": self.settings.claude_max_tokens,
            "temperature": request.temperature,
            "messages": [{"role": "user", "content": request.prompt}],
        }
        if request.disable_reasoning and request.model_selector == ModelTier.FAST:
            kwargs["thinking"] = {"type": "disabled"}
        return kwargs

    @contextlib.contextmanager
    def _translate_sdk_errors(self) -> Iterator[None]:
        try:
            yield
        except anthropic.APITimeoutError as e:
            raise NetworkError(
                f"Request to Anthropic timed out after {self.settings.request_timeout_seconds:g}s"
            ) from e
        except anthropic.APIConnectionError as e:
            raise NetworkError("Network error: could not connect to Anthropic") from e
        except anthropic.APIStatusError as e:
            body = e.body
            message = error_message_from_body(body, e.status_code)
            if message.startswith("Request failed with status") and e.message:
                message = e.message
            raise ProviderResponseError(message, status_code=e.status_code, body=body) from e

    async def generate_text(
        self,
        prompt: str,
        temperature: float,
        model_selector: ModelTier | str = ModelTier.FAST,
    ) -> str:
        request = self.build_request(prompt, temperature, model_selector)
        client = self._get_client()
        kwargs = self._message_kwargs(request)
        self._log_request(request, kwargs["model"], thinking=kwargs.get("thinking"))

        with self._translate_sdk_errors():
            response = await client.messages.create(**kwargs)

        text = "".join(
            block.text for block in response.content if getattr(block, "type", None) == "text"
        )
        if not text.strip():
            raise EmptyResponseError("Anthropic returned an empty response")
        return text

    async def stream_text(
        self,
        prompt: str,
        temperature: float,
        model_selector: ModelTier | str = ModelTier.FAST,
    ) -> AsyncIterator[str]:
        request = self.build_request(prompt, temperature, model_selector)
        client = self._get_client()
        kwargs = self._message_kwargs(request)
        self._log_request(request, kwargs["model"], stream=True)

        with self._translate_sdk_errors():
            async with client.messages.stream(**kwargs) as stream:
                async for text in stream.text_stream:
                    if text:
                        yield text


# =============================================================================
# OpenAI-compatible chat completions (OpenRouter, LM Studio)
# =============================================================================

class OpenAICompatibleProvider(ProviderClient):
    """Chat-completions provider speaking the OpenAI wire format."""

    requires_api_key: bool = True

    @property
    @abstractmethod
    def base_url(self) -> str:
        pass

    @property
    def api_key(self) -> str:
        return self.app_settings.config.for_provider(self.identity).api_key

    @property
    def model(self) -> str:
        return self.app_settings.config.for_provider(self.identity).selected_model

    @property
    def is_configured(self) -> bool:
        has_key = bool(self.api_key) or not self.requires_api_key
        return has_key and bool(self.model) and bool(self.base_url)

    @property
    def configuration_error(self) -> str:
        return f"{self.display_name} API key and model must be configured in settings."

    def _ensure_configured(self) -> None:
        if not self.is_configured:
            raise ProviderConfigurationError(self.configuration_error)

    def effective_temperature(self, request: ProviderRequest) -> float:
        return request.temperature

    def _headers(self) -> dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        return headers

    def _payload(self, request: ProviderRequest, stream: bool) -> dict[str, Any]:
        return {
            "model": self.model,
            "messages": [{"role": "user", "content": request.prompt}],
            "temperature": self.effective_temperature(request),
            "stream": stream,
        }

    @property
    def completions_url(self) -> str:
        return f"{self.base_url.rstrip('/')}/chat/completions"

    async def generate_text(
        self,
        prompt: str,
        temperature: float,
        model_selector: ModelTier | str = ModelTier.FAST,
    ) -> str:
        request = self.build_request(prompt, temperature, model_selector)
        self._ensure_configured()
        self._log_request(request, self.model)

        data = await self._post_json(
            self.completions_url, self._payload(request, stream=False), self._headers()
        )
        try:
            text = data["choices"][0]["message"]["content"]
        except (KeyError, IndexError, TypeError):
            text = None
        if not isinstance(text, str) or not text.strip():
            raise EmptyResponseError(f"{self.display_name} returned an empty response")
        return text

    async def stream_text(
        self,
        prompt: str,
        temperature: float,
        model_selector: ModelTier | str = ModelTier.FAST,
    ) -> AsyncIterator[str]:
        request = self.build_request(prompt, temperature, model_selector)
        self._ensure_configured()
        self._log_request(request, self.model, stream=True)

        lines = self._stream_lines(
            self.completions_url, self._payload(request, stream=True), self._headers()
        )
        async for line in lines:
            line = line.strip()
            if not line.startswith("data:"):
                # SSE comments and keep-alives
                continue
            data = line[len("data:"):].strip()
            if data == "[DONE]":
                break
            try:
                parsed = json.loads(data)
            except json.JSONDecodeError:
                self._logger.warning("Failed to parse stream chunk", provider=self.name, chunk=data[:200])
                continue
            if isinstance(parsed, dict) and parsed.get("error"):
                raise ProviderResponseError(
                    error_message_from_body(parsed, 500), body=parsed
                )
            choices = parsed.get("choices") or [{}]
            content = (choices[0].get("delta") or {}).get("content")
            if content:
                yield content


class OpenRouterProvider(OpenAICompatibleProvider):
    """OpenRouter gateway. Forces a low temperature when reasoning mode is off."""

    identity = ProviderIdentity.OPENROUTER

    @property
    def base_url(self) -> str:
        return self.settings.openrouter_base_url

    @property
    def api_key(self) -> str:
        return super().api_key or self.settings.get_api_key("openrouter") or ""

    def effective_temperature(self, request: ProviderRequest) -> float:
        if request.disable_reasoning:
            return OPENROUTER_NON_REASONING_TEMPERATURE
        return request.temperature

    def _headers(self) -> dict[str, str]:
        headers = super()._headers()
        headers["HTTP-Referer"] = self.settings.app_referer
        headers["X-Title"] = self.settings.app_title
        return headers


class LMStudioProvider(OpenAICompatibleProvider):
    """LM Studio local server through its OpenAI-compatible ``/v1`` API."""

    identity = ProviderIdentity.LMSTUDIO
    requires_api_key = False

    @property
    def base_url(self) -> str:
        root = self.app_settings.config.lmstudio.base_url
        return f"{root.rstrip('/')}/v1" if root else ""

    @property
    def request_timeout(self) -> float:
        return self.settings.local_request_timeout_seconds

    @property
    def configuration_error(self) -> str:
        return "LM Studio Base URL and model must be configured in settings."


# =============================================================================
# Ollama (local server)
# =============================================================================

class LocalServerProvider(ProviderClient):
    """Ollama ``/api/generate`` provider."""

    identity = ProviderIdentity.OLLAMA

    @property
    def base_url(self) -> str:
        return self.app_settings.config.ollama.base_url

    @property
    def model(self) -> str:
        return self.app_settings.config.ollama.selected_model

    @property
    def is_configured(self) -> bool:
        return bool(self.base_url) and bool(self.model)

    @property
    def request_timeout(self) -> float:
        return self.settings.local_request_timeout_seconds

    def _ensure_configured(self) -> None:
        if not self.is_configured:
            raise ProviderConfigurationError(
                "Ollama Base URL and model must be configured in settings."
            )

    @property
    def generate_url(self) -> str:
        return f"{self.base_url.rstrip('/')}/api/generate"

    def _payload(self, request: ProviderRequest, stream: bool) -> dict[str, Any]:
        return {
            "model": self.model,
            "prompt": request.prompt,
            "stream": stream,
            "options": {"temperature": request.temperature},
        }

    async def generate_text(
        self,
        prompt: str,
        temperature: float,
        model_selector: ModelTier | str = ModelTier.FAST,
    ) -> str:
        request = self.build_request(prompt, temperature, model_selector)
        self._ensure_configured()
        self._log_request(request, self.model)

        data = await self._post_json(self.generate_url, self._payload(request, stream=False))
        text = data.get("response") if isinstance(data, dict) else None
        if not isinstance(text, str) or not text.strip():
            raise EmptyResponseError("Ollama returned an empty response")
        return text

    async def stream_text(
        self,
        prompt: str,
        temperature: float,
        model_selector: ModelTier | str = ModelTier.FAST,
    ) -> AsyncIterator[str]:
        request = self.build_request(prompt, temperature, model_selector)
        self._ensure_configured()
        self._log_request(request, self.model, stream=True)

        async for line in self._stream_lines(self.generate_url, self._payload(request, stream=True)):
            try:
                parsed = json.loads(line)
            except json.JSONDecodeError:
                self._logger.warning("Failed to parse stream chunk", provider=self.name, chunk=line[:200])
                continue
            if parsed.get("error"):
                raise ProviderResponseError(str(parsed["error"]), body=parsed)
            content = parsed.get("response")
            if content:
                yield content
            if parsed.get("done"):
                break


# =============================================================================
# Factory
# =============================================================================

PROVIDER_CLASSES: dict[ProviderIdentity, type[ProviderClient]] = {
    ProviderIdentity.ANTHROPIC: CloudKeyedProvider,
    ProviderIdentity.OPENROUTER: OpenRouterProvider,
    ProviderIdentity.LMSTUDIO: LMStudioProvider,
    ProviderIdentity.OLLAMA: LocalServerProvider,
}


def create_provider(
    app_settings: AppSettings,
    settings: Optional[Settings] = None,
    observability: Optional["ObservabilityContext"] = None,
    provider: Optional[ProviderIdentity | str] = None,
) -> ProviderClient:
    """
    Create the provider client selected in ``app_settings``.

    Args:
        app_settings: User settings with provider selection and per-provider config.
        settings: Process settings (defaults to cached environment settings).
        observability: Optional observability context for logging.
        provider: Override the provider selected in ``app_settings``.
    """
    identity = ProviderIdentity(provider or app_settings.provider)
    provider_class = PROVIDER_CLASSES[identity]
    return provider_class(app_settings, settings=settings, observability=observability)


__all__ = [
    "PROVIDER_DISPLAY_NAMES",
    "OPENROUTER_NON_REASONING_TEMPERATURE",
    "ProviderError",
    "ProviderConfigurationError",
    "NetworkError",
    "ProviderResponseError",
    "EmptyResponseError",
    "error_message_from_body",
    "ProviderClient",
    "CloudKeyedProvider",
    "OpenAICompatibleProvider",
    "OpenRouterProvider",
    "LMStudioProvider",
    "LocalServerProvider",
    "PROVIDER_CLASSES",
    "create_provider",
]
