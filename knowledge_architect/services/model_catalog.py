"""
Model discovery for local providers.

Lists the models a local Ollama or LM Studio server has available and checks
whether the configured provider is reachable.

Example:
    >>> models = await fetch_ollama_models("http://localhost:11434")
    >>> ok = await test_provider_connection(app_settings)
"""

from dataclasses import dataclass
from typing import Optional

import httpx

from knowledge_architect.models.schemas import AppSettings, ProviderIdentity
from knowledge_architect.services.providers import (
    NetworkError,
    ProviderError,
    ProviderResponseError,
)
from knowledge_architect.utils.logger import get_logger

logger = get_logger(__name__)

MODEL_LIST_TIMEOUT_SECONDS = 10.0


class ModelListingError(ProviderError):
    """The server answered but listed no usable models."""
    pass


@dataclass
class ModelInfo:
    """A model reported by a local server."""
    id: str
    state: Optional[str] = None
    type: Optional[str] = None

    @property
    def is_loaded(self) -> bool:
        return self.state == "loaded"

    @property
    def label(self) -> str:
        label = self.id
        if self.state is not None:
            label += " (loaded)" if self.is_loaded else " (not loaded)"
        if self.type:
            label += f" [{self.type}]"
        return label


def _base(url: str) -> str:
    return url.rstrip("/")


async def _get_json(
    client: httpx.AsyncClient,
    url: str,
    server_name: str,
    timeout: float,
) -> httpx.Response:
    try:
        return await client.get(url, headers={"Accept": "application/json"}, timeout=timeout)
    except httpx.TimeoutException as e:
        raise NetworkError(
            f"Connection to {server_name} timed out after {timeout:g}s. "
            "The server may be slow or not responding."
        ) from e
    except httpx.TransportError as e:
        raise NetworkError(
            f"Network error: could not connect to {server_name} at {url}. "
            "Make sure the server is running and the URL is correct."
        ) from e


def _json_object(response: httpx.Response, server_name: str) -> dict:
    """Decode a JSON object body; anything else is an invalid response."""
    try:
        data = response.json()
    except ValueError as e:
        raise ProviderResponseError(
            f"Invalid response format from {server_name}: the body is not JSON. "
            "Check that the base URL points at the right server.",
            status_code=response.status_code,
        ) from e
    if not isinstance(data, dict):
        raise ProviderResponseError(
            f"Invalid response format from {server_name}. Check the server configuration.",
            status_code=response.status_code,
            body=data,
        )
    return data


async def fetch_lmstudio_models(
    base_url: str,
    client: Optional[httpx.AsyncClient] = None,
    timeout: float = MODEL_LIST_TIMEOUT_SECONDS,
) -> list[ModelInfo]:
    """
    List LM Studio models.

    Tries the native ``/api/v0/models`` endpoint first for load state and
    type, falling back to the OpenAI-compatible ``/v1/models``.

    Raises:
        NetworkError: Server unreachable or timed out.
        ProviderResponseError: Both endpoints answered with an error status
            or an unexpected payload.
        ModelListingError: The server lists no models.
    """
    owns_client = client is None
    client = client or httpx.AsyncClient()
    try:
        native = True
        response = await _get_json(client, f"{_base(base_url)}/api/v0/models", "LM Studio", timeout)
        if not response.is_success:
            logger.debug("LM Studio native API unavailable, falling back", status_code=response.status_code)
            native = False
            response = await _get_json(client, f"{_base(base_url)}/v1/models", "LM Studio", timeout)

        if not response.is_success:
            raise ProviderResponseError(
                f"HTTP {response.status_code}: {response.reason_phrase}. "
                "Make sure LM Studio is running and its API server is enabled.",
                status_code=response.status_code,
            )

        data = _json_object(response, "LM Studio")
        entries = data.get("data")
        if not isinstance(entries, list):
            raise ProviderResponseError(
                "Invalid response format from LM Studio. Check the server configuration."
            )

        models = [
            ModelInfo(
                id=entry["id"],
                state=entry.get("state") if native else None,
                type=entry.get("type") if native else None,
            )
            for entry in entries
            if isinstance(entry, dict) and entry.get("id")
        ]
        if not models:
            raise ModelListingError(
                "No models found in LM Studio. Load a model in LM Studio before continuing."
            )

        logger.info("LM Studio models listed", count=len(models), native_api=native)
        return models
    finally:
        if owns_client:
            await client.aclose()


async def fetch_ollama_models(
    base_url: str,
    client: Optional[httpx.AsyncClient] = None,
    timeout: float = MODEL_LIST_TIMEOUT_SECONDS,
) -> list[ModelInfo]:
    """List models installed in an Ollama server (``/api/tags``)."""
    owns_client = client is None
    client = client or httpx.AsyncClient()
    try:
        response = await _get_json(client, f"{_base(base_url)}/api/tags", "Ollama", timeout)
        if not response.is_success:
            raise ProviderResponseError(
                f"Failed to fetch models: {response.status_code} {response.reason_phrase}",
                status_code=response.status_code,
            )
        entries = _json_object(response, "Ollama").get("models") or []
        if not isinstance(entries, list):
            raise ProviderResponseError(
                "Invalid response format from Ollama. Check the server configuration.",
                status_code=response.status_code,
            )
        models = [
            ModelInfo(id=entry["name"])
            for entry in entries
            if isinstance(entry, dict) and entry.get("name")
        ]
        logger.info("Ollama models listed", count=len(models))
        return models
    finally:
        if owns_client:
            await client.aclose()


async def list_models(
    app_settings: AppSettings,
    client: Optional[httpx.AsyncClient] = None,
    timeout: float = MODEL_LIST_TIMEOUT_SECONDS,
) -> list[ModelInfo]:
    """
    List models for the active provider.

    Local servers are queried; hosted providers return the models stored in
    settings.
    """
    provider = ProviderIdentity(app_settings.provider)
    if provider == ProviderIdentity.LMSTUDIO:
        return await fetch_lmstudio_models(app_settings.config.lmstudio.base_url, client, timeout)
    if provider == ProviderIdentity.OLLAMA:
        return await fetch_ollama_models(app_settings.config.ollama.base_url, client, timeout)
    return [ModelInfo(id=model) for model in app_settings.active_config.models]


async def test_provider_connection(
    app_settings: AppSettings,
    client: Optional[httpx.AsyncClient] = None,
    timeout: float = MODEL_LIST_TIMEOUT_SECONDS,
) -> bool:
    """
    Check that the active provider is reachable.

    Only local servers are contacted; hosted providers are verified on first use.
    """
    provider = ProviderIdentity(app_settings.provider)
    if provider not in (ProviderIdentity.LMSTUDIO, ProviderIdentity.OLLAMA):
        return True
    try:
        await list_models(app_settings, client, timeout)
    except ProviderError as e:
        logger.warning("Provider connection test failed", provider=provider.value, error=str(e))
        return False
    return True


# Not a test function; keeps pytest from collecting it when imported into tests.
test_provider_connection.__test__ = False


__all__ = [
    "MODEL_LIST_TIMEOUT_SECONDS",
    "ModelListingError",
    "ModelInfo",
    "fetch_lmstudio_models",
    "fetch_ollama_models",
    "list_models",
    "test_provider_connection",
]
