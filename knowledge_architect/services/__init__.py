"""
Services package for Knowledge Architect.

Services:
    - ErrorManager / ErrorClassifier: Structured error handling
    - ValidationService: Pipeline input checks
    - TitleGenerator: Single-shot note titles
    - SettingsRepository / HistoryRepository: Local persistence

Providers:
    - CloudKeyedProvider: Anthropic Claude
    - OpenRouterProvider: OpenRouter chat completions
    - LMStudioProvider: Local LM Studio server
    - LocalServerProvider: Local Ollama server
"""

from knowledge_architect.services.error_service import (
    ClassificationRule,
    ErrorClassifier,
    ErrorManager,
)
from knowledge_architect.services.validation_service import (
    InputValidationError,
    ValidationService,
    combine_input,
)
from knowledge_architect.services.providers import (
    # Base
    ProviderClient,
    create_provider,
    # Providers
    CloudKeyedProvider,
    OpenAICompatibleProvider,
    OpenRouterProvider,
    LMStudioProvider,
    LocalServerProvider,
    # Exceptions
    ProviderError,
    ProviderConfigurationError,
    NetworkError,
    ProviderResponseError,
    EmptyResponseError,
)
from knowledge_architect.services.model_catalog import (
    ModelInfo,
    ModelListingError,
    list_models,
)
from knowledge_architect.services.storage import (
    HistoryRepository,
    JsonFileStore,
    SettingsRepository,
    StorageError,
)
from knowledge_architect.services.title_generator import (
    TitleGenerationError,
    TitleGenerator,
    generate_title,
)

__all__ = [
    # Errors
    "ClassificationRule",
    "ErrorClassifier",
    "ErrorManager",
    # Validation
    "InputValidationError",
    "ValidationService",
    "combine_input",
    # Providers
    "ProviderClient",
    "create_provider",
    "CloudKeyedProvider",
    "OpenAICompatibleProvider",
    "OpenRouterProvider",
    "LMStudioProvider",
    "LocalServerProvider",
    "ProviderError",
    "ProviderConfigurationError",
    "NetworkError",
    "ProviderResponseError",
    "EmptyResponseError",
    # Model catalog
    "ModelInfo",
    "ModelListingError",
    "list_models",
    # Storage
    "HistoryRepository",
    "JsonFileStore",
    "SettingsRepository",
    "StorageError",
    # Titles
    "TitleGenerationError",
    "TitleGenerator",
    "generate_title",
]
