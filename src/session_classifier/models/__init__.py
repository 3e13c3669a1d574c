"""Model and data-source client abstractions."""

from session_classifier.models.catalog import (
    MODELS,
    ModelInfo,
    calculate_model_cost,
    get_model_by_id,
)
from session_classifier.models.openai_client import (
    LLMClientFactory,
    LLMJsonClient,
    OpenAIClientFactory,
    OpenAIJsonClient,
)
from session_classifier.models.session_source import (
    HttpSessionSource,
    InMemorySessionSource,
    SessionSource,
    SessionSourceError,
)

__all__ = [
    "MODELS",
    "HttpSessionSource",
    "InMemorySessionSource",
    "LLMClientFactory",
    "LLMJsonClient",
    "ModelInfo",
    "OpenAIClientFactory",
    "OpenAIJsonClient",
    "SessionSource",
    "SessionSourceError",
    "calculate_model_cost",
    "get_model_by_id",
]
