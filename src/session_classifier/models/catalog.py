"""Registry of supported chat models with context windows and pricing."""

from __future__ import annotations

from dataclasses import dataclass


@dataclass(frozen=True)
class ModelInfo:
    """Static metadata for one chat model."""

    id: str
    name: str
    api_model: str
    context_window: int
    input_price_per_million: float
    output_price_per_million: float


GPT_4O_CONTEXT_WINDOW = 128_000
GPT_41_CONTEXT_WINDOW = 1_047_576

MODELS: tuple[ModelInfo, ...] = (
    ModelInfo("gpt-4o", "GPT-4o", "gpt-4o", GPT_4O_CONTEXT_WINDOW, 2.50, 10.00),
    ModelInfo("gpt-4o-mini", "GPT-4o Mini", "gpt-4o-mini", GPT_4O_CONTEXT_WINDOW, 0.15, 0.60),
    ModelInfo("gpt-4.1", "GPT-4.1", "gpt-4.1", GPT_41_CONTEXT_WINDOW, 2.00, 8.00),
    ModelInfo("gpt-4.1-mini", "GPT-4.1 Mini", "gpt-4.1-mini", GPT_41_CONTEXT_WINDOW, 0.40, 1.60),
    ModelInfo("gpt-4.1-nano", "GPT-4.1 Nano", "gpt-4.1-nano", GPT_41_CONTEXT_WINDOW, 0.10, 0.40),
)

_MODELS_BY_ID = {model.id: model for model in MODELS}


def get_model_by_id(model_id: str) -> ModelInfo | None:
    """Return model metadata, or None for an unrecognized id."""

    return _MODELS_BY_ID.get(model_id.strip())


def calculate_model_cost(prompt_tokens: int, completion_tokens: int, model_id: str) -> float:
    """Dollar cost for exact prompt/completion counts; 0.0 for unknown models."""

    model = get_model_by_id(model_id)
    if model is None:
        return 0.0
    input_cost = (prompt_tokens / 1_000_000) * model.input_price_per_million
    output_cost = (completion_tokens / 1_000_000) * model.output_price_per_million
    return input_cost + output_cost
