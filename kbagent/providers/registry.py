from __future__ import annotations

from dataclasses import dataclass

from kbagent.config import ProviderSettings
from kbagent.errors import InvalidModelId
from kbagent.providers.anthropic import AnthropicProvider
from kbagent.providers.base import ChatProvider
from kbagent.providers.google import GoogleProvider
from kbagent.providers.ollama import OllamaProvider
from kbagent.providers.openai_compat import OpenAICompatProvider


OPENAI_COMPAT = ("openai", "openrouter", "lm_studio")
PROVIDERS = ("ollama", *OPENAI_COMPAT, "anthropic", "google")


@dataclass(frozen=True)
class ModelRef:
    provider: str
    model: str

    @property
    def model_id(self) -> str:
        return f"{self.provider}:{self.model}"


def split_model_id(model_id: str) -> ModelRef:
    """Parse "provider:model". Only the first colon separates; model names may contain more."""
    if not isinstance(model_id, str):
        raise InvalidModelId(f"Invalid model id: {model_id!r}")
    provider, sep, model = model_id.strip().partition(":")
    provider = provider.strip().lower()
    model = model.strip()
    if not sep or not provider or not model:
        raise InvalidModelId(f"Invalid model id '{model_id}': expected provider:model")
    if provider not in PROVIDERS:
        raise InvalidModelId(f"Unknown provider '{provider}' in model id '{model_id}'")
    return ModelRef(provider=provider, model=model)


def is_valid_model_id(model_id: str) -> bool:
    try:
        split_model_id(model_id)
    except InvalidModelId:
        return False
    return True


def create_provider(name: str, settings: ProviderSettings) -> ChatProvider:
    if name == "ollama":
        return OllamaProvider(settings)
    if name in OPENAI_COMPAT:
        return OpenAICompatProvider(name, settings)
    if name == "anthropic":
        return AnthropicProvider(settings)
    if name == "google":
        return GoogleProvider(settings)
    raise InvalidModelId(f"Unknown provider: {name}")
