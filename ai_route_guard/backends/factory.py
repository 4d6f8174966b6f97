"""
Backend construction from configuration.
"""

from typing import Callable, Dict

from ai_route_guard.config.loader import BackendConfig
from ai_route_guard.core.types import BackendDescriptor

from .base import InferenceBackend
from .http import CustomHttpBackend, OllamaBackend, OpenAICompatibleBackend
from .openai_backend import OpenAIBackend

DEFAULT_OPENAI_MODEL = "gpt-4o-mini"


def _openai(config: BackendConfig) -> InferenceBackend:
    return OpenAIBackend(
        model=config.model or DEFAULT_OPENAI_MODEL,
        api_key=config.credential,
        base_url=config.endpoint or None,
    )


def _openai_compatible(config: BackendConfig) -> InferenceBackend:
    return OpenAICompatibleBackend(config.endpoint, model=config.model, api_key=config.credential)


def _ollama(config: BackendConfig) -> InferenceBackend:
    return OllamaBackend(config.endpoint, model=config.model)


def _custom(config: BackendConfig) -> InferenceBackend:
    return CustomHttpBackend(config.endpoint, model=config.model, api_key=config.credential)


BACKEND_BUILDERS: Dict[str, Callable[[BackendConfig], InferenceBackend]] = {
    "openai": _openai,
    "openai-compatible": _openai_compatible,
    "ollama": _ollama,
    "custom": _custom,
}


def build_backend(config: BackendConfig) -> InferenceBackend:
    """Create the client for a configured backend."""
    return BACKEND_BUILDERS[config.protocol](config)


def descriptor_from_config(config: BackendConfig) -> BackendDescriptor:
    return BackendDescriptor(
        id=config.id,
        name=config.name,
        kind=config.kind,
        endpoint=config.endpoint,
        credential=config.credential,
        cost_per_call=config.cost_per_call,
        model=config.model,
        pricing=config.pricing,
    )
