"""Convenience exports for the patchpilot model clients and change generators."""

from .change_generator import (
    ChangeGenerator,
    ChangeProposal,
    LLMChangeGenerator,
    ReplayChangeGenerator,
    build_change_generator,
)
from .gpt5 import GPT5Client
from .llm_client import (
    LLMClient,
    LLMClientError,
    LLMRequest,
    LLMResponseFormatError,
    LLMRetryError,
    LLMTransportError,
)

__all__ = [
    "ChangeGenerator",
    "ChangeProposal",
    "GPT5Client",
    "LLMChangeGenerator",
    "LLMClient",
    "LLMClientError",
    "LLMRequest",
    "LLMResponseFormatError",
    "LLMRetryError",
    "LLMTransportError",
    "ReplayChangeGenerator",
    "build_change_generator",
]
