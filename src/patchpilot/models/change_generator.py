"""Change generators: turn an implement prompt into unified diff text."""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Optional, Protocol

from pydantic import BaseModel, ConfigDict, Field

from ..config import PatchPilotConfig
from ..errors import ErrorCode, PipelineError
from .gpt5 import GPT5Client
from .llm_client import LLMClient, LLMClientError, LLMRequest

LOGGER = logging.getLogger(__name__)

SYSTEM_PROMPT = (
    "You are a careful software engineer. Respond with JSON holding a unified git diff "
    "in `diff` and a one-sentence `summary`."
)


class ChangeProposal(BaseModel):
    """Structured model output carrying the generated diff."""

    model_config = ConfigDict(extra="forbid")

    diff: str = Field(description="Unified git diff starting with 'diff --git'.")
    summary: str = Field(default="", description="One sentence describing the change.")


class ChangeGenerator(Protocol):
    def generate(self, prompt: str) -> str:
        ...


class LLMChangeGenerator:
    """Ask an :class:`LLMClient` for a :class:`ChangeProposal` and return its diff."""

    def __init__(self, client: LLMClient, *, model: Optional[str] = None) -> None:
        self.client = client
        self.model = model

    def generate(self, prompt: str) -> str:
        request = LLMRequest(
            prompt=prompt,
            response_model=ChangeProposal,
            model=self.model,
            system_prompt=SYSTEM_PROMPT,
            metadata={"purpose": "implement"},
        )
        try:
            proposal = self.client.invoke(request)
        except LLMClientError as error:
            raise PipelineError(ErrorCode.GENERATION_FAILED, f"Change generation failed: {error}") from error
        LOGGER.info("Model proposed change: %s", proposal.summary or "(no summary)")
        return proposal.diff


class ReplayChangeGenerator:
    """Offline generator that replays a diff file on every call."""

    def __init__(self, diff_path: Path | None) -> None:
        self.diff_path = diff_path

    def generate(self, prompt: str) -> str:
        if self.diff_path is None:
            raise PipelineError(
                ErrorCode.GENERATION_FAILED,
                "Offline model selected but models.offline_diff is not configured.",
            )
        try:
            return self.diff_path.read_text(encoding="utf-8")
        except OSError as error:
            raise PipelineError(
                ErrorCode.GENERATION_FAILED,
                f"Cannot read offline diff {self.diff_path}: {error}",
            ) from error


def build_change_generator(config: PatchPilotConfig, repo_root: Path) -> ChangeGenerator:
    """Return the generator selected by the ``models`` configuration section."""
    settings = config.models
    if settings.offline:
        diff_path = None
        if settings.offline_diff:
            diff_path = Path(settings.offline_diff)
            if not diff_path.is_absolute():
                diff_path = repo_root / diff_path
        return ReplayChangeGenerator(diff_path)

    try:
        client = GPT5Client(
            api_key=settings.api_key,
            base_url=settings.base_url,
            model=settings.default,
            timeout=settings.timeout,
            max_attempts=settings.max_attempts,
            retry_delay=settings.retry_delay,
        )
    except ValueError as error:
        raise PipelineError(ErrorCode.GENERATION_FAILED, str(error)) from error
    return LLMChangeGenerator(client)


__all__ = [
    "ChangeGenerator",
    "ChangeProposal",
    "LLMChangeGenerator",
    "ReplayChangeGenerator",
    "build_change_generator",
]
