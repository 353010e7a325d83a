from __future__ import annotations

import json
from pathlib import Path
from typing import Any, Dict, List

import pytest

from patchpilot.config import PatchPilotConfig
from patchpilot.errors import ErrorCode, PipelineError
from patchpilot.models.change_generator import (
    ChangeProposal,
    LLMChangeGenerator,
    ReplayChangeGenerator,
    build_change_generator,
)
from patchpilot.models.gpt5 import GPT5Client, extract_output_text
from patchpilot.models.llm_client import LLMClient, LLMRequest, LLMRetryError

DIFF = "diff --git a/app/api.py b/app/api.py\n"


def _responses_body(text: str) -> str:
    return json.dumps(
        {
            "id": "resp_mock",
            "object": "response",
            "status": "completed",
            "output": [
                {
                    "id": "msg_mock",
                    "type": "message",
                    "role": "assistant",
                    "content": [{"type": "output_text", "text": text}],
                }
            ],
        }
    )


def test_gpt5_client_extracts_json_from_responses_api() -> None:
    payloads: List[Dict[str, Any]] = []

    def transport(payload: Dict[str, Any]) -> str:
        payloads.append(payload)
        return _responses_body(json.dumps({"diff": DIFF, "summary": "add health"}))

    client = GPT5Client(api_key="test", transport=transport, retry_delay=0)
    proposal = client.invoke(LLMRequest(prompt="do it", response_model=ChangeProposal, system_prompt="sys"))

    assert proposal == ChangeProposal(diff=DIFF, summary="add health")
    sent = payloads[0]
    assert sent["model"] == "gpt-5-mini"
    assert [message["role"] for message in sent["input"]] == ["system", "user"]
    schema = sent["text"]["format"]["schema"]
    assert schema["additionalProperties"] is False
    assert schema["required"] == ["diff", "summary"]


def test_gpt5_client_retries_invalid_json_then_fails() -> None:
    calls = {"count": 0}

    def transport(_: Dict[str, Any]) -> str:
        calls["count"] += 1
        return _responses_body("not json at all")

    client = GPT5Client(api_key="test", transport=transport, max_attempts=2, retry_delay=0)

    with pytest.raises(LLMRetryError):
        client.invoke(LLMRequest(prompt="p", response_model=ChangeProposal))
    assert calls["count"] == 2


def test_gpt5_client_wraps_transport_errors() -> None:
    def transport(_: Dict[str, Any]) -> str:
        raise ConnectionError("offline")

    client = GPT5Client(api_key="test", transport=transport, max_attempts=1, retry_delay=0)

    with pytest.raises(LLMRetryError) as excinfo:
        client.invoke(LLMRequest(prompt="p", response_model=ChangeProposal))
    assert "offline" in str(excinfo.value.__cause__)


def test_gpt5_client_requires_api_key(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.delenv("GPT5_API_KEY", raising=False)
    monkeypatch.delenv("OPENAI_API_KEY", raising=False)

    with pytest.raises(ValueError):
        GPT5Client()


def test_parse_json_repairs_fenced_and_trailing_commas() -> None:
    assert LLMClient._parse_json('```json\n{"diff": "x"}\n```') == {"diff": "x"}
    assert LLMClient._parse_json('Sure! {"diff": "x", "summary": "y",} done') == {"diff": "x", "summary": "y"}


@pytest.mark.parametrize(
    ("body", "expected"),
    [
        (json.dumps({"choices": [{"message": {"content": "hello"}}]}), "hello"),
        (json.dumps({"response": {"output": [{"content": [{"json": {"a": 1}}]}]}}), '{"a": 1}'),
        ("plain text", "plain text"),
        ("", None),
    ],
)
def test_extract_output_text_variants(body: str, expected: str | None) -> None:
    assert extract_output_text(body) == expected


class FailingClient(LLMClient):
    def __init__(self) -> None:
        super().__init__(model="stub", max_attempts=1, retry_delay=0)

    def _raw_invoke(self, payload: Dict[str, Any]) -> str:
        return "{}"


def test_llm_change_generator_maps_client_errors() -> None:
    generator = LLMChangeGenerator(FailingClient())

    with pytest.raises(PipelineError) as excinfo:
        generator.generate("prompt")

    assert excinfo.value.code is ErrorCode.GENERATION_FAILED


def test_replay_generator_reads_configured_diff(tmp_path: Path) -> None:
    (tmp_path / "fix.patch").write_text(DIFF, encoding="utf-8")
    config = PatchPilotConfig.model_validate({"models": {"default": "gpt-5-offline", "offline_diff": "fix.patch"}})

    generator = build_change_generator(config, tmp_path)

    assert isinstance(generator, ReplayChangeGenerator)
    assert generator.generate("ignored") == DIFF


@pytest.mark.parametrize("diff_path", [None, Path("/nonexistent/fix.patch")])
def test_replay_generator_fails_without_readable_diff(diff_path: Path | None) -> None:
    with pytest.raises(PipelineError) as excinfo:
        ReplayChangeGenerator(diff_path).generate("prompt")

    assert excinfo.value.code is ErrorCode.GENERATION_FAILED


def test_build_change_generator_without_key_fails(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    monkeypatch.delenv("GPT5_API_KEY", raising=False)
    monkeypatch.delenv("OPENAI_API_KEY", raising=False)

    with pytest.raises(PipelineError) as excinfo:
        build_change_generator(PatchPilotConfig(), tmp_path)

    assert excinfo.value.code is ErrorCode.GENERATION_FAILED
