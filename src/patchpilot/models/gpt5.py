"""HTTP client for the JSON Responses API used to generate diffs."""

from __future__ import annotations

import json
import logging
import os
import urllib.error
import urllib.request
from typing import Any, Callable, Dict, Optional

from .llm_client import LLMClient, LLMResponseFormatError, LLMTransportError

LOGGER = logging.getLogger(__name__)

DEFAULT_BASE_URL = "https://api.openai.com/v1/responses"

Transport = Callable[[Dict[str, Any]], str]


class GPT5Client(LLMClient):
    """Responses API adapter with an injectable transport for tests."""

    def __init__(
        self,
        *,
        api_key: Optional[str] = None,
        base_url: Optional[str] = None,
        model: str = "gpt-5-mini",
        transport: Optional[Transport] = None,
        timeout: float = 120.0,
        max_attempts: int = 3,
        retry_delay: float = 0.5,
    ) -> None:
        super().__init__(model=model, max_attempts=max_attempts, retry_delay=retry_delay)
        self._api_key = api_key or os.getenv("GPT5_API_KEY") or os.getenv("OPENAI_API_KEY")
        self._base_url = base_url or DEFAULT_BASE_URL
        self._timeout = timeout
        self._transport = transport or self._http_transport

        if transport is None and not self._api_key:
            raise ValueError("An API key is required when using the default transport.")

    def _raw_invoke(self, payload: Dict[str, Any]) -> str:
        try:
            raw_response = self._transport(payload)
        except LLMTransportError:
            raise
        except (OSError, ValueError) as error:
            raise LLMTransportError(f"Transport rejected the request: {error}") from error

        text = extract_output_text(raw_response)
        if text is None:
            raise LLMResponseFormatError("Response did not contain output text.")
        return text

    def _http_transport(self, payload: Dict[str, Any]) -> str:
        """POST ``payload`` to the Responses endpoint and return the body."""
        LOGGER.debug("Responses API request for model %s", payload.get("model"))
        request = urllib.request.Request(
            self._base_url,
            data=json.dumps(payload).encode("utf-8"),
            headers={
                "Content-Type": "application/json",
                "Authorization": f"Bearer {self._api_key}",
                "X-Client": "patchpilot",
            },
            method="POST",
        )
        try:
            with urllib.request.urlopen(request, timeout=self._timeout) as response:
                raw = response.read()
                status = getattr(response, "status", 200)
        except TimeoutError as error:  # pragma: no cover - network-dependent
            raise LLMTransportError("Responses API timed out.") from error
        except urllib.error.HTTPError as error:  # pragma: no cover - network-dependent
            message = error.read().decode("utf-8", errors="ignore")
            raise LLMTransportError(f"HTTP {error.code}: {message}") from error
        except urllib.error.URLError as error:  # pragma: no cover - network-dependent
            raise LLMTransportError(f"Failed to reach the Responses API: {error.reason}") from error

        if status >= 400:
            raise LLMTransportError(f"Unexpected HTTP status {status}")
        return raw.decode("utf-8")


def extract_output_text(raw_response: str) -> Optional[str]:
    """Return the first output text of a Responses API body.

    Bodies that are not JSON, or JSON without a recognisable output list, are
    returned unchanged so the caller's JSON parser can judge them.
    """
    if not raw_response:
        return None
    try:
        data = json.loads(raw_response)
    except json.JSONDecodeError:
        return raw_response
    if not isinstance(data, dict):
        return raw_response

    containers = [data.get("output"), data.get("choices")]
    nested = data.get("response")
    if isinstance(nested, dict):
        containers.append(nested.get("output"))
    for container in containers:
        text = _first_text(container)
        if text:
            return text
    return raw_response


def _first_text(container: Any) -> Optional[str]:
    if not isinstance(container, list):
        return None
    for item in container:
        if not isinstance(item, dict):
            continue
        contents = item.get("content")
        if isinstance(contents, list):
            for content in contents:
                if not isinstance(content, dict):
                    continue
                if isinstance(content.get("json"), (dict, list)):
                    return json.dumps(content["json"])
                text = content.get("text")
                if isinstance(text, str) and text.strip():
                    return text
        message = item.get("message")
        if isinstance(message, dict):
            text = message.get("content")
            if isinstance(text, str) and text.strip():
                return text
    return None


__all__ = ["DEFAULT_BASE_URL", "GPT5Client", "extract_output_text"]
