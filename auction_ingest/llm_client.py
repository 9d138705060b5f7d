"""Minimal chat-completions client shared by the link and row extractors."""

import json
from typing import Any

import httpx

from auction_ingest.errors import LLMTransportError, ResponseFormatError


class ChatCompletionClient:
    def __init__(
        self,
        client: httpx.Client,
        *,
        api_key: str,
        base_url: str,
        model: str,
        timeout_seconds: float,
    ) -> None:
        if not api_key:
            raise ValueError("openai api key is empty")
        self.client = client
        self.api_key = api_key
        self.base_url = base_url.rstrip("/")
        self.model = model
        self.timeout_seconds = timeout_seconds

    def complete(self, prompt: str, *, response_format: dict[str, Any] | None = None) -> str:
        """Send one user message and return the first choice's content."""
        request_body: dict[str, Any] = {
            "model": self.model,
            "temperature": 0,
            "messages": [{"role": "user", "content": prompt}],
        }
        if response_format is not None:
            request_body["response_format"] = response_format

        try:
            response = self.client.post(
                f"{self.base_url}/chat/completions",
                json=request_body,
                headers={"Authorization": f"Bearer {self.api_key}"},
                timeout=self.timeout_seconds,
            )
            response.raise_for_status()
        except httpx.HTTPStatusError as exc:
            body = exc.response.text.strip()[:500]
            raise LLMTransportError(f"openai status {exc.response.status_code}: {body}") from exc
        except (httpx.HTTPError, httpx.InvalidURL) as exc:
            raise LLMTransportError(f"send request: {exc}") from exc

        # A proxy may answer 200 with an HTML error page.
        try:
            data = response.json()
        except ValueError as exc:
            raise ResponseFormatError(f"decode response: {exc}") from exc

        try:
            choices = data["choices"]
            if not choices:
                raise ResponseFormatError("openai response has no choices")
            content = choices[0]["message"]["content"]
        except (KeyError, IndexError, TypeError) as exc:
            raise ResponseFormatError(f"malformed openai response: {type(exc).__name__}: {exc}") from exc

        if not isinstance(content, str) or not content.strip():
            raise ResponseFormatError("openai response content is empty")
        return content.strip()


def strip_code_fence(content: str) -> str:
    trimmed = content.strip()
    if not trimmed.startswith("```"):
        return trimmed

    trimmed = trimmed[3:].strip()
    if trimmed[:4].lower() == "json":
        trimmed = trimmed[4:]
    end = trimmed.rfind("```")
    if end != -1:
        trimmed = trimmed[:end]
    return trimmed.strip()


def parse_json_object(content: str) -> dict[str, Any]:
    """Decode model output, tolerating a fenced code block around it."""
    try:
        parsed = json.loads(strip_code_fence(content))
    except json.JSONDecodeError as exc:
        raise ResponseFormatError(f"parse openai json: {exc}") from exc

    if not isinstance(parsed, dict):
        raise ResponseFormatError("openai json is not an object")
    return parsed
