"""
storyapp/services/generation_client.py -- Schema-constrained generation.

Sends a system/user instruction pair to the Anthropic Messages API and asks
for output matching a JSON Schema.  The schema is attached as the input
schema of a single tool and ``tool_choice`` forces the model to call it, so
the tool input *is* the structured payload.

The response envelope is handled as a plain dict, which lets
``extract_output_text`` accept either shape a provider may use:

    {"output_text": "..."}                          convenience field
    {"content": [{"type": "tool_use", ...}, ...]}   typed fragments
    {"output": [{"content": [...]}, ...]}           nested typed fragments

The parsed JSON is returned un-validated; callers run the schema validator.

Usage::

    client = StructuredGenerationClient(api_key=settings.api_key)
    value = client.generate(model, system, user, schema, 0.2, 1800)
"""

from __future__ import annotations

import json
import logging
import time
from typing import Any

import anthropic

from storyengine.errors import ConfigurationError, ProviderError

logger = logging.getLogger(__name__)

OUTPUT_TOOL_NAME = "emit_structured_output"
_TEXT_FRAGMENT_TYPES = ("text", "output_text")


def _envelope_to_dict(message: Any) -> dict:
    if isinstance(message, dict):
        return message
    if hasattr(message, "model_dump"):
        return message.model_dump()
    raise ProviderError(f"Unexpected provider response type: {type(message).__name__}")


def _iter_fragments(envelope: dict):
    for part in envelope.get("content") or []:
        yield part
    for item in envelope.get("output") or []:
        if isinstance(item, dict):
            for part in item.get("content") or []:
                yield part


def extract_output_text(envelope: dict) -> str:
    """Locate the textual payload inside a provider response envelope.

    A ``tool_use`` fragment wins over free text; text fragments are joined
    in order.  Raises ``ProviderError`` on an explicit refusal or when no
    payload can be found.
    """
    if isinstance(envelope.get("output_text"), str):
        return envelope["output_text"]

    if envelope.get("stop_reason") == "refusal":
        raise ProviderError("Model refusal", ["stop_reason=refusal"])

    tool_payloads: list[str] = []
    chunks: list[str] = []
    for part in _iter_fragments(envelope):
        if not isinstance(part, dict):
            continue
        kind = part.get("type")
        if kind == "refusal":
            raise ProviderError("Model refusal", [str(part.get("refusal") or part.get("text") or "")])
        if kind == "tool_use" and part.get("input") is not None:
            tool_payloads.append(json.dumps(part["input"], ensure_ascii=False))
        elif kind in _TEXT_FRAGMENT_TYPES and isinstance(part.get("text"), str):
            chunks.append(part["text"])

    if tool_payloads:
        return tool_payloads[0]
    if not chunks:
        raise ProviderError("No output text found in provider response")
    return "".join(chunks)


class StructuredGenerationClient:
    """Structured-output facade over the Anthropic SDK.

    Parameters
    ----------
    api_key : str | None
        Provider credential.  Without it (and without *client*) every call
        fails with ``ConfigurationError``.
    default_model : str | None
        Model used when ``generate`` is called with ``model=None``.
    timeout : float
        Request timeout in seconds, passed to the SDK.
    client : anthropic.Anthropic | None
        Pre-built SDK handle (tests pass a ``MagicMock``).
    """

    DEFAULT_TIMEOUT = 120

    def __init__(
        self,
        api_key: str | None = None,
        default_model: str | None = None,
        timeout: float | None = None,
        client: Any = None,
    ):
        self._api_key = api_key
        self._default_model = default_model
        self._timeout = timeout or self.DEFAULT_TIMEOUT
        self._client = client

    def _get_client(self):
        if self._client is None:
            if not self._api_key:
                raise ConfigurationError(
                    "Missing ANTHROPIC_API_KEY",
                    ["Set ANTHROPIC_API_KEY to enable generation."],
                )
            self._client = anthropic.Anthropic(api_key=self._api_key, timeout=self._timeout)
        return self._client

    def generate(
        self,
        model: str | None,
        system_instruction: str,
        user_instruction: str,
        schema: dict,
        temperature: float = 0.2,
        max_output_tokens: int = 1200,
    ) -> Any:
        """Request schema-constrained output and return the parsed JSON value.

        Raises
        ------
        ConfigurationError
            No credential configured.
        ProviderError
            Transport / HTTP failure, refusal, missing or non-JSON payload.
        """
        client = self._get_client()
        model = model or self._default_model
        if not model:
            raise ConfigurationError("No generation model configured")

        started = time.monotonic()
        logger.info("Generation request: model=%s max_tokens=%d", model, max_output_tokens)
        try:
            message = client.messages.create(
                model=model,
                max_tokens=max_output_tokens,
                temperature=temperature,
                system=system_instruction,
                messages=[{"role": "user", "content": user_instruction}],
                tools=[{
                    "name": OUTPUT_TOOL_NAME,
                    "description": "Return the response as JSON matching this schema.",
                    "input_schema": schema,
                }],
                tool_choice={"type": "tool", "name": OUTPUT_TOOL_NAME},
            )
        except anthropic.APIError as exc:
            logger.error("Generation request failed: %s", exc)
            raise ProviderError("Generation request failed", [str(exc)]) from exc

        logger.info("Generation response received in %.0fms", (time.monotonic() - started) * 1000)

        text = extract_output_text(_envelope_to_dict(message))
        try:
            return json.loads(text)
        except json.JSONDecodeError as exc:
            raise ProviderError("Provider output is not valid JSON", [str(exc)]) from exc
