"""
Generative model client.

The chat loop depends only on the ``ModelClient`` protocol: given the
conversation, a system instruction and the declared functions, return the
model's text and any function calls it requested. ``GeminiModelClient`` is
the production implementation on top of ``google-genai``.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Protocol

import structlog
from google import genai
from google.genai import types

logger = structlog.get_logger(__name__)

DEFAULT_MODEL = "gemini-2.0-flash-001"


class ModelError(Exception):
    """The model API call failed."""


@dataclass
class ChatMessage:
    """One entry of the stored conversation history."""

    role: str  # "user" | "assistant"
    content: str


@dataclass
class FunctionCallRequest:
    """A function invocation requested by the model."""

    name: str
    args: dict[str, Any] = field(default_factory=dict)
    id: str | None = None


@dataclass
class ModelResponse:
    """Text and requested function calls from one model round-trip.

    ``content`` is the raw model turn; it is echoed back verbatim so
    provider metadata attached to function-call parts survives.
    """

    text: str = ""
    function_calls: list[FunctionCallRequest] = field(default_factory=list)
    content: types.Content | None = None


class ModelClient(Protocol):
    async def generate(
        self,
        contents: list[types.Content],
        *,
        system_instruction: str,
        declarations: list[types.FunctionDeclaration],
    ) -> ModelResponse: ...


def history_to_contents(history: list[ChatMessage]) -> list[types.Content]:
    """Map stored chat roles onto the model's ``user``/``model`` roles."""
    return [
        types.Content(
            role="user" if message.role == "user" else "model",
            parts=[types.Part.from_text(text=message.content)],
        )
        for message in history
        if message.content
    ]


def parse_response(response: types.GenerateContentResponse) -> ModelResponse:
    """Extract text and function calls from the first candidate."""
    if not response.candidates:
        return ModelResponse()

    content = response.candidates[0].content
    if content is None or not content.parts:
        return ModelResponse(content=content)

    texts: list[str] = []
    calls: list[FunctionCallRequest] = []
    for part in content.parts:
        if part.function_call is not None:
            calls.append(
                FunctionCallRequest(
                    name=part.function_call.name or "",
                    args=dict(part.function_call.args or {}),
                    id=part.function_call.id,
                )
            )
        elif part.text and not part.thought:
            texts.append(part.text)

    return ModelResponse(text="".join(texts), function_calls=calls, content=content)


class GeminiModelClient:
    """ModelClient backed by the Gemini API (async surface of google-genai)."""

    def __init__(
        self,
        api_key: str | None = None,
        model: str = DEFAULT_MODEL,
        client: genai.Client | None = None,
    ):
        self._client = client or genai.Client(api_key=api_key)
        self._model = model
        self._logger = logger.bind(component="GeminiModelClient", model=model)

    async def generate(
        self,
        contents: list[types.Content],
        *,
        system_instruction: str,
        declarations: list[types.FunctionDeclaration],
    ) -> ModelResponse:
        config = types.GenerateContentConfig(
            system_instruction=system_instruction,
            tools=[types.Tool(function_declarations=declarations)] if declarations else None,
            # The chat loop executes calls itself against the MCP servers.
            automatic_function_calling=types.AutomaticFunctionCallingConfig(disable=True),
        )

        try:
            response = await self._client.aio.models.generate_content(
                model=self._model,
                contents=contents,
                config=config,
            )
        except Exception as e:
            self._logger.error("Model request failed", error=str(e))
            raise ModelError(str(e) or type(e).__name__) from e

        parsed = parse_response(response)
        self._logger.debug(
            "Model response",
            text_chars=len(parsed.text),
            function_calls=[c.name for c in parsed.function_calls],
        )
        return parsed
