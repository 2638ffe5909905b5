"""
Model function-calling loop.

One chat turn: aggregate tools from every connected server, ask the model,
execute whatever functions it requests against the owning servers, feed the
results back, and repeat until the model answers in plain text or the round
cap is reached.
"""

from __future__ import annotations

import asyncio
import json
from dataclasses import dataclass, field
from typing import Any

import structlog
from google.genai import types

from mcpchat.chat.model import (
    ChatMessage,
    FunctionCallRequest,
    ModelClient,
    ModelResponse,
    history_to_contents,
)
from mcpchat.chat.tools import ToolIndex, build_system_instruction, get_all_tools
from mcpchat.mcp.capabilities import CapabilityService
from mcpchat.mcp.errors import UnknownFunctionName

logger = structlog.get_logger(__name__)

MAX_TOOL_ROUNDS = 5
DEFAULT_MAX_RESULT_CHARS = 20_000
TRUNCATION_MARKER = "\n...[truncated {omitted} characters]"


@dataclass
class ToolCallRecord:
    """One executed (or rejected) function call, as reported to the client."""

    server_name: str
    tool_name: str
    arguments: dict[str, Any]
    result: Any

    def to_dict(self) -> dict[str, Any]:
        return {
            "serverName": self.server_name,
            "toolName": self.tool_name,
            "arguments": self.arguments,
            "result": self.result,
        }


@dataclass
class ChatTurnResult:
    final_text: str
    tool_calls: list[ToolCallRecord] = field(default_factory=list)
    rounds: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "content": self.final_text,
            "toolCalls": [record.to_dict() for record in self.tool_calls],
        }


def bound_result(result: Any, max_chars: int) -> str:
    """Serialize a tool result for the model, truncated to ``max_chars``."""
    serialized = result if isinstance(result, str) else json.dumps(result, ensure_ascii=False, default=str)
    if len(serialized) <= max_chars:
        return serialized
    omitted = len(serialized) - max_chars
    return serialized[:max_chars] + TRUNCATION_MARKER.format(omitted=omitted)


def _function_call_content(response: ModelResponse) -> types.Content:
    if response.content is not None and response.content.parts:
        return response.content
    return types.Content(
        role="model",
        parts=[
            types.Part(function_call=types.FunctionCall(name=call.name, args=call.args, id=call.id))
            for call in response.function_calls
        ],
    )


def _function_response_content(
    calls: list[FunctionCallRequest],
    payloads: list[dict[str, Any]],
) -> types.Content:
    return types.Content(
        role="user",
        parts=[
            types.Part(
                function_response=types.FunctionResponse(id=call.id, name=call.name, response=payload)
            )
            for call, payload in zip(calls, payloads)
        ],
    )


class ChatEngine:
    """Runs chat turns against a model with tools from the connected servers."""

    def __init__(
        self,
        capabilities: CapabilityService,
        model: ModelClient,
        *,
        max_rounds: int = MAX_TOOL_ROUNDS,
        max_result_chars: int = DEFAULT_MAX_RESULT_CHARS,
    ):
        if max_rounds < 1:
            raise ValueError("max_rounds must be at least 1")
        self._capabilities = capabilities
        self._model = model
        self._max_rounds = max_rounds
        self._max_result_chars = max_result_chars
        self._logger = logger.bind(component="ChatEngine")

    async def run_chat_turn(self, history: list[ChatMessage]) -> ChatTurnResult:
        """Answer the last message of ``history``, calling tools as the model asks.

        Raises:
            ModelError: the model request failed
        """
        index = ToolIndex.build(await get_all_tools(self._capabilities))
        system_instruction = build_system_instruction(index)
        declarations = index.declarations
        contents = history_to_contents(history)

        texts: list[str] = []
        records: list[ToolCallRecord] = []
        rounds = 0

        self._logger.info("Chat turn started", tools=len(index), messages=len(history))

        while rounds < self._max_rounds:
            rounds += 1
            response = await self._model.generate(
                contents,
                system_instruction=system_instruction,
                declarations=declarations,
            )
            if response.text:
                texts.append(response.text)
            if not response.function_calls:
                break

            outcomes = await asyncio.gather(
                *(self._execute(call, index) for call in response.function_calls)
            )
            records.extend(record for record, _ in outcomes)

            contents.append(_function_call_content(response))
            contents.append(
                _function_response_content(response.function_calls, [payload for _, payload in outcomes])
            )
        else:
            self._logger.warning("Tool round limit reached", max_rounds=self._max_rounds)

        self._logger.info("Chat turn complete", rounds=rounds, tool_calls=len(records))
        return ChatTurnResult(final_text="\n\n".join(texts), tool_calls=records, rounds=rounds)

    async def _execute(
        self,
        call: FunctionCallRequest,
        index: ToolIndex,
    ) -> tuple[ToolCallRecord, dict[str, Any]]:
        try:
            handle = index.resolve(call.name)
        except UnknownFunctionName as e:
            self._logger.warning("Model requested unknown function", function=call.name)
            record = ToolCallRecord(
                server_name="",
                tool_name=call.name,
                arguments=call.args,
                result={"error": e.message},
            )
            return record, {"error": e.message}

        outcome = await self._capabilities.call_tool(
            handle.server_id, handle.tool.name, handle.decode_arguments(call.args)
        )
        if outcome.success:
            result: Any = outcome.result
            payload = {"result": bound_result(outcome.result, self._max_result_chars)}
        else:
            result = {"error": outcome.error}
            payload = {"error": outcome.error}

        record = ToolCallRecord(
            server_name=handle.server_name,
            tool_name=handle.tool.name,
            arguments=call.args,
            result=result,
        )
        return record, payload
