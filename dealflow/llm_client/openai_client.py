from __future__ import annotations

import json
import time
from typing import Any, Protocol

from dealflow.llm_client.base import (
    ConversationTurn,
    LLMResult,
    ReasoningResponse,
    TextBlock,
    ToolCallBlock,
    ToolDefinition,
    ToolResultBlock,
)

_BUILTIN_TOOL_CHOICES = frozenset({"auto", "required", "none"})


class OpenAIResponsesService(Protocol):
    def create(self, **kwargs: Any) -> Any: ...


class OpenAIReasoningClient:
    """Tool-calling and JSON-mode calls over the OpenAI Responses API."""

    def __init__(
        self,
        *,
        api_key: str | None = None,
        responses_service: OpenAIResponsesService | None = None,
        request_timeout_seconds: float | None = None,
    ) -> None:
        self._api_key = api_key
        self._responses_service = responses_service
        self._request_timeout_seconds = request_timeout_seconds

    def create_turn(
        self,
        *,
        system_prompt: str,
        messages: list[ConversationTurn],
        tools: list[ToolDefinition],
        tool_choice: str,
        model: str,
        params: dict[str, Any],
    ) -> ReasoningResponse:
        service = self._resolve_service()
        payload = self.build_turn_payload(
            system_prompt=system_prompt,
            messages=messages,
            tools=tools,
            tool_choice=tool_choice,
            model=model,
            params=params,
        )

        response = service.create(**payload)
        response_payload = _to_dict(response)
        return ReasoningResponse(
            blocks=tuple(_parse_output_blocks(response_payload)),
            stop_reason=_extract_stop_reason(response_payload),
            usage=_extract_usage(response=response, payload=response_payload),
            raw_response=response_payload,
        )

    def generate_json(
        self,
        *,
        system_prompt: str,
        user_content: str,
        json_schema: dict[str, Any],
        model: str,
        params: dict[str, Any],
        run_meta: dict[str, Any],
    ) -> LLMResult:
        service = self._resolve_service()
        payload = self.build_json_payload(
            system_prompt=system_prompt,
            user_content=user_content,
            json_schema=json_schema,
            model=model,
            params=params,
            run_meta=run_meta,
        )

        start_time = time.perf_counter()
        response = service.create(**payload)
        elapsed_ms = (time.perf_counter() - start_time) * 1000

        response_payload = _to_dict(response)
        raw_text = _extract_openai_output_text(
            response=response, payload=response_payload
        )
        parsed_json = json.loads(raw_text)
        if not isinstance(parsed_json, dict):
            raise ValueError("OpenAI JSON output must be an object")

        return LLMResult(
            raw_text=raw_text,
            parsed_json=parsed_json,
            raw_response=response_payload,
            usage_raw=_extract_usage(response=response, payload=response_payload),
            timings={"t_llm_total_ms": elapsed_ms},
        )

    @staticmethod
    def build_turn_payload(
        *,
        system_prompt: str,
        messages: list[ConversationTurn],
        tools: list[ToolDefinition],
        tool_choice: str,
        model: str,
        params: dict[str, Any],
    ) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "model": model,
            "instructions": system_prompt,
            "input": _turns_to_input_items(messages),
            "tools": [
                {
                    "type": "function",
                    "name": tool.name,
                    "description": tool.description,
                    "parameters": tool.parameters,
                    "strict": False,
                }
                for tool in tools
            ],
            "tool_choice": _build_tool_choice(tool_choice),
        }
        _apply_common_params(payload, params)
        return payload

    @staticmethod
    def build_json_payload(
        *,
        system_prompt: str,
        user_content: str,
        json_schema: dict[str, Any],
        model: str,
        params: dict[str, Any],
        run_meta: dict[str, Any],
    ) -> dict[str, Any]:
        schema_name = str(run_meta.get("schema_name") or "quick_context")
        payload: dict[str, Any] = {
            "model": model,
            "input": [
                {
                    "role": "system",
                    "content": [{"type": "input_text", "text": system_prompt}],
                },
                {
                    "role": "user",
                    "content": [{"type": "input_text", "text": user_content}],
                },
            ],
            "text": {
                "format": {
                    "type": "json_schema",
                    "name": schema_name,
                    "schema": json_schema,
                    "strict": True,
                }
            },
            "tools": [],
            "tool_choice": "none",
        }
        _apply_common_params(payload, params)
        return payload

    def _resolve_service(self) -> OpenAIResponsesService:
        if self._responses_service is not None:
            return self._responses_service

        if self._api_key is None:
            raise ValueError("OpenAI API key is required when service is not injected")

        try:
            from openai import OpenAI
        except ImportError as error:
            raise RuntimeError("openai package is not installed") from error

        client_kwargs: dict[str, Any] = {"api_key": self._api_key, "max_retries": 0}
        if self._request_timeout_seconds is not None:
            client_kwargs["timeout"] = self._request_timeout_seconds
        client = OpenAI(**client_kwargs)
        self._responses_service = client.responses
        return self._responses_service


def _apply_common_params(payload: dict[str, Any], params: dict[str, Any]) -> None:
    reasoning_effort = str(
        params.get("openai_reasoning_effort")
        or params.get("reasoning_effort")
        or "auto"
    )
    if reasoning_effort in {"low", "medium", "high"}:
        payload["reasoning"] = {"effort": reasoning_effort}

    temperature = params.get("temperature")
    if temperature is not None:
        payload["temperature"] = temperature

    max_output_tokens = params.get("max_output_tokens")
    if max_output_tokens is not None:
        payload["max_output_tokens"] = int(max_output_tokens)


def _build_tool_choice(tool_choice: str) -> str | dict[str, str]:
    if tool_choice in _BUILTIN_TOOL_CHOICES:
        return tool_choice
    return {"type": "function", "name": tool_choice}


def _turns_to_input_items(messages: list[ConversationTurn]) -> list[dict[str, Any]]:
    items: list[dict[str, Any]] = []
    for turn in messages:
        for block in turn.blocks:
            if isinstance(block, ToolCallBlock):
                items.append(
                    {
                        "type": "function_call",
                        "call_id": block.call_id,
                        "name": block.name,
                        "arguments": json.dumps(block.input, ensure_ascii=False),
                    }
                )
            elif isinstance(block, ToolResultBlock):
                output = block.content
                if block.is_error:
                    output = json.dumps({"error": block.content}, ensure_ascii=False)
                items.append(
                    {
                        "type": "function_call_output",
                        "call_id": block.call_id,
                        "output": output,
                    }
                )
            elif turn.role == "assistant":
                items.append(
                    {
                        "role": "assistant",
                        "content": [{"type": "output_text", "text": block.text}],
                    }
                )
            else:
                items.append(
                    {
                        "role": "user",
                        "content": [{"type": "input_text", "text": block.text}],
                    }
                )
    return items


def _parse_output_blocks(payload: dict[str, Any]) -> list[TextBlock | ToolCallBlock]:
    blocks: list[TextBlock | ToolCallBlock] = []
    output = payload.get("output")
    if not isinstance(output, list):
        return blocks

    for item in output:
        if not isinstance(item, dict):
            continue
        item_type = item.get("type")
        if item_type == "function_call":
            blocks.append(
                ToolCallBlock(
                    call_id=str(item.get("call_id") or item.get("id") or ""),
                    name=str(item.get("name") or ""),
                    input=_parse_arguments(item.get("arguments")),
                )
            )
            continue
        if item_type != "message":
            continue
        content = item.get("content")
        if not isinstance(content, list):
            continue
        for content_item in content:
            if not isinstance(content_item, dict):
                continue
            text = content_item.get("text")
            if isinstance(text, str) and text:
                blocks.append(TextBlock(text=text))
    return blocks


def _parse_arguments(raw: Any) -> dict[str, Any]:
    if isinstance(raw, dict):
        return raw
    if not isinstance(raw, str) or not raw.strip():
        return {}
    try:
        parsed = json.loads(raw)
    except json.JSONDecodeError:
        return {"_unparsed_arguments": raw}
    if not isinstance(parsed, dict):
        return {"_unparsed_arguments": raw}
    return parsed


def _extract_stop_reason(payload: dict[str, Any]) -> str | None:
    details = payload.get("incomplete_details")
    if isinstance(details, dict) and details.get("reason"):
        return str(details["reason"])
    status = payload.get("status")
    return str(status) if status is not None else None


def _extract_usage(*, response: Any, payload: dict[str, Any]) -> dict[str, Any]:
    usage = payload.get("usage")
    if isinstance(usage, dict):
        return usage

    response_usage = getattr(response, "usage", None)
    if response_usage is None:
        return {}

    return _to_dict(response_usage)


def _extract_openai_output_text(*, response: Any, payload: dict[str, Any]) -> str:
    output_text = getattr(response, "output_text", None)
    if isinstance(output_text, str) and output_text.strip():
        return output_text

    payload_text = payload.get("output_text")
    if isinstance(payload_text, str) and payload_text.strip():
        return payload_text

    for block in _parse_output_blocks(payload):
        if isinstance(block, TextBlock) and block.text.strip():
            return block.text

    raise ValueError("OpenAI response does not contain output text")


def _to_dict(value: Any) -> dict[str, Any]:
    if isinstance(value, dict):
        return value

    model_dump = getattr(value, "model_dump", None)
    if callable(model_dump):
        dumped = model_dump()
        if isinstance(dumped, dict):
            return dumped

    return {}
