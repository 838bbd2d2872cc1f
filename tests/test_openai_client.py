from __future__ import annotations

import json
from typing import Any

import pytest

from dealflow.llm_client.base import (
    ConversationTurn,
    TextBlock,
    ToolCallBlock,
    ToolDefinition,
    ToolResultBlock,
)
from dealflow.llm_client.openai_client import OpenAIReasoningClient


class FakeResponsesService:
    def __init__(self, response: dict[str, Any]) -> None:
        self.response = response
        self.calls: list[dict[str, Any]] = []

    def create(self, **kwargs: Any) -> dict[str, Any]:
        self.calls.append(kwargs)
        return self.response


SEARCH_TOOL = ToolDefinition(
    name="web_search",
    description="Search the web.",
    parameters={"type": "object", "properties": {"query": {"type": "string"}}},
)


def test_create_turn_maps_conversation_and_parses_tool_calls() -> None:
    service = FakeResponsesService(
        {
            "status": "completed",
            "output": [
                {"type": "reasoning", "summary": []},
                {
                    "type": "message",
                    "content": [{"type": "output_text", "text": "Checking competitors."}],
                },
                {
                    "type": "function_call",
                    "call_id": "call-2",
                    "name": "web_search",
                    "arguments": '{"query": "acme robotics competitors"}',
                },
            ],
            "usage": {"input_tokens": 50, "output_tokens": 10, "total_tokens": 60},
        }
    )
    client = OpenAIReasoningClient(responses_service=service)
    messages = [
        ConversationTurn.user_text("Analyze the deck."),
        ConversationTurn(
            role="assistant",
            blocks=(
                TextBlock(text="I will search."),
                ToolCallBlock(call_id="call-1", name="web_search", input={"query": "acme"}),
            ),
        ),
        ConversationTurn(
            role="tool_result",
            blocks=(
                ToolResultBlock(call_id="call-1", content='{"answer": "x"}'),
                ToolResultBlock(call_id="call-9", content="Unknown tool", is_error=True),
            ),
        ),
    ]

    response = client.create_turn(
        system_prompt="You are an analyst.",
        messages=messages,
        tools=[SEARCH_TOOL],
        tool_choice="required",
        model="gpt-5.1",
        params={"openai_reasoning_effort": "medium", "max_output_tokens": "4000"},
    )

    payload = service.calls[0]
    assert payload["model"] == "gpt-5.1"
    assert payload["instructions"] == "You are an analyst."
    assert payload["tool_choice"] == "required"
    assert payload["reasoning"] == {"effort": "medium"}
    assert payload["max_output_tokens"] == 4000
    assert payload["tools"] == [
        {
            "type": "function",
            "name": "web_search",
            "description": "Search the web.",
            "parameters": SEARCH_TOOL.parameters,
            "strict": False,
        }
    ]
    assert payload["input"] == [
        {"role": "user", "content": [{"type": "input_text", "text": "Analyze the deck."}]},
        {
            "role": "assistant",
            "content": [{"type": "output_text", "text": "I will search."}],
        },
        {
            "type": "function_call",
            "call_id": "call-1",
            "name": "web_search",
            "arguments": '{"query": "acme"}',
        },
        {"type": "function_call_output", "call_id": "call-1", "output": '{"answer": "x"}'},
        {
            "type": "function_call_output",
            "call_id": "call-9",
            "output": json.dumps({"error": "Unknown tool"}),
        },
    ]

    assert response.stop_reason == "completed"
    assert response.usage["total_tokens"] == 60
    assert response.text_blocks == [TextBlock(text="Checking competitors.")]
    assert response.tool_calls == [
        ToolCallBlock(
            call_id="call-2",
            name="web_search",
            input={"query": "acme robotics competitors"},
        )
    ]


def test_named_tool_choice_and_unparseable_arguments() -> None:
    service = FakeResponsesService(
        {
            "status": "incomplete",
            "incomplete_details": {"reason": "max_output_tokens"},
            "output": [
                {
                    "type": "function_call",
                    "call_id": "call-1",
                    "name": "emit_result",
                    "arguments": '{"memo_markdown": "# trunc',
                }
            ],
        }
    )
    client = OpenAIReasoningClient(responses_service=service)

    response = client.create_turn(
        system_prompt="s",
        messages=[ConversationTurn.user_text("u")],
        tools=[],
        tool_choice="emit_result",
        model="gpt-5.1",
        params={},
    )

    assert service.calls[0]["tool_choice"] == {"type": "function", "name": "emit_result"}
    assert "reasoning" not in service.calls[0]
    assert response.stop_reason == "max_output_tokens"
    assert response.tool_calls[0].input == {"_unparsed_arguments": '{"memo_markdown": "# trunc'}


def test_generate_json_uses_schema_format_and_parses_output_text() -> None:
    service = FakeResponsesService(
        {
            "output_text": '{"company_name": "Acme", "team_size": 8}',
            "usage": {"input_tokens": 10, "output_tokens": 5},
        }
    )
    client = OpenAIReasoningClient(responses_service=service)

    result = client.generate_json(
        system_prompt="Extract facts.",
        user_content="deck text",
        json_schema={"type": "object"},
        model="gpt-5-mini",
        params={"temperature": 0},
        run_meta={"schema_name": "quick_context"},
    )

    payload = service.calls[0]
    assert payload["text"]["format"] == {
        "type": "json_schema",
        "name": "quick_context",
        "schema": {"type": "object"},
        "strict": True,
    }
    assert payload["temperature"] == 0
    assert payload["input"][0]["role"] == "system"
    assert payload["input"][1]["content"][0]["text"] == "deck text"
    assert result.parsed_json == {"company_name": "Acme", "team_size": 8}
    assert result.usage_raw == {"input_tokens": 10, "output_tokens": 5}
    assert "t_llm_total_ms" in result.timings


def test_generate_json_rejects_non_object_output() -> None:
    client = OpenAIReasoningClient(
        responses_service=FakeResponsesService({"output_text": "[1, 2]"})
    )

    with pytest.raises(ValueError, match="must be an object"):
        client.generate_json(
            system_prompt="s",
            user_content="u",
            json_schema={},
            model="gpt-5-mini",
            params={},
            run_meta={},
        )


def test_missing_api_key_without_service_is_rejected() -> None:
    client = OpenAIReasoningClient()

    with pytest.raises(ValueError, match="API key"):
        client.create_turn(
            system_prompt="s",
            messages=[],
            tools=[],
            tool_choice="auto",
            model="gpt-5.1",
            params={},
        )
