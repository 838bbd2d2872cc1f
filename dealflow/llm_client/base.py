from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Literal, Protocol

TurnRole = Literal["user", "assistant", "tool_result"]


@dataclass(frozen=True, slots=True)
class TextBlock:
    text: str


@dataclass(frozen=True, slots=True)
class ToolCallBlock:
    call_id: str
    name: str
    input: dict[str, Any]


@dataclass(frozen=True, slots=True)
class ToolResultBlock:
    call_id: str
    content: str
    is_error: bool = False


ContentBlock = TextBlock | ToolCallBlock | ToolResultBlock


@dataclass(frozen=True, slots=True)
class ConversationTurn:
    role: TurnRole
    blocks: tuple[ContentBlock, ...]

    @classmethod
    def user_text(cls, text: str) -> "ConversationTurn":
        return cls(role="user", blocks=(TextBlock(text=text),))


@dataclass(frozen=True, slots=True)
class ToolDefinition:
    name: str
    description: str
    parameters: dict[str, Any]


@dataclass(frozen=True, slots=True)
class ReasoningResponse:
    blocks: tuple[TextBlock | ToolCallBlock, ...]
    stop_reason: str | None = None
    usage: dict[str, Any] = field(default_factory=dict)
    raw_response: dict[str, Any] = field(default_factory=dict)

    @property
    def text_blocks(self) -> list[TextBlock]:
        return [block for block in self.blocks if isinstance(block, TextBlock)]

    @property
    def tool_calls(self) -> list[ToolCallBlock]:
        return [block for block in self.blocks if isinstance(block, ToolCallBlock)]


@dataclass(frozen=True, slots=True)
class LLMResult:
    raw_text: str
    parsed_json: dict[str, Any]
    raw_response: dict[str, Any]
    usage_raw: dict[str, Any]
    timings: dict[str, float]


class ReasoningClient(Protocol):
    def create_turn(
        self,
        *,
        system_prompt: str,
        messages: list[ConversationTurn],
        tools: list[ToolDefinition],
        tool_choice: str,
        model: str,
        params: dict[str, Any],
    ) -> ReasoningResponse: ...


class LLMClient(Protocol):
    def generate_json(
        self,
        *,
        system_prompt: str,
        user_content: str,
        json_schema: dict[str, Any],
        model: str,
        params: dict[str, Any],
        run_meta: dict[str, Any],
    ) -> LLMResult: ...
