from __future__ import annotations

import json
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

from dealflow.llm_client.base import ToolCallBlock, ToolDefinition
from dealflow.search_client.linkup import SearchDepth

SEARCH_TOOL_NAME = "web_search"
EMIT_RESULT_TOOL_NAME = "emit_result"
SEARCH_DEPTHS: frozenset[str] = frozenset({"standard", "deep"})
MAX_QUERY_LENGTH = 400

SEARCH_TOOL_PARAMETERS: dict[str, Any] = {
    "type": "object",
    "properties": {
        "query": {
            "type": "string",
            "description": "Search query in natural language.",
        },
        "depth": {
            "type": "string",
            "enum": ["standard", "deep"],
            "description": "'standard' for quick facts, 'deep' for broad research.",
        },
    },
    "required": ["query"],
}


@dataclass(frozen=True, slots=True)
class SearchInvocation:
    call_id: str
    query: str
    depth: SearchDepth


@dataclass(frozen=True, slots=True)
class EmitResultInvocation:
    call_id: str
    payload: dict[str, Any]


@dataclass(frozen=True, slots=True)
class InvalidInvocation:
    call_id: str
    name: str
    reason: str


@dataclass(frozen=True, slots=True)
class UnknownInvocation:
    call_id: str
    name: str


ToolInvocation = (
    SearchInvocation | EmitResultInvocation | InvalidInvocation | UnknownInvocation
)


@dataclass(frozen=True, slots=True)
class ToolCallRecord:
    name: str
    input: dict[str, Any]
    output: dict[str, Any] | None = None
    error: str | None = None
    timestamp: str = field(
        default_factory=lambda: datetime.now(timezone.utc).isoformat()
    )

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "input": self.input,
            "output": self.output,
            "error": self.error,
            "timestamp": self.timestamp,
        }


def build_tool_definitions(
    *,
    result_schema: dict[str, Any],
    include_search: bool = True,
) -> list[ToolDefinition]:
    tools: list[ToolDefinition] = []
    if include_search:
        tools.append(
            ToolDefinition(
                name=SEARCH_TOOL_NAME,
                description=(
                    "Search the web for market data, competitors, founders and news."
                ),
                parameters=SEARCH_TOOL_PARAMETERS,
            )
        )
    parameters = {
        key: value for key, value in result_schema.items() if key not in {"$schema", "title"}
    }
    tools.append(
        ToolDefinition(
            name=EMIT_RESULT_TOOL_NAME,
            description="Submit the complete investment memo and extracted deal fields.",
            parameters=parameters,
        )
    )
    return tools


def parse_tool_call(call: ToolCallBlock) -> ToolInvocation:
    if call.name == SEARCH_TOOL_NAME:
        return _parse_search(call)
    if call.name == EMIT_RESULT_TOOL_NAME:
        if "_unparsed_arguments" in call.input:
            return InvalidInvocation(
                call_id=call.call_id,
                name=call.name,
                reason="Arguments are not valid JSON",
            )
        return EmitResultInvocation(call_id=call.call_id, payload=dict(call.input))
    return UnknownInvocation(call_id=call.call_id, name=call.name)


def normalize_query(raw: Any) -> str:
    """Coerce a loosely typed query to one search string.

    Raises ValueError for shapes that cannot be a query or come out empty.
    """
    if isinstance(raw, str):
        query = raw.strip()
    elif isinstance(raw, list):
        query = " ".join(str(item).strip() for item in raw if str(item).strip())
    elif isinstance(raw, dict):
        query = json.dumps(raw, ensure_ascii=False, sort_keys=True)
    else:
        raise ValueError("Invalid query format - must be a string")

    if not query:
        raise ValueError("Empty query")
    return query[:MAX_QUERY_LENGTH]


def _parse_search(call: ToolCallBlock) -> SearchInvocation | InvalidInvocation:
    try:
        query = normalize_query(call.input.get("query"))
    except ValueError as error:
        return InvalidInvocation(call_id=call.call_id, name=call.name, reason=str(error))

    depth = str(call.input.get("depth") or "standard").strip().lower()
    if depth not in SEARCH_DEPTHS:
        depth = "standard"
    return SearchInvocation(call_id=call.call_id, query=query, depth=depth)  # type: ignore[arg-type]
