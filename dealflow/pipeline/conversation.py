from __future__ import annotations

import json
import logging
import threading
import time
from dataclasses import dataclass, field, replace
from typing import Any, Callable

from dealflow.llm_client.base import (
    ConversationTurn,
    ReasoningClient,
    ReasoningResponse,
    TextBlock,
    ToolDefinition,
    ToolResultBlock,
)
from dealflow.pipeline.tools import (
    EMIT_RESULT_TOOL_NAME,
    SEARCH_TOOL_NAME,
    EmitResultInvocation,
    InvalidInvocation,
    SearchInvocation,
    ToolCallRecord,
    build_tool_definitions,
    parse_tool_call,
)
from dealflow.pipeline.validate_output import (
    PRIMARY_TEXT_FIELD,
    PartialReason,
    PartialResult,
    StructuredResult,
    build_partial_result,
    build_structured_result,
)
from dealflow.search_client.linkup import SearchClient, SearchResult
from dealflow.utils.deadline import SafetyTimer, run_with_deadline
from dealflow.utils.error_taxonomy import (
    ConversationError,
    DeadlineExceeded,
    PipelineError,
    ValidationError,
)
from dealflow.utils.retry import RetryPolicy

logger = logging.getLogger(__name__)

EventCallback = Callable[[str, dict[str, Any]], None]
ProgressCallback = Callable[[int, str], None]

DEFAULT_FORCED_FINAL_INSTRUCTION = (
    "You have reached the research limit. Call emit_result now with the best "
    "complete result you can produce from the information gathered so far."
)
_USAGE_KEYS = ("input_tokens", "output_tokens", "total_tokens")


class ConversationBudgetExpired(PipelineError):
    """Internal signal: the wall-clock safety timer fired."""


@dataclass
class ConversationState:
    messages: list[ConversationTurn]
    max_iterations: int
    iteration_count: int = 0
    tool_call_log: list[ToolCallRecord] = field(default_factory=list)
    assistant_text: list[str] = field(default_factory=list)
    search_results: list[SearchResult] = field(default_factory=list)
    last_result_payload: dict[str, Any] | None = None
    usage: dict[str, int] = field(default_factory=dict)
    forced_final_call: bool = False


@dataclass(frozen=True, slots=True)
class ConversationOutcome:
    result: StructuredResult
    tool_call_log: tuple[ToolCallRecord, ...]
    iterations: int
    forced_final_call: bool
    usage: dict[str, int]
    elapsed_seconds: float

    @property
    def is_partial(self) -> bool:
        return self.result.is_partial


class ToolCallingConversationEngine:
    """Bounded tool-calling dialogue that ends in a structured or partial result.

    Iterations are strictly sequential. A safety timer runs next to the loop;
    model and search calls are awaited on worker threads so the loop can
    give up on an in-flight call as soon as the timer fires.
    """

    def __init__(
        self,
        *,
        reasoning_client: ReasoningClient,
        search_client: SearchClient,
        model: str,
        params: dict[str, Any] | None = None,
        retry_policy: RetryPolicy | None = None,
        search_timeout_seconds: float = 60.0,
        progress_range: tuple[int, int] = (45, 85),
        search_status_template: str = "Researching: {query}",
        timer_factory: Callable[[float], SafetyTimer] = SafetyTimer,
    ) -> None:
        self.reasoning_client = reasoning_client
        self.search_client = search_client
        self.model = model
        self.params = dict(params or {})
        self.retry_policy = retry_policy or RetryPolicy()
        self.search_timeout_seconds = search_timeout_seconds
        self.progress_range = progress_range
        self.search_status_template = search_status_template
        self.timer_factory = timer_factory

    def converse(
        self,
        *,
        system_prompt: str,
        user_prompt: str,
        result_schema: dict[str, Any],
        max_iterations: int,
        wall_clock_budget_seconds: float,
        max_searches_per_iteration: int = 3,
        min_primary_text_length: int = 1,
        forced_final_instruction: str = DEFAULT_FORCED_FINAL_INSTRUCTION,
        on_event: EventCallback | None = None,
        on_progress: ProgressCallback | None = None,
    ) -> ConversationOutcome:
        if max_iterations < 1:
            raise ValueError("max_iterations must be >= 1")

        state = ConversationState(
            messages=[ConversationTurn.user_text(user_prompt)],
            max_iterations=max_iterations,
        )
        started = time.monotonic()
        timer = self.timer_factory(wall_clock_budget_seconds)
        timer.start()
        run = _ConversationRun(
            engine=self,
            state=state,
            timer=timer,
            system_prompt=system_prompt,
            result_schema=result_schema,
            max_searches_per_iteration=max_searches_per_iteration,
            min_primary_text_length=min_primary_text_length,
            on_event=on_event,
            on_progress=on_progress,
        )
        try:
            try:
                result = run.loop(forced_final_instruction=forced_final_instruction)
            except ConversationBudgetExpired:
                logger.warning(
                    "Conversation budget of %.1fs expired after %d iterations",
                    wall_clock_budget_seconds,
                    state.iteration_count,
                )
                result = run.partial_result(reason="time_budget")
        finally:
            timer.cancel()

        elapsed = time.monotonic() - started
        return ConversationOutcome(
            result=result,
            tool_call_log=tuple(state.tool_call_log),
            iterations=state.iteration_count,
            forced_final_call=state.forced_final_call,
            usage=dict(state.usage),
            elapsed_seconds=elapsed,
        )


class _ConversationRun:
    def __init__(
        self,
        *,
        engine: ToolCallingConversationEngine,
        state: ConversationState,
        timer: SafetyTimer,
        system_prompt: str,
        result_schema: dict[str, Any],
        max_searches_per_iteration: int,
        min_primary_text_length: int,
        on_event: EventCallback | None,
        on_progress: ProgressCallback | None,
    ) -> None:
        self.engine = engine
        self.state = state
        self.timer = timer
        self.system_prompt = system_prompt
        self.result_schema = result_schema
        self.max_searches_per_iteration = max_searches_per_iteration
        self.min_primary_text_length = min_primary_text_length
        self.on_event = on_event
        self.on_progress = on_progress
        self.started = time.monotonic()
        self.tools = build_tool_definitions(result_schema=result_schema)
        self.final_tools = build_tool_definitions(
            result_schema=result_schema, include_search=False
        )

    def loop(self, *, forced_final_instruction: str) -> StructuredResult:
        state = self.state
        while state.iteration_count < state.max_iterations:
            self._check_budget()
            state.iteration_count += 1
            logger.info(
                "Conversation iteration %d/%d",
                state.iteration_count,
                state.max_iterations,
            )

            response = self._call_model(tools=self.tools, tool_choice="required")
            self._record_response(response)

            if not response.tool_calls:
                raise ConversationError(
                    "Reasoning service answered without calling a tool "
                    f"(iteration {state.iteration_count})"
                )

            result = self._handle_tool_calls(response)
            if result is not None:
                return result

            self._report_progress(self._iteration_percent(), "conversation")

        return self._forced_final_call(forced_final_instruction)

    def partial_result(self, *, reason: PartialReason) -> PartialResult:
        state = self.state
        payload = state.last_result_payload or {}
        primary_text = _partial_primary_text(state, reason=reason)
        return build_partial_result(
            primary_text=primary_text,
            reason=reason,
            known_fields=payload,
            metadata=self._metadata(partial_reason=reason),
        )

    def _forced_final_call(self, instruction: str) -> StructuredResult:
        state = self.state
        state.forced_final_call = True
        state.messages.append(ConversationTurn.user_text(instruction))
        logger.info(
            "Iteration limit %d reached; forcing %s",
            state.max_iterations,
            EMIT_RESULT_TOOL_NAME,
        )

        try:
            self._check_budget()
            response = self._call_model(
                tools=self.final_tools,
                tool_choice=EMIT_RESULT_TOOL_NAME,
            )
            self._record_response(response)
            for call in response.tool_calls:
                invocation = parse_tool_call(call)
                if isinstance(invocation, EmitResultInvocation):
                    return self._accept_result(invocation)
            raise ConversationError("Forced final call did not emit a result")
        except ConversationBudgetExpired:
            raise
        except Exception as error:  # noqa: BLE001
            logger.warning("Forced final call failed, returning partial result: %s", error)
            return self.partial_result(reason="max_iterations")

    def _handle_tool_calls(self, response: ReasoningResponse) -> StructuredResult | None:
        results: list[ToolResultBlock] = []
        searches_this_iteration = 0

        for call in response.tool_calls:
            invocation = parse_tool_call(call)

            if isinstance(invocation, EmitResultInvocation):
                return self._accept_result(invocation)

            if isinstance(invocation, SearchInvocation):
                if searches_this_iteration >= self.max_searches_per_iteration:
                    results.append(
                        self._tool_error(
                            call_id=invocation.call_id,
                            name=call.name,
                            tool_input=call.input,
                            message=(
                                "Search limit reached for this turn "
                                f"({self.max_searches_per_iteration})"
                            ),
                        )
                    )
                    continue
                searches_this_iteration += 1
                results.append(self._run_search(invocation, tool_input=call.input))
                continue

            if isinstance(invocation, InvalidInvocation):
                if invocation.name == EMIT_RESULT_TOOL_NAME:
                    self.state.tool_call_log.append(
                        ToolCallRecord(
                            name=invocation.name,
                            input=dict(call.input),
                            error=invocation.reason,
                        )
                    )
                    raise ValidationError(
                        f"{EMIT_RESULT_TOOL_NAME} payload rejected: {invocation.reason}",
                        errors=[invocation.reason],
                    )
                results.append(
                    self._tool_error(
                        call_id=invocation.call_id,
                        name=invocation.name,
                        tool_input=call.input,
                        message=invocation.reason,
                    )
                )
                continue

            results.append(
                self._tool_error(
                    call_id=invocation.call_id,
                    name=invocation.name,
                    tool_input=call.input,
                    message=f"Unknown tool: {invocation.name}",
                )
            )

        self.state.messages.append(
            ConversationTurn(role="tool_result", blocks=tuple(results))
        )
        return None

    def _accept_result(self, invocation: EmitResultInvocation) -> StructuredResult:
        state = self.state
        state.last_result_payload = dict(invocation.payload)
        try:
            result = build_structured_result(
                payload=invocation.payload,
                schema=self.result_schema,
                min_primary_text_length=self.min_primary_text_length,
            )
        except ValidationError as error:
            state.tool_call_log.append(
                ToolCallRecord(
                    name=EMIT_RESULT_TOOL_NAME,
                    input=dict(invocation.payload),
                    error=str(error),
                )
            )
            raise

        state.tool_call_log.append(
            ToolCallRecord(
                name=EMIT_RESULT_TOOL_NAME,
                input=dict(invocation.payload),
                output={"accepted": True},
            )
        )
        logger.info(
            "Result accepted after %d iterations (%d characters)",
            state.iteration_count,
            len(result.primary_text),
        )
        return replace(result, metadata=self._metadata())

    def _run_search(
        self,
        invocation: SearchInvocation,
        *,
        tool_input: dict[str, Any],
    ) -> ToolResultBlock:
        self._report_progress(
            self._iteration_percent(),
            self.engine.search_status_template.format(query=invocation.query),
        )
        abandoned = threading.Event()
        try:
            result = run_with_deadline(
                lambda: self.engine.search_client.search(
                    query=invocation.query,
                    depth=invocation.depth,
                    cancelled=abandoned,
                ),
                timeout_seconds=self.engine.search_timeout_seconds,
                cancelled=self.timer.expired,
                abandoned=abandoned,
                label="web_search",
            )
        except DeadlineExceeded as error:
            self._check_budget()
            result = SearchResult(
                query=invocation.query,
                depth=invocation.depth,
                error=f"Search timed out: {error}",
            )
        except Exception as error:  # noqa: BLE001
            logger.warning("Search collaborator raised: %s", error)
            result = SearchResult(
                query=invocation.query,
                depth=invocation.depth,
                error=f"Search failed: {error}",
            )

        self.state.search_results.append(result)
        tool_payload = result.to_tool_payload()
        self.state.tool_call_log.append(
            ToolCallRecord(
                name=SEARCH_TOOL_NAME,
                input=dict(tool_input),
                output=tool_payload if result.ok else None,
                error=result.error,
            )
        )
        return ToolResultBlock(
            call_id=invocation.call_id,
            content=_json_text(tool_payload),
            is_error=not result.ok,
        )

    def _tool_error(
        self,
        *,
        call_id: str,
        name: str,
        tool_input: dict[str, Any],
        message: str,
    ) -> ToolResultBlock:
        self.state.tool_call_log.append(
            ToolCallRecord(name=name, input=dict(tool_input), error=message)
        )
        return ToolResultBlock(call_id=call_id, content=message, is_error=True)

    def _call_model(
        self,
        *,
        tools: list[ToolDefinition],
        tool_choice: str,
    ) -> ReasoningResponse:
        engine = self.engine
        messages = list(self.state.messages)

        def _create_turn() -> ReasoningResponse:
            return engine.reasoning_client.create_turn(
                system_prompt=self.system_prompt,
                messages=messages,
                tools=tools,
                tool_choice=tool_choice,
                model=engine.model,
                params=engine.params,
            )

        try:
            return run_with_deadline(
                lambda: engine.retry_policy.execute(
                    _create_turn,
                    label="reasoning_call",
                    cancelled=self.timer.expired,
                ),
                cancelled=self.timer.expired,
                label="reasoning_call",
            )
        except DeadlineExceeded:
            self._check_budget()
            raise

    def _record_response(self, response: ReasoningResponse) -> None:
        state = self.state
        state.messages.append(ConversationTurn(role="assistant", blocks=response.blocks))
        for key in _USAGE_KEYS:
            value = response.usage.get(key)
            if isinstance(value, int):
                state.usage[key] = state.usage.get(key, 0) + value

        for block in response.blocks:
            if isinstance(block, TextBlock) and block.text:
                state.assistant_text.append(block.text)
                if self.on_event is not None:
                    self.on_event("delta", {"text": block.text})

    def _check_budget(self) -> None:
        if self.timer.expired.is_set():
            raise ConversationBudgetExpired("Conversation wall-clock budget expired")

    def _iteration_percent(self) -> int:
        start, end = self.engine.progress_range
        completed = min(self.state.iteration_count, self.state.max_iterations)
        span = (end - start) * completed / (self.state.max_iterations + 1)
        return int(start + span)

    def _report_progress(self, percent: int, message: str) -> None:
        if self.on_progress is not None:
            self.on_progress(percent, message)

    def _metadata(self, *, partial_reason: str | None = None) -> dict[str, Any]:
        state = self.state
        queries = [result.query for result in state.search_results]
        metadata: dict[str, Any] = {
            "iterations": state.iteration_count,
            "forced_final_call": state.forced_final_call,
            "tool_calls": len(state.tool_call_log),
            "search_count": len(queries),
            "searched_queries": queries,
            "usage": dict(state.usage),
            "processing_time_seconds": round(time.monotonic() - self.started, 3),
        }
        if partial_reason is not None:
            metadata["partial_reason"] = partial_reason
        return metadata


def _partial_primary_text(state: ConversationState, *, reason: PartialReason) -> str:
    payload_text = (state.last_result_payload or {}).get(PRIMARY_TEXT_FIELD)
    if isinstance(payload_text, str) and payload_text.strip():
        return payload_text

    assistant_text = "\n\n".join(
        text.strip() for text in state.assistant_text if text.strip()
    )
    if assistant_text:
        return assistant_text

    findings = [result for result in state.search_results if result.ok and result.answer]
    if findings:
        sections = ["# Research notes (incomplete analysis)"]
        for result in findings:
            sections.append(f"## {result.query}\n\n{result.answer.strip()}")
        return "\n\n".join(sections)

    if reason == "time_budget":
        return "Analysis stopped: the time budget ran out before a memo was produced."
    return "Analysis stopped: the research limit was reached before a memo was produced."


def _json_text(payload: dict[str, Any]) -> str:
    return json.dumps(payload, ensure_ascii=False)
