from __future__ import annotations

from dataclasses import dataclass, field

from dealflow.utils.retry import RetryOptions


@dataclass(frozen=True, slots=True)
class ProgressMilestones:
    init: int = 0
    ocr_start: int = 10
    ocr_complete: int = 25
    quick_context_start: int = 30
    quick_context_complete: int = 40
    conversation_start: int = 45
    conversation_complete: int = 85
    finalization_start: int = 85
    finalization_progress: int = 95
    complete: int = 100


@dataclass(frozen=True, slots=True)
class StatusMessages:
    initializing: str = "Initializing analysis..."
    ocr_start: str = "Extracting text from the pitch deck..."
    ocr_complete: str = "Text extraction complete"
    quick_context_start: str = "Extracting key deal facts..."
    quick_context_complete: str = "Key deal facts ready"
    conversation_start: str = "Generating the investment memo..."
    searching: str = "Researching: {query}"
    conversation_complete: str = "Investment memo generated"
    finalization_start: str = "Saving the analysis..."
    finalization_progress: str = "Updating the deal record..."
    complete: str = "Analysis complete"


@dataclass(frozen=True, slots=True)
class ConversationLimits:
    max_iterations: int = 15
    wall_clock_budget_seconds: float = 600.0
    max_searches_per_iteration: int = 3
    search_timeout_seconds: float = 60.0


@dataclass(frozen=True, slots=True)
class PipelineConfig:
    """Every tunable the orchestrator needs, passed in at construction."""

    milestones: ProgressMilestones = field(default_factory=ProgressMilestones)
    messages: StatusMessages = field(default_factory=StatusMessages)
    retry: RetryOptions = field(default_factory=RetryOptions)
    conversation: ConversationLimits = field(default_factory=ConversationLimits)
    ocr_timeout_seconds: float = 300.0
    min_primary_text_length: int = 200
    quick_context_enabled: bool = True
    quick_context_max_chars: int = 10_000
    quick_context_timeout_seconds: float = 60.0
    memo_prompt_name: str = "investment_memo"
    memo_prompt_version: str = "v001"
    quick_context_prompt_name: str = "quick_context"
    quick_context_prompt_version: str = "v001"
    reasoning_model: str = "gpt-5.1"
    reasoning_params: dict[str, object] = field(default_factory=dict)
    quick_context_model: str = "gpt-5-mini"
    total_steps: int = 4
