from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Literal

JobStatus = Literal["pending", "processing", "completed", "failed"]
SubjectStatus = Literal["draft", "pending", "processing", "completed", "failed"]
StepStatus = Literal["running", "success", "error"]

TERMINAL_JOB_STATUSES: frozenset[str] = frozenset({"completed", "failed"})
ACTIVE_JOB_STATUSES: frozenset[str] = frozenset({"pending", "processing"})

SUBJECT_RESULT_FIELDS: tuple[str, ...] = (
    "company_name",
    "sector",
    "solution_summary",
    "amount_raised_cents",
    "pre_money_valuation_cents",
    "current_arr_cents",
    "yoy_growth_percent",
    "mom_growth_percent",
)


@dataclass(frozen=True, slots=True)
class SubjectRecord:
    subject_id: str
    owner_id: str
    name: str
    created_at: str
    status: SubjectStatus
    document_path: str | None = None
    personal_notes: str | None = None
    company_name: str | None = None
    sector: str | None = None
    solution_summary: str | None = None
    amount_raised_cents: float | None = None
    pre_money_valuation_cents: float | None = None
    current_arr_cents: float | None = None
    yoy_growth_percent: float | None = None
    mom_growth_percent: float | None = None
    analysis_started_at: str | None = None
    analysis_completed_at: str | None = None


@dataclass(frozen=True, slots=True)
class JobRecord:
    job_id: str
    subject_id: str
    status: JobStatus
    progress_percent: int
    current_step: str
    started_at: str
    completed_at: str | None = None
    error_code: str | None = None
    error_message: str | None = None
    quick_context: dict[str, Any] | None = None
    result: dict[str, Any] | None = None
    is_partial: bool = False

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_JOB_STATUSES


@dataclass(frozen=True, slots=True)
class WorkflowStepRecord:
    id: int
    job_id: str
    step_name: str
    status: StepStatus
    started_at: str
    completed_at: str | None
    duration_ms: float | None
    error_message: str | None
