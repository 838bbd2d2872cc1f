from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass
from typing import Any, Callable

from dealflow.auth import SubjectAuthorizer
from dealflow.config.pipeline import PipelineConfig
from dealflow.logging import clear_log_context, set_log_context
from dealflow.ocr_client.types import OCRClient
from dealflow.pipeline.conversation import (
    DEFAULT_FORCED_FINAL_INSTRUCTION,
    ConversationOutcome,
    ToolCallingConversationEngine,
)
from dealflow.pipeline.failure import FailureHandler
from dealflow.pipeline.quick_context import QuickContextExtractor
from dealflow.pipeline.validate_output import StructuredResult, revalidate_result
from dealflow.prompts.manager import PromptManager
from dealflow.storage.models import JobRecord, SubjectRecord
from dealflow.storage.repo import StorageRepo
from dealflow.streaming.emitter import EventStreamEmitter
from dealflow.utils.deadline import run_with_deadline
from dealflow.utils.error_taxonomy import (
    PersistenceError,
    StageError,
    ValidationError,
    build_error_details,
    classify_error,
    sanitize_error_message,
)
from dealflow.utils.retry import RetryPolicy

logger = logging.getLogger(__name__)

_DEFAULT_PERSONAL_NOTES = "No additional investor notes provided."

_STEP_OCR = "ocr"
_STEP_QUICK_CONTEXT = "quick_context"
_STEP_MEMO = "memo"
_STEP_FINALIZE = "finalize"
_STEP_NUMBERS = {
    "init": 0,
    _STEP_OCR: 1,
    _STEP_QUICK_CONTEXT: 2,
    _STEP_MEMO: 3,
    _STEP_FINALIZE: 4,
    "complete": 4,
}


@dataclass(frozen=True, slots=True)
class AnalysisHandle:
    job_id: str
    subject_id: str
    emitter: EventStreamEmitter
    thread: threading.Thread

    def wait(self, timeout: float | None = None) -> bool:
        self.thread.join(timeout)
        return not self.thread.is_alive()


class _JobProgress:
    """Persists each milestone before telling the client about it."""

    def __init__(
        self,
        *,
        repo: StorageRepo,
        emitter: EventStreamEmitter,
        job_id: str,
        total_steps: int,
    ) -> None:
        self.repo = repo
        self.emitter = emitter
        self.job_id = job_id
        self.total_steps = total_steps
        self.percent = 0

    def advance(self, *, percent: int, step: str, message: str) -> None:
        self.percent = max(self.percent, percent)
        self.repo.update_job_progress(
            job_id=self.job_id,
            progress_percent=self.percent,
            current_step=step,
        )
        self.announce(step=step, message=message)

    def announce(self, *, step: str, message: str) -> None:
        self.emitter.send(
            "status",
            {
                "message": message,
                "progress_percent": self.percent,
                "current_step": step,
                "step": _STEP_NUMBERS.get(step, 0),
                "total_steps": self.total_steps,
            },
        )


class PipelineOrchestrator:
    def __init__(
        self,
        *,
        repo: StorageRepo,
        authorizer: SubjectAuthorizer,
        ocr_client: OCRClient,
        conversation_engine: ToolCallingConversationEngine,
        failure_handler: FailureHandler,
        prompt_manager: PromptManager | None = None,
        quick_context_extractor: QuickContextExtractor | None = None,
        config: PipelineConfig | None = None,
        retry_policy: RetryPolicy | None = None,
        emitter_factory: Callable[[], EventStreamEmitter] = EventStreamEmitter,
    ) -> None:
        self.repo = repo
        self.authorizer = authorizer
        self.ocr_client = ocr_client
        self.conversation_engine = conversation_engine
        self.failure_handler = failure_handler
        self.prompt_manager = prompt_manager or PromptManager()
        self.quick_context_extractor = quick_context_extractor
        self.config = config or PipelineConfig()
        self.retry_policy = retry_policy or RetryPolicy(self.config.retry)
        self.emitter_factory = emitter_factory

    def start(self, *, subject_id: str, user_id: str | None) -> AnalysisHandle:
        """Authorize, create the job and run it on its own thread.

        AuthorizationError is raised before any job exists.
        """
        subject = self.authorizer.authorize(subject_id=subject_id, user_id=user_id)
        job = self.repo.create_job(subject_id=subject.subject_id)
        emitter = self.emitter_factory()
        thread = threading.Thread(
            target=self._execute,
            kwargs={"job_id": job.job_id, "subject": subject, "emitter": emitter},
            name=f"analysis-{job.job_id}",
            daemon=True,
        )
        thread.start()
        logger.info("Started analysis job %s for subject %s", job.job_id, subject_id)
        return AnalysisHandle(
            job_id=job.job_id,
            subject_id=subject.subject_id,
            emitter=emitter,
            thread=thread,
        )

    def run(
        self,
        *,
        subject_id: str,
        user_id: str | None,
        emitter: EventStreamEmitter | None = None,
    ) -> JobRecord:
        """Run one analysis to a terminal state on the calling thread."""
        subject = self.authorizer.authorize(subject_id=subject_id, user_id=user_id)
        job = self.repo.create_job(subject_id=subject.subject_id)
        self._execute(
            job_id=job.job_id,
            subject=subject,
            emitter=emitter or self.emitter_factory(),
        )
        final = self.repo.get_job(job.job_id)
        if final is None:
            raise PersistenceError(f"Job disappeared after run: {job.job_id}")
        return final

    def _execute(
        self,
        *,
        job_id: str,
        subject: SubjectRecord,
        emitter: EventStreamEmitter,
    ) -> None:
        config = self.config
        milestones = config.milestones
        messages = config.messages
        progress = _JobProgress(
            repo=self.repo,
            emitter=emitter,
            job_id=job_id,
            total_steps=config.total_steps,
        )
        set_log_context(job_id=job_id, subject_id=subject.subject_id, stage="init")
        step_name = "init"
        started_at = time.perf_counter()

        try:
            progress.advance(
                percent=milestones.init,
                step=step_name,
                message=messages.initializing,
            )

            step_name = _STEP_OCR
            set_log_context(stage=step_name)
            self.repo.mark_job_processing(job_id=job_id, current_step=step_name)
            self.repo.update_subject_status(
                subject_id=subject.subject_id,
                status="processing",
                analysis_started=True,
            )
            progress.advance(
                percent=milestones.ocr_start,
                step=step_name,
                message=messages.ocr_start,
            )
            document_text = self._run_step(
                job_id=job_id,
                step_name=step_name,
                operation=lambda: self._run_ocr_stage(subject),
            )
            progress.advance(
                percent=milestones.ocr_complete,
                step=step_name,
                message=messages.ocr_complete,
            )

            if config.quick_context_enabled and self.quick_context_extractor is not None:
                step_name = _STEP_QUICK_CONTEXT
                set_log_context(stage=step_name)
                self._run_quick_context_stage(
                    job_id=job_id,
                    subject=subject,
                    document_text=document_text,
                    progress=progress,
                    emitter=emitter,
                )

            step_name = _STEP_MEMO
            set_log_context(stage=step_name)
            progress.advance(
                percent=milestones.conversation_start,
                step=step_name,
                message=messages.conversation_start,
            )
            outcome = self._run_step(
                job_id=job_id,
                step_name=step_name,
                operation=lambda: self._run_conversation_stage(
                    subject=subject,
                    document_text=document_text,
                    progress=progress,
                    emitter=emitter,
                ),
            )
            progress.advance(
                percent=milestones.conversation_complete,
                step=step_name,
                message=messages.conversation_complete,
            )

            step_name = _STEP_FINALIZE
            set_log_context(stage=step_name)
            result = self._run_step(
                job_id=job_id,
                step_name=step_name,
                operation=lambda: self._finalize(
                    job_id=job_id,
                    subject=subject,
                    outcome=outcome,
                    progress=progress,
                ),
            )

            progress.percent = milestones.complete
            progress.announce(step="complete", message=messages.complete)
            emitter.send(
                "done",
                {"success": True, "job_id": job_id, "result": result.to_dict()},
            )
            logger.info(
                "Analysis job %s completed (partial=%s)",
                job_id,
                result.is_partial,
                extra={"duration_ms": _elapsed_ms(started_at)},
            )
        except Exception as error:  # noqa: BLE001
            self.failure_handler.handle(
                job_id=job_id,
                subject_id=subject.subject_id,
                error=error,
                step_name=step_name,
            )
            emitter.send(
                "error",
                {
                    "message": sanitize_error_message(error),
                    "error_code": classify_error(error),
                    "job_id": job_id,
                },
            )
        finally:
            emitter.close()
            clear_log_context()

    def _run_ocr_stage(self, subject: SubjectRecord) -> str:
        document_path = subject.document_path
        if not document_path:
            raise StageError(_STEP_OCR, "Subject has no pitch deck document")

        abandoned = threading.Event()
        try:
            ocr_result = run_with_deadline(
                lambda: self.retry_policy.execute(
                    lambda: self.ocr_client.extract_text(
                        subject_id=subject.subject_id,
                        document_path=document_path,
                    ),
                    label="ocr",
                    cancelled=abandoned,
                ),
                timeout_seconds=self.config.ocr_timeout_seconds,
                abandoned=abandoned,
                label="ocr",
            )
        except Exception as error:  # noqa: BLE001
            raise StageError(_STEP_OCR, build_error_details(error)) from error

        if not ocr_result.success:
            raise StageError(_STEP_OCR, ocr_result.error or "OCR reported failure")
        if not ocr_result.extracted_text.strip():
            raise StageError(_STEP_OCR, "OCR returned empty text")
        return ocr_result.extracted_text

    def _run_quick_context_stage(
        self,
        *,
        job_id: str,
        subject: SubjectRecord,
        document_text: str,
        progress: _JobProgress,
        emitter: EventStreamEmitter,
    ) -> None:
        """Best effort: a failure here is logged and the pipeline moves on."""
        extractor = self.quick_context_extractor
        if extractor is None:
            return

        milestones = self.config.milestones
        messages = self.config.messages
        progress.advance(
            percent=milestones.quick_context_start,
            step=_STEP_QUICK_CONTEXT,
            message=messages.quick_context_start,
        )
        step_id = _safe_record_step_start(
            repo=self.repo, job_id=job_id, step_name=_STEP_QUICK_CONTEXT
        )
        started_at = time.perf_counter()
        abandoned = threading.Event()
        try:
            data = run_with_deadline(
                lambda: extractor.extract(
                    document_text=document_text,
                    subject_id=subject.subject_id,
                    cancelled=abandoned,
                ),
                timeout_seconds=self.config.quick_context_timeout_seconds,
                abandoned=abandoned,
                label="quick_context",
            )
            self.repo.save_quick_context(job_id=job_id, quick_context=data)
        except Exception as error:  # noqa: BLE001
            logger.warning("Quick context skipped: %s", build_error_details(error))
            _safe_record_step_end(
                repo=self.repo,
                step_id=step_id,
                status="error",
                started_at=started_at,
                error_message=str(error),
            )
            return

        _safe_record_step_end(
            repo=self.repo, step_id=step_id, status="success", started_at=started_at
        )
        emitter.send("quick_context", {"data": data})
        progress.advance(
            percent=milestones.quick_context_complete,
            step=_STEP_QUICK_CONTEXT,
            message=messages.quick_context_complete,
        )

    def _run_conversation_stage(
        self,
        *,
        subject: SubjectRecord,
        document_text: str,
        progress: _JobProgress,
        emitter: EventStreamEmitter,
    ) -> ConversationOutcome:
        config = self.config
        prompt_set = self.prompt_manager.load_prompt_set(
            prompt_name=config.memo_prompt_name,
            version=config.memo_prompt_version,
        )
        user_prompt = prompt_set.render_user_prompt(
            document_text=document_text,
            personal_notes=(subject.personal_notes or "").strip()
            or _DEFAULT_PERSONAL_NOTES,
        )
        limits = config.conversation

        def _on_progress(percent: int, message: str) -> None:
            progress.advance(percent=percent, step=_STEP_MEMO, message=message)

        def _on_event(event_type: str, payload: dict[str, Any]) -> None:
            emitter.send(event_type, payload)  # type: ignore[arg-type]

        outcome = self.conversation_engine.converse(
            system_prompt=prompt_set.system_prompt_text,
            user_prompt=user_prompt,
            result_schema=prompt_set.schema,
            max_iterations=limits.max_iterations,
            wall_clock_budget_seconds=limits.wall_clock_budget_seconds,
            max_searches_per_iteration=limits.max_searches_per_iteration,
            min_primary_text_length=config.min_primary_text_length,
            forced_final_instruction=str(
                prompt_set.meta.get("forced_final_instruction")
                or DEFAULT_FORCED_FINAL_INSTRUCTION
            ),
            on_event=_on_event,
            on_progress=_on_progress,
        )
        logger.info(
            "Conversation finished: iterations=%d tool_calls=%d partial=%s",
            outcome.iterations,
            len(outcome.tool_call_log),
            outcome.is_partial,
        )
        return outcome

    def _finalize(
        self,
        *,
        job_id: str,
        subject: SubjectRecord,
        outcome: ConversationOutcome,
        progress: _JobProgress,
    ) -> StructuredResult:
        milestones = self.config.milestones
        messages = self.config.messages
        result = outcome.result

        progress.advance(
            percent=milestones.finalization_start,
            step=_STEP_FINALIZE,
            message=messages.finalization_start,
        )
        validation = revalidate_result(
            result,
            min_primary_text_length=self.config.min_primary_text_length,
        )
        if not validation.valid:
            raise ValidationError(
                "Result failed validation before persistence: "
                + "; ".join(validation.errors),
                errors=validation.errors,
            )

        applied = self.repo.apply_subject_fields(
            subject_id=subject.subject_id,
            fields=result.subject_fields(),
        )
        logger.info("Applied %d extracted fields to subject", len(applied))
        progress.advance(
            percent=milestones.finalization_progress,
            step=_STEP_FINALIZE,
            message=messages.finalization_progress,
        )
        self.repo.update_subject_status(
            subject_id=subject.subject_id,
            status="completed",
            analysis_completed=True,
        )

        stored = result.to_dict()
        stored["tool_call_log"] = [record.to_dict() for record in outcome.tool_call_log]
        completed = self.repo.complete_job(
            job_id=job_id,
            result=stored,
            is_partial=result.is_partial,
        )
        if not completed:
            raise PersistenceError(f"Job {job_id} left processing before completion")
        return result

    def _run_step(self, *, job_id: str, step_name: str, operation: Callable[[], Any]) -> Any:
        step_id = _safe_record_step_start(
            repo=self.repo, job_id=job_id, step_name=step_name
        )
        started_at = time.perf_counter()
        try:
            value = operation()
        except Exception as error:
            _safe_record_step_end(
                repo=self.repo,
                step_id=step_id,
                status="error",
                started_at=started_at,
                error_message=str(error),
            )
            raise
        _safe_record_step_end(
            repo=self.repo, step_id=step_id, status="success", started_at=started_at
        )
        return value


def _safe_record_step_start(*, repo: StorageRepo, job_id: str, step_name: str) -> int | None:
    try:
        return repo.record_step_start(job_id=job_id, step_name=step_name)
    except Exception as error:  # noqa: BLE001
        logger.error(
            "Storage persistence failed in record_step_start: %s",
            build_error_details(error),
        )
        return None


def _safe_record_step_end(
    *,
    repo: StorageRepo,
    step_id: int | None,
    status: str,
    started_at: float,
    error_message: str | None = None,
) -> None:
    if step_id is None:
        return
    try:
        repo.record_step_end(
            step_id=step_id,
            status=status,  # type: ignore[arg-type]
            duration_ms=_elapsed_ms(started_at),
            error_message=error_message,
        )
    except Exception as error:  # noqa: BLE001
        logger.error(
            "Storage persistence failed in record_step_end: %s",
            build_error_details(error),
        )


def _elapsed_ms(started_at: float) -> float:
    return (time.perf_counter() - started_at) * 1000
