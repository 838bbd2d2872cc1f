from __future__ import annotations

import logging
from datetime import datetime, timezone

from dealflow.alerting.webhook import AlertClient, AlertPayload
from dealflow.storage.repo import StorageRepo
from dealflow.utils.error_taxonomy import (
    StageError,
    build_error_details,
    classify_error,
    format_stack_trace,
)

logger = logging.getLogger(__name__)


class FailureHandler:
    """Moves a job to `failed` and raises one operator alert.

    A job that already completed is left alone, so a late error from a
    cleanup step can never overwrite a successful result. A job that
    already failed is not alerted twice.
    """

    def __init__(self, *, repo: StorageRepo, alert_client: AlertClient) -> None:
        self.repo = repo
        self.alert_client = alert_client

    def handle(
        self,
        *,
        job_id: str,
        subject_id: str,
        error: BaseException,
        step_name: str,
    ) -> bool:
        """Returns True when this call moved the job to `failed`."""
        current_status = _safe_read_status(self.repo, job_id)
        if current_status == "completed":
            logger.warning(
                "Ignoring failure in step '%s' for completed job %s: %s",
                step_name,
                job_id,
                error,
            )
            return False
        if current_status == "failed":
            logger.info("Job %s already failed; skipping duplicate handling", job_id)
            return False

        error_message = build_failure_message(error=error, step_name=step_name)
        error_code = classify_error(error)
        logger.error(
            "Job %s failed in step '%s': %s",
            job_id,
            step_name,
            error_message,
            extra={"details": build_error_details(error)},
        )

        transitioned = _safe_fail_job(
            repo=self.repo,
            job_id=job_id,
            error_code=error_code,
            error_message=error_message,
        )
        if transitioned is False:
            # lost a race against another terminal transition
            return False

        _safe_mark_subject_failed(repo=self.repo, subject_id=subject_id)
        _safe_send_alert(
            alert_client=self.alert_client,
            payload=AlertPayload(
                subject_id=subject_id,
                job_id=job_id,
                error=error_message,
                step=step_name,
                timestamp=_utc_now(),
                stack_trace=format_stack_trace(error),
            ),
        )
        return True


def build_failure_message(*, error: BaseException, step_name: str) -> str:
    if isinstance(error, StageError):
        return str(error)
    return f"Step '{step_name}' failed: {error.__class__.__name__}: {error}"


def _safe_read_status(repo: StorageRepo, job_id: str) -> str | None:
    try:
        job = repo.get_job(job_id)
    except Exception as error:  # noqa: BLE001
        logger.error("Could not read job %s before failure handling: %s", job_id, error)
        return None
    return job.status if job is not None else None


def _safe_fail_job(
    *,
    repo: StorageRepo,
    job_id: str,
    error_code: str,
    error_message: str,
) -> bool | None:
    try:
        return repo.fail_job(
            job_id=job_id,
            error_code=error_code,
            error_message=error_message,
        )
    except Exception as error:  # noqa: BLE001
        logger.error(
            "Storage persistence failed in fail_job for %s: %s",
            job_id,
            build_error_details(error),
        )
        return None


def _safe_mark_subject_failed(*, repo: StorageRepo, subject_id: str) -> None:
    try:
        repo.update_subject_status(
            subject_id=subject_id,
            status="failed",
            analysis_completed=True,
        )
    except Exception as error:  # noqa: BLE001
        logger.error(
            "Storage persistence failed in update_subject_status for %s: %s",
            subject_id,
            build_error_details(error),
        )


def _safe_send_alert(*, alert_client: AlertClient, payload: AlertPayload) -> None:
    try:
        alert_client.send_alert(payload)
    except Exception as error:  # noqa: BLE001
        logger.error(
            "Failure alert for subject %s could not be delivered: %s",
            payload.subject_id,
            build_error_details(error),
        )


def _utc_now() -> str:
    return datetime.now(tz=timezone.utc).isoformat()
