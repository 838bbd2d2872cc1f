from __future__ import annotations

from pathlib import Path

from dealflow.alerting.webhook import AlertPayload
from dealflow.pipeline.failure import FailureHandler, build_failure_message
from dealflow.storage.repo import StorageRepo
from dealflow.utils.error_taxonomy import StageError


class FakeAlertClient:
    def __init__(self, error: Exception | None = None) -> None:
        self.error = error
        self.calls: list[AlertPayload] = []

    def send_alert(self, payload: AlertPayload) -> None:
        self.calls.append(payload)
        if self.error is not None:
            raise self.error


def _setup(tmp_path: Path) -> tuple[StorageRepo, str, str]:
    repo = StorageRepo(tmp_path / "dealflow.sqlite3")
    subject = repo.create_subject(owner_id="user-1", name="Acme", status="processing")
    job = repo.create_job(subject_id=subject.subject_id)
    repo.mark_job_processing(job_id=job.job_id, current_step="memo")
    return repo, subject.subject_id, job.job_id


def _raise_and_capture(error: Exception) -> Exception:
    try:
        raise error
    except Exception as captured:  # noqa: BLE001
        return captured


def test_failure_marks_job_and_subject_failed_and_alerts_once(tmp_path: Path) -> None:
    repo, subject_id, job_id = _setup(tmp_path)
    alerts = FakeAlertClient()
    handler = FailureHandler(repo=repo, alert_client=alerts)
    error = _raise_and_capture(RuntimeError("reasoning service exploded"))

    first = handler.handle(job_id=job_id, subject_id=subject_id, error=error, step_name="memo")
    second = handler.handle(job_id=job_id, subject_id=subject_id, error=error, step_name="memo")

    job = repo.get_job(job_id)
    subject = repo.get_subject(subject_id)
    assert first is True
    assert second is False
    assert job is not None
    assert job.status == "failed"
    assert job.error_code == "UNKNOWN_ERROR"
    assert job.error_message == "Step 'memo' failed: RuntimeError: reasoning service exploded"
    assert subject is not None
    assert subject.status == "failed"
    assert len(alerts.calls) == 1
    alert = alerts.calls[0]
    assert alert.job_id == job_id
    assert alert.subject_id == subject_id
    assert alert.step == "memo"
    assert "reasoning service exploded" in (alert.stack_trace or "")


def test_completed_job_is_never_overwritten(tmp_path: Path) -> None:
    repo, subject_id, job_id = _setup(tmp_path)
    repo.complete_job(job_id=job_id, result={"primary_text": "# Memo"}, is_partial=False)
    alerts = FakeAlertClient()
    handler = FailureHandler(repo=repo, alert_client=alerts)

    handled = handler.handle(
        job_id=job_id,
        subject_id=subject_id,
        error=RuntimeError("late cleanup failure"),
        step_name="finalize",
    )

    job = repo.get_job(job_id)
    assert handled is False
    assert job is not None
    assert job.status == "completed"
    assert job.error_code is None
    assert alerts.calls == []


def test_alert_delivery_failure_is_swallowed(tmp_path: Path) -> None:
    repo, subject_id, job_id = _setup(tmp_path)
    alerts = FakeAlertClient(error=ConnectionError("webhook down"))
    handler = FailureHandler(repo=repo, alert_client=alerts)

    handled = handler.handle(
        job_id=job_id,
        subject_id=subject_id,
        error=StageError("ocr", "no text extracted"),
        step_name="ocr",
    )

    job = repo.get_job(job_id)
    assert handled is True
    assert len(alerts.calls) == 1
    assert job is not None
    assert job.status == "failed"
    assert job.error_code == "OCR_STAGE_ERROR"
    assert job.error_message == "Stage 'ocr' failed: no text extracted"


def test_missing_subject_does_not_block_job_failure(tmp_path: Path) -> None:
    repo, _, job_id = _setup(tmp_path)
    alerts = FakeAlertClient()
    handler = FailureHandler(repo=repo, alert_client=alerts)

    handled = handler.handle(
        job_id=job_id,
        subject_id="missing-subject",
        error=ValueError("bad"),
        step_name="finalize",
    )

    job = repo.get_job(job_id)
    assert handled is True
    assert job is not None
    assert job.status == "failed"
    assert len(alerts.calls) == 1


def test_failure_message_names_the_step() -> None:
    assert build_failure_message(error=KeyError("x"), step_name="finalize") == (
        "Step 'finalize' failed: KeyError: 'x'"
    )
    assert build_failure_message(
        error=StageError("ocr", "timeout"), step_name="ignored"
    ) == "Stage 'ocr' failed: timeout"
