from __future__ import annotations

from pathlib import Path

import pytest

from dealflow.storage.repo import StorageRepo
from dealflow.utils.error_taxonomy import PersistenceError


def _repo_with_subject(tmp_path: Path) -> tuple[StorageRepo, str]:
    repo = StorageRepo(tmp_path / "dealflow.sqlite3")
    subject = repo.create_subject(
        owner_id="user-1",
        name="Acme Robotics",
        document_path=str(tmp_path / "deck.pdf"),
        personal_notes="Met founders at demo day",
    )
    return repo, subject.subject_id


def test_create_subject_and_job_defaults(tmp_path: Path) -> None:
    repo, subject_id = _repo_with_subject(tmp_path)

    subject = repo.get_subject(subject_id)
    job = repo.create_job(subject_id=subject_id)

    assert subject is not None
    assert subject.owner_id == "user-1"
    assert subject.status == "pending"
    assert subject.personal_notes == "Met founders at demo day"
    assert job.status == "pending"
    assert job.progress_percent == 0
    assert job.current_step == "init"
    assert job.is_terminal is False
    assert repo.list_jobs(subject_id=subject_id) == [job]
    assert repo.get_job("missing") is None


def test_progress_never_decreases(tmp_path: Path) -> None:
    repo, subject_id = _repo_with_subject(tmp_path)
    job = repo.create_job(subject_id=subject_id)

    assert repo.mark_job_processing(job_id=job.job_id, current_step="ocr") is True
    assert repo.update_job_progress(job_id=job.job_id, progress_percent=45, current_step="memo")
    assert repo.update_job_progress(job_id=job.job_id, progress_percent=30, current_step="memo")
    assert repo.update_job_progress(job_id=job.job_id, progress_percent=250, current_step="x")

    loaded = repo.get_job(job.job_id)
    assert loaded is not None
    assert loaded.status == "processing"
    assert loaded.progress_percent == 100
    assert loaded.current_step == "x"


def test_complete_job_is_terminal_and_guards_later_transitions(tmp_path: Path) -> None:
    repo, subject_id = _repo_with_subject(tmp_path)
    job = repo.create_job(subject_id=subject_id)
    repo.mark_job_processing(job_id=job.job_id, current_step="ocr")

    completed = repo.complete_job(
        job_id=job.job_id,
        result={"primary_text": "# Memo", "is_partial": True},
        is_partial=True,
    )
    failed = repo.fail_job(
        job_id=job.job_id, error_code="UNKNOWN_ERROR", error_message="late failure"
    )
    progressed = repo.update_job_progress(
        job_id=job.job_id, progress_percent=50, current_step="memo"
    )

    loaded = repo.get_job(job.job_id)
    assert completed is True
    assert failed is False
    assert progressed is False
    assert loaded is not None
    assert loaded.status == "completed"
    assert loaded.progress_percent == 100
    assert loaded.current_step == "complete"
    assert loaded.is_partial is True
    assert loaded.result == {"primary_text": "# Memo", "is_partial": True}
    assert loaded.error_code is None
    assert loaded.completed_at is not None


def test_failed_job_cannot_be_completed(tmp_path: Path) -> None:
    repo, subject_id = _repo_with_subject(tmp_path)
    job = repo.create_job(subject_id=subject_id)

    assert repo.fail_job(
        job_id=job.job_id,
        error_code="OCR_STAGE_ERROR",
        error_message="Stage 'ocr' failed: empty text",
    )
    assert repo.complete_job(job_id=job.job_id, result={}, is_partial=False) is False
    assert repo.mark_job_processing(job_id=job.job_id, current_step="memo") is False

    loaded = repo.get_job(job.job_id)
    assert loaded is not None
    assert loaded.status == "failed"
    assert loaded.error_code == "OCR_STAGE_ERROR"
    assert loaded.error_message == "Stage 'ocr' failed: empty text"


def test_guarded_update_on_missing_job_raises_key_error(tmp_path: Path) -> None:
    repo, _ = _repo_with_subject(tmp_path)

    with pytest.raises(KeyError):
        repo.update_job_progress(job_id="missing", progress_percent=10, current_step="ocr")


def test_apply_subject_fields_skips_nulls_and_unknown_names(tmp_path: Path) -> None:
    repo, subject_id = _repo_with_subject(tmp_path)

    updated = repo.apply_subject_fields(
        subject_id=subject_id,
        fields={
            "company_name": "Acme Robotics",
            "sector": None,
            "amount_raised_cents": 250_000_000.0,
            "memo_markdown": "# not a column",
        },
    )
    repo.update_subject_status(
        subject_id=subject_id, status="completed", analysis_completed=True
    )

    subject = repo.get_subject(subject_id)
    assert updated == ["company_name", "amount_raised_cents"]
    assert subject is not None
    assert subject.company_name == "Acme Robotics"
    assert subject.sector is None
    assert subject.amount_raised_cents == 250_000_000.0
    assert subject.status == "completed"
    assert subject.analysis_completed_at is not None
    assert repo.apply_subject_fields(subject_id=subject_id, fields={"sector": None}) == []


def test_update_subject_status_unknown_subject_raises(tmp_path: Path) -> None:
    repo, _ = _repo_with_subject(tmp_path)

    with pytest.raises(KeyError):
        repo.update_subject_status(subject_id="missing", status="failed")


def test_workflow_steps_are_recorded_in_order(tmp_path: Path) -> None:
    repo, subject_id = _repo_with_subject(tmp_path)
    job = repo.create_job(subject_id=subject_id)

    ocr_step = repo.record_step_start(job_id=job.job_id, step_name="ocr")
    repo.record_step_end(step_id=ocr_step, status="success", duration_ms=12.5)
    memo_step = repo.record_step_start(job_id=job.job_id, step_name="memo")
    repo.record_step_end(
        step_id=memo_step, status="error", duration_ms=3.0, error_message="boom"
    )

    steps = repo.list_steps(job_id=job.job_id)
    assert [step.step_name for step in steps] == ["ocr", "memo"]
    assert [step.status for step in steps] == ["success", "error"]
    assert steps[0].duration_ms == 12.5
    assert steps[1].error_message == "boom"
    assert steps[1].completed_at is not None


def test_quick_context_is_saved_on_job(tmp_path: Path) -> None:
    repo, subject_id = _repo_with_subject(tmp_path)
    job = repo.create_job(subject_id=subject_id)

    repo.save_quick_context(
        job_id=job.job_id, quick_context={"company_name": "Acme", "team_size": 12}
    )

    loaded = repo.get_job(job.job_id)
    assert loaded is not None
    assert loaded.quick_context == {"company_name": "Acme", "team_size": 12}


def test_sqlite_failures_surface_as_persistence_error(tmp_path: Path) -> None:
    repo, _ = _repo_with_subject(tmp_path)

    with pytest.raises(PersistenceError):
        repo.create_job(subject_id="no-such-subject")
