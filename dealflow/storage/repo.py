from __future__ import annotations

import json
import logging
import sqlite3
import time
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Iterator, Mapping
from uuid import uuid4

from dealflow.storage.db import connection, init_db
from dealflow.storage.models import (
    SUBJECT_RESULT_FIELDS,
    JobRecord,
    StepStatus,
    SubjectRecord,
    SubjectStatus,
    WorkflowStepRecord,
)
from dealflow.utils.error_taxonomy import PersistenceError

logger = logging.getLogger(__name__)

_ACTIVE_STATUS_SQL = "('pending', 'processing')"


class StorageRepo:
    """Durable job, subject and workflow-step records in SQLite.

    Every call opens its own connection, so one repo can be shared by job
    threads. Job transitions are guarded in SQL: nothing leaves a terminal
    status and progress never goes backwards.
    """

    def __init__(self, db_path: Path | str) -> None:
        self.db_path = Path(db_path)
        init_db(self.db_path)

    def create_subject(
        self,
        *,
        owner_id: str,
        name: str,
        document_path: str | None = None,
        personal_notes: str | None = None,
        status: SubjectStatus = "pending",
        subject_id: str | None = None,
    ) -> SubjectRecord:
        subject_identifier = subject_id or str(uuid4())
        with self._connect("create_subject") as conn:
            conn.execute(
                """
                INSERT OR IGNORE INTO subjects (
                    subject_id,
                    owner_id,
                    name,
                    created_at,
                    status,
                    document_path,
                    personal_notes
                )
                VALUES (?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    subject_identifier,
                    owner_id,
                    name,
                    _utc_now(),
                    status,
                    document_path,
                    personal_notes,
                ),
            )

        subject = self.get_subject(subject_identifier)
        if subject is None:
            raise PersistenceError("Failed to create or load subject")
        return subject

    def get_subject(self, subject_id: str) -> SubjectRecord | None:
        with self._connect("get_subject") as conn:
            row = conn.execute(
                "SELECT * FROM subjects WHERE subject_id = ?",
                (subject_id,),
            ).fetchone()

        if row is None:
            return None
        return _row_to_subject_record(row)

    def update_subject_status(
        self,
        *,
        subject_id: str,
        status: SubjectStatus,
        analysis_started: bool = False,
        analysis_completed: bool = False,
    ) -> None:
        assignments = ["status = ?"]
        params: list[Any] = [status]
        if analysis_started:
            assignments.append("analysis_started_at = ?")
            params.append(_utc_now())
        if analysis_completed:
            assignments.append("analysis_completed_at = ?")
            params.append(_utc_now())
        params.append(subject_id)

        with self._connect("update_subject_status") as conn:
            result = conn.execute(
                f"UPDATE subjects SET {', '.join(assignments)} WHERE subject_id = ?",
                params,
            )

        if result.rowcount == 0:
            raise KeyError(f"Subject not found: {subject_id}")

    def apply_subject_fields(
        self,
        *,
        subject_id: str,
        fields: Mapping[str, Any],
    ) -> list[str]:
        """Write extracted values onto the subject, skipping nulls.

        Returns the names of the columns that were updated.
        """
        updates = {
            name: fields[name]
            for name in SUBJECT_RESULT_FIELDS
            if name in fields and fields[name] is not None
        }
        if not updates:
            return []

        assignments = ", ".join(f"{name} = ?" for name in updates)
        with self._connect("apply_subject_fields") as conn:
            result = conn.execute(
                f"UPDATE subjects SET {assignments} WHERE subject_id = ?",
                (*updates.values(), subject_id),
            )

        if result.rowcount == 0:
            raise KeyError(f"Subject not found: {subject_id}")
        return list(updates)

    def create_job(self, *, subject_id: str, job_id: str | None = None) -> JobRecord:
        job_identifier = job_id or str(uuid4())
        with self._connect("create_job") as conn:
            conn.execute(
                """
                INSERT OR IGNORE INTO jobs (
                    job_id,
                    subject_id,
                    status,
                    progress_percent,
                    current_step,
                    started_at
                )
                VALUES (?, ?, 'pending', 0, 'init', ?)
                """,
                (job_identifier, subject_id, _utc_now()),
            )

        job = self.get_job(job_identifier)
        if job is None:
            raise PersistenceError("Failed to create or load job")
        return job

    def get_job(self, job_id: str) -> JobRecord | None:
        with self._connect("get_job") as conn:
            row = conn.execute(
                "SELECT * FROM jobs WHERE job_id = ?",
                (job_id,),
            ).fetchone()

        if row is None:
            return None
        return _row_to_job_record(row)

    def list_jobs(self, *, subject_id: str) -> list[JobRecord]:
        with self._connect("list_jobs") as conn:
            rows = conn.execute(
                "SELECT * FROM jobs WHERE subject_id = ? ORDER BY started_at ASC",
                (subject_id,),
            ).fetchall()
        return [_row_to_job_record(row) for row in rows]

    def mark_job_processing(self, *, job_id: str, current_step: str) -> bool:
        with self._connect("mark_job_processing") as conn:
            result = conn.execute(
                f"""
                UPDATE jobs
                SET status = 'processing', current_step = ?
                WHERE job_id = ? AND status IN {_ACTIVE_STATUS_SQL}
                """,
                (current_step, job_id),
            )
        return self._check_guarded_update(result, job_id, "mark_job_processing")

    def update_job_progress(
        self,
        *,
        job_id: str,
        progress_percent: int,
        current_step: str,
    ) -> bool:
        bounded = max(0, min(100, int(progress_percent)))
        with self._connect("update_job_progress") as conn:
            result = conn.execute(
                f"""
                UPDATE jobs
                SET
                    progress_percent = MAX(progress_percent, ?),
                    current_step = ?
                WHERE job_id = ? AND status IN {_ACTIVE_STATUS_SQL}
                """,
                (bounded, current_step, job_id),
            )
        return self._check_guarded_update(result, job_id, "update_job_progress")

    def save_quick_context(self, *, job_id: str, quick_context: dict[str, Any]) -> None:
        with self._connect("save_quick_context") as conn:
            result = conn.execute(
                "UPDATE jobs SET quick_context_json = ? WHERE job_id = ?",
                (_to_json_text(quick_context), job_id),
            )

        if result.rowcount == 0:
            raise KeyError(f"Job not found: {job_id}")

    def complete_job(
        self,
        *,
        job_id: str,
        result: dict[str, Any],
        is_partial: bool,
    ) -> bool:
        with self._connect("complete_job") as conn:
            update = conn.execute(
                f"""
                UPDATE jobs
                SET
                    status = 'completed',
                    progress_percent = 100,
                    current_step = 'complete',
                    completed_at = ?,
                    result_json = ?,
                    is_partial = ?
                WHERE job_id = ? AND status IN {_ACTIVE_STATUS_SQL}
                """,
                (_utc_now(), _to_json_text(result), int(is_partial), job_id),
            )
        return self._check_guarded_update(update, job_id, "complete_job")

    def fail_job(
        self,
        *,
        job_id: str,
        error_code: str,
        error_message: str,
    ) -> bool:
        with self._connect("fail_job") as conn:
            update = conn.execute(
                f"""
                UPDATE jobs
                SET
                    status = 'failed',
                    completed_at = ?,
                    error_code = ?,
                    error_message = ?
                WHERE job_id = ? AND status IN {_ACTIVE_STATUS_SQL}
                """,
                (_utc_now(), error_code, error_message, job_id),
            )
        return self._check_guarded_update(update, job_id, "fail_job")

    def record_step_start(self, *, job_id: str, step_name: str) -> int:
        with self._connect("record_step_start") as conn:
            cursor = conn.execute(
                """
                INSERT INTO workflow_steps (job_id, step_name, status, started_at)
                VALUES (?, ?, 'running', ?)
                """,
                (job_id, step_name, _utc_now()),
            )
            step_id = cursor.lastrowid

        if step_id is None:
            raise PersistenceError("Failed to record workflow step")
        return int(step_id)

    def record_step_end(
        self,
        *,
        step_id: int,
        status: StepStatus,
        duration_ms: float,
        error_message: str | None = None,
    ) -> None:
        with self._connect("record_step_end") as conn:
            result = conn.execute(
                """
                UPDATE workflow_steps
                SET status = ?, completed_at = ?, duration_ms = ?, error_message = ?
                WHERE id = ?
                """,
                (status, _utc_now(), duration_ms, error_message, step_id),
            )

        if result.rowcount == 0:
            raise KeyError(f"Workflow step not found: {step_id}")

    def list_steps(self, *, job_id: str) -> list[WorkflowStepRecord]:
        with self._connect("list_steps") as conn:
            rows = conn.execute(
                "SELECT * FROM workflow_steps WHERE job_id = ? ORDER BY id ASC",
                (job_id,),
            ).fetchall()

        return [
            WorkflowStepRecord(
                id=int(row["id"]),
                job_id=str(row["job_id"]),
                step_name=str(row["step_name"]),
                status=row["status"],
                started_at=str(row["started_at"]),
                completed_at=_to_optional_str(row["completed_at"]),
                duration_ms=row["duration_ms"],
                error_message=_to_optional_str(row["error_message"]),
            )
            for row in rows
        ]

    @contextmanager
    def _connect(self, operation: str) -> Iterator[sqlite3.Connection]:
        started = time.perf_counter()
        try:
            with connection(self.db_path) as conn:
                yield conn
        except sqlite3.Error as error:
            logger.error(
                "SQLite %s failed on %s: %s",
                operation,
                self.db_path,
                error,
                extra={"duration_ms": (time.perf_counter() - started) * 1000},
            )
            raise PersistenceError(f"{operation} failed: {error}") from error

    def _check_guarded_update(
        self,
        result: sqlite3.Cursor,
        job_id: str,
        operation: str,
    ) -> bool:
        if result.rowcount > 0:
            return True

        job = self.get_job(job_id)
        if job is None:
            raise KeyError(f"Job not found: {job_id}")
        logger.info(
            "Skipped %s for job %s in terminal status '%s'",
            operation,
            job_id,
            job.status,
        )
        return False


def _utc_now() -> str:
    return datetime.now(timezone.utc).isoformat()


def _to_optional_str(value: object) -> str | None:
    if value is None:
        return None
    text = str(value)
    return text or None


def _to_optional_float(value: object) -> float | None:
    if value is None:
        return None
    return float(value)


def _to_json_text(payload: dict[str, Any]) -> str:
    return json.dumps(payload, ensure_ascii=False)


def _from_json_text(value: object) -> dict[str, Any] | None:
    text = _to_optional_str(value)
    if text is None:
        return None

    try:
        parsed = json.loads(text)
    except json.JSONDecodeError:
        return {"_raw": text}

    if not isinstance(parsed, dict):
        return {"_value": parsed}
    return parsed


def _row_to_subject_record(row: sqlite3.Row) -> SubjectRecord:
    return SubjectRecord(
        subject_id=str(row["subject_id"]),
        owner_id=str(row["owner_id"]),
        name=str(row["name"]),
        created_at=str(row["created_at"]),
        status=row["status"],
        document_path=_to_optional_str(row["document_path"]),
        personal_notes=_to_optional_str(row["personal_notes"]),
        company_name=_to_optional_str(row["company_name"]),
        sector=_to_optional_str(row["sector"]),
        solution_summary=_to_optional_str(row["solution_summary"]),
        amount_raised_cents=_to_optional_float(row["amount_raised_cents"]),
        pre_money_valuation_cents=_to_optional_float(row["pre_money_valuation_cents"]),
        current_arr_cents=_to_optional_float(row["current_arr_cents"]),
        yoy_growth_percent=_to_optional_float(row["yoy_growth_percent"]),
        mom_growth_percent=_to_optional_float(row["mom_growth_percent"]),
        analysis_started_at=_to_optional_str(row["analysis_started_at"]),
        analysis_completed_at=_to_optional_str(row["analysis_completed_at"]),
    )


def _row_to_job_record(row: sqlite3.Row) -> JobRecord:
    return JobRecord(
        job_id=str(row["job_id"]),
        subject_id=str(row["subject_id"]),
        status=row["status"],
        progress_percent=int(row["progress_percent"]),
        current_step=str(row["current_step"]),
        started_at=str(row["started_at"]),
        completed_at=_to_optional_str(row["completed_at"]),
        error_code=_to_optional_str(row["error_code"]),
        error_message=_to_optional_str(row["error_message"]),
        quick_context=_from_json_text(row["quick_context_json"]),
        result=_from_json_text(row["result_json"]),
        is_partial=bool(row["is_partial"]),
    )
