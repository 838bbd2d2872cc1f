from __future__ import annotations

import sqlite3
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator

SCHEMA_SQL = """
PRAGMA foreign_keys = ON;

CREATE TABLE IF NOT EXISTS subjects (
    subject_id TEXT PRIMARY KEY,
    owner_id TEXT NOT NULL,
    name TEXT NOT NULL,
    created_at TEXT NOT NULL,
    status TEXT NOT NULL CHECK (
        status IN ('draft', 'pending', 'processing', 'completed', 'failed')
    ),
    document_path TEXT,
    personal_notes TEXT,
    company_name TEXT,
    sector TEXT,
    solution_summary TEXT,
    amount_raised_cents REAL,
    pre_money_valuation_cents REAL,
    current_arr_cents REAL,
    yoy_growth_percent REAL,
    mom_growth_percent REAL,
    analysis_started_at TEXT,
    analysis_completed_at TEXT
);

CREATE TABLE IF NOT EXISTS jobs (
    job_id TEXT PRIMARY KEY,
    subject_id TEXT NOT NULL,
    status TEXT NOT NULL CHECK (status IN ('pending', 'processing', 'completed', 'failed')),
    progress_percent INTEGER NOT NULL DEFAULT 0 CHECK (
        progress_percent BETWEEN 0 AND 100
    ),
    current_step TEXT NOT NULL DEFAULT 'init',
    started_at TEXT NOT NULL,
    completed_at TEXT,
    error_code TEXT,
    error_message TEXT,
    quick_context_json TEXT,
    result_json TEXT,
    is_partial INTEGER NOT NULL DEFAULT 0 CHECK (is_partial IN (0, 1)),
    FOREIGN KEY (subject_id) REFERENCES subjects (subject_id) ON DELETE CASCADE
);

CREATE TABLE IF NOT EXISTS workflow_steps (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    job_id TEXT NOT NULL,
    step_name TEXT NOT NULL,
    status TEXT NOT NULL CHECK (status IN ('running', 'success', 'error')),
    started_at TEXT NOT NULL,
    completed_at TEXT,
    duration_ms REAL,
    error_message TEXT,
    FOREIGN KEY (job_id) REFERENCES jobs (job_id) ON DELETE CASCADE
);

CREATE INDEX IF NOT EXISTS idx_jobs_subject_id ON jobs (subject_id);
CREATE INDEX IF NOT EXISTS idx_workflow_steps_job_id ON workflow_steps (job_id);
"""


def init_db(db_path: Path) -> None:
    db_path.parent.mkdir(parents=True, exist_ok=True)
    with connection(db_path) as conn:
        conn.executescript(SCHEMA_SQL)


@contextmanager
def connection(db_path: Path) -> Iterator[sqlite3.Connection]:
    conn = sqlite3.connect(db_path, timeout=30.0)
    conn.row_factory = sqlite3.Row
    try:
        conn.execute("PRAGMA foreign_keys = ON;")
        yield conn
        conn.commit()
    except Exception:
        conn.rollback()
        raise
    finally:
        conn.close()
