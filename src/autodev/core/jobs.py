"""Execution job records."""

import sqlite3
import uuid
from datetime import datetime

from autodev.db.models import ACTIVE_JOB_STATUSES, JOB_PHASES, JOB_STATUSES, ExecutionJob


def new_job_id() -> str:
    return str(uuid.uuid4())


def create_job(
    db: sqlite3.Connection,
    ticket_id: str,
    phase: str,
    log_path: str,
    job_id: str | None = None,
) -> ExecutionJob:
    """Create a pending job for a ticket."""
    if phase not in JOB_PHASES:
        raise ValueError(f"Unknown job phase: {phase}")
    job_id = job_id or new_job_id()
    db.execute(
        """INSERT INTO execution_jobs (id, ticket_id, phase, status, log_path)
           VALUES (?, ?, ?, 'pending', ?)""",
        (job_id, ticket_id, phase, log_path),
    )
    db.commit()
    return get_job(db, job_id)


def get_job(db: sqlite3.Connection, job_id: str) -> ExecutionJob | None:
    row = db.execute("SELECT * FROM execution_jobs WHERE id = ?", (job_id,)).fetchone()
    if not row:
        return None
    return _row_to_job(row)


def list_jobs_for_ticket(db: sqlite3.Connection, ticket_id: str) -> list[ExecutionJob]:
    """All jobs of a ticket in creation order."""
    rows = db.execute(
        "SELECT * FROM execution_jobs WHERE ticket_id = ? ORDER BY rowid ASC",
        (ticket_id,),
    ).fetchall()
    return [_row_to_job(r) for r in rows]


def list_active_jobs(db: sqlite3.Connection) -> list[ExecutionJob]:
    rows = db.execute(
        "SELECT * FROM execution_jobs WHERE status IN (?, ?) ORDER BY rowid ASC",
        ACTIVE_JOB_STATUSES,
    ).fetchall()
    return [_row_to_job(r) for r in rows]


def update_job_status(
    db: sqlite3.Connection,
    job_id: str,
    status: str,
    exit_code: int | None = None,
    worker_id: str | None = None,
) -> ExecutionJob | None:
    """Move a job to ``status``, stamping start/end times as appropriate."""
    if status not in JOB_STATUSES:
        raise ValueError(f"Unknown job status: {status}")
    set_parts = ["status = ?"]
    values: list = [status]
    if status == "running":
        set_parts.append("started_at = datetime('now')")
    if status in ("completed", "failed"):
        set_parts.append("completed_at = datetime('now')")
        set_parts.append("exit_code = ?")
        values.append(exit_code)
    if worker_id is not None:
        set_parts.append("worker_id = ?")
        values.append(worker_id)
    values.append(job_id)
    db.execute(f"UPDATE execution_jobs SET {', '.join(set_parts)} WHERE id = ?", values)
    db.commit()
    return get_job(db, job_id)


def increment_retry(db: sqlite3.Connection, job_id: str) -> int:
    """Bump the job's retry counter and return the new value."""
    db.execute(
        "UPDATE execution_jobs SET retry_count = retry_count + 1 WHERE id = ?",
        (job_id,),
    )
    db.commit()
    row = db.execute("SELECT retry_count FROM execution_jobs WHERE id = ?", (job_id,)).fetchone()
    return row["retry_count"] if row else 0


def _row_to_job(row: sqlite3.Row) -> ExecutionJob:
    return ExecutionJob(
        id=row["id"],
        ticket_id=row["ticket_id"],
        phase=row["phase"],
        status=row["status"],
        log_path=row["log_path"],
        retry_count=row["retry_count"],
        worker_id=row["worker_id"],
        exit_code=row["exit_code"],
        started_at=_parse_dt(row["started_at"]),
        completed_at=_parse_dt(row["completed_at"]),
    )


def _parse_dt(val: str | None) -> datetime | None:
    if val is None:
        return None
    return datetime.fromisoformat(val)
