"""Analytics events and aggregate job statistics."""

import json
import sqlite3
from datetime import datetime, timedelta, timezone

from autodev.db.models import AnalyticsEvent, DailyStat, RecentJob


def record(
    db: sqlite3.Connection,
    event_type: str,
    data: dict | None = None,
    ticket_id: str | None = None,
    project_id: str | None = None,
):
    """Append an analytics event."""
    db.execute(
        """INSERT INTO analytics_events (ticket_id, project_id, event_type, data_json)
           VALUES (?, ?, ?, ?)""",
        (ticket_id, project_id, event_type, json.dumps(data or {})),
    )
    db.commit()


def list_events(
    db: sqlite3.Connection,
    ticket_id: str | None = None,
    event_type: str | None = None,
    limit: int = 100,
) -> list[AnalyticsEvent]:
    query = "SELECT * FROM analytics_events WHERE 1=1"
    params: list = []
    if ticket_id:
        query += " AND ticket_id = ?"
        params.append(ticket_id)
    if event_type:
        query += " AND event_type = ?"
        params.append(event_type)
    query += " ORDER BY id ASC LIMIT ?"
    params.append(limit)
    rows = db.execute(query, params).fetchall()
    return [
        AnalyticsEvent(
            id=r["id"],
            event_type=r["event_type"],
            data=json.loads(r["data_json"] or "{}"),
            ticket_id=r["ticket_id"],
            project_id=r["project_id"],
            created_at=_parse_dt(r["created_at"]),
        )
        for r in rows
    ]


def weekly_summary(db: sqlite3.Connection, project_id: str | None = None) -> list[DailyStat]:
    """Completed execute jobs per UTC day for the last seven days, oldest first.

    Days without jobs are included with a zero count.
    """
    today = datetime.now(timezone.utc).date()
    first_day = today - timedelta(days=6)

    query = """SELECT substr(j.completed_at, 1, 10) AS day, COUNT(*) AS n
               FROM execution_jobs j JOIN tickets t ON j.ticket_id = t.id
               WHERE j.phase = 'execute' AND j.status = 'completed'
                 AND j.completed_at >= ?"""
    params: list = [first_day.isoformat()]
    if project_id:
        query += " AND t.project_id = ?"
        params.append(project_id)
    query += " GROUP BY day"
    counts = {r["day"]: r["n"] for r in db.execute(query, params).fetchall()}

    days = [first_day + timedelta(days=i) for i in range(7)]
    return [DailyStat(date=d.isoformat(), count=counts.get(d.isoformat(), 0)) for d in days]


def success_rate(
    db: sqlite3.Connection,
    project_id: str | None = None,
    days: int = 30,
) -> float | None:
    """Fraction of finished execute jobs that completed, or None with no data."""
    query = """SELECT SUM(CASE WHEN j.status = 'completed' THEN 1 ELSE 0 END) AS completed,
                      COUNT(*) AS total
               FROM execution_jobs j JOIN tickets t ON j.ticket_id = t.id
               WHERE j.phase = 'execute' AND j.completed_at >= datetime('now', ?)"""
    params: list = [f"-{days} days"]
    if project_id:
        query += " AND t.project_id = ?"
        params.append(project_id)
    row = db.execute(query, params).fetchone()
    if not row or not row["total"]:
        return None
    return row["completed"] / row["total"]


def average_duration(
    db: sqlite3.Connection,
    project_id: str | None = None,
    days: int = 30,
) -> float | None:
    """Mean seconds taken by completed execute jobs."""
    query = """SELECT AVG((julianday(j.completed_at) - julianday(j.started_at)) * 86400) AS avg_s
               FROM execution_jobs j JOIN tickets t ON j.ticket_id = t.id
               WHERE j.phase = 'execute' AND j.status = 'completed'
                 AND j.started_at IS NOT NULL
                 AND j.completed_at >= datetime('now', ?)"""
    params: list = [f"-{days} days"]
    if project_id:
        query += " AND t.project_id = ?"
        params.append(project_id)
    row = db.execute(query, params).fetchone()
    return row["avg_s"] if row else None


def recent_jobs(
    db: sqlite3.Connection,
    project_id: str | None = None,
    limit: int = 20,
) -> list[RecentJob]:
    """Most recently finished tickets with their execution metadata."""
    query = """SELECT t.id, t.title, t.status, t.category, t.completed_at, t.metadata_json,
                      (SELECT (julianday(j.completed_at) - julianday(j.started_at)) * 86400
                       FROM execution_jobs j
                       WHERE j.ticket_id = t.id AND j.phase = 'execute'
                       ORDER BY j.rowid DESC LIMIT 1) AS duration_s
               FROM tickets t
               WHERE t.status IN ('completed', 'failed', 'merged')"""
    params: list = []
    if project_id:
        query += " AND t.project_id = ?"
        params.append(project_id)
    query += " ORDER BY t.completed_at DESC, t.rowid DESC LIMIT ?"
    params.append(limit)

    result = []
    for r in db.execute(query, params).fetchall():
        meta = json.loads(r["metadata_json"] or "{}")
        result.append(
            RecentJob(
                ticket_id=r["id"],
                ticket_title=r["title"],
                status=r["status"],
                category=r["category"],
                duration_seconds=r["duration_s"],
                files_changed=len(meta.get("files_changed") or []),
                tests_passed=meta.get("tests_passed"),
                retry_count=meta.get("retry_count") or 0,
                completed_at=_parse_dt(r["completed_at"]),
            )
        )
    return result


def total_ticket_count(db: sqlite3.Connection, project_id: str | None = None) -> int:
    if project_id:
        row = db.execute("SELECT COUNT(*) AS n FROM tickets WHERE project_id = ?", (project_id,)).fetchone()
    else:
        row = db.execute("SELECT COUNT(*) AS n FROM tickets").fetchone()
    return row["n"]


def summary(db: sqlite3.Connection, project_id: str | None = None) -> dict:
    """Everything the stats surfaces show, as plain data."""
    return {
        "weekly_summary": [{"date": d.date, "count": d.count} for d in weekly_summary(db, project_id)],
        "success_rate": success_rate(db, project_id),
        "avg_duration_seconds": average_duration(db, project_id),
        "total_tickets": total_ticket_count(db, project_id),
        "recent_jobs": [
            {
                "ticket_id": j.ticket_id,
                "ticket_title": j.ticket_title,
                "status": j.status,
                "category": j.category,
                "duration_seconds": j.duration_seconds,
                "files_changed": j.files_changed,
                "tests_passed": j.tests_passed,
                "retry_count": j.retry_count,
                "completed_at": j.completed_at.isoformat() if j.completed_at else None,
            }
            for j in recent_jobs(db, project_id)
        ],
    }


def _parse_dt(val: str | None) -> datetime | None:
    if val is None:
        return None
    return datetime.fromisoformat(val)
