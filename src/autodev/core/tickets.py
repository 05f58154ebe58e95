"""Ticket management operations."""

import json
import re
import sqlite3
import uuid
from datetime import datetime

from autodev.db.models import (
    TICKET_CATEGORIES,
    TICKET_STATUSES,
    Attachment,
    Ticket,
    TicketEvent,
    TicketMetadata,
)


def slugify(title: str, max_length: int = 50) -> str:
    """Convert a title to a branch-safe slug."""
    slug = title.lower().strip()
    slug = re.sub(r"[^a-z0-9\s-]", "", slug)
    slug = re.sub(r"[\s_]+", "-", slug.strip())
    slug = re.sub(r"-+", "-", slug)
    return slug[:max_length].strip("-")


def create_ticket(
    db: sqlite3.Connection,
    project_id: str,
    title: str,
    description: str = "",
    category: str = "simple_plan",
) -> Ticket:
    """Create a new ticket in the backlog."""
    if category not in TICKET_CATEGORIES:
        raise ValueError(f"Unknown ticket category: {category}")
    ticket_id = str(uuid.uuid4())

    db.execute(
        """INSERT INTO tickets (id, project_id, title, description, category)
           VALUES (?, ?, ?, ?, ?)""",
        (ticket_id, project_id, title, description, category),
    )
    _log_event(db, ticket_id, "created", None, "backlog")
    db.commit()
    return get_ticket(db, ticket_id)


def get_ticket(db: sqlite3.Connection, ticket_id: str) -> Ticket | None:
    """Get a ticket by ID with its attachments."""
    row = db.execute("SELECT * FROM tickets WHERE id = ?", (ticket_id,)).fetchone()
    if not row:
        return None
    ticket = _row_to_ticket(row)
    ticket.attachments = list_attachments(db, ticket_id)
    return ticket


def find_ticket(db: sqlite3.Connection, ref: str) -> Ticket | None:
    """Look a ticket up by ID or unique ID prefix."""
    ticket = get_ticket(db, ref)
    if ticket:
        return ticket
    rows = db.execute("SELECT id FROM tickets WHERE id LIKE ?", (f"{ref}%",)).fetchall()
    if len(rows) == 1:
        return get_ticket(db, rows[0]["id"])
    return None


def list_tickets(
    db: sqlite3.Connection,
    project_id: str | None = None,
    status: str | None = None,
) -> list[Ticket]:
    """List tickets with optional filters, newest first."""
    query = "SELECT * FROM tickets WHERE 1=1"
    params: list = []
    if project_id:
        query += " AND project_id = ?"
        params.append(project_id)
    if status:
        query += " AND status = ?"
        params.append(status)
    query += " ORDER BY created_at DESC, rowid DESC"
    rows = db.execute(query, params).fetchall()
    return [_row_to_ticket(r) for r in rows]


def list_tickets_by_status(db: sqlite3.Connection, statuses: tuple[str, ...]) -> list[Ticket]:
    """List tickets whose status is any of ``statuses``."""
    placeholders = ", ".join("?" for _ in statuses)
    rows = db.execute(
        f"SELECT * FROM tickets WHERE status IN ({placeholders}) ORDER BY rowid",
        list(statuses),
    ).fetchall()
    return [_row_to_ticket(r) for r in rows]


def update_ticket_status(
    db: sqlite3.Connection,
    ticket_id: str,
    status: str,
    error: str | None = None,
    started: bool = False,
    completed: bool = False,
) -> Ticket | None:
    """Update a ticket's status. The error summary is replaced on every change."""
    if status not in TICKET_STATUSES:
        raise ValueError(f"Unknown ticket status: {status}")
    ticket = get_ticket(db, ticket_id)
    if not ticket:
        return None

    set_parts = ["status = ?", "error = ?"]
    values: list = [status, error]
    if started:
        set_parts.append("started_at = datetime('now')")
    if completed:
        set_parts.append("completed_at = datetime('now')")
    values.append(ticket_id)

    db.execute(f"UPDATE tickets SET {', '.join(set_parts)} WHERE id = ?", values)
    _log_event(db, ticket_id, "status_changed", ticket.status, status)
    db.commit()
    return get_ticket(db, ticket_id)


def update_plan(db: sqlite3.Connection, ticket_id: str, plan: str) -> Ticket | None:
    """Store generated or hand-edited plan text."""
    ticket = get_ticket(db, ticket_id)
    if not ticket:
        return None
    db.execute("UPDATE tickets SET plan = ? WHERE id = ?", (plan, ticket_id))
    _log_event(db, ticket_id, "plan_updated", None, f"{len(plan)} chars")
    db.commit()
    return get_ticket(db, ticket_id)


def update_branch(
    db: sqlite3.Connection,
    ticket_id: str,
    branch: str,
    worktree_path: str,
) -> Ticket | None:
    """Record the ticket's branch and workspace path."""
    ticket = get_ticket(db, ticket_id)
    if not ticket:
        return None
    db.execute(
        "UPDATE tickets SET branch = ?, worktree_path = ? WHERE id = ?",
        (branch, worktree_path, ticket_id),
    )
    if ticket.worktree_path != worktree_path:
        _log_event(db, ticket_id, "workspace_assigned", ticket.worktree_path, worktree_path)
    db.commit()
    return get_ticket(db, ticket_id)


def set_metadata(db: sqlite3.Connection, ticket_id: str, **fields) -> Ticket | None:
    """Merge ``fields`` into the ticket metadata."""
    ticket = get_ticket(db, ticket_id)
    if not ticket:
        return None
    merged = ticket.metadata.to_dict()
    for key, value in fields.items():
        if key not in merged:
            raise ValueError(f"Unknown metadata field: {key}")
        merged[key] = value
    db.execute(
        "UPDATE tickets SET metadata_json = ? WHERE id = ?",
        (json.dumps(merged), ticket_id),
    )
    _log_event(db, ticket_id, "metadata_changed", None, ", ".join(sorted(fields)))
    db.commit()
    return get_ticket(db, ticket_id)


def add_attachment(
    db: sqlite3.Connection,
    ticket_id: str,
    filename: str,
    filepath: str,
    mime_type: str | None = None,
) -> Attachment:
    """Attach a file reference to a ticket."""
    if not get_ticket(db, ticket_id):
        raise ValueError(f"Ticket not found: {ticket_id}")
    attachment_id = str(uuid.uuid4())
    db.execute(
        """INSERT INTO attachments (id, ticket_id, filename, filepath, mime_type)
           VALUES (?, ?, ?, ?, ?)""",
        (attachment_id, ticket_id, filename, filepath, mime_type),
    )
    _log_event(db, ticket_id, "attachment_added", None, filename)
    db.commit()
    row = db.execute("SELECT * FROM attachments WHERE id = ?", (attachment_id,)).fetchone()
    return _row_to_attachment(row)


def list_attachments(db: sqlite3.Connection, ticket_id: str) -> list[Attachment]:
    rows = db.execute(
        "SELECT * FROM attachments WHERE ticket_id = ? ORDER BY created_at ASC, rowid ASC",
        (ticket_id,),
    ).fetchall()
    return [_row_to_attachment(r) for r in rows]


def delete_ticket(db: sqlite3.Connection, ticket_id: str) -> bool:
    """Delete a ticket with its attachments and history. Jobs are kept for audit."""
    if not get_ticket(db, ticket_id):
        return False
    db.execute("DELETE FROM attachments WHERE ticket_id = ?", (ticket_id,))
    db.execute("DELETE FROM ticket_events WHERE ticket_id = ?", (ticket_id,))
    db.execute("DELETE FROM tickets WHERE id = ?", (ticket_id,))
    db.commit()
    return True


def get_ticket_events(db: sqlite3.Connection, ticket_id: str) -> list[TicketEvent]:
    """Get the event history for a ticket."""
    rows = db.execute(
        "SELECT * FROM ticket_events WHERE ticket_id = ? ORDER BY id",
        (ticket_id,),
    ).fetchall()
    return [
        TicketEvent(
            id=r["id"],
            ticket_id=r["ticket_id"],
            event_type=r["event_type"],
            old_value=r["old_value"],
            new_value=r["new_value"],
            created_at=_parse_dt(r["created_at"]),
        )
        for r in rows
    ]


def get_status_history(db: sqlite3.Connection, ticket_id: str) -> list[str]:
    """Statuses the ticket has moved through, in order."""
    return [
        e.new_value
        for e in get_ticket_events(db, ticket_id)
        if e.event_type in ("created", "status_changed")
    ]


def _log_event(
    db: sqlite3.Connection,
    ticket_id: str,
    event_type: str,
    old_value: str | None,
    new_value: str | None,
):
    db.execute(
        "INSERT INTO ticket_events (ticket_id, event_type, old_value, new_value) VALUES (?, ?, ?, ?)",
        (ticket_id, event_type, old_value, new_value),
    )


def _row_to_ticket(row: sqlite3.Row) -> Ticket:
    return Ticket(
        id=row["id"],
        project_id=row["project_id"],
        title=row["title"],
        description=row["description"],
        status=row["status"],
        category=row["category"],
        plan=row["plan"],
        branch=row["branch"],
        worktree_path=row["worktree_path"],
        error=row["error"],
        metadata=TicketMetadata.from_dict(json.loads(row["metadata_json"] or "{}")),
        created_at=_parse_dt(row["created_at"]),
        started_at=_parse_dt(row["started_at"]),
        completed_at=_parse_dt(row["completed_at"]),
    )


def _row_to_attachment(row: sqlite3.Row) -> Attachment:
    return Attachment(
        id=row["id"],
        ticket_id=row["ticket_id"],
        filename=row["filename"],
        filepath=row["filepath"],
        mime_type=row["mime_type"],
        created_at=_parse_dt(row["created_at"]),
    )


def _parse_dt(val: str | None) -> datetime | None:
    if val is None:
        return None
    return datetime.fromisoformat(val)
