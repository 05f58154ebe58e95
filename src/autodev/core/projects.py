"""Project management operations."""

import json
import sqlite3
import uuid
from datetime import datetime
from pathlib import Path

from autodev.db.models import Project, ProjectSettings


def create_project(
    db: sqlite3.Connection,
    name: str,
    repo_path: str,
    default_branch: str = "main",
    worktree_root: str | None = None,
    settings: ProjectSettings | None = None,
) -> Project:
    """Register a repository as a project."""
    project_id = str(uuid.uuid4())
    repo_path = str(Path(repo_path).resolve())
    if worktree_root is None:
        worktree_root = str(Path(repo_path) / ".worktrees")
    settings = settings or ProjectSettings()

    db.execute(
        """INSERT INTO projects (id, name, repo_path, default_branch, worktree_root, settings_json)
           VALUES (?, ?, ?, ?, ?, ?)""",
        (project_id, name, repo_path, default_branch, worktree_root, json.dumps(settings.to_dict())),
    )
    db.commit()
    return get_project(db, project_id)


def get_project(db: sqlite3.Connection, project_id: str) -> Project | None:
    """Get a project by ID."""
    row = db.execute("SELECT * FROM projects WHERE id = ?", (project_id,)).fetchone()
    if not row:
        return None
    return _row_to_project(row)


def find_project(db: sqlite3.Connection, ref: str) -> Project | None:
    """Look a project up by ID, unique ID prefix, or exact name."""
    project = get_project(db, ref)
    if project:
        return project
    rows = db.execute(
        "SELECT * FROM projects WHERE id LIKE ? OR name = ?", (f"{ref}%", ref)
    ).fetchall()
    if len(rows) == 1:
        return _row_to_project(rows[0])
    return None


def list_projects(db: sqlite3.Connection) -> list[Project]:
    """List all projects, oldest first."""
    rows = db.execute("SELECT * FROM projects ORDER BY created_at ASC, rowid ASC").fetchall()
    return [_row_to_project(r) for r in rows]


def update_project(
    db: sqlite3.Connection,
    project_id: str,
    **kwargs,
) -> Project | None:
    """Update project fields."""
    allowed = {"name", "default_branch", "worktree_root"}
    updates = {k: v for k, v in kwargs.items() if k in allowed and v is not None}
    if not updates:
        return get_project(db, project_id)

    set_clause = ", ".join(f"{k} = ?" for k in updates)
    values = list(updates.values()) + [project_id]
    db.execute(f"UPDATE projects SET {set_clause} WHERE id = ?", values)
    db.commit()
    return get_project(db, project_id)


def update_project_settings(
    db: sqlite3.Connection,
    project_id: str,
    **changes,
) -> Project | None:
    """Merge setting changes into a project's settings. Unknown keys raise."""
    project = get_project(db, project_id)
    if not project:
        return None

    merged = project.settings.to_dict()
    for key, value in changes.items():
        if key not in merged:
            raise ValueError(f"Unknown project setting: {key}")
        merged[key] = value
    settings = ProjectSettings.from_dict(merged)
    if settings.max_parallel_jobs < 1:
        raise ValueError("max_parallel_jobs must be at least 1")

    db.execute(
        "UPDATE projects SET settings_json = ? WHERE id = ?",
        (json.dumps(settings.to_dict()), project_id),
    )
    db.commit()
    return get_project(db, project_id)


def _row_to_project(row: sqlite3.Row) -> Project:
    return Project(
        id=row["id"],
        name=row["name"],
        repo_path=row["repo_path"],
        default_branch=row["default_branch"],
        worktree_root=row["worktree_root"],
        settings=ProjectSettings.from_dict(json.loads(row["settings_json"] or "{}")),
        created_at=_parse_dt(row["created_at"]),
    )


def _parse_dt(val: str | None) -> datetime | None:
    if val is None:
        return None
    return datetime.fromisoformat(val)
