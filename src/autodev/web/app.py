"""Read-only JSON API over projects, tickets, jobs and analytics."""

import uvicorn
from starlette.applications import Starlette
from starlette.requests import Request
from starlette.responses import JSONResponse
from starlette.routing import Route

from autodev.config import get_config
from autodev.core import analytics
from autodev.core import jobs as jobs_mod
from autodev.core import projects as projects_mod
from autodev.core import tickets as tickets_mod
from autodev.core.logs import MAX_HISTORY_BYTES, get_history, get_stats
from autodev.db.engine import init_db
from autodev.db.models import TICKET_STATUSES


def _get_db():
    config = get_config()
    return init_db(config.db_path)


# ── Handlers ──────────────────────────────────────────────────────────────────


async def api_list_projects(request: Request):
    db = _get_db()
    try:
        projects = projects_mod.list_projects(db)
        return JSONResponse([_project_dict(p) for p in projects])
    finally:
        db.close()


async def api_get_project(request: Request):
    project_id = request.path_params["project_id"]
    db = _get_db()
    try:
        project = projects_mod.get_project(db, project_id)
        if not project:
            return JSONResponse({"error": "Project not found"}, status_code=404)
        return JSONResponse(_project_dict(project))
    finally:
        db.close()


async def api_project_tickets(request: Request):
    project_id = request.path_params["project_id"]
    status_filter = request.query_params.get("status")
    if status_filter and status_filter not in TICKET_STATUSES:
        return JSONResponse({"error": f"Unknown status: {status_filter}"}, status_code=400)
    db = _get_db()
    try:
        if not projects_mod.get_project(db, project_id):
            return JSONResponse({"error": "Project not found"}, status_code=404)
        tickets = tickets_mod.list_tickets(db, project_id, status=status_filter)
        return JSONResponse([_ticket_dict(t) for t in tickets])
    finally:
        db.close()


async def api_get_ticket(request: Request):
    ticket_id = request.path_params["ticket_id"]
    db = _get_db()
    try:
        ticket = tickets_mod.get_ticket(db, ticket_id)
        if not ticket:
            return JSONResponse({"error": "Ticket not found"}, status_code=404)
        td = _ticket_dict(ticket)
        td["plan"] = ticket.plan
        td["attachments"] = [
            {"id": a.id, "filename": a.filename, "filepath": a.filepath, "mime_type": a.mime_type}
            for a in ticket.attachments
        ]
        td["events"] = [_event_dict(e) for e in tickets_mod.get_ticket_events(db, ticket_id)]
        td["jobs"] = [_job_dict(j) for j in jobs_mod.list_jobs_for_ticket(db, ticket_id)]
        return JSONResponse(td)
    finally:
        db.close()


async def api_job_log(request: Request):
    job_id = request.path_params["job_id"]
    try:
        max_bytes = int(request.query_params.get("max_bytes", MAX_HISTORY_BYTES))
    except ValueError:
        return JSONResponse({"error": "max_bytes must be an integer"}, status_code=400)
    db = _get_db()
    try:
        job = jobs_mod.get_job(db, job_id)
        if not job:
            return JSONResponse({"error": "Job not found"}, status_code=404)
        return JSONResponse({"job_id": job.id, "lines": get_history(job.log_path, max_bytes)})
    finally:
        db.close()


async def api_job_stats(request: Request):
    job_id = request.path_params["job_id"]
    db = _get_db()
    try:
        job = jobs_mod.get_job(db, job_id)
        if not job:
            return JSONResponse({"error": "Job not found"}, status_code=404)
        stats = get_stats(job.log_path, job.exit_code)
        return JSONResponse({
            "job_id": job.id,
            "total_log_lines": stats.total_log_lines,
            "files_modified": stats.files_modified,
            "test_result": stats.test_result,
            "exit_code": stats.exit_code,
        })
    finally:
        db.close()


async def api_analytics(request: Request):
    project_id = request.query_params.get("project_id")
    db = _get_db()
    try:
        return JSONResponse(analytics.summary(db, project_id))
    finally:
        db.close()


# ── Serialization ─────────────────────────────────────────────────────────────


def _iso(dt) -> str | None:
    return dt.isoformat() if dt else None


def _project_dict(p) -> dict:
    return {
        "id": p.id,
        "name": p.name,
        "repo_path": p.repo_path,
        "default_branch": p.default_branch,
        "worktree_root": p.worktree_root,
        "settings": p.settings.to_dict(),
        "created_at": _iso(p.created_at),
    }


def _ticket_dict(t) -> dict:
    return {
        "id": t.id,
        "project_id": t.project_id,
        "title": t.title,
        "description": t.description,
        "status": t.status,
        "category": t.category,
        "branch": t.branch,
        "worktree_path": t.worktree_path,
        "error": t.error,
        "metadata": t.metadata.to_dict(),
        "created_at": _iso(t.created_at),
        "started_at": _iso(t.started_at),
        "completed_at": _iso(t.completed_at),
    }


def _event_dict(e) -> dict:
    return {
        "id": e.id,
        "event_type": e.event_type,
        "old_value": e.old_value,
        "new_value": e.new_value,
        "created_at": _iso(e.created_at),
    }


def _job_dict(j) -> dict:
    return {
        "id": j.id,
        "phase": j.phase,
        "status": j.status,
        "retry_count": j.retry_count,
        "exit_code": j.exit_code,
        "started_at": _iso(j.started_at),
        "completed_at": _iso(j.completed_at),
    }


# ── App ───────────────────────────────────────────────────────────────────────


def create_app() -> Starlette:
    routes = [
        Route("/api/projects", api_list_projects),
        Route("/api/projects/{project_id}", api_get_project),
        Route("/api/projects/{project_id}/tickets", api_project_tickets),
        Route("/api/tickets/{ticket_id}", api_get_ticket),
        Route("/api/jobs/{job_id}/log", api_job_log),
        Route("/api/jobs/{job_id}/stats", api_job_stats),
        Route("/api/analytics", api_analytics),
    ]
    return Starlette(routes=routes)


def run_server(host: str = "127.0.0.1", port: int = 8787):
    app = create_app()
    uvicorn.run(app, host=host, port=port)
