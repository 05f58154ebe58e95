"""CLI entry point for autodev."""

import json
import logging
import mimetypes
import sys
from dataclasses import fields
from pathlib import Path
from typing import get_args, get_origin

import click

from autodev.config import get_config
from autodev.core import analytics
from autodev.core import jobs as jobs_mod
from autodev.core import projects as projects_mod
from autodev.core import tickets as tickets_mod
from autodev.core.events import JobCompleted, JobFailed, JobProgress, LogLine, TicketStatusChanged
from autodev.core.logs import get_history
from autodev.core.orchestrator import CANCELLED_MESSAGE, Orchestrator
from autodev.core.runner import AgentRunner
from autodev.core.templates import seed_templates
from autodev.core.workspaces import WorkspaceManager, clean_stale_workspaces
from autodev.db.engine import get_db
from autodev.db.models import IN_FLIGHT_STATUSES, TICKET_CATEGORIES, TICKET_STATUSES, ProjectSettings
from autodev.errors import AutodevError


def _get_db():
    config = get_config()
    config.ensure_dirs()
    return get_db(config.db_path)


@click.group()
@click.option("-v", "--verbose", is_flag=True, help="Log at INFO level")
def main(verbose):
    """autodev - run tickets through plan, execute and test with a coding agent"""
    config = get_config()
    logging.basicConfig(
        level=logging.INFO if verbose else config.log_level,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


# ── Project Commands ──────────────────────────────────────────────────────────


@main.command("init")
@click.argument("name")
@click.option("--repo-path", default=".", help="Path to the git repository")
@click.option("--branch", default="main", help="Default branch name")
@click.option("--worktree-root", default=None, help="Where ticket workspaces are created")
def init_project(name, repo_path, branch, worktree_root):
    """Register a repository as a project."""
    repo = Path(repo_path).resolve()
    if not (repo / ".git").exists():
        click.echo(f"Not a git repository: {repo}", err=True)
        sys.exit(1)

    with _get_db() as db:
        project = projects_mod.create_project(db, name, str(repo), branch, worktree_root)
        click.echo(f"Project created: {project.id} ({project.name})")
        click.echo(f"  Repo: {project.repo_path}")
        click.echo(f"  Branch: {project.default_branch}")
        click.echo(f"  Workspaces: {project.worktree_root}")


@main.group("project")
def project_group():
    """Manage projects."""
    pass


@project_group.command("list")
def project_list():
    """List projects."""
    with _get_db() as db:
        projects = projects_mod.list_projects(db)
        if not projects:
            click.echo("No projects found.")
            return
        for p in projects:
            click.echo(f"  {p.id[:8]} {p.name} ({p.repo_path})")


@project_group.command("show")
@click.argument("project_ref")
def project_show(project_ref):
    """Show a project and its settings."""
    with _get_db() as db:
        project = _require_project(db, project_ref)
        click.echo(f"Project: {project.id}")
        click.echo(f"  Name: {project.name}")
        click.echo(f"  Repo: {project.repo_path}")
        click.echo(f"  Branch: {project.default_branch}")
        click.echo(f"  Workspaces: {project.worktree_root}")
        click.echo("  Settings:")
        for key, value in project.settings.to_dict().items():
            click.echo(f"    {key}: {value}")


@project_group.command("set")
@click.argument("project_ref")
@click.argument("key")
@click.argument("value")
def project_set(project_ref, key, value):
    """Change one project setting (use 'none' to clear optional ones)."""
    with _get_db() as db:
        project = _require_project(db, project_ref)
        try:
            parsed = _parse_setting(key, value)
            projects_mod.update_project_settings(db, project.id, **{key: parsed})
        except ValueError as e:
            click.echo(f"Error: {e}", err=True)
            sys.exit(1)
        click.echo(f"Updated {project.name}: {key} = {parsed}")


# ── Ticket Commands ───────────────────────────────────────────────────────────


@main.group("ticket")
def ticket_group():
    """Manage tickets."""
    pass


@ticket_group.command("add")
@click.argument("title")
@click.option("--project", "project_ref", default=None, help="Project ID or name (defaults to the only project)")
@click.option("--description", "-d", default="", help="Ticket description")
@click.option("--category", "-c", type=click.Choice(TICKET_CATEGORIES), default=None, help="Ticket category")
def ticket_add(title, project_ref, description, category):
    """Create a ticket in the backlog."""
    with _get_db() as db:
        project = _require_project(db, project_ref)
        ticket = tickets_mod.create_ticket(
            db, project.id, title, description, category or project.settings.default_category
        )
        click.echo(f"Created ticket: {ticket.id}")
        click.echo(f"  Title: {ticket.title}")
        click.echo(f"  Category: {ticket.category}")
        click.echo(f"  Status: {ticket.status}")


@ticket_group.command("list")
@click.option("--project", "project_ref", default=None, help="Project ID or name")
@click.option("--status", type=click.Choice(TICKET_STATUSES), default=None, help="Filter by status")
@click.option("--json-output", "--json", is_flag=True, help="Output as JSON")
def ticket_list(project_ref, status, json_output):
    """List tickets."""
    with _get_db() as db:
        project_id = _require_project(db, project_ref).id if project_ref else None
        tickets = tickets_mod.list_tickets(db, project_id, status=status)

        if json_output:
            click.echo(json.dumps([_ticket_dict(t) for t in tickets], indent=2))
            return

        if not tickets:
            click.echo("No tickets found.")
            return

        status_icons = {
            "backlog": "○",
            "planning": "◔",
            "plan_review": "◑",
            "queued": "◕",
            "in_progress": "●",
            "testing": "●",
            "completed": "✓",
            "failed": "✗",
            "merged": "⇢",
        }
        for t in tickets:
            icon = status_icons.get(t.status, "?")
            branch = f" [{t.branch}]" if t.branch else ""
            click.echo(f"  {icon} {t.id[:8]} {t.title} ({t.status}, {t.category}){branch}")


@ticket_group.command("show")
@click.argument("ticket_ref")
def ticket_show(ticket_ref):
    """Show ticket details, history and jobs."""
    with _get_db() as db:
        ticket = _require_ticket(db, ticket_ref)

        click.echo(f"Ticket: {ticket.id}")
        click.echo(f"  Title: {ticket.title}")
        click.echo(f"  Status: {ticket.status}")
        click.echo(f"  Category: {ticket.category}")
        if ticket.description:
            click.echo(f"  Description: {ticket.description}")
        if ticket.branch:
            click.echo(f"  Branch: {ticket.branch}")
        if ticket.worktree_path:
            click.echo(f"  Workspace: {ticket.worktree_path}")
        if ticket.error:
            click.echo(f"  Error: {ticket.error}")
        meta = ticket.metadata
        if meta.files_changed:
            click.echo(f"  Files changed: {', '.join(meta.files_changed)}")
        if meta.tests_passed is not None:
            click.echo(f"  Tests passed: {meta.tests_passed}")
        if meta.lint_passed is not None:
            click.echo(f"  Lint passed: {meta.lint_passed}")
        if meta.retry_count:
            click.echo(f"  Retries: {meta.retry_count}")
        if meta.commit_sha:
            click.echo(f"  Commit: {meta.commit_sha}")
        for a in ticket.attachments:
            click.echo(f"  Attachment: {a.filename} ({a.filepath})")
        if ticket.created_at:
            click.echo(f"  Created: {ticket.created_at}")

        events = tickets_mod.get_ticket_events(db, ticket.id)
        if events:
            click.echo("  History:")
            for e in events:
                click.echo(f"    [{e.created_at}] {e.event_type}: {e.old_value} -> {e.new_value}")

        jobs = jobs_mod.list_jobs_for_ticket(db, ticket.id)
        if jobs:
            click.echo("  Jobs:")
            for j in jobs:
                exit_info = f" exit={j.exit_code}" if j.exit_code is not None else ""
                click.echo(f"    {j.id} {j.phase} {j.status}{exit_info} retries={j.retry_count}")

        if ticket.plan:
            click.echo("")
            click.echo(ticket.plan)


@ticket_group.command("plan")
@click.argument("ticket_ref")
def ticket_plan(ticket_ref):
    """Generate a plan for a ticket and wait for it."""
    config = get_config()
    with _get_db() as db:
        ticket = _require_ticket(db, ticket_ref)
        project = projects_mod.get_project(db, ticket.project_id)
        orch = _make_orchestrator(db, config)
        try:
            orch.enqueue_plan(ticket, project)
        except ValueError as e:
            click.echo(f"Error: {e}", err=True)
            sys.exit(1)
        _wait_for(orch, ticket.id)
        _report(db, ticket.id)


@ticket_group.command("execute")
@click.argument("ticket_ref")
def ticket_execute(ticket_ref):
    """Execute a ticket in its workspace and wait for it."""
    config = get_config()
    with _get_db() as db:
        ticket = _require_ticket(db, ticket_ref)
        project = projects_mod.get_project(db, ticket.project_id)
        orch = _make_orchestrator(db, config)
        try:
            orch.enqueue_execute(ticket, project)
        except ValueError as e:
            click.echo(f"Error: {e}", err=True)
            sys.exit(1)
        _wait_for(orch, ticket.id)
        _report(db, ticket.id)


@ticket_group.command("approve")
@click.argument("ticket_ref")
def ticket_approve(ticket_ref):
    """Approve a reviewed plan and execute it."""
    config = get_config()
    with _get_db() as db:
        ticket = _require_ticket(db, ticket_ref)
        orch = _make_orchestrator(db, config)
        try:
            orch.approve_plan(ticket.id)
        except ValueError as e:
            click.echo(f"Error: {e}", err=True)
            sys.exit(1)
        _wait_for(orch, ticket.id)
        _report(db, ticket.id)


@ticket_group.command("cancel")
@click.argument("ticket_ref")
def ticket_cancel(ticket_ref):
    """Cancel a ticket left in flight by a process that is no longer running.

    Workers of a live ``autodev run`` are cancelled with Ctrl-C in that process.
    """
    with _get_db() as db:
        ticket = _require_ticket(db, ticket_ref)
        if ticket.status not in IN_FLIGHT_STATUSES:
            click.echo(f"Ticket {ticket.id[:8]} has no active work ({ticket.status}).", err=True)
            sys.exit(1)
        for job in jobs_mod.list_jobs_for_ticket(db, ticket.id):
            if job.is_active:
                jobs_mod.update_job_status(db, job.id, "failed", exit_code=-1)
        tickets_mod.update_ticket_status(db, ticket.id, "failed", error=CANCELLED_MESSAGE, completed=True)
        click.echo(f"Cancelled ticket {ticket.id[:8]}")


@ticket_group.command("merge")
@click.argument("ticket_ref")
def ticket_merge(ticket_ref):
    """Merge a completed ticket's branch into the default branch."""
    config = get_config()
    with _get_db() as db:
        ticket = _require_ticket(db, ticket_ref)
        orch = _make_orchestrator(db, config)
        try:
            merged = orch.merge_ticket(ticket.id)
        except (ValueError, AutodevError) as e:
            click.echo(f"Error: {e}", err=True)
            sys.exit(1)
        click.echo(f"Merged {merged.branch} ({merged.id[:8]})")


@ticket_group.command("delete")
@click.argument("ticket_ref")
@click.option("--yes", is_flag=True, help="Do not ask for confirmation")
def ticket_delete(ticket_ref, yes):
    """Delete a ticket. Its jobs are kept for analytics."""
    with _get_db() as db:
        ticket = _require_ticket(db, ticket_ref)
        if ticket.status in IN_FLIGHT_STATUSES:
            click.echo(f"Ticket {ticket.id[:8]} is {ticket.status}; cancel it first.", err=True)
            sys.exit(1)
        if not yes:
            click.confirm(f"Delete ticket '{ticket.title}'?", abort=True)
        tickets_mod.delete_ticket(db, ticket.id)
        click.echo(f"Deleted ticket {ticket.id[:8]}")


@ticket_group.command("edit-plan")
@click.argument("ticket_ref")
@click.option("--file", "plan_file", type=click.Path(exists=True, dir_okay=False), default=None,
              help="Read the new plan from a file instead of opening an editor")
def ticket_edit_plan(ticket_ref, plan_file):
    """Replace a ticket's plan."""
    with _get_db() as db:
        ticket = _require_ticket(db, ticket_ref)
        if ticket.status in IN_FLIGHT_STATUSES:
            click.echo(f"Ticket {ticket.id[:8]} is {ticket.status}; wait for it to finish.", err=True)
            sys.exit(1)
        if plan_file:
            plan = Path(plan_file).read_text()
        else:
            plan = click.edit(ticket.plan or "", extension=".md")
            if plan is None:
                click.echo("Plan unchanged.")
                return
        tickets_mod.update_plan(db, ticket.id, plan.strip())
        click.echo(f"Plan updated for {ticket.id[:8]}")


@ticket_group.command("attach")
@click.argument("ticket_ref")
@click.argument("path", type=click.Path(exists=True, dir_okay=False))
def ticket_attach(ticket_ref, path):
    """Attach a file whose description is passed to the agent."""
    with _get_db() as db:
        ticket = _require_ticket(db, ticket_ref)
        filepath = Path(path).resolve()
        mime_type, _ = mimetypes.guess_type(filepath.name)
        attachment = tickets_mod.add_attachment(db, ticket.id, filepath.name, str(filepath), mime_type)
        click.echo(f"Attached {attachment.filename} to {ticket.id[:8]}")


@ticket_group.command("log")
@click.argument("ticket_ref")
@click.option("--job", "job_id", default=None, help="Job ID (defaults to the latest job)")
def ticket_log(ticket_ref, job_id):
    """Print the agent log of a ticket's job."""
    with _get_db() as db:
        ticket = _require_ticket(db, ticket_ref)
        jobs = jobs_mod.list_jobs_for_ticket(db, ticket.id)
        if job_id:
            jobs = [j for j in jobs if j.id == job_id or j.id.startswith(job_id)]
        if not jobs:
            click.echo(f"No jobs found for ticket: {ticket.id[:8]}", err=True)
            sys.exit(1)
        job = jobs[-1]
        for line in get_history(job.log_path):
            click.echo(line)


# ── Workspace Commands ───────────────────────────────────────────────────────


@main.group("workspace")
def workspace_group():
    """Manage ticket workspaces (git worktrees)."""
    pass


@workspace_group.command("list")
@click.option("--project", "project_ref", default=None, help="Project ID or name")
def workspace_list(project_ref):
    """List workspaces and their linked tickets."""
    with _get_db() as db:
        projects = [_require_project(db, project_ref)] if project_ref else projects_mod.list_projects(db)
        found = False
        for project in projects:
            try:
                workspaces = WorkspaceManager(project.repo_path).list_workspaces()
            except AutodevError as e:
                click.echo(f"  {project.name}: {e}", err=True)
                continue
            for ws in workspaces:
                if not ws.ticket_id:
                    continue
                found = True
                ticket = tickets_mod.get_ticket(db, ws.ticket_id)
                info = f" -> {ticket.title} ({ticket.status})" if ticket else " -> (deleted ticket)"
                lock = " [locked]" if ws.is_locked else ""
                click.echo(f"  {ws.branch} at {ws.path}{lock}{info}")
        if not found:
            click.echo("No workspaces found.")


@workspace_group.command("remove")
@click.argument("ticket_ref")
def workspace_remove(ticket_ref):
    """Remove a ticket's workspace. The branch is kept."""
    with _get_db() as db:
        ticket = _require_ticket(db, ticket_ref)
        if not ticket.worktree_path:
            click.echo(f"Ticket {ticket.id[:8]} has no workspace.", err=True)
            sys.exit(1)
        if ticket.status in IN_FLIGHT_STATUSES:
            click.echo(f"Ticket {ticket.id[:8]} is {ticket.status}; cancel it first.", err=True)
            sys.exit(1)
        project = projects_mod.get_project(db, ticket.project_id)
        try:
            WorkspaceManager(project.repo_path).remove_workspace(ticket.worktree_path)
        except AutodevError as e:
            click.echo(f"Error: {e}", err=True)
            sys.exit(1)
        click.echo(f"Removed {ticket.worktree_path}")


@workspace_group.command("clean")
@click.option("--days", type=int, default=None, help="Only remove workspaces older than this many days")
def workspace_clean(days):
    """Remove stale workspaces of merged, failed or deleted tickets."""
    config = get_config()
    with _get_db() as db:
        removed = clean_stale_workspaces(db, config.clean_after_days if days is None else days)
        if not removed:
            click.echo("No workspaces to clean up.")
            return
        for path in removed:
            click.echo(f"  Removed: {path}")


# ── Template Commands ────────────────────────────────────────────────────────


@main.group("templates")
def templates_group():
    """Manage prompt templates."""
    pass


@templates_group.command("init")
def templates_init():
    """Copy the bundled templates into the data directory for editing."""
    config = get_config()
    copied = seed_templates(config.templates_dir)
    if not copied:
        click.echo(f"Templates already present in {config.templates_dir}")
        return
    for name in copied:
        click.echo(f"  Copied: {config.templates_dir / name}")


# ── Orchestrator Commands ────────────────────────────────────────────────────


@main.command("run")
@click.option("--ticket", "ticket_refs", multiple=True, help="Ticket to plan (backlog) or execute (plan_review)")
@click.option("--until-idle", is_flag=True, help="Exit once nothing is queued or running")
@click.option("--logs/--no-logs", "show_logs", default=False, help="Print agent output lines")
def run_command(ticket_refs, until_idle, show_logs):
    """Run the orchestrator in the foreground."""
    config = get_config()
    with _get_db() as db:
        orch = _make_orchestrator(db, config, show_logs=show_logs)
        orch.start()
        click.echo(f"Orchestrator running with {config.max_workers} worker(s)")
        try:
            for ref in ticket_refs:
                ticket = _require_ticket(db, ref)
                project = projects_mod.get_project(db, ticket.project_id)
                try:
                    if ticket.status == "plan_review":
                        orch.approve_plan(ticket.id)
                    elif ticket.status == "backlog" and ticket.category != "direct":
                        orch.enqueue_plan(ticket, project)
                    else:
                        orch.enqueue_execute(ticket, project)
                except ValueError as e:
                    click.echo(f"Error: {ticket.id[:8]}: {e}", err=True)

            while True:
                if orch.wait_until_idle(timeout=0.5) and until_idle:
                    break
        except KeyboardInterrupt:
            click.echo("Interrupted.", err=True)
        finally:
            orch.stop()


@main.command("stats")
@click.option("--project", "project_ref", default=None, help="Project ID or name")
@click.option("--json-output", "--json", is_flag=True, help="Output as JSON")
def stats_command(project_ref, json_output):
    """Show execution statistics."""
    with _get_db() as db:
        project_id = _require_project(db, project_ref).id if project_ref else None
        data = analytics.summary(db, project_id)

        if json_output:
            click.echo(json.dumps(data, indent=2))
            return

        rate = data["success_rate"]
        avg = data["avg_duration_seconds"]
        click.echo(f"Tickets: {data['total_tickets']}")
        click.echo(f"Success rate (30d): {f'{rate:.0%}' if rate is not None else 'n/a'}")
        click.echo(f"Average execution: {f'{avg:.0f}s' if avg is not None else 'n/a'}")
        click.echo("Completed this week:")
        for day in data["weekly_summary"]:
            click.echo(f"  {day['date']}: {day['count']}")
        if data["recent_jobs"]:
            click.echo("Recent:")
            for j in data["recent_jobs"]:
                click.echo(
                    f"  {j['ticket_id'][:8]} {j['ticket_title']} ({j['status']}) "
                    f"files={j['files_changed']} retries={j['retry_count']}"
                )


@main.command("serve")
@click.option("--host", default="127.0.0.1", help="Host to bind to")
@click.option("--port", default=8787, type=int, help="Port to listen on")
def serve_command(host, port):
    """Serve the read-only JSON API."""
    from autodev.web.app import run_server

    click.echo(f"Serving API at http://{host}:{port}/api")
    run_server(host=host, port=port)


# ── Helpers ───────────────────────────────────────────────────────────────────


def _make_orchestrator(db, config, show_logs: bool = True) -> Orchestrator:
    orch = Orchestrator(db, config, runner=AgentRunner(config.agent_path))
    orch.events.subscribe(lambda event: _print_event(event, show_logs))
    return orch


def _print_event(event, show_logs: bool):
    if isinstance(event, TicketStatusChanged):
        click.echo(f"[{event.ticket_id[:8]}] status: {event.status}")
    elif isinstance(event, JobProgress):
        click.echo(f"[{event.ticket_id[:8]}] {event.phase}: {event.percent}%")
    elif isinstance(event, LogLine):
        if show_logs:
            click.echo(f"[{event.ticket_id[:8]}] {event.line}")
    elif isinstance(event, JobCompleted):
        click.echo(f"[{event.ticket_id[:8]}] completed")
    elif isinstance(event, JobFailed):
        click.echo(f"[{event.ticket_id[:8]}] failed: {event.error}", err=True)


def _wait_for(orch: Orchestrator, ticket_id: str):
    try:
        while not orch.wait_until_idle(timeout=0.5):
            pass
    except KeyboardInterrupt:
        orch.cancel(ticket_id)
        click.echo("Cancelled.", err=True)
        sys.exit(130)


def _report(db, ticket_id: str):
    ticket = tickets_mod.get_ticket(db, ticket_id)
    if ticket.status == "failed":
        sys.exit(1)
    if ticket.status == "plan_review" and ticket.plan:
        click.echo("")
        click.echo(ticket.plan)


def _require_project(db, ref):
    if ref is None:
        projects = projects_mod.list_projects(db)
        if len(projects) == 1:
            return projects[0]
        click.echo("Specify --project (there is not exactly one project).", err=True)
        sys.exit(1)
    project = projects_mod.find_project(db, ref)
    if not project:
        click.echo(f"Project not found: {ref}", err=True)
        sys.exit(1)
    return project


def _require_ticket(db, ref):
    ticket = tickets_mod.find_ticket(db, ref)
    if not ticket:
        click.echo(f"Ticket not found: {ref}", err=True)
        sys.exit(1)
    return ticket


def _parse_setting(key: str, value: str):
    types = {f.name: f.type for f in fields(ProjectSettings)}
    if key not in types:
        raise ValueError(f"Unknown project setting: {key}")
    kind = types[key]
    if value.lower() == "none" and type(None) in get_args(kind):
        return None
    if kind is bool:
        if value.lower() in ("true", "yes", "1", "on"):
            return True
        if value.lower() in ("false", "no", "0", "off"):
            return False
        raise ValueError(f"{key} expects true or false")
    if kind is int:
        return int(value)
    if get_origin(kind) is list:
        return [v.strip() for v in value.split(",") if v.strip()]
    return value


def _ticket_dict(ticket) -> dict:
    return {
        "id": ticket.id,
        "project_id": ticket.project_id,
        "title": ticket.title,
        "status": ticket.status,
        "category": ticket.category,
        "description": ticket.description,
        "branch": ticket.branch,
        "worktree": ticket.worktree_path,
        "error": ticket.error,
        "metadata": ticket.metadata.to_dict(),
    }


if __name__ == "__main__":
    main()
