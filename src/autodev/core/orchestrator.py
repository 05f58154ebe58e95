"""Job scheduler and worker pool driving tickets through plan, execute and test."""

import logging
import sqlite3
import threading
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable

from autodev.config import Config
from autodev.core import analytics
from autodev.core.events import (
    EventBus,
    JobCompleted,
    JobFailed,
    JobProgress,
    LogLine,
    TicketStatusChanged,
)
from autodev.core.jobs import create_job, increment_retry, list_active_jobs, new_job_id, update_job_status
from autodev.core.logs import LogTailer, log_path_for
from autodev.core.plans import RawFallback, extract_plan
from autodev.core.projects import get_project
from autodev.core.runner import AgentRunner, CommandResult, RunResult
from autodev.core.stack import detect_stack
from autodev.core.templates import (
    FAILURE_OUTPUT_LIMIT,
    TemplateContext,
    TemplateEngine,
    build_execution_prompt,
    build_fix_prompt,
    describe_attachments,
    resolve_context_files,
)
from autodev.core.tickets import (
    get_ticket,
    list_tickets_by_status,
    set_metadata,
    slugify,
    update_branch,
    update_plan,
    update_ticket_status,
)
from autodev.core.workspaces import WorkspaceManager
from autodev.db.models import IN_FLIGHT_STATUSES, ExecutionJob, Project, Ticket
from autodev.errors import (
    AgentExecutionError,
    GitError,
    InvalidTransitionError,
    TestsFailedError,
    TicketBusyError,
)

logger = logging.getLogger(__name__)

CANCELLED_MESSAGE = "Cancelled by user."
INTERRUPTED_MESSAGE = "Job interrupted by restart. Re-execute to try again."

PLAN_SOURCES = ("backlog", "plan_review", "failed")
EXECUTE_SOURCES = ("backlog", "plan_review", "failed", "completed")


class JobCancelled(Exception):
    """Raised inside a worker once its ticket has been cancelled."""


@dataclass
class ActiveWorker:
    job: ExecutionJob
    ticket: Ticket
    project: Project
    worker_id: str
    thread: threading.Thread | None = None
    cancelled: bool = False
    retry_count: int = 0


class Orchestrator:
    """Owns the job queue and the workers carrying admitted jobs.

    A job is admitted when fewer than ``config.max_workers`` workers are active
    and its project has fewer than ``settings.max_parallel_jobs``. Admission runs
    on every tick (``start()``), after every enqueue and after every worker
    finishes. Each admitted job runs on its own thread.

    All queue, worker-map and store mutations happen under one re-entrant lock.
    Agent runs, test commands and git run outside it.

    A cancelled worker stays "draining" until its thread exits. Its ticket
    counts as busy until then, so no new job can share its workspace.
    """

    def __init__(
        self,
        db: sqlite3.Connection,
        config: Config,
        runner: AgentRunner | None = None,
        tailer: LogTailer | None = None,
        events: EventBus | None = None,
        workspace_factory: Callable[[str], WorkspaceManager] = WorkspaceManager,
        command_runner: Callable[[str, str], CommandResult] | None = None,
    ):
        self.db = db
        self.config = config
        self.runner = runner or AgentRunner()
        self.tailer = tailer or LogTailer()
        self.events = events or EventBus()
        self.workspace_factory = workspace_factory
        self.command_runner = command_runner
        self.templates = TemplateEngine(config.templates_dir)

        self._queue: list[ExecutionJob] = []
        self._active: dict[str, ActiveWorker] = {}
        self._draining: dict[str, ActiveWorker] = {}
        self._log_routes: dict[str, str] = {}
        self._progress: dict[tuple[str, str], int] = {}
        self._lock = threading.RLock()
        self._idle = threading.Condition(self._lock)
        self._stop_event = threading.Event()
        self._thread: threading.Thread | None = None

        self.tailer.add_listener(self._on_log_line)

    # ── Lifecycle ─────────────────────────────────────────────

    def start(self):
        """Recover interrupted tickets and start the tick thread."""
        if self._thread and self._thread.is_alive():
            return
        recovered = self.recover_interrupted()
        if recovered:
            logger.warning("Marked %d interrupted ticket(s) as failed", len(recovered))
        self._stop_event.clear()
        self._thread = threading.Thread(target=self._run, name="autodev-tick", daemon=True)
        self._thread.start()
        logger.info("Orchestrator started")

    def stop(self):
        """Stop ticking and tailing. Running workers are left to finish."""
        self._stop_event.set()
        if self._thread:
            self._thread.join(timeout=10)
            self._thread = None
        self.tailer.stop_all()
        logger.info("Orchestrator stopped")

    def _run(self):
        while not self._stop_event.wait(self.config.tick_interval):
            try:
                self.tick()
            except Exception:
                logger.exception("Error in scheduling tick")

    # ── Queries ───────────────────────────────────────────────

    def active_worker_count(self) -> int:
        with self._lock:
            return len(self._active)

    def queued_count(self) -> int:
        with self._lock:
            return len(self._queue)

    def is_busy(self, ticket_id: str) -> bool:
        with self._lock:
            return (
                ticket_id in self._active
                or ticket_id in self._draining
                or any(j.ticket_id == ticket_id for j in self._queue)
            )

    def wait_until_idle(self, timeout: float | None = None) -> bool:
        """Block until nothing is queued, running or draining. Returns False on timeout."""
        with self._idle:
            return self._idle.wait_for(
                lambda: not self._queue and not self._active and not self._draining, timeout
            )

    # ── Enqueue ───────────────────────────────────────────────

    def enqueue_plan(self, ticket: Ticket, project: Project) -> ExecutionJob:
        """Queue the plan phase. Allowed from backlog, plan_review and failed."""
        with self._lock:
            current = self._check_enqueue(ticket.id, PLAN_SOURCES, "plan")
            return self._enqueue_job(current, project, "plan")

    def enqueue_execute(self, ticket: Ticket, project: Project) -> ExecutionJob:
        """Queue the execute phase. Allowed from backlog, plan_review, failed and completed."""
        with self._lock:
            current = self._check_enqueue(ticket.id, EXECUTE_SOURCES, "execute")
            if not current.writes_code:
                raise InvalidTransitionError(
                    f"Tickets in category {current.category!r} have no execute phase"
                )
            return self._enqueue_job(current, project, "execute")

    def approve_plan(self, ticket_id: str) -> ExecutionJob:
        """Accept a reviewed plan and queue execution."""
        ticket = get_ticket(self.db, ticket_id)
        if not ticket:
            raise ValueError(f"Ticket not found: {ticket_id}")
        if ticket.status != "plan_review":
            raise InvalidTransitionError(
                f"Only tickets in plan_review can be approved (ticket is {ticket.status})"
            )
        project = get_project(self.db, ticket.project_id)
        return self.enqueue_execute(ticket, project)

    def _check_enqueue(self, ticket_id: str, allowed: tuple[str, ...], phase: str) -> Ticket:
        ticket = get_ticket(self.db, ticket_id)
        if not ticket:
            raise ValueError(f"Ticket not found: {ticket_id}")
        if self.is_busy(ticket_id) or any(
            j.ticket_id == ticket_id for j in list_active_jobs(self.db)
        ):
            raise TicketBusyError(f"Ticket {ticket_id} already has an active job")
        if ticket.status not in allowed:
            raise InvalidTransitionError(
                f"Cannot start {phase} for a ticket in status {ticket.status!r}"
            )
        return ticket

    def _enqueue_job(self, ticket: Ticket, project: Project, phase: str) -> ExecutionJob:
        job_id = new_job_id()
        log_path = log_path_for(self.config.logs_dir, ticket.id, job_id)
        job = create_job(self.db, ticket.id, phase, str(log_path), job_id=job_id)
        self._set_status(ticket.id, "planning" if phase == "plan" else "queued")
        self._queue.append(job)
        analytics.record(
            self.db,
            "plan_started" if phase == "plan" else "execute_queued",
            {},
            ticket.id,
            project.id,
        )
        logger.info("Queued %s job %s for ticket %s", phase, job.id, ticket.id)
        self.tick()
        return job

    # ── Cancel / merge / recovery ─────────────────────────────

    def cancel(self, ticket_id: str) -> bool:
        """Drop a queued job or kill a running one. Returns False if there was nothing to cancel."""
        with self._lock:
            queued = [j for j in self._queue if j.ticket_id == ticket_id]
            worker = self._active.get(ticket_id)
            if not queued and worker is None:
                return False

            for job in queued:
                self._queue.remove(job)
                update_job_status(self.db, job.id, "failed", exit_code=-1)

            if worker is not None:
                worker.cancelled = True
                self._draining[ticket_id] = worker
                self.runner.cancel(ticket_id)
                self._release(worker)
                update_job_status(self.db, worker.job.id, "failed", exit_code=-1)

            self._set_status(ticket_id, "failed", error=CANCELLED_MESSAGE, completed=True)
            analytics.record(self.db, "job_cancelled", {}, ticket_id, None)
            self._idle.notify_all()

        if worker is not None:
            self.tailer.stop(worker.job.id)
        logger.info("Cancelled work for ticket %s", ticket_id)
        self.tick()
        return True

    def merge_ticket(self, ticket_id: str) -> Ticket:
        """Merge a completed ticket's branch into the project's default branch."""
        ticket = get_ticket(self.db, ticket_id)
        if not ticket:
            raise ValueError(f"Ticket not found: {ticket_id}")
        if ticket.status != "completed" or not ticket.branch:
            raise InvalidTransitionError(
                f"Only completed tickets with a branch can be merged (ticket is {ticket.status})"
            )
        project = get_project(self.db, ticket.project_id)
        manager = self.workspace_factory(project.repo_path)
        manager.merge_branch(ticket.branch, project.default_branch)

        with self._lock:
            self._set_status(ticket_id, "merged")
            analytics.record(self.db, "ticket_merged", {"branch": ticket.branch}, ticket_id, project.id)
        logger.info("Merged %s into %s", ticket.branch, project.default_branch)
        return get_ticket(self.db, ticket_id)

    def recover_interrupted(self) -> list[str]:
        """Fail tickets left mid-flight by a previous process. Never resumes them."""
        recovered = []
        with self._lock:
            for ticket in list_tickets_by_status(self.db, IN_FLIGHT_STATUSES):
                if self.is_busy(ticket.id):
                    continue
                self._set_status(ticket.id, "failed", error=INTERRUPTED_MESSAGE, completed=True)
                recovered.append(ticket.id)
                logger.info("Recovered interrupted ticket %s (%s)", ticket.title, ticket.id)

            tracked = {j.id for j in self._queue} | {w.job.id for w in self._active.values()}
            for job in list_active_jobs(self.db):
                if job.id not in tracked:
                    update_job_status(self.db, job.id, "failed", exit_code=-1)
        return recovered

    # ── Scheduling ────────────────────────────────────────────

    def tick(self):
        """Admit queued jobs in order while global and per-project capacity allow."""
        with self._lock:
            i = 0
            while i < len(self._queue) and len(self._active) < self.config.max_workers:
                job = self._queue[i]
                ticket = get_ticket(self.db, job.ticket_id)
                project = get_project(self.db, ticket.project_id) if ticket else None
                if ticket is None or project is None:
                    logger.warning("Dropping job %s: ticket or project no longer exists", job.id)
                    self._queue.pop(i)
                    update_job_status(self.db, job.id, "failed", exit_code=-1)
                    self._idle.notify_all()
                    continue

                running = sum(1 for w in self._active.values() if w.project.id == project.id)
                if running >= project.settings.max_parallel_jobs:
                    i += 1
                    continue

                self._queue.pop(i)
                self._start_worker(job, ticket, project)

    def _start_worker(self, job: ExecutionJob, ticket: Ticket, project: Project):
        worker = ActiveWorker(job=job, ticket=ticket, project=project, worker_id=uuid.uuid4().hex[:12])
        self._active[ticket.id] = worker
        self._log_routes[job.id] = ticket.id
        for key in [k for k in self._progress if k[0] == ticket.id]:
            del self._progress[key]
        worker.thread = threading.Thread(
            target=self._run_worker,
            args=(worker,),
            name=f"autodev-{job.phase}-{ticket.id[:8]}",
            daemon=True,
        )
        logger.info("Starting %s worker for ticket %s", job.phase, ticket.id)
        worker.thread.start()

    def _run_worker(self, worker: ActiveWorker):
        try:
            with self._lock:
                self._ensure_live(worker)
                update_job_status(self.db, worker.job.id, "running", worker_id=worker.worker_id)
            if worker.job.phase == "plan":
                self._run_plan(worker)
            else:
                self._run_execute(worker)
        except JobCancelled:
            logger.info("Worker for ticket %s stopped after cancellation", worker.ticket.id)
        except Exception as e:
            logger.exception("%s job %s failed", worker.job.phase, worker.job.id)
            self._fail(worker, str(e), tests_failed=isinstance(e, TestsFailedError))
        finally:
            with self._lock:
                if self._draining.get(worker.ticket.id) is worker:
                    del self._draining[worker.ticket.id]
                    self._idle.notify_all()
            self.tick()

    # ── Plan phase ────────────────────────────────────────────

    def _run_plan(self, worker: ActiveWorker):
        ticket, project, job = worker.ticket, worker.project, worker.job

        self._report_progress(ticket.id, "plan", 5)
        self.tailer.watch(job.id, job.log_path)

        stack = detect_stack(project.repo_path)
        context = TemplateContext(
            ticket_title=ticket.title,
            ticket_description=ticket.description,
            project_name=project.name,
            auto_detected_stack=stack.description,
            test_command=project.settings.test_command or stack.test_command,
            build_command=project.settings.build_command or stack.build_command,
            context_files=self._context_files(project),
            attachment_descriptions=describe_attachments(ticket.attachments),
        )
        prompt = self.templates.render(ticket.category, context)
        self._report_progress(ticket.id, "plan", 10)

        result = self._run_agent(worker, prompt, project.repo_path)
        self.tailer.stop(job.id, flush=True)
        self._ensure_live(worker)
        self._report_progress(ticket.id, "plan", 28)

        if result.exit_code != 0:
            raise AgentExecutionError(f"Plan generation failed with exit code {result.exit_code}")

        parsed = extract_plan(result.output)
        if isinstance(parsed, RawFallback):
            logger.warning("No assistant message in plan output for %s; storing raw output", ticket.id)

        with self._lock:
            self._ensure_live(worker)
            update_plan(self.db, ticket.id, parsed.text)
            update_job_status(self.db, job.id, "completed", exit_code=0)
            analytics.record(self.db, "plan_completed", {}, ticket.id, project.id)
            self._release(worker)

            if project.settings.auto_execute_after_plan and ticket.writes_code:
                current = get_ticket(self.db, ticket.id)
                if current:
                    self._enqueue_job(current, project, "execute")
            else:
                self._set_status(ticket.id, "plan_review")
            self._report_progress(ticket.id, "plan", 30)

    def _context_files(self, project: Project) -> str | None:
        patterns = project.settings.context_files
        if not patterns:
            return None
        try:
            return resolve_context_files(project.repo_path, patterns) or None
        except OSError as e:
            logger.warning("Could not resolve context files for %s: %s", project.name, e)
            return None

    # ── Execute phase ─────────────────────────────────────────

    def _run_execute(self, worker: ActiveWorker):
        ticket, project, job = worker.ticket, worker.project, worker.job
        max_retries = self.config.max_retries

        self._report_progress(ticket.id, "execute", 32)
        manager = self.workspace_factory(project.repo_path)
        manager.check_version()
        workspace = manager.create_workspace(
            project.worktree_root,
            ticket.id,
            slugify(ticket.title),
            project.default_branch,
            self.config.branch_prefix,
            branch=ticket.branch,
        )

        with self._lock:
            self._ensure_live(worker)
            update_branch(self.db, ticket.id, workspace.branch, workspace.path)
            self._set_status(ticket.id, "in_progress", started=True)

        self._report_progress(ticket.id, "execute", 36)
        self.tailer.watch(job.id, job.log_path)

        stack = detect_stack(project.repo_path)
        test_command = project.settings.test_command or stack.test_command
        lint_command = project.settings.lint_command or stack.lint_command

        base_prompt = build_execution_prompt(ticket, test_command, self._context_files(project))
        prompt = base_prompt
        tests_passed = None

        while True:
            pct = 36 + round(worker.retry_count / (max_retries + 1) * 40)
            self._report_progress(ticket.id, "execute", pct)

            result = self._run_agent(worker, prompt, workspace.path)
            self._ensure_live(worker)
            # Only test failures are retried; a failed agent run ends the phase.
            if result.exit_code != 0:
                raise AgentExecutionError(f"Agent exited with code {result.exit_code}")
            if not test_command:
                break

            with self._lock:
                self._ensure_live(worker)
                self._set_status(ticket.id, "testing")
            self._report_progress(ticket.id, "test", 80)

            outcome = self._run_shell(worker, test_command, workspace.path)
            self._ensure_live(worker)
            if outcome.exit_code == 0:
                with self._lock:
                    self._ensure_live(worker)
                    analytics.record(self.db, "test_passed", {"retry": worker.retry_count}, ticket.id, project.id)
                self._report_progress(ticket.id, "test", 93)
                tests_passed = True
                break

            failure = outcome.output[-FAILURE_OUTPUT_LIMIT:]
            with self._lock:
                self._ensure_live(worker)
                analytics.record(self.db, "test_failed", {"retry": worker.retry_count}, ticket.id, project.id)
                if worker.retry_count >= max_retries:
                    raise TestsFailedError(
                        f"Tests still failing after {max_retries} retries.\n\nLast error:\n{failure}"
                    )
                worker.retry_count = increment_retry(self.db, job.id)
            logger.info("Tests failed for %s; retry %d of %d", ticket.id, worker.retry_count, max_retries)
            prompt = build_fix_prompt(base_prompt, outcome.output, worker.retry_count)

        lint_passed = None
        if lint_command:
            self._log_line(ticket.id, f"[autodev] Running lint: {lint_command}")
            try:
                lint = self._run_shell(worker, lint_command, workspace.path)
            except OSError as e:
                logger.warning("Lint command failed to run for %s: %s", ticket.id, e)
                self._log_line(ticket.id, "[autodev] Lint command failed to run.")
            else:
                lint_passed = lint.exit_code == 0
                label = "passed" if lint_passed else "failed"
                self._log_line(ticket.id, f"[autodev] Lint {label}.")
                with self._lock:
                    self._ensure_live(worker)
                    analytics.record(self.db, f"lint_{label}", {}, ticket.id, project.id)

        self._report_progress(ticket.id, "test", 95)
        self.tailer.stop(job.id, flush=True)
        self._ensure_live(worker)

        files_changed: list[str] = []
        commit_sha = None
        try:
            manager.prepare_branch(workspace.path, f"autodev: {ticket.title}")
            summary = manager.get_change_summary(workspace.path, project.default_branch)
            files_changed = [f.path for f in summary.file_stats]
            commit_sha = manager.head_commit(workspace.path)
        except GitError as e:
            logger.warning("Could not summarise changes for %s: %s", ticket.id, e)

        with self._lock:
            self._ensure_live(worker)
            set_metadata(
                self.db,
                ticket.id,
                files_changed=files_changed,
                tests_passed=tests_passed,
                lint_passed=lint_passed,
                retry_count=worker.retry_count,
                commit_sha=commit_sha,
            )
            update_job_status(self.db, job.id, "completed", exit_code=0)
            self._release(worker)
            self._set_status(ticket.id, "completed", completed=True)
            self.events.publish(JobCompleted(ticket.id))
            self._report_progress(ticket.id, "execute", 100)
            analytics.record(
                self.db,
                "execute_completed",
                {"retries": worker.retry_count, "files_changed": len(files_changed)},
                ticket.id,
                project.id,
            )
        logger.info("Ticket %s completed (%d file(s) changed)", ticket.id, len(files_changed))

    # ── Worker helpers ────────────────────────────────────────

    def _run_agent(self, worker: ActiveWorker, prompt: str, cwd: str) -> RunResult:
        ticket = worker.ticket
        short_id = ticket.id[:8]
        return self.runner.run(
            ticket.id,
            prompt,
            cwd,
            worker.job.log_path,
            max_turns=self.config.agent_max_turns,
            permission_mode=self.config.permission_mode,
            allowed_tools=self.config.allowed_tools,
            agent_path=worker.project.settings.agent_path or self.config.agent_path,
            on_line=lambda line: logger.debug("[%s] %s", short_id, line),
        )

    def _run_shell(self, worker: ActiveWorker, command: str, cwd: str) -> CommandResult:
        if self.command_runner is not None:
            return self.command_runner(command, cwd)
        # Tracked under the ticket id so cancel also stops tests and lint.
        return self.runner.run_command(worker.ticket.id, command, cwd)

    def _fail(self, worker: ActiveWorker, message: str, tests_failed: bool = False):
        self.tailer.stop(worker.job.id, flush=True)
        with self._lock:
            if worker.cancelled:
                return
            ticket_id, project = worker.ticket.id, worker.project
            update_job_status(self.db, worker.job.id, "failed", exit_code=1)
            self._release(worker)
            if worker.job.phase != "plan":
                fields: dict = {"retry_count": worker.retry_count}
                if tests_failed:
                    fields["tests_passed"] = False
                set_metadata(self.db, ticket_id, **fields)
            self._set_status(ticket_id, "failed", error=message, completed=True)
            self.events.publish(JobFailed(ticket_id, message))
            analytics.record(self.db, "job_failed", {"error": message, "phase": worker.job.phase}, ticket_id, project.id)

    def _ensure_live(self, worker: ActiveWorker):
        if worker.cancelled:
            raise JobCancelled(worker.ticket.id)

    def _release(self, worker: ActiveWorker):
        if self._active.get(worker.ticket.id) is worker:
            del self._active[worker.ticket.id]
        self._log_routes.pop(worker.job.id, None)
        self._idle.notify_all()

    def _set_status(self, ticket_id: str, status: str, **kwargs):
        update_ticket_status(self.db, ticket_id, status, **kwargs)
        self.events.publish(TicketStatusChanged(ticket_id, status))

    def _report_progress(self, ticket_id: str, phase: str, percent: int):
        with self._lock:
            key = (ticket_id, phase)
            percent = max(percent, self._progress.get(key, 0))
            self._progress[key] = percent
            self.events.publish(JobProgress(ticket_id, phase, percent))

    def _log_line(self, ticket_id: str, line: str):
        logger.info("[%s] %s", ticket_id[:8], line)
        self.events.publish(LogLine(ticket_id, line, _now()))

    def _on_log_line(self, job_id: str, line: str, timestamp: str):
        ticket_id = self._log_routes.get(job_id)
        if ticket_id:
            self.events.publish(LogLine(ticket_id, line, timestamp))


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()
