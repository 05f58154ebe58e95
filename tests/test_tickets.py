"""Tests for projects, tickets, jobs and analytics in the store."""

import pytest

from autodev.core import analytics
from autodev.core import jobs as jobs_mod
from autodev.core import projects as projects_mod
from autodev.core import tickets as tickets_mod
from autodev.db.models import ProjectSettings


class TestProjects:
    def test_create_project_defaults(self, db, git_repo):
        project = projects_mod.create_project(db, "demo", git_repo)
        assert project.name == "demo"
        assert project.default_branch == "main"
        assert project.worktree_root.endswith(".worktrees")
        assert project.settings == ProjectSettings()
        assert project.created_at is not None

    def test_find_project_by_name_or_prefix(self, db, project):
        assert projects_mod.find_project(db, "demo").id == project.id
        assert projects_mod.find_project(db, project.id[:6]).id == project.id
        assert projects_mod.find_project(db, "nope") is None

    def test_update_settings_merges(self, db, project):
        updated = projects_mod.update_project_settings(
            db, project.id, test_command="make test", max_parallel_jobs=3
        )
        assert updated.settings.test_command == "make test"
        assert updated.settings.max_parallel_jobs == 3
        assert updated.settings.default_category == "simple_plan"

    def test_update_settings_rejects_unknown_and_invalid(self, db, project):
        with pytest.raises(ValueError):
            projects_mod.update_project_settings(db, project.id, colour="blue")
        with pytest.raises(ValueError):
            projects_mod.update_project_settings(db, project.id, max_parallel_jobs=0)


class TestTickets:
    def test_create_ticket(self, db, project):
        ticket = tickets_mod.create_ticket(db, project.id, "Add login", "Users sign in", "bug_fix")
        assert ticket.status == "backlog"
        assert ticket.category == "bug_fix"
        assert ticket.metadata.retry_count == 0
        assert ticket.writes_code
        assert tickets_mod.get_status_history(db, ticket.id) == ["backlog"]

    def test_unknown_category_rejected(self, db, project):
        with pytest.raises(ValueError):
            tickets_mod.create_ticket(db, project.id, "Bad", category="poetry")

    def test_analysis_does_not_write_code(self, db, project):
        ticket = tickets_mod.create_ticket(db, project.id, "Audit", category="analysis")
        assert not ticket.writes_code

    def test_find_ticket_by_prefix(self, db, project):
        ticket = tickets_mod.create_ticket(db, project.id, "Prefix")
        assert tickets_mod.find_ticket(db, ticket.id[:8]).id == ticket.id
        assert tickets_mod.find_ticket(db, "zzzz") is None

    def test_list_tickets_filters(self, db, project):
        a = tickets_mod.create_ticket(db, project.id, "A")
        tickets_mod.create_ticket(db, project.id, "B")
        tickets_mod.update_ticket_status(db, a.id, "planning")

        assert len(tickets_mod.list_tickets(db, project.id)) == 2
        assert [t.id for t in tickets_mod.list_tickets(db, status="planning")] == [a.id]
        assert [t.id for t in tickets_mod.list_tickets_by_status(db, ("planning", "queued"))] == [a.id]

    def test_status_change_records_history_and_replaces_error(self, db, project):
        ticket = tickets_mod.create_ticket(db, project.id, "History")
        tickets_mod.update_ticket_status(db, ticket.id, "failed", error="boom", completed=True)
        failed = tickets_mod.get_ticket(db, ticket.id)
        assert failed.error == "boom"
        assert failed.completed_at is not None

        tickets_mod.update_ticket_status(db, ticket.id, "planning")
        assert tickets_mod.get_ticket(db, ticket.id).error is None

        events = tickets_mod.get_ticket_events(db, ticket.id)
        changes = [(e.old_value, e.new_value) for e in events if e.event_type == "status_changed"]
        assert changes == [("backlog", "failed"), ("failed", "planning")]

    def test_unknown_status_rejected(self, db, project):
        ticket = tickets_mod.create_ticket(db, project.id, "Status")
        with pytest.raises(ValueError):
            tickets_mod.update_ticket_status(db, ticket.id, "paused")

    def test_metadata_merge(self, db, project):
        ticket = tickets_mod.create_ticket(db, project.id, "Meta")
        tickets_mod.set_metadata(db, ticket.id, files_changed=["a.py"], retry_count=1)
        tickets_mod.set_metadata(db, ticket.id, tests_passed=True)

        meta = tickets_mod.get_ticket(db, ticket.id).metadata
        assert meta.files_changed == ["a.py"]
        assert meta.retry_count == 1
        assert meta.tests_passed is True
        with pytest.raises(ValueError):
            tickets_mod.set_metadata(db, ticket.id, mood="happy")

    def test_attachments(self, db, project):
        ticket = tickets_mod.create_ticket(db, project.id, "Screens")
        tickets_mod.add_attachment(db, ticket.id, "shot.png", "/tmp/shot.png", "image/png")

        loaded = tickets_mod.get_ticket(db, ticket.id)
        assert [a.filename for a in loaded.attachments] == ["shot.png"]
        assert loaded.attachments[0].mime_type == "image/png"

    def test_branch_is_recorded_once(self, db, project):
        ticket = tickets_mod.create_ticket(db, project.id, "Branch")
        tickets_mod.update_branch(db, ticket.id, "autodev/x", "/w/ticket-x")
        tickets_mod.update_branch(db, ticket.id, "autodev/x", "/w/ticket-x")

        events = [e for e in tickets_mod.get_ticket_events(db, ticket.id) if e.event_type == "workspace_assigned"]
        assert len(events) == 1
        assert tickets_mod.get_ticket(db, ticket.id).branch == "autodev/x"

    def test_delete_keeps_jobs(self, db, project):
        ticket = tickets_mod.create_ticket(db, project.id, "Gone")
        tickets_mod.add_attachment(db, ticket.id, "f.txt", "/tmp/f.txt")
        job = jobs_mod.create_job(db, ticket.id, "plan", "/tmp/log")

        assert tickets_mod.delete_ticket(db, ticket.id) is True
        assert tickets_mod.get_ticket(db, ticket.id) is None
        assert jobs_mod.get_job(db, job.id) is not None
        assert tickets_mod.delete_ticket(db, ticket.id) is False

    def test_slugify(self):
        assert tickets_mod.slugify("Add OAuth Login!") == "add-oauth-login"
        assert tickets_mod.slugify("  many   spaces here ") == "many-spaces-here"
        assert len(tickets_mod.slugify("x" * 80)) == 50


class TestJobs:
    def test_job_lifecycle(self, db, project):
        ticket = tickets_mod.create_ticket(db, project.id, "Job")
        job = jobs_mod.create_job(db, ticket.id, "execute", "/tmp/job.log")
        assert job.status == "pending"
        assert job.is_active

        jobs_mod.update_job_status(db, job.id, "running", worker_id="w1")
        running = jobs_mod.get_job(db, job.id)
        assert running.started_at is not None
        assert running.worker_id == "w1"

        assert jobs_mod.increment_retry(db, job.id) == 1
        assert jobs_mod.increment_retry(db, job.id) == 2

        jobs_mod.update_job_status(db, job.id, "completed", exit_code=0)
        done = jobs_mod.get_job(db, job.id)
        assert done.exit_code == 0
        assert done.completed_at is not None
        assert not done.is_active
        assert jobs_mod.list_active_jobs(db) == []

    def test_list_jobs_for_ticket_in_order(self, db, project):
        ticket = tickets_mod.create_ticket(db, project.id, "Jobs")
        first = jobs_mod.create_job(db, ticket.id, "plan", "")
        second = jobs_mod.create_job(db, ticket.id, "execute", "")
        assert [j.id for j in jobs_mod.list_jobs_for_ticket(db, ticket.id)] == [first.id, second.id]


class TestAnalytics:
    def _finished_execute(self, db, project, title, status):
        ticket = tickets_mod.create_ticket(db, project.id, title)
        job = jobs_mod.create_job(db, ticket.id, "execute", "")
        jobs_mod.update_job_status(db, job.id, "running")
        jobs_mod.update_job_status(db, job.id, status, exit_code=0 if status == "completed" else 1)
        tickets_mod.update_ticket_status(db, ticket.id, status, completed=True)
        return ticket

    def test_record_and_list(self, db, project):
        analytics.record(db, "plan_started", {"x": 1}, "t1", project.id)
        analytics.record(db, "plan_completed", {}, "t1", project.id)

        events = analytics.list_events(db, ticket_id="t1")
        assert [e.event_type for e in events] == ["plan_started", "plan_completed"]
        assert events[0].data == {"x": 1}
        assert len(analytics.list_events(db, event_type="plan_completed")) == 1

    def test_summary(self, db, project):
        self._finished_execute(db, project, "Good", "completed")
        self._finished_execute(db, project, "Bad", "failed")
        tickets_mod.create_ticket(db, project.id, "Untouched")

        data = analytics.summary(db, project.id)
        assert data["total_tickets"] == 3
        assert data["success_rate"] == 0.5
        assert len(data["weekly_summary"]) == 7
        assert data["weekly_summary"][-1]["count"] == 1
        assert {j["ticket_title"] for j in data["recent_jobs"]} == {"Good", "Bad"}

    def test_empty_summary(self, db):
        data = analytics.summary(db)
        assert data["success_rate"] is None
        assert data["avg_duration_seconds"] is None
        assert sum(d["count"] for d in data["weekly_summary"]) == 0
