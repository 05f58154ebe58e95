"""Data models for autodev."""

from dataclasses import asdict, dataclass, field
from datetime import datetime

TICKET_STATUSES = (
    "backlog",
    "planning",
    "plan_review",
    "queued",
    "in_progress",
    "testing",
    "completed",
    "failed",
    "merged",
)

# Statuses that mean a worker is (or should be) carrying the ticket.
IN_FLIGHT_STATUSES = ("planning", "queued", "in_progress", "testing")

TICKET_CATEGORIES = (
    "prd",
    "simple_plan",
    "analysis",
    "bug_fix",
    "test",
    "direct",
    "refactor",
)

# Categories whose deliverable is the plan text itself.
NON_CODING_CATEGORIES = ("analysis",)

JOB_PHASES = ("plan", "execute", "fix")
JOB_STATUSES = ("pending", "running", "completed", "failed")
ACTIVE_JOB_STATUSES = ("pending", "running")


@dataclass
class ProjectSettings:
    max_parallel_jobs: int = 2
    default_category: str = "simple_plan"
    auto_execute_after_plan: bool = False
    test_command: str | None = None
    build_command: str | None = None
    lint_command: str | None = None
    context_files: list[str] = field(default_factory=list)
    agent_path: str | None = None

    def to_dict(self) -> dict:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict) -> "ProjectSettings":
        known = {k: v for k, v in data.items() if k in cls.__dataclass_fields__}
        return cls(**known)


@dataclass
class Project:
    id: str
    name: str
    repo_path: str
    default_branch: str = "main"
    worktree_root: str = ""
    settings: ProjectSettings = field(default_factory=ProjectSettings)
    created_at: datetime | None = None


@dataclass
class TicketMetadata:
    tokens_used: int | None = None
    files_changed: list[str] = field(default_factory=list)
    tests_passed: bool | None = None
    lint_passed: bool | None = None
    retry_count: int = 0
    commit_sha: str | None = None

    def to_dict(self) -> dict:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict) -> "TicketMetadata":
        known = {k: v for k, v in data.items() if k in cls.__dataclass_fields__}
        return cls(**known)


@dataclass
class Attachment:
    id: str
    ticket_id: str
    filename: str
    filepath: str
    mime_type: str | None = None
    created_at: datetime | None = None


@dataclass
class Ticket:
    id: str
    project_id: str
    title: str
    description: str = ""
    status: str = "backlog"
    category: str = "simple_plan"
    plan: str | None = None
    branch: str | None = None
    worktree_path: str | None = None
    error: str | None = None
    metadata: TicketMetadata = field(default_factory=TicketMetadata)
    attachments: list[Attachment] = field(default_factory=list)
    created_at: datetime | None = None
    started_at: datetime | None = None
    completed_at: datetime | None = None

    @property
    def writes_code(self) -> bool:
        return self.category not in NON_CODING_CATEGORIES


@dataclass
class TicketEvent:
    id: int | None = None
    ticket_id: str = ""
    event_type: str = ""
    old_value: str | None = None
    new_value: str | None = None
    created_at: datetime | None = None


@dataclass
class ExecutionJob:
    id: str
    ticket_id: str
    phase: str
    status: str = "pending"
    log_path: str = ""
    retry_count: int = 0
    worker_id: str | None = None
    exit_code: int | None = None
    started_at: datetime | None = None
    completed_at: datetime | None = None

    @property
    def is_active(self) -> bool:
        return self.status in ACTIVE_JOB_STATUSES


@dataclass
class AnalyticsEvent:
    id: int | None = None
    event_type: str = ""
    data: dict = field(default_factory=dict)
    ticket_id: str | None = None
    project_id: str | None = None
    created_at: datetime | None = None


@dataclass
class WorktreeInfo:
    path: str
    branch: str
    head: str = ""
    ticket_id: str | None = None
    is_locked: bool = False
    is_bare: bool = False


@dataclass
class FileChangeStat:
    path: str
    status: str = "modified"
    insertions: int = 0
    deletions: int = 0


@dataclass
class ChangeSummary:
    insertions: int = 0
    deletions: int = 0
    file_stats: list[FileChangeStat] = field(default_factory=list)

    @property
    def total_files(self) -> int:
        return len(self.file_stats)


@dataclass
class JobStats:
    total_log_lines: int = 0
    files_modified: int = 0
    test_result: str | None = None
    exit_code: int | None = None


@dataclass
class DailyStat:
    date: str
    count: int = 0


@dataclass
class RecentJob:
    ticket_id: str
    ticket_title: str
    status: str
    category: str
    duration_seconds: float | None = None
    files_changed: int = 0
    tests_passed: bool | None = None
    retry_count: int = 0
    completed_at: datetime | None = None
