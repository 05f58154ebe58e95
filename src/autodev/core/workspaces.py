"""Per-ticket git worktrees: creation, inspection, merging and cleanup."""

import logging
import sqlite3
import time
from dataclasses import dataclass
from pathlib import Path

from autodev.core.projects import list_projects
from autodev.core.tickets import get_ticket
from autodev.db.models import ChangeSummary, WorktreeInfo
from autodev.errors import GitError, GitVersionError
from autodev.integrations import git

logger = logging.getLogger(__name__)

MIN_GIT_VERSION = (2, 5)

STALE_STATUSES = ("merged", "failed")


@dataclass
class Workspace:
    path: str
    branch: str
    created: bool


def workspace_path(root: str | Path, ticket_id: str) -> Path:
    return Path(root) / f"ticket-{ticket_id}"


def branch_name(branch_prefix: str, ticket_id: str, slug: str) -> str:
    name = f"{branch_prefix}ticket-{ticket_id}"
    return f"{name}-{slug}" if slug else name


class WorkspaceManager:
    """Git operations for one repository."""

    def __init__(self, repo_path: str | Path):
        self.repo_path = Path(repo_path)

    def check_version(self) -> str:
        """Fail fast when git is too old for ``git worktree``."""
        version, (major, minor) = git.git_version()
        if (major, minor) < MIN_GIT_VERSION:
            raise GitVersionError(
                f"git worktree requires git {MIN_GIT_VERSION[0]}.{MIN_GIT_VERSION[1]}+. "
                f"Found: {version}. Upgrade git and try again."
            )
        return version

    def create_workspace(
        self,
        root: str | Path,
        ticket_id: str,
        slug: str,
        base_branch: str,
        branch_prefix: str,
        branch: str | None = None,
    ) -> Workspace:
        """Create the ticket's worktree, or reuse it if the directory exists.

        ``branch`` pins a name already recorded for the ticket.
        """
        path = workspace_path(root, ticket_id)
        branch = branch or branch_name(branch_prefix, ticket_id, slug)

        if path.exists():
            current = branch
            if (path / ".git").exists():
                try:
                    current = git.get_current_branch(path) or branch
                except GitError as e:
                    logger.debug("Could not read branch of %s: %s", path, e)
            logger.info("Reusing workspace %s on %s", path, current)
            return Workspace(path=str(path), branch=current, created=False)

        path.parent.mkdir(parents=True, exist_ok=True)
        self._exclude_from_repo(path.parent)

        if git.branch_exists(self.repo_path, branch):
            # Workspace was removed but the branch survived; pick up where it left off.
            git.worktree_add(self.repo_path, path, branch, create_branch=False)
        else:
            git.worktree_add(self.repo_path, path, branch, base_branch, create_branch=True)
        logger.info("Created workspace %s on %s", path, branch)
        return Workspace(path=str(path), branch=branch, created=True)

    def remove_workspace(self, path: str | Path) -> None:
        git.worktree_remove(self.repo_path, path, force=True)

    def list_workspaces(self) -> list[WorktreeInfo]:
        return git.worktree_list(self.repo_path)

    def get_change_summary(self, path: str | Path, default_branch: str = "main") -> ChangeSummary:
        """Changes committed in the workspace since it forked from the default branch."""
        for ref in (f"origin/{default_branch}", "origin/HEAD", default_branch):
            if git.ref_exists(path, ref):
                base = git.merge_base(path, ref)
                return git.diff_summary(path, base)
        raise GitError(f"No base ref found for {default_branch!r} in {path}")

    def prepare_branch(self, path: str | Path, message: str = "autodev: final commit") -> bool:
        """Commit anything the agent left uncommitted."""
        return git.commit_all(path, message)

    def head_commit(self, path: str | Path) -> str:
        return git.head_commit(path)

    def merge_branch(self, branch: str, default_branch: str) -> None:
        git.checkout(self.repo_path, default_branch)
        git.merge_no_ff(self.repo_path, branch, f"Merge {branch} into {default_branch}")

    def _exclude_from_repo(self, root: Path) -> None:
        """Keep an in-repo worktree root out of ``git status``."""
        try:
            rel = root.resolve().relative_to(self.repo_path.resolve())
        except ValueError:
            return
        exclude = self.repo_path / ".git" / "info" / "exclude"
        if not exclude.parent.is_dir():
            return
        entry = f"/{rel.as_posix()}/"
        existing = exclude.read_text() if exclude.exists() else ""
        if entry not in existing.splitlines():
            with open(exclude, "a") as f:
                if existing and not existing.endswith("\n"):
                    f.write("\n")
                f.write(entry + "\n")


def clean_stale_workspaces(db: sqlite3.Connection, clean_after_days: int) -> list[str]:
    """Remove old workspaces whose tickets are merged, failed or deleted.

    Returns the removed paths. Projects whose repository cannot be listed are
    skipped.
    """
    cutoff = time.time() - clean_after_days * 24 * 60 * 60
    removed = []
    for project in list_projects(db):
        manager = WorkspaceManager(project.repo_path)
        try:
            workspaces = manager.list_workspaces()
        except GitError as e:
            logger.warning("Cannot list workspaces for %s: %s", project.name, e)
            continue

        for ws in workspaces:
            if not ws.ticket_id:
                continue
            ticket = get_ticket(db, ws.ticket_id)
            if ticket and ticket.status not in STALE_STATUSES:
                continue
            try:
                if Path(ws.path).stat().st_mtime > cutoff:
                    continue
            except OSError:
                continue
            try:
                manager.remove_workspace(ws.path)
            except GitError as e:
                logger.warning("Failed to clean workspace %s: %s", ws.path, e)
                continue
            logger.info("Cleaned up stale workspace %s", ws.path)
            removed.append(ws.path)
    return removed
