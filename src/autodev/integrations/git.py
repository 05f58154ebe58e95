"""Git subprocess wrappers for worktree, branch and diff operations."""

import re
import subprocess
from pathlib import Path

from autodev.db.models import ChangeSummary, FileChangeStat, WorktreeInfo
from autodev.errors import GitError

TICKET_DIR_RE = re.compile(r"^ticket-([a-f0-9-]{36})$")

NAME_STATUS = {"A": "added", "D": "deleted", "R": "renamed", "M": "modified"}


def run_git(args: list[str], cwd: str | Path | None = None) -> str:
    """Run a git command and return stdout. Raises GitError on failure."""
    cmd = ["git"] + args
    try:
        result = subprocess.run(
            cmd,
            cwd=cwd,
            capture_output=True,
            text=True,
            check=True,
        )
        return result.stdout.strip()
    except subprocess.CalledProcessError as e:
        raise GitError(f"git {' '.join(args)} failed: {e.stderr.strip()}") from e
    except FileNotFoundError as e:
        raise GitError("git executable not found on PATH") from e


def git_version() -> tuple[str, tuple[int, int]]:
    """Return the ``git --version`` string and its (major, minor) pair."""
    version = run_git(["--version"])
    match = re.search(r"(\d+)\.(\d+)", version)
    if not match:
        return version, (0, 0)
    return version, (int(match.group(1)), int(match.group(2)))


def worktree_add(
    repo_path: str | Path,
    worktree_path: str | Path,
    branch: str,
    base_branch: str = "main",
    create_branch: bool = True,
) -> str:
    """Create a new git worktree."""
    args = ["worktree", "add"]
    if create_branch:
        args += ["-b", branch]
    args += [str(worktree_path)]
    if not create_branch:
        args.append(branch)
    else:
        args.append(base_branch)
    return run_git(args, cwd=repo_path)


def parse_worktree_list(output: str) -> list[WorktreeInfo]:
    """Parse ``git worktree list --porcelain`` output."""
    worktrees = []
    for block in re.split(r"\n\s*\n", output.strip()):
        if not block.strip():
            continue
        current: dict = {}
        for line in block.split("\n"):
            if line.startswith("worktree "):
                current["worktree"] = line[len("worktree "):]
            elif line.startswith("HEAD "):
                current["HEAD"] = line[len("HEAD "):]
            elif line.startswith("branch "):
                current["branch"] = line[len("branch "):].replace("refs/heads/", "", 1)
            elif line == "bare":
                current["bare"] = True
            elif line.startswith("locked"):
                current["locked"] = True

        path = current.get("worktree", "")
        match = TICKET_DIR_RE.match(Path(path).name)
        worktrees.append(
            WorktreeInfo(
                path=path,
                branch=current.get("branch", "(detached)"),
                head=current.get("HEAD", ""),
                ticket_id=match.group(1) if match else None,
                is_locked=current.get("locked", False),
                is_bare=current.get("bare", False),
            )
        )
    return worktrees


def worktree_list(repo_path: str | Path) -> list[WorktreeInfo]:
    """List all worktrees of a repository."""
    return parse_worktree_list(run_git(["worktree", "list", "--porcelain"], cwd=repo_path))


def worktree_remove(repo_path: str | Path, worktree_path: str | Path, force: bool = False) -> str:
    """Remove a git worktree."""
    args = ["worktree", "remove", str(worktree_path)]
    if force:
        args.append("--force")
    return run_git(args, cwd=repo_path)


def worktree_prune(repo_path: str | Path) -> str:
    return run_git(["worktree", "prune"], cwd=repo_path)


def branch_exists(repo_path: str | Path, branch: str) -> bool:
    """Check if a branch exists."""
    return ref_exists(repo_path, f"refs/heads/{branch}")


def ref_exists(cwd: str | Path, ref: str) -> bool:
    try:
        run_git(["rev-parse", "--verify", "--quiet", ref], cwd=cwd)
        return True
    except GitError:
        return False


def delete_branch(repo_path: str | Path, branch: str, force: bool = False) -> str:
    """Delete a branch."""
    flag = "-D" if force else "-d"
    return run_git(["branch", flag, branch], cwd=repo_path)


def get_status(cwd: str | Path) -> str:
    """Get porcelain git status of a working directory."""
    return run_git(["status", "--porcelain"], cwd=cwd)


def get_current_branch(cwd: str | Path) -> str:
    """Get the current branch name."""
    return run_git(["branch", "--show-current"], cwd=cwd)


def head_commit(cwd: str | Path) -> str:
    return run_git(["rev-parse", "HEAD"], cwd=cwd)


def commit_all(cwd: str | Path, message: str) -> bool:
    """Stage and commit everything. Returns False when there was nothing to commit."""
    if not get_status(cwd):
        return False
    run_git(["add", "-A"], cwd=cwd)
    run_git(["commit", "-m", message], cwd=cwd)
    return True


def checkout(cwd: str | Path, branch: str) -> str:
    return run_git(["checkout", branch], cwd=cwd)


def merge_no_ff(cwd: str | Path, branch: str, message: str) -> str:
    return run_git(["merge", "--no-ff", branch, "-m", message], cwd=cwd)


def merge_base(cwd: str | Path, ref: str, other: str = "HEAD") -> str:
    return run_git(["merge-base", other, ref], cwd=cwd)


# ── Diff parsing ──────────────────────────────────────────────


def _numstat_path(raw: str) -> str:
    """Resolve rename notation (``a => b`` or ``dir/{a => b}/f``) to the new path."""
    if "{" in raw and " => " in raw:
        return re.sub(r"\{[^{}]* => ([^{}]*)\}", r"\1", raw).replace("//", "/")
    if " => " in raw:
        return raw.split(" => ", 1)[1]
    return raw


def parse_change_summary(shortstat: str, name_status: str, numstat: str = "") -> ChangeSummary:
    """Build a ChangeSummary from ``git diff`` outputs."""
    ins = re.search(r"(\d+) insertions?\(\+\)", shortstat)
    dels = re.search(r"(\d+) deletions?\(-\)", shortstat)

    counts: dict[str, tuple[int, int]] = {}
    for line in numstat.strip().split("\n"):
        parts = line.split("\t")
        if len(parts) < 3:
            continue
        added = int(parts[0]) if parts[0].isdigit() else 0
        removed = int(parts[1]) if parts[1].isdigit() else 0
        counts[_numstat_path(parts[2])] = (added, removed)

    file_stats = []
    for line in name_status.strip().split("\n"):
        if not line.strip():
            continue
        parts = line.split("\t")
        code = parts[0].strip()[:1] or "M"
        path = parts[-1] if len(parts) > 1 else ""
        added, removed = counts.get(path, (0, 0))
        file_stats.append(
            FileChangeStat(
                path=path,
                status=NAME_STATUS.get(code, "modified"),
                insertions=added,
                deletions=removed,
            )
        )

    return ChangeSummary(
        insertions=int(ins.group(1)) if ins else 0,
        deletions=int(dels.group(1)) if dels else 0,
        file_stats=file_stats,
    )


def diff_summary(cwd: str | Path, base: str) -> ChangeSummary:
    """Changes committed on HEAD since ``base``."""
    span = f"{base}..HEAD"
    return parse_change_summary(
        run_git(["diff", "--shortstat", span], cwd=cwd),
        run_git(["diff", "--name-status", span], cwd=cwd),
        run_git(["diff", "--numstat", span], cwd=cwd),
    )
