"""Polling log tailer for agent job logs, plus history and stats readers."""

import logging
import re
import threading
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable

from autodev.db.models import JobStats

logger = logging.getLogger(__name__)

POLL_INTERVAL = 0.2
MAX_HISTORY_BYTES = 1_000_000

FILE_TOOL_RE = re.compile(r'"(?:tool|name)"\s*:\s*"(?:Write|Edit|MultiEdit|NotebookEdit)"')
TEST_PASS_RE = re.compile(r"\d+ (?:tests?|specs?) passed|all tests pass", re.IGNORECASE)
TEST_FAIL_RE = re.compile(r"\d+ (?:tests?|specs?) failed|test suite failed", re.IGNORECASE)

LineListener = Callable[[str, str, str], None]


def log_path_for(logs_dir: str | Path, ticket_id: str, job_id: str) -> Path:
    """Deterministic log location for a job; creates the ticket directory."""
    directory = Path(logs_dir) / ticket_id
    directory.mkdir(parents=True, exist_ok=True)
    return directory / f"{job_id}.log"


class _Watch:
    def __init__(self, job_id: str, log_path: Path):
        self.job_id = job_id
        self.log_path = log_path
        self.offset = 0
        self.stop_event = threading.Event()
        self.lock = threading.Lock()
        self.thread: threading.Thread | None = None


class LogTailer:
    """Emits each complete line appended to a watched log exactly once.

    Each watched job gets a daemon thread that polls every ``POLL_INTERVAL``
    seconds from a byte offset. A trailing partial line is left unread until a
    later poll sees its newline, or until ``stop(job_id, flush=True)``.
    """

    def __init__(self, poll_interval: float = POLL_INTERVAL):
        self.poll_interval = poll_interval
        self._watches: dict[str, _Watch] = {}
        self._listeners: list[LineListener] = []
        self._lock = threading.Lock()

    def add_listener(self, fn: LineListener) -> Callable[[], None]:
        """Register ``fn(job_id, line, timestamp)``. Returns a remover."""
        with self._lock:
            self._listeners.append(fn)

        def remove():
            with self._lock:
                if fn in self._listeners:
                    self._listeners.remove(fn)

        return remove

    def watch(self, job_id: str, log_path: str | Path) -> None:
        with self._lock:
            if job_id in self._watches:
                return
            watch = _Watch(job_id, Path(log_path))
            self._watches[job_id] = watch
        watch.thread = threading.Thread(
            target=self._run, args=(watch,), name=f"log-tail-{job_id[:8]}", daemon=True
        )
        watch.thread.start()

    def is_watching(self, job_id: str) -> bool:
        with self._lock:
            return job_id in self._watches

    def stop(self, job_id: str, flush: bool = False) -> None:
        """Stop tailing. With ``flush`` the rest of the file, partial line included, is emitted."""
        with self._lock:
            watch = self._watches.pop(job_id, None)
        if watch is None:
            return
        watch.stop_event.set()
        if watch.thread and watch.thread is not threading.current_thread():
            watch.thread.join(timeout=5)
        if flush:
            self._poll(watch, final=True)

    def stop_all(self) -> None:
        with self._lock:
            job_ids = list(self._watches)
        for job_id in job_ids:
            self.stop(job_id)

    def _run(self, watch: _Watch):
        while not watch.stop_event.wait(self.poll_interval):
            try:
                self._poll(watch)
            except Exception:
                logger.exception("Error tailing %s", watch.log_path)

    def _poll(self, watch: _Watch, final: bool = False):
        with watch.lock:
            try:
                size = watch.log_path.stat().st_size
            except FileNotFoundError:
                return
            if size < watch.offset:
                # Truncated underneath us; start over.
                watch.offset = 0
            if size == watch.offset:
                return
            with open(watch.log_path, "rb") as f:
                f.seek(watch.offset)
                data = f.read(size - watch.offset)

            end = len(data) if final else data.rfind(b"\n") + 1
            if end <= 0:
                return
            watch.offset += end
            complete = data[:end]

        for raw in complete.split(b"\n"):
            line = raw.decode("utf-8", errors="replace").rstrip("\r")
            if line.strip():
                self._emit(watch.job_id, line)

    def _emit(self, job_id: str, line: str):
        timestamp = datetime.now(timezone.utc).isoformat()
        with self._lock:
            listeners = list(self._listeners)
        for fn in listeners:
            try:
                fn(job_id, line, timestamp)
            except Exception:
                logger.exception("Log listener failed for job %s", job_id)


def get_history(log_path: str | Path, max_bytes: int = MAX_HISTORY_BYTES) -> list[str]:
    """Non-blank lines from the last ``max_bytes`` of a log."""
    path = Path(log_path)
    try:
        size = path.stat().st_size
    except FileNotFoundError:
        return []
    start = max(0, size - max_bytes)
    with open(path, "rb") as f:
        # One byte before the window tells whether it starts mid-line.
        f.seek(max(0, start - 1))
        data = f.read()
    if start > 0:
        cut = data[:1] != b"\n"
        data = data[1:]
        if cut:
            newline = data.find(b"\n")
            data = data[newline + 1:] if newline >= 0 else b""
    text = data.decode("utf-8", errors="replace")
    return [line.rstrip("\r") for line in text.split("\n") if line.strip()]


def get_stats(log_path: str | Path, exit_code: int | None = None) -> JobStats:
    """Coarse signals from a finished job log, for display only."""
    lines = get_history(log_path)
    files_modified = 0
    test_result = None
    for line in lines:
        files_modified += len(FILE_TOOL_RE.findall(line))
        if TEST_PASS_RE.search(line):
            test_result = "pass"
        if TEST_FAIL_RE.search(line):
            test_result = "fail"
    return JobStats(
        total_log_lines=len(lines),
        files_modified=files_modified,
        test_result=test_result,
        exit_code=exit_code,
    )

