"""Shared fixtures: temporary repositories, stores and fake agents."""

import json
import os
import stat
import subprocess
import threading
import time
from pathlib import Path

import pytest

from autodev.config import Config
from autodev.core import projects as projects_mod
from autodev.core.runner import AgentRunner, RunResult
from autodev.db.engine import init_db

GIT_IDENTITY = {
    "GIT_AUTHOR_NAME": "Test",
    "GIT_AUTHOR_EMAIL": "test@test.com",
    "GIT_COMMITTER_NAME": "Test",
    "GIT_COMMITTER_EMAIL": "test@test.com",
}


@pytest.fixture(autouse=True)
def git_identity(monkeypatch):
    """Commits made by the code under test need an identity too."""
    for key, value in GIT_IDENTITY.items():
        monkeypatch.setenv(key, value)


def make_git_repo(path: Path) -> Path:
    path.mkdir(parents=True, exist_ok=True)
    subprocess.run(["git", "init"], cwd=path, capture_output=True, check=True)
    subprocess.run(["git", "checkout", "-b", "main"], cwd=path, capture_output=True, check=True)
    (path / "README.md").write_text("# Test")
    subprocess.run(["git", "add", "."], cwd=path, capture_output=True, check=True)
    subprocess.run(
        ["git", "commit", "-m", "init"],
        cwd=path,
        capture_output=True,
        check=True,
        env={**os.environ, **GIT_IDENTITY},
    )
    return path


@pytest.fixture
def git_repo(tmp_path):
    """A git repo on ``main`` with one commit."""
    return str(make_git_repo(tmp_path / "repo"))


@pytest.fixture
def config(tmp_path):
    cfg = Config(data_dir=tmp_path / "data", max_workers=4, max_retries=2, tick_interval=0.05)
    cfg.ensure_dirs()
    return cfg


@pytest.fixture
def db(config):
    conn = init_db(config.db_path)
    yield conn
    conn.close()


@pytest.fixture
def project(db, git_repo):
    return projects_mod.create_project(db, "demo", git_repo)


# ── Fake agent output ─────────────────────────────────────────


def assistant_line(text: str) -> str:
    """One stream-json line carrying an assistant text block."""
    message = {"type": "assistant", "message": {"content": [{"type": "text", "text": text}]}}
    return json.dumps(message) + "\n"


FAKE_AGENT_SCRIPT = """#!/bin/sh
if [ -n "$FAKE_AGENT_PID" ]; then
    echo $$ > "$FAKE_AGENT_PID"
fi
printf '%s\\n' '{"type":"system","subtype":"init"}'
printf '%s\\n' '{"type":"assistant","message":{"content":[{"type":"text","text":"Step 1: write the code"}]}}'
echo "warning on stderr" >&2
if [ -n "$FAKE_AGENT_WRITE" ]; then
    echo "generated" > "$FAKE_AGENT_WRITE"
fi
if [ -n "$FAKE_AGENT_SLEEP" ]; then
    exec sleep "$FAKE_AGENT_SLEEP"
fi
printf 'no newline at end'
exit "${FAKE_AGENT_EXIT:-0}"
"""


@pytest.fixture
def fake_agent(tmp_path):
    """Path to a shell script that behaves like the agent CLI.

    ``FAKE_AGENT_EXIT``, ``FAKE_AGENT_SLEEP``, ``FAKE_AGENT_WRITE`` and
    ``FAKE_AGENT_PID`` steer it.
    """
    path = tmp_path / "bin" / "fake-claude"
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(FAKE_AGENT_SCRIPT)
    path.chmod(path.stat().st_mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)
    return str(path)


class FakeRunner:
    """Stands in for AgentRunner with scripted results.

    Each step is ``(exit_code, output)`` or a callable ``step(cwd, prompt)``
    returning one. With ``block=True`` every run waits until ``release()`` or
    until it is cancelled.

    Test and lint commands really run, tracked like AgentRunner tracks them.
    """

    def __init__(self, *steps, default=(0, ""), block: bool = False):
        self.steps = list(steps)
        self.default = default
        self.block = block
        self.calls: list[dict] = []
        self.cancelled: list[str] = []
        self._gates: dict[str, threading.Event] = {}
        self._lock = threading.Lock()
        self.shell = AgentRunner()

    def run(self, tracking_id, prompt, cwd, log_path, on_line=None, **kwargs) -> RunResult:
        gate = threading.Event()
        with self._lock:
            self._gates[tracking_id] = gate
            self.calls.append({"tracking_id": tracking_id, "prompt": prompt, "cwd": str(cwd), **kwargs})
            step = self.steps.pop(0) if self.steps else self.default
            block = self.block
        try:
            if block:
                gate.wait(timeout=10)
                with self._lock:
                    if tracking_id in self.cancelled:
                        return RunResult(exit_code=-15, output="")
            if callable(step):
                step = step(Path(cwd), prompt)
            exit_code, output = step
            with open(log_path, "a") as f:
                f.write(output)
            if on_line:
                for line in output.splitlines():
                    if line:
                        on_line(line)
            return RunResult(exit_code=exit_code, output=output)
        finally:
            with self._lock:
                if self._gates.get(tracking_id) is gate:
                    del self._gates[tracking_id]

    def run_command(self, tracking_id, command, cwd):
        return self.shell.run_command(tracking_id, command, cwd)

    def cancel(self, tracking_id) -> bool:
        if self.shell.cancel(tracking_id):
            return True
        with self._lock:
            gate = self._gates.pop(tracking_id, None)
            if gate is None:
                return False
            self.cancelled.append(tracking_id)
        gate.set()
        return True

    def is_running(self, tracking_id) -> bool:
        if self.shell.is_running(tracking_id):
            return True
        with self._lock:
            return tracking_id in self._gates

    def running(self) -> list[str]:
        with self._lock:
            return list(self._gates)

    def release(self):
        with self._lock:
            self.block = False
            gates = list(self._gates.values())
        for gate in gates:
            gate.set()


class EventRecorder:
    """Collects bus events from any thread."""

    def __init__(self):
        self.events = []
        self._lock = threading.Lock()

    def __call__(self, event):
        with self._lock:
            self.events.append(event)

    def of_type(self, cls) -> list:
        with self._lock:
            return [e for e in self.events if isinstance(e, cls)]


def wait_for(predicate, timeout: float = 10.0, interval: float = 0.02) -> bool:
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(interval)
    return predicate()
