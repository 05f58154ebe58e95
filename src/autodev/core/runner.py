"""Running the coding agent and shell commands as subprocesses."""

import codecs
import logging
import os
import shutil
import signal
import subprocess
import threading
from dataclasses import dataclass
from pathlib import Path
from typing import Callable

from autodev.errors import AgentNotFoundError, RunnerError

logger = logging.getLogger(__name__)

AGENT_BINARY = "claude"
DEFAULT_MAX_TURNS = 50
READ_CHUNK = 64 * 1024

INSTALL_HINT = (
    "Claude Code CLI not found. Install it with:\n"
    "  npm install -g @anthropic-ai/claude-code\n"
    "or set AUTODEV_AGENT_PATH to the binary."
)


@dataclass
class RunResult:
    exit_code: int
    output: str


@dataclass
class CommandResult:
    exit_code: int
    output: str


def find_agent(configured_path: str | None = None) -> str:
    """Locate the agent binary: explicit path first, then PATH."""
    if configured_path and configured_path.strip():
        if not Path(configured_path).exists():
            raise AgentNotFoundError(f"Agent binary not found at configured path: {configured_path}")
        return configured_path
    found = shutil.which(AGENT_BINARY)
    if found:
        return found
    raise AgentNotFoundError(INSTALL_HINT)


def build_agent_command(
    binary: str,
    prompt: str,
    max_turns: int = DEFAULT_MAX_TURNS,
    permission_mode: str = "skip",
    allowed_tools: list[str] | None = None,
) -> list[str]:
    cmd = [
        binary,
        "--print",
        "--verbose",
        "--output-format", "stream-json",
        "--max-turns", str(max_turns),
    ]
    if permission_mode == "skip":
        cmd.append("--dangerously-skip-permissions")
    elif permission_mode == "allowedTools":
        if allowed_tools:
            cmd += ["--allowedTools", ",".join(allowed_tools)]
    elif permission_mode and permission_mode != "prompt":
        cmd += ["--permission-mode", permission_mode]
    cmd.append(prompt)
    return cmd


class AgentRunner:
    """Spawns agent processes, tracked by caller-chosen ids for cancellation."""

    def __init__(self, default_agent_path: str | None = None):
        self.default_agent_path = default_agent_path
        self._processes: dict[str, subprocess.Popen] = {}
        self._lock = threading.Lock()

    def run(
        self,
        tracking_id: str,
        prompt: str,
        cwd: str | Path,
        log_path: str | Path,
        max_turns: int | None = None,
        permission_mode: str | None = None,
        allowed_tools: list[str] | None = None,
        agent_path: str | None = None,
        on_line: Callable[[str], None] | None = None,
    ) -> RunResult:
        """Run the agent to completion, appending its output to ``log_path``.

        Blocks until the process exits. stdout and stderr are merged; complete
        lines go to ``on_line`` as they arrive and a trailing partial line is
        delivered when the process closes.
        """
        binary = find_agent(agent_path or self.default_agent_path)
        cmd = build_agent_command(
            binary,
            prompt,
            max_turns=max_turns or DEFAULT_MAX_TURNS,
            permission_mode=permission_mode or "skip",
            allowed_tools=allowed_tools,
        )
        Path(log_path).parent.mkdir(parents=True, exist_ok=True)

        decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        output: list[str] = []
        pending = ""
        with open(log_path, "ab") as log:
            with self._lock:
                if tracking_id in self._processes:
                    raise RunnerError(f"A process is already running for {tracking_id}")
                try:
                    proc = subprocess.Popen(
                        cmd,
                        cwd=str(cwd),
                        env=dict(os.environ),
                        stdin=subprocess.DEVNULL,
                        stdout=subprocess.PIPE,
                        stderr=subprocess.STDOUT,
                        bufsize=0,
                    )
                except OSError as e:
                    raise RunnerError(f"Failed to spawn agent: {e}") from e
                self._processes[tracking_id] = proc
            logger.info("Agent started for %s (PID %s) in %s", tracking_id, proc.pid, cwd)

            try:
                while True:
                    chunk = proc.stdout.read(READ_CHUNK)
                    if not chunk:
                        break
                    log.write(chunk)
                    log.flush()
                    text = decoder.decode(chunk)
                    output.append(text)
                    pending += text
                    *lines, pending = pending.split("\n")
                    if on_line:
                        for line in lines:
                            if line:
                                on_line(line)
                tail = decoder.decode(b"", final=True)
                output.append(tail)
                pending += tail
                if pending and on_line:
                    on_line(pending)
                exit_code = proc.wait()
            finally:
                proc.stdout.close()
                _reap(proc)
                self._untrack(tracking_id, proc)

        logger.info("Agent for %s exited with code %s", tracking_id, exit_code)
        return RunResult(exit_code=exit_code, output="".join(output))

    def run_command(self, tracking_id: str, command: str, cwd: str | Path) -> CommandResult:
        """Run a test/lint shell command tracked under ``tracking_id``.

        ``cancel`` terminates the whole process group of the command.
        """
        with self._lock:
            if tracking_id in self._processes:
                raise RunnerError(f"A process is already running for {tracking_id}")
            proc = _spawn_shell(command, cwd)
            self._processes[tracking_id] = proc
        try:
            return _collect(proc)
        finally:
            self._untrack(tracking_id, proc)

    def cancel(self, tracking_id: str) -> bool:
        """Send SIGTERM to the tracked process and stop tracking it at once."""
        with self._lock:
            proc = self._processes.pop(tracking_id, None)
        if proc is None:
            return False
        _signal(proc, signal.SIGTERM)
        logger.info("Sent SIGTERM to %s (PID %s)", tracking_id, proc.pid)
        return True

    def is_running(self, tracking_id: str) -> bool:
        with self._lock:
            return tracking_id in self._processes

    def _untrack(self, tracking_id: str, proc: subprocess.Popen):
        with self._lock:
            if self._processes.get(tracking_id) is proc:
                del self._processes[tracking_id]


def run_command(command: str, cwd: str | Path) -> CommandResult:
    """Run a test/lint shell command, capturing combined output."""
    return _collect(_spawn_shell(command, cwd))


def _spawn_shell(command: str, cwd: str | Path) -> subprocess.Popen:
    logger.info("Running %r in %s", command, cwd)
    # Own process group, so a cancel reaches everything the shell started.
    return subprocess.Popen(
        command,
        shell=True,
        cwd=str(cwd),
        stdin=subprocess.DEVNULL,
        stdout=subprocess.PIPE,
        stderr=subprocess.STDOUT,
        text=True,
        errors="replace",
        start_new_session=True,
    )


def _collect(proc: subprocess.Popen) -> CommandResult:
    try:
        output, _ = proc.communicate()
    finally:
        _reap(proc)
    return CommandResult(exit_code=proc.returncode, output=output or "")


def _signal(proc: subprocess.Popen, sig: int):
    try:
        if os.getpgid(proc.pid) == proc.pid:
            os.killpg(proc.pid, sig)
        else:
            proc.send_signal(sig)
    except ProcessLookupError:
        pass  # Already exited


def _reap(proc: subprocess.Popen):
    """Kill a process left running by an error path."""
    if proc.poll() is None:
        _signal(proc, signal.SIGKILL)
        proc.wait()
