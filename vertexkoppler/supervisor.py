"""Single-instance supervision of the detached proxy server process.

The PID record (``<state dir>/agent-server.pid``, two lines: pid and port) is
the only source of truth for whether a server is running. Stale or malformed
records are removed whenever they are read.
"""

from __future__ import annotations

import logging
import os
import signal
import socket
import subprocess
import sys
import time
from dataclasses import dataclass
from pathlib import Path

from .app import is_port_available
from .config import AgentConfig, ensure_state_dir, log_file_path, state_dir

LOG = logging.getLogger(__name__)

NOT_RUNNING = "not_running"
RUNNING = "running"
UNRESPONSIVE = "unresponsive"

_NOT_RUNNING_MESSAGE = "Agent server is not running"


@dataclass(frozen=True)
class ProcessStatus:
    """Result of inspecting the PID record."""

    state: str
    message: str
    pid: int | None = None
    port: int | None = None

    @property
    def running(self) -> bool:
        return self.state == RUNNING


@dataclass(frozen=True)
class ProcessResult:
    success: bool
    message: str
    pid: int | None = None


def record_path() -> Path:
    return state_dir() / "agent-server.pid"


def _remove_record() -> None:
    try:
        record_path().unlink()
    except FileNotFoundError:
        pass


def _read_record() -> tuple[int, int] | None:
    """Parse the PID record; malformed content yields None."""
    try:
        text = record_path().read_bytes().decode("utf-8")
    except UnicodeDecodeError:
        return None
    lines = text.strip().split("\n")
    if len(lines) != 2:
        return None
    try:
        pid, port = int(lines[0].strip()), int(lines[1].strip())
    except ValueError:
        return None
    if pid <= 0 or not 0 < port < 65536:
        return None
    return pid, port


def _write_record_exclusive(pid: int, port: int) -> bool:
    """Create the PID record; False when another record already exists."""
    ensure_state_dir()
    try:
        fd = os.open(record_path(), os.O_CREAT | os.O_EXCL | os.O_WRONLY, 0o644)
    except FileExistsError:
        return False
    with os.fdopen(fd, "w", encoding="utf-8") as handle:
        handle.write(f"{pid}\n{port}")
    return True


def process_exists(pid: int) -> bool:
    """Signal-0 probe: true when a process with `pid` exists."""
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        return True
    return True


def port_accepting(port: int, host: str = "127.0.0.1", timeout: float = 1.0) -> bool:
    """True when something accepts TCP connections on `port`."""
    try:
        with socket.create_connection((host, port), timeout=timeout):
            return True
    except OSError:
        return False


def status() -> ProcessStatus:
    """Inspect the PID record, deleting it when malformed or stale."""
    path = record_path()
    if not path.exists():
        return ProcessStatus(NOT_RUNNING, _NOT_RUNNING_MESSAGE)

    try:
        record = _read_record()
    except FileNotFoundError:
        return ProcessStatus(NOT_RUNNING, _NOT_RUNNING_MESSAGE)
    except OSError as exc:
        LOG.warning("Unreadable PID record, removing path=%s error=%s", path, exc)
        record = None
    if record is None:
        LOG.warning("Malformed PID record, removing path=%s", path)
        _remove_record()
        return ProcessStatus(NOT_RUNNING, _NOT_RUNNING_MESSAGE)

    pid, port = record
    if not process_exists(pid):
        LOG.warning("Server process is gone, removing stale PID record pid=%s", pid)
        _remove_record()
        return ProcessStatus(NOT_RUNNING, _NOT_RUNNING_MESSAGE)

    if not port_accepting(port):
        LOG.warning("Server process exists but port is not accepting connections pid=%s port=%s", pid, port)
        return ProcessStatus(
            UNRESPONSIVE,
            f"Agent server process exists (PID: {pid}) but is not responding on port {port}",
            pid=pid,
            port=port,
        )

    return ProcessStatus(RUNNING, f"Agent server is running (PID: {pid}, Port: {port})", pid=pid, port=port)


def child_command() -> list[str]:
    """Command that re-invokes this program as the foreground server."""
    return [sys.executable, "-m", "vertexkoppler", "__run-server"]


def _launch_child(command: list[str], env: dict[str, str]) -> subprocess.Popen:
    return subprocess.Popen(
        command,
        stdin=subprocess.DEVNULL,
        stdout=subprocess.DEVNULL,
        stderr=subprocess.DEVNULL,
        env=env,
        start_new_session=True,
        close_fds=True,
    )


def spawn(config: AgentConfig, *, config_path: str | Path | None = None, startup_wait: float = 1.0) -> ProcessResult:
    """Start the server as a detached child process, unless one is already running."""
    LOG.info("Attempting to start server process port=%s", config.port)

    current = status()
    if current.running:
        return ProcessResult(
            False,
            f"Agent server is already running (PID: {current.pid}, Port: {current.port})",
            pid=current.pid,
        )
    if current.state == UNRESPONSIVE:
        return ProcessResult(
            False,
            f"{current.message}. Run 'vertexkoppler stop' first.",
            pid=current.pid,
        )

    if not is_port_available(config.port):
        return ProcessResult(
            False,
            f"Port {config.port} is not available. "
            "Please choose a different port or stop the process using that port.",
        )

    if not sys.executable:
        return ProcessResult(False, "Unable to determine script path for spawning server process")

    env = dict(os.environ)
    env.update(config.to_env())
    if config_path is not None:
        env["VERTEXKOPPLER_CONFIG"] = str(config_path)

    command = child_command()
    LOG.info("Spawning server process command=%s port=%s", " ".join(command), config.port)
    try:
        child = _launch_child(command, env)
    except OSError as exc:
        LOG.error("Failed to spawn server process error=%s", exc)
        return ProcessResult(False, f"Failed to start server: {exc}")

    if not _write_record_exclusive(child.pid, config.port):
        LOG.error("PID record appeared while starting, terminating child pid=%s", child.pid)
        child.terminate()
        child.wait()
        return ProcessResult(False, "Another agent server instance is starting. Check 'vertexkoppler status'.")
    LOG.info("Server process started pid=%s port=%s record=%s", child.pid, config.port, record_path())

    time.sleep(startup_wait)
    # Reap the child if it already exited so the signal-0 probe does not see a zombie.
    child.poll()
    if status().state == NOT_RUNNING:
        LOG.error("Server process died shortly after startup pid=%s", child.pid)
        return ProcessResult(
            False,
            f"Server process started but died immediately. Check {log_file_path()} for details.",
            pid=child.pid,
        )

    return ProcessResult(
        True,
        f"Agent server started successfully (PID: {child.pid}, Port: {config.port})",
        pid=child.pid,
    )


def stop(grace_seconds: float = 1.0) -> ProcessResult:
    """Stop the recorded server; succeeds when nothing is running."""
    current = status()
    if current.state == NOT_RUNNING or current.pid is None:
        LOG.info("No server process to stop")
        return ProcessResult(True, _NOT_RUNNING_MESSAGE)

    pid = current.pid
    LOG.info("Stopping server process pid=%s", pid)
    try:
        os.kill(pid, signal.SIGTERM)
        deadline = time.monotonic() + grace_seconds
        while process_exists(pid) and time.monotonic() < deadline:
            time.sleep(0.05)
        if process_exists(pid):
            LOG.warning("Process still running after SIGTERM, sending SIGKILL pid=%s", pid)
            os.kill(pid, signal.SIGKILL)
    except ProcessLookupError:
        LOG.debug("Server process already gone pid=%s", pid)
    except PermissionError as exc:
        LOG.warning("Not allowed to signal server process pid=%s error=%s", pid, exc)

    try:
        _remove_record()
    except OSError as exc:
        LOG.error("Failed to remove PID record path=%s error=%s", record_path(), exc)
        return ProcessResult(False, f"Failed to remove PID record {record_path()}: {exc}", pid=pid)

    LOG.info("Server process stopped pid=%s", pid)
    return ProcessResult(True, f"Agent server stopped (PID: {pid})", pid=pid)


def restart(
    config: AgentConfig,
    *,
    config_path: str | Path | None = None,
    delay: float = 1.0,
    startup_wait: float = 1.0,
) -> ProcessResult:
    """Stop any running server, then spawn a new one."""
    stopped = stop()
    if not stopped.success:
        return stopped
    time.sleep(delay)
    return spawn(config, config_path=config_path, startup_wait=startup_wait)
