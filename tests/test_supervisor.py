import os
import signal

import pytest

from vertexkoppler import supervisor
from vertexkoppler.config import AgentConfig, ensure_state_dir


class FakeChild:
    def __init__(self, pid: int = 4242) -> None:
        self.pid = pid
        self.terminated = False
        self.polls = 0

    def poll(self):
        self.polls += 1
        return None

    def terminate(self) -> None:
        self.terminated = True

    def wait(self, timeout=None):
        return 0


@pytest.fixture(autouse=True)
def _state_home(monkeypatch, tmp_path):
    monkeypatch.setenv("VERTEXKOPPLER_HOME", str(tmp_path / "home"))
    monkeypatch.delenv("VERTEXKOPPLER_CONFIG", raising=False)
    monkeypatch.setattr(supervisor.time, "sleep", lambda seconds: None)


def _config(port: int = 18080) -> AgentConfig:
    return AgentConfig.model_validate({"project": "p", "location": "l", "model": "m", "port": port})


def _write_record(content: bytes) -> None:
    ensure_state_dir()
    supervisor.record_path().write_bytes(content)


def test_status_without_record() -> None:
    current = supervisor.status()

    assert current.state == supervisor.NOT_RUNNING
    assert current.message == "Agent server is not running"
    assert not current.running


@pytest.mark.parametrize(
    "content",
    [b"abc\n123", b"123", b"\xff\xfe", b"12\nxy", b"", b"0\n8080", b"12\n70000", b"1\n2\n3"],
)
def test_malformed_record_is_removed(content: bytes) -> None:
    _write_record(content)

    current = supervisor.status()

    assert current.state == supervisor.NOT_RUNNING
    assert not supervisor.record_path().exists()


def test_stale_record_is_removed(monkeypatch) -> None:
    _write_record(b"4242\n18080")
    monkeypatch.setattr(supervisor, "process_exists", lambda pid: False)

    assert supervisor.status().state == supervisor.NOT_RUNNING
    assert not supervisor.record_path().exists()


def test_running_and_unresponsive_states(monkeypatch) -> None:
    _write_record(b"4242\n18080\n")
    monkeypatch.setattr(supervisor, "process_exists", lambda pid: True)

    monkeypatch.setattr(supervisor, "port_accepting", lambda port: True)
    running = supervisor.status()
    assert running.running
    assert running.message == "Agent server is running (PID: 4242, Port: 18080)"

    monkeypatch.setattr(supervisor, "port_accepting", lambda port: False)
    unresponsive = supervisor.status()
    assert unresponsive.state == supervisor.UNRESPONSIVE
    assert unresponsive.message == "Agent server process exists (PID: 4242) but is not responding on port 18080"
    assert supervisor.record_path().exists()


def test_process_exists_for_current_process() -> None:
    assert supervisor.process_exists(os.getpid())


def test_stop_without_server_is_successful_and_idempotent() -> None:
    first = supervisor.stop()
    second = supervisor.stop()

    assert first.success and second.success
    assert first.message == "Agent server is not running"


def test_stop_signals_process_and_removes_record(monkeypatch) -> None:
    _write_record(b"4242\n18080")
    alive = {"value": True}
    signals: list[tuple[int, int]] = []

    def fake_kill(pid: int, sig: int) -> None:
        signals.append((pid, sig))
        if sig == signal.SIGTERM:
            alive["value"] = False

    monkeypatch.setattr(supervisor, "process_exists", lambda pid: alive["value"])
    monkeypatch.setattr(supervisor, "port_accepting", lambda port: True)
    monkeypatch.setattr(supervisor.os, "kill", fake_kill)

    result = supervisor.stop()

    assert result.success
    assert result.message == "Agent server stopped (PID: 4242)"
    assert signals == [(4242, signal.SIGTERM)]
    assert not supervisor.record_path().exists()


def test_stop_escalates_to_sigkill(monkeypatch) -> None:
    _write_record(b"4242\n18080")
    signals: list[int] = []

    monkeypatch.setattr(supervisor, "process_exists", lambda pid: True)
    monkeypatch.setattr(supervisor, "port_accepting", lambda port: False)
    monkeypatch.setattr(supervisor.os, "kill", lambda pid, sig: signals.append(sig))

    result = supervisor.stop(grace_seconds=0.0)

    assert result.success
    assert signals == [signal.SIGTERM, signal.SIGKILL]
    assert not supervisor.record_path().exists()


def test_spawn_refuses_when_already_running(monkeypatch) -> None:
    _write_record(b"4242\n18080")
    monkeypatch.setattr(supervisor, "process_exists", lambda pid: True)
    monkeypatch.setattr(supervisor, "port_accepting", lambda port: True)
    monkeypatch.setattr(supervisor, "_launch_child", lambda command, env: pytest.fail("must not launch"))

    result = supervisor.spawn(_config())

    assert not result.success
    assert result.message == "Agent server is already running (PID: 4242, Port: 18080)"


def test_spawn_refuses_when_unresponsive_server_is_recorded(monkeypatch) -> None:
    _write_record(b"4242\n18080")
    monkeypatch.setattr(supervisor, "process_exists", lambda pid: True)
    monkeypatch.setattr(supervisor, "port_accepting", lambda port: False)

    result = supervisor.spawn(_config())

    assert not result.success
    assert result.message.endswith("Run 'vertexkoppler stop' first.")


def test_spawn_refuses_when_port_is_taken(monkeypatch) -> None:
    monkeypatch.setattr(supervisor, "is_port_available", lambda port: False)

    result = supervisor.spawn(_config(port=18081))

    assert not result.success
    assert result.message.startswith("Port 18081 is not available.")
    assert not supervisor.record_path().exists()


def test_spawn_success_writes_record_and_passes_config(monkeypatch) -> None:
    launched: dict = {}
    child = FakeChild()

    def fake_launch(command, env):
        launched["command"] = command
        launched["env"] = env
        return child

    monkeypatch.setattr(supervisor, "is_port_available", lambda port: True)
    monkeypatch.setattr(supervisor, "_launch_child", fake_launch)
    monkeypatch.setattr(supervisor, "process_exists", lambda pid: True)
    monkeypatch.setattr(supervisor, "port_accepting", lambda port: True)

    result = supervisor.spawn(_config(), config_path="/etc/vk.yaml", startup_wait=0)

    assert result.success
    assert result.pid == 4242
    assert result.message == "Agent server started successfully (PID: 4242, Port: 18080)"
    assert supervisor.record_path().read_text(encoding="utf-8") == "4242\n18080"
    assert launched["command"][-1] == "__run-server"
    assert launched["env"]["VERTEX_AI_PROJECT"] == "p"
    assert launched["env"]["PROXY_PORT"] == "18080"
    assert launched["env"]["VERTEXKOPPLER_CONFIG"] == "/etc/vk.yaml"
    assert child.polls == 1


def test_spawn_reports_child_that_died_immediately(monkeypatch) -> None:
    monkeypatch.setattr(supervisor, "is_port_available", lambda port: True)
    monkeypatch.setattr(supervisor, "_launch_child", lambda command, env: FakeChild())
    monkeypatch.setattr(supervisor, "process_exists", lambda pid: False)

    result = supervisor.spawn(_config(), startup_wait=0)

    assert not result.success
    assert result.message.startswith("Server process started but died immediately. Check ")
    assert result.message.endswith("agent.log for details.")
    assert not supervisor.record_path().exists()


def test_spawn_loses_race_for_pid_record(monkeypatch) -> None:
    child = FakeChild()

    def racing_launch(command, env):
        _write_record(b"999\n18080")
        return child

    monkeypatch.setattr(supervisor, "is_port_available", lambda port: True)
    monkeypatch.setattr(supervisor, "_launch_child", racing_launch)

    result = supervisor.spawn(_config(), startup_wait=0)

    assert not result.success
    assert result.message.startswith("Another agent server instance is starting.")
    assert child.terminated
    assert supervisor.record_path().read_bytes() == b"999\n18080"


def test_restart_stops_then_spawns(monkeypatch) -> None:
    calls: list[str] = []
    monkeypatch.setattr(supervisor, "stop", lambda: calls.append("stop") or supervisor.ProcessResult(True, "stopped"))
    monkeypatch.setattr(
        supervisor,
        "spawn",
        lambda config, config_path=None, startup_wait=1.0: calls.append("spawn") or supervisor.ProcessResult(True, "ok"),
    )

    result = supervisor.restart(_config(), delay=0)

    assert result.success
    assert calls == ["stop", "spawn"]


def test_spawn_without_interpreter_path_fails(monkeypatch) -> None:
    monkeypatch.setattr(supervisor, "is_port_available", lambda port: True)
    monkeypatch.setattr(supervisor.sys, "executable", "")

    result = supervisor.spawn(_config())

    assert not result.success
    assert result.message == "Unable to determine script path for spawning server process"
