"""Integration tests that launch real server processes."""

import subprocess
import sys
import threading
from pathlib import Path

import pytest

from realharness import AbnormalTerminationError
from realharness import HarnessConfig
from realharness import LaunchError
from realharness import ProxyException
from realharness import RealServerSession
from realharness import SerializationError
from realharness import SessionStateError
from realharness.launch import ERROR_FILE
from realharness.session import TemporaryDirectoryAllocator
from tests.fixtures import steps


def test_successful_step_leaves_marker_and_no_failure_artifact() -> None:
    """A passing step returns normally and its side effects stay in the home."""
    with RealServerSession("success") as session:
        session.run(steps.write_marker)

        marker: Path = session.home / steps.MARKER_NAME
        assert marker.read_text(encoding="utf-8") == steps.MARKER_TEXT
        assert (session.home / ERROR_FILE).exists() is False


def test_state_persists_across_launches() -> None:
    """The second launch sees what the first one wrote."""
    with RealServerSession("persistence") as session:
        session.run(steps.write_marker)
        session.run(steps.assert_marker_present)


def test_failed_step_is_reraised_as_proxy() -> None:
    """A step raising ``RuntimeError('boom')`` surfaces as a proxy with that message."""
    with RealServerSession("failure") as session:
        with pytest.raises(ProxyException) as excinfo:
            session.run(steps.raise_boom)

    failure: ProxyException = excinfo.value
    assert failure.message == "boom"
    assert failure.type_name == "RuntimeError"
    assert str(failure) == "RuntimeError: boom"
    assert isinstance(failure, AbnormalTerminationError) is False
    frame_names: list[str] = [frame[2] for frame in failure.frames]
    assert frame_names[-1] == "raise_boom"


def test_failure_type_from_test_path_is_reported_by_name() -> None:
    """A failure whose type only exists on the test path is reported by name."""
    with RealServerSession("foreign type") as session:
        with pytest.raises(ProxyException) as excinfo:
            session.run(steps.raise_step_error)

    assert excinfo.value.type_name == "tests.fixtures.steps.StepRaisedError"
    assert excinfo.value.message == "only importable from the test path"


def test_cause_chain_is_preserved() -> None:
    """The proxied cause chain has the same depth as the original."""
    with RealServerSession("cause chain") as session:
        with pytest.raises(ProxyException) as excinfo:
            session.run(steps.raise_chained)

    chain: list[ProxyException] = excinfo.value.cause_chain()
    assert [proxy.message for proxy in chain] == ["outer", "'inner'"]
    assert chain[1].type_name == "KeyError"


def test_suppressed_failures_keep_count_and_order() -> None:
    """Every suppressed member comes back, in the original order."""
    with RealServerSession("suppressed") as session:
        with pytest.raises(ProxyException) as excinfo:
            session.run(steps.raise_group)

    members: tuple[ProxyException, ...] = excinfo.value.suppressed
    assert [member.message for member in members] == ["first", "second", "third"]
    assert [member.type_name for member in members] == ["ValueError", "TypeError", "OSError"]


def test_remote_traceback_is_attached_as_note() -> None:
    """The re-raised proxy carries the remote report for pytest output."""
    with RealServerSession("note") as session:
        with pytest.raises(ProxyException) as excinfo:
            session.run(steps.raise_chained)

    notes: list[str] = getattr(excinfo.value, "__notes__", [])
    assert len(notes) == 1
    assert "Remote traceback" in notes[0]
    assert "Caused by:" in notes[0]


def test_stale_failure_artifact_is_cleared_before_next_launch() -> None:
    """A failed launch does not poison the next one."""
    with RealServerSession("stale") as session:
        with pytest.raises(ProxyException):
            session.run(steps.raise_boom)
        assert (session.home / ERROR_FILE).is_file() is True

        session.run(steps.write_marker)
        assert (session.home / ERROR_FILE).exists() is False


def test_port_is_chosen_once_within_range() -> None:
    """Every launch of one session serves on the same port."""
    with RealServerSession("port") as session:
        port: int = session.port
        assert port in session.config.port_range

        def assert_port(fixture: object) -> None:
            assert fixture.port == port  # type: ignore[attr-defined]

        session.run(assert_port)
        session.run(assert_port)
        assert session.port == port


def test_closure_step_travels_by_value() -> None:
    """Lambdas and closures are serialized by value."""
    payload: str = "from a closure"
    with RealServerSession("closure") as session:
        session.run(lambda fixture: (fixture.home / "closure.txt").write_text(payload, encoding="utf-8"))
        assert (session.home / "closure.txt").read_text(encoding="utf-8") == payload


def test_step_object_with_run_method() -> None:
    """Objects exposing ``run(fixture)`` are accepted as steps."""
    with RealServerSession("step object") as session:
        session.run(steps.RecordingStep("recorded.txt", "recorded"))
        assert (session.home / "recorded.txt").read_text(encoding="utf-8") == "recorded"


def test_step_talks_to_live_http_listener() -> None:
    """The fixture's HTTP client reaches the running application."""
    with RealServerSession("http") as session:
        session.run(steps.check_http)


def test_test_environment_is_pinned_during_step() -> None:
    """The fixture pins its environment and configures the application for tests."""
    with RealServerSession("environment") as session:
        session.run(steps.check_environment)


def test_plugins_are_importable_from_steps(tmp_path: Path) -> None:
    """Installed plugins load at boot and are visible to the step."""
    plugin_source: Path = tmp_path / "greeting_plugin.py"
    plugin_source.write_text('GREETING = "hello from a plugin"\n', encoding="utf-8")

    def use_plugin(fixture: object) -> None:
        import greeting_plugin

        assert greeting_plugin.GREETING == "hello from a plugin"
        assert "greeting_plugin" in fixture.app.plugin_manager.plugins  # type: ignore[attr-defined]

    with RealServerSession("plugins", plugins=[plugin_source]) as session:
        assert (session.home / "plugins" / "greeting_plugin.py").is_file() is True
        session.run(use_plugin)


def test_nonzero_exit_is_abnormal_termination() -> None:
    """A process that dies before the protocol completes is not a step failure."""
    with RealServerSession("abnormal") as session:
        with pytest.raises(AbnormalTerminationError) as excinfo:
            session.run(steps.exit_abnormally)
        assert (session.home / ERROR_FILE).exists() is False

    assert excinfo.value.exit_code == 3
    assert isinstance(excinfo.value, ProxyException) is False
    assert isinstance(excinfo.value, AssertionError) is True


@pytest.mark.skipif(sys.platform == "win32", reason="SIGKILL is POSIX-only")
def test_killed_process_is_abnormal_termination() -> None:
    """An externally killed server reports abnormal termination."""
    with RealServerSession("killed") as session:
        with pytest.raises(AbnormalTerminationError):
            session.run(steps.kill_self)


def test_untransportable_step_fails_before_launch() -> None:
    """A step holding a lock cannot be serialized."""
    lock: threading.Lock = threading.Lock()

    def hold_lock(fixture: object) -> None:
        with lock:
            pass

    with RealServerSession("untransportable") as session:
        with pytest.raises(SerializationError):
            session.run(hold_lock)


def test_missing_interpreter_is_launch_error() -> None:
    """A server that cannot be started raises ``LaunchError``."""
    config = HarnessConfig(python_executable="/nonexistent/realharness/python")
    with RealServerSession("launch error", config=config) as session:
        with pytest.raises(LaunchError):
            session.run(steps.write_marker)


def test_session_must_be_allocated() -> None:
    """Using a session outside ``allocate``/``dispose`` fails fast."""
    session = RealServerSession("unallocated")
    with pytest.raises(SessionStateError):
        session.run(steps.write_marker)
    with pytest.raises(SessionStateError):
        _ = session.port


def test_dispose_removes_home_even_after_failure() -> None:
    """The session directory is released on every exit path."""
    session = RealServerSession("dispose")
    home: Path | None = None
    with pytest.raises(ProxyException):
        with session:
            home = session.home
            session.run(steps.raise_boom)

    assert home is not None
    assert home.exists() is False
    assert session.is_allocated is False
    session.dispose()


def test_interrupted_wait_kills_server_process(monkeypatch: pytest.MonkeyPatch) -> None:
    """A controller interrupted mid-launch does not leave the server running."""
    original_wait = subprocess.Popen.wait
    launched: list[subprocess.Popen[bytes]] = []

    def interrupted_wait(process: subprocess.Popen[bytes], timeout: float | None = None) -> int:
        if len(launched) == 0:
            launched.append(process)
            raise KeyboardInterrupt
        return original_wait(process, timeout)

    monkeypatch.setattr(subprocess.Popen, "wait", interrupted_wait)
    with RealServerSession("interrupted") as session:
        with pytest.raises(KeyboardInterrupt):
            session.run(steps.sleep_long)

    assert len(launched) == 1
    assert launched[0].poll() is not None
    assert launched[0].stdout is not None
    assert launched[0].stdout.closed is True


def test_failed_allocate_leaves_session_unallocated(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    """A missing plugin source rolls back the half-built session directory."""
    original_allocate = TemporaryDirectoryAllocator.allocate
    created: list[Path] = []

    def recording_allocate(allocator: TemporaryDirectoryAllocator) -> Path:
        directory: Path = original_allocate(allocator)
        created.append(directory)
        return directory

    monkeypatch.setattr(TemporaryDirectoryAllocator, "allocate", recording_allocate)
    session = RealServerSession("bad plugin", plugins=[tmp_path / "absent_plugin.py"])
    with pytest.raises(FileNotFoundError):
        session.allocate()

    assert session.is_allocated is False
    with pytest.raises(SessionStateError):
        _ = session.home
    with pytest.raises(FileNotFoundError):
        session.allocate()
    assert session.is_allocated is False
    assert len(created) == 2
    assert all(directory.exists() is False for directory in created)
