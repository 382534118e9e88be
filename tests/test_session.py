import stat
import sys
import threading

import pytest

from conftest import FAKE_ADAPTER, wait_until
from vulnera_launcher.exceptions import InstallCancelled, InstallFailure, ProcessSpawnFailure, VersionMismatch
from vulnera_launcher.models import BinaryKind, InstallState, ProcessState, SettingsSnapshot, VersionSource
from vulnera_launcher.reconciler import HotApply, RequiresRestart
from vulnera_launcher.session import LauncherSession
from vulnera_launcher.version import VersionResolver


class ScriptedInstallManager:
    """Replays a list of outcomes (states or exceptions) for ensure_installed."""

    def __init__(self, install_dir, outcomes=()):
        self.install_dir = install_dir
        self.outcomes = list(outcomes)
        self.calls = []
        self.cancel_events = []

    def ensure_installed(self, spec, refresh=False, cancel_event=None):
        self.calls.append(spec)
        self.cancel_events.append(cancel_event)
        outcome = self.outcomes.pop(0)
        if callable(outcome):
            return outcome(cancel_event)
        if isinstance(outcome, BaseException):
            raise outcome
        return outcome

    def read_state(self):
        return InstallState(self.install_dir)


class ExplodingResolver(VersionResolver):
    def resolve(self, env=None):
        raise AssertionError("version resolution must not run")


def _ready_state(tmp_path, version="1.2.0"):
    exe = tmp_path / "server" / "versions" / version / "vulnera-adapter"
    exe.parent.mkdir(parents=True)
    exe.write_text("#!/bin/sh\n")
    return InstallState(tmp_path / "server", version, 1.0, exe)


def _override_snapshot(*arguments, init=None, extra=None):
    runtime = {"binary": {"path": sys.executable, "arguments": list(arguments)}}
    runtime.update(extra or {})
    return SettingsSnapshot(init or {}, runtime)


@pytest.fixture
def session_factory(tmp_path, empty_path_env):
    sessions = []

    def _make(snapshot=None, outcomes=(), env=None, **kwargs):
        manager = ScriptedInstallManager(tmp_path / "server", outcomes)
        kwargs.setdefault("version_resolver", VersionResolver(baked_default=""))
        session = LauncherSession(snapshot, env=env or empty_path_env, install_manager=manager, **kwargs)
        sessions.append(session)
        return session

    yield _make
    for session in sessions:
        session.close()


def test_override_never_installs_or_resolves_version(session_factory):
    session = session_factory(_override_snapshot(FAKE_ADAPTER), version_resolver=ExplodingResolver())
    assert session.ensure_ready() is None
    assert session.install_manager.calls == []
    assert session.resolve_binary().kind is BinaryKind.OVERRIDE


def test_env_override_with_arguments(session_factory, empty_path_env):
    env = dict(empty_path_env, VULNERA_ADAPTER_PATH="/opt/vulnera-adapter", VULNERA_ADAPTER_ARGS="--stdio --trace")
    session = session_factory(env=env, version_resolver=ExplodingResolver())
    assert session.ensure_ready() is None
    resolution = session.resolve_binary()
    assert resolution.command == ["/opt/vulnera-adapter", "--stdio", "--trace"]
    assert session.install_manager.calls == []


def test_path_binary_skips_install_unless_pinned(session_factory, tmp_path):
    bin_dir = tmp_path / "bin"
    bin_dir.mkdir()
    exe = bin_dir / "vulnera-adapter"
    exe.write_text("#!/bin/sh\n")
    exe.chmod(exe.stat().st_mode | stat.S_IXUSR)

    unpinned = session_factory(env={"PATH": str(bin_dir)})
    assert unpinned.ensure_ready() is None
    assert unpinned.resolve_binary().kind is BinaryKind.PATH_BINARY

    state = _ready_state(tmp_path)
    pinned = session_factory(outcomes=[state], env={"PATH": str(bin_dir), "VULNERA_ADAPTER_VERSION": "1.2.0"})
    assert pinned.ensure_ready() is state
    assert pinned.install_manager.calls[0].source is VersionSource.PINNED
    assert pinned.resolve_binary().kind is BinaryKind.MANAGED_INSTALL


def test_version_spec_is_resolved_once(session_factory, tmp_path, empty_path_env):
    env = dict(empty_path_env, VULNERA_ADAPTER_VERSION="1.2.0")
    session = session_factory(outcomes=[_ready_state(tmp_path)], env=env)
    spec = session.version_spec
    session.env["VULNERA_ADAPTER_VERSION"] = "9.9.9"
    assert session.version_spec is spec


def test_transient_failure_is_retried_once(session_factory, tmp_path):
    state = _ready_state(tmp_path)
    session = session_factory(outcomes=[InstallFailure("network down", transient=True), state])
    assert session.ensure_ready() is state
    assert len(session.install_manager.calls) == 2
    assert session.resolve_binary().command == [str(state.executable), "--stdio"]


def test_second_transient_failure_surfaces(session_factory):
    session = session_factory(outcomes=[
        InstallFailure("network down", transient=True),
        InstallFailure("still down", transient=True),
    ])
    with pytest.raises(InstallFailure, match="still down"):
        session.ensure_ready()
    assert len(session.install_manager.calls) == 2


def test_transient_version_mismatch_is_retried_once(session_factory, tmp_path):
    state = _ready_state(tmp_path, "1.2.3")
    mismatch = VersionMismatch("1.2.3", "1.0.0", cause=InstallFailure("network down", transient=True))
    session = session_factory(outcomes=[mismatch, state])
    assert session.ensure_ready() is state
    assert len(session.install_manager.calls) == 2


def test_permanent_version_mismatch_surfaces(session_factory):
    session = session_factory(outcomes=[VersionMismatch("1.2.3", "1.0.0", cause=InstallFailure("404 for asset"))])
    with pytest.raises(VersionMismatch, match="1.2.3"):
        session.ensure_ready()
    assert len(session.install_manager.calls) == 1


def test_permanent_failure_is_not_retried(session_factory):
    session = session_factory(outcomes=[InstallFailure("404 for asset")])
    with pytest.raises(InstallFailure, match="404"):
        session.ensure_ready()
    assert len(session.install_manager.calls) == 1


def test_install_timeout_cancels_the_install(session_factory):
    def _block_until_cancelled(cancel_event):
        cancel_event.wait(10)
        raise InstallCancelled("cancelled")

    session = session_factory(outcomes=[_block_until_cancelled])
    with pytest.raises(InstallFailure, match="did not finish"):
        session.ensure_ready(timeout=0.2)
    assert wait_until(lambda: session.install_manager.cancel_events[0].is_set())
    assert session.install_state is None


def test_close_cancels_inflight_install(session_factory):
    started = threading.Event()

    def _block_until_cancelled(cancel_event):
        started.set()
        cancel_event.wait(10)
        raise InstallCancelled("cancelled")

    session = session_factory(outcomes=[_block_until_cancelled])
    errors = []

    def _ensure():
        try:
            session.ensure_ready(timeout=10)
        except InstallFailure as e:
            errors.append(e)

    thread = threading.Thread(target=_ensure)
    thread.start()
    assert started.wait(5)
    session.close()
    thread.join(5)
    assert isinstance(errors[0], InstallCancelled)
    with pytest.raises(InstallCancelled):
        session.ensure_ready()


def test_start_spawns_and_close_terminates(session_factory):
    session = session_factory(_override_snapshot(FAKE_ADAPTER))
    handle = session.start()
    assert handle.state is ProcessState.RUNNING
    session.close()
    assert handle.state is ProcessState.EXITED
    assert not session.supervisor.is_running


def test_launch_async_returns_future(session_factory):
    session = session_factory(_override_snapshot(FAKE_ADAPTER))
    handle = session.launch_async().result(timeout=10)
    assert handle.pid > 0


def test_launch_async_resolves_on_unexpected_error(session_factory):
    session = session_factory(outcomes=[TypeError("unsupported operand")])
    with pytest.raises(TypeError, match="unsupported operand"):
        session.launch_async().result(timeout=10)


def test_launch_and_spawn_after_close_fail_fast(session_factory):
    session = session_factory(_override_snapshot(FAKE_ADAPTER))
    session.close()
    with pytest.raises(InstallCancelled):
        session.launch_async().result(timeout=10)
    with pytest.raises(ProcessSpawnFailure, match="closed"):
        session.spawn()
    assert session.supervisor.handle is None


def test_spawn_failure_is_reported(session_factory, tmp_path):
    snapshot = SettingsSnapshot({}, {"binary": {"path": str(tmp_path / "missing-adapter")}})
    session = session_factory(snapshot)
    with pytest.raises(ProcessSpawnFailure):
        session.start()


def test_reconcile_restarts_on_initialization_change(session_factory):
    session = session_factory(_override_snapshot(FAKE_ADAPTER, init={"scanDepth": 1}))
    first = session.start()

    action = session.reconcile(_override_snapshot(FAKE_ADAPTER, init={"scanDepth": 2}))
    assert isinstance(action, RequiresRestart)
    second = session.supervisor.handle
    assert second.pid != first.pid
    assert first.state is ProcessState.EXITED
    assert second.state is ProcessState.RUNNING


def test_reconcile_hot_apply_keeps_process(session_factory):
    session = session_factory(_override_snapshot(FAKE_ADAPTER, extra={"severity": "low"}))
    first = session.start()
    action = session.reconcile(_override_snapshot(FAKE_ADAPTER, extra={"severity": "high"}))
    assert action == HotApply({"severity": "high"}, ())
    assert session.supervisor.handle is first


def test_status_reports_process(session_factory):
    session = session_factory(_override_snapshot(FAKE_ADAPTER))
    handle = session.start()
    status = session.status()
    assert status["override"] is True
    assert status["pid"] == handle.pid
    assert status["state"] == "running"
