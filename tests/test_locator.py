import os
import stat
from pathlib import Path

import pytest

from vulnera_launcher.exceptions import BinaryNotFound
from vulnera_launcher.locator import BinaryLocator, BinaryOverride
from vulnera_launcher.models import BinaryKind, InstallState


def _executable(path: Path) -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text("#!/bin/sh\n")
    path.chmod(path.stat().st_mode | stat.S_IXUSR)
    return path


@pytest.fixture
def managed_state(tmp_path) -> InstallState:
    exe = _executable(tmp_path / "server" / "versions" / "1.2.0" / "vulnera-adapter")
    return InstallState(tmp_path / "server", "1.2.0", 0.0, exe)


def test_settings_override_is_used_verbatim(managed_state, empty_path_env):
    config = {"binary": {"path": "/opt/adapter", "arguments": ["--debug"], "env": {"RUST_LOG": "trace"}}}
    resolution = BinaryLocator().resolve(config, managed_state, empty_path_env)

    assert resolution.kind is BinaryKind.OVERRIDE
    assert resolution.command == ["/opt/adapter", "--debug"]
    assert resolution.env_overrides == {"RUST_LOG": "trace"}


def test_env_override_with_shell_split_arguments(empty_path_env):
    env = dict(empty_path_env, VULNERA_ADAPTER_PATH="/opt/adapter", VULNERA_ADAPTER_ARGS="--stdio --log 'a b'")
    resolution = BinaryLocator().resolve({}, None, env)
    assert resolution.kind is BinaryKind.OVERRIDE
    assert resolution.arguments == ("--stdio", "--log", "a b")


def test_settings_override_beats_env_override(empty_path_env):
    env = dict(empty_path_env, VULNERA_ADAPTER_PATH="/from/env")
    resolution = BinaryLocator().resolve({"binary": {"path": "/from/settings"}}, None, env)
    assert resolution.executable_path == "/from/settings"


def test_blank_override_path_is_ignored(managed_state, empty_path_env):
    resolution = BinaryLocator().resolve({"binary": {"path": "  "}}, managed_state, empty_path_env)
    assert resolution.kind is BinaryKind.MANAGED_INSTALL


def test_malformed_override_is_reported():
    with pytest.raises(BinaryNotFound):
        BinaryOverride.from_document("/just/a/string")
    with pytest.raises(BinaryNotFound):
        BinaryOverride.from_document({"path": "/x", "arguments": "--stdio"})


def test_path_binary_preferred_over_managed_install(tmp_path, managed_state):
    on_path = _executable(tmp_path / "bin" / "vulnera-adapter")
    resolution = BinaryLocator().resolve({}, managed_state, {"PATH": str(on_path.parent)})
    assert resolution.kind is BinaryKind.PATH_BINARY
    assert resolution.command == [str(on_path), "--stdio"]


def test_path_lookup_can_be_disabled(tmp_path, managed_state):
    on_path = _executable(tmp_path / "bin" / "vulnera-adapter")
    resolution = BinaryLocator().resolve({}, managed_state, {"PATH": str(on_path.parent)}, allow_path=False)
    assert resolution.kind is BinaryKind.MANAGED_INSTALL


def test_managed_install_forwards_environment(managed_state, empty_path_env):
    env = dict(empty_path_env, VULNERA_API_URL="https://api.example", VULNERA_API_KEY="", VULNERA_LOG="")
    resolution = BinaryLocator().resolve({}, managed_state, env)

    assert resolution.command == [str(managed_state.executable), "--stdio"]
    assert resolution.env_overrides == {"VULNERA_API_URL": "https://api.example", "VULNERA_LOG": "info"}


def test_managed_install_with_runtime(tmp_path, managed_state):
    runtime = _executable(tmp_path / "rt" / "node")
    managed_state.runtime = "node"
    resolution = BinaryLocator().resolve({}, managed_state, {"PATH": str(runtime.parent)}, allow_path=False)
    assert resolution.command == [str(runtime), str(managed_state.executable), "--stdio"]


def test_nothing_available_raises(tmp_path, empty_path_env):
    with pytest.raises(BinaryNotFound, match="VULNERA_ADAPTER_PATH"):
        BinaryLocator().resolve({}, InstallState(tmp_path), empty_path_env)


def test_override_skips_install_state_entirely(empty_path_env):
    resolution = BinaryLocator().resolve({}, None, dict(empty_path_env, VULNERA_ADAPTER_PATH=os.sep + "adapter"))
    assert resolution.kind is BinaryKind.OVERRIDE
