import os
import sys
import time
import threading
from pathlib import Path
from typing import List, Optional

import pytest

from vulnera_launcher.exceptions import InstallCancelled
from vulnera_launcher.external import InstallManager
from vulnera_launcher.external.platform import PlatformInfo
from vulnera_launcher.models import BinaryKind, BinaryResolution

LINUX_X64 = PlatformInfo(target_triple="x86_64-unknown-linux-gnu", is_windows=False)
FAKE_ADAPTER = str(Path(__file__).with_name("fake_adapter.py"))


class FakeDownloader:
    """Writes a small executable instead of fetching a release asset."""

    def __init__(self, failures: Optional[List[BaseException]] = None, delay: float = 0.0,
                 gate: Optional[threading.Event] = None):
        self.failures = list(failures or [])
        self.delay = delay
        self.gate = gate
        self.calls: List[str] = []
        self._lock = threading.Lock()

    def download(self, version, platform_info, dest_path, cancel_event=None):
        with self._lock:
            self.calls.append(version)
            failure = self.failures.pop(0) if self.failures else None
        if self.gate is not None:
            while not self.gate.wait(0.01):
                if cancel_event is not None and cancel_event.is_set():
                    raise InstallCancelled(f"Download of {version} cancelled.")
        if self.delay:
            time.sleep(self.delay)
        if failure is not None:
            raise failure
        Path(dest_path).write_text(f"#!/bin/sh\necho {version}\n")
        os.chmod(dest_path, 0o755)
        return Path(dest_path)


class FakeReleaseIndex:
    def __init__(self, latest: str = "0.3.0"):
        self.latest = latest
        self.calls = 0

    def latest_version(self, force_refresh: bool = False) -> str:
        self.calls += 1
        return self.latest


def wait_until(predicate, timeout: float = 10.0, interval: float = 0.02) -> bool:
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(interval)
    return predicate()


def python_resolution(script: str) -> BinaryResolution:
    """Launch spec running an inline Python script as the adapter."""
    return BinaryResolution(BinaryKind.OVERRIDE, sys.executable, ("-c", script))


@pytest.fixture
def install_dir(tmp_path: Path) -> Path:
    return tmp_path / "server"


@pytest.fixture
def downloader() -> FakeDownloader:
    return FakeDownloader()


@pytest.fixture
def release_index() -> FakeReleaseIndex:
    return FakeReleaseIndex()


@pytest.fixture
def make_manager(install_dir, release_index):
    def _make(downloader: FakeDownloader, offline: bool = False, lock_timeout: float = 10.0) -> InstallManager:
        return InstallManager(
            install_dir,
            downloader=downloader,
            release_index=release_index,
            platform_info=LINUX_X64,
            offline=offline,
            lock_timeout=lock_timeout,
        )
    return _make


@pytest.fixture
def manager(make_manager, downloader) -> InstallManager:
    return make_manager(downloader)


@pytest.fixture
def empty_path_env(tmp_path: Path) -> dict:
    """An environment whose PATH contains nothing launchable."""
    empty = tmp_path / "empty-bin"
    empty.mkdir()
    return {"PATH": str(empty)}
