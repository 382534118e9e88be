"""
Value types passed between the launcher components.
"""

import subprocess
from enum import Enum
from pathlib import Path
from dataclasses import dataclass, field
from typing import Any, Dict, IO, List, Mapping, Optional, Tuple


class VersionSource(Enum):
    PINNED = "pinned"
    BAKED_DEFAULT = "baked_default"
    LATEST = "latest"


@dataclass(frozen=True)
class VersionSpec:
    source: VersionSource
    value: str

    @classmethod
    def latest(cls) -> "VersionSpec":
        return cls(VersionSource.LATEST, "latest")

    @property
    def is_exact(self) -> bool:
        return self.source is not VersionSource.LATEST


@dataclass
class InstallState:
    install_dir: Path
    installed_version: Optional[str] = None
    verified_at: Optional[float] = None
    executable: Optional[Path] = None
    runtime: Optional[str] = None

    @property
    def is_ready(self) -> bool:
        """True when a version is recorded and its executable is present on disk."""
        return bool(self.installed_version) and self.executable is not None and self.executable.is_file()


class BinaryKind(Enum):
    OVERRIDE = "override"
    PATH_BINARY = "path"
    MANAGED_INSTALL = "managed"


@dataclass(frozen=True)
class BinaryResolution:
    kind: BinaryKind
    executable_path: str
    arguments: Tuple[str, ...] = ()
    env_overrides: Mapping[str, str] = field(default_factory=dict)

    @property
    def command(self) -> List[str]:
        return [self.executable_path, *self.arguments]


class ProcessState(Enum):
    STARTING = "starting"
    RUNNING = "running"
    EXITED = "exited"


@dataclass
class ServerProcessHandle:
    """The single live adapter process of a session. Owned by ProcessSupervisor."""
    pid: int
    stdin_sink: IO[bytes]
    stdout_source: IO[bytes]
    stderr_source: IO[bytes]
    resolution: BinaryResolution
    process: subprocess.Popen = field(repr=False)
    state: ProcessState = ProcessState.STARTING
    restart_count: int = 0
    exit_code: Optional[int] = None

    @property
    def is_alive(self) -> bool:
        return self.state is not ProcessState.EXITED


@dataclass(frozen=True)
class SettingsSnapshot:
    initialization_options: Mapping[str, Any] = field(default_factory=dict)
    runtime_settings: Mapping[str, Any] = field(default_factory=dict)
    revision: Optional[int] = None

    @classmethod
    def from_document(cls, document: Optional[Mapping[str, Any]], revision: Optional[int] = None) -> "SettingsSnapshot":
        """
        Builds a snapshot from a host settings document of the form
        ``{"initializationOptions": {...}, "settings": {...}}``.

        :param document: The parsed document, or None for an empty snapshot.
        :param revision: Optional delivery counter used to discard stale snapshots.
        """
        document = document or {}
        init = document.get("initializationOptions") or {}
        runtime = document.get("settings", document.get("runtimeSettings")) or {}
        if not isinstance(init, Mapping) or not isinstance(runtime, Mapping):
            raise ValueError("'initializationOptions' and 'settings' must be mappings.")
        return cls(dict(init), dict(runtime), revision)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "initializationOptions": dict(self.initialization_options),
            "settings": dict(self.runtime_settings),
        }
