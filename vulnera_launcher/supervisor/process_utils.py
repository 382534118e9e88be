import os
import re
import sys
import logging
import threading
import subprocess
from typing import IO, Any, Callable, Dict, Optional
from vulnera_launcher.exceptions import ProcessSpawnFailure
from vulnera_launcher.models import BinaryResolution

log = logging.getLogger(__name__)

_LEVEL_PATTERN = re.compile(r"\b(TRACE|DEBUG|INFO|WARN|WARNING|ERROR)\b")
_LEVELS = {
    "TRACE": logging.DEBUG,
    "DEBUG": logging.DEBUG,
    "INFO": logging.INFO,
    "WARN": logging.WARNING,
    "WARNING": logging.WARNING,
    "ERROR": logging.ERROR,
}


#* --- Process Creation ---
def _get_popen_creation_flags() -> Dict[str, Any]:
    """Returns platform-specific creation flags for subprocess.Popen."""
    if sys.platform == "win32":
        return {"creationflags": subprocess.CREATE_NO_WINDOW}
    return {"start_new_session": True}


def build_child_env(resolution: BinaryResolution, base_env: Optional[Dict[str, str]] = None) -> Dict[str, str]:
    """Merges the resolution's env overrides on top of the launcher's environment."""
    env = dict(os.environ if base_env is None else base_env)
    env.update(resolution.env_overrides)
    return env


def launch(resolution: BinaryResolution, base_env: Optional[Dict[str, str]] = None) -> subprocess.Popen:
    """
    Starts the adapter with all three standard streams piped and unbuffered.

    :raises ProcessSpawnFailure: If the executable could not be started.
    """
    try:
        return subprocess.Popen(
            resolution.command,
            stdin=subprocess.PIPE,
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
            env=build_child_env(resolution, base_env),
            bufsize=0,
            **_get_popen_creation_flags(),
        )
    except (OSError, ValueError) as e:
        raise ProcessSpawnFailure(f"Failed to start '{resolution.executable_path}': {e}") from e


#* --- Diagnostic Stream ---
def diagnostic_level(line: str) -> int:
    """Maps a tracing-style log line from the adapter to a logging level."""
    match = _LEVEL_PATTERN.search(line)
    return _LEVELS[match.group(1)] if match else logging.INFO


def _read_pipe(pipe: IO[bytes], process_name: str, line_handler: Optional[Callable[[str], None]] = None) -> None:
    """Target function for reader threads. Reads and logs lines from a subprocess pipe."""
    proc_logger = logging.getLogger(f"proc.{process_name}")
    try:
        for line_bytes in iter(pipe.readline, b""):
            line = line_bytes.decode("utf-8", errors="replace").rstrip()
            if not line:
                continue
            if line_handler:
                line_handler(line)
            else:
                proc_logger.log(diagnostic_level(line), line)
    except (OSError, ValueError) as e:
        proc_logger.debug(f"Pipe reader for {process_name} stream exited: {e}")
    finally:
        try:
            pipe.close()
        except OSError:
            pass


def log_diagnostic_stream(
    pipe: IO[bytes],
    name: str,
    line_handler: Optional[Callable[[str], None]] = None,
) -> threading.Thread:
    """
    Starts a background thread routing a process's stderr to the diagnostic logger.
    Standard output is never read here; it belongs to the protocol layer.
    """
    thread = threading.Thread(
        target=_read_pipe,
        args=(pipe, name, line_handler),
        daemon=True,
        name=f"{name}-stderr",
    )
    thread.start()
    return thread
