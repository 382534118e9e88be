import psutil
import logging
import subprocess
from typing import List
from vulnera_launcher import settings
from vulnera_launcher.models import ServerProcessHandle

log = logging.getLogger(__name__)


def _close_quietly(stream, name: str) -> None:
    if stream is None:
        return
    try:
        stream.close()
    except (OSError, ValueError) as e:
        log.debug(f"Closing adapter {name} raised: {e}")


def identify_processes_to_stop(pid: int) -> List[psutil.Process]:
    """
    Returns the adapter process and all of its descendants.

    :param pid: PID of the adapter process.
    """
    try:
        parent = psutil.Process(pid)
    except psutil.NoSuchProcess:
        return []
    procs = [parent]
    try:
        procs.extend(parent.children(recursive=True))
    except psutil.NoSuchProcess:
        log.debug(f"Process {pid} exited before its children could be listed.")
    return procs


def _terminate_processes(processes: List[psutil.Process]) -> None:
    """Sends SIGTERM to every process in the list."""
    for proc in processes:
        try:
            log.debug(f"Sending SIGTERM to PID {proc.pid}")
            proc.terminate()
        except psutil.NoSuchProcess:
            continue


def _forceful_kill(processes: List[psutil.Process]) -> None:
    """Forcefully kills processes that didn't terminate gracefully."""
    if not processes:
        return
    log.warning(f"{len(processes)} adapter processes did not terminate gracefully. Forcing shutdown...")
    for proc in processes:
        try:
            log.warning(f"Killing stubborn process PID {proc.pid}.")
            proc.kill()
        except psutil.NoSuchProcess:
            continue


def graceful_shutdown_sequence(handle: ServerProcessHandle, timeout: float = settings.GRACEFUL_SHUTDOWN_TIMEOUT) -> None:
    """
    Stops the adapter: close stdin, SIGTERM the process tree, wait, kill
    survivors, reap the child and close its output streams.

    :param handle: The handle of the process to stop.
    :param timeout: Seconds to wait after SIGTERM before force-killing.
    """
    process: subprocess.Popen = handle.process
    _close_quietly(handle.stdin_sink, "stdin")

    if process.poll() is None:
        procs = identify_processes_to_stop(process.pid)
        _terminate_processes(procs)
        try:
            _, alive = psutil.wait_procs(procs, timeout=timeout)
        except psutil.NoSuchProcess:
            alive = []
        _forceful_kill(alive)

    try:
        process.wait(timeout=timeout)
    except subprocess.TimeoutExpired:
        log.error(f"Adapter PID {process.pid} is still running after kill.")

    _close_quietly(handle.stdout_source, "stdout")
    _close_quietly(handle.stderr_source, "stderr")
