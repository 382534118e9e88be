import logging
import threading
from typing import Callable, Dict, Optional
from vulnera_launcher import settings
from vulnera_launcher.exceptions import LauncherError, ProcessSpawnFailure, ServerExitedFatally
from vulnera_launcher.models import BinaryResolution, ProcessState, ServerProcessHandle
from vulnera_launcher.supervisor import process_utils, shutdown

log = logging.getLogger(__name__)


class ProcessSupervisor:
    """
    Owns the single adapter process of a session.

    Standard output is handed to the caller untouched for protocol traffic.
    Standard error is drained into the ``proc.<name>`` logger. When the
    process exits on its own, it is restarted once; a second unexpected exit
    is reported as fatal. Exits caused by ``terminate`` never restart.
    """

    def __init__(
        self,
        name: str = settings.ADAPTER_NAME,
        relaunch: Optional[Callable[[], BinaryResolution]] = None,
        on_restart: Optional[Callable[[ServerProcessHandle], None]] = None,
        on_fatal: Optional[Callable[[LauncherError], None]] = None,
        max_restarts: int = settings.MAX_RESTART_ATTEMPTS,
        shutdown_timeout: float = settings.GRACEFUL_SHUTDOWN_TIMEOUT,
        base_env: Optional[Dict[str, str]] = None,
    ) -> None:
        """
        :param name: Logical name used for logging and thread names.
        :param relaunch: Recomputes the launch spec before a restart. Defaults to reusing the last one.
        :param on_restart: Called with the new handle after an automatic restart.
        :param on_fatal: Called once the process is down for good.
        :param max_restarts: Automatic restarts allowed per spawn.
        :param shutdown_timeout: Seconds between SIGTERM and SIGKILL.
        :param base_env: Environment the child inherits before overrides.
        """
        self.name = name
        self.relaunch = relaunch
        self.on_restart = on_restart
        self.on_fatal = on_fatal
        self.max_restarts = max_restarts
        self.shutdown_timeout = shutdown_timeout
        self.base_env = base_env

        self.handle: Optional[ServerProcessHandle] = None
        self.fatal_error: Optional[LauncherError] = None
        self.fatal_event = threading.Event()
        self._stopping = threading.Event()
        self._lock = threading.Lock()

    def spawn(self, resolution: BinaryResolution) -> ServerProcessHandle:
        """
        Launches the adapter described by ``resolution``.

        :raises ProcessSpawnFailure: If a process is already live or the executable cannot start.
        """
        with self._lock:
            if self.handle is not None and self.handle.is_alive:
                raise ProcessSpawnFailure(f"{self.name} is already running (PID {self.handle.pid}).")
            self._stopping.clear()
            self.fatal_error = None
            self.fatal_event.clear()
            self.handle = self._launch(resolution, restart_count=0)
            return self.handle

    def _launch(self, resolution: BinaryResolution, restart_count: int) -> ServerProcessHandle:
        log.info(f"Starting {self.name} ({resolution.kind.value}): {' '.join(resolution.command)}")
        process = process_utils.launch(resolution, self.base_env)
        handle = ServerProcessHandle(
            pid=process.pid,
            stdin_sink=process.stdin,
            stdout_source=process.stdout,
            stderr_source=process.stderr,
            resolution=resolution,
            process=process,
            restart_count=restart_count,
        )
        process_utils.log_diagnostic_stream(process.stderr, self.name)
        handle.state = ProcessState.RUNNING
        threading.Thread(
            target=self._monitor,
            args=(handle,),
            daemon=True,
            name=f"{self.name}-monitor-{process.pid}",
        ).start()
        log.info(f"{self.name} started with PID {process.pid}.")
        return handle

    def _monitor(self, handle: ServerProcessHandle) -> None:
        """Waits for the process to exit and decides between restart and fatal failure."""
        exit_code = handle.process.wait()
        restarted: Optional[ServerProcessHandle] = None
        fatal: Optional[LauncherError] = None

        with self._lock:
            handle.state = ProcessState.EXITED
            handle.exit_code = exit_code
            if self._stopping.is_set() or self.handle is not handle:
                log.info(f"{self.name} (PID {handle.pid}) exited with code {exit_code}.")
                return

            log.warning(f"{self.name} (PID {handle.pid}) exited unexpectedly with code {exit_code}.")
            if handle.restart_count >= self.max_restarts:
                fatal = ServerExitedFatally(exit_code, handle.restart_count)
            else:
                log.warning(f"Restart attempt #{handle.restart_count + 1} for {self.name}...")
                try:
                    resolution = self.relaunch() if self.relaunch else handle.resolution
                    restarted = self._launch(resolution, handle.restart_count + 1)
                    self.handle = restarted
                except LauncherError as e:
                    fatal = e

            if fatal is not None:
                self.fatal_error = fatal
                log.critical(f"PANIC: Unrecoverable failure for {self.name}: {fatal}")

        if restarted is not None and self.on_restart:
            self.on_restart(restarted)
        if fatal is not None:
            self.fatal_event.set()
            if self.on_fatal:
                self.on_fatal(fatal)

    def terminate(self, handle: Optional[ServerProcessHandle] = None) -> None:
        """
        Stops the adapter without triggering a restart.

        :param handle: The handle to stop; defaults to the current one.
        """
        with self._lock:
            self._stopping.set()
            handle = handle or self.handle
        if handle is None:
            return

        log.info(f"Stopping {self.name} (PID {handle.pid})...")
        shutdown.graceful_shutdown_sequence(handle, self.shutdown_timeout)
        with self._lock:
            handle.state = ProcessState.EXITED
            handle.exit_code = handle.process.returncode
        log.info(f"{self.name} stopped.")

    @property
    def is_running(self) -> bool:
        handle = self.handle
        return handle is not None and handle.is_alive

    def expect_exit(self) -> None:
        """Marks the next exit as requested by the client, so it is not restarted."""
        self._stopping.set()
