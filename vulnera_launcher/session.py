import os
import logging
import threading
import concurrent.futures
from typing import Any, Callable, Dict, Mapping, Optional, Set
from vulnera_launcher import settings
from vulnera_launcher.external import InstallManager
from vulnera_launcher.locator import BinaryLocator
from vulnera_launcher.version import VersionResolver
from vulnera_launcher.supervisor import ProcessSupervisor
from vulnera_launcher.reconciler import Action, ConfigReconciler, RequiresRestart
from vulnera_launcher.exceptions import (
    InstallCancelled,
    InstallFailure,
    LauncherError,
    ProcessSpawnFailure,
    VersionMismatch,
)
from vulnera_launcher.models import (
    BinaryResolution,
    InstallState,
    ServerProcessHandle,
    SettingsSnapshot,
    VersionSource,
    VersionSpec,
)

log = logging.getLogger(__name__)


class LauncherSession:
    """
    The adapter lifecycle for one editor session.

    Hosts drive it through five calls: ``ensure_ready``, ``resolve_binary``,
    ``spawn``, ``reconcile`` and ``terminate`` (or ``close`` on teardown).
    Blocking work runs on worker threads and every wait is bounded by a timeout.
    """

    def __init__(
        self,
        snapshot: Optional[SettingsSnapshot] = None,
        env: Optional[Mapping[str, str]] = None,
        install_manager: Optional[InstallManager] = None,
        version_resolver: Optional[VersionResolver] = None,
        locator: Optional[BinaryLocator] = None,
        supervisor: Optional[ProcessSupervisor] = None,
        install_timeout: float = settings.INSTALL_TIMEOUT,
        spawn_timeout: float = settings.SPAWN_TIMEOUT,
        on_restart: Optional[Callable[[ServerProcessHandle], None]] = None,
        on_fatal: Optional[Callable[[LauncherError], None]] = None,
    ) -> None:
        self.env: Dict[str, str] = dict(os.environ if env is None else env)
        self.install_manager = install_manager or InstallManager()
        self.version_resolver = version_resolver or VersionResolver()
        self.locator = locator or BinaryLocator()
        self.reconciler = ConfigReconciler(snapshot or SettingsSnapshot())
        self.supervisor = supervisor or ProcessSupervisor(
            on_restart=on_restart, on_fatal=on_fatal, base_env=self.env
        )
        if self.supervisor.relaunch is None:
            self.supervisor.relaunch = self.resolve_binary
        self.install_timeout = install_timeout
        self.spawn_timeout = spawn_timeout

        self.install_state: Optional[InstallState] = None
        self._version_spec: Optional[VersionSpec] = None
        self._cancel_events: Set[threading.Event] = set()
        self._cancel_lock = threading.Lock()
        self._closed = threading.Event()
        self._executor = concurrent.futures.ThreadPoolExecutor(max_workers=2, thread_name_prefix="vulnera-launcher")

    #* --- Inputs ---
    @property
    def snapshot(self) -> SettingsSnapshot:
        return self.reconciler.snapshot

    @property
    def config(self) -> Mapping[str, Any]:
        """Runtime settings; the ``binary`` block is the launch override document."""
        return self.snapshot.runtime_settings

    @property
    def version_spec(self) -> VersionSpec:
        """Resolved once per session, on first use."""
        if self._version_spec is None:
            self._version_spec = self.version_resolver.resolve(self.env)
        return self._version_spec

    def uses_override(self) -> bool:
        return self.locator.find_override(self.config, self.env) is not None

    def _allow_path_binary(self) -> bool:
        # A pin must be honoured exactly; an arbitrary PATH binary cannot guarantee that.
        return self.version_spec.source is not VersionSource.PINNED

    #* --- Install ---
    def ensure_ready(self, refresh: bool = False, timeout: Optional[float] = None) -> Optional[InstallState]:
        """
        Makes sure something launchable exists.

        Skips version resolution and installation entirely when an override is
        configured, and skips installation when a usable binary is on PATH.

        :param refresh: For 'latest', look for a newer release even if one is installed.
        :param timeout: Seconds to wait; defaults to the session's install timeout.
        :raises InstallFailure: On failure or timeout. Transient failures are retried once first.
        :raises VersionMismatch: If a pinned version could not replace the installed one.
        :return: The install state, or None when no managed install is needed.
        """
        if self._closed.is_set():
            raise InstallCancelled("Session is closed.")
        if self.uses_override():
            log.info("Binary override configured. Skipping version resolution and install.")
            return None
        if self._allow_path_binary() and self.locator.find_on_path(self.env):
            log.info(f"{self.locator.binary_name} found on PATH. Skipping managed install.")
            return None

        spec = self.version_spec
        timeout = self.install_timeout if timeout is None else timeout
        cancel_event = threading.Event()
        with self._cancel_lock:
            self._cancel_events.add(cancel_event)
        try:
            try:
                future = self._executor.submit(self._install_with_retry, spec, refresh, cancel_event)
            except RuntimeError as e:
                raise InstallCancelled("Session is closed.") from e
            try:
                self.install_state = future.result(timeout=timeout)
            except concurrent.futures.TimeoutError:
                cancel_event.set()
                raise InstallFailure(f"Adapter install did not finish within {timeout}s.")
            return self.install_state
        finally:
            with self._cancel_lock:
                self._cancel_events.discard(cancel_event)

    def _install_with_retry(self, spec: VersionSpec, refresh: bool, cancel_event: threading.Event) -> InstallState:
        try:
            return self.install_manager.ensure_installed(spec, refresh=refresh, cancel_event=cancel_event)
        except InstallCancelled:
            raise
        except (InstallFailure, VersionMismatch) as e:
            if not e.transient or cancel_event.is_set():
                log.error(f"Adapter install failed: {e}")
                raise
            log.warning(f"Transient install failure: {e}. Retrying once...")
        return self.install_manager.ensure_installed(spec, refresh=refresh, cancel_event=cancel_event)

    #* --- Launch ---
    def resolve_binary(self) -> BinaryResolution:
        """Computes a fresh launch spec; called on every launch and relaunch."""
        allow_path = self.uses_override() or self._allow_path_binary()
        return self.locator.resolve(self.config, self.install_state, self.env, allow_path=allow_path)

    def spawn(self, timeout: Optional[float] = None) -> ServerProcessHandle:
        """
        Launches the adapter.

        :raises BinaryNotFound: If nothing launchable was resolved.
        :raises ProcessSpawnFailure: If the process failed to start or the timeout expired.
        """
        if self._closed.is_set():
            raise ProcessSpawnFailure("Session is closed.")
        resolution = self.resolve_binary()
        timeout = self.spawn_timeout if timeout is None else timeout
        try:
            future = self._executor.submit(self.supervisor.spawn, resolution)
        except RuntimeError as e:
            # close() shut the executor down after the check above.
            raise ProcessSpawnFailure("Session is closed.") from e
        try:
            return future.result(timeout=timeout)
        except concurrent.futures.TimeoutError:
            future.add_done_callback(self._discard_late_spawn)
            raise ProcessSpawnFailure(f"Adapter did not start within {timeout}s.")

    def _discard_late_spawn(self, future: concurrent.futures.Future) -> None:
        if future.cancelled() or future.exception() is not None:
            return
        log.warning("Stopping adapter that started after its spawn timeout.")
        self.supervisor.terminate(future.result())

    def start(self, refresh: bool = False) -> ServerProcessHandle:
        """BLOCKING: ensure_ready followed by spawn."""
        self.ensure_ready(refresh=refresh)
        return self.spawn()

    def launch_async(self, refresh: bool = False) -> "concurrent.futures.Future[ServerProcessHandle]":
        """NON-BLOCKING: runs ``start`` on a background thread and returns its future."""
        result: "concurrent.futures.Future[ServerProcessHandle]" = concurrent.futures.Future()

        def _run() -> None:
            if not result.set_running_or_notify_cancel():
                return
            try:
                result.set_result(self.start(refresh=refresh))
            except LauncherError as e:
                result.set_exception(e)
            except Exception as e:
                log.exception("Unexpected error while launching the adapter.")
                result.set_exception(e)

        threading.Thread(target=_run, daemon=True, name="AdapterLaunchThread").start()
        return result

    #* --- Settings ---
    def reconcile(self, snapshot: SettingsSnapshot, auto_restart: bool = True) -> Action:
        """
        Classifies a new settings delivery and, if it needs one, restarts the adapter.

        :param snapshot: The settings just delivered by the host.
        :param auto_restart: When False, only report RequiresRestart.
        """
        action = self.reconciler.apply(snapshot)
        if isinstance(action, RequiresRestart) and auto_restart and self.supervisor.is_running:
            self.restart()
        return action

    def restart(self) -> ServerProcessHandle:
        """Caller-initiated restart with a freshly resolved launch spec."""
        self.supervisor.terminate()
        self.ensure_ready()
        return self.spawn()

    #* --- Teardown ---
    def terminate(self) -> None:
        self.supervisor.terminate()

    def close(self) -> None:
        """Cancels in-flight installs and stops the adapter."""
        if self._closed.is_set():
            return
        self._closed.set()
        with self._cancel_lock:
            for event in self._cancel_events:
                event.set()
        self.supervisor.terminate()
        self._executor.shutdown(wait=False, cancel_futures=True)

    def __enter__(self) -> "LauncherSession":
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()

    def status(self) -> Dict[str, Any]:
        handle = self.supervisor.handle
        state = self.install_state or self.install_manager.read_state()
        return {
            "override": self.uses_override(),
            "install_dir": str(state.install_dir),
            "installed_version": state.installed_version,
            "verified_at": state.verified_at,
            "pid": handle.pid if handle else None,
            "state": handle.state.value if handle else None,
            "restart_count": handle.restart_count if handle else 0,
            "fatal_error": str(self.supervisor.fatal_error) if self.supervisor.fatal_error else None,
        }
