import sys
import json
import logging
import itertools
import threading
from typing import IO, Any, Dict, List, Optional, Set
from vulnera_launcher.session import LauncherSession
from vulnera_launcher.reconciler import Action, RequiresRestart
from vulnera_launcher.exceptions import LauncherError, ProtocolStreamCorruption
from vulnera_launcher.models import ServerProcessHandle, SettingsSnapshot
from vulnera_launcher.supervisor import ProtocolReader, ProtocolWriter

log = logging.getLogger(__name__)

REPLAY_ID_PREFIX = "vulnera-launcher-replay-"


def _encode(message: Dict[str, Any]) -> bytes:
    return json.dumps(message, separators=(",", ":")).encode("utf-8")


def _decode(payload: bytes) -> Optional[Dict[str, Any]]:
    try:
        message = json.loads(payload)
    except ValueError:
        return None
    return message if isinstance(message, dict) else None


class StdioRelay:
    """
    Connects the editor's stdio to the adapter's protocol streams.

    Frames are forwarded unchanged in both directions. The relay remembers the
    client's ``initialize`` handshake so that a restarted adapter can be
    re-initialized without the editor noticing; the response to a replayed
    ``initialize`` is dropped. Frames sent while no adapter is attached are
    held and delivered after the next handshake.
    """

    def __init__(self, session: LauncherSession, host_in: Optional[IO[bytes]] = None, host_out: Optional[IO[bytes]] = None):
        self.session = session
        self.host_reader = ProtocolReader(host_in or sys.stdin.buffer)
        self.host_writer = ProtocolWriter(host_out or sys.stdout.buffer)

        self.handle: Optional[ServerProcessHandle] = None
        self.error: Optional[LauncherError] = None
        self.done = threading.Event()

        self._child_writer: Optional[ProtocolWriter] = None
        self._pending: List[bytes] = []
        self._initialize: Optional[Dict[str, Any]] = None
        self._initialized: Optional[bytes] = None
        self._suppressed_ids: Set[str] = set()
        self._replay_ids = itertools.count(1)
        self._exit_requested = False
        # _lock guards relay state and is never held across a pipe write.
        # _send_lock keeps frames to the adapter in order.
        self._lock = threading.Lock()
        self._send_lock = threading.Lock()

        session.supervisor.on_restart = self._on_restart
        session.supervisor.on_fatal = self._fail

    #* --- Adapter side ---
    def attach(self, handle: ServerProcessHandle, replay: bool = False) -> None:
        """
        Routes traffic to ``handle``.

        :param replay: Re-send the recorded handshake first (after a restart).
        """
        with self._send_lock:
            with self._lock:
                self.handle = handle
                self._child_writer = ProtocolWriter(handle.stdin_sink)
                pending, self._pending = self._pending, []
            threading.Thread(
                target=self._pump_child, args=(handle,), daemon=True, name=f"adapter-stdout-{handle.pid}"
            ).start()
            if replay:
                self._replay_handshake_locked()
            for payload in pending:
                self._send_to_child_locked(payload)
        log.debug(f"Relay attached to PID {handle.pid} ({len(pending)} held frame(s) delivered).")

    def _send_to_child_locked(self, payload: bytes, hold_on_failure: bool = True) -> None:
        """Writes one frame to the adapter. Callers hold ``_send_lock``."""
        with self._lock:
            writer = self._child_writer
        if writer is not None:
            try:
                writer.write_frame(payload)
                return
            except (OSError, ValueError) as e:
                log.debug(f"Adapter stdin is closed ({e}); holding frames until it is back.")
                with self._lock:
                    if self._child_writer is writer:
                        self._child_writer = None
        if hold_on_failure:
            with self._lock:
                self._pending.append(payload)

    def _replay_handshake_locked(self) -> None:
        if self._initialize is None:
            return
        request = dict(self._initialize)
        params = dict(request.get("params") or {})
        init_options = self.session.snapshot.initialization_options
        if init_options:
            params["initializationOptions"] = dict(init_options)
        replay_id = f"{REPLAY_ID_PREFIX}{next(self._replay_ids)}"
        request["id"] = replay_id
        request["params"] = params
        with self._lock:
            self._suppressed_ids.add(replay_id)
        log.info("Replaying initialize handshake to the restarted adapter.")

        # A failed replay write means this child is already gone; the next one replays again.
        self._send_to_child_locked(_encode(request), hold_on_failure=False)
        if self._initialized is not None:
            self._send_to_child_locked(self._initialized, hold_on_failure=False)
        runtime = self.session.snapshot.runtime_settings
        if runtime:
            notification = {
                "jsonrpc": "2.0",
                "method": "workspace/didChangeConfiguration",
                "params": {"settings": dict(runtime)},
            }
            self._send_to_child_locked(_encode(notification), hold_on_failure=False)

    def _is_suppressed(self, payload: bytes) -> bool:
        if not self._suppressed_ids:
            return False
        message = _decode(payload)
        if message is None or "method" in message:
            return False
        msg_id = message.get("id")
        if not isinstance(msg_id, str):
            return False
        with self._lock:
            if msg_id in self._suppressed_ids:
                self._suppressed_ids.discard(msg_id)
                return True
        return False

    def _pump_child(self, handle: ServerProcessHandle) -> None:
        reader = ProtocolReader(handle.stdout_source)
        try:
            while True:
                payload = reader.read_frame()
                if payload is None:
                    break
                if self._is_suppressed(payload):
                    log.debug("Dropped response to a replayed initialize request.")
                    continue
                self.host_writer.write_frame(payload)
        except ProtocolStreamCorruption as e:
            if self.handle is handle:
                self._fail(e)
        except (OSError, ValueError) as e:
            log.debug(f"Adapter stdout relay for PID {handle.pid} stopped: {e}")
        finally:
            with self._lock:
                current = self.handle is handle
                if current:
                    self._child_writer = None
            if current and self._exit_requested:
                log.info("Adapter exited at the client's request.")
                self.done.set()

    def _on_restart(self, handle: ServerProcessHandle) -> None:
        self.attach(handle, replay=True)

    def _fail(self, error: LauncherError) -> None:
        if self.error is None:
            self.error = error
        log.critical(f"Relay stopped: {error}")
        self.done.set()

    #* --- Editor side ---
    def _observe_host_message(self, payload: bytes) -> None:
        message = _decode(payload)
        if message is None:
            return
        method = message.get("method")
        if method == "initialize":
            self._initialize = message
        elif method == "initialized":
            self._initialized = payload
        elif method == "exit":
            self._exit_requested = True
            self.session.supervisor.expect_exit()

    def _pump_host(self) -> None:
        try:
            while not self.done.is_set():
                payload = self.host_reader.read_frame()
                if payload is None:
                    log.info("Editor closed the protocol stream.")
                    break
                self._observe_host_message(payload)
                with self._send_lock:
                    self._send_to_child_locked(payload)
        except ProtocolStreamCorruption as e:
            self._fail(e)
        finally:
            self.done.set()

    def send_notification(self, method: str, params: Any) -> None:
        """Sends a notification to the adapter on behalf of the launcher."""
        with self._send_lock:
            self._send_to_child_locked(_encode({"jsonrpc": "2.0", "method": method, "params": params}))

    def apply_settings(self, snapshot: SettingsSnapshot) -> Action:
        """
        Applies a new settings snapshot: restarts and re-initializes the adapter
        when required, otherwise pushes the runtime settings as a configuration change.
        """
        action = self.session.reconcile(snapshot, auto_restart=False)
        if isinstance(action, RequiresRestart):
            if self.session.supervisor.is_running:
                try:
                    self.attach(self.session.restart(), replay=True)
                except LauncherError as e:
                    self._fail(e)
        elif not action.is_empty:
            self.send_notification(
                "workspace/didChangeConfiguration",
                {"settings": dict(self.session.snapshot.runtime_settings)},
            )
        return action

    def run(self, handle: ServerProcessHandle) -> int:
        """
        BLOCKING: relays until the editor disconnects or the adapter fails for good.

        :return: Process exit code, 1 when a fatal error ended the relay.
        """
        self.attach(handle)
        threading.Thread(target=self._pump_host, daemon=True, name="editor-stdin").start()
        self.done.wait()
        return 1 if self.error is not None else 0
