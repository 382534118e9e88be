import yaml
import logging
import threading
import itertools
from pathlib import Path
from typing import Callable, Optional
from watchdog.observers import Observer
from watchdog.events import FileSystemEventHandler
from vulnera_launcher import settings
from vulnera_launcher.models import SettingsSnapshot

log = logging.getLogger(__name__)


def load_settings_file(path: Path, revision: Optional[int] = None) -> SettingsSnapshot:
    """
    Reads a host settings document (YAML or JSON) into a snapshot.

    :param path: The settings file. A missing or empty file yields an empty snapshot.
    :param revision: Delivery counter stamped on the snapshot.
    :raises ValueError: If the file is not a valid settings document.
    """
    try:
        text = path.read_text(encoding="utf-8")
    except FileNotFoundError:
        return SettingsSnapshot(revision=revision)
    try:
        document = yaml.safe_load(text)
    except yaml.YAMLError as e:
        raise ValueError(f"Could not parse settings file {path}: {e}") from e
    if document is not None and not isinstance(document, dict):
        raise ValueError(f"Settings file {path} must contain a mapping at the top level.")
    return SettingsSnapshot.from_document(document, revision)


class SettingsChangeHandler(FileSystemEventHandler):
    """A watchdog event handler that reloads the settings file after edits settle."""

    def __init__(self, path: Path, on_change: Callable[[SettingsSnapshot], None], revisions: itertools.count):
        super().__init__()
        self.path = path.resolve()
        self.on_change = on_change
        self.revisions = revisions
        self.debounce_interval = settings.SETTINGS_DEBOUNCE_SECONDS
        self._timer: Optional[threading.Timer] = None
        self._lock = threading.Lock()

    def _is_settings_file(self, event) -> bool:
        if event.is_directory:
            return False
        paths = [event.src_path, getattr(event, "dest_path", "")]
        return any(p and Path(p).resolve() == self.path for p in paths)

    def on_any_event(self, event) -> None:
        if not self._is_settings_file(event):
            return
        log.debug(f"Watchdog event: {event.event_type} on {event.src_path}")
        # Editors often write a file in several steps; only the last one counts.
        with self._lock:
            if self._timer is not None:
                self._timer.cancel()
            self._timer = threading.Timer(self.debounce_interval, self._reload)
            self._timer.daemon = True
            self._timer.start()

    def _reload(self) -> None:
        try:
            snapshot = load_settings_file(self.path, next(self.revisions))
        except (OSError, ValueError) as e:
            log.error(f"Ignoring settings change: {e}")
            return
        log.info(f"Settings file changed (revision {snapshot.revision}).")
        self.on_change(snapshot)

    def cancel(self) -> None:
        with self._lock:
            if self._timer is not None:
                self._timer.cancel()
                self._timer = None


class SettingsFileWatcher:
    """
    Watches a settings file and delivers each settled edit as a new
    SettingsSnapshot with an increasing revision.
    """

    def __init__(self, path: Path, on_change: Callable[[SettingsSnapshot], None], start_revision: int = 1):
        self.path = Path(path)
        self.revisions = itertools.count(start_revision)
        self.handler = SettingsChangeHandler(self.path, on_change, self.revisions)
        self.observer: Optional[Observer] = None

    def load(self) -> SettingsSnapshot:
        """Reads the current contents as the next revision."""
        return load_settings_file(self.path, next(self.revisions))

    def start(self) -> None:
        self.observer = Observer()
        self.observer.schedule(self.handler, str(self.path.resolve().parent), recursive=False)
        self.observer.start()
        log.info(f"Watching {self.path} for settings changes.")

    def stop(self) -> None:
        self.handler.cancel()
        if self.observer is not None:
            self.observer.stop()
            self.observer.join(timeout=5)
            self.observer = None
            log.debug("Settings watcher stopped.")
