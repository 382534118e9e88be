import logging
import threading
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, Mapping, Optional, Set, Tuple, Union
from vulnera_launcher import settings
from vulnera_launcher.models import SettingsSnapshot

log = logging.getLogger(__name__)

INIT_PREFIX = "initializationOptions"
_MISSING = object()


@dataclass(frozen=True)
class HotApply:
    """Runtime-applicable keys that changed, keyed by dotted path."""
    diff: Mapping[str, Any] = field(default_factory=dict)
    removed: Tuple[str, ...] = ()

    @property
    def is_empty(self) -> bool:
        return not self.diff and not self.removed


@dataclass(frozen=True)
class RequiresRestart:
    changed_keys: Tuple[str, ...]


Action = Union[HotApply, RequiresRestart]


def flatten(document: Optional[Mapping[str, Any]], prefix: str = "") -> Dict[str, Any]:
    """
    Flattens nested mappings into dotted keys. Lists and scalars are leaves.

    >>> flatten({"a": {"b": 1}, "c": [1, 2]})
    {'a.b': 1, 'c': [1, 2]}
    """
    flat: Dict[str, Any] = {}
    for key, value in (document or {}).items():
        path = f"{prefix}.{key}" if prefix else str(key)
        if isinstance(value, Mapping) and value:
            flat.update(flatten(value, path))
        else:
            flat[path] = value
    return flat


def _changed_keys(old: Dict[str, Any], new: Dict[str, Any]) -> Set[str]:
    return {k for k in old.keys() | new.keys() if old.get(k, _MISSING) != new.get(k, _MISSING)}


def is_restart_required(key: str, restart_required_keys: Iterable[str]) -> bool:
    return any(key == k or key.startswith(f"{k}.") for k in restart_required_keys)


def reconcile(
    new: SettingsSnapshot,
    previous: Optional[SettingsSnapshot],
    restart_required_keys: Iterable[str] = settings.RESTART_REQUIRED_KEYS,
) -> Action:
    """
    Decides how a running adapter should take a new settings snapshot.

    Any change among the initialization options, or among runtime keys listed
    in ``restart_required_keys``, requires a restart. Otherwise the changed
    runtime keys are returned as a hot-apply diff.

    :param new: The snapshot just delivered by the host.
    :param previous: The snapshot the running process was given; None counts as empty.
    :param restart_required_keys: Runtime keys (dotted prefixes) read only at startup.
    """
    previous = previous or SettingsSnapshot()
    restart_required_keys = tuple(restart_required_keys)

    init_changes = {
        f"{INIT_PREFIX}.{k}"
        for k in _changed_keys(flatten(previous.initialization_options), flatten(new.initialization_options))
    }

    old_runtime = flatten(previous.runtime_settings)
    new_runtime = flatten(new.runtime_settings)
    runtime_changes = _changed_keys(old_runtime, new_runtime)
    startup_changes = {k for k in runtime_changes if is_restart_required(k, restart_required_keys)}

    if init_changes or startup_changes:
        return RequiresRestart(tuple(sorted(init_changes | startup_changes)))

    diff = {k: new_runtime[k] for k in sorted(runtime_changes) if k in new_runtime}
    removed = tuple(sorted(k for k in runtime_changes if k not in new_runtime))
    return HotApply(diff, removed)


class ConfigReconciler:
    """
    Tracks the settings snapshot the adapter is running with and classifies
    each new delivery. Deliveries older than the current revision are discarded.
    """

    def __init__(
        self,
        snapshot: Optional[SettingsSnapshot] = None,
        restart_required_keys: Iterable[str] = settings.RESTART_REQUIRED_KEYS,
    ) -> None:
        self.snapshot = snapshot
        self.restart_required_keys = frozenset(restart_required_keys)
        self._lock = threading.Lock()

    def is_stale(self, new: SettingsSnapshot) -> bool:
        current = self.snapshot
        return (
            current is not None
            and current.revision is not None
            and new.revision is not None
            and new.revision < current.revision
        )

    def apply(self, new: SettingsSnapshot) -> Action:
        """Classifies ``new`` against the current snapshot and makes it current."""
        with self._lock:
            if self.is_stale(new):
                log.debug(f"Discarding stale settings revision {new.revision} (current {self.snapshot.revision}).")
                return HotApply()
            action = reconcile(new, self.snapshot, self.restart_required_keys)
            self.snapshot = new

        if isinstance(action, RequiresRestart):
            log.info(f"Settings change requires an adapter restart: {', '.join(action.changed_keys)}")
        elif not action.is_empty:
            log.info(f"Hot-applying {len(action.diff) + len(action.removed)} changed setting(s).")
        return action
