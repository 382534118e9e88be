from vulnera_launcher.models import SettingsSnapshot
from vulnera_launcher.reconciler import ConfigReconciler, HotApply, RequiresRestart, flatten, reconcile


def snap(init=None, runtime=None, revision=None):
    return SettingsSnapshot(init or {}, runtime or {}, revision)


def test_flatten_uses_dotted_keys():
    assert flatten({"a": {"b": 1, "c": {}}, "d": [1]}) == {"a.b": 1, "a.c": {}, "d": [1]}


def test_runtime_only_change_is_hot_applied():
    action = reconcile(
        snap({"scanDepth": 2}, {"severity": {"minimum": "low"}, "ignore": []}),
        snap({"scanDepth": 2}, {"severity": {"minimum": "high"}, "ignore": []}),
    )
    assert action == HotApply({"severity.minimum": "low"}, ())


def test_removed_runtime_key_is_reported():
    action = reconcile(snap(runtime={"a": 1}), snap(runtime={"a": 1, "b": 2}))
    assert action == HotApply({}, ("b",))


def test_initialization_option_change_requires_restart():
    action = reconcile(snap({"scanDepth": 3}, {"a": 1}), snap({"scanDepth": 2}, {"a": 2}))
    assert isinstance(action, RequiresRestart)
    assert action.changed_keys == ("initializationOptions.scanDepth",)


def test_startup_runtime_keys_require_restart():
    action = reconcile(
        snap(runtime={"binary": {"path": "/new"}, "theme": "x"}),
        snap(runtime={"binary": {"path": "/old"}, "theme": "y"}),
    )
    assert action == RequiresRestart(("binary.path",))


def test_custom_restart_keys():
    action = reconcile(snap(runtime={"cache": {"size": 2}}), snap(runtime={"cache": {"size": 1}}), {"cache"})
    assert isinstance(action, RequiresRestart)


def test_no_previous_snapshot_counts_as_empty():
    assert reconcile(snap(runtime={"a": 1}), None) == HotApply({"a": 1}, ())
    assert isinstance(reconcile(snap({"x": 1}), None), RequiresRestart)


def test_identical_snapshots_yield_empty_hot_apply():
    action = reconcile(snap({"x": 1}, {"a": 1}), snap({"x": 1}, {"a": 1}))
    assert action.is_empty


def test_reconciler_tracks_current_snapshot():
    reconciler = ConfigReconciler(snap(runtime={"a": 1}, revision=1))
    new = snap(runtime={"a": 2}, revision=2)
    assert reconciler.apply(new) == HotApply({"a": 2}, ())
    assert reconciler.snapshot is new


def test_reconciler_discards_stale_revisions():
    current = snap(runtime={"a": 3}, revision=3)
    reconciler = ConfigReconciler(current)
    action = reconciler.apply(snap({"x": 1}, revision=2))
    assert action.is_empty
    assert reconciler.snapshot is current


def test_snapshot_from_document():
    snapshot = SettingsSnapshot.from_document(
        {"initializationOptions": {"x": 1}, "settings": {"a": 2}}, revision=4
    )
    assert snapshot == SettingsSnapshot({"x": 1}, {"a": 2}, 4)
    assert SettingsSnapshot.from_document(None) == SettingsSnapshot()
