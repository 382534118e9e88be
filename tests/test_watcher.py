import itertools
import json
import threading

import pytest
from watchdog.events import FileModifiedEvent

from conftest import wait_until
from vulnera_launcher.watcher import SettingsChangeHandler, SettingsFileWatcher, load_settings_file


def test_load_yaml_settings(tmp_path):
    path = tmp_path / "settings.yaml"
    path.write_text("initializationOptions:\n  scanDepth: 2\nsettings:\n  severity: high\n")
    snapshot = load_settings_file(path, revision=7)
    assert snapshot.initialization_options == {"scanDepth": 2}
    assert snapshot.runtime_settings == {"severity": "high"}
    assert snapshot.revision == 7


def test_load_json_settings(tmp_path):
    path = tmp_path / "settings.json"
    path.write_text(json.dumps({"settings": {"binary": {"path": "/opt/a"}}}))
    assert load_settings_file(path).runtime_settings == {"binary": {"path": "/opt/a"}}


def test_missing_or_empty_file_is_empty_snapshot(tmp_path):
    assert load_settings_file(tmp_path / "absent.yaml").runtime_settings == {}
    empty = tmp_path / "empty.yaml"
    empty.write_text("")
    assert load_settings_file(empty).initialization_options == {}


@pytest.mark.parametrize("text", ["- a\n- b\n", "settings: [1, 2]\n", "key: [unclosed\n"])
def test_invalid_documents_raise_value_error(tmp_path, text):
    path = tmp_path / "bad.yaml"
    path.write_text(text)
    with pytest.raises(ValueError):
        load_settings_file(path)


def test_bursts_of_events_are_debounced(tmp_path):
    path = tmp_path / "settings.yaml"
    path.write_text("settings:\n  a: 1\n")
    delivered = []
    handler = SettingsChangeHandler(path, delivered.append, itertools.count(1))
    handler.debounce_interval = 0.05

    for _ in range(5):
        handler.on_any_event(FileModifiedEvent(str(path)))
    handler.on_any_event(FileModifiedEvent(str(tmp_path / "other.yaml")))

    assert wait_until(lambda: len(delivered) == 1)
    assert not wait_until(lambda: len(delivered) > 1, timeout=0.3)
    assert delivered[0].runtime_settings == {"a": 1}
    assert delivered[0].revision == 1


def test_unparseable_edit_is_skipped(tmp_path, caplog):
    path = tmp_path / "settings.yaml"
    path.write_text("key: [unclosed\n")
    delivered = []
    handler = SettingsChangeHandler(path, delivered.append, itertools.count(1))
    handler._reload()
    assert delivered == []
    assert "Ignoring settings change" in caplog.text


def test_watcher_delivers_file_edits(tmp_path):
    path = tmp_path / "settings.yaml"
    path.write_text("settings:\n  a: 1\n")
    changed = threading.Event()
    delivered = []

    def _on_change(snapshot):
        delivered.append(snapshot)
        changed.set()

    watcher = SettingsFileWatcher(path, _on_change)
    assert watcher.load().revision == 1
    watcher.handler.debounce_interval = 0.05
    watcher.start()
    try:
        path.write_text("settings:\n  a: 2\n")
        assert changed.wait(10)
    finally:
        watcher.stop()
    assert delivered[-1].runtime_settings == {"a": 2}
    assert delivered[-1].revision >= 2
