import json
import os
import threading
from unittest import mock

import pytest

from gpunode.config_manager import (
    DEFAULT_CONFIG_LABEL,
    NAMED_CONFIG_FALLBACK,
    ConfigManagerError,
    FallbackStrategy,
    Flags,
    NodeLabelWatcher,
    SyncableConfig,
    config_file_names,
    file_exists,
    find_pid_to_signal,
    main,
    select_config_name,
    signal_process,
    update_config,
    update_symlink,
)


def _flags(tmp_path, **overrides):
    srcdir = tmp_path / "configs"
    srcdir.mkdir(exist_ok=True)
    values = dict(
        node_name="node",
        config_file_srcdir=str(srcdir),
        config_file_dst=str(tmp_path / "config.yaml"),
        send_signal=False,
    )
    values.update(overrides)
    return Flags(**values)


def _add_configs(flags, *names):
    for name in names:
        with open(os.path.join(flags.config_file_srcdir, name), "w"):
            pass


@pytest.mark.parametrize(
    "field_name, flag_name",
    [
        ("node_name", "node-name"),
        ("node_label", "node-label"),
        ("config_file_srcdir", "config-file-srcdir"),
        ("config_file_dst", "config-file-dst"),
    ],
)
def test_validate_rejects_empty(tmp_path, field_name, flag_name):
    flags = _flags(tmp_path, **{field_name: ""})
    with pytest.raises(ConfigManagerError, match=f"<{flag_name}>"):
        flags.validate()


def test_flag_defaults():
    flags = Flags()
    assert flags.node_label == DEFAULT_CONFIG_LABEL
    assert flags.process_to_signal == "nvidia-device-plugin"
    assert flags.send_signal is True


def test_syncable_config_returns_new_value():
    config = SyncableConfig()
    config.set("a")
    assert config.get(timeout=1) == "a"


def test_syncable_config_blocks_without_change():
    config = SyncableConfig()
    config.set("a")
    config.get(timeout=1)
    with pytest.raises(TimeoutError):
        config.get(timeout=0.05)


def test_syncable_config_wakes_waiter():
    config = SyncableConfig()
    setter = threading.Timer(0.05, config.set, args=("b",))
    setter.start()
    try:
        assert config.get(timeout=5) == "b"
    finally:
        setter.join(5)


def test_handle_event_added_sets_label(tmp_path):
    config = SyncableConfig()
    watcher = NodeLabelWatcher(config, _flags(tmp_path))
    watcher.handle_event("ADDED", {DEFAULT_CONFIG_LABEL: "a"})
    assert config.get(timeout=1) == "a"


def test_handle_event_modified_ignores_same_label(tmp_path):
    config = SyncableConfig()
    watcher = NodeLabelWatcher(config, _flags(tmp_path))
    watcher.handle_event("ADDED", {DEFAULT_CONFIG_LABEL: "a"})
    config.get(timeout=1)
    watcher.handle_event("MODIFIED", {DEFAULT_CONFIG_LABEL: "a", "x": "y"}, {DEFAULT_CONFIG_LABEL: "a"})
    with pytest.raises(TimeoutError):
        config.get(timeout=0.05)
    watcher.handle_event("MODIFIED", {DEFAULT_CONFIG_LABEL: "b"}, {DEFAULT_CONFIG_LABEL: "a"})
    assert config.get(timeout=1) == "b"


def test_handle_event_deleted_clears(tmp_path):
    config = SyncableConfig()
    watcher = NodeLabelWatcher(config, _flags(tmp_path))
    watcher.handle_event("ADDED", {DEFAULT_CONFIG_LABEL: "a"})
    config.get(timeout=1)
    watcher.handle_event("DELETED", {DEFAULT_CONFIG_LABEL: "a"})
    assert config.get(timeout=1) == ""


def test_handle_event_unknown_type(tmp_path):
    watcher = NodeLabelWatcher(SyncableConfig(), _flags(tmp_path))
    with pytest.raises(ValueError):
        watcher.handle_event("BOGUS", {})


class _FakeResponse:
    def __init__(self, lines, on_done):
        self._lines = lines
        self._on_done = on_done
        self.closed = False

    def iter_lines(self):
        yield from self._lines
        self._on_done()

    def close(self):
        self.closed = True


class _FakeClient:
    def __init__(self, items, events, watcher_box):
        self.items = items
        self.events = events
        self.watcher_box = watcher_box
        self.selectors = []

    def list_nodes(self, selector):
        self.selectors.append(selector)
        return {"metadata": {"resourceVersion": "1"}, "items": self.items}

    def watch_nodes(self, selector, version):
        lines = [json.dumps(event).encode() for event in self.events]
        return _FakeResponse(lines, self.watcher_box[0].stop)


def _node(label):
    return {"metadata": {"resourceVersion": "2", "labels": {DEFAULT_CONFIG_LABEL: label}}}


def test_watcher_run_tracks_label_changes(tmp_path):
    config = SyncableConfig()
    box = []
    client = _FakeClient([_node("a")], [{"type": "MODIFIED", "object": _node("b")}], box)
    watcher = NodeLabelWatcher(config, _flags(tmp_path), client)
    box.append(watcher)
    watcher.run()
    assert config.get(timeout=1) == "b"
    assert client.selectors == ["metadata.name=node"]


def test_watcher_run_handles_delete(tmp_path):
    config = SyncableConfig()
    box = []
    client = _FakeClient([_node("a")], [{"type": "DELETED", "object": _node("a")}], box)
    watcher = NodeLabelWatcher(config, _flags(tmp_path), client)
    box.append(watcher)
    watcher.run()
    assert config.get(timeout=1) == ""


def test_config_file_names_skips_dirs_and_dotdot(tmp_path):
    flags = _flags(tmp_path)
    _add_configs(flags, "a", "b", "..data")
    os.mkdir(os.path.join(flags.config_file_srcdir, "subdir"))
    assert config_file_names(flags.config_file_srcdir) == {"a", "b"}


def test_config_file_names_missing_dir(tmp_path):
    with pytest.raises(ConfigManagerError, match="error reading directory"):
        config_file_names(str(tmp_path / "missing"))


def test_file_exists(tmp_path):
    path = tmp_path / "f"
    path.write_text("x")
    assert file_exists(str(path)) is True
    assert file_exists(str(tmp_path)) is False
    assert file_exists(str(tmp_path / "missing")) is False


def test_select_no_files(tmp_path):
    with pytest.raises(ConfigManagerError, match="no configuration files available"):
        select_config_name("a", _flags(tmp_path))


def test_select_explicit(tmp_path):
    flags = _flags(tmp_path)
    _add_configs(flags, "a", "b")
    assert select_config_name("b", flags) == "b"
    with pytest.raises(ConfigManagerError, match="does not exist"):
        select_config_name("c", flags)


def test_select_default(tmp_path):
    flags = _flags(tmp_path, default_config="a")
    _add_configs(flags, "a", "b")
    assert select_config_name("", flags) == "a"
    flags.default_config = "missing"
    with pytest.raises(ConfigManagerError, match="does not exist"):
        select_config_name("", flags)


def test_select_named_fallback(tmp_path):
    flags = _flags(tmp_path, fallback_strategies=[FallbackStrategy.NAMED.value])
    _add_configs(flags, NAMED_CONFIG_FALLBACK, "b")
    assert select_config_name("", flags) == NAMED_CONFIG_FALLBACK


def test_select_single_fallback(tmp_path):
    flags = _flags(tmp_path, fallback_strategies=["named", "single"])
    _add_configs(flags, "only")
    assert select_config_name("", flags) == "only"


def test_select_empty_fallback_after_failures(tmp_path):
    flags = _flags(tmp_path, fallback_strategies=["named", "single", "empty"])
    _add_configs(flags, "a", "b")
    assert select_config_name("", flags) == ""


def test_select_all_fallbacks_fail(tmp_path):
    flags = _flags(tmp_path, fallback_strategies=["named", "single"])
    _add_configs(flags, "a", "b")
    with pytest.raises(ConfigManagerError, match="all fallbacks failed"):
        select_config_name("", flags)


def test_select_unknown_fallback(tmp_path):
    flags = _flags(tmp_path, fallback_strategies=["bogus"])
    _add_configs(flags, "a", "b")
    with pytest.raises(ConfigManagerError, match="unknown fallback strategy: bogus"):
        select_config_name("", flags)


def test_update_symlink_cycle(tmp_path):
    flags = _flags(tmp_path)
    _add_configs(flags, "a", "b")
    assert update_symlink("a", flags) is True
    assert os.readlink(flags.config_file_dst) == os.path.join(flags.config_file_srcdir, "a")
    assert update_symlink("a", flags) is False
    assert update_symlink("b", flags) is True
    assert os.readlink(flags.config_file_dst) == os.path.join(flags.config_file_srcdir, "b")


def test_update_symlink_empty_points_at_dev_null(tmp_path):
    flags = _flags(tmp_path)
    assert update_symlink("", flags) is True
    assert os.readlink(flags.config_file_dst) == "/dev/null"


def test_update_config_reports_change(tmp_path):
    flags = _flags(tmp_path, default_config="a")
    _add_configs(flags, "a")
    assert update_config("", flags) is True
    assert update_config("", flags) is False
    assert os.path.realpath(flags.config_file_dst) == os.path.realpath(
        os.path.join(flags.config_file_srcdir, "a")
    )


def test_find_pid_to_signal_reads_cmdline(tmp_path):
    proc = tmp_path / "proc"
    (proc / "42").mkdir(parents=True)
    (proc / "42" / "cmdline").write_bytes(b"target\x00--flag\x00")
    assert find_pid_to_signal("target", str(proc)) == 42


def _fake_proc(tmp_path):
    proc = tmp_path / "proc"
    for pid, cmdline in (
        ("7", b""),
        ("12", b"other\x00x\x00"),
        ("30", b"target\x00"),
        ("9", b"target\x00a\x00"),
        ("self", b"target\x00"),
    ):
        (proc / pid).mkdir(parents=True)
        (proc / pid / "cmdline").write_bytes(cmdline)
    return proc


def test_find_pid_to_signal_lowest_match(tmp_path):
    proc = _fake_proc(tmp_path)
    assert find_pid_to_signal("target", str(proc)) == 9
    assert find_pid_to_signal("other", str(proc)) == 12


def test_find_pid_to_signal_not_found(tmp_path):
    proc = _fake_proc(tmp_path)
    with pytest.raises(ConfigManagerError, match="no process found"):
        find_pid_to_signal("absent", str(proc))


def test_signal_process_missing_process():
    flags = Flags(process_to_signal="no-such-process-for-config-manager-tests")
    with mock.patch("os.kill") as kill:
        with pytest.raises(ConfigManagerError, match="error finding pid"):
            signal_process(flags)
    assert kill.call_count == 0


def _clear_env(monkeypatch):
    for name in (
        "NODE_NAME", "NODE_LABEL", "CONFIG_FILE_SRCDIR", "CONFIG_FILE_DST", "KUBECONFIG",
        "ONESHOT", "SEND_SIGNAL", "SIGNAL", "DEFAULT_CONFIG", "FALLBACK_STRATEGIES",
    ):
        monkeypatch.delenv(name, raising=False)


def test_main_requires_node_name(monkeypatch):
    _clear_env(monkeypatch)
    assert main([]) == 1


def test_main_bad_kubeconfig(monkeypatch, tmp_path):
    _clear_env(monkeypatch)
    argv = [
        "--node-name", "node",
        "--config-file-srcdir", str(tmp_path),
        "--config-file-dst", str(tmp_path / "dst"),
        "--kubeconfig", str(tmp_path / "missing-kubeconfig"),
    ]
    assert main(argv) == 1


def test_main_rejects_bad_bool(monkeypatch):
    _clear_env(monkeypatch)
    with pytest.raises(SystemExit):
        main(["--oneshot=maybe"])