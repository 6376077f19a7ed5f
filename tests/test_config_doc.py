import json
import os
import stat

import pytest

from sysbox_cfg import config_doc
from sysbox_cfg.config_doc import (
    DisableUsernsRemap,
    EnableUsernsRemap,
    RegisterRuntime,
    SetAddressPool,
    SetBridgeIP,
    SetDefaultRuntime,
    SetImageStore,
    UnregisterRuntime,
    apply_all,
    cgroup_driver,
    set_cgroup_driver,
)
from sysbox_cfg.errors import ConfigReadError, ConfigWriteError

SYSBOX = RegisterRuntime("sysbox-runc", "/usr/bin/sysbox-runc")


def test_load_missing_file_is_empty_document(tmp_path):
    assert config_doc.load(str(tmp_path / "nope.json")) == {}


def test_load_blank_file_is_empty_document(tmp_path):
    p = tmp_path / "daemon.json"
    p.write_text("  \n")
    assert config_doc.load(str(p)) == {}


@pytest.mark.parametrize("text", ["{not json", "[1, 2]", '"string"'])
def test_load_rejects_non_object(tmp_path, text):
    p = tmp_path / "daemon.json"
    p.write_text(text)
    with pytest.raises(ConfigReadError):
        config_doc.load(str(p))


def test_register_runtime_on_empty_document():
    doc, applied = apply_all({}, [SYSBOX])
    assert doc == {"runtimes": {"sysbox-runc": {"path": "/usr/bin/sysbox-runc"}}}
    assert applied == [SYSBOX]


def test_register_runtime_is_idempotent_and_keeps_others():
    start = {"runtimes": {"nvidia": {"path": "/usr/bin/nvidia-container-runtime"}}}
    once, applied1 = apply_all(start, [SYSBOX])
    twice, applied2 = apply_all(once, [SYSBOX])
    assert applied1 == [SYSBOX]
    assert applied2 == []
    assert twice == once
    assert set(twice["runtimes"]) == {"nvidia", "sysbox-runc"}


def test_register_runtime_replaces_stale_path():
    start = {"runtimes": {"sysbox-runc": {"path": "/opt/old/sysbox-runc"}}}
    doc, applied = apply_all(start, [SYSBOX])
    assert doc["runtimes"]["sysbox-runc"] == {"path": "/usr/bin/sysbox-runc"}
    assert applied == [SYSBOX]


def test_register_runtime_keeps_operator_keys():
    start = {"runtimes": {"sysbox-runc": {"path": "/usr/bin/sysbox-runc", "runtimeArgs": ["--no-kernel-check"]}}}
    doc, applied = apply_all(start, [SYSBOX])
    assert doc == start
    assert applied == []

    stale = {"runtimes": {"sysbox-runc": {"path": "/opt/old/sysbox-runc", "runtimeArgs": ["--no-kernel-check"]}}}
    doc, applied = apply_all(stale, [SYSBOX])
    assert doc["runtimes"]["sysbox-runc"] == {"path": "/usr/bin/sysbox-runc", "runtimeArgs": ["--no-kernel-check"]}
    assert applied == [SYSBOX]


def test_unregister_runtime_drops_dangling_default():
    start = {
        "runtimes": {"sysbox-runc": {"path": "/usr/bin/sysbox-runc"}},
        "default-runtime": "sysbox-runc",
        "log-level": "info",
    }
    doc, applied = apply_all(start, [UnregisterRuntime("sysbox-runc")])
    assert doc == {"log-level": "info"}
    assert len(applied) == 1


def test_unregister_absent_runtime_is_noop():
    start = {"runtimes": {"nvidia": {"path": "/x"}}}
    doc, applied = apply_all(start, [UnregisterRuntime("sysbox-runc")])
    assert doc == start
    assert applied == []


def test_userns_enable_keeps_operator_value():
    start = {"userns-remap": "dockremap"}
    doc, applied = apply_all(start, [EnableUsernsRemap("sysbox")])
    assert doc == start
    assert applied == []


@pytest.mark.parametrize("start", [{}, {"userns-remap": ""}])
def test_userns_enable_sets_when_absent_or_empty(start):
    doc, applied = apply_all(start, [EnableUsernsRemap("sysbox")])
    assert doc["userns-remap"] == "sysbox"
    assert len(applied) == 1


def test_userns_disable():
    doc, applied = apply_all({"userns-remap": "sysbox"}, [DisableUsernsRemap()])
    assert doc == {}
    assert len(applied) == 1
    _, applied = apply_all(doc, [DisableUsernsRemap()])
    assert applied == []


def test_image_store_keeps_other_features():
    start = {"features": {"buildkit": True}}
    doc, _ = apply_all(start, [SetImageStore(True)])
    assert doc["features"] == {"buildkit": True, "containerd-snapshotter": True}
    doc, applied = apply_all(doc, [SetImageStore(False)])
    assert doc["features"]["containerd-snapshotter"] is False
    assert len(applied) == 1


def test_address_pool_replaces_list():
    start = {"default-address-pools": [{"base": "10.0.0.0/8", "size": 24}, {"base": "192.168.0.0/16", "size": 24}]}
    doc, _ = apply_all(start, [SetAddressPool("172.31.0.0/16", 24)])
    assert doc["default-address-pools"] == [{"base": "172.31.0.0/16", "size": 24}]


def test_edits_do_not_mutate_input():
    start = {"runtimes": {"nvidia": {"path": "/x"}}, "features": {}}
    snapshot = json.loads(json.dumps(start))
    apply_all(start, [SYSBOX, SetImageStore(True), SetDefaultRuntime("sysbox-runc")])
    assert start == snapshot


def test_disjoint_edits_are_order_independent():
    edits = [SYSBOX, SetBridgeIP("172.20.0.1/16"), EnableUsernsRemap("sysbox"), SetImageStore(True)]
    a, _ = apply_all({}, edits)
    b, _ = apply_all({}, list(reversed(edits)))
    assert a == b


def test_same_key_last_edit_wins():
    doc, applied = apply_all({}, [SetBridgeIP("172.20.0.1/16"), SetBridgeIP("172.30.0.1/16")])
    assert doc["bip"] == "172.30.0.1/16"
    assert len(applied) == 2


def test_commit_writes_rendered_document(tmp_path):
    path = tmp_path / "etc" / "docker" / "daemon.json"
    doc = {"bip": "172.20.0.1/16"}
    config_doc.commit(doc, str(path))
    assert path.read_text() == '{\n  "bip": "172.20.0.1/16"\n}\n'
    assert stat.S_IMODE(os.stat(path).st_mode) == 0o644


def test_commit_keeps_existing_mode(tmp_path):
    path = tmp_path / "daemon.json"
    path.write_text("{}")
    os.chmod(path, 0o600)
    config_doc.commit({"a": 1}, str(path))
    assert stat.S_IMODE(os.stat(path).st_mode) == 0o600


def test_commit_dry_run_does_not_touch_disk(tmp_path):
    path = tmp_path / "daemon.json"
    config_doc.commit({"a": 1}, str(path), dry_run=True)
    assert not path.exists()


def test_crash_before_rename_leaves_prior_document(tmp_path, monkeypatch):
    path = tmp_path / "daemon.json"
    path.write_text('{"bip": "10.1.0.1/16"}\n')

    def boom(src, dst):
        raise OSError("simulated crash")

    monkeypatch.setattr(config_doc.os, "replace", boom)
    with pytest.raises(ConfigWriteError):
        config_doc.commit({"bip": "172.20.0.1/16"}, str(path))

    assert path.read_text() == '{"bip": "10.1.0.1/16"}\n'
    assert os.listdir(tmp_path) == ["daemon.json"]


def test_cgroup_driver_added_when_missing():
    args = ["-H", "fd://", "--containerd=/run/containerd/containerd.sock"]
    out = set_cgroup_driver(args, "systemd")
    assert out == args + ["--exec-opt", "native.cgroupdriver=systemd"]
    assert cgroup_driver(out) == "systemd"


@pytest.mark.parametrize(
    "args",
    [
        ["--exec-opt", "native.cgroupdriver=cgroupfs", "--debug"],
        ["--exec-opt=native.cgroupdriver=cgroupfs", "--debug"],
    ],
)
def test_cgroup_driver_replaces_existing(args):
    out = set_cgroup_driver(args, "systemd")
    assert out == ["--debug", "--exec-opt", "native.cgroupdriver=systemd"]


def test_cgroup_driver_keeps_other_exec_opts_and_is_stable():
    args = ["--exec-opt", "native.umask=normal", "--exec-opt", "native.cgroupdriver=cgroupfs"]
    assert set_cgroup_driver(args, "cgroupfs") == args
    out = set_cgroup_driver(args, "systemd")
    assert out[:2] == ["--exec-opt", "native.umask=normal"]
    assert cgroup_driver(out) == "systemd"
