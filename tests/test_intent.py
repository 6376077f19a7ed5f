import pytest
from pydantic import ValidationError

from sysbox_cfg.config_doc import (
    DisableUsernsRemap,
    RegisterRuntime,
    SetAddressPool,
    SetBridgeIP,
    SetDefaultRuntime,
    SetImageStore,
    UnregisterRuntime,
)
from sysbox_cfg.intent import AddressPool, DockerCfgIntent, WorkerIntent


def test_edits_follow_fixed_order(cfg):
    intent = DockerCfgIntent(
        containerd_image_store=True,
        default_address_pool="172.31.0.0/16",
        bip="172.20.0.1/16",
        userns_remap="disable",
        default_runtime="sysbox-runc",
        sysbox_runtime="enable",
    )
    assert [type(e) for e in intent.edits(cfg)] == [
        RegisterRuntime,
        SetDefaultRuntime,
        DisableUsernsRemap,
        SetBridgeIP,
        SetAddressPool,
        SetImageStore,
    ]


def test_no_flags_no_edits(cfg):
    assert DockerCfgIntent().edits(cfg) == []


def test_disable_runtime_edit(cfg):
    assert DockerCfgIntent(sysbox_runtime="disable").edits(cfg) == [UnregisterRuntime("sysbox-runc")]


def test_runtime_path_comes_from_settings(cfg):
    from dataclasses import replace

    edits = DockerCfgIntent(sysbox_runtime="enable").edits(replace(cfg, sysbox_runc_path="/opt/sysbox-runc"))
    assert edits == [RegisterRuntime("sysbox-runc", "/opt/sysbox-runc")]


@pytest.mark.parametrize("bip", ["172.20.0.1", "not-an-ip/16", "300.1.1.1/16"])
def test_bad_bip_rejected(bip):
    with pytest.raises(ValidationError):
        DockerCfgIntent(bip=bip)


def test_address_pool_forms():
    assert AddressPool.parse("172.31.0.0/16") == AddressPool(base="172.31.0.0/16", size=24)
    assert AddressPool.parse("base=10.10.0.0/16,size=20") == AddressPool(base="10.10.0.0/16", size=20)


@pytest.mark.parametrize(
    "raw",
    ["172.31.0.1/16", "base=10.10.0.0/16,size=8", "base=10.10.0.0/16,size=40", "size=24", "base=10.0.0.0/8,color=red"],
)
def test_bad_address_pool_rejected(raw):
    with pytest.raises(ValidationError):
        DockerCfgIntent(default_address_pool=raw)


@pytest.mark.parametrize("name", ["-runc", "run c", "x" * 200])
def test_bad_default_runtime_rejected(name):
    with pytest.raises(ValidationError):
        DockerCfgIntent(default_runtime=name)


def test_bad_cgroup_driver_rejected():
    with pytest.raises(ValidationError):
        DockerCfgIntent(cgroup_driver="cgroupv3")


def test_worker_args_are_split():
    intent = WorkerIntent(action="restart", mgr_args="--log-level debug", fs_args="")
    assert intent.mgr_args == ["--log-level", "debug"]
    assert intent.fs_args == []


def test_worker_args_unbalanced_quotes_rejected():
    with pytest.raises(ValidationError):
        WorkerIntent(action="start", mgr_args="--label 'oops")
