import os
import subprocess
import sys
from dataclasses import replace

import pytest

# Ensure project root is importable (so `import cli` works without installing)
_project_root = os.path.dirname(os.path.dirname(__file__))
if _project_root not in sys.path:
    sys.path.insert(0, _project_root)

from sysbox_cfg.settings import Settings  # noqa: E402


class FakeProc:
    """A fake /proc tree: <root>/<pid>/comm and <root>/<pid>/cmdline."""

    def __init__(self, root):
        self.root = root
        os.makedirs(root, exist_ok=True)

    def add(self, pid, name, argv=None):
        d = os.path.join(self.root, str(pid))
        os.makedirs(d, exist_ok=True)
        with open(os.path.join(d, "comm"), "w") as f:
            f.write(name + "\n")
        with open(os.path.join(d, "cmdline"), "wb") as f:
            f.write(b"\0".join(a.encode() for a in (argv or [name])) + b"\0")

    def remove(self, pid):
        d = os.path.join(self.root, str(pid))
        for name in os.listdir(d):
            os.unlink(os.path.join(d, name))
        os.rmdir(d)

    def pids(self):
        return sorted(int(x) for x in os.listdir(self.root) if x.isdigit())


class FakeRunner:
    """Records commands; emulates systemctl for a set of units."""

    def __init__(self, active=()):
        self.calls = []
        self.active = set(active)
        self.failing = set()  # e.g. {("systemctl", "restart")}
        self.stuck = set()  # units that ignore stop

    def __call__(self, cmd):
        self.calls.append(list(cmd))
        if tuple(cmd[:2]) in self.failing:
            return subprocess.CompletedProcess(cmd, 1, "", f"{cmd[1]} failed\n")
        if cmd[0] == "journalctl":
            return subprocess.CompletedProcess(cmd, 0, "journal tail\n", "")
        if cmd[:2] == ["systemctl", "is-active"]:
            if cmd[2] in self.active:
                return subprocess.CompletedProcess(cmd, 0, "active\n", "")
            return subprocess.CompletedProcess(cmd, 3, "inactive\n", "")
        if cmd[:2] in (["systemctl", "restart"], ["systemctl", "start"]):
            self.active.add(cmd[2])
        if cmd[:2] == ["systemctl", "stop"] and cmd[2] not in self.stuck:
            self.active.discard(cmd[2])
        return subprocess.CompletedProcess(cmd, 0, "", "")

    def commands(self):
        return [" ".join(c) for c in self.calls]


@pytest.fixture
def cfg(tmp_path):
    return replace(
        Settings(),
        docker_config_path=str(tmp_path / "etc" / "docker" / "daemon.json"),
        dockerd_bin="/usr/bin/dockerd",
        dockerd_log_path=str(tmp_path / "dockerd.log"),
        sysbox_runc_path="/usr/bin/sysbox-runc",
        userns_remap_user="sysbox",
        sysbox_mgr_bin="/usr/bin/sysbox-mgr",
        sysbox_fs_bin="/usr/bin/sysbox-fs",
        sysbox_mgr_log=str(tmp_path / "sysbox-mgr.log"),
        sysbox_fs_log=str(tmp_path / "sysbox-fs.log"),
        systemd_run_dir=str(tmp_path / "run" / "systemd" / "system"),
        systemd_unit_dirs=(str(tmp_path / "units"),),
        proc_root=str(tmp_path / "proc"),
        start_attempts=4,
        start_delay_s=0.5,
        stop_attempts=3,
        stop_delay_s=0.25,
        journal_path="",
    )


@pytest.fixture
def fake_proc(cfg):
    return FakeProc(cfg.proc_root)


@pytest.fixture
def runner():
    return FakeRunner()


@pytest.fixture
def sleeps():
    """A sleep replacement that records requested delays."""
    calls = []

    def _sleep(s):
        calls.append(s)

    _sleep.calls = calls
    return _sleep
