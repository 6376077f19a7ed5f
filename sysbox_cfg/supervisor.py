"""Start/stop/restart/reload for the engine daemon and the sysbox workers.

Two environments are supported and chosen once per service by `probe`:

 - init-managed: systemd owns the process; launch arguments live on the
   unit's ExecStart= line.
 - manual: this tool forks the daemon itself, logs to a file and watches
   that file for a readiness marker.
"""
from __future__ import annotations

import logging
import os
import shlex
import signal
import subprocess
import time
from dataclasses import dataclass
from typing import Callable

from .config_doc import atomic_write_text
from .errors import SupervisorTransitionError
from .health import Runner, log_contains, process_absent, unit_active, unit_inactive
from .procs import find_pids, read_cmdline
from .retry import RetryPolicy, retry
from .runtime import Environment, ServiceState, ServiceStatus
from .settings import Settings, settings

logger = logging.getLogger(__name__)

Spawner = Callable[[list[str], str], None]
Killer = Callable[[int, int], None]
Sleeper = Callable[[float], None]


@dataclass(frozen=True)
class ServiceDescriptor:
    name: str  # process name as shown in the process table
    unit: str
    binary: str
    log_path: str
    ready_marker: str
    args: tuple[str, ...] = ()


def dockerd_service(cfg: Settings = settings) -> ServiceDescriptor:
    return ServiceDescriptor(
        name="dockerd",
        unit="docker.service",
        binary=cfg.dockerd_bin,
        log_path=cfg.dockerd_log_path,
        ready_marker="API listen on",
    )


def sysbox_mgr_service(cfg: Settings = settings) -> ServiceDescriptor:
    return ServiceDescriptor(
        name="sysbox-mgr",
        unit="sysbox-mgr.service",
        binary=cfg.sysbox_mgr_bin,
        log_path=cfg.sysbox_mgr_log,
        ready_marker="Ready",
    )


def sysbox_fs_service(cfg: Settings = settings) -> ServiceDescriptor:
    return ServiceDescriptor(
        name="sysbox-fs",
        unit="sysbox-fs.service",
        binary=cfg.sysbox_fs_bin,
        log_path=cfg.sysbox_fs_log,
        ready_marker="Ready",
    )


def run_cmd(cmd: list[str]) -> subprocess.CompletedProcess:
    try:
        return subprocess.run(cmd, capture_output=True, text=True, check=False)
    except OSError as e:
        # e.g. systemctl missing; report like a failed command
        return subprocess.CompletedProcess(cmd, 127, "", f"{type(e).__name__}: {e}")


def spawn_detached(argv: list[str], log_path: str) -> None:
    """Launch `argv` in its own session with stdout/stderr appended to `log_path`."""
    with open(log_path, "a", encoding="utf-8") as log:
        subprocess.Popen(
            argv,
            stdin=subprocess.DEVNULL,
            stdout=log,
            stderr=subprocess.STDOUT,
            start_new_session=True,
        )


def find_unit_file(unit: str, cfg: Settings = settings) -> str | None:
    for d in cfg.systemd_unit_dirs:
        p = os.path.join(d, unit)
        if os.path.isfile(p):
            return p
    return None


def _exec_start_index(lines: list[str]) -> int | None:
    # The last non-empty ExecStart= wins; a bare "ExecStart=" only resets.
    idx = None
    for i, line in enumerate(lines):
        key, sep, value = line.strip().partition("=")
        if sep and key.strip() == "ExecStart" and value.strip():
            idx = i
    return idx


def _read_lines(path: str) -> list[str]:
    with open(path, encoding="utf-8") as f:
        return f.read().splitlines(keepends=True)


def exec_start_argv(unit_path: str) -> list[str]:
    lines = _read_lines(unit_path)
    idx = _exec_start_index(lines)
    if idx is None:
        return []
    return shlex.split(lines[idx].split("=", 1)[1])


def running_argv(name: str, proc_root: str = "/proc") -> list[str]:
    for pid in find_pids(name, proc_root):
        argv = read_cmdline(pid, proc_root)
        if argv:
            return argv
    return []


def read_launch_args(service: ServiceDescriptor, cfg: Settings = settings) -> list[str]:
    """Current launch arguments of `service`, read from disk only.

    Same sources as the supervisors use, but nothing is executed, so it is
    safe for previews.
    """
    unit_path = find_unit_file(service.unit, cfg)
    if unit_path and os.path.isdir(cfg.systemd_run_dir):
        argv = exec_start_argv(unit_path)
    else:
        argv = running_argv(service.name, cfg.proc_root)
    return argv[1:] if argv else list(service.args)


def probe(
    service: ServiceDescriptor,
    cfg: Settings = settings,
    runner: Runner = run_cmd,
    spawn: Spawner = spawn_detached,
    kill: Killer = os.kill,
    sleep: Sleeper = time.sleep,
) -> "Supervisor":
    """Pick the control path for `service` and report its current state."""
    unit_path = find_unit_file(service.unit, cfg)
    sup: Supervisor
    if unit_path and os.path.isdir(cfg.systemd_run_dir):
        sup = SystemdSupervisor(service, unit_path, cfg=cfg, runner=runner, sleep=sleep)
    else:
        sup = ManualSupervisor(service, cfg=cfg, spawn=spawn, kill=kill, sleep=sleep)
    sup.refresh()
    logger.info("%s: %s environment, %s", service.name, sup.environment.value, sup.state.value)
    return sup


class Supervisor:
    """Uniform lifecycle operations over one service."""

    environment: Environment

    def __init__(self, service: ServiceDescriptor, cfg: Settings = settings, sleep: Sleeper = time.sleep) -> None:
        self.service = service
        self.cfg = cfg
        self.sleep = sleep
        self.status = ServiceStatus(name=service.name, environment=self.environment)

    @property
    def state(self) -> ServiceState:
        return self.status.state

    @property
    def start_policy(self) -> RetryPolicy:
        return RetryPolicy(self.cfg.start_attempts, self.cfg.start_delay_s)

    @property
    def stop_policy(self) -> RetryPolicy:
        return RetryPolicy(self.cfg.stop_attempts, self.cfg.stop_delay_s)

    def refresh(self) -> ServiceState:
        if self.is_running():
            self.status.move(ServiceState.READY, "running")
        else:
            self.status.move(ServiceState.STOPPED, "not running")
        return self.state

    def _fail(self, message: str, detail: str = "") -> SupervisorTransitionError:
        self.status.move(ServiceState.FAILED, message)
        logger.error("%s: %s", self.service.name, message)
        return SupervisorTransitionError(self.service.name, ServiceState.FAILED.value, message, detail)

    def _begin_start(self) -> None:
        if self.state == ServiceState.STARTING:
            raise SupervisorTransitionError(
                self.service.name, self.state.value, "start already in progress"
            )
        self.status.move(ServiceState.STARTING)

    def restart(self) -> None:
        self.stop()
        self.start()

    def is_running(self) -> bool:
        raise NotImplementedError

    def launch_args(self) -> list[str]:
        raise NotImplementedError

    def set_launch_args(self, args: list[str]) -> bool:
        """Record new launch arguments. Returns True if they differ."""
        raise NotImplementedError

    def start(self) -> None:
        raise NotImplementedError

    def stop(self) -> None:
        raise NotImplementedError

    def reload(self) -> None:
        raise NotImplementedError


class SystemdSupervisor(Supervisor):
    environment = Environment.INIT_MANAGED

    def __init__(
        self,
        service: ServiceDescriptor,
        unit_path: str,
        cfg: Settings = settings,
        runner: Runner = run_cmd,
        sleep: Sleeper = time.sleep,
    ) -> None:
        self.unit_path = unit_path
        self.runner = runner
        super().__init__(service, cfg=cfg, sleep=sleep)

    def is_running(self) -> bool:
        ok, _ = unit_active(self.service.unit, self.runner)
        return ok

    def launch_args(self) -> list[str]:
        argv = exec_start_argv(self.unit_path)
        if not argv:
            return list(self.service.args)
        return argv[1:]

    def set_launch_args(self, args: list[str]) -> bool:
        lines = _read_lines(self.unit_path)
        idx = _exec_start_index(lines)
        if idx is None:
            raise self._fail(f"No ExecStart= line in {self.unit_path}")
        old = shlex.split(lines[idx].split("=", 1)[1])
        argv0 = old[0] if old else self.service.binary
        if old[1:] == list(args):
            return False
        ending = "\n" if lines[idx].endswith("\n") else ""
        lines[idx] = "ExecStart=" + shlex.join([argv0, *args]) + ending
        atomic_write_text(self.unit_path, "".join(lines))
        logger.info("Updated ExecStart in %s", self.unit_path)
        # A later plain "systemctl start" must not use the cached definition.
        res = self.runner(["systemctl", "daemon-reload"])
        if res.returncode != 0:
            raise self._fail("systemctl daemon-reload failed", res.stderr or "")
        return True

    def _journal_tail(self) -> str:
        res = self.runner(["journalctl", "-u", self.service.unit, "-n", "50", "--no-pager"])
        return res.stdout or res.stderr or ""

    def start(self) -> None:
        self._begin_start()
        res = self.runner(["systemctl", "daemon-reload"])
        if res.returncode != 0:
            raise self._fail("systemctl daemon-reload failed", res.stderr or "")
        res = self.runner(["systemctl", "restart", self.service.unit])
        if res.returncode != 0:
            raise self._fail(f"systemctl restart {self.service.unit} failed", self._journal_tail())
        result = retry(lambda: unit_active(self.service.unit, self.runner), self.start_policy, self.sleep)
        if not result.ok:
            raise self._fail(
                f"{self.service.unit} not active after {result.attempts} checks ({result.detail})",
                self._journal_tail(),
            )
        self.status.move(ServiceState.READY, "active")
        logger.info("%s: ready", self.service.name)

    def restart(self) -> None:
        # systemctl restart already stops the unit first.
        self.start()

    def stop(self) -> None:
        res = self.runner(["systemctl", "stop", self.service.unit])
        if res.returncode != 0:
            raise self._fail(f"systemctl stop {self.service.unit} failed", res.stderr or "")
        result = retry(lambda: unit_inactive(self.service.unit, self.runner), self.stop_policy, self.sleep)
        if not result.ok:
            raise self._fail(f"{self.service.unit} still {result.detail} after stop")
        self.status.move(ServiceState.STOPPED)
        logger.info("%s: stopped", self.service.name)

    def reload(self) -> None:
        res = self.runner(["systemctl", "reload", self.service.unit])
        if res.returncode != 0:
            raise SupervisorTransitionError(
                self.service.name, self.state.value, f"systemctl reload {self.service.unit} failed", res.stderr or ""
            )
        logger.info("%s: reloaded", self.service.name)


class ManualSupervisor(Supervisor):
    environment = Environment.MANUAL

    def __init__(
        self,
        service: ServiceDescriptor,
        cfg: Settings = settings,
        spawn: Spawner = spawn_detached,
        kill: Killer = os.kill,
        sleep: Sleeper = time.sleep,
    ) -> None:
        self.spawn = spawn
        self.kill = kill
        self._args: list[str] | None = None
        super().__init__(service, cfg=cfg, sleep=sleep)

    def pids(self) -> list[int]:
        return find_pids(self.service.name, self.cfg.proc_root)

    def is_running(self) -> bool:
        return bool(self.pids())

    def launch_args(self) -> list[str]:
        if self._args is not None:
            return list(self._args)
        argv = running_argv(self.service.name, self.cfg.proc_root)
        if argv:
            return argv[1:]
        return list(self.service.args)

    def set_launch_args(self, args: list[str]) -> bool:
        changed = list(args) != self.launch_args()
        self._args = list(args)
        return changed

    def _read_log(self) -> str:
        try:
            with open(self.service.log_path, encoding="utf-8", errors="replace") as f:
                return f.read()
        except OSError:
            return ""

    def start(self) -> None:
        argv = [self.service.binary, *self.launch_args()]
        self._begin_start()
        try:
            # a stale marker from an earlier run must not count
            open(self.service.log_path, "w").close()
            self.spawn(argv, self.service.log_path)
        except OSError as e:
            raise self._fail(f"cannot launch {shlex.join(argv)}: {e}")
        logger.info("%s: launched %s", self.service.name, shlex.join(argv))
        result = retry(
            lambda: log_contains(self.service.log_path, self.service.ready_marker),
            self.start_policy,
            self.sleep,
        )
        if not result.ok:
            raise self._fail(
                f"not ready after {result.attempts} checks of {self.service.log_path}",
                self._read_log(),
            )
        self.status.move(ServiceState.READY, "ready marker seen")
        logger.info("%s: ready", self.service.name)

    def restart(self) -> None:
        # The command line is only readable while the process is alive.
        self._args = self.launch_args()
        super().restart()

    def stop(self) -> None:
        pids = self.pids()
        if not pids:
            self.status.move(ServiceState.STOPPED, "not running")
            return
        for pid in pids:
            try:
                self.kill(pid, signal.SIGTERM)
            except ProcessLookupError:
                continue
            except OSError as e:
                raise self._fail(f"cannot signal pid {pid}: {e}") from e
        result = retry(lambda: process_absent(self.service.name, self.cfg.proc_root), self.stop_policy, self.sleep)
        if not result.ok:
            raise self._fail(f"did not stop: {result.detail}")
        self.status.move(ServiceState.STOPPED)
        logger.info("%s: stopped", self.service.name)

    def reload(self) -> None:
        pids = self.pids()
        if not pids:
            raise SupervisorTransitionError(self.service.name, self.state.value, "not running, cannot reload")
        for pid in pids:
            try:
                self.kill(pid, signal.SIGHUP)
            except ProcessLookupError:
                continue
            except OSError as e:
                raise SupervisorTransitionError(
                    self.service.name, self.state.value, f"cannot signal pid {pid}: {e}"
                ) from e
        logger.info("%s: sent SIGHUP to %s", self.service.name, ", ".join(str(p) for p in pids))
