from __future__ import annotations

import shlex
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable

from . import config_doc, db
from .classifier import Category, Verdict, categorize, decide
from .config_doc import Document, Edit
from .docker_ops import ContainerRef, list_containers
from .errors import PreconditionError
from .intent import BUILTIN_RUNTIMES, DockerCfgIntent, WorkerIntent
from .runtime import Environment
from .settings import Settings, settings
from .supervisor import (
    ServiceDescriptor,
    Supervisor,
    dockerd_service,
    probe,
    read_launch_args,
    sysbox_fs_service,
    sysbox_mgr_service,
)

SupervisorFactory = Callable[[ServiceDescriptor], Supervisor]

GUIDANCE = (
    "The docker engine has existing containers; restarting it now would disrupt them.\n"
    "Remove them first (e.g. 'docker rm -f $(docker ps -aq)') and run this command again,\n"
    "or pass --force-restart to restart the engine anyway."
)


class Outcome(str, Enum):
    DRY_RUN = "dry-run"
    CONFIG_ONLY = "config-only"
    UNCHANGED = "unchanged"
    DAEMON_ABSENT = "daemon-absent"
    RELOADED = "reloaded"
    RESTARTED = "restarted"
    GUARD_REFUSED = "guard-refused"


@dataclass
class ReconcileResult:
    verdict: Verdict
    outcome: Outcome
    document: Document
    applied: list[Edit] = field(default_factory=list)
    categories: set[Category] = field(default_factory=set)
    launch_args: list[str] | None = None
    guidance: str | None = None

    def summary(self) -> dict[str, Any]:
        out: dict[str, Any] = {
            "verdict": self.verdict.value,
            "outcome": self.outcome.value,
            "changes": [e.describe() for e in self.applied],
            "document": self.document,
        }
        if self.launch_args is not None:
            out["launch_args"] = shlex.join(self.launch_args)
        return out


class Reconciler:
    """One docker-cfg run: mutate the engine config, then apply it to the engine.

    Steps: load -> edit -> classify -> (guard) -> commit -> none | reload | restart.
    Nothing is written before the guard has had its say, so a refusal leaves
    both the document and the engine untouched.
    """

    def __init__(
        self,
        cfg: Settings = settings,
        supervisor_factory: SupervisorFactory | None = None,
        containers: Callable[[], list[ContainerRef]] = list_containers,
    ) -> None:
        self.cfg = cfg
        self.supervisor_factory = supervisor_factory or (lambda svc: probe(svc, cfg))
        self.containers = containers
        self._engine: Supervisor | None = None

    def engine(self) -> Supervisor:
        if self._engine is None:
            self._engine = self.supervisor_factory(dockerd_service(self.cfg))
        return self._engine

    def run(self, intent: DockerCfgIntent) -> ReconcileResult:
        path = self.cfg.docker_config_path
        old = config_doc.load(path)
        new, applied = config_doc.apply_all(old, intent.edits(self.cfg))
        if intent.default_runtime is not None:
            self._check_default_runtime(new)

        launch_args: list[str] | None = None
        cgroup_changed = False
        if intent.cgroup_driver is not None:
            if intent.dry_run:
                current = read_launch_args(dockerd_service(self.cfg), self.cfg)
            else:
                current = self.engine().launch_args()
            wanted = config_doc.set_cgroup_driver(current, intent.cgroup_driver)
            cgroup_changed = wanted != current
            if cgroup_changed:
                launch_args = wanted
                db.log_event("INFO", f"Cgroup driver -> {intent.cgroup_driver}", service_name="dockerd")

        categories = categorize(applied, cgroup_changed)
        verdict = decide(categories, force=intent.force_restart)
        db.log_event(
            "INFO",
            f"Changed categories: {', '.join(sorted(c.value for c in categories)) or 'none'}; verdict {verdict.value}",
        )

        def result(outcome: Outcome, guidance: str | None = None) -> ReconcileResult:
            res = ReconcileResult(
                verdict=verdict,
                outcome=outcome,
                document=new,
                applied=applied,
                categories=categories,
                launch_args=launch_args,
                guidance=guidance,
            )
            db.record_run("docker-cfg", verdict.value, [c.value for c in categories], outcome.value, intent.dry_run)
            return res

        if intent.dry_run:
            return result(Outcome.DRY_RUN)

        if intent.config_only:
            config_doc.commit(new, path)
            if launch_args is not None:
                self._persist_launch_args(launch_args)
            return result(Outcome.CONFIG_ONLY)

        if verdict == Verdict.NONE:
            config_doc.commit(new, path)
            return result(Outcome.UNCHANGED)

        engine = self.engine()
        running = engine.is_running()

        if verdict == Verdict.FULL_RESTART and running and not intent.force_restart:
            existing = self.containers()
            if existing:
                db.log_event("WARN", f"Restart refused: {len(existing)} container(s) present", service_name="dockerd")
                return result(Outcome.GUARD_REFUSED, GUIDANCE)

        config_doc.commit(new, path)

        if not running:
            if launch_args is not None:
                self._persist_launch_args(launch_args)
            db.log_event("INFO", "Engine not running; configuration will apply on next start", service_name="dockerd")
            return result(Outcome.DAEMON_ABSENT)

        if verdict == Verdict.SIGNAL_ONLY:
            engine.reload()
            db.log_event("INFO", "Engine reloaded", service_name="dockerd")
            return result(Outcome.RELOADED)

        if launch_args is not None:
            engine.set_launch_args(launch_args)
        engine.restart()
        db.log_event("INFO", "Engine restarted", service_name="dockerd")
        return result(Outcome.RESTARTED)

    def _persist_launch_args(self, args: list[str]) -> None:
        engine = self.engine()
        if engine.set_launch_args(args) and engine.environment != Environment.INIT_MANAGED:
            db.log_event(
                "WARN",
                "Manual environment: the new engine command line only takes effect when this tool restarts the engine",
                service_name="dockerd",
            )

    @staticmethod
    def _check_default_runtime(doc: Document) -> None:
        name = doc.get("default-runtime")
        # containerd shims (io.containerd.<name>.<version>) need no runtimes entry.
        if not name or name in BUILTIN_RUNTIMES or name.startswith("io.containerd."):
            return
        runtimes = doc.get("runtimes")
        if isinstance(runtimes, dict) and name in runtimes:
            return
        raise PreconditionError(
            f"default-runtime '{name}' is not a registered runtime; register it first (e.g. --sysbox-runtime=enable)."
        )


class WorkerReconciler:
    """Lifecycle of the two sysbox worker daemons.

    Start order is manager then filesystem daemon, each gated by its own
    readiness poll; stop order is the reverse.
    """

    def __init__(self, cfg: Settings = settings, supervisor_factory: SupervisorFactory | None = None) -> None:
        self.cfg = cfg
        self.supervisor_factory = supervisor_factory or (lambda svc: probe(svc, cfg))
        self._mgr: Supervisor | None = None
        self._fs: Supervisor | None = None

    @property
    def mgr(self) -> Supervisor:
        if self._mgr is None:
            self._mgr = self.supervisor_factory(sysbox_mgr_service(self.cfg))
        return self._mgr

    @property
    def fs(self) -> Supervisor:
        if self._fs is None:
            self._fs = self.supervisor_factory(sysbox_fs_service(self.cfg))
        return self._fs

    def run(self, intent: WorkerIntent) -> dict[str, Any]:
        has_args = intent.mgr_args is not None or intent.fs_args is not None
        if has_args and intent.action not in ("start", "restart"):
            raise PreconditionError(f"--mgr-args/--fs-args only apply to start and restart, not {intent.action}.")
        if intent.mgr_args is not None:
            self.mgr.set_launch_args(intent.mgr_args)
        if intent.fs_args is not None:
            self.fs.set_launch_args(intent.fs_args)

        if intent.action == "start":
            self.start()
        elif intent.action == "stop":
            self.stop()
        elif intent.action == "restart":
            self.restart()
        status = self.status()
        db.record_run(f"sysbox {intent.action}", None, [], intent.action, False)
        return status

    def start(self) -> None:
        for sup in (self.mgr, self.fs):
            if sup.is_running():
                db.log_event("INFO", "already running", service_name=sup.service.name)
                continue
            sup.start()
            db.log_event("INFO", "started", service_name=sup.service.name)

    def stop(self) -> None:
        for sup in (self.fs, self.mgr):
            sup.stop()
            db.log_event("INFO", "stopped", service_name=sup.service.name)

    def restart(self) -> None:
        # Launch lines are captured while the daemons are still up.
        for sup in (self.mgr, self.fs):
            sup.set_launch_args(sup.launch_args())
        self.stop()
        for sup in (self.mgr, self.fs):
            sup.start()
            db.log_event("INFO", "started", service_name=sup.service.name)

    def status(self) -> dict[str, Any]:
        out: dict[str, Any] = {}
        for sup in (self.mgr, self.fs):
            sup.refresh()
            out[sup.service.name] = {
                "environment": sup.environment.value,
                "state": sup.state.value,
                "launch_args": shlex.join(sup.launch_args()),
            }
        return out
