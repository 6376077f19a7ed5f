from __future__ import annotations

import argparse
import json
import logging
import os
import sys

from pydantic import ValidationError

from sysbox_cfg import config_doc, db
from sysbox_cfg.errors import PreconditionError, ReconcileError, SupervisorTransitionError
from sysbox_cfg.intent import DockerCfgIntent, WorkerIntent
from sysbox_cfg.reconciler import Outcome, Reconciler, WorkerReconciler
from sysbox_cfg.settings import settings


def _print(obj) -> None:
    print(json.dumps(obj, indent=2, ensure_ascii=False))


def _setup_logging(verbose: bool) -> None:
    logging.basicConfig(
        level=logging.INFO if verbose else logging.WARNING,
        format="%(message)s",
        stream=sys.stderr,
        force=True,
    )


def _require_root() -> None:
    if os.geteuid() != 0:
        raise PreconditionError("This command must be run as root.")


def _report(err: ReconcileError) -> int:
    print(f"ERROR: {err}", file=sys.stderr)
    if isinstance(err, SupervisorTransitionError) and err.detail:
        print(err.detail, file=sys.stderr, end="" if err.detail.endswith("\n") else "\n")
    return 1


def _validation_message(e: ValidationError) -> str:
    parts = []
    for item in e.errors():
        loc = ".".join(str(x) for x in item["loc"]) or "value"
        parts.append(f"{loc.replace('_', '-')}: {item['msg']}")
    return "Invalid option value: " + "; ".join(parts)


class _Parser(argparse.ArgumentParser):
    # malformed invocation exits 1
    def error(self, message: str):
        self.print_usage(sys.stderr)
        self.exit(1, f"{self.prog}: error: {message}\n")


def build_docker_cfg_parser() -> argparse.ArgumentParser:
    p = _Parser(
        prog="docker-cfg",
        description="Configure the docker engine for the sysbox runtime and apply the change.",
    )
    p.add_argument("--sysbox-runtime", choices=["enable", "disable"], help="Register or remove sysbox-runc")
    p.add_argument("--userns-remap", choices=["enable", "disable"], help="Toggle userns-remap")
    p.add_argument("--default-runtime", metavar="NAME", help="Set the engine's default runtime")
    p.add_argument(
        "--containerd-image-store",
        choices=["true", "false"],
        help="Toggle the containerd image store (features.containerd-snapshotter)",
    )
    p.add_argument("--bip", metavar="CIDR", help="Bridge IP, e.g. 172.20.0.1/16")
    p.add_argument(
        "--default-address-pool",
        metavar="CIDR",
        help="Address pool for networks: <cidr> or base=<cidr>,size=<n>",
    )
    p.add_argument("--cgroup-driver", choices=["cgroupfs", "systemd"], help="Engine cgroup driver")
    p.add_argument("-c", "--config-only", action="store_true", help="Only write the configuration")
    p.add_argument("-f", "--force-restart", action="store_true", help="Restart the engine even if not needed")
    p.add_argument("--dry-run", action="store_true", help="Show the resulting configuration without applying it")
    p.add_argument("-v", "--verbose", action="store_true")
    return p


def main(argv: list[str] | None = None) -> int:
    """docker-cfg entry point."""
    args = build_docker_cfg_parser().parse_args(argv)
    _setup_logging(args.verbose)

    try:
        _require_root()
        try:
            intent = DockerCfgIntent(
                sysbox_runtime=args.sysbox_runtime,
                userns_remap=args.userns_remap,
                default_runtime=args.default_runtime,
                containerd_image_store=None if args.containerd_image_store is None else args.containerd_image_store == "true",
                bip=args.bip,
                default_address_pool=args.default_address_pool,
                cgroup_driver=args.cgroup_driver,
                config_only=args.config_only,
                force_restart=args.force_restart,
                dry_run=args.dry_run,
            )
        except ValidationError as e:
            raise PreconditionError(_validation_message(e)) from e

        db.init_db()
        result = Reconciler(settings).run(intent)
    except ReconcileError as e:
        return _report(e)

    if result.outcome == Outcome.DRY_RUN:
        print(config_doc.render(result.document), end="")
        if result.launch_args is not None:
            print(f"dockerd arguments: {result.summary()['launch_args']}", file=sys.stderr)
    elif result.outcome == Outcome.GUARD_REFUSED:
        print(result.guidance)
    elif args.verbose:
        _print({k: v for k, v in result.summary().items() if k != "document"})
    return 0


def _show_journal(kind: str, limit: int) -> int:
    if not db.journal_enabled():
        return _report(PreconditionError("Run journal is disabled; set SYSBOX_CFG_JOURNAL to a file or directory."))
    db.init_db()
    _print(db.latest_events(limit) if kind == "events" else db.latest_runs(limit))
    return 0


def sysbox_main(argv: list[str] | None = None) -> int:
    """sysbox entry point: lifecycle of sysbox-mgr and sysbox-fs."""
    p = _Parser(prog="sysbox", description="Start, stop or restart the sysbox daemons")
    p.add_argument("action", choices=["start", "stop", "restart", "status", "events", "runs"])
    p.add_argument("--mgr-args", metavar="ARGS", help="Command line arguments for sysbox-mgr")
    p.add_argument("--fs-args", metavar="ARGS", help="Command line arguments for sysbox-fs")
    p.add_argument("--limit", type=int, default=20, help="Journal entries to show (events, runs)")
    p.add_argument("-v", "--verbose", action="store_true")
    args = p.parse_args(argv)
    _setup_logging(args.verbose)

    if args.action in ("events", "runs"):
        return _show_journal(args.action, args.limit)

    try:
        _require_root()
        try:
            intent = WorkerIntent(action=args.action, mgr_args=args.mgr_args, fs_args=args.fs_args)
        except ValidationError as e:
            raise PreconditionError(_validation_message(e)) from e

        db.init_db()
        status = WorkerReconciler(settings).run(intent)
    except ReconcileError as e:
        return _report(e)

    if args.action == "status" or args.verbose:
        _print(status)
    return 0


if __name__ == "__main__":
    raise SystemExit(main(sys.argv[1:]))
