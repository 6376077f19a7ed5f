from __future__ import annotations

import os
from dataclasses import dataclass


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        return int(raw)
    except ValueError:
        return default


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        return float(raw)
    except ValueError:
        return default


def _env_paths(name: str, default: tuple[str, ...]) -> tuple[str, ...]:
    raw = os.getenv(name)
    if not raw:
        return default
    return tuple(p for p in raw.split(":") if p)


@dataclass(frozen=True)
class Settings:
    # Container engine
    docker_config_path: str = os.getenv("SYSBOX_CFG_DOCKER_CONFIG", "/etc/docker/daemon.json")
    dockerd_bin: str = os.getenv("SYSBOX_CFG_DOCKERD_BIN", "/usr/bin/dockerd")
    dockerd_log_path: str = os.getenv("SYSBOX_CFG_DOCKERD_LOG", "/var/log/dockerd.log")

    # Sysbox runtime
    sysbox_runc_path: str = os.getenv("SYSBOX_CFG_RUNC_PATH", "/usr/bin/sysbox-runc")
    userns_remap_user: str = os.getenv("SYSBOX_CFG_USERNS_USER", "sysbox")
    sysbox_mgr_bin: str = os.getenv("SYSBOX_CFG_MGR_BIN", "/usr/bin/sysbox-mgr")
    sysbox_fs_bin: str = os.getenv("SYSBOX_CFG_FS_BIN", "/usr/bin/sysbox-fs")
    sysbox_mgr_log: str = os.getenv("SYSBOX_CFG_MGR_LOG", "/var/log/sysbox-mgr.log")
    sysbox_fs_log: str = os.getenv("SYSBOX_CFG_FS_LOG", "/var/log/sysbox-fs.log")

    # Host inspection
    systemd_run_dir: str = os.getenv("SYSBOX_CFG_SYSTEMD_RUN_DIR", "/run/systemd/system")
    systemd_unit_dirs: tuple[str, ...] = _env_paths(
        "SYSBOX_CFG_UNIT_DIRS",
        ("/etc/systemd/system", "/lib/systemd/system", "/usr/lib/systemd/system"),
    )
    proc_root: str = os.getenv("SYSBOX_CFG_PROC_ROOT", "/proc")

    # Retry budgets
    start_attempts: int = _env_int("SYSBOX_CFG_START_ATTEMPTS", 30)
    start_delay_s: float = _env_float("SYSBOX_CFG_START_DELAY_S", 1.0)
    stop_attempts: int = _env_int("SYSBOX_CFG_STOP_ATTEMPTS", 20)
    stop_delay_s: float = _env_float("SYSBOX_CFG_STOP_DELAY_S", 0.5)

    # Run journal (optional). Empty path disables it.
    journal_path: str = os.getenv("SYSBOX_CFG_JOURNAL", "")


settings = Settings()
