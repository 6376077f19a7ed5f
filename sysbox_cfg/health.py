from __future__ import annotations

import subprocess
from typing import Callable

from .procs import find_pids

Runner = Callable[[list[str]], subprocess.CompletedProcess]


def log_contains(path: str, marker: str) -> tuple[bool, str]:
    """Readiness check for manually launched daemons.

    Returns (is_ready, message).
    """
    try:
        with open(path, encoding="utf-8", errors="replace") as f:
            text = f.read()
    except FileNotFoundError:
        return False, f"{path} does not exist yet"
    except OSError as e:
        return False, f"Error: {type(e).__name__}: {e}"
    if marker in text:
        return True, "Ready"
    return False, f"'{marker}' not found in {path}"


def process_absent(name: str, proc_root: str = "/proc") -> tuple[bool, str]:
    pids = find_pids(name, proc_root)
    if not pids:
        return True, "Stopped"
    return False, f"{name} still running (pids {', '.join(str(p) for p in pids)})"


def unit_active(unit: str, runner: Runner) -> tuple[bool, str]:
    res = runner(["systemctl", "is-active", unit])
    state = (res.stdout or "").strip() or "unknown"
    return res.returncode == 0, state


def unit_inactive(unit: str, runner: Runner) -> tuple[bool, str]:
    ok, state = unit_active(unit, runner)
    return not ok, state
