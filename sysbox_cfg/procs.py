from __future__ import annotations

import os


def find_pids(name: str, proc_root: str = "/proc") -> list[int]:
    """Return pids whose process name (comm) equals `name`.

    The kernel truncates comm to 15 characters, so the name is compared the
    same way.
    """
    want = name[:15]
    pids: list[int] = []
    try:
        entries = os.listdir(proc_root)
    except FileNotFoundError:
        return []
    for entry in entries:
        if not entry.isdigit():
            continue
        try:
            with open(os.path.join(proc_root, entry, "comm"), encoding="utf-8") as f:
                comm = f.read().strip()
        except OSError:
            # process exited while scanning
            continue
        if comm == want:
            pids.append(int(entry))
    return sorted(pids)


def read_cmdline(pid: int, proc_root: str = "/proc") -> list[str]:
    try:
        with open(os.path.join(proc_root, str(pid), "cmdline"), "rb") as f:
            raw = f.read()
    except OSError:
        return []
    return [part.decode("utf-8", "replace") for part in raw.split(b"\0") if part]
