"""Engine configuration document: load, pure edits, atomic commit.

The document is handled as a plain dict. All file I/O lives in `load` and
`commit`; the edit catalog below never touches the filesystem and never
mutates its input, so edits can be evaluated against any document.
"""
from __future__ import annotations

import copy
import json
import logging
import os
import stat
import tempfile
from dataclasses import dataclass
from typing import Any, ClassVar, Iterable

from .classifier import Category
from .errors import ConfigReadError, ConfigWriteError

logger = logging.getLogger(__name__)

Document = dict[str, Any]

CGROUP_DRIVER_OPT = "native.cgroupdriver"


def load(path: str) -> Document:
    """Read the document at `path`. A missing or blank file is a fresh install."""
    try:
        with open(path, encoding="utf-8") as f:
            text = f.read()
    except FileNotFoundError:
        return {}
    except OSError as e:
        raise ConfigReadError(f"Cannot read {path}: {e}") from e
    if not text.strip():
        return {}
    try:
        doc = json.loads(text)
    except json.JSONDecodeError as e:
        raise ConfigReadError(f"{path} is not valid JSON: {e}") from e
    if not isinstance(doc, dict):
        raise ConfigReadError(f"{path} must contain a JSON object, found {type(doc).__name__}.")
    return doc


def render(doc: Document) -> str:
    return json.dumps(doc, indent=2) + "\n"


def atomic_write_text(path: str, text: str) -> None:
    """Replace `path` with `text` so readers see either the old or new content.

    The prior file mode is kept; new files get 0644.
    """
    parent = os.path.dirname(os.path.abspath(path))
    try:
        os.makedirs(parent, exist_ok=True)
        try:
            mode = stat.S_IMODE(os.stat(path).st_mode)
        except FileNotFoundError:
            mode = 0o644
        fd, tmp_path = tempfile.mkstemp(prefix=f".{os.path.basename(path)}.", dir=parent)
    except OSError as e:
        raise ConfigWriteError(f"Cannot create temporary file next to {path}: {e}") from e

    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            f.write(text)
            f.flush()
            os.fsync(f.fileno())
        os.chmod(tmp_path, mode)
        os.replace(tmp_path, path)
        try:
            dir_fd = os.open(parent, os.O_DIRECTORY)
        except OSError:
            dir_fd = None
        if dir_fd is not None:
            try:
                os.fsync(dir_fd)
            finally:
                os.close(dir_fd)
    except OSError as e:
        raise ConfigWriteError(f"Cannot write {path}: {e}") from e
    finally:
        if os.path.exists(tmp_path):
            os.unlink(tmp_path)


def commit(doc: Document, path: str, dry_run: bool = False) -> None:
    if dry_run:
        logger.info("Dry run: not writing %s", path)
        return
    atomic_write_text(path, render(doc))
    logger.info("Wrote %s", path)


# --- Edit catalog ---


@dataclass(frozen=True)
class Edit:
    category: ClassVar[Category]

    def apply(self, doc: Document) -> Document:
        raise NotImplementedError

    def describe(self) -> str:
        return type(self).__name__


@dataclass(frozen=True)
class RegisterRuntime(Edit):
    category: ClassVar[Category] = Category.RUNTIME
    name: str
    path: str

    def apply(self, doc: Document) -> Document:
        out = copy.deepcopy(doc)
        runtimes = out.get("runtimes")
        if not isinstance(runtimes, dict):
            runtimes = {}
        entry = runtimes.get(self.name)
        if not isinstance(entry, dict):
            entry = {}
        if entry.get("path") == self.path:
            return out
        # Operator keys such as runtimeArgs survive a path repair.
        entry["path"] = self.path
        runtimes[self.name] = entry
        out["runtimes"] = runtimes
        return out

    def describe(self) -> str:
        return f"register runtime {self.name} -> {self.path}"


@dataclass(frozen=True)
class UnregisterRuntime(Edit):
    category: ClassVar[Category] = Category.RUNTIME
    name: str

    def apply(self, doc: Document) -> Document:
        out = copy.deepcopy(doc)
        runtimes = out.get("runtimes")
        if isinstance(runtimes, dict) and self.name in runtimes:
            del runtimes[self.name]
            if not runtimes:
                del out["runtimes"]
        # The engine refuses to start with a default runtime it does not know.
        if out.get("default-runtime") == self.name:
            del out["default-runtime"]
        return out

    def describe(self) -> str:
        return f"unregister runtime {self.name}"


@dataclass(frozen=True)
class SetDefaultRuntime(Edit):
    category: ClassVar[Category] = Category.RUNTIME
    name: str

    def apply(self, doc: Document) -> Document:
        out = copy.deepcopy(doc)
        out["default-runtime"] = self.name
        return out

    def describe(self) -> str:
        return f"default runtime {self.name}"


@dataclass(frozen=True)
class EnableUsernsRemap(Edit):
    category: ClassVar[Category] = Category.IDENTITY
    user: str

    def apply(self, doc: Document) -> Document:
        out = copy.deepcopy(doc)
        # A non-empty value is the operator's choice; keep it.
        if not out.get("userns-remap"):
            out["userns-remap"] = self.user
        return out

    def describe(self) -> str:
        return f"userns-remap {self.user}"


@dataclass(frozen=True)
class DisableUsernsRemap(Edit):
    category: ClassVar[Category] = Category.IDENTITY

    def apply(self, doc: Document) -> Document:
        out = copy.deepcopy(doc)
        out.pop("userns-remap", None)
        return out

    def describe(self) -> str:
        return "userns-remap disabled"


@dataclass(frozen=True)
class SetBridgeIP(Edit):
    category: ClassVar[Category] = Category.NETWORK
    cidr: str

    def apply(self, doc: Document) -> Document:
        out = copy.deepcopy(doc)
        out["bip"] = self.cidr
        return out

    def describe(self) -> str:
        return f"bip {self.cidr}"


@dataclass(frozen=True)
class SetAddressPool(Edit):
    category: ClassVar[Category] = Category.NETWORK
    base: str
    size: int

    def apply(self, doc: Document) -> Document:
        out = copy.deepcopy(doc)
        out["default-address-pools"] = [{"base": self.base, "size": self.size}]
        return out

    def describe(self) -> str:
        return f"default-address-pool base={self.base},size={self.size}"


@dataclass(frozen=True)
class SetImageStore(Edit):
    category: ClassVar[Category] = Category.IMAGE_STORE
    enabled: bool

    def apply(self, doc: Document) -> Document:
        out = copy.deepcopy(doc)
        features = out.get("features")
        if not isinstance(features, dict):
            features = {}
        features["containerd-snapshotter"] = self.enabled
        out["features"] = features
        return out

    def describe(self) -> str:
        return f"containerd-snapshotter {str(self.enabled).lower()}"


def apply_all(doc: Document, edits: Iterable[Edit]) -> tuple[Document, list[Edit]]:
    """Apply edits in order. Returns (new_doc, edits that changed the document)."""
    cur = doc
    applied: list[Edit] = []
    for edit in edits:
        nxt = edit.apply(cur)
        if nxt != cur:
            applied.append(edit)
            logger.info("Applied: %s", edit.describe())
        else:
            logger.info("Already in place: %s", edit.describe())
        cur = nxt
    return cur, applied


# --- Cgroup driver side channel (daemon command line) ---


def cgroup_driver(args: list[str]) -> str | None:
    """Return the cgroup driver set through `--exec-opt` in `args`, if any."""
    found: str | None = None
    i = 0
    while i < len(args):
        a = args[i]
        value: str | None = None
        if a == "--exec-opt" and i + 1 < len(args):
            value = args[i + 1]
            i += 1
        elif a.startswith("--exec-opt="):
            value = a.split("=", 1)[1]
        if value and value.startswith(CGROUP_DRIVER_OPT + "="):
            found = value.split("=", 1)[1]
        i += 1
    return found


def set_cgroup_driver(args: list[str], driver: str) -> list[str]:
    """Return `args` with exactly one `--exec-opt native.cgroupdriver=<driver>`.

    Other `--exec-opt` values are kept in place. If the requested driver is
    already the only one set, `args` is returned unchanged.
    """
    if cgroup_driver(args) == driver and _count_cgroup_opts(args) == 1:
        return list(args)
    out: list[str] = []
    i = 0
    while i < len(args):
        a = args[i]
        if a == "--exec-opt" and i + 1 < len(args) and args[i + 1].startswith(CGROUP_DRIVER_OPT + "="):
            i += 2
            continue
        if a.startswith("--exec-opt=" + CGROUP_DRIVER_OPT + "="):
            i += 1
            continue
        out.append(a)
        i += 1
    out.extend(["--exec-opt", f"{CGROUP_DRIVER_OPT}={driver}"])
    return out


def _count_cgroup_opts(args: list[str]) -> int:
    n = 0
    for i, a in enumerate(args):
        if a == "--exec-opt" and i + 1 < len(args) and args[i + 1].startswith(CGROUP_DRIVER_OPT + "="):
            n += 1
        elif a.startswith("--exec-opt=" + CGROUP_DRIVER_OPT + "="):
            n += 1
    return n
