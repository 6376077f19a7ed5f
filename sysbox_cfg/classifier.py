from __future__ import annotations

from enum import Enum
from typing import Iterable


class Category(str, Enum):
    NETWORK = "network"
    IDENTITY = "identity"
    RUNTIME = "runtime"
    CGROUP = "cgroup"
    IMAGE_STORE = "image-store"


class Verdict(str, Enum):
    NONE = "none"
    SIGNAL_ONLY = "signal-only"
    FULL_RESTART = "full-restart"


# The engine reloads its runtime registry on SIGHUP; everything here touches
# kernel-level setup of running containers and needs a cold restart.
DISRUPTIVE = frozenset({Category.NETWORK, Category.IDENTITY, Category.CGROUP, Category.IMAGE_STORE})


def categorize(applied: Iterable, cgroup_changed: bool = False) -> set[Category]:
    """Categories touched by edits that actually changed something."""
    cats = {e.category for e in applied}
    if cgroup_changed:
        cats.add(Category.CGROUP)
    return cats


def decide(categories: Iterable[Category], force: bool = False) -> Verdict:
    cats = set(categories)
    if force or cats & DISRUPTIVE:
        return Verdict.FULL_RESTART
    if Category.RUNTIME in cats:
        return Verdict.SIGNAL_ONLY
    return Verdict.NONE
