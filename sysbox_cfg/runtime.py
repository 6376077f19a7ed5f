from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum


def utc_now() -> str:
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


class Environment(str, Enum):
    INIT_MANAGED = "init-managed"
    MANUAL = "manual"


class ServiceState(str, Enum):
    UNKNOWN = "unknown"
    STOPPED = "stopped"
    STARTING = "starting"
    READY = "ready"
    FAILED = "failed"


@dataclass
class ServiceStatus:
    name: str
    environment: Environment
    state: ServiceState = ServiceState.UNKNOWN
    message: str = ""
    created_at: str = field(default_factory=utc_now)
    updated_at: str = field(default_factory=utc_now)

    def move(self, state: ServiceState, message: str = "") -> None:
        self.state = state
        self.message = message
        self.updated_at = utc_now()
