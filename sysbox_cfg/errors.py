from __future__ import annotations


class ReconcileError(Exception):
    """Base for every fatal condition; the CLI maps it to exit status 1."""


class PreconditionError(ReconcileError):
    pass


class ConfigReadError(ReconcileError):
    pass


class ConfigWriteError(ReconcileError):
    pass


class SupervisorTransitionError(ReconcileError):
    """A service did not reach the expected state within its retry budget.

    `detail` holds diagnostic context (usually the service log) and is shown
    to the operator verbatim.
    """

    def __init__(self, service: str, state: str, message: str, detail: str = "") -> None:
        super().__init__(f"{service}: {message}")
        self.service = service
        self.state = state
        self.detail = detail
