from __future__ import annotations

import time
from dataclasses import dataclass
from typing import Callable


@dataclass(frozen=True)
class RetryPolicy:
    attempts: int
    delay_s: float


@dataclass(frozen=True)
class RetryResult:
    ok: bool
    attempts: int
    detail: str


def retry(
    op: Callable[[], tuple[bool, str]],
    policy: RetryPolicy,
    sleep: Callable[[float], None] = time.sleep,
) -> RetryResult:
    """Poll `op` until it reports success or the attempt budget runs out.

    `op` returns (ok, detail). The delay is fixed and only applied between
    failed attempts, so a budget of N attempts sleeps at most N-1 times.
    Returns the detail of the last attempt either way.
    """
    attempts = max(1, int(policy.attempts))
    detail = ""
    for n in range(1, attempts + 1):
        ok, detail = op()
        if ok:
            return RetryResult(ok=True, attempts=n, detail=detail)
        if n < attempts:
            sleep(policy.delay_s)
    return RetryResult(ok=False, attempts=attempts, detail=detail)
