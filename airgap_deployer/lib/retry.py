from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Callable

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PollResult:
    ok: bool
    attempts: int


def poll(
    predicate: Callable[[], bool],
    *,
    attempts: int,
    interval: float,
    sleep: Callable[[float], None] = time.sleep,
    label: str = "condition",
) -> PollResult:
    """Evaluate `predicate` up to `attempts` times, sleeping `interval` between tries.

    Never sleeps after the final attempt, so the worst case wait is
    (attempts - 1) * interval.
    """

    if attempts < 1:
        raise ValueError("attempts must be >= 1")

    for i in range(1, attempts + 1):
        if predicate():
            return PollResult(ok=True, attempts=i)
        if i < attempts:
            logger.info("Waiting for %s... (attempt %d/%d)", label, i, attempts)
            sleep(interval)
    return PollResult(ok=False, attempts=attempts)
