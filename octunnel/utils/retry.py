"""
Bounded fixed-interval wait loop used for readiness and shutdown polling
"""
import time
from dataclasses import dataclass
from typing import Callable, Optional

from .logging import vlog


@dataclass(frozen=True)
class WaitPolicy:
    """At most *attempts* checks, *interval* seconds apart."""
    attempts: int
    interval: float = 1.0

    @property
    def budget(self) -> float:
        return self.attempts * self.interval


READY_POLICY = WaitPolicy(attempts=20, interval=1.0)
SHUTDOWN_POLICY = WaitPolicy(attempts=10, interval=1.0)


def wait_until(predicate: Callable[[], bool], policy: WaitPolicy, *,
               abort: Optional[Callable[[], bool]] = None,
               label: str = "condition",
               sleep: Callable[[float], None] = time.sleep) -> bool:
    """
    Call *predicate* up to policy.attempts times, sleeping policy.interval
    between calls. Returns True as soon as it holds, False when the attempts
    run out or *abort* reports that waiting is pointless.
    """
    for attempt in range(1, policy.attempts + 1):
        if predicate():
            vlog(f"  {label}: ok (attempt {attempt}/{policy.attempts})")
            return True
        if abort is not None and abort():
            vlog(f"  {label}: aborted (attempt {attempt}/{policy.attempts})")
            return False
        vlog(f"  {label}: waiting (attempt {attempt}/{policy.attempts})")
        sleep(policy.interval)
    return False
