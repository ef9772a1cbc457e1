"""Per-invocation time budget and memory circuit breaker."""
import enum
import gc
import logging
import time
from typing import Callable, Optional

import psutil

from registry_import.exceptions import MemoryCeilingExceeded

logger = logging.getLogger(__name__)


class BudgetSignal(str, enum.Enum):
    CONTINUE = "continue"
    INTERRUPTED = "interrupted"


def process_memory_bytes() -> int:
    """Resident set size of the current process."""
    return psutil.Process().memory_info().rss


class ResourceGovernor:
    """
    Decide at every batch boundary whether this invocation may keep working.

    Running out of wall-clock time is an ordinary outcome: ``check`` returns
    ``BudgetSignal.INTERRUPTED`` and the job is parked for the next
    invocation. Crossing the memory ceiling raises ``MemoryCeilingExceeded``,
    since the host would otherwise kill the process with nothing persisted.
    """

    def __init__(
        self,
        time_budget_seconds: float = 45.0,
        memory_ceiling_bytes: int = 400 * 1024 * 1024,
        pause_seconds: float = 0.025,
        clock: Callable[[], float] = time.monotonic,
        memory_probe: Callable[[], int] = process_memory_bytes,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.time_budget_seconds = time_budget_seconds
        self.memory_ceiling_bytes = memory_ceiling_bytes
        self.pause_seconds = pause_seconds
        self._clock = clock
        self._memory_probe = memory_probe
        self._sleep = sleep
        self._started_at: Optional[float] = None

    def start(self) -> None:
        self._started_at = self._clock()

    @property
    def elapsed(self) -> float:
        if self._started_at is None:
            return 0.0
        return self._clock() - self._started_at

    def check_memory(self) -> None:
        used = self._memory_probe()
        logger.debug(f"🧠 Memory usage: {round(used / 1024 / 1024)}MB")
        if used > self.memory_ceiling_bytes:
            logger.error(f"💥 Memory ceiling crossed: {used} > {self.memory_ceiling_bytes} bytes")
            raise MemoryCeilingExceeded(used, self.memory_ceiling_bytes)

    def check(self) -> BudgetSignal:
        self.check_memory()
        elapsed = self.elapsed
        if elapsed > self.time_budget_seconds:
            logger.info(
                f"⏰ Time budget exceeded: {elapsed:.1f}s > {self.time_budget_seconds:.1f}s"
            )
            return BudgetSignal.INTERRUPTED
        return BudgetSignal.CONTINUE

    def relax(self) -> None:
        """Release garbage and yield briefly between batches."""
        gc.collect()
        if self.pause_seconds > 0:
            self._sleep(self.pause_seconds)
