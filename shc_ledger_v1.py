"""
SecureHealth Chain (SHC) - Ledger Clock & Sequencer
Version: 1.0.0

Single-writer execution: every transition is queued on one worker thread and
runs to completion before the next one starts. The clock hands out block
numbers and non-decreasing ledger timestamps.
"""

from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass
from typing import Any, Callable, Optional
import threading
import time

from shc_enforcement_v1 import logger

# ============================================
# LEDGER CLOCK
# ============================================

@dataclass(frozen=True)
class Block:
    """Sequencing slot assigned to one transition."""
    number: int
    timestamp: int  # seconds since epoch

class LedgerClock:
    """Monotonically non-decreasing ledger time."""

    def __init__(self, genesis_time: Optional[int] = None, time_source: Callable[[], float] = time.time):
        self._time_source = time_source
        self._last_timestamp = genesis_time if genesis_time is not None else 0
        self._block_number = 0
        self._lock = threading.Lock()

    def next_block(self) -> Block:
        with self._lock:
            now = int(self._time_source())
            self._last_timestamp = max(self._last_timestamp, now)
            self._block_number += 1
            return Block(number=self._block_number, timestamp=self._last_timestamp)

    @property
    def block_number(self) -> int:
        return self._block_number

    @property
    def now(self) -> int:
        """Latest ledger timestamp handed out (0 before the first block)."""
        return self._last_timestamp

# ============================================
# SEQUENCER
# ============================================

class Sequencer:
    """Serializing executor - the only way into ledger state.

    ``submit`` queues a transition and returns a Future; cancelling that
    Future succeeds only while the transition is still waiting for its slot.
    Calls made from inside a running transition execute inline.
    """

    def __init__(self, name: str = "shc-sequencer"):
        self.name = name
        self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix=name)
        self._local = threading.local()
        self.sequenced = 0

    def _run(self, fn: Callable[..., Any], args, kwargs) -> Any:
        self._local.active = True
        self.sequenced += 1
        try:
            return fn(*args, **kwargs)
        finally:
            self._local.active = False

    def in_transition(self) -> bool:
        return getattr(self._local, "active", False)

    def submit(self, fn: Callable[..., Any], *args, **kwargs) -> Future:
        """Queue a transition for sequencing."""
        if self.in_transition():
            future: Future = Future()
            try:
                future.set_result(fn(*args, **kwargs))
            except Exception as e:
                future.set_exception(e)
            return future
        return self._executor.submit(self._run, fn, args, kwargs)

    def execute(self, fn: Callable[..., Any], *args, **kwargs) -> Any:
        """Queue a transition and wait for its result (or its error)."""
        return self.submit(fn, *args, **kwargs).result()

    def shutdown(self, wait: bool = True):
        logger.info(f"[SEQUENCER] {self.name} shutting down after {self.sequenced} transitions")
        self._executor.shutdown(wait=wait, cancel_futures=True)
