import threading
import time
from collections import deque
from datetime import datetime
from logging import getLogger
from typing import List, Optional, Tuple

import numpy as np
import psutil

logger = getLogger(__name__.split('.')[-1])

HISTORY_WINDOW_SECONDS = 5 * 60
MIN_SECONDS_BETWEEN_UPDATES = 10
MIN_RUN_MINUTES_BEFORE_AVERAGING = 3


def history_length(seconds_between_updates: float) -> int:
    """Number of samples that cover five minutes at the given sampling interval."""
    return int(HISTORY_WINDOW_SECONDS / max(seconds_between_updates, MIN_SECONDS_BETWEEN_UPDATES))


def process_core_usage(process_id: int, sample_seconds: float = 1.0) -> float:
    """Cores in use by a process and its children (100% CPU = 1 core); -1 if unknown."""
    try:
        process = psutil.Process(process_id)
        processes = [process] + process.children(recursive=True)
        for proc in processes:
            proc.cpu_percent(interval=None)
        time.sleep(sample_seconds)
        total = 0.0
        for proc in processes:
            try:
                total += proc.cpu_percent(interval=None)
            except psutil.NoSuchProcess:
                continue
        return total / 100.0
    except psutil.Error as e:
        logger.warning(f"Exception getting core usage for process ID {process_id}: {e}")
        return -1.0


class CoreUsageTracker:
    """
    Five minute history of an external program's core usage.

    update() is called from the process monitor's wait loop, which may run on
    another thread while the status file is being written, so the history is
    guarded by a lock. Once the program has run for three minutes the
    average of the history is published to the status file.
    """

    def __init__(self, status, seconds_between_updates: float = 30, clock=None) -> None:
        self.status = status
        self.seconds_between_updates = seconds_between_updates
        self._clock = clock or time.time
        self._lock = threading.Lock()
        self._history = deque(maxlen=history_length(seconds_between_updates))
        self._start_time = self._clock()

    def reset(self) -> None:
        """Call just before launching the external program."""
        with self._lock:
            self._start_time = self._clock()
            self._history.clear()

    @property
    def history(self) -> List[Tuple[datetime, float]]:
        with self._lock:
            return list(self._history)

    def average(self) -> Optional[float]:
        with self._lock:
            if not self._history:
                return None
            return float(np.mean([value for _, value in self._history]))

    def update(self, process_id: int, core_usage: float) -> None:
        """Cache a new sample (negative values mean unknown and are not stored)."""
        with self._lock:
            if core_usage >= 0:
                self._history.append((datetime.fromtimestamp(self._clock()), core_usage))
            if not self._history:
                return
            history = list(self._history)
            run_minutes = (self._clock() - self._start_time) / 60.0

        self.status.prog_runner_process_id = process_id
        self.status.store_core_usage_history(history)

        if run_minutes < MIN_RUN_MINUTES_BEFORE_AVERAGING:
            return

        self.status.prog_runner_core_usage = float(np.mean([value for _, value in history]))

    def sample(self, process_id: int) -> float:
        """Measure the process's core usage and record it; returns the measurement."""
        core_usage = process_core_usage(process_id)
        if core_usage > -1:
            self.update(process_id, core_usage)
        return core_usage
