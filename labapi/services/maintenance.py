"""
Inline periodic upkeep.

There is no background scheduler: the request pipeline calls
``run_pending`` after each request and every task runs at most once per its
interval in this process.
"""

import logging
import threading
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

from ..utils.timeutil import Clock, utcnow

logger = logging.getLogger(__name__)


@dataclass
class _Task:
    name: str
    interval_seconds: int
    fn: Callable[[], Any]
    last_run: Optional[datetime] = None


class MaintenanceScheduler:
    def __init__(self, clock: Clock = utcnow):
        self.clock = clock
        self._tasks: Dict[str, _Task] = {}
        self._lock = threading.Lock()

    def register(self, name: str, interval_seconds: int, fn: Callable[[], Any]) -> None:
        self._tasks[name] = _Task(name, interval_seconds, fn)

    def _claim_due(self, force: bool) -> List[_Task]:
        now = self.clock()
        due = []
        with self._lock:
            for task in self._tasks.values():
                if force or task.last_run is None or (now - task.last_run).total_seconds() >= task.interval_seconds:
                    task.last_run = now
                    due.append(task)
        return due

    def run_pending(self, force: bool = False) -> Dict[str, Any]:
        """Run every due task; a failing task is logged and reported as None."""
        results: Dict[str, Any] = {}
        for task in self._claim_due(force):
            try:
                results[task.name] = task.fn()
            except Exception as e:
                logger.error(f"maintenance task {task.name} failed: {e}")
                results[task.name] = None
        return results
