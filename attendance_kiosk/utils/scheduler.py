"""
Periodic task scheduling.

Each timer of the kiosk is a daemon thread that runs its body, then waits on
a shared stop event for its period. Stopping the scheduler sets the event and
joins every thread, so teardown is a single call.
"""

import threading
from typing import Callable, Dict, Optional

from ..logging_config import get_logger

logger = get_logger(__name__)


class PeriodicTask:
    """
    A named body run every `interval` seconds until the stop event is set.

    Exceptions from the body are logged and the task keeps its cadence.
    An optional wakeup event lets producers trigger an early run.
    """

    def __init__(self, name: str, interval: float, func: Callable[[], None],
                 stop_event: threading.Event, wakeup: Optional[threading.Event] = None,
                 run_immediately: bool = True):
        self.name = name
        self.interval = interval
        self.func = func
        self.stop_event = stop_event
        self.wakeup = wakeup
        self.run_immediately = run_immediately
        self.thread: Optional[threading.Thread] = None

    def start(self) -> None:
        if self.thread and self.thread.is_alive():
            logger.debug(f'Task {self.name} already running')
            return
        self.thread = threading.Thread(target=self._run, daemon=True, name=f'Task-{self.name}')
        self.thread.start()

    def _wait(self) -> None:
        if self.wakeup is None:
            self.stop_event.wait(self.interval)
            return
        # wake on either the stop event or the producer's signal
        waited = 0.0
        step = min(0.25, self.interval)
        while waited < self.interval and not self.stop_event.is_set():
            if self.wakeup.wait(step):
                return
            waited += step

    def _run(self) -> None:
        if not self.run_immediately:
            self._wait()
        while not self.stop_event.is_set():
            try:
                self.func()
            except Exception as e:
                logger.error(f'Task {self.name} failed: {e}', exc_info=True)
            self._wait()

    def join(self, timeout: float) -> None:
        if self.thread and self.thread.is_alive():
            self.thread.join(timeout=timeout)
            if self.thread.is_alive():
                logger.warning(f'Task {self.name} did not stop within {timeout}s')

    def is_alive(self) -> bool:
        return self.thread is not None and self.thread.is_alive()


class Scheduler:
    """Starts and stops a set of periodic tasks as a unit."""

    def __init__(self):
        self.stop_event = threading.Event()
        self.tasks: Dict[str, PeriodicTask] = {}

    def add(self, name: str, interval: float, func: Callable[[], None],
            wakeup: Optional[threading.Event] = None, run_immediately: bool = True) -> PeriodicTask:
        task = PeriodicTask(name, interval, func, self.stop_event, wakeup, run_immediately)
        self.tasks[name] = task
        return task

    def start(self) -> None:
        self.stop_event.clear()
        for task in self.tasks.values():
            task.start()
        logger.info(f"Started tasks: {', '.join(self.tasks)}")

    def stop(self, timeout: float = 5.0) -> None:
        self.stop_event.set()
        for task in self.tasks.values():
            if task.wakeup is not None:
                task.wakeup.set()
        for task in self.tasks.values():
            task.join(timeout)
        logger.info('All tasks stopped')

    @property
    def running(self) -> bool:
        return any(task.is_alive() for task in self.tasks.values())
