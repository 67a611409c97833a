import logging
import threading
from typing import Callable, Dict

from sqlalchemy.orm import sessionmaker

from app.core.exceptions import ConfigurationError
from app.tasks.fines import UpdateFineTask

logger = logging.getLogger("library.tasks")

# task name -> factory taking a session factory
TASKS: Dict[str, Callable[[sessionmaker], object]] = {
    UpdateFineTask.name: UpdateFineTask,
}


class _ScheduledTask:
    def __init__(self, name: str, task, period_ms: int) -> None:
        self.name = name
        self.task = task
        self.period = period_ms / 1000.0
        self.stop = threading.Event()
        self.thread = threading.Thread(target=self._loop, name=f"task-{name}", daemon=True)

    def _loop(self) -> None:
        # first tick one period after scheduling
        while not self.stop.wait(self.period):
            try:
                self.task.run()
            except Exception:
                logger.exception(f"Task {self.name} failed")


class TaskScheduler:
    """Runs periodic tasks on background threads until cancel_all()."""

    def __init__(self) -> None:
        self._tasks: Dict[str, _ScheduledTask] = {}
        self._lock = threading.Lock()

    def schedule(self, name: str, task, period_ms: int) -> None:
        if period_ms <= 0:
            raise ValueError(f"Period of task {name} should be positive, got {period_ms}")
        with self._lock:
            if name in self._tasks:
                raise ValueError(f"Task {name} is already scheduled")
            scheduled = _ScheduledTask(name, task, period_ms)
            self._tasks[name] = scheduled
            scheduled.thread.start()
        logger.info(f"{name} will be executed every {period_ms} milliseconds")

    def scheduled(self):
        with self._lock:
            return sorted(self._tasks)

    def cancel_all(self, wait: bool = True, timeout: float = None) -> None:
        with self._lock:
            tasks = list(self._tasks.values())
            self._tasks.clear()

        for scheduled in tasks:
            scheduled.stop.set()
            cancel = getattr(scheduled.task, "cancel", None)
            if cancel is not None:
                cancel()
        if wait:
            for scheduled in tasks:
                if scheduled.thread is not threading.current_thread():
                    scheduled.thread.join(timeout)
        logger.info("All scheduled tasks canceled")


def schedule_configured_tasks(scheduler: TaskScheduler, settings, session_factory: sessionmaker) -> None:
    """Build, initialize and schedule every task named in settings."""
    for name in settings.tasks:
        factory = TASKS.get(name)
        if factory is None:
            logger.critical(f"Unknown task {name}. It'll be ignored")
            continue
        period = settings.task_periods.get(name)
        if period is None or period == "":
            logger.critical(f"No execution period is specified for task {name}. It'll be ignored")
            continue

        task = factory(session_factory)
        try:
            task.configure(settings)
            scheduler.schedule(name, task, int(period))
        except (ConfigurationError, ValueError) as exc:
            logger.critical(f"Error in task {name} configuration: {exc}")
