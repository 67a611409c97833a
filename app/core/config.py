import logging
import os
from dataclasses import dataclass, field
from typing import Dict, List

DEFAULT_TASK_PERIOD_MS = 24 * 60 * 60 * 1000


def _task_names() -> List[str]:
    raw = os.getenv("LIBRARY_TASKS", "update_fine")
    return [name for name in raw.split() if name]


def _task_periods() -> Dict[str, str]:
    # LIBRARY_TASK_UPDATE_FINE_PERIOD_MS=60000 -> {"update_fine": "60000"}
    # parsed when the task is scheduled, a bad value only skips that task
    periods = {}
    for name in _task_names():
        periods[name] = os.getenv(f"LIBRARY_TASK_{name.upper()}_PERIOD_MS", str(DEFAULT_TASK_PERIOD_MS))
    return periods


@dataclass
class Settings:
    app_name: str = os.getenv("LIBRARY_APP_NAME", "Library Booking Service")
    database_url: str = os.getenv("LIBRARY_DB", "sqlite:///./library.db")
    log_level: str = os.getenv("LIBRARY_LOG", "INFO")

    # kept as a string: UpdateFineTask.init validates it
    fine_per_day: str = os.getenv("LIBRARY_FINE_PER_DAY", "1.0")

    tasks: List[str] = field(default_factory=_task_names)
    task_periods: Dict[str, str] = field(default_factory=_task_periods)


def setup_logging(level: str) -> None:
    logging.basicConfig(level=level,
                        format="%(asctime)s %(levelname)s %(name)s - %(message)s")


settings = Settings()
