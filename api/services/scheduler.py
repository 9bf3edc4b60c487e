"""
Background scheduler for periodic sync jobs.

Owned by whoever runs the process (the API lifespan or a CLI), never a
module-level timer: it has an explicit start()/stop() lifecycle.
"""
import logging
import threading
from typing import Any, Callable, Optional

logger = logging.getLogger(__name__)


class Scheduler:
    """
    Runs a fixed list of jobs every ``interval_seconds`` on a daemon thread.

    A failing job is logged and the remaining jobs still run; the loop
    keeps going until stop() is called.
    """

    def __init__(
        self,
        interval_seconds: float,
        jobs: list[tuple[str, Callable[[], Any]]],
        name: str = "IdentityScheduler",
        run_immediately: bool = False,
    ):
        self.interval_seconds = interval_seconds
        self.jobs = list(jobs)
        self.name = name
        self.run_immediately = run_immediately
        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self.cycles_completed = 0

    @property
    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self):
        if self.is_running:
            logger.debug(f"{self.name} already running")
            return

        self._stop_event.clear()
        self._thread = threading.Thread(
            target=self._run,
            daemon=True,
            name=self.name,
        )
        self._thread.start()
        logger.info(f"{self.name} started (interval: {self.interval_seconds}s, jobs: {len(self.jobs)})")

    def stop(self, timeout: float = 5.0):
        self._stop_event.set()
        if self._thread and self._thread.is_alive():
            self._thread.join(timeout=timeout)
        self._thread = None
        logger.info(f"{self.name} stopped")

    def run_once(self):
        """Run every job once, in order."""
        for job_name, job in self.jobs:
            try:
                job()
                logger.info(f"{self.name}: job {job_name} finished")
            except Exception as e:
                logger.error(f"{self.name}: job {job_name} failed: {e}")
        self.cycles_completed += 1

    def _run(self):
        """Main scheduler loop."""
        if self.run_immediately and not self._stop_event.is_set():
            self.run_once()
        while not self._stop_event.wait(self.interval_seconds):
            self.run_once()
