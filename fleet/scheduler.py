"""
Scheduler for Mission Control Fleet

Interval tickers for agent runtimes and for fleet-wide maintenance jobs
(the idle-agent reaper) configured in settings.yaml.

Usage:
    python -m fleet.scheduler

    Or embedded:
    scheduler = Scheduler(orchestrator, config)
    scheduler.start()
"""

import logging
import threading
from datetime import datetime, timezone
from typing import Dict, Any, Optional, List, Callable

from .config import load_config

logger = logging.getLogger(__name__)

DEFAULT_REAPER_INTERVAL = 300
DEFAULT_REAPER_TIMEOUT = 900


class Ticker:
    """
    Runs one duty at a fixed interval on its own thread.

    A failing tick is logged and the ticker keeps going. ``tick_now`` runs
    the duty synchronously, for tests and manual triggers.
    """

    def __init__(
        self,
        name: str,
        interval: float,
        duty: Callable[[], Any],
        run_immediately: bool = False
    ):
        self.name = name
        self.interval = interval
        self.duty = duty
        self.run_immediately = run_immediately
        self.ticks = 0
        self.failures = 0
        self.last_tick: Optional[datetime] = None
        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def tick_now(self) -> bool:
        """Run the duty once. Returns False if it raised."""
        self.ticks += 1
        self.last_tick = datetime.now(timezone.utc)
        try:
            self.duty()
            return True
        except Exception as e:
            self.failures += 1
            logger.error(f"Ticker {self.name} failed: {e}", exc_info=True)
            return False

    def _run_loop(self):
        if self.run_immediately:
            self.tick_now()
        while not self._stop_event.wait(self.interval):
            self.tick_now()

    def start(self):
        if self.running:
            logger.warning(f"Ticker {self.name} already running")
            return
        self._stop_event.clear()
        self._thread = threading.Thread(target=self._run_loop, name=self.name, daemon=True)
        self._thread.start()
        logger.debug(f"Ticker {self.name} started ({self.interval}s)")

    def stop(self, timeout: float = 5):
        self._stop_event.set()
        if self._thread:
            self._thread.join(timeout=timeout)
            self._thread = None

    def get_status(self) -> Dict[str, Any]:
        return {
            'name': self.name,
            'interval': self.interval,
            'running': self.running,
            'ticks': self.ticks,
            'failures': self.failures,
            'last_tick': self.last_tick.isoformat() if self.last_tick else None,
        }


# ==================== Jobs ====================

def reap_inactive_agents(orchestrator, config: Dict[str, Any]):
    timeout = int(config.get('reaper', {}).get('timeout_seconds', DEFAULT_REAPER_TIMEOUT))
    return orchestrator.reap_inactive_agents(timeout)


JOB_HANDLERS: Dict[str, Callable[[Any, Dict[str, Any]], Any]] = {
    'reap_inactive_agents': reap_inactive_agents,
}


class ScheduledJob:
    """An interval job from the ``scheduling.jobs`` config section."""

    def __init__(self, name: str, config: Dict[str, Any]):
        self.name = name
        self.job = config.get('job', name)
        if self.job not in JOB_HANDLERS:
            raise ValueError(f"Unknown job type: {self.job}")
        self.interval = float(config.get('interval_seconds', DEFAULT_REAPER_INTERVAL))
        self.enabled = config.get('enabled', True)
        self.description = config.get('description', '')
        self.last_run: Optional[datetime] = None


class Scheduler:
    """
    Runs fleet maintenance jobs on interval tickers.

    With no ``scheduling`` section the reaper runs every five minutes.
    """

    def __init__(self, orchestrator, config: Optional[Dict[str, Any]] = None):
        self.orchestrator = orchestrator
        self.config: Dict[str, Any] = config if config is not None else load_config()
        self.jobs: List[ScheduledJob] = []
        self.tickers: Dict[str, Ticker] = {}
        self.running = False
        self._stopped = threading.Event()
        self._load_jobs()

    def _load_jobs(self):
        scheduling = self.config.get('scheduling') or {
            'jobs': {
                'reap_inactive_agents': {
                    'interval_seconds': self.config.get('reaper', {}).get(
                        'interval_seconds', DEFAULT_REAPER_INTERVAL
                    ),
                    'description': 'Stop machines of agents with stale heartbeats',
                }
            }
        }

        if not scheduling.get('enabled', True):
            logger.info("Scheduling is disabled in config")
            return

        for name, job_config in (scheduling.get('jobs') or {}).items():
            try:
                job = ScheduledJob(name, job_config or {})
                self.jobs.append(job)
                status = "enabled" if job.enabled else "disabled"
                logger.info(f"Loaded scheduled job: {name} every {job.interval}s ({status})")
            except ValueError as e:
                logger.error(f"Failed to load job {name}: {e}")

    def _run_job(self, job: ScheduledJob):
        logger.info(f"Running scheduled job: {job.name}")
        JOB_HANDLERS[job.job](self.orchestrator, self.config)
        job.last_run = datetime.now(timezone.utc)

    def start(self, blocking: bool = False):
        """
        Start a ticker per enabled job.

        Args:
            blocking: If True, wait in the current thread until stop()
        """
        if self.running:
            logger.warning("Scheduler already running")
            return

        self.running = True
        self._stopped.clear()
        for job in self.jobs:
            if not job.enabled:
                continue
            ticker = Ticker(job.name, job.interval, lambda job=job: self._run_job(job), run_immediately=True)
            self.tickers[job.name] = ticker
            ticker.start()
        logger.info(f"Scheduler started with {len(self.tickers)} jobs")

        if blocking:
            self._stopped.wait()

    def stop(self):
        self.running = False
        for ticker in self.tickers.values():
            ticker.stop()
        self.tickers.clear()
        self._stopped.set()
        logger.info("Scheduler stopped")

    def get_status(self) -> Dict[str, Any]:
        """Scheduler status for the dashboard."""
        return {
            'running': self.running,
            'jobs': [
                {
                    'name': job.name,
                    'job': job.job,
                    'interval_seconds': job.interval,
                    'enabled': job.enabled,
                    'description': job.description,
                    'last_run': job.last_run.isoformat() if job.last_run else None,
                }
                for job in self.jobs
            ]
        }

    def run_job_now(self, job_name: str) -> bool:
        """Trigger a job immediately."""
        for job in self.jobs:
            if job.name == job_name:
                self._run_job(job)
                return True
        return False


def main():
    logging.basicConfig(
        level=logging.INFO,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )

    from .orchestrator import get_orchestrator

    config = load_config()
    scheduler = Scheduler(get_orchestrator(config), config)

    logger.info(f"Starting scheduler with {len(scheduler.jobs)} jobs")
    for job in scheduler.jobs:
        logger.info(f"  - {job.name}: every {job.interval}s")

    try:
        scheduler.start(blocking=True)
    except KeyboardInterrupt:
        logger.info("Shutting down...")
        scheduler.stop()


if __name__ == '__main__':
    main()
