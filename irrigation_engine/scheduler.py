"""Scheduler for the daily water-balance recompute and device health checks."""
import logging
import time
from concurrent.futures import ThreadPoolExecutor
from datetime import date, datetime, timedelta, timezone
from threading import Thread
from typing import Callable, Dict, Optional

import schedule

from .config import SCHEDULER, SchedulerConfig
from .engine import IrrigationEngine, engine_from_env
from .errors import IrrigationEngineError

logging.basicConfig(level=logging.INFO)
log = logging.getLogger(__name__)

# ─────────────────────────────────────────────────────────────────────────────
# JOB DEFINITIONS
# ─────────────────────────────────────────────────────────────────────────────

def job_water_balance(engine: IrrigationEngine, day: Optional[date] = None,
                      max_workers: int = SCHEDULER.max_parallel_fields) -> Dict[str, str]:
    """Apply ``day`` (default: yesterday, UTC) to every field, fields in parallel.

    Returns field_id -> "ok" or the error message.
    """
    day = day or (datetime.now(timezone.utc).date() - timedelta(days=1))
    fields = engine.registry.fields()
    log.info(f"Starting water-balance job for {day} ({len(fields)} fields)...")

    def run(field_id: str) -> str:
        try:
            engine.update_water_balance(field_id, day)
            return "ok"
        except IrrigationEngineError as e:
            log.error(f"Water balance failed for {field_id} on {day}: {e}")
            return str(e)

    with ThreadPoolExecutor(max_workers=max_workers) as pool:
        results = dict(zip((f.field_id for f in fields),
                           pool.map(run, [f.field_id for f in fields])))

    ok = sum(1 for r in results.values() if r == "ok")
    log.info(f"Water-balance job complete: {ok}/{len(results)} fields updated")
    return results


def job_device_health(engine: IrrigationEngine):
    """Flag silent devices."""
    offline = engine.check_device_health()
    if offline:
        log.warning(f"Devices offline: {', '.join(offline)}")
    return offline


def job_flush_pending(engine: IrrigationEngine) -> int:
    """Retry store writes left over from persistence failures."""
    if not engine.pending_writes():
        return 0
    try:
        return engine.flush_pending()
    except IrrigationEngineError as e:
        log.error(f"Pending writes still failing: {e}")
        return 0


# ─────────────────────────────────────────────────────────────────────────────
# SCHEDULER CLASS
# ─────────────────────────────────────────────────────────────────────────────

class JobScheduler:
    """Manages scheduled jobs for one engine."""

    def __init__(self, engine: IrrigationEngine, config: SchedulerConfig = SCHEDULER):
        self.engine = engine
        self.config = config
        self.schedule = schedule.Scheduler()
        self.running = False
        self.thread: Optional[Thread] = None
        self.jobs: Dict[str, Callable] = {}

    def register_job(self, name: str, func: Callable, interval_minutes: int):
        """Register a job to run at specified interval."""
        self.jobs[name] = func
        self.schedule.every(interval_minutes).minutes.do(func).tag(name)
        log.info(f"Registered job '{name}' to run every {interval_minutes} min")

    def register_daily_job(self, name: str, func: Callable, time_str: str = "02:00"):
        """Register a job to run daily at specified time."""
        self.jobs[name] = func
        self.schedule.every().day.at(time_str).do(func).tag(name)
        log.info(f"Registered job '{name}' to run daily at {time_str}")

    def setup_default_jobs(self):
        """Set up default job schedule."""
        engine = self.engine
        self.register_daily_job(
            "water_balance",
            lambda: job_water_balance(engine, max_workers=self.config.max_parallel_fields),
            self.config.water_balance_time,
        )
        self.register_job("device_health", lambda: job_device_health(engine),
                          self.config.health_check_interval_minutes)
        self.register_job("flush_pending", lambda: job_flush_pending(engine),
                          self.config.health_check_interval_minutes)

    def run_job_now(self, name: str):
        """Run a specific job immediately."""
        if name not in self.jobs:
            raise ValueError(f"Unknown job: {name}")

        log.info(f"Running job '{name}' now...")
        return self.jobs[name]()

    def start(self, blocking: bool = True):
        """Start the scheduler."""
        self.running = True
        log.info("Starting scheduler...")

        if blocking:
            self._run_loop()
        else:
            self.thread = Thread(target=self._run_loop, daemon=True)
            self.thread.start()

    def stop(self):
        """Stop the scheduler."""
        self.running = False
        if self.thread:
            self.thread.join(timeout=5)
        log.info("Scheduler stopped")

    def _run_loop(self):
        """Main scheduler loop."""
        while self.running:
            self.schedule.run_pending()
            time.sleep(1)

    def get_next_runs(self) -> Dict[str, str]:
        """Get next run time for each job."""
        next_runs = {}
        for job in self.schedule.get_jobs():
            if job.next_run:
                for tag in job.tags:
                    next_runs[tag] = job.next_run.isoformat()
        return next_runs


# ─────────────────────────────────────────────────────────────────────────────
# CLI
# ─────────────────────────────────────────────────────────────────────────────

def run_scheduler():
    """Run the scheduler from command line."""
    scheduler = JobScheduler(engine_from_env())
    scheduler.setup_default_jobs()

    print("Irrigation Engine Scheduler")
    print("=" * 40)
    print("Registered jobs:")
    for name in scheduler.jobs:
        print(f"  - {name}")
    print("\nPress Ctrl+C to stop")

    try:
        scheduler.start(blocking=True)
    except KeyboardInterrupt:
        scheduler.stop()
        print("\nScheduler stopped")


if __name__ == "__main__":
    run_scheduler()
