"""
Cron jobs and the in-process scheduler.

`run_cron_jobs()` runs every enabled job once, for external triggers such as
the admin "run now" endpoint. `CronScheduler` is a background thread that
fires each job on its cron schedule (evaluated with croniter).
Both work on the same job registry unless a scheduler is given its own list.
"""

import os
import sys
import time
import threading
import subprocess
from dataclasses import dataclass, replace
from datetime import datetime, timezone
from typing import Callable, Dict, Any, List, Optional
from zoneinfo import ZoneInfo

from croniter import croniter

from tekbreed.services.health_service import run_health_checks_sync
from tekbreed.services.log_retention import scheduled_log_cleanup
from tekbreed.services.maintenance_service import run_maintenance_task, maintain_db
from tekbreed.utils.audit_logger import get_audit_logger, SystemAction, AuditSeverity

KILL_GRACE_SECONDS = 10


@dataclass
class CronJob:
    name: str
    schedule: str
    handler: Callable[[], Any]
    enabled: bool = True
    timezone: str = "UTC"


# =============================================================================
# Job handlers
# =============================================================================

def _session_cleanup_job():
    result = run_maintenance_task("cleanup-sessions")
    if not result["success"]:
        raise RuntimeError(result["error"])
    return result


def _log_cleanup_job():
    result = scheduled_log_cleanup()
    if result["errors"]:
        raise RuntimeError("; ".join(result["errors"]))
    return result


def _health_check_job():
    results = run_health_checks_sync()
    failed = [name for name, check in results.items() if isinstance(check, dict) and check["status"] == "fail"]
    if failed:
        print(f"[Scheduler] ⚠ Failing health checks: {', '.join(failed)}")
    return results


def _default_jobs() -> List[CronJob]:
    return [
        CronJob("session-cleanup", "0 1 * * *", _session_cleanup_job),     # daily 01:00 UTC
        CronJob("log-cleanup", "0 2 * * *", _log_cleanup_job),             # daily 02:00 UTC
        CronJob("database-maintenance", "0 3 * * 0", maintain_db),         # Sunday 03:00 UTC
        CronJob("health-check", "*/15 * * * *", _health_check_job),
    ]


_cron_jobs: List[CronJob] = _default_jobs()


def run_cron_jobs() -> List[Dict[str, Any]]:
    """Run every enabled job in order, collecting one result per job."""
    results = []
    for job in _cron_jobs:
        if not job.enabled:
            print(f"[Scheduler] Skipping disabled cron job: {job.name}")
            continue

        try:
            print(f"[Scheduler] Running cron job: {job.name}")
            job.handler()
            results.append({"job": job.name, "status": "success"})
        except Exception as e:
            print(f"[Scheduler] ❌ Cron job {job.name} failed: {e}")
            results.append({"job": job.name, "status": "error", "error": str(e)})
            get_audit_logger().log_system_event(
                SystemAction.SYSTEM_ERROR,
                f"Cron job {job.name} failed",
                severity=AuditSeverity.ERROR,
                metadata={"error": str(e)}
            )
    return results


def get_cron_jobs() -> List[CronJob]:
    return [replace(job) for job in _cron_jobs]


def set_cron_job_enabled(name: str, enabled: bool) -> bool:
    for job in _cron_jobs:
        if job.name == name:
            job.enabled = enabled
            return True
    return False


# =============================================================================
# Subprocess runner
# =============================================================================

def _pump(stream, prefix: str, target):
    for line in iter(stream.readline, ""):
        print(f"{prefix}{line.rstrip()}", file=target)
    stream.close()


def run_script(command: str, args: List[str], script_name: str, timeout: float = 300):
    """
    Run an external command, streaming its output with a [script_name] prefix.

    Raises RuntimeError on a non-zero exit and TimeoutError when the command
    outlives `timeout` seconds (SIGTERM first, SIGKILL after a grace period).
    """
    print(f"[Scheduler] Starting {script_name} script...")
    process = subprocess.Popen(
        [command, *args],
        stdout=subprocess.PIPE,
        stderr=subprocess.PIPE,
        text=True,
        cwd=os.getcwd(),
        env={**os.environ, "ENVIRONMENT": os.environ.get("ENVIRONMENT", "production")},
    )

    pumps = [
        threading.Thread(target=_pump, args=(process.stdout, f"[{script_name}] ", sys.stdout), daemon=True),
        threading.Thread(target=_pump, args=(process.stderr, f"[{script_name}] ERROR: ", sys.stderr), daemon=True),
    ]
    for pump in pumps:
        pump.start()

    try:
        code = process.wait(timeout=timeout)
    except subprocess.TimeoutExpired:
        print(f"[Scheduler] ⏰ {script_name} timed out after {timeout}s")
        process.terminate()
        try:
            process.wait(timeout=KILL_GRACE_SECONDS)
        except subprocess.TimeoutExpired:
            process.kill()
            process.wait()
        raise TimeoutError(f"{script_name} timed out after {timeout}s")
    finally:
        for pump in pumps:
            pump.join(timeout=1)

    if code != 0:
        print(f"[Scheduler] ❌ {script_name} failed with code {code}")
        raise RuntimeError(f"{script_name} failed with code {code}")

    print(f"[Scheduler] ✅ {script_name} completed successfully")


# =============================================================================
# Scheduler thread
# =============================================================================

class CronScheduler:
    """
    Background thread that wakes once a minute and runs due jobs.

    Usage:
        scheduler = CronScheduler()
        scheduler.initialize()
        # ... later ...
        scheduler.stop()
    """

    def __init__(self, jobs: Optional[List[CronJob]] = None):
        # None means the module registry shared with run_cron_jobs()
        self._jobs = jobs
        self.initialized = False
        self.thread: Optional[threading.Thread] = None
        self._stop_event = threading.Event()
        self._last_runs: Dict[str, datetime] = {}
        self._lock = threading.Lock()

    @property
    def jobs(self) -> List[CronJob]:
        return self._jobs if self._jobs is not None else _cron_jobs

    def initialize(self):
        if self.initialized:
            print("[Scheduler] ⚠ Scheduler already initialized")
            return

        print("[Scheduler] Initializing cron scheduler...")
        for job in self.jobs:
            if job.enabled:
                print(f"[Scheduler] Scheduled job: {job.name} ({job.schedule})")
            else:
                print(f"[Scheduler] Skipping disabled job: {job.name}")

        self._stop_event.clear()
        self.thread = threading.Thread(target=self._loop, name="cron-scheduler", daemon=True)
        self.thread.start()
        self.initialized = True
        print("[Scheduler] ✓ Cron scheduler initialized")

    def stop(self):
        print("[Scheduler] Stopping cron scheduler...")
        self._stop_event.set()
        if self.thread:
            self.thread.join(timeout=5)
            self.thread = None
        self.initialized = False
        print("[Scheduler] Cron scheduler stopped")

    def _loop(self):
        while True:
            now = time.time()
            # wake just after the next minute boundary
            if self._stop_event.wait(60 - (now % 60) + 0.5):
                break
            self.tick(datetime.now(timezone.utc))

    def tick(self, now: datetime) -> List[str]:
        """Run every enabled job whose schedule matches `now`. Returns the names run."""
        minute = now.replace(second=0, microsecond=0)
        ran = []
        with self._lock:
            due = [
                job for job in self.jobs
                if job.enabled
                and self._last_runs.get(job.name) != minute
                and croniter.match(job.schedule, minute.astimezone(ZoneInfo(job.timezone)))
            ]
            for job in due:
                self._last_runs[job.name] = minute

        for job in due:
            self._run_job(job)
            ran.append(job.name)
        return ran

    def _run_job(self, job: CronJob):
        print(f"[Scheduler] Starting scheduled job: {job.name}")
        start_time = time.time()
        try:
            job.handler()
            duration_ms = (time.time() - start_time) * 1000
            print(f"[Scheduler] Completed job: {job.name} ({duration_ms:.0f}ms)")
        except Exception as e:
            duration_ms = (time.time() - start_time) * 1000
            print(f"[Scheduler] ❌ Job failed: {job.name} ({duration_ms:.0f}ms): {e}")
            get_audit_logger().log_system_event(
                SystemAction.SYSTEM_ERROR,
                f"Scheduled job {job.name} failed",
                severity=AuditSeverity.ERROR,
                metadata={"error": str(e), "duration_ms": round(duration_ms, 2)}
            )

    def _find(self, name: str) -> Optional[CronJob]:
        return next((job for job in self.jobs if job.name == name), None)

    def get_status(self, now: Optional[datetime] = None) -> List[Dict[str, Any]]:
        now = now or datetime.now(timezone.utc)
        status = []
        for job in self.jobs:
            next_run = None
            if job.enabled:
                local_now = now.astimezone(ZoneInfo(job.timezone))
                next_run = croniter(job.schedule, local_now).get_next(datetime).isoformat()
            status.append({
                "name": job.name,
                "schedule": job.schedule,
                "enabled": job.enabled,
                "timezone": job.timezone,
                "running": self.initialized and job.enabled,
                "next_run": next_run,
            })
        return status

    def set_job_enabled(self, name: str, enabled: bool) -> bool:
        job = self._find(name)
        if not job:
            return False
        job.enabled = enabled
        return True

    def add_job(self, name: str, schedule: str, handler: Callable[[], Any], timezone: str = "UTC") -> str:
        if not croniter.is_valid(schedule):
            raise ValueError(f"Invalid cron expression: {schedule}")
        with self._lock:
            self.jobs.append(CronJob(name, schedule, handler, True, timezone))
        return name

    def remove_job(self, name: str) -> bool:
        with self._lock:
            job = self._find(name)
            if not job:
                return False
            self.jobs.remove(job)
            self._last_runs.pop(name, None)
        return True


# Singleton instance
_scheduler = None


def get_scheduler() -> CronScheduler:
    global _scheduler
    if _scheduler is None:
        _scheduler = CronScheduler()
    return _scheduler


def start_scheduler() -> CronScheduler:
    scheduler = get_scheduler()
    scheduler.initialize()
    return scheduler


def stop_scheduler():
    global _scheduler
    if _scheduler:
        _scheduler.stop()
        _scheduler = None
