# assignment_agents/worker.py
from __future__ import annotations

import logging
import os
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Tuple

from . import config as _config  # loads .env for DB and scheduler settings

from .config import SchedulerConfig, get_config
from .db import get_conn, safe_close
from .event_queue import OutboxReassignmentRequester
from .events import TASK_CLEANUP, TASK_EMERGENCY_MODE, TASK_EXPIRATION, TASK_REMINDERS
from .idempotency import DbTaskLease
from .notifications import DbNotifier
from .repositories import MySqlStorage, ensure_schema
from .scheduler import AssignmentScheduler

log = logging.getLogger(__name__)

CLEANUP_INTERVAL_SECONDS = 24 * 3600
EMERGENCY_MODE_INTERVAL_SECONDS = 3600
HEARTBEAT_SECONDS = 60.0


def _int_env_any(names: List[str], default: int) -> int:
    for n in names:
        v = os.environ.get(n)
        if v is None:
            continue
        try:
            return int(v)
        except ValueError:
            continue
    return default


def _log(worker_id: str, msg: str) -> None:
    log.info("[worker:%s] %s", worker_id, msg)


@dataclass
class _Task:
    name: str
    fn: Callable[[], Any]
    interval_seconds: float
    lease_ttl_seconds: float
    lock: threading.Lock = field(default_factory=threading.Lock)
    next_due: float = 0.0
    runs: int = 0
    last_error: Optional[str] = None


@dataclass
class TaskRun:
    task: str
    ran: bool
    result: Any = None
    error: Optional[str] = None


class TaskTicker:
    """
    Drives the named periodic sweeps.

    A task never overlaps itself: each has a non-blocking lock in this process
    and, when a lease is given, a DB lease shared by every worker. The lease is
    renewed in the background for as long as the task runs. A tick that
    finds a task still running skips it. Different tasks run side by side on
    the pool, so a slow sweep does not hold up the others.
    """

    def __init__(
        self,
        lease: Optional[DbTaskLease] = None,
        max_workers: int = 4,
        clock: Callable[[], float] = time.monotonic,
        lease_renew_seconds: Optional[float] = None,
    ):
        self._tasks: Dict[str, _Task] = {}
        self._lease = lease
        self._clock = clock
        self._lease_renew_seconds = lease_renew_seconds
        self._pool = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="sweep")

    def register(
        self,
        name: str,
        fn: Callable[[], Any],
        interval_seconds: float,
        lease_ttl_seconds: Optional[float] = None,
    ) -> None:
        self._tasks[name] = _Task(
            name=name,
            fn=fn,
            interval_seconds=float(interval_seconds),
            lease_ttl_seconds=float(lease_ttl_seconds or max(60.0, float(interval_seconds))),
        )

    @property
    def task_names(self) -> List[str]:
        return list(self._tasks)

    def is_running(self, name: str) -> bool:
        return self._tasks[name].lock.locked()

    def status(self) -> Dict[str, Dict[str, Any]]:
        return {
            t.name: {
                "running": t.lock.locked(),
                "runs": t.runs,
                "interval_seconds": t.interval_seconds,
                "last_error": t.last_error,
            }
            for t in self._tasks.values()
        }

    def run_task(self, name: str) -> TaskRun:
        """Run one task now on the calling thread, unless it is already running somewhere."""
        task = self._tasks.get(name)
        if task is None:
            raise KeyError(name)

        if not task.lock.acquire(blocking=False):
            log.warning("Task %s still running, skipping this tick", name)
            return TaskRun(task=name, ran=False)
        try:
            if self._lease is not None:
                try:
                    if not self._lease.acquire(name, task.lease_ttl_seconds):
                        log.info("Task %s is held by another worker, skipping", name)
                        return TaskRun(task=name, ran=False)
                except Exception as e:
                    log.error("Lease check failed for task %s: %s", name, e)
                    return TaskRun(task=name, ran=False, error=str(e))
            keeper = self._keep_lease(task) if self._lease is not None else None
            try:
                result = task.fn()
                task.runs += 1
                task.last_error = None
                return TaskRun(task=name, ran=True, result=result)
            except Exception as e:
                task.runs += 1
                task.last_error = f"{type(e).__name__}: {e}"
                log.exception("Error in task %s", name)
                return TaskRun(task=name, ran=True, error=task.last_error)
            finally:
                if keeper is not None:
                    stop, thread = keeper
                    stop.set()
                    thread.join()
                if self._lease is not None:
                    try:
                        self._lease.release(name)
                    except Exception as e:
                        log.warning("Lease release failed for task %s: %s", name, e)
        finally:
            task.lock.release()

    def _keep_lease(self, task: _Task) -> Tuple[threading.Event, threading.Thread]:
        every = self._lease_renew_seconds or max(1.0, task.lease_ttl_seconds / 3.0)
        stop = threading.Event()

        def renew_loop() -> None:
            while not stop.wait(every):
                try:
                    if not self._lease.renew(task.name, task.lease_ttl_seconds):
                        log.error("Lease for task %s was lost while it was running", task.name)
                except Exception as e:
                    log.warning("Lease renewal failed for task %s: %s", task.name, e)

        thread = threading.Thread(target=renew_loop, name=f"lease-{task.name}", daemon=True)
        thread.start()
        return stop, thread

    def tick(self) -> List[str]:
        """Submit every due task to the pool. Returns the names submitted."""
        now = self._clock()
        submitted = []
        for task in self._tasks.values():
            if now < task.next_due:
                continue
            task.next_due = now + task.interval_seconds
            if task.lock.locked():
                log.warning("Task %s still running, skipping this tick", task.name)
                continue
            self._pool.submit(self.run_task, task.name)
            submitted.append(task.name)
        return submitted

    def shutdown(self, wait: bool = True) -> None:
        self._pool.shutdown(wait=wait)


def register_scheduler_tasks(ticker: TaskTicker, scheduler: AssignmentScheduler, cfg: SchedulerConfig) -> TaskTicker:
    ticker.register(TASK_EXPIRATION, scheduler.run_expiration_sweep, cfg.check_interval_seconds)
    ticker.register(TASK_REMINDERS, scheduler.run_reminder_sweep, cfg.check_interval_seconds)
    ticker.register(TASK_CLEANUP, scheduler.cleanup_old_reminders, CLEANUP_INTERVAL_SECONDS)
    ticker.register(TASK_EMERGENCY_MODE, scheduler.auto_disable_emergency_modes, EMERGENCY_MODE_INTERVAL_SECONDS)
    return ticker


def build_runtime(cfg: Optional[SchedulerConfig] = None, worker_id: str = _config.WORKER_ID):
    """MySQL-backed scheduler plus a ticker with every sweep registered."""
    cfg = cfg or get_config()
    storage = MySqlStorage(get_conn)
    scheduler = AssignmentScheduler(
        storage,
        notifier=DbNotifier(get_conn),
        reassigner=OutboxReassignmentRequester(get_conn),
        config=cfg,
    )
    ticker = register_scheduler_tasks(TaskTicker(lease=DbTaskLease(get_conn, worker_id)), scheduler, cfg)
    return scheduler, ticker


def main() -> None:
    logging.basicConfig(
        level=os.environ.get("LOG_LEVEL", "INFO").upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    worker_id = _config.WORKER_ID
    poll_ms = _int_env_any(["POLL_INTERVAL_MS", "POLL_MS"], _config.POLL_MS)

    cfg = get_config()
    try:
        conn = get_conn()
    except Exception as e:
        _log(worker_id, f"FATAL: cannot connect to DB: {e}")
        raise
    try:
        created = ensure_schema(conn)
        if created:
            _log(worker_id, f"created tables {created}")
    finally:
        safe_close(conn)

    scheduler, ticker = build_runtime(cfg, worker_id)
    _log(
        worker_id,
        f"Started. interval={cfg.check_interval_seconds}s timeout={cfg.assignment_timeout_hours}h "
        f"critical_timeout={cfg.critical_assignment_timeout_hours}h "
        f"reminders={list(cfg.reminder_hours_from_assignment)}",
    )

    last_hb = 0.0
    try:
        while True:
            now_t = time.time()
            if now_t - last_hb >= HEARTBEAT_SECONDS:
                try:
                    stats = scheduler.get_statistics()
                    _log(
                        worker_id,
                        f"heartbeat pending={stats.total_pending_assignments} "
                        f"expired_24h={stats.expired_last_24_hours} "
                        f"manual={stats.cases_requiring_manual_intervention}",
                    )
                except Exception as e:
                    _log(worker_id, f"heartbeat error={e}")
                last_hb = now_t

            ticker.tick()
            time.sleep(poll_ms / 1000.0)
    except KeyboardInterrupt:
        _log(worker_id, "stopping")
    finally:
        ticker.shutdown(wait=True)
        scheduler.storage.close()


if __name__ == "__main__":
    main()
