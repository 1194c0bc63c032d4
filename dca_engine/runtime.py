from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Awaitable, Callable, Dict, Optional

from .config import settings


JobFunc = Callable[[], Awaitable[Any]]


@dataclass
class PeriodicJob:
    name: str
    interval_seconds: float
    func: JobFunc
    timeout_seconds: Optional[float] = None


@dataclass
class JobState:
    status: str = "idle"
    run_count: int = 0
    consecutive_errors: int = 0
    last_started: Optional[datetime] = None
    last_completed: Optional[datetime] = None
    last_error: Optional[str] = None
    next_run: Optional[datetime] = None


class PeriodicRunner:
    """In-process trigger for sweeps and reconciles when no external cron is used."""

    def __init__(
        self,
        *,
        logger: Optional[logging.Logger] = None,
        max_concurrency: int = 2,
        poll_seconds: float = 1.0,
    ) -> None:
        self.logger = logger or logging.getLogger("dca.runtime")
        self._jobs: Dict[str, PeriodicJob] = {}
        self._state: Dict[str, JobState] = {}
        self._loop_task: asyncio.Task | None = None
        self._inflight: set[asyncio.Task] = set()
        self._lock = asyncio.Lock()
        self._running = False
        self._max_concurrency = max_concurrency
        self._poll_seconds = poll_seconds

    # ---------------------------
    # Registration
    # ---------------------------
    def register(self, job: PeriodicJob) -> None:
        if job.name in self._jobs:
            raise ValueError(f"Job '{job.name}' already registered")
        self._jobs[job.name] = job
        self._state[job.name] = JobState(next_run=datetime.now(timezone.utc))
        self.logger.info("Registered job %s every %ss", job.name, job.interval_seconds)

    # ---------------------------
    # Lifecycle
    # ---------------------------
    async def start(self) -> None:
        async with self._lock:
            if self._running:
                return
            self._running = True
            self.logger.info("Periodic runner starting with %d jobs", len(self._jobs))
            self._loop_task = asyncio.create_task(self._run_loop(), name="dca-periodic-runner")

    async def stop(self) -> None:
        """Stop the loop and cancel in-flight jobs; stale claims are recovered by the next sweep."""
        async with self._lock:
            if not self._running:
                return
            self._running = False
            self.logger.info("Periodic runner stopping")

            if self._loop_task:
                self._loop_task.cancel()
                try:
                    await self._loop_task
                except asyncio.CancelledError:
                    pass
                self._loop_task = None

            for task in list(self._inflight):
                task.cancel()
            if self._inflight:
                await asyncio.gather(*self._inflight, return_exceptions=True)
            self._inflight.clear()

    @property
    def is_running(self) -> bool:
        return self._running

    def status(self) -> Dict[str, Dict[str, Any]]:
        return {
            name: {
                "status": state.status,
                "runCount": state.run_count,
                "consecutiveErrors": state.consecutive_errors,
                "lastError": state.last_error,
                "nextRun": state.next_run.isoformat() if state.next_run else None,
            }
            for name, state in self._state.items()
        }

    # ---------------------------
    # Scheduling and execution
    # ---------------------------
    async def _run_loop(self) -> None:
        try:
            while self._running:
                self._schedule_due_jobs()
                await asyncio.sleep(self._poll_seconds)
        except asyncio.CancelledError:
            return
        except Exception as exc:  # noqa: BLE001
            self.logger.error("Runner loop crashed: %s", exc, exc_info=True)
            self._running = False

    def _schedule_due_jobs(self) -> None:
        now = datetime.now(timezone.utc)
        for name, job in self._jobs.items():
            state = self._state[name]
            if state.status == "running":
                continue
            if state.next_run and state.next_run > now:
                continue
            if len(self._inflight) >= self._max_concurrency:
                break
            state.status = "running"
            task = asyncio.create_task(self._run_job(job, state), name=f"dca-job-{name}")
            self._inflight.add(task)
            task.add_done_callback(self._inflight.discard)

    async def _run_job(self, job: PeriodicJob, state: JobState) -> None:
        state.last_started = datetime.now(timezone.utc)
        timeout = job.timeout_seconds or max(job.interval_seconds * 5, settings.scheduler_order_timeout_seconds)
        try:
            await asyncio.wait_for(job.func(), timeout=timeout)
            state.last_error = None
            state.consecutive_errors = 0
        except asyncio.TimeoutError:
            state.last_error = f"job timed out after {timeout}s"
            state.consecutive_errors += 1
            self.logger.warning("Job %s timed out", job.name)
        except Exception as exc:  # noqa: BLE001
            state.last_error = str(exc)
            state.consecutive_errors += 1
            self.logger.warning("Job %s failed: %s", job.name, exc, exc_info=True)
        finally:
            state.run_count += 1
            state.last_completed = datetime.now(timezone.utc)
            backoff_multiplier = min(max(1, state.consecutive_errors), 5)
            state.next_run = state.last_completed + timedelta(seconds=job.interval_seconds * backoff_multiplier)
            state.status = "idle"
