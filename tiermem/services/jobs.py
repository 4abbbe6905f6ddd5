"""
Background job scheduler for memory maintenance.

Jobs run on APScheduler with one thread pool executor per queue. A job may be delayed, is retried with
exponential backoff and jitter when its handler raises, and is discarded with an error log after
max_attempts. Handlers must therefore be idempotent or self-correcting.
"""

import random
import threading
from collections import OrderedDict
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Callable, Dict, Optional

from apscheduler.executors.pool import ThreadPoolExecutor
from apscheduler.jobstores.base import JobLookupError
from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.date import DateTrigger
from apscheduler.triggers.interval import IntervalTrigger

from ..models.core import new_id
from ..utils.config import JobConfig
from ..utils.logging_config import get_logger
from ..utils.timestamp_utils import utc_now

logger = get_logger(__name__)

QUEUES = ('memory', 'default')


class JobSchedulingError(Exception):
    """Custom exception for job scheduling errors."""
    pass


class JobState(str, Enum):
    SCHEDULED = 'scheduled'
    RUNNING = 'running'
    RETRYING = 'retrying'
    COMPLETED = 'completed'
    DISCARDED = 'discarded'


@dataclass
class Job:
    job_type: str
    args: Dict[str, Any]
    queue: str
    id: str = field(default_factory=new_id)
    state: JobState = JobState.SCHEDULED
    attempts: int = 0
    last_error: Optional[str] = None
    scheduled_at: datetime = field(default_factory=utc_now)


class JobScheduler:
    """APScheduler-backed job queue with delayed execution and bounded retries."""

    def __init__(self, config: Optional[JobConfig] = None):
        """
        Initialize the scheduler.

        Args:
            config: JobConfig instance, uses default if None
        """
        if config is None:
            from ..utils.config import config as default_config
            config = default_config.jobs

        self.config = config
        executors = {
            'memory': ThreadPoolExecutor(config.memory_queue_workers),
            'default': ThreadPoolExecutor(config.default_queue_workers),
        }
        # Late jobs still run; a backlog of missed recurring ticks collapses into one
        job_defaults = {'misfire_grace_time': None, 'coalesce': True, 'max_instances': 1}
        self._scheduler = BackgroundScheduler(executors=executors, job_defaults=job_defaults, timezone=timezone.utc)
        self._handlers: Dict[str, Callable[..., Any]] = {}
        # Finished jobs are kept for inspection up to job_history, oldest dropped first
        self._jobs: Dict[str, Job] = {}
        self._finished: 'OrderedDict[str, None]' = OrderedDict()
        self._recurring_count = 0
        self._pending = 0
        self._cond = threading.Condition()
        self._closed = False

        self._scheduler.start()
        logger.info(f'Initialized JobScheduler with queues {list(QUEUES)}')

    def register(self, job_type: str, handler: Callable[..., Any]) -> None:
        """Register the callable executed for job_type; it receives the job args as keyword arguments."""
        self._handlers[job_type] = handler
        logger.debug(f'Registered handler for job type {job_type}')

    def schedule(self,
                 job_type: str,
                 args: Optional[Dict[str, Any]] = None,
                 queue: str = 'memory',
                 delay: Optional[float] = None) -> str:
        """
        Schedule a job.

        Args:
            job_type: Registered job type
            args: Keyword arguments passed to the handler
            queue: Queue name ('memory' or 'default')
            delay: Seconds to wait before the first attempt

        Returns:
            Job id

        Raises:
            JobSchedulingError: For unknown job types or queues, or after shutdown
        """
        if job_type not in self._handlers:
            raise JobSchedulingError(f'No handler registered for job type {job_type!r}')
        if queue not in QUEUES:
            raise JobSchedulingError(f'Unknown queue {queue!r}')
        if delay is not None and delay < 0:
            raise JobSchedulingError(f'delay must be non-negative, got {delay}')

        job = Job(job_type=job_type, args=dict(args or {}), queue=queue)
        with self._cond:
            if self._closed:
                raise JobSchedulingError('Scheduler has been shut down')
            self._jobs[job.id] = job
            # Jobs waiting out their initial delay do not hold wait_idle()
            counted = not delay
            if counted:
                self._pending += 1

        self._submit(job, delay or 0.0, counted)
        logger.debug(f'Scheduled job {job.id} ({job_type}) on {queue} queue, delay={delay}')
        return job.id

    def _submit(self, job: Job, delay: float, counted: bool) -> None:
        with self._cond:
            closed = self._closed
        if closed:
            self._discard(job, 'scheduler shut down', counted)
            return
        run_date = utc_now() + timedelta(seconds=delay)
        try:
            self._scheduler.add_job(self._run,
                                    trigger=DateTrigger(run_date=run_date, timezone=timezone.utc),
                                    args=[job, counted],
                                    id=f'{job.id}-{job.attempts}',
                                    name=job.job_type,
                                    executor=job.queue)
        except Exception as e:
            self._discard(job, str(e), counted)

    def _discard(self, job: Job, reason: str, counted: bool) -> None:
        if not counted:
            with self._cond:
                self._pending += 1
        logger.warning(f'Discarded job {job.id} ({job.job_type}): {reason}')
        self._finish(job, JobState.DISCARDED)

    def _run(self, job: Job, counted: bool) -> None:
        with self._cond:
            closed = self._closed
        if closed:
            self._discard(job, 'scheduler shut down', counted)
            return
        if not counted:
            with self._cond:
                self._pending += 1

        job.attempts += 1
        job.state = JobState.RUNNING
        handler = self._handlers[job.job_type]

        try:
            handler(**job.args)
        except Exception as e:
            job.last_error = str(e)
            if job.attempts < self.config.max_attempts:
                # Exponential backoff with jitter
                delay = self.config.retry_delay * (2**(job.attempts - 1)) + random.uniform(0, self.config.retry_delay)
                job.state = JobState.RETRYING
                logger.warning(f'Job {job.id} ({job.job_type}) failed on attempt {job.attempts}: {e}. '
                               f'Retrying in {delay:.2f}s')
                self._submit(job, delay, counted=True)
            else:
                logger.error(f'Job {job.id} ({job.job_type}) discarded after {job.attempts} attempts: {e}')
                self._finish(job, JobState.DISCARDED)
            return

        logger.debug(f'Job {job.id} ({job.job_type}) completed')
        self._finish(job, JobState.COMPLETED)

    def _finish(self, job: Job, state: JobState) -> None:
        with self._cond:
            job.state = state
            self._pending -= 1
            self._finished[job.id] = None
            while len(self._finished) > self.config.job_history:
                expired, _ = self._finished.popitem(last=False)
                self._jobs.pop(expired, None)
            self._cond.notify_all()

    def schedule_recurring(self,
                           job_type: str,
                           interval: float,
                           args: Optional[Dict[str, Any]] = None,
                           queue: str = 'default') -> str:
        """
        Schedule job_type every interval seconds until cancelled.

        Each tick enqueues a regular job, so recurring work gets the same retry policy.

        Returns:
            Name of the recurring task, usable with cancel_recurring()
        """
        if job_type not in self._handlers:
            raise JobSchedulingError(f'No handler registered for job type {job_type!r}')
        if interval <= 0:
            raise JobSchedulingError(f'interval must be positive, got {interval}')

        with self._cond:
            if self._closed:
                raise JobSchedulingError('Scheduler has been shut down')
            self._recurring_count += 1
            name = f'{job_type}-{self._recurring_count}'

        self._scheduler.add_job(self._tick,
                                trigger=IntervalTrigger(seconds=interval, timezone=timezone.utc),
                                args=[name, job_type, args, queue],
                                id=name,
                                name=name,
                                executor='default')
        logger.info(f'Scheduled recurring task {name} every {interval}s')
        return name

    def _tick(self, name: str, job_type: str, args: Optional[Dict[str, Any]], queue: str) -> None:
        try:
            self.schedule(job_type, args, queue=queue)
        except JobSchedulingError as e:
            logger.error(f'Recurring task {name} could not schedule {job_type}: {e}')

    def cancel_recurring(self, name: str) -> bool:
        try:
            self._scheduler.remove_job(name)
        except JobLookupError:
            return False
        logger.info(f'Cancelled recurring task {name}')
        return True

    def get_job(self, job_id: str) -> Optional[Job]:
        with self._cond:
            job = self._jobs.get(job_id)
            return replace(job) if job else None

    def job_count(self) -> int:
        """Number of jobs currently tracked, unfinished plus retained history."""
        with self._cond:
            return len(self._jobs)

    def wait_idle(self, timeout: Optional[float] = None) -> bool:
        """Block until no job is queued, running or waiting to retry. Jobs still in their initial delay are not counted.

        Returns:
            True if the scheduler went idle, False on timeout
        """
        with self._cond:
            return self._cond.wait_for(lambda: self._pending == 0, timeout)

    def shutdown(self, wait: bool = True) -> None:
        """Stop accepting jobs, drop pending triggers and stop the worker pools."""
        with self._cond:
            if self._closed:
                return
            self._closed = True
        self._scheduler.shutdown(wait=wait)
        # Dropped retries never report back
        with self._cond:
            self._pending = 0
            self._cond.notify_all()
        logger.info('JobScheduler shut down')
