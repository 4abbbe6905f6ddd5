import threading
import time
from dataclasses import replace

import pytest

from tiermem.services.jobs import JobScheduler, JobSchedulingError, JobState


class TestJobScheduler:

    def test_runs_registered_handler(self, scheduler):
        seen = []
        scheduler.register('record', lambda value: seen.append(value))

        job_id = scheduler.schedule('record', {'value': 42})

        assert scheduler.wait_idle(timeout=5)
        assert seen == [42]
        job = scheduler.get_job(job_id)
        assert job.state == JobState.COMPLETED
        assert job.attempts == 1

    def test_unknown_job_type(self, scheduler):
        with pytest.raises(JobSchedulingError):
            scheduler.schedule('nope')

    def test_unknown_queue(self, scheduler):
        scheduler.register('noop', lambda: None)
        with pytest.raises(JobSchedulingError):
            scheduler.schedule('noop', queue='urgent')

    def test_retries_until_success(self, scheduler):
        calls = []

        def flaky():
            calls.append(1)
            if len(calls) < 3:
                raise RuntimeError('transient')

        scheduler.register('flaky', flaky)
        job_id = scheduler.schedule('flaky')

        assert scheduler.wait_idle(timeout=5)
        assert len(calls) == 3
        assert scheduler.get_job(job_id).state == JobState.COMPLETED

    def test_discarded_after_max_attempts(self, scheduler):
        calls = []

        def broken():
            calls.append(1)
            raise RuntimeError('permanent')

        scheduler.register('broken', broken)
        job_id = scheduler.schedule('broken')

        assert scheduler.wait_idle(timeout=5)
        job = scheduler.get_job(job_id)
        assert len(calls) == scheduler.config.max_attempts
        assert job.state == JobState.DISCARDED
        assert job.last_error == 'permanent'

    def test_delayed_job(self, scheduler):
        done = threading.Event()
        scheduler.register('signal', done.set)

        started = time.monotonic()
        scheduler.schedule('signal', delay=0.2)

        assert done.wait(timeout=5)
        assert time.monotonic() - started >= 0.2

    def test_delayed_job_not_counted_while_waiting(self, scheduler):
        scheduler.register('noop', lambda: None)
        job_id = scheduler.schedule('noop', delay=60)
        assert scheduler.wait_idle(timeout=1)
        assert scheduler.get_job(job_id).state == JobState.SCHEDULED

    def test_recurring(self, scheduler):
        ticks = []
        scheduler.register('tick', lambda: ticks.append(1))

        name = scheduler.schedule_recurring('tick', 0.05)
        deadline = time.monotonic() + 5
        while len(ticks) < 2 and time.monotonic() < deadline:
            time.sleep(0.01)

        assert scheduler.cancel_recurring(name)
        assert len(ticks) >= 2

    def test_schedule_after_shutdown(self, scheduler):
        scheduler.register('noop', lambda: None)
        scheduler.shutdown()
        with pytest.raises(JobSchedulingError):
            scheduler.schedule('noop')

    def test_finished_jobs_are_pruned(self, job_config):
        scheduler = JobScheduler(replace(job_config, job_history=5))
        scheduler.register('noop', lambda: None)
        try:
            job_ids = [scheduler.schedule('noop') for _ in range(50)]
            assert scheduler.wait_idle(timeout=5)

            assert scheduler.job_count() == 5
            assert scheduler.get_job(job_ids[0]) is None
        finally:
            scheduler.shutdown()

    def test_waiting_jobs_are_not_pruned(self, job_config):
        scheduler = JobScheduler(replace(job_config, job_history=1))
        scheduler.register('noop', lambda: None)
        try:
            delayed = scheduler.schedule('noop', delay=60)
            for _ in range(5):
                scheduler.schedule('noop')
            assert scheduler.wait_idle(timeout=5)

            assert scheduler.get_job(delayed).state == JobState.SCHEDULED
            assert scheduler.job_count() == 2
        finally:
            scheduler.shutdown()

    def test_cancel_unknown_recurring(self, scheduler):
        assert not scheduler.cancel_recurring('tick-99')

    def test_shutdown_is_idempotent(self, scheduler):
        scheduler.shutdown()
        scheduler.shutdown()
        assert scheduler.wait_idle(timeout=1)
