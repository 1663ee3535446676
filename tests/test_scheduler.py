import threading
import time
from unittest import mock

import pytest

from scheduler import MANUAL_TRAINING_JOB_ID, TRAINING_JOB_ID, TrainingScheduler


@pytest.fixture
def training_service():
    return mock.Mock()


def test_job_records_result(training_service):
    training_service.run_training_pipeline.return_value = {"success": True, "example_count": 12}
    scheduler = TrainingScheduler(training_service)

    result = scheduler.run_training_job()

    assert result == {"success": True, "example_count": 12}
    assert scheduler.last_result == result
    assert scheduler.last_run_at is not None


def test_job_survives_pipeline_crash(training_service):
    training_service.run_training_pipeline.side_effect = RuntimeError("boom")
    scheduler = TrainingScheduler(training_service)

    result = scheduler.run_training_job()

    assert result == {"success": False, "example_count": 0}
    assert not scheduler.is_training


def test_overlapping_runs_are_skipped(training_service):
    started, release = threading.Event(), threading.Event()

    def slow_pipeline():
        started.set()
        release.wait(5)
        return {"success": True, "example_count": 10}

    training_service.run_training_pipeline.side_effect = slow_pipeline
    scheduler = TrainingScheduler(training_service)

    worker = threading.Thread(target=scheduler.run_training_job)
    worker.start()
    started.wait(5)
    try:
        assert scheduler.is_training
        assert scheduler.run_training_job() is None
    finally:
        release.set()
        worker.join(5)

    assert training_service.run_training_pipeline.call_count == 1
    assert scheduler.last_result == {"success": True, "example_count": 10}


def test_start_registers_cron_job(training_service):
    scheduler = TrainingScheduler(training_service, cron_hours=6)
    scheduler.start()
    try:
        job = scheduler.scheduler.get_job(TRAINING_JOB_ID)
        assert job is not None
        assert job.max_instances == 1
        assert str(job.trigger.fields[5]) == "*/6"  # hour field
        status = scheduler.status()
        assert status["running"] is True
        assert status["next_run_at"] is not None
    finally:
        scheduler.shutdown()

    assert scheduler.status()["running"] is False


def _wait_for_result(scheduler, timeout=5.0):
    deadline = time.time() + timeout
    while scheduler.last_result is None and time.time() < deadline:
        time.sleep(0.01)
    return scheduler.last_result


def test_trigger_now_runs_on_a_worker_thread(training_service):
    pipeline_threads = []

    def pipeline():
        pipeline_threads.append(threading.current_thread())
        return {"success": True, "example_count": 15}

    training_service.run_training_pipeline.side_effect = pipeline
    scheduler = TrainingScheduler(training_service)
    scheduler.start()
    try:
        assert scheduler.trigger_now() is True
        assert _wait_for_result(scheduler) == {"success": True, "example_count": 15}
    finally:
        scheduler.shutdown()

    assert len(pipeline_threads) == 1
    assert pipeline_threads[0] is not threading.current_thread()


def test_trigger_now_refuses_while_training(training_service):
    scheduler = TrainingScheduler(training_service)
    scheduler.start()
    scheduler._lock.acquire()
    try:
        assert scheduler.trigger_now() is False
        assert scheduler.scheduler.get_job(MANUAL_TRAINING_JOB_ID) is None
    finally:
        scheduler._lock.release()
        scheduler.shutdown()

    training_service.run_training_pipeline.assert_not_called()
