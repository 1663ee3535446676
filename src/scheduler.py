"""
Recurring model retraining.

The training job is the only writer of the model checkpoint. Runs always
execute on the scheduler's worker threads, never on a request thread, and are
serialized by a lock shared between the cron job and manual triggers.
"""

import logging
import threading
import time
from datetime import datetime, timezone
from typing import Dict, Optional

from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.cron import CronTrigger

from config import TRAINING_CRON_HOURS

logger = logging.getLogger(__name__)

TRAINING_JOB_ID = "recommendation-training"
MANUAL_TRAINING_JOB_ID = "recommendation-training-manual"


class TrainingScheduler:
    def __init__(self, training_service, cron_hours: int = TRAINING_CRON_HOURS,
                 scheduler: Optional[BackgroundScheduler] = None):
        self.training_service = training_service
        self.cron_hours = cron_hours
        self.scheduler = scheduler or BackgroundScheduler(timezone="UTC")
        self.last_result: Optional[Dict] = None
        self.last_run_at: Optional[datetime] = None
        self._lock = threading.Lock()

    @property
    def is_training(self) -> bool:
        return self._lock.locked()

    def run_training_job(self) -> Optional[Dict]:
        """
        Run the pipeline once. Never raises, so one bad run cannot stop the schedule.

        Returns:
            The pipeline result, or None if another run is already in progress
        """
        if not self._lock.acquire(blocking=False):
            logger.warning("Training already in progress, skipping run")
            return None

        start_time = time.time()
        try:
            try:
                result = self.training_service.run_training_pipeline()
            except Exception as e:
                logger.exception(f"Training job crashed: {e}")
                result = {"success": False, "example_count": 0}

            self.last_result = result
            self.last_run_at = datetime.now(timezone.utc)
        finally:
            self._lock.release()

        logger.info(f"Training job finished in {time.time() - start_time:.3f}s: {result}")
        return result

    def start(self):
        self.scheduler.add_job(
            self.run_training_job,
            CronTrigger(hour=f"*/{self.cron_hours}", minute=0),
            id=TRAINING_JOB_ID,
            max_instances=1,
            coalesce=True,
            replace_existing=True,
        )
        self.scheduler.start()
        logger.info(f"Training scheduler started (every {self.cron_hours}h)")

    def shutdown(self):
        if self.scheduler.running:
            self.scheduler.shutdown(wait=False)
            logger.info("Training scheduler shut down")

    def trigger_now(self) -> bool:
        """
        Queue a one-off training run on the scheduler.

        Returns:
            False if a run is already in progress, True once a run is queued
        """
        if self.is_training:
            logger.warning("Training already in progress, not queueing another run")
            return False

        self.scheduler.add_job(
            self.run_training_job,
            id=MANUAL_TRAINING_JOB_ID,
            max_instances=1,
            replace_existing=True,
        )
        logger.info("Manual training run queued")
        return True

    def status(self) -> Dict:
        job = self.scheduler.get_job(TRAINING_JOB_ID) if self.scheduler.running else None
        next_run = job.next_run_time if job else None
        return {
            "running": self.scheduler.running,
            "training": self.is_training,
            "next_run_at": next_run.isoformat() if next_run else None,
            "last_run_at": self.last_run_at.isoformat() if self.last_run_at else None,
            "last_result": self.last_result,
        }
