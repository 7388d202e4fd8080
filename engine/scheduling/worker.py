"""
RQ Worker setup and management for the followup engine
"""
import logging
import multiprocessing
import signal
import time
from datetime import datetime, timezone
from typing import Optional

import redis
from rq import Worker, Queue
from rq_scheduler import Scheduler

from config.redis import create_redis_connection
from config.settings import EngineSettings

from .tasks import (
    QUEUE_NAME,
    cleanup_expired_conversations_job,
    expire_stale_followups_job,
    process_pending_followups_job,
)

logger = logging.getLogger("scheduling-worker")

RECURRING_JOBS = (
    process_pending_followups_job,
    expire_stale_followups_job,
    cleanup_expired_conversations_job,
)


class FollowupWorker:
    """
    Manages the RQ worker and the recurring followup jobs
    """

    def __init__(self, redis_conn: Optional[redis.Redis] = None, settings: Optional[EngineSettings] = None):
        """Initialize the worker with a Redis connection"""
        self.redis_conn = redis_conn or create_redis_connection()
        self.settings = settings or EngineSettings.from_env()
        self.queue = Queue(QUEUE_NAME, connection=self.redis_conn)
        self.scheduler = Scheduler(queue=self.queue, connection=self.redis_conn)
        self.worker: Optional[Worker] = None
        self.running = False

        # Set up signal handlers for graceful shutdown
        signal.signal(signal.SIGINT, self._signal_handler)
        signal.signal(signal.SIGTERM, self._signal_handler)

    def _signal_handler(self, signum, frame):
        """Handle shutdown signals gracefully"""
        logger.info(f"Received signal {signum}, shutting down gracefully...")
        self.stop()

    def start_worker(self, worker_name: Optional[str] = None):
        """
        Start the RQ worker to process followup jobs

        Args:
            worker_name: Optional name for the worker (defaults to timestamp-based)
        """
        if self.running:
            logger.warning("Worker is already running")
            return

        logger.info("Starting followup worker...")

        self.worker = Worker(
            [self.queue],
            connection=self.redis_conn,
            name=worker_name or f"followup-worker-{int(time.time())}"
        )

        self.running = True

        try:
            self.worker.work(with_scheduler=True, logging_level=logging.INFO)
        except KeyboardInterrupt:
            logger.info("Worker interrupted by user")
        finally:
            self.running = False
            logger.info("Worker stopped")

    def register_recurring_jobs(
        self,
        process_interval: Optional[int] = None,
        cleanup_interval: Optional[int] = None,
    ) -> int:
        """
        Register the periodic followup jobs with rq-scheduler

        Previously registered copies are cancelled first so restarts do not
        stack duplicate schedules.

        Returns:
            Number of recurring jobs registered
        """
        process_interval = process_interval or self.settings.process_interval_seconds
        cleanup_interval = cleanup_interval or self.settings.cleanup_interval_seconds

        recurring_names = {f"{func.__module__}.{func.__name__}" for func in RECURRING_JOBS}
        for existing in self.scheduler.get_jobs():
            if existing.func_name in recurring_names:
                self.scheduler.cancel(existing)

        intervals = {
            process_pending_followups_job: process_interval,
            expire_stale_followups_job: cleanup_interval,
            cleanup_expired_conversations_job: cleanup_interval,
        }
        for func, interval in intervals.items():
            self.scheduler.schedule(
                scheduled_time=datetime.now(timezone.utc),
                func=func,
                interval=interval,
                repeat=None,  # Repeat indefinitely
                queue_name=QUEUE_NAME,
            )
            logger.info(f"Registered {func.__name__} every {interval}s")

        return len(intervals)

    def stop(self):
        """Stop the worker gracefully"""
        if self.worker and self.running:
            logger.info("Stopping worker...")
            self.worker.request_stop()
            self.running = False
        else:
            logger.info("Worker not running")

    def get_worker_stats(self) -> dict:
        """Get statistics about the worker, queue and followup due-queue"""
        return {
            "queue_size": len(self.queue),
            "failed_jobs": len(self.queue.failed_job_registry),
            "finished_jobs": len(self.queue.finished_job_registry),
            "started_jobs": len(self.queue.started_job_registry),
            "scheduled_jobs": len(self.queue.scheduled_job_registry),
            "worker_count": len(Worker.all(connection=self.redis_conn)),
            "is_running": self.running,
            "due_queue_size": self.redis_conn.zcard(f"{self.settings.key_prefix}:schedule"),
        }

    def clear_failed_jobs(self):
        """Clear all failed jobs from the queue"""
        registry = self.queue.failed_job_registry
        job_ids = registry.get_job_ids()
        for job_id in job_ids:
            registry.remove(job_id, delete_job=True)
        logger.info(f"Cleared {len(job_ids)} failed jobs")
        return len(job_ids)


class FollowupSchedulerDaemon:
    """
    Standalone polling loop that enqueues the periodic jobs

    For deployments that run plain RQ workers without rq-scheduler.
    """

    def __init__(self, redis_conn: Optional[redis.Redis] = None, settings: Optional[EngineSettings] = None):
        self.redis_conn = redis_conn or create_redis_connection()
        self.settings = settings or EngineSettings.from_env()
        self.queue = Queue(QUEUE_NAME, connection=self.redis_conn)
        self.running = False
        self._last_cleanup = 0.0

        # Set up signal handlers
        signal.signal(signal.SIGINT, self._signal_handler)
        signal.signal(signal.SIGTERM, self._signal_handler)

    def _signal_handler(self, signum, frame):
        """Handle shutdown signals gracefully"""
        logger.info(f"Scheduler daemon received signal {signum}, shutting down...")
        self.running = False

    def tick(self, now: Optional[float] = None) -> int:
        """
        Enqueue whatever is due this tick

        Returns:
            Number of jobs enqueued
        """
        now = time.monotonic() if now is None else now
        enqueued = 0

        self.queue.enqueue(process_pending_followups_job)
        enqueued += 1

        if now - self._last_cleanup >= self.settings.cleanup_interval_seconds:
            self.queue.enqueue(expire_stale_followups_job)
            self.queue.enqueue(cleanup_expired_conversations_job)
            self._last_cleanup = now
            enqueued += 2

        return enqueued

    def run(self, check_interval: Optional[int] = None):
        """
        Run the scheduler daemon

        Args:
            check_interval: How often to enqueue followup processing (seconds)
        """
        check_interval = check_interval or self.settings.process_interval_seconds
        logger.info(f"Starting followup scheduler daemon (every {check_interval}s)")
        self.running = True
        self._last_cleanup = float("-inf")

        while self.running:
            try:
                enqueued = self.tick()
                logger.debug(f"Enqueued {enqueued} followup jobs")
            except redis.RedisError as e:
                logger.error(f"Error in scheduler daemon: {e}", exc_info=True)
            time.sleep(check_interval)

        logger.info("Scheduler daemon stopped")


def _run_worker(worker_name: Optional[str], process_interval: Optional[int], cleanup_interval: Optional[int]):
    worker = FollowupWorker()
    worker.register_recurring_jobs(process_interval, cleanup_interval)
    worker.start_worker(worker_name=worker_name)


def _run_plain_worker(worker_name: Optional[str]):
    FollowupWorker().start_worker(worker_name=worker_name)


def _run_daemon(check_interval: Optional[int]):
    FollowupSchedulerDaemon().run(check_interval=check_interval)


def main():
    """
    Main function for running worker or scheduler daemon
    """
    import argparse

    parser = argparse.ArgumentParser(description="Followup engine worker")
    parser.add_argument(
        "mode",
        choices=["worker", "scheduler", "both"],
        help="Mode to run: worker (RQ worker + recurring jobs), scheduler (polling daemon), or both"
    )
    parser.add_argument(
        "--check-interval",
        type=int,
        default=None,
        help="Followup processing interval in seconds (default: PROCESS_INTERVAL_SECONDS or 60)"
    )
    parser.add_argument(
        "--cleanup-interval",
        type=int,
        default=None,
        help="Expiry/cleanup interval in seconds (default: CLEANUP_INTERVAL_SECONDS or 900)"
    )
    parser.add_argument(
        "--worker-name",
        help="Name for the worker process"
    )
    parser.add_argument(
        "--log-level",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        default="INFO",
        help="Logging level"
    )

    args = parser.parse_args()

    # Set up logging
    logging.basicConfig(
        level=getattr(logging, args.log_level),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
    )

    if args.mode == "worker":
        _run_worker(args.worker_name, args.check_interval, args.cleanup_interval)

    elif args.mode == "scheduler":
        _run_daemon(args.check_interval)

    elif args.mode == "both":
        # The worker only executes jobs here; the daemon does the enqueueing
        worker_process = multiprocessing.Process(target=_run_plain_worker, args=(args.worker_name,))
        scheduler_process = multiprocessing.Process(target=_run_daemon, args=(args.check_interval,))

        try:
            worker_process.start()
            scheduler_process.start()

            worker_process.join()
            scheduler_process.join()

        except KeyboardInterrupt:
            logger.info("Shutting down both processes...")
            worker_process.terminate()
            scheduler_process.terminate()
            worker_process.join()
            scheduler_process.join()


if __name__ == "__main__":
    main()
