"""
Tests for worker functionality
"""
import logging
import pytest
from unittest.mock import MagicMock, Mock, patch

from config.settings import EngineSettings
from scheduling.tasks import (
    QUEUE_NAME,
    cleanup_expired_conversations_job,
    expire_stale_followups_job,
    process_pending_followups_job,
)
from scheduling.worker import FollowupSchedulerDaemon, FollowupWorker


@pytest.fixture
def worker_settings():
    return EngineSettings(process_interval_seconds=60, cleanup_interval_seconds=900)


@pytest.fixture
def followup_worker(worker_settings):
    with patch("scheduling.worker.signal"), \
            patch("scheduling.worker.Queue") as mock_queue, \
            patch("scheduling.worker.Scheduler") as mock_scheduler:
        worker = FollowupWorker(redis_conn=Mock(), settings=worker_settings)
        worker.mock_queue_class = mock_queue
        worker.mock_scheduler_class = mock_scheduler
        yield worker


class TestFollowupWorker:
    """Tests for FollowupWorker class"""

    def test_init(self, followup_worker):
        followup_worker.mock_queue_class.assert_called_once_with(QUEUE_NAME, connection=followup_worker.redis_conn)
        followup_worker.mock_scheduler_class.assert_called_once_with(
            queue=followup_worker.queue, connection=followup_worker.redis_conn
        )
        assert followup_worker.running is False
        assert followup_worker.worker is None

    @patch("scheduling.worker.Worker")
    def test_start_worker(self, mock_worker_class, followup_worker):
        mock_worker_instance = Mock()
        mock_worker_class.return_value = mock_worker_instance

        followup_worker.start_worker("test-worker")

        mock_worker_class.assert_called_once_with(
            [followup_worker.queue], connection=followup_worker.redis_conn, name="test-worker"
        )
        mock_worker_instance.work.assert_called_once_with(with_scheduler=True, logging_level=logging.INFO)
        assert followup_worker.running is False

    def test_register_recurring_jobs(self, followup_worker):
        followup_worker.scheduler.get_jobs.return_value = []

        registered = followup_worker.register_recurring_jobs()

        assert registered == 3
        calls = {c.kwargs["func"]: c.kwargs for c in followup_worker.scheduler.schedule.call_args_list}
        assert calls[process_pending_followups_job]["interval"] == 60
        assert calls[expire_stale_followups_job]["interval"] == 900
        assert calls[cleanup_expired_conversations_job]["interval"] == 900
        assert all(c["repeat"] is None for c in calls.values())
        assert all(c["queue_name"] == QUEUE_NAME for c in calls.values())

    def test_register_replaces_previous_schedules(self, followup_worker):
        stale = Mock(func_name="scheduling.tasks.process_pending_followups_job")
        unrelated = Mock(func_name="reports.nightly_export")
        followup_worker.scheduler.get_jobs.return_value = [stale, unrelated]

        followup_worker.register_recurring_jobs(process_interval=30, cleanup_interval=300)

        followup_worker.scheduler.cancel.assert_called_once_with(stale)
        intervals = [c.kwargs["interval"] for c in followup_worker.scheduler.schedule.call_args_list]
        assert intervals == [30, 300, 300]

    def test_stop(self, followup_worker):
        followup_worker.worker = Mock()
        followup_worker.running = True

        followup_worker.stop()

        followup_worker.worker.request_stop.assert_called_once()
        assert followup_worker.running is False

    def test_get_worker_stats(self, followup_worker):
        queue = MagicMock()
        queue.__len__.return_value = 5
        queue.failed_job_registry = MagicMock(__len__=Mock(return_value=2))
        queue.finished_job_registry = MagicMock(__len__=Mock(return_value=10))
        queue.started_job_registry = MagicMock(__len__=Mock(return_value=1))
        queue.scheduled_job_registry = MagicMock(__len__=Mock(return_value=3))
        followup_worker.queue = queue
        followup_worker.redis_conn.zcard.return_value = 7

        with patch("scheduling.worker.Worker.all", return_value=[Mock(), Mock()]):
            stats = followup_worker.get_worker_stats()

        assert stats == {
            "queue_size": 5,
            "failed_jobs": 2,
            "finished_jobs": 10,
            "started_jobs": 1,
            "scheduled_jobs": 3,
            "worker_count": 2,
            "is_running": False,
            "due_queue_size": 7,
        }
        followup_worker.redis_conn.zcard.assert_called_once_with("followup:schedule")

    def test_clear_failed_jobs(self, followup_worker):
        registry = Mock()
        registry.get_job_ids.return_value = ["job-1", "job-2"]
        followup_worker.queue = Mock(failed_job_registry=registry)

        assert followup_worker.clear_failed_jobs() == 2
        registry.remove.assert_any_call("job-1", delete_job=True)


class TestFollowupSchedulerDaemon:

    @pytest.fixture
    def daemon(self, worker_settings):
        with patch("scheduling.worker.signal"), patch("scheduling.worker.Queue"):
            yield FollowupSchedulerDaemon(redis_conn=Mock(), settings=worker_settings)

    def test_first_tick_enqueues_everything(self, daemon):
        daemon._last_cleanup = float("-inf")

        assert daemon.tick(now=1000.0) == 3
        enqueued = [c.args[0] for c in daemon.queue.enqueue.call_args_list]
        assert enqueued == [
            process_pending_followups_job,
            expire_stale_followups_job,
            cleanup_expired_conversations_job,
        ]

    def test_cleanup_waits_for_interval(self, daemon):
        daemon._last_cleanup = float("-inf")
        daemon.tick(now=1000.0)
        daemon.queue.enqueue.reset_mock()

        assert daemon.tick(now=1060.0) == 1
        assert daemon.tick(now=1900.0) == 3

    def test_run_survives_redis_errors(self, daemon):
        import redis

        def stop_after_sleep(_):
            daemon.running = False

        daemon.queue.enqueue.side_effect = redis.ConnectionError("down")

        with patch("scheduling.worker.time.sleep", side_effect=stop_after_sleep):
            daemon.run(check_interval=5)

        assert daemon.running is False
        daemon.queue.enqueue.assert_called()
