from datetime import timedelta
from unittest.mock import Mock, patch

import httpx
import pytest

from database import RecordStore, utcnow
from job_store import JobStore
from worker_task import POLLER_JOB_PREFIX, POLLER_QUEUE, poll_pending_stages, run_poller, schedule_poller
from conftest import FUNCTIONS_BASE_URL, FakeSite, TEST_API_KEY


@pytest.fixture
def jobs(session_factory):
    return JobStore(RecordStore(session_factory))


def make_stale(jobs, stage="generate-report", attempts=0):
    job = jobs.create_job("p1")
    jobs.set_next_stage(job["id"], stage, {"project_id": "p1", "job_id": job["id"]})
    jobs.records.update("jobs", {
        "next_stage_at": utcnow() - timedelta(minutes=10),
        "next_stage_attempts": attempts,
    }, {"id": job["id"]})
    return job["id"]


class TestStagePoller:

    def test_redispatches_stale_pointer(self, settings, jobs):
        job_id = make_stale(jobs)
        site = FakeSite()

        summary = poll_pending_stages(settings, transport=site.transport)

        assert summary == {"dispatched": 1, "failed": 0, "abandoned": 0, "skipped": 0}
        stage, payload, headers = site.triggers[0]
        assert stage == "generate-report"
        assert payload == {"project_id": "p1", "job_id": job_id}
        assert headers["access_token"] == TEST_API_KEY
        assert site.requests[0][1] == f"{FUNCTIONS_BASE_URL}/generate-report"
        assert jobs.get_job(job_id)["next_stage_attempts"] == 1

    def test_fresh_pointer_is_left_alone(self, settings, jobs):
        job = jobs.create_job("p1")
        jobs.set_next_stage(job["id"], "perform-audit", {"job_id": job["id"]})
        site = FakeSite()

        summary = poll_pending_stages(settings, transport=site.transport)

        assert summary["dispatched"] == 0
        assert site.triggers == []

    def test_gives_up_after_max_attempts(self, settings, jobs):
        job_id = make_stale(jobs, attempts=settings.stage_dispatch_max_attempts)
        site = FakeSite()

        summary = poll_pending_stages(settings, transport=site.transport)

        assert summary["abandoned"] == 1
        assert site.triggers == []
        assert jobs.get_job(job_id)["next_stage"] is None
        assert jobs.get_logs(job_id)[-1]["level"] == "error"

    def test_transport_errors_are_counted(self, settings, jobs):
        job_id = make_stale(jobs)

        def refuse(request):
            raise httpx.ConnectError("connection refused", request=request)

        summary = poll_pending_stages(settings, transport=httpx.MockTransport(refuse))

        assert summary["failed"] == 1
        # Pointer stays for the next poll
        assert jobs.get_job(job_id)["next_stage"] == "generate-report"

    def test_concurrent_poller_with_stale_read_does_not_redispatch(self, settings, jobs, monkeypatch):
        job_id = make_stale(jobs)
        snapshot = jobs.due_stages(settings.stage_dispatch_grace_seconds)
        site = FakeSite()

        first = poll_pending_stages(settings, transport=site.transport)
        # Second poller read the row before the first one claimed it
        monkeypatch.setattr(JobStore, "due_stages", lambda self, grace_seconds: snapshot)
        second = poll_pending_stages(settings, transport=site.transport)

        assert first["dispatched"] == 1
        assert second == {"dispatched": 0, "failed": 0, "abandoned": 0, "skipped": 1}
        assert len(site.triggers) == 1
        assert jobs.get_job(job_id)["next_stage_attempts"] == 1

    def test_no_base_url_skips(self, settings):
        settings = settings.model_copy(update={"functions_base_url": None})
        assert poll_pending_stages(settings) == {"dispatched": 0, "failed": 0, "abandoned": 0, "skipped": 0}


class TestScheduling:

    def idle_queue(self, scheduled=(), queued=()):
        queue = Mock()
        queue.scheduled_job_registry.get_job_ids.return_value = list(scheduled)
        queue.get_job_ids.return_value = list(queued)
        return queue

    def test_schedule_poller_enqueues_delayed_run(self):
        queue = self.idle_queue()
        schedule_poller(queue, 30)

        queue.enqueue_in.assert_called_once()
        args, kwargs = queue.enqueue_in.call_args
        assert args == (timedelta(seconds=30), run_poller)
        assert kwargs["job_id"].startswith(POLLER_JOB_PREFIX)

    def test_schedule_poller_skips_when_poll_already_scheduled(self):
        queue = self.idle_queue(scheduled=[f"{POLLER_JOB_PREFIX}-abc123"])
        assert schedule_poller(queue, 0) is None
        queue.enqueue_in.assert_not_called()

    def test_schedule_poller_skips_when_poll_already_queued(self):
        queue = self.idle_queue(queued=["unrelated-job", f"{POLLER_JOB_PREFIX}-def456"])
        assert schedule_poller(queue, 0) is None
        queue.enqueue_in.assert_not_called()

    def test_unrelated_jobs_do_not_block_scheduling(self):
        queue = self.idle_queue(scheduled=["report-export-1"])
        schedule_poller(queue, 5)
        queue.enqueue_in.assert_called_once()

    @patch('worker_task.Queue')
    @patch('worker_task.schedule_poller')
    @patch('worker_task.get_current_job')
    @patch('worker_task.poll_pending_stages')
    @patch('worker_task.Settings')
    def test_run_poller_reschedules_even_on_failure(self, mock_settings, mock_poll, mock_job, mock_schedule,
                                                    mock_queue):
        mock_settings.return_value = Mock(poll_interval_seconds=15, redis_url="redis://localhost:6399/0")
        mock_poll.side_effect = Exception("database unreachable")
        mock_job.return_value = Mock(origin=POLLER_QUEUE, connection=Mock())

        with pytest.raises(Exception):
            run_poller()

        mock_schedule.assert_called_once()
        assert mock_schedule.call_args[0][1] == 15
