"""
Unit Tests for AuditWorker
Lease gate, retry/backoff, completion and the bounded worker pool
"""
import asyncio
from unittest.mock import AsyncMock, MagicMock

import pytest

from app.domain.exceptions import JobFailure
from app.domain.models.call_audit import TranscriptionResult
from app.domain.models.campaign import CampaignConfig, CampaignJobStatus, CampaignStatus, JobInput
from app.domain.services.campaign_manager import CampaignManager
from app.workers.audit_worker import AuditWorker, JobOutcome


async def create_campaign(manager, urls, **kwargs):
    kwargs.setdefault("apply_rate_limit", False)
    return await manager.create(
        "March QA", "ps-1", [JobInput(audio_url=url) for url in urls], **kwargs
    )


class TestRetryAndCompletion:
    """Tests for backoff and the campaign completion law"""

    @pytest.mark.asyncio
    async def test_partial_success_campaign(self, manager, worker, queue, store, run_queue):
        """One good recording and one that never downloads"""
        campaign = await create_campaign(manager, ["https://cdn/a-80.wav", "https://cdn/broken.wav"])

        outcomes = await run_queue(worker, queue)

        assert outcomes.count(JobOutcome.COMPLETED) == 1
        assert outcomes.count(JobOutcome.RETRIED) == 3
        assert outcomes.count(JobOutcome.FAILED) == 1
        assert [(i, d) for i, d, counted in queue.requeues if counted] == [(1, 1000), (1, 2000), (1, 4000)]

        finished = await store.get_campaign(campaign.id)
        assert finished.status == CampaignStatus.COMPLETED
        assert finished.completed_jobs == 1
        assert finished.failed_jobs == 1
        assert finished.processing_jobs == 0
        assert finished.stats.avg_score == 80.0
        assert finished.completed_at is not None
        assert finished.jobs[1].error is not None

        audits = await store.list_audits(campaign.id)
        assert [a.job_index for a in audits] == [0]

    @pytest.mark.asyncio
    async def test_all_jobs_failing_fails_campaign(self, manager, worker, queue, store, run_queue):
        campaign = await create_campaign(manager, ["https://cdn/broken-1.wav", "https://cdn/broken-2.wav"])

        await run_queue(worker, queue)

        finished = await store.get_campaign(campaign.id)
        assert finished.status == CampaignStatus.FAILED
        assert finished.failed_jobs == 2

    @pytest.mark.asyncio
    async def test_stats_over_completed_jobs(self, manager, worker, queue, store, run_queue):
        campaign = await create_campaign(
            manager, ["https://cdn/a-90.wav", "https://cdn/b-70.wav", "https://cdn/c-50.wav"]
        )

        await run_queue(worker, queue)

        finished = await store.get_campaign(campaign.id)
        assert finished.status == CampaignStatus.COMPLETED
        assert finished.stats.avg_score == 70.0
        assert finished.stats.total_tokens == 360

    @pytest.mark.asyncio
    async def test_permanent_failure_skips_retries(self, manager, worker, queue, store, transcriber, run_queue):
        """Silent recordings are not retried"""
        transcriber.transcribe.side_effect = JobFailure("No speech detected in recording")
        campaign = await create_campaign(manager, ["https://cdn/silent.wav"])

        outcomes = await run_queue(worker, queue)

        assert outcomes == [JobOutcome.FAILED]
        assert queue.requeues == []
        assert (await store.get_campaign(campaign.id)).status == CampaignStatus.FAILED

    @pytest.mark.asyncio
    async def test_missing_parameter_set_fails_job(self, manager, worker, queue, store, run_queue):
        campaign = await create_campaign(manager, ["https://cdn/a-80.wav"])
        store.remove_parameter_set("ps-1")

        outcomes = await run_queue(worker, queue)

        assert outcomes == [JobOutcome.FAILED]
        failed = await store.get_campaign(campaign.id)
        assert "not found" in failed.jobs[0].error

    @pytest.mark.asyncio
    async def test_timeout_is_retried(self, manager, worker, queue, transcriber, settings):
        settings.transcription_timeout_seconds = 0.01

        async def slow(audio_url):
            await asyncio.sleep(1)

        transcriber.transcribe.side_effect = slow
        await create_campaign(manager, ["https://cdn/a-80.wav"])

        outcome = await worker.process_job(await queue.lease())

        assert outcome == JobOutcome.RETRIED
        assert queue.requeues == [(0, 1000, True)]

    @pytest.mark.asyncio
    async def test_scoring_error_after_processing_is_retried(self, manager, worker, queue, store, scorer, run_queue):
        """A job left in processing by a failed attempt still completes once"""
        score = scorer.audit_call.side_effect
        calls = []

        async def flaky(transcript, parameters, language="en"):
            calls.append(transcript)
            if len(calls) == 1:
                raise RuntimeError("provider overloaded")
            return await score(transcript, parameters, language)

        scorer.audit_call.side_effect = flaky
        campaign = await create_campaign(manager, ["https://cdn/a-80.wav"])

        outcomes = await run_queue(worker, queue)

        assert outcomes == [JobOutcome.RETRIED, JobOutcome.COMPLETED]
        finished = await store.get_campaign(campaign.id)
        assert finished.completed_jobs == 1
        assert finished.processing_jobs == 0


class TestLeaseGate:
    """Tests for lease-time checks"""

    @pytest.mark.asyncio
    async def test_redelivery_is_idempotent(self, manager, worker, queue, store):
        campaign = await create_campaign(manager, ["https://cdn/a-80.wav", "https://cdn/b-60.wav"])
        job = await queue.lease()
        duplicate = job.model_copy()

        assert await worker.process_job(job) == JobOutcome.COMPLETED
        assert await worker.process_job(duplicate) == JobOutcome.DROPPED

        updated = await store.get_campaign(campaign.id)
        assert updated.completed_jobs == 1
        assert len(await store.list_audits(campaign.id)) == 1

    @pytest.mark.asyncio
    async def test_concurrent_redelivery_settles_once(self, manager, queue, store, transcriber, scorer, settings):
        """Two copies of one lease in flight at once: one completion, one report"""
        reporter = MagicMock()
        storage = MagicMock()
        storage.delete = AsyncMock(return_value=True)
        worker = AuditWorker(
            manager, transcriber, scorer, audio_storage=storage, usage_reporter=reporter, settings=settings
        )
        campaign = await create_campaign(manager, ["https://cdn/a-80.wav"])
        job = await queue.lease()
        release = asyncio.Event()

        async def held(audio_url):
            await release.wait()
            return TranscriptionResult(transcript=f"Agent: hello ({audio_url})", language="en")

        transcriber.transcribe.side_effect = held
        tasks = [
            asyncio.create_task(worker.process_job(job)),
            asyncio.create_task(worker.process_job(job.model_copy())),
        ]
        for _ in range(100):
            if transcriber.transcribe.call_count == 2:
                break
            await asyncio.sleep(0)
        assert transcriber.transcribe.call_count == 2
        release.set()

        outcomes = await asyncio.gather(*tasks)

        assert sorted(outcomes) == [JobOutcome.COMPLETED, JobOutcome.DROPPED]
        assert reporter.report_in_background.call_count == 1
        assert storage.delete.call_count == 1
        assert (await worker.get_status())["jobs_completed"] == 1
        updated = await store.get_campaign(campaign.id)
        assert updated.completed_jobs == 1
        assert updated.status == CampaignStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_paused_campaign_defers_without_attempt(self, manager, worker, queue, transcriber):
        campaign = await create_campaign(manager, ["https://cdn/a-80.wav"])
        await manager.pause(campaign.id)
        job = await queue.lease()

        assert await worker.process_job(job) == JobOutcome.DEFERRED

        assert queue.requeues == [(0, 2000, False)]
        assert job.attempts == 0
        transcriber.transcribe.assert_not_called()

    @pytest.mark.asyncio
    async def test_resumed_campaign_finishes(self, manager, worker, queue, store, run_queue):
        campaign = await create_campaign(manager, ["https://cdn/a-80.wav"])
        await manager.pause(campaign.id)
        assert await worker.process_job(await queue.lease()) == JobOutcome.DEFERRED

        await manager.resume(campaign.id)
        outcomes = await run_queue(worker, queue)

        assert outcomes == [JobOutcome.COMPLETED]
        assert (await store.get_campaign(campaign.id)).status == CampaignStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_cancelled_campaign_jobs_dropped(self, manager, worker, queue, store, transcriber, run_queue):
        campaign = await create_campaign(manager, ["https://cdn/a-80.wav", "https://cdn/b-60.wav"])
        await manager.cancel(campaign.id)

        outcomes = await run_queue(worker, queue)

        assert outcomes == [JobOutcome.DROPPED, JobOutcome.DROPPED]
        assert len(queue.acked) == 2
        transcriber.transcribe.assert_not_called()
        assert (await store.get_campaign(campaign.id)).status == CampaignStatus.CANCELLED

    @pytest.mark.asyncio
    async def test_deleted_campaign_jobs_dropped(self, manager, worker, queue, run_queue):
        campaign = await create_campaign(manager, ["https://cdn/a-80.wav"])
        await manager.delete(campaign.id)

        assert await run_queue(worker, queue) == [JobOutcome.DROPPED]

    @pytest.mark.asyncio
    async def test_rate_limit_defers_second_job(self, manager, worker, queue):
        await create_campaign(
            manager, ["https://cdn/a-80.wav", "https://cdn/b-60.wav"],
            apply_rate_limit=True, config=CampaignConfig(rpm=10)
        )

        first = await worker.process_job(await queue.lease())
        second_job = await queue.lease()
        second = await worker.process_job(second_job)

        assert first == JobOutcome.COMPLETED
        assert second == JobOutcome.DEFERRED
        index, delay_ms, counted = queue.requeues[0]
        assert index == 1
        assert 5000 < delay_ms <= 6000
        assert counted is False
        assert second_job.attempts == 0

    @pytest.mark.asyncio
    async def test_unlimited_rpm_never_defers(self, manager, worker, queue, run_queue):
        await create_campaign(
            manager, [f"https://cdn/{i}-80.wav" for i in range(4)],
            apply_rate_limit=True, config=CampaignConfig(rpm=0)
        )

        outcomes = await run_queue(worker, queue)

        assert outcomes == [JobOutcome.COMPLETED] * 4


class TestDegradedMode:
    """Tests for campaigns created while the queue was down"""

    @pytest.mark.asyncio
    async def test_pending_campaign_processed_after_reconnect(self, store, settings, make_queue, transcriber, scorer, run_queue):
        queue = make_queue(available=False)
        manager = CampaignManager(store, queue, settings)
        worker = AuditWorker(manager, transcriber, scorer, settings=settings)
        campaign = await create_campaign(manager, ["https://cdn/a-80.wav", "https://cdn/b-60.wav"])
        assert campaign.status == CampaignStatus.PENDING

        queue.available = True
        await worker._maybe_reconcile()
        await run_queue(worker, queue)

        finished = await store.get_campaign(campaign.id)
        assert finished.status == CampaignStatus.COMPLETED
        assert finished.stats.avg_score == 70.0

    @pytest.mark.asyncio
    async def test_tick_waits_for_broker(self, worker, queue):
        queue.available = False
        worker._dispatch = asyncio.Queue()
        worker.running = True

        assert await worker.tick() == 0


async def dispatch_once(worker, job):
    """Hand one job to a pool task the way the supervisor does and wait for it."""
    worker._dispatch = asyncio.Queue()
    worker._slot_freed = asyncio.Event()
    worker.in_flight = 1
    worker._dispatch.put_nowait(job)
    task = asyncio.create_task(worker._pool_worker(0))
    await asyncio.wait_for(worker._dispatch.join(), timeout=5)
    task.cancel()
    await asyncio.gather(task, return_exceptions=True)


def fail_first_call(func, error):
    calls = []

    async def wrapper(*args, **kwargs):
        calls.append(args)
        if len(calls) == 1:
            raise error
        return await func(*args, **kwargs)

    return wrapper


class TestCrashRecovery:
    """Tests for pipelines that crash outside the retry path"""

    @pytest.mark.asyncio
    async def test_store_outage_before_gate_is_retried(self, manager, worker, queue, store, run_queue):
        campaign = await create_campaign(manager, ["https://cdn/a-80.wav"])
        store.get_campaign = fail_first_call(store.get_campaign, ConnectionError("store unreachable"))

        await dispatch_once(worker, await queue.lease())

        assert queue.requeues == [(0, 1000, True)]
        assert queue.leased == {}
        assert worker.in_flight == 0

        assert await run_queue(worker, queue) == [JobOutcome.COMPLETED]
        assert (await store.get_campaign(campaign.id)).status == CampaignStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_crash_before_settling_campaign(self, manager, worker, queue, store, run_queue):
        """The redelivered job is a duplicate but still settles the campaign"""
        campaign = await create_campaign(manager, ["https://cdn/a-80.wav"])
        manager.check_completion = fail_first_call(manager.check_completion, ConnectionError("store unreachable"))

        await dispatch_once(worker, await queue.lease())

        stuck = await store.get_campaign(campaign.id)
        assert stuck.completed_jobs == 1
        assert stuck.status == CampaignStatus.PROCESSING

        assert await run_queue(worker, queue) == [JobOutcome.DROPPED]
        assert (await store.get_campaign(campaign.id)).status == CampaignStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_requeue_failure_leaves_lease(self, manager, worker, queue):
        await create_campaign(manager, ["https://cdn/a-80.wav"])
        manager.store.get_campaign = AsyncMock(side_effect=ConnectionError("store unreachable"))
        queue.requeue = AsyncMock(side_effect=ConnectionError("redis unreachable"))
        job = await queue.lease()

        await dispatch_once(worker, job)

        assert job.job_id in queue.leased
        assert worker.in_flight == 0

    @pytest.mark.asyncio
    async def test_reconcile_recovers_stale_leases(self, worker, queue):
        queue.recover_leases = AsyncMock(return_value=2)

        await worker._maybe_reconcile()

        queue.recover_leases.assert_awaited_once_with()


class TestSideEffects:
    """Tests for usage reports and audio cleanup"""

    @pytest.mark.asyncio
    async def test_usage_report_sent(self, manager, queue, transcriber, scorer, settings, run_queue):
        reporter = MagicMock()
        worker = AuditWorker(manager, transcriber, scorer, usage_reporter=reporter, settings=settings)
        await create_campaign(manager, ["https://cdn/a-80.wav"])

        await run_queue(worker, queue)

        payload = reporter.report_in_background.call_args.args[0]
        assert payload.overall_score == 80
        assert payload.campaign_name == "March QA"
        assert payload.parameters_count == 3
        assert payload.pass_status == "pass"

    @pytest.mark.asyncio
    async def test_usage_report_errors_do_not_fail_job(self, manager, queue, store, transcriber, scorer, settings, run_queue):
        reporter = MagicMock()
        reporter.report_in_background.side_effect = RuntimeError("admin panel down")
        worker = AuditWorker(manager, transcriber, scorer, usage_reporter=reporter, settings=settings)
        campaign = await create_campaign(manager, ["https://cdn/a-80.wav"])

        assert await run_queue(worker, queue) == [JobOutcome.COMPLETED]
        assert (await store.get_campaign(campaign.id)).status == CampaignStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_audio_deleted_after_settling(self, manager, queue, transcriber, scorer, settings, run_queue):
        storage = MagicMock()
        storage.delete = AsyncMock(return_value=True)
        worker = AuditWorker(manager, transcriber, scorer, audio_storage=storage, settings=settings)
        await create_campaign(manager, ["https://cdn/a-80.wav", "https://cdn/broken.wav"])

        await run_queue(worker, queue)

        deleted = [c.args[0] for c in storage.delete.call_args_list]
        assert deleted == ["https://cdn/a-80.wav", "https://cdn/broken.wav"]

    @pytest.mark.asyncio
    async def test_audio_delete_errors_swallowed(self, manager, queue, transcriber, scorer, settings, run_queue):
        storage = MagicMock()
        storage.delete = AsyncMock(side_effect=OSError("permission denied"))
        worker = AuditWorker(manager, transcriber, scorer, audio_storage=storage, settings=settings)
        await create_campaign(manager, ["https://cdn/a-80.wav"])

        assert await run_queue(worker, queue) == [JobOutcome.COMPLETED]


class TestWorkerPool:
    """Tests for the supervisor and the bounded pool"""

    @pytest.mark.asyncio
    async def test_concurrency_is_bounded(self, manager, worker, store, transcriber):
        active = 0
        peak = 0

        async def transcribe(audio_url):
            nonlocal active, peak
            active += 1
            peak = max(peak, active)
            await asyncio.sleep(0.02)
            active -= 1
            return TranscriptionResult(transcript=f"Agent: hello ({audio_url})", language="en")

        transcriber.transcribe.side_effect = transcribe
        campaign = await create_campaign(manager, [f"https://cdn/{i}-80.wav" for i in range(10)])

        await worker.start()
        try:
            for _ in range(200):
                if (await store.get_campaign(campaign.id)).status == CampaignStatus.COMPLETED:
                    break
                await asyncio.sleep(0.01)
        finally:
            await worker.shutdown()

        finished = await store.get_campaign(campaign.id)
        assert finished.status == CampaignStatus.COMPLETED
        assert finished.completed_jobs == 10
        assert 1 < peak <= 3
        assert worker.in_flight == 0

    @pytest.mark.asyncio
    async def test_shutdown_waits_for_in_flight(self, manager, worker, store, transcriber):
        release = asyncio.Event()

        async def transcribe(audio_url):
            await release.wait()
            return TranscriptionResult(transcript=f"Agent: hello ({audio_url})", language="en")

        transcriber.transcribe.side_effect = transcribe
        campaign = await create_campaign(manager, ["https://cdn/a-80.wav"])

        await worker.start()
        for _ in range(100):
            if worker.in_flight:
                break
            await asyncio.sleep(0.01)
        assert worker.in_flight == 1

        shutdown = asyncio.create_task(worker.shutdown())
        await asyncio.sleep(0.02)
        assert not shutdown.done()

        release.set()
        await shutdown

        assert (await store.get_campaign(campaign.id)).jobs[0].status == CampaignJobStatus.COMPLETED
        assert worker.running is False

    @pytest.mark.asyncio
    async def test_status(self, worker):
        status = await worker.get_status()

        assert status["running"] is False
        assert status["concurrency"] == 3
        assert status["queue"]["available"] is True
