"""
Unit tests for the job manager facade.

Tests cover:
- Job creation and request validation
- Running jobs in the foreground and background
- Cancellation of pending and finished jobs
- Batches: roll-up, failure isolation, stop-on-failure, bounded concurrency, cancellation
- Cleanup of expired jobs and the system health roll-up
"""

import asyncio
from datetime import timedelta

import pytest

from tests.fakes import RecordingJobStore, ScriptedAdapter, build_manager, make_backend
from voicedesc.core.config import Settings
from voicedesc.core.exceptions import (
    AdapterErrorKind,
    BatchNotFoundError,
    InvalidJobRequest,
    InvalidTransition,
    JobNotFoundError,
)
from voicedesc.core.types import BatchStatus, ItemStatus, JobStatus, StageName
from voicedesc.infra.runtime.backends import HealthStatus
from voicedesc.models.job import utcnow
from voicedesc.models.media import MediaReference
from voicedesc.models.options import BatchItem, BatchOptions

MB = 1024 * 1024


def image(name: str, size: int = 4096) -> MediaReference:
    return MediaReference(uri=f"s3://media/{name}.png", size_bytes=size)


def batch_items(count: int) -> list[dict]:
    return [{"media": {"uri": f"s3://media/{i}.png", "size_bytes": 1024}} for i in range(count)]


# ── Jobs ─────────────────────────────────────────────────────────────────────

class TestCreateJob:
    @pytest.mark.asyncio
    async def test_create_returns_pending_job(self, manager):
        job_id = await manager.create_job("image", image("cat"))

        view = await manager.get_status(job_id)

        assert view.id == job_id
        assert view.status == JobStatus.PENDING
        assert view.progress == 0
        assert view.current_stage == StageName.ANALYZE
        assert view.stage_history == []

    @pytest.mark.asyncio
    async def test_video_starts_at_segment(self, manager):
        job_id = await manager.create_job("video", MediaReference("s3://media/clip.mp4", 10 * MB))
        assert (await manager.get_status(job_id)).current_stage == StageName.SEGMENT

    @pytest.mark.asyncio
    async def test_options_from_mapping(self, manager):
        job_id = await manager.create_job("image", image("cat"), {"detail_level": "basic"})
        job = await manager.store.get(job_id)
        assert job.options.detail_level == "basic"

    @pytest.mark.asyncio
    async def test_unsupported_kind(self, manager):
        with pytest.raises(InvalidJobRequest) as exc_info:
            await manager.create_job("audio", image("cat"))
        assert exc_info.value.status_code == 422

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "options",
        [{"detail_level": "verbose"}, {"unknown_flag": True}, {"language": "e"}],
    )
    async def test_invalid_options(self, manager, options):
        with pytest.raises(InvalidJobRequest):
            await manager.create_job("image", image("cat"), options)

    @pytest.mark.asyncio
    async def test_missing_uri(self, manager):
        with pytest.raises(InvalidJobRequest):
            await manager.create_job("image", MediaReference(uri=""))

    @pytest.mark.asyncio
    async def test_oversize_media(self, adapter, blob_store):
        manager = build_manager(adapter, blob_store, cfg=Settings(MAX_IMAGE_SIZE_MB=1))

        with pytest.raises(InvalidJobRequest) as exc_info:
            await manager.create_job("image", image("huge", size=2 * MB))

        assert "limit is 1MB" in exc_info.value.detail
        assert await manager.list_jobs() == []

    @pytest.mark.asyncio
    async def test_unknown_job(self, manager):
        with pytest.raises(JobNotFoundError):
            await manager.get_status("missing")


class TestRunJob:
    @pytest.mark.asyncio
    async def test_run_to_completion(self, manager):
        job_id = await manager.create_job("image", image("cat"))

        view = await manager.run_job(job_id)

        assert view.status == JobStatus.COMPLETED
        assert view.progress == 100
        assert view.result["description"] == "A dog runs along the beach."
        assert view.result["audio_reference"].startswith("blob://sha256/")

    @pytest.mark.asyncio
    async def test_start_job_in_background(self, manager):
        job_id = await manager.create_job("video", MediaReference("s3://media/clip.mp4", MB, 30.0))

        task = manager.start_job(job_id)
        await task

        view = await manager.get_status(job_id)
        assert view.status == JobStatus.COMPLETED
        assert len(view.stage_history) == 5

    @pytest.mark.asyncio
    async def test_failed_job_reports_error(self, blob_store):
        adapter = ScriptedAdapter(blob_store=blob_store, describe_error=AdapterErrorKind.QUOTA_EXHAUSTED)
        manager = build_manager(adapter, blob_store)
        job_id = await manager.create_job("image", image("cat"))

        view = await manager.run_job(job_id)

        assert view.status == JobStatus.FAILED
        assert view.error["code"] == "Fatal-Config"
        assert view.error["stage"] == StageName.ANALYZE
        assert view.result is None

    @pytest.mark.asyncio
    async def test_fallback_reason_visible_in_status(self, adapter, blob_store):
        manager = build_manager(
            adapter,
            blob_store,
            backends=[
                make_backend("vision", adapter),
                make_backend("premium", ScriptedAdapter("premium"), available=False),
            ],
        )
        job_id = await manager.create_job("image", image("cat"), {"preferred_backend": "premium"})

        view = await manager.run_job(job_id)

        assert view.status == JobStatus.COMPLETED
        assert "premium" in view.fallback_reasons["analyze"]


class TestCancelJob:
    @pytest.mark.asyncio
    async def test_cancel_pending_job_settles_immediately(self, adapter, blob_store):
        store = RecordingJobStore()
        manager = build_manager(adapter, blob_store, store=store)
        job_id = await manager.create_job("image", image("cat"))

        view = await manager.cancel_job(job_id)

        assert view.status == JobStatus.FAILED
        assert view.error["code"] == "Cancelled"
        assert view.cancel_requested is True
        assert adapter.analyze_calls == []
        # pending -> processing -> failed, never pending -> failed
        assert store.status_log[job_id] == ["pending", "pending", "processing", "failed"]

    @pytest.mark.asyncio
    async def test_cancel_finished_job_rejected(self, manager):
        job_id = await manager.create_job("image", image("cat"))
        await manager.run_job(job_id)

        with pytest.raises(InvalidTransition):
            await manager.cancel_job(job_id)

    @pytest.mark.asyncio
    async def test_cancel_running_job_discards_stage(self, blob_store):
        gate = asyncio.Event()

        async def wait_for_gate():
            await gate.wait()

        adapter = ScriptedAdapter(blob_store=blob_store, on_analyze=wait_for_gate)
        manager = build_manager(adapter, blob_store)
        job_id = await manager.create_job("image", image("cat"))

        task = manager.start_job(job_id)
        await asyncio.sleep(0)
        view = await manager.cancel_job(job_id)
        assert view.status == JobStatus.PROCESSING
        gate.set()
        await task

        final = await manager.get_status(job_id)
        assert final.status == JobStatus.FAILED
        assert final.error["code"] == "Cancelled"
        assert final.stage_history[-1]["outcome"] == "discarded"


class TestListJobs:
    @pytest.mark.asyncio
    async def test_filters(self, manager):
        done = await manager.create_job("image", image("a"))
        pending = await manager.create_job("image", image("b"))
        await manager.run_job(done)

        assert [v.id for v in await manager.list_jobs()] == [done, pending]
        assert [v.id for v in await manager.list_jobs(status=JobStatus.PENDING)] == [pending]
        assert await manager.list_jobs(kind="video") == []


# ── Batches ──────────────────────────────────────────────────────────────────

class TestBatches:
    @pytest.mark.asyncio
    async def test_all_items_succeed(self, manager):
        batch_id = await manager.create_batch(batch_items(4), {"concurrency_limit": 2})

        result = await manager.run_batch(batch_id)

        assert result.status == BatchStatus.COMPLETED
        assert result.completed == 4
        assert [i.index for i in result.items] == [0, 1, 2, 3]
        assert all(i.job_id for i in result.items)
        jobs = await manager.list_jobs(batch_id=batch_id)
        assert len(jobs) == 4
        assert all(j.status == JobStatus.COMPLETED for j in jobs)

    @pytest.mark.asyncio
    async def test_failure_isolated_to_one_item(self, blob_store):
        adapter = ScriptedAdapter(
            blob_store=blob_store,
            fail_uris={"s3://media/2.png": AdapterErrorKind.INVALID_INPUT},
        )
        manager = build_manager(adapter, blob_store)
        batch_id = await manager.create_batch(batch_items(5), BatchOptions(concurrency_limit=3))

        result = await manager.run_batch(batch_id)

        assert result.status == BatchStatus.PARTIAL
        assert (result.completed, result.failed, result.skipped) == (4, 1, 0)
        failed = result.items[2]
        assert failed.status == ItemStatus.FAILED
        assert failed.error["code"] == "Fatal-Input"
        assert failed.job_id is not None

    @pytest.mark.asyncio
    async def test_stop_on_first_failure(self, blob_store):
        adapter = ScriptedAdapter(
            blob_store=blob_store,
            fail_uris={"s3://media/1.png": AdapterErrorKind.INVALID_INPUT},
        )
        manager = build_manager(adapter, blob_store)
        batch_id = await manager.create_batch(
            batch_items(5), {"concurrency_limit": 1, "continue_on_error": False}
        )

        result = await manager.run_batch(batch_id)

        assert [i.status for i in result.items] == [
            ItemStatus.SUCCEEDED,
            ItemStatus.FAILED,
            ItemStatus.SKIPPED,
            ItemStatus.SKIPPED,
            ItemStatus.SKIPPED,
        ]
        assert result.status == BatchStatus.PARTIAL
        assert all(i.job_id is None for i in result.items[2:])

    @pytest.mark.asyncio
    async def test_every_item_failing(self, blob_store):
        adapter = ScriptedAdapter(blob_store=blob_store, describe_error=AdapterErrorKind.INVALID_INPUT)
        manager = build_manager(adapter, blob_store)

        result = await manager.run_batch(await manager.create_batch(batch_items(3)))

        assert result.status == BatchStatus.FAILED
        assert result.failed == 3

    @pytest.mark.asyncio
    async def test_invalid_item_fails_without_sinking_batch(self, manager):
        items = batch_items(2) + [{"media": {"uri": "s3://media/huge.png", "size_bytes": 900 * MB}}]

        result = await manager.run_batch(await manager.create_batch(items))

        assert result.status == BatchStatus.PARTIAL
        assert result.items[2].status == ItemStatus.FAILED
        assert result.items[2].error["code"] == "Fatal-Input"
        assert result.items[2].job_id is None

    @pytest.mark.asyncio
    async def test_concurrency_limit_respected(self, blob_store):
        adapter = ScriptedAdapter(blob_store=blob_store, delay=0.01)
        manager = build_manager(adapter, blob_store)

        await manager.run_batch(await manager.create_batch(batch_items(6), {"concurrency_limit": 2}))

        assert adapter.peak == 2

    @pytest.mark.asyncio
    async def test_concurrency_limit_covers_video_fan_out(self, blob_store):
        adapter = ScriptedAdapter(blob_store=blob_store, delay=0.01)
        manager = build_manager(adapter, blob_store)
        items = [
            {"kind": "video", "media": {"uri": f"s3://media/{i}.mp4", "size_bytes": MB, "duration_s": 30.0}}
            for i in range(2)
        ]

        result = await manager.run_batch(await manager.create_batch(items, {"concurrency_limit": 1}))

        assert result.status == BatchStatus.COMPLETED
        # 2 segment calls plus 3 scene analyses per clip, one at a time
        assert len(adapter.analyze_calls) == 8
        assert adapter.peak == 1

    @pytest.mark.asyncio
    async def test_cancel_before_start(self, manager, adapter):
        batch_id = await manager.create_batch(batch_items(3), start=False)

        await manager.cancel_batch(batch_id)
        result = await manager.run_batch(batch_id)

        assert result.status == BatchStatus.CANCELLED
        assert all(i.status == ItemStatus.CANCELLED for i in result.items)
        assert adapter.analyze_calls == []

    @pytest.mark.asyncio
    async def test_cancel_mid_batch_keeps_finished_items(self, blob_store):
        holder = {}

        async def cancel_once():
            if not holder.get("cancelled"):
                holder["cancelled"] = True
                await holder["manager"].cancel_batch(holder["batch_id"])

        adapter = ScriptedAdapter(blob_store=blob_store, on_analyze=cancel_once)
        manager = build_manager(adapter, blob_store)
        batch_id = await manager.create_batch(batch_items(4), {"concurrency_limit": 1}, start=False)
        holder.update(manager=manager, batch_id=batch_id)

        result = await manager.run_batch(batch_id)

        assert result.items[0].status == ItemStatus.SUCCEEDED
        assert all(i.status == ItemStatus.CANCELLED for i in result.items[1:])
        assert result.status == BatchStatus.CANCELLED
        assert result.cancel_requested is True

    @pytest.mark.asyncio
    async def test_batch_status_is_a_snapshot(self, manager):
        batch_id = await manager.create_batch(batch_items(2), start=False)

        status = await manager.get_batch_status(batch_id)
        status.items[0].status = ItemStatus.FAILED

        again = await manager.get_batch_status(batch_id)
        assert again.status == BatchStatus.PROCESSING
        assert again.items[0].status == ItemStatus.PENDING

    @pytest.mark.asyncio
    async def test_typed_items_accepted(self, manager):
        items = [BatchItem(media=image("a"), item_id="cover"), BatchItem(media=image("b"))]
        result = await manager.run_batch(await manager.create_batch(items))
        assert result.items[0].item_id == "cover"
        assert result.completed == 2

    @pytest.mark.asyncio
    async def test_empty_batch_rejected(self, manager):
        with pytest.raises(InvalidJobRequest):
            await manager.create_batch([])

    @pytest.mark.asyncio
    async def test_oversize_batch_rejected(self, adapter, blob_store):
        manager = build_manager(adapter, blob_store, cfg=Settings(BATCH_MAX_ITEMS=2))
        with pytest.raises(InvalidJobRequest):
            await manager.create_batch(batch_items(3))

    @pytest.mark.asyncio
    async def test_invalid_batch_options(self, manager):
        with pytest.raises(InvalidJobRequest):
            await manager.create_batch(batch_items(1), {"concurrency_limit": 0})

    @pytest.mark.asyncio
    async def test_unknown_batch(self, manager):
        with pytest.raises(BatchNotFoundError):
            await manager.get_batch_status("missing")


# ── Maintenance ──────────────────────────────────────────────────────────────

def _backdate(hours: float):
    def mutate(job):
        job.created_at = utcnow() - timedelta(hours=hours)

    return mutate


class TestCleanup:
    @pytest.mark.asyncio
    async def test_only_expired_terminal_jobs_evicted(self, manager):
        old_done = await manager.create_job("image", image("a"))
        old_pending = await manager.create_job("image", image("b"))
        fresh_done = await manager.create_job("image", image("c"))
        await manager.run_job(old_done)
        await manager.run_job(fresh_done)
        await manager.store.update(old_done, _backdate(48))
        await manager.store.update(old_pending, _backdate(48))

        deleted = await manager.cleanup_expired()

        assert deleted == 1
        remaining = {v.id for v in await manager.list_jobs()}
        assert remaining == {old_pending, fresh_done}

    @pytest.mark.asyncio
    async def test_custom_retention(self, manager):
        job_id = await manager.create_job("image", image("a"))
        await manager.run_job(job_id)
        await manager.store.update(job_id, _backdate(2))

        assert await manager.cleanup_expired(max_age_hours=3) == 0
        assert await manager.cleanup_expired(max_age_hours=1) == 1


class TestSystemHealth:
    @pytest.mark.asyncio
    async def test_healthy_when_idle(self, manager):
        health = await manager.get_system_health()

        assert health["status"] == "healthy"
        assert health["active_jobs"] == 0
        assert health["backends"]["registered_backends"] == 1
        assert "peak" in health["limiter"]

    @pytest.mark.asyncio
    async def test_unhealthy_when_failures_outnumber_active(self, blob_store):
        adapter = ScriptedAdapter(blob_store=blob_store, describe_error=AdapterErrorKind.INVALID_INPUT)
        manager = build_manager(adapter, blob_store)
        await manager.run_job(await manager.create_job("image", image("a")))

        health = await manager.get_system_health()

        assert health["status"] == "unhealthy"
        assert health["failed_jobs"] == 1
        assert "analyze" in health["stages"]

    @pytest.mark.asyncio
    async def test_degraded(self, adapter, blob_store):
        manager = build_manager(adapter, blob_store, cfg=Settings(HEALTH_DEGRADED_ACTIVE_JOBS=1))
        for name in ("a", "b"):
            job_id = await manager.create_job("image", image(name))
            await manager.store.update(job_id, lambda j: setattr(j, "status", JobStatus.PROCESSING))

        health = await manager.get_system_health()

        assert health["status"] == "degraded"
        assert health["active_jobs"] == 2

    @pytest.mark.asyncio
    async def test_refresh_backend_health(self, manager, adapter):
        adapter.health = HealthStatus(available=False)
        assert await manager.refresh_backend_health() == {"vision": False}
        assert (await manager.get_system_health())["backends"]["available_backends"] == 0


class TestShutdown:
    @pytest.mark.asyncio
    async def test_cancels_background_work(self, blob_store):
        async def never():
            await asyncio.Event().wait()

        adapter = ScriptedAdapter(blob_store=blob_store, on_analyze=never)
        manager = build_manager(adapter, blob_store)
        task = manager.start_job(await manager.create_job("image", image("a")))
        await asyncio.sleep(0)

        await manager.shutdown()

        assert task.cancelled()
