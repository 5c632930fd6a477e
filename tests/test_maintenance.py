"""
Tests for the maintenance scheduler.
"""

import asyncio
from datetime import timedelta

import pytest

from memory_engine.core.errors import PersistenceError
from memory_engine.core.maintenance import JOB_NAMES, MaintenanceScheduler


@pytest.fixture
def fast_settings(test_settings):
    return test_settings.model_copy(
        update={
            "expiry_sweep_interval_seconds": 0.01,
            "decay_interval_seconds": 3600,
            "prune_interval_seconds": 3600,
            "compaction_interval_seconds": 3600,
        }
    )


class TestMaintenanceScheduler:
    @pytest.mark.asyncio
    async def test_run_each_job(self, keyword_store, test_settings):
        scheduler = MaintenanceScheduler(keyword_store, test_settings)

        for name in JOB_NAMES:
            await scheduler.run_job(name)

        status = scheduler.get_status()
        assert status["running"] is False
        assert all(job["runs"] == 1 for job in status["jobs"])
        assert all(job["failures"] == 0 for job in status["jobs"])

    @pytest.mark.asyncio
    async def test_decay_job_decays_importance(self, keyword_store, test_settings):
        result = await keyword_store.store("decays", {"source": "test"}, importance=2.0)
        scheduler = MaintenanceScheduler(keyword_store, test_settings)

        assert await scheduler.run_job("importance_decay") == 1

        entry = await keyword_store.get(result.id)
        assert entry.importance == pytest.approx(1.9)

    @pytest.mark.asyncio
    async def test_unknown_job(self, keyword_store, test_settings):
        with pytest.raises(KeyError):
            await MaintenanceScheduler(keyword_store, test_settings).run_job("nope")

    @pytest.mark.asyncio
    async def test_periodic_sweep(self, keyword_store, fast_settings, clock):
        await keyword_store.store(
            "short lived", {"source": "test"}, expires_at=clock.now + timedelta(seconds=1)
        )
        clock.advance(5)
        scheduler = MaintenanceScheduler(keyword_store, fast_settings)

        scheduler.start()
        try:
            for _ in range(100):
                if keyword_store.get_stats().total == 0:
                    break
                await asyncio.sleep(0.01)
        finally:
            await scheduler.stop()

        assert keyword_store.get_stats().total == 0
        assert scheduler.is_running is False

    @pytest.mark.asyncio
    async def test_failing_tick_keeps_schedule(self, keyword_store, fast_settings, monkeypatch):
        calls = 0

        async def broken_sweep() -> int:
            nonlocal calls
            calls += 1
            raise PersistenceError("disk full")

        monkeypatch.setattr(keyword_store, "sweep_expired", broken_sweep)
        scheduler = MaintenanceScheduler(keyword_store, fast_settings)

        scheduler.start()
        try:
            for _ in range(100):
                if calls >= 2:
                    break
                await asyncio.sleep(0.01)
        finally:
            await scheduler.stop()

        assert calls >= 2
        sweep = next(j for j in scheduler.get_status()["jobs"] if j["name"] == "expiry_sweep")
        assert sweep["failures"] >= 2
        assert sweep["last_error"] == "disk full"

    @pytest.mark.asyncio
    async def test_manual_failure_is_raised(self, keyword_store, test_settings, monkeypatch):
        async def broken_prune() -> int:
            raise PersistenceError("read-only")

        monkeypatch.setattr(keyword_store, "prune", broken_prune)
        scheduler = MaintenanceScheduler(keyword_store, test_settings)

        with pytest.raises(PersistenceError):
            await scheduler.run_job("prune")
        assert await scheduler.run_job("prune", raise_errors=False) is None

    @pytest.mark.asyncio
    async def test_overlapping_run_is_skipped(self, keyword_store, test_settings, monkeypatch):
        release = asyncio.Event()

        async def slow_compact() -> bool:
            await release.wait()
            return True

        monkeypatch.setattr(keyword_store, "compact", slow_compact)
        scheduler = MaintenanceScheduler(keyword_store, test_settings)

        first = asyncio.create_task(scheduler.run_job("compaction"))
        await asyncio.sleep(0)
        assert await scheduler.run_job("compaction") is None

        release.set()
        assert await first is True

    @pytest.mark.asyncio
    async def test_start_and_stop_are_idempotent(self, keyword_store, test_settings):
        scheduler = MaintenanceScheduler(keyword_store, test_settings)

        scheduler.start()
        scheduler.start()
        await scheduler.stop()
        await scheduler.stop()

        assert scheduler.is_running is False
