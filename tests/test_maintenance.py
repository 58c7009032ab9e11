"""
Unit tests for scheduled maintenance jobs.
"""
import asyncio
import pytest
from unittest.mock import Mock
import sys
import os

# Add project root to path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from app.core.container import build_scheduler
from app.services.conversation_state import StateType, create_state
from app.services.maintenance import MaintenanceJob, MaintenanceScheduler

IDENTITY = "525512345678"


class TestMaintenanceScheduler:
    """Tests for running jobs on demand and in the background."""

    def test_run_all(self):
        scheduler = MaintenanceScheduler([
            MaintenanceJob("a", 60, Mock(return_value=2)),
            MaintenanceJob("b", 60, Mock(return_value=0)),
        ])

        assert scheduler.run_all() == {"a": 2, "b": 0}
        assert scheduler.get_stats()["runs"] == {"a": 1, "b": 1}

    def test_add_job(self):
        scheduler = MaintenanceScheduler()
        scheduler.add_job(MaintenanceJob("late", 5, Mock(return_value=1)))
        assert scheduler.get_stats()["jobs"] == {"late": 5}

    def test_start_and_stop(self):
        job = Mock(return_value=0)
        scheduler = MaintenanceScheduler([MaintenanceJob("tick", 0.01, job)])

        async def exercise():
            await scheduler.start()
            assert scheduler.running
            await asyncio.sleep(0.05)
            await scheduler.stop()

        asyncio.run(exercise())

        assert not scheduler.running
        assert job.call_count >= 1

    def test_failing_job_keeps_running(self):
        job = Mock(side_effect=RuntimeError("boom"))
        scheduler = MaintenanceScheduler([MaintenanceJob("flaky", 0.01, job)])

        async def exercise():
            await scheduler.start()
            await asyncio.sleep(0.05)
            still_running = scheduler.running
            await scheduler.stop()
            return still_running

        assert asyncio.run(exercise()) is True
        assert job.call_count >= 2


class TestBuildScheduler:
    """Tests for the production sweep jobs."""

    def test_jobs(self, engine, settings):
        scheduler = build_scheduler(settings, engine)
        assert scheduler.get_stats()["jobs"] == {
            "local_cache_sweep": settings.cache_cleanup_interval_seconds,
            "navigation_cleanup": settings.navigation_cleanup_interval_seconds,
        }

    def test_sweeps_expired_entries(self, engine, settings, clock, legacy_store):
        engine.sessions.set(IDENTITY, create_state(IDENTITY, StateType.MENU, "main"))
        legacy_store.set(IDENTITY, {"status": "showing_menu"})
        engine.navigation.push(IDENTITY, "menu:main", "Main Menu")
        clock.advance(settings.navigation_inactivity_seconds + 1)

        results = build_scheduler(settings, engine, legacy_store).run_all()

        assert results == {"local_cache_sweep": 2, "navigation_cleanup": 1}
