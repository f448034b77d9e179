"""
test_scheduler.py — Delayed deadline checks on APScheduler.

Covers:
    • Tasks fire after (never before) their delay
    • Compaction keeps one pending check per activity
    • Without compaction every check stays queued
    • A failing handler is retried without displacing a newer check
    • Job entry point with no registered handler

Run with:
    pytest tests/test_scheduler.py -v
"""

from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone
from typing import List, Tuple

import pytest

from backend.app.activity import scheduler as scheduler_module
from backend.app.activity.models import DeferredCheckTask
from backend.app.activity.scheduler import DeadlineScheduler, run_deferred_check


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _make_task(activity_id: str = "act-1") -> DeferredCheckTask:
    return DeferredCheckTask(activity_id=activity_id, deadline_snapshot=_now(), label="check")


@pytest.fixture(autouse=True)
def _reset_handler():
    yield
    scheduler_module._fire_handler = None
    scheduler_module._active_scheduler = None


class TestFiring:

    def test_fires_after_delay(self):
        fired: List[Tuple[DeferredCheckTask, datetime]] = []

        async def handler(task):
            fired.append((task, _now()))

        async def run():
            scheduler = DeadlineScheduler(jobstore="memory", fire_slack_seconds=0.05)
            scheduler.on_fire(handler)
            scheduler.start()
            started = _now()
            scheduler.schedule(timedelta(milliseconds=200), _make_task())
            await asyncio.sleep(1.0)
            scheduler.shutdown()
            return started

        started = asyncio.run(run())
        assert len(fired) == 1
        task, at = fired[0]
        assert task.activity_id == "act-1"
        assert at - started >= timedelta(milliseconds=250)

    def test_deadline_snapshot_round_trips(self):
        fired: List[DeferredCheckTask] = []
        snapshot = datetime(2026, 3, 1, 8, 15, tzinfo=timezone.utc)

        async def handler(task):
            fired.append(task)

        async def run():
            scheduler = DeadlineScheduler(jobstore="memory", fire_slack_seconds=0)
            scheduler.on_fire(handler)
            scheduler.start()
            scheduler.schedule(timedelta(0), DeferredCheckTask("act-2", snapshot, "lbl"))
            await asyncio.sleep(0.5)
            scheduler.shutdown()

        asyncio.run(run())
        assert fired == [DeferredCheckTask("act-2", snapshot, "lbl")]

    def test_negative_delay_fires_promptly(self):
        fired = []

        async def handler(task):
            fired.append(task)

        async def run():
            scheduler = DeadlineScheduler(jobstore="memory", fire_slack_seconds=0)
            scheduler.on_fire(handler)
            scheduler.start()
            scheduler.schedule(timedelta(minutes=-5), _make_task())
            await asyncio.sleep(0.5)
            scheduler.shutdown()

        asyncio.run(run())
        assert len(fired) == 1


class TestCompaction:

    def test_compacted_job_ids(self):
        async def run():
            scheduler = DeadlineScheduler(jobstore="memory", compact=True)
            scheduler.start()
            first = scheduler.schedule(timedelta(minutes=15), _make_task())
            second = scheduler.schedule(timedelta(minutes=27), _make_task())
            other = scheduler.schedule(timedelta(minutes=10), _make_task("act-9"))
            count = scheduler.pending_count()
            scheduler.shutdown()
            return first, second, other, count

        first, second, other, count = asyncio.run(run())
        assert first == second == "deadline-check:act-1"
        assert other == "deadline-check:act-9"
        assert count == 2

    def test_uncompacted_keeps_every_check(self):
        async def run():
            scheduler = DeadlineScheduler(jobstore="memory", compact=False)
            scheduler.start()
            ids = [scheduler.schedule(timedelta(minutes=m), _make_task()) for m in (15, 27, 39)]
            count = scheduler.pending_count()
            scheduler.shutdown()
            return ids, count

        ids, count = asyncio.run(run())
        assert len(set(ids)) == 3
        assert all(i.startswith("deadline-check:act-1:") for i in ids)
        assert count == 3


class TestRetry:

    def test_failing_handler_is_retried(self):
        calls = []

        async def handler(task):
            calls.append(task.activity_id)
            if len(calls) == 1:
                raise ConnectionError("store unreachable")

        async def run():
            scheduler = DeadlineScheduler(
                jobstore="memory", fire_slack_seconds=0, retry_seconds=0.1,
            )
            scheduler.on_fire(handler)
            scheduler.start()
            scheduler.schedule(timedelta(0), _make_task())
            await asyncio.sleep(1.0)
            scheduler.shutdown()

        asyncio.run(run())
        assert calls == ["act-1", "act-1"]

    def test_retry_keeps_newer_compacted_check(self):
        fired: List[str] = []
        holder = {}

        async def handler(task):
            fired.append(task.label)
            if len(fired) == 1:
                # a heartbeat lands while this check is failing
                holder["scheduler"].schedule(
                    timedelta(milliseconds=600),
                    DeferredCheckTask(task.activity_id, _now(), "newer"),
                )
                raise ConnectionError("store unreachable")

        async def run():
            scheduler = DeadlineScheduler(
                jobstore="memory", compact=True, fire_slack_seconds=0, retry_seconds=0.1,
            )
            holder["scheduler"] = scheduler
            scheduler.on_fire(handler)
            scheduler.start()
            scheduler.schedule(timedelta(0), DeferredCheckTask("act-1", _now(), "first"))
            await asyncio.sleep(1.5)
            pending = scheduler.pending_count()
            scheduler.shutdown()
            return pending

        pending = asyncio.run(run())
        assert fired == ["first", "first", "newer"]
        assert pending == 0

    def test_retry_job_id_is_unique(self):
        async def run():
            scheduler = DeadlineScheduler(jobstore="memory", compact=True)
            scheduler.start()
            compacted = scheduler.schedule(timedelta(minutes=15), _make_task())
            retry = scheduler.retry_later(_make_task())
            count = scheduler.pending_count()
            scheduler.shutdown()
            return compacted, retry, count

        compacted, retry, count = asyncio.run(run())
        assert compacted == "deadline-check:act-1"
        assert retry.startswith("deadline-check:act-1:retry:")
        assert count == 2

    def test_no_handler_registered(self):
        scheduler_module._fire_handler = None
        asyncio.run(run_deferred_check("act-1", _now().isoformat()))


class TestLifecycle:

    def test_start_and_shutdown_idempotent(self):
        async def run():
            scheduler = DeadlineScheduler(jobstore="memory")
            scheduler.start()
            scheduler.start()
            running = scheduler.running
            scheduler.shutdown()
            scheduler.shutdown()
            return running, scheduler.running

        assert asyncio.run(run()) == (True, False)
