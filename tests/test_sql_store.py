"""
test_sql_store.py — SQLAlchemy persistence on SQLite (aiosqlite).

Covers:
    • Activity round trip with timezone-aware timestamps
    • Optimistic status transition (status + deadline guard)
    • Latest / latest-active lookups by phone
    • Check-in history and user profiles
    • Sender repository bookkeeping and settings seeding
    • Storage failures surface as StoreUnavailableError
    • Full start → miss → alarm flow against SQL
    • A heartbeat racing an end never revives a finished activity

Run with:
    pytest tests/test_sql_store.py -v
"""

from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy.ext.asyncio import async_sessionmaker

from backend.app.activity.models import (
    HEARTBEAT_STATUSES,
    Activity,
    ActivityStatus,
    CheckIn,
    UserProfile,
)
from backend.app.activity.orm import SqlActivityStore
from backend.app.activity.state_machine import ActivityService, CheckOutcome
from backend.app.alerts.credentials import SqlSenderRepository, SqlSettingsProvider
from backend.app.alerts.models import SenderCredential
from backend.app.core.database import build_engine, init_db
from backend.app.core.errors import InvalidStateError, StoreUnavailableError


T0 = datetime(2026, 3, 1, 8, 0, 0, 123456, tzinfo=timezone.utc)


def _run(tmp_path, scenario, *, create_tables: bool = True):
    """Run ``scenario(factory)`` against a fresh SQLite file."""

    async def go():
        engine = build_engine(f"sqlite+aiosqlite:///{tmp_path / 'saveme.db'}", echo=False)
        try:
            if create_tables:
                await init_db(engine)
            factory = async_sessionmaker(engine, expire_on_commit=False)
            return await scenario(factory)
        finally:
            await engine.dispose()

    return asyncio.run(go())


def _make_activity(**overrides) -> Activity:
    fields = dict(
        phone_number="13800000000",
        activity_name="Solo hike",
        emergency_contact_phone="13900000000",
        check_in_interval_minutes=10,
        tolerance_minutes=5,
        next_check_in_deadline=T0 + timedelta(minutes=15),
        created_at=T0,
        user_name="Li Lei",
        language="en",
    )
    fields.update(overrides)
    return Activity(**fields)


# ═══════════════════════════════════════════════════════════════════════════
# Section 1: Activity store
# ═══════════════════════════════════════════════════════════════════════════

class TestSqlActivityStore:

    def test_round_trip(self, tmp_path):
        async def scenario(factory):
            store = SqlActivityStore(factory)
            saved = await store.save(_make_activity(last_latitude=30.25, last_longitude=120.15))
            loaded = await store.get(saved.id)
            return saved, loaded

        saved, loaded = _run(tmp_path, scenario)
        assert loaded.id == saved.id
        assert loaded.status == ActivityStatus.ACTIVE
        assert loaded.next_check_in_deadline == T0 + timedelta(minutes=15)
        assert loaded.next_check_in_deadline.tzinfo is not None
        assert loaded.created_at == T0
        assert loaded.language == "en"
        assert loaded.has_location

    def test_get_missing(self, tmp_path):
        async def scenario(factory):
            return await SqlActivityStore(factory).get("nope")

        assert _run(tmp_path, scenario) is None

    def test_save_updates_existing_row(self, tmp_path):
        async def scenario(factory):
            store = SqlActivityStore(factory)
            activity = await store.save(_make_activity())
            activity.status = ActivityStatus.FINISHED
            activity.battery_level = 42
            await store.save(activity)
            return await store.get(activity.id)

        loaded = _run(tmp_path, scenario)
        assert loaded.status == ActivityStatus.FINISHED
        assert loaded.battery_level == 42

    def test_compare_and_set(self, tmp_path):
        async def scenario(factory):
            store = SqlActivityStore(factory)
            activity = await store.save(_make_activity())
            deadline = activity.next_check_in_deadline
            wrong_deadline = await store.compare_and_set_status(
                activity.id, ActivityStatus.ACTIVE, deadline + timedelta(seconds=1),
                ActivityStatus.ALARMED,
            )
            wrong_status = await store.compare_and_set_status(
                activity.id, ActivityStatus.ALARMED, deadline, ActivityStatus.ACTIVE,
            )
            won = await store.compare_and_set_status(
                activity.id, ActivityStatus.ACTIVE, deadline, ActivityStatus.ALARMED,
            )
            again = await store.compare_and_set_status(
                activity.id, ActivityStatus.ACTIVE, deadline, ActivityStatus.ALARMED,
            )
            return wrong_deadline, wrong_status, won, again, await store.get(activity.id)

        wrong_deadline, wrong_status, won, again, loaded = _run(tmp_path, scenario)
        assert (wrong_deadline, wrong_status, won, again) == (False, False, True, False)
        assert loaded.status == ActivityStatus.ALARMED

    def test_latest_lookups(self, tmp_path):
        async def scenario(factory):
            store = SqlActivityStore(factory)
            old = await store.save(_make_activity(created_at=T0, status=ActivityStatus.ACTIVE))
            new = await store.save(_make_activity(
                created_at=T0 + timedelta(minutes=5), status=ActivityStatus.FINISHED,
            ))
            await store.save(_make_activity(phone_number="13700000000", created_at=T0 + timedelta(hours=1)))
            active = await store.get_active_by_phone("13800000000")
            latest = await store.get_latest_by_phone("13800000000")
            return old, new, active, latest

        old, new, active, latest = _run(tmp_path, scenario)
        assert active.id == old.id
        assert latest.id == new.id

    def test_check_ins(self, tmp_path):
        async def scenario(factory):
            store = SqlActivityStore(factory)
            activity = await store.save(_make_activity())
            for minutes in (2, 1):
                await store.add_check_in(CheckIn(
                    activity_id=activity.id, latitude=30.0 + minutes, longitude=120.0,
                    created_at=T0 + timedelta(minutes=minutes),
                ))
            return await store.list_check_ins(activity.id)

        history = _run(tmp_path, scenario)
        assert [c.latitude for c in history] == [31.0, 32.0]
        assert all(c.id is not None for c in history)

    def test_user_profiles(self, tmp_path):
        async def scenario(factory):
            store = SqlActivityStore(factory)
            saved = await store.save_user(UserProfile(
                phone_number="13800000000", default_contact_phone="13600000000",
                default_interval_minutes=45,
            ))
            return saved, await store.get_user_by_phone("13800000000")

        saved, loaded = _run(tmp_path, scenario)
        assert loaded.id == saved.id
        assert loaded.default_contact_phone == "13600000000"
        assert loaded.default_interval_minutes == 45

    def test_ping(self, tmp_path):
        async def scenario(factory):
            await SqlActivityStore(factory).ping()
            return True

        assert _run(tmp_path, scenario) is True

    def test_missing_tables_raise_store_unavailable(self, tmp_path):
        async def scenario(factory):
            await SqlActivityStore(factory).get("anything")

        with pytest.raises(StoreUnavailableError) as exc_info:
            _run(tmp_path, scenario, create_tables=False)
        assert exc_info.value.status_code == 503


# ═══════════════════════════════════════════════════════════════════════════
# Section 2: Sender accounts & settings
# ═══════════════════════════════════════════════════════════════════════════

class TestSqlSenders:

    def test_bookkeeping(self, tmp_path):
        async def scenario(factory):
            repo = SqlSenderRepository(factory)
            a = await repo.add(SenderCredential(host="smtp.a.com", port=465, user="a@a.com", password="p"))
            b = await repo.add(SenderCredential(host="smtp.b.com", port=587, user="b@b.com", password="p", secure=False))
            await repo.record_outcome(a.id, False)
            await repo.record_outcome(a.id, False)
            await repo.record_outcome(a.id, True)
            await repo.set_active(b.id, False)
            active = await repo.list_active()
            everything = await repo.list_all()
            return a, active, everything, await repo.count()

        a, active, everything, count = _run(tmp_path, scenario)
        assert [c.user for c in active] == ["a@a.com"]
        assert active[0].fail_count == 2
        assert active[0].success_count == 1
        assert count == 2
        assert [c.user for c in everything] == ["b@b.com", "a@a.com"]
        assert everything[0].secure is False

    def test_concurrent_outcomes_not_lost(self, tmp_path):
        async def scenario(factory):
            repo = SqlSenderRepository(factory)
            cred = await repo.add(SenderCredential(host="h", port=465, user="u@x.com", password="p"))
            await asyncio.gather(*[repo.record_outcome(cred.id, False) for _ in range(5)])
            return (await repo.list_active())[0]

        assert _run(tmp_path, scenario).fail_count == 5

    def test_delete_and_missing(self, tmp_path):
        async def scenario(factory):
            repo = SqlSenderRepository(factory)
            cred = await repo.add(SenderCredential(host="h", port=465, user="u@x.com", password="p"))
            return (
                await repo.delete(cred.id),
                await repo.delete(cred.id),
                await repo.set_active(999, True),
            )

        assert _run(tmp_path, scenario) == (True, False, False)


class TestSqlSettings:

    def test_seed_and_update(self, tmp_path):
        async def scenario(factory):
            provider = SqlSettingsProvider(factory)
            await provider.seed_defaults({"EMAIL_HOST": "smtp.qq.com", "EMAIL_USER": "me@qq.com"})
            await provider.update_settings({"EMAIL_USER": "you@qq.com", "UNKNOWN": "x"})
            # seeding again keeps stored values
            await provider.seed_defaults({"EMAIL_USER": "other@qq.com"})
            return await provider.all_settings(), await provider.get_setting("EMAIL_PASS")

        values, password = _run(tmp_path, scenario)
        assert values["EMAIL_HOST"] == "smtp.qq.com"
        assert values["EMAIL_USER"] == "you@qq.com"
        assert "UNKNOWN" not in values
        assert password == ""


# ═══════════════════════════════════════════════════════════════════════════
# Section 3: End-to-end on SQL
# ═══════════════════════════════════════════════════════════════════════════

class _Scheduler:
    def __init__(self):
        self.scheduled = []

    def schedule(self, delay, task):
        self.scheduled.append(task)
        return task.activity_id


class _Dispatcher:
    def __init__(self):
        self.count = 0

    async def dispatch(self, activity):
        self.count += 1


class TestSqlStateMachine:

    def test_miss_alarms_once_then_recovers(self, tmp_path):
        now = {"value": T0}
        dispatcher = _Dispatcher()

        async def scenario(factory):
            store = SqlActivityStore(factory)
            service = ActivityService(
                store, _Scheduler(), dispatcher, clock=lambda: now["value"],
            )
            activity = await service.start_activity(
                "13800000000", "Hike", "13900000000", 10, tolerance_minutes=5,
            )
            now["value"] = T0 + timedelta(minutes=15, seconds=1)
            first = await service.check_deadline(activity.id)
            second = await service.check_deadline(activity.id)
            now["value"] = T0 + timedelta(minutes=20)
            await service.report_safe(activity.id, 30.1, 120.2)
            loaded = await store.get(activity.id)
            history = await store.list_check_ins(activity.id)
            return first, second, loaded, history

        first, second, loaded, history = _run(tmp_path, scenario)
        assert first == CheckOutcome.ALARMED
        assert second == CheckOutcome.INACTIVE
        assert dispatcher.count == 1
        assert loaded.status == ActivityStatus.ACTIVE
        assert loaded.next_check_in_deadline == T0 + timedelta(minutes=35)
        assert len(history) == 1


class _PausedHeartbeatStore(SqlActivityStore):
    """Holds every heartbeat write until ``release`` is set."""

    def __init__(self, factory):
        super().__init__(factory)
        self.read_done = asyncio.Event()
        self.release = asyncio.Event()

    async def save_if_status(self, activity, expected):
        self.read_done.set()
        await self.release.wait()
        return await super().save_if_status(activity, expected)


class TestSqlConcurrentTransitions:

    def test_end_during_heartbeat_stays_finished(self, tmp_path):
        now = {"value": T0}

        async def scenario(factory):
            store = _PausedHeartbeatStore(factory)
            service = ActivityService(
                store, _Scheduler(), _Dispatcher(), clock=lambda: now["value"],
            )
            activity = await service.start_activity(
                "13800000000", "Hike", "13900000000", 10, tolerance_minutes=5,
            )
            now["value"] = T0 + timedelta(minutes=5)

            heartbeat = asyncio.create_task(service.report_safe(activity.id, 30.1, 120.2))
            await store.read_done.wait()
            await service.end_activity(activity.id)
            store.release.set()
            try:
                await heartbeat
                error = None
            except InvalidStateError as exc:
                error = exc

            loaded = await store.get(activity.id)
            current = await service.get_current_activity("13800000000")
            history = await store.list_check_ins(activity.id)
            return error, loaded, current, history

        error, loaded, current, history = _run(tmp_path, scenario)
        assert error is not None
        assert error.details["status"] == "finished"
        assert loaded.status == ActivityStatus.FINISHED
        assert loaded.next_check_in_deadline == T0 + timedelta(minutes=15)
        assert current is None
        assert history == []

    def test_save_if_status_guard(self, tmp_path):
        async def scenario(factory):
            store = SqlActivityStore(factory)
            activity = await store.save(_make_activity())
            activity.next_check_in_deadline = T0 + timedelta(minutes=30)
            activity.battery_level = 50
            landed = await store.save_if_status(activity, HEARTBEAT_STATUSES)
            await store.set_status(activity.id, ActivityStatus.FINISHED)
            activity.next_check_in_deadline = T0 + timedelta(minutes=45)
            rejected = await store.save_if_status(activity, HEARTBEAT_STATUSES)
            return landed, rejected, await store.get(activity.id)

        landed, rejected, loaded = _run(tmp_path, scenario)
        assert (landed, rejected) == (True, False)
        assert loaded.status == ActivityStatus.FINISHED
        assert loaded.next_check_in_deadline == T0 + timedelta(minutes=30)
        assert loaded.battery_level == 50

    def test_set_status_touches_status_only(self, tmp_path):
        async def scenario(factory):
            store = SqlActivityStore(factory)
            activity = await store.save(_make_activity(battery_level=80))
            done = await store.set_status(activity.id, ActivityStatus.FINISHED)
            missing = await store.set_status("nope", ActivityStatus.FINISHED)
            return done, missing, await store.get(activity.id)

        done, missing, loaded = _run(tmp_path, scenario)
        assert (done, missing) == (True, False)
        assert loaded.status == ActivityStatus.FINISHED
        assert loaded.battery_level == 80

    def test_list_active(self, tmp_path):
        async def scenario(factory):
            store = SqlActivityStore(factory)
            late = await store.save(_make_activity(next_check_in_deadline=T0 + timedelta(hours=2)))
            early = await store.save(_make_activity(
                phone_number="13700000000", next_check_in_deadline=T0 + timedelta(hours=1),
            ))
            await store.save(_make_activity(
                phone_number="13600000000", status=ActivityStatus.FINISHED,
            ))
            await store.save(_make_activity(
                phone_number="13500000000", status=ActivityStatus.ALARMED,
            ))
            return late, early, await store.list_active()

        late, early, active = _run(tmp_path, scenario)
        assert [a.id for a in active] == [early.id, late.id]
