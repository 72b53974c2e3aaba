# tests/unit/test_penalty_scheduler.py
"""
Тесты планировщика снятия ограничений.
"""

import asyncio
from datetime import timedelta

import pytest

from imageguard.database.models import utcnow
from imageguard.services.penalty import PenaltyScheduler
from imageguard.services.penalty import grant_service

COMMUNITY = 6001


class Recorder:
    def __init__(self):
        self.fired: list[int] = []

    async def __call__(self, grant_id: int) -> None:
        self.fired.append(grant_id)


@pytest.fixture
async def scheduler():
    recorder = Recorder()
    sched = PenaltyScheduler(recorder)
    sched.recorder = recorder
    yield sched
    await sched.shutdown()


@pytest.mark.asyncio
async def test_timer_fires_at_expiry(scheduler):
    scheduler.arm(1, COMMUNITY, 42, utcnow() + timedelta(milliseconds=50))
    assert scheduler.is_armed(COMMUNITY, 42)

    await asyncio.sleep(0.3)

    assert scheduler.recorder.fired == [1]
    assert not scheduler.is_armed(COMMUNITY, 42)


@pytest.mark.asyncio
async def test_past_expiry_fires_immediately(scheduler):
    scheduler.arm(2, COMMUNITY, 42, utcnow() - timedelta(hours=1))

    await asyncio.sleep(0.05)

    assert scheduler.recorder.fired == [2]


@pytest.mark.asyncio
async def test_rearm_replaces_previous_timer(scheduler):
    scheduler.arm(1, COMMUNITY, 42, utcnow() + timedelta(milliseconds=50))
    scheduler.arm(1, COMMUNITY, 42, utcnow() + timedelta(seconds=30))

    await asyncio.sleep(0.3)

    assert scheduler.recorder.fired == []
    assert scheduler.pending == 1


@pytest.mark.asyncio
async def test_cancel_prevents_firing(scheduler):
    scheduler.arm(1, COMMUNITY, 42, utcnow() + timedelta(milliseconds=50))
    scheduler.cancel(COMMUNITY, 42)

    await asyncio.sleep(0.2)

    assert scheduler.recorder.fired == []


@pytest.mark.asyncio
async def test_timers_are_per_member(scheduler):
    scheduler.arm(1, COMMUNITY, 42, utcnow() + timedelta(milliseconds=30))
    scheduler.arm(2, COMMUNITY, 43, utcnow() + timedelta(milliseconds=30))

    await asyncio.sleep(0.3)

    assert sorted(scheduler.recorder.fired) == [1, 2]


@pytest.mark.asyncio
async def test_callback_error_does_not_break_scheduler():
    async def failing(grant_id):
        raise RuntimeError("discord down")

    sched = PenaltyScheduler(failing)
    sched.arm(1, COMMUNITY, 42, utcnow())
    await asyncio.sleep(0.05)

    assert sched.pending == 0
    await sched.shutdown()


@pytest.mark.asyncio
async def test_reconcile_expires_overdue_and_rearms_rest(scheduler, db_session):
    overdue = await grant_service.save_grant(
        db_session, COMMUNITY, 42, 701, duration_seconds=60, now=utcnow() - timedelta(hours=2)
    )
    upcoming = await grant_service.save_grant(db_session, COMMUNITY, 43, 701, duration_seconds=3600)
    inactive = await grant_service.save_grant(
        db_session, COMMUNITY, 44, 701, duration_seconds=60, now=utcnow() - timedelta(hours=2)
    )
    await grant_service.deactivate_grant(db_session, inactive)

    expired_count, armed_count = await scheduler.reconcile()

    assert (expired_count, armed_count) == (1, 1)
    assert scheduler.recorder.fired == [overdue.id]
    assert scheduler.is_armed(COMMUNITY, upcoming.member_id)
    assert not scheduler.is_armed(COMMUNITY, 44)


@pytest.mark.asyncio
async def test_shutdown_cancels_all(scheduler):
    scheduler.arm(1, COMMUNITY, 42, utcnow() + timedelta(seconds=30))
    scheduler.arm(2, COMMUNITY, 43, utcnow() + timedelta(seconds=30))

    await scheduler.shutdown()

    assert scheduler.pending == 0
