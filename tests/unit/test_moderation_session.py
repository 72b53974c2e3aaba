# ============================================================
# ТЕСТЫ СЕССИИ МОДЕРАЦИИ
# ============================================================
# Сценарии:
# A - первое изображение сохраняется без наказания
# B - повтор от другого участника -> удаление, ЛС, уведомление
# C - одновременная публикация: ровно одна вставка
# D - !setup без прав (см. также test_admin_commands)
# E - 404 при скачивании -> unhashable, без наказания
# + флаг запуска, чужой канал, изоляция ошибок, сбой хранилища
# ============================================================

import asyncio
from unittest.mock import AsyncMock

import pytest

from imageguard.errors import StorageUnavailableError
from imageguard.handlers.admin_commands import AdminCommands, SETUP_NOT_ADMIN
from imageguard.messaging.base import Attachment
from imageguard.services.community_config import CommunityConfigService
from imageguard.services.duplicate_ledger import DuplicateLedger
from imageguard.services.fingerprint import UnhashableReason
from imageguard.services.moderation_session import (
    UNHASHABLE_REPLY,
    ImageVerdict,
    ModerationSession,
    SessionStatus,
    extract_image_refs,
)
from imageguard.services.penalty import PenaltyController, PenaltyPolicy, PenaltyScheduler
from imageguard.services.run_state import RunStateGate

FP_X = "1" * 64
FP_Y = "2" * 64


@pytest.fixture
async def configured(db_session, community_settings):
    await CommunityConfigService().save_config(
        db_session,
        community_settings.community_id,
        community_settings.active_channel_id,
        community_settings.notification_channel_id,
    )
    return community_settings


@pytest.fixture
def build_session(messenger_mock, stub_fingerprints, db_engine):
    def _build(mapping: dict, unhashable_policy: str = "ignore", run_state=None) -> ModerationSession:
        run_state = run_state or RunStateGate("memory")
        penalties = PenaltyController(messenger_mock, PenaltyScheduler(), policy=PenaltyPolicy.REVOKE_ROLE)
        return ModerationSession(
            messenger_mock,
            stub_fingerprints(mapping),
            penalties,
            run_state,
            configs=CommunityConfigService(),
            commands=AdminCommands(messenger_mock, run_state),
            unhashable_policy=unhashable_policy,
        )

    return _build


# ============================================================
# ИЗВЛЕЧЕНИЕ КАНДИДАТОВ
# ============================================================

def test_extract_image_refs_order_and_filter(make_event):
    event = make_event(
        attachments=(
            Attachment(url="https://cdn/a.png", content_type="image/png"),
            Attachment(url="https://cdn/doc.pdf", content_type="application/pdf"),
            Attachment(url="https://cdn/unknown", content_type=None),
            Attachment(url="https://cdn/b.jpg", content_type="image/jpeg"),
        ),
        embeds=("https://img/c.gif", "https://cdn/a.png"),
    )

    urls = [ref.url for ref in extract_image_refs(event)]

    # Без дедупликации внутри сообщения
    assert urls == ["https://cdn/a.png", "https://cdn/b.jpg", "https://img/c.gif", "https://cdn/a.png"]


# ============================================================
# СЦЕНАРИИ
# ============================================================

@pytest.mark.asyncio
async def test_scenario_a_first_image_is_recorded(build_session, configured, messenger_mock, db_session, make_event):
    session = build_session({"https://cdn/x.png": FP_X})
    event = make_event(author_id=1, images=("https://cdn/x.png",))

    report = await session.handle(db_session, event)

    assert report.status is SessionStatus.PROCESSED
    assert [i.verdict for i in report.images] == [ImageVerdict.NEW]
    record = await DuplicateLedger.get_record(db_session, FP_X, configured.community_id)
    assert record.source_message_id == event.message_id
    assert record.source_channel_id == configured.active_channel_id
    assert record.source_author_id == 1
    messenger_mock.delete_message.assert_not_awaited()
    messenger_mock.send_direct_message.assert_not_awaited()


@pytest.mark.asyncio
async def test_scenario_b_duplicate_is_penalized(build_session, configured, messenger_mock, db_session, make_event):
    session = build_session({"https://cdn/x.png": FP_X, "https://cdn/x-copy.png": FP_X})
    await session.handle(db_session, make_event(author_id=1, images=("https://cdn/x.png",)))

    offender = make_event(author_id=2, images=("https://cdn/x-copy.png",))
    report = await session.handle(db_session, offender)

    assert [i.verdict for i in report.images] == [ImageVerdict.DUPLICATE]
    messenger_mock.delete_message.assert_awaited_once_with(offender.ref)
    messenger_mock.send_direct_message.assert_awaited_once()
    assert messenger_mock.send_direct_message.await_args.args[0] == 2
    messenger_mock.send_channel_message.assert_awaited_with(
        configured.notification_channel_id, "<@2> had a duplicate image removed."
    )


@pytest.mark.asyncio
async def test_scenario_c_simultaneous_posts(build_session, configured, messenger_mock, session_factory, make_event):
    session = build_session({"https://cdn/x.png": FP_X})
    first = make_event(author_id=1, images=("https://cdn/x.png",))
    second = make_event(author_id=2, images=("https://cdn/x.png",))

    async def handle(event):
        async with session_factory() as db:
            return await session.handle(db, event)

    reports = await asyncio.gather(handle(first), handle(second))
    verdicts = sorted(r.images[0].verdict.value for r in reports)

    assert verdicts == [ImageVerdict.DUPLICATE.value, ImageVerdict.NEW.value]
    assert messenger_mock.delete_message.await_count == 1


@pytest.mark.asyncio
async def test_scenario_d_setup_without_admin(build_session, messenger_mock, db_session, make_event):
    session = build_session({})
    event = make_event(content="!setup 111111 222222", author_is_admin=False)

    report = await session.handle(db_session, event)

    assert report.status is SessionStatus.COMMAND
    messenger_mock.send_reply.assert_awaited_once_with(event.ref, SETUP_NOT_ADMIN)
    assert await CommunityConfigService().get_config(db_session, event.guild_id) is None


@pytest.mark.asyncio
async def test_scenario_e_unhashable_is_skipped(build_session, configured, messenger_mock, db_session, make_event):
    session = build_session({"https://cdn/gone.png": UnhashableReason.HTTP_STATUS})

    report = await session.handle(db_session, make_event(images=("https://cdn/gone.png",)))

    assert report.images[0].verdict is ImageVerdict.UNHASHABLE
    assert report.images[0].reason is UnhashableReason.HTTP_STATUS
    messenger_mock.send_reply.assert_not_awaited()
    messenger_mock.delete_message.assert_not_awaited()
    assert await DuplicateLedger.count(db_session) == 0


@pytest.mark.asyncio
async def test_unhashable_reject_policy_replies(build_session, configured, messenger_mock, db_session, make_event):
    session = build_session({"https://cdn/gone.png": UnhashableReason.HTTP_STATUS}, unhashable_policy="reject")
    event = make_event(images=("https://cdn/gone.png",))

    await session.handle(db_session, event)

    messenger_mock.send_reply.assert_awaited_once_with(event.ref, UNHASHABLE_REPLY)
    messenger_mock.delete_message.assert_not_awaited()


# ============================================================
# ФЛАГ ЗАПУСКА И КАНАЛЫ
# ============================================================

@pytest.mark.asyncio
async def test_disabled_community_is_ignored(build_session, configured, db_session, make_event):
    run_state = RunStateGate("memory")
    await run_state.set_enabled(configured.community_id, False)
    session = build_session({"https://cdn/x.png": FP_X}, run_state=run_state)

    report = await session.handle(db_session, make_event(images=("https://cdn/x.png",)))

    assert report.status is SessionStatus.DISABLED
    assert await DuplicateLedger.count(db_session) == 0


@pytest.mark.asyncio
async def test_startbot_works_while_stopped(build_session, configured, db_session, make_event):
    run_state = RunStateGate("memory")
    await run_state.set_enabled(configured.community_id, False)
    session = build_session({}, run_state=run_state)

    report = await session.handle(db_session, make_event(content="!startbot", author_is_admin=True))

    assert report.status is SessionStatus.COMMAND
    assert await run_state.is_enabled(configured.community_id) is True


@pytest.mark.asyncio
async def test_other_channel_is_ignored(build_session, configured, db_session, make_event):
    session = build_session({"https://cdn/x.png": FP_X})

    report = await session.handle(
        db_session, make_event(channel_id=configured.active_channel_id + 1, images=("https://cdn/x.png",))
    )

    assert report.status is SessionStatus.OTHER_CHANNEL


@pytest.mark.asyncio
async def test_unconfigured_community_is_ignored(build_session, db_session, make_event):
    session = build_session({"https://cdn/x.png": FP_X})

    report = await session.handle(db_session, make_event(images=("https://cdn/x.png",)))

    assert report.status is SessionStatus.UNCONFIGURED


@pytest.mark.asyncio
async def test_bots_and_direct_messages_are_ignored(build_session, db_session, make_event):
    session = build_session({})

    assert (await session.handle(db_session, make_event(author_is_bot=True))).status is SessionStatus.IGNORED
    assert (await session.handle(db_session, make_event(guild_id=None))).status is SessionStatus.IGNORED


@pytest.mark.asyncio
async def test_message_without_images(build_session, configured, db_session, make_event):
    session = build_session({})

    report = await session.handle(db_session, make_event(content="hello"))

    assert report.status is SessionStatus.NO_IMAGES


# ============================================================
# НЕСКОЛЬКО ИЗОБРАЖЕНИЙ, ИЗОЛЯЦИЯ ОШИБОК
# ============================================================

@pytest.mark.asyncio
async def test_failure_of_one_image_does_not_stop_others(build_session, configured, db_session, make_event):
    session = build_session({"https://cdn/bad.png": RuntimeError("boom"), "https://cdn/y.png": FP_Y})

    report = await session.handle(db_session, make_event(images=("https://cdn/bad.png", "https://cdn/y.png")))

    assert [i.verdict for i in report.images] == [ImageVerdict.ERROR, ImageVerdict.NEW]


@pytest.mark.asyncio
async def test_message_deleted_once_for_several_duplicates(build_session, configured, messenger_mock, db_session, make_event):
    session = build_session({"https://cdn/x.png": FP_X, "https://cdn/y.png": FP_Y})
    await session.handle(db_session, make_event(author_id=1, images=("https://cdn/x.png", "https://cdn/y.png")))

    report = await session.handle(db_session, make_event(author_id=2, images=("https://cdn/x.png", "https://cdn/y.png")))

    assert report.duplicates == 2
    assert messenger_mock.delete_message.await_count == 1


@pytest.mark.asyncio
async def test_same_image_twice_in_one_message(build_session, configured, messenger_mock, db_session, make_event):
    session = build_session({"https://cdn/x.png": FP_X})

    report = await session.handle(db_session, make_event(images=("https://cdn/x.png", "https://cdn/x.png")))

    assert [i.verdict for i in report.images] == [ImageVerdict.NEW, ImageVerdict.DUPLICATE]


@pytest.mark.asyncio
async def test_redelivered_message_is_not_penalized(build_session, configured, messenger_mock, db_session, make_event):
    session = build_session({"https://cdn/x.png": FP_X})
    event = make_event(images=("https://cdn/x.png",))

    await session.handle(db_session, event)
    report = await session.handle(db_session, event)

    assert [i.verdict for i in report.images] == [ImageVerdict.OWN_RECORD]
    messenger_mock.delete_message.assert_not_awaited()


@pytest.mark.asyncio
async def test_storage_outage_abandons_session(build_session, configured, db_session, make_event, monkeypatch):
    session = build_session({"https://cdn/x.png": FP_X, "https://cdn/y.png": FP_Y})
    monkeypatch.setattr(DuplicateLedger, "claim", AsyncMock(side_effect=StorageUnavailableError("down")))

    report = await session.handle(db_session, make_event(images=("https://cdn/x.png", "https://cdn/y.png")))

    assert report.status is SessionStatus.ABANDONED
    assert report.images == []
