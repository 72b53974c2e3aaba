# ============================================================
# СЕССИЯ МОДЕРАЦИИ
# ============================================================
# Обработка одного входящего сообщения:
# 1. боты и сообщения вне гильдии игнорируются
# 2. загружаются настройки сообщества
# 3. админ-команды обрабатываются первыми (до проверки флага
#    запуска, иначе !startbot не сможет включить бота обратно);
#    в ненастроенном сообществе работает только !setup
# 4. флаг запуска выключен или чужой канал -> игнор
# 5. кандидаты: вложения image/*, затем картинки из embed
# 6. для каждого по очереди: отпечаток -> claim -> наказание
# 7. ошибка одного изображения не мешает остальным;
#    StorageUnavailableError прерывает всю сессию
# ============================================================

import enum
import logging
from dataclasses import dataclass, field
from typing import Optional, Protocol

from sqlalchemy.ext.asyncio import AsyncSession

from imageguard.config import UNHASHABLE_POLICY
from imageguard.errors import StorageUnavailableError
from imageguard.messaging.base import ActionResult, MessageCreated, Messenger
from imageguard.services.community_config import CommunityConfigService, CommunitySettings
from imageguard.services.duplicate_ledger import ClaimOutcome, DuplicateLedger, Provenance
from imageguard.services.fingerprint import FingerprintService, ImageRef, UnhashableReason
from imageguard.services.penalty import PenaltyController
from imageguard.services.run_state import RunStateGate

logger = logging.getLogger(__name__)

UNHASHABLE_REPLY = "❌ This image could not be verified. Please upload it again as a regular image file."


class SessionStatus(str, enum.Enum):
    IGNORED = "IGNORED"
    COMMAND = "COMMAND"
    UNCONFIGURED = "UNCONFIGURED"
    DISABLED = "DISABLED"
    OTHER_CHANNEL = "OTHER_CHANNEL"
    NO_IMAGES = "NO_IMAGES"
    PROCESSED = "PROCESSED"
    ABANDONED = "ABANDONED"


class ImageVerdict(str, enum.Enum):
    NEW = "NEW"
    DUPLICATE = "DUPLICATE"
    # Повтор события, наказание уже было
    REPLAY = "REPLAY"
    # Запись реестра принадлежит этому же сообщению (повторная доставка)
    OWN_RECORD = "OWN_RECORD"
    UNHASHABLE = "UNHASHABLE"
    VANISHED = "VANISHED"
    ERROR = "ERROR"


@dataclass
class ImageOutcome:
    url: Optional[str]
    verdict: ImageVerdict
    reason: Optional[UnhashableReason] = None
    record_id: Optional[int] = None
    # Сообщение удалено (или уже отсутствовало) при наказании
    removed: bool = False


@dataclass
class SessionReport:
    status: SessionStatus
    images: list[ImageOutcome] = field(default_factory=list)

    def count(self, verdict: ImageVerdict) -> int:
        return sum(1 for image in self.images if image.verdict is verdict)

    @property
    def duplicates(self) -> int:
        return self.count(ImageVerdict.DUPLICATE)


class CommandHandler(Protocol):
    async def handle(
        self,
        session: AsyncSession,
        event: MessageCreated,
        settings: Optional[CommunitySettings],
    ) -> bool: ...


def extract_image_refs(event: MessageCreated) -> list[ImageRef]:
    """Вложения с image/* типом, затем картинки из embed. Без дедупликации."""
    refs = [
        ImageRef(url=attachment.url, content_type=attachment.content_type)
        for attachment in event.attachments
        if attachment.is_image and attachment.url
    ]
    refs.extend(ImageRef(url=url) for url in event.embedded_images if url)
    return refs


class ModerationSession:
    """Оркестратор обработки входящих сообщений."""

    def __init__(
        self,
        messenger: Messenger,
        fingerprints: FingerprintService,
        penalties: PenaltyController,
        run_state: RunStateGate,
        configs: Optional[CommunityConfigService] = None,
        commands: Optional[CommandHandler] = None,
        unhashable_policy: str = UNHASHABLE_POLICY,
    ):
        self._messenger = messenger
        self._fingerprints = fingerprints
        self._penalties = penalties
        self._run_state = run_state
        self._configs = configs or CommunityConfigService()
        self._commands = commands
        self._unhashable_policy = unhashable_policy

    async def handle(self, session: AsyncSession, event: MessageCreated) -> SessionReport:
        if event.author_is_bot or event.guild_id is None:
            return SessionReport(SessionStatus.IGNORED)

        try:
            settings = await self._configs.get_config(session, event.guild_id)
        except StorageUnavailableError as e:
            logger.error(f"❌ [SESSION] Сессия прервана, настройки недоступны: message={event.message_id} ({e})")
            return SessionReport(SessionStatus.ABANDONED)

        if self._commands is not None and await self._commands.handle(session, event, settings):
            return SessionReport(SessionStatus.COMMAND)

        if settings is None:
            return SessionReport(SessionStatus.UNCONFIGURED)
        if not await self._run_state.is_enabled(event.guild_id):
            return SessionReport(SessionStatus.DISABLED)
        if event.channel_id != settings.active_channel_id:
            return SessionReport(SessionStatus.OTHER_CHANNEL)

        refs = extract_image_refs(event)
        if not refs:
            return SessionReport(SessionStatus.NO_IMAGES)

        logger.info(f"🔍 [SESSION] Проверяем {len(refs)} изображений: message={event.message_id}")
        return await self._process_images(session, event, settings, refs)

    async def _process_images(
        self,
        session: AsyncSession,
        event: MessageCreated,
        settings: CommunitySettings,
        refs: list[ImageRef],
    ) -> SessionReport:
        report = SessionReport(SessionStatus.PROCESSED)
        # Отпечатки, зарегистрированные этой сессией
        claimed_here: set[str] = set()
        submission_removed = False

        for ref in refs:
            try:
                outcome = await self._process_one(session, event, settings, ref, claimed_here, submission_removed)
            except StorageUnavailableError as e:
                logger.error(
                    f"❌ [SESSION] Хранилище недоступно, сессия прервана: "
                    f"message={event.message_id} ({e})"
                )
                report.status = SessionStatus.ABANDONED
                break
            except Exception as e:
                logger.exception(f"❌ [SESSION] Ошибка обработки {ref.url}: {e}")
                outcome = ImageOutcome(ref.url, ImageVerdict.ERROR)

            if outcome.removed:
                submission_removed = True
            report.images.append(outcome)

        logger.info(
            f"[SESSION] message={event.message_id}: "
            + ", ".join(f"{v.value}={report.count(v)}" for v in ImageVerdict if report.count(v))
        )
        return report

    async def _process_one(
        self,
        session: AsyncSession,
        event: MessageCreated,
        settings: CommunitySettings,
        ref: ImageRef,
        claimed_here: set[str],
        submission_removed: bool,
    ) -> ImageOutcome:
        result = await self._fingerprints.compute_fingerprint(ref)
        if not result.hashable:
            logger.info(f"[SESSION] Не удалось получить отпечаток {ref.url}: {result.reason.value}")
            if self._unhashable_policy == "reject":
                await self._messenger.send_reply(event.ref, UNHASHABLE_REPLY)
            return ImageOutcome(ref.url, ImageVerdict.UNHASHABLE, reason=result.reason)

        fingerprint = result.fingerprint
        claim = await DuplicateLedger.claim(
            session,
            fingerprint,
            settings.community_id,
            Provenance(
                channel_id=event.channel_id,
                message_id=event.message_id,
                url=ref.url,
                author_id=event.author_id,
            ),
        )

        if claim.outcome is ClaimOutcome.INSERTED:
            claimed_here.add(fingerprint)
            return ImageOutcome(ref.url, ImageVerdict.NEW, record_id=claim.record.id)
        if claim.outcome is ClaimOutcome.VANISHED:
            return ImageOutcome(ref.url, ImageVerdict.VANISHED)

        original = claim.record
        if original.source_message_id == event.message_id and fingerprint not in claimed_here:
            logger.info(f"[SESSION] Повторная доставка сообщения {event.message_id}, запись уже наша")
            return ImageOutcome(ref.url, ImageVerdict.OWN_RECORD, record_id=original.id)

        penalty = await self._penalties.apply(
            session,
            event,
            settings,
            fingerprint,
            original_record_id=original.id,
            remove_submission=not submission_removed,
        )
        if not penalty.applied:
            return ImageOutcome(ref.url, ImageVerdict.REPLAY, record_id=original.id)

        return ImageOutcome(
            ref.url,
            ImageVerdict.DUPLICATE,
            record_id=original.id,
            removed=penalty.deleted in (ActionResult.OK, ActionResult.NOT_FOUND),
        )
