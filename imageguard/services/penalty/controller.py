# ============================================================
# КОНТРОЛЛЕР НАКАЗАНИЙ
# ============================================================
# Состояния участника: Clean -> Warned -> (TimedOut | Cleared)
#
# apply() на дубликат, шаги по порядку, каждый может упасть
# независимо от остальных (неудача логируется, цепочка идёт дальше):
# 1. регистрация нарушения (повтор события -> стоп без эффектов)
# 2. действие с ролью по политике (только если участник ещё в гильдии)
# 3. удаление сообщения-нарушителя
# 4. ЛС участнику; закрытые ЛС -> уведомление в канал уведомлений
# 5. объявление в канале уведомлений
#
# StorageUnavailableError не перехватывается - сессия модерации
# прерывается целиком.
# ============================================================

import enum
import logging
from dataclasses import dataclass
from datetime import timedelta
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncSession

from imageguard.config import (
    CERTIFIED_ROLE_NAME,
    PENALTY_DURATION_SECONDS,
    PENALTY_POLICY,
    RESTRICTED_ROLE_NAME,
)
from imageguard.database.models import utcnow
from imageguard.database.session import get_session
from imageguard.messaging.base import ActionResult, MessageCreated, Messenger
from imageguard.services.community_config import CommunitySettings
from imageguard.services.penalty import grant_service
from imageguard.services.penalty.scheduler import PenaltyScheduler
from imageguard.services.penalty.violation_service import register_violation

logger = logging.getLogger(__name__)

# Повтор снятия роли после временной ошибки Discord (секунды)
EXPIRE_RETRY_DELAY = 60


class PenaltyPolicy(str, enum.Enum):
    # Снять "доверенную" роль, если она есть
    REVOKE_ROLE = "revoke_role"
    # Выдать временную ограничивающую роль
    TEMP_ROLE = "temp_role"


class PenaltyState(str, enum.Enum):
    CLEAN = "CLEAN"
    WARNED = "WARNED"
    TIMED_OUT = "TIMED_OUT"
    CLEARED = "CLEARED"


# ============================================================
# ТЕКСТЫ
# ============================================================
DM_TEXT_REVOKE = (
    "Your image was removed because it was identified as a duplicate based on its content or name. "
    "Please resubmit a new \"Original Image\" to receive \"{role}\" to participate in giveaways 🎉"
)
DM_TEXT_TEMP = (
    "Your image was removed because it was identified as a duplicate based on its content or name. "
    "You have been given the \"{role}\" role for {hours} hour(s)."
)
FALLBACK_TEXT_REVOKE = (
    "⚠️ User {user}'s image was removed because it was identified as a duplicate based on its content "
    "or name. Please ask them to resubmit a new \"Original Image\" to receive \"{role}\" and participate "
    "in giveaways."
)
FALLBACK_TEXT_TEMP = (
    "⚠️ User {user}'s image was removed because it was identified as a duplicate based on its content "
    "or name. They have been given the \"{role}\" role for {hours} hour(s). Their DMs are closed."
)
ANNOUNCE_TEXT = "<@{user_id}> had a duplicate image removed."


@dataclass
class PenaltyOutcome:
    """Что произошло на каждом шаге. None - шаг не выполнялся."""
    applied: bool
    state: PenaltyState = PenaltyState.CLEAN
    role: Optional[ActionResult] = None
    deleted: Optional[ActionResult] = None
    direct_message: Optional[ActionResult] = None
    fallback_notice: Optional[ActionResult] = None
    announcement: Optional[ActionResult] = None
    grant_id: Optional[int] = None


def _log_step(step: str, result: ActionResult, community_id: int, member_id: int) -> None:
    if result.ok:
        logger.info(f"[PENALTY] {step}: OK (community={community_id} member={member_id})")
    else:
        logger.warning(f"⚠️ [PENALTY] {step}: {result.value} (community={community_id} member={member_id})")


class PenaltyController:
    """Применение и снятие наказаний за дубликаты."""

    def __init__(
        self,
        messenger: Messenger,
        scheduler: Optional[PenaltyScheduler] = None,
        policy: PenaltyPolicy = PenaltyPolicy(PENALTY_POLICY),
        certified_role_name: str = CERTIFIED_ROLE_NAME,
        restricted_role_name: str = RESTRICTED_ROLE_NAME,
        duration_seconds: int = PENALTY_DURATION_SECONDS,
    ):
        self._messenger = messenger
        self._scheduler = scheduler or PenaltyScheduler()
        self._scheduler.bind(self.expire)
        self.policy = PenaltyPolicy(policy)
        self._certified_role_name = certified_role_name
        self._restricted_role_name = restricted_role_name
        self._duration_seconds = duration_seconds

    @property
    def scheduler(self) -> PenaltyScheduler:
        return self._scheduler

    @property
    def _role_name(self) -> str:
        if self.policy is PenaltyPolicy.TEMP_ROLE:
            return self._restricted_role_name
        return self._certified_role_name

    def _format(self, template: str, **kwargs) -> str:
        hours = max(1, round(self._duration_seconds / 3600))
        return template.format(role=self._role_name, hours=hours, **kwargs)

    # ------------------------------------------------------------
    # ПРИМЕНЕНИЕ
    # ------------------------------------------------------------
    async def apply(
        self,
        session: AsyncSession,
        event: MessageCreated,
        settings: CommunitySettings,
        fingerprint: str,
        original_record_id: Optional[int] = None,
        remove_submission: bool = True,
    ) -> PenaltyOutcome:
        """
        Наказывает автора сообщения за дубликат.

        Args:
            session: AsyncSession текущей сессии модерации
            event: Сообщение-нарушитель
            settings: Настройки сообщества
            fingerprint: Отпечаток дубликата
            original_record_id: ID первой записи в реестре
            remove_submission: False если сообщение уже удалено в этой сессии

        Returns:
            PenaltyOutcome
        """
        community_id = settings.community_id
        member_id = event.author_id

        # 1. Идемпотентность
        is_new = await register_violation(
            session,
            community_id=community_id,
            member_id=member_id,
            message_id=event.message_id,
            fingerprint=fingerprint,
            policy=self.policy.value,
            original_record_id=original_record_id,
        )
        if not is_new:
            return PenaltyOutcome(applied=False)

        outcome = PenaltyOutcome(applied=True, state=PenaltyState.WARNED)

        # 2. Роль
        if self.policy is PenaltyPolicy.TEMP_ROLE:
            await self._apply_temp_role(session, event, community_id, outcome)
        else:
            await self._apply_revoke_role(event, community_id, outcome)

        # 3. Удаление сообщения
        if remove_submission:
            outcome.deleted = await self._messenger.delete_message(event.ref)
            _log_step("delete_message", outcome.deleted, community_id, member_id)

        # 4. ЛС, при закрытых ЛС - уведомление в канал
        dm_template = DM_TEXT_TEMP if self.policy is PenaltyPolicy.TEMP_ROLE else DM_TEXT_REVOKE
        outcome.direct_message = await self._messenger.send_direct_message(member_id, self._format(dm_template))
        _log_step("direct_message", outcome.direct_message, community_id, member_id)
        if outcome.direct_message is ActionResult.FORBIDDEN:
            fallback_template = (
                FALLBACK_TEXT_TEMP if self.policy is PenaltyPolicy.TEMP_ROLE else FALLBACK_TEXT_REVOKE
            )
            user = event.author_name or f"<@{member_id}>"
            outcome.fallback_notice = await self._messenger.send_channel_message(
                settings.notification_channel_id,
                self._format(fallback_template, user=user),
            )
            _log_step("dm_fallback_notice", outcome.fallback_notice, community_id, member_id)

        # 5. Объявление
        outcome.announcement = await self._messenger.send_channel_message(
            settings.notification_channel_id,
            ANNOUNCE_TEXT.format(user_id=member_id),
        )
        _log_step("announcement", outcome.announcement, community_id, member_id)

        return outcome

    async def _apply_revoke_role(self, event: MessageCreated, community_id: int, outcome: PenaltyOutcome) -> None:
        role = await self._messenger.find_role(community_id, self._certified_role_name)
        if role is None:
            logger.error(f"❌ [PENALTY] Роль '{self._certified_role_name}' не найдена в сообществе {community_id}")
            return

        has_role = await self._messenger.has_role(community_id, event.author_id, role.id)
        if has_role is None:
            logger.info(f"[PENALTY] Участник {event.author_id} не в сообществе, роль не трогаем")
            return
        if not has_role:
            logger.info(f"[PENALTY] У участника {event.author_id} нет роли '{role.name}'")
            return

        outcome.role = await self._messenger.revoke_role(community_id, event.author_id, role.id)
        _log_step("revoke_role", outcome.role, community_id, event.author_id)

    async def _apply_temp_role(
        self,
        session: AsyncSession,
        event: MessageCreated,
        community_id: int,
        outcome: PenaltyOutcome,
    ) -> None:
        role = await self._messenger.find_or_create_role(community_id, self._restricted_role_name)
        if role is None:
            logger.error(f"❌ [PENALTY] Нет роли '{self._restricted_role_name}' в сообществе {community_id}")
            return

        # has_role() == None: участника нет в гильдии
        if await self._messenger.has_role(community_id, event.author_id, role.id) is None:
            logger.info(f"[PENALTY] Участник {event.author_id} не в сообществе, ограничение не выдаём")
            return

        outcome.role = await self._messenger.grant_role(community_id, event.author_id, role.id)
        _log_step("grant_role", outcome.role, community_id, event.author_id)
        if not outcome.role.ok:
            return

        grant = await grant_service.save_grant(
            session,
            community_id=community_id,
            member_id=event.author_id,
            role_id=role.id,
            duration_seconds=self._duration_seconds,
            source_message_id=event.message_id,
        )
        outcome.grant_id = grant.id
        self._scheduler.arm(grant.id, community_id, event.author_id, grant.expires_at)

    # ------------------------------------------------------------
    # СНЯТИЕ
    # ------------------------------------------------------------
    async def expire(self, grant_id: int) -> PenaltyState:
        """Warned -> TimedOut: снимает временную роль по истечении срока."""
        async with get_session() as session:
            grant = await grant_service.get_grant(session, grant_id)
            if grant is None or not grant.is_active:
                return PenaltyState.CLEAN

            # Срок продлили после того, как таймер был взведён
            if grant.expires_at > utcnow():
                self._scheduler.arm(grant.id, grant.community_id, grant.member_id, grant.expires_at)
                return PenaltyState.WARNED

            result = await self._messenger.revoke_role(grant.community_id, grant.member_id, grant.role_id)
            if result is ActionResult.FAILED:
                logger.warning(
                    f"⚠️ [PENALTY] Временная ошибка снятия роли grant={grant.id}, "
                    f"повтор через {EXPIRE_RETRY_DELAY}с"
                )
                self._scheduler.arm(
                    grant.id,
                    grant.community_id,
                    grant.member_id,
                    utcnow() + timedelta(seconds=EXPIRE_RETRY_DELAY),
                )
                return PenaltyState.WARNED

            _log_step("expire_revoke_role", result, grant.community_id, grant.member_id)
            await grant_service.deactivate_grant(session, grant)
            return PenaltyState.TIMED_OUT

    async def clear(self, community_id: int, member_id: int) -> bool:
        """
        Warned -> Cleared: досрочно снимает активное ограничение.

        Returns:
            True если было что снимать
        """
        async with get_session() as session:
            grant = await grant_service.get_active_grant(session, community_id, member_id)
            if grant is None:
                return False
            result = await self._messenger.revoke_role(community_id, member_id, grant.role_id)
            _log_step("clear_revoke_role", result, community_id, member_id)
            await grant_service.deactivate_grant(session, grant)
        self._scheduler.cancel(community_id, member_id)
        logger.info(f"✅ [PENALTY] Ограничение снято вручную: community={community_id} member={member_id}")
        return True
