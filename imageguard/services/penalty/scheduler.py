# ============================================================
# ПЛАНИРОВЩИК СНЯТИЯ ОГРАНИЧЕНИЙ
# ============================================================
# Один asyncio-таймер на участника сообщества. Повторное
# нарушение перевзводит таймер на новый expires_at.
#
# Таймеры живут только в памяти процесса, а источник истины -
# penalty_grants в БД. reconcile() при старте:
# - снимает ограничения, срок которых истёк пока бот был выключен
# - перевзводит таймеры для остальных
# ============================================================

import asyncio
import logging
from datetime import datetime
from typing import Awaitable, Callable, Optional

from imageguard.database.models import utcnow
from imageguard.database.session import get_session
from imageguard.services.penalty import grant_service

logger = logging.getLogger(__name__)

# Колбэк снятия ограничения: принимает grant_id
ExpireCallback = Callable[[int], Awaitable[None]]


class PenaltyScheduler:
    """Таймеры истечения PenaltyGrant."""

    def __init__(self, on_expire: Optional[ExpireCallback] = None):
        self._on_expire = on_expire
        self._tasks: dict[tuple[int, int], asyncio.Task] = {}

    def bind(self, on_expire: ExpireCallback) -> None:
        self._on_expire = on_expire

    @property
    def pending(self) -> int:
        return sum(1 for task in self._tasks.values() if not task.done())

    def is_armed(self, community_id: int, member_id: int) -> bool:
        task = self._tasks.get((community_id, member_id))
        return task is not None and not task.done()

    def arm(self, grant_id: int, community_id: int, member_id: int, expires_at: datetime) -> None:
        """Взводит (или перевзводит) таймер для участника."""
        key = (community_id, member_id)
        self.cancel(community_id, member_id)
        delay = max(0.0, (expires_at - utcnow()).total_seconds())
        task = asyncio.create_task(
            self._fire_later(key, grant_id, delay),
            name=f"penalty-expire-{community_id}-{member_id}",
        )
        self._tasks[key] = task
        logger.debug(f"[SCHEDULER] Таймер взведён: grant={grant_id} member={member_id} через {delay:.0f}с")

    def cancel(self, community_id: int, member_id: int) -> None:
        task = self._tasks.pop((community_id, member_id), None)
        if task is not None and not task.done() and task is not asyncio.current_task():
            task.cancel()

    async def _fire_later(self, key: tuple[int, int], grant_id: int, delay: float) -> None:
        try:
            await asyncio.sleep(delay)
        except asyncio.CancelledError:
            return
        # Таймер отработал - убираем его из реестра до колбэка,
        # чтобы колбэк мог перевзвести таймер
        if self._tasks.get(key) is asyncio.current_task():
            self._tasks.pop(key, None)
        if self._on_expire is None:
            logger.error(f"❌ [SCHEDULER] Нет обработчика истечения для grant={grant_id}")
            return
        try:
            await self._on_expire(grant_id)
        except Exception as e:
            # Запись остаётся активной и будет снята при следующем reconcile
            logger.error(f"❌ [SCHEDULER] Ошибка снятия ограничения grant={grant_id}: {e}")

    async def reconcile(self) -> tuple[int, int]:
        """
        Восстанавливает таймеры по БД.

        Returns:
            (снято сразу, перевзведено)
        """
        async with get_session() as session:
            grants = await grant_service.list_active_grants(session)

        now = utcnow()
        expired = [g for g in grants if g.expires_at <= now]
        upcoming = [g for g in grants if g.expires_at > now]

        for grant in expired:
            if self._on_expire is None:
                break
            try:
                await self._on_expire(grant.id)
            except Exception as e:
                logger.error(f"❌ [SCHEDULER] Не удалось снять просроченное ограничение grant={grant.id}: {e}")

        for grant in upcoming:
            self.arm(grant.id, grant.community_id, grant.member_id, grant.expires_at)

        logger.info(
            f"✅ [SCHEDULER] Reconcile: снято {len(expired)}, перевзведено {len(upcoming)}"
        )
        return len(expired), len(upcoming)

    async def shutdown(self) -> None:
        """Отменяет все таймеры (записи в БД не трогает)."""
        tasks = [t for t in self._tasks.values() if not t.done()]
        self._tasks.clear()
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        logger.info(f"[SCHEDULER] Остановлено таймеров: {len(tasks)}")
