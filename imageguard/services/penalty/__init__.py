# imageguard/services/penalty/__init__.py
"""
Модуль наказаний за дубликаты.

Структура модуля:
- violation_service.py - журнал нарушений (идемпотентность)
- grant_service.py - CRUD временных ограничений (PenaltyGrant)
- scheduler.py - таймеры истечения + восстановление при старте
- controller.py - применение и снятие наказаний
"""

from imageguard.services.penalty.controller import (
    PenaltyController,
    PenaltyOutcome,
    PenaltyPolicy,
    PenaltyState,
)
from imageguard.services.penalty.scheduler import PenaltyScheduler
from imageguard.services.penalty.violation_service import register_violation, count_violations
