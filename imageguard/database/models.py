from sqlalchemy import Column, Integer, String, BigInteger, DateTime, Boolean, Index, UniqueConstraint, text
from sqlalchemy.orm import declarative_base
from datetime import datetime, timezone

Base = declarative_base()

# Ширина колонки отпечатка (hex). HashService не допускает hash_size,
# при котором отпечаток длиннее
FINGERPRINT_MAX_LENGTH = 128


def utcnow():
    return datetime.now(timezone.utc).replace(tzinfo=None)


# 🖼️ Отпечатки изображений (первое появление в сообществе)
class FingerprintRecord(Base):
    __tablename__ = "fingerprint_records"
    __table_args__ = (
        # Ключ атомарного claim: один отпечаток - одна запись в рамках сообщества
        UniqueConstraint("fingerprint", "community_id", name="uq_fingerprint_community"),
        # Поиск записи по удалённому сообщению
        Index("ix_fingerprint_records_message", "community_id", "source_message_id"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    fingerprint = Column(String(FINGERPRINT_MAX_LENGTH), nullable=False)
    community_id = Column(BigInteger, nullable=False)
    source_channel_id = Column(BigInteger, nullable=False)
    source_message_id = Column(BigInteger, nullable=False)
    source_author_id = Column(BigInteger, nullable=True)
    source_url = Column(String, nullable=True)
    first_seen_at = Column(DateTime, nullable=False, default=utcnow)

    def __repr__(self) -> str:
        return (
            f"<FingerprintRecord id={self.id} community={self.community_id} "
            f"message={self.source_message_id} fp={self.fingerprint[:12]}...>"
        )


# ⚙️ Настройки сообщества (создаются командой !setup)
class CommunityConfig(Base):
    __tablename__ = "community_configs"

    community_id = Column(BigInteger, primary_key=True)
    active_channel_id = Column(BigInteger, nullable=False)
    notification_channel_id = Column(BigInteger, nullable=False)
    updated_by = Column(BigInteger, nullable=True)
    updated_at = Column(DateTime, nullable=False, default=utcnow, onupdate=utcnow)


# ⏳ Временные ограничения участников (роль с истечением)
class PenaltyGrant(Base):
    __tablename__ = "penalty_grants"
    __table_args__ = (
        Index("ix_penalty_grants_member", "community_id", "member_id"),
        # Не больше одного активного ограничения на участника сообщества
        Index(
            "uq_penalty_grants_active_member",
            "community_id",
            "member_id",
            unique=True,
            postgresql_where=text("is_active"),
            sqlite_where=text("is_active"),
        ),
        Index("ix_penalty_grants_active_expires", "is_active", "expires_at"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    community_id = Column(BigInteger, nullable=False)
    member_id = Column(BigInteger, nullable=False)
    role_id = Column(BigInteger, nullable=False)
    source_message_id = Column(BigInteger, nullable=True)
    granted_at = Column(DateTime, nullable=False, default=utcnow)
    expires_at = Column(DateTime, nullable=False)
    is_active = Column(Boolean, nullable=False, default=True)
    reversed_at = Column(DateTime, nullable=True)


# 📒 Журнал нарушений (ключ идемпотентности наказания)
class ViolationRecord(Base):
    __tablename__ = "duplicate_violations"
    __table_args__ = (
        UniqueConstraint("community_id", "message_id", "fingerprint", name="uq_violation_message_fingerprint"),
        Index("ix_duplicate_violations_member", "community_id", "member_id"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    community_id = Column(BigInteger, nullable=False)
    member_id = Column(BigInteger, nullable=False)
    message_id = Column(BigInteger, nullable=False)
    fingerprint = Column(String(FINGERPRINT_MAX_LENGTH), nullable=False)
    original_record_id = Column(Integer, nullable=True)
    policy = Column(String(32), nullable=False)
    created_at = Column(DateTime, nullable=False, default=utcnow)
