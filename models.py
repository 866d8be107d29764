from __future__ import annotations

from sqlalchemy import Column, Integer, String, Text

from db import Base


class RecordCollection(Base):
    """One whole JSON collection (cases, history, certificates, ...) per row."""

    __tablename__ = "records"

    collectionId = Column(String, primary_key=True)
    payloadJson = Column(Text, nullable=False, default="")
    version = Column(Integer, nullable=False, default=0)
    updatedAt = Column(Text, nullable=False, default="")


class Session(Base):
    __tablename__ = "sessions"

    sessionId = Column(String, primary_key=True)
    tokenHash = Column(String, nullable=False, unique=True, index=True)
    tokenPrefix = Column(String, nullable=False, default="", index=True)
    userId = Column(String, nullable=False, default="", index=True)
    email = Column(String, nullable=False, default="")
    role = Column(String, nullable=False, default="", index=True)
    issuedAt = Column(Text, nullable=False, default="")
    expiresAt = Column(Text, nullable=False, default="")
    lastSeenAt = Column(Text, nullable=False, default="")
    revokedAt = Column(Text, nullable=False, default="")
    revokedBy = Column(String, nullable=False, default="")


class AuditLog(Base):
    __tablename__ = "audit_log"

    logId = Column(String, primary_key=True)
    entityType = Column(String, nullable=False, default="", index=True)
    entityId = Column(String, nullable=False, default="", index=True)
    action = Column(String, nullable=False, default="", index=True)
    fromState = Column(String, nullable=False, default="")
    toState = Column(String, nullable=False, default="")
    stageTag = Column(String, nullable=False, default="", index=True)
    remark = Column(Text, nullable=False, default="")
    actorUserId = Column(String, nullable=False, default="", index=True)
    actorRole = Column(String, nullable=False, default="", index=True)
    at = Column(Text, nullable=False, default="", index=True)
    correlationId = Column(String, nullable=False, default="", index=True)
    beforeJson = Column(Text, nullable=False, default="")
    afterJson = Column(Text, nullable=False, default="")
    metaJson = Column(Text, nullable=False, default="")
