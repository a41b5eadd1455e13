"""
SQLAlchemy ORM Models for the Screening Engine

Persistence for the change-stream watcher:
- watchlist_entries - Companies being watched (company number + display name)
- alerts - Alert read model mirroring the in-memory ring buffer

Portable column types only (String/Text/JSON) so the same schema runs on
sqlite (default) and PostgreSQL.
"""

import uuid
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from sqlalchemy import JSON, DateTime, Index, String, Text
from sqlalchemy.orm import Mapped, declarative_base, mapped_column
from sqlalchemy.sql import func

from models import Alert, AlertStatus, EventType, Severity

# Base class for all models
Base = declarative_base()


# ============================================
# MIXIN CLASSES
# ============================================

class TimestampMixin:
    """Mixin for created_at and updated_at timestamps"""
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        onupdate=func.now(),
        nullable=False
    )


# ============================================
# WATCHLIST
# ============================================

class WatchlistEntryModel(TimestampMixin, Base):
    """A company whose change-stream events raise alerts"""
    __tablename__ = 'watchlist_entries'

    subject_key: Mapped[str] = mapped_column(String(32), primary_key=True)
    name: Mapped[str] = mapped_column(String(500), default='', nullable=False)

    def __repr__(self) -> str:
        return f"<WatchlistEntry {self.subject_key} ({self.name})>"


# ============================================
# ALERTS
# ============================================

class AlertModel(TimestampMixin, Base):
    """Persisted watcher alert"""
    __tablename__ = 'alerts'
    __table_args__ = (
        Index('ix_alerts_subject_severity', 'subject_key', 'severity'),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True,
                                    default=lambda: str(uuid.uuid4()))
    subject_key: Mapped[str] = mapped_column(String(32), nullable=False, index=True)
    event_type: Mapped[str] = mapped_column(String(40), nullable=False)
    severity: Mapped[str] = mapped_column(String(10), nullable=False)
    summary: Mapped[str] = mapped_column(Text, nullable=False)
    stream: Mapped[str] = mapped_column(String(64), default='', nullable=False)
    company_name: Mapped[Optional[str]] = mapped_column(String(500), nullable=True)
    status: Mapped[str] = mapped_column(String(16), default=AlertStatus.NEW.value,
                                        nullable=False, index=True)
    occurred_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False,
                                                  index=True)
    data: Mapped[Dict[str, Any]] = mapped_column(JSON, default=dict, nullable=False)

    @classmethod
    def from_alert(cls, alert: Alert) -> 'AlertModel':
        return cls(
            id=alert.id,
            subject_key=alert.subject_key,
            event_type=alert.event_type.value,
            severity=alert.severity.value,
            summary=alert.summary,
            stream=alert.stream,
            company_name=alert.company_name,
            status=alert.status.value,
            occurred_at=alert.timestamp,
            data=alert.data or {},
        )

    def to_alert(self) -> Alert:
        occurred_at = self.occurred_at
        if occurred_at.tzinfo is None:
            # sqlite drops the offset
            occurred_at = occurred_at.replace(tzinfo=timezone.utc)
        return Alert(
            subject_key=self.subject_key,
            event_type=EventType(self.event_type),
            severity=Severity(self.severity),
            summary=self.summary,
            stream=self.stream,
            company_name=self.company_name,
            timestamp=occurred_at,
            id=self.id,
            status=AlertStatus(self.status),
            data=self.data or {},
        )

    def __repr__(self) -> str:
        return f"<Alert {self.id} {self.severity} {self.event_type} {self.subject_key}>"
