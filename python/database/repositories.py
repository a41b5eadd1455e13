"""
Repository Pattern for Watchlist and Alert Persistence

Provides a clean data access layer over the watcher tables, plus
WatchlistStore, the write-through adapter the ChangeStreamWatcher calls.
"""

import logging
from typing import Dict, List, Optional

from sqlalchemy import delete, func, select
from sqlalchemy.orm import Session

from database.connection import DatabaseSessionProvider
from database.models import AlertModel, WatchlistEntryModel
from models import Alert, AlertStatus, Severity

logger = logging.getLogger(__name__)


# ============================================
# WATCHLIST REPOSITORY
# ============================================

class WatchlistRepository:
    """Repository for watchlist entries."""

    def __init__(self, session: Session):
        self.session = session

    def add(self, subject_key: str, name: str = '') -> WatchlistEntryModel:
        """Insert or rename a watchlist entry"""
        entry = self.session.get(WatchlistEntryModel, subject_key)
        if entry is None:
            entry = WatchlistEntryModel(subject_key=subject_key, name=name or '')
            self.session.add(entry)
        else:
            entry.name = name or entry.name
        self.session.flush()
        return entry

    def remove(self, subject_key: str) -> bool:
        result = self.session.execute(
            delete(WatchlistEntryModel).where(WatchlistEntryModel.subject_key == subject_key)
        )
        return result.rowcount > 0

    def get(self, subject_key: str) -> Optional[WatchlistEntryModel]:
        return self.session.get(WatchlistEntryModel, subject_key)

    def list_all(self) -> List[WatchlistEntryModel]:
        query = select(WatchlistEntryModel).order_by(WatchlistEntryModel.subject_key)
        return list(self.session.execute(query).scalars().all())

    def count(self) -> int:
        return self.session.execute(select(func.count(WatchlistEntryModel.subject_key))).scalar_one()


# ============================================
# ALERT REPOSITORY
# ============================================

class AlertRepository:
    """Repository for persisted watcher alerts."""

    def __init__(self, session: Session):
        self.session = session

    def save(self, alert: Alert) -> AlertModel:
        model = self.session.merge(AlertModel.from_alert(alert))
        self.session.flush()
        return model

    def get(self, alert_id: str) -> Optional[AlertModel]:
        return self.session.get(AlertModel, alert_id)

    def update_status(self, alert_id: str, status: AlertStatus) -> bool:
        model = self.session.get(AlertModel, alert_id)
        if model is None:
            return False
        model.status = status.value
        self.session.flush()
        return True

    def query(
        self,
        severity: Optional[Severity] = None,
        subject_key: Optional[str] = None,
        status: Optional[AlertStatus] = None,
        offset: int = 0,
        limit: int = 50
    ) -> List[AlertModel]:
        """
        Filtered alerts, most recent first.

        Args:
            severity: Only alerts of this severity
            subject_key: Only alerts for this company number
            status: Only alerts in this status
            offset: Rows to skip
            limit: Maximum rows to return
        """
        query = select(AlertModel)
        if severity is not None:
            query = query.where(AlertModel.severity == severity.value)
        if subject_key is not None:
            query = query.where(AlertModel.subject_key == subject_key)
        if status is not None:
            query = query.where(AlertModel.status == status.value)
        query = query.order_by(AlertModel.occurred_at.desc()).offset(max(offset, 0)).limit(max(limit, 0))
        return list(self.session.execute(query).scalars().all())


# ============================================
# WATCHER WRITE-THROUGH
# ============================================

class WatchlistStore:
    """Persistence hooks for ChangeStreamWatcher, one transaction per call"""

    def __init__(self, provider: DatabaseSessionProvider):
        self.provider = provider

    def load_watchlist(self) -> Dict[str, str]:
        with self.provider.session_scope() as session:
            entries = WatchlistRepository(session).list_all()
            watchlist = {e.subject_key: e.name for e in entries}
        logger.info(f"✓ Loaded {len(watchlist)} watchlist entries from database")
        return watchlist

    def load_alerts(self, limit: int) -> List[Alert]:
        """Most recent alerts, oldest first, for seeding the in-memory store"""
        with self.provider.session_scope() as session:
            alerts = [m.to_alert() for m in AlertRepository(session).query(limit=limit)]
        alerts.reverse()
        logger.info(f"✓ Loaded {len(alerts)} alerts from database")
        return alerts

    def add_watch(self, subject_key: str, name: str) -> None:
        with self.provider.session_scope() as session:
            WatchlistRepository(session).add(subject_key, name)

    def remove_watch(self, subject_key: str) -> None:
        with self.provider.session_scope() as session:
            WatchlistRepository(session).remove(subject_key)

    def save_alert(self, alert: Alert) -> None:
        with self.provider.session_scope() as session:
            AlertRepository(session).save(alert)

    def update_alert_status(self, alert_id: str, status: AlertStatus) -> None:
        with self.provider.session_scope() as session:
            AlertRepository(session).update_status(alert_id, status)
