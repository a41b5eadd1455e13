"""
Unit tests for the watchlist/alert persistence layer.

Uses an in-memory SQLite database; the same models run unchanged on
PostgreSQL.
"""

import pytest
from datetime import datetime, timedelta, timezone

import sys
from pathlib import Path
sys.path.insert(0, str(Path(__file__).parent.parent))

from sqlalchemy.pool import StaticPool

from config_manager import DatabaseConfig, WatcherConfig
from database import (
    AlertModel,
    AlertRepository,
    DatabaseSettings,
    WatchlistEntryModel,
    WatchlistRepository,
    WatchlistStore,
    create_test_provider,
)
from models import Alert, AlertStatus, EventType, Severity
from watcher import ChangeStreamWatcher


def make_alert(subject_key="12345678", severity=Severity.HIGH, minutes_ago=0, **kwargs):
    return Alert(
        subject_key=subject_key,
        event_type=kwargs.pop('event_type', EventType.STATUS_CHANGE),
        severity=severity,
        summary=kwargs.pop('summary', "ACME LTD status changed to: liquidation"),
        stream='companies',
        company_name="ACME LTD",
        timestamp=datetime(2024, 6, 1, 12, 0, tzinfo=timezone.utc) - timedelta(minutes=minutes_ago),
        **kwargs
    )


@pytest.fixture
def provider():
    provider = create_test_provider()
    yield provider
    provider.close()


# ============================================================================
# SETTINGS
# ============================================================================

class TestDatabaseSettings:
    """Tests for backend-specific engine options."""

    def test_memory_sqlite_uses_static_pool(self):
        options = DatabaseSettings(url="sqlite:///:memory:").engine_options()

        assert options['poolclass'] is StaticPool
        assert options['connect_args'] == {'check_same_thread': False}

    def test_file_sqlite(self):
        settings = DatabaseSettings(url="sqlite:///screening.db")

        assert settings.is_sqlite
        assert not settings.is_memory
        assert 'poolclass' not in settings.engine_options()

    def test_postgres_pooling(self):
        options = DatabaseSettings(url="postgresql://u:p@localhost/screening", pool_size=7).engine_options()

        assert options['pool_size'] == 7
        assert options['pool_pre_ping'] is True

    def test_env_url_wins(self, monkeypatch):
        monkeypatch.setenv("DATABASE_URL", "postgresql://u:p@db/screening")
        settings = DatabaseSettings.from_config(DatabaseConfig(url="sqlite:///other.db"))

        assert settings.url == "postgresql://u:p@db/screening"

    def test_config_url_used_without_env(self, monkeypatch):
        monkeypatch.delenv("DATABASE_URL", raising=False)
        settings = DatabaseSettings.from_config(DatabaseConfig(url="sqlite:///other.db"))

        assert settings.url == "sqlite:///other.db"


class TestProvider:

    def test_health_check(self, provider):
        assert provider.health_check() is True

    def test_session_scope_rolls_back_on_error(self, provider):
        with pytest.raises(RuntimeError):
            with provider.session_scope() as session:
                WatchlistRepository(session).add("12345678", "ACME LTD")
                raise RuntimeError("boom")

        with provider.session_scope() as session:
            assert WatchlistRepository(session).count() == 0

    def test_database_session_requires_commit(self, provider):
        with provider.database_session() as db:
            WatchlistRepository(db.session).add("12345678")
            db.commit()

        with provider.session_scope() as session:
            assert WatchlistRepository(session).get("12345678") is not None


# ============================================================================
# REPOSITORIES
# ============================================================================

class TestWatchlistRepository:

    def test_add_and_list(self, provider):
        with provider.session_scope() as session:
            repo = WatchlistRepository(session)
            repo.add("SC123456", "Scottish Co")
            repo.add("00000001", "First Co")

        with provider.session_scope() as session:
            entries = WatchlistRepository(session).list_all()
            assert [e.subject_key for e in entries] == ["00000001", "SC123456"]
            assert isinstance(entries[0], WatchlistEntryModel)

    def test_add_existing_renames(self, provider):
        with provider.session_scope() as session:
            repo = WatchlistRepository(session)
            repo.add("12345678", "Old Name")
            repo.add("12345678", "New Name")
            repo.add("12345678")

        with provider.session_scope() as session:
            repo = WatchlistRepository(session)
            assert repo.count() == 1
            assert repo.get("12345678").name == "New Name"

    def test_remove(self, provider):
        with provider.session_scope() as session:
            WatchlistRepository(session).add("12345678")

        with provider.session_scope() as session:
            repo = WatchlistRepository(session)
            assert repo.remove("12345678") is True
            assert repo.remove("12345678") is False


class TestAlertRepository:

    def test_save_and_round_trip(self, provider):
        alert = make_alert(data={'data': {'company_number': "12345678"}})
        with provider.session_scope() as session:
            AlertRepository(session).save(alert)

        with provider.session_scope() as session:
            model = AlertRepository(session).get(alert.id)
            assert isinstance(model, AlertModel)
            restored = model.to_alert()

        assert restored.id == alert.id
        assert restored.event_type == EventType.STATUS_CHANGE
        assert restored.severity == Severity.HIGH
        assert restored.status == AlertStatus.NEW
        assert restored.timestamp == alert.timestamp
        assert restored.data == {'data': {'company_number': "12345678"}}

    def test_save_is_idempotent(self, provider):
        alert = make_alert()
        with provider.session_scope() as session:
            repo = AlertRepository(session)
            repo.save(alert)
            repo.save(alert)

        with provider.session_scope() as session:
            assert len(AlertRepository(session).query()) == 1

    def test_query_filters_and_order(self, provider):
        with provider.session_scope() as session:
            repo = AlertRepository(session)
            repo.save(make_alert("A", Severity.CRITICAL, minutes_ago=30))
            repo.save(make_alert("B", Severity.LOW, minutes_ago=20))
            repo.save(make_alert("A", Severity.LOW, minutes_ago=10))

        with provider.session_scope() as session:
            repo = AlertRepository(session)
            assert [a.subject_key for a in repo.query()] == ["A", "B", "A"]
            assert [a.severity for a in repo.query(severity=Severity.LOW)] == ["LOW", "LOW"]
            assert len(repo.query(subject_key="A")) == 2
            assert len(repo.query(offset=1, limit=1)) == 1

    def test_update_status(self, provider):
        alert = make_alert()
        with provider.session_scope() as session:
            AlertRepository(session).save(alert)

        with provider.session_scope() as session:
            repo = AlertRepository(session)
            assert repo.update_status(alert.id, AlertStatus.ACKNOWLEDGED) is True
            assert repo.update_status("missing", AlertStatus.ACKNOWLEDGED) is False

        with provider.session_scope() as session:
            assert AlertRepository(session).query(status=AlertStatus.ACKNOWLEDGED)[0].id == alert.id


# ============================================================================
# WATCHER WRITE-THROUGH
# ============================================================================

class TestWatchlistStore:

    def test_watchlist_survives_restart(self, provider):
        store = WatchlistStore(provider)
        first = ChangeStreamWatcher(WatcherConfig(streams=['companies']), api_key="", store=store)
        first.add_to_watchlist("12345678", "ACME LTD")
        first.add_to_watchlist("SC123456", "Scottish Co")
        first.remove_from_watchlist("SC123456")

        second = ChangeStreamWatcher(WatcherConfig(streams=['companies']), api_key="", store=store)

        assert second.watchlist == {"12345678": "ACME LTD"}

    def test_alerts_written_through(self, provider):
        store = WatchlistStore(provider)
        watcher = ChangeStreamWatcher(WatcherConfig(streams=['companies']), api_key="", store=store)
        watcher.add_to_watchlist("12345678", "ACME LTD")

        alert = watcher.handle_event('companies', {
            'data': {'company_number': "12345678", 'company_name': "ACME LTD", 'company_status': "dissolved"},
            'event': {'type': 'changed', 'fields_changed': ['company_status']},
        })
        watcher.acknowledge_alert(alert.id)

        with provider.session_scope() as session:
            stored = AlertRepository(session).get(alert.id)
            assert stored.status == AlertStatus.ACKNOWLEDGED.value
            assert stored.summary == "ACME LTD status changed to: dissolved"

    def test_alerts_and_status_survive_restart(self, provider):
        store = WatchlistStore(provider)
        first = ChangeStreamWatcher(WatcherConfig(streams=['companies']), api_key="", store=store)
        first.add_to_watchlist("12345678", "ACME LTD")
        alert = first.handle_event('companies', {
            'data': {'company_number': "12345678", 'company_name': "ACME LTD", 'company_status': "dissolved"},
            'event': {'type': 'changed', 'fields_changed': ['company_status']},
        })
        first.acknowledge_alert(alert.id, AlertStatus.RESOLVED)

        second = ChangeStreamWatcher(WatcherConfig(streams=['companies']), api_key="", store=store)
        restored = second.get_alerts()

        assert [a.id for a in restored] == [alert.id]
        assert restored[0].status == AlertStatus.RESOLVED
        assert second.get_alert_counts()['total'] == 1

    def test_load_alerts_keeps_most_recent(self, provider):
        with provider.session_scope() as session:
            repo = AlertRepository(session)
            for minutes_ago in (30, 20, 10):
                repo.save(make_alert(subject_key=str(minutes_ago), minutes_ago=minutes_ago))

        alerts = WatchlistStore(provider).load_alerts(limit=2)

        # oldest first, so appending keeps the ring buffer in arrival order
        assert [a.subject_key for a in alerts] == ["20", "10"]

    async def test_writes_from_event_loop_reach_database(self, provider):
        store = WatchlistStore(provider)
        watcher = ChangeStreamWatcher(WatcherConfig(streams=['companies']), api_key="", store=store)

        watcher.add_to_watchlist("12345678", "ACME LTD")
        alert = watcher.handle_event('companies', {
            'data': {'company_number': "12345678", 'company_status': "liquidation"},
            'event': {'type': 'changed', 'fields_changed': ['company_status']},
        })
        watcher.acknowledge_alert(alert.id)
        await watcher.stop()

        with provider.session_scope() as session:
            assert WatchlistRepository(session).get("12345678").name == "ACME LTD"
            assert AlertRepository(session).get(alert.id).status == AlertStatus.ACKNOWLEDGED.value
