"""
API endpoint tests for the FastAPI Entity Risk Screening API

Uses FastAPI's TestClient with the screener mocked (input validation is
the real one) and a real, unconfigured change-stream watcher.
Tests cover validation errors, screening, alerts, watchlist, health,
metrics and security middleware.
"""

import pytest
from pathlib import Path
from datetime import datetime, timezone
from unittest.mock import AsyncMock, MagicMock, patch

import sys
sys.path.insert(0, str(Path(__file__).parent.parent))

from fastapi.testclient import TestClient

from config_manager import ConfigManager, WatcherConfig
from models import (
    FlagCategory, MatchCandidate, MatchType, RiskAssessment, RiskFlag, RiskLevel,
    ScreeningQuery, Severity,
)
from screener import ScreeningReport, validate_screening_input
from watcher import ChangeStreamWatcher


@pytest.fixture
def config(tmp_path):
    return ConfigManager(str(tmp_path / "missing.yaml"))


@pytest.fixture
def mock_screener(config):
    """Screener double: validates like the real one, returns canned reports."""
    screener = MagicMock()

    async def screen_report(subject, subject_kind=None, options=None):
        text, kind = validate_screening_input(subject, subject_kind, config)
        query = ScreeningQuery(text, kind, **(options or {}))
        if "deripaska" in text.lower():
            assessment = RiskAssessment(
                score=80,
                level=RiskLevel.CRITICAL,
                flags=(RiskFlag(Severity.CRITICAL, FlagCategory.OFAC_SDN_MATCH,
                                "OFAC SDN match: DERIPASKA, Oleg Vladimirovich (UKRAINE-EO13661)",
                                points=80, source='ofac'),),
                diagnostics={'ofac': None, 'pep': "timeout after 15s"},
            )
            candidates = [MatchCandidate("12345", MatchType.SUBSTRING, 0.9, "DERIPASKA, Oleg Vladimirovich")]
        else:
            assessment = RiskAssessment(score=0, level=RiskLevel.LOW, diagnostics={'ofac': None})
            candidates = []
        return ScreeningReport(query, assessment, {}, candidates, duration_ms=12)

    screener.screen_report = AsyncMock(side_effect=screen_report)
    screener.list_status.return_value = {
        'ofac_sdn': {'loaded': True, 'record_count': 12000, 'stale': False},
        'sanctioned_wallets': {'loaded': True, 'record_count': 600, 'stale': False},
    }
    return screener


@pytest.fixture
def watcher():
    return ChangeStreamWatcher(WatcherConfig(streams=['companies']), api_key="")


@pytest.fixture
def client(mock_screener, watcher):
    """Test client with mocked dependencies; startup is not run."""
    from api import server

    server.rate_limiter.reset()
    with patch.object(server, '_screener', mock_screener):
        with patch.object(server, '_watcher', watcher):
            with patch.object(server, '_startup_time', datetime.now(timezone.utc)):
                with patch.object(server, 'API_KEY', ''):
                    with patch.object(server.rate_limiter, 'max_requests', 1000):
                        yield TestClient(server.app)


def company_event(number="12345678", status="liquidation"):
    return {
        'data': {'company_number': number, 'company_name': "ACME TRADING LTD", 'company_status': status},
        'event': {'type': 'changed', 'fields_changed': ['company_status']},
    }


# ============================================
# VALIDATION TESTS
# ============================================

class TestValidation:
    """Tests for input validation errors (HTTP 400, flat error body)."""

    def test_screen_name_too_short(self, client):
        response = client.post("/api/v1/screen", json={"subject": "A"})

        assert response.status_code == 400
        data = response.json()
        assert data["code"] == "NAME_TOO_SHORT"
        assert data["field"] == "subject"
        assert data["suggestion"]
        assert "error" in data

    def test_screen_blocked_characters(self, client):
        response = client.post("/api/v1/screen", json={"subject": "Robert<script>"})

        assert response.status_code == 400
        assert response.json()["code"] == "BLOCKED_CHARACTERS"

    def test_screen_unknown_kind(self, client):
        response = client.post("/api/v1/screen", json={"subject": "John Smith", "subject_kind": "vessel"})

        assert response.status_code == 400
        assert response.json()["code"] == "INVALID_SUBJECT_KIND"

    def test_screen_missing_subject(self, client):
        response = client.post("/api/v1/screen", json={})

        assert response.status_code == 400
        data = response.json()
        assert data["code"] == "REQUEST_VALIDATION_ERROR"
        assert data["field"] == "subject"

    def test_wallet_invalid_address(self, client):
        response = client.post("/api/v1/screen/wallet", json={"address": "not-a-wallet"})

        assert response.status_code == 400
        assert response.json()["code"] == "INVALID_WALLET_ADDRESS"


# ============================================
# SCREENING TESTS
# ============================================

class TestScreening:
    """Tests for successful screening operations."""

    def test_screen_hit(self, client):
        response = client.post(
            "/api/v1/screen",
            json={"subject": "Oleg Deripaska", "subject_kind": "individual"},
        )

        assert response.status_code == 200
        data = response.json()
        assert data["score"] == 80
        assert data["level"] == "CRITICAL"
        assert data["flags"][0]["type"] == "OFAC_SDN_MATCH"
        assert data["matches"][0]["match_type"] == "substring"
        assert data["diagnostics"] == {"ofac": None, "pep": "timeout after 15s"}
        assert data["subject_kind"] == "individual"
        assert "screening_id" in data
        assert "screening_date" in data

    def test_screen_clean(self, client):
        response = client.post("/api/v1/screen", json={"subject": "John Smith"})

        assert response.status_code == 200
        data = response.json()
        assert data["score"] == 0
        assert data["level"] == "LOW"
        assert data["flags"] == []

    def test_screen_options_forwarded(self, client, mock_screener):
        client.post("/api/v1/screen", json={"subject": "Acme Holdings", "country": "RU", "jurisdiction": "GB"})

        args = mock_screener.screen_report.call_args[0]
        assert args[2] == {"country": "ru", "jurisdiction": "gb"}

    def test_screen_wallet(self, client):
        response = client.post(
            "/api/v1/screen/wallet",
            json={"address": "0x1111111111111111111111111111111111111111"},
        )

        assert response.status_code == 200
        assert response.json()["subject_kind"] == "wallet"

    def test_screener_not_ready(self, client):
        from api import server

        with patch.object(server, '_screener', None):
            response = client.post("/api/v1/screen", json={"subject": "John Smith"})

        assert response.status_code == 503
        assert response.json()["code"] == "HTTP_503"

    def test_unexpected_error_hides_details(self, mock_screener, watcher):
        from api import server

        mock_screener.screen_report = AsyncMock(side_effect=RuntimeError("db password=hunter2"))
        server.rate_limiter.reset()
        with patch.object(server, '_screener', mock_screener), patch.object(server, 'API_KEY', ''):
            response = TestClient(server.app, raise_server_exceptions=False).post(
                "/api/v1/screen", json={"subject": "John Smith"}
            )

        assert response.status_code == 500
        assert response.json()["code"] == "INTERNAL_ERROR"
        assert "hunter2" not in response.text


# ============================================
# AUTHENTICATION TESTS
# ============================================

class TestAuthentication:

    def test_missing_key(self, client):
        from api import server

        with patch.object(server, 'API_KEY', 'secret'):
            response = client.post("/api/v1/screen", json={"subject": "John Smith"})

        assert response.status_code == 401

    def test_wrong_key(self, client):
        from api import server

        with patch.object(server, 'API_KEY', 'secret'):
            response = client.post("/api/v1/screen", json={"subject": "John Smith"},
                                   headers={"X-API-Key": "wrong"})

        assert response.status_code == 403

    def test_valid_key(self, client):
        from api import server

        with patch.object(server, 'API_KEY', 'secret'):
            response = client.post("/api/v1/screen", json={"subject": "John Smith"},
                                   headers={"X-API-Key": "secret"})

        assert response.status_code == 200


# ============================================
# ALERT AND WATCHLIST TESTS
# ============================================

class TestAlerts:

    def test_list_alerts(self, client, watcher):
        watcher.add_to_watchlist("12345678", "Acme")
        watcher.handle_event('companies', company_event())

        response = client.get("/api/v1/alerts")

        assert response.status_code == 200
        data = response.json()
        assert len(data["alerts"]) == 1
        assert data["alerts"][0]["event_type"] == "STATUS_CHANGE"
        assert data["alerts"][0]["status"] == "new"
        assert data["counts"]["high"] == 1
        assert data["limit"] == 50

    def test_filter_by_severity(self, client, watcher):
        watcher.add_to_watchlist("12345678")
        watcher.handle_event('companies', company_event())

        assert client.get("/api/v1/alerts?severity=critical").json()["alerts"] == []
        assert len(client.get("/api/v1/alerts?severity=HIGH").json()["alerts"]) == 1

    def test_invalid_severity(self, client):
        response = client.get("/api/v1/alerts?severity=urgent")

        assert response.status_code == 400
        assert response.json()["code"] == "INVALID_SEVERITY"

    def test_acknowledge(self, client, watcher):
        watcher.add_to_watchlist("12345678")
        alert = watcher.handle_event('companies', company_event())

        response = client.post(f"/api/v1/alerts/{alert.id}/acknowledge")
        assert response.status_code == 200
        assert response.json()["status"] == "acknowledged"

        response = client.post(f"/api/v1/alerts/{alert.id}/acknowledge", json={"status": "resolved"})
        assert response.json()["status"] == "resolved"

    def test_acknowledge_unknown(self, client):
        response = client.post("/api/v1/alerts/does-not-exist/acknowledge")

        assert response.status_code == 404
        assert response.json()["code"] == "HTTP_404"


class TestWatchlist:

    def test_add_and_remove(self, client, watcher):
        response = client.post("/api/v1/watchlist", json={"subject_key": "sc123456", "name": "Scottish Co"})

        assert response.status_code == 200
        assert response.json() == {"subject_key": "SC123456", "watched": True, "watchlist_size": 1}
        assert watcher.watchlist == {"SC123456": "Scottish Co"}

        response = client.delete("/api/v1/watchlist/SC123456")
        assert response.json()["watched"] is False

        assert client.delete("/api/v1/watchlist/SC123456").status_code == 404

    def test_add_requires_key(self, client):
        response = client.post("/api/v1/watchlist", json={"subject_key": ""})
        assert response.status_code == 400

    def test_status(self, client):
        response = client.get("/api/v1/watchlist/status")

        assert response.status_code == 200
        data = response.json()
        assert data["configured"] is False
        assert data["subscriptionStates"]["companies"]["state"] == "DISCONNECTED"


# ============================================
# OPERATIONS TESTS
# ============================================

class TestOperations:

    def test_health(self, client):
        response = client.get("/api/v1/health")

        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "healthy"
        assert data["lists"]["ofac_sdn"]["record_count"] == 12000
        assert data["watcher_configured"] is False
        assert data["uptime_seconds"] is not None

    def test_health_degraded_when_list_missing(self, client, mock_screener):
        mock_screener.list_status.return_value = {'ofac_sdn': {'loaded': False}}

        assert client.get("/api/v1/health").json()["status"] == "degraded"

    def test_metrics(self, client):
        response = client.get("/metrics")

        assert response.status_code == 200
        assert "# HELP" in response.text

    def test_security_headers(self, client):
        response = client.get("/api/v1/health")

        assert response.headers["X-Content-Type-Options"] == "nosniff"
        assert response.headers["X-Frame-Options"] == "DENY"
        assert response.headers["X-Request-ID"].startswith("REQ-")

    def test_request_id_echoed(self, client):
        response = client.get("/api/v1/health", headers={"X-Request-ID": "abc-123"})
        assert response.headers["X-Request-ID"] == "abc-123"

    def test_rate_limit(self, client):
        from api import server

        server.rate_limiter.reset()
        with patch.object(server.rate_limiter, 'max_requests', 2):
            statuses = [
                client.post("/api/v1/screen", json={"subject": "John Smith"}).status_code
                for _ in range(3)
            ]
            health = client.get("/api/v1/health")

        assert statuses == [200, 200, 429]
        assert health.status_code == 200

    def test_rate_limit_response_shape(self, client):
        from api import server

        server.rate_limiter.reset()
        with patch.object(server.rate_limiter, 'max_requests', 1):
            client.get("/api/v1/alerts")
            response = client.get("/api/v1/alerts")

        assert response.status_code == 429
        assert response.json()["code"] == "RATE_LIMITED"
        assert int(response.headers["Retry-After"]) >= 1
