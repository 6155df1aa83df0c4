# backend/tests/routers/test_ingestion_api.py
"""
API layer tests for the ingestion triggers.

Tests:
- GET|POST /cron/daily - Daily incremental update (cron secret)
- POST /ingestion/force - Forced incremental run or backfill (admin)
- GET /ingestion/status - Scheduler state and recent runs (admin)

The scheduler runs against a mock provider and the test database, so
these tests exercise the real pipeline end to end.
"""

from datetime import date
from decimal import Decimal
from unittest.mock import MagicMock

import pytest
from fastapi.testclient import TestClient

from marketsync.config import settings
from marketsync.database import get_db
from marketsync.dependencies import get_scheduler
from marketsync.main import app
from marketsync.models import HistoricalPrice
from marketsync.services.circuit_breaker import CircuitBreakerOpen
from marketsync.services.exceptions import RunInProgressError
from marketsync.services.ingestion import IngestionPipeline
from marketsync.services.notifications import ErrorNotifier
from marketsync.services.scheduler import IngestionScheduler
from tests.conftest import create_asset, make_series

CRON_HEADERS = {"Authorization": f"Bearer {settings.cron_secret}"}
ADMIN_HEADERS = {"Authorization": f"Bearer {settings.admin_api_token}"}


@pytest.fixture
def scheduler(mock_provider, session_factory) -> IngestionScheduler:
    pipeline = IngestionPipeline(
        provider=mock_provider,
        session_factory=session_factory,
        max_workers=1,
        backfill_skip_threshold=0,
    )
    return IngestionScheduler(pipeline, notifier=ErrorNotifier(None))


@pytest.fixture(scope="function")
def client(session_factory, scheduler) -> TestClient:
    """TestClient with database and scheduler overrides."""

    def override_get_db():
        db = session_factory()
        try:
            yield db
        finally:
            db.close()

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_scheduler] = lambda: scheduler

    with TestClient(app) as c:
        yield c

    app.dependency_overrides.clear()


# =============================================================================
# CRON
# =============================================================================

class TestCronDaily:

    def test_end_to_end_intraday_update(self, client, db, mock_provider):
        """Two cron runs on the same day leave one row holding the later close."""
        client.post(
            "/assets",
            json={"ticker": "PETR4", "name": "Petrobras PN", "currency": "BRL", "market": "B3"},
            headers=ADMIN_HEADERS,
        )

        mock_provider.set_quote("PETR4", "38.50")
        first = client.get("/cron/daily", headers=CRON_HEADERS)

        mock_provider.set_quote("PETR4", "39.00")
        second = client.post("/cron/daily", headers=CRON_HEADERS)

        assert first.status_code == 200
        assert first.json()["success"] is True
        assert first.json()["log"]["updated"] == 1
        assert second.json()["log"]["per_ticker_results"]["PETR4"]["status"] == "updated"

        assert db.query(HistoricalPrice).count() == 1
        search = client.get("/assets/search", params={"q": "PETR4"}).json()
        assert Decimal(search["assets"][0]["price"]) == Decimal("39.00")

    def test_envelope(self, client, db, mock_provider):
        create_asset(db, ticker="PETR4")
        create_asset(db, ticker="VALE3", name="Vale ON")
        mock_provider.set_quote("PETR4", "38.50")

        response = client.get("/cron/daily", headers=CRON_HEADERS)

        assert response.status_code == 200
        data = response.json()
        assert data["success"] is True
        assert data["message"] == "Daily update completed: 1 updated, 0 unchanged, 1 failed"
        assert data["log"]["status"] == "completed-with-errors"
        assert data["log"]["trigger"] == "cron"
        assert data["log"]["mode"] == "incremental"
        assert data["log"]["run_id"].startswith("run-")
        assert "timestamp" in data

    def test_failed_run_returns_500(self, client, db, mock_provider):
        create_asset(db, ticker="PETR4")
        mock_provider.set_error("PETR4", CircuitBreakerOpen("mock", 30.0))

        response = client.get("/cron/daily", headers=CRON_HEADERS)

        assert response.status_code == 500
        data = response.json()
        assert data["success"] is False
        assert data["log"]["status"] == "failed"
        assert data["log"]["error"]["kind"] == "CircuitBreakerOpen"
        assert data["message"].startswith("Daily update failed:")

    @pytest.mark.parametrize("headers", [
        {},
        {"Authorization": "Bearer wrong"},
        {"Authorization": f"Bearer {settings.admin_api_token}"},
        {"Authorization": f"Basic {settings.cron_secret}"},
    ])
    def test_rejects_bad_credentials(self, client, headers):
        response = client.get("/cron/daily", headers=headers)

        assert response.status_code == 401
        assert response.headers["WWW-Authenticate"] == "Bearer"

    def test_unconfigured_secret_rejects_everything(self, client, monkeypatch):
        monkeypatch.setattr(settings, "cron_secret", None)

        response = client.get("/cron/daily", headers={"Authorization": "Bearer "})

        assert response.status_code == 401

    def test_run_in_progress_returns_409(self, client):
        busy = MagicMock()
        busy.force_update.side_effect = RunInProgressError("run-abc123")
        app.dependency_overrides[get_scheduler] = lambda: busy

        response = client.get("/cron/daily", headers=CRON_HEADERS)

        assert response.status_code == 409
        assert response.json()["error"] == "RunInProgressError"
        assert response.json()["details"] == {"run_id": "run-abc123"}


# =============================================================================
# FORCED RUNS
# =============================================================================

class TestForceIngestion:

    def test_incremental_for_selected_tickers(self, client, db, mock_provider):
        create_asset(db, ticker="PETR4")
        create_asset(db, ticker="VALE3", name="Vale ON")
        mock_provider.set_quote("VALE3", "62.00")

        response = client.post("/ingestion/force", json={"tickers": ["vale3"]}, headers=ADMIN_HEADERS)

        assert response.status_code == 200
        log = response.json()["log"]
        assert log["trigger"] == "forced"
        assert list(log["per_ticker_results"]) == ["VALE3"]

    def test_without_body_updates_all(self, client, db, mock_provider):
        create_asset(db, ticker="PETR4")
        mock_provider.set_quote("PETR4", "38.50")

        response = client.post("/ingestion/force", headers=ADMIN_HEADERS)

        assert response.status_code == 200
        assert response.json()["log"]["updated"] == 1

    def test_backfill(self, client, db, mock_provider):
        create_asset(db, ticker="PETR4")
        mock_provider.set_series("PETR4", make_series(date(2024, 10, 1), 10))

        response = client.post(
            "/ingestion/force",
            json={"mode": "full-backfill", "tickers": ["PETR4"], "from_date": "2024-10-01", "to_date": "2024-10-05"},
            headers=ADMIN_HEADERS,
        )

        assert response.status_code == 200
        data = response.json()
        assert data["message"].startswith("Backfill completed")
        assert data["log"]["trigger"] == "bulk-backfill"
        assert data["log"]["samples_written"] == 5

    def test_inverted_range_returns_400(self, client):
        response = client.post(
            "/ingestion/force",
            json={"mode": "full-backfill", "from_date": "2024-10-05", "to_date": "2024-10-01"},
            headers=ADMIN_HEADERS,
        )

        assert response.status_code == 400
        assert response.json()["details"] == {"field": "from_date"}

    def test_unknown_mode_returns_422(self, client):
        response = client.post("/ingestion/force", json={"mode": "weekly"}, headers=ADMIN_HEADERS)

        assert response.status_code == 422

    def test_requires_admin(self, client):
        assert client.post("/ingestion/force", headers=CRON_HEADERS).status_code == 401


# =============================================================================
# STATUS
# =============================================================================

class TestIngestionStatus:

    def test_status_after_runs(self, client, db, mock_provider):
        create_asset(db, ticker="PETR4")
        mock_provider.set_quote("PETR4", "38.50")
        client.get("/cron/daily", headers=CRON_HEADERS)

        response = client.get("/ingestion/status", headers=ADMIN_HEADERS)

        assert response.status_code == 200
        data = response.json()
        assert data["status"]["state"] == "idle"
        assert data["status"]["last_run_status"] == "completed"
        assert data["status"]["runs_recorded"] == 1
        assert data["stats"]["last_24h"]["total_runs"] == 1
        assert data["runs"][0]["updated"] == 1

    def test_limit_validated(self, client):
        response = client.get("/ingestion/status", params={"limit": 0}, headers=ADMIN_HEADERS)

        assert response.status_code == 422

    def test_requires_admin(self, client):
        assert client.get("/ingestion/status").status_code == 401
