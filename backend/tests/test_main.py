"""
Tests for the app-level endpoints in main.py.
"""
import pytest
from httpx import ASGITransport, AsyncClient


@pytest.fixture
def app():
    from main import app as main_app
    return main_app


async def get(app, path):
    async with AsyncClient(
        transport=ASGITransport(app=app), base_url="http://test"
    ) as client:
        return await client.get(path)


class TestAppEndpoints:

    @pytest.mark.asyncio
    async def test_health(self, app):
        resp = await get(app, "/api/health")
        assert resp.status_code == 200
        assert resp.json()["status"] == "ok"

    @pytest.mark.asyncio
    async def test_diagnose_reports_every_check(self, app, monkeypatch):
        monkeypatch.delenv("ANTHROPIC_API_KEY", raising=False)
        resp = await get(app, "/api/diagnose")
        assert resp.status_code == 200
        body = resp.json()
        assert set(body["checks"]) == {"tesseract", "imaging", "heic_support", "vision"}
        assert body["checks"]["vision"]["ok"] is False
        assert body["checks"]["vision"]["set"] is False
        assert body["checks"]["imaging"]["ok"] is True
        assert body["all_ok"] is False

    @pytest.mark.asyncio
    async def test_routers_mounted(self, app):
        paths = {route.path for route in app.routes}
        assert "/api/receipts/scan" in paths
        assert "/api/bills/summary" in paths


# ── Setup helpers ────────────────────────────────────────────────────────────

class TestSetup:

    def test_cors_defaults_to_any_origin_without_credentials(self):
        from main import cors_settings
        settings = cors_settings("")
        assert settings["allow_origins"] == ["*"]
        assert settings["allow_credentials"] is False

    def test_cors_explicit_origins(self):
        from main import cors_settings
        settings = cors_settings(" https://a.example , ,https://b.example")
        assert settings["allow_origins"] == ["https://a.example", "https://b.example"]
        assert settings["allow_credentials"] is True

    def test_library_loggers_quieted(self):
        import logging
        from main import NOISY_LOGGERS, configure_logging
        configure_logging("INFO")
        assert all(logging.getLogger(n).level == logging.WARNING for n in NOISY_LOGGERS)
        configure_logging("DEBUG")
        assert all(logging.getLogger(n).level == logging.DEBUG for n in NOISY_LOGGERS)
        configure_logging("INFO")
