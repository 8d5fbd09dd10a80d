"""
API endpoint tests for health and basic endpoints
"""
import pytest


class TestHealthEndpoints:
    """Tests for health check endpoints"""

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_health_check(self, client):
        """Test health check endpoint"""
        response = await client.get("/health")

        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "ok"
        assert "version" in data
        assert data["monitor"]["is_monitoring"] is False
        assert data["monitor"]["check_interval_seconds"] == 300
        assert data["monitor"]["last_summary"] is None

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_health_reports_last_sweep(self, client, lending, active_loan):
        """Health endpoint exposes the latest monitor summary"""
        await lending.monitor.run_tick()

        response = await client.get("/health")

        summary = response.json()["monitor"]["last_summary"]
        assert summary["checked"] == 1
        assert summary["liquidated"] == 0
        assert summary["skipped"] is False

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_root_endpoint(self, client):
        """Test root endpoint"""
        response = await client.get("/")

        assert response.status_code == 200
        data = response.json()
        assert "message" in data
        assert "Grove Lending" in data["message"]
