"""
Tests for tenant webhook configuration endpoints.
"""

VALID_CONFIG = {
    "url": "https://tenant.example.com/hooks",
    "secret": "whsec_12345678",
    "events": ["letter.sent", "campaign.completed"],
}


class TestTenantWebhookConfig:
    """Test cases for /tenants/{tenant_id}/webhook."""

    def test_configure_webhook(self, api):
        response = api.put("/tenants/tenant-1/webhook", json=VALID_CONFIG)

        assert response.status_code == 200
        data = response.json()
        assert data["success"] is True
        assert data["webhook"]["url"] == "https://tenant.example.com/hooks"
        assert data["webhook"]["events"] == ["letter.sent", "campaign.completed"]
        assert data["webhook"]["is_active"] is True
        assert "secret" not in data["webhook"]
        assert "letter.bounced" in data["available_events"]

    def test_get_webhook(self, api):
        api.put("/tenants/tenant-1/webhook", json=VALID_CONFIG)
        api.put("/tenants/tenant-1/webhook", json={**VALID_CONFIG, "is_active": False})

        response = api.get("/tenants/tenant-1/webhook")

        assert response.status_code == 200
        assert response.json()["webhook"]["is_active"] is False

    def test_get_webhook_not_configured(self, api):
        response = api.get("/tenants/tenant-2/webhook")

        assert response.status_code == 200
        assert response.json()["webhook"] is None

    def test_invalid_url(self, api):
        response = api.put(
            "/tenants/tenant-1/webhook", json={**VALID_CONFIG, "url": "ftp://example.com"}
        )

        assert response.status_code == 422

    def test_unknown_event(self, api):
        response = api.put(
            "/tenants/tenant-1/webhook", json={**VALID_CONFIG, "events": ["letter.shredded"]}
        )

        assert response.status_code == 422

    def test_short_secret(self, api):
        response = api.put("/tenants/tenant-1/webhook", json={**VALID_CONFIG, "secret": "short"})

        assert response.status_code == 422

    def test_empty_events(self, api):
        response = api.put("/tenants/tenant-1/webhook", json={**VALID_CONFIG, "events": []})

        assert response.status_code == 422
