"""
Tests de los endpoints HTTP.

Los servicios se reemplazan con mocks; el TestClient se crea sin context
manager para no ejecutar el lifespan (Sanity y Redis).
"""

from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from fastapi.testclient import TestClient

from app.api.v1.endpoints.backfills import build_run_arguments
from app.main import app
from app.utils.error_handler import BackfillException, ShippingAPIException, ValidationException

client = TestClient(app)


def _backfill_settings(secret=""):
    settings = MagicMock()
    settings.BACKFILL_SECRET = secret
    return settings


def _fake_job(result=None, side_effect=None):
    job = MagicMock()
    job.run = AsyncMock(return_value=result, side_effect=side_effect)
    return job


class TestRootEndpoints:
    """Tests para los endpoints base."""

    def test_ping(self):
        response = client.get("/ping")

        assert response.status_code == 200
        assert response.json()["message"] == "pong"

    def test_health_reports_unhealthy_as_503(self):
        status = {"overall": False, "services": {"memory": {"healthy": False}}, "uptime": None}

        with patch("app.core.routers.get_health_status_fast", new=AsyncMock(return_value=status)):
            response = client.get("/health")

        assert response.status_code == 503
        assert response.json()["status"] == "unhealthy"


class TestBackfillArguments:
    """Tests para build_run_arguments."""

    def test_dry_run_from_query_and_body(self):
        assert build_run_arguments({"dryRun": "true"}, {})["dry_run"] is True
        assert build_run_arguments({"dryRun": "1"}, {})["dry_run"] is False
        assert build_run_arguments({"dryRun": "true"}, {"dryRun": False})["dry_run"] is False

    def test_options_merge_body_over_query(self):
        """El token y los parámetros de control no llegan al job como opciones."""
        arguments = build_run_arguments(
            {"token": "t", "kind": "checkout", "limit": "10", "resume": "true"}, {"kind": "charge"}
        )

        assert arguments == {"dry_run": False, "limit": 10, "resume": True, "kind": "charge"}

    def test_invalid_limit(self):
        with pytest.raises(ValidationException):
            build_run_arguments({"limit": "ten"}, {})


class TestBackfillEndpoints:
    """Tests para /api/v1/backfills."""

    def test_list_jobs(self):
        response = client.get("/api/v1/backfills")

        assert response.status_code == 200
        names = {job["name"] for job in response.json()}
        assert {"orders", "invoices", "repair-references"} <= names

    def test_unauthorized_without_token(self):
        with patch("app.api.v1.endpoints.backfills.get_settings", return_value=_backfill_settings("s3cret")):
            response = client.post("/api/v1/backfills/orders")

        assert response.status_code == 401
        assert response.json() == {"error": "Unauthorized"}

    def test_bearer_token_accepted(self):
        job = _fake_job(result={"ok": True, "dryRun": True, "changed": 0})

        with patch("app.api.v1.endpoints.backfills.get_settings", return_value=_backfill_settings("s3cret")), patch(
            "app.api.v1.endpoints.backfills.get_backfill_job", return_value=job
        ):
            response = client.post(
                "/api/v1/backfills/orders?dryRun=true",
                headers={"Authorization": "Bearer s3cret"},
                json={"limit": 5},
            )

        assert response.status_code == 200
        assert response.json()["ok"] is True
        job.run.assert_awaited_once_with(dry_run=True, limit=5, resume=False)

    def test_query_token_accepted(self):
        job = _fake_job(result={"ok": True})

        with patch("app.api.v1.endpoints.backfills.get_settings", return_value=_backfill_settings("s3cret")), patch(
            "app.api.v1.endpoints.backfills.get_backfill_job", return_value=job
        ):
            response = client.get("/api/v1/backfills/customers?token=s3cret")

        assert response.status_code == 200

    def test_unknown_job(self):
        with patch("app.api.v1.endpoints.backfills.get_settings", return_value=_backfill_settings()):
            response = client.post("/api/v1/backfills/nope")

        assert response.status_code == 404
        assert "nope" in response.json()["error"]

    def test_invalid_json_body(self):
        with patch("app.api.v1.endpoints.backfills.get_settings", return_value=_backfill_settings()):
            response = client.post(
                "/api/v1/backfills/orders", content=b"{not json", headers={"Content-Type": "application/json"}
            )

        assert response.status_code == 400
        assert response.json()["error"] == "Invalid JSON body"

    def test_run_failure_returns_500(self):
        """Un run que falla responde {"error": mensaje}."""
        job = _fake_job(side_effect=BackfillException("Sanity fetch failed", job="orders", operation="fetch"))

        with patch("app.api.v1.endpoints.backfills.get_settings", return_value=_backfill_settings()), patch(
            "app.api.v1.endpoints.backfills.get_backfill_job", return_value=job
        ):
            response = client.post("/api/v1/backfills/orders")

        assert response.status_code == 500
        assert response.json() == {"error": "Sanity fetch failed"}


class TestWebhookEndpoints:
    """Tests para /api/v1/webhooks."""

    def test_stripe_status_is_forwarded(self):
        processor = MagicMock()
        processor.handle_request = AsyncMock(return_value=(400, {"error": "Missing Stripe signature"}))

        with patch("app.api.v1.endpoints.webhooks.get_stripe_webhook_processor", return_value=processor):
            response = client.post("/api/v1/webhooks/stripe", content=b"{}")

        assert response.status_code == 400
        processor.handle_request.assert_awaited_once_with(b"{}", None)

    def test_shipengine_bad_token(self):
        settings = MagicMock()
        settings.SHIPENGINE_WEBHOOK_TOKEN = "hook-token"

        with patch("app.services.shipengine_webhook.get_settings", return_value=settings):
            response = client.post("/api/v1/webhooks/shipengine?token=wrong", json={})

        assert response.status_code == 401
        assert response.json()["source"] == "shipengine"

    def test_shipengine_event(self):
        settings = MagicMock()
        settings.SHIPENGINE_WEBHOOK_TOKEN = "hook-token"
        handler = AsyncMock(return_value={"ok": True, "handled": "track"})

        with patch("app.services.shipengine_webhook.get_settings", return_value=settings), patch(
            "app.api.v1.endpoints.webhooks.handle_shipengine_event", new=handler
        ):
            response = client.post(
                "/api/v1/webhooks/shipengine",
                headers={"x-webhook-token": "hook-token"},
                json={"resource_type": "API_TRACK"},
            )

        assert response.status_code == 200
        assert response.json()["handled"] == "track"
        handler.assert_awaited_once_with({"resource_type": "API_TRACK"})

    def test_auth0_passes_signature_header(self):
        handler = AsyncMock(return_value={"ok": True, "event": "user.created"})

        with patch("app.api.v1.endpoints.webhooks.handle_auth0_request", new=handler):
            response = client.post("/api/v1/webhooks/auth0", content=b'{"type": "user.created"}', headers={"x-auth0-signature": "abc"})

        assert response.status_code == 200
        handler.assert_awaited_once_with(b'{"type": "user.created"}', "abc")


class TestShippingEndpoint:
    """Tests para /api/v1/shipping/rates."""

    def test_missing_fields(self):
        response = client.post("/api/v1/shipping/rates", json={})

        assert response.status_code == 400
        assert response.json()["error"] == "Missing required fields (ship_to, package_details)."

    def test_upstream_error_is_forwarded(self):
        error = ShippingAPIException("Invalid postal code", api_response_code=422, response_body={"errors": ["bad"]})

        with patch("app.api.v1.endpoints.shipping.get_shipping_rates", new=AsyncMock(side_effect=error)):
            response = client.post("/api/v1/shipping/rates", json={"ship_to": {}, "package_details": {}})

        assert response.status_code == 422
        assert response.json() == {"error": "Invalid postal code", "details": {"errors": ["bad"]}}


class TestEmailTracking:
    """Tests para el tracking de emails."""

    def test_open_always_returns_pixel(self):
        tracker = AsyncMock(side_effect=ValidationException("Unknown email log", field="id"))

        with patch("app.api.v1.endpoints.email.track_open", new=tracker):
            response = client.get("/api/v1/email/open/emailLog-1")

        assert response.status_code == 200
        assert response.headers["content-type"] == "image/gif"

    def test_click_redirects_only_to_allowed_hosts(self):
        settings = MagicMock(email_click_allowed_hosts=["example.com"])
        tracker = AsyncMock(return_value=None)

        with patch("app.services.email_service.get_settings", return_value=settings), patch(
            "app.api.v1.endpoints.email.track_click", new=tracker
        ):
            redirect = client.get(
                "/api/v1/email/click/emailLog-1", params={"url": "https://shop.example.com/p"}, follow_redirects=False
            )
            blocked = client.get("/api/v1/email/click/emailLog-1", params={"url": "javascript:alert(1)"})

        assert redirect.status_code == 302
        assert redirect.headers["location"] == "https://shop.example.com/p"
        assert blocked.status_code == 204

    def test_click_refuses_off_site_url(self):
        """Un destino fuera de la lista no redirige y no se guarda en el log."""
        settings = MagicMock(email_click_allowed_hosts=["example.com"])
        tracker = AsyncMock(return_value=None)

        with patch("app.services.email_service.get_settings", return_value=settings), patch(
            "app.api.v1.endpoints.email.track_click", new=tracker
        ):
            response = client.get(
                "/api/v1/email/click/emailLog-1",
                params={"url": "https://evil.test/?next=example.com"},
                follow_redirects=False,
            )
            lookalike = client.get(
                "/api/v1/email/click/emailLog-1", params={"url": "https://notexample.com/"}, follow_redirects=False
            )

        assert response.status_code == 204
        assert "location" not in response.headers
        assert lookalike.status_code == 204
        tracker.assert_awaited_with("emailLog-1", None)


def _drain_settings(secret="drain-token"):
    return MagicMock(log_drain_secret=secret)


class TestLogDrainEndpoints:
    """Tests para /api/v1/log-drains."""

    def test_requires_token(self):
        service = MagicMock()
        service.list_drains = AsyncMock(return_value=[])

        with patch("app.api.v1.endpoints.log_drains.get_settings", return_value=_drain_settings()), patch(
            "app.api.v1.endpoints.log_drains.get_log_drain_service", return_value=service
        ):
            missing = client.get("/api/v1/log-drains")
            wrong = client.get("/api/v1/log-drains", headers={"Authorization": "Bearer nope"})

        assert missing.status_code == 401
        assert missing.json()["error"] == "Unauthorized"
        assert wrong.status_code == 401
        service.list_drains.assert_not_called()

    def test_closed_without_configured_secret(self):
        """Sin secreto configurado nadie puede usar el API."""
        with patch("app.api.v1.endpoints.log_drains.get_settings", return_value=_drain_settings("")):
            response = client.post("/api/v1/log-drains/fan-out", json={"message": "hello"})

        assert response.status_code == 401

    def test_list_masks_header_values(self):
        service = MagicMock()
        service.list_drains = AsyncMock(
            return_value=[{"id": "d1", "url": "https://logs.example.com", "headers": {"Authorization": "Bearer SECRET"}}]
        )

        with patch("app.api.v1.endpoints.log_drains.get_settings", return_value=_drain_settings()), patch(
            "app.api.v1.endpoints.log_drains.get_log_drain_service", return_value=service
        ):
            response = client.get("/api/v1/log-drains", headers={"Authorization": "Bearer drain-token"})

        assert response.status_code == 200
        drain = response.json()["drains"][0]
        assert drain["headers"] == {"Authorization": "********"}
        assert "SECRET" not in response.text

    def test_get_masks_header_values(self):
        service = MagicMock()
        service.get_drain = AsyncMock(
            return_value={
                "_id": "d1",
                "_type": "logDrain",
                "name": "Datadog",
                "url": "https://logs.example.com",
                "enabled": True,
                "headers": [{"_key": "k1", "key": "DD-API-KEY", "value": "SECRET"}],
            }
        )

        with patch("app.api.v1.endpoints.log_drains.get_settings", return_value=_drain_settings()), patch(
            "app.api.v1.endpoints.log_drains.get_log_drain_service", return_value=service
        ):
            response = client.get("/api/v1/log-drains/d1?token=drain-token")

        assert response.status_code == 200
        assert response.json()["drain"]["headers"] == {"DD-API-KEY": "********"}
        assert "SECRET" not in response.text

    def test_fan_out_counts_deliveries(self):
        service = MagicMock()
        service.fan_out = AsyncMock(return_value=[{"id": "a", "ok": True}, {"id": "b", "ok": False, "error": "503"}])

        with patch("app.api.v1.endpoints.log_drains.get_settings", return_value=_drain_settings()), patch(
            "app.api.v1.endpoints.log_drains.get_log_drain_service", return_value=service
        ):
            response = client.post(
                "/api/v1/log-drains/fan-out",
                headers={"Authorization": "Bearer drain-token"},
                json={"message": "hello", "level": "error"},
            )

        assert response.status_code == 200
        assert response.json()["delivered"] == 1
        event = service.fan_out.call_args.args[0]
        assert event["message"] == "hello"
