"""Tests unitarios para el servicio de email."""

from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from app.db.sanity_client import SanityClient
from app.services.email_service import (
    email_context_key,
    email_log_id,
    missing_email_fields,
    render_order_confirmation,
    reserve_email_log,
    send_customer_email,
    track_click,
)
from app.utils.error_handler import EmailDeliveryException, ValidationException


def _sanity(existing=None):
    sanity = SanityClient(project_id="proj", dataset="production", token="token")
    sanity.get_document = AsyncMock(return_value=existing)
    sanity.mutate = AsyncMock(return_value={"transactionId": "tx", "results": []})
    return sanity


class TestIdempotencyKeys:
    """Tests para las claves del emailLog."""

    def test_context_key_normalizes_recipient(self):
        """El destinatario se compara sin mayúsculas ni espacios."""
        assert email_context_key(" Jane@Example.com ", "Hi", "Body") == email_context_key("jane@example.com", "Hi", "Body")

    def test_context_key_depends_on_content(self):
        assert email_context_key("a@b.co", "Hi", "Body") != email_context_key("a@b.co", "Hi", "Body 2")
        assert email_context_key("a@b.co", "Hi", "Body") != email_context_key(
            "a@b.co", "Hi", "Body", [{"filename": "x.pdf", "content": "QQ=="}]
        )

    def test_log_id_is_deterministic(self):
        key = email_context_key("a@b.co", "Hi", "Body")

        assert email_log_id(key) == email_log_id(key)
        assert email_log_id(key).startswith("emailLog.")
        assert len(email_log_id(key)) == len("emailLog.") + 32

    def test_missing_fields(self):
        assert missing_email_fields("", "from@x.co", " ") == ["to", "subject"]


class TestReserveEmailLog:
    """Tests para reserve_email_log."""

    @pytest.mark.asyncio
    async def test_new_log_is_created(self):
        """Sin log previo debe crear el documento en estado queued."""
        sanity = _sanity()

        result = await reserve_email_log("key", "a@b.co", "Hi", sanity=sanity)

        assert result["shouldSend"] is True
        mutation = sanity.mutate.call_args.args[0][0]
        assert mutation["createIfNotExists"]["status"] == "queued"
        assert mutation["createIfNotExists"]["_id"] == email_log_id("key")

    @pytest.mark.asyncio
    async def test_sent_log_is_skipped(self):
        """Un correo ya enviado no se vuelve a enviar."""
        sanity = _sanity(existing={"_id": "emailLog.x", "status": "sent"})

        result = await reserve_email_log("key", "a@b.co", "Hi", sanity=sanity)

        assert result["shouldSend"] is False
        sanity.mutate.assert_not_called()

    @pytest.mark.asyncio
    async def test_failed_log_is_requeued(self):
        sanity = _sanity(existing={"_id": "emailLog.x", "status": "failed", "error": "boom"})

        result = await reserve_email_log("key", "a@b.co", "Hi", sanity=sanity)

        assert result["shouldSend"] is True
        patch_mutation = sanity.mutate.call_args.args[0][0]["patch"]
        assert patch_mutation["set"]["status"] == "queued"
        assert patch_mutation["unset"] == ["error"]


class TestSendCustomerEmail:
    """Tests para send_customer_email."""

    @pytest.mark.asyncio
    async def test_requires_recipient(self):
        with pytest.raises(ValidationException) as exc_info:
            await send_customer_email(None, "Hi", "Body", sanity=_sanity())

        assert exc_info.value.status_code == 400

    @pytest.mark.asyncio
    async def test_sends_and_marks_sent(self):
        """Debe enviar el correo y marcar el log como sent."""
        sanity = _sanity()
        send = AsyncMock(return_value={"provider": "resend", "id": "re_1", "status": "sent"})

        with patch("app.services.email_service.send_email", send):
            result = await send_customer_email("a@b.co", "Hi", "Line 1\nLine <2>", sanity=sanity)

        assert result == {"success": True}
        html = send.call_args.kwargs["html"]
        assert "Line 1<br />Line &lt;2&gt;" in html
        last_set = sanity.mutate.call_args.args[0][0]["patch"]["set"]
        assert last_set["status"] == "sent"
        assert last_set["resendId"] == "re_1"

    @pytest.mark.asyncio
    async def test_duplicate_is_skipped(self):
        sanity = _sanity(existing={"status": "queued"})
        send = AsyncMock()

        with patch("app.services.email_service.send_email", send):
            result = await send_customer_email("a@b.co", "Hi", "Body", sanity=sanity)

        assert result == {"success": True, "skipped": True}
        send.assert_not_called()

    @pytest.mark.asyncio
    async def test_delivery_failure_marks_failed_and_raises(self):
        """Un fallo de Resend queda en el log y se propaga."""
        sanity = _sanity()
        send = AsyncMock(side_effect=EmailDeliveryException("Resend API error: bad"))

        with patch("app.services.email_service.send_email", send):
            with pytest.raises(EmailDeliveryException):
                await send_customer_email("a@b.co", "Hi", "Body", sanity=sanity)

        last_set = sanity.mutate.call_args.args[0][0]["patch"]["set"]
        assert last_set["status"] == "failed"

    @pytest.mark.asyncio
    async def test_transport_error_marks_failed_and_allows_retry(self):
        """Un error que no viene de Resend también marca el log como failed y el reintento se envía."""
        sanity = _sanity()
        settings = MagicMock(RESEND_API_KEY="re_test", RESEND_FROM="Orders <orders@example.com>")

        with patch("app.services.email_service.get_settings", return_value=settings), patch(
            "app.services.email_service.resend.Emails.send", side_effect=ConnectionError("connection reset")
        ):
            with pytest.raises(ConnectionError):
                await send_customer_email("a@b.co", "Hi", "Body", sanity=sanity)

        last_set = sanity.mutate.call_args.args[0][0]["patch"]["set"]
        assert last_set["status"] == "failed"
        assert last_set["error"] == "connection reset"

        sanity.get_document.return_value = {"_id": "emailLog.x", "status": "failed"}
        with patch("app.services.email_service.get_settings", return_value=settings), patch(
            "app.services.email_service.resend.Emails.send", return_value={"id": "re_2"}
        ):
            result = await send_customer_email("a@b.co", "Hi", "Body", sanity=sanity)

        assert result == {"success": True}
        assert sanity.mutate.call_args.args[0][0]["patch"]["set"]["status"] == "sent"

    @pytest.mark.asyncio
    async def test_missing_sender_is_rejected_before_reserving(self):
        """Sin remitente no se crea el emailLog."""
        sanity = _sanity()

        with patch("app.services.email_service.get_settings", return_value=MagicMock(RESEND_FROM="")):
            with pytest.raises(ValidationException) as exc_info:
                await send_customer_email("a@b.co", "Hi", "Body", sanity=sanity)

        assert exc_info.value.status_code == 400
        sanity.get_document.assert_not_called()
        sanity.mutate.assert_not_called()

    @pytest.mark.asyncio
    async def test_template_name_is_escaped(self):
        sanity = _sanity()
        send = AsyncMock(return_value={"provider": "resend", "id": "re_1", "status": "sent"})

        with patch("app.services.email_service.send_email", send):
            await send_customer_email("a@b.co", "Hi", "Body", template="<b>promo</b>", sanity=sanity)

        html = send.call_args.kwargs["html"]
        assert "<b>promo" not in html
        assert "Template: &lt;b&gt;promo&lt;/b&gt;" in html


class TestTracking:
    """Tests para el tracking de aperturas y clicks."""

    @pytest.mark.asyncio
    async def test_click_appends_event(self):
        sanity = _sanity()

        await track_click("emailLog.abc", "https://example.com", sanity=sanity)

        mutation = sanity.mutate.call_args.args[0][0]["patch"]
        assert mutation["set"]["status"] == "clicked"
        assert mutation["setIfMissing"] == {"clickEvents": []}
        assert mutation["insert"]["items"][0]["url"] == "https://example.com"


class TestOrderConfirmation:
    """Tests para el render de la confirmación de orden."""

    def test_render_escapes_and_lists_items(self):
        content = render_order_confirmation(
            {
                "orderNumber": "FAS-000123",
                "customerName": "Jane <b>",
                "cart": [{"name": "Brake kit", "quantity": 2, "lineTotal": 250.0}],
                "totalAmount": 262.5,
            }
        )

        assert content["subject"] == "Order confirmation FAS-000123"
        assert "Jane &lt;b&gt;" in content["html"]
        assert "$250.00" in content["html"]
        assert "- Brake kit x2" in content["text"]
        assert "Total: $262.50" in content["text"]
