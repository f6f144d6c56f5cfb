import unittest
from unittest import mock

import requests

import notifications
from config.runtime import Settings
from email_provider import EmailMessage, LogEmailProvider, PlunkEmailProvider, mask_email
from errors import DeliveryError
from models import Booking, PaymentStatus


class _ScriptedProvider:
    def __init__(self, outcomes: list) -> None:
        self.outcomes = list(outcomes)
        self.calls = 0

    def send(self, message: EmailMessage):
        self.calls += 1
        outcome = self.outcomes.pop(0)
        if isinstance(outcome, Exception):
            raise outcome
        return outcome


def _message() -> EmailMessage:
    return EmailMessage(to="ola@example.com", subject="Hei", text="Hei Ola")


def _response(status_code: int, payload=None, text: str = "") -> mock.Mock:
    response = mock.Mock()
    response.status_code = status_code
    response.text = text or ("{}" if payload is None else "json")
    response.json.return_value = payload if payload is not None else {}
    return response


class NotificationServiceRetryTest(unittest.TestCase):
    def setUp(self) -> None:
        self.sleeps: list[float] = []

    def _service(self, provider) -> notifications.NotificationService:
        return notifications.NotificationService(provider, sleep=self.sleeps.append)

    def test_success_on_first_attempt(self) -> None:
        provider = _ScriptedProvider(["id-1"])
        self.assertEqual(self._service(provider).send(_message()), "id-1")
        self.assertEqual(provider.calls, 1)
        self.assertEqual(self.sleeps, [])

    def test_retryable_errors_back_off_then_succeed(self) -> None:
        provider = _ScriptedProvider(
            [
                DeliveryError("boom", provider_status=503, retryable=True),
                DeliveryError("timeout", retryable=True),
                "id-3",
            ]
        )
        self.assertEqual(self._service(provider).send(_message()), "id-3")
        self.assertEqual(provider.calls, 3)
        self.assertEqual(self.sleeps, [0.5, 1.0])

    def test_last_error_surfaces_after_three_attempts(self) -> None:
        provider = _ScriptedProvider([DeliveryError(f"fail {n}", provider_status=502, retryable=True) for n in range(3)])
        with self.assertRaises(DeliveryError) as ctx:
            self._service(provider).send(_message())
        self.assertEqual(ctx.exception.message, "fail 2")
        self.assertEqual(provider.calls, 3)

    def test_client_errors_are_not_retried(self) -> None:
        provider = _ScriptedProvider([DeliveryError("bad request", provider_status=400, retryable=False)])
        with self.assertRaises(DeliveryError):
            self._service(provider).send(_message())
        self.assertEqual(provider.calls, 1)
        self.assertEqual(self.sleeps, [])

    def test_deliver_is_non_fatal(self) -> None:
        provider = _ScriptedProvider([DeliveryError("bad request", provider_status=422)])
        with self.assertLogs("notifications", level="ERROR") as logs:
            delivered = self._service(provider).deliver(_message(), event="booking.receipt")
        self.assertFalse(delivered)
        self.assertTrue(any("EMAIL_FAIL event=booking.receipt" in line for line in logs.output))
        self.assertTrue(all("ola@example.com" not in line for line in logs.output))

    def test_factory_selects_provider(self) -> None:
        configured = notifications.create_notification_service(
            Settings(plunk_api_token="tok", from_address="booking@bjorkvang.no", board_email="styret@example.com")
        )
        self.assertIsInstance(configured.provider, PlunkEmailProvider)
        self.assertEqual(configured.board_email, "styret@example.com")
        with self.assertLogs("notifications", level="WARNING"):
            fallback = notifications.create_notification_service(Settings())
        self.assertIsInstance(fallback.provider, LogEmailProvider)


class PlunkEmailProviderTest(unittest.TestCase):
    def setUp(self) -> None:
        self.provider = PlunkEmailProvider("token-123", "booking@bjorkvang.no", "https://plunk.test/v1/send")

    def test_posts_payload_with_bearer_token(self) -> None:
        message = EmailMessage(to="ola@example.com", subject="Hei", text="t", html="<p>h</p>", reply_to="styret@example.com")
        with mock.patch("email_provider.requests.post", return_value=_response(200, {"success": True, "id": "abc"})) as post:
            message_id = self.provider.send(message)

        self.assertEqual(message_id, "abc")
        _, kwargs = post.call_args
        self.assertEqual(post.call_args.args[0], "https://plunk.test/v1/send")
        self.assertEqual(kwargs["headers"]["Authorization"], "Bearer token-123")
        self.assertEqual(kwargs["timeout"], 10)
        self.assertEqual(
            kwargs["json"],
            {
                "from": "booking@bjorkvang.no",
                "to": "ola@example.com",
                "subject": "Hei",
                "text": "t",
                "html": "<p>h</p>",
                "replyTo": "styret@example.com",
            },
        )

    def test_client_error_is_not_retryable(self) -> None:
        with mock.patch("email_provider.requests.post", return_value=_response(401, text="unauthorized")):
            with self.assertRaises(DeliveryError) as ctx:
                self.provider.send(_message())
        self.assertFalse(ctx.exception.retryable)
        self.assertEqual(ctx.exception.provider_status, 401)

    def test_server_error_is_retryable(self) -> None:
        with mock.patch("email_provider.requests.post", return_value=_response(503, text="unavailable")):
            with self.assertRaises(DeliveryError) as ctx:
                self.provider.send(_message())
        self.assertTrue(ctx.exception.retryable)

    def test_timeout_and_connection_errors_are_retryable(self) -> None:
        for error in (requests.Timeout("slow"), requests.ConnectionError("refused")):
            with mock.patch("email_provider.requests.post", side_effect=error):
                with self.assertRaises(DeliveryError) as ctx:
                    self.provider.send(_message())
            self.assertTrue(ctx.exception.retryable)

    def test_missing_recipient_fails_without_network(self) -> None:
        with mock.patch("email_provider.requests.post") as post:
            with self.assertRaises(DeliveryError):
                self.provider.send(EmailMessage(to="", subject="Hei", text="x"))
        post.assert_not_called()

    def test_mask_email(self) -> None:
        self.assertEqual(mask_email("ola@example.com"), "o***@example.com")
        self.assertEqual(mask_email("broken"), "***")


class TemplateTest(unittest.TestCase):
    def setUp(self) -> None:
        self.booking = Booking(
            date="2025-06-01",
            time="18:00",
            requester_name="Ola <Nordmann>",
            requester_email="ola@example.com",
            spaces=["Salen"],
            message='Vi kommer "mange" & glade',
            payment_amount=300000,
        )

    def test_board_request_escapes_user_values(self) -> None:
        message = notifications.build_board_request(
            self.booking, "styret@example.com", "https://x/approve?id=1&token=a", "https://x/reject?id=1&token=b"
        )
        self.assertIn("Ola &lt;Nordmann&gt;", message.html)
        self.assertIn("&quot;mange&quot; &amp; glade", message.html)
        self.assertNotIn("<Nordmann>", message.html)
        self.assertIn("https://x/approve?id=1&amp;token=a", message.html)
        self.assertIn("https://x/approve?id=1&token=a", message.text)

    def test_every_template_uses_shared_layout(self) -> None:
        link = notifications.contract_url("https://bjørkvang.no/", self.booking.id)
        self.assertEqual(link, f"https://bjørkvang.no/leieavtale?id={self.booking.id}")
        messages = [
            notifications.build_receipt(self.booking),
            notifications.build_approval(self.booking, link),
            notifications.build_rejection(self.booking, None),
            notifications.build_payment_request(self.booking, link),
            notifications.build_payment_confirmation(self.booking, link),
            notifications.build_reminder(self.booking, link, None),
        ]
        for message in messages:
            self.assertEqual(message.to, "ola@example.com")
            self.assertTrue(message.html.startswith("<!DOCTYPE html>"))
            self.assertIn("Dette er en automatisk melding fra Bjørkvang.", message.html)
            self.assertTrue(message.text)

    def test_receipt_for_paid_booking_mentions_payment(self) -> None:
        self.booking.payment_status = PaymentStatus.PAID
        self.assertIn("Betalingen er mottatt", notifications.build_receipt(self.booking).text)

    def test_format_nok(self) -> None:
        self.assertEqual(notifications.format_nok(300000), "3 000 kr")
        self.assertEqual(notifications.format_nok(150000), "1 500 kr")
        self.assertEqual(notifications.format_nok(None), "0 kr")
