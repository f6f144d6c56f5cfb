"""
HTTP API for the Bjørkvang community hall booking service.

The server exposes the public booking form endpoints, the board's
approval links, contract signing and the Vipps payment flow.  Every route
is reachable both bare (``/booking``) and under the ``/api`` prefix
(``/api/booking``) so that the site can keep its existing URLs.

Endpoints
~~~~~~~~~

* ``POST /booking`` – body JSON with ``date``, ``time``, ``requesterName``,
  ``requesterEmail`` and optional ``duration``, ``phone``, ``eventType``,
  ``spaces``, ``services``, ``attendees``, ``message`` and
  ``paymentOrderId``.  Returns ``202 {id, status, paymentAmount}``.
* ``GET /booking/calendar`` – public calendar without requester details.
* ``GET /booking/admin`` – full records (admin).
* ``GET|POST /booking/approve?id=`` and ``/booking/reject?id=`` – board
  decisions (admin or signed link).  Browser GETs get an HTML page.
* ``POST /booking/remind`` – ``{id, comment?}`` reminder email (admin).
* ``GET /getBooking?id=`` – one booking, used by the contract page.
* ``POST /signBooking`` – ``{id, role, signatureData, signerName}``.
* ``POST /auth/verify-admin`` – ``{password}``.
* ``POST /vipps/initiate-booking``, ``/vipps/check-status``,
  ``/vipps/initiate-contract-payment`` and ``/vipps/callback``.
* ``GET /health`` – liveness and the list of loaded routes.

Run the server from the project root with::

    python3 app.py
"""

from __future__ import annotations

import hashlib
import hmac
import html as html_lib
import json
import logging
import re
import time
import urllib.parse
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from typing import Any, Dict, Optional

import db
import notifications
import vipps_client
from config import pricing, runtime
from errors import (
    BookingError,
    ConfigurationError,
    DeliveryError,
    PaymentError,
    PaymentMismatchError,
    ValidationError,
)
from lifecycle import BookingLifecycle
from models import Booking, Role, Status

logger = logging.getLogger(__name__)

API_PREFIX = "/api"
REQUEST_ID_RE = re.compile(r"^[A-Za-z0-9._:-]{1,64}$")
MAX_BODY_BYTES = 2 * 1024 * 1024
MIN_WEBHOOK_SECRET_LENGTH = 32
PAYABLE_STATES = (vipps_client.STATE_AUTHORIZED, vipps_client.STATE_CAPTURED)

ROUTES: Dict[tuple[str, str], str] = {
    ("POST", "/booking"): "handle_create_booking",
    ("GET", "/booking/calendar"): "handle_calendar",
    ("GET", "/booking/admin"): "handle_admin_calendar",
    ("GET", "/booking/approve"): "handle_approve",
    ("POST", "/booking/approve"): "handle_approve",
    ("GET", "/booking/reject"): "handle_reject",
    ("POST", "/booking/reject"): "handle_reject",
    ("POST", "/booking/remind"): "handle_remind",
    ("GET", "/getBooking"): "handle_get_booking",
    ("POST", "/signBooking"): "handle_sign_booking",
    ("POST", "/auth/verify-admin"): "handle_verify_admin",
    ("POST", "/vipps/initiate-booking"): "handle_vipps_initiate_booking",
    ("POST", "/vipps/check-status"): "handle_vipps_check_status",
    ("POST", "/vipps/initiate-contract-payment"): "handle_vipps_initiate_contract_payment",
    ("POST", "/vipps/callback"): "handle_vipps_callback",
    ("GET", "/health"): "handle_health",
}
ADMIN_PATHS = {"/booking/admin", "/booking/approve", "/booking/reject", "/booking/remind"}
ACTION_PATHS = {"/booking/approve": "approve", "/booking/reject": "reject"}


@dataclass
class AppContext:
    settings: runtime.Settings
    lifecycle: BookingLifecycle
    vipps: Optional[vipps_client.VippsClient] = None


def build_context(settings: runtime.Settings) -> AppContext:
    store = db.create_store(settings.database_path)
    notifier = notifications.create_notification_service(settings)
    return AppContext(
        settings=settings,
        lifecycle=BookingLifecycle(store, notifier, settings),
        vipps=vipps_client.create_vipps_client(settings),
    )


def parse_query(query: str) -> Dict[str, str]:
    """Parse a URL query string into a dict of first values."""
    parsed = urllib.parse.parse_qs(query, keep_blank_values=True)
    return {k: v[0] for k, v in parsed.items() if v}


def _constant_time_secret_match(provided_value: str, expected_value: str) -> bool:
    provided_hash = hashlib.sha256(provided_value.encode("utf-8")).digest()
    expected_hash = hashlib.sha256(expected_value.encode("utf-8")).digest()
    return hmac.compare_digest(provided_hash, expected_hash)


def route_paths() -> list[str]:
    return sorted({f"{method} {API_PREFIX}{path}" for method, path in ROUTES})


class Handler(BaseHTTPRequestHandler):
    """Request handler for the booking API."""

    server_version = "BjorkvangBooking/1.0"

    @property
    def context(self) -> AppContext:
        return self.server.context  # type: ignore[attr-defined]

    @property
    def settings(self) -> runtime.Settings:
        return self.context.settings

    @property
    def lifecycle(self) -> BookingLifecycle:
        return self.context.lifecycle

    def log_message(self, fmt: str, *args: Any) -> None:
        # Silence default logging
        return

    def _request_id(self) -> str:
        value = getattr(self, "_request_id_value", "")
        if value:
            return value
        incoming = (self.headers.get("X-Request-Id") or "").strip()
        rid = incoming if incoming and REQUEST_ID_RE.match(incoming) else uuid.uuid4().hex
        self._request_id_value = rid
        return rid

    def _send_common_headers(self) -> None:
        allowed = self.settings.allowed_origins
        origin = (self.headers.get("Origin") or "").rstrip("/")
        if origin and origin in allowed:
            self.send_header("Access-Control-Allow-Origin", origin)
            self.send_header("Vary", "Origin")
        elif allowed:
            self.send_header("Access-Control-Allow-Origin", allowed[0])
        self.send_header("Access-Control-Allow-Methods", "GET,POST,OPTIONS")
        self.send_header(
            "Access-Control-Allow-Headers",
            "Content-Type, Authorization, X-Admin-Password, X-Request-Id",
        )
        self.send_header("Cache-Control", "no-store")
        self.send_header("X-Request-Id", self._request_id())

    def end_json(self, code: int, payload: Dict[str, Any]) -> None:
        body = json.dumps(payload, ensure_ascii=False).encode("utf-8")
        self.send_response(code)
        self.send_header("Content-Type", "application/json; charset=utf-8")
        self.send_header("Content-Length", str(len(body)))
        self._send_common_headers()
        self.end_headers()
        self.wfile.write(body)

    def end_html_message(self, code: int, title: str, message: str) -> None:
        body = (
            "<!doctype html><html lang='no'><head><meta charset='utf-8'>"
            f"<title>{html_lib.escape(title)}</title></head><body>"
            f"<h1>{html_lib.escape(title)}</h1><p>{html_lib.escape(message)}</p></body></html>"
        ).encode("utf-8")
        self.send_response(code)
        self.send_header("Content-Type", "text/html; charset=utf-8")
        self.send_header("Content-Length", str(len(body)))
        self._send_common_headers()
        self.end_headers()
        self.wfile.write(body)

    def api_error(
        self,
        status: int,
        code: str,
        message: str,
        *,
        details: Optional[Dict[str, Any]] = None,
        legacy_error: Optional[str] = None,
        extra: Optional[Dict[str, Any]] = None,
    ) -> None:
        """Return stable API errors; browser action links get an HTML page."""
        if getattr(self, "_html_response", False):
            return self.end_html_message(status, "Bjørkvang", legacy_error or message)
        payload: Dict[str, Any] = {
            "error": legacy_error or message,
            "errorInfo": {"code": code, "message": message},
        }
        if details is not None:
            payload["errorInfo"]["details"] = details
        if extra:
            payload.update(extra)
        self.end_json(status, payload)

    def _invalid_field_error(self, field_errors: Dict[str, str], message: str = "Invalid request") -> None:
        self.api_error(
            400,
            "invalid_request",
            message,
            details={"fields": field_errors},
            legacy_error="; ".join([f"{field}: {msg}" for field, msg in field_errors.items()]),
        )

    def _read_json(self) -> Optional[Dict[str, Any]]:
        """Return the JSON object body; sends a 400 and returns ``None`` on bad input."""
        cached = getattr(self, "_json_body", None)
        if cached is not None:
            return cached
        try:
            length = int(self.headers.get("Content-Length", "0"))
        except ValueError:
            length = -1
        if length < 0 or length > MAX_BODY_BYTES:
            self.api_error(400, "invalid_request", "Request body too large or malformed", legacy_error="Invalid body")
            return None
        raw = self.rfile.read(length) if length > 0 else b"{}"
        try:
            data = json.loads(raw.decode("utf-8") or "{}")
        except (UnicodeDecodeError, json.JSONDecodeError):
            self.api_error(400, "invalid_json", "Request body must be valid JSON", legacy_error="Invalid JSON")
            return None
        if not isinstance(data, dict):
            self.api_error(400, "invalid_json", "Request body must be a JSON object", legacy_error="Invalid JSON")
            return None
        self._json_body = data
        return data

    def _wants_json(self) -> bool:
        if self.command != "GET":
            return True
        return "application/json" in (self.headers.get("Accept") or "").lower()

    def _base_url(self) -> str:
        if self.settings.public_base_url:
            return self.settings.public_base_url
        host = (self.headers.get("X-Forwarded-Host") or self.headers.get("Host") or "localhost").split(",")[0].strip()
        proto = (self.headers.get("X-Forwarded-Proto") or "http").split(",")[0].strip().lower()
        return f"{proto}://{host}"

    def _client_ip(self) -> str:
        forwarded = (self.headers.get("X-Forwarded-For") or "").split(",")[0].strip()
        return forwarded or (self.client_address[0] if self.client_address else "Unknown")

    def _extract_bearer_token(self) -> Optional[str]:
        auth_header = (self.headers.get("Authorization") or "").strip()
        if not auth_header:
            return None
        scheme, _, token = auth_header.partition(" ")
        if scheme.lower() != "bearer" or not token.strip():
            return ""
        return token.strip()

    def require_admin_auth(self, path: str, params: Dict[str, str]) -> bool:
        expected_password = self.settings.admin_password
        if not expected_password:
            # Only reachable outside production; load_settings() refuses to
            # start a production server without ADMIN_PASSWORD.
            return True
        for provided in (self._extract_bearer_token(), (self.headers.get("X-Admin-Password") or "").strip()):
            if provided and _constant_time_secret_match(provided, expected_password):
                return True
        action = ACTION_PATHS.get(path)
        token = params.get("token") or ""
        booking_id = params.get("id") or ""
        if action and token and booking_id and self.lifecycle.verify_action_token(booking_id, action, token):
            return True
        logger.warning("ADMIN_AUTH_FAIL path=%s requestId=%s", path, self._request_id())
        self.api_error(401, "unauthorized", "Unauthorized", legacy_error="Unauthorized")
        return False

    def _require_vipps(self) -> Optional[vipps_client.VippsClient]:
        client = self.context.vipps
        if client is None:
            self.api_error(500, "payment_disabled", "Payments are not enabled", legacy_error="Payments are not enabled")
        return client

    def _handle_error(self, exc: Exception, path: str) -> None:
        if isinstance(exc, ValidationError):
            return self._invalid_field_error(exc.fields, exc.message)
        if isinstance(exc, BookingError) and exc.status_code < 500:
            return self.api_error(exc.status_code, exc.code, exc.message)
        if isinstance(exc, BookingError):
            logger.error(
                "REQUEST_FAIL path=%s code=%s requestId=%s error=%s",
                path,
                exc.code,
                self._request_id(),
                exc.message,
            )
            return self.api_error(500, exc.code, "Internal server error")
        logger.exception("REQUEST_FAIL path=%s requestId=%s", path, self._request_id())
        return self.api_error(500, "internal_error", "Internal server error")

    def _dispatch(self) -> None:
        parsed = urllib.parse.urlparse(self.path)
        path = parsed.path.rstrip("/") or "/"
        if path == API_PREFIX or path.startswith(API_PREFIX + "/"):
            path = path[len(API_PREFIX):] or "/"
        params = parse_query(parsed.query)
        logger.info("REQUEST method=%s path=%s requestId=%s", self.command, path, self._request_id())

        handler_name = ROUTES.get((self.command, path))
        if handler_name is None:
            if any(route_path == path for _, route_path in ROUTES):
                return self.api_error(405, "method_not_allowed", "Method Not Allowed")
            return self.api_error(404, "not_found", "Not Found", legacy_error="Not Found")

        self._html_response = path in ACTION_PATHS and not self._wants_json()
        try:
            if path in ADMIN_PATHS and not self.require_admin_auth(path, params):
                return
            getattr(self, handler_name)(params)
        except Exception as exc:
            self._handle_error(exc, path)

    def do_GET(self) -> None:
        self._dispatch()

    def do_POST(self) -> None:
        self._dispatch()

    def do_OPTIONS(self) -> None:
        self.send_response(204)
        self.send_header("Content-Length", "0")
        self._send_common_headers()
        self.end_headers()

    def handle_create_booking(self, params: Dict[str, str]) -> None:
        data = self._read_json()
        if data is None:
            return
        order_id = str(data.get("paymentOrderId") or "").strip()
        if not order_id:
            booking = self.lifecycle.create_booking(data, base_url=self._base_url())
            return self.end_json(
                202, {"id": booking.id, "status": booking.status.value, "paymentAmount": booking.payment_amount}
            )

        client = self._require_vipps()
        if client is None:
            return
        # Validation and the slot check run before the gateway is touched.
        draft = self.lifecycle.prepare_booking(data)
        if self.lifecycle.find_by_payment_order(order_id) is not None:
            return self.api_error(409, "payment_order_used", "Payment order already belongs to a booking")
        status = client.get_status(order_id)
        if status["state"] not in PAYABLE_STATES:
            return self.api_error(
                400,
                "payment_not_completed",
                "Payment has not been completed",
                details={"state": status["state"]},
            )
        if draft.payment_amount and (status.get("amount") or 0) < draft.payment_amount:
            return self._invalid_field_error({"paymentOrderId": "Paid amount does not cover the booking price"})

        booking = self.lifecycle.create_booking(
            data, base_url=self._base_url(), payment_order_id=order_id, announce=False
        )
        try:
            _, booking = self._settle_payment(client, booking, order_id, notify=False)
        except PaymentError as exc:
            # The booking keeps the order; check-status or the callback settles it later.
            logger.error(
                "PREPAID_CAPTURE_FAIL bookingId=%s orderId=%s status=%s error=%s",
                booking.id,
                order_id,
                exc.provider_status,
                exc.message,
            )
        self.lifecycle.announce_booking(booking, base_url=self._base_url())
        self.end_json(202, {"id": booking.id, "status": booking.status.value, "paymentAmount": booking.payment_amount})

    def _settle_payment(
        self,
        client: vipps_client.VippsClient,
        booking: Booking,
        order_id: str,
        *,
        notify: bool = True,
    ) -> tuple[Dict[str, Any], Booking]:
        """Capture ``order_id`` and record it on ``booking``.

        The order is matched against the booking (order id and amount)
        before anything is captured.
        """
        details = client.get_status(order_id)
        self.lifecycle.check_payment(booking, order_id, details.get("amount"))
        result = client.check_status(order_id, details)
        if result["state"] == vipps_client.STATE_CAPTURED:
            booking = self.lifecycle.mark_paid(booking.id, order_id, details.get("amount"), notify=notify).booking
        return result, booking

    def handle_calendar(self, params: Dict[str, str]) -> None:
        self.end_json(200, {"bookings": self.lifecycle.list_public()})

    def handle_admin_calendar(self, params: Dict[str, str]) -> None:
        self.end_json(200, {"bookings": [booking.to_dict() for booking in self.lifecycle.list_admin()]})

    def _action_params(self, params: Dict[str, str]) -> Optional[Dict[str, Any]]:
        values: Dict[str, Any] = dict(params)
        if self.command == "POST":
            body = self._read_json()
            if body is None:
                return None
            values.update({key: value for key, value in body.items() if value is not None})
        if not str(values.get("id") or "").strip():
            self._invalid_field_error({"id": "This field is required"}, "Missing booking id")
            return None
        values["id"] = str(values["id"]).strip()
        return values

    def handle_approve(self, params: Dict[str, str]) -> None:
        values = self._action_params(params)
        if values is None:
            return
        result = self.lifecycle.approve(values["id"])
        if self._html_response:
            if result.changed:
                return self.end_html_message(200, "Booking godkjent", "Booking er nå godkjent og bekreftelse er sendt.")
            return self.end_html_message(200, "Booking godkjent", "Booking var allerede godkjent.")
        self.end_json(200, {"id": result.booking.id, "status": result.booking.status.value, "changed": result.changed})

    def handle_reject(self, params: Dict[str, str]) -> None:
        values = self._action_params(params)
        if values is None:
            return
        reason = values.get("reason")
        result = self.lifecycle.reject(values["id"], str(reason) if reason is not None else None)
        if self._html_response:
            if result.changed:
                return self.end_html_message(200, "Booking avvist", "Booking er avvist og forespørreren er varslet.")
            return self.end_html_message(200, "Booking avvist", "Booking var allerede avvist.")
        self.end_json(200, {"id": result.booking.id, "status": result.booking.status.value, "changed": result.changed})

    def handle_remind(self, params: Dict[str, str]) -> None:
        values = self._action_params(params)
        if values is None:
            return
        comment = values.get("comment")
        try:
            self.lifecycle.send_reminder(values["id"], str(comment) if comment is not None else None)
        except DeliveryError:
            return self.api_error(500, "delivery_failed", "Could not send reminder")
        self.end_json(200, {"message": "Reminder sent"})

    def handle_get_booking(self, params: Dict[str, str]) -> None:
        booking_id = (params.get("id") or "").strip()
        if not booking_id:
            return self._invalid_field_error({"id": "This field is required"}, "Missing booking id")
        self.end_json(200, self.lifecycle.get_booking(booking_id).to_dict())

    def handle_sign_booking(self, params: Dict[str, str]) -> None:
        data = self._read_json()
        if data is None:
            return
        booking_id = str(data.get("id") or data.get("bookingId") or "").strip()
        if not booking_id:
            return self._invalid_field_error({"id": "This field is required"}, "Missing booking id")
        result = self.lifecycle.record_signature(
            booking_id,
            data.get("role"),
            data.get("signatureData"),
            data.get("signerName"),
            {"ip_address": self._client_ip(), "user_agent": self.headers.get("User-Agent") or "Unknown"},
        )
        signature = result.booking.contract[Role(data.get("role"))]
        self.end_json(
            200,
            {
                "signedAt": signature.signed_at,
                "bothSigned": result.both_signed,
                "paymentRequired": result.payment_required,
            },
        )

    def handle_verify_admin(self, params: Dict[str, str]) -> None:
        expected_password = self.settings.admin_password
        if not expected_password:
            return self.api_error(500, "server_misconfigured", "Server misconfigured", legacy_error="Server misconfigured")
        data = self._read_json()
        if data is None:
            return
        provided = data.get("password")
        if isinstance(provided, str) and provided and _constant_time_secret_match(provided, expected_password):
            return self.end_json(200, {"ok": True})
        logger.warning("ADMIN_VERIFY_FAIL requestId=%s", self._request_id())
        self.api_error(401, "unauthorized", "Invalid password", legacy_error="Unauthorized", extra={"ok": False})

    def handle_vipps_initiate_booking(self, params: Dict[str, str]) -> None:
        data = self._read_json()
        if data is None:
            return
        client = self._require_vipps()
        if client is None:
            return
        spaces = data.get("spaces")
        field_errors: Dict[str, str] = {}
        if not isinstance(spaces, list) or not spaces or not all(isinstance(s, str) for s in spaces):
            field_errors["spaces"] = "Spaces must be specified"
        elif any(space not in pricing.KNOWN_SPACES for space in spaces):
            field_errors["spaces"] = "Unknown space"
        for name in ("date", "time", "requesterName"):
            if not str(data.get(name) or "").strip():
                field_errors[name] = "This field is required"
        attendees = data.get("attendees")
        if attendees is not None and (isinstance(attendees, bool) or not isinstance(attendees, int) or attendees < 0):
            field_errors["attendees"] = "Expected a whole number"
        if field_errors:
            return self._invalid_field_error(field_errors)

        amount = pricing.calculate_amount(dict.fromkeys(spaces), attendees)
        if amount <= 0:
            return self.api_error(400, "invalid_amount", "Invalid pricing configuration")
        order_id = f"booking-{data['date']}-{int(time.time() * 1000)}-{uuid.uuid4().hex[:5]}"
        return_url = f"{self.settings.site_url}/booking?status=success&orderId={order_id}"
        description = f"Booking {data.get('eventType') or 'arrangement'} - {', '.join(spaces)} - {data['date']} kl {data['time']}"
        payment = client.initiate(amount, return_url, order_id, description, data.get("phoneNumber"))
        self.end_json(200, {"url": payment["redirectUrl"], "orderId": order_id, "amount": amount // pricing.ORE_PER_KRONE})

    def handle_vipps_check_status(self, params: Dict[str, str]) -> None:
        data = self._read_json()
        if data is None:
            return
        order_id = str(data.get("orderId") or "").strip()
        if not order_id:
            return self._invalid_field_error({"orderId": "This field is required"})
        client = self._require_vipps()
        if client is None:
            return
        booking_id = str(data.get("bookingId") or "").strip()
        booking = self.lifecycle.get_booking(booking_id) if booking_id else self.lifecycle.find_by_payment_order(order_id)

        if booking is None:
            # Orders without a booking are only reported; POST /booking captures them.
            status = client.get_status(order_id)
            result = {"state": status["state"], "details": status}
        else:
            result, booking = self._settle_payment(client, booking, order_id)
        details = {key: value for key, value in result["details"].items() if key != "raw"}
        payload: Dict[str, Any] = {"status": result["state"], "details": details}
        if booking is not None:
            payload["booking"] = {
                "id": booking.id,
                "status": booking.status.value,
                "paymentStatus": booking.payment_status.value,
            }
        self.end_json(200, payload)

    def handle_vipps_initiate_contract_payment(self, params: Dict[str, str]) -> None:
        data = self._read_json()
        if data is None:
            return
        booking_id = str(data.get("bookingId") or "").strip()
        if not booking_id:
            return self._invalid_field_error({"bookingId": "This field is required"})
        client = self._require_vipps()
        if client is None:
            return
        booking = self.lifecycle.get_booking(booking_id)
        if booking.status == Status.REJECTED:
            return self.api_error(409, "invalid_booking_status", "Booking is rejected")
        if not booking.both_signed:
            return self.api_error(400, "contract_not_signed", "Contract must be signed by both parties")
        if booking.is_paid:
            return self.api_error(400, "already_paid", "Booking is already paid")

        amount = booking.payment_amount
        if not amount:
            amount = pricing.calculate_amount(booking.spaces, booking.attendees)
            logger.warning("PAYMENT_AMOUNT_MISSING bookingId=%s computed=%s", booking_id, amount)
        if amount <= 0:
            return self.api_error(400, "invalid_amount", "Booking has no payable amount")

        order_id = f"contract-payment-{booking_id}-{int(time.time() * 1000)}"
        return_url = f"{self.settings.site_url}/complete-payment.html?status=success&bookingId={booking_id}&orderId={order_id}"
        description = f"Leie av Bjørkvang {booking.date}"
        payment = client.initiate(amount, return_url, order_id, description, data.get("phoneNumber") or booking.phone)
        self.lifecycle.attach_payment_order(booking_id, order_id)
        self.end_json(
            200,
            {
                "url": payment["redirectUrl"],
                "orderId": order_id,
                "amount": amount // pricing.ORE_PER_KRONE,
                "bookingId": booking_id,
            },
        )

    def handle_vipps_callback(self, params: Dict[str, str]) -> None:
        """Handle a Vipps webhook.

        The body is only used to find the order reference; the payment
        state is always re-read from Vipps before a booking is marked paid.
        """
        expected_secret = self.settings.webhook_secret
        if expected_secret:
            provided_secret = (self.headers.get("X-Webhook-Secret") or "").strip() or (self._extract_bearer_token() or "")
            if not provided_secret or not _constant_time_secret_match(provided_secret, expected_secret):
                return self.api_error(401, "unauthorized", "Unauthorized", legacy_error="Unauthorized")
        elif self.settings.vipps_mode != "mock":
            return self.api_error(500, "server_misconfigured", "Server misconfigured", legacy_error="Server misconfigured")

        data = self._read_json()
        if data is None:
            return
        order_id = str(data.get("reference") or data.get("orderId") or "").strip()
        if not order_id:
            return self._invalid_field_error({"reference": "This field is required"})
        client = self._require_vipps()
        if client is None:
            return

        booking = self.lifecycle.find_by_payment_order(order_id)
        if booking is None:
            status = client.get_status(order_id)
            logger.warning("VIPPS_CALLBACK_UNMATCHED orderId=%s state=%s", order_id, status["state"])
            return self.end_json(200, {"ok": True, "orderId": order_id, "status": status["state"], "bookingId": None})
        try:
            result, booking = self._settle_payment(client, booking, order_id)
        except PaymentMismatchError as exc:
            # Answer 200 so Vipps stops retrying; the mismatch is in the log for the board.
            logger.warning("VIPPS_CALLBACK_REFUSED orderId=%s bookingId=%s reason=%s", order_id, booking.id, exc.message)
            return self.end_json(200, {"ok": False, "orderId": order_id, "bookingId": booking.id, "error": exc.code})
        logger.info("VIPPS_CALLBACK orderId=%s state=%s bookingId=%s", order_id, result["state"], booking.id)
        self.end_json(200, {"ok": True, "orderId": order_id, "status": result["state"], "bookingId": booking.id})

    def handle_health(self, params: Dict[str, str]) -> None:
        self.end_json(
            200,
            {
                "ok": True,
                "service": self.settings.service_name,
                "time": datetime.now(timezone.utc).isoformat(timespec="seconds"),
                "routes": route_paths(),
            },
        )


def create_server(context: AppContext, host: str = "0.0.0.0", port: int = 8000) -> ThreadingHTTPServer:
    server = ThreadingHTTPServer((host, port), Handler)
    server.daemon_threads = True
    server.context = context  # type: ignore[attr-defined]
    return server


def run() -> None:
    settings = runtime.load_settings()
    logging.basicConfig(
        level=getattr(logging, settings.log_level, logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s %(message)s",
    )
    if settings.is_production and settings.vipps_mode == "live" and len(settings.webhook_secret) < MIN_WEBHOOK_SECRET_LENGTH:
        raise ConfigurationError(
            f"WEBHOOK_SECRET must be at least {MIN_WEBHOOK_SECRET_LENGTH} characters in production environments"
        )
    context = build_context(settings)
    server = create_server(context, port=settings.port)
    logger.info(
        "SERVER_START port=%s env=%s vipps=%s routes=%s",
        settings.port,
        settings.environment,
        settings.vipps_mode,
        len(ROUTES),
    )
    server.serve_forever()


if __name__ == "__main__":
    run()
