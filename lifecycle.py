"""Booking lifecycle: validation, status transitions and their emails.

``BookingLifecycle`` is the only writer of booking state.  Every transition
is persisted through a compare-and-swap on the store before any email is
sent, and email failures never unwind a persisted transition.

Status moves::

    pending --approve--> approved --reject--> rejected
    pending --reject---> rejected
    pending --paid-----> approved   (automatic on captured payment)

A rejected booking is terminal.
"""

from __future__ import annotations

import base64
import hashlib
import hmac
import logging
import re
import time
from dataclasses import dataclass
from datetime import date, datetime, timedelta, timezone
from typing import Any, Callable, Dict, List, Optional

import notifications
from config import pricing
from config.runtime import Settings
from db import BookingStore
from email_provider import mask_email
from errors import ConflictError, InvalidTransitionError, NotFoundError, PaymentMismatchError, ValidationError
from models import (
    PAYMENT_REQUEST_NOTIFICATION,
    Booking,
    Role,
    Signature,
    Status,
    can_transition,
    sort_key,
    transition_sources,
    utc_now_iso,
)

logger = logging.getLogger(__name__)

DATE_RE = re.compile(r"^\d{4}-\d{2}-\d{2}$")
TIME_RE = re.compile(r"^(?:[01]\d|2[0-3]):[0-5]\d$")
EMAIL_RE = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")
EMAIL_MAX_LENGTH = 254
NAME_MAX_LENGTH = 100
MESSAGE_MAX_LENGTH = 2000
PHONE_MAX_LENGTH = 32
EVENT_TYPE_MAX_LENGTH = 100
SERVICE_MAX_LENGTH = 100
MAX_SERVICES = 20
MAX_ATTENDEES = 1000
MAX_DURATION_HOURS = 24
DEFAULT_DURATION_HOURS = 4
BOOKING_WINDOW_YEARS = 2
REASON_MAX_LENGTH = 1000
COMMENT_MAX_LENGTH = 1000
SIGNATURE_MAX_LENGTH = 500_000
SIGNATURE_TYPES = {"draw", "text"}
ACTION_LINK_MAX_AGE_SECONDS = 60 * 60 * 24 * 45
ADMIN_ACTIONS = {"approve", "reject"}


@dataclass
class TransitionResult:
    booking: Booking
    changed: bool


@dataclass
class SignatureResult:
    booking: Booking
    both_signed: bool
    payment_required: bool


def generate_action_token(secret: str, booking_id: str, action: str, *, now_ts: Optional[int] = None) -> Optional[str]:
    """Sign ``booking_id`` + ``action`` for the links in the board email."""
    if not secret:
        return None
    issued_at = now_ts if now_ts is not None else int(time.time())
    expires_at = issued_at + ACTION_LINK_MAX_AGE_SECONDS
    payload = f"v1|{booking_id}|{action}|{expires_at}"
    signature = hmac.new(secret.encode("utf-8"), payload.encode("utf-8"), hashlib.sha256).hexdigest()
    payload_b64 = base64.urlsafe_b64encode(payload.encode("utf-8")).decode("ascii").rstrip("=")
    return f"{payload_b64}.{signature}"


def verify_action_token(secret: str, booking_id: str, action: str, token: str, *, now_ts: Optional[int] = None) -> bool:
    if not secret or not token or "." not in token:
        return False
    payload_b64, provided_signature = token.split(".", 1)
    if not payload_b64 or not provided_signature:
        return False
    try:
        payload = base64.urlsafe_b64decode(payload_b64 + "=" * (-len(payload_b64) % 4)).decode("utf-8")
    except (ValueError, UnicodeDecodeError):
        return False
    expected_signature = hmac.new(secret.encode("utf-8"), payload.encode("utf-8"), hashlib.sha256).hexdigest()
    if not hmac.compare_digest(provided_signature, expected_signature):
        return False
    parts = payload.split("|")
    if len(parts) != 4 or parts[0] != "v1":
        return False
    if parts[1] != booking_id or parts[2] != action:
        return False
    try:
        expires_at = int(parts[3])
    except ValueError:
        return False
    current_ts = now_ts if now_ts is not None else int(time.time())
    return current_ts <= expires_at


def _shift_years(day: date, years: int) -> date:
    try:
        return day.replace(year=day.year + years)
    except ValueError:
        # 29 February in a non-leap target year.
        return day.replace(year=day.year + years, day=28)


def _text(data: Dict[str, Any], key: str) -> str:
    value = data.get(key)
    if value is None:
        return ""
    if not isinstance(value, str):
        return str(value).strip()
    return value.strip()


def _string_list(raw: Any, field: str, errors: Dict[str, str]) -> List[str]:
    if raw in (None, ""):
        return []
    if isinstance(raw, str):
        raw = [raw]
    if not isinstance(raw, list) or not all(isinstance(item, str) for item in raw):
        errors[field] = "Expected a list of strings"
        return []
    result: List[str] = []
    for item in raw:
        value = item.strip()
        if value and value not in result:
            result.append(value)
    return result


def validate_booking_input(data: Dict[str, Any], *, today: date) -> Dict[str, Any]:
    """Return normalized booking fields or raise ``ValidationError`` listing every bad field."""
    if not isinstance(data, dict):
        raise ValidationError({"body": "Expected a JSON object"})
    errors: Dict[str, str] = {}
    cleaned: Dict[str, Any] = {}

    date_value = _text(data, "date")
    if not date_value:
        errors["date"] = "This field is required"
    elif not DATE_RE.match(date_value):
        errors["date"] = "Expected format YYYY-MM-DD"
    else:
        try:
            parsed_date = datetime.strptime(date_value, "%Y-%m-%d").date()
        except ValueError:
            errors["date"] = "Invalid calendar date"
        else:
            earliest = _shift_years(today, -BOOKING_WINDOW_YEARS)
            latest = _shift_years(today, BOOKING_WINDOW_YEARS)
            if not earliest <= parsed_date <= latest:
                errors["date"] = f"Date must be within {BOOKING_WINDOW_YEARS} years of today"
    cleaned["date"] = date_value

    time_value = _text(data, "time")
    if not time_value:
        errors["time"] = "This field is required"
    elif not TIME_RE.match(time_value):
        errors["time"] = "Expected format HH:MM"
    cleaned["time"] = time_value

    name = _text(data, "requesterName")
    if not name:
        errors["requesterName"] = "This field is required"
    elif len(name) > NAME_MAX_LENGTH:
        errors["requesterName"] = f"Must be at most {NAME_MAX_LENGTH} characters"
    cleaned["requester_name"] = name

    email = _text(data, "requesterEmail").lower()
    if not email:
        errors["requesterEmail"] = "This field is required"
    elif len(email) > EMAIL_MAX_LENGTH or not EMAIL_RE.match(email):
        errors["requesterEmail"] = "Invalid email address"
    cleaned["requester_email"] = email

    message = _text(data, "message")
    if len(message) > MESSAGE_MAX_LENGTH:
        errors["message"] = f"Must be at most {MESSAGE_MAX_LENGTH} characters"
    cleaned["message"] = message

    phone = _text(data, "phone")
    if len(phone) > PHONE_MAX_LENGTH:
        errors["phone"] = f"Must be at most {PHONE_MAX_LENGTH} characters"
    cleaned["phone"] = phone or None

    event_type = _text(data, "eventType")
    if len(event_type) > EVENT_TYPE_MAX_LENGTH:
        errors["eventType"] = f"Must be at most {EVENT_TYPE_MAX_LENGTH} characters"
    cleaned["event_type"] = event_type or None

    duration = data.get("duration")
    if duration in (None, ""):
        cleaned["duration"] = None
    elif isinstance(duration, bool) or not isinstance(duration, (int, float)):
        errors["duration"] = "Expected a number of hours"
    elif not 0 < duration <= MAX_DURATION_HOURS:
        errors["duration"] = f"Must be greater than 0 and at most {MAX_DURATION_HOURS}"
    else:
        cleaned["duration"] = duration

    attendees = data.get("attendees")
    if isinstance(attendees, str) and attendees.strip().isdigit():
        attendees = int(attendees.strip())
    if attendees in (None, ""):
        cleaned["attendees"] = None
    elif isinstance(attendees, bool) or not isinstance(attendees, int):
        errors["attendees"] = "Expected a whole number"
    elif not 0 <= attendees <= MAX_ATTENDEES:
        errors["attendees"] = f"Must be between 0 and {MAX_ATTENDEES}"
    else:
        cleaned["attendees"] = attendees

    spaces = _string_list(data.get("spaces"), "spaces", errors)
    unknown = [space for space in spaces if space not in pricing.KNOWN_SPACES]
    if unknown:
        errors["spaces"] = f"Unknown space: {', '.join(unknown)}"
    cleaned["spaces"] = spaces

    services = _string_list(data.get("services"), "services", errors)
    if len(services) > MAX_SERVICES or any(len(item) > SERVICE_MAX_LENGTH for item in services):
        errors["services"] = f"At most {MAX_SERVICES} entries of {SERVICE_MAX_LENGTH} characters"
    cleaned["services"] = services

    if errors:
        raise ValidationError(errors)
    return cleaned


def validate_signature_input(signature_data: Any, signer_name: Any) -> tuple[Any, str]:
    errors: Dict[str, str] = {}
    name = signer_name.strip() if isinstance(signer_name, str) else ""
    if not name:
        errors["signerName"] = "This field is required"
    elif len(name) > NAME_MAX_LENGTH:
        errors["signerName"] = f"Must be at most {NAME_MAX_LENGTH} characters"

    if isinstance(signature_data, str):
        if not signature_data.strip():
            errors["signatureData"] = "This field is required"
        elif len(signature_data) > SIGNATURE_MAX_LENGTH:
            errors["signatureData"] = "Signature is too large"
    elif isinstance(signature_data, dict):
        kind = signature_data.get("type")
        payload = signature_data.get("data")
        if kind not in SIGNATURE_TYPES:
            errors["signatureData"] = "type must be draw or text"
        elif not isinstance(payload, str) or not payload.strip():
            errors["signatureData"] = "data is required"
        elif len(payload) > SIGNATURE_MAX_LENGTH:
            errors["signatureData"] = "Signature is too large"
    else:
        errors["signatureData"] = "This field is required"

    if errors:
        raise ValidationError(errors)
    return signature_data, name


def booking_interval(booking: Booking) -> tuple[datetime, datetime]:
    start = datetime.strptime(f"{booking.date} {booking.time}", "%Y-%m-%d %H:%M")
    hours = booking.duration or DEFAULT_DURATION_HOURS
    return start, start + timedelta(hours=hours)


def intervals_overlap(first: Booking, second: Booking) -> bool:
    first_start, first_end = booking_interval(first)
    second_start, second_end = booking_interval(second)
    return first_start < second_end and second_start < first_end


class BookingLifecycle:
    """Owns booking state transitions and the notifications they trigger."""

    def __init__(
        self,
        store: BookingStore,
        notifier: notifications.NotificationService,
        settings: Settings,
        *,
        clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ) -> None:
        self.store = store
        self.notifier = notifier
        self.settings = settings
        self.clock = clock

    def contract_link(self, booking_id: str) -> str:
        return notifications.contract_url(self.settings.site_url, booking_id)

    def action_link(self, base_url: str, booking_id: str, action: str) -> str:
        link = f"{base_url.rstrip('/')}/api/booking/{action}?id={booking_id}"
        token = generate_action_token(self.settings.link_secret, booking_id, action)
        if token:
            link += f"&token={token}"
        return link

    def verify_action_token(self, booking_id: str, action: str, token: str) -> bool:
        if action not in ADMIN_ACTIONS:
            return False
        return verify_action_token(self.settings.link_secret, booking_id, action, token)

    def get_booking(self, booking_id: str) -> Booking:
        booking = self.store.get(booking_id) if booking_id else None
        if booking is None:
            raise NotFoundError(booking_id)
        return booking

    def list_public(self) -> List[Dict[str, Any]]:
        return [booking.public_view() for booking in sorted(self.store.list(), key=sort_key)]

    def list_admin(self) -> List[Booking]:
        return sorted(self.store.list(), key=sort_key)

    def find_by_payment_order(self, order_id: str) -> Optional[Booking]:
        return self.store.find_by_payment_order(order_id)

    def _find_conflict(self, booking: Booking) -> Optional[Booking]:
        day = datetime.strptime(booking.date, "%Y-%m-%d").date()
        window_start = (day - timedelta(days=1)).isoformat()
        window_end = (day + timedelta(days=1)).isoformat()
        for other in self.store.list(start_date=window_start, end_date=window_end):
            if other.id == booking.id or other.status != Status.APPROVED:
                continue
            if intervals_overlap(booking, other):
                return other
        return None

    def prepare_booking(self, data: Dict[str, Any]) -> Booking:
        """Validate and price a booking request without storing it.

        Raises ``ValidationError`` or ``ConflictError``; callers run this
        before anything with side effects, such as touching a payment.
        """
        fields = validate_booking_input(data, today=self.clock().date())
        booking = Booking(**fields)
        if booking.spaces:
            booking.payment_amount = pricing.calculate_amount(booking.spaces, booking.attendees)
        booking.status = Status.PENDING

        conflict = self._find_conflict(booking)
        if conflict is not None:
            logger.info("BOOKING_CONFLICT date=%s time=%s conflictId=%s", booking.date, booking.time, conflict.id)
            raise ConflictError(conflict.id)
        return booking

    def create_booking(
        self,
        data: Dict[str, Any],
        *,
        base_url: str = "",
        payment_order_id: Optional[str] = None,
        announce: bool = True,
    ) -> Booking:
        """Validate, persist and announce a new booking request.

        ``payment_order_id`` attaches an already initiated Vipps order; the
        booking stays pending and unpaid until ``mark_paid`` settles it.
        Pass ``announce=False`` to send the board and receipt emails later
        with ``announce_booking``.
        """
        booking = self.prepare_booking(data)
        if payment_order_id:
            booking.payment_order_id = payment_order_id

        booking = self.store.save(booking)
        logger.info(
            "BOOKING_CREATED bookingId=%s status=%s orderId=%s amount=%s requester=%s",
            booking.id,
            booking.status.value,
            booking.payment_order_id,
            booking.payment_amount,
            mask_email(booking.requester_email),
        )
        if announce:
            self.announce_booking(booking, base_url=base_url)
        return booking

    def announce_booking(self, booking: Booking, *, base_url: str = "") -> None:
        links_base = self.settings.public_base_url or base_url
        if self.notifier.board_email:
            self.notifier.deliver(
                notifications.build_board_request(
                    booking,
                    self.notifier.board_email,
                    self.action_link(links_base, booking.id, "approve"),
                    self.action_link(links_base, booking.id, "reject"),
                ),
                event="booking.board_request",
            )
        else:
            logger.warning("BOARD_EMAIL_MISSING bookingId=%s", booking.id)
        self.notifier.deliver(notifications.build_receipt(booking), event="booking.receipt")

    def approve(self, booking_id: str) -> TransitionResult:
        booking = self.get_booking(booking_id)
        if booking.status == Status.APPROVED:
            return TransitionResult(booking, False)
        if not can_transition(booking.status, Status.APPROVED):
            raise InvalidTransitionError(booking_id, booking.status.value, Status.APPROVED.value)

        conflict = self._find_conflict(booking)
        if conflict is not None:
            raise ConflictError(conflict.id)

        updated = self.store.update_status(
            booking_id, booking.partition_key, Status.APPROVED, expected=transition_sources(Status.APPROVED)
        )
        if updated is None:
            current = self.get_booking(booking_id)
            if current.status == Status.APPROVED:
                return TransitionResult(current, False)
            raise InvalidTransitionError(booking_id, current.status.value, Status.APPROVED.value)

        logger.info("BOOKING_APPROVED bookingId=%s", booking_id)
        self.notifier.deliver(
            notifications.build_approval(updated, self.contract_link(booking_id)),
            event="booking.approved",
        )
        return TransitionResult(updated, True)

    def reject(self, booking_id: str, reason: Optional[str] = None) -> TransitionResult:
        booking = self.get_booking(booking_id)
        if booking.status == Status.REJECTED:
            return TransitionResult(booking, False)

        clean_reason = (reason or "").strip()[:REASON_MAX_LENGTH] or None
        updated = self.store.update_status(
            booking_id,
            booking.partition_key,
            Status.REJECTED,
            expected=transition_sources(Status.REJECTED),
        )
        if updated is None:
            current = self.get_booking(booking_id)
            return TransitionResult(current, False)

        if updated.is_paid:
            logger.warning("REJECTED_PAID_BOOKING bookingId=%s orderId=%s", booking_id, updated.payment_order_id)
        logger.info("BOOKING_REJECTED bookingId=%s previous=%s", booking_id, booking.status.value)
        self.notifier.deliver(notifications.build_rejection(updated, clean_reason), event="booking.rejected")
        return TransitionResult(updated, True)

    def record_signature(
        self,
        booking_id: str,
        role: Any,
        signature_data: Any,
        signer_name: Any,
        metadata: Optional[Dict[str, str]] = None,
    ) -> SignatureResult:
        try:
            signer_role = Role(role)
        except ValueError:
            raise ValidationError({"role": "Must be requester or landlord"}) from None
        signature_data, name = validate_signature_input(signature_data, signer_name)

        booking = self.get_booking(booking_id)
        if booking.status == Status.REJECTED:
            raise InvalidTransitionError(booking_id, booking.status.value, "signed")

        meta = metadata or {}
        signature = Signature(
            signed_at=utc_now_iso(),
            signature_data=signature_data,
            signer_name=name,
            ip_address=meta.get("ip_address") or "Unknown",
            user_agent=meta.get("user_agent") or "Unknown",
        )
        updated = self.store.add_signature(booking_id, booking.partition_key, signer_role, signature)
        if updated is None:
            raise NotFoundError(booking_id)
        logger.info("CONTRACT_SIGNED bookingId=%s role=%s", booking_id, signer_role.value)

        both_signed = updated.both_signed
        payment_required = both_signed and not updated.is_paid
        if payment_required:
            claimed = self.store.claim_notification(booking_id, updated.partition_key, PAYMENT_REQUEST_NOTIFICATION)
            if claimed is not None:
                delivered = self.notifier.deliver(
                    notifications.build_payment_request(claimed, self.contract_link(booking_id)),
                    event="booking.payment_request",
                )
                if delivered:
                    updated = claimed
                else:
                    self.store.release_notification(booking_id, updated.partition_key, PAYMENT_REQUEST_NOTIFICATION)
        return SignatureResult(updated, both_signed, payment_required)

    def check_payment(self, booking: Booking, payment_order_id: str, paid_amount: Optional[int]) -> None:
        """Raise ``PaymentMismatchError`` unless the order can settle ``booking``.

        The order must be the one attached to the booking and its amount
        (øre) must cover the stored ``payment_amount``.
        """
        if not payment_order_id or booking.payment_order_id != payment_order_id:
            logger.warning(
                "PAYMENT_ORDER_MISMATCH bookingId=%s orderId=%s attached=%s",
                booking.id,
                payment_order_id,
                booking.payment_order_id,
            )
            raise PaymentMismatchError(booking.id, payment_order_id, "Payment order does not belong to this booking")
        if booking.payment_amount and (paid_amount or 0) < booking.payment_amount:
            logger.warning(
                "PAYMENT_AMOUNT_SHORT bookingId=%s orderId=%s paid=%s expected=%s",
                booking.id,
                payment_order_id,
                paid_amount,
                booking.payment_amount,
            )
            raise PaymentMismatchError(booking.id, payment_order_id, "Paid amount does not cover the booking price")

    def mark_paid(
        self,
        booking_id: str,
        payment_order_id: str,
        paid_amount: Optional[int],
        *,
        notify: bool = True,
    ) -> TransitionResult:
        booking = self.get_booking(booking_id)
        if booking.is_paid:
            return TransitionResult(booking, False)
        self.check_payment(booking, payment_order_id, paid_amount)

        updated = self.store.mark_paid(booking_id, booking.partition_key, payment_order_id, utc_now_iso())
        if updated is None:
            return TransitionResult(self.get_booking(booking_id), False)
        logger.info("BOOKING_PAID bookingId=%s orderId=%s", booking_id, payment_order_id)

        auto_approved = False
        if updated.status == Status.PENDING:
            conflict = self._find_conflict(updated)
            if conflict is not None:
                logger.warning("PAID_BOOKING_CONFLICT bookingId=%s conflictId=%s", booking_id, conflict.id)
            else:
                approved = self.store.update_status(
                    booking_id, updated.partition_key, Status.APPROVED, expected=transition_sources(Status.APPROVED)
                )
                if approved is not None:
                    updated = approved
                    auto_approved = True
                    logger.info("BOOKING_APPROVED bookingId=%s reason=payment", booking_id)
        elif updated.status == Status.REJECTED:
            logger.warning("PAYMENT_ON_REJECTED_BOOKING bookingId=%s orderId=%s", booking_id, payment_order_id)

        if notify:
            self.notifier.deliver(
                notifications.build_payment_confirmation(
                    updated, self.contract_link(booking_id) if auto_approved else None
                ),
                event="booking.payment_confirmed",
            )
        return TransitionResult(updated, True)

    def attach_payment_order(self, booking_id: str, order_id: str) -> TransitionResult:
        booking = self.get_booking(booking_id)
        updated = self.store.set_payment_order(booking_id, booking.partition_key, order_id)
        if updated is None:
            return TransitionResult(self.get_booking(booking_id), False)
        logger.info("PAYMENT_ORDER_ATTACHED bookingId=%s orderId=%s", booking_id, order_id)
        return TransitionResult(updated, True)

    def send_reminder(self, booking_id: str, comment: Optional[str] = None) -> Booking:
        """Email the requester a reminder.  Raises ``DeliveryError`` when the send fails."""
        booking = self.get_booking(booking_id)
        clean_comment = (comment or "").strip()[:COMMENT_MAX_LENGTH] or None
        self.notifier.send(
            notifications.build_reminder(booking, self.contract_link(booking_id), clean_comment),
            event="booking.reminder",
        )
        logger.info("REMINDER_SENT bookingId=%s requester=%s", booking_id, mask_email(booking.requester_email))
        return booking
