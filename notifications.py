"""Email notifications for booking lifecycle events.

``NotificationService`` wraps a pluggable ``EmailProvider`` with the retry
policy (three attempts, 0.5 s and 1.0 s backoff, retryable failures only).
Callers on the lifecycle path use ``deliver`` so that a failed email never
rolls back a state change; ``send`` raises ``DeliveryError`` for callers
that must report the failure (the reminder endpoint).

The ``build_*`` functions render the Norwegian email bodies.  Every
user-supplied value is HTML-escaped before it is placed in the shared
layout.
"""

from __future__ import annotations

import html
import logging
import time
from typing import Callable, Optional, Sequence

from config.runtime import Settings
from email_provider import EmailMessage, EmailProvider, LogEmailProvider, PlunkEmailProvider, mask_email, short_error
from errors import DeliveryError
from models import Booking

logger = logging.getLogger(__name__)

SITE_NAME = "Bjørkvang"
BRAND_COLOR = "#1a823b"
DANGER_COLOR = "#b3261e"
NO_MESSAGE = "Ingen melding oppgitt."


class NotificationService:
    """Sends email through one provider and retries transient failures."""

    def __init__(
        self,
        provider: EmailProvider,
        *,
        board_email: str = "",
        max_attempts: int = 3,
        retry_backoff_seconds: Sequence[float] = (0.5, 1.0),
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.provider = provider
        self.board_email = board_email
        self.max_attempts = max_attempts
        self.retry_backoff_seconds = tuple(retry_backoff_seconds)
        self.sleep = sleep

    def send(self, message: EmailMessage, *, event: str = "email") -> Optional[str]:
        """Send ``message``, retrying retryable failures.  Raises ``DeliveryError``."""
        for attempt in range(1, self.max_attempts + 1):
            try:
                return self.provider.send(message)
            except DeliveryError as exc:
                if exc.retryable and attempt < self.max_attempts:
                    logger.warning(
                        "EMAIL_RETRY event=%s attempt=%s to=%s status=%s error=%s",
                        event,
                        attempt,
                        mask_email(message.to),
                        exc.provider_status,
                        short_error(exc.message),
                    )
                    self.sleep(self.retry_backoff_seconds[min(attempt - 1, len(self.retry_backoff_seconds) - 1)])
                    continue
                logger.error(
                    "EMAIL_FAIL event=%s attempt=%s to=%s status=%s error=%s",
                    event,
                    attempt,
                    mask_email(message.to),
                    exc.provider_status,
                    short_error(exc.message),
                )
                raise
        raise DeliveryError("Email delivery attempts exhausted", retryable=False)

    def deliver(self, message: EmailMessage, *, event: str = "email") -> bool:
        """Best-effort send; logs and returns ``False`` on failure."""
        try:
            self.send(message, event=event)
        except DeliveryError:
            return False
        return True


def create_notification_service(settings: Settings) -> NotificationService:
    if settings.email_configured:
        provider: EmailProvider = PlunkEmailProvider(
            api_token=settings.plunk_api_token,
            from_address=settings.from_address,
            api_url=settings.plunk_api_url,
        )
    else:
        logger.warning("EMAIL_DISABLED reason=PLUNK_API_TOKEN or DEFAULT_FROM_ADDRESS not set provider=log")
        provider = LogEmailProvider()
    return NotificationService(provider, board_email=settings.board_email)


def escape(value: object) -> str:
    return html.escape("" if value is None else str(value), quote=True)


def format_nok(amount_minor_units: Optional[int]) -> str:
    kroner = (amount_minor_units or 0) // 100
    return f"{kroner:,}".replace(",", " ") + " kr"


def contract_url(site_url: str, booking_id: str) -> str:
    return f"{site_url.rstrip('/')}/leieavtale?id={booking_id}"


def _button(text: str, url: str, color: str = BRAND_COLOR) -> str:
    return (
        f'<a href="{escape(url)}" style="display:inline-block;padding:12px 24px;margin:8px 12px 8px 0;'
        f'background:{color};color:#ffffff;text-decoration:none;border-radius:6px;font-weight:bold;">'
        f"{escape(text)}</a>"
    )


def render_layout(title: str, content_html: str, *, actions: Sequence[str] = (), preview: str = "") -> str:
    """Wrap already-escaped ``content_html`` in the shared email layout."""
    buttons = f'<p style="margin:24px 0;">{"".join(actions)}</p>' if actions else ""
    return f"""<!DOCTYPE html>
<html lang="no">
<head>
<meta charset="UTF-8">
<meta name="viewport" content="width=device-width, initial-scale=1.0">
<title>{escape(title)}</title>
</head>
<body style="margin:0;padding:0;background:#f3f4f6;color:#1f2937;font-family:Helvetica,Arial,sans-serif;line-height:1.6;">
<div style="display:none;max-height:0;overflow:hidden;">{escape(preview or title)}</div>
<div style="padding:24px 12px;">
<div style="max-width:600px;margin:0 auto;background:#ffffff;border-radius:8px;overflow:hidden;">
<div style="background:{BRAND_COLOR};padding:24px;text-align:center;">
<h1 style="margin:0;color:#ffffff;font-size:24px;">{SITE_NAME}</h1>
</div>
<div style="padding:32px 24px;">
<h2 style="margin-top:0;font-size:20px;">{escape(title)}</h2>
{content_html}
{buttons}
</div>
<div style="background:#f9fafb;padding:24px;text-align:center;font-size:14px;color:#6b7280;">
<p>Dette er en automatisk melding fra {SITE_NAME}.</p>
</div>
</div>
</div>
</body>
</html>"""


def _summary_rows(booking: Booking, *, include_contact: bool) -> list[tuple[str, str]]:
    rows = [("Dato", booking.date), ("Tid", booking.time)]
    if booking.duration:
        rows.append(("Varighet", f"{booking.duration:g} timer"))
    if booking.spaces:
        rows.append(("Lokaler", ", ".join(booking.spaces)))
    if booking.event_type:
        rows.append(("Arrangement", booking.event_type))
    if booking.attendees:
        rows.append(("Antall gjester", str(booking.attendees)))
    if include_contact:
        rows.append(("Navn", booking.requester_name))
        rows.append(("E-post", booking.requester_email))
        if booking.phone:
            rows.append(("Telefon", booking.phone))
    if booking.payment_amount:
        rows.append(("Pris", format_nok(booking.payment_amount)))
    rows.append(("Melding", booking.message or NO_MESSAGE))
    return rows


def _summary_html(rows: Sequence[tuple[str, str]]) -> str:
    items = "".join(f"<li><strong>{escape(label)}:</strong> {escape(value)}</li>" for label, value in rows)
    return f'<ul style="padding-left:18px;">{items}</ul>'


def _summary_text(rows: Sequence[tuple[str, str]]) -> str:
    return "\n".join(f"- {label}: {value}" for label, value in rows)


def build_board_request(booking: Booking, to: str, approve_url: str, reject_url: str) -> EmailMessage:
    rows = _summary_rows(booking, include_contact=True)
    paid_note = "Bookingen er allerede betalt med Vipps og er automatisk godkjent." if booking.is_paid else ""
    content = (
        "<p>Hei styret,</p>"
        "<p>Det har kommet en ny bookingforespørsel:</p>"
        f"{_summary_html(rows)}"
        + (f"<p>{escape(paid_note)}</p>" if paid_note else "<p>Bruk knappene under for å godkjenne eller avvise.</p>")
    )
    actions = [] if booking.is_paid else [_button("Godkjenn booking", approve_url), _button("Avvis booking", reject_url, DANGER_COLOR)]
    text = f"Ny bookingforespørsel:\n{_summary_text(rows)}\n"
    if paid_note:
        text += f"\n{paid_note}\n"
    else:
        text += f"\nGodkjenn: {approve_url}\nAvvis: {reject_url}\n"
    return EmailMessage(
        to=to,
        subject=f"Ny bookingforespørsel {booking.date}",
        text=text,
        html=render_layout("Ny bookingforespørsel", content, actions=actions),
        reply_to=booking.requester_email or None,
    )


def build_receipt(booking: Booking) -> EmailMessage:
    rows = _summary_rows(booking, include_contact=False)
    if booking.is_paid:
        closing = "Betalingen er mottatt og bookingen er bekreftet."
    else:
        closing = "Styret vil se gjennom forespørselen og ta kontakt med deg så snart som mulig."
    content = (
        f"<p>Hei {escape(booking.requester_name)},</p>"
        f"<p>Takk for din forespørsel om å booke {SITE_NAME}.</p>"
        f"{_summary_html(rows)}"
        f"<p>{escape(closing)}</p>"
    )
    text = (
        f"Hei {booking.requester_name},\n\nTakk for din forespørsel om å booke {SITE_NAME}.\n\n"
        f"{_summary_text(rows)}\n\n{closing}\n\nVennlig hilsen\n{SITE_NAME}"
    )
    return EmailMessage(
        to=booking.requester_email,
        subject="Vi har mottatt bookingforespørselen din",
        text=text,
        html=render_layout("Forespørsel mottatt", content),
    )


def build_approval(booking: Booking, contract_link: str) -> EmailMessage:
    content = (
        f"<p>Hei {escape(booking.requester_name)}!</p>"
        f"<p>Bookingen for {escape(booking.date)} kl. {escape(booking.time)} er nå godkjent.</p>"
        "<p>Neste steg er å lese og signere leieavtalen.</p>"
    )
    text = (
        f"Hei {booking.requester_name}!\n\nBookingen for {booking.date} kl. {booking.time} er godkjent.\n"
        f"Signer leieavtalen her: {contract_link}\n\nVennlig hilsen\n{SITE_NAME}"
    )
    return EmailMessage(
        to=booking.requester_email,
        subject="Din booking er godkjent",
        text=text,
        html=render_layout("Booking godkjent", content, actions=[_button("Gå til leieavtale", contract_link)]),
    )


def build_rejection(booking: Booking, reason: Optional[str]) -> EmailMessage:
    content = (
        f"<p>Hei {escape(booking.requester_name)},</p>"
        f"<p>Bookingforespørselen for {escape(booking.date)} kl. {escape(booking.time)} ble dessverre avvist.</p>"
    )
    text = f"Hei {booking.requester_name},\n\nBookingforespørselen for {booking.date} kl. {booking.time} ble dessverre avvist.\n"
    if reason:
        content += f'<blockquote style="border-left:4px solid {DANGER_COLOR};padding-left:12px;">{escape(reason)}</blockquote>'
        text += f"\nBegrunnelse: {reason}\n"
    content += "<p>Ta gjerne kontakt hvis du har spørsmål.</p>"
    text += f"\nVennlig hilsen\n{SITE_NAME}"
    return EmailMessage(
        to=booking.requester_email,
        subject="Bookingforespørselen din er avvist",
        text=text,
        html=render_layout("Booking avvist", content),
    )


def build_payment_request(booking: Booking, contract_link: str) -> EmailMessage:
    amount = format_nok(booking.payment_amount)
    content = (
        f"<p>Hei {escape(booking.requester_name)},</p>"
        "<p>Leieavtalen er nå signert av begge parter.</p>"
        f"<p>Beløp å betale: <strong>{escape(amount)}</strong>. Betal med Vipps fra leieavtalen.</p>"
    )
    text = (
        f"Hei {booking.requester_name},\n\nLeieavtalen er signert av begge parter.\n"
        f"Beløp å betale: {amount}\nBetal her: {contract_link}\n\nVennlig hilsen\n{SITE_NAME}"
    )
    return EmailMessage(
        to=booking.requester_email,
        subject=f"Betaling for booking {booking.date}",
        text=text,
        html=render_layout("Klar for betaling", content, actions=[_button("Betal med Vipps", contract_link)]),
    )


def build_payment_confirmation(booking: Booking, contract_link: Optional[str] = None) -> EmailMessage:
    amount = format_nok(booking.payment_amount)
    content = (
        f"<p>Hei {escape(booking.requester_name)},</p>"
        f"<p>Vi har mottatt betaling på {escape(amount)} for bookingen {escape(booking.date)} kl. {escape(booking.time)}.</p>"
    )
    text = (
        f"Hei {booking.requester_name},\n\nVi har mottatt betaling på {amount} for bookingen "
        f"{booking.date} kl. {booking.time}.\n"
    )
    actions = []
    if contract_link:
        content += "<p>Bookingen er godkjent. Husk å signere leieavtalen.</p>"
        text += f"Bookingen er godkjent. Signer leieavtalen her: {contract_link}\n"
        actions.append(_button("Gå til leieavtale", contract_link))
    text += f"\nVennlig hilsen\n{SITE_NAME}"
    return EmailMessage(
        to=booking.requester_email,
        subject="Betaling mottatt",
        text=text,
        html=render_layout("Betaling mottatt", content, actions=actions),
    )


def build_reminder(booking: Booking, contract_link: str, comment: Optional[str]) -> EmailMessage:
    name = booking.requester_name or "Kunde"
    content = (
        f"<p>Hei {escape(name)},</p>"
        f"<p>Dette er en påminnelse om bookingen din på {SITE_NAME} forsamlingslokale ({escape(booking.date)}).</p>"
    )
    text = f"Hei {name},\n\nDette er en påminnelse om bookingen din på {SITE_NAME} ({booking.date}).\n"
    if comment:
        content += f'<blockquote style="border-left:4px solid #3b82f6;padding-left:12px;font-style:italic;">{escape(comment)}</blockquote>'
        text += f"\n\"{comment}\"\n"
    content += "<p>Sjekk status på bookingen og signer leieavtalen hvis du ikke allerede har gjort det.</p>"
    text += f"\nLeieavtale: {contract_link}\n\nVennlig hilsen\n{SITE_NAME}"
    return EmailMessage(
        to=booking.requester_email,
        subject=f"Påminnelse: Booking {booking.date}",
        text=text,
        html=render_layout(
            "Påminnelse om booking",
            content,
            actions=[_button("Gå til leieavtale", contract_link)],
            preview=f"Påminnelse om bookingen din {booking.date}.",
        ),
    )
