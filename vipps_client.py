from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass
from typing import Any, Dict, Optional

import requests

from config.runtime import Settings
from errors import PaymentError

logger = logging.getLogger(__name__)

STATE_CREATED = "CREATED"
STATE_AUTHORIZED = "AUTHORIZED"
STATE_CAPTURED = "CAPTURED"

TOKEN_EXPIRY_MARGIN_SECONDS = 60


@dataclass
class VippsConfig:
    base_url: str
    client_id: str = ""
    client_secret: str = ""
    subscription_key: str = ""
    merchant_serial_number: str = ""
    system_name: str = "bjorkvang-booking"
    timeout_seconds: int = 10
    mock: bool = True


def config_from_settings(settings: Settings) -> Optional[VippsConfig]:
    """Return the client config, or ``None`` when payments are disabled."""
    if settings.vipps_mode == "disabled":
        return None
    return VippsConfig(
        base_url=settings.vipps_base_url,
        client_id=settings.vipps_client_id,
        client_secret=settings.vipps_client_secret,
        subscription_key=settings.vipps_subscription_key,
        merchant_serial_number=settings.vipps_merchant_serial_number,
        system_name=settings.service_name,
        mock=settings.vipps_mode == "mock",
    )


class VippsClient:
    """Vipps MobilePay ePayment client.

    In mock mode no network calls are made: ``initiate`` returns a local
    redirect URL and every order reports ``AUTHORIZED`` until it is
    captured, so the capture path runs end to end in development.
    """

    def __init__(self, cfg: VippsConfig):
        self.cfg = cfg
        self._token: Optional[str] = None
        self._token_expires_at = 0.0
        self._token_lock = threading.Lock()
        self._mock_orders: Dict[str, Dict[str, Any]] = {}
        self._mock_lock = threading.Lock()

    def _url(self, path: str) -> str:
        return f"{self.cfg.base_url.rstrip('/')}{path}"

    def _base_headers(self) -> Dict[str, str]:
        return {
            "Ocp-Apim-Subscription-Key": self.cfg.subscription_key,
            "Merchant-Serial-Number": self.cfg.merchant_serial_number,
            "Vipps-System-Name": self.cfg.system_name,
        }

    def access_token(self) -> str:
        with self._token_lock:
            if self._token and time.monotonic() < self._token_expires_at:
                return self._token
            headers = {
                "client_id": self.cfg.client_id,
                "client_secret": self.cfg.client_secret,
                **self._base_headers(),
            }
            try:
                response = requests.post(self._url("/accesstoken/get"), headers=headers, timeout=self.cfg.timeout_seconds)
            except requests.RequestException as exc:
                raise PaymentError(f"Vipps access token request failed: {exc}") from exc
            if int(response.status_code or 0) >= 300:
                raise PaymentError(
                    f"Vipps access token failed: {response.status_code} {response.text[:200]}",
                    provider_status=response.status_code,
                )
            payload = response.json() if response.text else {}
            token = payload.get("access_token")
            if not token:
                raise PaymentError("Vipps access token missing in response", provider_status=response.status_code)
            try:
                expires_in = int(payload.get("expires_in") or 3600)
            except (TypeError, ValueError):
                expires_in = 3600
            self._token = token
            self._token_expires_at = time.monotonic() + max(expires_in - TOKEN_EXPIRY_MARGIN_SECONDS, 0)
            return token

    def _request(self, method: str, path: str, *, action: str, json_body: Optional[dict] = None,
                 idempotency_key: Optional[str] = None) -> Dict[str, Any]:
        headers = {
            "Authorization": f"Bearer {self.access_token()}",
            "Content-Type": "application/json",
            **self._base_headers(),
        }
        if idempotency_key:
            headers["Idempotency-Key"] = idempotency_key
        try:
            response = requests.request(
                method,
                self._url(path),
                json=json_body,
                headers=headers,
                timeout=self.cfg.timeout_seconds,
            )
        except requests.RequestException as exc:
            raise PaymentError(f"Vipps {action} request failed: {exc}") from exc
        if int(response.status_code or 0) >= 300:
            raise PaymentError(
                f"Vipps {action} failed: {response.status_code} {response.text[:200]}",
                provider_status=response.status_code,
            )
        return response.json() if response.text else {}

    def initiate(
        self,
        amount_minor_units: int,
        return_url: str,
        order_id: str,
        description: str,
        phone_number: Optional[str] = None,
    ) -> Dict[str, Any]:
        """Create a payment and return ``{"redirectUrl", "orderId"}``."""
        if int(amount_minor_units) <= 0:
            raise PaymentError("Payment amount must be positive")
        if self.cfg.mock:
            with self._mock_lock:
                self._mock_orders[order_id] = {"state": STATE_AUTHORIZED, "amount": int(amount_minor_units)}
            logger.info("VIPPS_MOCK_INITIATE orderId=%s amount=%s", order_id, amount_minor_units)
            separator = "&" if "?" in return_url else "?"
            return {"redirectUrl": f"{return_url}{separator}mock=1", "orderId": order_id}

        body: Dict[str, Any] = {
            "amount": {"value": int(amount_minor_units), "currency": "NOK"},
            "paymentMethod": {"type": "WALLET"},
            "reference": order_id,
            "returnUrl": return_url,
            "userFlow": "WEB_REDIRECT",
            "paymentDescription": description[:100],
        }
        if phone_number:
            body["customer"] = {"phoneNumber": normalize_phone(phone_number)}
        payload = self._request("POST", "/epayment/v1/payments", action="initiate", json_body=body,
                                idempotency_key=order_id)
        redirect_url = payload.get("redirectUrl")
        if not redirect_url:
            raise PaymentError("Vipps initiate response missing redirectUrl")
        logger.info("VIPPS_INITIATE orderId=%s amount=%s", order_id, amount_minor_units)
        return {"redirectUrl": redirect_url, "orderId": payload.get("reference") or order_id}

    def get_status(self, order_id: str) -> Dict[str, Any]:
        if self.cfg.mock:
            with self._mock_lock:
                order = self._mock_orders.get(order_id)
                if order is None:
                    # Unknown mock orders behave like authorized ones so that
                    # a restarted dev server can still finish a flow.
                    order = self._mock_orders.setdefault(order_id, {"state": STATE_AUTHORIZED, "amount": 0})
                return {"orderId": order_id, "state": order["state"], "amount": order["amount"]}

        payload = self._request("GET", f"/epayment/v1/payments/{order_id}", action="status")
        state = str(payload.get("state") or STATE_CREATED).upper()
        amount = (payload.get("amount") or {}).get("value")
        aggregate = payload.get("aggregate") or {}
        captured = (aggregate.get("capturedAmount") or {}).get("value") or 0
        if state == STATE_AUTHORIZED and amount and captured >= amount:
            state = STATE_CAPTURED
        return {"orderId": order_id, "state": state, "amount": amount, "raw": payload}

    def capture(self, order_id: str, amount_minor_units: int) -> Dict[str, Any]:
        if self.cfg.mock:
            with self._mock_lock:
                order = self._mock_orders.setdefault(order_id, {"state": STATE_AUTHORIZED, "amount": 0})
                order["state"] = STATE_CAPTURED
            logger.info("VIPPS_MOCK_CAPTURE orderId=%s amount=%s", order_id, amount_minor_units)
            return {"orderId": order_id, "state": STATE_CAPTURED}

        body = {"modificationAmount": {"value": int(amount_minor_units), "currency": "NOK"}}
        payload = self._request("POST", f"/epayment/v1/payments/{order_id}/capture", action="capture",
                                json_body=body, idempotency_key=f"capture-{order_id}")
        logger.info("VIPPS_CAPTURE orderId=%s amount=%s", order_id, amount_minor_units)
        return {"orderId": order_id, "state": STATE_CAPTURED, "raw": payload}

    def check_status(self, order_id: str, details: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        """Return ``{"state", "details"}``, capturing authorized payments.

        ``details`` is a ``get_status`` result the caller already holds.  A
        failed capture is logged and the order is reported as ``AUTHORIZED``
        so the caller can poll again.
        """
        if details is None:
            details = self.get_status(order_id)
        state = details["state"]
        if state == STATE_AUTHORIZED:
            try:
                self.capture(order_id, int(details.get("amount") or 0))
                state = STATE_CAPTURED
            except PaymentError as exc:
                logger.error("VIPPS_CAPTURE_FAIL orderId=%s status=%s error=%s", order_id, exc.provider_status, exc.message)
        return {"state": state, "details": details}


def normalize_phone(raw_value: str) -> str:
    """Return a Norwegian MSISDN (``47XXXXXXXX``) for the customer block."""
    digits = "".join(ch for ch in (raw_value or "") if ch.isdigit())
    if digits.startswith("0047"):
        digits = digits[2:]
    if len(digits) == 8:
        digits = f"47{digits}"
    return digits


def create_vipps_client(settings: Settings) -> Optional[VippsClient]:
    cfg = config_from_settings(settings)
    if cfg is None:
        logger.info("VIPPS_DISABLED mode=%s", settings.vipps_mode)
        return None
    return VippsClient(cfg)
