"""
Booking document model for the Bjørkvang hall booking service.

A booking is persisted as a camelCase JSON document so the storage layer
can stay schema-light.  This module owns the conversion between that
document and the typed ``Booking`` dataclass used by the lifecycle code.

Enumerations:

- ``Status``: ``pending``, ``approved`` or ``rejected``.
- ``Role``: ``requester`` or ``landlord``, the two contract signers.
- ``PaymentStatus``: ``unpaid`` or ``paid``.

The partition key is the booking month (``YYYY-MM``).  It is derived from
``date`` and stored on the record so that point reads can be routed
without a scan.
"""

from __future__ import annotations

import copy
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional


class Status(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"


class Role(str, Enum):
    REQUESTER = "requester"
    LANDLORD = "landlord"


class PaymentStatus(str, Enum):
    UNPAID = "unpaid"
    PAID = "paid"


# Allowed status moves.  A rejected booking is terminal.
STATUS_TRANSITIONS = {
    Status.PENDING: {Status.APPROVED, Status.REJECTED},
    Status.APPROVED: {Status.REJECTED},
    Status.REJECTED: set(),
}


def can_transition(current: Status, target: Status) -> bool:
    return target in STATUS_TRANSITIONS[current]


def transition_sources(target: Status) -> list[Status]:
    """Statuses a booking may be in before it moves to ``target``."""
    return [status for status, targets in STATUS_TRANSITIONS.items() if target in targets]


PAYMENT_REQUEST_NOTIFICATION = "paymentRequest"


def utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def new_booking_id() -> str:
    return uuid.uuid4().hex


def partition_key_for(date_str: Optional[str]) -> str:
    if date_str and len(date_str) >= 7:
        return date_str[:7]
    return datetime.now(timezone.utc).strftime("%Y-%m")


@dataclass
class Signature:
    signed_at: str
    signature_data: Any
    signer_name: str
    ip_address: str = "Unknown"
    user_agent: str = "Unknown"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "signedAt": self.signed_at,
            "signatureData": copy.deepcopy(self.signature_data),
            "signerName": self.signer_name,
            "ipAddress": self.ip_address,
            "userAgent": self.user_agent,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Signature":
        return cls(
            signed_at=data.get("signedAt") or "",
            signature_data=copy.deepcopy(data.get("signatureData")),
            signer_name=data.get("signerName") or "",
            ip_address=data.get("ipAddress") or "Unknown",
            user_agent=data.get("userAgent") or "Unknown",
        )


@dataclass
class Booking:
    date: str
    time: str
    requester_name: str
    requester_email: str
    id: str = field(default_factory=new_booking_id)
    duration: Optional[float] = None
    phone: Optional[str] = None
    event_type: Optional[str] = None
    spaces: List[str] = field(default_factory=list)
    services: List[str] = field(default_factory=list)
    attendees: Optional[int] = None
    message: str = ""
    status: Status = Status.PENDING
    payment_order_id: Optional[str] = None
    payment_status: PaymentStatus = PaymentStatus.UNPAID
    payment_amount: Optional[int] = None
    paid_at: Optional[str] = None
    contract: Dict[Role, Signature] = field(default_factory=dict)
    notifications: Dict[str, str] = field(default_factory=dict)
    created_at: str = ""
    updated_at: str = ""

    @property
    def partition_key(self) -> str:
        return partition_key_for(self.date)

    @property
    def both_signed(self) -> bool:
        return Role.REQUESTER in self.contract and Role.LANDLORD in self.contract

    @property
    def is_paid(self) -> bool:
        return self.payment_status == PaymentStatus.PAID

    def to_dict(self) -> Dict[str, Any]:
        """Serialize to the stored/public camelCase document."""
        return {
            "id": self.id,
            "date": self.date,
            "time": self.time,
            "duration": self.duration,
            "requesterName": self.requester_name,
            "requesterEmail": self.requester_email,
            "phone": self.phone,
            "eventType": self.event_type,
            "spaces": list(self.spaces),
            "services": list(self.services),
            "attendees": self.attendees,
            "message": self.message,
            "status": self.status.value,
            "paymentOrderId": self.payment_order_id,
            "paymentStatus": self.payment_status.value,
            "paymentAmount": self.payment_amount,
            "paidAt": self.paid_at,
            "contract": {role.value: sig.to_dict() for role, sig in self.contract.items()},
            "notifications": dict(self.notifications),
            "createdAt": self.created_at,
            "updatedAt": self.updated_at,
            "partitionKey": self.partition_key,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Booking":
        contract_raw = data.get("contract") or {}
        contract: Dict[Role, Signature] = {}
        for role in Role:
            block = contract_raw.get(role.value)
            if isinstance(block, dict):
                contract[role] = Signature.from_dict(block)
        return cls(
            id=data["id"],
            date=data.get("date") or "",
            time=data.get("time") or "",
            duration=data.get("duration"),
            requester_name=data.get("requesterName") or "",
            requester_email=data.get("requesterEmail") or "",
            phone=data.get("phone"),
            event_type=data.get("eventType"),
            spaces=list(data.get("spaces") or []),
            services=list(data.get("services") or []),
            attendees=data.get("attendees"),
            message=data.get("message") or "",
            status=Status(data.get("status") or Status.PENDING.value),
            payment_order_id=data.get("paymentOrderId"),
            payment_status=PaymentStatus(data.get("paymentStatus") or PaymentStatus.UNPAID.value),
            payment_amount=data.get("paymentAmount"),
            paid_at=data.get("paidAt"),
            contract=contract,
            notifications=dict(data.get("notifications") or {}),
            created_at=data.get("createdAt") or "",
            updated_at=data.get("updatedAt") or "",
        )

    def public_view(self) -> Dict[str, Any]:
        """Calendar entry without any requester details."""
        status = "booked" if self.status == Status.APPROVED else self.status.value
        return {
            "id": self.id,
            "date": self.date,
            "time": self.time,
            "duration": self.duration,
            "status": status,
        }


def sort_key(booking: Booking) -> tuple[str, str]:
    return (booking.date or "", booking.time or "")
