"""
Storage layer for Bjørkvang bookings.

Bookings are stored as JSON documents keyed by ``id`` and partitioned by
booking month (``partitionKey``, ``YYYY-MM``).  Two interchangeable stores
implement the same contract:

* ``SqliteBookingStore`` keeps documents in a single SQLite table.  A few
  columns (status, payment status, order id, date, time) are denormalised
  next to the JSON document for filtering.  Point reads use the
  ``(partition_key, id)`` pair; reads without a partition hint fall back to
  a lookup on ``id`` alone.
* ``InMemoryBookingStore`` keeps documents in a dict guarded by a lock.  It
  is used for local development and tests when no database is configured.

Every mutation is an atomic read-modify-write of a single document: SQLite
runs it inside ``BEGIN IMMEDIATE`` and the memory store under its lock.
The mutation helpers on ``_DocumentStore`` build compare-and-swap updates
on top of that primitive; they return ``None`` when the booking does not
exist or when the expected prior state does not hold, so callers re-read
to tell the two cases apart.

A payment order id belongs to at most one booking; storing a taken order id
raises ``errors.PaymentOrderUsedError``.

Missing bookings are reported as ``None``/``False``.  Backend failures are
raised as ``errors.StorageError``.
"""

from __future__ import annotations

import copy
import json
import logging
import sqlite3
import threading
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, List, Optional, Protocol

from errors import PaymentOrderUsedError, StorageError
from models import Booking, PaymentStatus, Role, Signature, Status, sort_key, utc_now_iso

logger = logging.getLogger(__name__)

Mutator = Callable[[Booking], bool]


class BookingStore(Protocol):
    def save(self, booking: Booking) -> Booking:
        """Persist a new booking and return the stored copy."""

    def get(self, booking_id: str, partition_hint: Optional[str] = None) -> Optional[Booking]:
        """Return a booking or ``None``; scans all partitions without a hint."""

    def update_status(
        self,
        booking_id: str,
        partition_hint: Optional[str],
        status: Status,
        expected: Optional[Iterable[Status]] = None,
    ) -> Optional[Booking]:
        """Set status, optionally only when the current status is in ``expected``."""

    def add_signature(
        self, booking_id: str, partition_hint: Optional[str], role: Role, signature: Signature
    ) -> Optional[Booking]:
        """Store or overwrite the signature block for ``role``."""

    def mark_paid(
        self, booking_id: str, partition_hint: Optional[str], order_id: str, paid_at: str
    ) -> Optional[Booking]:
        """Move payment status from unpaid to paid; an attached order id must match."""

    def set_payment_order(self, booking_id: str, partition_hint: Optional[str], order_id: str) -> Optional[Booking]:
        """Record the payment order id on an unpaid booking."""

    def claim_notification(self, booking_id: str, partition_hint: Optional[str], kind: str) -> Optional[Booking]:
        """Mark a one-shot notification as sent; ``None`` if already claimed."""

    def release_notification(self, booking_id: str, partition_hint: Optional[str], kind: str) -> Optional[Booking]:
        """Undo ``claim_notification`` after a failed send."""

    def list(self, start_date: Optional[str] = None, end_date: Optional[str] = None) -> List[Booking]:
        """Return bookings sorted by date and time, optionally date-filtered."""

    def find_by_payment_order(self, order_id: str) -> Optional[Booking]:
        """Return the booking carrying ``order_id`` or ``None``."""

    def delete(self, booking_id: str, partition_hint: Optional[str] = None) -> bool:
        """Remove a booking; used for test cleanup only."""


class _DocumentStore:
    """Compare-and-swap helpers shared by the concrete stores."""

    def _mutate(self, booking_id: str, partition_hint: Optional[str], mutator: Mutator) -> Optional[Booking]:
        raise NotImplementedError

    def update_status(
        self,
        booking_id: str,
        partition_hint: Optional[str],
        status: Status,
        expected: Optional[Iterable[Status]] = None,
    ) -> Optional[Booking]:
        status = Status(status)
        allowed = {Status(value) for value in expected} if expected is not None else None

        def apply(booking: Booking) -> bool:
            if allowed is not None and booking.status not in allowed:
                return False
            booking.status = status
            return True

        updated = self._mutate(booking_id, partition_hint, apply)
        if updated:
            logger.info("STATUS_UPDATED bookingId=%s status=%s", booking_id, status.value)
        return updated

    def add_signature(
        self, booking_id: str, partition_hint: Optional[str], role: Role, signature: Signature
    ) -> Optional[Booking]:
        role = Role(role)

        def apply(booking: Booking) -> bool:
            booking.contract[role] = signature
            return True

        return self._mutate(booking_id, partition_hint, apply)

    def mark_paid(
        self, booking_id: str, partition_hint: Optional[str], order_id: str, paid_at: str
    ) -> Optional[Booking]:
        def apply(booking: Booking) -> bool:
            if booking.payment_status == PaymentStatus.PAID:
                return False
            if booking.payment_order_id and booking.payment_order_id != order_id:
                return False
            booking.payment_status = PaymentStatus.PAID
            booking.payment_order_id = order_id
            booking.paid_at = paid_at
            return True

        return self._mutate(booking_id, partition_hint, apply)

    def set_payment_order(self, booking_id: str, partition_hint: Optional[str], order_id: str) -> Optional[Booking]:
        def apply(booking: Booking) -> bool:
            if booking.payment_status == PaymentStatus.PAID:
                return False
            booking.payment_order_id = order_id
            return True

        return self._mutate(booking_id, partition_hint, apply)

    def claim_notification(self, booking_id: str, partition_hint: Optional[str], kind: str) -> Optional[Booking]:
        def apply(booking: Booking) -> bool:
            if booking.notifications.get(kind):
                return False
            booking.notifications[kind] = utc_now_iso()
            return True

        return self._mutate(booking_id, partition_hint, apply)

    def release_notification(self, booking_id: str, partition_hint: Optional[str], kind: str) -> Optional[Booking]:
        def apply(booking: Booking) -> bool:
            return booking.notifications.pop(kind, None) is not None

        return self._mutate(booking_id, partition_hint, apply)


def _in_date_range(booking: Booking, start_date: Optional[str], end_date: Optional[str]) -> bool:
    if start_date and booking.date < start_date:
        return False
    if end_date and booking.date > end_date:
        return False
    return True


class InMemoryBookingStore(_DocumentStore):
    """Process-local store; every read-modify-write happens under one lock."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._documents: Dict[str, Dict[str, Any]] = {}

    def save(self, booking: Booking) -> Booking:
        now = utc_now_iso()
        document = booking.to_dict()
        document["createdAt"] = booking.created_at or now
        document["updatedAt"] = now
        with self._lock:
            if booking.id in self._documents:
                raise StorageError("Booking already exists", provider_status=409)
            self._ensure_order_free(document.get("paymentOrderId"), booking.id)
            self._documents[booking.id] = document
            stored = copy.deepcopy(document)
        logger.info("BOOKING_SAVED store=memory bookingId=%s", booking.id)
        return Booking.from_dict(stored)

    def _ensure_order_free(self, order_id: Optional[str], booking_id: str) -> None:
        # Caller holds the lock.
        if not order_id:
            return
        for other_id, document in self._documents.items():
            if other_id != booking_id and document.get("paymentOrderId") == order_id:
                raise PaymentOrderUsedError(order_id)

    def _lookup(self, booking_id: str, partition_hint: Optional[str]) -> Optional[Dict[str, Any]]:
        document = self._documents.get(booking_id)
        if document is None:
            return None
        if partition_hint and document.get("partitionKey") != partition_hint:
            return None
        return document

    def get(self, booking_id: str, partition_hint: Optional[str] = None) -> Optional[Booking]:
        if not booking_id:
            return None
        with self._lock:
            document = self._lookup(booking_id, partition_hint)
            snapshot = copy.deepcopy(document) if document is not None else None
        return Booking.from_dict(snapshot) if snapshot is not None else None

    def _mutate(self, booking_id: str, partition_hint: Optional[str], mutator: Mutator) -> Optional[Booking]:
        with self._lock:
            document = self._lookup(booking_id, partition_hint)
            if document is None:
                return None
            booking = Booking.from_dict(copy.deepcopy(document))
            if not mutator(booking):
                return None
            booking.updated_at = utc_now_iso()
            updated = booking.to_dict()
            self._ensure_order_free(updated.get("paymentOrderId"), booking_id)
            self._documents[booking_id] = updated
            snapshot = copy.deepcopy(updated)
        return Booking.from_dict(snapshot)

    def list(self, start_date: Optional[str] = None, end_date: Optional[str] = None) -> List[Booking]:
        with self._lock:
            snapshots = [copy.deepcopy(doc) for doc in self._documents.values()]
        bookings = [Booking.from_dict(doc) for doc in snapshots if doc.get("date") and doc.get("time")]
        return sorted((b for b in bookings if _in_date_range(b, start_date, end_date)), key=sort_key)

    def find_by_payment_order(self, order_id: str) -> Optional[Booking]:
        if not order_id:
            return None
        with self._lock:
            for document in self._documents.values():
                if document.get("paymentOrderId") == order_id:
                    return Booking.from_dict(copy.deepcopy(document))
        return None

    def delete(self, booking_id: str, partition_hint: Optional[str] = None) -> bool:
        with self._lock:
            if self._lookup(booking_id, partition_hint) is None:
                return False
            del self._documents[booking_id]
        logger.info("BOOKING_DELETED store=memory bookingId=%s", booking_id)
        return True


def _is_order_conflict(exc: sqlite3.IntegrityError) -> bool:
    return "payment_order_id" in str(exc)


def _storage_error(action: str, exc: sqlite3.Error) -> StorageError:
    code = getattr(exc, "sqlite_errorcode", None)
    logger.error("STORAGE_FAIL action=%s code=%s error=%s", action, code, exc)
    return StorageError(f"Storage failure during {action}", provider_status=code)


class SqliteBookingStore(_DocumentStore):
    """Document store on top of a single SQLite file."""

    def __init__(self, path: Path) -> None:
        self.path = Path(path)
        self.init_db()

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self.path, timeout=10)
        conn.row_factory = sqlite3.Row
        return conn

    def init_db(self) -> None:
        """Create the bookings table and indexes.  Idempotent."""
        try:
            conn = self._connect()
        except sqlite3.Error as exc:
            raise _storage_error("init", exc) from exc
        try:
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS bookings (
                    id               TEXT PRIMARY KEY,
                    partition_key    TEXT NOT NULL,
                    status           TEXT NOT NULL CHECK (status IN ('pending','approved','rejected')),
                    payment_status   TEXT NOT NULL CHECK (payment_status IN ('unpaid','paid')),
                    payment_order_id TEXT,
                    date             TEXT NOT NULL,
                    time             TEXT NOT NULL,
                    document         TEXT NOT NULL,
                    created_at       TEXT NOT NULL,
                    updated_at       TEXT NOT NULL
                );
                """
            )
            conn.execute(
                """
                CREATE INDEX IF NOT EXISTS idx_bookings_partition_id
                ON bookings (partition_key, id)
                """
            )
            conn.execute(
                """
                CREATE UNIQUE INDEX IF NOT EXISTS uq_bookings_payment_order
                ON bookings (payment_order_id)
                WHERE payment_order_id IS NOT NULL
                """
            )
            conn.commit()
        except sqlite3.Error as exc:
            raise _storage_error("init", exc) from exc
        finally:
            conn.close()

    @staticmethod
    def _row_values(booking: Booking) -> tuple:
        document = booking.to_dict()
        return (
            booking.partition_key,
            booking.status.value,
            booking.payment_status.value,
            booking.payment_order_id,
            booking.date,
            booking.time,
            json.dumps(document, ensure_ascii=False),
            booking.created_at,
            booking.updated_at,
        )

    def save(self, booking: Booking) -> Booking:
        stored = Booking.from_dict(booking.to_dict())
        now = utc_now_iso()
        stored.created_at = stored.created_at or now
        stored.updated_at = now
        try:
            conn = self._connect()
        except sqlite3.Error as exc:
            raise _storage_error("save", exc) from exc
        try:
            conn.execute(
                """
                INSERT INTO bookings (id, partition_key, status, payment_status, payment_order_id,
                                      date, time, document, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (stored.id, *self._row_values(stored)),
            )
            conn.commit()
        except sqlite3.IntegrityError as exc:
            if _is_order_conflict(exc):
                raise PaymentOrderUsedError(stored.payment_order_id or "") from exc
            raise StorageError("Booking already exists", provider_status=409) from exc
        except sqlite3.Error as exc:
            raise _storage_error("save", exc) from exc
        finally:
            conn.close()
        logger.info("BOOKING_SAVED store=sqlite bookingId=%s partition=%s", stored.id, stored.partition_key)
        return stored

    @staticmethod
    def _select(conn: sqlite3.Connection, booking_id: str, partition_hint: Optional[str]) -> Optional[sqlite3.Row]:
        if partition_hint:
            return conn.execute(
                "SELECT document FROM bookings WHERE partition_key = ? AND id = ?",
                (partition_hint, booking_id),
            ).fetchone()
        return conn.execute("SELECT document FROM bookings WHERE id = ?", (booking_id,)).fetchone()

    def get(self, booking_id: str, partition_hint: Optional[str] = None) -> Optional[Booking]:
        if not booking_id:
            return None
        try:
            conn = self._connect()
        except sqlite3.Error as exc:
            raise _storage_error("get", exc) from exc
        try:
            row = self._select(conn, booking_id, partition_hint)
        except sqlite3.Error as exc:
            raise _storage_error("get", exc) from exc
        finally:
            conn.close()
        return Booking.from_dict(json.loads(row["document"])) if row else None

    def _mutate(self, booking_id: str, partition_hint: Optional[str], mutator: Mutator) -> Optional[Booking]:
        try:
            conn = self._connect()
        except sqlite3.Error as exc:
            raise _storage_error("update", exc) from exc
        try:
            conn.isolation_level = None
            # IMMEDIATE takes the write lock before the read so that the
            # check and the write see the same row.
            conn.execute("BEGIN IMMEDIATE")
            row = self._select(conn, booking_id, partition_hint)
            if row is None:
                conn.execute("ROLLBACK")
                return None
            booking = Booking.from_dict(json.loads(row["document"]))
            if not mutator(booking):
                conn.execute("ROLLBACK")
                return None
            booking.updated_at = utc_now_iso()
            values = self._row_values(booking)
            conn.execute(
                """
                UPDATE bookings
                SET partition_key = ?, status = ?, payment_status = ?, payment_order_id = ?,
                    date = ?, time = ?, document = ?, created_at = ?, updated_at = ?
                WHERE id = ?
                """,
                (*values, booking_id),
            )
            conn.execute("COMMIT")
            return booking
        except sqlite3.IntegrityError as exc:
            conn.execute("ROLLBACK")
            if _is_order_conflict(exc):
                raise PaymentOrderUsedError(booking.payment_order_id or "") from exc
            raise _storage_error("update", exc) from exc
        except sqlite3.Error as exc:
            try:
                conn.execute("ROLLBACK")
            except sqlite3.OperationalError:
                pass
            raise _storage_error("update", exc) from exc
        finally:
            conn.close()

    def list(self, start_date: Optional[str] = None, end_date: Optional[str] = None) -> List[Booking]:
        query = "SELECT document FROM bookings"
        clauses: list[str] = []
        params: list[str] = []
        if start_date:
            clauses.append("date >= ?")
            params.append(start_date)
        if end_date:
            clauses.append("date <= ?")
            params.append(end_date)
        if clauses:
            query += " WHERE " + " AND ".join(clauses)
        query += " ORDER BY date, time, id"
        try:
            conn = self._connect()
        except sqlite3.Error as exc:
            raise _storage_error("list", exc) from exc
        try:
            rows = conn.execute(query, params).fetchall()
        except sqlite3.Error as exc:
            raise _storage_error("list", exc) from exc
        finally:
            conn.close()
        return [Booking.from_dict(json.loads(row["document"])) for row in rows]

    def find_by_payment_order(self, order_id: str) -> Optional[Booking]:
        if not order_id:
            return None
        try:
            conn = self._connect()
        except sqlite3.Error as exc:
            raise _storage_error("find_by_payment_order", exc) from exc
        try:
            row = conn.execute(
                "SELECT document FROM bookings WHERE payment_order_id = ? LIMIT 1",
                (order_id,),
            ).fetchone()
        except sqlite3.Error as exc:
            raise _storage_error("find_by_payment_order", exc) from exc
        finally:
            conn.close()
        return Booking.from_dict(json.loads(row["document"])) if row else None

    def delete(self, booking_id: str, partition_hint: Optional[str] = None) -> bool:
        try:
            conn = self._connect()
        except sqlite3.Error as exc:
            raise _storage_error("delete", exc) from exc
        try:
            if partition_hint:
                cur = conn.execute(
                    "DELETE FROM bookings WHERE partition_key = ? AND id = ?",
                    (partition_hint, booking_id),
                )
            else:
                cur = conn.execute("DELETE FROM bookings WHERE id = ?", (booking_id,))
            conn.commit()
        except sqlite3.Error as exc:
            raise _storage_error("delete", exc) from exc
        finally:
            conn.close()
        deleted = cur.rowcount > 0
        if deleted:
            logger.info("BOOKING_DELETED store=sqlite bookingId=%s", booking_id)
        return deleted


def create_store(database_path: Optional[Path]) -> BookingStore:
    """Select the SQLite store when a path is configured, else the memory store."""
    if database_path:
        return SqliteBookingStore(database_path)
    logger.warning("STORAGE_FALLBACK store=memory reason=DATABASE_PATH not set")
    return InMemoryBookingStore()
