import threading
import unittest
from pathlib import Path
from tempfile import TemporaryDirectory

import db
from errors import PaymentOrderUsedError, StorageError
from models import Booking, PaymentStatus, Role, Signature, Status


def _booking(**overrides) -> Booking:
    fields = {
        "date": "2025-06-01",
        "time": "18:00",
        "requester_name": "Ola Nordmann",
        "requester_email": "ola@example.com",
        "spaces": ["Salen"],
        "payment_amount": 300000,
    }
    fields.update(overrides)
    return Booking(**fields)


def _without_timestamps(document: dict) -> dict:
    return {key: value for key, value in document.items() if key not in {"createdAt", "updatedAt"}}


class BookingStoreContract:
    """Shared behaviour every store implementation must satisfy."""

    def make_store(self):
        raise NotImplementedError

    def setUp(self) -> None:
        self.store = self.make_store()

    def test_save_then_get_returns_equal_document(self) -> None:
        booking = _booking(services=["Kaffe"], attendees=40, message="Bursdag")
        saved = self.store.save(booking)
        fetched = self.store.get(booking.id)

        self.assertIsNotNone(fetched)
        self.assertEqual(_without_timestamps(fetched.to_dict()), _without_timestamps(booking.to_dict()))
        self.assertTrue(saved.created_at)
        self.assertTrue(saved.updated_at)
        self.assertEqual(fetched.partition_key, "2025-06")

    def test_unknown_id_is_none_not_error(self) -> None:
        self.assertIsNone(self.store.get("does-not-exist"))
        self.assertIsNone(self.store.update_status("does-not-exist", None, Status.APPROVED))
        self.assertIsNone(self.store.mark_paid("does-not-exist", None, "order-1", "2025-06-01T00:00:00.000Z"))
        self.assertFalse(self.store.delete("does-not-exist"))

    def test_partition_hint_routes_point_reads(self) -> None:
        booking = self.store.save(_booking())
        self.assertIsNotNone(self.store.get(booking.id, "2025-06"))
        self.assertIsNone(self.store.get(booking.id, "2025-07"))
        self.assertIsNotNone(self.store.get(booking.id))

    def test_duplicate_save_raises_storage_error(self) -> None:
        booking = self.store.save(_booking())
        with self.assertRaises(StorageError):
            self.store.save(booking)

    def test_update_status_is_compare_and_swap(self) -> None:
        booking = self.store.save(_booking())

        first = self.store.update_status(booking.id, booking.partition_key, Status.APPROVED, expected=[Status.PENDING])
        second = self.store.update_status(booking.id, booking.partition_key, Status.APPROVED, expected=[Status.PENDING])

        self.assertIsNotNone(first)
        self.assertEqual(first.status, Status.APPROVED)
        self.assertIsNone(second)
        self.assertEqual(self.store.get(booking.id).status, Status.APPROVED)

    def test_update_status_without_expected_always_writes(self) -> None:
        booking = self.store.save(_booking())
        updated = self.store.update_status(booking.id, None, Status.REJECTED)
        self.assertEqual(updated.status, Status.REJECTED)

    def test_add_signature_overwrites_role_slot(self) -> None:
        booking = self.store.save(_booking())
        first = Signature(signed_at="2025-05-01T10:00:00.000Z", signature_data="Ola", signer_name="Ola")
        second = Signature(
            signed_at="2025-05-02T10:00:00.000Z",
            signature_data={"type": "text", "data": "Ola N."},
            signer_name="Ola N.",
            ip_address="10.0.0.1",
        )
        self.store.add_signature(booking.id, booking.partition_key, Role.REQUESTER, first)
        updated = self.store.add_signature(booking.id, booking.partition_key, Role.REQUESTER, second)

        self.assertEqual(list(updated.contract), [Role.REQUESTER])
        stored = self.store.get(booking.id).contract[Role.REQUESTER]
        self.assertEqual(stored.signer_name, "Ola N.")
        self.assertEqual(stored.signature_data, {"type": "text", "data": "Ola N."})
        self.assertEqual(stored.ip_address, "10.0.0.1")

    def test_mark_paid_only_once(self) -> None:
        booking = self.store.save(_booking())
        paid = self.store.mark_paid(booking.id, None, "order-1", "2025-05-03T12:00:00.000Z")
        again = self.store.mark_paid(booking.id, None, "order-2", "2025-05-04T12:00:00.000Z")

        self.assertEqual(paid.payment_status, PaymentStatus.PAID)
        self.assertIsNone(again)
        stored = self.store.get(booking.id)
        self.assertEqual(stored.payment_order_id, "order-1")
        self.assertEqual(stored.paid_at, "2025-05-03T12:00:00.000Z")

    def test_claim_notification_once_and_release(self) -> None:
        booking = self.store.save(_booking())
        self.assertIsNotNone(self.store.claim_notification(booking.id, None, "paymentRequest"))
        self.assertIsNone(self.store.claim_notification(booking.id, None, "paymentRequest"))
        self.assertIsNotNone(self.store.release_notification(booking.id, None, "paymentRequest"))
        self.assertIsNotNone(self.store.claim_notification(booking.id, None, "paymentRequest"))

    def test_set_payment_order_and_lookup(self) -> None:
        booking = self.store.save(_booking())
        self.assertIsNone(self.store.find_by_payment_order("contract-payment-x"))
        self.store.set_payment_order(booking.id, None, "contract-payment-x")
        found = self.store.find_by_payment_order("contract-payment-x")
        self.assertEqual(found.id, booking.id)

    def test_set_payment_order_refused_when_paid(self) -> None:
        booking = self.store.save(_booking())
        self.store.mark_paid(booking.id, None, "order-1", "2025-05-03T12:00:00.000Z")
        self.assertIsNone(self.store.set_payment_order(booking.id, None, "order-2"))
        self.assertEqual(self.store.get(booking.id).payment_order_id, "order-1")

    def test_mark_paid_requires_attached_order_to_match(self) -> None:
        booking = self.store.save(_booking(payment_order_id="contract-payment-a"))
        self.assertIsNone(self.store.mark_paid(booking.id, None, "contract-payment-b", "2025-05-03T12:00:00.000Z"))
        self.assertEqual(self.store.get(booking.id).payment_status, PaymentStatus.UNPAID)
        paid = self.store.mark_paid(booking.id, None, "contract-payment-a", "2025-05-03T12:00:00.000Z")
        self.assertEqual(paid.payment_status, PaymentStatus.PAID)

    def test_payment_order_belongs_to_one_booking(self) -> None:
        first = self.store.save(_booking(payment_order_id="booking-order-1"))
        with self.assertRaises(PaymentOrderUsedError):
            self.store.save(_booking(time="08:00", payment_order_id="booking-order-1"))

        second = self.store.save(_booking(time="10:00"))
        with self.assertRaises(PaymentOrderUsedError):
            self.store.set_payment_order(second.id, None, "booking-order-1")
        self.assertIsNone(self.store.get(second.id).payment_order_id)
        self.assertEqual(self.store.find_by_payment_order("booking-order-1").id, first.id)
        self.assertEqual(len(self.store.list()), 2)

    def test_concurrent_saves_with_same_order_have_single_winner(self) -> None:
        participants = 8
        barrier = threading.Barrier(participants)
        saved = []
        refused = []
        lock = threading.Lock()

        def worker(index: int) -> None:
            barrier.wait()
            try:
                booking = self.store.save(_booking(time=f"{8 + index:02d}:00", payment_order_id="booking-order-race"))
            except PaymentOrderUsedError:
                with lock:
                    refused.append(index)
                return
            with lock:
                saved.append(booking.id)

        threads = [threading.Thread(target=worker, args=(index,)) for index in range(participants)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join(timeout=10)

        self.assertEqual(len(saved), 1)
        self.assertEqual(len(refused), participants - 1)
        self.assertEqual(self.store.find_by_payment_order("booking-order-race").id, saved[0])

    def test_list_sorted_and_date_filtered(self) -> None:
        late = self.store.save(_booking(date="2025-06-02", time="09:00"))
        evening = self.store.save(_booking(date="2025-06-01", time="18:00"))
        morning = self.store.save(_booking(date="2025-06-01", time="08:00"))
        other_month = self.store.save(_booking(date="2025-07-15", time="12:00"))

        self.assertEqual(
            [b.id for b in self.store.list()],
            [morning.id, evening.id, late.id, other_month.id],
        )
        self.assertEqual(
            [b.id for b in self.store.list(start_date="2025-06-02", end_date="2025-06-30")],
            [late.id],
        )

    def test_delete_removes_booking(self) -> None:
        booking = self.store.save(_booking())
        self.assertTrue(self.store.delete(booking.id, booking.partition_key))
        self.assertIsNone(self.store.get(booking.id))

    def test_concurrent_status_swaps_have_single_winner(self) -> None:
        booking = self.store.save(_booking())
        participants = 8
        barrier = threading.Barrier(participants)
        results = []
        lock = threading.Lock()

        def worker() -> None:
            barrier.wait()
            outcome = self.store.update_status(booking.id, booking.partition_key, Status.APPROVED, expected=[Status.PENDING])
            with lock:
                results.append(outcome)

        threads = [threading.Thread(target=worker) for _ in range(participants)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join(timeout=10)

        self.assertEqual(len(results), participants)
        self.assertEqual(sum(1 for outcome in results if outcome is not None), 1)


class InMemoryBookingStoreTest(BookingStoreContract, unittest.TestCase):
    def make_store(self):
        return db.InMemoryBookingStore()

    def test_returned_bookings_are_copies(self) -> None:
        booking = self.store.save(_booking())
        fetched = self.store.get(booking.id)
        fetched.spaces.append("Peisestue")
        fetched.status = Status.REJECTED
        again = self.store.get(booking.id)
        self.assertEqual(again.spaces, ["Salen"])
        self.assertEqual(again.status, Status.PENDING)


class SqliteBookingStoreTest(BookingStoreContract, unittest.TestCase):
    def make_store(self):
        self._tmpdir = TemporaryDirectory()
        self.addCleanup(self._tmpdir.cleanup)
        return db.SqliteBookingStore(Path(self._tmpdir.name) / "bookings.db")

    def test_data_survives_new_store_instance(self) -> None:
        booking = self.store.save(_booking())
        reopened = db.SqliteBookingStore(self.store.path)
        self.assertEqual(reopened.get(booking.id).requester_email, "ola@example.com")

    def test_unusable_path_raises_storage_error(self) -> None:
        with self.assertRaises(StorageError):
            db.SqliteBookingStore(Path(self._tmpdir.name))


class CreateStoreTest(unittest.TestCase):
    def test_memory_store_without_path(self) -> None:
        with self.assertLogs("db", level="WARNING"):
            store = db.create_store(None)
        self.assertIsInstance(store, db.InMemoryBookingStore)

    def test_sqlite_store_with_path(self) -> None:
        with TemporaryDirectory() as tmpdir:
            store = db.create_store(Path(tmpdir) / "bookings.db")
            self.assertIsInstance(store, db.SqliteBookingStore)
