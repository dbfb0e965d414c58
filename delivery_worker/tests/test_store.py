import threading
import unittest
from datetime import datetime, timedelta, timezone

from delivery_worker import store
from delivery_worker.models import DeliveryStatus
from delivery_worker.tests.fakes import FakeSupabase, make_delivery_client

NOW = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)


class ClaimTests(unittest.TestCase):
    def test_claim_moves_pending_to_processing_and_clears_error(self):
        client = make_delivery_client()
        client.row("deliveries", "d-1")["last_error"] = "old failure"

        self.assertTrue(store.claim_delivery(client, "d-1", NOW))

        row = client.row("deliveries", "d-1")
        self.assertEqual(row["status"], "processing")
        self.assertIsNone(row["last_error"])
        self.assertEqual(row["updated_at"], NOW.isoformat())

    def test_second_claim_sees_zero_rows(self):
        client = make_delivery_client()

        self.assertTrue(store.claim_delivery(client, "d-1", NOW))
        self.assertFalse(store.claim_delivery(client, "d-1", NOW))

    def test_claim_of_non_pending_delivery_is_refused(self):
        client = make_delivery_client(status="sent")

        self.assertFalse(store.claim_delivery(client, "d-1", NOW))
        self.assertEqual(client.row("deliveries", "d-1")["status"], "sent")

    def test_concurrent_claims_have_exactly_one_winner(self):
        client = make_delivery_client()
        barrier = threading.Barrier(2)
        results = []

        def attempt():
            barrier.wait()
            results.append(store.claim_delivery(client, "d-1", NOW))

        threads = [threading.Thread(target=attempt) for _ in range(2)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        self.assertEqual(sorted(results), [False, True])


class StatusUpdateTests(unittest.TestCase):
    def test_mark_sent_requires_processing(self):
        client = make_delivery_client()

        self.assertFalse(store.mark_delivery_sent(client, "d-1", NOW))

        store.claim_delivery(client, "d-1", NOW)
        self.assertTrue(store.mark_delivery_sent(client, "d-1", NOW))
        self.assertEqual(client.row("deliveries", "d-1")["status"], "sent")

    def test_mark_failed_truncates_error(self):
        client = make_delivery_client()

        store.mark_delivery_failed(client, "d-1", "e" * 2500, NOW)

        row = client.row("deliveries", "d-1")
        self.assertEqual(row["status"], "failed")
        self.assertEqual(len(row["last_error"]), 1000)

    def test_mark_failed_leaves_terminal_rows_alone(self):
        client = make_delivery_client(status="sent")

        self.assertFalse(store.mark_delivery_failed(client, "d-1", "late failure", NOW))
        self.assertEqual(client.row("deliveries", "d-1")["status"], "sent")

    def test_mark_failed_with_expected_status_only_matches_that_status(self):
        client = make_delivery_client(status="processing")

        marked = store.mark_delivery_failed(
            client, "d-1", "fetch failed", NOW, expected_status=DeliveryStatus.PENDING
        )

        self.assertFalse(marked)
        self.assertEqual(client.row("deliveries", "d-1")["status"], "processing")


class FetchTests(unittest.TestCase):
    def test_pending_fetch_filters_orders_and_limits(self):
        client = FakeSupabase(
            {
                "deliveries": [
                    {"id": "newest", "user_id": "u", "message_id": "m", "recipient_id": "r",
                     "status": "pending", "updated_at": "2026-02-03T00:00:00+00:00"},
                    {"id": "done", "user_id": "u", "message_id": "m", "recipient_id": "r",
                     "status": "sent", "updated_at": "2026-01-01T00:00:00+00:00"},
                    {"id": "oldest", "user_id": "u", "message_id": "m", "recipient_id": "r",
                     "status": "pending", "updated_at": "2026-02-01T00:00:00+00:00"},
                    {"id": "middle", "user_id": "u", "message_id": "m", "recipient_id": "r",
                     "status": "pending", "updated_at": "2026-02-02T00:00:00+00:00"},
                ]
            }
        )

        deliveries = store.fetch_pending_deliveries(client, 2)

        self.assertEqual([d.id for d in deliveries], ["oldest", "middle"])

    def test_missing_message_raises_not_found(self):
        client = make_delivery_client()
        client.tables["messages"] = []

        with self.assertRaises(store.RecordNotFoundError) as ctx:
            store.fetch_message(client, "m-1")
        self.assertIn("msg:", str(ctx.exception))

    def test_missing_lifecheck_row_is_none(self):
        client = make_delivery_client()

        self.assertIsNone(store.fetch_lifecheck(client, "u-1"))


class StaleRecoveryTests(unittest.TestCase):
    def test_requeues_only_stale_processing_rows(self):
        client = FakeSupabase(
            {
                "deliveries": [
                    {"id": "stale", "status": "processing",
                     "updated_at": (NOW - timedelta(hours=2)).isoformat()},
                    {"id": "fresh", "status": "processing",
                     "updated_at": (NOW - timedelta(minutes=5)).isoformat()},
                    {"id": "failed", "status": "failed",
                     "updated_at": (NOW - timedelta(days=3)).isoformat()},
                ]
            }
        )

        recovered = store.requeue_stale_processing(client, NOW, 30)

        self.assertEqual(recovered, 1)
        self.assertEqual(client.row("deliveries", "stale")["status"], "pending")
        self.assertEqual(client.row("deliveries", "fresh")["status"], "processing")
        self.assertEqual(client.row("deliveries", "failed")["status"], "failed")

    def test_recovery_errors_are_swallowed(self):
        client = make_delivery_client()
        client.fail("deliveries", "update", RuntimeError("db down"))

        self.assertEqual(store.requeue_stale_processing(client, NOW, 30), 0)


if __name__ == "__main__":
    unittest.main()
