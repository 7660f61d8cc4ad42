from __future__ import annotations

import unittest

from payflow.payments.normalizers import adapt_primary_response, adapt_secondary_response, amounts_match


class PrimaryResponseTests(unittest.TestCase):
    def test_flat_success_payload_is_confirmed(self) -> None:
        adapted = adapt_primary_response(
            {
                "success": True,
                "order_id": "ord-1",
                "order_number": "ORD-0001",
                "payment_status": "completed",
                "order_status": "confirmed",
                "amount": 2500,
                "reference": "txn_1700000000000_abc",
                "transaction_id": "t-9",
                "channel": "card",
                "verified_at": "2023-11-14T22:15:00Z",
            }
        )

        self.assertTrue(adapted.confirmed)
        assert adapted.data is not None
        self.assertEqual(adapted.data.status, "paid")
        self.assertEqual(adapted.data.amount, 2500.0)
        self.assertEqual(adapted.data.order_id, "ord-1")
        self.assertEqual(adapted.data.order_number, "ORD-0001")
        self.assertEqual(adapted.data.channel, "card")
        self.assertEqual(adapted.data.metadata["transaction_id"], "t-9")
        self.assertEqual(adapted.data.metadata["order_status"], "confirmed")
        self.assertEqual(adapted.reference, "txn_1700000000000_abc")

    def test_nested_data_payload_is_confirmed(self) -> None:
        adapted = adapt_primary_response(
            {
                "success": True,
                "data": {
                    "status": "success",
                    "amount": "1200.50",
                    "customer": {"email": "buyer@example.com"},
                    "paid_at": "2023-11-14T22:15:00Z",
                    "order_updated": True,
                },
            }
        )

        self.assertTrue(adapted.confirmed)
        assert adapted.data is not None
        self.assertEqual(adapted.data.status, "success")
        self.assertEqual(adapted.data.amount, 1200.5)
        self.assertEqual(adapted.data.customer["email"], "buyer@example.com")
        self.assertTrue(adapted.data.order_updated)

    def test_missing_status_on_explicit_success_reads_as_success(self) -> None:
        adapted = adapt_primary_response({"success": True, "amount": 10})
        self.assertTrue(adapted.confirmed)
        assert adapted.data is not None
        self.assertEqual(adapted.data.status, "success")

    def test_explicit_failure_is_not_confirmed(self) -> None:
        adapted = adapt_primary_response({"success": False, "error": "Transaction reference not found"})
        self.assertFalse(adapted.confirmed)
        self.assertEqual(adapted.message, "Transaction reference not found")

    def test_pending_status_is_not_confirmed(self) -> None:
        adapted = adapt_primary_response({"status": "pending", "amount": 100})
        self.assertFalse(adapted.confirmed)

    def test_garbage_input_never_raises(self) -> None:
        for payload in (None, "", "not json", 42, [], ["x"], "{broken"):
            adapted = adapt_primary_response(payload)
            self.assertFalse(adapted.confirmed)
            self.assertIsNone(adapted.data)

    def test_json_string_body_is_decoded(self) -> None:
        adapted = adapt_primary_response('{"success": true, "status": "paid", "amount": 5}')
        self.assertTrue(adapted.confirmed)

    def test_amount_mismatch_is_flagged(self) -> None:
        adapted = adapt_primary_response(
            {"success": True, "status": "success", "amount": 2000, "order_total": 2500}
        )

        self.assertFalse(adapted.confirmed)
        self.assertTrue(adapted.amount_mismatch)

    def test_amounts_within_one_kobo_are_accepted(self) -> None:
        adapted = adapt_primary_response(
            {"success": True, "status": "success", "amount": 2500.004, "order_total": 2500}
        )
        self.assertTrue(adapted.confirmed)
        self.assertTrue(amounts_match(10.0, 10.01))
        self.assertFalse(amounts_match(10.0, 10.02))


class SecondaryResponseTests(unittest.TestCase):
    def test_paystack_envelope_converts_kobo(self) -> None:
        adapted = adapt_secondary_response(
            {
                "status": True,
                "message": "Verification successful",
                "data": {
                    "status": "success",
                    "reference": "txn_1700000000000_abc",
                    "amount": 250000,
                    "channel": "bank",
                    "paid_at": "2023-11-14T22:15:00.000Z",
                    "customer": {"email": "buyer@example.com"},
                    "metadata": {"order_id": "ord-1"},
                    "gateway_response": "Approved",
                },
            }
        )

        self.assertTrue(adapted.confirmed)
        assert adapted.data is not None
        self.assertEqual(adapted.data.amount, 2500.0)
        self.assertEqual(adapted.data.order_id, "ord-1")
        self.assertEqual(adapted.data.channel, "bank")
        self.assertEqual(adapted.data.metadata["gateway_response"], "Approved")

    def test_success_envelope_with_flat_transaction(self) -> None:
        adapted = adapt_secondary_response({"success": True, "status": "success", "amount": 5000})
        self.assertTrue(adapted.confirmed)
        assert adapted.data is not None
        self.assertEqual(adapted.data.amount, 50.0)

    def test_failed_envelope_is_not_confirmed(self) -> None:
        adapted = adapt_secondary_response(
            {"status": False, "message": "Transaction reference not found"}
        )

        self.assertFalse(adapted.confirmed)
        self.assertEqual(adapted.message, "Transaction reference not found")

    def test_abandoned_transaction_is_not_confirmed(self) -> None:
        adapted = adapt_secondary_response(
            {"status": True, "data": {"status": "abandoned", "amount": 100, "gateway_response": "Abandoned"}}
        )

        self.assertFalse(adapted.confirmed)
        assert adapted.data is not None
        self.assertEqual(adapted.data.status, "failed")

    def test_garbage_input_never_raises(self) -> None:
        for payload in (None, "oops", 0, {}, []):
            self.assertFalse(adapt_secondary_response(payload).confirmed)


if __name__ == "__main__":
    unittest.main()
