import threading
from unittest.mock import patch

import requests
from django.core import mail
from django.db.models import F
from django.db import connection
from django.test import TestCase, TransactionTestCase

from payments.exceptions import ConflictingFinalization, UnresolvedSession, ValidationFailed
from payments.locks import IdempotencyLock
from payments.models import Order, ReconciliationIssue
from payments.reconciliation import APPLIED, CONFIRMED, DUPLICATE, apply_notification

from .helpers import FakeResponse, ReconciliationTestMixin, gateway_record, ipn, make_order


class SuccessfulPaymentTests(ReconciliationTestMixin, TestCase):
    def setUp(self):
        super().setUp()
        self.order = make_order()

    def test_valid_ipn_provisions_and_finalizes_success(self):
        with self.validator_returns(gateway_record()), self.provisioning_returns() as post:
            result = apply_notification("S1", ipn())

        self.assertEqual(result.status, "SUCCESS")
        self.assertEqual(result.outcome, APPLIED)
        post.assert_called_once()
        self.order.refresh_from_db()
        self.assertEqual(self.order.status, "SUCCESS")
        self.assertEqual(self.order.val_id, "V1")
        self.assertEqual(self.order.external_api_response, {"license_key": "KEY-123"})
        self.assertEqual(self.order.payment_info["bank_tran_id"], "BANKT1")
        self.assertEqual(self.broadcast_payloads(), [{"sessionId": "S1", "tran_id": "T1", "status": "SUCCESS"}])
        self.assertEqual(self.broadcasts()[0][0], "payment:S1")
        self.assertEqual(self.broadcasts()[0][1]["event"], "paymentStatusUpdate")

    def test_replayed_ipn_does_not_provision_again(self):
        with self.validator_returns(gateway_record()), self.provisioning_returns() as post:
            first = apply_notification("S1", ipn())
            self.order.refresh_from_db()
            version = self.order.version
            second = apply_notification("S1", ipn())

        self.assertEqual(post.call_count, 1)
        self.assertEqual(first.status, second.status)
        self.assertEqual(second.outcome, CONFIRMED)
        self.order.refresh_from_db()
        self.assertEqual(self.order.status, "SUCCESS")
        self.assertEqual(self.order.version, version)

    def test_many_duplicates_provision_at_most_once(self):
        with self.validator_returns(gateway_record()), self.provisioning_returns() as post:
            results = [apply_notification("S1", ipn()) for _ in range(5)]

        self.assertEqual(post.call_count, 1)
        self.assertEqual({r.status for r in results}, {"SUCCESS"})

    def test_duplicate_arriving_mid_flight_is_a_cheap_noop(self):
        nested = []

        def validator(*args, **kwargs):
            # A second delivery lands while the first still holds the lock.
            nested.append(apply_notification("S1", ipn()))
            return FakeResponse(200, gateway_record())

        with patch("payments.integrations.sslcommerz.requests.get", side_effect=validator) as get, \
                self.provisioning_returns() as post:
            result = apply_notification("S1", ipn())

        self.assertEqual(get.call_count, 1)
        self.assertEqual(post.call_count, 1)
        self.assertEqual(nested[0].outcome, DUPLICATE)
        self.assertEqual(nested[0].status, "PENDING")
        self.assertEqual(result.status, "SUCCESS")
        # Only the winner broadcasts.
        self.assertEqual(len(self.broadcasts()), 1)

    def test_held_val_id_lock_also_counts_as_duplicate(self):
        lock = IdempotencyLock("val:V1")
        self.assertTrue(lock.acquire())
        try:
            with self.validator_returns(gateway_record()) as get:
                result = apply_notification("S1", ipn())
        finally:
            lock.release()
        get.assert_not_called()
        self.assertEqual(result.outcome, DUPLICATE)
        # The tran_id lock taken first was released again.
        self.assertTrue(IdempotencyLock("tran:T1").acquire())

    def test_locks_released_after_processing(self):
        with self.validator_returns(gateway_record()), self.provisioning_returns():
            apply_notification("S1", ipn())
        self.assertTrue(IdempotencyLock("tran:T1").acquire())
        self.assertTrue(IdempotencyLock("val:V1").acquire())


class NoRegressionTests(ReconciliationTestMixin, TestCase):
    def setUp(self):
        super().setUp()
        self.order = make_order()
        with self.validator_returns(gateway_record()), self.provisioning_returns():
            apply_notification("S1", ipn())
        self.order.refresh_from_db()

    def assertStillSuccess(self):
        self.order.refresh_from_db()
        self.assertEqual(self.order.status, "SUCCESS")
        self.assertEqual(self.order.val_id, "V1")
        self.assertEqual(self.order.external_api_response, {"license_key": "KEY-123"})

    def test_later_failed_outcome_is_flagged_not_applied(self):
        with self.validator_returns(gateway_record(val_id="V2", status="FAILED")):
            with self.assertRaises(ConflictingFinalization):
                apply_notification("S1", ipn(val_id="V2", status="FAILED"))
        self.assertStillSuccess()
        issue = ReconciliationIssue.objects.get()
        self.assertEqual(issue.kind, ReconciliationIssue.CONFLICTING_FINALIZATION)
        self.assertEqual(issue.payload["reported_outcome"], "FAILED")
        self.assertEqual(len(mail.outbox), 1)
        self.assertIn("T1", mail.outbox[0].subject)

    def test_repeated_conflict_records_one_open_issue(self):
        with self.validator_returns(gateway_record(val_id="V2", status="CANCELLED")):
            for _ in range(3):
                with self.assertRaises(ConflictingFinalization):
                    apply_notification("S1", ipn(val_id="V2", status="CANCELLED"))
        self.assertEqual(ReconciliationIssue.objects.count(), 1)
        self.assertStillSuccess()

    def test_malformed_notification_changes_nothing(self):
        with self.validator_returns(gateway_record()):
            with self.assertRaises(ValidationFailed):
                apply_notification("S1", {"status": "FAILED"})
        self.assertStillSuccess()

    def test_gateway_unreachable_changes_nothing(self):
        with patch("payments.integrations.sslcommerz.requests.get", side_effect=requests.ConnectionError("down")):
            with self.assertRaises(ValidationFailed):
                apply_notification("S1", ipn(status="FAILED", val_id=""))
        self.assertStillSuccess()


class FailedAndCancelledTests(ReconciliationTestMixin, TestCase):
    def setUp(self):
        super().setUp()
        self.order = make_order()

    def test_failed_outcome_marks_failed_without_provisioning(self):
        query = {"APIConnect": "DONE", "element": [gateway_record(val_id="", status="FAILED")]}
        with self.validator_returns(query) as get, self.provisioning_returns() as post:
            result = apply_notification("S1", ipn(val_id="", status="FAILED"))

        self.assertEqual(result.status, "FAILED")
        post.assert_not_called()
        self.assertEqual(get.call_args.kwargs["params"]["tran_id"], "T1")
        self.assertEqual(self.broadcast_payloads(), [{"sessionId": "S1", "tran_id": "T1", "status": "FAILED"}])

    def test_cancelled_outcome_marks_cancelled(self):
        query = {"element": [gateway_record(val_id="", status="CANCELLED")]}
        with self.validator_returns(query):
            result = apply_notification("S1", ipn(val_id="", status="CANCELLED"))
        self.assertEqual(result.status, "CANCELLED")

    def test_success_after_failure_is_a_conflict(self):
        query = {"element": [gateway_record(val_id="", status="FAILED")]}
        with self.validator_returns(query):
            apply_notification("S1", ipn(val_id="", status="FAILED"))
        with self.validator_returns(gateway_record()), self.provisioning_returns() as post:
            with self.assertRaises(ConflictingFinalization):
                apply_notification("S1", ipn())
        post.assert_not_called()
        self.order.refresh_from_db()
        self.assertEqual(self.order.status, "FAILED")


class ValidationFailureTests(ReconciliationTestMixin, TestCase):
    def setUp(self):
        super().setUp()
        self.order = make_order()

    def test_amount_mismatch_leaves_order_pending_and_unlocked(self):
        with self.validator_returns(gateway_record(amount="10.00")), self.provisioning_returns() as post:
            with self.assertRaises(ValidationFailed):
                apply_notification("S1", ipn())
        post.assert_not_called()
        self.order.refresh_from_db()
        self.assertEqual(self.order.status, "PENDING")
        self.assertEqual(self.order.version, 0)
        self.assertEqual(self.broadcasts(), [])
        self.assertTrue(IdempotencyLock("tran:T1").acquire())

    def test_gateway_redelivery_after_failure_succeeds(self):
        with patch("payments.integrations.sslcommerz.requests.get", return_value=FakeResponse(500, text="oops")):
            with self.assertRaises(ValidationFailed):
                apply_notification("S1", ipn())
        with self.validator_returns(gateway_record()), self.provisioning_returns():
            result = apply_notification("S1", ipn())
        self.assertEqual(result.status, "SUCCESS")

    def test_tran_id_of_another_order_is_rejected(self):
        make_order(session_id="S2", tran_id="T2")
        with self.validator_returns(gateway_record(tran_id="T2")) as get:
            with self.assertRaises(ValidationFailed):
                apply_notification("S1", ipn(tran_id="T2"))
        get.assert_not_called()


class SessionResolutionTests(ReconciliationTestMixin, TestCase):
    def test_unknown_session_and_tran_id(self):
        with self.assertRaises(UnresolvedSession):
            apply_notification("nope", ipn(tran_id="missing"))

    def test_falls_back_to_tran_id(self):
        make_order()
        with self.validator_returns(gateway_record()), self.provisioning_returns():
            result = apply_notification("expired-or-mangled", ipn())
        self.assertEqual(result.session_id, "S1")
        self.assertEqual(result.status, "SUCCESS")


class ProvisioningFailureTests(ReconciliationTestMixin, TestCase):
    def setUp(self):
        super().setUp()
        self.order = make_order()

    def test_provisioning_failure_parks_in_sync_pending(self):
        with self.validator_returns(gateway_record()), self.provisioning_returns(status_code=503) as post:
            result = apply_notification("S1", ipn())

        post.assert_called_once()
        self.assertEqual(result.status, "SYNC_PENDING")
        self.order.refresh_from_db()
        self.assertEqual(self.order.val_id, "V1")
        self.assertEqual(self.order.sync_attempts, 1)
        self.assertIsNotNone(self.order.next_sync_at)
        self.assertIn("HTTP 503", self.order.last_sync_error)
        self.assertIsNone(self.order.external_api_response)
        self.assertEqual(self.broadcast_payloads()[-1]["status"], "SYNC_PENDING")

    def test_replay_while_sync_pending_does_not_provision(self):
        with self.validator_returns(gateway_record()), self.provisioning_returns(status_code=503):
            apply_notification("S1", ipn())
        with self.validator_returns(gateway_record()), self.provisioning_returns() as post:
            result = apply_notification("S1", ipn())
        post.assert_not_called()
        self.assertEqual(result.outcome, CONFIRMED)
        self.assertEqual(result.status, "SYNC_PENDING")


class OptimisticConcurrencyTests(ReconciliationTestMixin, TestCase):
    def setUp(self):
        super().setUp()
        self.order = make_order()

    def test_lost_compare_and_set_is_retried(self):
        real = Order.objects.compare_and_set
        calls = []

        def racing(order, expected_status, **changes):
            if not calls:
                # Another writer touches the row between our read and write.
                Order.objects.filter(pk=order.pk).update(version=F("version") + 1)
            calls.append(expected_status)
            return real(order, expected_status, **changes)

        with patch.object(Order.objects, "compare_and_set", side_effect=racing), \
                self.validator_returns(gateway_record()), self.provisioning_returns():
            result = apply_notification("S1", ipn())

        self.assertEqual(result.status, "SUCCESS")
        self.assertEqual(calls, ["PENDING", "PENDING", "VALIDATED"])

    def test_concurrent_writer_with_same_outcome_is_idempotent(self):
        real = Order.objects.compare_and_set

        def racing(order, expected_status, **changes):
            Order.objects.filter(pk=order.pk).update(status="FAILED", version=F("version") + 1)
            return real(order, expected_status, **changes)

        query = {"element": [gateway_record(val_id="", status="FAILED")]}
        with patch.object(Order.objects, "compare_and_set", side_effect=racing), self.validator_returns(query):
            result = apply_notification("S1", ipn(val_id="", status="FAILED"))

        self.assertEqual(result.status, "FAILED")
        self.assertEqual(result.outcome, CONFIRMED)


class ConcurrentDeliveryTests(ReconciliationTestMixin, TransactionTestCase):
    """Duplicate deliveries on separate threads against the shared lease."""

    DELIVERIES = 6

    def setUp(self):
        super().setUp()
        make_order()

    def test_concurrent_duplicates_provision_once(self):
        results, errors = [], []
        guard = threading.Lock()
        start = threading.Barrier(self.DELIVERIES)
        others_done = threading.Event()

        def finished(item, into):
            with guard:
                into.append(item)
                if len(results) + len(errors) == self.DELIVERIES - 1:
                    others_done.set()

        def validator(*args, **kwargs):
            # The lock holder stays inside validation until every other delivery has answered.
            others_done.wait(timeout=10)
            return FakeResponse(200, gateway_record())

        def deliver():
            try:
                start.wait(timeout=10)
                finished(apply_notification("S1", ipn()), results)
            except Exception as e:
                finished(e, errors)
            finally:
                connection.close()

        with patch("payments.integrations.sslcommerz.requests.get", side_effect=validator) as get, \
                self.provisioning_returns() as post:
            threads = [threading.Thread(target=deliver) for _ in range(self.DELIVERIES)]
            for t in threads:
                t.start()
            for t in threads:
                t.join(timeout=30)

        self.assertEqual(errors, [])
        self.assertEqual(sorted(r.outcome for r in results), [APPLIED] + [DUPLICATE] * (self.DELIVERIES - 1))
        self.assertEqual(get.call_count, 1)
        self.assertEqual(post.call_count, 1)
        self.assertEqual(len(self.broadcasts()), 1)
        order = Order.objects.get()
        self.assertEqual(order.status, "SUCCESS")
        self.assertEqual(order.version, 2)
