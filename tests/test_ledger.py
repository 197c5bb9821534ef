"""
Tests for the Ledger Store

Balance derivation, overdraft rejection, reference idempotency and
serialization of concurrent writers.
"""

import threading

import pytest

from core.errors import InsufficientCredits, RecordValidationError
from core.types import LedgerOutcome, TransactionType
from persistence.models import CreditTransaction


def _count_rows(db, tenant_id):
    return db.execute(
        "SELECT COUNT(*) AS n FROM credit_transactions WHERE tenant_id = ?", (tenant_id,)
    )[0]["n"]


class TestApplyTransaction:
    """Test single transaction application."""

    def test_credit_increases_balance(self, ledger):
        result = ledger.apply_transaction("t1", 1000, TransactionType.PURCHASE, "Credit purchase")

        assert result.outcome is LedgerOutcome.APPLIED
        assert result.balance == 1000
        assert ledger.get_balance("t1") == 1000

    def test_debit_within_balance(self, ledger):
        ledger.apply_transaction("t1", 100, TransactionType.PURCHASE, "Credit purchase")
        result = ledger.apply_transaction("t1", -40, TransactionType.SMS_CHARGE, "SMS charge")

        assert result.balance == 60
        assert result.transaction.amount == -40

    def test_overdraw_rejected_without_mutation(self, ledger, db):
        ledger.apply_transaction("t1", 50, TransactionType.PURCHASE, "Credit purchase")

        with pytest.raises(InsufficientCredits) as exc:
            ledger.apply_transaction("t1", -80, TransactionType.CALL_CHARGE, "Call charge")

        assert exc.value.balance == 50
        assert exc.value.required == 80
        assert ledger.get_balance("t1") == 50
        assert _count_rows(db, "t1") == 1

    def test_allow_negative_permits_overdraft(self, ledger):
        ledger.apply_transaction("t1", 10, TransactionType.PURCHASE, "Credit purchase")
        result = ledger.apply_transaction(
            "t1", -30, TransactionType.CALL_CHARGE, "Call charge", allow_negative=True
        )

        assert result.applied
        assert result.balance == -20

    def test_zero_amount_rejected(self, ledger, db):
        with pytest.raises(ValueError):
            ledger.apply_transaction("t1", 0, TransactionType.ADJUSTMENT, "Nothing")
        assert _count_rows(db, "t1") == 0

    def test_tenants_are_isolated(self, ledger):
        ledger.apply_transaction("t1", 500, TransactionType.PURCHASE, "Credit purchase")
        ledger.apply_transaction("t2", 70, TransactionType.BONUS, "Welcome bonus")

        assert ledger.get_balance("t1") == 500
        assert ledger.get_balance("t2") == 70
        assert ledger.get_balance("t3") == 0


class TestReferenceIdempotency:
    """A (tenant, type, reference) triple is applied at most once."""

    def test_duplicate_reference_is_noop(self, ledger, db):
        first = ledger.apply_transaction(
            "t1", 1000, TransactionType.PURCHASE, "Credit purchase", reference_id="pi_1"
        )
        second = ledger.apply_transaction(
            "t1", 1000, TransactionType.PURCHASE, "Credit purchase", reference_id="pi_1"
        )

        assert first.outcome is LedgerOutcome.APPLIED
        assert second.outcome is LedgerOutcome.DUPLICATE_EVENT
        assert second.transaction.id == first.transaction.id
        assert second.balance == 1000
        assert _count_rows(db, "t1") == 1

    def test_duplicate_debit_not_rechecked_against_balance(self, ledger):
        ledger.apply_transaction("t1", 20, TransactionType.PURCHASE, "Credit purchase")
        ledger.apply_transaction("t1", -15, TransactionType.SMS_CHARGE, "SMS", reference_id="msg_1")

        replay = ledger.apply_transaction("t1", -15, TransactionType.SMS_CHARGE, "SMS", reference_id="msg_1")

        assert replay.outcome is LedgerOutcome.DUPLICATE_EVENT
        assert ledger.get_balance("t1") == 5

    def test_same_reference_different_type_applies(self, ledger):
        ledger.apply_transaction("t1", 100, TransactionType.PURCHASE, "Credit purchase", reference_id="x1")
        result = ledger.apply_transaction("t1", 5, TransactionType.BONUS, "Bonus", reference_id="x1")

        assert result.applied
        assert ledger.get_balance("t1") == 105

    def test_same_reference_different_tenant_applies(self, ledger):
        ledger.apply_transaction("t1", 100, TransactionType.PURCHASE, "Credit purchase", reference_id="pi_9")
        result = ledger.apply_transaction("t2", 100, TransactionType.PURCHASE, "Credit purchase", reference_id="pi_9")

        assert result.applied

    def test_concurrent_replays_apply_once(self, ledger, db):
        outcomes = []
        lock = threading.Lock()

        def deliver():
            result = ledger.apply_transaction(
                "t1", 1000, TransactionType.PURCHASE, "Credit purchase", reference_id="pi_race"
            )
            with lock:
                outcomes.append(result.outcome)

        threads = [threading.Thread(target=deliver) for _ in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert outcomes.count(LedgerOutcome.APPLIED) == 1
        assert outcomes.count(LedgerOutcome.DUPLICATE_EVENT) == 7
        assert ledger.get_balance("t1") == 1000


class TestBalanceDerivation:
    """Balance is always the sum of the tenant's transactions."""

    def test_balance_equals_sum_of_rows(self, ledger, db):
        ledger.apply_transaction("t1", 1000, TransactionType.PURCHASE, "Credit purchase")
        ledger.apply_transaction("t1", -45, TransactionType.CALL_CHARGE, "Call", reference_id="c1")
        ledger.apply_transaction("t1", -5, TransactionType.SMS_CHARGE, "SMS", reference_id="m1")
        ledger.apply_transaction("t1", -2000, TransactionType.PHONE_NUMBER_CHARGE, "Overdraft", allow_negative=True)
        ledger.apply_transaction("t1", 200, TransactionType.REFUND, "Refund")

        rows = db.execute("SELECT amount FROM credit_transactions WHERE tenant_id = ?", ("t1",))
        assert ledger.get_balance("t1") == sum(r["amount"] for r in rows) == -850

    def test_concurrent_debits_never_overdraw(self, ledger):
        ledger.apply_transaction("t1", 500, TransactionType.PURCHASE, "Credit purchase")
        results = []
        lock = threading.Lock()

        def debit(i):
            try:
                ledger.apply_transaction("t1", -100, TransactionType.SMS_CHARGE, "SMS", reference_id=f"m{i}")
                ok = True
            except InsufficientCredits:
                ok = False
            with lock:
                results.append(ok)

        threads = [threading.Thread(target=debit, args=(i,)) for i in range(10)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert results.count(True) == 5
        assert ledger.get_balance("t1") == 0

    def test_list_transactions_newest_first(self, ledger):
        for amount in (10, 20, 30):
            ledger.apply_transaction("t1", amount, TransactionType.BONUS, f"Bonus {amount}")

        transactions = ledger.list_transactions("t1")
        assert [t.amount for t in transactions] == [30, 20, 10]
        assert len(ledger.list_transactions("t1", limit=2)) == 2


class TestAdminAdjust:
    """Operator adjustments."""

    def test_admin_credit(self, ledger):
        result = ledger.admin_adjust("t1", 250, TransactionType.BONUS, "Goodwill")

        assert result.applied
        assert result.transaction.description == "[ADMIN] Goodwill"
        assert result.transaction.reference_id.startswith("admin_")
        assert ledger.get_balance("t1") == 250

    def test_admin_debit_refused_without_override(self, ledger):
        ledger.apply_transaction("t1", 100, TransactionType.PURCHASE, "Credit purchase")

        with pytest.raises(InsufficientCredits) as exc:
            ledger.admin_adjust("t1", -500, TransactionType.PENALTY, "Chargeback")

        assert str(exc.value) == "Cannot deduct 500 credits. Current balance: 100"
        assert ledger.get_balance("t1") == 100

    def test_admin_debit_with_override(self, ledger):
        ledger.apply_transaction("t1", 100, TransactionType.PURCHASE, "Credit purchase")
        result = ledger.admin_adjust("t1", -500, TransactionType.PENALTY, "Chargeback", override=True)

        assert result.balance == -400

    def test_non_admin_type_rejected(self, ledger):
        with pytest.raises(ValueError):
            ledger.admin_adjust("t1", 100, TransactionType.PURCHASE, "Free credits")


class TestRecordValidation:
    """Rows are validated at the data-layer boundary."""

    def test_unknown_type_rejected(self):
        row = {
            "id": "txn_1",
            "tenant_id": "t1",
            "amount": 10,
            "type": "mystery",
            "description": "?",
            "created_at": "2026-01-01T00:00:00.000000+00:00",
        }
        with pytest.raises(RecordValidationError):
            CreditTransaction.from_row(row)

    def test_missing_tenant_rejected(self):
        row = {
            "id": "txn_1",
            "amount": 10,
            "type": "bonus",
            "description": "?",
            "created_at": "2026-01-01T00:00:00.000000+00:00",
        }
        with pytest.raises(RecordValidationError):
            CreditTransaction.from_row(row)
