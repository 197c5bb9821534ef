"""
Tests for the Auto-Recharge Controller

Threshold, package selection, the cooldown claim and sweep isolation.
"""

import threading
from datetime import timedelta

import pytest

from billing.auto_recharge import AutoRechargeController
from core.authorizer import DebitAuthorizer
from core.errors import NotFoundError, PaymentProviderError
from core.types import PaymentStatus, TransactionType
from persistence.models import utc_now


@pytest.fixture
def controller(db, ledger, reconciler):
    return AutoRechargeController(db, ledger, reconciler, cooldown=timedelta(hours=1))


def _enable(controller, reconciler, processor, tenant_id="t1", external_id="pm_card_visa",
            minimum_balance=100, recharge_amount=2000):
    processor.add_card(external_id)
    method = reconciler.add_payment_method(tenant_id, external_id)
    controller.update_settings(
        tenant_id,
        enabled=True,
        minimum_balance=minimum_balance,
        recharge_amount=recharge_amount,
        payment_method_id=method.id,
    )
    return method


def _fund(ledger, tenant_id, amount):
    ledger.apply_transaction(tenant_id, amount, TransactionType.PURCHASE, "Credit purchase")


class TestSettings:
    """Tenant-editable configuration."""

    def test_enable_requires_all_fields(self, controller):
        with pytest.raises(ValueError) as exc:
            controller.update_settings("t1", enabled=True, minimum_balance=100)

        assert "required when enabling auto-recharge" in str(exc.value)

    def test_foreign_method_rejected(self, controller, reconciler, processor):
        processor.add_card("pm_other")
        method = reconciler.add_payment_method("t2", "pm_other")

        with pytest.raises(NotFoundError):
            controller.update_settings(
                "t1", enabled=True, minimum_balance=100, recharge_amount=1000, payment_method_id=method.id
            )

    def test_disable_keeps_values(self, controller, reconciler, processor):
        _enable(controller, reconciler, processor)

        settings = controller.update_settings("t1", enabled=False)

        assert not settings.enabled
        assert settings.minimum_balance == 100
        assert settings.recharge_amount == 2000


class TestEvaluate:
    """Single-tenant decisions."""

    def test_disabled(self, controller):
        assert controller.evaluate("t1").reason == "disabled"

    def test_above_minimum(self, controller, reconciler, processor, ledger):
        _enable(controller, reconciler, processor)
        _fund(ledger, "t1", 500)

        decision = controller.evaluate("t1")

        assert not decision.triggered
        assert decision.reason == "above_minimum"
        assert processor.charge_calls == []

    def test_charges_smallest_covering_package(self, controller, reconciler, processor, ledger):
        _enable(controller, reconciler, processor, recharge_amount=2000)
        _fund(ledger, "t1", 50)

        decision = controller.evaluate("t1")

        assert decision.triggered
        assert decision.reason == "charged"
        assert decision.balance == 2550
        record = decision.purchase.record
        assert record.is_auto_recharge
        assert record.status is PaymentStatus.SUCCEEDED
        assert record.description == "Auto-recharge: Growth - 2500 credits"
        assert processor.charge_calls[0]["off_session"] is True
        assert controller.get_settings("t1").last_triggered_at is not None

    def test_balance_equal_to_minimum_triggers(self, controller, reconciler, processor, ledger):
        _enable(controller, reconciler, processor, minimum_balance=100)
        _fund(ledger, "t1", 100)

        assert controller.evaluate("t1").triggered

    def test_no_covering_package(self, controller, reconciler, processor):
        _enable(controller, reconciler, processor, recharge_amount=50000)

        decision = controller.evaluate("t1")

        assert decision.reason == "no_package"
        assert controller.get_settings("t1").last_triggered_at is None


class TestCooldown:
    """At most one automatic charge per tenant per window."""

    def test_second_trigger_within_window(self, controller, reconciler, processor, ledger):
        _enable(controller, reconciler, processor, minimum_balance=5000, recharge_amount=1000)
        now = utc_now()

        first = controller.evaluate("t1", now=now)
        second = controller.evaluate("t1", now=now + timedelta(minutes=30))

        assert first.triggered
        assert second.reason == "cooldown"
        assert len(processor.charge_calls) == 1

    def test_trigger_after_window(self, controller, reconciler, processor, ledger):
        _enable(controller, reconciler, processor, minimum_balance=5000, recharge_amount=1000)
        now = utc_now()

        controller.evaluate("t1", now=now)
        later = controller.evaluate("t1", now=now + timedelta(hours=1, minutes=1))

        assert later.triggered
        assert ledger.get_balance("t1") == 2000

    def test_concurrent_triggers_charge_once(self, controller, reconciler, processor, ledger):
        _enable(controller, reconciler, processor, recharge_amount=1000)
        decisions = []
        lock = threading.Lock()

        def trigger():
            decision = controller.evaluate("t1", triggered_by="usage")
            with lock:
                decisions.append(decision)

        threads = [threading.Thread(target=trigger) for _ in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert sum(1 for d in decisions if d.triggered) == 1
        assert all(d.reason == "cooldown" for d in decisions if not d.triggered)
        assert len(processor.charge_calls) == 1
        assert ledger.get_balance("t1") == 1000

    def test_decline_keeps_window_claimed(self, controller, reconciler, processor, ledger):
        _enable(controller, reconciler, processor, recharge_amount=1000)
        processor.declined_methods.add("pm_card_visa")

        with pytest.raises(PaymentProviderError):
            controller.evaluate("t1")

        assert controller.evaluate("t1").reason == "cooldown"
        assert controller.get_settings("t1").enabled
        assert ledger.get_balance("t1") == 0


class TestTriggers:
    """Usage-driven and batch triggers."""

    def test_usage_settlement_triggers_recharge(self, controller, reconciler, processor, ledger):
        _enable(controller, reconciler, processor, minimum_balance=100, recharge_amount=1000)
        _fund(ledger, "t1", 110)
        authorizer = DebitAuthorizer(ledger)
        authorizer.add_observer(controller.on_balance_changed)

        authorizer.settle_call("t1", "call_1", duration_seconds=45)

        assert ledger.get_balance("t1") == 1095
        assert len(processor.charge_calls) == 1

    def test_sweep_isolates_failures(self, controller, reconciler, processor, ledger):
        _enable(controller, reconciler, processor, tenant_id="t1", external_id="pm_ok", recharge_amount=1000)
        _enable(controller, reconciler, processor, tenant_id="t2", external_id="pm_bad", recharge_amount=1000)
        _enable(controller, reconciler, processor, tenant_id="t3", external_id="pm_rich", recharge_amount=1000)
        _fund(ledger, "t3", 5000)
        processor.declined_methods.add("pm_bad")

        report = controller.sweep()

        assert report.processed == 3
        assert report.recharged == 1
        assert report.skipped == 1
        assert report.failed == 1
        assert report.errors[0]["tenant_id"] == "t2"
        assert ledger.get_balance("t1") == 1000
