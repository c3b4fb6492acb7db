"""
Reconciliation tests: expected balances from the ledger and sign-off rules.
"""

from datetime import timedelta

import pytest

from orderledger.services import payment_service, reconciliation_service
from orderledger.services.reconciliation_service import ReconciliationError
from orderledger.time_utils import utcnow


def _create(channel, **overrides):
    today = utcnow().date()
    params = dict(
        channel_id=channel.id,
        scope="method",
        scope_ref_id="card",
        range_start=today,
        range_end=today,
        declared_amounts=[{"account_code": "CLEARING_CARD", "amount_cents": 2000}],
    )
    params.update(overrides)
    return reconciliation_service.create_reconciliation(**params)


@pytest.fixture
def card_sale(order_factory, tshirt, settings):
    order = order_factory([(tshirt, 2)])
    order = payment_service.add_payment_to_order(order.id, method_code="card", settings=settings)
    payment_service.settle_payment(order.payments[0].id, settings=settings)
    return order


class TestCreate:
    def test_expected_comes_from_ledger(self, channel, card_sale):
        rec = _create(channel, declared_amounts=[{"account_code": "CLEARING_CARD", "amount_cents": 1900}])

        assert rec.status == "pending"
        assert rec.expected_balance_cents == 2000
        assert rec.actual_balance_cents == 1900
        assert rec.variance_amount_cents == -100
        assert [(a.account_code, a.expected_amount_cents) for a in rec.accounts] == [("CLEARING_CARD", 2000)]

    def test_actual_balance_overrides_declared_sum(self, channel, card_sale):
        rec = _create(channel, actual_balance=2000)

        assert rec.variance_amount_cents == 0

    def test_invalid_input(self, channel):
        today = utcnow().date()

        with pytest.raises(ReconciliationError):
            _create(channel, scope="petty-cash")
        with pytest.raises(ReconciliationError):
            _create(channel, range_start=today + timedelta(days=1))
        with pytest.raises(ReconciliationError):
            _create(channel, declared_amounts=[{"account_code": "NOPE", "amount_cents": 1}])
        with pytest.raises(ReconciliationError):
            _create(channel, declared_amounts=[])


class TestSignOff:
    def test_verify_is_idempotent(self, channel, card_sale):
        rec = _create(channel)

        first = reconciliation_service.verify_reconciliation(reconciliation_id=rec.id, actor_user_id=2)
        reviewed_at = first.reviewed_at
        second = reconciliation_service.verify_reconciliation(reconciliation_id=rec.id, actor_user_id=3)

        assert second.status == "verified"
        assert second.reviewed_by_user_id == 2
        assert second.reviewed_at == reviewed_at

    def test_flag_then_verify(self, channel, card_sale):
        rec = _create(channel)

        flagged = reconciliation_service.flag_reconciliation(
            reconciliation_id=rec.id, actor_user_id=2, notes="processor report missing"
        )
        assert flagged.status == "flagged"

        verified = reconciliation_service.verify_reconciliation(reconciliation_id=rec.id, actor_user_id=2)
        assert verified.status == "verified"

    def test_verified_cannot_be_flagged(self, channel, card_sale):
        rec = _create(channel)
        reconciliation_service.verify_reconciliation(reconciliation_id=rec.id, actor_user_id=2)

        with pytest.raises(ReconciliationError):
            reconciliation_service.flag_reconciliation(reconciliation_id=rec.id, actor_user_id=2)


class TestQueries:
    def test_list_by_variance(self, channel, card_sale):
        balanced = _create(channel)
        off = _create(channel, scope="bank", scope_ref_id="stmt-1",
                      declared_amounts=[{"account_code": "BANK_MAIN", "amount_cents": 50}])

        assert [r.id for r in reconciliation_service.list_reconciliations(channel_id=channel.id, has_variance=True)] == [
            off.id
        ]
        assert [r.id for r in reconciliation_service.list_reconciliations(channel_id=channel.id, scope="method")] == [
            balanced.id
        ]

    def test_status_reports_scopes(self, channel, card_sale):
        rec = _create(channel)

        status = reconciliation_service.get_reconciliation_status(
            channel_id=channel.id, period_end_date=utcnow().date()
        )

        assert status["canClose"] is False
        assert status["scopes"][0]["scope"] == "method"
        assert status["scopes"][0]["pending"] == 1

        reconciliation_service.verify_reconciliation(reconciliation_id=rec.id, actor_user_id=2)
        status = reconciliation_service.get_reconciliation_status(
            channel_id=channel.id, period_end_date=utcnow().date()
        )
        assert status["canClose"] is True
        assert status["missingReconciliations"] == []
