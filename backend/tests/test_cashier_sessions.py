"""
Cashier Session Tests

Verifies:
- One open session per channel
- Opening/closing balances limited to cashier-controlled accounts
- Expected cash, variances and blind counts
- Closing produces the summary and the session reconciliation
"""

import pytest

from orderledger.services import cashier_service
from orderledger.services.cashier_service import CashierSessionError
from orderledger.services.ledger_service import account_balance
from orderledger.services.reconciliation_service import SCOPE_CASH_SESSION, find_reconciliation


def _open(channel, settings, cash=5000, **kwargs):
    return cashier_service.open_cashier_session(
        channel_id=channel.id,
        cashier_user_id=1,
        opening_balances=[{"account_code": "CASH_ON_HAND", "amount_cents": cash}],
        settings=settings,
        **kwargs,
    )


class TestOpenSession:
    def test_open_session(self, channel, settings):
        session = _open(channel, settings, notes="morning shift")

        assert session.status == "Open"
        assert session.opening_balances() == {"CASH_ON_HAND": 5000}
        assert cashier_service.get_current_session(channel.id).id == session.id
        assert cashier_service.expected_cash(session) == 5000

    def test_second_open_session_is_rejected(self, channel, settings):
        _open(channel, settings)

        with pytest.raises(CashierSessionError):
            _open(channel, settings)

    def test_other_channel_can_open_its_own(self, channel, other_channel, settings):
        _open(channel, settings)

        session = cashier_service.open_cashier_session(
            channel_id=other_channel.id, cashier_user_id=3, opening_balances=[], settings=settings
        )

        assert session.channel_id == other_channel.id

    def test_non_cashier_account_is_rejected(self, channel, settings):
        with pytest.raises(CashierSessionError):
            cashier_service.open_cashier_session(
                channel_id=channel.id,
                cashier_user_id=1,
                opening_balances=[{"account_code": "BANK_MAIN", "amount_cents": 100}],
                settings=settings,
            )

    def test_opening_count_required(self, channel, settings):
        with pytest.raises(CashierSessionError):
            _open(channel, settings.with_overrides(require_opening_count=True))

        session = cashier_service.open_cashier_session(
            channel_id=channel.id,
            cashier_user_id=1,
            opening_balances=[
                {"account_code": "CASH_ON_HAND", "amount_cents": 5000},
                {"account_code": "CLEARING_MPESA", "amount_cents": 0},
            ],
            settings=settings.with_overrides(require_opening_count=True),
        )
        assert session.status == "Open"


class TestCashCounts:
    def test_count_within_threshold(self, channel, settings):
        session = _open(channel, settings)

        result = cashier_service.record_cash_count(
            session_id=session.id, count_type="interim", declared_cash=4950, actor_user_id=1, settings=settings
        )

        assert result.count.variance_cents == -50
        assert result.has_variance is False
        assert result.variance_hidden is False

    def test_blind_count_hides_variance_from_cashier(self, channel, settings):
        session = _open(channel, settings)

        result = cashier_service.record_cash_count(
            session_id=session.id, count_type="interim", declared_cash=4800, actor_user_id=1, settings=settings
        )

        assert result.has_variance is True
        assert result.variance_hidden is True
        payload = result.to_dict()
        assert payload["count"]["variance"] is None
        # Variance is booked, so the next count measures from the counted amount.
        assert account_balance(channel.id, "CASH_OVER_SHORT") == 200
        assert cashier_service.expected_cash(session) == 4800

    def test_manager_sees_variance(self, channel, settings):
        session = _open(channel, settings)

        result = cashier_service.record_cash_count(
            session_id=session.id,
            count_type="interim",
            declared_cash=5300,
            actor_user_id=2,
            actor_role="manager",
            settings=settings,
        )

        assert result.has_variance is True
        assert result.variance_hidden is False
        assert result.to_dict()["count"]["variance"] == "300"

    def test_invalid_count_type(self, channel, settings):
        session = _open(channel, settings)

        with pytest.raises(CashierSessionError):
            cashier_service.record_cash_count(
                session_id=session.id, count_type="surprise", declared_cash=5000, settings=settings
            )

    def test_variance_review_queue(self, channel, settings):
        session = _open(channel, settings)
        result = cashier_service.record_cash_count(
            session_id=session.id, count_type="interim", declared_cash=4000, settings=settings
        )
        count_id = result.count.id

        cashier_service.explain_variance(count_id=count_id, reason="paid a courier from the drawer")
        assert [c.id for c in cashier_service.get_pending_variance_reviews(channel_id=channel.id, settings=settings)] == [
            count_id
        ]

        count = cashier_service.review_cash_count(count_id=count_id, notes="receipt attached", actor_user_id=2)

        assert count.variance_reason == "paid a courier from the drawer"
        assert count.reviewed_by_user_id == 2
        assert cashier_service.get_pending_variance_reviews(channel_id=channel.id, settings=settings) == []


class TestCloseSession:
    def test_close_builds_summary_and_reconciliation(self, channel, settings, placed_order_factory, tshirt):
        session = _open(channel, settings)
        placed_order_factory([(tshirt, 2)], method="cash")

        summary = cashier_service.close_cashier_session(
            session_id=session.id,
            closing_balances=[
                {"account_code": "CASH_ON_HAND", "amount_cents": 7000},
                {"account_code": "CLEARING_MPESA", "amount_cents": 0},
            ],
            actor_user_id=1,
            settings=settings,
        )

        assert summary.status == "Closed"
        assert summary.opening_float == 5000
        assert summary.cash_total == 2000
        assert summary.total_collected == 2000
        assert summary.closing_declared == 7000
        assert summary.variance == 0
        assert summary.to_dict()["ledgerTotals"]["cashTotal"] == "2000"
        assert cashier_service.get_current_session(channel.id) is None

        rec = find_reconciliation(channel.id, SCOPE_CASH_SESSION, session.id)
        assert rec.status == "pending"
        assert rec.expected_balance_cents == 7000
        assert rec.actual_balance_cents == 7000
        assert rec.variance_amount_cents == 0

    def test_closing_balances_must_cover_controlled_accounts(self, channel, settings):
        session = _open(channel, settings)

        with pytest.raises(CashierSessionError):
            cashier_service.close_cashier_session(
                session_id=session.id,
                closing_balances=[{"account_code": "CASH_ON_HAND", "amount_cents": 5000}],
                settings=settings,
            )

        assert cashier_service.get_session(session.id).status == "Open"

    def test_short_drawer_at_close(self, channel, settings):
        session = _open(channel, settings)

        summary = cashier_service.close_cashier_session(
            session_id=session.id,
            closing_balances=[
                {"account_code": "CASH_ON_HAND", "amount_cents": 4500},
                {"account_code": "CLEARING_MPESA", "amount_cents": 0},
            ],
            settings=settings,
        )

        assert summary.variance == -500
        counts = cashier_service.get_session_cash_counts(session.id)
        assert [(c.count_type, c.variance_cents) for c in counts] == [("closing", -500)]

    def test_closed_session_cannot_be_closed_again(self, channel, settings):
        session = _open(channel, settings, cash=0)
        balances = [
            {"account_code": "CASH_ON_HAND", "amount_cents": 0},
            {"account_code": "CLEARING_MPESA", "amount_cents": 0},
        ]
        cashier_service.close_cashier_session(session_id=session.id, closing_balances=balances, settings=settings)

        with pytest.raises(CashierSessionError):
            cashier_service.close_cashier_session(session_id=session.id, closing_balances=balances, settings=settings)
