"""
Double-entry ledger tests.
"""

from datetime import timedelta

import pytest

from orderledger.extensions import db
from orderledger.models import JournalEntry
from orderledger.services.ledger_service import (
    LedgerIntegrityError,
    account_balance,
    credit,
    debit,
    find_unbalanced_entries,
    is_reversed,
    list_entries,
    post_journal_entry,
    reverse_entry,
    signed,
)
from orderledger.time_utils import utcnow


def _post(channel, source_id="1", lines=None, **kwargs):
    return post_journal_entry(
        channel_id=channel.id,
        source_type="manual",
        source_id=source_id,
        lines=lines if lines is not None else [debit("BANK_MAIN", 500), credit("CASH_ON_HAND", 500)],
        **kwargs,
    )


class TestPosting:
    def test_balanced_entry(self, channel):
        entry = _post(channel, memo="bank deposit")
        db.session.commit()

        assert entry.total_debit_cents == entry.total_credit_cents == 500
        assert account_balance(channel.id, "BANK_MAIN") == 500
        assert account_balance(channel.id, "CASH_ON_HAND") == -500

    def test_unbalanced_entry_is_rejected(self, channel):
        with pytest.raises(LedgerIntegrityError):
            _post(channel, lines=[debit("BANK_MAIN", 500), credit("CASH_ON_HAND", 400)])

        assert db.session.query(JournalEntry).count() == 0

    def test_unknown_account_is_rejected(self, channel):
        with pytest.raises(LedgerIntegrityError):
            _post(channel, lines=[debit("PETTY_CASH", 500), credit("CASH_ON_HAND", 500)])

    def test_negative_amount_is_rejected(self, channel):
        with pytest.raises(LedgerIntegrityError):
            _post(channel, lines=[debit("BANK_MAIN", -500), credit("CASH_ON_HAND", -500)])

    def test_same_source_posts_once(self, channel):
        first = _post(channel)
        second = _post(channel, lines=[debit("BANK_MAIN", 900), credit("CASH_ON_HAND", 900)])
        db.session.commit()

        assert second.id == first.id
        assert account_balance(channel.id, "BANK_MAIN") == 500

    def test_zero_lines_post_nothing(self, channel):
        assert _post(channel, lines=[signed("BANK_MAIN", 0), signed("CASH_ON_HAND", 0)]) is None

    def test_balance_date_range(self, channel):
        today = utcnow().date()
        _post(channel, source_id="old", entry_date=today - timedelta(days=10))
        _post(channel, source_id="new")
        db.session.commit()

        assert account_balance(channel.id, "BANK_MAIN", start=today) == 500
        assert account_balance(channel.id, "BANK_MAIN", end=today - timedelta(days=1)) == 500
        assert account_balance(channel.id, "BANK_MAIN") == 1000


class TestReversal:
    def test_reverse_entry_mirrors_lines(self, channel):
        entry = _post(channel)
        reversal = reverse_entry(entry)
        db.session.commit()

        assert reversal.reversal_of_id == entry.id
        assert reversal.source_type == "reversal"
        assert [(l.account_code, l.debit_cents, l.credit_cents) for l in reversal.lines] == [
            ("BANK_MAIN", 0, 500),
            ("CASH_ON_HAND", 500, 0),
        ]
        assert is_reversed(entry) is True
        assert account_balance(channel.id, "BANK_MAIN") == 0
        assert find_unbalanced_entries(channel.id) == []
        assert [e.source_type for e in list_entries(channel_id=channel.id)] == ["manual", "reversal"]

    def test_order_entries_stay_balanced(self, placed_order_factory, taxed_variant):
        order = placed_order_factory([(taxed_variant, 2)])

        entries = list_entries(channel_id=order.channel_id, order_id=order.id)

        assert [e.source_type for e in entries] == ["order_placed", "payment"]
        assert account_balance(order.channel_id, "TAX_PAYABLE") == -320
        assert account_balance(order.channel_id, "SALES") == -2000
        assert find_unbalanced_entries() == []
