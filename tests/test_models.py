"""
Tests for ledger records, cursors and pages
"""

import pytest
from datetime import datetime, timezone, timedelta

from family_ledger.models import (
    Account, Transaction, Direction, Page, PageCursor, Reconciliation,
    to_epoch_micros, from_epoch_micros
)


T0 = datetime(2024, 3, 1, 12, 0, tzinfo=timezone.utc)


def make_tx(minutes: int, sequence: int, amount: int = 100) -> Transaction:
    return Transaction(
        account_id="ACC001",
        subject_id="parent",
        timestamp=T0 + timedelta(minutes=minutes),
        amount=amount,
        description=f"tx {sequence}",
        sequence=sequence
    )


class TestRecords:
    """Test record validation at the store boundary"""
    
    def test_account_validation(self):
        assert Account("ACC001").balance == 0
        
        with pytest.raises(ValueError):
            Account("")
        with pytest.raises(ValueError):
            Account("ACC001", balance=1.5)
    
    def test_transaction_rejects_zero_and_float(self):
        with pytest.raises(ValueError, match="zero"):
            make_tx(0, 1, amount=0)
        with pytest.raises(ValueError):
            Transaction("ACC001", "parent", T0, 1.0, "float")
    
    def test_naive_timestamps_become_utc(self):
        tx = Transaction("ACC001", "parent", datetime(2024, 3, 1, 12, 0), 100, "naive")
        assert tx.timestamp == T0
        assert tx.timestamp.tzinfo is not None
    
    def test_transaction_dict_round_trip(self):
        tx = make_tx(5, 3, amount=-250)
        assert Transaction.from_dict(tx.to_dict()) == tx
        assert tx.is_debit and not tx.is_credit
    
    def test_epoch_micros_exact(self):
        value = datetime(2024, 3, 1, 12, 0, 0, 123456, tzinfo=timezone.utc)
        assert from_epoch_micros(to_epoch_micros(value)) == value
    
    def test_sort_key_breaks_ties_with_sequence(self):
        first = make_tx(0, 1)
        second = make_tx(0, 2)
        assert first.timestamp == second.timestamp
        assert first.sort_key < second.sort_key


class TestPageCursor:
    """Test cursor construction and navigation"""
    
    def test_directional_cursor_requires_boundary(self):
        with pytest.raises(ValueError, match="boundary"):
            PageCursor(Direction.FORWARD)
    
    def test_first_cursor(self):
        cursor = PageCursor.first()
        assert cursor.direction is Direction.NONE
        assert cursor.boundary is None
        assert cursor.page_index == 0
    
    def test_page_cursors(self):
        """Test that cursors carry the first/last rows of the page"""
        page = Page("ACC001", [make_tx(9, 10), make_tx(5, 6)],
                    is_last_page=False, is_first_page=False, page_index=1)
        
        forward = page.next_cursor()
        assert forward.direction is Direction.FORWARD
        assert forward.boundary == (T0 + timedelta(minutes=5), 6)
        assert forward.page_index == 2
        
        backward = page.previous_cursor()
        assert backward.direction is Direction.BACKWARD
        assert backward.boundary == (T0 + timedelta(minutes=9), 10)
        assert backward.page_index == 0
        
        assert page.first_timestamp == T0 + timedelta(minutes=9)
        assert page.last_timestamp == T0 + timedelta(minutes=5)
    
    def test_no_cursor_past_the_ends(self):
        page = Page("ACC001", [make_tx(0, 1)], is_last_page=True, is_first_page=True, page_index=0)
        assert page.next_cursor() is None
        assert page.previous_cursor() is None
        
        empty = Page("ACC001", [], is_last_page=True, is_first_page=False)
        assert empty.is_empty
        assert empty.next_cursor() is None
        assert empty.first_timestamp is None
    
    def test_cursors_are_immutable(self):
        cursor = PageCursor.first()
        with pytest.raises(AttributeError):
            cursor.page_index = 3


class TestReconciliation:
    
    def test_consistency(self):
        assert Reconciliation("ACC001", 300, 300, 2).is_consistent
        broken = Reconciliation("ACC001", 300, 200, 2)
        assert not broken.is_consistent
        assert broken.difference == 100
