"""
Test suite for currency module

Money must round to currency precision on construction and refuse to mix
currencies. Interest amounts are floored, never rounded up.
"""

import pytest
from decimal import Decimal

from branch_ledger.currency import Money, Currency, to_decimal, floor_to_precision


class TestMoney:
    """Test Money class operations"""

    def test_money_creation(self):
        money = Money(Decimal('100.50'))
        assert money.amount == Decimal('100.50')
        assert money.currency == Currency.LKR

        # Half-up rounding to two places
        assert Money(Decimal('583.335')).amount == Decimal('583.34')
        assert Money(Decimal('583.3333')).amount == Decimal('583.33')

        # JPY has no minor unit
        assert Money(Decimal('100.7'), Currency.JPY).amount == Decimal('101')

    def test_money_from_string_and_int(self):
        assert Money('250').amount == Decimal('250.00')
        assert Money(7).amount == Decimal('7.00')

    def test_money_arithmetic(self):
        a = Money(Decimal('100.50'))
        b = Money(Decimal('50.25'))

        assert (a + b).amount == Decimal('150.75')
        assert (a - b).amount == Decimal('50.25')
        assert (-a).amount == Decimal('-100.50')

    def test_money_comparison(self):
        a = Money(Decimal('10'))
        b = Money(Decimal('20'))
        assert a < b
        assert b >= a
        assert a == Money(Decimal('10.00'))

    def test_currency_mismatch(self):
        with pytest.raises(ValueError):
            Money(Decimal('1'), Currency.LKR) + Money(Decimal('1'), Currency.USD)

    def test_sign_helpers(self):
        assert Money.zero().is_zero()
        assert Money('0.01').is_positive()
        assert Money('-0.01').is_negative()

    def test_to_string(self):
        assert Money(Decimal('1234567.5')).to_string() == "LKR 1,234,567.50"


class TestDecimalHelpers:

    def test_to_decimal_goes_through_str(self):
        assert to_decimal(0.1) == Decimal('0.1')
        assert to_decimal('12.345') == Decimal('12.345')

    def test_floor_to_precision(self):
        assert floor_to_precision(Decimal('416.6666'), Currency.LKR) == Decimal('416.66')
        assert floor_to_precision(Decimal('416.6699'), Currency.LKR) == Decimal('416.66')
