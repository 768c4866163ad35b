"""
Tests for money handling
"""

from decimal import Decimal

import pytest

from loan_servicing.currency import Currency, Money, floor_whole, round_whole, to_decimal


class TestRounding:
    def test_round_half_up(self):
        assert round_whole(Decimal('270.5')) == Decimal('271')
        assert round_whole(Decimal('270.49')) == Decimal('270')
        assert round_whole(Decimal('902.6')) == Decimal('903')

    def test_floor_whole(self):
        assert floor_whole(Decimal('2.99')) == 2
        assert floor_whole(Decimal('0')) == 0


class TestToDecimal:
    def test_accepts_int_and_str(self):
        assert to_decimal(100000) == Decimal('100000')
        assert to_decimal("15.5") == Decimal('15.5')

    @pytest.mark.parametrize("value", [1.5, True])
    def test_rejects_float_and_bool(self, value):
        with pytest.raises(TypeError):
            to_decimal(value)


class TestMoney:
    def test_precision(self):
        assert Money(Decimal('10.555'), Currency.USD).amount == Decimal('10.56')
        assert Money(Decimal('1000.5'), Currency.JPY).amount == Decimal('1001')

    def test_minor_units(self):
        money = Money(Decimal('9026'), Currency.PKR)
        assert money.to_minor_units() == 902600
        assert Money.from_minor_units(902600, Currency.PKR) == money

    def test_currency_mismatch(self):
        with pytest.raises(ValueError):
            Money(Decimal('1'), Currency.PKR) + Money(Decimal('1'), Currency.USD)

    def test_from_code(self):
        assert Currency.from_code("pkr") == Currency.PKR
        with pytest.raises(ValueError):
            Currency.from_code("XXX")

    def test_to_string(self):
        assert Money(Decimal('108312'), Currency.PKR).to_string() == "PKR 108,312.00"
