"""
tests/unit/test_split_calculator.py: Unit tests for split_calculator.

What this file proves:
  - Each member pays item MRP + proportional tax − proportional discount,
    every share rounded half-up to 2 dp independently
  - Without reconciliation Σ final_amount may drift from the order total by
    at most 0.01 per member; with reconciliation the last paying split
    absorbs it and no final amount goes below zero
  - Both properties hold across a seeded sweep of random orders
  - Floats are read through str(), booleans and non-finite values are rejected
  - Every invalid input raises InvalidInputError (400) with the right code

Unit test constraints:
  - No database, no Flask, no auth context. Pure Decimal arithmetic.
"""

from __future__ import annotations

import random
from decimal import Decimal
from types import SimpleNamespace

import pytest

from gatherpay.app.errors import ErrorCode, InvalidInputError
from gatherpay.app.services.split_calculator import (
    OrderSplit,
    calculate_split,
    round2,
    split_total,
)


def _items(*mrps, start_user_id: int = 1) -> list[dict]:
    return [
        {"user_id": start_user_id + i, "item_mrp": Decimal(str(mrp))}
        for i, mrp in enumerate(mrps)
    ]


def _finals(splits: list[OrderSplit]) -> list[Decimal]:
    return [s.final_amount for s in splits]


# ── round2 ─────────────────────────────────────────────────────────────────

class TestRound2:

    def test_half_rounds_up(self):
        assert round2(Decimal("0.125")) == Decimal("0.13")
        assert round2(Decimal("2.675")) == Decimal("2.68")

    def test_below_half_rounds_down(self):
        assert round2(Decimal("0.124999")) == Decimal("0.12")

    def test_always_two_places(self):
        assert str(round2(Decimal("5"))) == "5.00"


# ── Happy path ─────────────────────────────────────────────────────────────

class TestProportionalSplit:

    def test_reference_order(self):
        """Items 100/200/300, tax 30, discount 15."""
        splits = calculate_split(_items(100, 200, 300), Decimal("30"), Decimal("15"))

        assert [s.tax_share for s in splits] == [Decimal("5.00"), Decimal("10.00"), Decimal("15.00")]
        assert [s.discount_share for s in splits] == [Decimal("2.50"), Decimal("5.00"), Decimal("7.50")]
        assert _finals(splits) == [Decimal("102.50"), Decimal("205.00"), Decimal("307.50")]
        assert split_total(splits) == Decimal("615.00")

    def test_input_order_is_kept(self):
        items = [
            {"user_id": 9, "item_mrp": Decimal("10")},
            {"user_id": 3, "item_mrp": Decimal("30")},
        ]
        splits = calculate_split(items, Decimal("0"), Decimal("0"))
        assert [s.user_id for s in splits] == [9, 3]

    def test_splits_start_unapproved(self):
        splits = calculate_split(_items(50, 50), Decimal("10"), Decimal("0"))
        assert all(s.approved is False for s in splits)

    def test_single_item_takes_everything(self):
        splits = calculate_split(_items(80), Decimal("12.34"), Decimal("2.34"))
        assert _finals(splits) == [Decimal("90.00")]

    def test_zero_mrp_item_pays_nothing(self):
        splits = calculate_split(_items(100, 0), Decimal("10"), Decimal("5"))
        assert _finals(splits) == [Decimal("105.00"), Decimal("0.00")]

    def test_discount_equal_to_order_value_is_allowed(self):
        splits = calculate_split(_items(60, 40), Decimal("10"), Decimal("110"))
        assert split_total(splits) == Decimal("0.00")

    def test_reads_order_item_like_objects(self):
        items = [
            SimpleNamespace(user_id=1, item_mrp=Decimal("100.00")),
            SimpleNamespace(user_id=2, item_mrp=Decimal("300.00")),
        ]
        splits = calculate_split(items, Decimal("40"), Decimal("0"))
        assert _finals(splits) == [Decimal("110.00"), Decimal("330.00")]

    def test_to_dict(self):
        split = calculate_split(_items(100), Decimal("0"), Decimal("0"))[0]
        assert split.to_dict() == {
            "user_id": 1,
            "original_amount": Decimal("100"),
            "tax_share": Decimal("0.00"),
            "discount_share": Decimal("0.00"),
            "final_amount": Decimal("100.00"),
            "approved": False,
        }


# ── Rounding drift ─────────────────────────────────────────────────────────

class TestRoundingDrift:

    def test_drift_is_kept_by_default(self):
        # 1.00 tax over three equal items: 0.33 each, one paisa lost.
        splits = calculate_split(_items(1, 1, 1), Decimal("1.00"), Decimal("0"))

        assert _finals(splits) == [Decimal("1.33")] * 3
        assert split_total(splits) == Decimal("3.99")

    def test_drift_is_bounded_by_one_paisa_per_member(self):
        items = _items("33.33", "33.33", "33.34", "0.01", "12.99")
        tax, discount = Decimal("7.77"), Decimal("3.03")
        expected = sum(i["item_mrp"] for i in items) + tax - discount

        splits = calculate_split(items, tax, discount)

        assert abs(split_total(splits) - expected) <= Decimal("0.01") * len(items)

    def test_reconcile_moves_remainder_to_last_split(self):
        splits = calculate_split(
            _items(1, 1, 1), Decimal("1.00"), Decimal("0"), reconcile_remainder=True,
        )

        assert _finals(splits) == [Decimal("1.33"), Decimal("1.33"), Decimal("1.34")]
        assert split_total(splits) == Decimal("4.00")

    def test_reconcile_is_a_no_op_without_drift(self):
        splits = calculate_split(
            _items(100, 200, 300), Decimal("30"), Decimal("15"), reconcile_remainder=True,
        )
        assert _finals(splits) == [Decimal("102.50"), Decimal("205.00"), Decimal("307.50")]

    def test_reconcile_skips_trailing_zero_mrp_item(self):
        # Tax 0.02 rounds to 0.01 for each of the three paying items: 3.03 vs 3.02.
        splits = calculate_split(
            _items(1, 1, 1, 0), Decimal("0.02"), Decimal("0"), reconcile_remainder=True,
        )

        assert _finals(splits) == [
            Decimal("1.01"), Decimal("1.01"), Decimal("1.00"), Decimal("0.00"),
        ]
        assert split_total(splits) == Decimal("3.02")

    def test_reconcile_positive_remainder_skips_zero_mrp_item(self):
        splits = calculate_split(
            _items(1, 1, 1, 0), Decimal("1.00"), Decimal("0"), reconcile_remainder=True,
        )

        assert _finals(splits) == [
            Decimal("1.33"), Decimal("1.33"), Decimal("1.34"), Decimal("0.00"),
        ]

    def test_reconcile_spreads_remainder_larger_than_last_split(self):
        # Discount shares of 0.0033 round to 0.00: six splits of 0.01 against 0.04.
        splits = calculate_split(
            _items(*["0.01"] * 6), Decimal("0"), Decimal("0.02"), reconcile_remainder=True,
        )

        assert _finals(splits) == [Decimal("0.01")] * 4 + [Decimal("0.00")] * 2
        assert split_total(splits) == Decimal("0.04")


# ── Split-sum property over random orders ──────────────────────────────────

def _random_order(seed: int):
    """Items, tax and a discount no larger than the order value."""
    rng = random.Random(seed)
    # Tiny amounts make a remainder larger than one split likely.
    max_cents = rng.choice([5, 500, 500000])
    count = rng.randint(1, 8)
    mrps = [Decimal(rng.randint(0, max_cents)) / 100 for _ in range(count)]
    if not any(mrps):
        mrps[rng.randrange(count)] = Decimal("0.01")
    tax = Decimal(rng.randint(0, max_cents)) / 100
    order_value = sum(mrps) + tax
    discount = Decimal(rng.randint(0, int(order_value * 100))) / 100
    return _items(*mrps), tax, discount


class TestSplitSumProperty:

    @pytest.mark.parametrize("seed", range(40))
    def test_drift_bounded_and_shares_consistent(self, seed):
        items, tax, discount = _random_order(seed)
        expected = sum(i["item_mrp"] for i in items) + tax - discount

        splits = calculate_split(items, tax, discount)

        assert abs(split_total(splits) - expected) <= Decimal("0.01") * len(items)
        for split in splits:
            assert split.final_amount == round2(
                split.original_amount + split.tax_share - split.discount_share
            )
            assert split.final_amount >= 0

    @pytest.mark.parametrize("seed", range(40))
    def test_reconciled_splits_sum_exactly(self, seed):
        items, tax, discount = _random_order(seed)
        expected = round2(sum(i["item_mrp"] for i in items) + tax - discount)

        splits = calculate_split(items, tax, discount, reconcile_remainder=True)

        assert split_total(splits) == expected
        assert all(s.final_amount >= 0 for s in splits)
        assert all(s.final_amount == 0 for s in splits if s.original_amount == 0)


# ── Numeric coercion ───────────────────────────────────────────────────────

class TestCoercion:

    def test_floats_are_read_through_str(self):
        items = [{"user_id": 1, "item_mrp": 0.1}, {"user_id": 2, "item_mrp": 0.2}]
        splits = calculate_split(items, 0.3, 0)

        assert _finals(splits) == [Decimal("0.20"), Decimal("0.40")]

    def test_numeric_strings_are_accepted(self):
        splits = calculate_split(_items(100), " 5.5 ", "0.5")
        assert _finals(splits) == [Decimal("105.00")]

    @pytest.mark.parametrize("bad_tax", [True, None, "abc", "NaN", "Infinity", object()])
    def test_bad_tax_values(self, bad_tax):
        with pytest.raises(InvalidInputError) as exc_info:
            calculate_split(_items(100), bad_tax, Decimal("0"))
        assert exc_info.value.code == ErrorCode.INVALID_TAX
        assert exc_info.value.http_status == 400

    def test_boolean_discount_is_rejected(self):
        with pytest.raises(InvalidInputError) as exc_info:
            calculate_split(_items(100), Decimal("0"), False)
        assert exc_info.value.code == ErrorCode.INVALID_DISCOUNT

    def test_boolean_mrp_is_rejected(self):
        with pytest.raises(InvalidInputError) as exc_info:
            calculate_split([{"user_id": 1, "item_mrp": True}], Decimal("0"), Decimal("0"))
        assert exc_info.value.code == ErrorCode.INVALID_ITEMS


# ── Invalid input ──────────────────────────────────────────────────────────

class TestInvalidInput:

    @pytest.mark.parametrize("items", [[], None, "items", {"user_id": 1, "item_mrp": 1}, 42])
    def test_items_must_be_a_non_empty_list(self, items):
        with pytest.raises(InvalidInputError) as exc_info:
            calculate_split(items, Decimal("0"), Decimal("0"))
        assert exc_info.value.code == ErrorCode.INVALID_ITEMS
        assert exc_info.value.field == "items"

    def test_negative_mrp(self):
        with pytest.raises(InvalidInputError) as exc_info:
            calculate_split(_items(100, -1), Decimal("0"), Decimal("0"))
        assert exc_info.value.code == ErrorCode.INVALID_ITEMS

    def test_missing_user_id(self):
        with pytest.raises(InvalidInputError) as exc_info:
            calculate_split([{"item_mrp": Decimal("10")}], Decimal("0"), Decimal("0"))
        assert exc_info.value.code == ErrorCode.INVALID_ITEMS

    def test_duplicate_user(self):
        items = [{"user_id": 1, "item_mrp": Decimal("10")}, {"user_id": 1, "item_mrp": Decimal("5")}]
        with pytest.raises(InvalidInputError) as exc_info:
            calculate_split(items, Decimal("0"), Decimal("0"))
        assert exc_info.value.code == ErrorCode.INVALID_ITEMS

    def test_all_zero_mrp(self):
        with pytest.raises(InvalidInputError) as exc_info:
            calculate_split(_items(0, 0), Decimal("10"), Decimal("0"))
        assert exc_info.value.code == ErrorCode.INVALID_TOTAL

    def test_negative_tax(self):
        with pytest.raises(InvalidInputError) as exc_info:
            calculate_split(_items(100), Decimal("-0.01"), Decimal("0"))
        assert exc_info.value.code == ErrorCode.INVALID_TAX
        assert exc_info.value.field == "total_tax"

    def test_negative_discount(self):
        with pytest.raises(InvalidInputError) as exc_info:
            calculate_split(_items(100), Decimal("0"), Decimal("-5"))
        assert exc_info.value.code == ErrorCode.INVALID_DISCOUNT

    def test_discount_larger_than_order_value(self):
        with pytest.raises(InvalidInputError) as exc_info:
            calculate_split(_items(60, 40), Decimal("10"), Decimal("110.01"))
        assert exc_info.value.code == ErrorCode.INVALID_DISCOUNT
        assert exc_info.value.field == "total_discount"
