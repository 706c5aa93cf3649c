"""
services/split_calculator.py: proportional cost split for a group order.

Each member pays their own item's MRP plus a share of the order-level tax,
minus a share of the order-level discount, both in proportion to the item's
weight in the order:

    ratio         = item_mrp / Σ item_mrp
    taxShare      = round2(total_tax      × ratio)
    discountShare = round2(total_discount × ratio)
    finalAmount   = round2(item_mrp + taxShare − discountShare)

Rounding is ROUND_HALF_UP to 2 dp and is applied per member, independently.
The rounded shares are NOT reconciled against the order total unless
`reconcile_remainder=True`, so Σ finalAmount may drift from
Σ item_mrp + tax − discount by at most ±0.01 per member.

Pure: no session, no Flask, no I/O. Safe to call from anywhere.
"""

from __future__ import annotations

from collections.abc import Iterable, Mapping
from dataclasses import asdict, dataclass
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation

from gatherpay.app.errors import ErrorCode, InvalidInputError


TWO_PLACES = Decimal("0.01")
ZERO = Decimal("0.00")


def round2(value: Decimal) -> Decimal:
    """Half-up rounding to paise. Decimal in, Decimal out, never float."""
    return value.quantize(TWO_PLACES, rounding=ROUND_HALF_UP)


@dataclass
class OrderSplit:
    user_id: int
    original_amount: Decimal
    tax_share: Decimal
    discount_share: Decimal
    final_amount: Decimal
    approved: bool = False

    def to_dict(self) -> dict:
        return asdict(self)


# ── Private helpers ────────────────────────────────────────────────────────

def _to_decimal(value, code: str, field: str) -> Decimal:
    """
    Coerces a numeric input to Decimal or raises InvalidInputError(code).

    Floats go through str() so 0.1 becomes Decimal("0.1"), not its binary
    expansion. Booleans are rejected even though bool is an int subclass.
    """
    if isinstance(value, bool) or value is None:
        raise InvalidInputError(code, f"{field} must be a number.", field=field)

    if isinstance(value, Decimal):
        result = value
    elif isinstance(value, int):
        result = Decimal(value)
    elif isinstance(value, (float, str)):
        try:
            result = Decimal(str(value).strip())
        except InvalidOperation:
            raise InvalidInputError(code, f"{field} must be a number.", field=field)
    else:
        raise InvalidInputError(code, f"{field} must be a number.", field=field)

    if not result.is_finite():
        raise InvalidInputError(code, f"{field} must be a finite number.", field=field)
    return result


def _item_fields(item) -> tuple:
    """Reads (user_id, item_mrp) from an OrderItem row or a plain mapping."""
    if isinstance(item, Mapping):
        return item.get("user_id"), item.get("item_mrp")
    return getattr(item, "user_id", None), getattr(item, "item_mrp", None)


def _normalise_items(items) -> list[tuple[int, Decimal]]:
    if items is None or isinstance(items, (str, bytes, Mapping)) or not isinstance(items, Iterable):
        raise InvalidInputError(ErrorCode.INVALID_ITEMS, "Items must be a non-empty list.", field="items")

    normalised: list[tuple[int, Decimal]] = []
    seen: set[int] = set()
    for item in items:
        user_id, raw_mrp = _item_fields(item)
        if user_id is None:
            raise InvalidInputError(ErrorCode.INVALID_ITEMS, "Every item needs a user_id.", field="items")
        if user_id in seen:
            raise InvalidInputError(
                ErrorCode.INVALID_ITEMS,
                f"User {user_id} appears more than once in the order items.",
                field="items",
            )
        seen.add(user_id)

        mrp = _to_decimal(raw_mrp, ErrorCode.INVALID_ITEMS, "item_mrp")
        if mrp < 0:
            raise InvalidInputError(
                ErrorCode.INVALID_ITEMS,
                f"Item MRP for user {user_id} must not be negative.",
                field="items",
            )
        normalised.append((user_id, mrp))

    if not normalised:
        raise InvalidInputError(ErrorCode.INVALID_ITEMS, "Items must be a non-empty list.", field="items")
    return normalised


def _absorb_remainder(splits: list[OrderSplit], drift: Decimal) -> None:
    """
    Moves the rounding residual onto the last split with a non-zero MRP.

    A negative residual larger than that split's amount carries on into the
    splits before it, so no final amount drops below zero. Items with zero
    MRP always keep a final amount of 0.00.
    """
    payers = [s for s in reversed(splits) if s.original_amount > 0]
    if drift > 0:
        payers[0].final_amount += drift
        return

    remaining = -drift
    for split in payers:
        if remaining <= 0:
            break
        taken = min(split.final_amount, remaining)
        split.final_amount -= taken
        remaining -= taken


def calculate_split(
        items,
        total_tax,
        total_discount,
        reconcile_remainder: bool = False,
) -> list[OrderSplit]:
    """
    Computes each member's share of an order.

    Args:
        items:          OrderItem rows or mappings with `user_id` and `item_mrp`.
        total_tax:      Order-level tax, >= 0.
        total_discount: Order-level discount, >= 0 and not larger than
                        Σ item_mrp + total_tax.
        reconcile_remainder: when True the last split with a non-zero MRP
                        absorbs the rounding residual so the splits sum to
                        the order total exactly.

    Returns:
        One OrderSplit per item, in input order, all with approved=False.

    Raises:
        InvalidInputError(INVALID_ITEMS | INVALID_TAX | INVALID_DISCOUNT | INVALID_TOTAL)
    """
    normalised = _normalise_items(items)

    tax = _to_decimal(total_tax, ErrorCode.INVALID_TAX, "total_tax")
    if tax < 0:
        raise InvalidInputError(ErrorCode.INVALID_TAX, "Tax must not be negative.", field="total_tax")

    discount = _to_decimal(total_discount, ErrorCode.INVALID_DISCOUNT, "total_discount")
    if discount < 0:
        raise InvalidInputError(
            ErrorCode.INVALID_DISCOUNT, "Discount must not be negative.", field="total_discount",
        )

    total_mrp = sum((mrp for _, mrp in normalised), Decimal("0"))
    if total_mrp <= 0:
        raise InvalidInputError(
            ErrorCode.INVALID_TOTAL, "Total MRP must be greater than 0.", field="items",
        )

    if discount > total_mrp + tax:
        raise InvalidInputError(
            ErrorCode.INVALID_DISCOUNT,
            f"Discount ({discount}) exceeds the order value ({total_mrp + tax}).",
            field="total_discount",
        )

    splits: list[OrderSplit] = []
    for user_id, mrp in normalised:
        # tax × mrp / total is the same ratio without an intermediate rounding step.
        tax_share = round2(tax * mrp / total_mrp)
        discount_share = round2(discount * mrp / total_mrp)
        splits.append(OrderSplit(
            user_id=user_id,
            original_amount=mrp,
            tax_share=tax_share,
            discount_share=discount_share,
            final_amount=round2(mrp + tax_share - discount_share),
        ))

    if reconcile_remainder:
        expected_total = round2(total_mrp + tax - discount)
        _absorb_remainder(splits, expected_total - split_total(splits))

    return splits


def split_total(splits: Iterable[OrderSplit]) -> Decimal:
    return sum((s.final_amount for s in splits), ZERO)
