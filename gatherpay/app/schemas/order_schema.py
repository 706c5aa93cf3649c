"""
schemas/order_schema.py: Marshmallow schemas for order workflow endpoints.

Validation responsibility:
  - This file: field types, decimal precision, non-negative tax/discount.
  - services/split_calculator.py: everything that needs the order's items
    (INVALID_ITEMS, INVALID_TOTAL, discount larger than the order value).
  - services/order_service.py: leader checks and order status.

IMPORTANT: Inherits from marshmallow.Schema directly, never ma.Schema.
           See extensions.py for the full explanation.
"""

from __future__ import annotations

from decimal import Decimal

from marshmallow import Schema, ValidationError, fields

from gatherpay.app.errors import ErrorCode


def _precision_ok(value: Decimal) -> bool:
    # as_tuple().exponent is the negative scale: -3 means 3 dp.
    return value.as_tuple().exponent >= -2


def _validate_tax(value: Decimal) -> None:
    if value < Decimal("0"):
        raise ValidationError(ErrorCode.INVALID_TAX)
    if not _precision_ok(value):
        raise ValidationError(ErrorCode.INVALID_AMOUNT_PRECISION)


def _validate_discount(value: Decimal) -> None:
    if value < Decimal("0"):
        raise ValidationError(ErrorCode.INVALID_DISCOUNT)
    if not _precision_ok(value):
        raise ValidationError(ErrorCode.INVALID_AMOUNT_PRECISION)


class AssignSplitsSchema(Schema):
    """
    POST /orders/:id/splits

    Field rules:
      total_tax      : optional (default 0), Decimal >= 0, max 2 dp
      total_discount : optional (default 0), Decimal >= 0, max 2 dp

    Item MRPs are not part of the body: they are read from the order's items.
    """

    total_tax = fields.Decimal(
        load_default=Decimal("0"),
        validate=_validate_tax,
    )
    total_discount = fields.Decimal(
        load_default=Decimal("0"),
        validate=_validate_discount,
    )
