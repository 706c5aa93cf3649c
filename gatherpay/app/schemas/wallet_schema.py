"""
schemas/wallet_schema.py: Marshmallow schemas for wallet endpoints.

Validation responsibility:
  - This file: field types, positive amount, decimal precision.
  - services/wallet_service.py: min/max amount, daily limit, self-transfer,
    recipient existence and balance (all need config or the database).

IMPORTANT: Inherits from marshmallow.Schema directly, never ma.Schema.
"""

from __future__ import annotations

from decimal import Decimal

from marshmallow import Schema, ValidationError, fields, validate

from gatherpay.app.errors import ErrorCode


def _validate_monetary_amount(value: Decimal) -> None:
    """
    Strictly positive, at most 2 decimal places. Input with more places is
    rejected (INVALID_AMOUNT_PRECISION), never rounded.
    """
    if value <= Decimal("0"):
        raise ValidationError("Amount must be greater than zero.")
    if value.as_tuple().exponent < -2:
        raise ValidationError(ErrorCode.INVALID_AMOUNT_PRECISION)


class DepositSchema(Schema):
    """POST /wallets/me/deposit"""

    amount = fields.Decimal(
        required=True,
        validate=_validate_monetary_amount,
    )
    description = fields.Str(
        load_default="Added money to wallet",
        validate=validate.Length(min=1, max=255),
    )


class TransferSchema(Schema):
    """
    POST /wallets/me/transfers

    The sender is the authenticated caller (flask.g.user_id), never a body
    field. Sending to yourself is rejected in wallet_service.
    """

    to_user_id = fields.Int(
        required=True,
        strict=True,   # reject floats like 1.0
        validate=validate.Range(
            min=1,
            error="to_user_id must be a positive integer.",
        ),
    )
    amount = fields.Decimal(
        required=True,
        validate=_validate_monetary_amount,
    )
    description = fields.Str(
        load_default="Wallet transfer",
        validate=validate.Length(min=1, max=255),
    )


class WithdrawSchema(Schema):
    """POST /wallets/me/withdrawals"""

    amount = fields.Decimal(
        required=True,
        validate=_validate_monetary_amount,
    )
    description = fields.Str(
        load_default="Deducted from wallet",
        validate=validate.Length(min=1, max=255),
    )
