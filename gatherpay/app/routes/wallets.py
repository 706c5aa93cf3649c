"""
routes/wallets.py: Wallet route handlers for the authenticated member.

Layer rules:
  - Parse, validate, call ONE service, return envelope.
  - Deposits, withdrawals and transfers commit inside wallet_service's unit of work.

Endpoints (base url_prefix=/api/v1/wallets):
  GET    /wallets/me                   → 200  balance, coins, recent entries
  POST   /wallets/me/deposit           → 201  credit captured funds
  POST   /wallets/me/withdrawals       → 201  debit a payout (422 if uncovered)
  POST   /wallets/me/transfers         → 201  send funds to another member
  GET    /wallets/me/summary           → 200  totals + ledger reconciliation
  GET    /wallets/me/transactions.csv  → 200  CSV export (text/csv)
"""

from __future__ import annotations

from flask import Blueprint, Response, current_app, g, jsonify, request

from gatherpay.app.extensions import db
from gatherpay.app.middleware.auth_middleware import require_auth
from gatherpay.app.models.ledger_entry import LedgerEntry
from gatherpay.app.schemas.wallet_schema import DepositSchema, TransferSchema, WithdrawSchema
from gatherpay.app.services import wallet_service
from gatherpay.app.services.engine import get_engine
from gatherpay.app.services.wallet_service import WalletLimits

wallets_bp = Blueprint("wallets", __name__)


def _serialize_entry(entry: LedgerEntry) -> dict:
    return {
        "id": entry.id,
        "type": entry.type.value,
        "amount": entry.amount,
        "status": entry.status.value,
        "description": entry.description,
        "group_id": entry.group_id,
        "order_id": entry.order_id,
        "counterparty_user_id": entry.counterparty_user_id,
        "platform_fee": entry.platform_fee,
        "failure_reason": entry.failure_reason,
        "created_at": entry.created_at.isoformat() if entry.created_at else None,
    }


def _limits() -> WalletLimits:
    return WalletLimits.from_config(current_app.config)


@wallets_bp.route("/me", methods=["GET"])
@require_auth
def get_my_wallet():
    summary = wallet_service.get_wallet_summary(
        g.user_id,
        session=db.session,
        recent_limit=_limits().recent_limit,
    )
    return jsonify({
        "data": {
            "user_id": summary.user_id,
            "balance": summary.balance,
            "reward_coins": summary.reward_coins,
            "transactions": [_serialize_entry(e) for e in summary.recent_entries],
        },
        "warnings": [],
    }), 200


@wallets_bp.route("/me/deposit", methods=["POST"])
@require_auth
def deposit():
    data = DepositSchema().load(request.get_json(force=True) or {})
    entry = wallet_service.deposit(
        g.user_id,
        data["amount"],
        session=db.session,
        limits=_limits(),
        description=data["description"],
        retry_policy=get_engine().retry_policy,
    )
    return jsonify({"data": _serialize_entry(entry), "warnings": []}), 201


@wallets_bp.route("/me/withdrawals", methods=["POST"])
@require_auth
def withdraw():
    data = WithdrawSchema().load(request.get_json(force=True) or {})
    entry = wallet_service.withdraw(
        g.user_id,
        data["amount"],
        session=db.session,
        limits=_limits(),
        description=data["description"],
        retry_policy=get_engine().retry_policy,
    )
    return jsonify({"data": _serialize_entry(entry), "warnings": []}), 201


@wallets_bp.route("/me/transfers", methods=["POST"])
@require_auth
def transfer():
    data = TransferSchema().load(request.get_json(force=True) or {})
    sent, _received = wallet_service.transfer(
        g.user_id,
        data["to_user_id"],
        data["amount"],
        session=db.session,
        limits=_limits(),
        description=data["description"],
        retry_policy=get_engine().retry_policy,
    )
    return jsonify({"data": _serialize_entry(sent), "warnings": []}), 201


@wallets_bp.route("/me/summary", methods=["GET"])
@require_auth
def get_summary():
    entries = wallet_service.list_entries(g.user_id, session=db.session)
    summary = wallet_service.summarize_transactions(entries)
    reconciliation = wallet_service.reconcile_wallet(g.user_id, session=db.session)

    warnings = []
    if not reconciliation["consistent"]:
        warnings.append({
            "code": "LEDGER_MISMATCH",
            "message": "Wallet balance does not match the ledger.",
        })

    for key in ("start_date", "end_date"):
        if summary[key] is not None:
            summary[key] = summary[key].isoformat()

    return jsonify({
        "data": {"summary": summary, "reconciliation": reconciliation},
        "warnings": warnings,
    }), 200


@wallets_bp.route("/me/transactions.csv", methods=["GET"])
@require_auth
def export_transactions():
    entries = wallet_service.list_entries(g.user_id, session=db.session)
    body = wallet_service.export_transactions_csv(entries)
    return Response(
        body,
        mimetype="text/csv",
        headers={"Content-Disposition": "attachment; filename=transactions.csv"},
    )
