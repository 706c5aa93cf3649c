"""
routes/orders.py: Order workflow, settlement and no-show route handlers.

Layer rules:
  - Parse, validate, call ONE service, commit, return envelope.
  - No business logic. No DB queries. No bare SQL.
  - Money-moving calls (complete, no-show) go through the settlement engine,
    which owns its own transaction; the route does not commit for them.

Endpoints (base url_prefix=/api/v1/orders):
  POST   /orders/:id/splits                       → 200  leader computes splits
  GET    /orders/:id/splits                       → 200  current splits
  POST   /orders/:id/splits/approve               → 200  member approves own split
  POST   /orders/:id/delivered                    → 200  leader marks delivery
  POST   /orders/:id/received                     → 200  member confirms pickup
  GET    /orders/:id/no-show-candidates           → 200  leader: members past the window
  POST   /orders/:id/complete                     → 200  leader settles the order
  POST   /orders/:id/members/:user_id/no-show     → 200  leader penalizes a no-show
"""

from __future__ import annotations

from flask import Blueprint, current_app, g, jsonify, request

from gatherpay.app.extensions import db
from gatherpay.app.middleware.auth_middleware import require_auth
from gatherpay.app.models.order import Order, OrderItem
from gatherpay.app.schemas.order_schema import AssignSplitsSchema
from gatherpay.app.services import order_service
from gatherpay.app.services.engine import get_engine

orders_bp = Blueprint("orders", __name__)


# ── Serialization helpers ──────────────────────────────────────────────────

def _isoformat(value):
    return value.isoformat() if value is not None else None


def _serialize_item(item: OrderItem) -> dict:
    return {
        "user_id": item.user_id,
        "description": item.description,
        "original_amount": item.item_mrp,
        "tax_share": item.tax_share,
        "discount_share": item.discount_share,
        "final_amount": item.final_amount,
        "approved": item.approved,
        "received": item.received,
        "received_at": _isoformat(item.received_at),
        "no_show": item.no_show,
        "no_show_penalty": item.no_show_penalty,
    }


def _serialize_order(order: Order) -> dict:
    return {
        "id": order.id,
        "group_id": order.group_id,
        "leader_id": order.leader_id,
        "status": order.status.value,
        "total_amount": order.total_amount,
        "total_tax": order.total_tax,
        "total_discount": order.total_discount,
        "platform_fee": order.platform_fee,
        "delivered_at": _isoformat(order.delivered_at),
        "completed_at": _isoformat(order.completed_at),
        "items": [_serialize_item(item) for item in order.items],
    }


# ── Split workflow ─────────────────────────────────────────────────────────

@orders_bp.route("/<int:order_id>/splits", methods=["POST"])
@require_auth
def assign_splits(order_id: int):
    """POST /orders/:id/splits: run the split calculator over the order's items."""
    data = AssignSplitsSchema().load(request.get_json(silent=True) or {})
    splits = order_service.assign_splits(
        order_id=order_id,
        caller_id=g.user_id,
        total_tax=data["total_tax"],
        total_discount=data["total_discount"],
        session=db.session,
        reconcile_remainder=get_engine().settings.reconcile_remainder,
    )
    db.session.commit()
    return jsonify({"data": [s.to_dict() for s in splits], "warnings": []}), 200


@orders_bp.route("/<int:order_id>/splits", methods=["GET"])
@require_auth
def list_splits(order_id: int):
    order = order_service.list_splits(order_id, g.user_id, session=db.session)
    return jsonify({"data": _serialize_order(order), "warnings": []}), 200


@orders_bp.route("/<int:order_id>/splits/approve", methods=["POST"])
@require_auth
def approve_split(order_id: int):
    item = order_service.approve_split(order_id, g.user_id, session=db.session)
    db.session.commit()
    return jsonify({"data": _serialize_item(item), "warnings": []}), 200


# ── Delivery ───────────────────────────────────────────────────────────────

@orders_bp.route("/<int:order_id>/delivered", methods=["POST"])
@require_auth
def mark_delivered(order_id: int):
    order = order_service.mark_delivered(order_id, g.user_id, session=db.session)
    db.session.commit()
    return jsonify({"data": _serialize_order(order), "warnings": []}), 200


@orders_bp.route("/<int:order_id>/received", methods=["POST"])
@require_auth
def confirm_received(order_id: int):
    item = order_service.confirm_received(order_id, g.user_id, session=db.session)
    db.session.commit()
    return jsonify({"data": _serialize_item(item), "warnings": []}), 200


@orders_bp.route("/<int:order_id>/no-show-candidates", methods=["GET"])
@require_auth
def list_no_show_candidates(order_id: int):
    """
    GET /orders/:id/no-show-candidates

    Polled by the external scheduler; the engine never starts timers itself.
    """
    items = order_service.list_no_show_candidates(
        order_id,
        g.user_id,
        window_minutes=current_app.config["NO_SHOW_WINDOW_MINUTES"],
        session=db.session,
    )
    return jsonify({"data": [_serialize_item(item) for item in items], "warnings": []}), 200


# ── Money movement ─────────────────────────────────────────────────────────

@orders_bp.route("/<int:order_id>/complete", methods=["POST"])
@require_auth
def complete_order(order_id: int):
    """
    POST /orders/:id/complete: settle the order.

    Splits are read from the persisted items inside the locked settlement
    attempt, so a client cannot submit its own amounts or approval flags.
    """
    result = get_engine().complete_persisted_order(order_id=order_id, leader_id=g.user_id)
    return jsonify({"data": result.to_dict(), "warnings": []}), 200


@orders_bp.route("/<int:order_id>/members/<int:user_id>/no-show", methods=["POST"])
@require_auth
def mark_no_show(order_id: int, user_id: int):
    order = order_service.get_order_or_404(order_id, session=db.session)
    result = get_engine().apply_no_show(
        group_id=order.group_id,
        order_id=order_id,
        user_id=user_id,
        leader_id=g.user_id,
    )
    return jsonify({"data": result.to_dict(), "warnings": []}), 200
