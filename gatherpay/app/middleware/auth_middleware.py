"""
middleware/auth_middleware.py: bearer-token check for order and wallet routes.

Members sign in through the external auth service (phone OTP), which signs
short-lived HS256 access tokens with the secret this service shares
(JWT_SECRET_KEY). Here they are only verified; nothing is issued.

@require_auth resolves the caller and stores it as g.user_id (int). Whether
that caller leads the order, owns the item or may move the money is decided
by the services, which never see a header or a token.

    TOKEN_MISSING (401)  no Authorization header
    TOKEN_INVALID (401)  not "Bearer <jwt>", bad signature, missing exp/sub,
                         or a sub that is not a user id
    TOKEN_EXPIRED (401)  exp is in the past
"""

from __future__ import annotations

import functools
from typing import Callable

import jwt
from flask import current_app, g, request

from gatherpay.app.errors import AppError, ErrorCode

_REQUIRED_CLAIMS = ["exp", "sub"]


def require_auth(view: Callable) -> Callable:
    """
    Route decorator: 401 unless the request carries a valid access token.

        @orders_bp.route("/<int:order_id>/complete", methods=["POST"])
        @require_auth
        def complete_order(order_id):
            leader_id = g.user_id
    """
    @functools.wraps(view)
    def wrapper(*args, **kwargs):
        g.user_id = _user_id_from(_decode(_bearer_token()))
        return view(*args, **kwargs)

    return wrapper


def _invalid(message: str) -> AppError:
    return AppError(ErrorCode.TOKEN_INVALID, message, 401)


def _bearer_token() -> str:
    header = request.headers.get("Authorization", "").strip()
    if not header:
        raise AppError(
            ErrorCode.TOKEN_MISSING,
            "Sign in first: send the access token as 'Authorization: Bearer <token>'.",
            401,
        )

    scheme, _, token = header.partition(" ")
    token = token.strip()
    if scheme.lower() != "bearer" or not token or " " in token:
        raise _invalid("Authorization header must look like 'Bearer <token>'.")
    return token


def _decode(token: str) -> dict:
    try:
        return jwt.decode(
            token,
            current_app.config["JWT_SECRET_KEY"],
            algorithms=[current_app.config.get("JWT_ALGORITHM", "HS256")],
            options={"require": _REQUIRED_CLAIMS},
        )
    except jwt.ExpiredSignatureError:
        raise AppError(
            ErrorCode.TOKEN_EXPIRED,
            "The access token has expired. Sign in again.",
            401,
        )
    except jwt.InvalidTokenError as error:
        current_app.logger.debug("Rejected access token: %s", error)
        raise _invalid("The access token is invalid.")


def _user_id_from(payload: dict) -> int:
    try:
        user_id = int(payload["sub"])
    except (KeyError, TypeError, ValueError):
        raise _invalid("The access token does not name a user.")
    if user_id < 1:
        raise _invalid("The access token does not name a user.")
    return user_id
