"""
bidtab/security.py

Access control helpers for the bid tabulation / award API.

Key rules:
- Clients are never trusted; all permission checks are server-side.
- ADMIN: full access, the only role that may award.
- STAFF: tabulation, export, leveling, RFP and bid lifecycle.
- VIEWER: read-only.
- CONTRACTOR: read-only, except opening / submitting / withdrawing bids of their own vendor.

This module also provides a global safety net:
- readonly_guard() blocks POST/PUT/PATCH/DELETE for VIEWER and CONTRACTOR users.
  Wire it via app.before_request in app factory.

IMPORTANT:
- Decorators must preserve wrapped function metadata to avoid Flask endpoint collisions.
  We use functools.wraps everywhere.
- Responses are JSON ({"error": {...}}), never HTML pages.
"""

from __future__ import annotations

from functools import wraps
from typing import Any, Callable, Optional, Tuple

from flask import jsonify, request
from flask_login import current_user

from .models import Role

MUTATING_METHODS = {"POST", "PUT", "PATCH", "DELETE"}

# Mutating endpoints open to every authenticated user
SELF_SERVICE_ENDPOINTS = {"auth.login", "auth.logout"}

# Mutating endpoints a CONTRACTOR may call (ownership checked in the view)
CONTRACTOR_ENDPOINTS = {"bids.create_bid", "bids.submit", "bids.withdraw"}


def _error(status: int, code: str, message: str) -> Tuple[Any, int]:
    return jsonify({"error": {"code": code, "message": message, "retryable": False}}), status


def forbidden(message: str = "You do not have permission to perform this action") -> Tuple[Any, int]:
    """Consistent JSON 403."""
    return _error(403, "FORBIDDEN", message)


def _unauthorized() -> Tuple[Any, int]:
    return _error(401, "UNAUTHORIZED", "Authentication required")


def has_role(*roles: str) -> bool:
    if not current_user.is_authenticated:
        return False
    return current_user.has_role(*roles)


def readonly_guard() -> Optional[Tuple[Any, int]]:
    """
    Global guard: read-only roles cannot mutate data.

    Blocks POST/PUT/PATCH/DELETE for authenticated VIEWER / CONTRACTOR users.

    Allow-list:
    - auth.login, auth.logout (everyone)
    - bid open / submit / withdraw (CONTRACTOR)
    """
    if request.method not in MUTATING_METHODS:
        return None

    if not current_user.is_authenticated:
        return None

    if current_user.role not in Role.READ_ONLY:
        return None

    endpoint = (request.endpoint or "").strip()
    if endpoint in SELF_SERVICE_ENDPOINTS:
        return None
    if current_user.role == Role.CONTRACTOR and endpoint in CONTRACTOR_ENDPOINTS:
        return None

    return forbidden("Read-only users cannot modify data")


def roles_required(*roles: str) -> Callable[[Callable[..., Any]], Callable[..., Any]]:
    """
    Decorator factory: allow only the given roles.

    Usage:
        @roles_required(Role.ADMIN, Role.STAFF)
        def leveling(rfp_id): ...
    """
    def decorator(view_func: Callable[..., Any]) -> Callable[..., Any]:
        @wraps(view_func)
        def wrapper(*args: Any, **kwargs: Any):
            if not current_user.is_authenticated:
                return _unauthorized()
            if not has_role(*roles):
                return forbidden()
            return view_func(*args, **kwargs)

        return wrapper

    return decorator


def admin_required(view_func: Callable[..., Any]) -> Callable[..., Any]:
    """Decorator: admin-only."""
    return roles_required(Role.ADMIN)(view_func)


def owns_vendor(vendor_id: Optional[int]) -> bool:
    """
    CONTRACTOR users act only for their own vendor; other roles are not restricted.
    """
    if not current_user.is_authenticated:
        return False
    if current_user.role != Role.CONTRACTOR:
        return True
    return vendor_id is not None and current_user.vendor_id == vendor_id
