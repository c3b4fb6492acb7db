# Overview: Request decorators for API routes; actor context and role gating.

from functools import wraps
from flask import request, jsonify, g


ROLE_CASHIER = "cashier"
ROLE_MANAGER = "manager"
ROLE_ADMIN = "admin"
KNOWN_ROLES = (ROLE_CASHIER, ROLE_MANAGER, ROLE_ADMIN)


def require_actor(f):
    """
    Establish actor context from request headers.

    Sets the following Flask g attributes:
    - g.actor_user_id: X-User-Id (integer) - REQUIRED
    - g.actor_role: X-User-Role, defaults to "cashier"

    Returns 401 if the user id is missing or not an integer, 400 for an
    unknown role.
    """
    @wraps(f)
    def decorated_function(*args, **kwargs):
        raw_user_id = request.headers.get("X-User-Id")
        if not raw_user_id:
            return jsonify({"error": "Actor required"}), 401
        try:
            user_id = int(raw_user_id)
        except ValueError:
            return jsonify({"error": "X-User-Id must be an integer"}), 401

        role = (request.headers.get("X-User-Role") or ROLE_CASHIER).strip().lower()
        if role not in KNOWN_ROLES:
            return jsonify({"error": f"Unknown role '{role}'"}), 400

        g.actor_user_id = user_id
        g.actor_role = role
        return f(*args, **kwargs)

    return decorated_function


def require_role(*roles):
    """Require the actor to hold one of the given roles (admin always passes)."""
    def decorator(f):
        @wraps(f)
        def decorated_function(*args, **kwargs):
            if not hasattr(g, "actor_user_id"):
                return jsonify({"error": "Actor required"}), 401
            if g.actor_role != ROLE_ADMIN and g.actor_role not in roles:
                return jsonify({
                    "error": "Permission denied",
                    "required_roles": list(roles),
                    "message": f"Requires any of: {', '.join(roles)}",
                }), 403
            return f(*args, **kwargs)

        return decorated_function
    return decorator
