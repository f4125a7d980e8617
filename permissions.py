# permissions.py
from functools import wraps

from flask import abort, request
from flask_login import current_user, login_required

READ_ONLY_METHODS = ("GET", "HEAD", "OPTIONS")

# Roles allowed to change ledger data (opening edits, receipts, sales).
WRITE_ROLES = ("manager", "clerk")
# Roles allowed to read ledger data.
READ_ROLES = ("manager", "clerk", "auditor")


def role_required(*allowed_roles):
    """
    Restrict a view to the given roles.

    - admin: always allowed.
    - auditor: read-only (GET / HEAD / OPTIONS), and only where "auditor" is
      listed explicitly.
    - every other role must appear in allowed_roles.

    Example:
        @role_required("manager", "clerk")
        def view():
            ...
    """

    def decorator(view_func):
        @wraps(view_func)
        @login_required
        def wrapped_view(*args, **kwargs):
            if not current_user.is_authenticated:
                abort(401)

            user_role = current_user.role.name if current_user.role else None

            if user_role == "admin":
                return view_func(*args, **kwargs)

            if user_role == "auditor":
                if "auditor" not in allowed_roles:
                    abort(403)
                if request.method not in READ_ONLY_METHODS:
                    abort(403)
                return view_func(*args, **kwargs)

            if user_role is None:
                abort(403)

            if allowed_roles and user_role not in allowed_roles:
                abort(403)

            return view_func(*args, **kwargs)

        return wrapped_view

    return decorator
