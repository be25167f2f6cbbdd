# File: dealsign/api/auth.py
# Request decorators for API-key and admin-token authentication.

from functools import wraps

from flask import current_app, g, request

from dealsign.api.context import api_key_store
from dealsign.core.auth import authenticate_api_key, decode_admin_token, require_permission

API_KEY_HEADER = "X-API-Key"


def presented_api_key():
    key = request.headers.get(API_KEY_HEADER)
    if not key and request.is_json:
        key = (request.get_json(silent=True) or {}).get("apiKey")
    return key


def bearer_token():
    header = request.headers.get("Authorization", "")
    if header.lower().startswith("bearer "):
        return header[7:].strip()
    return None


def require_api_key(*permissions):
    """
    Authenticate the X-API-Key header (or `apiKey` in a JSON body) and, when
    permissions are given, require at least one of them. The identity is
    left on `g.api_key`.
    """
    def decorator(view):
        @wraps(view)
        def wrapped(*args, **kwargs):
            identity = authenticate_api_key(api_key_store(), presented_api_key())
            if permissions:
                require_permission(identity, *permissions)
            g.api_key = identity
            return view(*args, **kwargs)
        return wrapped
    return decorator


def require_admin(view):
    @wraps(view)
    def wrapped(*args, **kwargs):
        g.admin = decode_admin_token(bearer_token(), current_app.config.get("JWT_SECRET"))
        return view(*args, **kwargs)
    return wrapped
