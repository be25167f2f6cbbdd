# ------------------------------------------------------------------------
# File: auth.py
# Location: dealsign/core/auth.py
# Description:
#     API-key authentication for non-interactive signers and integrations,
#     and admin bearer-token checks for key management. Keys carry their own
#     permission set, so authorization is per key rather than per role.
# ------------------------------------------------------------------------

from collections import namedtuple

import jwt
from sqlalchemy.exc import SQLAlchemyError

from dealsign.core.errors import Forbidden, InternalError, Unauthenticated
from dealsign.db.models import ApiKey
from dealsign.db.store import ApiKeyStore
from dealsign.log_utils.logging_config import configure_logging

logger = configure_logging(name="dealsign.auth", logfile="dealsign.log", level=None)

ApiKeyIdentity = namedtuple("ApiKeyIdentity", ["api_key_id", "name", "type", "entity", "permissions"])
AdminUser = namedtuple("AdminUser", ["id", "email"])


def identity_from(record: ApiKey) -> ApiKeyIdentity:
    return ApiKeyIdentity(
        api_key_id=record.id,
        name=record.name,
        type=record.type.value,
        entity=record.entity,
        permissions=record.permissions,
    )


def record_usage(store: ApiKeyStore, record: ApiKey):
    """Bump usage counters; a failure here must not block the request."""
    try:
        store.increment_usage(record.id)
    except SQLAlchemyError as e:
        store.rollback()
        logger.warning("Could not record usage for API key %s: %s", record.key[:8], e)


def authenticate_api_key(store: ApiKeyStore, presented_key) -> ApiKeyIdentity:
    if not presented_key:
        raise Unauthenticated("API key required", code="api_key_required")

    try:
        record = store.find_active_by_key(presented_key)
    except SQLAlchemyError as e:
        store.rollback()
        logger.error("API key lookup failed: %s", e)
        raise InternalError("Authentication failed") from e

    if record is None:
        logger.warning("Invalid or inactive API key presented: %s...", str(presented_key)[:8])
        raise Unauthenticated("Invalid or inactive API key", code="invalid_api_key")

    if record.is_expired():
        logger.warning("Expired API key presented: %s...", record.key[:8])
        raise Unauthenticated("API key has expired", code="api_key_expired")

    identity = identity_from(record)
    record_usage(store, record)
    logger.debug("API key %s... authenticated for %s", record.key[:8], identity.entity)
    return identity


def require_permission(identity: ApiKeyIdentity, *permissions):
    """Pass when the key holds at least one of `permissions`."""
    if identity is None:
        raise Unauthenticated("API key authentication required", code="api_key_required")
    if not any(identity.permissions.get(p) for p in permissions):
        logger.warning("Permission denied for key %s: needs one of %s", identity.name, permissions)
        raise Forbidden("Insufficient permissions")
    return identity


def decode_admin_token(token: str, secret: str) -> AdminUser:
    if not token:
        raise Unauthenticated("Access token required", code="token_required")
    if not secret:
        logger.error("JWT_SECRET is not configured; rejecting admin request")
        raise Unauthenticated("Invalid or expired token", code="invalid_token")
    try:
        claims = jwt.decode(token, secret, algorithms=["HS256"])
    except jwt.PyJWTError as e:
        logger.warning("Admin token rejected: %s", e)
        raise Unauthenticated("Invalid or expired token", code="invalid_token") from e

    if claims.get("role") != "admin":
        raise Forbidden("Admin access required")
    return AdminUser(id=str(claims.get("sub") or claims.get("userId") or ""), email=claims.get("email"))


INTERNAL_KEY_TYPES = ("internal", "system")


def require_internal(identity: ApiKeyIdentity):
    """Full signature projections are for internal and system keys only."""
    if identity is None:
        raise Unauthenticated("API key authentication required", code="api_key_required")
    if identity.type not in INTERNAL_KEY_TYPES:
        logger.warning("Key %s (%s) refused an internal-only read", identity.name, identity.type)
        raise Forbidden("Internal API key required")
    return identity
