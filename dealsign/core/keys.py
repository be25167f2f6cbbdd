# ------------------------------------------------------------------------
# File: keys.py
# Location: dealsign/core/keys.py
# Description:
#     Admin management of API keys: create, list, update, delete and
#     regenerate, plus the self-service validate call integrations use to
#     check a key before they start a signing flow.
# ------------------------------------------------------------------------

import datetime
import uuid

from sqlalchemy.exc import SQLAlchemyError

from dealsign.core.auth import AdminUser, authenticate_api_key
from dealsign.core.errors import InternalError, InvalidRequest, NotFound
from dealsign.db.models import ApiKey, ApiKeyType, EntityKind
from dealsign.db.store import ApiKeyStore
from dealsign.log_utils.logging_config import configure_logging

logger = configure_logging(name="dealsign.keys", logfile="dealsign.log", level=None)

UPDATABLE_FIELDS = ("name", "description", "isActive", "expiresAt", "permissions")


def _parse_enum(enum_cls, value, field):
    try:
        return enum_cls(value)
    except ValueError:
        raise InvalidRequest(f"Invalid {field} '{value}'")


def _parse_expiry(value):
    if value in (None, ""):
        return None
    try:
        parsed = datetime.datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    except ValueError:
        raise InvalidRequest(f"Invalid expiresAt '{value}', expected an ISO-8601 timestamp")
    if parsed.tzinfo is not None:
        parsed = parsed.astimezone(datetime.timezone.utc).replace(tzinfo=None)
    return parsed


def _parse_id(api_key_id):
    try:
        return uuid.UUID(str(api_key_id))
    except ValueError:
        raise NotFound("API key not found")


class ApiKeyManager:
    def __init__(self, store: ApiKeyStore):
        self.store = store

    def _commit(self, operation, fn, *args):
        try:
            return fn(*args)
        except SQLAlchemyError as e:
            self.store.rollback()
            logger.error("API key %s failed: %s", operation, e, exc_info=True)
            raise InternalError("An unexpected error occurred. Please try again later.") from e

    def _get(self, api_key_id) -> ApiKey:
        record = self._commit("lookup", self.store.get, _parse_id(api_key_id))
        if record is None:
            raise NotFound("API key not found")
        return record

    def list_keys(self, entity_type=None, entity_id=None):
        if entity_type:
            kind = _parse_enum(EntityKind, entity_type, "entityType")
            return self._commit("list", self.store.list_for_entity, kind, entity_id)
        return self._commit("list", self.store.list_all)

    def create_key(self, payload: dict, admin: AdminUser) -> ApiKey:
        payload = payload or {}
        if not payload.get("name") or not payload.get("entityType"):
            raise InvalidRequest("Name and entityType are required")

        record = ApiKey(
            key=ApiKey.generate_key(),
            name=payload["name"],
            description=payload.get("description"),
            type=_parse_enum(ApiKeyType, payload.get("type") or ApiKeyType.internal.value, "type"),
            entity_type=_parse_enum(EntityKind, payload["entityType"], "entityType"),
            entity_id=str(payload["entityId"]) if payload.get("entityId") else None,
            expires_at=_parse_expiry(payload.get("expiresAt")),
            created_by=admin.id if admin else None,
        )
        try:
            record.set_permissions(payload.get("permissions") or {})
        except ValueError as e:
            raise InvalidRequest(str(e))

        self._commit("create", self.store.add, record)
        logger.info("API key %s... created for %s by %s", record.key[:8], record.entity, admin.email if admin else "-")
        return record

    def update_key(self, api_key_id, payload: dict) -> ApiKey:
        record = self._get(api_key_id)
        payload = payload or {}
        unknown = set(payload) - set(UPDATABLE_FIELDS)
        if unknown:
            raise InvalidRequest(f"Fields cannot be updated: {', '.join(sorted(unknown))}")

        if "name" in payload:
            if not payload["name"]:
                raise InvalidRequest("Name cannot be empty")
            record.name = payload["name"]
        if "description" in payload:
            record.description = payload["description"]
        if "isActive" in payload:
            record.is_active = bool(payload["isActive"])
        if "expiresAt" in payload:
            record.expires_at = _parse_expiry(payload["expiresAt"])
        if "permissions" in payload:
            try:
                record.set_permissions(payload["permissions"] or {})
            except ValueError as e:
                self.store.rollback()
                raise InvalidRequest(str(e))

        self._commit("update", self.store.save, record)
        logger.info("API key %s... updated", record.key[:8])
        return record

    def delete_key(self, api_key_id):
        record = self._get(api_key_id)
        self._commit("delete", self.store.delete, record)
        logger.info("API key %s... deleted", record.key[:8])

    def regenerate_key(self, api_key_id) -> ApiKey:
        record = self._get(api_key_id)
        old_prefix = record.key[:8]
        record.key = ApiKey.generate_key()
        self._commit("regenerate", self.store.save, record)
        logger.info("API key %s... regenerated as %s...", old_prefix, record.key[:8])
        return record

    def validate_key(self, presented_key) -> dict:
        """Authenticates (and counts usage of) the key, then summarises it."""
        identity = authenticate_api_key(self.store, presented_key)
        return {
            "valid": True,
            "apiKey": {
                "id": str(identity.api_key_id),
                "name": identity.name,
                "type": identity.type,
                "permissions": identity.permissions,
                "entity": identity.entity.to_dict(),
            },
        }
