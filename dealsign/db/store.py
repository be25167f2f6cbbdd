# File: dealsign/db/store.py

from typing import List, Optional

from sqlalchemy.orm import Session

from dealsign.db.models import (
    ApiKey, DigitalSignature, EntityKind, OPEN_STATUSES, utcnow
)


class ApiKeyStore:
    def __init__(self, db_session: Session):
        self.db = db_session

    def get(self, api_key_id) -> Optional[ApiKey]:
        return self.db.get(ApiKey, api_key_id)

    def find_by_key(self, key: str) -> Optional[ApiKey]:
        return self.db.query(ApiKey).filter(ApiKey.key == key).first()

    def find_active_by_key(self, key: str) -> Optional[ApiKey]:
        return self.db.query(ApiKey).filter(ApiKey.key == key, ApiKey.is_active.is_(True)).first()

    def list_all(self) -> List[ApiKey]:
        return self.db.query(ApiKey).order_by(ApiKey.created_at.desc()).all()

    def list_for_entity(self, kind: EntityKind, entity_id: str) -> List[ApiKey]:
        return (
            self.db
            .query(ApiKey)
            .filter(ApiKey.entity_type == kind, ApiKey.entity_id == entity_id, ApiKey.is_active.is_(True))
            .order_by(ApiKey.created_at.desc())
            .all()
        )

    def add(self, api_key: ApiKey) -> ApiKey:
        self.db.add(api_key)
        self.db.commit()
        self.db.refresh(api_key)
        return api_key

    def save(self, api_key: ApiKey) -> ApiKey:
        self.db.commit()
        self.db.refresh(api_key)
        return api_key

    def delete(self, api_key: ApiKey):
        self.db.delete(api_key)
        self.db.commit()

    def increment_usage(self, api_key_id) -> bool:
        """Atomic usage bump; counts are never read-modify-written in Python."""
        updated = (
            self.db
            .query(ApiKey)
            .filter(ApiKey.id == api_key_id)
            .update(
                {ApiKey.usage_count: ApiKey.usage_count + 1, ApiKey.last_used: utcnow()},
                synchronize_session=False,
            )
        )
        self.db.commit()
        return updated == 1

    def rollback(self):
        self.db.rollback()


class SignatureStore:
    def __init__(self, db_session: Session):
        self.db = db_session

    def get_by_signature_id(self, signature_id: str) -> Optional[DigitalSignature]:
        return self.db.query(DigitalSignature).filter(DigitalSignature.signature_id == signature_id).first()

    def list_for_document(self, document_id: str) -> List[DigitalSignature]:
        return (
            self.db
            .query(DigitalSignature)
            .filter(DigitalSignature.document_id == document_id)
            .order_by(DigitalSignature.created_at.desc())
            .all()
        )

    def add(self, record: DigitalSignature) -> DigitalSignature:
        self.db.add(record)
        self.db.commit()
        self.db.refresh(record)
        return record

    def save(self, record: DigitalSignature) -> DigitalSignature:
        self.db.commit()
        self.db.refresh(record)
        return record

    def refresh(self, record: DigitalSignature) -> DigitalSignature:
        self.db.refresh(record)
        return record

    def grant_consent_if_unset(self, record: DigitalSignature, flag_column, values: dict, audit_entries: dict) -> bool:
        """
        Set a consent flag and its audit fields only while the flag is still
        false. The row is re-read under a row lock so `audit_entries` merge
        into the current audit trail, not a stale copy. Returns False when
        another request already granted it.
        """
        self.db.refresh(record, with_for_update=True)
        if getattr(record, flag_column.key):
            self.db.commit()
            return False

        audit = dict(record.audit_trail or {})
        audit.update(audit_entries)
        values = dict(values, audit_trail=audit)
        updated = (
            self.db
            .query(DigitalSignature)
            .filter(DigitalSignature.id == record.id, flag_column.is_(False))
            .update(values, synchronize_session=False)
        )
        self.db.commit()
        self.db.refresh(record)
        return updated == 1

    def update_if_status(self, record: DigitalSignature, statuses, values: dict) -> bool:
        """Apply `values` only while the entry's status is one of `statuses`."""
        updated = (
            self.db
            .query(DigitalSignature)
            .filter(DigitalSignature.id == record.id, DigitalSignature.status.in_(statuses))
            .update(values, synchronize_session=False)
        )
        self.db.commit()
        self.db.refresh(record)
        return updated == 1

    def complete_if_open(self, record: DigitalSignature, values: dict) -> bool:
        """
        Apply the completing write only while the entry is still pending or
        consent_given, so two racing first submissions cannot both win.
        """
        return self.update_if_status(record, OPEN_STATUSES, values)

    def rollback(self):
        self.db.rollback()
