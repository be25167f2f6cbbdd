# File: dealsign/db/models.py

import datetime
import enum
import secrets
import uuid
from dataclasses import dataclass

from sqlalchemy import (
    Column, String, DateTime, Enum, JSON, Text, Boolean, Integer, Uuid
)
from sqlalchemy.orm import declarative_base

Base = declarative_base()

API_KEY_PREFIX = "rpex_"
SIGNATURE_ID_PREFIX = "sig_"
DEFAULT_EXPIRY_DAYS = 7


def utcnow() -> datetime.datetime:
    """Naive UTC timestamp; every column in this schema stores naive UTC."""
    return datetime.datetime.now(datetime.timezone.utc).replace(tzinfo=None)


def _iso(value):
    return value.isoformat() if value else None


class ApiKeyType(enum.Enum):
    internal = "internal"
    customer = "customer"
    dealer = "dealer"
    system = "system"


class EntityKind(enum.Enum):
    User = "User"
    Dealer = "Dealer"
    Deal = "Deal"


@dataclass(frozen=True)
class EntityRef:
    """Owner of an API key: one of User, Dealer or Deal plus its id."""
    kind: EntityKind
    id: str

    def to_dict(self):
        return {"kind": self.kind.value, "id": self.id}


class DocumentType(enum.Enum):
    purchase_agreement = "purchase_agreement"
    bill_of_sale = "bill_of_sale"
    wholesale_purchase_order = "wholesale_purchase_order"
    wholesale_pp_buy = "wholesale_pp_buy"
    wholesale_bos = "wholesale_bos"
    retail_pp_buy = "retail_pp_buy"
    vehicle_record_pdf = "vehicle_record_pdf"
    vehicle_record = "vehicle_record"
    wholesale_purchase_agreement = "wholesale_purchase_agreement"


class SignerType(enum.Enum):
    internal = "internal"
    customer = "customer"
    dealer = "dealer"
    finance = "finance"
    client = "client"


class SignerModel(enum.Enum):
    User = "User"
    Dealer = "Dealer"


class SignatureMethod(enum.Enum):
    api_key = "api_key"
    email_verification = "email_verification"
    manual = "manual"
    built_in = "built_in"
    email_invitation = "email_invitation"


class IdentityVerificationMethod(enum.Enum):
    api_key = "api_key"
    email_verification = "email_verification"
    manual = "manual"
    ip_address = "ip_address"
    user_agent = "user_agent"
    built_in_system = "built_in_system"


class SignatureStatus(enum.Enum):
    pending = "pending"
    consent_given = "consent_given"
    signed = "signed"
    verified = "verified"
    expired = "expired"
    revoked = "revoked"
    completed = "completed"


OPEN_STATUSES = (SignatureStatus.pending, SignatureStatus.consent_given)
DONE_STATUSES = (SignatureStatus.signed, SignatureStatus.completed, SignatureStatus.verified)


class ApiKey(Base):
    __tablename__ = "api_keys"

    PERMISSIONS = ("signAgreements", "viewDocuments", "createSignatures")

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    key = Column(String(128), unique=True, nullable=False, index=True)
    name = Column(String, nullable=False)
    description = Column(Text, nullable=True)
    type = Column(Enum(ApiKeyType), nullable=False, default=ApiKeyType.internal)
    entity_type = Column(Enum(EntityKind), nullable=False)
    entity_id = Column(String, nullable=True)
    can_sign_agreements = Column(Boolean, nullable=False, default=True)
    can_view_documents = Column(Boolean, nullable=False, default=True)
    can_create_signatures = Column(Boolean, nullable=False, default=True)
    is_active = Column(Boolean, nullable=False, default=True)
    expires_at = Column(DateTime, nullable=True)
    last_used = Column(DateTime, nullable=True)
    usage_count = Column(Integer, nullable=False, default=0)
    created_by = Column(String, nullable=True)
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    _permission_columns = {
        "signAgreements": "can_sign_agreements",
        "viewDocuments": "can_view_documents",
        "createSignatures": "can_create_signatures",
    }

    @staticmethod
    def generate_key() -> str:
        return API_KEY_PREFIX + secrets.token_hex(32)

    @property
    def permissions(self) -> dict:
        return {name: bool(getattr(self, column)) for name, column in self._permission_columns.items()}

    def set_permissions(self, permissions: dict):
        for name, value in permissions.items():
            if name not in self._permission_columns:
                raise ValueError(f"Unknown permission: {name}")
            setattr(self, self._permission_columns[name], bool(value))

    @property
    def entity(self) -> EntityRef:
        return EntityRef(kind=self.entity_type, id=self.entity_id)

    def is_expired(self, now=None) -> bool:
        return self.expires_at is not None and self.expires_at <= (now or utcnow())

    def is_valid(self, now=None) -> bool:
        return bool(self.is_active) and not self.is_expired(now)

    def to_dict(self, include_key: bool = True) -> dict:
        data = {
            "id": str(self.id),
            "name": self.name,
            "description": self.description,
            "type": self.type.value if self.type else None,
            "entityId": self.entity_id,
            "entityType": self.entity_type.value if self.entity_type else None,
            "permissions": self.permissions,
            "isActive": self.is_active,
            "expiresAt": _iso(self.expires_at),
            "lastUsed": _iso(self.last_used),
            "usageCount": self.usage_count,
            "createdBy": self.created_by,
            "createdAt": _iso(self.created_at),
            "updatedAt": _iso(self.updated_at),
        }
        if include_key:
            data["key"] = self.key
        return data


class DigitalSignature(Base):
    __tablename__ = "digital_signatures"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    signature_id = Column(String(80), unique=True, nullable=False, index=True)

    # Document being signed
    document_id = Column(String, nullable=True, index=True)
    document_url = Column(String, nullable=True)
    document_type = Column(Enum(DocumentType), nullable=False)
    document_version = Column(Integer, nullable=False, default=1)
    deal_info = Column(JSON, nullable=True)

    # Signer
    signer_type = Column(Enum(SignerType), nullable=False)
    signer_id = Column(String, nullable=True)
    signer_model = Column(Enum(SignerModel), nullable=True)
    signer_name = Column(String, nullable=False)
    signer_email = Column(String, nullable=False)
    signature_method = Column(Enum(SignatureMethod), nullable=False, default=SignatureMethod.api_key)
    api_key_used = Column(Uuid, nullable=True)

    # Intent to sign
    intent_to_sign = Column(Boolean, nullable=False, default=False)
    intent_to_sign_timestamp = Column(DateTime, nullable=True)
    intent_to_sign_ip_address = Column(String, nullable=True)
    intent_to_sign_user_agent = Column(Text, nullable=True)

    # Consent to do business electronically
    consent_to_electronic_business = Column(Boolean, nullable=False, default=False)
    consent_to_electronic_business_timestamp = Column(DateTime, nullable=True)
    consent_to_electronic_business_ip_address = Column(String, nullable=True)
    consent_to_electronic_business_user_agent = Column(Text, nullable=True)

    # Signature association
    identity_verification_method = Column(
        Enum(IdentityVerificationMethod), nullable=False, default=IdentityVerificationMethod.api_key
    )
    signer_identity_verified = Column(Boolean, nullable=False, default=False)
    identity_verification_timestamp = Column(DateTime, nullable=True)

    # Signature data
    signature_timestamp = Column(DateTime, nullable=True)
    coordinates = Column(JSON, nullable=True)
    image_signature = Column(Text, nullable=True)
    typed_signature = Column(Text, nullable=True)
    signature_font = Column(String, nullable=True)
    document_hash = Column(String(64), nullable=True)
    is_flattened = Column(Boolean, nullable=False, default=False)
    watermark = Column(String, nullable=False, default="SIGNED")
    signed_timestamp = Column(DateTime, nullable=True)
    original_document_url = Column(String, nullable=True)
    signed_document_url = Column(String, nullable=True)
    signed_document_path = Column(String, nullable=True)

    signature_hash = Column(String(64), nullable=True)
    ip_address = Column(String, nullable=True)
    user_agent = Column(Text, nullable=True)
    audit_trail = Column(JSON, nullable=True)

    status = Column(Enum(SignatureStatus), nullable=False, default=SignatureStatus.pending, index=True)
    revocation_reason = Column(Text, nullable=True)
    created_at = Column(DateTime, default=utcnow, index=True)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    @staticmethod
    def generate_signature_id() -> str:
        return SIGNATURE_ID_PREFIX + secrets.token_hex(16)

    @property
    def mark_payload(self):
        return self.image_signature or self.typed_signature

    def expires_at(self, expiry_days: int = DEFAULT_EXPIRY_DAYS):
        return self.created_at + datetime.timedelta(days=expiry_days)

    def is_expired(self, now=None, expiry_days: int = DEFAULT_EXPIRY_DAYS) -> bool:
        return (now or utcnow()) >= self.expires_at(expiry_days)

    def to_dict(self) -> dict:
        return {
            "signatureId": self.signature_id,
            "documentId": self.document_id,
            "documentUrl": self.document_url,
            "documentType": self.document_type.value,
            "documentVersion": self.document_version,
            "dealInfo": self.deal_info or {},
            "signerType": self.signer_type.value,
            "signerId": self.signer_id,
            "signerModel": self.signer_model.value if self.signer_model else None,
            "signerName": self.signer_name,
            "signerEmail": self.signer_email,
            "signatureMethod": self.signature_method.value,
            "apiKeyUsed": str(self.api_key_used) if self.api_key_used else None,
            "intentToSign": self.intent_to_sign,
            "intentToSignTimestamp": _iso(self.intent_to_sign_timestamp),
            "intentToSignIpAddress": self.intent_to_sign_ip_address,
            "intentToSignUserAgent": self.intent_to_sign_user_agent,
            "consentToElectronicBusiness": self.consent_to_electronic_business,
            "consentToElectronicBusinessTimestamp": _iso(self.consent_to_electronic_business_timestamp),
            "consentToElectronicBusinessIpAddress": self.consent_to_electronic_business_ip_address,
            "consentToElectronicBusinessUserAgent": self.consent_to_electronic_business_user_agent,
            "signatureAssociation": {
                "identityVerificationMethod": self.identity_verification_method.value,
                "signerIdentityVerified": self.signer_identity_verified,
                "identityVerificationTimestamp": _iso(self.identity_verification_timestamp),
                "documentHash": self.document_hash,
            },
            "signatureData": {
                "timestamp": _iso(self.signature_timestamp),
                "coordinates": self.coordinates,
                "imageSignature": self.image_signature,
                "typedSignature": self.typed_signature,
                "signatureFont": self.signature_font,
                "documentHash": self.document_hash,
                "documentIntegrity": {
                    "isFlattened": self.is_flattened,
                    "watermark": self.watermark,
                    "signedTimestamp": _iso(self.signed_timestamp),
                    "originalDocumentUrl": self.original_document_url,
                    "signedDocumentUrl": self.signed_document_url,
                },
            },
            "signatureHash": self.signature_hash,
            "ipAddress": self.ip_address,
            "userAgent": self.user_agent,
            "auditTrail": self.audit_trail or {},
            "status": self.status.value,
            "createdAt": _iso(self.created_at),
            "updatedAt": _iso(self.updated_at),
        }

    def to_status_dict(self, expiry_days: int = DEFAULT_EXPIRY_DAYS) -> dict:
        """Signer-safe projection: nothing beyond the public signatureId."""
        return {
            "signatureId": self.signature_id,
            "status": self.status.value,
            "documentType": self.document_type.value,
            "signerName": self.signer_name,
            "intentToSign": self.intent_to_sign,
            "consentToElectronicBusiness": self.consent_to_electronic_business,
            "signedAt": _iso(self.signature_timestamp),
            "expiresAt": _iso(self.expires_at(expiry_days)),
        }
