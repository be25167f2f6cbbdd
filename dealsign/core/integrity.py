# ------------------------------------------------------------------------
# File: integrity.py
# Location: dealsign/core/integrity.py
# Description:
#     Compliance hashing for ledger entries. The signature hash binds the
#     document, signer, mark timestamp, mark payload and both consent flags;
#     any later edit to those fields shows up as a hash mismatch. This is a
#     tamper detector, not a proof of authorship.
# ------------------------------------------------------------------------

import hashlib

from dealsign.db.models import DigitalSignature


def _flag(value) -> str:
    return "true" if value else "false"


def hash_components(
    document_id,
    signer_id,
    timestamp,
    mark,
    intent_to_sign,
    consent_to_electronic_business,
) -> str:
    timestamp_text = timestamp.isoformat() if timestamp else "unknown"
    data = "-".join([
        str(document_id or "unknown"),
        str(signer_id or "unknown"),
        timestamp_text,
        str(mark or "unknown"),
        _flag(intent_to_sign),
        _flag(consent_to_electronic_business),
    ])
    return hashlib.sha256(data.encode("utf-8")).hexdigest()


def generate_hash(record: DigitalSignature) -> str:
    """SHA-256 over the fields that make up the legal signature event."""
    return hash_components(
        record.document_id or record.document_url,
        record.signer_id or record.signer_email,
        record.signature_timestamp,
        record.mark_payload,
        record.intent_to_sign,
        record.consent_to_electronic_business,
    )


def verify_signature(record: DigitalSignature) -> bool:
    if not record.signature_hash:
        return False
    return record.signature_hash == generate_hash(record)


def hash_document_bytes(data: bytes) -> str:
    return hashlib.sha256(data).hexdigest()


def verify_legal_compliance(record: DigitalSignature) -> dict:
    """
    Four-gate check: intent, electronic-business consent, verified signer
    identity and an intact hash. The remaining keys are informational.
    """
    intent = bool(record.intent_to_sign)
    consent = bool(record.consent_to_electronic_business)
    identity = bool(record.signer_identity_verified)
    integrity = verify_signature(record)

    audit = record.audit_trail or {}
    audit_complete = bool(audit.get("signatureTimestamp") and audit.get("ipAddress"))

    gates = [intent, consent, identity, integrity]
    return {
        "isCompliant": all(gates),
        "intentToSign": intent,
        "consentToElectronicBusiness": consent,
        "signerIdentityVerified": identity,
        "documentIntegrity": integrity,
        "integrityMismatch": bool(record.signature_hash) and not integrity,
        "auditTrailComplete": audit_complete,
        "esignActCompliant": intent and consent and audit_complete,
        "uetaCompliant": intent and consent and audit_complete,
        "complianceScore": round(sum(gates + [audit_complete]) / 5 * 100),
    }
