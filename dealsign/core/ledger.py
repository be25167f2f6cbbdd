# ------------------------------------------------------------------------
# File: ledger.py
# Location: dealsign/core/ledger.py
# Description:
#     Signature request lifecycle: create -> consent -> mark -> completed,
#     plus revoke, verification and compliance reporting. Every transition
#     is a single-record read-modify-write; the completing write and each
#     consent write are conditional UPDATEs so concurrent first submissions
#     cannot both apply. Entries older than the expiry window are refused
#     for consent, status and sign regardless of their stored status.
# ------------------------------------------------------------------------

import os
from collections import namedtuple
from contextlib import contextmanager

from sqlalchemy.exc import SQLAlchemyError

from dealsign.core import signer
from dealsign.core.auth import INTERNAL_KEY_TYPES, ApiKeyIdentity, require_internal, require_permission
from dealsign.core.errors import (
    ESignError, Expired, Forbidden, InternalError, InvalidRequest, NotFound
)
from dealsign.core.guard import require_usable_document_url, require_valid_signature_id, short_id
from dealsign.core.integrity import (
    generate_hash, hash_components, hash_document_bytes, verify_legal_compliance, verify_signature
)
from dealsign.db.models import (
    DEFAULT_EXPIRY_DAYS, DONE_STATUSES, DigitalSignature, DocumentType, EntityKind,
    IdentityVerificationMethod, SignatureMethod, SignatureStatus, SignerModel, SignerType, utcnow
)
from dealsign.db.store import SignatureStore
from dealsign.log_utils.logging_config import configure_logging

logger = configure_logging(name="dealsign.ledger", logfile="dealsign.log", level=None)

ClientInfo = namedtuple("ClientInfo", ["ip", "user_agent"])
SubmitResult = namedtuple("SubmitResult", ["record", "already_completed"])

# Internal staff sign under their employment relationship; their consent is
# implicit but still stamped with the same audit metadata as anyone else's.
IMPLICIT_CONSENT_SIGNERS = (SignerType.internal, SignerType.finance)

CONSENT_FIELDS = {
    "intent_to_sign": "intent_to_sign",
    "electronic_business": "consent_to_electronic_business",
}

AUDIT_TIMESTAMP_KEYS = {
    "intent_to_sign": "intentToSignTimestamp",
    "consent_to_electronic_business": "consentToElectronicBusinessTimestamp",
}

VERIFICATION_BY_METHOD = {
    SignatureMethod.api_key: IdentityVerificationMethod.api_key,
    SignatureMethod.email_verification: IdentityVerificationMethod.email_verification,
    SignatureMethod.manual: IdentityVerificationMethod.manual,
    SignatureMethod.built_in: IdentityVerificationMethod.built_in_system,
    SignatureMethod.email_invitation: IdentityVerificationMethod.email_verification,
}

SIGNER_TYPE_BY_KEY_TYPE = {
    "internal": SignerType.internal,
    "customer": SignerType.customer,
    "dealer": SignerType.dealer,
    "system": SignerType.internal,
}


def _enum(enum_cls, value, field):
    if isinstance(value, enum_cls):
        return value
    try:
        return enum_cls(value)
    except ValueError:
        allowed = ", ".join(m.value for m in enum_cls)
        raise InvalidRequest(f"Unsupported {field} '{value}'. Allowed: {allowed}")


def _version(value):
    try:
        version = int(value or 1)
    except (TypeError, ValueError):
        raise InvalidRequest(f"Invalid document version '{value}'")
    if version < 1:
        raise InvalidRequest("Document version must be 1 or greater")
    return version


def _iso(value):
    return value.isoformat() if value else None


class SignatureLedger:

    def __init__(
        self,
        store: SignatureStore,
        documents=None,
        notifier=None,
        dispatcher=None,
        rate_guard=None,
        signed_dir: str = "signed",
        expiry_days: int = DEFAULT_EXPIRY_DAYS,
        watermark_label: str = "SIGNED",
        download_url_template: str = "/api/v1/signatures/{signature_id}/download",
        webhook=None,
        clock=utcnow,
        marker=signer.create_signed_document,
    ):
        self.store = store
        self.documents = documents
        self.notifier = notifier
        self.dispatcher = dispatcher
        self.rate_guard = rate_guard
        self.signed_dir = signed_dir
        self.expiry_days = expiry_days
        self.watermark_label = watermark_label
        self.download_url_template = download_url_template
        self.webhook = webhook
        self.clock = clock
        self.marker = marker

    # ------------------------------------------------------------------
    # helpers
    # ------------------------------------------------------------------

    @contextmanager
    def _persistence(self, operation: str, signature_id: str = None):
        try:
            yield
        except SQLAlchemyError as e:
            self.store.rollback()
            logger.error("%s failed for signature %s: %s", operation, short_id(signature_id), e, exc_info=True)
            raise InternalError("An unexpected error occurred. Please try again later.") from e

    def _check_rate(self, operation: str, client: ClientInfo):
        if self.rate_guard is not None:
            self.rate_guard.check(operation, client.ip if client else None)

    def _lookup(self, signature_id: str) -> DigitalSignature:
        with self._persistence("lookup", signature_id):
            record = self.store.get_by_signature_id(signature_id)
        if record is None:
            logger.warning("Signature not found: %s...", short_id(signature_id))
            raise NotFound("This signing link is invalid.", code="link_invalid")
        return record

    def _load_public(self, signature_id: str, operation: str, client: ClientInfo) -> DigitalSignature:
        """Guards shared by consent, status and sign: format, rate, existence, age."""
        require_valid_signature_id(signature_id)
        self._check_rate(operation, client)
        record = self._lookup(signature_id)
        if record.status == SignatureStatus.expired or record.is_expired(self.clock(), self.expiry_days):
            logger.warning("Signature %s... expired (created %s)", short_id(signature_id), record.created_at)
            raise Expired("This signing link has expired.")
        return record

    def _dispatch(self, label: str, fn, *args, **kwargs):
        if fn is None:
            return None
        if self.dispatcher is None:
            try:
                return fn(*args, **kwargs)
            except Exception:
                logger.exception("Notification %s failed; ignoring", label)
                return None
        return self.dispatcher.dispatch(label, fn, *args, **kwargs)

    def _resolve_document(self, document_id: str) -> dict:
        if self.documents is None:
            raise InternalError("No document source configured")
        resolved = self.documents.resolve_document(document_id)
        if not resolved.get("exists"):
            raise NotFound("Document not found", code="not_found")
        return resolved.get("displayFields") or {}

    # ------------------------------------------------------------------
    # create
    # ------------------------------------------------------------------

    def create_request(self, identity: ApiKeyIdentity, payload: dict, client: ClientInfo = None) -> DigitalSignature:
        require_permission(identity, "createSignatures", "signAgreements")
        record = self._build_record(payload, identity=identity)

        with self._persistence("create_request", record.signature_id):
            self.store.add(record)

        logger.info(
            "Signature request %s created for %s (%s) by API key %s",
            short_id(record.signature_id), record.signer_name, record.document_type.value, identity.name,
        )
        self._send_request_email(record)
        return record

    def _build_record(self, payload: dict, identity: ApiKeyIdentity = None,
                      default_signer_type=None, default_method=SignatureMethod.api_key) -> DigitalSignature:
        payload = payload or {}
        document_id = payload.get("documentId")
        document_url = payload.get("documentUrl")
        if not document_id:
            raise InvalidRequest("Document ID is required")
        if not payload.get("documentType"):
            raise InvalidRequest("Document type is required")
        document_type = _enum(DocumentType, payload.get("documentType"), "document type")
        require_usable_document_url(document_url)

        signer_name = payload.get("signerName") or (identity.name if identity else None)
        signer_email = payload.get("signerEmail")
        if not signer_name or not signer_email:
            raise InvalidRequest("Signer name and email are required")

        if payload.get("signerType"):
            signer_type = _enum(SignerType, payload["signerType"], "signer type")
        elif default_signer_type is not None:
            signer_type = default_signer_type
        else:
            signer_type = SIGNER_TYPE_BY_KEY_TYPE.get(identity.type if identity else None, SignerType.customer)

        method = _enum(SignatureMethod, payload.get("signatureMethod") or default_method, "signature method")

        signer_id = payload.get("signerId")
        signer_model = _enum(SignerModel, payload["signerModel"], "signer model") if payload.get("signerModel") else None
        if signer_id is None and identity is not None and identity.entity.kind in (EntityKind.User, EntityKind.Dealer):
            signer_id = identity.entity.id
            signer_model = SignerModel(identity.entity.kind.value)

        deal_info = self._resolve_document(str(document_id))

        return DigitalSignature(
            signature_id=DigitalSignature.generate_signature_id(),
            document_id=str(document_id),
            document_url=document_url,
            document_type=document_type,
            document_version=_version(payload.get("documentVersion")),
            deal_info=deal_info,
            signer_type=signer_type,
            signer_id=str(signer_id) if signer_id else None,
            signer_model=signer_model,
            signer_name=signer_name,
            signer_email=signer_email,
            signature_method=method,
            api_key_used=identity.api_key_id if identity else None,
            intent_to_sign=False,
            consent_to_electronic_business=False,
            identity_verification_method=VERIFICATION_BY_METHOD[method],
            signer_identity_verified=False,
            original_document_url=document_url,
            watermark=self.watermark_label,
            audit_trail={},
            status=SignatureStatus.pending,
        )

    def _send_request_email(self, record: DigitalSignature):
        if self.notifier is None:
            return
        self._dispatch(
            f"signature-request:{short_id(record.signature_id)}",
            self.notifier.send_signature_request,
            email=record.signer_email,
            signature_id=record.signature_id,
            document_type=record.document_type.value,
            deal_info=record.deal_info,
            signer_name=record.signer_name,
        )

    # ------------------------------------------------------------------
    # consent
    # ------------------------------------------------------------------

    def grant_intent_to_sign(self, signature_id: str, client: ClientInfo) -> DigitalSignature:
        return self._grant_consent(signature_id, "intent_to_sign", client)

    def grant_electronic_business_consent(self, signature_id: str, client: ClientInfo) -> DigitalSignature:
        return self._grant_consent(signature_id, "electronic_business", client)

    def _grant_consent(self, signature_id: str, kind: str, client: ClientInfo) -> DigitalSignature:
        record = self._load_public(signature_id, "consent", client)
        if record.status == SignatureStatus.revoked:
            raise InvalidRequest("This signature request has been revoked.", code="link_invalid")

        flag = CONSENT_FIELDS[kind]
        if getattr(record, flag) or record.status in DONE_STATUSES:
            logger.info("Consent %s already recorded for %s; nothing to do", kind, short_id(signature_id))
            return record

        now = self.clock()
        audit_entries = {
            AUDIT_TIMESTAMP_KEYS[flag]: _iso(now),
            "consentTimestamp": _iso(now),
            "consentMethod": "explicit_checkbox",
            "ipAddress": client.ip,
            "userAgent": client.user_agent,
        }
        values = {
            flag: True,
            f"{flag}_timestamp": now,
            f"{flag}_ip_address": client.ip,
            f"{flag}_user_agent": client.user_agent,
        }

        with self._persistence(f"consent:{kind}", signature_id):
            granted = self.store.grant_consent_if_unset(
                record, getattr(DigitalSignature, flag), values, audit_entries
            )
            if record.intent_to_sign and record.consent_to_electronic_business:
                self.store.update_if_status(
                    record, (SignatureStatus.pending,), {"status": SignatureStatus.consent_given}
                )

        if granted:
            logger.info("Consent %s recorded for signature %s from %s", kind, short_id(signature_id), client.ip)
        return record

    # ------------------------------------------------------------------
    # sign
    # ------------------------------------------------------------------

    def submit_mark(self, signature_id: str, mark: dict, client: ClientInfo) -> SubmitResult:
        require_valid_signature_id(signature_id)
        mark = mark or {}
        if not mark.get("imageSignature") and not (mark.get("typedSignature") or "").strip():
            raise InvalidRequest("Either signature image or typed signature is required", code="mark_required")

        record = self._load_public(signature_id, "sign", client)
        if record.status in DONE_STATUSES:
            logger.info("Signature %s already completed; returning existing record", short_id(signature_id))
            return SubmitResult(record, True)
        if record.status == SignatureStatus.revoked:
            raise InvalidRequest("This signature request has been revoked.", code="link_invalid")

        return self._complete(record, mark, client)

    def _complete(self, record: DigitalSignature, mark: dict, client: ClientInfo) -> SubmitResult:
        now = self.clock()
        values = {}
        audit = dict(record.audit_trail or {})

        if record.signer_type in IMPLICIT_CONSENT_SIGNERS:
            for flag in CONSENT_FIELDS.values():
                if not getattr(record, flag):
                    values.update({
                        flag: True,
                        f"{flag}_timestamp": now,
                        f"{flag}_ip_address": client.ip,
                        f"{flag}_user_agent": client.user_agent,
                    })
                    audit[AUDIT_TIMESTAMP_KEYS[flag]] = _iso(now)
            audit.setdefault("consentTimestamp", _iso(now))
            audit.setdefault("consentMethod", "implicit_employment")
        elif not (record.intent_to_sign and record.consent_to_electronic_business):
            raise InvalidRequest(
                "Legal consent requirements not met. Both intent to sign and consent to "
                "electronic business must be recorded.",
                code="consent_required",
                missingConsents={
                    "intentToSign": not record.intent_to_sign,
                    "consentToElectronicBusiness": not record.consent_to_electronic_business,
                },
            )

        image = mark.get("imageSignature") or None
        typed = (mark.get("typedSignature") or "").strip() or None
        audit.update({
            "signatureTimestamp": _iso(now),
            "ipAddress": client.ip,
            "userAgent": client.user_agent,
        })
        values.update({
            "signature_timestamp": now,
            "image_signature": image,
            "typed_signature": typed,
            "signature_font": mark.get("signatureFont"),
            "coordinates": mark.get("coordinates"),
            "ip_address": client.ip,
            "user_agent": client.user_agent,
            "signer_identity_verified": True,
            "identity_verification_method": VERIFICATION_BY_METHOD[record.signature_method],
            "identity_verification_timestamp": now,
            "audit_trail": audit,
            "status": SignatureStatus.completed,
            "signature_hash": hash_components(
                record.document_id or record.document_url,
                record.signer_id or record.signer_email,
                now,
                image or typed,
                True,
                True,
            ),
        })

        with self._persistence("submit_mark", record.signature_id):
            won = self.store.complete_if_open(record, values)

        if not won:
            logger.info("Signature %s was completed by a concurrent request", short_id(record.signature_id))
            return SubmitResult(record, True)

        logger.info("Signature %s completed by %s from %s", short_id(record.signature_id), record.signer_name, client.ip)

        if record.document_url and self.documents is not None:
            self._produce_signed_artifact(record)
        self._notify_completion(record)
        return SubmitResult(record, False)

    def _produce_signed_artifact(self, record: DigitalSignature):
        """Best effort: the signature event stands even if the PDF step fails."""
        try:
            source = self.documents.fetch_document_bytes(record.document_url)
            signed = self.marker(
                source,
                record.document_type.value,
                image_data=record.image_signature,
                typed_text=record.typed_signature,
                placement_override=record.coordinates,
                signer_name=record.signer_name,
                watermark_label=self.watermark_label,
                timestamp=record.signature_timestamp,
                font=record.signature_font,
            )

            dated_dir = os.path.join(self.signed_dir, record.signature_timestamp.strftime("%Y%m%d"))
            os.makedirs(dated_dir, exist_ok=True)
            output_path = os.path.abspath(os.path.join(dated_dir, f"{record.signature_id}_signed.pdf"))
            with open(output_path, "wb") as f_out:
                f_out.write(signed.pdf_bytes)

            record.document_hash = hash_document_bytes(signed.pdf_bytes)
            record.is_flattened = True
            record.watermark = self.watermark_label
            record.signed_timestamp = self.clock()
            record.signed_document_path = output_path
            record.signed_document_url = self.download_url_template.format(signature_id=record.signature_id)
            self.store.save(record)
            logger.info(
                "Signed document for %s written under %s (%d -> %d bytes)",
                short_id(record.signature_id), dated_dir, signed.original_size, signed.signed_size,
            )
        except SQLAlchemyError:
            self.store.rollback()
            logger.exception("Could not store signed document details for %s", short_id(record.signature_id))
        except (ESignError, OSError) as e:
            logger.error("Signed document generation failed for %s: %s", short_id(record.signature_id), e)

    def _notify_completion(self, record: DigitalSignature):
        if self.notifier is not None:
            self._dispatch(
                f"completion:{short_id(record.signature_id)}",
                self.notifier.send_completion_notice,
                email=record.signer_email,
                signature_id=record.signature_id,
                document_type=record.document_type.value,
                deal_info=record.deal_info,
                signer_name=record.signer_name,
                signed_at=_iso(record.signature_timestamp),
                signed_document_url=record.signed_document_url,
            )
        if self.webhook is not None:
            deal_info = record.deal_info or {}
            self._dispatch(
                f"ops-webhook:{short_id(record.signature_id)}",
                self.webhook,
                f"Document signed:\n"
                f"Signer: {record.signer_name} ({record.signer_type.value})\n"
                f"Email: {record.signer_email}\n"
                f"Document: {record.document_type.value} {record.document_id or record.document_url}\n"
                f"VIN: {deal_info.get('vin', 'N/A')}\n"
                f"Signed At: {_iso(record.signature_timestamp)}\n"
                f"Signature ID: {short_id(record.signature_id)}...",
            )

    # ------------------------------------------------------------------
    # internal signers and downstream requests
    # ------------------------------------------------------------------

    def create_internal_signature(self, identity: ApiKeyIdentity, payload: dict, client: ClientInfo) -> DigitalSignature:
        """
        One-step signature for internal/finance staff: the entry is created
        and completed in the same call under implicit consent.
        """
        require_permission(identity, "signAgreements")
        if identity.type not in ("internal", "system"):
            raise Forbidden("Only internal API keys may create built-in signatures")

        payload = dict(payload or {})
        payload.setdefault("signatureMethod", SignatureMethod.built_in.value)
        mark = {
            "imageSignature": payload.get("imageSignature"),
            "typedSignature": payload.get("typedSignature"),
            "signatureFont": payload.get("signatureFont"),
            "coordinates": payload.get("coordinates"),
        }
        if not mark["imageSignature"] and not (mark["typedSignature"] or "").strip():
            raise InvalidRequest("Either signature image or typed signature is required", code="mark_required")

        record = self._build_record(
            payload, identity=identity, default_signer_type=SignerType.finance, default_method=SignatureMethod.built_in
        )
        if record.signer_type not in IMPLICIT_CONSENT_SIGNERS:
            raise InvalidRequest("Built-in signatures are limited to internal and finance signers")

        with self._persistence("create_internal_signature", record.signature_id):
            self.store.add(record)
        return self._complete(record, mark, client).record

    def send_to_client(self, identity: ApiKeyIdentity, signature_id: str, payload: dict) -> DigitalSignature:
        """Open an independent client-facing entry for the same document."""
        require_permission(identity, "createSignatures")
        require_valid_signature_id(signature_id)
        source = self._lookup(signature_id)

        payload = payload or {}
        client_email = payload.get("clientEmail")
        if not client_email:
            raise InvalidRequest("Client email is required")
        document_url = payload.get("documentUrl") or source.document_url
        require_usable_document_url(document_url)

        record = DigitalSignature(
            signature_id=DigitalSignature.generate_signature_id(),
            document_id=source.document_id,
            document_url=document_url,
            document_type=source.document_type,
            document_version=source.document_version,
            deal_info=source.deal_info,
            signer_type=SignerType.client,
            signer_name=payload.get("clientName") or "Client",
            signer_email=client_email,
            signature_method=SignatureMethod.email_invitation,
            api_key_used=identity.api_key_id,
            identity_verification_method=IdentityVerificationMethod.email_verification,
            original_document_url=document_url,
            watermark=self.watermark_label,
            audit_trail={"invitationSentAt": _iso(self.clock()), "requestedAfter": source.signature_id},
            status=SignatureStatus.pending,
        )
        with self._persistence("send_to_client", signature_id):
            self.store.add(record)

        logger.info("Client signature %s created from %s for %s", short_id(record.signature_id), short_id(signature_id), client_email)
        self._send_request_email(record)
        return record

    # ------------------------------------------------------------------
    # reads and admin
    # ------------------------------------------------------------------

    def get_status(self, signature_id: str, client: ClientInfo) -> dict:
        record = self._load_public(signature_id, "status", client)
        return record.to_status_dict(self.expiry_days)

    def get_compliance_report(self, identity: ApiKeyIdentity, signature_id: str) -> dict:
        require_internal(identity)
        require_valid_signature_id(signature_id)
        record = self._lookup(signature_id)
        compliance = verify_legal_compliance(record)
        if compliance["integrityMismatch"]:
            logger.warning("Integrity mismatch for signature %s", short_id(signature_id))

        return {
            "signatureId": record.signature_id,
            "status": record.status.value,
            "compliance": compliance,
            "requirements": {
                "intentToSign": {
                    "required": True,
                    "met": record.intent_to_sign,
                    "timestamp": _iso(record.intent_to_sign_timestamp),
                    "ipAddress": record.intent_to_sign_ip_address,
                    "userAgent": record.intent_to_sign_user_agent,
                },
                "consentToElectronicBusiness": {
                    "required": True,
                    "met": record.consent_to_electronic_business,
                    "timestamp": _iso(record.consent_to_electronic_business_timestamp),
                    "ipAddress": record.consent_to_electronic_business_ip_address,
                    "userAgent": record.consent_to_electronic_business_user_agent,
                },
                "signatureAssociation": {
                    "required": True,
                    "met": record.signer_identity_verified,
                    "verificationMethod": record.identity_verification_method.value,
                    "timestamp": _iso(record.identity_verification_timestamp),
                },
                "documentIntegrity": {
                    "required": True,
                    "met": compliance["documentIntegrity"],
                    "signatureHash": record.signature_hash,
                    "documentHash": record.document_hash,
                },
            },
            "signature": record.to_dict(),
        }

    def verify(self, identity: ApiKeyIdentity, signature_id: str) -> dict:
        require_internal(identity)
        require_valid_signature_id(signature_id)
        record = self._lookup(signature_id)
        return {
            "signatureId": record.signature_id,
            "isValid": verify_signature(record),
            "expectedHash": generate_hash(record),
            "storedHash": record.signature_hash,
            "legalCompliance": verify_legal_compliance(record),
        }

    def revoke(self, signature_id: str, reason: str = None, revoked_by: str = None) -> DigitalSignature:
        require_valid_signature_id(signature_id)
        record = self._lookup(signature_id)
        if record.status == SignatureStatus.revoked:
            return record

        audit = dict(record.audit_trail or {})
        audit.update({"revokedAt": _iso(self.clock()), "revokedBy": revoked_by})
        with self._persistence("revoke", signature_id):
            record.status = SignatureStatus.revoked
            record.revocation_reason = reason
            record.audit_trail = audit
            self.store.save(record)

        logger.info("Signature %s revoked by %s. Reason: %s", short_id(signature_id), revoked_by, reason)
        return record

    def get_signed_document(self, identity: ApiKeyIdentity, signature_id: str) -> DigitalSignature:
        """Internal keys, or the key whose entity is the entry's signer."""
        require_valid_signature_id(signature_id)
        record = self._lookup(signature_id)
        if identity.type not in INTERNAL_KEY_TYPES and not (
            record.signer_id and record.signer_model is not None
            and identity.entity.kind.value == record.signer_model.value
            and identity.entity.id == record.signer_id
        ):
            logger.warning("Key %s refused signed document %s", identity.name, short_id(signature_id))
            raise Forbidden("This API key cannot access that signed document")
        return record

    def list_for_document(self, identity: ApiKeyIdentity, document_id: str):
        require_internal(identity)
        with self._persistence("list_for_document"):
            return self.store.list_for_document(str(document_id))
