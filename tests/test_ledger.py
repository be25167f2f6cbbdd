# ------------------------------------------------------------------------
# File: test_ledger.py
# Location: tests/test_ledger.py
# Description:
#     Signature lifecycle: request creation, the two consents, mark
#     submission with its signed artifact, expiry, idempotence, revocation
#     and the implicit-consent path for internal signers.
# ------------------------------------------------------------------------

import datetime
import logging
import os

import pytest
from sqlalchemy.orm.attributes import set_committed_value

from dealsign.core.auth import identity_from
from dealsign.core.errors import Expired, Forbidden, InvalidRequest, NotFound, RateLimited
from dealsign.core.guard import RateLimitGuard
from dealsign.core.integrity import verify_legal_compliance, verify_signature
from dealsign.core.ledger import ClientInfo, SignatureLedger
from dealsign.db.models import IdentityVerificationMethod, SignatureStatus, SignerType, utcnow
from dealsign.db.store import SignatureStore
from dealsign.integrations.notifications import NotificationDispatcher
from tests.conftest import FakeClock, FakeDocuments, FakeNotifier

DOC_URL = "https://docs.example.com/deals/deal-1/wholesale_bos.pdf"


def _request_payload(**overrides):
    payload = {
        "documentId": "deal-1",
        "documentUrl": DOC_URL,
        "documentType": "wholesale_bos",
        "signerName": "Jane Doe",
        "signerEmail": "jane@example.com",
    }
    payload.update(overrides)
    return payload


@pytest.fixture
def customer(customer_key):
    return identity_from(customer_key)


@pytest.fixture
def internal(internal_key):
    return identity_from(internal_key)


@pytest.fixture
def pending(ledger, customer, browser):
    return ledger.create_request(customer, _request_payload(), browser)


def _consent(ledger, record, client):
    ledger.grant_intent_to_sign(record.signature_id, client)
    return ledger.grant_electronic_business_consent(record.signature_id, client)


def test_create_request(pending, customer, notifier):
    assert pending.status is SignatureStatus.pending
    assert pending.signature_id.startswith("sig_")
    assert pending.signer_type is SignerType.customer
    assert pending.api_key_used == customer.api_key_id
    assert pending.deal_info["vin"] == "1HGCM82633A004352"
    assert pending.document_version == 1
    assert notifier.requests[0]["signature_id"] == pending.signature_id
    assert notifier.requests[0]["email"] == "jane@example.com"


def test_wholesale_bos_typed_signature_end_to_end(ledger, pending, browser, notifier, webhook_messages, documents):
    record = _consent(ledger, pending, browser)
    assert record.status is SignatureStatus.consent_given
    assert record.intent_to_sign_ip_address == "203.0.113.9"
    assert record.audit_trail["consentMethod"] == "explicit_checkbox"

    result = ledger.submit_mark(record.signature_id, {"typedSignature": "Jane Doe"}, browser)

    signed = result.record
    assert result.already_completed is False
    assert signed.status is SignatureStatus.completed
    assert signed.signer_identity_verified is True
    assert verify_signature(signed)
    assert verify_legal_compliance(signed)["isCompliant"] is True

    assert documents.fetched == [DOC_URL]
    assert signed.is_flattened is True
    assert signed.document_hash and len(signed.document_hash) == 64
    assert os.path.isfile(signed.signed_document_path)
    assert signed.signed_document_url == f"/api/v1/signatures/{signed.signature_id}/download"

    assert notifier.completions[0]["signature_id"] == signed.signature_id
    assert "Jane Doe" in webhook_messages[0]


def test_resubmitting_a_completed_entry_is_idempotent(ledger, pending, browser):
    _consent(ledger, pending, browser)
    first = ledger.submit_mark(pending.signature_id, {"typedSignature": "Jane Doe"}, browser).record
    snapshot = (first.signature_hash, first.signature_timestamp, first.typed_signature, first.document_hash)

    again = ledger.submit_mark(pending.signature_id, {"typedSignature": "Someone Else"}, browser)

    assert again.already_completed is True
    record = again.record
    assert (record.signature_hash, record.signature_timestamp, record.typed_signature, record.document_hash) == snapshot


def test_consent_is_idempotent(ledger, pending, browser):
    first = ledger.grant_intent_to_sign(pending.signature_id, browser)
    stamped = first.intent_to_sign_timestamp

    later = ledger.grant_intent_to_sign(pending.signature_id, ClientInfo("198.51.100.1", "Other"))

    assert later.intent_to_sign_timestamp == stamped
    assert later.intent_to_sign_ip_address == "203.0.113.9"
    assert later.status is SignatureStatus.pending


def test_customer_must_consent_before_signing(ledger, pending, browser):
    ledger.grant_intent_to_sign(pending.signature_id, browser)
    with pytest.raises(InvalidRequest) as exc:
        ledger.submit_mark(pending.signature_id, {"typedSignature": "Jane Doe"}, browser)
    assert exc.value.code == "consent_required"
    assert exc.value.details["missingConsents"] == {"intentToSign": False, "consentToElectronicBusiness": True}


def test_mark_payload_required(ledger, pending, browser):
    with pytest.raises(InvalidRequest) as exc:
        ledger.submit_mark(pending.signature_id, {"typedSignature": "  "}, browser)
    assert exc.value.code == "mark_required"


def test_entries_older_than_seven_days_expire(ledger, pending, browser, session):
    pending.created_at = utcnow() - datetime.timedelta(days=8)
    pending.status = SignatureStatus.completed
    session.commit()

    for call in (
        lambda: ledger.grant_intent_to_sign(pending.signature_id, browser),
        lambda: ledger.grant_electronic_business_consent(pending.signature_id, browser),
        lambda: ledger.get_status(pending.signature_id, browser),
        lambda: ledger.submit_mark(pending.signature_id, {"typedSignature": "Jane Doe"}, browser),
    ):
        with pytest.raises(Expired) as exc:
            call()
        assert exc.value.code == "link_expired"


class CountingStore(SignatureStore):
    def __init__(self, db_session):
        super().__init__(db_session)
        self.lookups = 0

    def get_by_signature_id(self, signature_id):
        self.lookups += 1
        return super().get_by_signature_id(signature_id)


def test_malformed_id_never_reaches_the_store(session, browser):
    store = CountingStore(session)
    ledger = SignatureLedger(store)

    with pytest.raises(InvalidRequest) as exc:
        ledger.submit_mark("short", {"typedSignature": "Jane Doe"}, browser)

    assert exc.value.code == "link_invalid"
    assert store.lookups == 0


def test_unknown_signature_id(ledger, browser):
    with pytest.raises(NotFound) as exc:
        ledger.get_status("sig_" + "0" * 32, browser)
    assert exc.value.code == "link_invalid"


def test_status_projection_is_signer_safe(ledger, pending, browser):
    status = ledger.get_status(pending.signature_id, browser)
    assert set(status) == {
        "signatureId", "status", "documentType", "signerName", "intentToSign",
        "consentToElectronicBusiness", "signedAt", "expiresAt",
    }
    assert status["status"] == "pending"


def test_internal_signer_consents_implicitly(ledger, internal, browser):
    record = ledger.create_request(internal, _request_payload(signerName="Finance Desk"), browser)
    assert record.signer_type is SignerType.internal

    signed = ledger.submit_mark(record.signature_id, {"typedSignature": "Finance Desk"}, browser).record

    assert signed.status is SignatureStatus.completed
    assert signed.intent_to_sign and signed.consent_to_electronic_business
    assert signed.intent_to_sign_ip_address == "203.0.113.9"
    assert signed.audit_trail["consentMethod"] == "implicit_employment"
    assert verify_legal_compliance(signed)["isCompliant"] is True


def test_built_in_finance_signature(ledger, internal, browser):
    record = ledger.create_internal_signature(
        internal, _request_payload(signerName="Finance Desk", signerEmail="finance@dealsign.test",
                                   typedSignature="Finance Desk"), browser
    )
    assert record.signer_type is SignerType.finance
    assert record.status is SignatureStatus.completed
    assert record.identity_verification_method is IdentityVerificationMethod.built_in_system
    assert verify_signature(record)


def test_built_in_signature_requires_internal_key(ledger, customer, browser):
    with pytest.raises(Forbidden):
        ledger.create_internal_signature(customer, _request_payload(typedSignature="Jane Doe"), browser)


def test_create_refuses_generation_failed_url(ledger, customer, browser):
    with pytest.raises(InvalidRequest) as exc:
        ledger.create_request(customer, _request_payload(documentUrl="https://docs.example.com/GENERATION_FAILED.pdf"), browser)
    assert exc.value.code == "bad_document_url"


def test_create_refuses_unknown_document(ledger, customer, browser):
    with pytest.raises(NotFound):
        ledger.create_request(customer, _request_payload(documentId="deal-404"), browser)


def test_create_refuses_unsupported_type(ledger, customer, browser):
    with pytest.raises(InvalidRequest):
        ledger.create_request(customer, _request_payload(documentType="lease_agreement"), browser)


def test_create_requires_permission(ledger, viewer_key, browser):
    with pytest.raises(Forbidden):
        ledger.create_request(identity_from(viewer_key), _request_payload(), browser)


def test_notification_failure_does_not_fail_the_request(session, customer, browser):
    ledger = SignatureLedger(SignatureStore(session), documents=FakeDocuments(), notifier=FakeNotifier(fail=True),
                             dispatcher=NotificationDispatcher(run_async=False))
    record = ledger.create_request(customer, _request_payload(), browser)
    assert record.status is SignatureStatus.pending


def test_artifact_failure_keeps_the_signature(session, customer, browser, tmp_path):
    documents = FakeDocuments(pdf_bytes=b"<html>error page</html>")
    ledger = SignatureLedger(SignatureStore(session), documents=documents, signed_dir=str(tmp_path))
    record = ledger.create_request(customer, _request_payload(), browser)
    _consent(ledger, record, browser)

    signed = ledger.submit_mark(record.signature_id, {"typedSignature": "Jane Doe"}, browser).record

    assert signed.status is SignatureStatus.completed
    assert signed.document_hash is None
    assert signed.is_flattened is False
    assert verify_signature(signed)


def test_only_one_completing_write_applies(session, pending):
    store = SignatureStore(session)
    first = store.complete_if_open(pending, {"status": SignatureStatus.completed, "typed_signature": "Jane Doe"})
    second = store.complete_if_open(pending, {"status": SignatureStatus.completed, "typed_signature": "Intruder"})

    assert first is True
    assert second is False
    assert pending.typed_signature == "Jane Doe"


def test_sign_is_rate_limited_per_client(session, customer, browser):
    clock = FakeClock()
    guard = RateLimitGuard.from_config(
        {"RATE_LIMIT_CONSENT": "10/300", "RATE_LIMIT_STATUS": "30/60", "RATE_LIMIT_SIGN": "1/300"}, clock=clock
    )
    ledger = SignatureLedger(SignatureStore(session), documents=FakeDocuments(), rate_guard=guard)
    record = ledger.create_request(customer, _request_payload(documentUrl=None), browser)

    with pytest.raises(InvalidRequest):
        ledger.submit_mark(record.signature_id, {"typedSignature": "Jane Doe"}, browser)
    with pytest.raises(RateLimited):
        ledger.submit_mark(record.signature_id, {"typedSignature": "Jane Doe"}, browser)

    other = ClientInfo("198.51.100.20", "Other")
    with pytest.raises(InvalidRequest):
        ledger.submit_mark(record.signature_id, {"typedSignature": "Jane Doe"}, other)

    clock.advance(300)
    _consent(ledger, record, browser)
    assert ledger.submit_mark(record.signature_id, {"typedSignature": "Jane Doe"}, browser).record.status \
        is SignatureStatus.completed


def test_revoked_entries_refuse_consent_and_sign(ledger, pending, browser):
    revoked = ledger.revoke(pending.signature_id, reason="Deal cancelled", revoked_by="admin@dealsign.test")
    assert revoked.status is SignatureStatus.revoked
    assert revoked.audit_trail["revokedBy"] == "admin@dealsign.test"

    for call in (
        lambda: ledger.grant_intent_to_sign(pending.signature_id, browser),
        lambda: ledger.submit_mark(pending.signature_id, {"typedSignature": "Jane Doe"}, browser),
    ):
        with pytest.raises(InvalidRequest) as exc:
            call()
        assert exc.value.code == "link_invalid"


def test_send_to_client_opens_an_independent_entry(ledger, pending, internal, notifier):
    client_record = ledger.send_to_client(internal, pending.signature_id, {
        "clientEmail": "buyer@example.com",
        "clientName": "Sam Buyer",
    })
    assert client_record.signature_id != pending.signature_id
    assert client_record.signer_type is SignerType.client
    assert client_record.document_id == pending.document_id
    assert client_record.audit_trail["requestedAfter"] == pending.signature_id
    assert notifier.requests[-1]["email"] == "buyer@example.com"

    listed = {r.signature_id for r in ledger.list_for_document(internal, "deal-1")}
    assert listed == {pending.signature_id, client_record.signature_id}


def test_compliance_report_and_verify(ledger, pending, internal, browser):
    _consent(ledger, pending, browser)
    ledger.submit_mark(pending.signature_id, {"typedSignature": "Jane Doe"}, browser)

    report = ledger.get_compliance_report(internal, pending.signature_id)
    assert report["compliance"]["isCompliant"] is True
    assert report["requirements"]["intentToSign"]["ipAddress"] == "203.0.113.9"
    assert report["requirements"]["signatureAssociation"]["verificationMethod"] == "api_key"

    verified = ledger.verify(internal, pending.signature_id)
    assert verified["isValid"] is True
    assert verified["storedHash"] == verified["expectedHash"]


def test_full_projections_are_internal_only(ledger, pending, customer, viewer_key):
    for identity in (customer, identity_from(viewer_key)):
        with pytest.raises(Forbidden):
            ledger.get_compliance_report(identity, pending.signature_id)
        with pytest.raises(Forbidden):
            ledger.verify(identity, pending.signature_id)
        with pytest.raises(Forbidden):
            ledger.list_for_document(identity, "deal-1")


def test_signed_document_is_scoped_to_the_signer(ledger, pending, customer, internal, viewer_key):
    assert ledger.get_signed_document(customer, pending.signature_id) is pending
    assert ledger.get_signed_document(internal, pending.signature_id) is pending
    with pytest.raises(Forbidden):
        ledger.get_signed_document(identity_from(viewer_key), pending.signature_id)


def test_create_requires_document_id(ledger, customer, browser, documents, notifier):
    payload = _request_payload()
    del payload["documentId"]

    with pytest.raises(InvalidRequest):
        ledger.create_request(customer, payload, browser)

    assert documents.resolved == []
    assert notifier.requests == []


def test_logs_carry_only_a_signature_id_prefix(ledger, customer, browser, caplog):
    caplog.set_level(logging.DEBUG, logger="dealsign")
    record = ledger.create_request(customer, _request_payload(), browser)
    _consent(ledger, record, browser)
    ledger.submit_mark(record.signature_id, {"typedSignature": "Jane Doe"}, browser)

    assert record.signature_id[:8] in caplog.text
    assert record.signature_id not in caplog.text


def test_consents_from_a_stale_snapshot_keep_both_audit_entries(ledger, pending, browser):
    ledger.grant_intent_to_sign(pending.signature_id, browser)
    # another worker's copy, loaded before intent was recorded
    set_committed_value(pending, "audit_trail", {})

    record = ledger.grant_electronic_business_consent(pending.signature_id, browser)

    assert "intentToSignTimestamp" in record.audit_trail
    assert "consentToElectronicBusinessTimestamp" in record.audit_trail
    assert record.status is SignatureStatus.consent_given
