# ------------------------------------------------------------------------
# File: test_routes.py
# Location: tests/test_routes.py
# Description:
#     HTTP surface through the Flask test client: API-key and admin
#     authentication, the public consent/status/sign endpoints and the
#     error shape the signer page relies on.
# ------------------------------------------------------------------------

import base64

from tests.conftest import make_pdf

DOC_URL = "https://docs.example.com/deals/deal-1/wholesale_bos.pdf"
SIGNER = {"User-Agent": "Mozilla/5.0 (Test)", "X-Forwarded-For": "203.0.113.9, 10.0.0.1"}


def _create(client, api_key, **overrides):
    payload = {
        "documentId": "deal-1",
        "documentUrl": DOC_URL,
        "documentType": "wholesale_bos",
        "signerName": "Jane Doe",
        "signerEmail": "jane@example.com",
    }
    payload.update(overrides)
    return client.post("/api/v1/signatures/request", json=payload, headers={"X-API-Key": api_key.key})


def test_health(client):
    response = client.get("/health")
    assert response.status_code == 200
    assert response.get_json() == {"status": "ok"}


def test_request_requires_api_key(client):
    response = client.post("/api/v1/signatures/request", json={})
    assert response.status_code == 401
    assert response.get_json()["code"] == "api_key_required"


def test_full_signing_flow(client, customer_key, internal_key, viewer_key):
    created = _create(client, customer_key)
    assert created.status_code == 201
    signature_id = created.get_json()["signature"]["signatureId"]

    for path in ("intent-to-sign", "electronic-business"):
        response = client.post(f"/api/v1/signatures/consent/{path}", json={"signatureId": signature_id}, headers=SIGNER)
        assert response.status_code == 200

    status = client.get(f"/api/v1/signatures/status/{signature_id}", headers=SIGNER).get_json()
    assert status["signature"]["status"] == "consent_given"

    signed = client.post("/api/v1/signatures/sign", json={"signatureId": signature_id, "typedSignature": "Jane Doe"},
                         headers=SIGNER)
    body = signed.get_json()
    assert signed.status_code == 200
    assert body["alreadyCompleted"] is False
    assert body["signature"]["status"] == "completed"

    again = client.post("/api/v1/signatures/sign", json={"signatureId": signature_id, "typedSignature": "Jane Doe"},
                        headers=SIGNER)
    assert again.status_code == 200
    assert again.get_json()["alreadyCompleted"] is True

    report = client.get(f"/api/v1/signatures/compliance/{signature_id}", headers={"X-API-Key": internal_key.key})
    compliance = report.get_json()
    assert compliance["compliance"]["isCompliant"] is True
    assert compliance["signature"]["ipAddress"] == "203.0.113.9"

    download = client.get(body["signedDocumentUrl"], headers={"X-API-Key": internal_key.key})
    assert download.status_code == 200
    assert download.mimetype == "application/pdf"
    assert download.data.startswith(b"%PDF-")

    own = client.get(body["signedDocumentUrl"], headers={"X-API-Key": customer_key.key})
    assert own.status_code == 200
    other = client.get(body["signedDocumentUrl"], headers={"X-API-Key": viewer_key.key})
    assert other.status_code == 403


def test_public_errors_use_stable_codes(client):
    malformed = client.get("/api/v1/signatures/status/short")
    assert malformed.status_code == 400
    assert malformed.get_json() == {"error": "This signing link is invalid.", "code": "link_invalid"}

    unknown = client.post("/api/v1/signatures/sign", json={"signatureId": "sig_" + "0" * 32, "typedSignature": "x"})
    assert unknown.status_code == 404
    assert unknown.get_json()["code"] == "link_invalid"


def test_status_is_rate_limited(client, customer_key):
    signature_id = _create(client, customer_key).get_json()["signature"]["signatureId"]
    codes = [client.get(f"/api/v1/signatures/status/{signature_id}", headers=SIGNER).status_code for _ in range(31)]
    assert codes[:30] == [200] * 30
    assert codes[30] == 429

    other = client.get(f"/api/v1/signatures/status/{signature_id}", headers={"X-Forwarded-For": "198.51.100.4"})
    assert other.status_code == 200


def test_consent_required_before_sign(client, customer_key):
    signature_id = _create(client, customer_key).get_json()["signature"]["signatureId"]
    response = client.post("/api/v1/signatures/sign", json={"signatureId": signature_id, "typedSignature": "Jane"},
                           headers=SIGNER)
    assert response.status_code == 400
    assert response.get_json()["code"] == "consent_required"


def test_compliance_requires_view_permission(client, customer_key):
    signature_id = _create(client, customer_key).get_json()["signature"]["signatureId"]
    assert client.get(f"/api/v1/signatures/compliance/{signature_id}").status_code == 401


def test_full_projections_refuse_non_internal_keys(client, customer_key, viewer_key):
    signature_id = _create(client, customer_key).get_json()["signature"]["signatureId"]

    for key in (customer_key, viewer_key):
        headers = {"X-API-Key": key.key}
        assert client.get(f"/api/v1/signatures/compliance/{signature_id}", headers=headers).status_code == 403
        assert client.post(f"/api/v1/signatures/verify/{signature_id}", headers=headers).status_code == 403
        assert client.get("/api/v1/signatures/document/deal-1", headers=headers).status_code == 403


def test_document_id_is_required(client, customer_key):
    response = _create(client, customer_key, documentId=None)
    assert response.status_code == 400


def test_revoke_requires_admin(client, customer_key, admin_token):
    signature_id = _create(client, customer_key).get_json()["signature"]["signatureId"]

    denied = client.post(f"/api/v1/signatures/revoke/{signature_id}", json={"reason": "x"})
    assert denied.status_code == 401

    revoked = client.post(f"/api/v1/signatures/revoke/{signature_id}", json={"reason": "Deal cancelled"},
                          headers={"Authorization": f"Bearer {admin_token}"})
    assert revoked.status_code == 200
    assert revoked.get_json()["signature"]["status"] == "revoked"


def test_built_in_signature_endpoint(client, internal_key):
    response = client.post("/api/v1/signatures", headers={"X-API-Key": internal_key.key}, json={
        "documentId": "deal-1",
        "documentUrl": DOC_URL,
        "documentType": "bill_of_sale",
        "signerName": "Finance Desk",
        "signerEmail": "finance@dealsign.test",
        "typedSignature": "Finance Desk",
    })
    assert response.status_code == 201
    signature = response.get_json()["signature"]
    assert signature["status"] == "completed"
    assert signature["signerType"] == "finance"
    assert signature["auditTrail"]["consentMethod"] == "implicit_employment"


def test_mark_pdf_endpoint(client, internal_key):
    response = client.post("/api/v1/pdf/sign", headers={"X-API-Key": internal_key.key}, json={
        "pdfBase64": base64.b64encode(make_pdf()).decode("ascii"),
        "documentType": "wholesale_bos",
        "typedSignature": "Jane Doe",
    })
    assert response.status_code == 200
    assert response.data.startswith(b"%PDF-")
    assert int(response.headers["X-Signed-Size"]) == len(response.data)
    assert int(response.headers["X-Original-Size"]) > 0


def test_mark_pdf_reports_stage(client, internal_key):
    response = client.post("/api/v1/pdf/sign", headers={"X-API-Key": internal_key.key}, json={
        "pdfBase64": base64.b64encode(b"plain text").decode("ascii"),
        "documentType": "wholesale_bos",
        "typedSignature": "Jane Doe",
    })
    assert response.status_code == 422
    assert response.get_json()["stage"] == "load"


def test_api_key_admin_routes(client, admin_token):
    admin = {"Authorization": f"Bearer {admin_token}"}

    created = client.post("/api/v1/api-keys", headers=admin, json={
        "name": "Customer Portal", "type": "customer", "entityType": "User", "entityId": "customer-9",
        "permissions": {"createSignatures": False},
    })
    assert created.status_code == 201
    key = created.get_json()["apiKey"]
    assert key["key"].startswith("rpex_")

    listed = client.get("/api/v1/api-keys", headers=admin).get_json()
    assert listed["count"] == 1
    assert "key" not in listed["apiKeys"][0]

    validated = client.post("/api/v1/api-keys/validate", headers={"X-API-Key": key["key"]}).get_json()
    assert validated["valid"] is True
    assert validated["apiKey"]["permissions"]["createSignatures"] is False

    updated = client.patch(f"/api/v1/api-keys/{key['id']}", headers=admin, json={"isActive": False})
    assert updated.get_json()["apiKey"]["isActive"] is False
    rejected = client.post("/api/v1/api-keys/validate", headers={"X-API-Key": key["key"]})
    assert rejected.status_code == 401

    assert client.delete(f"/api/v1/api-keys/{key['id']}", headers=admin).status_code == 200
    assert client.get("/api/v1/api-keys").status_code == 401
