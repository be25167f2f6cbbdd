# File: dealsign/api/routes_signatures.py

import base64
import io
import os

from flask import Blueprint, g, jsonify, request, send_file

from dealsign.api.auth import require_admin, require_api_key
from dealsign.api.context import client_info, get_ledger
from dealsign.core import signer
from dealsign.core.errors import InvalidRequest, NotFound
from dealsign.core.guard import short_id
from dealsign.log_utils.logging_config import configure_logging

logger = configure_logging("dealsign.routes_signatures", "dealsign.log")

signatures_bp = Blueprint("signatures", __name__, url_prefix="/api/v1/signatures")
pdf_bp = Blueprint("pdf", __name__, url_prefix="/api/v1/pdf")


def _json_body() -> dict:
    return request.get_json(silent=True) or {}


@signatures_bp.route("/request", methods=["POST"])
@require_api_key("createSignatures", "signAgreements")
def create_signature_request():
    record = get_ledger().create_request(g.api_key, _json_body(), client_info())
    return jsonify({
        "success": True,
        "message": "Signature request created successfully",
        "signature": record.to_dict(),
    }), 201


@signatures_bp.route("", methods=["POST"])
@require_api_key("signAgreements")
def create_internal_signature():
    record = get_ledger().create_internal_signature(g.api_key, _json_body(), client_info())
    return jsonify({
        "success": True,
        "message": "Document signed successfully",
        "signature": record.to_dict(),
    }), 201


@signatures_bp.route("/consent/intent-to-sign", methods=["POST"])
def consent_intent_to_sign():
    data = _json_body()
    record = get_ledger().grant_intent_to_sign(data.get("signatureId"), client_info())
    return jsonify({
        "success": True,
        "message": "Intent to sign recorded",
        "signature": record.to_status_dict(),
    })


@signatures_bp.route("/consent/electronic-business", methods=["POST"])
def consent_electronic_business():
    data = _json_body()
    record = get_ledger().grant_electronic_business_consent(data.get("signatureId"), client_info())
    return jsonify({
        "success": True,
        "message": "Consent to electronic business recorded",
        "signature": record.to_status_dict(),
    })


@signatures_bp.route("/sign", methods=["POST"])
def sign():
    data = _json_body()
    result = get_ledger().submit_mark(data.get("signatureId"), data, client_info())
    message = "Document already signed" if result.already_completed else "Document signed successfully"
    return jsonify({
        "success": True,
        "alreadyCompleted": result.already_completed,
        "message": message,
        "signature": result.record.to_status_dict(),
        "signedDocumentUrl": result.record.signed_document_url,
    })


@signatures_bp.route("/status/<signature_id>", methods=["GET"])
def status(signature_id):
    return jsonify({"success": True, "signature": get_ledger().get_status(signature_id, client_info())})


@signatures_bp.route("/compliance/<signature_id>", methods=["GET"])
@require_api_key("viewDocuments", "signAgreements")
def compliance(signature_id):
    return jsonify({"success": True, **get_ledger().get_compliance_report(g.api_key, signature_id)})


@signatures_bp.route("/verify/<signature_id>", methods=["POST"])
@require_api_key("viewDocuments", "signAgreements")
def verify(signature_id):
    return jsonify({"success": True, **get_ledger().verify(g.api_key, signature_id)})


@signatures_bp.route("/<signature_id>/send-to-client", methods=["POST"])
@require_api_key("createSignatures")
def send_to_client(signature_id):
    record = get_ledger().send_to_client(g.api_key, signature_id, _json_body())
    return jsonify({
        "success": True,
        "message": "Signature request sent to client",
        "signature": record.to_dict(),
    }), 201


@signatures_bp.route("/revoke/<signature_id>", methods=["POST"])
@require_admin
def revoke(signature_id):
    data = _json_body()
    record = get_ledger().revoke(signature_id, reason=data.get("reason"), revoked_by=g.admin.email or g.admin.id)
    return jsonify({"success": True, "message": "Signature revoked", "signature": record.to_dict()})


@signatures_bp.route("/document/<document_id>", methods=["GET"])
@require_api_key("viewDocuments")
def list_for_document(document_id):
    records = get_ledger().list_for_document(g.api_key, document_id)
    return jsonify({
        "success": True,
        "count": len(records),
        "signatures": [r.to_dict() for r in records],
    })


@signatures_bp.route("/<signature_id>/download", methods=["GET"])
@require_api_key("viewDocuments")
def download(signature_id):
    record = get_ledger().get_signed_document(g.api_key, signature_id)
    path = record.signed_document_path
    if not path or not os.path.isfile(path):
        raise NotFound("Signed document not available")
    logger.info("Serving signed document for %s to key %s", short_id(signature_id), g.api_key.name)
    return send_file(
        path,
        mimetype="application/pdf",
        as_attachment=True,
        download_name=f"{record.document_type.value}_{signature_id}_signed.pdf",
    )


@pdf_bp.route("/sign", methods=["POST"])
@require_api_key("signAgreements")
def mark_pdf():
    """
    Mark an uploaded PDF without touching the ledger. Accepts multipart
    (`pdf` file field) or JSON with a base64 `pdfBase64`.
    """
    if "pdf" in request.files:
        pdf_bytes = request.files["pdf"].read()
        data = request.form.to_dict()
    else:
        data = _json_body()
        try:
            pdf_bytes = base64.b64decode(data.get("pdfBase64") or "", validate=True)
        except ValueError:
            raise InvalidRequest("pdfBase64 is not valid base64")
    if not pdf_bytes:
        raise InvalidRequest("A PDF file is required")
    if not data.get("imageSignature") and not (data.get("typedSignature") or "").strip():
        raise InvalidRequest("Either signature image or typed signature is required", code="mark_required")
    if not data.get("documentType"):
        raise InvalidRequest("Document type is required")

    signed = signer.create_signed_document(
        pdf_bytes,
        data["documentType"],
        image_data=data.get("imageSignature"),
        typed_text=data.get("typedSignature"),
        placement_override=data.get("coordinates") if isinstance(data.get("coordinates"), dict) else None,
        signer_name=data.get("signerName"),
        font=data.get("signatureFont"),
    )
    response = send_file(
        io.BytesIO(signed.pdf_bytes),
        mimetype="application/pdf",
        as_attachment=True,
        download_name="signed.pdf",
    )
    response.headers["X-Original-Size"] = str(signed.original_size)
    response.headers["X-Signed-Size"] = str(signed.signed_size)
    return response
