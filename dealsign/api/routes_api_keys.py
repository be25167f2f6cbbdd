# File: dealsign/api/routes_api_keys.py

from flask import Blueprint, g, jsonify, request

from dealsign.api.auth import presented_api_key, require_admin
from dealsign.api.context import key_manager
from dealsign.log_utils.logging_config import configure_logging

logger = configure_logging("dealsign.routes_api_keys", "dealsign.log")

api_keys_bp = Blueprint("api_keys", __name__, url_prefix="/api/v1/api-keys")


@api_keys_bp.route("", methods=["GET"])
@require_admin
def list_keys():
    records = key_manager().list_keys(request.args.get("entityType"), request.args.get("entityId"))
    return jsonify({
        "success": True,
        "count": len(records),
        "apiKeys": [r.to_dict(include_key=False) for r in records],
    })


@api_keys_bp.route("", methods=["POST"])
@require_admin
def create_key():
    record = key_manager().create_key(request.get_json(silent=True) or {}, g.admin)
    return jsonify({
        "success": True,
        "message": "API key created successfully. Store it now; it will not be shown again.",
        "apiKey": record.to_dict(include_key=True),
    }), 201


@api_keys_bp.route("/<api_key_id>", methods=["PUT", "PATCH"])
@require_admin
def update_key(api_key_id):
    record = key_manager().update_key(api_key_id, request.get_json(silent=True) or {})
    return jsonify({"success": True, "apiKey": record.to_dict(include_key=False)})


@api_keys_bp.route("/<api_key_id>", methods=["DELETE"])
@require_admin
def delete_key(api_key_id):
    key_manager().delete_key(api_key_id)
    return jsonify({"success": True, "message": "API key deleted"})


@api_keys_bp.route("/<api_key_id>/regenerate", methods=["POST"])
@require_admin
def regenerate_key(api_key_id):
    record = key_manager().regenerate_key(api_key_id)
    return jsonify({
        "success": True,
        "message": "API key regenerated. The previous key no longer works.",
        "apiKey": record.to_dict(include_key=True),
    })


@api_keys_bp.route("/validate", methods=["POST"])
def validate_key():
    return jsonify({"success": True, **key_manager().validate_key(presented_api_key())})
