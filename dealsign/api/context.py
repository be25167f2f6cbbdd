# File: dealsign/api/context.py
# Per-request wiring: the ledger and key manager are built around the
# request's scoped session and the app-wide collaborators.

from flask import current_app, request

from dealsign.core.keys import ApiKeyManager
from dealsign.core.ledger import ClientInfo, SignatureLedger
from dealsign.db.session import get_session
from dealsign.db.store import ApiKeyStore, SignatureStore


def services() -> dict:
    return current_app.extensions["dealsign"]


def client_info() -> ClientInfo:
    """Client IP honours the first X-Forwarded-For hop set by the proxy."""
    forwarded = request.headers.get("X-Forwarded-For", request.remote_addr) or ""
    return ClientInfo(
        ip=forwarded.split(",")[0].strip() or "unknown",
        user_agent=request.headers.get("User-Agent", ""),
    )


def api_key_store() -> ApiKeyStore:
    return ApiKeyStore(get_session())


def key_manager() -> ApiKeyManager:
    return ApiKeyManager(api_key_store())


def get_ledger() -> SignatureLedger:
    svc = services()
    config = current_app.config
    return SignatureLedger(
        SignatureStore(get_session()),
        documents=svc["documents"],
        notifier=svc["notifier"],
        dispatcher=svc["dispatcher"],
        rate_guard=svc["rate_guard"],
        signed_dir=config["SIGNED_DOCUMENT_DIR"],
        expiry_days=config["SIGNATURE_EXPIRY_DAYS"],
        watermark_label=config["WATERMARK_LABEL"],
        webhook=svc["webhook"],
        clock=svc["clock"],
    )
