# File: dealsign/integrations/notifications.py
# Outbound notifications: signer emails through the email service and the
# ops chat webhook. Every call here is best effort; failures are logged and
# reported in the return value, never raised to the signing flow.

from concurrent.futures import ThreadPoolExecutor

import requests

from dealsign.log_utils.logging_config import configure_logging

logger = configure_logging(name="dealsign.notifications", logfile="dealsign.log", level=None)

REQUEST_TIMEOUT = 10


class EmailNotifier:
    def __init__(self, base_url: str, token: str = "", public_base_url: str = "", session=None):
        self.base_url = (base_url or "").rstrip("/")
        self.token = token
        self.public_base_url = (public_base_url or "").rstrip("/")
        self.http = session or requests.Session()

    def signing_url(self, signature_id: str) -> str:
        return f"{self.public_base_url}/sign/{signature_id}"

    def _post(self, path: str, payload: dict) -> dict:
        if not self.base_url:
            logger.info("EMAIL_SERVICE_URL not set - would have sent %s to %s", path, payload.get("email"))
            return {"success": False, "error": "email service not configured"}

        headers = {"Content-Type": "application/json"}
        if self.token:
            headers["Authorization"] = f"Bearer {self.token}"
        try:
            response = self.http.post(f"{self.base_url}{path}", json=payload, headers=headers, timeout=REQUEST_TIMEOUT)
            response.raise_for_status()
            logger.info("Email %s accepted for %s: %s", path, payload.get("email"), response.status_code)
            return {"success": True}
        except requests.exceptions.RequestException as e:
            logger.error("Email %s failed for %s: %s", path, payload.get("email"), e)
            return {"success": False, "error": str(e)}

    def send_signature_request(self, email, signature_id, document_type, deal_info=None, signer_name=None) -> dict:
        return self._post("/emails/signature-request", {
            "email": email,
            "signatureId": signature_id,
            "documentType": document_type,
            "dealInfo": deal_info or {},
            "signerName": signer_name,
            "signingUrl": self.signing_url(signature_id),
        })

    def send_completion_notice(self, email, signature_id, document_type, deal_info=None, signer_name=None,
                               signed_at=None, signed_document_url=None) -> dict:
        return self._post("/emails/signature-completed", {
            "email": email,
            "signatureId": signature_id,
            "documentType": document_type,
            "dealInfo": deal_info or {},
            "signerName": signer_name,
            "signedAt": signed_at,
            "signedDocumentUrl": signed_document_url,
        })


def send_webhook_if_enabled(message: str, webhook_url: str, disabled: bool = False) -> bool:
    """Post a text message to the ops chat webhook unless webhooks are disabled."""
    if disabled or not webhook_url:
        logger.info(f"Webhook disabled - would have sent: {message}")
        return False
    try:
        response = requests.post(webhook_url, json={"text": message}, timeout=5)
        logger.info(f"Webhook sent: {response.status_code}")
        return response.ok
    except requests.exceptions.RequestException as e:
        logger.error(f"Failed to send webhook: {e}")
        return False


class NotificationDispatcher:
    """
    Runs notification calls off the request path. With run_async=False the
    call happens inline, which tests rely on.
    """

    def __init__(self, run_async: bool = True, max_workers: int = 4):
        self.run_async = run_async
        self._executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="notify") if run_async else None

    def _run(self, label, fn, args, kwargs):
        try:
            result = fn(*args, **kwargs)
            if isinstance(result, dict) and not result.get("success", False):
                logger.warning("Notification %s reported failure: %s", label, result.get("error"))
            return result
        except Exception:
            logger.exception("Notification %s raised; ignoring", label)
            return {"success": False, "error": "notification raised"}

    def dispatch(self, label: str, fn, *args, **kwargs):
        if self._executor is None:
            return self._run(label, fn, args, kwargs)
        return self._executor.submit(self._run, label, fn, args, kwargs)

    def shutdown(self):
        if self._executor is not None:
            self._executor.shutdown(wait=True)
