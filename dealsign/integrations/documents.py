# File: dealsign/integrations/documents.py
# Read-only access to the deal/document service that owns generated
# documents. The signature engine only needs document bytes and a yes/no
# on whether a document id exists, plus a few fields for emails.

import requests

from dealsign.core.errors import InternalError, InvalidRequest, NotFound
from dealsign.log_utils.logging_config import configure_logging

logger = configure_logging(name="dealsign.documents", logfile="dealsign.log", level=None)

REQUEST_TIMEOUT = 15
MAX_DOCUMENT_BYTES = 25 * 1024 * 1024
DISPLAY_FIELDS = ("vin", "stockNumber", "vehicle", "dealType")


class HttpDocumentSource:
    def __init__(self, base_url: str, token: str = "", session=None):
        self.base_url = (base_url or "").rstrip("/")
        self.token = token
        self.http = session or requests.Session()

    def _headers(self):
        return {"Authorization": f"Bearer {self.token}"} if self.token else {}

    def fetch_document_bytes(self, url: str) -> bytes:
        try:
            response = self.http.get(url, headers=self._headers(), timeout=REQUEST_TIMEOUT)
        except requests.exceptions.RequestException as e:
            logger.error("Failed to fetch document %s: %s", url, e)
            raise InternalError("Could not fetch the document") from e

        if response.status_code == 404:
            raise NotFound("Document not found")
        if response.status_code >= 400:
            logger.error("Document fetch %s returned %s", url, response.status_code)
            raise InternalError("Could not fetch the document")
        if len(response.content) > MAX_DOCUMENT_BYTES:
            raise InvalidRequest("Document exceeds the maximum size")
        return response.content

    def resolve_document(self, document_id: str) -> dict:
        """Return {"exists": bool, "displayFields": {...}} for a deal/document id."""
        if not self.base_url:
            raise InternalError("DOCUMENT_SERVICE_URL is not configured")
        try:
            response = self.http.get(
                f"{self.base_url}/deals/{document_id}", headers=self._headers(), timeout=REQUEST_TIMEOUT
            )
        except requests.exceptions.RequestException as e:
            logger.error("Failed to resolve document %s: %s", document_id, e)
            raise InternalError("Could not reach the document service") from e

        if response.status_code == 404:
            return {"exists": False, "displayFields": {}}
        if response.status_code >= 400:
            logger.error("Document lookup %s returned %s", document_id, response.status_code)
            raise InternalError("Could not reach the document service")

        data = response.json() or {}
        fields = {name: data.get(name) or "N/A" for name in DISPLAY_FIELDS}
        return {"exists": True, "displayFields": fields}
