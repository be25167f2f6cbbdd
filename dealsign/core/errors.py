# ------------------------------------------------------------------------
# File: errors.py
# Location: dealsign/core/errors.py
# Description:
#     Error taxonomy for the signature engine. Each error carries the HTTP
#     status and the stable machine code rendered to callers, so the
#     signer-facing page can pick "link invalid", "link expired" or
#     "too many attempts" without parsing messages.
# ------------------------------------------------------------------------


class ESignError(Exception):
    status_code = 500
    code = "internal_error"

    def __init__(self, message: str = None, code: str = None, **details):
        super().__init__(message or self.__class__.__name__)
        self.message = message or self.__class__.__name__
        if code:
            self.code = code
        self.details = details

    def to_dict(self) -> dict:
        body = {"error": self.message, "code": self.code}
        body.update(self.details)
        return body


class Unauthenticated(ESignError):
    status_code = 401
    code = "unauthenticated"


class Forbidden(ESignError):
    status_code = 403
    code = "forbidden"


class NotFound(ESignError):
    status_code = 404
    code = "not_found"


class InvalidRequest(ESignError):
    status_code = 400
    code = "invalid_request"


class Expired(ESignError):
    status_code = 410
    code = "link_expired"


class RateLimited(ESignError):
    status_code = 429
    code = "rate_limited"


class InternalError(ESignError):
    status_code = 500
    code = "internal_error"


class PdfProcessingError(ESignError):
    """Raised when a marking stage fails. `stage` is load, embed, watermark or save."""

    status_code = 422
    code = "pdf_processing_error"

    def __init__(self, stage: str, message: str):
        super().__init__(f"PDF {stage} failed: {message}", stage=stage)
        self.stage = stage
