# File: dealsign/api/errors.py
# Maps domain errors to the JSON shape the signer page renders.

from flask import jsonify
from werkzeug.exceptions import HTTPException

from dealsign.core.errors import ESignError
from dealsign.log_utils.logging_config import configure_logging

logger = configure_logging(name="dealsign.api", logfile="dealsign.log", level=None)


def register_error_handlers(app):

    @app.errorhandler(ESignError)
    def handle_esign_error(error):
        if error.status_code >= 500:
            logger.error("Request failed: %s", error.message)
        else:
            logger.info("Request refused (%s): %s", error.code, error.message)
        return jsonify(error.to_dict()), error.status_code

    @app.errorhandler(HTTPException)
    def handle_http_error(error):
        return jsonify({"error": error.description, "code": error.name.lower().replace(" ", "_")}), error.code

    @app.errorhandler(Exception)
    def handle_error(error):
        logger.error("Unhandled error occurred", exc_info=True)
        return jsonify({"error": "Internal server error"}), 500
