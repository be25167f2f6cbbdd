# FILE: run.py
# DESCRIPTION: Run the signature service (production entrypoint for Gunicorn).

"""
Entrypoint for the signature service.
Used by Gunicorn to start the app server.
"""

import os

from dealsign import create_app
from dealsign.log_utils.logging_config import configure_logging

# Configure logging first
logger = configure_logging(
    name="dealsign",
    logfile="dealsign.log",
    level=None  # Will use LOG_LEVEL from .env if present
)

# Create the Flask application
app = create_app()

if __name__ == "__main__":
    port = int(os.getenv("PORT", "8000"))
    logger.info("Starting development server on port %s", port)
    app.run(host="0.0.0.0", port=port)
