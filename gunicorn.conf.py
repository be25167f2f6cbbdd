import os

# Logging
accesslog = "-"  # Log to stdout
errorlog = "-"   # Log to stderr
loglevel = os.getenv("LOG_LEVEL", "info").lower()

# Worker configuration
bind = os.getenv("BIND", "0.0.0.0:8000")
workers = int(os.getenv("WEB_CONCURRENCY", "3"))
worker_class = "sync"
timeout = 60

# Path handling
forwarded_allow_ips = "*"

# Error handling
capture_output = True
enable_stdio_inheritance = True

# Create logs directory if it doesn't exist
os.makedirs(os.getenv("LOG_DIR", "logs"), exist_ok=True)
